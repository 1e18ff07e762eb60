"""Shared fixtures for Gmail Archiver tests."""

from __future__ import annotations

import base64
import json
import threading
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest
from googleapiclient.errors import HttpError

from gmail_archiver.config.settings import GmailArchiverSettings
from gmail_archiver.core.exceptions import NotFoundError
from gmail_archiver.core.models import MessagePage, MessageRecord, Representation


class FakeGmailClient:
    """In-memory stand-in for GmailClient serving a fixed mailbox.

    Page tokens are stringified offsets into the sorted ID list. Every
    get_message call is recorded in ``fetch_calls`` (thread-safe).
    """

    def __init__(
        self,
        messages: dict[str, bytes],
        *,
        page_size: int = 3,
        listed_only: tuple[str, ...] = (),
    ) -> None:
        self.messages = dict(messages)
        self.page_size = page_size
        self.listed_only = listed_only
        self.message_errors: dict[str, Exception] = {}
        self.list_errors: dict[str | None, Exception] = {}
        self.fetch_calls: list[str] = []
        self.list_calls: list[str | None] = []
        self._lock = threading.Lock()

    def _listing(self) -> list[str]:
        return sorted(set(self.messages) | set(self.listed_only))

    def get_profile(self) -> dict[str, Any]:
        return {"emailAddress": "me@example.com", "messagesTotal": len(self._listing())}

    def list_labels(self) -> list[dict[str, Any]]:
        return [
            {"id": "INBOX", "name": "INBOX", "type": "system"},
            {"id": "Label_1", "name": "Work", "type": "user"},
        ]

    def list_messages(
        self,
        page_token: str | None = None,
        *,
        max_results: int = 500,
        query: str | None = None,
        include_spam_trash: bool = True,
    ) -> MessagePage:
        self.list_calls.append(page_token)
        if page_token in self.list_errors:
            raise self.list_errors.pop(page_token)
        ids = self._listing()
        start = int(page_token) if page_token else 0
        end = start + self.page_size
        next_token = str(end) if end < len(ids) else None
        return MessagePage(message_ids=tuple(ids[start:end]), next_page_token=next_token)

    def get_message(self, message_id: str, fmt: str = "raw") -> dict[str, Any]:
        with self._lock:
            self.fetch_calls.append(message_id)
        if message_id in self.message_errors:
            raise self.message_errors[message_id]
        if message_id not in self.messages:
            raise NotFoundError(f"Not found during get message {message_id}")
        return {
            "id": message_id,
            "threadId": f"thread-{message_id}",
            "labelIds": ["INBOX"],
            "internalDate": "1700000000000",
            "raw": base64.urlsafe_b64encode(self.messages[message_id]).decode("ascii"),
        }


@pytest.fixture
def fake_gmail() -> Callable[..., FakeGmailClient]:
    """Factory for an in-memory Gmail client."""
    return FakeGmailClient


@pytest.fixture
def http_error() -> Callable[..., HttpError]:
    """Factory building googleapiclient HttpErrors with an optional API reason."""

    def _make(status: int, reason: str | None = None) -> HttpError:
        if reason:
            content = json.dumps(
                {"error": {"code": status, "message": reason, "errors": [{"reason": reason}]}}
            ).encode("utf-8")
        else:
            content = b"error"
        return HttpError(resp=MagicMock(status=status, reason=reason or "error"), content=content)

    return _make


@pytest.fixture
def tmp_archive_dir(tmp_path: Path) -> Path:
    """Temporary archive root for tests."""
    return tmp_path / "archive"


@pytest.fixture
def tmp_settings(tmp_path: Path) -> GmailArchiverSettings:
    """Settings pointing to temporary directories with fast pagination."""
    return GmailArchiverSettings(
        credentials_path=tmp_path / "creds" / "client_secret.json",
        token_path=tmp_path / "creds" / "token.json",
        archive_dir=tmp_path / "archive",
        inter_page_delay_seconds=0.0,
        workers=1,
    )


@pytest.fixture
def make_record() -> Callable[..., MessageRecord]:
    """Factory for MessageRecords with computed checksums."""

    def _make(
        message_id: str = "msg001",
        content: bytes = b"Subject: hi\r\n\r\nhello\r\n",
        representation: Representation = Representation.RAW,
    ) -> MessageRecord:
        return MessageRecord.create(
            message_id,
            content,
            representation,
            datetime(2024, 1, 15, 10, 30, 0, tzinfo=UTC),
            thread_id=f"thread-{message_id}",
            label_ids=("INBOX", "UNREAD"),
            internal_date=datetime(2024, 1, 14, 9, 0, 0, tzinfo=UTC),
        )

    return _make
