"""Fetch a single message in its most faithful available representation."""

from __future__ import annotations

import base64
import binascii
import json
import logging
from collections.abc import Iterator
from datetime import UTC, datetime
from typing import Any

from gmail_archiver.core.exceptions import TransportError, TransportErrorKind
from gmail_archiver.core.gmail_client import GmailClient
from gmail_archiver.core.models import MessageId, MessageRecord, Representation

logger = logging.getLogger(__name__)


def decode_raw(data: str) -> bytes:
    """Decode Gmail's base64url ``raw`` field, tolerating missing padding."""
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded)


def parse_internal_date(value: Any) -> datetime | None:
    """Gmail ``internalDate`` is epoch milliseconds as a string."""
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=UTC)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def _walk_parts(part: dict[str, Any]) -> Iterator[dict[str, Any]]:
    """Depth-first walk over a MIME part tree from the structured form."""
    yield part
    for child in part.get("parts") or ():
        yield from _walk_parts(child)


class MessageFetcher:
    """Retrieves messages as raw RFC-822 bytes, falling back to the structured form.

    Raises the transport's errors unchanged, including NotFoundError when a
    message disappeared between listing and fetch.
    """

    def __init__(self, client: GmailClient) -> None:
        self._client = client

    def fetch(self, message_id: MessageId) -> MessageRecord:
        """Fetch one message and build its MessageRecord (checksum included)."""
        response = self._fetch_raw(message_id)
        content: bytes | None = None

        if response is not None and response.get("raw"):
            try:
                content = decode_raw(response["raw"])
                representation = Representation.RAW
            except (binascii.Error, ValueError) as e:
                logger.warning("Undecodable raw form for %s: %s", message_id, e)

        if content is None:
            logger.info("Raw form unavailable for %s, fetching structured form", message_id)
            response = self._client.get_message(message_id, "full")
            self._inline_attachments(message_id, response)
            content = json.dumps(response, sort_keys=True, ensure_ascii=False).encode("utf-8")
            representation = Representation.FULL

        record = MessageRecord.create(
            message_id,
            content,
            representation,
            datetime.now(UTC),
            thread_id=response.get("threadId", ""),
            label_ids=tuple(response.get("labelIds", ())),
            internal_date=parse_internal_date(response.get("internalDate")),
        )
        logger.debug(
            "Fetched %s (%s, %d bytes)", message_id, representation.value, record.size
        )
        return record

    def _inline_attachments(self, message_id: MessageId, message: dict[str, Any]) -> None:
        """Fill in attachment bodies that the structured form only references by ID.

        Any failure propagates, so an incomplete message is never stored.
        """
        inlined = 0
        for part in _walk_parts(message.get("payload") or {}):
            body = part.get("body") or {}
            attachment_id = body.get("attachmentId")
            if not attachment_id or body.get("data"):
                continue
            attachment = self._client.get_attachment(message_id, attachment_id)
            body["data"] = attachment.get("data", "")
            inlined += 1
        if inlined:
            logger.debug("Inlined %d attachments for %s", inlined, message_id)

    def _fetch_raw(self, message_id: MessageId) -> dict[str, Any] | None:
        """Request the raw form; None when the service refuses that format."""
        try:
            return self._client.get_message(message_id, "raw")
        except TransportError as e:
            if e.kind is TransportErrorKind.PERMANENT and e.status == 400 and not e.account_wide:
                logger.warning("Raw format rejected for %s: %s", message_id, e)
                return None
            raise
