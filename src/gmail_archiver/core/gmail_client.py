"""Gmail API client for profile, labels, message listing and message retrieval."""

from __future__ import annotations

import logging
from typing import Any

from googleapiclient.discovery import Resource

from gmail_archiver.core.models import MessageId, MessagePage, PageToken
from gmail_archiver.core.transport import Transport

logger = logging.getLogger(__name__)

MESSAGE_FORMATS = frozenset({"raw", "full", "metadata", "minimal"})


class GmailClient:
    """Thin wrapper around the Gmail API; every call goes through the Transport."""

    def __init__(
        self,
        service: Resource,
        transport: Transport | None = None,
        user_id: str = "me",
    ) -> None:
        self._service = service
        self._transport = transport or Transport()
        self._user_id = user_id

    def get_profile(self) -> dict[str, Any]:
        """Return the account profile (emailAddress, messagesTotal, ...)."""
        request = self._service.users().getProfile(userId=self._user_id)
        return self._transport.execute(request, "get profile")

    def list_labels(self) -> list[dict[str, Any]]:
        """List all Gmail labels.

        Returns:
            Label resources as returned by the API (at least 'id' and 'name').
        """
        request = self._service.users().labels().list(userId=self._user_id)
        results = self._transport.execute(request, "list labels")
        return list(results.get("labels", []))

    def list_messages(
        self,
        page_token: PageToken | None = None,
        *,
        max_results: int = 500,
        query: str | None = None,
        include_spam_trash: bool = True,
    ) -> MessagePage:
        """Fetch one page of message IDs.

        Args:
            page_token: Cursor returned by the previous page, None for the first page.
            max_results: Number of messages per page (1-500).
            query: Optional Gmail search query.
            include_spam_trash: Include messages from SPAM and TRASH.

        Returns:
            The page's message IDs and the token of the next page (None at the end).
        """
        kwargs: dict[str, Any] = {
            "userId": self._user_id,
            "maxResults": max_results,
            "includeSpamTrash": include_spam_trash,
        }
        if page_token:
            kwargs["pageToken"] = page_token
        if query:
            kwargs["q"] = query

        request = self._service.users().messages().list(**kwargs)
        response = self._transport.execute(request, "list messages")

        ids = tuple(msg["id"] for msg in response.get("messages", []))
        logger.debug("Listed %d message IDs (page)", len(ids))
        return MessagePage(message_ids=ids, next_page_token=response.get("nextPageToken") or None)

    def get_message(self, message_id: MessageId, fmt: str = "raw") -> dict[str, Any]:
        """Fetch a single message in the given format ('raw' or 'full')."""
        if fmt not in MESSAGE_FORMATS:
            raise ValueError(f"Invalid message format: {fmt}")
        request = (
            self._service.users()
            .messages()
            .get(userId=self._user_id, id=message_id, format=fmt)
        )
        return self._transport.execute(request, f"get message {message_id} ({fmt})")

    def get_attachment(self, message_id: MessageId, attachment_id: str) -> dict[str, Any]:
        """Fetch one attachment body ('data' is base64url, plus 'size')."""
        request = (
            self._service.users()
            .messages()
            .attachments()
            .get(userId=self._user_id, messageId=message_id, id=attachment_id)
        )
        return self._transport.execute(request, f"get attachment of message {message_id}")
