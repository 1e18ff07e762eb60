"""Lazy, resumable enumeration of every message ID in the mailbox."""

from __future__ import annotations

import logging
import time
from collections.abc import Generator, Iterator

from gmail_archiver.core.gmail_client import GmailClient
from gmail_archiver.core.models import MessageId, MessagePage, PageToken

logger = logging.getLogger(__name__)


class MessageEnumerator:
    """Pages through the message listing, yielding IDs.

    Consumers control the pace of pagination: the next page is only requested
    once the current one has been consumed. If listing fails part-way, the
    transport error propagates and ``resume_token`` names the page to restart
    from. Restarting may re-yield IDs from that page; callers are expected to
    check archive membership per ID anyway.
    """

    def __init__(
        self,
        client: GmailClient,
        *,
        page_size: int = 500,
        query: str | None = None,
        include_spam_trash: bool = True,
        start_page_token: PageToken | None = None,
        inter_page_delay_seconds: float = 0.0,
    ) -> None:
        self._client = client
        self._page_size = page_size
        self._query = query
        self._include_spam_trash = include_spam_trash
        self._inter_page_delay = inter_page_delay_seconds
        self._resume_token = start_page_token
        self._exhausted = False
        self.pages_fetched = 0

    @property
    def resume_token(self) -> PageToken | None:
        """Token of the page being fetched or consumed (None for the first page)."""
        return self._resume_token

    @property
    def exhausted(self) -> bool:
        """True once the last page (no next token) has been fetched."""
        return self._exhausted

    def pages(self) -> Generator[MessagePage, None, None]:
        """Yield listing pages until the listing has no next page token."""
        page_token = self._resume_token

        while not self._exhausted:
            if self.pages_fetched and self._inter_page_delay > 0:
                time.sleep(self._inter_page_delay)

            self._resume_token = page_token
            page = self._client.list_messages(
                page_token,
                max_results=self._page_size,
                query=self._query,
                include_spam_trash=self._include_spam_trash,
            )
            self.pages_fetched += 1
            if page.next_page_token is None:
                self._exhausted = True

            yield page

            page_token = page.next_page_token

        logger.debug("Enumeration finished after %d pages", self.pages_fetched)

    def __iter__(self) -> Iterator[MessageId]:
        for page in self.pages():
            yield from page.message_ids
