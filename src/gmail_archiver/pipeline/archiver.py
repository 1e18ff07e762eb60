"""Pipeline orchestrator: enumerate → skip archived → fetch → store."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from functools import partial
from typing import Any

from gmail_archiver.config.settings import GmailArchiverSettings
from gmail_archiver.core.auth import (
    GoogleAuthProvider,
    authenticate,
    build_authorized_http,
    build_gmail_service,
)
from gmail_archiver.core.enumerator import MessageEnumerator
from gmail_archiver.core.exceptions import (
    ConfigError,
    GmailArchiverError,
    NotFoundError,
    StorageError,
    TransportError,
)
from gmail_archiver.core.fetcher import MessageFetcher
from gmail_archiver.core.gmail_client import GmailClient
from gmail_archiver.core.models import (
    ArchiveProgress,
    MessageId,
    PageToken,
    RunState,
    VerificationIssue,
)
from gmail_archiver.core.transport import Transport
from gmail_archiver.storage.archive_store import ArchiveStore

logger = logging.getLogger(__name__)

INTERRUPTED_REASON = "Interrupted by user"


class _RunAborted(GmailArchiverError):
    """Internal signal: the run cannot safely continue."""


class Archiver:
    """Drives one archive run over the whole mailbox.

    Enumerating: page through message IDs (optionally resuming from a page token)
    Fetching:    claim each ID not yet in the manifest and fetch it (raw form preferred)
    Storing:     persist the record atomically; only then does it count as archived

    Per-message failures (vanished messages, exhausted retries) are counted and
    skipped. Account-wide auth failures, listing failures and storage failures
    abort the run; re-running resumes from the manifest.
    """

    def __init__(
        self,
        settings: GmailArchiverSettings | None = None,
        on_progress: Callable[[ArchiveProgress], None] | None = None,
    ) -> None:
        self._settings = settings or GmailArchiverSettings()
        self._on_progress = on_progress
        self._progress = ArchiveProgress()

        # Components initialized lazily
        self._client: GmailClient | None = None
        self._fetcher: MessageFetcher | None = None
        self._store: ArchiveStore | None = None

        self._lock = threading.Lock()
        self._in_flight: set[MessageId] = set()
        self._cancelled = threading.Event()
        self._fatal: BaseException | None = None

    @property
    def on_progress(self) -> Callable[[ArchiveProgress], None] | None:
        return self._on_progress

    @on_progress.setter
    def on_progress(self, callback: Callable[[ArchiveProgress], None] | None) -> None:
        self._on_progress = callback

    @property
    def progress(self) -> ArchiveProgress:
        return self._progress

    def _ensure_store(self) -> ArchiveStore:
        if self._store is None:
            store = ArchiveStore(self._settings.archive_dir)
            store.open()
            self._store = store
        return self._store

    def _ensure_initialized(self) -> tuple[GmailClient, MessageFetcher, ArchiveStore]:
        """Initialize all components if not already done."""
        if self._client is None:
            try:
                self._settings.ensure_directories()
            except OSError as e:
                raise ConfigError(f"Cannot create archive or credential directories: {e}") from e

            creds = authenticate(
                self._settings.credentials_path,
                self._settings.token_path,
            )
            # One HTTP client per worker thread
            transport = Transport(
                GoogleAuthProvider(creds, self._settings.token_path),
                max_retries=self._settings.max_retries,
                initial_backoff_seconds=self._settings.initial_backoff_seconds,
                max_backoff_seconds=self._settings.max_backoff_seconds,
                max_total_wait_seconds=self._settings.max_total_wait_seconds,
                num_retries=self._settings.num_retries,
                http_factory=partial(
                    build_authorized_http, creds, self._settings.http_timeout_seconds
                ),
            )
            self._client = GmailClient(
                build_gmail_service(creds), transport, user_id=self._settings.user_id
            )

        if self._fetcher is None:
            self._fetcher = MessageFetcher(self._client)

        return self._client, self._fetcher, self._ensure_store()

    def run(
        self,
        query: str | None = None,
        *,
        resume_token: PageToken | None = None,
        workers: int | None = None,
    ) -> ArchiveProgress:
        """Run a full archive pass (start or resume).

        Args:
            query: Optional Gmail search query restricting the run.
            resume_token: Page token to restart an interrupted enumeration from.
            workers: Concurrent fetches (defaults to settings.workers; 1 is sequential).

        Returns:
            ArchiveProgress with final counts; state is COMPLETED or ABORTED.
        """
        pool_size = self._settings.workers if workers is None else workers
        if pool_size < 1:
            raise ValueError(f"workers must be positive, got {pool_size}")

        self._cancelled.clear()
        self._fatal = None
        self._in_flight.clear()
        self._progress = ArchiveProgress(last_page_token=resume_token)

        try:
            client, fetcher, store = self._ensure_initialized()
            run_id = store.start_run(query)
        except GmailArchiverError as e:
            self._abort(f"Cannot start archive run: {e}")
            return self._progress

        enumerator = MessageEnumerator(
            client,
            page_size=self._settings.max_results_per_page,
            query=query,
            include_spam_trash=self._settings.include_spam_trash,
            start_page_token=resume_token,
            inter_page_delay_seconds=self._settings.inter_page_delay_seconds,
        )

        try:
            self._set_state(RunState.ENUMERATING)
            self._prepare(client, store)

            if pool_size == 1:
                self._run_sequential(enumerator, fetcher, store)
            else:
                self._run_concurrent(enumerator, fetcher, store, pool_size)

            if self._fatal is not None:
                raise _RunAborted(str(self._fatal)) from self._fatal
            if self._cancelled.is_set():
                self._abort("Cancelled before all messages were processed")
            else:
                self._set_state(RunState.COMPLETED)
        except _RunAborted as e:
            self._abort(str(e))
        except KeyboardInterrupt:
            self._cancelled.set()
            self._abort(INTERRUPTED_REASON)
        except Exception as e:
            self._abort(f"Unexpected error: {e}")
            raise
        finally:
            if not self._progress.completed:
                self._progress.last_page_token = enumerator.resume_token
            try:
                store.complete_run(run_id, self._progress)
            except StorageError as e:
                logger.error("Could not record the end of run %d: %s", run_id, e)
            logger.info(
                "Archive run %s: %s", self._progress.state.value, self._progress.summary()
            )

        return self._progress

    def cancel(self) -> None:
        """Stop dispatching new messages; in-flight fetches finish and are stored."""
        logger.info("Cancellation requested")
        self._cancelled.set()

    def _prepare(self, client: GmailClient, store: ArchiveStore) -> None:
        """Archive labels and estimate the mailbox size before enumeration."""
        try:
            profile = client.get_profile()
            self._progress.total_estimated = int(profile.get("messagesTotal", 0))
            logger.info(
                "Archiving %s (~%d messages, %d already archived)",
                profile.get("emailAddress", "mailbox"),
                self._progress.total_estimated,
                store.count(),
            )
        except TransportError as e:
            if e.account_wide:
                raise _RunAborted(f"Cannot access account: {e}") from e
            logger.warning("Could not read profile: %s", e)

        if not self._settings.archive_labels:
            return
        try:
            labels = client.list_labels()
        except TransportError as e:
            if e.account_wide:
                raise _RunAborted(f"Cannot access account: {e}") from e
            logger.warning("Could not list labels: %s", e)
            return
        try:
            count = store.upsert_labels(labels)
        except StorageError as e:
            raise _RunAborted(f"Archive is not writable: {e}") from e
        logger.info("Archived %d labels", count)

    def _message_ids(self, enumerator: MessageEnumerator) -> Iterator[MessageId]:
        """Enumerator IDs, turning listing failures into a run abort."""
        try:
            yield from enumerator
        except (TransportError, NotFoundError) as e:
            raise _RunAborted(
                f"Listing messages failed: {e} (resume token: {enumerator.resume_token})"
            ) from e

    def _run_sequential(
        self, enumerator: MessageEnumerator, fetcher: MessageFetcher, store: ArchiveStore
    ) -> None:
        for message_id in self._message_ids(enumerator):
            if self._should_stop():
                break
            if not self._claim(message_id):
                continue
            self._process_claimed(message_id, fetcher, store)

    def _run_concurrent(
        self,
        enumerator: MessageEnumerator,
        fetcher: MessageFetcher,
        store: ArchiveStore,
        pool_size: int,
    ) -> None:
        """Bounded pool: at most ``pool_size`` fetches in flight at once."""
        pending: set[Future[None]] = set()
        with ThreadPoolExecutor(max_workers=pool_size, thread_name_prefix="archiver") as executor:
            try:
                for message_id in self._message_ids(enumerator):
                    if len(pending) >= pool_size:
                        done, pending = wait(pending, return_when=FIRST_COMPLETED)
                        _raise_unexpected(done)
                    if self._should_stop():
                        break
                    if not self._claim(message_id):
                        continue
                    pending.add(
                        executor.submit(self._process_claimed, message_id, fetcher, store)
                    )
            finally:
                done, _ = wait(pending)
                _raise_unexpected(done)

    def _should_stop(self) -> bool:
        return self._cancelled.is_set() or self._fatal is not None

    def _claim(self, message_id: MessageId) -> bool:
        """Atomically reserve an ID; False if another task already holds it."""
        with self._lock:
            self._progress.total_seen += 1
            if message_id in self._in_flight:
                logger.debug("Message %s already in flight", message_id)
                return False
            self._in_flight.add(message_id)
            return True

    def _process_claimed(
        self, message_id: MessageId, fetcher: MessageFetcher, store: ArchiveStore
    ) -> None:
        try:
            self._process(message_id, fetcher, store)
        except _RunAborted as e:
            logger.error("Aborting run: %s", e)
            with self._lock:
                if self._fatal is None:
                    self._fatal = e
            self._cancelled.set()
        finally:
            with self._lock:
                self._in_flight.discard(message_id)

    def _process(
        self, message_id: MessageId, fetcher: MessageFetcher, store: ArchiveStore
    ) -> None:
        """Skip, fetch and store one message, updating counters."""
        if store.has(message_id):
            logger.debug("Message %s already archived", message_id)
            self._count("skipped")
            return

        self._set_state(RunState.FETCHING)
        try:
            record = fetcher.fetch(message_id)
        except NotFoundError:
            logger.warning("Message %s vanished before it could be fetched", message_id)
            self._count("failed")
            return
        except TransportError as e:
            if e.account_wide:
                raise _RunAborted(f"Account-wide failure fetching {message_id}: {e}") from e
            logger.error("Failed to fetch message %s: %s", message_id, e)
            self._count("failed")
            return

        self._set_state(RunState.STORING)
        try:
            store.put(record)
        except StorageError as e:
            raise _RunAborted(f"Archive is not writable: {e}") from e
        self._count("archived")

    def _count(self, counter: str) -> None:
        with self._lock:
            setattr(self._progress, counter, getattr(self._progress, counter) + 1)
            self._notify()

    def _set_state(self, state: RunState) -> None:
        with self._lock:
            if self._progress.state is not state:
                self._progress.state = state
                self._notify()

    def _abort(self, reason: str) -> None:
        logger.error("Archive run aborted: %s", reason)
        with self._lock:
            self._progress.abort_reason = reason
            self._progress.state = RunState.ABORTED
            self._notify()

    def status(self) -> dict[str, Any]:
        """Archived counts by representation and the last run's summary."""
        store = self._ensure_store()
        return {
            "archived": store.count(),
            "by_representation": store.count_by_representation(),
            "labels": len(store.list_labels()),
            "last_run": store.last_run(),
        }

    def verify(self) -> list[VerificationIssue]:
        """Recompute checksums for every archived message."""
        return self._ensure_store().verify()

    def list_labels(self) -> list[dict[str, Any]]:
        """List labels of the remote account."""
        client, _, _ = self._ensure_initialized()
        return client.list_labels()

    def close(self) -> None:
        """Clean up resources."""
        if self._store:
            self._store.close()

    def _notify(self) -> None:
        """Send progress update to callback if registered."""
        if self._on_progress:
            self._on_progress(self._progress)


def _raise_unexpected(done: set[Future[None]]) -> None:
    """Re-raise anything a worker did not handle itself."""
    for future in done:
        future.result()
