"""Durable local archive: SQLite manifest plus one content file per message."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import sqlite3
import tempfile
import threading
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from gmail_archiver.core.exceptions import NotFoundError, StorageError
from gmail_archiver.core.models import (
    ArchiveProgress,
    MessageId,
    MessageRecord,
    Representation,
    VerificationIssue,
    compute_checksum,
)

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = "manifest.db"
MESSAGES_DIRNAME = "messages"
TEMP_SUFFIX = ".tmp"


class ArchiveStore:
    """Stores MessageRecords under ``root`` and answers manifest queries.

    Layout:
    - manifest.db: SQLite index (messages, labels, archive_runs)
    - messages/<h[:2]>/<h>-<checksum[:16]>.eml|.json, h = sha256(message_id)

    A manifest row is committed only after its content file is durable, so
    has() and get() never see a partially written record. All methods may be
    called from several threads.
    """

    def __init__(self, root: Path) -> None:
        self._root = root
        self._messages_dir = root / MESSAGES_DIRNAME
        self._db_path = root / MANIFEST_FILENAME
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    @property
    def root(self) -> Path:
        return self._root

    def open(self) -> None:
        """Open the manifest, ensure the schema exists and sweep stale temp files."""
        try:
            self._messages_dir.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=FULL")
            self._create_tables()
        except (OSError, sqlite3.Error) as e:
            raise StorageError(f"Cannot open archive at {self._root}: {e}") from e
        self._sweep_temp_files()

    def close(self) -> None:
        """Close the manifest connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    def __enter__(self) -> ArchiveStore:
        self.open()
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Archive not open. Call open() first.")
        return self._conn

    def _create_tables(self) -> None:
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS messages (
                message_id TEXT PRIMARY KEY,
                thread_id TEXT NOT NULL DEFAULT '',
                representation TEXT NOT NULL,
                checksum TEXT NOT NULL,
                size INTEGER NOT NULL,
                content_path TEXT NOT NULL,
                label_ids TEXT NOT NULL DEFAULT '[]',
                internal_date TEXT DEFAULT '',
                fetched_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_messages_representation
                ON messages(representation);

            CREATE TABLE IF NOT EXISTS labels (
                label_id TEXT PRIMARY KEY,
                label_name TEXT NOT NULL,
                label_type TEXT DEFAULT '',
                resource TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS archive_runs (
                run_id INTEGER PRIMARY KEY AUTOINCREMENT,
                query TEXT DEFAULT '',
                started_at TEXT NOT NULL,
                completed_at TEXT,
                state TEXT DEFAULT 'idle',
                total_seen INTEGER DEFAULT 0,
                archived INTEGER DEFAULT 0,
                skipped INTEGER DEFAULT 0,
                failed INTEGER DEFAULT 0,
                abort_reason TEXT DEFAULT '',
                last_page_token TEXT DEFAULT ''
            );
        """)

    def _sweep_temp_files(self) -> None:
        """Remove temp files left behind by an interrupted write."""
        for tmp in self._messages_dir.glob(f"*/.*{TEMP_SUFFIX}"):
            logger.info("Removing stale temp file %s", tmp)
            tmp.unlink(missing_ok=True)

    # ---------- manifest ----------

    def has(self, message_id: MessageId) -> bool:
        """Check whether a message is archived, without touching its content."""
        with self._lock:
            row = self.conn.execute(
                "SELECT 1 FROM messages WHERE message_id = ?", (message_id,)
            ).fetchone()
        return row is not None

    def __contains__(self, message_id: object) -> bool:
        return isinstance(message_id, str) and self.has(message_id)

    def list_ids(self) -> list[MessageId]:
        """All archived message IDs."""
        with self._lock:
            rows = self.conn.execute(
                "SELECT message_id FROM messages ORDER BY message_id"
            ).fetchall()
        return [row["message_id"] for row in rows]

    def count(self) -> int:
        with self._lock:
            row = self.conn.execute("SELECT COUNT(*) AS cnt FROM messages").fetchone()
        return int(row["cnt"])

    def count_by_representation(self) -> dict[str, int]:
        """Get count of archived messages grouped by representation."""
        with self._lock:
            rows = self.conn.execute(
                "SELECT representation, COUNT(*) AS cnt FROM messages GROUP BY representation"
            ).fetchall()
        return {row["representation"]: row["cnt"] for row in rows}

    # ---------- content ----------

    def content_path_for(self, record: MessageRecord) -> Path:
        """Relative path of a record's content file inside the archive."""
        digest = hashlib.sha256(record.message_id.encode("utf-8")).hexdigest()
        filename = f"{digest}-{record.checksum[:16]}{record.representation.suffix}"
        return Path(MESSAGES_DIRNAME) / digest[:2] / filename

    def put(self, record: MessageRecord) -> None:
        """Durably store a record and its manifest entry, or nothing at all.

        Raises:
            StorageError: When the content or the manifest row cannot be written.
                The message is then absent (or unchanged, if previously archived).
        """
        relative = self.content_path_for(record)
        path = self._root / relative

        with self._lock:
            previous = self._get_row(record.message_id)
            existed = path.exists()

            try:
                self._write_atomic(path, record.content)
            except OSError as e:
                if not existed:
                    path.unlink(missing_ok=True)
                raise StorageError(
                    f"Failed to write content for {record.message_id}: {e}"
                ) from e

            try:
                with self.conn:
                    self.conn.execute(
                        """INSERT OR REPLACE INTO messages
                           (message_id, thread_id, representation, checksum, size,
                            content_path, label_ids, internal_date, fetched_at)
                           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                        (
                            record.message_id,
                            record.thread_id,
                            record.representation.value,
                            record.checksum,
                            record.size,
                            relative.as_posix(),
                            json.dumps(list(record.label_ids)),
                            record.internal_date.isoformat() if record.internal_date else "",
                            record.fetched_at.isoformat(),
                        ),
                    )
            except sqlite3.Error as e:
                if not existed:
                    path.unlink(missing_ok=True)
                raise StorageError(
                    f"Failed to record {record.message_id} in manifest: {e}"
                ) from e

            if previous is not None and previous["content_path"] != relative.as_posix():
                (self._root / previous["content_path"]).unlink(missing_ok=True)

        logger.debug("Stored %s at %s", record.message_id, relative)

    def _write_atomic(self, path: Path, content: bytes) -> None:
        """Write to a temp file in the target directory, fsync, then rename into place."""
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".", suffix=TEMP_SUFFIX)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        _fsync_directory(path.parent)

    def get(self, message_id: MessageId) -> MessageRecord:
        """Load an archived record.

        Raises:
            NotFoundError: If the message is not in the manifest.
            StorageError: If the manifest row exists but its content is unreadable.
        """
        # Row and content are read together so a concurrent put cannot swap the file
        with self._lock:
            row = self._get_row(message_id)
            if row is None:
                raise NotFoundError(
                    f"Message not archived: {message_id}", message_id=message_id
                )
            try:
                content = (self._root / row["content_path"]).read_bytes()
            except OSError as e:
                raise StorageError(
                    f"Content missing for archived message {message_id}: {e}", fatal=False
                ) from e

        return MessageRecord(
            message_id=row["message_id"],
            content=content,
            representation=Representation(row["representation"]),
            fetched_at=datetime.fromisoformat(row["fetched_at"]),
            checksum=row["checksum"],
            size=row["size"],
            thread_id=row["thread_id"],
            label_ids=tuple(json.loads(row["label_ids"])),
            internal_date=(
                datetime.fromisoformat(row["internal_date"]) if row["internal_date"] else None
            ),
        )

    def _get_row(self, message_id: MessageId) -> dict[str, Any] | None:
        row = self.conn.execute(
            "SELECT * FROM messages WHERE message_id = ?", (message_id,)
        ).fetchone()
        return dict(row) if row else None

    def verify(self, message_ids: Iterable[MessageId] | None = None) -> list[VerificationIssue]:
        """Recompute checksums of archived content against the manifest.

        Args:
            message_ids: Restrict verification to these IDs; None checks everything.

        Returns:
            One VerificationIssue per problem found (empty when the archive is intact).
        """
        with self._lock:
            if message_ids is None:
                rows = [dict(r) for r in self.conn.execute("SELECT * FROM messages")]
            else:
                rows = [r for r in (self._get_row(mid) for mid in message_ids) if r]

            issues: list[VerificationIssue] = []
            for row in rows:
                issue = self._verify_row(row)
                if issue is not None:
                    issues.append(issue)

        logger.info("Verified %d messages, %d issues", len(rows), len(issues))
        return issues

    def _verify_row(self, row: dict[str, Any]) -> VerificationIssue | None:
        message_id = row["message_id"]
        path = self._root / row["content_path"]
        try:
            content = path.read_bytes()
        except OSError as e:
            return VerificationIssue(message_id, "missing", str(e))
        if len(content) != row["size"]:
            return VerificationIssue(
                message_id, "size_mismatch", f"expected {row['size']}, got {len(content)}"
            )
        if compute_checksum(content) != row["checksum"]:
            return VerificationIssue(message_id, "checksum_mismatch", str(path))
        return None

    # ---------- labels ----------

    def upsert_labels(self, labels: list[dict[str, Any]]) -> int:
        """Bulk upsert label resources from the Gmail API.

        Returns:
            Number of labels upserted.
        """
        now = datetime.now(UTC).isoformat()
        rows = [
            (lbl["id"], lbl.get("name", lbl["id"]), lbl.get("type", ""),
             json.dumps(lbl, sort_keys=True), now)
            for lbl in labels
        ]
        try:
            with self._lock, self.conn:
                self.conn.executemany(
                    """INSERT INTO labels (label_id, label_name, label_type, resource, updated_at)
                       VALUES (?, ?, ?, ?, ?)
                       ON CONFLICT(label_id) DO UPDATE SET
                           label_name = excluded.label_name,
                           label_type = excluded.label_type,
                           resource = excluded.resource,
                           updated_at = excluded.updated_at""",
                    rows,
                )
        except sqlite3.Error as e:
            raise StorageError(f"Failed to store labels: {e}") from e
        return len(rows)

    def list_labels(self) -> list[dict[str, str]]:
        """Archived labels as dicts with 'id', 'name' and 'type', sorted by name."""
        with self._lock:
            rows = self.conn.execute(
                "SELECT label_id, label_name, label_type FROM labels ORDER BY label_name"
            ).fetchall()
        return [
            {"id": row["label_id"], "name": row["label_name"], "type": row["label_type"]}
            for row in rows
        ]

    # ---------- run audit log ----------

    def start_run(self, query: str | None = None) -> int:
        """Record the start of an archive run. Returns the run_id."""
        now = datetime.now(UTC).isoformat()
        try:
            with self._lock, self.conn:
                cursor = self.conn.execute(
                    "INSERT INTO archive_runs (query, started_at) VALUES (?, ?)",
                    (query or "", now),
                )
        except sqlite3.Error as e:
            raise StorageError(f"Failed to record run start: {e}") from e
        return cursor.lastrowid or 0

    def complete_run(self, run_id: int, progress: ArchiveProgress) -> None:
        """Record the final counts and state of an archive run."""
        now = datetime.now(UTC).isoformat()
        try:
            with self._lock, self.conn:
                self.conn.execute(
                    """UPDATE archive_runs SET
                       completed_at = ?, state = ?, total_seen = ?, archived = ?,
                       skipped = ?, failed = ?, abort_reason = ?, last_page_token = ?
                       WHERE run_id = ?""",
                    (
                        now,
                        progress.state.value,
                        progress.total_seen,
                        progress.archived,
                        progress.skipped,
                        progress.failed,
                        progress.abort_reason,
                        progress.last_page_token or "",
                        run_id,
                    ),
                )
        except sqlite3.Error as e:
            raise StorageError(f"Failed to record run completion: {e}") from e

    def last_run(self) -> dict[str, Any] | None:
        """The most recent archive run, or None if there has been none."""
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM archive_runs ORDER BY run_id DESC LIMIT 1"
            ).fetchone()
        return dict(row) if row else None


def _fsync_directory(directory: Path) -> None:
    """Persist a rename by syncing its directory entry (POSIX only)."""
    if not hasattr(os, "O_DIRECTORY"):
        return
    fd = os.open(directory, os.O_RDONLY | os.O_DIRECTORY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)
