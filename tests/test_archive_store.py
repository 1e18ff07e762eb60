"""Tests for ArchiveStore: atomic content files plus the SQLite manifest."""

from __future__ import annotations

import hashlib
import sqlite3
import threading
from collections.abc import Iterator
from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest

from gmail_archiver.core.exceptions import NotFoundError, StorageError
from gmail_archiver.core.models import ArchiveProgress, Representation, RunState
from gmail_archiver.storage.archive_store import ArchiveStore


@pytest.fixture
def store(tmp_archive_dir: Path) -> Iterator[ArchiveStore]:
    """Opened store in a temporary archive directory."""
    s = ArchiveStore(tmp_archive_dir)
    s.open()
    yield s
    s.close()


def _content_files(root: Path) -> list[Path]:
    return sorted(p for p in (root / "messages").rglob("*") if p.is_file())


class _FailingManifest:
    """Wraps a sqlite3 connection so that manifest inserts fail."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def __getattr__(self, name: str) -> Any:
        return getattr(self._conn, name)

    def __enter__(self) -> sqlite3.Connection:
        return self._conn.__enter__()

    def __exit__(self, *args: Any) -> Any:
        return self._conn.__exit__(*args)

    def execute(self, sql: str, params: Any = ()) -> sqlite3.Cursor:
        if sql.lstrip().startswith("INSERT OR REPLACE"):
            raise sqlite3.OperationalError("database or disk is full")
        return self._conn.execute(sql, params)


class TestLifecycle:
    def test_open_creates_layout(self, tmp_archive_dir: Path) -> None:
        with ArchiveStore(tmp_archive_dir) as s:
            assert s.count() == 0
        assert (tmp_archive_dir / "manifest.db").exists()
        assert (tmp_archive_dir / "messages").is_dir()

    def test_use_before_open_raises(self, tmp_archive_dir: Path) -> None:
        with pytest.raises(RuntimeError, match="not open"):
            ArchiveStore(tmp_archive_dir).has("m1")

    def test_unopenable_archive_raises_storage_error(self, tmp_path: Path) -> None:
        blocker = tmp_path / "archive"
        blocker.write_text("not a directory")

        with pytest.raises(StorageError, match="Cannot open archive"):
            ArchiveStore(blocker).open()

    def test_open_sweeps_stale_temp_files(self, tmp_archive_dir: Path) -> None:
        stale = tmp_archive_dir / "messages" / "ab" / ".abc123.tmp"
        stale.parent.mkdir(parents=True)
        stale.write_bytes(b"half a message")

        with ArchiveStore(tmp_archive_dir):
            pass

        assert not stale.exists()


class TestPutAndGet:
    def test_roundtrip_preserves_record(self, store: ArchiveStore, make_record) -> None:
        record = make_record("msg001")

        store.put(record)

        assert store.get("msg001") == record

    def test_raw_content_stored_as_eml(self, store: ArchiveStore, make_record) -> None:
        record = make_record("msg001", b"Subject: x\r\n\r\nbody")
        store.put(record)

        (path,) = _content_files(store.root)
        digest = hashlib.sha256(b"msg001").hexdigest()
        assert path.read_bytes() == b"Subject: x\r\n\r\nbody"
        assert path.name == f"{digest}-{record.checksum[:16]}.eml"
        assert path.parent.name == digest[:2]

    def test_structured_content_stored_as_json(self, store: ArchiveStore, make_record) -> None:
        store.put(make_record("msg002", b'{"id": "msg002"}', Representation.FULL))

        (path,) = _content_files(store.root)
        assert path.suffix == ".json"
        assert store.get("msg002").representation is Representation.FULL

    def test_has_and_contains(self, store: ArchiveStore, make_record) -> None:
        store.put(make_record("msg001"))

        assert store.has("msg001")
        assert "msg001" in store
        assert not store.has("other")
        assert 42 not in store

    def test_has_does_not_read_content(self, store: ArchiveStore, make_record) -> None:
        store.put(make_record("msg001"))

        with patch.object(Path, "read_bytes") as mock_read:
            assert store.has("msg001")

        mock_read.assert_not_called()

    def test_get_unknown_raises_not_found(self, store: ArchiveStore) -> None:
        with pytest.raises(NotFoundError):
            store.get("missing")

    def test_get_with_deleted_content_raises_storage_error(
        self, store: ArchiveStore, make_record
    ) -> None:
        store.put(make_record("msg001"))
        for path in _content_files(store.root):
            path.unlink()

        with pytest.raises(StorageError) as exc_info:
            store.get("msg001")

        assert exc_info.value.fatal is False

    def test_put_replaces_changed_content(self, store: ArchiveStore, make_record) -> None:
        store.put(make_record("msg001", b"first version"))
        store.put(make_record("msg001", b"second version"))

        assert store.count() == 1
        assert store.get("msg001").content == b"second version"
        assert len(_content_files(store.root)) == 1

    def test_put_same_record_twice_is_idempotent(self, store: ArchiveStore, make_record) -> None:
        record = make_record("msg001")
        store.put(record)
        store.put(record)

        assert store.list_ids() == ["msg001"]
        assert len(_content_files(store.root)) == 1

    def test_list_ids_and_counts(self, store: ArchiveStore, make_record) -> None:
        store.put(make_record("b"))
        store.put(make_record("a"))
        store.put(make_record("c", b"{}", Representation.FULL))

        assert store.list_ids() == ["a", "b", "c"]
        assert store.count() == 3
        assert store.count_by_representation() == {"raw": 2, "full": 1}

    def test_persists_across_reopen(self, tmp_archive_dir: Path, make_record) -> None:
        with ArchiveStore(tmp_archive_dir) as s:
            s.put(make_record("msg001"))

        with ArchiveStore(tmp_archive_dir) as s:
            assert s.has("msg001")
            assert s.get("msg001").verify_checksum()


class TestAtomicity:
    """A failed put leaves the message absent, with no stray content."""

    def test_failed_rename_leaves_nothing_behind(
        self, store: ArchiveStore, make_record
    ) -> None:
        with patch(
            "gmail_archiver.storage.archive_store.os.replace", side_effect=OSError("disk full")
        ):
            with pytest.raises(StorageError, match="Failed to write content"):
                store.put(make_record("msg001"))

        assert not store.has("msg001")
        assert _content_files(store.root) == []

    def test_failed_manifest_commit_removes_content(
        self, store: ArchiveStore, make_record
    ) -> None:
        store._conn = _FailingManifest(store.conn)  # type: ignore[assignment]

        with pytest.raises(StorageError, match="manifest"):
            store.put(make_record("msg001"))

        assert not store.has("msg001")
        assert _content_files(store.root) == []

    def test_failed_overwrite_keeps_previous_version(
        self, store: ArchiveStore, make_record
    ) -> None:
        store.put(make_record("msg001", b"original"))

        with patch(
            "gmail_archiver.storage.archive_store.os.replace", side_effect=OSError("disk full")
        ):
            with pytest.raises(StorageError):
                store.put(make_record("msg001", b"replacement"))

        assert store.get("msg001").content == b"original"
        assert store.verify() == []

    def test_concurrent_puts(self, store: ArchiveStore, make_record) -> None:
        records = [make_record(f"msg{i:03d}", f"body {i}".encode()) for i in range(40)]

        threads = [
            threading.Thread(target=store.put, args=(record,)) for record in records
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert store.count() == 40
        assert store.verify() == []

    def test_get_during_concurrent_replacement(self, store: ArchiveStore, make_record) -> None:
        versions = [make_record("msg001", f"version {i}".encode()) for i in range(2)]
        store.put(versions[0])
        done = threading.Event()

        def rewrite() -> None:
            try:
                for i in range(200):
                    store.put(versions[i % 2])
            finally:
                done.set()

        writer = threading.Thread(target=rewrite)
        writer.start()
        finished = False
        while not finished:
            finished = done.is_set()
            record = store.get("msg001")
            assert record.verify_checksum()
            assert record.content in (b"version 0", b"version 1")
        writer.join()

        assert store.verify() == []


class TestVerify:
    def test_intact_archive_has_no_issues(self, store: ArchiveStore, make_record) -> None:
        store.put(make_record("a"))
        store.put(make_record("b"))

        assert store.verify() == []

    def test_reports_missing_content(self, store: ArchiveStore, make_record) -> None:
        store.put(make_record("a"))
        for path in _content_files(store.root):
            path.unlink()

        (issue,) = store.verify()
        assert issue.message_id == "a"
        assert issue.problem == "missing"

    def test_reports_size_mismatch(self, store: ArchiveStore, make_record) -> None:
        store.put(make_record("a", b"twelve bytes"))
        (path,) = _content_files(store.root)
        path.write_bytes(b"short")

        (issue,) = store.verify()
        assert issue.problem == "size_mismatch"

    def test_reports_checksum_mismatch(self, store: ArchiveStore, make_record) -> None:
        store.put(make_record("a", b"twelve bytes"))
        (path,) = _content_files(store.root)
        path.write_bytes(b"TWELVE BYTES")

        (issue,) = store.verify()
        assert issue.problem == "checksum_mismatch"

    def test_restricted_to_given_ids(self, store: ArchiveStore, make_record) -> None:
        store.put(make_record("a"))
        store.put(make_record("b", b"other"))
        for path in _content_files(store.root):
            path.unlink()

        issues = store.verify(["b", "unknown"])
        assert [i.message_id for i in issues] == ["b"]


class TestLabels:
    def test_upsert_and_list(self, store: ArchiveStore) -> None:
        count = store.upsert_labels(
            [
                {"id": "Label_1", "name": "Work", "type": "user"},
                {"id": "INBOX", "name": "INBOX", "type": "system"},
            ]
        )

        assert count == 2
        assert store.list_labels() == [
            {"id": "INBOX", "name": "INBOX", "type": "system"},
            {"id": "Label_1", "name": "Work", "type": "user"},
        ]

    def test_upsert_updates_renamed_label(self, store: ArchiveStore) -> None:
        store.upsert_labels([{"id": "Label_1", "name": "Work"}])
        store.upsert_labels([{"id": "Label_1", "name": "Job"}])

        assert store.list_labels() == [{"id": "Label_1", "name": "Job", "type": ""}]


class TestRunLog:
    def test_no_runs_yet(self, store: ArchiveStore) -> None:
        assert store.last_run() is None

    def test_start_and_complete_run(self, store: ArchiveStore) -> None:
        run_id = store.start_run("in:sent")
        progress = ArchiveProgress(
            total_seen=5,
            archived=3,
            skipped=1,
            failed=1,
            state=RunState.ABORTED,
            abort_reason="Listing messages failed",
            last_page_token="tok7",
        )

        store.complete_run(run_id, progress)

        run = store.last_run()
        assert run is not None
        assert run["run_id"] == run_id
        assert run["query"] == "in:sent"
        assert run["state"] == "aborted"
        assert (run["archived"], run["skipped"], run["failed"]) == (3, 1, 1)
        assert run["last_page_token"] == "tok7"
        assert run["completed_at"]

    def test_last_run_is_most_recent(self, store: ArchiveStore) -> None:
        store.start_run()
        second = store.start_run()

        assert store.last_run()["run_id"] == second
