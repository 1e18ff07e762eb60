"""Dataclasses for the Gmail Archiver domain model."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

MessageId = str
PageToken = str


class Representation(str, Enum):
    """Which Gmail message format a record holds."""

    RAW = "raw"
    FULL = "full"

    @property
    def suffix(self) -> str:
        return ".eml" if self is Representation.RAW else ".json"


class RunState(str, Enum):
    """Archive run state machine."""

    IDLE = "idle"
    ENUMERATING = "enumerating"
    FETCHING = "fetching"
    STORING = "storing"
    COMPLETED = "completed"
    ABORTED = "aborted"


def compute_checksum(content: bytes) -> str:
    """SHA-256 hex digest of message content."""
    return hashlib.sha256(content).hexdigest()


@dataclass(frozen=True)
class MessagePage:
    """One page of the Gmail message listing."""

    message_ids: tuple[MessageId, ...]
    next_page_token: PageToken | None = None


@dataclass(frozen=True)
class MessageRecord:
    """Durable unit of storage: one message and its fetch metadata."""

    message_id: MessageId
    content: bytes
    representation: Representation
    fetched_at: datetime
    checksum: str
    size: int
    thread_id: str = ""
    label_ids: tuple[str, ...] = field(default_factory=tuple)
    internal_date: datetime | None = None

    @classmethod
    def create(
        cls,
        message_id: MessageId,
        content: bytes,
        representation: Representation,
        fetched_at: datetime,
        *,
        thread_id: str = "",
        label_ids: tuple[str, ...] = (),
        internal_date: datetime | None = None,
    ) -> MessageRecord:
        """Build a record, computing size and checksum from the content."""
        return cls(
            message_id=message_id,
            content=content,
            representation=representation,
            fetched_at=fetched_at,
            checksum=compute_checksum(content),
            size=len(content),
            thread_id=thread_id,
            label_ids=tuple(label_ids),
            internal_date=internal_date,
        )

    def verify_checksum(self) -> bool:
        return compute_checksum(self.content) == self.checksum


@dataclass(frozen=True)
class VerificationIssue:
    """A problem found while verifying archived content against the manifest."""

    message_id: MessageId
    problem: str
    detail: str = ""


@dataclass
class ArchiveProgress:
    """Mutable progress counters owned by one archive run."""

    total_estimated: int = 0
    total_seen: int = 0
    archived: int = 0
    skipped: int = 0
    failed: int = 0
    state: RunState = RunState.IDLE
    abort_reason: str = ""
    last_page_token: PageToken | None = None

    @property
    def completed(self) -> bool:
        return self.state is RunState.COMPLETED

    @property
    def aborted(self) -> bool:
        return self.state is RunState.ABORTED

    def summary(self) -> str:
        return (
            f"archived={self.archived} skipped={self.skipped} "
            f"failed={self.failed} seen={self.total_seen}"
        )
