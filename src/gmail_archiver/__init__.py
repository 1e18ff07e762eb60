"""Gmail Archiver - Download every message of a Gmail account into a verifiable local archive."""

from gmail_archiver.core.models import (
    ArchiveProgress,
    MessagePage,
    MessageRecord,
    Representation,
    RunState,
    VerificationIssue,
)
from gmail_archiver.pipeline.archiver import Archiver
from gmail_archiver.storage.archive_store import ArchiveStore

__all__ = [
    "ArchiveProgress",
    "ArchiveStore",
    "Archiver",
    "MessagePage",
    "MessageRecord",
    "Representation",
    "RunState",
    "VerificationIssue",
]
