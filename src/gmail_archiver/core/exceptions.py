"""Custom exceptions for the Gmail Archiver."""

from __future__ import annotations

from enum import Enum


class TransportErrorKind(str, Enum):
    """How the transport classifies a failed API call."""

    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class GmailArchiverError(Exception):
    """Base exception for all Gmail Archiver errors."""


class ConfigError(GmailArchiverError):
    """Settings are missing or invalid."""


class TransportError(GmailArchiverError):
    """A Gmail API call failed.

    Attributes:
        kind: Classification used by the retry loop.
        status: HTTP status code, when the failure carried one.
        account_wide: True when the failure affects every request of the
            account (revoked credentials, API disabled) rather than one message.
    """

    def __init__(
        self,
        message: str,
        kind: TransportErrorKind = TransportErrorKind.PERMANENT,
        *,
        status: int | None = None,
        account_wide: bool = False,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.status = status
        self.account_wide = account_wide


class RateLimitError(TransportError):
    """Gmail API rate limit exceeded and retries exhausted."""

    def __init__(self, message: str, *, status: int | None = 429) -> None:
        super().__init__(message, TransportErrorKind.RATE_LIMITED, status=status)


class AuthError(TransportError):
    """Credentials are invalid, revoked, or could not be refreshed."""

    def __init__(self, message: str, *, status: int | None = 401) -> None:
        super().__init__(
            message, TransportErrorKind.PERMANENT, status=status, account_wide=True
        )


class NotFoundError(GmailArchiverError):
    """The requested message does not exist (remotely or in the archive)."""

    def __init__(self, message: str, *, message_id: str = "") -> None:
        super().__init__(message)
        self.message_id = message_id


class StorageError(GmailArchiverError):
    """Writing to or reading from the local archive failed."""

    def __init__(self, message: str, *, fatal: bool = True) -> None:
        super().__init__(message)
        self.fatal = fatal
