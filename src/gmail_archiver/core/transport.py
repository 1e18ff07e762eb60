"""Rate-limited transport: retry, backoff and error classification for API calls."""

from __future__ import annotations

import json
import logging
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Any, NoReturn

from googleapiclient.errors import HttpError

from gmail_archiver.core.auth import AuthProvider
from gmail_archiver.core.exceptions import (
    AuthError,
    NotFoundError,
    RateLimitError,
    TransportError,
    TransportErrorKind,
)

logger = logging.getLogger(__name__)

RATE_LIMIT_REASONS = frozenset({"rateLimitExceeded", "userRateLimitExceeded"})
TRANSIENT_STATUSES = frozenset({408, 500, 502, 503, 504})
NOT_FOUND_STATUSES = frozenset({404, 410})


def _error_reasons(exc: HttpError) -> set[str]:
    """Extract the Google API error 'reason' codes from an HttpError body."""
    reasons: set[str] = set()
    details = getattr(exc, "error_details", None)
    if isinstance(details, list):
        reasons.update(d["reason"] for d in details if isinstance(d, dict) and "reason" in d)
    try:
        payload = json.loads(exc.content.decode("utf-8"))
    except (AttributeError, UnicodeDecodeError, ValueError):
        return reasons
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        for item in error.get("errors", []):
            if isinstance(item, dict) and "reason" in item:
                reasons.add(item["reason"])
    return reasons


def _http_status(exc: HttpError) -> int:
    status = getattr(exc, "status_code", None)
    if status is None:
        status = exc.resp.status
    return int(status)


def classify_error(exc: Exception, context: str) -> TransportError | NotFoundError:
    """Map a failed API call to the transport's error taxonomy.

    Returns (does not raise) the classified error so the retry loop can
    decide what to do with it.
    """
    if isinstance(exc, (TransportError, NotFoundError)):
        return exc

    if isinstance(exc, HttpError):
        status = _http_status(exc)
        reasons = _error_reasons(exc)
        if status == 429 or (status == 403 and reasons & RATE_LIMIT_REASONS):
            return RateLimitError(f"Rate limited during {context}: {exc}", status=status)
        if status == 401:
            return TransportError(
                f"Authorization expired during {context}: {exc}",
                TransportErrorKind.TRANSIENT,
                status=status,
            )
        if status in NOT_FOUND_STATUSES:
            return NotFoundError(f"Not found during {context}: {exc}")
        if status in TRANSIENT_STATUSES:
            return TransportError(
                f"Server error during {context}: {exc}",
                TransportErrorKind.TRANSIENT,
                status=status,
            )
        return TransportError(
            f"Failed to {context}: {exc}",
            TransportErrorKind.PERMANENT,
            status=status,
            account_wide=status == 403,
        )

    if isinstance(exc, OSError):
        return TransportError(
            f"Network error during {context}: {exc}", TransportErrorKind.TRANSIENT
        )

    if "rateLimitExceeded" in str(exc):
        return RateLimitError(f"Rate limited during {context}: {exc}", status=None)

    return TransportError(f"Failed to {context}: {exc}", TransportErrorKind.PERMANENT)


def _raise(error: Exception, cause: Exception) -> NoReturn:
    if error is cause:
        raise error
    raise error from cause


def is_authorization_expired(error: TransportError | NotFoundError) -> bool:
    return (
        isinstance(error, TransportError)
        and error.kind is TransportErrorKind.TRANSIENT
        and error.status == 401
    )


@dataclass(frozen=True)
class _RetryState:
    """Per-call retry bookkeeping, threaded through one execute() loop."""

    backoff: float
    attempt: int = 0
    waited: float = 0.0
    refreshed: bool = False


class Transport:
    """Executes googleapiclient requests with bounded retry and backoff.

    Rate-limited and transient failures are retried with exponential backoff
    plus full jitter, bounded by both an attempt cap and a total-wait cap.
    Permanent failures surface immediately. A 401 triggers one credential
    refresh per call before the request is retried.

    httplib2 connections are not thread-safe. When ``http_factory`` is given,
    each calling thread executes its requests over its own HTTP client built
    by the factory.
    """

    def __init__(
        self,
        auth: AuthProvider | None = None,
        *,
        max_retries: int = 5,
        initial_backoff_seconds: float = 1.0,
        max_backoff_seconds: float = 60.0,
        max_total_wait_seconds: float = 300.0,
        num_retries: int = 0,
        http_factory: Callable[[], Any] | None = None,
    ) -> None:
        self._auth = auth
        self._max_retries = max_retries
        self._initial_backoff = initial_backoff_seconds
        self._max_backoff = max_backoff_seconds
        self._max_total_wait = max_total_wait_seconds
        self._num_retries = num_retries
        self._http_factory = http_factory
        self._local = threading.local()

    def _thread_http(self) -> Any | None:
        """The calling thread's HTTP client, created on first use."""
        if self._http_factory is None:
            return None
        http = getattr(self._local, "http", None)
        if http is None:
            http = self._http_factory()
            self._local.http = http
        return http

    def execute(self, request: Any, context: str) -> Any:
        """Execute a single API request.

        Args:
            request: A googleapiclient HttpRequest object.
            context: Description for log and error messages (e.g. "list messages").

        Returns:
            The API response dict.

        Raises:
            RateLimitError: When retries are exhausted on rate limiting.
            TransportError: On permanent failures or exhausted transient retries.
            AuthError: When authorization cannot be refreshed.
            NotFoundError: When the requested resource does not exist.
        """
        state = _RetryState(backoff=self._initial_backoff)
        http = self._thread_http()
        if self._auth is not None:
            # Expired tokens are refreshed here, under the provider's lock
            self._auth.get_access_token()

        while True:
            try:
                if http is None:
                    return request.execute(num_retries=self._num_retries)
                return request.execute(http=http, num_retries=self._num_retries)
            except Exception as e:
                error = classify_error(e, context)
                state = self._next_state(state, error, context, e)

    def _next_state(
        self,
        state: _RetryState,
        error: TransportError | NotFoundError,
        context: str,
        cause: Exception,
    ) -> _RetryState:
        """Decide whether to retry; sleep and return the new state, or raise."""
        if isinstance(error, NotFoundError):
            _raise(error, cause)

        if is_authorization_expired(error):
            if state.refreshed or self._auth is None:
                raise AuthError(f"Authorization rejected during {context}") from cause
            logger.info("Authorization expired during %s, refreshing credentials", context)
            self._auth.refresh()
            return replace(state, refreshed=True)

        if error.kind is TransportErrorKind.PERMANENT:
            _raise(error, cause)

        if state.attempt >= self._max_retries:
            _raise(self._exhausted(error, context, state), cause)

        sleep_time = min(state.backoff, self._max_backoff)
        jitter = random.uniform(0, sleep_time)
        if state.waited + jitter > self._max_total_wait:
            _raise(self._exhausted(error, context, state), cause)

        logger.warning(
            "%s during %s (attempt %d/%d), sleeping %.2fs (backoff=%.2f)",
            "Rate limited" if error.kind is TransportErrorKind.RATE_LIMITED else "Transient error",
            context, state.attempt + 1, self._max_retries, jitter, state.backoff,
        )
        time.sleep(jitter)
        return replace(
            state,
            attempt=state.attempt + 1,
            waited=state.waited + jitter,
            backoff=min(state.backoff * 2, self._max_backoff),
        )

    def _exhausted(
        self, error: TransportError, context: str, state: _RetryState
    ) -> TransportError:
        if error.kind is TransportErrorKind.RATE_LIMITED:
            return RateLimitError(
                f"Rate limited during {context} after {state.attempt} retries "
                f"({state.waited:.1f}s waited): {error}",
                status=error.status,
            )
        return TransportError(
            f"Gave up on {context} after {state.attempt} retries "
            f"({state.waited:.1f}s waited): {error}",
            error.kind,
            status=error.status,
        )
