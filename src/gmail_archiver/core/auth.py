"""OAuth 2.0 authentication with token caching for Gmail API."""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Protocol

import httplib2
from google.auth.exceptions import RefreshError, TransportError as GoogleTransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_httplib2 import AuthorizedHttp
from google_auth_oauthlib.flow import InstalledAppFlow
from googleapiclient.discovery import Resource, build

from gmail_archiver.core.exceptions import AuthError

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/gmail.readonly"]


class AuthProvider(Protocol):
    """Capability the transport uses to obtain fresh authorization."""

    def get_access_token(self) -> str: ...

    def refresh(self) -> str: ...


class GoogleAuthProvider:
    """AuthProvider backed by google-auth user credentials.

    The same Credentials object is shared with the API service, so a refresh
    here is picked up by every subsequent request.
    """

    def __init__(self, creds: Credentials, token_path: Path | None = None) -> None:
        self._creds = creds
        self._token_path = token_path
        self._lock = threading.Lock()

    @property
    def credentials(self) -> Credentials:
        return self._creds

    def get_access_token(self) -> str:
        with self._lock:
            if not self._creds.valid:
                self._refresh_locked()
            return self._creds.token

    def refresh(self) -> str:
        with self._lock:
            self._refresh_locked()
            return self._creds.token

    def _refresh_locked(self) -> None:
        if not self._creds.refresh_token:
            raise AuthError("Access token expired and no refresh token is available")
        try:
            self._creds.refresh(Request())
        except RefreshError as e:
            raise AuthError(f"Token refresh rejected: {e}") from e
        except GoogleTransportError as e:
            raise AuthError(f"Token refresh failed: {e}", status=None) from e
        logger.info("Access token refreshed")
        if self._token_path is not None:
            _save_token(self._creds, self._token_path)


def authenticate(credentials_path: Path, token_path: Path) -> Credentials:
    """Authenticate with Gmail API, using cached token if available.

    Args:
        credentials_path: Path to OAuth 2.0 client credentials JSON.
        token_path: Path to store/load the OAuth token.

    Returns:
        Valid Google OAuth2 credentials.

    Raises:
        AuthError: If authentication fails.
    """
    creds: Credentials | None = None

    if token_path.exists():
        try:
            creds = Credentials.from_authorized_user_file(str(token_path), SCOPES)
        except (ValueError, OSError) as e:
            logger.warning("Failed to load cached token: %s", e)
            creds = None

    if creds and creds.valid:
        return creds

    if creds and creds.expired and creds.refresh_token:
        try:
            creds.refresh(Request())
            _save_token(creds, token_path)
            return creds
        except (RefreshError, GoogleTransportError) as e:
            logger.warning("Token refresh failed, re-authenticating: %s", e)

    if not credentials_path.exists():
        raise AuthError(
            f"Credentials file not found: {credentials_path}. "
            "Download it from Google Cloud Console.",
            status=None,
        )

    try:
        flow = InstalledAppFlow.from_client_secrets_file(str(credentials_path), SCOPES)
        creds = flow.run_local_server(port=0)
    except Exception as e:
        raise AuthError(f"OAuth flow failed: {e}", status=None) from e

    _save_token(creds, token_path)
    logger.info("Authentication successful, token cached at %s", token_path)
    return creds


def build_gmail_service(creds: Credentials) -> Resource:
    """Build a Gmail API service resource."""
    return build("gmail", "v1", credentials=creds, cache_discovery=False)


def build_authorized_http(creds: Credentials, timeout: float) -> AuthorizedHttp:
    """Build an authorized HTTP client for one thread.

    Refresh-on-401 is disabled here; the Transport performs that refresh
    itself, at most once per call.
    """
    return AuthorizedHttp(creds, http=httplib2.Http(timeout=timeout), refresh_status_codes=())


def _save_token(creds: Credentials, token_path: Path) -> None:
    """Save credentials to the token cache file."""
    token_path.parent.mkdir(parents=True, exist_ok=True)
    token_path.write_text(creds.to_json())
