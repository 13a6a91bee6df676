"""OAuth 2.0 credentials with token caching and near-expiry refresh for IMAP."""

from __future__ import annotations

import logging
import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path

from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow

from mailsync.core.exceptions import AuthenticationError

logger = logging.getLogger(__name__)

SCOPES = ["https://mail.google.com/"]
REFRESH_BUFFER_SECONDS = 300


def authenticate(credentials_path: Path, token_path: Path) -> Credentials:
    """Obtain credentials, running the installed-app consent flow if needed.

    Args:
        credentials_path: Path to OAuth 2.0 client credentials JSON.
        token_path: Path to store/load the OAuth token.

    Returns:
        Google OAuth2 credentials carrying a refresh token.

    Raises:
        AuthenticationError: If no usable credentials can be obtained.
    """
    creds: Credentials | None = None

    if token_path.exists():
        try:
            creds = Credentials.from_authorized_user_file(str(token_path), SCOPES)
        except (ValueError, OSError) as e:
            logger.warning("Failed to load cached token: %s", e)
            creds = None

    if creds and creds.refresh_token:
        return creds

    if not credentials_path.exists():
        raise AuthenticationError(
            f"Credentials file not found: {credentials_path}. "
            "Download it from Google Cloud Console."
        )

    try:
        flow = InstalledAppFlow.from_client_secrets_file(str(credentials_path), SCOPES)
        creds = flow.run_local_server(port=0)
    except Exception as e:
        raise AuthenticationError(f"OAuth flow failed: {e}") from e

    _save_token(creds, token_path)
    logger.info("Authentication successful, token cached at %s", token_path)
    return creds


class GoogleTokenProvider:
    """Hands out currently valid bearer tokens for one account.

    Tokens expiring within ``refresh_buffer_seconds`` are refreshed first and
    the refreshed token is written back to the cache file.
    """

    def __init__(
        self,
        token_path: Path,
        email: str,
        *,
        refresh_buffer_seconds: int = REFRESH_BUFFER_SECONDS,
        credentials: Credentials | None = None,
    ) -> None:
        self._token_path = token_path
        self._email = email
        self._buffer = timedelta(seconds=refresh_buffer_seconds)
        self._creds = credentials
        self._lock = threading.Lock()

    @property
    def email(self) -> str:
        return self._email

    def get_valid_token(self) -> tuple[str, str]:
        """Return ``(access_token, account_email)``, refreshing when near expiry.

        Raises:
            AuthenticationError: When no token is cached or refresh fails.
        """
        if not self._email:
            raise AuthenticationError("Account email is not configured")

        with self._lock:
            creds = self._load()
            if self._needs_refresh(creds):
                logger.info("Access token expired or expiring soon, refreshing...")
                if not creds.refresh_token:
                    raise AuthenticationError("No refresh token available; re-authenticate")
                try:
                    creds.refresh(Request())
                except GoogleAuthError as e:
                    raise AuthenticationError(f"Token refresh failed: {e}") from e
                try:
                    _save_token(creds, self._token_path)
                except OSError as e:
                    logger.warning("Refreshed token could not be cached: %s", e)
                logger.info("Token refreshed successfully")

            if not creds.token:
                raise AuthenticationError("Credentials carry no access token")
            return creds.token, self._email

    def get_token(self) -> str:
        """Return a currently valid bearer token."""
        token, _ = self.get_valid_token()
        return token

    def _load(self) -> Credentials:
        if self._creds is not None:
            return self._creds
        if not self._token_path.exists():
            raise AuthenticationError(f"No cached token at {self._token_path}; run authentication first")
        try:
            self._creds = Credentials.from_authorized_user_file(str(self._token_path), SCOPES)
        except (ValueError, OSError) as e:
            raise AuthenticationError(f"Failed to load cached token: {e}") from e
        return self._creds

    def _needs_refresh(self, creds: Credentials) -> bool:
        if not creds.token or creds.expiry is None:
            return True
        # google-auth stores expiry as naive UTC
        now = datetime.now(UTC).replace(tzinfo=None)
        return creds.expiry < now + self._buffer


def _save_token(creds: Credentials, token_path: Path) -> None:
    """Save credentials to the token cache file."""
    token_path.parent.mkdir(parents=True, exist_ok=True)
    token_path.write_text(creds.to_json())
