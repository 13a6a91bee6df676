"""IMAP session over TLS with XOAUTH2 authentication."""

from __future__ import annotations

import logging
from typing import Any

from imapclient import IMAPClient
from imapclient.exceptions import IMAPClientAbortError, IMAPClientError, LoginError

from mailsync.core.exceptions import (
    AuthenticationError,
    FetchError,
    FolderError,
    ImapConnectionError,
)
from mailsync.core.folders import encode_modified_utf7
from mailsync.core.models import MailFolder

logger = logging.getLogger(__name__)

IMAP_HOST = "imap.gmail.com"
IMAP_PORT = 993
SASL_MECHANISM = "XOAUTH2"


def build_xoauth2_string(email: str, access_token: str) -> str:
    """Build the XOAUTH2 initial client response.

    The IMAP transport base64-encodes this string before sending it, so the
    server receives ``base64("user=...\\x01auth=Bearer ...\\x01\\x01")``.
    """
    return f"user={email}\x01auth=Bearer {access_token}\x01\x01"


def _to_str(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("ascii", errors="replace")
    return str(value)


class ImapSession:
    """Authenticated connection to one mailbox server.

    Owned by whoever opened it and scoped to one selected folder at a time.
    Any network or server error invalidates it; callers should reconnect
    rather than reuse it.
    """

    def __init__(self, client: IMAPClient, email: str) -> None:
        self._client = client
        self._email = email
        self._selected_folder: str | None = None

    @property
    def email(self) -> str:
        return self._email

    @property
    def selected_folder(self) -> str | None:
        return self._selected_folder

    def __enter__(self) -> ImapSession:
        return self

    def __exit__(self, *args: object) -> None:
        self.logout()

    def list_folders(self) -> list[MailFolder]:
        """List every folder visible to the account.

        Names are returned in their wire form (modified UTF-7).
        """
        try:
            entries = self._client.list_folders()
        except (IMAPClientError, OSError) as e:
            raise FetchError(f"Failed to list folders: {e}") from e

        folders = [
            MailFolder(
                name=_to_str(name),
                delimiter=_to_str(delimiter) if delimiter is not None else None,
                attributes=tuple(_to_str(flag) for flag in flags),
            )
            for flags, delimiter, name in entries
        ]
        logger.debug("Listed %d folders", len(folders))
        return folders

    def select(self, folder: str) -> dict[bytes, Any]:
        """Select a folder read-only. Required before any fetch.

        Non-ASCII names are treated as display names and encoded first.
        """
        wire_name = folder if folder.isascii() else encode_modified_utf7(folder)
        try:
            info = self._client.select_folder(wire_name, readonly=True)
        except (IMAPClientAbortError, OSError) as e:
            self._selected_folder = None
            raise ImapConnectionError(f"Connection lost selecting {folder}: {e}") from e
        except IMAPClientError as e:
            self._selected_folder = None
            raise FolderError(f"Failed to select folder {folder}: {e}") from e

        self._selected_folder = wire_name
        logger.debug("Selected folder %s (%s messages)", folder, info.get(b"EXISTS", "?"))
        return info

    def search_uids(self, criteria: str = "ALL") -> list[int]:
        """Return the UIDs in the selected folder matching criteria, ascending."""
        self._require_selected()
        try:
            uids = self._client.search(criteria)
        except (IMAPClientError, OSError) as e:
            raise FetchError(f"UID SEARCH {criteria} failed: {e}") from e
        return sorted(int(uid) for uid in uids)

    def fetch_uids(self, uid_set: str | list[int], items: list[str]) -> dict[int, dict[bytes, Any]]:
        """UID FETCH the given items for a UID set (list or range like ``"5:*"``)."""
        self._require_selected()
        try:
            return self._client.fetch(uid_set, items)
        except (IMAPClientError, OSError) as e:
            raise FetchError(f"UID FETCH {uid_set!r} failed: {e}") from e

    def logout(self) -> None:
        """Close the session. Best effort; never raises."""
        self._selected_folder = None
        try:
            self._client.logout()
        except Exception as e:
            logger.debug("Logout failed (ignored): %s", e)

    def _require_selected(self) -> None:
        if self._selected_folder is None:
            raise FolderError("No folder selected; call select() first")


def connect(
    email: str,
    access_token: str,
    host: str = IMAP_HOST,
    port: int = IMAP_PORT,
    timeout: float | None = None,
) -> ImapSession:
    """Open a TLS connection and authenticate with XOAUTH2.

    Raises:
        ImapConnectionError: DNS, TCP or TLS failure.
        AuthenticationError: The server rejected the bearer token.
    """
    logger.info("Connecting to IMAP server %s:%d", host, port)
    try:
        client = IMAPClient(host, port=port, ssl=True, timeout=timeout)
    except (IMAPClientError, OSError) as e:
        raise ImapConnectionError(f"Failed to connect to {host}:{port}: {e}") from e

    # Keep wire names; display decoding goes through decode_modified_utf7.
    client.folder_encode = False

    auth_string = build_xoauth2_string(email, access_token)

    def _respond(challenge: bytes) -> str | bytes:
        # A non-empty challenge carries the server's error details; an empty
        # reply lets it finish with a tagged NO.
        if challenge:
            logger.debug("XOAUTH2 error challenge: %r", challenge)
            return b""
        return auth_string

    try:
        client.sasl_login(SASL_MECHANISM, _respond)
    except LoginError as e:
        _safe_shutdown(client)
        # sasl_login re-raises every client error as LoginError, aborts included.
        if isinstance(e.__context__, IMAPClientAbortError):
            raise ImapConnectionError(f"Connection lost during authentication: {e}") from e
        raise AuthenticationError(f"IMAP authentication failed for {email}: {e}") from e
    except (IMAPClientError, OSError) as e:
        _safe_shutdown(client)
        raise ImapConnectionError(f"Connection lost during authentication: {e}") from e

    logger.info("IMAP authentication successful")
    return ImapSession(client, email)


def _safe_shutdown(client: IMAPClient) -> None:
    try:
        client.shutdown()
    except Exception as e:
        logger.debug("Shutdown failed (ignored): %s", e)
