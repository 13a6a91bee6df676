"""Shared fixtures for mail sync tests."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest

from mailsync.config.settings import MailSyncSettings
from mailsync.core.models import RawMessage
from mailsync.core.session import ImapSession
from mailsync.storage.store import MessageStore

ACCOUNT = "me@example.com"


def build_message(
    *,
    sender: str = "Alice <alice@example.com>",
    to: str = f"Me <{ACCOUNT}>",
    subject: str = "Hello",
    date: str = "Mon, 15 Jan 2024 10:30:00 +0000",
    message_id: str | None = "<msg-1@example.com>",
    body: str = "Hi there",
    extra_headers: tuple[str, ...] = (),
) -> bytes:
    """Build a minimal single-part RFC 822 message."""
    lines = [f"From: {sender}", f"To: {to}", f"Subject: {subject}", f"Date: {date}"]
    if message_id is not None:
        lines.append(f"Message-ID: {message_id}")
    lines.extend(extra_headers)
    lines += [
        "MIME-Version: 1.0",
        'Content-Type: text/plain; charset="utf-8"',
        "",
        body,
        "",
    ]
    return "\r\n".join(lines).encode("utf-8")


def raw(uid: int, **kwargs: Any) -> RawMessage:
    """RawMessage with a generated single-part body and a unique Message-ID."""
    kwargs.setdefault("message_id", f"<msg-{uid}@example.com>")
    return RawMessage(uid=uid, body=build_message(**kwargs))


class FakeImapClient:
    """In-memory stand-in for IMAPClient holding one folder of messages."""

    def __init__(
        self,
        messages: dict[int, bytes] | None = None,
        folders: list[tuple[tuple[bytes, ...], bytes, bytes]] | None = None,
    ) -> None:
        self.messages = dict(messages or {})
        self.folders = folders if folders is not None else [
            ((b"\\HasNoChildren",), b"/", b"INBOX"),
            ((b"\\HasNoChildren", b"\\All"), b"/", b"[Gmail]/All Mail"),
            ((b"\\HasNoChildren", b"\\Sent"), b"/", b"[Gmail]/Sent Mail"),
        ]
        self.selected: str | None = None
        self.fetch_calls: list[Any] = []
        self.search_calls: list[Any] = []
        self.logged_out = False

    def list_folders(self) -> list[tuple[tuple[bytes, ...], bytes, bytes]]:
        return self.folders

    def select_folder(self, name: str, readonly: bool = False) -> dict[bytes, Any]:
        self.selected = name
        return {b"EXISTS": len(self.messages)}

    def search(self, criteria: str = "ALL") -> list[int]:
        self.search_calls.append(criteria)
        return sorted(self.messages)

    def fetch(self, uid_set: str | list[int], items: list[str]) -> dict[int, dict[bytes, Any]]:
        self.fetch_calls.append(uid_set)
        if isinstance(uid_set, str):
            start = int(uid_set.split(":", 1)[0])
            uids = [u for u in self.messages if u >= start]
            # A "N:*" range always includes the highest UID, even when below N.
            if not uids and self.messages:
                uids = [max(self.messages)]
        else:
            uids = [u for u in uid_set if u in self.messages]
        return {
            uid: {b"SEQ": i + 1, b"FLAGS": (b"\\Seen",), b"BODY[]": self.messages[uid]}
            for i, uid in enumerate(sorted(uids))
        }

    def logout(self) -> bytes:
        self.logged_out = True
        return b"BYE"


@pytest.fixture
def fake_client() -> FakeImapClient:
    """Empty fake IMAP client with the standard Gmail folder listing."""
    return FakeImapClient()


@pytest.fixture
def session(fake_client: FakeImapClient) -> ImapSession:
    """ImapSession wrapping the fake client."""
    return ImapSession(fake_client, ACCOUNT)  # type: ignore[arg-type]


@pytest.fixture
def connector_for() -> Callable[[FakeImapClient], Callable[[str, str], ImapSession]]:
    """Build a connector that hands out sessions on the given fake client."""

    def _make(client: FakeImapClient) -> Callable[[str, str], ImapSession]:
        def _connect(email: str, token: str) -> ImapSession:
            return ImapSession(client, email)  # type: ignore[arg-type]

        return _connect

    return _make


@pytest.fixture
def credentials() -> MagicMock:
    """Credential provider that always returns a valid token."""
    provider = MagicMock()
    provider.get_valid_token.return_value = ("token-123", ACCOUNT)
    provider.get_token.return_value = "token-123"
    return provider


@pytest.fixture
def tmp_db_path(tmp_path: Path) -> Path:
    """Temporary database path for tests."""
    return tmp_path / "test.db"


@pytest.fixture
def store(tmp_path: Path, tmp_db_path: Path) -> Iterator[MessageStore]:
    """Connected message store writing attachments under tmp_path."""
    with MessageStore(tmp_db_path, tmp_path / "attachments") as s:
        yield s


@pytest.fixture
def settings(tmp_path: Path) -> MailSyncSettings:
    """Settings pointing every path into tmp_path."""
    return MailSyncSettings(
        email=ACCOUNT,
        credentials_path=tmp_path / "credentials" / "client_secret.json",
        token_path=tmp_path / "credentials" / "token.json",
        database_path=tmp_path / "data" / "mailsync.db",
        attachments_dir=tmp_path / "data" / "attachments",
        poll_interval_seconds=0.05,
        reconnect_delay_seconds=0.05,
        token_retry_delay_seconds=0.05,
    )
