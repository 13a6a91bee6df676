"""Frozen dataclasses for the mail sync domain model."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime


@dataclass(frozen=True)
class RawMessage:
    """A message as fetched from the server, before any decoding."""

    uid: int
    body: bytes
    flags: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class AttachmentDescriptor:
    """An attachment extracted from a message.

    The filename has had its transport encoding removed but is not
    sanitized for filesystem use.
    """

    filename: str
    mime_type: str
    size: int
    payload: bytes = field(repr=False)


@dataclass(frozen=True)
class NormalizedMessage:
    """Decoded message with addresses, bodies and attachments."""

    uid: int
    from_email: str
    received_at: datetime
    from_name: str | None = None
    to_email: str | None = None
    to_name: str | None = None
    subject: str | None = None
    body_text: str | None = None
    body_html: str | None = None
    message_id: str | None = None
    attachments: tuple[AttachmentDescriptor, ...] = field(default_factory=tuple)
    preview: str = ""


@dataclass(frozen=True)
class MailFolder:
    """One entry of the server's folder listing."""

    name: str
    delimiter: str | None = None
    attributes: tuple[str, ...] = field(default_factory=tuple)

    @property
    def display_name(self) -> str:
        """Folder name with the modified UTF-7 transport encoding removed."""
        from mailsync.core.folders import decode_modified_utf7

        return decode_modified_utf7(self.name)


@dataclass(frozen=True)
class FolderSelector:
    """Describes a folder by special-use attribute and localized names."""

    role: str
    attribute: str
    name_patterns: tuple[str, ...] = field(default_factory=tuple)


ALL_MAIL = FolderSelector(
    role="all",
    attribute="\\All",
    name_patterns=(
        "All Mail",
        "すべてのメール",
        "所有邮件",
        "Todos",
        "Tous les messages",
        "Alle Nachrichten",
    ),
)

SENT = FolderSelector(
    role="sent",
    attribute="\\Sent",
    name_patterns=(
        "Sent",
        "送信済み",
        "已发送",
        "Enviados",
        "Envoyés",
        "Gesendet",
    ),
)


@dataclass(frozen=True)
class Watermark:
    """Highest UID already synchronized for a folder."""

    folder: str
    last_uid: int = 0


@dataclass(frozen=True)
class StoredMessage:
    """A decoded message together with where and how it is filed locally."""

    folder: str
    group_id: int
    is_sent: bool
    message: NormalizedMessage


@dataclass(frozen=True)
class ParseFailure:
    """A raw message that could not be decoded."""

    uid: int
    reason: str


class WatchState(enum.Enum):
    """Lifecycle of a watch loop."""

    IDLE = "idle"
    RUNNING = "running"
    STOP_REQUESTED = "stop_requested"


@dataclass
class SyncProgress:
    """Mutable progress tracker for sync status reporting."""

    folder: str = ""
    messages_fetched: int = 0
    messages_saved: int = 0
    messages_duplicate: int = 0
    messages_skipped: int = 0
    messages_failed: int = 0
    failures: list[ParseFailure] = field(default_factory=list)
    current_stage: str = "idle"
