"""Mail Sync - IMAP retrieval, MIME decoding and live watching for a mail client."""

from mailsync.core.models import (
    ALL_MAIL,
    SENT,
    AttachmentDescriptor,
    FolderSelector,
    MailFolder,
    NormalizedMessage,
    ParseFailure,
    RawMessage,
    StoredMessage,
    SyncProgress,
    Watermark,
    WatchState,
)
from mailsync.pipeline.synchronizer import MailSynchronizer
from mailsync.pipeline.watcher import MailWatcher, WatchHandle

__all__ = [
    "ALL_MAIL",
    "SENT",
    "AttachmentDescriptor",
    "FolderSelector",
    "MailFolder",
    "MailSynchronizer",
    "MailWatcher",
    "NormalizedMessage",
    "ParseFailure",
    "RawMessage",
    "StoredMessage",
    "SyncProgress",
    "WatchHandle",
    "WatchState",
    "Watermark",
]
