"""Custom exceptions for the mail sync engine."""


class MailSyncError(Exception):
    """Base exception for all mail sync errors."""


class ImapConnectionError(MailSyncError):
    """Failed to reach the IMAP server (DNS, TCP or TLS failure)."""


class AuthenticationError(MailSyncError):
    """Credentials were rejected, expired, or could not be obtained."""


class FolderError(MailSyncError):
    """Failed to select a mailbox folder."""


class FetchError(MailSyncError):
    """Protocol-level failure while searching or fetching messages."""


class ParseError(MailSyncError):
    """Failed to decode a single raw message."""


class StorageError(MailSyncError):
    """Failed to read or write local state (database or filesystem)."""
