"""Configuration via pydantic-settings with .env support."""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class MailSyncSettings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(
        env_prefix="MAILSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Account and OAuth credentials
    email: str = ""
    credentials_path: Path = Path("credentials/client_secret.json")
    token_path: Path = Path("credentials/token.json")
    token_refresh_buffer_seconds: int = 300

    # IMAP server
    imap_host: str = "imap.gmail.com"
    imap_port: int = 993
    imap_timeout_seconds: float | None = None
    default_folder: str = "INBOX"

    # Sync policy
    initial_sync_limit: int = 100
    poll_interval_seconds: float = 30.0
    reconnect_delay_seconds: float = 30.0
    token_retry_delay_seconds: float = 60.0

    # Local storage
    database_path: Path = Path("data/mailsync.db")
    attachments_dir: Path = Path("data/attachments")

    # Logging
    log_level: str = "INFO"

    def ensure_directories(self) -> None:
        """Create data and credential directories if they don't exist."""
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        self.attachments_dir.mkdir(parents=True, exist_ok=True)
        self.credentials_path.parent.mkdir(parents=True, exist_ok=True)
