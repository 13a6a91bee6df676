"""SQLite-backed local state: messages, contact groups, attachments, watermarks."""

from __future__ import annotations

import logging
import re
import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from mailsync.core.exceptions import StorageError
from mailsync.core.models import AttachmentDescriptor, StoredMessage, Watermark

logger = logging.getLogger(__name__)

AVATAR_COLORS = (
    "#2e7d32", "#1565c0", "#6a1b9a", "#c62828", "#ef6c00",
    "#00838f", "#558b2f", "#4527a0", "#ad1457", "#00695c",
)

_UNSAFE_FILENAME_CHARS = re.compile(r'[/\\:*?"<>|\x00-\x1f]')


def avatar_color(email: str) -> str:
    """Deterministic avatar colour derived from an address."""
    return AVATAR_COLORS[sum(email.encode("utf-8")) % len(AVATAR_COLORS)]


def sanitize_filename(filename: str, max_length: int = 200) -> str:
    """Make an attachment filename safe to create on disk."""
    safe = _UNSAFE_FILENAME_CHARS.sub("_", filename).strip().lstrip(".")
    if len(safe) > max_length:
        stem, dot, ext = safe.rpartition(".")
        if dot and len(ext) < 16:
            safe = stem[: max_length - len(ext) - 1] + "." + ext
        else:
            safe = safe[:max_length]
    return safe or "attachment"


class MessageStore:
    """Local store for synchronized mail.

    Tables:
    - contact_groups / group_members: conversations keyed by contact address
    - messages: decoded messages, unique by Message-ID when present
    - attachments: attachment metadata with the path of the saved payload
    - watermarks: highest synchronized UID per folder
    - sync_runs: audit log of sync passes
    """

    def __init__(self, db_path: Path, attachments_dir: Path | None = None) -> None:
        self._db_path = db_path
        self._attachments_dir = attachments_dir
        self._conn: sqlite3.Connection | None = None
        self._tx_depth = 0
        self._pending_files: list[Path] = []

    def connect(self) -> None:
        """Open database connection and ensure schema exists."""
        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        except (sqlite3.Error, OSError) as e:
            raise StorageError(f"Failed to open database {self._db_path}: {e}") from e
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._create_tables()

    def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> MessageStore:
        self.connect()
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    @contextmanager
    def transaction(self) -> Generator[MessageStore, None, None]:
        """Group several writes into one commit; rolls back on any exception."""
        self._tx_depth += 1
        try:
            yield self
        except BaseException:
            if self._tx_depth == 1:
                self.conn.rollback()
                self._discard_files(self._pending_files)
            raise
        else:
            if self._tx_depth == 1:
                try:
                    self.conn.commit()
                except sqlite3.Error as e:
                    self._discard_files(self._pending_files)
                    raise StorageError(f"Failed to commit transaction: {e}") from e
        finally:
            if self._tx_depth == 1:
                self._pending_files.clear()
            self._tx_depth -= 1

    def _commit(self) -> None:
        if self._tx_depth == 0:
            self.conn.commit()

    @contextmanager
    def _errors(self, action: str) -> Generator[None, None, None]:
        try:
            yield
        except sqlite3.Error as e:
            raise StorageError(f"Failed to {action}: {e}") from e

    def _create_tables(self) -> None:
        """Create tables if they don't exist."""
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS contact_groups (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                avatar_color TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS group_members (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                group_id INTEGER NOT NULL REFERENCES contact_groups(id) ON DELETE CASCADE,
                email TEXT NOT NULL,
                display_name TEXT,
                UNIQUE(group_id, email)
            );

            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                uid INTEGER NOT NULL,
                folder TEXT NOT NULL,
                message_id TEXT UNIQUE,
                group_id INTEGER REFERENCES contact_groups(id) ON DELETE SET NULL,
                from_email TEXT NOT NULL,
                from_name TEXT,
                to_email TEXT,
                to_name TEXT,
                subject TEXT,
                body_text TEXT,
                body_html TEXT,
                preview TEXT NOT NULL DEFAULT '',
                received_at TEXT NOT NULL,
                is_read INTEGER NOT NULL DEFAULT 0,
                is_sent INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_messages_group_id ON messages(group_id);
            CREATE INDEX IF NOT EXISTS idx_messages_received_at ON messages(received_at);
            CREATE INDEX IF NOT EXISTS idx_messages_folder_uid ON messages(folder, uid);
            CREATE INDEX IF NOT EXISTS idx_group_members_email ON group_members(email);

            CREATE TABLE IF NOT EXISTS attachments (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                message_id INTEGER NOT NULL REFERENCES messages(id) ON DELETE CASCADE,
                filename TEXT NOT NULL,
                mime_type TEXT,
                size INTEGER NOT NULL DEFAULT 0,
                local_path TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_attachments_message_id ON attachments(message_id);

            CREATE TABLE IF NOT EXISTS watermarks (
                folder TEXT PRIMARY KEY,
                last_uid INTEGER NOT NULL DEFAULT 0,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS sync_runs (
                run_id INTEGER PRIMARY KEY AUTOINCREMENT,
                folder TEXT NOT NULL,
                started_at TEXT NOT NULL,
                completed_at TEXT,
                messages_fetched INTEGER DEFAULT 0,
                messages_saved INTEGER DEFAULT 0,
                messages_failed INTEGER DEFAULT 0,
                error_message TEXT DEFAULT ''
            );
        """)

    # ---------- watermarks ----------

    def latest_uid(self, folder: str) -> int:
        """Highest synchronized UID for a folder; 0 means never synced."""
        with self._errors(f"read watermark for {folder}"):
            row = self.conn.execute(
                "SELECT last_uid FROM watermarks WHERE folder = ?", (folder,)
            ).fetchone()
        return int(row["last_uid"]) if row else 0

    def advance_watermark(self, folder: str, uid: int) -> None:
        """Raise the folder watermark to uid. Never lowers it."""
        now = datetime.now(UTC).isoformat()
        with self._errors(f"advance watermark for {folder}"):
            self.conn.execute(
                """INSERT INTO watermarks (folder, last_uid, updated_at)
                   VALUES (?, ?, ?)
                   ON CONFLICT(folder) DO UPDATE SET
                       last_uid = MAX(watermarks.last_uid, excluded.last_uid),
                       updated_at = excluded.updated_at""",
                (folder, uid, now),
            )
            self._commit()

    def list_watermarks(self) -> list[Watermark]:
        """All folder watermarks, ordered by folder name."""
        with self._errors("list watermarks"):
            rows = self.conn.execute(
                "SELECT folder, last_uid FROM watermarks ORDER BY folder"
            ).fetchall()
        return [Watermark(folder=row["folder"], last_uid=row["last_uid"]) for row in rows]

    # ---------- contact groups ----------

    def find_or_create_contact_group(self, email: str, display_name: str | None = None) -> int:
        """Return the group containing email, creating one if needed."""
        address = email.strip().lower()
        with self._errors(f"find or create group for {address}"):
            row = self.conn.execute(
                "SELECT group_id FROM group_members WHERE email = ? LIMIT 1", (address,)
            ).fetchone()
            if row:
                return int(row["group_id"])

            now = datetime.now(UTC).isoformat()
            cursor = self.conn.execute(
                "INSERT INTO contact_groups (name, avatar_color, created_at) VALUES (?, ?, ?)",
                (display_name or address, avatar_color(address), now),
            )
            group_id = cursor.lastrowid or 0
            self.conn.execute(
                "INSERT OR IGNORE INTO group_members (group_id, email, display_name) VALUES (?, ?, ?)",
                (group_id, address, display_name),
            )
            self._commit()

        logger.debug("Created contact group %d for %s", group_id, address)
        return group_id

    # ---------- messages ----------

    def exists_by_message_identifier(self, message_id: str) -> bool:
        """Check whether a message with this Message-ID is stored."""
        with self._errors(f"look up message {message_id}"):
            row = self.conn.execute(
                "SELECT 1 FROM messages WHERE message_id = ?", (message_id,)
            ).fetchone()
        return row is not None

    def insert_message(self, record: StoredMessage) -> int:
        """Store a message; returns its row id (existing id on duplicate Message-ID)."""
        msg = record.message
        now = datetime.now(UTC).isoformat()
        with self._errors(f"insert message UID {msg.uid}"):
            cursor = self.conn.execute(
                """INSERT OR IGNORE INTO messages
                   (uid, folder, message_id, group_id, from_email, from_name, to_email,
                    to_name, subject, body_text, body_html, preview, received_at,
                    is_sent, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    msg.uid, record.folder, msg.message_id, record.group_id,
                    msg.from_email, msg.from_name, msg.to_email, msg.to_name,
                    msg.subject, msg.body_text, msg.body_html, msg.preview,
                    msg.received_at.isoformat(), int(record.is_sent), now,
                ),
            )
            if cursor.rowcount == 0 and msg.message_id is not None:
                row = self.conn.execute(
                    "SELECT id FROM messages WHERE message_id = ?", (msg.message_id,)
                ).fetchone()
                return int(row["id"])
            self._commit()
        return cursor.lastrowid or 0

    def insert_attachment(self, message_id: int, attachment: AttachmentDescriptor) -> int:
        """Save an attachment payload to disk and record its metadata."""
        local_path: Path | None = None
        if self._attachments_dir is not None:
            local_path = self._write_payload(self._attachments_dir / str(message_id), attachment)
            if self._tx_depth:
                self._pending_files.append(local_path)

        try:
            with self._errors(f"insert attachment {attachment.filename}"):
                cursor = self.conn.execute(
                    """INSERT INTO attachments (message_id, filename, mime_type, size, local_path)
                       VALUES (?, ?, ?, ?, ?)""",
                    (
                        message_id, attachment.filename, attachment.mime_type,
                        attachment.size, str(local_path) if local_path else None,
                    ),
                )
                self._commit()
        except StorageError:
            if local_path is not None:
                self._discard_files([local_path])
            raise
        return cursor.lastrowid or 0

    def _write_payload(self, target_dir: Path, attachment: AttachmentDescriptor) -> Path:
        safe_name = sanitize_filename(attachment.filename)
        path = target_dir / safe_name
        stem, suffix = path.stem, path.suffix
        counter = 1
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            while path.exists():
                path = target_dir / f"{stem} ({counter}){suffix}"
                counter += 1
            path.write_bytes(attachment.payload)
        except OSError as e:
            raise StorageError(f"Failed to save attachment {safe_name}: {e}") from e
        logger.debug("Saved attachment: %s", path)
        return path

    def _discard_files(self, paths: list[Path]) -> None:
        """Remove attachment files whose rows were never committed."""
        for path in paths:
            try:
                path.unlink(missing_ok=True)
                if not any(path.parent.iterdir()):
                    path.parent.rmdir()
            except OSError as e:
                logger.warning("Could not remove uncommitted attachment %s: %s", path, e)
            else:
                logger.debug("Removed uncommitted attachment: %s", path)

    def get_message(self, row_id: int) -> dict | None:
        """Get full message record by row id."""
        with self._errors(f"read message {row_id}"):
            row = self.conn.execute("SELECT * FROM messages WHERE id = ?", (row_id,)).fetchone()
        return dict(row) if row else None

    def list_attachments(self, message_id: int) -> list[dict]:
        """Attachment records for a stored message."""
        with self._errors(f"list attachments of {message_id}"):
            rows = self.conn.execute(
                "SELECT * FROM attachments WHERE message_id = ? ORDER BY id", (message_id,)
            ).fetchall()
        return [dict(row) for row in rows]

    def count_messages(self) -> int:
        """Number of stored messages."""
        with self._errors("count messages"):
            row = self.conn.execute("SELECT COUNT(*) AS cnt FROM messages").fetchone()
        return int(row["cnt"])

    # ---------- sync runs ----------

    def start_run(self, folder: str) -> int:
        """Record the start of a sync pass. Returns the run_id."""
        now = datetime.now(UTC).isoformat()
        with self._errors("start sync run"):
            cursor = self.conn.execute(
                "INSERT INTO sync_runs (folder, started_at) VALUES (?, ?)", (folder, now)
            )
            self._commit()
        return cursor.lastrowid or 0

    def complete_run(
        self,
        run_id: int,
        messages_fetched: int = 0,
        messages_saved: int = 0,
        messages_failed: int = 0,
        error_message: str = "",
    ) -> None:
        """Record the completion of a sync pass."""
        now = datetime.now(UTC).isoformat()
        with self._errors("complete sync run"):
            self.conn.execute(
                """UPDATE sync_runs SET
                   completed_at = ?, messages_fetched = ?, messages_saved = ?,
                   messages_failed = ?, error_message = ?
                   WHERE run_id = ?""",
                (now, messages_fetched, messages_saved, messages_failed, error_message, run_id),
            )
            self._commit()
