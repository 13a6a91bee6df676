"""Sync orchestrator: connect -> resolve folder -> fetch -> decode -> persist."""

from __future__ import annotations

import asyncio
import functools
import logging
import threading
from collections.abc import Callable
from typing import Protocol

from mailsync.config.settings import MailSyncSettings
from mailsync.core.auth import GoogleTokenProvider
from mailsync.core.decoder import MessageDecoder, decode_batch
from mailsync.core.exceptions import FetchError, FolderError
from mailsync.core.fetcher import fetch_since, max_uid
from mailsync.core.folders import find_folder
from mailsync.core.models import (
    ALL_MAIL,
    FolderSelector,
    NormalizedMessage,
    RawMessage,
    StoredMessage,
    SyncProgress,
    Watermark,
)
from mailsync.core.session import ImapSession, connect
from mailsync.pipeline.watcher import Connector, MailWatcher, WatchHandle
from mailsync.storage.store import MessageStore

logger = logging.getLogger(__name__)

# Most recent decode failures kept on SyncProgress during a long watch.
MAX_TRACKED_FAILURES = 100


class CredentialProvider(Protocol):
    """Source of bearer tokens for the configured account."""

    def get_valid_token(self) -> tuple[str, str]: ...

    def get_token(self) -> str: ...


class MailSynchronizer:
    """Runs one-shot syncs and manages the background watch for one account.

    A sync pass reads the folder watermark, fetches newer messages, decodes
    them, drops duplicates by Message-ID, files each under a contact group
    and advances the watermark in the same transaction as the inserts.
    """

    def __init__(
        self,
        settings: MailSyncSettings | None = None,
        on_progress: Callable[[SyncProgress], None] | None = None,
        *,
        credentials: CredentialProvider | None = None,
        store: MessageStore | None = None,
        decoder: MessageDecoder | None = None,
        connector: Connector | None = None,
    ) -> None:
        self._settings = settings or MailSyncSettings()
        self._on_progress = on_progress
        self._progress = SyncProgress()

        # Components initialized lazily
        self._credentials = credentials
        self._store = store
        self._decoder = decoder or MessageDecoder()
        self._connector: Connector = connector or functools.partial(
            connect,
            host=self._settings.imap_host,
            port=self._settings.imap_port,
            timeout=self._settings.imap_timeout_seconds,
        )

        self._store_lock = threading.Lock()
        self._watch_lock = threading.Lock()
        self._watcher: MailWatcher | None = None

    @property
    def progress(self) -> SyncProgress:
        return self._progress

    @property
    def on_progress(self) -> Callable[[SyncProgress], None] | None:
        return self._on_progress

    @on_progress.setter
    def on_progress(self, callback: Callable[[SyncProgress], None] | None) -> None:
        self._on_progress = callback

    def _ensure_initialized(self) -> tuple[CredentialProvider, MessageStore]:
        """Initialize credentials and store if not already done."""
        if self._credentials is None:
            self._credentials = GoogleTokenProvider(
                self._settings.token_path,
                self._settings.email,
                refresh_buffer_seconds=self._settings.token_refresh_buffer_seconds,
            )

        if self._store is None:
            self._settings.ensure_directories()
            self._store = MessageStore(
                self._settings.database_path, self._settings.attachments_dir
            )
            self._store.connect()

        return self._credentials, self._store

    def open_session(self) -> ImapSession:
        """Authenticate and connect for ad-hoc use (e.g. listing folders)."""
        credentials, _ = self._ensure_initialized()
        token, email = credentials.get_valid_token()
        return self._connector(email, token)

    def resolve_folder(self, session: ImapSession, selector: FolderSelector) -> str:
        """Find the folder for selector, falling back to the default mailbox."""
        try:
            folder = find_folder(session, selector)
        except FetchError as e:
            logger.warning("Folder listing failed, using %s: %s", self._settings.default_folder, e)
            folder = None

        if folder is None:
            logger.info(
                "No %s folder found, using %s", selector.role, self._settings.default_folder
            )
            return self._settings.default_folder
        return folder

    def _select_with_fallback(self, session: ImapSession, folder: str) -> str:
        try:
            session.select(folder)
            return folder
        except FolderError:
            if folder == self._settings.default_folder:
                raise
            logger.warning("Could not select %s, falling back to %s", folder, self._settings.default_folder)
            session.select(self._settings.default_folder)
            return self._settings.default_folder

    def sync_once(self, selector: FolderSelector = ALL_MAIL) -> list[NormalizedMessage]:
        """Run one sync pass and return the newly stored messages.

        Raises:
            AuthenticationError: No valid token, or the server rejected it.
            ImapConnectionError: The server could not be reached.
            FolderError: Neither the resolved nor the default folder could be selected.
            FetchError: The fetch failed.
            StorageError: Local state could not be read or written.
        """
        credentials, store = self._ensure_initialized()
        token, email = credentials.get_valid_token()

        logger.info("Starting mail sync for %s", email)
        self._progress = SyncProgress(current_stage="connect")
        self._notify()

        with self._connector(email, token) as session:
            folder = self._select_with_fallback(session, self.resolve_folder(session, selector))
            last_uid = store.latest_uid(folder)
            self._progress.folder = folder
            self._progress.current_stage = "fetch"
            self._notify()

            run_id = store.start_run(folder)
            try:
                logger.debug("Syncing folder %s from UID %d", folder, last_uid)
                raws = fetch_since(
                    session, last_uid, initial_limit=self._settings.initial_sync_limit
                )
                self._progress.messages_fetched += len(raws)
                saved = self.process_batch(raws, folder, email)
            except Exception as e:
                self._progress.current_stage = f"error: {e}"
                self._notify()
                store.complete_run(
                    run_id,
                    messages_fetched=self._progress.messages_fetched,
                    messages_saved=self._progress.messages_saved,
                    messages_failed=self._progress.messages_failed,
                    error_message=str(e),
                )
                raise

        store.complete_run(
            run_id,
            messages_fetched=self._progress.messages_fetched,
            messages_saved=self._progress.messages_saved,
            messages_failed=self._progress.messages_failed,
        )
        self._progress.current_stage = "complete"
        self._notify()
        logger.info("Synced %d new messages from %s", len(saved), folder)
        return saved

    async def sync_once_async(self, selector: FolderSelector = ALL_MAIL) -> list[NormalizedMessage]:
        """sync_once on a worker thread so the event loop never blocks on I/O."""
        return await asyncio.to_thread(self.sync_once, selector)

    def process_batch(
        self, raws: list[RawMessage], folder: str, account_email: str
    ) -> list[NormalizedMessage]:
        """Decode and store a batch of raw messages from one folder.

        Undecodable messages are logged, counted and skipped. The folder
        watermark moves to the highest UID of the batch in the same
        transaction as the inserts.
        """
        _, store = self._ensure_initialized()
        messages, failures = decode_batch(raws, self._decoder)
        self._progress.messages_failed += len(failures)
        self._progress.failures.extend(failures)
        del self._progress.failures[:-MAX_TRACKED_FAILURES]

        me = account_email.lower()
        saved: list[NormalizedMessage] = []
        seen_ids: set[str] = set()

        with self._store_lock, store.transaction():
            for msg in messages:
                if msg.message_id is not None:
                    if msg.message_id in seen_ids or store.exists_by_message_identifier(
                        msg.message_id
                    ):
                        logger.debug("Skipping duplicate %s", msg.message_id)
                        self._progress.messages_duplicate += 1
                        continue
                    seen_ids.add(msg.message_id)

                is_sent = msg.from_email.lower() == me
                if is_sent:
                    contact_email, contact_name = msg.to_email, msg.to_name
                else:
                    contact_email, contact_name = msg.from_email, msg.from_name

                if not contact_email or contact_email.lower() == me:
                    logger.debug("Skipping self-addressed message UID %d", msg.uid)
                    self._progress.messages_skipped += 1
                    continue

                group_id = store.find_or_create_contact_group(contact_email, contact_name)
                row_id = store.insert_message(
                    StoredMessage(folder=folder, group_id=group_id, is_sent=is_sent, message=msg)
                )
                for attachment in msg.attachments:
                    store.insert_attachment(row_id, attachment)

                saved.append(msg)
                self._progress.messages_saved += 1

            if raws:
                store.advance_watermark(folder, max_uid(raws))

        self._notify()
        return saved

    def start_watch(
        self,
        selector: FolderSelector = ALL_MAIL,
        on_batch: Callable[[list[RawMessage]], None] | None = None,
    ) -> WatchHandle:
        """Start watching the selected folder in the background.

        New messages are stored with process_batch, then passed to on_batch.
        Returns the running handle unchanged if a watch is already active.
        """
        with self._watch_lock:
            watcher = self._watcher
            if watcher is not None and watcher.is_running and watcher.handle is not None:
                return watcher.handle

            credentials, store = self._ensure_initialized()
            token, email = credentials.get_valid_token()
            with self._connector(email, token) as session:
                folder = self.resolve_folder(session, selector)
            last_uid = store.latest_uid(folder)

            self._progress = SyncProgress(folder=folder, current_stage="watching")
            self._notify()

            def _handle_batch(raws: list[RawMessage]) -> None:
                self._progress.messages_fetched += len(raws)
                self.process_batch(raws, folder, email)
                if on_batch is not None:
                    on_batch(raws)

            self._watcher = MailWatcher(
                email,
                credentials,
                folder,
                _handle_batch,
                connector=self._connector,
                poll_interval=self._settings.poll_interval_seconds,
                reconnect_delay=self._settings.reconnect_delay_seconds,
                token_retry_delay=self._settings.token_retry_delay_seconds,
                initial_limit=self._settings.initial_sync_limit,
            )
            return self._watcher.start(last_uid)

    def stop_watch(self) -> None:
        """Request the active watch to stop; it exits within about a second."""
        with self._watch_lock:
            if self._watcher is not None:
                self._watcher.stop()

    def get_status(self) -> tuple[int, list[Watermark]]:
        """Stored message count and per-folder watermarks."""
        _, store = self._ensure_initialized()
        return store.count_messages(), store.list_watermarks()

    def close(self) -> None:
        """Stop watching and release the store."""
        self.stop_watch()
        if self._watcher is not None and self._watcher.handle is not None:
            self._watcher.handle.join(timeout=5.0)
        if self._store:
            self._store.close()

    def _notify(self) -> None:
        """Send progress update to callback if registered."""
        if self._on_progress:
            self._on_progress(self._progress)
