"""Background polling watcher with fixed-interval reconnection."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Protocol

from mailsync.core.exceptions import (
    AuthenticationError,
    FetchError,
    FolderError,
    ImapConnectionError,
    MailSyncError,
)
from mailsync.core.fetcher import INITIAL_SYNC_LIMIT, fetch_since, max_uid
from mailsync.core.models import RawMessage, WatchState
from mailsync.core.session import ImapSession, connect

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 30.0
RECONNECT_DELAY_SECONDS = 30.0
TOKEN_RETRY_DELAY_SECONDS = 60.0
STOP_CHECK_SECONDS = 1.0


class TokenProvider(Protocol):
    """Anything that can hand out a currently valid bearer token."""

    def get_token(self) -> str: ...


Connector = Callable[[str, str], ImapSession]


class WatchHandle:
    """Controls one running watch loop: its stop flag, thread and watermark."""

    def __init__(self, initial_watermark: int) -> None:
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._state = WatchState.IDLE
        self._lock = threading.Lock()
        self.watermark = initial_watermark

    @property
    def state(self) -> WatchState:
        with self._lock:
            return self._state

    @property
    def is_running(self) -> bool:
        return self.state is not WatchState.IDLE

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def stop(self) -> None:
        """Ask the loop to stop. Returns immediately; the loop exits at its next check."""
        with self._lock:
            if self._state is WatchState.RUNNING:
                self._state = WatchState.STOP_REQUESTED
        self._stop_event.set()

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the loop thread to exit. Returns True if it has."""
        if self._thread is not None:
            self._thread.join(timeout)
            return not self._thread.is_alive()
        return True

    def wait(self, seconds: float) -> bool:
        """Sleep up to seconds, waking early on stop. Returns True if stop was requested."""
        remaining = seconds
        while remaining > 0:
            if self._stop_event.wait(min(STOP_CHECK_SECONDS, remaining)):
                return True
            remaining -= STOP_CHECK_SECONDS
        return self._stop_event.is_set()

    def _set_state(self, state: WatchState) -> None:
        with self._lock:
            self._state = state


class MailWatcher:
    """Polls one folder for new mail and hands new raw messages to a handler.

    Loop: fetch a token, connect, select the folder, then poll every
    ``poll_interval`` seconds. A fetch error forces a full reconnect with a
    fresh token. Connection failures wait ``reconnect_delay``; token failures
    wait ``token_retry_delay``.
    """

    def __init__(
        self,
        email: str,
        token_provider: TokenProvider,
        folder: str,
        on_new_messages: Callable[[list[RawMessage]], None],
        *,
        connector: Connector = connect,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        reconnect_delay: float = RECONNECT_DELAY_SECONDS,
        token_retry_delay: float = TOKEN_RETRY_DELAY_SECONDS,
        initial_limit: int = INITIAL_SYNC_LIMIT,
    ) -> None:
        self._email = email
        self._token_provider = token_provider
        self._folder = folder
        self._on_new_messages = on_new_messages
        self._connector = connector
        self._poll_interval = poll_interval
        self._reconnect_delay = reconnect_delay
        self._token_retry_delay = token_retry_delay
        self._initial_limit = initial_limit
        self._start_lock = threading.Lock()
        self._handle: WatchHandle | None = None

    @property
    def handle(self) -> WatchHandle | None:
        return self._handle

    @property
    def is_running(self) -> bool:
        return self._handle is not None and self._handle.is_running

    def start(self, initial_watermark: int = 0) -> WatchHandle:
        """Start the loop in a background thread.

        Calling start while a loop is running returns the running loop's
        handle without starting a second one. A loop that is still winding
        down after stop() is waited for first.
        """
        with self._start_lock:
            previous = self._handle
            if previous is not None and previous.state is WatchState.RUNNING:
                logger.debug("Watcher for %s already running", self._folder)
                return previous
            if previous is not None and previous.state is WatchState.STOP_REQUESTED:
                previous.join()

            handle = WatchHandle(initial_watermark)
            handle._set_state(WatchState.RUNNING)
            handle._thread = threading.Thread(
                target=self._run,
                args=(handle,),
                name=f"mailsync-watch-{self._folder}",
                daemon=True,
            )
            self._handle = handle
            handle._thread.start()

        logger.info("Started watching %s from UID %d", self._folder, initial_watermark)
        return handle

    def stop(self) -> None:
        """Request the running loop to stop, if any."""
        if self._handle is not None:
            self._handle.stop()

    def _run(self, handle: WatchHandle) -> None:
        try:
            while not handle.stop_requested:
                try:
                    token = self._token_provider.get_token()
                except Exception as e:
                    logger.error("Failed to get access token: %s", e)
                    handle.wait(self._token_retry_delay)
                    continue

                try:
                    session = self._connector(self._email, token)
                except (ImapConnectionError, AuthenticationError) as e:
                    logger.error("IMAP connection failed: %s", e)
                    handle.wait(self._reconnect_delay)
                    continue

                try:
                    session.select(self._folder)
                except (FolderError, ImapConnectionError) as e:
                    logger.error("Failed to select %s: %s", self._folder, e)
                    session.logout()
                    handle.wait(self._reconnect_delay)
                    continue

                try:
                    self._poll(session, handle)
                finally:
                    session.logout()
        finally:
            handle._set_state(WatchState.IDLE)
            logger.info("Stopped watching %s", self._folder)

    def _poll(self, session: ImapSession, handle: WatchHandle) -> None:
        """Inner loop on one session; returns when a reconnect is needed or on stop."""
        while not handle.stop_requested:
            try:
                messages = fetch_since(
                    session, handle.watermark, initial_limit=self._initial_limit
                )
            except (FetchError, FolderError) as e:
                logger.warning("Fetch failed, reconnecting: %s", e)
                return

            if messages:
                handle.watermark = max_uid(messages, handle.watermark)
                logger.info(
                    "%d new messages in %s (watermark %d)",
                    len(messages), self._folder, handle.watermark,
                )
                try:
                    self._on_new_messages(messages)
                except MailSyncError as e:
                    logger.error("New-mail handler failed: %s", e)
                except Exception:
                    logger.exception("New-mail handler raised unexpectedly")

            handle.wait(self._poll_interval)
