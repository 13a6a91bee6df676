"""Tests for the background polling watcher."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterator
from unittest.mock import MagicMock, patch

import pytest
from conftest import ACCOUNT, FakeImapClient, build_message

from mailsync.core.exceptions import AuthenticationError, ImapConnectionError
from mailsync.core.models import RawMessage, WatchState
from mailsync.core.session import ImapSession
from mailsync.pipeline.watcher import MailWatcher, WatchHandle

FAST = {"poll_interval": 0.02, "reconnect_delay": 0.02, "token_retry_delay": 0.02}


def _wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


class StaticToken:
    def __init__(self) -> None:
        self.calls = 0

    def get_token(self) -> str:
        self.calls += 1
        return "tok"


class Recorder:
    """Collects batches handed to the watcher callback."""

    def __init__(self) -> None:
        self.batches: list[list[RawMessage]] = []
        self._lock = threading.Lock()

    def __call__(self, messages: list[RawMessage]) -> None:
        with self._lock:
            self.batches.append(messages)

    @property
    def uids(self) -> list[int]:
        with self._lock:
            return [m.uid for batch in self.batches for m in batch]


class CountingConnector:
    """Connector over a fake client that records each connect."""

    def __init__(self, client: FakeImapClient) -> None:
        self.client = client
        self.calls = 0

    def __call__(self, email: str, token: str) -> ImapSession:
        self.calls += 1
        return ImapSession(self.client, email)  # type: ignore[arg-type]


def _mailbox(*uids: int) -> dict[int, bytes]:
    return {uid: build_message(message_id=f"<{uid}@example.com>") for uid in uids}


@pytest.fixture
def client() -> FakeImapClient:
    return FakeImapClient(_mailbox(1, 2, 3))


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


def _watcher(
    client: FakeImapClient,
    recorder: Recorder,
    token_provider: object | None = None,
    connector: Callable[[str, str], ImapSession] | None = None,
) -> MailWatcher:
    return MailWatcher(
        ACCOUNT,
        token_provider or StaticToken(),  # type: ignore[arg-type]
        "INBOX",
        recorder,
        connector=connector or CountingConnector(client),
        **FAST,
    )


class TestPolling:
    """New messages are delivered once and advance the watermark."""

    def test_delivers_backlog_then_new_mail(
        self, client: FakeImapClient, recorder: Recorder
    ) -> None:
        watcher = _watcher(client, recorder)
        handle = watcher.start(0)
        try:
            assert _wait_for(lambda: recorder.uids == [1, 2, 3])
            client.messages = {**client.messages, **_mailbox(4, 5)}
            assert _wait_for(lambda: recorder.uids == [1, 2, 3, 4, 5])
            assert handle.watermark == 5
        finally:
            watcher.stop()
            handle.join(timeout=2)

    def test_starts_from_given_watermark(
        self, client: FakeImapClient, recorder: Recorder
    ) -> None:
        watcher = _watcher(client, recorder)
        handle = watcher.start(2)
        try:
            assert _wait_for(lambda: recorder.uids == [3])
            time.sleep(0.1)
            assert recorder.uids == [3]
        finally:
            watcher.stop()
            handle.join(timeout=2)

    def test_selects_folder_read_only(self, client: FakeImapClient, recorder: Recorder) -> None:
        watcher = _watcher(client, recorder)
        handle = watcher.start(3)
        try:
            assert _wait_for(lambda: client.selected == "INBOX")
        finally:
            watcher.stop()
            handle.join(timeout=2)

    def test_handler_failure_does_not_stop_loop(self, client: FakeImapClient) -> None:
        calls: list[int] = []

        def _failing(messages: list[RawMessage]) -> None:
            calls.extend(m.uid for m in messages)
            raise RuntimeError("handler bug")

        watcher = MailWatcher(
            ACCOUNT, StaticToken(), "INBOX", _failing, connector=CountingConnector(client), **FAST
        )
        handle = watcher.start(0)
        try:
            assert _wait_for(lambda: calls == [1, 2, 3])
            client.messages = {**client.messages, **_mailbox(4)}
            assert _wait_for(lambda: calls == [1, 2, 3, 4])
            assert handle.watermark == 4
        finally:
            watcher.stop()
            handle.join(timeout=2)


class TestLifecycle:
    def test_start_is_idempotent(self, client: FakeImapClient, recorder: Recorder) -> None:
        connector = CountingConnector(client)
        watcher = _watcher(client, recorder, connector=connector)
        first = watcher.start(0)
        try:
            second = watcher.start(0)
            assert first is second
            assert _wait_for(lambda: recorder.uids == [1, 2, 3])
            assert connector.calls == 1
        finally:
            watcher.stop()
            first.join(timeout=2)

    def test_stop_ends_loop_promptly(self, client: FakeImapClient, recorder: Recorder) -> None:
        watcher = MailWatcher(
            ACCOUNT,
            StaticToken(),
            "INBOX",
            recorder,
            connector=CountingConnector(client),
            poll_interval=30.0,
        )
        handle = watcher.start(3)
        assert _wait_for(lambda: client.selected == "INBOX")
        started = time.monotonic()
        watcher.stop()
        assert handle.join(timeout=3)
        assert time.monotonic() - started < 3
        assert handle.state is WatchState.IDLE
        assert not watcher.is_running
        assert client.logged_out

    def test_restart_after_stop(self, client: FakeImapClient, recorder: Recorder) -> None:
        watcher = _watcher(client, recorder)
        first = watcher.start(3)
        watcher.stop()
        first.join(timeout=2)
        second = watcher.start(3)
        try:
            assert second is not first
            assert second.is_running
        finally:
            watcher.stop()
            second.join(timeout=2)


class TestRecovery:
    """Failures wait the configured delay and retry with a fresh session."""

    def test_reconnects_after_fetch_error(
        self, client: FakeImapClient, recorder: Recorder
    ) -> None:
        original = client.fetch
        failures = {"left": 1}

        def _flaky(uid_set, items):
            if failures["left"]:
                failures["left"] -= 1
                raise OSError("connection reset")
            return original(uid_set, items)

        client.fetch = _flaky
        connector = CountingConnector(client)
        tokens = StaticToken()
        watcher = _watcher(client, recorder, token_provider=tokens, connector=connector)
        handle = watcher.start(0)
        try:
            assert _wait_for(lambda: recorder.uids == [1, 2, 3])
            assert connector.calls >= 2
            assert tokens.calls >= 2
        finally:
            watcher.stop()
            handle.join(timeout=2)

    def test_retries_token_failure(self, client: FakeImapClient, recorder: Recorder) -> None:
        class FlakyToken:
            calls = 0

            def get_token(self) -> str:
                self.calls += 1
                if self.calls == 1:
                    raise AuthenticationError("refresh failed")
                return "tok"

        tokens = FlakyToken()
        watcher = _watcher(client, recorder, token_provider=tokens)
        handle = watcher.start(0)
        try:
            assert _wait_for(lambda: recorder.uids == [1, 2, 3])
            assert tokens.calls >= 2
        finally:
            watcher.stop()
            handle.join(timeout=2)

    def test_retries_connection_failure(
        self, client: FakeImapClient, recorder: Recorder
    ) -> None:
        attempts = {"n": 0}

        def _connector(email: str, token: str) -> ImapSession:
            attempts["n"] += 1
            if attempts["n"] < 3:
                raise ImapConnectionError("unreachable")
            return ImapSession(client, email)  # type: ignore[arg-type]

        watcher = _watcher(client, recorder, connector=_connector)
        handle = watcher.start(0)
        try:
            assert _wait_for(lambda: recorder.uids == [1, 2, 3])
            assert attempts["n"] == 3
        finally:
            watcher.stop()
            handle.join(timeout=2)


class TestRetryDelays:
    """Token failures and connection failures wait different delays."""

    DELAYS = {"poll_interval": 5.0, "reconnect_delay": 30.0, "token_retry_delay": 60.0}

    @pytest.fixture
    def waits(self) -> Iterator[list[float]]:
        recorded: list[float] = []
        real_wait = WatchHandle.wait

        def _recording_wait(self: WatchHandle, seconds: float) -> bool:
            recorded.append(seconds)
            return real_wait(self, 0.01)

        with patch.object(WatchHandle, "wait", _recording_wait):
            yield recorded

    def test_token_failure_waits_token_retry_delay(
        self, client: FakeImapClient, recorder: Recorder, waits: list[float]
    ) -> None:
        tokens = MagicMock()
        tokens.get_token.side_effect = [AuthenticationError("refresh failed")] + ["tok"] * 50
        watcher = MailWatcher(
            ACCOUNT, tokens, "INBOX", recorder, connector=CountingConnector(client), **self.DELAYS
        )
        handle = watcher.start(0)
        try:
            assert _wait_for(lambda: recorder.uids == [1, 2, 3])
        finally:
            watcher.stop()
            handle.join(timeout=2)
        assert waits[0] == 60.0
        assert 30.0 not in waits

    def test_connection_failure_waits_reconnect_delay(
        self, client: FakeImapClient, recorder: Recorder, waits: list[float]
    ) -> None:
        attempts = {"n": 0}

        def _connector(email: str, token: str) -> ImapSession:
            attempts["n"] += 1
            if attempts["n"] == 1:
                raise ImapConnectionError("unreachable")
            return ImapSession(client, email)  # type: ignore[arg-type]

        watcher = MailWatcher(
            ACCOUNT, StaticToken(), "INBOX", recorder, connector=_connector, **self.DELAYS
        )
        handle = watcher.start(0)
        try:
            assert _wait_for(lambda: recorder.uids == [1, 2, 3])
        finally:
            watcher.stop()
            handle.join(timeout=2)
        assert waits[0] == 30.0
        assert 60.0 not in waits


class TestWatchHandle:
    def test_wait_returns_early_on_stop(self) -> None:
        handle = WatchHandle(0)
        threading.Timer(0.05, handle.stop).start()
        started = time.monotonic()
        assert handle.wait(10) is True
        assert time.monotonic() - started < 2

    def test_wait_times_out(self) -> None:
        assert WatchHandle(0).wait(0.01) is False

    def test_initial_state(self) -> None:
        handle = WatchHandle(7)
        assert handle.watermark == 7
        assert handle.state is WatchState.IDLE
        assert handle.join() is True
