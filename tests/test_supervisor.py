# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Tests for the connection supervisor and retry policy."""

import logging
import threading
from unittest.mock import MagicMock

import pytest

from mattermail.chat import PostError
from mattermail.config import ImapConfig
from mattermail.mailbox import (
    MailboxAuthError,
    MailboxConnectionError,
    MailboxProtocolError,
    SessionState,
)
from mattermail.supervisor import (
    LOGOUT_TIMEOUT_SECONDS,
    ConnectionSupervisor,
    RetryPolicy,
)
from tests.conftest import FakeSession


class Dialer:
    """Connector handing out prepared sessions or raising errors."""

    def __init__(self, *results: FakeSession | Exception) -> None:
        self.results = list(results)
        self.calls: list[tuple[str, int]] = []

    def __call__(self, server: str, port: int) -> FakeSession:
        self.calls.append((server, port))
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


def _supervisor(
    imap_config: ImapConfig,
    dialer: Dialer,
    watcher: MagicMock | None = None,
    **kwargs,
) -> ConnectionSupervisor:
    kwargs.setdefault("retry_policy", RetryPolicy.immediate())
    return ConnectionSupervisor(
        imap_config, watcher or MagicMock(), connect=dialer, **kwargs
    )


class TestRetryPolicy:
    def test_defaults(self) -> None:
        policy = RetryPolicy()
        assert policy.max_attempts == 2
        assert policy.backoff(1) == 30.0

    def test_immediate(self) -> None:
        assert RetryPolicy.immediate(3) == RetryPolicy(3, 0.0)

    def test_invalid(self) -> None:
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)
        with pytest.raises(ValueError):
            RetryPolicy(delay_seconds=-1)


class TestEnsureSession:
    def test_connects_and_authenticates(self, imap_config: ImapConfig) -> None:
        session = FakeSession()
        dialer = Dialer(session)

        result = _supervisor(imap_config, dialer).ensure_session()

        assert result is session
        assert dialer.calls == [("imap.example.com", 993)]
        assert session.calls[0] == (
            "authenticate",
            "support@example.com",
            "imap-secret",
        )

    def test_reuses_authenticated_session(
        self, imap_config: ImapConfig
    ) -> None:
        dialer = Dialer(FakeSession())
        supervisor = _supervisor(imap_config, dialer)

        first = supervisor.ensure_session()
        second = supervisor.ensure_session()

        assert first is second
        assert len(dialer.calls) == 1

    def test_replaces_failed_session(self, imap_config: ImapConfig) -> None:
        old, new = FakeSession(), FakeSession()
        supervisor = _supervisor(imap_config, Dialer(old, new))

        supervisor.ensure_session()
        old.state = SessionState.FAILED

        assert supervisor.ensure_session() is new
        assert ("logout", LOGOUT_TIMEOUT_SECONDS) in old.calls

    def test_auth_failure_propagates(self, imap_config: ImapConfig) -> None:
        session = FakeSession()
        session.errors["authenticate"] = [MailboxAuthError("rejected")]
        supervisor = _supervisor(imap_config, Dialer(session))

        with pytest.raises(MailboxAuthError):
            supervisor.ensure_session()
        assert supervisor.session is None
        assert ("logout", LOGOUT_TIMEOUT_SECONDS) in session.calls


class TestRunStep:
    def test_retries_connection_failure(
        self, imap_config: ImapConfig
    ) -> None:
        session = FakeSession()
        dialer = Dialer(MailboxConnectionError("refused"), session)
        step = MagicMock(return_value=5)

        result = _supervisor(imap_config, dialer).run_step("Polling", step)

        assert result == 5
        step.assert_called_once_with(session)

    def test_gives_up_after_max_attempts(
        self, imap_config: ImapConfig
    ) -> None:
        dialer = Dialer(
            MailboxConnectionError("refused"),
            MailboxConnectionError("refused again"),
        )

        with pytest.raises(MailboxConnectionError, match="again"):
            _supervisor(imap_config, dialer).run_step("Polling", MagicMock())
        assert len(dialer.calls) == 2

    def test_mailbox_error_reconnects(self, imap_config: ImapConfig) -> None:
        first, second = FakeSession(), FakeSession()
        step = MagicMock(side_effect=[MailboxProtocolError("gone"), 1])

        supervisor = _supervisor(imap_config, Dialer(first, second))
        assert supervisor.run_step("Polling", step) == 1

        assert step.call_args_list[1].args[0] is second
        assert ("logout", LOGOUT_TIMEOUT_SECONDS) in first.calls

    def test_chat_error_keeps_session(self, imap_config: ImapConfig) -> None:
        session = FakeSession()
        step = MagicMock(side_effect=[PostError("rejected"), 1])

        supervisor = _supervisor(imap_config, Dialer(session))
        assert supervisor.run_step("Polling", step) == 1

        assert step.call_args_list[1].args[0] is session

    def test_logs_each_retry_once(
        self, imap_config: ImapConfig, caplog: pytest.LogCaptureFixture
    ) -> None:
        step = MagicMock(side_effect=[PostError("rejected"), 1])
        supervisor = _supervisor(imap_config, Dialer(FakeSession()))

        with caplog.at_level(logging.WARNING, logger="mattermail.supervisor"):
            supervisor.run_step("Error on check new email", step)

        assert [r.getMessage() for r in caplog.records] == [
            "Error on check new email: rejected. Trying again in 0s"
        ]

    def test_waits_between_attempts(self, imap_config: ImapConfig) -> None:
        stop_event = MagicMock()
        stop_event.wait.return_value = False
        step = MagicMock(side_effect=[PostError("rejected"), 1])

        supervisor = _supervisor(
            imap_config,
            Dialer(FakeSession()),
            retry_policy=RetryPolicy(delay_seconds=12.5),
            stop_event=stop_event,
        )
        supervisor.run_step("Polling", step)

        stop_event.wait.assert_called_once_with(12.5)

    def test_stop_cuts_retry_wait_short(
        self, imap_config: ImapConfig
    ) -> None:
        stop_event = threading.Event()
        stop_event.set()
        step = MagicMock(side_effect=PostError("rejected"))

        supervisor = _supervisor(
            imap_config,
            Dialer(FakeSession()),
            retry_policy=RetryPolicy(max_attempts=5, delay_seconds=60),
            stop_event=stop_event,
        )
        with pytest.raises(PostError):
            supervisor.run_step("Polling", step)
        assert step.call_count == 1


class TestRun:
    def test_polls_then_alternates_idle_and_poll(
        self, imap_config: ImapConfig
    ) -> None:
        session = FakeSession()
        watcher = MagicMock()
        watcher.poll_once.return_value = 0
        supervisor = _supervisor(imap_config, Dialer(session), watcher)
        idles = iter([True, False])

        def idle(s: FakeSession) -> bool:
            try:
                return next(idles)
            except StopIteration:
                supervisor.stop()
                return False

        watcher.idle_once.side_effect = idle

        supervisor.run()

        assert watcher.poll_once.call_count == 3
        assert watcher.idle_once.call_count == 3
        assert session.state == SessionState.DISCONNECTED
        assert supervisor.session is None

    def test_restarts_after_exhausted_retries(
        self, imap_config: ImapConfig, caplog: pytest.LogCaptureFixture
    ) -> None:
        session = FakeSession()
        watcher = MagicMock()
        watcher.poll_once.side_effect = [PostError("rejected"), 0]
        supervisor = _supervisor(
            imap_config,
            Dialer(session),
            watcher,
            retry_policy=RetryPolicy.immediate(1),
        )
        watcher.idle_once.side_effect = lambda s: supervisor.stop()

        with caplog.at_level(logging.ERROR, logger="mattermail.supervisor"):
            supervisor.run()

        assert watcher.poll_once.call_count == 2
        assert [r.getMessage() for r in caplog.records] == [
            "Restarting mail check: rejected"
        ]

    def test_unexpected_error_restarts_with_new_session(
        self, imap_config: ImapConfig
    ) -> None:
        first, second = FakeSession(), FakeSession()
        watcher = MagicMock()
        watcher.poll_once.side_effect = [RuntimeError("bug"), 0]
        supervisor = _supervisor(imap_config, Dialer(first, second), watcher)
        watcher.idle_once.side_effect = lambda s: supervisor.stop()

        supervisor.run()

        assert ("logout", LOGOUT_TIMEOUT_SECONDS) in first.calls
        assert watcher.idle_once.call_args.args[0] is second

    def test_stopped_before_start(self, imap_config: ImapConfig) -> None:
        dialer = Dialer()
        supervisor = _supervisor(imap_config, dialer)
        supervisor.stop()

        supervisor.run()

        assert dialer.calls == []

    def test_shutdown_without_session(self, imap_config: ImapConfig) -> None:
        _supervisor(imap_config, Dialer()).shutdown()
