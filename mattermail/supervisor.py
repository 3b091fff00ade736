# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Mailbox session supervision and the run loop.

``ConnectionSupervisor`` owns the mailbox session.  Before every watcher
step it makes sure an authenticated session exists, reconnecting when the
previous one failed, and it wraps each step in a ``RetryPolicy``: by
default one retry after 30 seconds, after which the error is surfaced to
the run loop, which logs it and starts over with a fresh session.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from mattermail.chat import ChatError
from mattermail.config import ImapConfig
from mattermail.logging import Log
from mattermail.mailbox import (
    REUSABLE_STATES,
    ImapSession,
    MailboxError,
    MailboxSession,
)
from mattermail.watcher import MailboxWatcher


logger = logging.getLogger(__name__)

T = TypeVar("T")

#: Upper bound for the logout performed on shutdown.
LOGOUT_TIMEOUT_SECONDS = 5.0

#: Errors a step may raise that the retry policy handles.
RETRYABLE_ERRORS = (MailboxError, ChatError)


@dataclass(frozen=True)
class RetryPolicy:
    """How often a failing step is attempted and how long to wait.

    Attributes:
        max_attempts: Total attempts, including the first one.
        delay_seconds: Wait before each retry.
    """

    max_attempts: int = 2
    delay_seconds: float = 30.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.delay_seconds < 0:
            raise ValueError("delay_seconds must not be negative")

    def backoff(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt."""
        return self.delay_seconds

    @classmethod
    def immediate(cls, max_attempts: int = 2) -> RetryPolicy:
        """Retry without waiting."""
        return cls(max_attempts=max_attempts, delay_seconds=0.0)


#: Dials a mailbox server: ``connect(server, port)``.
Connector = Callable[[str, int], MailboxSession]


class ConnectionSupervisor:
    """Keeps a mailbox session alive and runs the watcher forever."""

    def __init__(
        self,
        config: ImapConfig,
        watcher: MailboxWatcher,
        *,
        connect: Connector | None = None,
        retry_policy: RetryPolicy | None = None,
        stop_event: threading.Event | None = None,
        log: Log | None = None,
    ) -> None:
        """Initialize the supervisor.

        Args:
            config: Mailbox server and account.
            watcher: Watcher whose steps are supervised.
            connect: Dials the server; defaults to ``ImapSession.connect``.
            retry_policy: Retry policy for every step.
            stop_event: When set, the run loop exits between steps and
                retry waits are cut short.
            log: Logger for this supervisor.
        """
        self._config = config
        self._watcher = watcher
        self._log = log or logger
        self._connect = connect or self._connect_imap
        self._retry_policy = retry_policy or RetryPolicy()
        self._stop_event = stop_event or threading.Event()
        self._session: MailboxSession | None = None

    @property
    def session(self) -> MailboxSession | None:
        return self._session

    def _connect_imap(self, server: str, port: int) -> MailboxSession:
        return ImapSession.connect(
            server, port, use_ssl=self._config.use_ssl, log=self._log
        )

    def ensure_session(self) -> MailboxSession:
        """Return an authenticated session, connecting if necessary.

        The current session is reused while it is authenticated or
        idling; in any other state it is dropped and a new one is dialed
        and logged in.

        Raises:
            MailboxConnectionError: If the server cannot be reached.
            MailboxAuthError: If the credentials are rejected.
        """
        session = self._session
        if session is not None and session.state in REUSABLE_STATES:
            return session

        if session is not None:
            self._log.debug(
                "Replacing mailbox session in state %s", session.state.value
            )
            self._discard_session()

        session = self._connect(self._config.server, self._config.port)
        self._log.info(
            "Connected with %s:%d", self._config.server, self._config.port
        )
        try:
            session.authenticate(self._config.username, self._config.password)
        except MailboxError:
            session.logout(LOGOUT_TIMEOUT_SECONDS)
            raise
        self._session = session
        return session

    def run_step(
        self, description: str, step: Callable[[MailboxSession], T]
    ) -> T:
        """Run one watcher step under the retry policy.

        Each attempt gets a valid session first.  Mailbox errors drop the
        session so the next attempt reconnects.

        Raises:
            MailboxError: If the last attempt failed on the mailbox.
            ChatError: If the last attempt failed on the chat service.
        """
        policy = self._retry_policy
        attempt = 1
        while True:
            try:
                return step(self.ensure_session())
            except RETRYABLE_ERRORS as e:
                if isinstance(e, MailboxError):
                    self._discard_session()
                if attempt >= policy.max_attempts:
                    raise
                delay = policy.backoff(attempt)
                self._log.warning(
                    "%s: %s. Trying again in %.0fs", description, e, delay
                )
                if self._stop_event.wait(delay):
                    raise
            attempt += 1

    def poll(self) -> int:
        return self.run_step(
            "Error on check new email", self._watcher.poll_once
        )

    def idle(self) -> bool:
        return self.run_step("Error idle", self._watcher.idle_once)

    def run(self) -> None:
        """Poll once, then alternate idle and poll until stopped.

        A step that still fails after its retries is logged and the
        cycle restarts with a fresh session.
        """
        while not self._stop_event.is_set():
            try:
                self._log.info("Checking new emails")
                self.poll()
                self._log.info("Waiting new messages")
                while not self._stop_event.is_set():
                    self.idle()
                    if self._stop_event.is_set():
                        break
                    self.poll()
            except RETRYABLE_ERRORS as e:
                self._log.error("Restarting mail check: %s", e)
            except Exception:
                self._log.exception("Unexpected error, restarting mail check")
                self._discard_session()
                self._stop_event.wait(self._retry_policy.backoff(1))
        self.shutdown()

    def stop(self) -> None:
        """Ask the run loop to exit after the current step."""
        self._stop_event.set()

    def shutdown(self) -> None:
        """Log out of the mailbox, bounded by ``LOGOUT_TIMEOUT_SECONDS``.

        Safe to call with no session or an already closed one.
        """
        self._discard_session()

    def _discard_session(self) -> None:
        session, self._session = self._session, None
        if session is not None:
            session.logout(LOGOUT_TIMEOUT_SECONDS)
