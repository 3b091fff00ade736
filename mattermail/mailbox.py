# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Mailbox access over IMAP.

Defines the ``MailboxSession`` protocol that the watcher and supervisor
program against, and ``ImapSession``, its implementation on top of the
standard library ``imaplib``.  Messages are addressed by UID throughout,
fetched with ``BODY.PEEK[]`` so that fetching never sets ``\\Seen``, and
flagged seen explicitly once they have been posted.

IMAP IDLE (RFC 2177) is driven by hand because ``imaplib`` has no IDLE
support: the command is sent with a fresh tag, the socket is watched
with ``select()`` until the server pushes an untagged response or the
keep-alive timeout expires, and ``DONE`` terminates the command.
"""

from __future__ import annotations

import imaplib
import logging
import re
import select
import time
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from typing import Protocol

from mattermail.logging import Log
from mattermail.types import RawMessage


logger = logging.getLogger(__name__)

#: Default keep-alive for IDLE, within the RFC 2177 29-minute limit.
IDLE_KEEPALIVE_SECONDS = 29 * 60

#: Timeout for dialing the IMAP server.
CONNECT_TIMEOUT_SECONDS = 10.0

_FETCH_ITEMS = "(UID FLAGS INTERNALDATE BODY.PEEK[])"
_UID_PATTERN = re.compile(rb"\bUID (\d+)")
_FLAGS_PATTERN = re.compile(rb"\bFLAGS \(([^)]*)\)")


class MailboxError(Exception):
    """Base exception for mailbox failures."""


class MailboxConnectionError(MailboxError):
    """Raised when the mailbox server cannot be reached."""


class MailboxAuthError(MailboxError):
    """Raised when the server rejects the account credentials."""


class MailboxProtocolError(MailboxError):
    """Raised when a select, search, fetch, store or IDLE command fails."""


class SessionState(Enum):
    """Lifecycle state of a mailbox session.

    Attributes:
        DISCONNECTED: Logged out or never connected.
        CONNECTING: Dialed, not yet authenticated.
        AUTHENTICATED: Logged in and ready for commands.
        IDLING: Inside an IDLE command.
        POLLING: A select/search/fetch/store command is in flight.
        FAILED: A command failed; the session must be replaced.
    """

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    IDLING = "idling"
    POLLING = "polling"
    FAILED = "failed"


#: States in which a session can be reused for the next operation.
REUSABLE_STATES = frozenset({SessionState.AUTHENTICATED, SessionState.IDLING})


class MailboxSession(Protocol):
    """Operations the pipeline needs from a mailbox connection."""

    @property
    def state(self) -> SessionState: ...

    def authenticate(self, username: str, password: str) -> None: ...

    def select_mailbox(self, name: str) -> None: ...

    def search_unseen(self) -> list[str]: ...

    def fetch(self, uids: Sequence[str]) -> list[RawMessage]: ...

    def mark_seen(self, uids: Sequence[str]) -> None: ...

    def idle_wait(self, timeout: float) -> bool: ...

    def logout(self, timeout: float) -> None: ...


class ImapSession:
    """``MailboxSession`` over an ``imaplib`` connection.

    Create instances with ``ImapSession.connect()``.
    """

    def __init__(
        self, connection: imaplib.IMAP4, *, log: Log | None = None
    ) -> None:
        self.connection = connection
        self._log = log or logger
        self._state = SessionState.CONNECTING
        self._idle_tag: bytes | None = None

    @classmethod
    def connect(
        cls,
        server: str,
        port: int,
        *,
        use_ssl: bool = True,
        timeout: float = CONNECT_TIMEOUT_SECONDS,
        log: Log | None = None,
    ) -> ImapSession:
        """Dial the IMAP server.

        Raises:
            MailboxConnectionError: If the server cannot be reached.
        """
        try:
            if use_ssl:
                connection: imaplib.IMAP4 = imaplib.IMAP4_SSL(
                    server, port, timeout=timeout
                )
            else:
                connection = imaplib.IMAP4(server, port, timeout=timeout)
        except (imaplib.IMAP4.error, OSError) as e:
            raise MailboxConnectionError(
                f"Unable to connect to {server}:{port}: {e}"
            ) from e
        return cls(connection, log=log)

    @property
    def state(self) -> SessionState:
        return self._state

    def authenticate(self, username: str, password: str) -> None:
        """Log in with username and password.

        Raises:
            MailboxAuthError: If the credentials are rejected.
            MailboxConnectionError: If the connection drops.
        """
        try:
            self.connection.login(username, password)
        except imaplib.IMAP4.error as e:
            self._state = SessionState.FAILED
            raise MailboxAuthError(
                f"Unable to login as {username}: {e}"
            ) from e
        except OSError as e:
            self._state = SessionState.FAILED
            raise MailboxConnectionError(f"Connection lost: {e}") from e
        self._state = SessionState.AUTHENTICATED

    @contextmanager
    def _command(
        self, state: SessionState, description: str
    ) -> Iterator[None]:
        """Track state around a command and translate its failures."""
        self._state = state
        try:
            yield
        except (imaplib.IMAP4.error, OSError) as e:
            self._state = SessionState.FAILED
            raise MailboxProtocolError(f"{description} failed: {e}") from e
        except MailboxProtocolError:
            self._state = SessionState.FAILED
            raise
        self._state = SessionState.AUTHENTICATED

    def select_mailbox(self, name: str) -> None:
        with self._command(SessionState.POLLING, f"SELECT {name}"):
            status, data = self.connection.select(name)
            if status != "OK":
                raise MailboxProtocolError(f"SELECT {name} returned {status}")

    def search_unseen(self) -> list[str]:
        """Return the UIDs of all unseen messages, in server order."""
        with self._command(SessionState.POLLING, "UID SEARCH UNSEEN"):
            status, data = self.connection.uid("SEARCH", None, "UNSEEN")
            if status != "OK":
                raise MailboxProtocolError(f"UID SEARCH returned {status}")
        if not data or not data[0]:
            return []
        return [uid.decode() for uid in data[0].split()]

    def fetch(self, uids: Sequence[str]) -> list[RawMessage]:
        """Fetch flags, arrival time and full content for *uids*.

        All messages are requested in one command and returned in the
        order the server sent them.
        """
        if not uids:
            return []
        with self._command(SessionState.POLLING, "UID FETCH"):
            status, data = self.connection.uid(
                "FETCH", ",".join(uids), _FETCH_ITEMS
            )
            if status != "OK":
                raise MailboxProtocolError(f"UID FETCH returned {status}")
        return self._parse_fetch(data)

    def _parse_fetch(self, data: list) -> list[RawMessage]:
        # Each message arrives as a (metadata, literal) tuple, optionally
        # followed by a bytes item holding attributes sent after the
        # literal, e.g. b' FLAGS (\\Seen))'.
        entries: list[tuple[bytes, bytes]] = []
        for item in data:
            if isinstance(item, tuple):
                entries.append((item[0], item[1]))
            elif isinstance(item, bytes) and entries:
                meta, literal = entries[-1]
                entries[-1] = (meta + item, literal)

        messages = []
        for meta, literal in entries:
            uid_match = _UID_PATTERN.search(meta)
            if uid_match is None:
                self._log.warning(
                    "Skipping FETCH response without UID: %r", meta[:100]
                )
                continue
            flags_match = _FLAGS_PATTERN.search(meta)
            flags = flags_match.group(1).decode().split() if flags_match else ()
            messages.append(
                RawMessage(
                    uid=uid_match.group(1).decode(),
                    data=literal,
                    flags=tuple(flags),
                    internal_date=_internal_date(meta),
                )
            )
        return messages

    def mark_seen(self, uids: Sequence[str]) -> None:
        """Set ``\\Seen`` on all *uids* in one command."""
        if not uids:
            return
        with self._command(SessionState.POLLING, "UID STORE"):
            status, data = self.connection.uid(
                "STORE", ",".join(uids), "+FLAGS.SILENT", "(\\Seen)"
            )
            if status != "OK":
                raise MailboxProtocolError(f"UID STORE returned {status}")

    def idle_wait(self, timeout: float = IDLE_KEEPALIVE_SECONDS) -> bool:
        """Block in IDLE until the server pushes a change or *timeout*.

        A mailbox must be selected.  IDLE is always terminated with
        ``DONE`` before returning.

        Returns:
            True if the server pushed a notification, False on timeout.

        Raises:
            MailboxProtocolError: If IDLE is refused or the connection
                fails while waiting.
        """
        with self._command(SessionState.IDLING, "IDLE"):
            self._idle_start()
            try:
                notified = self._idle_select(timeout)
            finally:
                self._idle_done()
        return notified

    def _idle_start(self) -> None:
        self._idle_tag = self.connection._new_tag()
        self.connection.send(self._idle_tag + b" IDLE\r\n")
        response = self.connection.readline()
        if not response.startswith(b"+"):
            self._idle_tag = None
            raise MailboxProtocolError(
                f"IDLE not accepted: {response.decode(errors='replace')}"
            )
        self._log.debug("Entered IDLE mode")

    def _idle_select(self, timeout: float) -> bool:
        sock = self.connection.socket()
        readable, _, _ = select.select([sock], [], [], timeout)
        if not readable:
            self._log.debug("IDLE keep-alive expired after %.0fs", timeout)
            return False
        response = self.connection.readline()
        if not response:
            raise MailboxProtocolError("Connection closed during IDLE")
        self._log.debug(
            "IDLE notification: %s", response.decode(errors="replace").strip()
        )
        return True

    def _idle_done(self) -> None:
        tag = self._idle_tag or b""
        self._idle_tag = None
        self.connection.send(b"DONE\r\n")
        # Untagged notifications may precede the tagged completion
        for _ in range(100):
            response = self.connection.readline()
            if not response:
                raise MailboxProtocolError("Connection closed leaving IDLE")
            if response.startswith(b"*"):
                continue
            if tag and response.startswith(tag):
                if b"OK" not in response.upper():
                    self._log.warning(
                        "IDLE completed with non-OK status: %s",
                        response.decode(errors="replace").strip(),
                    )
                return
        self._log.warning("No tagged IDLE completion after 100 responses")

    def logout(self, timeout: float) -> None:
        """Best-effort LOGOUT bounded by *timeout* seconds.

        Safe to call on a session that is already logged out or failed.
        """
        if self._state == SessionState.DISCONNECTED:
            return
        try:
            self.connection.socket().settimeout(timeout)
            self.connection.logout()
            self._log.debug("Logged out from IMAP server")
        except (imaplib.IMAP4.error, OSError) as e:
            self._log.warning("Error during IMAP logout: %s", e)
        finally:
            self._state = SessionState.DISCONNECTED


def _internal_date(meta: bytes) -> datetime | None:
    parsed = imaplib.Internaldate2tuple(meta)
    if parsed is None:
        return None
    return datetime.fromtimestamp(time.mktime(parsed))
