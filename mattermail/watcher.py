# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Mailbox watcher: discovers unseen mail and posts it.

One poll selects the mailbox, searches for unseen messages, fetches them
in a single batch and posts them in server order.  Messages are marked
seen only after they were posted, so a failure leaves them unseen and
the next poll picks them up again.
"""

import logging
from collections.abc import Callable
from enum import Enum
from typing import Any

from mattermail.chat import ChannelNotFoundError, ChatError
from mattermail.logging import Log
from mattermail.mailbox import (
    IDLE_KEEPALIVE_SECONDS,
    MailboxError,
    MailboxSession,
)
from mattermail.types import PostPayload, RawMessage


logger = logging.getLogger(__name__)


class WatcherState(Enum):
    SELECTING = "selecting"
    SEARCHING = "searching"
    FETCHING = "fetching"
    POSTING = "posting"
    MARKING = "marking"
    IDLING = "idling"


class MailboxWatcher:
    """Drives poll and idle cycles on a borrowed mailbox session.

    Attributes:
        mailbox: Name of the mailbox to watch.
        idle_timeout: Keep-alive after which an idle wait returns even
            without a server notification.
        state: Step the watcher is in (or last was in).
    """

    def __init__(
        self,
        transform: Callable[[RawMessage], PostPayload],
        publish: Callable[[PostPayload], Any],
        *,
        mailbox: str = "INBOX",
        idle_timeout: float = IDLE_KEEPALIVE_SECONDS,
        log: Log | None = None,
    ) -> None:
        """Initialize the watcher.

        Args:
            transform: Turns a fetched message into a post payload,
                usually ``MimeTransformer.transform``.
            publish: Publishes a payload, usually ``ChatPublisher.publish``.
                Must raise on failure.
            mailbox: Mailbox to watch.
            idle_timeout: IDLE keep-alive in seconds.
            log: Logger for this watcher.
        """
        self._transform = transform
        self._publish = publish
        self.mailbox = mailbox
        self.idle_timeout = idle_timeout
        self._log = log or logger
        self.state = WatcherState.SELECTING

    def poll_once(self, session: MailboxSession) -> int:
        """Post every unseen message once.

        Messages already flagged ``\\Seen`` when fetched are skipped.  A
        message whose channel does not exist is logged and marked seen,
        since retrying cannot succeed under the current configuration.

        On any other publish failure, messages posted earlier in the
        batch are marked seen, then the error propagates; the failing
        message and all later ones stay unseen.

        Returns:
            Number of messages posted.

        Raises:
            MailboxError: If a mailbox command fails.
            ChatError: If publishing fails.
        """
        self.state = WatcherState.SELECTING
        session.select_mailbox(self.mailbox)

        self.state = WatcherState.SEARCHING
        uids = session.search_unseen()
        if not uids:
            self._log.debug("No unseen messages")
            return 0

        self.state = WatcherState.FETCHING
        messages = session.fetch(uids)
        self._log.info("Fetched %d unseen messages", len(messages))

        seen: list[str] = []
        posted = 0
        for raw in messages:
            if raw.seen:
                self._log.debug("Skipping message %s, already seen", raw.uid)
                continue

            self.state = WatcherState.POSTING
            try:
                self._publish(self._transform(raw))
            except ChannelNotFoundError as e:
                self._log.error("Dropping message %s: %s", raw.uid, e)
            except ChatError:
                self._flush_seen(session, seen)
                raise
            else:
                posted += 1
            seen.append(raw.uid)

        self._mark_seen(session, seen)
        return posted

    def _mark_seen(self, session: MailboxSession, uids: list[str]) -> None:
        if not uids:
            return
        self.state = WatcherState.MARKING
        session.mark_seen(uids)
        self._log.debug("Marked %d messages seen", len(uids))

    def _flush_seen(self, session: MailboxSession, uids: list[str]) -> None:
        # Marks what was posted before a failure; the publish error is the
        # one that propagates.
        try:
            self._mark_seen(session, uids)
        except MailboxError as e:
            self._log.error(
                "Failed to mark %d posted messages seen: %s", len(uids), e
            )

    def idle_once(self, session: MailboxSession) -> bool:
        """Wait for the server to report mailbox activity.

        Returns immediately if unseen mail is already pending, which
        closes the window between the previous poll and entering IDLE.
        The caller polls afterwards regardless of the outcome.

        Returns:
            True if woken by a server notification or pending mail,
            False if the keep-alive expired.

        Raises:
            MailboxError: If selecting, searching or idling fails.
        """
        self.state = WatcherState.SELECTING
        session.select_mailbox(self.mailbox)

        self.state = WatcherState.SEARCHING
        if session.search_unseen():
            self._log.debug("Skipping IDLE, unseen messages pending")
            return True

        self.state = WatcherState.IDLING
        self._log.debug("Waiting for new messages")
        return session.idle_wait(self.idle_timeout)
