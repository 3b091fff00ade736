# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Publishing post payloads to a chat channel.

The publisher keeps one chat session open across messages.  It logs in
lazily on first use, caches channel lookups for the lifetime of that
session, and re-authenticates once when the server reports the session
expired.  After any other failure the session is discarded, so the next
message starts from a fresh login and never inherits a broken session.
"""

import logging
from typing import Any

from mattermail.chat import (
    ChannelNotFoundError,
    ChatClient,
    ChatError,
    ChatSessionExpiredError,
)
from mattermail.logging import Log
from mattermail.types import Channel, PostPayload


logger = logging.getLogger(__name__)


class ChatPublisher:
    """Publishes ``PostPayload`` objects through a ``ChatClient``."""

    def __init__(self, client: ChatClient, *, log: Log | None = None) -> None:
        self._client = client
        self._log = log or logger
        self._channels: dict[str, Channel] = {}

    def publish(self, payload: PostPayload) -> dict[str, Any]:
        """Publish one payload to the channel it names.

        1. Resolve the channel by exact, case-sensitive name.
        2. Without files, create a text-only post.
        3. Otherwise upload the body document and attachments in one
           request and create the post with the returned file ids.

        Returns:
            The created post as returned by the chat service.

        Raises:
            ChannelNotFoundError: No channel has the payload's name.
                Nothing is uploaded or posted.
            UploadError: The upload failed. No post is created.
            PostError: The post was rejected.
            ChatAuthError: Login was rejected.
            ChatError: Any other chat service failure.
        """
        try:
            try:
                return self._publish_once(payload)
            except ChatSessionExpiredError as e:
                self._log.info("Chat session expired, logging in again: %s", e)
                self._reset_session()
                return self._publish_once(payload)
        except ChannelNotFoundError:
            raise
        except ChatError:
            self._reset_session()
            raise

    def _publish_once(self, payload: PostPayload) -> dict[str, Any]:
        self._ensure_session()
        channel = self.resolve_channel(payload.channel)

        files = payload.files
        if not files:
            self._log.info("Posting message to %s", channel.name)
            return self._client.create_post(channel.id, payload.message)

        file_ids = self._client.upload_files(channel.id, files)
        self._log.info(
            "Posting message with %d files to %s", len(file_ids), channel.name
        )
        return self._client.create_post(channel.id, payload.message, file_ids)

    def resolve_channel(self, name: str) -> Channel:
        """Find a channel by exact name, using the per-session cache.

        Raises:
            ChannelNotFoundError: If no channel matches.
        """
        if name in self._channels:
            return self._channels[name]
        for channel in self._client.list_channels():
            if channel.name == name:
                self._channels[name] = channel
                return channel
        raise ChannelNotFoundError(name)

    def _ensure_session(self) -> None:
        if not self._client.authenticated:
            self._channels.clear()
            self._client.login()

    def _reset_session(self) -> None:
        self._channels.clear()
        self._client.logout()

    def close(self) -> None:
        """Log out of the chat service."""
        self._reset_session()
