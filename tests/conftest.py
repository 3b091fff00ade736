# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Shared pytest fixtures and in-memory fakes."""

from collections.abc import Sequence
from pathlib import Path
from typing import Any

import pytest

from mattermail.chat import ChatSessionExpiredError
from mattermail.config import ImapConfig
from mattermail.logging import SecretFilter
from mattermail.mailbox import SessionState
from mattermail.types import Channel, FileUpload, RawMessage


def make_message(
    *,
    sender: str = "alice@example.com",
    subject: str = "Hello",
    body: str = "Hi there",
    content_type: str = "text/plain",
) -> bytes:
    """Build a single-part RFC 822 message."""
    return (
        f"From: {sender}\n"
        f"To: support@example.com\n"
        f"Subject: {subject}\n"
        f"MIME-Version: 1.0\n"
        f"Content-Type: {content_type}; charset=utf-8\n"
        f"\n"
        f"{body}"
    ).encode()


def make_raw(uid: str, *, flags: tuple[str, ...] = (), **kwargs) -> RawMessage:
    """Build a fetched message with a plain-text body."""
    return RawMessage(uid=uid, data=make_message(**kwargs), flags=flags)


class FakeSession:
    """In-memory ``MailboxSession``.

    ``errors`` maps a method name to exceptions raised by successive
    calls; a raising call leaves the session FAILED like a real one.
    """

    def __init__(
        self,
        messages: Sequence[RawMessage] = (),
        *,
        idle_results: Sequence[bool] = (),
    ) -> None:
        self.messages = {m.uid: m for m in messages}
        self.seen_uids = {m.uid for m in messages if m.seen}
        self.state = SessionState.CONNECTING
        self.calls: list[tuple[Any, ...]] = []
        self.errors: dict[str, list[Exception]] = {}
        self.idle_results = list(idle_results)

    def _call(self, name: str, *args: Any) -> None:
        self.calls.append((name, *args))
        pending = self.errors.get(name)
        if pending:
            self.state = SessionState.FAILED
            raise pending.pop(0)

    def call_names(self) -> list[str]:
        return [c[0] for c in self.calls]

    def authenticate(self, username: str, password: str) -> None:
        self._call("authenticate", username, password)
        self.state = SessionState.AUTHENTICATED

    def select_mailbox(self, name: str) -> None:
        self._call("select_mailbox", name)

    def search_unseen(self) -> list[str]:
        self._call("search_unseen")
        return [uid for uid in self.messages if uid not in self.seen_uids]

    def fetch(self, uids: Sequence[str]) -> list[RawMessage]:
        self._call("fetch", list(uids))
        return [self.messages[uid] for uid in uids]

    def mark_seen(self, uids: Sequence[str]) -> None:
        self._call("mark_seen", list(uids))
        self.seen_uids.update(uids)

    def idle_wait(self, timeout: float) -> bool:
        self._call("idle_wait", timeout)
        if self.idle_results:
            return self.idle_results.pop(0)
        return False

    def logout(self, timeout: float) -> None:
        self.calls.append(("logout", timeout))
        self.state = SessionState.DISCONNECTED


class FakeChatClient:
    """In-memory ``ChatClient``.

    ``errors`` maps an operation (``login``, ``list_channels``,
    ``upload``, ``post``) to exceptions raised by successive calls.
    """

    def __init__(self, channels: Sequence[str] = ("town-square", "mail")):
        self.channels = [
            Channel(id=f"{name}-id", name=name, display_name=name.title())
            for name in channels
        ]
        self.authenticated = False
        self.login_count = 0
        self.logout_count = 0
        self.list_count = 0
        self.uploads: list[tuple[str, list[FileUpload]]] = []
        self.posts: list[dict[str, Any]] = []
        self.errors: dict[str, list[Exception]] = {}

    def _maybe_fail(self, operation: str) -> None:
        pending = self.errors.get(operation)
        if pending:
            error = pending.pop(0)
            if isinstance(error, ChatSessionExpiredError):
                self.authenticated = False
            raise error

    def login(self) -> None:
        self._maybe_fail("login")
        self.login_count += 1
        self.authenticated = True

    def list_channels(self) -> list[Channel]:
        self._maybe_fail("list_channels")
        self.list_count += 1
        return list(self.channels)

    def upload_files(
        self, channel_id: str, files: Sequence[FileUpload]
    ) -> list[str]:
        self._maybe_fail("upload")
        batch = len(self.uploads)
        self.uploads.append((channel_id, list(files)))
        return [f"file-{batch}-{i}" for i in range(len(files))]

    def create_post(
        self, channel_id: str, message: str, file_ids: Sequence[str] = ()
    ) -> dict[str, Any]:
        self._maybe_fail("post")
        post = {
            "id": f"post-{len(self.posts)}",
            "channel_id": channel_id,
            "message": message,
            "file_ids": list(file_ids),
        }
        self.posts.append(post)
        return post

    def logout(self) -> None:
        self.logout_count += 1
        self.authenticated = False


@pytest.fixture
def fake_chat() -> FakeChatClient:
    return FakeChatClient()


@pytest.fixture
def imap_config() -> ImapConfig:
    return ImapConfig(
        server="imap.example.com",
        username="support@example.com",
        password="imap-secret",
        idle_timeout=60,
    )


@pytest.fixture(autouse=True)
def _clear_secrets():
    yield
    SecretFilter.clear_secrets()


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    """Write a valid single-profile config file."""
    path = tmp_path / "mattermail.yaml"
    path.write_text(
        "profiles:\n"
        "  support:\n"
        "    imap:\n"
        "      server: imap.example.com\n"
        "      username: support@example.com\n"
        "      password: imap-secret\n"
        "    mattermost:\n"
        "      server: https://chat.example.com\n"
        "      team: engineering\n"
        "      username: mailbot\n"
        "      password: chat-secret\n"
        "      channel: support-mail\n"
    )
    return path
