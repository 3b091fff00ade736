# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Mattermost chat service client.

Defines the ``ChatClient`` protocol used by the publisher and
``MattermostClient``, an implementation on the Mattermost REST API v4
using ``httpx``:

- ``POST /users/login`` returns a session token in the ``Token`` header.
- ``GET /teams/name/{team}`` resolves the configured team.
- ``GET /users/me/teams/{team_id}/channels`` lists channels.
- ``POST /files`` uploads files (multipart) and returns file infos.
- ``POST /posts`` creates a post referencing uploaded file ids.
- ``POST /users/logout`` ends the session.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any, Protocol

import httpx

from mattermail.logging import Log
from mattermail.types import Channel, FileUpload


logger = logging.getLogger(__name__)

#: Default timeout for chat API requests in seconds.
DEFAULT_TIMEOUT_SECONDS = 30.0


class ChatError(Exception):
    """Base exception for chat service failures."""


class ChatAuthError(ChatError):
    """Raised when the chat service rejects the login."""


class ChatSessionExpiredError(ChatError):
    """Raised when an authenticated request is rejected with 401."""


class ChannelNotFoundError(ChatError):
    """Raised when no channel has the configured name."""

    def __init__(self, channel: str) -> None:
        self.channel = channel
        super().__init__(f"Did not find channel with name {channel!r}")


class UploadError(ChatError):
    """Raised when uploading files to a channel fails."""


class PostError(ChatError):
    """Raised when creating a post fails."""


class ChatClient(Protocol):
    """Operations the publisher needs from a chat service session."""

    @property
    def authenticated(self) -> bool: ...

    def login(self) -> None: ...

    def list_channels(self) -> list[Channel]: ...

    def upload_files(
        self, channel_id: str, files: Sequence[FileUpload]
    ) -> list[str]: ...

    def create_post(
        self, channel_id: str, message: str, file_ids: Sequence[str] = ()
    ) -> dict[str, Any]: ...

    def logout(self) -> None: ...


class MattermostClient:
    """``ChatClient`` for a Mattermost server.

    Attributes:
        server: Base URL of the Mattermost server.
        team: Team name whose channels are used.
        username: Login id (username or email address).
    """

    def __init__(
        self,
        server: str,
        team: str,
        username: str,
        password: str,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
        log: Log | None = None,
    ) -> None:
        self.server = server.rstrip("/")
        self.team = team
        self.username = username
        self._password = password
        self._log = log or logger
        self._http = httpx.Client(
            base_url=f"{self.server}/api/v4",
            timeout=timeout,
            transport=transport,
        )
        self._token: str | None = None
        self._team_id: str | None = None

    @property
    def authenticated(self) -> bool:
        return self._token is not None

    def login(self) -> None:
        """Log in and resolve the team.

        Raises:
            ChatAuthError: If the credentials are rejected.
            ChatError: If the server cannot be reached or the team does
                not exist.
        """
        try:
            response = self._http.post(
                "/users/login",
                json={"login_id": self.username, "password": self._password},
            )
        except httpx.HTTPError as e:
            raise ChatError(f"Unable to reach {self.server}: {e}") from e

        if response.status_code in (400, 401, 403):
            reason = _api_message(response)
            raise ChatAuthError(f"Login as {self.username} rejected: {reason}")
        _raise_for_status(response, ChatError, "Login")

        token = response.headers.get("Token")
        if not token:
            raise ChatAuthError("Login response carried no session token")
        self._token = token

        try:
            team = self._request("GET", f"/teams/name/{self.team}", ChatError)
            self._team_id = _field(team, "id", ChatError, "Team lookup")
        except ChatError:
            self._token = None
            raise
        self._log.info("Logged in to %s as %s", self.server, self.username)

    def list_channels(self) -> list[Channel]:
        data = self._request(
            "GET", f"/users/me/teams/{self._team_id}/channels", ChatError
        )
        try:
            return [
                Channel(
                    id=item["id"],
                    name=item["name"],
                    display_name=item.get("display_name", ""),
                )
                for item in data
            ]
        except (KeyError, TypeError, AttributeError) as e:
            raise ChatError(f"Unexpected channel list: {e!r}") from e

    def upload_files(
        self, channel_id: str, files: Sequence[FileUpload]
    ) -> list[str]:
        """Upload *files* to a channel in one request.

        Returns:
            Ids of the uploaded files, in upload order.

        Raises:
            UploadError: If the upload fails.
        """
        data = self._request(
            "POST",
            "/files",
            UploadError,
            data={"channel_id": channel_id},
            files=[("files", (f.filename, f.data)) for f in files],
        )
        try:
            file_ids = [info["id"] for info in data.get("file_infos") or []]
        except (KeyError, TypeError, AttributeError) as e:
            raise UploadError(f"Unexpected upload response: {e!r}") from e
        if len(file_ids) != len(files):
            raise UploadError(
                f"Uploaded {len(files)} files, server returned {len(file_ids)}"
            )
        return file_ids

    def create_post(
        self, channel_id: str, message: str, file_ids: Sequence[str] = ()
    ) -> dict[str, Any]:
        """Create a post in a channel.

        Raises:
            PostError: If the post is rejected or the response is empty.
        """
        body: dict[str, Any] = {"channel_id": channel_id, "message": message}
        if file_ids:
            body["file_ids"] = list(file_ids)
        post = self._request("POST", "/posts", PostError, json=body)
        if not post:
            raise PostError("Create post returned no post")
        return post

    def logout(self) -> None:
        """Best-effort logout; the local session is always dropped."""
        if self._token is None:
            return
        try:
            self._http.post("/users/logout", headers=self._auth_headers())
        except httpx.HTTPError as e:
            self._log.warning("Error during chat logout: %s", e)
        finally:
            self._token = None
            self._team_id = None

    def close(self) -> None:
        self.logout()
        self._http.close()

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._token}"}

    def _request(
        self,
        method: str,
        path: str,
        error_type: type[ChatError],
        **kwargs: Any,
    ) -> Any:
        """Send an authenticated request and decode its JSON body.

        Raises:
            ChatSessionExpiredError: On 401, or when not logged in.
            error_type: On any other failure.
        """
        if self._token is None:
            raise ChatSessionExpiredError("Not logged in to chat service")
        try:
            response = self._http.request(
                method, path, headers=self._auth_headers(), **kwargs
            )
        except httpx.HTTPError as e:
            raise error_type(f"{method} {path} failed: {e}") from e

        if response.status_code == 401:
            self._token = None
            raise ChatSessionExpiredError(
                f"{method} {path}: session expired ({_api_message(response)})"
            )
        _raise_for_status(response, error_type, f"{method} {path}")
        try:
            return response.json()
        except ValueError as e:
            raise error_type(f"{method} {path}: invalid JSON: {e}") from e


def _raise_for_status(
    response: httpx.Response, error_type: type[ChatError], what: str
) -> None:
    try:
        response.raise_for_status()
    except httpx.HTTPStatusError as e:
        raise error_type(
            f"{what} returned {response.status_code}: {_api_message(response)}"
        ) from e


def _field(
    data: Any, key: str, error_type: type[ChatError], what: str
) -> Any:
    """Read *key* from a JSON object, raising *error_type* if absent."""
    try:
        return data[key]
    except (KeyError, TypeError, IndexError) as e:
        raise error_type(f"{what}: response has no {key!r}") from e


def _api_message(response: httpx.Response) -> str:
    """Extract the error message from a Mattermost error response."""
    try:
        return str(response.json().get("message", response.text))
    except (ValueError, AttributeError):
        return response.text
