# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Data types shared by the mail-to-chat pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


#: Filename of the body document when the HTML body is posted.
HTML_BODY_FILENAME = "email.html"

#: Filename of the body document when the plain-text body is posted.
TEXT_BODY_FILENAME = "email.txt"


@dataclass(frozen=True)
class RawMessage:
    """One message as fetched from the mailbox.

    Attributes:
        uid: Mailbox-assigned unique id, used to mark the message seen.
        data: Full RFC 822 message (header block and body).
        flags: Flags reported by the server at fetch time.
        internal_date: Arrival timestamp reported by the server, if any.
    """

    uid: str
    data: bytes
    flags: tuple[str, ...] = ()
    internal_date: datetime | None = None

    @property
    def seen(self) -> bool:
        return "\\Seen" in self.flags


@dataclass(frozen=True)
class InlinePart:
    """A MIME part that may be referenced from HTML as ``cid:<id>``.

    ``content_id`` is stored as found in the header (angle brackets
    included); an empty value means the part can never be referenced.
    """

    content_id: str
    content_type: str
    data: bytes


@dataclass(frozen=True)
class AttachmentPart:
    filename: str
    content_type: str
    data: bytes


@dataclass
class ParsedContent:
    """Decoded view of a message, ready to be turned into a post.

    Attributes:
        sender: Decoded From header.
        subject: Decoded Subject header.
        text: Plain-text body, or None if the message has none.
        html: HTML body, or None if the message has none.
        inlines: Parts with an inline disposition, in message order.
        other_parts: Non-text parts with neither an inline nor an
            attachment disposition (typically images inside
            ``multipart/related``), in message order.
        attachments: Parts with an attachment disposition or a filename.
    """

    sender: str
    subject: str
    text: str | None = None
    html: str | None = None
    inlines: list[InlinePart] = field(default_factory=list)
    other_parts: list[InlinePart] = field(default_factory=list)
    attachments: list[AttachmentPart] = field(default_factory=list)


@dataclass(frozen=True)
class FileUpload:
    """A named blob to upload alongside a post."""

    filename: str
    data: bytes


@dataclass
class PostPayload:
    """Everything needed to publish one message to the chat service.

    Attributes:
        channel: Name of the target channel.
        message: Rendered post text.
        body_document: ``email.html`` or ``email.txt`` with the mail body,
            or None when the message has no body.
        attachments: Mail attachments, in message order.
    """

    channel: str
    message: str
    body_document: FileUpload | None = None
    attachments: list[FileUpload] = field(default_factory=list)

    @property
    def files(self) -> list[FileUpload]:
        """Files to upload: the body document first, then attachments."""
        files: list[FileUpload] = []
        if self.body_document is not None:
            files.append(self.body_document)
        files.extend(self.attachments)
        return files


@dataclass(frozen=True)
class Channel:
    """A chat channel resolved within one authenticated session."""

    id: str
    name: str
    display_name: str = ""
