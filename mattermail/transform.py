# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""MIME message to chat post transformation.

Turns a fetched ``RawMessage`` into a ``PostPayload``:

1. **Parse** the MIME tree into ``ParsedContent``: decoded From and
   Subject, plain-text and HTML bodies, inline parts, other embedded
   parts and attachments.
2. **Select the body document**: the HTML body (``email.html``) if present,
   else the plain-text body (``email.txt``), else none.
3. **Inline images**: in an HTML body document, every ``cid:<id>``
   reference to a part in the same message is replaced by a ``data:`` URI
   so the uploaded document is self-contained.
4. **Preview**: the first lines of the plain-text body, with ``" ..."``
   appended when lines were cut.
5. **Render** the post text from the profile's message template.

Everything here is pure apart from logging.
"""

import base64
import logging
import mimetypes
import re
from email.message import Message
from email.parser import BytesParser

from mattermail.headers import decode_header_value
from mattermail.htmltext import html_to_text
from mattermail.logging import Log
from mattermail.types import (
    HTML_BODY_FILENAME,
    TEXT_BODY_FILENAME,
    AttachmentPart,
    FileUpload,
    InlinePart,
    ParsedContent,
    PostPayload,
    RawMessage,
)


logger = logging.getLogger(__name__)

#: Template used when a profile does not configure one.  Slots are, in
#: order: sender, subject, preview.
DEFAULT_MESSAGE_TEMPLATE = ":incoming_envelope: _From: **{}**_\n>_{}_\n\n{}"

#: Number of body lines shown in the post preview.
PREVIEW_LINES = 5

#: Appended to the preview when the body had more lines.
PREVIEW_MARKER = " ..."

_LINE_BREAK = re.compile(r"\r\n|\n")

_BODY_TYPES = ("text/plain", "text/html")


def parse_message(data: bytes, log: Log | None = None) -> ParsedContent:
    """Parse raw RFC 822 bytes into ``ParsedContent``.

    Part classification, in order of precedence:

    - ``message/rfc822`` with ``Content-Disposition: attachment`` or a
      filename → one attachment holding the whole embedded message.  Its
      parts are not looked at.
    - Other multipart containers → their children, depth first.
    - ``Content-Disposition: attachment`` → attachment.
    - ``text/plain`` / ``text/html`` without a filename → body.  Several
      body parts of the same type are joined with a newline.
    - ``Content-Disposition: inline`` → inline part.
    - Any other part with a filename → attachment.
    - Everything else → other part (still eligible for ``cid:``
      substitution).

    Args:
        data: Full message bytes.
        log: Logger for decode warnings.

    Returns:
        Parsed content.
    """
    log = log or logger
    message = BytesParser().parsebytes(data)

    parsed = ParsedContent(
        sender=decode_header_value(message.get("From"), log),
        subject=decode_header_value(message.get("Subject"), log),
    )
    texts: list[str] = []
    htmls: list[str] = []
    _collect_parts(message, parsed, texts, htmls, log)

    if texts:
        parsed.text = "\n".join(texts)
    if htmls:
        parsed.html = "\n".join(htmls)

    log.debug(
        "Parsed message: text=%s html=%s inlines=%d other=%d attachments=%d",
        parsed.text is not None,
        parsed.html is not None,
        len(parsed.inlines),
        len(parsed.other_parts),
        len(parsed.attachments),
    )
    return parsed


def _collect_parts(
    part: Message,
    parsed: ParsedContent,
    texts: list[str],
    htmls: list[str],
    log: Log,
) -> None:
    content_type = part.get_content_type()
    disposition = part.get_content_disposition()
    filename = _part_filename(part, log)

    if content_type == "message/rfc822" and (
        disposition == "attachment" or filename
    ):
        parsed.attachments.append(
            _attachment(part, filename, len(parsed.attachments))
        )
        return

    if part.is_multipart():
        for child in part.get_payload():
            _collect_parts(child, parsed, texts, htmls, log)
        return

    if disposition == "attachment":
        parsed.attachments.append(
            _attachment(part, filename, len(parsed.attachments))
        )
    elif content_type in _BODY_TYPES and not filename:
        body = _decode_text(part, log)
        (texts if content_type == "text/plain" else htmls).append(body)
    elif disposition == "inline":
        parsed.inlines.append(_inline(part))
    elif filename:
        parsed.attachments.append(
            _attachment(part, filename, len(parsed.attachments))
        )
    else:
        parsed.other_parts.append(_inline(part))


def _part_filename(part: Message, log: Log) -> str:
    # get_filename() handles RFC 2231; encoded words are left to us
    filename = part.get_filename()
    if not filename:
        return ""
    return decode_header_value(filename, log)


def _payload_bytes(part: Message) -> bytes:
    if part.get_content_type() == "message/rfc822" and part.is_multipart():
        # Parsed embedded message; decode=True yields None here
        return part.get_payload(0).as_bytes()
    payload = part.get_payload(decode=True)
    if isinstance(payload, bytes):
        return payload
    return b""


def _decode_text(part: Message, log: Log) -> str:
    payload = _payload_bytes(part)
    charset = part.get_content_charset() or "utf-8"
    try:
        return payload.decode(charset, errors="replace")
    except LookupError:
        log.warning("Unknown body charset %r, decoding as UTF-8", charset)
        return payload.decode("utf-8", errors="replace")


def _inline(part: Message) -> InlinePart:
    return InlinePart(
        content_id=str(part.get("Content-ID", "")).strip(),
        content_type=part.get_content_type(),
        data=_payload_bytes(part),
    )


def _attachment(part: Message, filename: str, index: int) -> AttachmentPart:
    content_type = part.get_content_type()
    if not filename:
        extension = mimetypes.guess_extension(content_type) or ".bin"
        filename = f"attachment-{index + 1}{extension}"
    return AttachmentPart(
        filename=filename,
        content_type=content_type,
        data=_payload_bytes(part),
    )


def replace_cid(html: str, part: InlinePart) -> str:
    """Replace ``cid:`` references to *part* with a ``data:`` URI.

    Parts without a content-id leave the HTML untouched.

    Args:
        html: HTML text.
        part: Candidate part.

    Returns:
        HTML with every literal ``cid:<content-id>`` replaced.
    """
    cid = part.content_id.replace("<", "").replace(">", "")
    if not cid:
        return html
    encoded = base64.b64encode(part.data).decode("ascii")
    data_uri = f"data:{part.content_type};base64,{encoded}"
    return html.replace(f"cid:{cid}", data_uri)


def inline_content(html: str, parsed: ParsedContent) -> str:
    """Apply ``replace_cid`` for every inline part, then every other part."""
    for part in [*parsed.inlines, *parsed.other_parts]:
        html = replace_cid(html, part)
    return html


def select_body_document(parsed: ParsedContent) -> FileUpload | None:
    """Pick the document that carries the mail body.

    Returns:
        ``email.html`` with inlined content when there is an HTML body,
        ``email.txt`` when there is only a plain-text body, else None.
    """
    if parsed.html:
        html = inline_content(parsed.html, parsed)
        return FileUpload(HTML_BODY_FILENAME, html.encode("utf-8"))
    if parsed.text:
        return FileUpload(TEXT_BODY_FILENAME, parsed.text.encode("utf-8"))
    return None


def build_preview(text: str, max_lines: int = PREVIEW_LINES) -> str:
    """Build the post preview from a plain-text body.

    A body with at most *max_lines* lines is returned verbatim.  Longer
    bodies are cut to their first *max_lines* lines, joined with ``\\n``,
    followed by ``" ..."``.  A single trailing line break does not count
    as an extra (empty) line.
    """
    if not text:
        return ""
    lines = _LINE_BREAK.split(text)
    if lines[-1] == "":
        lines.pop()
    if len(lines) <= max_lines:
        return text
    return "\n".join(lines[:max_lines]) + PREVIEW_MARKER


def render_message(
    template: str, sender: str, subject: str, preview: str
) -> str:
    """Fill the message template's three slots in order."""
    return template.format(sender, subject, preview)


class MimeTransformer:
    """Turns fetched messages into posts for one channel.

    Attributes:
        channel: Name of the channel posts are addressed to.
        template: Message template with three positional slots.
    """

    def __init__(
        self,
        channel: str,
        template: str = DEFAULT_MESSAGE_TEMPLATE,
        *,
        preview_lines: int = PREVIEW_LINES,
        log: Log | None = None,
    ) -> None:
        self.channel = channel
        self.template = template
        self._preview_lines = preview_lines
        self._log = log or logger

    def parse(self, raw: RawMessage) -> ParsedContent:
        return parse_message(raw.data, self._log)

    def build_payload(self, parsed: ParsedContent) -> PostPayload:
        if parsed.text is not None:
            preview_source = parsed.text
        else:
            preview_source = html_to_text(parsed.html or "")
        preview = build_preview(preview_source, self._preview_lines)

        return PostPayload(
            channel=self.channel,
            message=render_message(
                self.template, parsed.sender, parsed.subject, preview
            ),
            body_document=select_body_document(parsed),
            attachments=[
                FileUpload(a.filename, a.data) for a in parsed.attachments
            ],
        )

    def transform(self, raw: RawMessage) -> PostPayload:
        """Parse *raw* and build its post payload."""
        return self.build_payload(self.parse(raw))
