# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Decoding of RFC 2047 encoded-word headers.

Mail clients encode non-ASCII header text as encoded words
(``=?charset?encoding?text?=``), for example
``=?UTF-8?B?Sm9obg==?=`` or ``=?iso-8859-1?q?Gr=FC=DFe?=``.  The
functions here decode every such token in a header value and leave the
surrounding text alone.

Decoding is lenient per token: an unknown transfer encoding, broken
base64 or quoted-printable data, or an unknown charset leaves that token
unchanged and logs a warning.  Nothing in this module raises on bad
input.
"""

import base64
import binascii
import logging
import re
from email.header import Header, decode_header

from mattermail.logging import Log


logger = logging.getLogger(__name__)

# =?charset?encoding?encoded-text?=
ENCODED_WORD_PATTERN = re.compile(r"=\?([^?]*)\?([^?])\?([^?]*)\?=")

# CRLF (or bare LF) followed by whitespace continues a folded header
_FOLDING_PATTERN = re.compile(r"\r?\n(?=[ \t])")


def decode_encoded_words(value: str, log: Log | None = None) -> str:
    """Decode all encoded words in a header value.

    Whitespace between two adjacent encoded words that both decode is
    dropped (RFC 2047 section 6.2), so long values split across several
    words come back in one piece.

    Args:
        value: Raw header value.
        log: Logger for decode warnings; defaults to the module logger.

    Returns:
        The header value with every decodable token replaced by its text.
    """
    log = log or logger
    pieces: list[str] = []
    pos = 0
    previous_decoded = False

    for match in ENCODED_WORD_PATTERN.finditer(value):
        gap = value[pos : match.start()]
        decoded = _decode_word(match, log)
        if decoded is None:
            pieces.append(gap)
            pieces.append(match.group(0))
            previous_decoded = False
        else:
            if not (previous_decoded and gap.isspace()):
                pieces.append(gap)
            pieces.append(decoded)
            previous_decoded = True
        pos = match.end()

    pieces.append(value[pos:])
    return "".join(pieces)


def decode_header_value(
    value: str | Header | None, log: Log | None = None
) -> str:
    """Unfold a raw header value and decode its encoded words.

    Header bytes outside ASCII (RFC 6532) are read as UTF-8.

    Args:
        value: Header value as returned by ``Message.get()``, or None.
        log: Logger for decode warnings.

    Returns:
        Decoded text, or empty string when the header is missing.
    """
    if not value:
        return ""
    text = _header_text(value)
    return decode_encoded_words(_FOLDING_PATTERN.sub("", text), log)


def _header_text(value: str | Header) -> str:
    if not isinstance(value, Header):
        return str(value)
    # The parser wraps values holding raw 8-bit bytes as unknown-8bit
    pieces: list[str] = []
    for chunk, charset in decode_header(value):
        if isinstance(chunk, str):
            pieces.append(chunk)
            continue
        if charset in (None, "unknown-8bit"):
            charset = "utf-8"
        try:
            pieces.append(chunk.decode(charset, errors="replace"))
        except LookupError:
            pieces.append(chunk.decode("utf-8", errors="replace"))
    return "".join(pieces)


def _decode_word(match: re.Match[str], log: Log) -> str | None:
    """Decode one encoded word, or return None to keep it verbatim."""
    token = match.group(0)
    charset, encoding, text = match.groups()
    # RFC 2231 allows a language suffix: =?utf-8*en?q?...?=
    charset = charset.split("*", 1)[0]

    try:
        match encoding.lower():
            case "b":
                raw = base64.b64decode(text, validate=True)
            case "q":
                raw = binascii.a2b_qp(text.encode("ascii"), header=True)
            case _:
                log.warning(
                    "Unknown encoding %r in encoded word %s", encoding, token
                )
                return None
    except (binascii.Error, ValueError) as e:
        log.warning("Cannot decode encoded word %s: %s", token, e)
        return None

    try:
        return raw.decode(charset)
    except (LookupError, ValueError) as e:
        log.warning(
            "Cannot convert encoded word %s from charset %r: %s",
            token,
            charset,
            e,
        )
        return None
