# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Plain-text rendering of HTML mail bodies.

Only used to build the post preview for messages that carry an HTML body
but no ``text/plain`` alternative.  Markup is dropped, block-level
elements become line breaks, and entities are decoded.
"""

import re
from html.parser import HTMLParser


# Elements whose text content is never shown
_HIDDEN_TAGS = frozenset({"head", "script", "style", "title"})

# Elements that start and end on their own line
_BLOCK_TAGS = frozenset(
    {
        "address",
        "article",
        "blockquote",
        "div",
        "footer",
        "h1",
        "h2",
        "h3",
        "h4",
        "h5",
        "h6",
        "header",
        "hr",
        "li",
        "ol",
        "p",
        "pre",
        "section",
        "table",
        "tr",
        "ul",
    }
)

_BLANK_LINES = re.compile(r"\n\s*\n+")
_SPACES = re.compile(r"[ \t\r\f\v]+")


class _TextExtractor(HTMLParser):
    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self._chunks: list[str] = []
        self._hidden_depth = 0

    def handle_starttag(
        self, tag: str, attrs: list[tuple[str, str | None]]
    ) -> None:
        if tag in _HIDDEN_TAGS:
            self._hidden_depth += 1
        elif tag == "br":
            self._chunks.append("\n")
        elif tag in _BLOCK_TAGS:
            self._chunks.append("\n")
        elif tag in ("td", "th"):
            self._chunks.append(" ")

    def handle_startendtag(
        self, tag: str, attrs: list[tuple[str, str | None]]
    ) -> None:
        if tag == "br" or tag in _BLOCK_TAGS:
            self._chunks.append("\n")

    def handle_endtag(self, tag: str) -> None:
        if tag in _HIDDEN_TAGS:
            self._hidden_depth = max(0, self._hidden_depth - 1)
        elif tag in _BLOCK_TAGS:
            self._chunks.append("\n")

    def handle_data(self, data: str) -> None:
        if self._hidden_depth:
            return
        self._chunks.append(_SPACES.sub(" ", data.replace("\n", " ")))

    def text(self) -> str:
        lines = "".join(self._chunks).split("\n")
        joined = "\n".join(line.strip() for line in lines)
        return _BLANK_LINES.sub("\n\n", joined).strip()


def html_to_text(html: str) -> str:
    """Convert an HTML document to plain text.

    Args:
        html: HTML source.

    Returns:
        Text content with one line per block element and at most one
        blank line in a row.
    """
    if not html:
        return ""
    parser = _TextExtractor()
    parser.feed(html)
    parser.close()
    return parser.text()
