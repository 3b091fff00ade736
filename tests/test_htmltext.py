# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Tests for HTML to text conversion."""

from mattermail.htmltext import html_to_text


def test_plain_text_passthrough() -> None:
    assert html_to_text("Hello world") == "Hello world"


def test_br_is_line_break() -> None:
    assert html_to_text("first<br>second<br/>third") == "first\nsecond\nthird"


def test_paragraphs_separated_by_blank_line() -> None:
    assert html_to_text("<p>Hello</p><p>World</p>") == "Hello\n\nWorld"


def test_hidden_elements_dropped() -> None:
    html = (
        "<html><head><title>T</title><style>p {color: red}</style></head>"
        "<body><script>alert(1)</script><p>Visible</p></body></html>"
    )
    assert html_to_text(html) == "Visible"


def test_entities_decoded() -> None:
    assert html_to_text("Fish &amp; chips &lt;3") == "Fish & chips <3"


def test_whitespace_collapsed() -> None:
    assert html_to_text("Hello   world\n   again") == "Hello world again"


def test_blank_lines_collapsed() -> None:
    html = "<div>a</div><div></div><div></div><div>b</div>"
    assert html_to_text(html) == "a\n\nb"


def test_table_cells_on_one_line() -> None:
    html = "<table><tr><td>a</td><td>b</td></tr><tr><td>c</td></tr></table>"
    assert html_to_text(html) == "a b\n\nc"


def test_list_items_on_own_lines() -> None:
    html = "<ul><li>one</li><li>two</li></ul>"
    assert html_to_text(html) == "one\n\ntwo"


def test_empty_document() -> None:
    assert html_to_text("") == ""
