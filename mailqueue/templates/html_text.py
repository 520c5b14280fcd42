"""Plain-text degradation of rendered HTML bodies.

Every outbound message carries a text part. When a payload does not supply
one, it is derived here: tags are stripped, block elements become line
breaks and table cells in a row are joined with ``|``. Lines inside ``<pre>``
keep their indentation.
"""

from __future__ import annotations

import re
from html.parser import HTMLParser

EMPTY_TEXT_PLACEHOLDER = "(empty message)"

_TAG_RE = re.compile(r"<[A-Za-z!/][^>]*>")

# Marker lines bracketing preformatted content in the extractor output.
_PRE_OPEN = "\x02"
_PRE_CLOSE = "\x03"

_SKIP_TAGS = frozenset({"head", "title", "style", "script"})
_CELL_TAGS = frozenset({"td", "th"})
_BLOCK_TAGS = frozenset({
    "address", "article", "blockquote", "br", "div", "footer", "h1", "h2",
    "h3", "h4", "h5", "h6", "header", "hr", "li", "ol", "p", "pre",
    "section", "table", "tbody", "tfoot", "thead", "tr", "ul",
})
_VOID_BLOCK_TAGS = frozenset({"br", "hr"})


class _TextExtractor(HTMLParser):
    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self._parts: list[str] = []
        self._skip_depth = 0
        self._pre_depth = 0
        self._cells_in_row = 0

    def handle_starttag(self, tag: str, attrs) -> None:
        if tag in _SKIP_TAGS:
            self._skip_depth += 1
            return
        if tag == "pre":
            if not self._pre_depth:
                self._parts.append(f"\n{_PRE_OPEN}\n")
            self._pre_depth += 1
        if tag in _CELL_TAGS:
            if self._cells_in_row:
                self._parts.append(" | ")
            self._cells_in_row += 1
            return
        if tag == "tr":
            self._cells_in_row = 0
        if tag in _BLOCK_TAGS:
            self._parts.append("\n")
        if tag == "li":
            self._parts.append("- ")

    def handle_endtag(self, tag: str) -> None:
        if tag in _SKIP_TAGS:
            self._skip_depth = max(0, self._skip_depth - 1)
            return
        if tag == "pre" and self._pre_depth:
            self._pre_depth -= 1
            if not self._pre_depth:
                self._parts.append(f"\n{_PRE_CLOSE}\n")
        if tag == "tr":
            self._cells_in_row = 0
        if tag in _BLOCK_TAGS and tag not in _VOID_BLOCK_TAGS:
            self._parts.append("\n")

    def handle_data(self, data: str) -> None:
        if self._skip_depth:
            return
        data = data.replace(_PRE_OPEN, "").replace(_PRE_CLOSE, "")
        if self._pre_depth:
            self._parts.append(data)
        else:
            self._parts.append(re.sub(r"\s+", " ", data))

    def text(self) -> str:
        return "".join(self._parts)


def _extracted_lines(text: str) -> str:
    """Tidy extractor output: collapse whitespace outside ``<pre>``, drop blank lines."""
    lines: list[str] = []
    preformatted = False
    for raw in text.splitlines():
        if raw == _PRE_OPEN:
            preformatted = True
            continue
        if raw == _PRE_CLOSE:
            preformatted = False
            continue
        line = raw.rstrip() if preformatted else " ".join(raw.split())
        if line.strip():
            lines.append(line)
    return "\n".join(lines)


def _plain_lines(text: str) -> str:
    lines: list[str] = []
    for raw in text.splitlines():
        line = raw.rstrip()
        if not line.strip():
            # At most one blank line in a row, never at the edges.
            if lines and lines[-1]:
                lines.append("")
            continue
        lines.append(line)
    while lines and not lines[-1]:
        lines.pop()
    return "\n".join(lines)


def looks_like_html(text: str) -> bool:
    return _TAG_RE.search(text) is not None


def html_to_text(html: str | None) -> str:
    """Degrade *html* to plain text.

    Input without tags is treated as plain text and only loses trailing
    whitespace and repeated blank lines, so the function is idempotent on its
    own output. The result is never empty when *html* is not blank.
    """
    if not html or not html.strip():
        return ""
    if not looks_like_html(html):
        return _plain_lines(html) or EMPTY_TEXT_PLACEHOLDER

    parser = _TextExtractor()
    parser.feed(html)
    parser.close()
    return _extracted_lines(parser.text()) or EMPTY_TEXT_PLACEHOLDER
