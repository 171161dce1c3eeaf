"""Rich-text (status HTML) to plain text with explicit line breaks kept."""

from __future__ import annotations

import re
from html.parser import HTMLParser

# Private-use code point: not whitespace, never produced by Mastodon markup.
LINE_BREAK_SENTINEL = "\ue000"

# Each <br>, <br/>, <br /> is matched on its own; no span may run past the
# closing '>' of the current tag into a later break.
_BR_RE = re.compile(r"<br\s*/?\s*>", re.IGNORECASE)
_PARAGRAPH_BOUNDARY_RE = re.compile(r"</p\s*>\s*<p(?:\s[^>]*)?>", re.IGNORECASE)
_WHITESPACE_RE = re.compile(r"\s+")
_SENTINEL_RE = re.compile(f" ?{LINE_BREAK_SENTINEL} ?")


class _TextExtractor(HTMLParser):
    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self._chunks: list[str] = []
        self._skip_depth = 0

    def handle_starttag(self, tag: str, attrs) -> None:  # type: ignore[override]
        if tag in {"script", "style"}:
            self._skip_depth += 1

    def handle_endtag(self, tag: str) -> None:  # type: ignore[override]
        if tag in {"script", "style"} and self._skip_depth > 0:
            self._skip_depth -= 1

    def handle_data(self, data: str) -> None:  # type: ignore[override]
        if self._skip_depth == 0:
            self._chunks.append(data)

    def text(self) -> str:
        return "".join(self._chunks)


def normalize(rich_text: str | None) -> str:
    """Strip markup from ``rich_text`` keeping one newline per line break.

    Line breaks are swapped for a sentinel before tags are stripped and
    whitespace is collapsed, then decoded back to ``\\n`` as the last step so
    the collapse can't eat them. Paragraph boundaries count as line breaks.
    """
    if not rich_text:
        return ""
    marked = _BR_RE.sub(LINE_BREAK_SENTINEL, rich_text)
    marked = _PARAGRAPH_BOUNDARY_RE.sub(LINE_BREAK_SENTINEL, marked)
    parser = _TextExtractor()
    parser.feed(marked)
    parser.close()
    collapsed = _WHITESPACE_RE.sub(" ", parser.text()).strip()
    return _SENTINEL_RE.sub("\n", collapsed).strip()
