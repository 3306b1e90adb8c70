"""Markup stripping for user-authored message bodies.

Every tag and attribute is removed and only text content survives. The
contents of elements that never render as text (scripts, styles,
embedded documents) are dropped along with their tags. The surviving
text is serialized back to HTML, so `<`, `>` and `&` come out as
entities and stripping an already stripped body is a no-op.
"""

import html
from html.parser import HTMLParser


class _TextExtractor(HTMLParser):
    """Collects character data outside of dropped elements."""

    DROP_CONTENT_TAGS = frozenset({
        "script", "style", "template", "noscript", "iframe", "noembed",
        "noframes", "object", "svg", "math", "title", "xmp", "plaintext",
    })

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self._parts: list[str] = []
        self._drop_depth = 0

    def handle_starttag(self, tag, attrs):
        if tag in self.DROP_CONTENT_TAGS:
            self._drop_depth += 1

    def handle_startendtag(self, tag, attrs):
        # Self-closing form has no content to drop.
        pass

    def handle_endtag(self, tag):
        if tag in self.DROP_CONTENT_TAGS and self._drop_depth:
            self._drop_depth -= 1

    def handle_data(self, data):
        if not self._drop_depth:
            self._parts.append(data)

    def text(self) -> str:
        return html.escape("".join(self._parts), quote=False)


def strip_markup(raw: str) -> str:
    """Return the text content of `raw` with all markup removed.

    Args:
        raw: Untrusted message body

    Returns:
        Serialized text content; comments and dropped elements removed
    """
    if not raw:
        return ""
    parser = _TextExtractor()
    parser.feed(raw)
    parser.close()
    return parser.text()
