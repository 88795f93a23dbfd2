"""Pattern-based HTML scanning helpers.

These are deliberately not a parser: they find start tags, balance same-name
end tags and read attributes, which is all the composition engine needs.
"""

from __future__ import annotations

import html as html_lib
import re
from dataclasses import dataclass
from typing import Iterator, Optional

ATTR_RE = re.compile(r"""([^\s"'>/=]+)(?:\s*=\s*(?:"([^"]*)"|'([^']*)'|([^\s"'=<>`]+)))?""")
START_TAG_RE = re.compile(r"""<([a-zA-Z][\w:-]*)((?:[^>"']|"[^"]*"|'[^']*')*)>""")
VOID_ELEMENTS = frozenset(
    {"area", "base", "br", "col", "embed", "hr", "img", "input", "link", "meta", "source", "track", "wbr"}
)


def parse_attributes(text: str) -> dict[str, Optional[str]]:
    """Read attributes from the inside of a start tag. Boolean attributes map to None."""
    attrs: dict[str, Optional[str]] = {}
    if not text:
        return attrs
    for match in ATTR_RE.finditer(text):
        name = match.group(1).lower()
        if name in attrs:
            continue
        value = next((group for group in match.group(2, 3, 4) if group is not None), None)
        attrs[name] = value
    return attrs


def render_attributes(attrs: dict[str, Optional[str]]) -> str:
    parts = []
    for name, value in attrs.items():
        if value is None:
            parts.append(f" {name}")
        else:
            parts.append(f' {name}="{html_lib.escape(value, quote=True)}"')
    return "".join(parts)


@dataclass(frozen=True)
class Element:
    tag: str
    start: int
    end: int
    inner_start: int
    inner_end: int
    attrs_text: str

    @property
    def attrs(self) -> dict[str, Optional[str]]:
        return parse_attributes(self.attrs_text)

    def inner(self, source: str) -> str:
        return source[self.inner_start : self.inner_end]

    def outer(self, source: str) -> str:
        return source[self.start : self.end]


def _tag_pattern(tag: str) -> re.Pattern:
    return re.compile(
        rf"""<(/?)({re.escape(tag)})\b((?:[^>"']|"[^"]*"|'[^']*')*)>""",
        re.IGNORECASE,
    )


def _is_self_closing(tag: str, attrs_text: str) -> bool:
    return attrs_text.rstrip().endswith("/") or tag.lower() in VOID_ELEMENTS


def _close(source: str, tag: str, start: int, open_end: int, attrs_text: str) -> Element:
    clean_attrs = attrs_text.rstrip()
    if clean_attrs.endswith("/"):
        clean_attrs = clean_attrs[:-1]
    if _is_self_closing(tag, attrs_text):
        return Element(tag.lower(), start, open_end, open_end, open_end, clean_attrs)
    depth = 1
    for match in _tag_pattern(tag).finditer(source, open_end):
        closing, _, inner_attrs = match.groups()
        if closing:
            depth -= 1
            if depth == 0:
                return Element(tag.lower(), start, match.end(), open_end, match.start(), clean_attrs)
        elif not inner_attrs.rstrip().endswith("/"):
            depth += 1
    # Unclosed element: treat the start tag alone as the element.
    return Element(tag.lower(), start, open_end, open_end, open_end, clean_attrs)


def iter_elements(source: str, tag: str, start: int = 0) -> Iterator[Element]:
    """Yield top-level ``tag`` elements in document order (nested ones stay inside their parent)."""
    pattern = _tag_pattern(tag)
    pos = start
    while True:
        match = pattern.search(source, pos)
        if match is None:
            return
        if match.group(1):
            pos = match.end()
            continue
        element = _close(source, match.group(2), match.start(), match.end(), match.group(3))
        yield element
        pos = max(element.end, match.end())


def find_element(source: str, tag: str, start: int = 0) -> Optional[Element]:
    return next(iter_elements(source, tag, start), None)


def iter_elements_with_attr(source: str, attr: str, start: int = 0) -> Iterator[Element]:
    """Yield top-level elements of any tag that carry ``attr``."""
    attr = attr.lower()
    pos = start
    while True:
        match = START_TAG_RE.search(source, pos)
        if match is None:
            return
        tag, attrs_text = match.group(1), match.group(2)
        if attr not in parse_attributes(attrs_text):
            pos = match.end()
            continue
        element = _close(source, tag, match.start(), match.end(), attrs_text)
        yield element
        pos = max(element.end, match.end())


def replace_spans(source: str, replacements: list[tuple[int, int, str]]) -> str:
    """Apply non-overlapping ``(start, end, text)`` replacements."""
    pieces = []
    pos = 0
    for start, end, text in sorted(replacements, key=lambda item: item[0]):
        pieces.append(source[pos:start])
        pieces.append(text)
        pos = end
    pieces.append(source[pos:])
    return "".join(pieces)


def start_tag(tag: str, attrs: dict[str, Optional[str]]) -> str:
    return f"<{tag}{render_attributes(attrs)}>"


def remove_attribute(source: str, element: Element, attr: str) -> str:
    """Return the element's outer HTML with ``attr`` dropped from its start tag."""
    attrs = element.attrs
    attrs.pop(attr.lower(), None)
    outer = element.outer(source)
    open_len = element.inner_start - element.start
    if element.inner_start == element.end:
        return start_tag(element.tag, attrs)
    return start_tag(element.tag, attrs) + outer[open_len:]
