"""Merging of ``<head>`` fragments from layouts and pages."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

from .logging import get_logger
from .markup import VOID_ELEMENTS, find_element, parse_attributes

logger = get_logger("head")

HEAD_TOKEN_RE = re.compile(
    r"""<!--.*?-->|<([a-zA-Z][\w:-]*)((?:[^>"']|"[^"]*"|'[^']*')*)>""",
    re.DOTALL,
)
RAW_TEXT_ELEMENTS = frozenset({"title", "script", "style", "noscript", "template"})
META_KEYS = ("name", "property", "http-equiv")

LAST_WINS = "last"
FIRST_WINS = "first"


@dataclass(frozen=True)
class HeadFragment:
    source: Optional[Path]
    html: str


@dataclass(frozen=True)
class HeadNode:
    tag: Optional[str]
    attrs: dict
    html: str


def _raw_text_end(html: str, tag: str, open_end: int) -> int:
    close = re.compile(rf"</{re.escape(tag)}\s*>", re.IGNORECASE).search(html, open_end)
    return close.end() if close else open_end


def parse_head(html: str) -> list[HeadNode]:
    """Split head markup into top-level nodes in document order."""
    nodes: list[HeadNode] = []
    pos = 0
    while pos < len(html):
        match = HEAD_TOKEN_RE.search(html, pos)
        end_of_text = match.start() if match else len(html)
        text = html[pos:end_of_text].strip()
        if text:
            nodes.append(HeadNode(None, {}, text))
        if match is None:
            break
        if match.group(1) is None:
            nodes.append(HeadNode(None, {}, match.group(0)))
            pos = match.end()
            continue
        tag = match.group(1).lower()
        attrs_text = match.group(2)
        self_closing = attrs_text.rstrip().endswith("/")
        if tag in RAW_TEXT_ELEMENTS and not self_closing:
            end = _raw_text_end(html, tag, match.end())
        elif tag in VOID_ELEMENTS or self_closing:
            end = match.end()
        else:
            element = find_element(html, tag, match.start())
            end = element.end if element is not None else match.end()
        nodes.append(HeadNode(tag, parse_attributes(attrs_text), html[match.start() : end]))
        pos = max(end, match.end())
    return nodes


def dedup_key(node: HeadNode) -> tuple[Optional[tuple], Optional[str]]:
    """Return the deduplication key of a head node and which occurrence survives."""
    tag, attrs = node.tag, node.attrs
    if tag in ("title", "base"):
        return (tag,), LAST_WINS
    if tag == "meta":
        for name in META_KEYS:
            value = attrs.get(name)
            if value:
                return ("meta", name, value.strip().lower()), LAST_WINS
        if "charset" in attrs:
            return ("meta", "charset"), LAST_WINS
        return None, None
    if tag == "link" and attrs.get("href"):
        rel = " ".join((attrs.get("rel") or "").lower().split())
        return ("link", rel, attrs["href"].strip()), FIRST_WINS
    if tag == "script" and attrs.get("src"):
        return ("script", attrs["src"].strip()), FIRST_WINS
    return None, None


def merge_head(fragments: Iterable[HeadFragment]) -> str:
    """Merge head fragments ordered outermost layout first, page last.

    ``<title>``, ``<base>`` and keyed ``<meta>`` keep the last occurrence at the
    position of the first. ``<link>`` and external ``<script>`` keep the first
    occurrence unless the later one carries ``data-allow-duplicate``.
    Everything else is kept in order.
    """
    merged: list[HeadNode] = []
    positions: dict[tuple, int] = {}
    for fragment in fragments:
        if not fragment.html or not fragment.html.strip():
            continue
        for node in parse_head(fragment.html):
            key, mode = dedup_key(node)
            if key is None:
                merged.append(node)
                continue
            if key not in positions:
                positions[key] = len(merged)
                merged.append(node)
            elif mode == LAST_WINS:
                merged[positions[key]] = node
            elif "data-allow-duplicate" in node.attrs:
                merged.append(node)
            else:
                logger.debug("Dropped duplicate head element from %s: %s", fragment.source, node.html)
    return "\n".join(node.html for node in merged)
