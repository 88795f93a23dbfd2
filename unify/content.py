from __future__ import annotations

import html as html_lib
import re
from dataclasses import dataclass, field
from typing import Optional

import markdown

from .utils import parse_list

LIST_MARKER_RE = re.compile(r"^(?P<indent>[ \t]*)(?:[-+*]|\d+[.)])\s+")
FENCE_RE = re.compile(r"^(?P<indent>[ \t]*)(`{3,}|~{3,})")
PLACEHOLDER_RE = re.compile(r"\{\{\s*([\w-]+)\s*\}\}")
H1_RE = re.compile(r"^#\s+(.+?)\s*#*\s*$")

LIST_KEYS = {"keywords", "tags"}
MARKDOWN_EXTENSIONS = ["fenced_code", "tables", "toc", "codehilite"]


@dataclass
class MarkdownPage:
    meta: dict
    html: str
    head_html: str
    title: Optional[str] = None
    layout: Optional[str] = None
    placeholders: dict[str, str] = field(default_factory=dict)


def parse_front_matter(text: str) -> tuple[dict, str]:
    clean_text = text.lstrip("\ufeff")
    lines = clean_text.splitlines()
    if not lines or lines[0].strip() != "---":
        return {}, clean_text

    end = None
    for i in range(1, len(lines)):
        if lines[i].strip() == "---":
            end = i
            break
    if end is None:
        return {}, clean_text

    meta: dict = {}
    for line in lines[1:end]:
        line = line.strip()
        if not line or line.startswith("#") or ":" not in line:
            continue
        key, value = line.split(":", 1)
        key = key.strip().lower()
        value = value.strip()
        if key in LIST_KEYS:
            meta[key] = parse_list(value)
        else:
            meta[key] = value.strip("'\"")
    body = "\n".join(lines[end + 1 :])
    return meta, body


def extract_title(meta: dict, body: str) -> Optional[str]:
    """Front matter title, else the first ``# heading`` when it opens the document."""
    if meta.get("title"):
        return meta["title"]
    for line in body.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        match = H1_RE.match(stripped)
        return match.group(1) if match else None
    return None


def normalize_list_spacing(text: str) -> str:
    # Python-Markdown needs a blank line before a top-level list that follows a paragraph.
    lines = text.splitlines()
    out: list[str] = []
    in_fence = False
    fence_marker = ""
    for line in lines:
        fence_match = FENCE_RE.match(line)
        if fence_match:
            marker = fence_match.group(2)
            if not in_fence:
                in_fence = True
                fence_marker = marker
            elif marker == fence_marker:
                in_fence = False
                fence_marker = ""
            out.append(line)
            continue
        if in_fence:
            out.append(line)
            continue
        list_match = LIST_MARKER_RE.match(line)
        if list_match and not list_match.group("indent"):
            if out and out[-1].strip() and not LIST_MARKER_RE.match(out[-1]):
                out.append("")
        out.append(line)
    return "\n".join(out)


def synthesize_head(meta: dict, title: Optional[str]) -> str:
    """Build head markup from front matter: title, description, author and Open Graph tags."""
    escape = html_lib.escape
    elements = []
    if title:
        elements.append(f"<title>{escape(title, quote=False)}</title>")
    if meta.get("description"):
        elements.append(f'<meta name="description" content="{escape(meta["description"])}">')
    if meta.get("author"):
        elements.append(f'<meta name="author" content="{escape(meta["author"])}">')
    if meta.get("keywords"):
        elements.append(f'<meta name="keywords" content="{escape(", ".join(meta["keywords"]))}">')
    if title:
        elements.append(f'<meta property="og:title" content="{escape(title)}">')
    if meta.get("description"):
        elements.append(f'<meta property="og:description" content="{escape(meta["description"])}">')
    return "\n".join(elements)


def render_markdown(text: str, toc_depth: int = 3) -> MarkdownPage:
    """Convert a Markdown source with optional front matter into a page fragment."""
    meta, body = parse_front_matter(text)
    title = extract_title(meta, body)
    # Markdown instances keep state between conversions, so each page gets its own.
    md = markdown.Markdown(
        extensions=MARKDOWN_EXTENSIONS,
        extension_configs={
            "toc": {"toc_depth": toc_depth},
            "codehilite": {"guess_lang": False, "css_class": "highlight"},
        },
    )
    html = md.convert(normalize_list_spacing(body))
    placeholders = {key: value for key, value in meta.items() if isinstance(value, str)}
    if title:
        placeholders["title"] = title
    placeholders["toc"] = getattr(md, "toc", "")
    return MarkdownPage(
        meta=meta,
        html=html,
        head_html=synthesize_head(meta, title),
        title=title,
        layout=meta.get("layout") or None,
        placeholders=placeholders,
    )


def render_placeholders(html: str, values: dict[str, str]) -> str:
    """Replace ``{{ key }}`` placeholders; unknown keys are left untouched."""

    def repl(match: re.Match) -> str:
        key = match.group(1).lower()
        if key == "toc":
            return values.get(key, match.group(0))
        return html_lib.escape(values[key], quote=False) if key in values else match.group(0)

    return PLACEHOLDER_RE.sub(repl, html)
