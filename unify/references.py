"""Discovery of include, layout and asset references in HTML and CSS text."""

from __future__ import annotations

import re
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

from .errors import DEPTH, MISSING, SECURITY, BuildWarning
from .io import SourceReader
from .logging import get_logger
from .markup import iter_elements, parse_attributes
from .paths import resolve

logger = get_logger("references")

MAX_CSS_IMPORT_DEPTH = 10

INCLUDE = "include"
LAYOUT = "layout"
STYLESHEET = "stylesheet"
SCRIPT = "script"
IMAGE = "image"
FONT = "font"
MEDIA = "media"
OBJECT = "object"
GENERIC = "generic"

HTML_PATTERNS: list[tuple[str, re.Pattern]] = [
    (STYLESHEET, re.compile(r"""<link[^>]+href=["']([^"']+\.css(?:[?#][^"']*)?)["']""", re.IGNORECASE)),
    (SCRIPT, re.compile(r"""<script[^>]+src=["']([^"']+\.js(?:[?#][^"']*)?)["']""", re.IGNORECASE)),
    (IMAGE, re.compile(r"""<img[^>]+src=["']([^"']+\.(?:png|jpg|jpeg|gif|svg|webp|ico)(?:[?#][^"']*)?)["']""", re.IGNORECASE)),
    (
        IMAGE,
        re.compile(
            r"""<link[^>]+(?:rel=["'](?:icon|apple-touch-icon|shortcut icon)["'][^>]*href=["']([^"']+\.[^"']+)["']"""
            r"""|href=["']([^"']+\.[^"']+)["'][^>]*rel=["'](?:icon|apple-touch-icon|shortcut icon)["'])""",
            re.IGNORECASE,
        ),
    ),
    (IMAGE, re.compile(r"""style=["'][^"']*background-image:\s*url\(["']?([^"')]+)["']?\)""", re.IGNORECASE)),
    (FONT, re.compile(r"""<link[^>]+href=["']([^"']+\.(?:woff2?|ttf|eot|otf)(?:[?#][^"']*)?)["']""", re.IGNORECASE)),
    (MEDIA, re.compile(r"""<(?:video|audio)[^>]+src=["']([^"']+\.(?:mp4|webm|ogg|mp3|wav)(?:[?#][^"']*)?)["']""", re.IGNORECASE)),
    (MEDIA, re.compile(r"""<source[^>]+src=["']([^"']+)["']""", re.IGNORECASE)),
    (OBJECT, re.compile(r"""<object[^>]+data=["']([^"']+)["']""", re.IGNORECASE)),
    (GENERIC, re.compile(r"""(?:href|src)=["']([^"']+\.(?:pdf|zip|doc|docx|txt|json)(?:[?#][^"']*)?)["']""", re.IGNORECASE)),
]

CSS_URL_RE = re.compile(r"""url\(\s*["']?([^"')]+)["']?\s*\)""", re.IGNORECASE)
CSS_FONT_FACE_RE = re.compile(r"""@font-face[^}]*src\s*:\s*([^;}]*)""", re.IGNORECASE)
CSS_IMPORT_RE = re.compile(r"""@import\s+(?:url\()?\s*["']?([^"')\s;]+)["']?\s*\)?""", re.IGNORECASE)

SSI_INCLUDE_RE = re.compile(r"""<!--\s*#include\s+(file|virtual)\s*=\s*"([^"]+)"\s*-->""", re.IGNORECASE)
LAYOUT_LINK_RE = re.compile(r"""<link\b((?:[^>"']|"[^"]*"|'[^']*')*)>""", re.IGNORECASE)
DATA_LAYOUT_RE = re.compile(r"""\sdata-layout\s*=\s*(?:"([^"]*)"|'([^']*)'|([^\s"'=<>`]+))""", re.IGNORECASE)

FONT_EXTENSIONS = {".woff", ".woff2", ".ttf", ".eot", ".otf"}
IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".gif", ".svg", ".webp", ".ico", ".avif", ".bmp"}


@dataclass(frozen=True)
class Reference:
    from_path: Path
    to_path: Optional[Path]
    kind: str
    raw: str = ""

    @property
    def resolved(self) -> bool:
        return self.to_path is not None


@dataclass(frozen=True)
class IncludeDirective:
    """One include directive found in a document, with its span in the source text."""

    start: int
    end: int
    src: str
    kind: str
    body: Optional[str] = None

    @property
    def reference(self) -> str:
        if self.kind == "virtual" and not self.src.startswith("/"):
            return "/" + self.src
        return self.src


def is_external(raw: str) -> bool:
    lowered = raw.strip().lower()
    return (
        lowered.startswith(("http://", "https://", "//", "data:", "mailto:", "tel:", "javascript:"))
        or "://" in lowered
    )


def _kind_for(path: str, default: str) -> str:
    suffix = Path(path.split("?", 1)[0].split("#", 1)[0]).suffix.lower()
    if suffix == ".css":
        return STYLESHEET
    if suffix in FONT_EXTENSIONS:
        return FONT
    if suffix in IMAGE_EXTENSIONS:
        return IMAGE
    return default


def _collect(
    found: list[Reference], seen: set, raw: str, kind: str, path: Path, root: Path
) -> None:
    raw = raw.strip()
    if not raw or is_external(raw) or raw.startswith("#"):
        return
    target = resolve(raw, path, root)
    key = target if target is not None else ("unresolved", raw)
    if key in seen:
        return
    seen.add(key)
    found.append(Reference(path, target, kind, raw))


def from_html(html: str, path: Path, root: Path) -> list[Reference]:
    """Scan HTML for asset references. Unsafe ones come back with ``to_path=None``."""
    found: list[Reference] = []
    seen: set = set()
    if not html:
        return found
    for kind, pattern in HTML_PATTERNS:
        for match in pattern.finditer(html):
            raw = next((group for group in match.groups() if group), None)
            if raw:
                _collect(found, seen, raw, kind, path, root)
    return found


def from_css(css: str, path: Path, root: Path) -> list[Reference]:
    found: list[Reference] = []
    seen: set = set()
    if not css:
        return found
    for match in CSS_URL_RE.finditer(css):
        _collect(found, seen, match.group(1), _kind_for(match.group(1), IMAGE), path, root)
    for block in CSS_FONT_FACE_RE.finditer(css):
        for match in CSS_URL_RE.finditer(block.group(1)):
            _collect(found, seen, match.group(1), FONT, path, root)
    for match in CSS_IMPORT_RE.finditer(css):
        _collect(found, seen, match.group(1), STYLESHEET, path, root)
    return found


def follow_css_imports(
    css_path: Path,
    root: Path,
    visited: set[Path],
    depth: int = 0,
    reader: Optional[SourceReader] = None,
    warnings: Optional[list[BuildWarning]] = None,
) -> list[Reference]:
    """Collect references from ``css_path`` and every stylesheet it pulls in.

    ``visited`` belongs to one top-level call; already-visited stylesheets are
    skipped, which is what lets circular ``@import`` chains terminate.
    """
    reader = reader or SourceReader()
    if css_path in visited:
        return []
    if depth > MAX_CSS_IMPORT_DEPTH:
        if warnings is not None:
            warnings.append(
                BuildWarning(DEPTH, f"CSS import depth limit ({MAX_CSS_IMPORT_DEPTH}) exceeded", css_path)
            )
        return []
    visited.add(css_path)
    if not reader.exists(css_path):
        return []
    try:
        css = reader.read_text(css_path)
    except (OSError, UnicodeDecodeError) as exc:
        logger.debug("Could not read stylesheet %s: %s", css_path, exc)
        return []
    refs = from_css(css, css_path, root)
    collected = list(refs)
    for ref in refs:
        if ref.to_path is not None and ref.to_path.suffix.lower() == ".css":
            collected.extend(follow_css_imports(ref.to_path, root, visited, depth + 1, reader, warnings))
    return collected


def find_includes(html: str) -> list[IncludeDirective]:
    """Find top-level include directives (SSI comments and ``<include>`` elements) in order."""
    directives: list[IncludeDirective] = []
    for match in SSI_INCLUDE_RE.finditer(html):
        directives.append(IncludeDirective(match.start(), match.end(), match.group(2), match.group(1).lower()))
    for element in iter_elements(html, "include"):
        src = element.attrs.get("src")
        if not src:
            continue
        body = element.inner(html) if element.inner_end > element.inner_start else None
        directives.append(IncludeDirective(element.start, element.end, src, "element", body))
    directives.sort(key=lambda item: item.start)
    # SSI comments sitting inside an <include> body are expanded with that body.
    top_level: list[IncludeDirective] = []
    for directive in directives:
        if top_level and directive.start < top_level[-1].end:
            continue
        top_level.append(directive)
    return top_level


def find_layout_link(html: str) -> Optional[str]:
    for match in LAYOUT_LINK_RE.finditer(html):
        attrs = parse_attributes(match.group(1))
        if (attrs.get("rel") or "").strip().lower() == "layout" and attrs.get("href"):
            return attrs["href"].strip()
    return None


def find_data_layouts(html: str) -> list[str]:
    values = []
    for match in DATA_LAYOUT_RE.finditer(html):
        value = next((group for group in match.groups() if group is not None), "")
        values.append(value.strip())
    return values


def strip_layout_directives(html: str) -> str:
    """Remove ``<link rel="layout">`` tags and ``data-layout`` attributes."""

    def drop_link(match: re.Match) -> str:
        attrs = parse_attributes(match.group(1))
        if (attrs.get("rel") or "").strip().lower() == "layout":
            return ""
        return match.group(0)

    html = LAYOUT_LINK_RE.sub(drop_link, html)
    return DATA_LAYOUT_RE.sub("", html)


def missing_warnings(refs: Iterable[Reference], reader: SourceReader) -> list[BuildWarning]:
    warnings = []
    for ref in refs:
        if ref.to_path is None:
            warnings.append(BuildWarning(SECURITY, f"Unsafe or unresolvable reference: {ref.raw}", ref.from_path))
        elif not reader.exists(ref.to_path):
            warnings.append(BuildWarning(MISSING, f"Referenced file not found: {ref.raw}", ref.from_path))
    return warnings


class ReferenceExtractor:
    """Scans pages for asset references and keeps the asset → pages index for the copy stage."""

    def __init__(self, reader: Optional[SourceReader] = None) -> None:
        self.reader = reader or SourceReader()
        self._lock = threading.Lock()
        self._page_assets: dict[Path, list[Path]] = {}
        self._asset_pages: dict[Path, set[Path]] = {}

    def from_html(self, html: str, path: Path, root: Path) -> list[Reference]:
        return from_html(html, path, root)

    def from_css(self, css: str, path: Path, root: Path) -> list[Reference]:
        return from_css(css, path, root)

    def follow_css_imports(
        self,
        css_path: Path,
        root: Path,
        visited: Optional[set[Path]] = None,
        depth: int = 0,
        warnings: Optional[list[BuildWarning]] = None,
    ) -> list[Reference]:
        return follow_css_imports(css_path, root, set() if visited is None else visited, depth, self.reader, warnings)

    def collect_assets(self, html: str, path: Path, root: Path) -> tuple[list[Reference], list[BuildWarning]]:
        """Return every asset the page needs, stylesheets' own references included."""
        warnings: list[BuildWarning] = []
        refs = from_html(html, path, root)
        visited: set[Path] = set()
        collected = list(refs)
        for ref in refs:
            if ref.to_path is not None and ref.to_path.suffix.lower() == ".css":
                collected.extend(follow_css_imports(ref.to_path, root, visited, 0, self.reader, warnings))
        unique: list[Reference] = []
        seen: set = set()
        for ref in collected:
            key = ref.to_path if ref.to_path is not None else ("unresolved", ref.from_path, ref.raw)
            if key in seen:
                continue
            seen.add(key)
            unique.append(ref)
        warnings.extend(missing_warnings(unique, self.reader))
        return unique, warnings

    def record_page_assets(self, page: Path, assets: Iterable[Path]) -> None:
        with self._lock:
            self._clear_page(page)
            unique = list(dict.fromkeys(asset for asset in assets if asset is not None))
            if not unique:
                return
            self._page_assets[page] = unique
            for asset in unique:
                self._asset_pages.setdefault(asset, set()).add(page)

    def clear_page(self, page: Path) -> None:
        with self._lock:
            self._clear_page(page)

    def _clear_page(self, page: Path) -> None:
        for asset in self._page_assets.pop(page, []):
            pages = self._asset_pages.get(asset)
            if pages is None:
                continue
            pages.discard(page)
            if not pages:
                del self._asset_pages[asset]

    def get_all_referenced_assets(self) -> list[Path]:
        with self._lock:
            return sorted(self._asset_pages)

    def is_asset_referenced(self, path: Path) -> bool:
        with self._lock:
            return path in self._asset_pages

    def get_pages_that_reference(self, path: Path) -> list[Path]:
        with self._lock:
            return sorted(self._asset_pages.get(path, ()))

    def get_page_assets(self, page: Path) -> list[Path]:
        with self._lock:
            return list(self._page_assets.get(page, []))

    def clear(self) -> None:
        with self._lock:
            self._page_assets.clear()
            self._asset_pages.clear()
