"""Finding layout files: short names, default rules and folder-scoped ``_layout.html``."""

from __future__ import annotations

import re
from fnmatch import fnmatch
from pathlib import Path
from typing import Iterator, Optional, Sequence

from .config import BuildConfig, DefaultLayoutRule
from .io import SourceReader
from .logging import get_logger
from .paths import resolve

logger = get_logger("layouts")

COMMENT_RE = re.compile(r"<!--.*?-->", re.DOTALL)
HTML_START_RE = re.compile(r"<html[\s>/]", re.IGNORECASE)
LAYOUT_SUFFIXES = (".html", ".htm")
ANCESTOR_LAYOUT_NAMES = ("_layout.html", "_layout.htm")


def is_full_document(html: str) -> bool:
    """A document is full when it has an ``<html>`` element; anything else is a fragment."""
    return bool(HTML_START_RE.search(COMMENT_RE.sub("", html or "")))


def short_name_candidates(name: str) -> tuple[str, ...]:
    return (
        f"_{name}.layout.html",
        f"_{name}.layout.htm",
        f"_{name}.html",
        f"_{name}.htm",
        f"{name}.html",
    )


def _walk_up(start: Path, root: Path) -> Iterator[Path]:
    current = start
    while True:
        yield current
        if current == root or root not in current.parents:
            return
        current = current.parent


def _is_short_name(value: str) -> bool:
    return "/" not in value and "\\" not in value and not value.lower().endswith(LAYOUT_SUFFIXES)


def resolve_layout_reference(
    value: str,
    page: Path,
    source_root: Path,
    config: BuildConfig,
    reader: SourceReader,
) -> Optional[Path]:
    """Turn a layout reference into an existing file, or ``None``.

    Root-absolute references resolve against the source root. Bare short
    names (``blog``) are searched as ``_blog.layout.html`` and friends from the
    page's directory upward, then in the includes and layouts directories.
    Other relative references try the page directory first, then the root.
    """
    value = (value or "").strip()
    if not value:
        return None
    candidates: list[Optional[Path]] = []
    if value.startswith("/"):
        candidates.append(resolve(value, page, source_root))
        if not value.lower().endswith(LAYOUT_SUFFIXES):
            candidates.append(resolve(value + ".html", page, source_root))
    elif _is_short_name(value):
        if resolve("/" + value, page, source_root) is None:
            return None
        search_dirs = list(_walk_up(page.parent, source_root))
        search_dirs += [source_root / config.includes_dir, source_root / config.layouts_dir]
        for directory in search_dirs:
            for name in short_name_candidates(value):
                candidates.append(directory / name)
    else:
        candidates.append(resolve(value, page, source_root))
        candidates.append(resolve("/" + value, page, source_root))
        for directory in (config.includes_dir, config.layouts_dir):
            candidates.append(resolve(f"/{directory}/{value}", page, source_root))

    for candidate in candidates:
        if candidate is not None and candidate != page and reader.exists(candidate):
            logger.debug("Layout %r for %s resolved to %s", value, page, candidate)
            return candidate
    return None


def match_default_rule(
    page: Path, rules: Sequence[DefaultLayoutRule], source_root: Path
) -> Optional[DefaultLayoutRule]:
    """Return the first pattern rule matching the page, else the first pattern-less rule."""
    try:
        relative = page.relative_to(source_root).as_posix()
    except ValueError:
        relative = page.name
    fallback = None
    for rule in rules:
        if rule.pattern is None:
            if fallback is None:
                fallback = rule
            continue
        pattern = rule.pattern.lstrip("/")
        if fnmatch(relative, pattern):
            return rule
        if pattern.startswith("**/") and fnmatch(relative, pattern[3:]):
            return rule
    return fallback


def find_ancestor_layout(
    page: Path, source_root: Path, config: BuildConfig, reader: SourceReader
) -> Optional[Path]:
    """Nearest ``_layout.html`` from the page's directory up to the root, then the includes fallback."""
    for directory in _walk_up(page.parent, source_root):
        for name in ANCESTOR_LAYOUT_NAMES:
            candidate = directory / name
            if candidate != page and reader.exists(candidate):
                return candidate
    for name in ANCESTOR_LAYOUT_NAMES:
        candidate = source_root / config.includes_dir / name
        if candidate != page and reader.exists(candidate):
            return candidate
    return None
