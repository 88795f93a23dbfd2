"""Secure resolution of user-written references to paths inside the source root."""

from __future__ import annotations

import os
import posixpath
import re
from pathlib import Path
from typing import Optional
from urllib.parse import unquote

from .logging import get_logger

logger = get_logger("paths")

MAX_DECODE_LEVELS = 3

DANGEROUS_SCHEMES = (
    "javascript:",
    "vbscript:",
    "data:",
    "file:",
    "blob:",
    "mailto:",
    "tel:",
    "ftp:",
    "about:",
    "jar:",
    "chrome:",
)

SENSITIVE_PREFIXES = (
    "/etc/",
    "/proc/",
    "/sys/",
    "/dev/",
    "/root/",
    "/boot/",
    "/bin/",
    "/sbin/",
    "/usr/bin/",
    "/usr/sbin/",
    "/var/log/",
)

ENCODED_TRAVERSAL = (
    "%2e%2e",
    "%2e.",
    ".%2e",
    "%252e",
    "%c0%ae",
    "%e0%80%ae",
    "%c0%af",
    "%c1%9c",
    "%u002e",
    "%uff0e",
    "..%2f",
    "..%5c",
    "%2f..",
    "%5c..",
)

UNICODE_DOTS = ("．", "․", "‥", "。")

DANGEROUS_EXTENSIONS = (
    "php",
    "phtml",
    "asp",
    "aspx",
    "jsp",
    "cgi",
    "exe",
    "bat",
    "cmd",
    "com",
    "scr",
    "ps1",
    "vbs",
    "dll",
)

DRIVE_RE = re.compile(r"^[a-zA-Z]:")
DOT_RUN_RE = re.compile(r"\.{3,}")
DOUBLE_EXT_RE = re.compile(
    r"\.(?:%s)\.[a-z0-9]+$" % "|".join(DANGEROUS_EXTENSIONS),
    re.IGNORECASE,
)
RAW_EXT_RE = re.compile(r"\.(?:%s)$" % "|".join(DANGEROUS_EXTENSIONS), re.IGNORECASE)


def _reject(raw: object, reason: str) -> None:
    logger.debug("Rejected reference %r: %s", raw, reason)
    return None


def _decode(raw: str) -> Optional[str]:
    current = raw
    for _ in range(MAX_DECODE_LEVELS):
        lowered = current.lower()
        if "\0" in current or "%00" in lowered:
            return None
        if any(token in lowered for token in ENCODED_TRAVERSAL):
            return None
        decoded = unquote(current)
        if decoded == current:
            break
        current = decoded
    if "\0" in current or "%00" in current.lower():
        return None
    if any(dot in current for dot in UNICODE_DOTS):
        return None
    return current


def _strip_suffix(path: str) -> str:
    for marker in ("#", "?"):
        index = path.find(marker)
        if index != -1:
            path = path[:index]
    return path


def is_within_root(path: str, root: str) -> bool:
    return path == root or path.startswith(root.rstrip(os.sep) + os.sep)


def resolve(raw: object, referencing_path: Path | str, source_root: Path | str) -> Optional[Path]:
    """Resolve ``raw`` as written in ``referencing_path`` to an absolute path under ``source_root``.

    Returns ``None`` for anything unsafe or unresolvable. Never raises and never
    touches the filesystem.
    """
    try:
        return _resolve(raw, referencing_path, source_root)
    except (TypeError, ValueError) as exc:
        return _reject(raw, f"error during resolution: {exc}")


def _resolve(raw: object, referencing_path: Path | str, source_root: Path | str) -> Optional[Path]:
    if not isinstance(raw, str) or not raw.strip():
        return _reject(raw, "empty reference")
    text = raw.strip()
    lowered = text.lower()

    if lowered.startswith("data:"):
        return _reject(raw, "data URL")
    if "://" in text:
        return _reject(raw, "external URL")
    if any(scheme in lowered for scheme in DANGEROUS_SCHEMES):
        return _reject(raw, "dangerous scheme")
    if text.startswith("\\\\") or text.startswith("//"):
        return _reject(raw, "UNC or protocol-relative path")
    if DRIVE_RE.match(text):
        return _reject(raw, "drive letter")
    if any(lowered.startswith(prefix) for prefix in SENSITIVE_PREFIXES):
        return _reject(raw, "sensitive system path")

    decoded = _decode(text)
    if decoded is None:
        return _reject(raw, "encoded traversal or null byte")
    if "://" in decoded or any(scheme in decoded.lower() for scheme in DANGEROUS_SCHEMES):
        return _reject(raw, "encoded scheme")

    cleaned = _strip_suffix(decoded).replace("\\", "/")
    if not cleaned:
        return _reject(raw, "fragment-only reference")
    if cleaned == ".." or cleaned.endswith("/..") or DOT_RUN_RE.search(cleaned):
        return _reject(raw, "traversal pattern")
    if DOUBLE_EXT_RE.search(cleaned):
        return _reject(raw, "suspicious double extension")
    if RAW_EXT_RE.search(cleaned):
        return _reject(raw, "executable extension")

    root = os.path.normpath(os.fspath(source_root))
    if cleaned.startswith("/"):
        base = root
        relative = cleaned.lstrip("/")
    else:
        base = os.path.dirname(os.path.normpath(os.fspath(referencing_path)))
        relative = cleaned
    joined = os.path.normpath(os.path.join(base, *posixpath.normpath(relative).split("/")))
    if not is_within_root(joined, root):
        return _reject(raw, "outside source root")
    return Path(joined)
