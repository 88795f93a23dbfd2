from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

SECURITY = "security"
MISSING = "missing"
DEPTH = "depth"
LAYOUT = "layout"


class UnifyError(Exception):
    """Base class for errors raised while composing a page."""

    def __init__(self, message: str, path: Optional[Path] = None) -> None:
        self.path = path
        if path is not None:
            message = f"{message} in {path}"
        super().__init__(message)


class CircularDependencyError(UnifyError):
    def __init__(self, chain: Sequence[Path], target: Optional[Path] = None) -> None:
        self.chain = list(chain)
        self.target = target
        cycle = self.chain + ([target] if target is not None else [])
        joined = " → ".join(str(item) for item in cycle)
        super().__init__(f"Circular dependency detected: {joined}")


class MalformedDirectiveError(UnifyError):
    pass


class ConfigError(RuntimeError):
    """Raised when the configuration file or a layout rule cannot be parsed."""


@dataclass(frozen=True)
class BuildWarning:
    kind: str
    message: str
    path: Optional[Path] = None

    def __str__(self) -> str:
        if self.path is None:
            return self.message
        return f"{self.message} ({self.path})"
