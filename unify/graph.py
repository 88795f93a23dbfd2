"""Bidirectional dependency graph used to schedule incremental rebuilds."""

from __future__ import annotations

import threading
from collections import deque
from pathlib import Path
from typing import Iterable, Optional

from .logging import get_logger

logger = get_logger("graph")


class DependencyGraph:
    """Pages point at the files they were composed from; the reverse map answers "who uses this?".

    Every mutating call runs under one lock and leaves ``forward`` and
    ``reverse`` consistent: ``d in forward[f]`` iff ``f in reverse[d]``, and no
    empty sets are kept.
    """

    def __init__(self) -> None:
        self._forward: dict[Path, set[Path]] = {}
        self._reverse: dict[Path, set[Path]] = {}
        self._lock = threading.RLock()

    def record(self, file: Path, refs: Iterable[Optional[Path]]) -> None:
        """Replace ``file``'s outgoing edges with ``refs``."""
        deps = {ref for ref in refs if ref is not None and ref != file}
        with self._lock:
            self._clear_forward(file)
            if not deps:
                return
            self._forward[file] = deps
            for dep in deps:
                self._reverse.setdefault(dep, set()).add(file)
        logger.debug("Recorded %d dependencies for %s", len(deps), file)

    def _clear_forward(self, file: Path) -> None:
        for dep in self._forward.pop(file, ()):
            dependents = self._reverse.get(dep)
            if dependents is None:
                continue
            dependents.discard(file)
            if not dependents:
                del self._reverse[dep]

    def remove(self, file: Path) -> None:
        """Forget ``file`` entirely, both as a page and as a dependency."""
        with self._lock:
            self._clear_forward(file)
            for dependent in self._reverse.pop(file, ()):
                deps = self._forward.get(dependent)
                if deps is None:
                    continue
                deps.discard(file)
                if not deps:
                    del self._forward[dependent]
        logger.debug("Removed %s from dependency graph", file)

    def dependencies(self, file: Path) -> list[Path]:
        with self._lock:
            return sorted(self._forward.get(file, ()))

    def direct_dependents(self, file: Path) -> list[Path]:
        with self._lock:
            return sorted(self._reverse.get(file, ()))

    def transitive_dependents(
        self, file: Path, cache: Optional[dict[Path, list[Path]]] = None
    ) -> list[Path]:
        """Everything that depends on ``file`` directly or through other files.

        The traversal keeps its own visited set, so a cycle left behind by a
        half-finished edit cannot make it loop. ``cache`` may be shared across
        the queries of one rebuild pass.
        """
        if cache is not None and file in cache:
            return list(cache[file])
        with self._lock:
            visited = {file}
            queue = deque([file])
            found: list[Path] = []
            while queue:
                current = queue.popleft()
                for dependent in sorted(self._reverse.get(current, ())):
                    if dependent in visited:
                        continue
                    visited.add(dependent)
                    found.append(dependent)
                    queue.append(dependent)
        if cache is not None:
            cache[file] = list(found)
        return found

    def is_include(self, file: Path) -> bool:
        with self._lock:
            return bool(self._reverse.get(file))

    def is_page(self, file: Path) -> bool:
        with self._lock:
            return bool(self._forward.get(file))

    def pages(self) -> list[Path]:
        with self._lock:
            return sorted(self._forward)

    def includes(self) -> list[Path]:
        with self._lock:
            return sorted(self._reverse)

    def files(self) -> list[Path]:
        with self._lock:
            return sorted(set(self._forward) | set(self._reverse))

    def snapshot(self) -> tuple[dict[Path, set[Path]], dict[Path, set[Path]]]:
        with self._lock:
            forward = {key: set(value) for key, value in self._forward.items()}
            reverse = {key: set(value) for key, value in self._reverse.items()}
        return forward, reverse

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "files": len(set(self._forward) | set(self._reverse)),
                "pages": len(self._forward),
                "includes": len(self._reverse),
                "edges": sum(len(deps) for deps in self._forward.values()),
            }

    def clear(self) -> None:
        with self._lock:
            self._forward.clear()
            self._reverse.clear()

    def __contains__(self, file: object) -> bool:
        with self._lock:
            return file in self._forward or file in self._reverse
