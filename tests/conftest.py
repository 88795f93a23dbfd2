from __future__ import annotations

from pathlib import Path
from typing import Optional

import pytest

from unify.compose import CompositionResult, compose_page
from unify.config import BuildConfig
from unify.graph import DependencyGraph
from unify.references import ReferenceExtractor


class SiteTree:
    """Writes source files under ``<tmp>/src`` and hands out matching configs."""

    def __init__(self, root: Path) -> None:
        self.root = root.resolve()
        self.src = self.root / "src"
        self.src.mkdir(parents=True, exist_ok=True)
        self.output = self.root / "dist"

    def path(self, relative: str) -> Path:
        return self.src / relative

    def write(self, relative: str, text: str) -> Path:
        path = self.path(relative)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
        return path

    def config(self, **overrides) -> BuildConfig:
        return BuildConfig(source=self.src, output=self.output, **overrides)


@pytest.fixture
def site(tmp_path: Path) -> SiteTree:
    return SiteTree(tmp_path)


@pytest.fixture
def graph() -> DependencyGraph:
    return DependencyGraph()


@pytest.fixture
def compose(site: SiteTree, graph: DependencyGraph):
    """Compose a page already written to the site tree."""

    def _compose(
        relative: str,
        config: Optional[BuildConfig] = None,
        extractor: Optional[ReferenceExtractor] = None,
        **kwargs,
    ) -> CompositionResult:
        path = site.path(relative)
        return compose_page(
            path.read_text(encoding="utf-8"),
            path,
            site.src,
            graph,
            config or site.config(),
            extractor=extractor,
            **kwargs,
        )

    return _compose
