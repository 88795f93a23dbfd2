"""Build orchestration: discovery, parallel composition, asset copying and incremental rebuilds."""

from __future__ import annotations

import os
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from fnmatch import fnmatch
from pathlib import Path
from typing import Iterable, Optional

from .compose import compose_page
from .config import BuildConfig
from .content import render_markdown, render_placeholders
from .errors import BuildWarning, UnifyError
from .graph import DependencyGraph
from .io import SourceReader, copy_file, list_files, remove_file, write_text
from .logging import get_logger
from .references import ReferenceExtractor
from .utils import clean_output_dir, is_within

logger = get_logger("builder")

PAGE_SUFFIXES = {".html", ".htm", ".md"}
MAX_WORKERS = 32

OK = "ok"
WARNING = "warning"
ERROR = "error"


@dataclass
class PageReport:
    source: Path
    output: Optional[Path]
    status: str
    warnings: list[BuildWarning] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class BuildReport:
    pages: list[PageReport] = field(default_factory=list)
    assets: list[Path] = field(default_factory=list)
    duration: float = 0.0

    @property
    def errors(self) -> list[PageReport]:
        return [page for page in self.pages if page.status == ERROR]

    @property
    def warnings(self) -> list[PageReport]:
        return [page for page in self.pages if page.status == WARNING]

    def failed(self, fail_on: Optional[str]) -> bool:
        if fail_on == ERROR:
            return bool(self.errors)
        if fail_on == WARNING:
            return bool(self.errors or self.warnings)
        return False


def resolve_workers(requested: int, jobs: int) -> int:
    workers = requested if requested > 0 else (os.cpu_count() or 1)
    workers = max(1, min(workers, MAX_WORKERS))
    return min(workers, jobs) if jobs else 1


class SiteBuilder:
    def __init__(
        self,
        config: BuildConfig,
        reader: Optional[SourceReader] = None,
        project_root: Optional[Path] = None,
    ) -> None:
        self.config = config
        self.source_root = Path(config.source).resolve()
        self.output_root = Path(config.output).resolve()
        self.project_root = (project_root or Path.cwd()).resolve()
        self.reader = reader or SourceReader()
        self.graph = DependencyGraph()
        self.extractor = ReferenceExtractor(self.reader)

    def relative(self, path: Path) -> str:
        return path.relative_to(self.source_root).as_posix()

    def is_partial(self, path: Path) -> bool:
        """Includes, layouts and components are composed into pages, never emitted themselves."""
        try:
            relative = self.relative(path)
        except ValueError:
            return False
        parts = relative.split("/")
        if parts[0] in self.config.partial_dirs:
            return True
        if any(part.startswith("_") for part in parts):
            return True
        patterns = [*self.config.component_patterns, *self.config.layout_patterns]
        return any(fnmatch(relative, pattern) for pattern in patterns)

    def is_page_source(self, path: Path) -> bool:
        return (
            path.suffix.lower() in PAGE_SUFFIXES
            and is_within(path, self.source_root)
            and not is_within(path, self.output_root)
            and not self.is_partial(path)
        )

    def discover(self) -> tuple[list[Path], list[Path]]:
        """Split the source tree into pages and everything else (partials and assets)."""
        pages, others = [], []
        for path in list_files(self.source_root):
            if is_within(path, self.output_root):
                continue
            (pages if self.is_page_source(path) else others).append(path)
        logger.debug("Discovered %d pages and %d other files", len(pages), len(others))
        return pages, others

    def output_path(self, page: Path) -> Path:
        relative = Path(self.relative(page))
        if relative.suffix.lower() == ".md":
            relative = relative.with_suffix(".html")
        if self.config.pretty_urls and relative.stem != "index":
            relative = relative.parent / relative.stem / "index.html"
        return self.output_root / relative

    def asset_output_path(self, asset: Path) -> Path:
        return self.output_root / self.relative(asset)

    def build_page(self, page: Path) -> PageReport:
        """Compose and write one page. Failures are confined to this page's report."""
        try:
            text = self.reader.read_text(page)
            markdown_page = None
            head_html, explicit_layout = "", None
            if page.suffix.lower() == ".md":
                markdown_page = render_markdown(text)
                text = markdown_page.html
                head_html, explicit_layout = markdown_page.head_html, markdown_page.layout
            result = compose_page(
                text,
                page,
                self.source_root,
                self.graph,
                self.config,
                reader=self.reader,
                extractor=self.extractor,
                head_html=head_html,
                layout=explicit_layout,
            )
            content = result.content
            if markdown_page is not None:
                content = render_placeholders(content, markdown_page.placeholders)
            destination = self.output_path(page)
            write_text(destination, content)
        except UnifyError as exc:
            logger.error("Failed to build %s: %s", page, exc)
            return PageReport(page, None, ERROR, error=str(exc))
        except (OSError, UnicodeDecodeError) as exc:
            logger.error("Failed to build %s: %s", page, exc)
            return PageReport(page, None, ERROR, error=str(exc))

        for warning in result.warnings:
            logger.warning("%s", warning)
        status = WARNING if result.warnings else OK
        return PageReport(page, destination, status, list(result.warnings))

    def build_pages(self, pages: list[Path]) -> list[PageReport]:
        workers = resolve_workers(self.config.build_workers, len(pages))
        if workers > 1:
            with ThreadPoolExecutor(max_workers=workers) as executor:
                return list(executor.map(self.build_page, pages))
        return [self.build_page(page) for page in pages]

    def copy_assets(self, assets: Optional[Iterable[Path]] = None) -> list[Path]:
        """Copy referenced assets that exist inside the source root."""
        candidates = self.extractor.get_all_referenced_assets() if assets is None else assets
        copied = []
        for asset in candidates:
            if not self.extractor.is_asset_referenced(asset):
                continue
            if not is_within(asset, self.source_root) or not self.reader.exists(asset):
                continue
            if self.is_page_source(asset):
                continue
            copy_file(asset, self.asset_output_path(asset))
            copied.append(asset)
        logger.debug("Copied %d assets", len(copied))
        return copied

    def build(self) -> BuildReport:
        start = time.perf_counter()
        if self.config.clean:
            clean_output_dir(self.output_root, self.project_root)
        self.output_root.mkdir(parents=True, exist_ok=True)
        self.graph.clear()
        self.extractor.clear()
        pages, _ = self.discover()
        reports = self.build_pages(pages)
        assets = self.copy_assets()
        return BuildReport(reports, assets, time.perf_counter() - start)

    def affected_pages(self, changed: Iterable[Path]) -> list[Path]:
        cache: dict[Path, list[Path]] = {}
        affected: dict[Path, None] = {}
        for path in changed:
            if self.is_page_source(path) and self.reader.exists(path):
                affected.setdefault(path, None)
            for dependent in self.graph.transitive_dependents(path, cache):
                if self.is_page_source(dependent) and self.reader.exists(dependent):
                    affected.setdefault(dependent, None)
        return list(affected)

    def rebuild(self, changed: Iterable[Path]) -> BuildReport:
        """Recompose every page affected by ``changed`` and refresh the copied assets."""
        start = time.perf_counter()
        changed = [Path(path).resolve() for path in changed]
        pages = self.affected_pages(changed)
        for path in changed:
            if not self.reader.exists(path):
                self._forget(path)
        logger.info("Rebuilding %d page(s) for %d changed file(s)", len(pages), len(changed))
        reports = self.build_pages(pages)
        assets = {asset for page in pages for asset in self.extractor.get_page_assets(page)}
        assets.update(path for path in changed if self.extractor.is_asset_referenced(path))
        copied = self.copy_assets(sorted(assets))
        return BuildReport(reports, copied, time.perf_counter() - start)

    def _forget(self, path: Path) -> None:
        if self.is_page_source(path):
            remove_file(self.output_path(path))
            self.graph.remove(path)
            self.extractor.clear_page(path)
        elif self.extractor.is_asset_referenced(path):
            remove_file(self.asset_output_path(path))

    def remove(self, path: Path) -> BuildReport:
        """Handle a deleted source file: drop its output and rebuild the pages that used it."""
        return self.rebuild([path])
