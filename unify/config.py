from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

from .errors import ConfigError
from .utils import parse_bool, parse_int, parse_list

try:
    import tomllib as toml
except ImportError:
    try:
        import tomli as toml
    except ImportError:  # pragma: no cover - optional dependency
        toml = None

try:
    import yaml
except ImportError:  # pragma: no cover - optional dependency
    yaml = None

FAIL_LEVELS = ("warning", "error")


@dataclass(frozen=True)
class DefaultLayoutRule:
    """One `--default-layout` entry: `pattern=layout`, or a bare layout used as fallback."""

    layout: str
    pattern: Optional[str] = None

    @classmethod
    def parse(cls, text: str) -> "DefaultLayoutRule":
        rule = (text or "").strip()
        if not rule:
            raise ConfigError("Empty default layout rule")
        if "=" not in rule:
            _check_layout_value(rule, text)
            return cls(layout=rule)
        pattern, layout = (part.strip() for part in rule.split("=", 1))
        if not pattern:
            raise ConfigError(f"Empty pattern in default layout rule: {text}")
        if not layout:
            raise ConfigError(f"Empty layout in default layout rule: {text}")
        if "\\" in pattern:
            raise ConfigError(f"Use forward slashes in layout patterns: {text}")
        _check_layout_value(layout, text)
        return cls(layout=layout, pattern=pattern)


def _check_layout_value(layout: str, rule: str) -> None:
    if ".." in layout:
        raise ConfigError(f"Path traversal not allowed in default layout rule: {rule}")


@dataclass
class BuildConfig:
    source: Path = Path("src")
    output: Path = Path("dist")
    includes_dir: str = "_includes"
    layouts_dir: str = "_layouts"
    components_dir: str = "_components"
    component_patterns: list[str] = field(default_factory=lambda: ["_includes/**", "_components/**"])
    layout_patterns: list[str] = field(default_factory=lambda: ["_layouts/**", "**/_*.layout.html", "**/_layout.html"])
    default_layouts: list[DefaultLayoutRule] = field(default_factory=list)
    pretty_urls: bool = False
    clean: bool = False
    build_workers: int = 0
    fail_on: Optional[str] = None

    @property
    def partial_dirs(self) -> tuple[str, ...]:
        return (self.includes_dir, self.layouts_dir, self.components_dir)


def load_config(path: Path) -> dict:
    if not path.exists():
        return {}
    suffix = path.suffix.lower()
    text = path.read_text(encoding="utf-8")
    if suffix == ".toml":
        if toml is None:
            raise ConfigError("TOML config requires tomllib (Python 3.11+) or tomli.")
        try:
            data = toml.loads(text)
        except Exception as exc:  # pragma: no cover - depends on parser
            raise ConfigError(f"Invalid TOML in config file {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"TOML config must be a mapping: {path}")
        return data
    if suffix in {".yml", ".yaml"}:
        if yaml is None:
            raise ConfigError("YAML config requires PyYAML.")
        try:
            data = yaml.safe_load(text)
        except Exception as exc:  # pragma: no cover - depends on parser
            raise ConfigError(f"Invalid YAML in config file {path}: {exc}") from exc
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigError(f"YAML config must be a mapping: {path}")
        return data
    if not text.strip():
        return {}
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Invalid JSON in config file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"JSON config must be a mapping: {path}")
    return data


def build_config(data: Mapping[str, Any], base_dir: Optional[Path] = None) -> BuildConfig:
    """Turn a loaded config mapping into a BuildConfig; relative roots resolve against base_dir."""
    defaults = BuildConfig()
    base_dir = base_dir or Path.cwd()

    def root(key: str, default: Path) -> Path:
        value = data.get(key)
        path = Path(str(value)) if value else default
        if not path.is_absolute():
            path = base_dir / path
        return path.resolve()

    fail_on = data.get("fail_on")
    if fail_on is not None:
        fail_on = str(fail_on).strip().lower() or None
        if fail_on is not None and fail_on not in FAIL_LEVELS:
            raise ConfigError(f"fail_on must be one of {', '.join(FAIL_LEVELS)}: {fail_on}")

    rules = [DefaultLayoutRule.parse(item) for item in parse_list(data.get("default_layout"))]

    config = BuildConfig(
        source=root("source", defaults.source),
        output=root("output", defaults.output),
        includes_dir=str(data.get("includes_dir") or defaults.includes_dir),
        layouts_dir=str(data.get("layouts_dir") or defaults.layouts_dir),
        components_dir=str(data.get("components_dir") or defaults.components_dir),
        default_layouts=rules,
        pretty_urls=parse_bool(data.get("pretty_urls")),
        clean=parse_bool(data.get("clean")),
        build_workers=parse_int(data.get("build_workers"), defaults.build_workers),
        fail_on=fail_on,
    )
    if "component_patterns" in data:
        config.component_patterns = parse_list(data.get("component_patterns"))
    if "layout_patterns" in data:
        config.layout_patterns = parse_list(data.get("layout_patterns"))
    return config
