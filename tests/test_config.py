from __future__ import annotations

from pathlib import Path

import pytest

from unify.config import BuildConfig, DefaultLayoutRule, build_config, load_config
from unify.errors import ConfigError


def test_load_config_missing_file_returns_empty(tmp_path: Path) -> None:
    assert load_config(tmp_path / "site.toml") == {}


def test_load_config_reads_toml(tmp_path: Path) -> None:
    path = tmp_path / "site.toml"
    path.write_text('source = "pages"\npretty_urls = true\ndefault_layout = ["blog/**=blog", "base"]\n', encoding="utf-8")

    assert load_config(path) == {
        "source": "pages",
        "pretty_urls": True,
        "default_layout": ["blog/**=blog", "base"],
    }


def test_load_config_reads_yaml(tmp_path: Path) -> None:
    path = tmp_path / "site.yml"
    path.write_text("output: public\nbuild_workers: 4\n", encoding="utf-8")

    assert load_config(path) == {"output": "public", "build_workers": 4}


def test_load_config_reads_json(tmp_path: Path) -> None:
    path = tmp_path / "site.json"
    path.write_text('{"clean": true}', encoding="utf-8")

    assert load_config(path) == {"clean": True}


def test_load_config_rejects_invalid_json(tmp_path: Path) -> None:
    path = tmp_path / "site.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(ConfigError):
        load_config(path)


def test_load_config_rejects_non_mapping(tmp_path: Path) -> None:
    path = tmp_path / "site.json"
    path.write_text("[1, 2]", encoding="utf-8")

    with pytest.raises(ConfigError):
        load_config(path)


def test_build_config_defaults(tmp_path: Path) -> None:
    config = build_config({}, base_dir=tmp_path)

    assert isinstance(config, BuildConfig)
    assert config.source == (tmp_path / "src").resolve()
    assert config.output == (tmp_path / "dist").resolve()
    assert config.partial_dirs == ("_includes", "_layouts", "_components")
    assert config.default_layouts == []
    assert config.fail_on is None


def test_build_config_parses_values(tmp_path: Path) -> None:
    config = build_config(
        {
            "source": "site",
            "output": str(tmp_path / "out"),
            "includes_dir": "partials",
            "default_layout": "blog/**=blog, base",
            "pretty_urls": "yes",
            "build_workers": "3",
            "fail_on": "Warning",
            "layout_patterns": ["layouts/**"],
        },
        base_dir=tmp_path,
    )

    assert config.source == (tmp_path / "site").resolve()
    assert config.output == (tmp_path / "out").resolve()
    assert config.includes_dir == "partials"
    assert config.default_layouts == [
        DefaultLayoutRule(layout="blog", pattern="blog/**"),
        DefaultLayoutRule(layout="base"),
    ]
    assert config.pretty_urls is True
    assert config.build_workers == 3
    assert config.fail_on == "warning"
    assert config.layout_patterns == ["layouts/**"]


def test_build_config_rejects_unknown_fail_level(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        build_config({"fail_on": "sometimes"}, base_dir=tmp_path)


@pytest.mark.parametrize("rule", ["", "=base", "blog/**=", "blog\\**=base", "../evil", "blog/**=../evil"])
def test_invalid_default_layout_rules(rule: str) -> None:
    with pytest.raises(ConfigError):
        DefaultLayoutRule.parse(rule)
