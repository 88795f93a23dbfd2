from __future__ import annotations

import argparse
import sys
import time
from pathlib import Path
from typing import Optional, Sequence

from .builder import BuildReport, SiteBuilder
from .config import FAIL_LEVELS, build_config, load_config
from .errors import ConfigError
from .logging import configure_logging
from .utils import parse_bool, parse_int, parse_list


def build_parser(config: dict, config_path: str) -> argparse.ArgumentParser:
    def cfg_value(key: str, default: object) -> object:
        value = config.get(key)
        return default if value is None else value

    def cfg_str(key: str, default: str) -> str:
        value = cfg_value(key, default)
        return default if value is None else str(value)

    def cfg_bool(key: str, default: bool) -> bool:
        value = cfg_value(key, default)
        return parse_bool(value) if value is not None else default

    def cfg_int(key: str, default: int) -> int:
        value = cfg_value(key, default)
        return parse_int(value, default)

    parser = argparse.ArgumentParser(description="Build a static site from HTML, CSS and Markdown sources.")
    parser.add_argument("--config", default=config_path, help="Path to site config file (TOML/YAML/JSON).")
    parser.add_argument("--source", default=cfg_str("source", "src"), help="Source directory.")
    parser.add_argument("--output", default=cfg_str("output", "dist"), help="Output directory for the site.")
    parser.add_argument(
        "--includes-dir",
        default=cfg_str("includes_dir", "_includes"),
        help="Directory (relative to source) holding includes.",
    )
    parser.add_argument(
        "--layouts-dir",
        default=cfg_str("layouts_dir", "_layouts"),
        help="Directory (relative to source) holding layouts.",
    )
    parser.add_argument(
        "--components-dir",
        default=cfg_str("components_dir", "_components"),
        help="Directory (relative to source) holding components.",
    )
    parser.add_argument(
        "--default-layout",
        action="append",
        default=None,
        help="Default layout rule, 'pattern=layout' or 'layout'. Repeatable; first match wins.",
    )
    parser.add_argument(
        "--pretty-urls",
        action=argparse.BooleanOptionalAction,
        default=cfg_bool("pretty_urls", False),
        help="Write about.html as about/index.html.",
    )
    parser.add_argument(
        "--clean",
        action=argparse.BooleanOptionalAction,
        default=cfg_bool("clean", False),
        help="Clean output directory before build.",
    )
    parser.add_argument(
        "--build-workers",
        default=cfg_int("build_workers", 0),
        type=int,
        help="Number of worker threads for composing pages (0 = auto).",
    )
    parser.add_argument(
        "--fail-on",
        choices=FAIL_LEVELS,
        default=cfg_value("fail_on", None),
        help="Exit with status 1 when any page reports this level or worse.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        default=cfg_bool("verbose", False),
        help="Enable debug logging.",
    )
    parser.add_argument("--log-file", default=cfg_str("log_file", ""), help="Also write logs to this file.")
    return parser


def args_to_config(args: argparse.Namespace, config: dict) -> dict:
    """Overlay parsed command line values on the loaded config mapping."""
    data = dict(config)
    data.update(
        {
            "source": args.source,
            "output": args.output,
            "includes_dir": args.includes_dir,
            "layouts_dir": args.layouts_dir,
            "components_dir": args.components_dir,
            "pretty_urls": args.pretty_urls,
            "clean": args.clean,
            "build_workers": args.build_workers,
            "fail_on": args.fail_on,
        }
    )
    if args.default_layout:
        data["default_layout"] = args.default_layout
    else:
        data["default_layout"] = parse_list(config.get("default_layout"))
    return data


def print_summary(report: BuildReport) -> None:
    for page in report.errors:
        print(f"Error: {page.source}: {page.error}", file=sys.stderr)
    print(
        f"Built {len(report.pages)} page(s): {len(report.errors)} error(s), "
        f"{len(report.warnings)} with warnings; copied {len(report.assets)} asset(s)."
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    pre_parser = argparse.ArgumentParser(add_help=False)
    pre_parser.add_argument(
        "--config",
        default="site.toml",
        help="Path to site config file (TOML/YAML/JSON).",
    )
    pre_args, _ = pre_parser.parse_known_args(argv)
    config_path = Path(pre_args.config)
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        print(str(exc), file=sys.stderr)
        return 1

    args = build_parser(config, pre_args.config).parse_args(argv)
    configure_logging(verbose=args.verbose, log_file=Path(args.log_file) if args.log_file else None)

    try:
        build = build_config(args_to_config(args, config), base_dir=Path.cwd())
    except ConfigError as exc:
        print(str(exc), file=sys.stderr)
        return 1

    if not build.source.exists():
        print(f"Source directory not found: {build.source}", file=sys.stderr)
        return 1

    start = time.perf_counter()
    builder = SiteBuilder(build, project_root=Path.cwd())
    try:
        report = builder.build()
    except ConfigError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    elapsed = time.perf_counter() - start
    print_summary(report)
    print(f"Build completed in {elapsed:.2f}s.")
    return 1 if report.failed(build.fail_on) else 0


if __name__ == "__main__":
    sys.exit(main())
