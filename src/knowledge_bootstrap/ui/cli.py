"""Command-line interface router for knowledge-bootstrap."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from knowledge_bootstrap.catalog import resolve_catalog
from knowledge_bootstrap.config import (
    ConfigLoadError,
    ConfigValidationError,
    load_config,
    redact_config,
)
from knowledge_bootstrap.errors import CatalogError
from knowledge_bootstrap.observability.logging import configure_console_logging
from knowledge_bootstrap.pipeline.checkpoints import checkpoint_store_from_config
from knowledge_bootstrap.pipeline.report import read_run_report, report_path
from knowledge_bootstrap.ui.render import CLIRenderer, create_renderer


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 1

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router."""

    parser = argparse.ArgumentParser(
        prog="knowledge-bootstrap",
        description=(
            "knowledge-bootstrap — tiered dimension analysis pipeline.\n\n"
            "Common workflows:\n"
            "  knowledge-bootstrap dimensions          Show the dimension catalog and tiers\n"
            "  knowledge-bootstrap checkpoints list    Show resumable dimensions\n"
            "  knowledge-bootstrap report              Show the last run report\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to bootstrap TOML config (default: ./bootstrap.toml if present).",
    )
    common.add_argument("--profile", default=None, help="Optional config profile overlay name.")
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )
    common.add_argument("--json", action="store_true", help="Emit deterministic JSON output")

    subparsers = parser.add_subparsers(dest="command", required=True)

    dimensions_parser = subparsers.add_parser(
        "dimensions", parents=[common], help="List configured dimensions grouped by tier"
    )
    dimensions_parser.add_argument(
        "--catalog",
        default=None,
        help="YAML catalog path, or 'builtin' (default: paths.catalog from config).",
    )
    dimensions_parser.set_defaults(handler=_cmd_dimensions)

    checkpoints_parser = subparsers.add_parser(
        "checkpoints", parents=[common], help="Inspect or clear resumable checkpoints"
    )
    checkpoints_parser.add_argument("action", choices=("list", "clear"))
    checkpoints_parser.add_argument(
        "--run-root", default=None, help="Run root (default: paths.run_root from config)."
    )
    checkpoints_parser.set_defaults(handler=_cmd_checkpoints)

    report_parser = subparsers.add_parser(
        "report", parents=[common], help="Render the last bootstrap run report"
    )
    report_parser.add_argument(
        "--run-root", default=None, help="Run root (default: paths.run_root from config)."
    )
    report_parser.set_defaults(handler=_cmd_report)

    config_parser = subparsers.add_parser(
        "config", parents=[common], help="Print the redacted effective configuration"
    )
    config_parser.set_defaults(handler=_cmd_config)

    return parser


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_dimensions(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    source = args.catalog if args.catalog is not None else config["paths"]["catalog"]
    try:
        catalog = resolve_catalog(source)
    except CatalogError as exc:
        raise CLIError(str(exc), exit_code=2) from exc

    if args.json:
        _emit_json({"command": "dimensions", "catalog": str(source), **catalog.to_dict()})
        return 0

    renderer = _get_renderer(args)
    renderer.heading(f"Dimension catalog ({source})")
    for index, tier in enumerate(catalog.tiers, start=1):
        rows = []
        for dim_id in tier:
            dimension = catalog.get(dim_id)
            rows.append(
                (
                    dimension.id,
                    dimension.output_type.value,
                    "yes" if dimension.produces_artifact else "no",
                    dimension.label,
                )
            )
        renderer.table(("ID", "Output", "Artifact", "Label"), rows, title=f"Tier {index}")
    return 0


def _cmd_checkpoints(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    run_root = _run_root(args, config)
    store = checkpoint_store_from_config(config)

    if args.action == "clear":
        asyncio.run(store.clear_all(run_root))
        if args.json:
            _emit_json({"command": "checkpoints", "action": "clear", "runRoot": str(run_root)})
        else:
            _get_renderer(args).text(f"Cleared checkpoints under {run_root}")
        return 0

    checkpoints = asyncio.run(store.load_all(run_root))
    now_ms = time.time_ns() // 1_000_000
    if args.json:
        _emit_json(
            {
                "command": "checkpoints",
                "action": "list",
                "runRoot": str(run_root),
                "backend": config["checkpoints"]["backend"],
                "checkpoints": {
                    dim_id: checkpoint.to_dict() for dim_id, checkpoint in sorted(checkpoints.items())
                },
            }
        )
        return 0

    renderer = _get_renderer(args)
    renderer.kv("Run root", run_root)
    renderer.kv("Backend", config["checkpoints"]["backend"])
    if not checkpoints:
        renderer.text("No valid checkpoints.")
        return 0
    rows = [
        (
            dim_id,
            checkpoint.session_id,
            str(checkpoint.result.candidate_count),
            _format_age(checkpoint.age_ms(now_ms)),
        )
        for dim_id, checkpoint in sorted(checkpoints.items())
    ]
    renderer.table(("Dimension", "Session", "Candidates", "Age"), rows, title="Checkpoints")
    return 0


def _cmd_report(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    run_root = _run_root(args, config)
    try:
        report = read_run_report(run_root)
    except (OSError, ValueError) as exc:
        raise CLIError(f"unable to read run report: {exc}", exit_code=4) from exc
    if report is None:
        raise CLIError(f"no run report at {report_path(run_root)}", exit_code=1)

    if args.json:
        _emit_json({"command": "report", "report": report})
        return 0

    renderer = _get_renderer(args)
    project = _mapping(report.get("project"))
    duration = _mapping(report.get("duration"))
    totals = _mapping(report.get("totals"))
    renderer.heading(f"Bootstrap report {report.get('version', '?')}")
    renderer.kv("Project", f"{project.get('name', '?')} ({project.get('lang', '?')})")
    renderer.kv("Files", project.get("files", 0))
    renderer.kv("Mode", report.get("mode", "parallel"))
    renderer.kv("Duration", f"{duration.get('totalSec', 0)}s")
    if report.get("aborted"):
        renderer.warning("run was aborted; checkpoints were kept for resume")

    rows = []
    for dim_id, raw_stats in sorted(_mapping(report.get("dimensions")).items()):
        stats = _mapping(raw_stats)
        status = "restored" if stats.get("restoredFromCheckpoint") else "ok"
        if stats.get("error"):
            status = f"error: {stats['error']}"
        rows.append(
            (
                dim_id,
                str(stats.get("candidatesSubmitted", 0)),
                str(stats.get("toolCallCount", 0)),
                str(stats.get("durationMs", 0)),
                status,
            )
        )
    renderer.table(("Dimension", "Candidates", "Tool calls", "ms", "Status"), rows, title="Dimensions")

    renderer.section("Totals:")
    for key in ("candidates", "skills", "toolCalls", "errors"):
        renderer.kv(f"  {key}", totals.get(key, 0))
    restored = _mapping(report.get("checkpoints")).get("restored") or []
    if restored:
        renderer.section("Restored from checkpoint:")
        renderer.items([str(item) for item in restored])
    return 0


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    profile = args.profile
    redacted = redact_config(config)

    if args.json:
        _emit_json({"command": "config", "active_profile": profile, "config": redacted})
        return 0

    renderer = _get_renderer(args)
    renderer.kv("Active profile", profile or "(default)")
    renderer.text(json.dumps(redacted, indent=2, sort_keys=True, ensure_ascii=False))
    return 0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _emit_json(payload: Mapping[str, object]) -> None:
    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(no_color=bool(getattr(args, "no_color", False)))


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    try:
        config = load_config(args.config_path, profile=args.profile)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=2) from exc
    configure_console_logging(config["observability"]["log_level"])
    return config


def _run_root(args: argparse.Namespace, config: Mapping[str, Any]) -> Path:
    raw = args.run_root if args.run_root is not None else config["paths"]["run_root"]
    candidate = Path(raw).expanduser().resolve()
    if not candidate.is_dir():
        raise CLIError(f"run root is not a directory: {candidate}", exit_code=2)
    return candidate


def _format_age(age_ms: int) -> str:
    seconds = max(age_ms, 0) // 1000
    if seconds < 60:
        return f"{seconds}s"
    minutes, seconds = divmod(seconds, 60)
    return f"{minutes}m{seconds:02d}s"


def _mapping(value: object) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


__all__ = ["CLIError", "build_parser", "run_cli"]
