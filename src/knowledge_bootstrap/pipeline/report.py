"""Run-level aggregation and the persisted ``bootstrap-report.json`` record."""

from __future__ import annotations

import os
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from knowledge_bootstrap.constants import REPORT_FILENAME, REPORT_VERSION, STATE_DIR
from knowledge_bootstrap.domain.models import (
    SESSION_SUPERSEDED_ERROR,
    DimensionResult,
    OutputType,
    TokenUsage,
)
from knowledge_bootstrap.utils.fs import atomic_write_json, read_json

if TYPE_CHECKING:
    from knowledge_bootstrap.catalog import DimensionCatalog
    from knowledge_bootstrap.domain.models import ProjectSnapshot
    from knowledge_bootstrap.pipeline.artifacts import ArtifactOutcome

PathLike = str | os.PathLike[str]


def report_path(run_root: PathLike) -> Path:
    return Path(run_root) / STATE_DIR / REPORT_FILENAME


def aggregate_totals(
    results: Mapping[str, DimensionResult],
    catalog: DimensionCatalog,
    *,
    skills_created: int = 0,
) -> dict[str, Any]:
    """Sum counters across every result, restored ones included.

    A superseded session is early termination rather than an error, so it
    does not count toward ``errors``.
    """

    candidates = 0
    tool_calls = 0
    errors = 0
    token_usage = TokenUsage()
    for dim_id, result in results.items():
        if dim_id not in catalog or catalog.get(dim_id).output_type is not OutputType.SKILL:
            candidates += result.candidate_count
        tool_calls += result.tool_call_count
        token_usage = token_usage + result.token_usage
        if result.failed and result.error != SESSION_SUPERSEDED_ERROR:
            errors += 1
    return {
        "candidates": candidates,
        "skills": skills_created,
        "toolCalls": tool_calls,
        "tokenUsage": token_usage.to_dict(),
        "errors": errors,
    }


def build_run_report(
    *,
    project: ProjectSnapshot,
    catalog: DimensionCatalog,
    results: Mapping[str, DimensionResult],
    duration_ms: int,
    mode: str,
    restored: Sequence[str],
    artifacts: ArtifactOutcome | None = None,
    aborted: bool = False,
    now: datetime | None = None,
) -> dict[str, Any]:
    timestamp = (now or datetime.now(UTC)).isoformat(timespec="milliseconds")
    dimensions: dict[str, Any] = {}
    for dim_id, result in results.items():
        stats: dict[str, Any] = {
            "candidatesSubmitted": result.candidate_count,
            "candidatesRejected": result.rejected_count,
            "analysisChars": result.analysis_chars,
            "referencedFiles": result.referenced_files,
            "durationMs": result.duration_ms,
            "toolCallCount": result.tool_call_count,
            "tokenUsage": result.token_usage.to_dict(),
        }
        if result.error is not None:
            stats["error"] = result.error
        if result.restored_from_checkpoint:
            stats["restoredFromCheckpoint"] = True
        dimensions[dim_id] = stats

    return {
        "version": REPORT_VERSION,
        "timestamp": timestamp.replace("+00:00", "Z"),
        "project": {
            "name": project.name,
            "files": project.file_count,
            "lang": project.primary_language,
        },
        "duration": {"totalMs": duration_ms, "totalSec": round(duration_ms / 1000)},
        "mode": mode,
        "aborted": aborted,
        "dimensions": dimensions,
        "totals": aggregate_totals(
            results,
            catalog,
            skills_created=artifacts.created if artifacts is not None else 0,
        ),
        "checkpoints": {"restored": list(restored)},
        "artifacts": (
            artifacts.to_dict()
            if artifacts is not None
            else {"created": 0, "failed": 0, "errors": []}
        ),
    }


def write_run_report(
    run_root: PathLike, report: Mapping[str, Any], *, logger: Any | None = None
) -> Path | None:
    """Persist ``report``; a write failure is logged and ``None`` returned."""

    log = logger if logger is not None else structlog.get_logger(__name__)
    target = report_path(run_root)
    try:
        atomic_write_json(target, dict(report), indent=2)
    except (OSError, TypeError, ValueError) as exc:
        log.warning("run_report_write_failed", path=str(target), error=str(exc))
        return None
    log.info("run_report_written", path=str(target))
    return target


def read_run_report(run_root: PathLike) -> dict[str, Any] | None:
    """Load the last run report, or ``None`` when absent. Invalid JSON raises ``ValueError``."""

    target = report_path(run_root)
    if not target.is_file():
        return None
    payload = read_json(target)
    if not isinstance(payload, dict):
        raise ValueError(f"run report at {target} is not a JSON object")
    return payload


__all__ = [
    "aggregate_totals",
    "build_run_report",
    "read_run_report",
    "report_path",
    "write_run_report",
]
