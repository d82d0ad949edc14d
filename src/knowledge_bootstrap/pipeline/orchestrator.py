"""
knowledge-bootstrap — pipeline orchestrator.

File: src/knowledge_bootstrap/pipeline/orchestrator.py

Purpose
- Drive one bootstrap run: restore checkpoints, execute every dimension
  through Explore -> Format -> Digest -> Checkpoint, then emit artifacts,
  write the run report and clear checkpoints.

Functional requirements
- Per-dimension state machine:
  PENDING -> RESTORED, or
  PENDING -> EXPLORING -> (FORMATTING) -> DIGESTING -> CHECKPOINTED -> COMPLETE,
  with ERROR on explore failure and ABANDONED when the session is superseded.
- A Formatter timeout or error keeps the Explore output and counts zero items.
- Nothing raised by one dimension escapes ``execute_dimension``.
- Checkpoints are cleared only when the run was not aborted.

Non-functional requirements
- Session validity is polled cooperatively; in-flight phases are never killed
  except by their own timeout.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

import structlog

from knowledge_bootstrap.catalog import resolve_catalog
from knowledge_bootstrap.constants import (
    DEFAULT_CONCURRENCY,
    DIGEST_SUMMARY_CHARS,
    EXPLORE_TIMEOUT_SECONDS,
    FORMAT_TIMEOUT_SECONDS,
    MIN_ANALYSIS_CHARS,
    SUBMIT_TOOL_NAMES,
)
from knowledge_bootstrap.domain.models import (
    SESSION_SUPERSEDED_ERROR,
    DimensionDigest,
    DimensionResult,
    FailureKind,
    FormatResult,
    OutputType,
    SubmittedItem,
)
from knowledge_bootstrap.observability.logging import correlation_scope
from knowledge_bootstrap.pipeline.artifacts import ArtifactOutcome, emit_artifacts
from knowledge_bootstrap.pipeline.checkpoints import checkpoint_store_from_config
from knowledge_bootstrap.pipeline.context import DimensionContext, parse_dimension_digest
from knowledge_bootstrap.pipeline.report import build_run_report, write_run_report
from knowledge_bootstrap.pipeline.tier_scheduler import TierScheduler
from knowledge_bootstrap.utils.concurrency import run_with_timeout

if TYPE_CHECKING:
    from knowledge_bootstrap.catalog import DimensionCatalog
    from knowledge_bootstrap.domain.models import (
        Checkpoint,
        Dimension,
        ExploreReport,
        ProjectSnapshot,
    )
    from knowledge_bootstrap.domain.session import RunSession
    from knowledge_bootstrap.pipeline.checkpoints import CheckpointStore
    from knowledge_bootstrap.pipeline.ports import (
        ArtifactWriter,
        DigestParser,
        Explorer,
        Formatter,
        ProgressSink,
    )


class DimensionState(StrEnum):
    PENDING = "pending"
    RESTORED = "restored"
    EXPLORING = "exploring"
    FORMATTING = "formatting"
    DIGESTING = "digesting"
    CHECKPOINTED = "checkpointed"
    COMPLETE = "complete"
    ERROR = "error"
    ABANDONED = "abandoned"


@dataclass(frozen=True, slots=True)
class PipelineSettings:
    concurrency: int = DEFAULT_CONCURRENCY
    parallel: bool = True
    explore_timeout_seconds: float = EXPLORE_TIMEOUT_SECONDS
    format_timeout_seconds: float = FORMAT_TIMEOUT_SECONDS
    min_analysis_chars: int = MIN_ANALYSIS_CHARS
    digest_summary_chars: int = DIGEST_SUMMARY_CHARS

    def __post_init__(self) -> None:
        if self.concurrency <= 0:
            raise ValueError("concurrency must be > 0")
        if self.explore_timeout_seconds <= 0 or self.format_timeout_seconds <= 0:
            raise ValueError("phase timeouts must be > 0")

    @property
    def mode(self) -> str:
        return "parallel" if self.parallel else "serial"

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> PipelineSettings:
        """Build settings from a validated config's ``[pipeline]`` section."""
        section = config.get("pipeline") or {}
        return cls(
            concurrency=int(section.get("concurrency", DEFAULT_CONCURRENCY)),
            parallel=bool(section.get("parallel", True)),
            explore_timeout_seconds=float(
                section.get("explore_timeout_seconds", EXPLORE_TIMEOUT_SECONDS)
            ),
            format_timeout_seconds=float(
                section.get("format_timeout_seconds", FORMAT_TIMEOUT_SECONDS)
            ),
            min_analysis_chars=int(section.get("min_analysis_chars", MIN_ANALYSIS_CHARS)),
            digest_summary_chars=int(section.get("digest_summary_chars", DIGEST_SUMMARY_CHARS)),
        )


@dataclass(slots=True)
class RunContext:
    """Everything one ``run_pipeline`` invocation needs."""

    catalog: DimensionCatalog
    project: ProjectSnapshot
    session: RunSession
    run_root: Path
    explorer: Explorer
    formatter: Formatter
    checkpoint_store: CheckpointStore
    settings: PipelineSettings = field(default_factory=PipelineSettings)
    artifact_writer: ArtifactWriter | None = None
    progress: ProgressSink | None = None
    selected_ids: frozenset[str] | None = None
    digest_parser: DigestParser = parse_dimension_digest


def build_run_context(
    config: Mapping[str, Any],
    *,
    project: ProjectSnapshot,
    session: RunSession,
    explorer: Explorer,
    formatter: Formatter,
    artifact_writer: ArtifactWriter | None = None,
    progress: ProgressSink | None = None,
    selected_ids: Iterable[str] | None = None,
    catalog: DimensionCatalog | None = None,
    logger: Any | None = None,
) -> RunContext:
    """Assemble a ``RunContext`` from a validated effective config.

    ``[pipeline]`` becomes the ``PipelineSettings`` (so an applied profile
    takes effect), ``[checkpoints]`` picks the store and its TTL, and
    ``paths.catalog`` is resolved unless ``catalog`` is given.
    """

    paths = config["paths"]
    return RunContext(
        catalog=catalog if catalog is not None else resolve_catalog(paths["catalog"]),
        project=project,
        session=session,
        run_root=Path(paths["run_root"]),
        explorer=explorer,
        formatter=formatter,
        checkpoint_store=checkpoint_store_from_config(config, logger=logger),
        settings=PipelineSettings.from_config(config),
        artifact_writer=artifact_writer,
        progress=progress,
        selected_ids=frozenset(selected_ids) if selected_ids is not None else None,
    )


@dataclass(frozen=True, slots=True)
class PipelineOutcome:
    results: Mapping[str, DimensionResult]
    report: Mapping[str, Any]
    artifacts: ArtifactOutcome
    aborted: bool
    restored: tuple[str, ...]
    states: Mapping[str, DimensionState]
    report_path: Path | None = None


class PipelineOrchestrator:
    """Runs one session's dimensions and owns the per-dimension state machine."""

    def __init__(self, run: RunContext, *, logger: Any | None = None) -> None:
        self._run = run
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._tiers = run.catalog.active_tiers(run.selected_ids)
        self._scheduler = TierScheduler(self._tiers, logger=self._logger)
        self._context = DimensionContext(run.project)
        self._states: dict[str, DimensionState] = {
            dim_id: DimensionState.PENDING for tier in self._tiers for dim_id in tier
        }
        self._checkpoints: dict[str, Checkpoint] = {}
        self._reports: dict[str, ExploreReport] = {}
        self._restored: list[str] = []

    @property
    def context(self) -> DimensionContext:
        return self._context

    @property
    def states(self) -> Mapping[str, DimensionState]:
        return MappingProxyType(self._states)

    @property
    def scheduler(self) -> TierScheduler:
        return self._scheduler

    def session_valid(self) -> bool:
        run = self._run
        if not run.session.is_valid():
            return False
        return run.progress is None or run.progress.is_session_valid(run.session.id)

    async def run(self) -> PipelineOutcome:
        run = self._run
        started = time.monotonic()
        total_dimensions = len(self._states)

        with correlation_scope(session_id=run.session.id):
            self._logger.info(
                "pipeline_started",
                mode=run.settings.mode,
                tier_count=len(self._tiers),
                dimension_count=total_dimensions,
                concurrency=run.settings.concurrency,
            )
            self._checkpoints = await run.checkpoint_store.load_all(run.run_root)
            if self._checkpoints:
                self._logger.info("checkpoints_loaded", dimensions=sorted(self._checkpoints))

            if run.settings.parallel:
                results = await self._scheduler.execute(
                    self.execute_dimension,
                    concurrency=run.settings.concurrency,
                    should_abort=self._should_abort,
                    on_tier_complete=self._on_tier_complete,
                )
            else:
                results = await self._execute_serial()

            aborted = not self.session_valid() or len(results) < total_dimensions
            if any(result.error == SESSION_SUPERSEDED_ERROR for result in results.values()):
                aborted = True

            artifacts = ArtifactOutcome()
            if run.artifact_writer is not None:
                artifacts = await emit_artifacts(
                    (run.catalog.get(dim_id) for tier in self._tiers for dim_id in tier),
                    self._reports,
                    run.artifact_writer,
                    progress=run.progress,
                    session_valid=self.session_valid,
                    logger=self._logger,
                )

            duration_ms = int((time.monotonic() - started) * 1000)
            report = build_run_report(
                project=run.project,
                catalog=run.catalog,
                results=results,
                duration_ms=duration_ms,
                mode=run.settings.mode,
                restored=tuple(self._restored),
                artifacts=artifacts,
                aborted=aborted,
            )
            report_path = write_run_report(run.run_root, report, logger=self._logger)

            if aborted:
                self._logger.warning(
                    "pipeline_aborted", completed=len(results), dimension_count=total_dimensions
                )
            else:
                await run.checkpoint_store.clear_all(run.run_root)

            self._emit_progress(
                "pipeline:complete",
                {
                    "sessionId": run.session.id,
                    "aborted": aborted,
                    "durationMs": duration_ms,
                    "totals": report["totals"],
                },
            )
            self._logger.info(
                "pipeline_completed",
                aborted=aborted,
                duration_ms=duration_ms,
                errors=report["totals"]["errors"],
            )

        return PipelineOutcome(
            results=MappingProxyType(dict(results)),
            report=report,
            artifacts=artifacts,
            aborted=aborted,
            restored=tuple(self._restored),
            states=MappingProxyType(dict(self._states)),
            report_path=report_path,
        )

    async def execute_dimension(self, dim_id: str) -> DimensionResult:
        """Run one dimension to a terminal state; never raises ``Exception``."""

        tier_index = self._scheduler.get_tier_index(dim_id)
        with correlation_scope(dim_id=dim_id, tier=tier_index + 1):
            started = time.monotonic()
            try:
                return await self._execute_dimension(dim_id, started)
            except Exception as exc:  # noqa: BLE001 - dimension isolation boundary.
                return self._fail(dim_id, FailureKind.UNCAUGHT, exc, started)

    async def _execute_dimension(self, dim_id: str, started: float) -> DimensionResult:
        run = self._run
        dimension = run.catalog.get(dim_id)

        checkpoint = self._checkpoints.get(dim_id)
        if checkpoint is not None:
            return self._restore(checkpoint)

        if not self.session_valid():
            self._states[dim_id] = DimensionState.ABANDONED
            self._logger.info("dimension_abandoned", dim_id=dim_id, kind=SESSION_SUPERSEDED_ERROR)
            return DimensionResult.failure(SESSION_SUPERSEDED_ERROR)

        self._call_progress("mark_filling", dim_id)
        self._states[dim_id] = DimensionState.EXPLORING
        try:
            report = await run_with_timeout(
                run.explorer.analyze(
                    dimension,
                    run.project,
                    session_id=run.session.id,
                    dimension_context=self._context,
                ),
                run.settings.explore_timeout_seconds,
                label=f"explore {dim_id}",
            )
        except TimeoutError as exc:
            return self._fail(dim_id, FailureKind.EXPLORER_TIMEOUT, exc, started)
        except Exception as exc:  # noqa: BLE001 - explorer failures are per-dimension data.
            return self._fail(dim_id, FailureKind.EXPLORER_ERROR, exc, started)
        self._reports[dim_id] = report

        format_result = await self._format(dimension, report)

        self._states[dim_id] = DimensionState.DIGESTING
        digest = self._digest(dim_id, report, format_result)
        self._context.add_dimension_digest(dim_id, digest)

        result = DimensionResult(
            candidate_count=format_result.candidate_count,
            rejected_count=format_result.rejected_count,
            analysis_chars=len(report.analysis_text),
            referenced_files=len(report.referenced_files),
            duration_ms=_elapsed_ms(started),
            tool_call_count=report.metadata.tool_call_count + len(format_result.tool_calls),
            token_usage=report.metadata.token_usage + format_result.token_usage,
        )

        self._states[dim_id] = DimensionState.CHECKPOINTED
        await run.checkpoint_store.save(run.run_root, run.session.id, dim_id, result, digest)
        self._states[dim_id] = DimensionState.COMPLETE

        self._call_progress(
            "mark_completed",
            dim_id,
            {
                "type": "skill" if dimension.output_type is OutputType.SKILL else "candidate",
                "extracted": result.candidate_count,
                "created": result.candidate_count,
                "durationMs": result.duration_ms,
                "toolCallCount": result.tool_call_count,
            },
        )
        self._logger.info(
            "dimension_completed",
            dim_id=dim_id,
            candidates=result.candidate_count,
            analysis_chars=result.analysis_chars,
            duration_ms=result.duration_ms,
        )
        return result

    async def _format(self, dimension: Dimension, report: ExploreReport) -> FormatResult:
        run = self._run
        if not dimension.requires_items:
            return FormatResult()
        if len(report.analysis_text) < run.settings.min_analysis_chars:
            self._logger.info(
                "format_skipped_short_analysis",
                dim_id=dimension.id,
                analysis_chars=len(report.analysis_text),
            )
            return FormatResult()

        self._states[dimension.id] = DimensionState.FORMATTING
        try:
            result = await run_with_timeout(
                run.formatter.produce(report, dimension, run.project, session_id=run.session.id),
                run.settings.format_timeout_seconds,
                label=f"format {dimension.id}",
            )
        except TimeoutError as exc:
            self._log_phase_failure(dimension.id, FailureKind.FORMATTER_TIMEOUT, exc)
            return FormatResult()
        except Exception as exc:  # noqa: BLE001 - explore output is kept when formatting fails.
            self._log_phase_failure(dimension.id, FailureKind.FORMATTER_ERROR, exc)
            return FormatResult()

        for call in result.tool_calls:
            if call.tool not in SUBMIT_TOOL_NAMES:
                continue
            params = call.params
            self._context.add_submitted_item(
                dimension.id,
                SubmittedItem(
                    dim_id=dimension.id,
                    title=str(params.get("title") or ""),
                    sub_topic=str(params.get("category") or ""),
                    summary=str(params.get("summary") or ""),
                ),
            )
        return result

    def _digest(
        self, dim_id: str, report: ExploreReport, format_result: FormatResult
    ) -> DimensionDigest:
        digest: DimensionDigest | None = None
        if format_result.reply:
            try:
                digest = self._run.digest_parser(format_result.reply)
            except Exception as exc:  # noqa: BLE001 - an unparseable reply falls back to the analysis.
                self._logger.warning(
                    "digest_parse_failed", dim_id=dim_id, error=str(exc) or type(exc).__name__
                )
        if digest is not None:
            return digest
        return DimensionDigest.fallback(
            report.analysis_text,
            candidate_count=format_result.candidate_count,
            summary_chars=self._run.settings.digest_summary_chars,
        )

    def _restore(self, checkpoint: Checkpoint) -> DimensionResult:
        dim_id = checkpoint.dim_id
        if checkpoint.digest is not None:
            self._context.add_dimension_digest(
                dim_id, checkpoint.digest, completed_at_ms=checkpoint.completed_at_ms
            )
        self._restored.append(dim_id)
        self._states[dim_id] = DimensionState.RESTORED
        self._call_progress(
            "mark_completed", dim_id, {"type": "checkpoint-restored", **checkpoint.to_dict()}
        )
        self._logger.info(
            "dimension_restored",
            dim_id=dim_id,
            candidates=checkpoint.result.candidate_count,
            checkpoint_session=checkpoint.session_id,
        )
        return checkpoint.result.restored()

    def _fail(
        self, dim_id: str, kind: FailureKind, exc: BaseException, started: float
    ) -> DimensionResult:
        message = str(exc) or type(exc).__name__
        self._states[dim_id] = DimensionState.ERROR
        self._logger.error("dimension_failed", dim_id=dim_id, kind=kind.value, error=message)
        self._call_progress(
            "mark_completed", dim_id, {"type": "error", "kind": kind.value, "error": message}
        )
        return DimensionResult.failure(message, duration_ms=_elapsed_ms(started))

    def _log_phase_failure(self, dim_id: str, kind: FailureKind, exc: BaseException) -> None:
        self._logger.warning(
            "dimension_phase_failed",
            dim_id=dim_id,
            kind=kind.value,
            error=str(exc) or type(exc).__name__,
        )

    async def _execute_serial(self) -> dict[str, DimensionResult]:
        results: dict[str, DimensionResult] = {}
        for tier_index, tier in enumerate(self._scheduler.get_tiers()):
            if self._should_abort():
                self._logger.warning("serial_run_aborted", before_tier=tier_index + 1)
                break
            tier_results: dict[str, DimensionResult] = {}
            for dim_id in tier:
                if self._should_abort():
                    break
                tier_results[dim_id] = await self.execute_dimension(dim_id)
            results.update(tier_results)
            self._on_tier_complete(tier_index, tier_results)
        return results

    def _should_abort(self) -> bool:
        return not self.session_valid()

    def _on_tier_complete(self, tier_index: int, tier_results: Mapping[str, DimensionResult]) -> None:
        failed = sorted(dim_id for dim_id, result in tier_results.items() if result.failed)
        self._emit_progress(
            "pipeline:tier-complete",
            {
                "tier": tier_index + 1,
                "totalTiers": len(self._tiers),
                "dimensions": list(tier_results),
                "failed": failed,
            },
        )
        self._logger.info(
            "tier_completed", tier=tier_index + 1, completed=len(tier_results), failed=len(failed)
        )

    def _emit_progress(self, event: str, data: Mapping[str, Any]) -> None:
        self._call_progress("emit_progress", event, data)

    def _call_progress(self, method: str, *args: Any) -> None:
        progress = self._run.progress
        if progress is None:
            return
        callback: Callable[..., object] = getattr(progress, method)
        try:
            callback(*args)
        except Exception as exc:  # noqa: BLE001 - progress sinks must not break the run.
            self._logger.warning("progress_sink_failed", method=method, error=str(exc))


async def run_pipeline(run_context: RunContext, *, logger: Any | None = None) -> PipelineOutcome:
    """Execute one bootstrap run end to end."""
    return await PipelineOrchestrator(run_context, logger=logger).run()


def _elapsed_ms(started: float) -> int:
    return max(0, int((time.monotonic() - started) * 1000))


__all__ = [
    "DimensionState",
    "PipelineOrchestrator",
    "PipelineOutcome",
    "PipelineSettings",
    "RunContext",
    "build_run_context",
    "run_pipeline",
]
