"""Derived-artifact emission for skill and dual dimensions."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

from knowledge_bootstrap.constants import ARTIFACT_CREATED_BY
from knowledge_bootstrap.domain.models import ArtifactDocument, OutputType
from knowledge_bootstrap.errors import ArtifactEmissionError

if TYPE_CHECKING:
    from knowledge_bootstrap.domain.models import Dimension, ExploreReport
    from knowledge_bootstrap.pipeline.ports import ArtifactWriter, ProgressSink


@dataclass(slots=True)
class ArtifactOutcome:
    created: int = 0
    failed: int = 0
    names: list[str] = field(default_factory=list)
    errors: list[ArtifactEmissionError] = field(default_factory=list)
    stopped_early: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "created": self.created,
            "failed": self.failed,
            "errors": [{"dimId": error.dim_id, "error": str(error)} for error in self.errors],
        }


def build_artifact_document(dimension: Dimension, report: ExploreReport) -> ArtifactDocument:
    """Assemble the markdown document for one dimension's analysis."""

    title = dimension.label or dimension.id
    files = report.referenced_files
    parts = [
        f"# {title}",
        "",
        f"> Auto-generated by {ARTIFACT_CREATED_BY}. Sources: {len(files)} files analyzed.",
        "",
        report.analysis_text,
    ]
    if files:
        parts.extend(["", "## Referenced Files", "", *(f"- `{path}`" for path in files)])
    content = "\n".join(_drop_blank_runs(parts))
    return ArtifactDocument(
        name=dimension.artifact_name,
        description=dimension.artifact_description,
        content=content,
        overwrite=True,
        created_by=ARTIFACT_CREATED_BY,
    )


async def emit_artifacts(
    dimensions: Iterable[Dimension],
    reports: Mapping[str, ExploreReport],
    writer: ArtifactWriter,
    *,
    progress: ProgressSink | None = None,
    session_valid: Callable[[], bool] | None = None,
    logger: Any | None = None,
) -> ArtifactOutcome:
    """Hand one document per artifact-producing dimension to ``writer``.

    Each emission is isolated: a failure is recorded and the next dimension
    still runs. Emission stops when ``session_valid`` turns false.
    """

    log = logger if logger is not None else structlog.get_logger(__name__)
    outcome = ArtifactOutcome()
    for dimension in dimensions:
        if not dimension.produces_artifact:
            continue
        report = reports.get(dimension.id)
        if report is None or not report.analysis_text:
            continue
        if session_valid is not None and not session_valid():
            outcome.stopped_early = True
            log.warning("artifact_emission_stopped", before_dim=dimension.id)
            break

        document = build_artifact_document(dimension, report)
        try:
            result = await writer.create(document)
            if not result.success:
                raise ArtifactEmissionError(dimension.id, result.error or "writer reported failure")
        except ArtifactEmissionError as exc:
            _record_failure(outcome, dimension.id, exc, progress, log)
            continue
        except Exception as exc:  # noqa: BLE001 - artifact emission is isolated per dimension.
            error = ArtifactEmissionError(dimension.id, str(exc) or type(exc).__name__)
            error.__cause__ = exc
            _record_failure(outcome, dimension.id, error, progress, log)
            continue

        outcome.created += 1
        outcome.names.append(document.name)
        log.info("artifact_created", dim_id=dimension.id, artifact=document.name)
        if dimension.output_type is OutputType.SKILL:
            _notify(
                progress,
                log,
                "mark_completed",
                dimension.id,
                {
                    "type": "skill",
                    "skillName": document.name,
                    "sourceCount": len(report.referenced_files),
                },
            )
    return outcome


def _record_failure(
    outcome: ArtifactOutcome,
    dim_id: str,
    error: ArtifactEmissionError,
    progress: ProgressSink | None,
    log: Any,
) -> None:
    outcome.failed += 1
    outcome.errors.append(error)
    log.warning("artifact_emission_failed", dim_id=dim_id, error=str(error))
    _notify(progress, log, "mark_failed", dim_id, error)


def _notify(progress: ProgressSink | None, log: Any, method: str, *args: Any) -> None:
    if progress is None:
        return
    try:
        getattr(progress, method)(*args)
    except Exception as exc:  # noqa: BLE001 - progress sinks must not break emission.
        log.warning("progress_sink_failed", method=method, error=str(exc))


def _drop_blank_runs(parts: list[str]) -> Iterable[str]:
    previous_blank = False
    for part in parts:
        blank = not part.strip()
        if blank and previous_blank:
            continue
        previous_blank = blank
        yield part


__all__ = ["ArtifactOutcome", "build_artifact_document", "emit_artifacts"]
