"""Collaborator protocols consumed by the bootstrap pipeline.

Explorer and Formatter are the agent-backed phases; both may raise. The
pipeline never inspects how analysis text or items are produced.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any, Protocol, TypeAlias

if TYPE_CHECKING:
    from knowledge_bootstrap.domain.models import (
        ArtifactDocument,
        ArtifactWriteResult,
        Dimension,
        DimensionDigest,
        ExploreReport,
        FormatResult,
        ProjectSnapshot,
    )
    from knowledge_bootstrap.pipeline.context import DimensionContext


class Explorer(Protocol):
    """Open-ended analysis phase for one dimension."""

    async def analyze(
        self,
        dimension: Dimension,
        project: ProjectSnapshot,
        *,
        session_id: str,
        dimension_context: DimensionContext,
    ) -> ExploreReport: ...


class Formatter(Protocol):
    """Structured-output phase that turns analysis text into accepted items."""

    async def produce(
        self,
        report: ExploreReport,
        dimension: Dimension,
        project: ProjectSnapshot,
        *,
        session_id: str,
    ) -> FormatResult: ...


class ArtifactWriter(Protocol):
    async def create(self, document: ArtifactDocument) -> ArtifactWriteResult: ...


class ProgressSink(Protocol):
    """Observability and session-validity hooks for one run."""

    def mark_filling(self, dim_id: str) -> None: ...

    def mark_completed(self, dim_id: str, payload: Mapping[str, Any]) -> None: ...

    def mark_failed(self, dim_id: str, error: BaseException) -> None: ...

    def is_session_valid(self, session_id: str) -> bool: ...

    def emit_progress(self, event: str, data: Mapping[str, Any]) -> None: ...


DigestParser: TypeAlias = "Callable[[str], DimensionDigest | None]"


__all__ = [
    "ArtifactWriter",
    "DigestParser",
    "Explorer",
    "Formatter",
    "ProgressSink",
]
