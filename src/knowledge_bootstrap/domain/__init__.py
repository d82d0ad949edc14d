"""Domain types shared by the scheduler, orchestrator and stores.

The domain layer performs no IO.
"""

from __future__ import annotations

from knowledge_bootstrap.domain.models import (
    SESSION_SUPERSEDED_ERROR,
    ArtifactDocument,
    ArtifactWriteResult,
    Checkpoint,
    Dimension,
    DimensionDigest,
    DimensionResult,
    ExploreMetadata,
    ExploreReport,
    FailureKind,
    FormatResult,
    OutputType,
    ProjectSnapshot,
    SkillMeta,
    SubmittedItem,
    TokenUsage,
    ToolCall,
)
from knowledge_bootstrap.domain.session import RunSession, SessionRegistry

__all__ = [
    "ArtifactDocument",
    "ArtifactWriteResult",
    "Checkpoint",
    "Dimension",
    "DimensionDigest",
    "DimensionResult",
    "ExploreMetadata",
    "ExploreReport",
    "FailureKind",
    "FormatResult",
    "OutputType",
    "ProjectSnapshot",
    "RunSession",
    "SESSION_SUPERSEDED_ERROR",
    "SessionRegistry",
    "SkillMeta",
    "SubmittedItem",
    "TokenUsage",
    "ToolCall",
]
