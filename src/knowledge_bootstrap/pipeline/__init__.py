"""Tiered dimension pipeline: scheduling, checkpoints, context and orchestration."""

from knowledge_bootstrap.pipeline.artifacts import (
    ArtifactOutcome,
    build_artifact_document,
    emit_artifacts,
)
from knowledge_bootstrap.pipeline.checkpoints import (
    CheckpointStore,
    FileCheckpointStore,
    InMemoryCheckpointStore,
    SqliteCheckpointStore,
    checkpoint_store_from_config,
    create_checkpoint_store,
)
from knowledge_bootstrap.pipeline.context import DimensionContext, parse_dimension_digest
from knowledge_bootstrap.pipeline.orchestrator import (
    DimensionState,
    PipelineOrchestrator,
    PipelineOutcome,
    PipelineSettings,
    RunContext,
    build_run_context,
    run_pipeline,
)
from knowledge_bootstrap.pipeline.ports import (
    ArtifactWriter,
    DigestParser,
    Explorer,
    Formatter,
    ProgressSink,
)
from knowledge_bootstrap.pipeline.report import (
    build_run_report,
    read_run_report,
    write_run_report,
)
from knowledge_bootstrap.pipeline.tier_scheduler import TierScheduler

__all__ = [
    "ArtifactOutcome",
    "ArtifactWriter",
    "CheckpointStore",
    "DigestParser",
    "DimensionContext",
    "DimensionState",
    "Explorer",
    "FileCheckpointStore",
    "Formatter",
    "InMemoryCheckpointStore",
    "PipelineOrchestrator",
    "PipelineOutcome",
    "PipelineSettings",
    "ProgressSink",
    "RunContext",
    "SqliteCheckpointStore",
    "TierScheduler",
    "build_artifact_document",
    "build_run_context",
    "build_run_report",
    "checkpoint_store_from_config",
    "create_checkpoint_store",
    "emit_artifacts",
    "parse_dimension_digest",
    "read_run_report",
    "run_pipeline",
    "write_run_report",
]
