"""Stable constants shared across the bootstrap pipeline."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
CHECKPOINT_SCHEMA_VERSION: Final[int] = 1
REPORT_VERSION: Final[str] = "2.7.0"

# Default runtime paths (relative to the run root unless overridden by config).
STATE_DIR: Final[PurePosixPath] = PurePosixPath(".autosnippet")
CHECKPOINT_DIR: Final[PurePosixPath] = STATE_DIR / "bootstrap-checkpoint"
CHECKPOINT_DB: Final[PurePosixPath] = STATE_DIR / "bootstrap-checkpoint.sqlite"
REPORT_FILENAME: Final[str] = "bootstrap-report.json"

# Pipeline tuning defaults.
DEFAULT_CONCURRENCY: Final[int] = 3
CHECKPOINT_TTL_SECONDS: Final[float] = 3600.0
EXPLORE_TIMEOUT_SECONDS: Final[float] = 180.0
FORMAT_TIMEOUT_SECONDS: Final[float] = 120.0
MIN_ANALYSIS_CHARS: Final[int] = 100
DIGEST_SUMMARY_CHARS: Final[int] = 200

# Formatter tool names that record an accepted knowledge item.
SUBMIT_TOOL_NAMES: Final[frozenset[str]] = frozenset({"submit_candidate", "submit_with_check"})

ARTIFACT_CREATED_BY: Final[str] = "bootstrap-pipeline"

__all__ = [
    "ARTIFACT_CREATED_BY",
    "CHECKPOINT_DB",
    "CHECKPOINT_DIR",
    "CHECKPOINT_SCHEMA_VERSION",
    "CHECKPOINT_TTL_SECONDS",
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_CONCURRENCY",
    "DIGEST_SUMMARY_CHARS",
    "EXPLORE_TIMEOUT_SECONDS",
    "FORMAT_TIMEOUT_SECONDS",
    "MIN_ANALYSIS_CHARS",
    "REPORT_FILENAME",
    "REPORT_VERSION",
    "STATE_DIR",
    "SUBMIT_TOOL_NAMES",
]
