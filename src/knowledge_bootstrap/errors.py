"""Exception hierarchy for infrastructural failures.

Per-dimension failures never surface as exceptions past the tier executor;
they are recorded as ``DimensionResult.error`` text. The types here are the
ones that may legitimately abort a whole run or a CLI command.
"""

from __future__ import annotations


class KnowledgeBootstrapError(Exception):
    """Base class for knowledge-bootstrap errors."""


class CatalogError(KnowledgeBootstrapError, ValueError):
    """Raised when the dimension catalog or tier layout is missing or invalid."""


class CheckpointCorruptError(KnowledgeBootstrapError, ValueError):
    """Raised by checkpoint decoding; stores treat it as a cache miss."""


class ArtifactEmissionError(KnowledgeBootstrapError):
    """Raised when the artifact writer rejects or fails a derived artifact."""

    def __init__(self, dim_id: str, message: str) -> None:
        self.dim_id = dim_id
        super().__init__(f"artifact emission failed for {dim_id!r}: {message}")


__all__ = [
    "ArtifactEmissionError",
    "CatalogError",
    "CheckpointCorruptError",
    "KnowledgeBootstrapError",
]
