"""Frozen dataclass domain models with strict validation and canonical serialization.

Serialized shapes use camelCase keys so checkpoints and run reports stay
readable by the dashboard that consumes ``.autosnippet/`` state.
"""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Any, NoReturn

from knowledge_bootstrap.domain.ids import validate_dimension_id

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

_MAX_TEXT = 8192


class OutputType(StrEnum):
    CANDIDATE = "candidate"
    SKILL = "skill"
    DUAL = "dual"

    @property
    def requires_items(self) -> bool:
        """Whether the Format phase runs for this output type."""
        match self:
            case OutputType.CANDIDATE | OutputType.DUAL:
                return True
            case OutputType.SKILL:
                return False

    @property
    def produces_artifact(self) -> bool:
        match self:
            case OutputType.SKILL | OutputType.DUAL:
                return True
            case OutputType.CANDIDATE:
                return False


class FailureKind(StrEnum):
    EXPLORER_TIMEOUT = "explorer-timeout"
    EXPLORER_ERROR = "explorer-error"
    FORMATTER_TIMEOUT = "formatter-timeout"
    FORMATTER_ERROR = "formatter-error"
    SESSION_SUPERSEDED = "session-superseded"
    NOT_CONFIGURED = "not-configured"
    UNCAUGHT = "uncaught"


SESSION_SUPERSEDED_ERROR = FailureKind.SESSION_SUPERSEDED.value


@dataclass(frozen=True, slots=True)
class SkillMeta:
    name: str
    description: str

    def __post_init__(self) -> None:
        _as_str(self.name, "SkillMeta.name")

    def to_dict(self) -> dict[str, JSONValue]:
        return {"name": self.name, "description": self.description}


@dataclass(frozen=True, slots=True)
class Dimension:
    """Static configuration for one unit of analysis work."""

    id: str
    label: str
    guide: str
    output_type: OutputType
    focus_areas: tuple[str, ...] = ()
    allowed_knowledge_types: frozenset[str] = frozenset()
    skill_meta: SkillMeta | None = None

    def __post_init__(self) -> None:
        validate_dimension_id(self.id)
        if not isinstance(self.output_type, OutputType):
            _fail(f"Dimension[{self.id}].output_type", "expected OutputType")

    @property
    def requires_items(self) -> bool:
        return self.output_type.requires_items

    @property
    def produces_artifact(self) -> bool:
        return self.skill_meta is not None or self.output_type.produces_artifact

    @property
    def artifact_name(self) -> str:
        if self.skill_meta is not None:
            return self.skill_meta.name
        return f"project-{self.id}"

    @property
    def artifact_description(self) -> str:
        if self.skill_meta is not None and self.skill_meta.description:
            return self.skill_meta.description
        return f"Auto-generated skill for {self.label or self.id}"

    def to_dict(self) -> dict[str, JSONValue]:
        payload: dict[str, JSONValue] = {
            "id": self.id,
            "label": self.label,
            "guide": self.guide,
            "outputType": self.output_type.value,
            "focusAreas": list(self.focus_areas),
            "allowedKnowledgeTypes": sorted(self.allowed_knowledge_types),
        }
        if self.skill_meta is not None:
            payload["skillMeta"] = self.skill_meta.to_dict()
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Dimension:
        path = f"Dimension[{data.get('id', '?')}]"
        raw_type = _pick(data, "output_type", "outputType", default="candidate")
        try:
            output_type = OutputType(str(raw_type))
        except ValueError:
            allowed = ", ".join(item.value for item in OutputType)
            _fail(f"{path}.output_type", f"invalid value {raw_type!r}; expected one of: {allowed}")

        skill_meta_raw = _pick(data, "skill_meta", "skillMeta", default=None)
        skill_meta: SkillMeta | None = None
        if isinstance(skill_meta_raw, Mapping):
            skill_meta = SkillMeta(
                name=_as_str(skill_meta_raw.get("name"), f"{path}.skill_meta.name"),
                description=str(skill_meta_raw.get("description") or ""),
            )
        elif skill_meta_raw is not None:
            _fail(f"{path}.skill_meta", "expected object")

        return cls(
            id=_as_str(data.get("id"), f"{path}.id"),
            label=str(data.get("label") or ""),
            guide=str(data.get("guide") or ""),
            output_type=output_type,
            focus_areas=_as_str_tuple(
                _pick(data, "focus_areas", "focusAreas", default=()), f"{path}.focus_areas"
            ),
            allowed_knowledge_types=frozenset(
                _as_str_tuple(
                    _pick(data, "allowed_knowledge_types", "allowedKnowledgeTypes", default=()),
                    f"{path}.allowed_knowledge_types",
                )
            ),
            skill_meta=skill_meta,
        )


@dataclass(frozen=True, slots=True)
class TokenUsage:
    input: int = 0
    output: int = 0

    def __post_init__(self) -> None:
        _as_count(self.input, "TokenUsage.input")
        _as_count(self.output, "TokenUsage.output")

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(input=self.input + other.input, output=self.output + other.output)

    @property
    def total(self) -> int:
        return self.input + self.output

    def to_dict(self) -> dict[str, JSONValue]:
        return {"input": self.input, "output": self.output}

    @classmethod
    def from_dict(cls, data: object) -> TokenUsage:
        if data is None:
            return cls()
        if not isinstance(data, Mapping):
            _fail("TokenUsage", f"expected object, got {type(data).__name__}")
        return cls(
            input=_count_field(data, "input", "TokenUsage"),
            output=_count_field(data, "output", "TokenUsage"),
        )


@dataclass(frozen=True, slots=True)
class DimensionDigest:
    """Compact structured summary of one dimension's findings."""

    summary: str = ""
    candidate_count: int = 0
    key_findings: tuple[str, ...] = ()
    cross_refs: Mapping[str, str] = field(default_factory=dict)
    gaps: tuple[str, ...] = ()
    candidate_titles: tuple[str, ...] = ()
    remaining_tasks: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        _as_count(self.candidate_count, "DimensionDigest.candidate_count")

    @classmethod
    def fallback(
        cls, analysis_text: str, *, candidate_count: int, summary_chars: int
    ) -> DimensionDigest:
        """Digest synthesized from raw analysis text when no structured digest was parsed."""
        return cls(
            summary=f"{analysis_text[:summary_chars]}...",
            candidate_count=candidate_count,
        )

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "summary": self.summary,
            "candidateCount": self.candidate_count,
            "keyFindings": list(self.key_findings),
            "crossRefs": {str(key): str(value) for key, value in sorted(self.cross_refs.items())},
            "gaps": list(self.gaps),
            "candidateTitles": list(self.candidate_titles),
            "remainingTasks": list(self.remaining_tasks),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> DimensionDigest:
        if not isinstance(data, Mapping):
            _fail("DimensionDigest", f"expected object, got {type(data).__name__}")
        cross_refs_raw = data.get("crossRefs") or {}
        if not isinstance(cross_refs_raw, Mapping):
            _fail("DimensionDigest.crossRefs", "expected object")
        return cls(
            summary=str(data.get("summary") or ""),
            candidate_count=_count_field(data, "candidateCount", "DimensionDigest"),
            key_findings=_as_str_tuple(data.get("keyFindings") or (), "DimensionDigest.keyFindings"),
            cross_refs={str(key): str(value) for key, value in cross_refs_raw.items()},
            gaps=_as_str_tuple(data.get("gaps") or (), "DimensionDigest.gaps"),
            candidate_titles=_as_str_tuple(
                data.get("candidateTitles") or (), "DimensionDigest.candidateTitles"
            ),
            remaining_tasks=_task_signals(data.get("remainingTasks") or ()),
        )


@dataclass(frozen=True, slots=True)
class DimensionResult:
    """Terminal per-dimension outcome of one run."""

    candidate_count: int = 0
    rejected_count: int = 0
    analysis_chars: int = 0
    referenced_files: int = 0
    duration_ms: int = 0
    tool_call_count: int = 0
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    error: str | None = None
    skipped: bool = False
    restored_from_checkpoint: bool = False

    def __post_init__(self) -> None:
        _as_count(self.candidate_count, "DimensionResult.candidate_count")
        _as_count(self.rejected_count, "DimensionResult.rejected_count")
        _as_count(self.analysis_chars, "DimensionResult.analysis_chars")
        _as_count(self.referenced_files, "DimensionResult.referenced_files")
        _as_count(self.duration_ms, "DimensionResult.duration_ms")
        _as_count(self.tool_call_count, "DimensionResult.tool_call_count")

    @classmethod
    def failure(cls, message: str, *, duration_ms: int = 0) -> DimensionResult:
        return cls(candidate_count=0, error=message or "unknown error", duration_ms=duration_ms)

    @property
    def failed(self) -> bool:
        return self.error is not None

    def restored(self) -> DimensionResult:
        return replace(self, error=None, skipped=True, restored_from_checkpoint=True)

    def to_dict(self) -> dict[str, JSONValue]:
        payload: dict[str, JSONValue] = {
            "candidateCount": self.candidate_count,
            "rejectedCount": self.rejected_count,
            "analysisChars": self.analysis_chars,
            "referencedFiles": self.referenced_files,
            "durationMs": self.duration_ms,
            "toolCallCount": self.tool_call_count,
            "tokenUsage": self.token_usage.to_dict(),
        }
        if self.error is not None:
            payload["error"] = self.error
        if self.skipped:
            payload["skipped"] = True
        if self.restored_from_checkpoint:
            payload["restoredFromCheckpoint"] = True
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> DimensionResult:
        error = data.get("error")
        return cls(
            candidate_count=_count_field(data, "candidateCount", "DimensionResult"),
            rejected_count=_count_field(data, "rejectedCount", "DimensionResult"),
            analysis_chars=_count_field(data, "analysisChars", "DimensionResult"),
            referenced_files=_count_field(data, "referencedFiles", "DimensionResult"),
            duration_ms=_count_field(data, "durationMs", "DimensionResult"),
            tool_call_count=_count_field(data, "toolCallCount", "DimensionResult"),
            token_usage=TokenUsage.from_dict(data.get("tokenUsage")),
            error=None if error is None else str(error),
            skipped=bool(data.get("skipped", False)),
            restored_from_checkpoint=bool(data.get("restoredFromCheckpoint", False)),
        )


@dataclass(frozen=True, slots=True)
class Checkpoint:
    """Durable record of one completed dimension, addressed by ``dim_id``."""

    dim_id: str
    session_id: str
    result: DimensionResult
    digest: DimensionDigest | None
    completed_at_ms: int

    def __post_init__(self) -> None:
        validate_dimension_id(self.dim_id)
        _as_count(self.completed_at_ms, "Checkpoint.completed_at_ms")

    def age_ms(self, now_ms: int) -> int:
        return now_ms - self.completed_at_ms

    def is_fresh(self, now_ms: int, ttl_ms: int) -> bool:
        return self.age_ms(now_ms) < ttl_ms

    def to_dict(self) -> dict[str, JSONValue]:
        payload: dict[str, JSONValue] = {"dimId": self.dim_id, "sessionId": self.session_id}
        payload.update(self.result.to_dict())
        payload["digest"] = None if self.digest is None else self.digest.to_dict()
        payload["completedAt"] = self.completed_at_ms
        return payload

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Checkpoint:
        if not isinstance(data, Mapping):
            _fail("Checkpoint", f"expected object, got {type(data).__name__}")
        completed_at = data.get("completedAt")
        if isinstance(completed_at, bool) or not isinstance(completed_at, (int, float)):
            _fail("Checkpoint.completedAt", "expected epoch milliseconds")
        digest_raw = data.get("digest")
        return cls(
            dim_id=_as_str(data.get("dimId"), "Checkpoint.dimId"),
            session_id=str(data.get("sessionId") or ""),
            result=DimensionResult.from_dict(data),
            digest=None if digest_raw is None else DimensionDigest.from_dict(digest_raw),
            completed_at_ms=int(completed_at),
        )


@dataclass(frozen=True, slots=True)
class ToolCall:
    tool: str
    params: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ExploreMetadata:
    tool_call_count: int = 0
    token_usage: TokenUsage = field(default_factory=TokenUsage)


@dataclass(frozen=True, slots=True)
class ExploreReport:
    """Output of the Explore phase."""

    analysis_text: str
    referenced_files: tuple[str, ...] = ()
    metadata: ExploreMetadata = field(default_factory=ExploreMetadata)


@dataclass(frozen=True, slots=True)
class FormatResult:
    """Output of the Format phase."""

    candidate_count: int = 0
    rejected_count: int = 0
    tool_calls: tuple[ToolCall, ...] = ()
    reply: str = ""
    token_usage: TokenUsage = field(default_factory=TokenUsage)

    def __post_init__(self) -> None:
        _as_count(self.candidate_count, "FormatResult.candidate_count")
        _as_count(self.rejected_count, "FormatResult.rejected_count")


@dataclass(frozen=True, slots=True)
class SubmittedItem:
    dim_id: str
    title: str = ""
    sub_topic: str = ""
    summary: str = ""

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "dimId": self.dim_id,
            "title": self.title,
            "subTopic": self.sub_topic,
            "summary": self.summary,
        }


@dataclass(frozen=True, slots=True)
class ProjectSnapshot:
    """Immutable project facts captured before any dimension runs."""

    name: str
    primary_language: str = "unknown"
    file_count: int = 0
    module_count: int = 0
    modules: tuple[str, ...] = ()
    dependency_graph: Mapping[str, Any] | None = None
    code_metrics: Mapping[str, Any] | None = None
    audit_summary: Mapping[str, Any] | None = None

    def __post_init__(self) -> None:
        _as_str(self.name, "ProjectSnapshot.name")
        _as_count(self.file_count, "ProjectSnapshot.file_count")
        _as_count(self.module_count, "ProjectSnapshot.module_count")

    def to_dict(self) -> dict[str, Any]:
        return {
            "projectName": self.name,
            "primaryLang": self.primary_language,
            "fileCount": self.file_count,
            "targetCount": self.module_count,
            "modules": list(self.modules),
            "depGraph": self.dependency_graph,
            "astMetrics": self.code_metrics,
            "guardSummary": self.audit_summary,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ProjectSnapshot:
        modules = tuple(str(item) for item in data.get("modules") or ())
        return cls(
            name=str(data.get("projectName") or ""),
            primary_language=str(data.get("primaryLang") or "unknown"),
            file_count=int(data.get("fileCount") or 0),
            module_count=int(data.get("targetCount") or len(modules)),
            modules=modules,
            dependency_graph=data.get("depGraph"),
            code_metrics=data.get("astMetrics"),
            audit_summary=data.get("guardSummary"),
        )


@dataclass(frozen=True, slots=True)
class ArtifactDocument:
    """Derived artifact handed to the artifact writer."""

    name: str
    description: str
    content: str
    overwrite: bool = True
    created_by: str = "bootstrap-pipeline"

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "name": self.name,
            "description": self.description,
            "content": self.content,
            "overwrite": self.overwrite,
            "createdBy": self.created_by,
        }


@dataclass(frozen=True, slots=True)
class ArtifactWriteResult:
    success: bool
    error: str | None = None


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _pick(data: Mapping[str, object], *keys: str, default: object) -> object:
    for key in keys:
        if key in data:
            return data[key]
    return default


def _as_str(value: object, path: str, *, max_len: int = _MAX_TEXT) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    normalized = value.strip()
    if not normalized:
        _fail(path, "must not be empty")
    if len(normalized) > max_len:
        _fail(path, f"must be <= {max_len} characters")
    return normalized


def _as_count(value: object, path: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if value < 0:
        _fail(path, "must be >= 0")
    return value


def _count_field(data: Mapping[str, object], key: str, owner: str) -> int:
    raw = data.get(key)
    if raw is None:
        return 0
    if isinstance(raw, float) and raw.is_integer():
        raw = int(raw)
    return _as_count(raw, f"{owner}.{key}")


def _as_str_tuple(value: object, path: str) -> tuple[str, ...]:
    if isinstance(value, str) or not isinstance(value, Sequence):
        _fail(path, f"expected list of strings, got {type(value).__name__}")
    return tuple(str(item) for item in value)


def _task_signals(value: object) -> tuple[str, ...]:
    if isinstance(value, str) or not isinstance(value, Sequence):
        return ()
    signals: list[str] = []
    for item in value:
        if isinstance(item, Mapping):
            signals.append(str(item.get("signal") or ""))
        else:
            signals.append(str(item))
    return tuple(signal for signal in signals if signal)


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
    "JSONValue",
    "OutputType",
    "ProjectSnapshot",
    "SESSION_SUPERSEDED_ERROR",
    "SkillMeta",
    "SubmittedItem",
    "TokenUsage",
    "ToolCall",
]
