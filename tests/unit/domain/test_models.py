"""Unit tests for domain models and their canonical serialization."""

from __future__ import annotations

import pytest

from knowledge_bootstrap.domain.ids import (
    generate_session_id,
    validate_dimension_id,
    validate_session_id,
)
from knowledge_bootstrap.domain.models import (
    Checkpoint,
    Dimension,
    DimensionDigest,
    DimensionResult,
    FormatResult,
    OutputType,
    ProjectSnapshot,
    SkillMeta,
    TokenUsage,
)


@pytest.mark.parametrize(
    ("output_type", "requires_items", "produces_artifact"),
    [
        (OutputType.CANDIDATE, True, False),
        (OutputType.SKILL, False, True),
        (OutputType.DUAL, True, True),
    ],
)
def test_output_type_flags(
    output_type: OutputType, requires_items: bool, produces_artifact: bool
) -> None:
    assert output_type.requires_items is requires_items
    assert output_type.produces_artifact is produces_artifact


def test_skill_meta_forces_artifact_and_names_it() -> None:
    dimension = Dimension(
        id="code-pattern",
        label="Code Patterns",
        guide="g",
        output_type=OutputType.CANDIDATE,
        skill_meta=SkillMeta(name="project-patterns", description="Patterns skill"),
    )
    assert dimension.produces_artifact
    assert dimension.artifact_name == "project-patterns"
    assert dimension.artifact_description == "Patterns skill"


def test_default_artifact_naming() -> None:
    dimension = Dimension(id="agent-guidelines", label="", guide="", output_type=OutputType.SKILL)
    assert dimension.artifact_name == "project-agent-guidelines"
    assert dimension.artifact_description == "Auto-generated skill for agent-guidelines"


def test_dimension_from_dict_accepts_camel_case_and_rejects_unknown_type() -> None:
    dimension = Dimension.from_dict(
        {"id": "A", "label": "A", "outputType": "dual", "focusAreas": ["x", "y"]}
    )
    assert dimension.output_type is OutputType.DUAL
    assert dimension.focus_areas == ("x", "y")

    with pytest.raises(ValueError, match="output_type"):
        Dimension.from_dict({"id": "A", "outputType": "poem"})


@pytest.mark.parametrize("bad_id", ["", "-leading", "has space", "a/b", "x" * 200])
def test_dimension_ids_must_be_filename_safe(bad_id: str) -> None:
    with pytest.raises(ValueError):
        validate_dimension_id(bad_id)


def test_session_ids_round_trip_validation() -> None:
    session_id = generate_session_id()
    validate_session_id(session_id)
    with pytest.raises(ValueError):
        validate_session_id("not a session")


def test_token_usage_adds() -> None:
    total = TokenUsage(10, 4) + TokenUsage(1, 2)
    assert total == TokenUsage(11, 6)
    assert total.total == 17
    assert TokenUsage.from_dict(None) == TokenUsage()


def test_counts_must_be_non_negative() -> None:
    with pytest.raises(ValueError):
        DimensionResult(candidate_count=-1)
    with pytest.raises(ValueError):
        FormatResult(candidate_count=-2)


def test_failure_result_has_zero_candidates() -> None:
    result = DimensionResult.failure("explore blew up", duration_ms=12)
    assert result.failed
    assert result.candidate_count == 0
    assert result.error == "explore blew up"


def test_restored_result_is_flagged_and_clears_error() -> None:
    restored = DimensionResult(candidate_count=4).restored()
    assert restored.restored_from_checkpoint
    assert restored.skipped
    assert restored.candidate_count == 4


def test_digest_fallback_truncates_analysis() -> None:
    digest = DimensionDigest.fallback("a" * 500, candidate_count=3, summary_chars=200)
    assert digest.summary == "a" * 200 + "..."
    assert digest.candidate_count == 3
    assert digest.key_findings == ()
    assert dict(digest.cross_refs) == {}


def test_digest_reduces_remaining_task_objects_to_signals() -> None:
    digest = DimensionDigest.from_dict(
        {
            "summary": "s",
            "candidateCount": 2,
            "remainingTasks": [{"signal": "retry-networking", "reason": "timeout"}, "plain"],
        }
    )
    assert digest.remaining_tasks == ("retry-networking", "plain")


def test_checkpoint_serialization_is_flat_camel_case() -> None:
    checkpoint = Checkpoint(
        dim_id="X",
        session_id="bs-abc",
        result=DimensionResult(candidate_count=4, token_usage=TokenUsage(3, 1)),
        digest=DimensionDigest(summary="sum", candidate_count=4),
        completed_at_ms=1_700_000_000_000,
    )
    payload = checkpoint.to_dict()

    assert payload["dimId"] == "X"
    assert payload["candidateCount"] == 4
    assert payload["completedAt"] == 1_700_000_000_000
    assert payload["tokenUsage"] == {"input": 3, "output": 1}
    assert Checkpoint.from_dict(payload) == checkpoint


def test_checkpoint_requires_completed_at() -> None:
    with pytest.raises(ValueError, match="completedAt"):
        Checkpoint.from_dict({"dimId": "X", "candidateCount": 1})


def test_checkpoint_freshness() -> None:
    checkpoint = Checkpoint(
        dim_id="X",
        session_id="s",
        result=DimensionResult(),
        digest=None,
        completed_at_ms=1_000,
    )
    assert checkpoint.is_fresh(now_ms=1_999, ttl_ms=1_000)
    assert not checkpoint.is_fresh(now_ms=2_000, ttl_ms=1_000)


def test_project_snapshot_uses_report_keys() -> None:
    snapshot = ProjectSnapshot(name="demo", primary_language="swift", file_count=3)
    payload = snapshot.to_dict()
    assert payload["projectName"] == "demo"
    assert payload["primaryLang"] == "swift"
    assert ProjectSnapshot.from_dict(payload) == snapshot
