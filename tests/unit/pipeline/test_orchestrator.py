"""
knowledge-bootstrap — unit tests for the pipeline orchestrator

File: tests/unit/pipeline/test_orchestrator.py

Purpose
- Validate the per-dimension state machine and run-level bookkeeping.

What this test file should cover
- Explore/Format/Digest/Checkpoint ordering and the failure policy of each phase.
- Checkpoint restore and cooperative session supersession.
- Serial mode, progress events and digest propagation between tiers.
"""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any

import pytest

from knowledge_bootstrap.config import load_config
from knowledge_bootstrap.domain.models import (
    SESSION_SUPERSEDED_ERROR,
    DimensionDigest,
    DimensionResult,
    ExploreReport,
    OutputType,
)
from knowledge_bootstrap.domain.session import SessionRegistry
from knowledge_bootstrap.pipeline.checkpoints import InMemoryCheckpointStore
from knowledge_bootstrap.pipeline.orchestrator import (
    DimensionState,
    PipelineOrchestrator,
    PipelineSettings,
    build_run_context,
    run_pipeline,
)
from knowledge_bootstrap.pipeline.report import read_run_report
from tests.support.fakes import (
    MemoryArtifactWriter,
    RecordingProgress,
    ScriptedExplorer,
    ScriptedFormatter,
    make_catalog,
    make_project,
    make_run_context,
)


async def test_happy_path_runs_every_dimension_and_clears_checkpoints(tmp_path: Path) -> None:
    store = InMemoryCheckpointStore()
    explorer = ScriptedExplorer()
    formatter = ScriptedFormatter({"A": 2, "B": 1, "C": 3})
    run = make_run_context(
        run_root=tmp_path,
        catalog=make_catalog([["A", "B"], ["C"]]),
        explorer=explorer,
        formatter=formatter,
        checkpoint_store=store,
    )

    outcome = await run_pipeline(run)

    assert not outcome.aborted
    assert set(outcome.results) == {"A", "B", "C"}
    assert outcome.results["C"].candidate_count == 3
    assert all(state is DimensionState.COMPLETE for state in outcome.states.values())
    assert outcome.report["totals"]["candidates"] == 6
    assert outcome.report["totals"]["errors"] == 0
    assert await store.load_all(tmp_path) == {}
    assert outcome.report_path is not None
    assert read_run_report(tmp_path) == outcome.report


async def test_later_tiers_see_digests_of_earlier_tiers(tmp_path: Path) -> None:
    explorer = ScriptedExplorer()
    run = make_run_context(
        run_root=tmp_path,
        catalog=make_catalog([["A", "B"], ["C"]]),
        explorer=explorer,
        formatter=ScriptedFormatter(),
    )

    await run_pipeline(run)

    assert explorer.seen_digests["A"] == ()
    assert set(explorer.seen_digests["C"]) == {"A", "B"}


async def test_result_accounting_combines_explore_and_format(tmp_path: Path) -> None:
    orchestrator = PipelineOrchestrator(
        make_run_context(
            run_root=tmp_path,
            catalog=make_catalog([["A"]]),
            explorer=ScriptedExplorer(),
            formatter=ScriptedFormatter({"A": 2}),
        )
    )

    outcome = await orchestrator.run()
    result = outcome.results["A"]

    assert result.tool_call_count == 2 + 2
    assert result.token_usage.input == 110
    assert result.token_usage.output == 45
    assert result.referenced_files == 2
    assert result.analysis_chars > 100
    digest = orchestrator.context.digests["A"]
    assert digest.summary == "digest of A"
    items = orchestrator.context.items_for_dimension("A")
    assert [item.title for item in items] == ["A item 0", "A item 1"]
    assert {item.sub_topic for item in items} == {"pattern"}


async def test_skill_dimension_never_calls_formatter(tmp_path: Path) -> None:
    registry = SessionRegistry()
    progress = RecordingProgress(registry)
    formatter = ScriptedFormatter()
    run = make_run_context(
        run_root=tmp_path,
        catalog=make_catalog([["S", "A"]], {"S": OutputType.SKILL}),
        explorer=ScriptedExplorer(),
        formatter=formatter,
        session=registry.start(),
        progress=progress,
    )

    outcome = await run_pipeline(run)

    assert formatter.calls == ["A"]
    assert outcome.results["S"].candidate_count == 0
    assert not outcome.results["S"].failed
    assert progress.completed_types()["S"] == ["skill"]
    assert progress.completed_types()["A"] == ["candidate"]


async def test_short_analysis_skips_formatter(tmp_path: Path) -> None:
    formatter = ScriptedFormatter()
    run = make_run_context(
        run_root=tmp_path,
        catalog=make_catalog([["A"]]),
        explorer=ScriptedExplorer({"A": ExploreReport(analysis_text="too short")}),
        formatter=formatter,
    )

    outcome = await run_pipeline(run)

    assert formatter.calls == []
    assert outcome.results["A"].candidate_count == 0
    assert outcome.results["A"].analysis_chars == len("too short")


async def test_formatter_timeout_keeps_explore_output_and_counts_zero(tmp_path: Path) -> None:
    orchestrator = PipelineOrchestrator(
        make_run_context(
            run_root=tmp_path,
            catalog=make_catalog([["A"]]),
            explorer=ScriptedExplorer(),
            formatter=ScriptedFormatter({"A": 5}, delay=0.5),
            settings=PipelineSettings(format_timeout_seconds=0.02),
        )
    )

    outcome = await orchestrator.run()
    result = outcome.results["A"]

    assert not result.failed
    assert result.candidate_count == 0
    assert result.analysis_chars > 0
    assert outcome.states["A"] is DimensionState.COMPLETE
    assert orchestrator.context.digests["A"].summary.endswith("...")


async def test_formatter_error_keeps_explore_output_and_counts_zero(tmp_path: Path) -> None:
    orchestrator = PipelineOrchestrator(
        make_run_context(
            run_root=tmp_path,
            catalog=make_catalog([["A"]]),
            explorer=ScriptedExplorer(),
            formatter=ScriptedFormatter(failures={"A": RuntimeError("schema mismatch")}),
        )
    )

    outcome = await orchestrator.run()

    assert not outcome.results["A"].failed
    assert outcome.results["A"].candidate_count == 0
    assert orchestrator.context.items_for_dimension("A") == ()


async def test_unparseable_reply_falls_back_to_truncated_analysis(tmp_path: Path) -> None:
    orchestrator = PipelineOrchestrator(
        make_run_context(
            run_root=tmp_path,
            catalog=make_catalog([["A"]]),
            explorer=ScriptedExplorer(),
            formatter=ScriptedFormatter({"A": 2}, reply="no digest here"),
            settings=PipelineSettings(digest_summary_chars=20),
        )
    )

    await orchestrator.run()

    digest = orchestrator.context.digests["A"]
    assert digest.summary == "A: Observed conventi..."
    assert digest.candidate_count == 2


@pytest.mark.parametrize(
    ("explorer", "settings", "kind"),
    [
        (
            ScriptedExplorer(delay=0.5),
            PipelineSettings(explore_timeout_seconds=0.02),
            "explorer-timeout",
        ),
        (
            ScriptedExplorer({"A": RuntimeError("agent crashed")}),
            PipelineSettings(),
            "explorer-error",
        ),
    ],
)
async def test_explore_failure_marks_dimension_error(
    tmp_path: Path, explorer: ScriptedExplorer, settings: PipelineSettings, kind: str
) -> None:
    registry = SessionRegistry()
    progress = RecordingProgress(registry)
    formatter = ScriptedFormatter()
    run = make_run_context(
        run_root=tmp_path,
        catalog=make_catalog([["A", "B"]]),
        explorer=explorer,
        formatter=formatter,
        session=registry.start(),
        settings=settings,
        progress=progress,
    )

    outcome = await run_pipeline(run)

    assert outcome.results["A"].failed
    assert outcome.results["A"].candidate_count == 0
    assert outcome.states["A"] is DimensionState.ERROR
    assert "A" not in formatter.calls
    error_payloads = [payload for dim_id, payload in progress.completed if dim_id == "A"]
    assert error_payloads[-1]["type"] == "error"
    assert error_payloads[-1]["kind"] == kind
    assert outcome.report["totals"]["errors"] >= 1
    assert "error" in outcome.report["dimensions"]["A"]


async def test_parser_crash_falls_back_to_analysis_digest(tmp_path: Path) -> None:
    def crashing_parser(reply: str) -> DimensionDigest | None:
        raise KeyError("dimensionDigest")

    run = make_run_context(
        run_root=tmp_path,
        catalog=make_catalog([["A"], ["B"]]),
        explorer=ScriptedExplorer(),
        formatter=ScriptedFormatter({"A": 2}),
        settings=PipelineSettings(digest_summary_chars=20),
    )
    run.digest_parser = crashing_parser
    orchestrator = PipelineOrchestrator(run)

    outcome = await orchestrator.run()

    assert not outcome.results["A"].failed
    assert outcome.results["A"].candidate_count == 2
    assert outcome.states["A"] is DimensionState.COMPLETE
    digest = orchestrator.context.digests["A"]
    assert digest.summary == "A: Observed conventi..."
    assert digest.candidate_count == 2


async def test_uncaught_exception_is_contained(tmp_path: Path) -> None:
    class ExplodingStore(InMemoryCheckpointStore):
        async def save(self, *args: object, **kwargs: object) -> bool:
            raise RuntimeError("store bug")

    run = make_run_context(
        run_root=tmp_path,
        catalog=make_catalog([["A", "B"]]),
        explorer=ScriptedExplorer(),
        formatter=ScriptedFormatter(),
        checkpoint_store=ExplodingStore(),
    )

    outcome = await run_pipeline(run)

    assert outcome.results["A"].error == "store bug"
    assert outcome.results["B"].error == "store bug"
    assert outcome.states["A"] is DimensionState.ERROR
    assert outcome.report["totals"]["errors"] == 2
    assert not outcome.aborted


async def test_checkpointed_dimensions_are_restored_without_exploring(tmp_path: Path) -> None:
    store = InMemoryCheckpointStore()
    await store.save(
        tmp_path,
        "bs-previous",
        "A",
        DimensionResult(candidate_count=4, tool_call_count=3),
        DimensionDigest(summary="restored digest", candidate_count=4),
    )
    registry = SessionRegistry()
    progress = RecordingProgress(registry)
    explorer = ScriptedExplorer()
    run = make_run_context(
        run_root=tmp_path,
        catalog=make_catalog([["A"], ["B"]]),
        explorer=explorer,
        formatter=ScriptedFormatter(),
        session=registry.start(),
        checkpoint_store=store,
        progress=progress,
    )

    outcome = await run_pipeline(run)

    assert explorer.calls == ["B"]
    assert explorer.seen_digests["B"] == ("A",)
    assert outcome.restored == ("A",)
    assert outcome.states["A"] is DimensionState.RESTORED
    assert outcome.results["A"].restored_from_checkpoint
    assert outcome.results["A"].candidate_count == 4
    assert outcome.report["totals"]["candidates"] == 5
    assert outcome.report["checkpoints"]["restored"] == ["A"]
    assert outcome.report["dimensions"]["A"]["restoredFromCheckpoint"] is True
    restored_payload = next(payload for dim_id, payload in progress.completed if dim_id == "A")
    assert restored_payload["type"] == "checkpoint-restored"
    assert restored_payload["candidateCount"] == 4


async def test_superseded_session_stops_new_work_and_keeps_checkpoints(tmp_path: Path) -> None:
    registry = SessionRegistry()
    session = registry.start()
    store = InMemoryCheckpointStore()

    def supersede_on_a(dim_id: str) -> None:
        if dim_id == "A":
            registry.start()

    explorer = ScriptedExplorer(on_call=supersede_on_a)
    run = make_run_context(
        run_root=tmp_path,
        catalog=make_catalog([["A"], ["B"]]),
        explorer=explorer,
        formatter=ScriptedFormatter(),
        session=session,
        checkpoint_store=store,
        progress=RecordingProgress(registry),
    )

    outcome = await run_pipeline(run)

    assert explorer.calls == ["A"]
    assert "B" not in outcome.results
    assert outcome.states["B"] is DimensionState.PENDING
    assert outcome.aborted
    assert outcome.report["aborted"] is True
    assert set(await store.load_all(tmp_path)) == {"A"}


async def test_dimension_started_after_supersession_is_abandoned(tmp_path: Path) -> None:
    registry = SessionRegistry()
    session = registry.start()
    orchestrator = PipelineOrchestrator(
        make_run_context(
            run_root=tmp_path,
            catalog=make_catalog([["A"]]),
            explorer=ScriptedExplorer(),
            formatter=ScriptedFormatter(),
            session=session,
        )
    )
    registry.supersede()

    result = await orchestrator.execute_dimension("A")

    assert result.error == SESSION_SUPERSEDED_ERROR
    assert orchestrator.states["A"] is DimensionState.ABANDONED


async def test_serial_mode_runs_one_dimension_at_a_time(tmp_path: Path) -> None:
    registry = SessionRegistry()
    progress = RecordingProgress(registry)
    explorer = ScriptedExplorer(delay=0.01)
    run = make_run_context(
        run_root=tmp_path,
        catalog=make_catalog([["A", "B", "C"], ["D"]]),
        explorer=explorer,
        formatter=ScriptedFormatter(),
        session=registry.start(),
        settings=PipelineSettings(parallel=False),
        progress=progress,
    )

    outcome = await run_pipeline(run)

    assert explorer.max_active == 1
    assert explorer.calls == ["A", "B", "C", "D"]
    assert outcome.report["mode"] == "serial"
    tier_events = [data for name, data in progress.events if name == "pipeline:tier-complete"]
    assert [event["tier"] for event in tier_events] == [1, 2]


async def test_parallel_mode_respects_concurrency(tmp_path: Path) -> None:
    explorer = ScriptedExplorer(delay=0.02)
    run = make_run_context(
        run_root=tmp_path,
        catalog=make_catalog([["A", "B", "C", "D"]]),
        explorer=explorer,
        formatter=ScriptedFormatter(),
        settings=PipelineSettings(concurrency=2),
    )

    await run_pipeline(run)

    assert explorer.max_active == 2


async def test_progress_events_cover_the_run(tmp_path: Path) -> None:
    registry = SessionRegistry()
    progress = RecordingProgress(registry)
    run = make_run_context(
        run_root=tmp_path,
        catalog=make_catalog([["A", "B"], ["C"]]),
        explorer=ScriptedExplorer({"B": RuntimeError("boom")}),
        formatter=ScriptedFormatter(),
        session=registry.start(),
        progress=progress,
    )

    await run_pipeline(run)

    assert sorted(progress.filling) == ["A", "B", "C"]
    names = [name for name, _ in progress.events]
    assert names == ["pipeline:tier-complete", "pipeline:tier-complete", "pipeline:complete"]
    first_tier = progress.events[0][1]
    assert first_tier["totalTiers"] == 2
    assert first_tier["failed"] == ["B"]
    assert progress.events[-1][1]["aborted"] is False


async def test_failing_progress_sink_does_not_break_the_run(tmp_path: Path) -> None:
    registry = SessionRegistry()

    class BrokenProgress(RecordingProgress):
        def mark_filling(self, dim_id: str) -> None:
            raise RuntimeError("ui went away")

    run = make_run_context(
        run_root=tmp_path,
        catalog=make_catalog([["A"]]),
        explorer=ScriptedExplorer(),
        formatter=ScriptedFormatter(),
        session=registry.start(),
        progress=BrokenProgress(registry),
    )

    outcome = await run_pipeline(run)

    assert not outcome.results["A"].failed


async def test_artifacts_are_emitted_for_skill_and_dual_dimensions(tmp_path: Path) -> None:
    registry = SessionRegistry()
    progress = RecordingProgress(registry)
    writer = MemoryArtifactWriter()
    run = make_run_context(
        run_root=tmp_path,
        catalog=make_catalog(
            [["S", "D", "C"]], {"S": OutputType.SKILL, "D": OutputType.DUAL}
        ),
        explorer=ScriptedExplorer(),
        formatter=ScriptedFormatter(),
        session=registry.start(),
        progress=progress,
        artifact_writer=writer,
    )

    outcome = await run_pipeline(run)

    assert sorted(document.name for document in writer.documents) == ["project-D", "project-S"]
    assert outcome.report["totals"]["skills"] == 2
    assert outcome.report["artifacts"] == {"created": 2, "failed": 0, "errors": []}
    assert progress.completed_types()["S"] == ["skill", "skill"]


async def test_sink_failures_during_artifact_emission_do_not_escape(tmp_path: Path) -> None:
    registry = SessionRegistry()

    class BrokenArtifactProgress(RecordingProgress):
        def mark_completed(self, dim_id: str, payload: Mapping[str, Any]) -> None:
            if payload.get("type") == "skill" and "skillName" in payload:
                raise RuntimeError("ui went away")
            super().mark_completed(dim_id, payload)

        def mark_failed(self, dim_id: str, error: BaseException) -> None:
            raise RuntimeError("ui went away")

    store = InMemoryCheckpointStore()
    writer = MemoryArtifactWriter(fail_names={"project-D"})
    run = make_run_context(
        run_root=tmp_path,
        catalog=make_catalog(
            [["S", "D", "T"]], {"S": OutputType.SKILL, "D": OutputType.DUAL, "T": OutputType.SKILL}
        ),
        explorer=ScriptedExplorer(),
        formatter=ScriptedFormatter(),
        session=registry.start(),
        checkpoint_store=store,
        progress=BrokenArtifactProgress(registry),
        artifact_writer=writer,
    )

    outcome = await run_pipeline(run)

    assert not outcome.aborted
    assert sorted(document.name for document in writer.documents) == ["project-S", "project-T"]
    assert outcome.artifacts.created == 2
    assert outcome.artifacts.failed == 1
    assert outcome.report_path is not None
    assert read_run_report(tmp_path) == outcome.report
    assert await store.load_all(tmp_path) == {}


async def test_selected_ids_limit_the_run(tmp_path: Path) -> None:
    explorer = ScriptedExplorer()
    run = make_run_context(
        run_root=tmp_path,
        catalog=make_catalog([["A", "B"], ["C"]]),
        explorer=explorer,
        formatter=ScriptedFormatter(),
    )
    run.selected_ids = frozenset({"B", "C"})

    outcome = await run_pipeline(run)

    assert sorted(explorer.calls) == ["B", "C"]
    assert set(outcome.results) == {"B", "C"}
    assert not outcome.aborted


def test_settings_validation_and_config_mapping() -> None:
    with pytest.raises(ValueError):
        PipelineSettings(concurrency=0)
    with pytest.raises(ValueError):
        PipelineSettings(explore_timeout_seconds=0)

    settings = PipelineSettings.from_config(
        {"pipeline": {"concurrency": 5, "parallel": False, "format_timeout_seconds": 30}}
    )
    assert settings.concurrency == 5
    assert settings.mode == "serial"
    assert settings.format_timeout_seconds == 30.0


async def test_run_context_built_from_profiled_config(tmp_path: Path) -> None:
    config_path = tmp_path / "bootstrap.toml"
    config_path.write_text(
        '[paths]\nrun_root = "."\n\n[checkpoints]\nbackend = "memory"\nttl_seconds = 600\n',
        encoding="utf-8",
    )
    config = load_config(config_path, profile="serial", environ={})
    explorer = ScriptedExplorer(delay=0.005)
    run = build_run_context(
        config,
        project=make_project(),
        session=SessionRegistry().start(),
        explorer=explorer,
        formatter=ScriptedFormatter(),
        selected_ids=["project-profile", "architecture"],
    )

    assert run.settings.mode == "serial"
    assert run.settings.concurrency == 1
    assert isinstance(run.checkpoint_store, InMemoryCheckpointStore)
    assert run.checkpoint_store.ttl_ms == 600_000
    assert run.run_root == tmp_path
    assert run.catalog.tiers[0][0] == "project-profile"
    assert run.selected_ids == frozenset({"project-profile", "architecture"})

    outcome = await run_pipeline(run)

    assert outcome.report["mode"] == "serial"
    assert sorted(explorer.calls) == ["architecture", "project-profile"]
    assert explorer.max_active == 1
