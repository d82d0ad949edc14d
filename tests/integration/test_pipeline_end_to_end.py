"""
knowledge-bootstrap — end-to-end pipeline contracts

File: tests/integration/test_pipeline_end_to_end.py

Purpose
- Drive complete runs against the file-backed checkpoint store and the
  in-process progress sink, asserting on the persisted report and the
  checkpoint directory lifecycle.

What this test file should cover
- A failing dimension does not stop its tier or the run from reaching cleanup.
- An interrupted run resumes from its checkpoints within the TTL.
- A superseded run keeps its checkpoints for the next invocation.
"""

from __future__ import annotations

import time
from pathlib import Path

from knowledge_bootstrap.constants import CHECKPOINT_DIR
from knowledge_bootstrap.domain.session import SessionRegistry
from knowledge_bootstrap.observability.progress import EventProgressSink, ProgressKind
from knowledge_bootstrap.pipeline.checkpoints import FileCheckpointStore, SqliteCheckpointStore
from knowledge_bootstrap.pipeline.orchestrator import PipelineSettings, run_pipeline
from knowledge_bootstrap.pipeline.report import read_run_report
from tests.support.fakes import (
    ScriptedExplorer,
    ScriptedFormatter,
    make_catalog,
    make_run_context,
)


async def test_failed_dimension_is_isolated_and_run_reaches_cleanup(tmp_path: Path) -> None:
    store = FileCheckpointStore()
    registry = SessionRegistry()
    sink = EventProgressSink(registry)
    run = make_run_context(
        run_root=tmp_path,
        catalog=make_catalog([["A", "B"], ["C"]]),
        explorer=ScriptedExplorer({"B": RuntimeError("explore failed for B")}),
        formatter=ScriptedFormatter({"A": 2, "C": 3}),
        session=registry.start(),
        checkpoint_store=store,
        settings=PipelineSettings(concurrency=1),
        progress=sink,
    )

    outcome = await run_pipeline(run)

    assert set(outcome.results) == {"A", "B", "C"}
    assert outcome.results["A"].candidate_count == 2
    assert outcome.results["C"].candidate_count == 3
    assert outcome.results["B"].error == "explore failed for B"
    assert outcome.results["B"].candidate_count == 0
    assert not outcome.aborted

    assert not (tmp_path / CHECKPOINT_DIR).exists()
    report = read_run_report(tmp_path)
    assert report is not None
    assert report["totals"]["candidates"] == 5
    assert report["totals"]["errors"] == 1
    assert report["dimensions"]["B"]["error"] == "explore failed for B"

    completed = [event for event in sink.events() if event.kind is ProgressKind.COMPLETED]
    assert {event.dim_id for event in completed} == {"A", "B", "C"}
    assert sink.events()[-1].name == "pipeline:complete"


async def test_tier_wall_clock_is_bounded_by_concurrency(tmp_path: Path) -> None:
    delay = 0.1
    run = make_run_context(
        run_root=tmp_path,
        catalog=make_catalog([["A", "B", "C"]]),
        explorer=ScriptedExplorer(delay=delay),
        formatter=ScriptedFormatter(),
        settings=PipelineSettings(concurrency=2),
    )

    started = time.monotonic()
    await run_pipeline(run)
    elapsed = time.monotonic() - started

    assert 2 * delay <= elapsed < 3 * delay


async def test_interrupted_run_resumes_from_checkpoints(tmp_path: Path) -> None:
    store = FileCheckpointStore()
    registry = SessionRegistry()
    first_session = registry.start()

    def supersede_after_tier_one(dim_id: str) -> None:
        if dim_id == "B":
            registry.start()

    first_explorer = ScriptedExplorer(on_call=supersede_after_tier_one)
    first = await run_pipeline(
        make_run_context(
            run_root=tmp_path,
            catalog=make_catalog([["A", "B"], ["C"]]),
            explorer=first_explorer,
            formatter=ScriptedFormatter({"A": 2, "B": 1}),
            session=first_session,
            checkpoint_store=store,
            settings=PipelineSettings(concurrency=2),
            progress=EventProgressSink(registry),
        )
    )

    assert first.aborted
    assert "C" not in first.results
    assert set(await store.load_all(tmp_path)) == {"A", "B"}
    first_report = read_run_report(tmp_path)
    assert first_report is not None
    assert first_report["aborted"] is True

    second_explorer = ScriptedExplorer()
    second = await run_pipeline(
        make_run_context(
            run_root=tmp_path,
            catalog=make_catalog([["A", "B"], ["C"]]),
            explorer=second_explorer,
            formatter=ScriptedFormatter({"C": 4}),
            session=registry.start(),
            checkpoint_store=store,
            progress=EventProgressSink(registry),
        )
    )

    assert second_explorer.calls == ["C"]
    assert set(second_explorer.seen_digests["C"]) == {"A", "B"}
    assert not second.aborted
    assert sorted(second.restored) == ["A", "B"]
    assert second.report["totals"]["candidates"] == 2 + 1 + 4
    assert await store.load_all(tmp_path) == {}


async def test_expired_checkpoints_are_recomputed(tmp_path: Path) -> None:
    now = [1_700_000_000_000]
    store = SqliteCheckpointStore(ttl_seconds=60, clock=lambda: now[0])
    registry = SessionRegistry()

    def supersede(dim_id: str) -> None:
        registry.start()

    await run_pipeline(
        make_run_context(
            run_root=tmp_path,
            catalog=make_catalog([["A"], ["B"]]),
            explorer=ScriptedExplorer(on_call=supersede),
            formatter=ScriptedFormatter(),
            session=registry.start(),
            checkpoint_store=store,
        )
    )
    assert set(await store.load_all(tmp_path)) == {"A"}

    now[0] += 61_000
    explorer = ScriptedExplorer()
    outcome = await run_pipeline(
        make_run_context(
            run_root=tmp_path,
            catalog=make_catalog([["A"], ["B"]]),
            explorer=explorer,
            formatter=ScriptedFormatter(),
            session=registry.start(),
            checkpoint_store=store,
        )
    )

    assert explorer.calls == ["A", "B"]
    assert outcome.restored == ()
