"""
knowledge-bootstrap — unit tests for the CLI router

File: tests/unit/ui/test_cli.py

Purpose
- Validate command routing, JSON output contracts and exit codes in-process.
"""

from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path

import pytest

from knowledge_bootstrap.domain.models import DimensionDigest, DimensionResult
from knowledge_bootstrap.main import cli_entrypoint
from knowledge_bootstrap.pipeline.checkpoints import FileCheckpointStore
from knowledge_bootstrap.pipeline.report import write_run_report
from knowledge_bootstrap.ui.cli import run_cli


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("COLUMNS", "200")
    monkeypatch.delenv("NO_COLOR", raising=False)
    for key in list(os.environ):
        if key.startswith("KB_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "bootstrap.toml"
    path.write_text('[paths]\nrun_root = "."\n', encoding="utf-8")
    return path


def _json_out(capsys: pytest.CaptureFixture[str]) -> dict[str, object]:
    return json.loads(capsys.readouterr().out)


def test_dimensions_json_lists_builtin_tiers(
    config_file: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    exit_code = run_cli(["dimensions", "--config", str(config_file), "--json"])

    payload = _json_out(capsys)
    assert exit_code == 0
    assert payload["command"] == "dimensions"
    assert payload["catalog"] == "builtin"
    assert len(payload["tiers"]) == 3
    assert len(payload["dimensions"]) == 9


def test_dimensions_table_output(config_file: Path, capsys: pytest.CaptureFixture[str]) -> None:
    exit_code = run_cli(["dimensions", "--config", str(config_file), "--no-color"])

    out = capsys.readouterr().out
    assert exit_code == 0
    assert "Tier 1" in out
    assert "agent-guidelines" in out


def test_dimensions_with_missing_catalog_is_config_error(
    config_file: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    exit_code = run_cli(
        ["dimensions", "--config", str(config_file), "--catalog", str(tmp_path / "none.yaml")]
    )

    assert exit_code == 2
    assert "catalog file not found" in capsys.readouterr().err


def test_config_json_is_redacted_and_reports_profile(
    config_file: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    exit_code = run_cli(["config", "--config", str(config_file), "--profile", "serial", "--json"])

    payload = _json_out(capsys)
    assert exit_code == 0
    assert payload["active_profile"] == "serial"
    config = payload["config"]
    assert isinstance(config, dict)
    assert config["pipeline"]["parallel"] is False


def test_invalid_config_exits_with_config_error(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    bad = tmp_path / "bad.toml"
    bad.write_text("[pipeline]\nconcurrency = 0\n", encoding="utf-8")

    exit_code = run_cli(["config", "--config", str(bad)])

    assert exit_code == 2
    assert "pipeline.concurrency" in capsys.readouterr().err


def test_checkpoints_list_and_clear(
    config_file: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    store = FileCheckpointStore()
    asyncio.run(
        store.save(
            tmp_path,
            "bs-previous",
            "architecture",
            DimensionResult(candidate_count=3),
            DimensionDigest(summary="layers"),
        )
    )

    assert run_cli(["checkpoints", "list", "--config", str(config_file), "--json"]) == 0
    listed = _json_out(capsys)
    assert listed["backend"] == "file"
    assert listed["runRoot"] == str(tmp_path.resolve())
    checkpoints = listed["checkpoints"]
    assert isinstance(checkpoints, dict)
    assert checkpoints["architecture"]["candidateCount"] == 3

    assert run_cli(["checkpoints", "list", "--config", str(config_file), "--no-color"]) == 0
    assert "architecture" in capsys.readouterr().out

    assert run_cli(["checkpoints", "clear", "--config", str(config_file), "--json"]) == 0
    assert _json_out(capsys)["action"] == "clear"
    assert asyncio.run(store.load_all(tmp_path)) == {}


def test_checkpoints_with_missing_run_root(
    config_file: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    exit_code = run_cli(
        ["checkpoints", "list", "--config", str(config_file), "--run-root", str(tmp_path / "nope")]
    )

    assert exit_code == 2
    assert "run root is not a directory" in capsys.readouterr().err


def test_report_missing_is_an_error(config_file: Path, capsys: pytest.CaptureFixture[str]) -> None:
    exit_code = run_cli(["report", "--config", str(config_file)])

    assert exit_code == 1
    assert "no run report" in capsys.readouterr().err


def test_report_renders_saved_report(
    config_file: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    write_run_report(
        tmp_path,
        {
            "version": "2.7.0",
            "project": {"name": "demo-app", "files": 42, "lang": "swift"},
            "duration": {"totalMs": 1200, "totalSec": 1},
            "mode": "parallel",
            "aborted": True,
            "dimensions": {
                "architecture": {"candidatesSubmitted": 2, "toolCallCount": 5, "durationMs": 900},
                "code-pattern": {"candidatesSubmitted": 0, "error": "explorer crashed"},
            },
            "totals": {"candidates": 2, "skills": 0, "toolCalls": 5, "errors": 1},
            "checkpoints": {"restored": ["architecture"]},
        },
    )

    assert run_cli(["report", "--config", str(config_file), "--no-color"]) == 0
    out = capsys.readouterr().out
    assert "demo-app (swift)" in out
    assert "run was aborted" in out
    assert "error: explorer crashed" in out

    assert run_cli(["report", "--config", str(config_file), "--json"]) == 0
    assert _json_out(capsys)["report"]["totals"]["errors"] == 1


def test_corrupt_report_exits_with_internal_error(
    config_file: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    target = tmp_path / ".autosnippet" / "bootstrap-report.json"
    target.parent.mkdir(parents=True)
    target.write_text("{broken", encoding="utf-8")

    assert run_cli(["report", "--config", str(config_file)]) == 4
    assert "unable to read run report" in capsys.readouterr().err


def test_entrypoint_normalizes_argparse_exit(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli_entrypoint(["--help"]) == 0
    assert cli_entrypoint(["no-such-command"]) == 2
    capsys.readouterr()


def test_entrypoint_preserves_not_found_exit_code(
    config_file: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    assert cli_entrypoint(["report", "--config", str(config_file)]) == 1
    assert "no run report" in capsys.readouterr().err
