"""
knowledge-bootstrap — CLI subprocess smoke contracts

File: tests/integration/test_cli_smoke.py

Purpose
- Exercise `python -m knowledge_bootstrap` as a real process: exit codes,
  JSON output on stdout and error text on stderr.
"""

from __future__ import annotations

import json
import os
import subprocess
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[2]
SRC_PATH = PROJECT_ROOT / "src"


def _run_cli(cwd: Path, *args: str) -> subprocess.CompletedProcess[str]:
    env = os.environ.copy()
    existing_pythonpath = env.get("PYTHONPATH")
    src_pythonpath = str(SRC_PATH)
    env["PYTHONPATH"] = (
        src_pythonpath if not existing_pythonpath else f"{src_pythonpath}:{existing_pythonpath}"
    )
    env["NO_COLOR"] = "1"
    for key in [key for key in env if key.startswith("KB_")]:
        del env[key]
    return subprocess.run(
        [sys.executable, "-m", "knowledge_bootstrap", *args],
        cwd=cwd,
        text=True,
        capture_output=True,
        check=False,
        env=env,
    )


def test_dimensions_json_from_module_entrypoint(tmp_path: Path) -> None:
    completed = _run_cli(tmp_path, "dimensions", "--json")

    assert completed.returncode == 0, completed.stderr
    payload = json.loads(completed.stdout)
    assert payload["command"] == "dimensions"
    assert [len(tier) for tier in payload["tiers"]] == [3, 3, 3]


def test_checkpoints_list_on_fresh_root(tmp_path: Path) -> None:
    completed = _run_cli(tmp_path, "checkpoints", "list", "--json")

    assert completed.returncode == 0, completed.stderr
    payload = json.loads(completed.stdout)
    assert payload["checkpoints"] == {}


def test_missing_report_and_unknown_command_exit_codes(tmp_path: Path) -> None:
    missing = _run_cli(tmp_path, "report")
    assert missing.returncode == 1
    assert "no run report" in missing.stderr

    unknown = _run_cli(tmp_path, "bootstrap-everything")
    assert unknown.returncode == 2


def test_checkpoints_clear_json_is_the_only_stdout(tmp_path: Path) -> None:
    completed = _run_cli(
        tmp_path, "checkpoints", "clear", "--run-root", str(tmp_path), "--json"
    )

    assert completed.returncode == 0, completed.stderr
    payload = json.loads(completed.stdout)
    assert payload == {"action": "clear", "command": "checkpoints", "runRoot": str(tmp_path.resolve())}
