from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

import lisa.file_ops as file_ops
import lisa.main as main_module
import lisa.telemetry as telemetry
from lisa.errors import StallExhausted
from lisa.state import PersistedState, save_state


def _git(cwd: Path, *args: str) -> None:
    subprocess.run(
        ["git", *args],
        cwd=cwd,
        check=True,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
    )


@pytest.fixture(autouse=True)
def _unbind_logs(monkeypatch) -> None:
    monkeypatch.setattr(file_ops, "_LOG_FILE", None)
    monkeypatch.setattr(telemetry, "_EVENTS_FILE", None)


def _write_config(root: Path) -> None:
    (root / "lisa.toml").write_text('[project]\nname = "demo"\n', encoding="utf-8")


def test_missing_config_exits_with_error(tmp_path: Path, capsys) -> None:
    assert main_module.main(["-C", str(tmp_path), "status"]) == 1
    assert "lisa.toml" in capsys.readouterr().out


def test_status_is_read_only(tmp_path: Path, capsys) -> None:
    _write_config(tmp_path)

    assert main_module.main(["-C", str(tmp_path), "status"]) == 0

    out = capsys.readouterr().out
    assert "Project: demo" in out
    assert "State:   Not started" in out
    assert "no plan yet" in out
    assert not (tmp_path / ".lisa").exists()


def test_status_reports_state_and_tasks(tmp_path: Path, capsys) -> None:
    _write_config(tmp_path)
    plan = tmp_path / ".lisa" / "methodology" / "plan.md"
    plan.parent.mkdir(parents=True)
    plan.write_text(
        "## Task 1: A\n- **Status:** DONE\n- **Pass:** 1\n\n## Task 2: B\n- **Status:** TODO\n- **Pass:** 1\n",
        encoding="utf-8",
    )
    save_state(tmp_path / ".lisa" / "state.json", PersistedState.in_pass(1, "build", "in_progress", iteration=2))

    assert main_module.main(["-C", str(tmp_path), "status"]) == 0

    out = capsys.readouterr().out
    assert "Pass 1 / Build iteration 2" in out
    assert "1 done, 0 in progress, 1 todo, 0 blocked (2 total)" in out


def test_negative_max_passes_is_a_usage_error(tmp_path: Path) -> None:
    _write_config(tmp_path)
    with pytest.raises(SystemExit) as excinfo:
        main_module.main(["-C", str(tmp_path), "run", "--max-passes", "-1"])
    assert excinfo.value.code == 2


def test_run_outside_git_repo_fails(tmp_path: Path, capsys) -> None:
    _write_config(tmp_path)
    assert main_module.main(["-C", str(tmp_path), "run"]) == 1
    assert "not a git repository" in capsys.readouterr().out


def test_run_with_zero_passes_does_nothing(tmp_path: Path) -> None:
    _git(tmp_path, "init")
    _write_config(tmp_path)

    assert main_module.main(["-C", str(tmp_path), "run", "--max-passes", "0"]) == 0
    assert not (tmp_path / ".lisa" / "state.json").exists()


def test_orchestrator_error_writes_last_error(tmp_path: Path, monkeypatch) -> None:
    _git(tmp_path, "init")
    _write_config(tmp_path)

    def _boom(ctx) -> None:
        raise StallExhausted("Build loop aborted by operator in pass 1 (stalled)")

    monkeypatch.setattr(main_module, "resume", _boom)

    assert main_module.main(["-C", str(tmp_path), "resume", "--no-pause"]) == 1

    text = (tmp_path / ".lisa" / "last-error.md").read_text(encoding="utf-8")
    assert "StallExhausted" in text
    assert "lisa resume" in text
    assert "Not started" in text
