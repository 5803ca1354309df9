from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

import lisa.build_loop as build_loop
from lisa.config import load_config
from lisa.errors import AgentProcessError, StallExhausted
from lisa.runtime_context import build_run_context
from lisa.state import load_state

_PLAN = """# Plan

## Task 1: Mesh generation
- **Status:** TODO
- **Pass:** 1
- **Dependencies:** None

## Task 2: Solver
- **Status:** TODO
- **Pass:** 1
- **Dependencies:** Task 1

## Task 3: Plotting
- **Status:** TODO
- **Pass:** 2
- **Dependencies:** Task 2
"""


def _git(cwd: Path, *args: str) -> str:
    proc = subprocess.run(
        ["git", *args],
        cwd=cwd,
        check=True,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
    )
    return proc.stdout


def _make_project(root: Path, plan: str = _PLAN, *, limits: str = "") -> Path:
    _git(root, "init")
    _git(root, "config", "user.email", "test@example.com")
    _git(root, "config", "user.name", "Test")
    (root / "lisa.toml").write_text(f'[project]\nname = "demo"\n[limits]\nstall_threshold = 2\n{limits}', encoding="utf-8")
    plan_file = root / ".lisa" / "methodology" / "plan.md"
    plan_file.parent.mkdir(parents=True)
    plan_file.write_text(plan, encoding="utf-8")
    ddv = root / "tests" / "ddv"
    ddv.mkdir(parents=True)
    (ddv / "test_energy.py").write_text("assert 1 + 1 == 2\n", encoding="utf-8")
    _git(root, "add", "-A")
    _git(root, "commit", "-m", "init")
    return plan_file


def _ctx(root: Path, *, auto: bool = True):
    return build_run_context(load_config(root), trace_id="trace", no_pause=auto)


def _subjects(root: Path) -> list[str]:
    return _git(root, "log", "--format=%s").splitlines()[::-1]


class _FakeBuild:
    """Stands in for the build agent; `edit` rewrites the plan text on each call."""

    def __init__(self, plan_file: Path, edit=None):
        self.plan_file = plan_file
        self.edit = edit
        self.calls: list[tuple[str, ...]] = []

    def __call__(self, ctx, *, prompt_name, label, pass_number, extra_context=(), guidance=None):
        assert prompt_name == "build"
        self.calls.append(tuple(extra_context))
        if self.edit is not None:
            text = self.plan_file.read_text(encoding="utf-8")
            self.plan_file.write_text(self.edit(text), encoding="utf-8")


def _finish_next(text: str) -> str:
    return text.replace("**Status:** TODO", "**Status:** DONE", 1)


def test_build_loop_completes_pass_tasks(tmp_path: Path, monkeypatch) -> None:
    plan_file = _make_project(tmp_path)
    fake = _FakeBuild(plan_file, _finish_next)
    monkeypatch.setattr(build_loop, "run_agent_step", fake)

    outcome = build_loop.run_build_loop(_ctx(tmp_path), 1)

    assert outcome == "completed"
    assert len(fake.calls) == 2
    assert "Next eligible task: Task 1: Mesh generation" in fake.calls[0]
    assert "Next eligible task: Task 2: Solver" in fake.calls[1]
    assert _subjects(tmp_path)[1:] == ["build: pass 1 iteration 1", "build: pass 1 iteration 2"]
    state = load_state(tmp_path / ".lisa" / "state.json")
    assert (state.phase, state.iteration) == ("build", 2)


def test_build_loop_resumes_at_saved_iteration(tmp_path: Path, monkeypatch) -> None:
    plan_file = _make_project(tmp_path, _PLAN.replace("**Status:** TODO", "**Status:** DONE", 1))
    monkeypatch.setattr(build_loop, "run_agent_step", _FakeBuild(plan_file, _finish_next))

    assert build_loop.run_build_loop(_ctx(tmp_path), 1, start_iteration=4) == "completed"
    assert _subjects(tmp_path)[-1] == "build: pass 1 iteration 4"


def test_build_loop_without_remaining_tasks_makes_no_agent_call(tmp_path: Path, monkeypatch) -> None:
    plan_file = _make_project(tmp_path, _PLAN.replace("TODO", "DONE"))
    fake = _FakeBuild(plan_file)
    monkeypatch.setattr(build_loop, "run_agent_step", fake)

    assert build_loop.run_build_loop(_ctx(tmp_path), 1) == "completed"
    assert fake.calls == []


def test_build_loop_blocked_before_start_skips(tmp_path: Path, monkeypatch) -> None:
    plan = _PLAN.replace("**Status:** TODO", "**Status:** DONE", 1).replace(
        "**Status:** TODO", "**Status:** BLOCKED", 1
    )
    plan_file = _make_project(tmp_path, plan)
    fake = _FakeBuild(plan_file)
    monkeypatch.setattr(build_loop, "run_agent_step", fake)

    assert build_loop.run_build_loop(_ctx(tmp_path), 1) == "stopped_by_user"
    assert fake.calls == []


def test_stall_gate_fires_once_per_threshold_crossing(tmp_path: Path, monkeypatch) -> None:
    plan_file = _make_project(tmp_path)
    fake = _FakeBuild(plan_file)
    decisions = ["fix", "skip"]
    gate_calls: list[str] = []

    def _fake_gate(*, pass_number, counts, blocked, reason, auto):
        gate_calls.append(reason)
        return decisions.pop(0)

    monkeypatch.setattr(build_loop, "run_agent_step", fake)
    monkeypatch.setattr(build_loop, "block_gate", _fake_gate)

    outcome = build_loop.run_build_loop(_ctx(tmp_path, auto=False), 1)

    assert outcome == "stopped_by_user"
    assert gate_calls == ["stalled", "stalled"]
    assert len(fake.calls) == 4


def test_stall_abort_raises(tmp_path: Path, monkeypatch) -> None:
    plan_file = _make_project(tmp_path)
    monkeypatch.setattr(build_loop, "run_agent_step", _FakeBuild(plan_file))
    monkeypatch.setattr(build_loop, "block_gate", lambda **_: "abort")

    with pytest.raises(StallExhausted, match="pass 1"):
        build_loop.run_build_loop(_ctx(tmp_path, auto=False), 1)


def test_iteration_budget_exhausted(tmp_path: Path, monkeypatch) -> None:
    plan_file = _make_project(tmp_path)
    # progress on every call, never finishing
    fake = _FakeBuild(plan_file, lambda text: text + "\nnote\n")
    monkeypatch.setattr(build_loop, "run_agent_step", fake)

    outcome = build_loop.run_build_loop(_ctx(tmp_path), 1, max_iterations=3)

    assert outcome == "exhausted"
    assert len(fake.calls) == 3


def test_protected_tests_are_reverted_before_commit(tmp_path: Path, monkeypatch) -> None:
    plan_file = _make_project(tmp_path, _PLAN.replace("**Status:** TODO", "**Status:** DONE", 1))
    ddv_test = tmp_path / "tests" / "ddv" / "test_energy.py"

    def _cheat(text: str) -> str:
        ddv_test.write_text("assert True\n", encoding="utf-8")
        return _finish_next(text)

    monkeypatch.setattr(build_loop, "run_agent_step", _FakeBuild(plan_file, _cheat))

    assert build_loop.run_build_loop(_ctx(tmp_path), 1) == "completed"
    assert ddv_test.read_text(encoding="utf-8") == "assert 1 + 1 == 2\n"
    assert _git(tmp_path, "show", "HEAD:tests/ddv/test_energy.py") == "assert 1 + 1 == 2\n"


def test_unassigned_tasks_are_never_built(tmp_path: Path, monkeypatch, capsys) -> None:
    plan = (
        "## Task 1: Core\n- **Status:** TODO\n- **Pass:** 1\n\n"
        "## Task 2: Extras\n- **Status:** TODO\n- **Pass:** TBD\n"
    )
    plan_file = _make_project(tmp_path, plan)
    fake = _FakeBuild(plan_file, _finish_next)
    monkeypatch.setattr(build_loop, "run_agent_step", fake)

    assert build_loop.run_build_loop(_ctx(tmp_path), 1) == "completed"
    assert len(fake.calls) == 1
    assert "Task 2: Extras has no pass assigned" in capsys.readouterr().out


def test_resume_past_extended_budget_still_builds(tmp_path: Path, monkeypatch) -> None:
    plan_file = _make_project(tmp_path, limits="max_build_iterations = 3\n")
    fake = _FakeBuild(plan_file, _finish_next)
    monkeypatch.setattr(build_loop, "run_agent_step", fake)

    outcome = build_loop.run_build_loop(_ctx(tmp_path), 1, start_iteration=4)

    assert outcome == "completed"
    assert len(fake.calls) == 2
    assert _subjects(tmp_path)[1:] == ["build: pass 1 iteration 4", "build: pass 1 iteration 5"]


def test_resumed_window_is_one_budget_long(tmp_path: Path, monkeypatch) -> None:
    plan_file = _make_project(tmp_path, limits="max_build_iterations = 3\n")
    fake = _FakeBuild(plan_file, lambda text: text + "\nnote\n")
    monkeypatch.setattr(build_loop, "run_agent_step", fake)

    assert build_loop.run_build_loop(_ctx(tmp_path), 1, start_iteration=7) == "exhausted"
    assert len(fake.calls) == 3
    assert _subjects(tmp_path)[-1] == "build: pass 1 iteration 9"


def test_explicit_zero_iterations_runs_nothing(tmp_path: Path, monkeypatch) -> None:
    plan_file = _make_project(tmp_path)
    fake = _FakeBuild(plan_file, _finish_next)
    monkeypatch.setattr(build_loop, "run_agent_step", fake)

    assert build_loop.run_build_loop(_ctx(tmp_path), 1, max_iterations=0) == "exhausted"
    assert fake.calls == []
    with pytest.raises(ValueError, match="max_iterations"):
        build_loop.run_build_loop(_ctx(tmp_path), 1, max_iterations=-1)


def test_agent_failure_stops_before_commit(tmp_path: Path, monkeypatch) -> None:
    plan_file = _make_project(tmp_path)

    def _failing_agent(ctx, *, prompt_name, label, pass_number, extra_context=(), guidance=None):
        plan_file.write_text(_finish_next(plan_file.read_text(encoding="utf-8")), encoding="utf-8")
        raise AgentProcessError("claude (build) exited with code 1", label=label, exit_code=1)

    monkeypatch.setattr(build_loop, "run_agent_step", _failing_agent)

    with pytest.raises(AgentProcessError, match="exited with code 1"):
        build_loop.run_build_loop(_ctx(tmp_path), 1)

    assert _subjects(tmp_path) == ["init"]
    state = load_state(tmp_path / ".lisa" / "state.json")
    assert (state.phase, state.status, state.iteration) == ("build", "in_progress", 1)
