from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

import lisa.build_loop as build_loop
import lisa.orchestrator as orchestrator
from lisa.cli import AgentResult, ToolCallRecord
from lisa.config import load_config
from lisa.errors import AgentProcessError, EnforcementViolation, OrchestratorError
from lisa.review import GateOutcome
from lisa.runtime_context import build_run_context
from lisa.state import PersistedState, load_state, save_state

_PLAN = """# Plan

## Task 1: Mesh generation
- **Status:** TODO
- **Pass:** 1
- **Dependencies:** None

## Task 2: Solver
- **Status:** TODO
- **Pass:** 2
- **Dependencies:** Task 1
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


def _make_project(root: Path, *, max_passes: int = 5, with_plan: bool = False):
    _git(root, "init")
    _git(root, "config", "user.email", "test@example.com")
    _git(root, "config", "user.name", "Test")
    (root / "lisa.toml").write_text(
        f'[project]\nname = "demo"\n[limits]\nmax_spiral_passes = {max_passes}\n', encoding="utf-8"
    )
    (root / "src").mkdir()
    (root / "src" / "solver.py").write_text("def solve():\n    return 0\n", encoding="utf-8")
    config = load_config(root)
    if with_plan:
        config.plan_file.parent.mkdir(parents=True)
        config.plan_file.write_text(_PLAN, encoding="utf-8")
    _git(root, "add", "-A")
    _git(root, "commit", "-m", "init")
    return build_run_context(config, trace_id="trace", no_pause=True)


class _FakeAgents:
    """Records every agent step; scope writes the plan, build finishes one task."""

    def __init__(self, ddv_tool_log: tuple[ToolCallRecord, ...] = ()):
        self.calls: list[tuple[str, int]] = []
        self.guidance: dict[tuple[str, int], str | None] = {}
        self._ddv_tool_log = ddv_tool_log

    def __call__(self, ctx, *, prompt_name, label, pass_number, extra_context=(), guidance=None):
        self.calls.append((prompt_name, pass_number))
        self.guidance[(prompt_name, pass_number)] = guidance
        plan_file = ctx.config.plan_file
        if prompt_name == "scope":
            plan_file.parent.mkdir(parents=True, exist_ok=True)
            plan_file.write_text(_PLAN, encoding="utf-8")
        elif prompt_name == "build":
            text = plan_file.read_text(encoding="utf-8")
            plan_file.write_text(text.replace("**Status:** TODO", "**Status:** DONE", 1), encoding="utf-8")
        tool_log = list(self._ddv_tool_log) if prompt_name == "ddv_red" else []
        return AgentResult(result_text="ok", tool_log=tool_log)

    @property
    def phases(self) -> list[str]:
        return [name for name, _ in self.calls]


def _install(monkeypatch, fake: _FakeAgents) -> _FakeAgents:
    monkeypatch.setattr(orchestrator, "run_agent_step", fake)
    monkeypatch.setattr(build_loop, "run_agent_step", fake)
    return fake


def _subjects(root: Path) -> list[str]:
    return _git(root, "log", "--format=%s").splitlines()[::-1]


def test_full_run_without_pause(tmp_path: Path, monkeypatch) -> None:
    ctx = _make_project(tmp_path)
    fake = _install(monkeypatch, _FakeAgents())

    orchestrator.run(ctx, max_passes=2)

    assert fake.calls == [
        ("scope", 0),
        ("refine", 1), ("ddv_red", 1), ("build", 1), ("execute", 1), ("validate", 1),
        ("refine", 2), ("ddv_red", 2), ("build", 2), ("execute", 2), ("validate", 2),
    ]
    # no-pause never accepts
    assert load_state(ctx.config.state_file) == PersistedState.pass_review(2)
    assert not (ctx.config.spiral_dir / "SPIRAL_COMPLETE.md").exists()

    subjects = _subjects(tmp_path)
    expected = [
        "scope: pass 0",
        "refine: pass 1",
        "ddv_red: pass 1",
        "build: pass 1 iteration 1",
        "execute: pass 1",
        "validate: pass 1",
        "refine: pass 2",
        "build: pass 2 iteration 1",
        "validate: pass 2",
    ]
    assert [s for s in subjects if s in expected] == expected
    assert set(_git(tmp_path, "tag").split()) == {"lisa/pass-0", "lisa/pass-1", "lisa/pass-2"}


def test_max_passes_zero_runs_nothing(tmp_path: Path, monkeypatch) -> None:
    ctx = _make_project(tmp_path)
    fake = _install(monkeypatch, _FakeAgents())

    orchestrator.run(ctx, max_passes=0)

    assert fake.calls == []
    assert not ctx.config.state_file.exists()


def test_run_refuses_spiral_in_progress(tmp_path: Path, monkeypatch) -> None:
    ctx = _make_project(tmp_path, with_plan=True)
    fake = _install(monkeypatch, _FakeAgents())
    save_state(ctx.config.state_file, PersistedState.in_pass(1, "build", "in_progress", iteration=2))

    with pytest.raises(OrchestratorError, match="lisa resume"):
        orchestrator.run(ctx)

    assert fake.calls == []


def test_ddv_isolation_violation_aborts_phase(tmp_path: Path, monkeypatch) -> None:
    ctx = _make_project(tmp_path)
    peek = ToolCallRecord(order=0, tool="Read", category="read", target="src/solver.py")
    fake = _install(monkeypatch, _FakeAgents(ddv_tool_log=(peek,)))

    with pytest.raises(EnforcementViolation, match="src/solver.py"):
        orchestrator.run(ctx, max_passes=1)

    assert fake.phases == ["scope", "refine", "ddv_red"]
    assert load_state(ctx.config.state_file) == PersistedState.in_pass(1, "ddv_red", "in_progress")


@pytest.mark.parametrize(
    ("failing_phase", "iteration"),
    [("build", 1), ("execute", None)],
)
def test_agent_failure_leaves_phase_in_progress_without_commit(
    tmp_path: Path, monkeypatch, failing_phase: str, iteration: int | None
) -> None:
    ctx = _make_project(tmp_path, with_plan=True)
    fake = _FakeAgents()

    def _agent(ctx, *, prompt_name, label, pass_number, extra_context=(), guidance=None):
        if prompt_name == failing_phase:
            raise AgentProcessError(f"claude ({prompt_name}) exited with code 1", label=label, exit_code=1)
        return fake(ctx, prompt_name=prompt_name, label=label, pass_number=pass_number,
                    extra_context=extra_context, guidance=guidance)

    monkeypatch.setattr(orchestrator, "run_agent_step", _agent)
    monkeypatch.setattr(build_loop, "run_agent_step", _agent)

    with pytest.raises(AgentProcessError, match="exited with code 1"):
        orchestrator.run_pass_phases(ctx, 1)

    assert load_state(ctx.config.state_file) == PersistedState.in_pass(
        1, failing_phase, "in_progress", iteration=iteration
    )
    subjects = _subjects(tmp_path)
    assert f"{failing_phase}: pass 1" not in subjects
    assert not any(s.startswith(f"{failing_phase}: pass 1 ") for s in subjects)


def test_accept_finalizes_spiral(tmp_path: Path, monkeypatch) -> None:
    ctx = _make_project(tmp_path)
    fake = _install(monkeypatch, _FakeAgents())
    monkeypatch.setattr(orchestrator, "pass_gate", lambda config, n, *, auto: GateOutcome(decision="accept"))

    orchestrator.run(ctx, max_passes=3)

    assert fake.phases[-1] == "finalize"
    assert fake.phases.count("refine") == 1
    assert load_state(ctx.config.state_file) == PersistedState.complete(1)
    assert (ctx.config.spiral_dir / "SPIRAL_COMPLETE.md").exists()
    assert _subjects(tmp_path)[-1] == "finalize: spiral complete after pass 1"


def test_redirect_guidance_reaches_next_refine(tmp_path: Path, monkeypatch) -> None:
    ctx = _make_project(tmp_path)
    fake = _install(monkeypatch, _FakeAgents())

    def _gate(config, pass_number, *, auto):
        if pass_number == 1:
            path = orchestrator.redirect_file(config, 1)
            path.write_text("# Human Redirect: Pass 1\n\nTighten the tolerances.\n", encoding="utf-8")
            return GateOutcome(decision="redirect", guidance="Tighten the tolerances.")
        return GateOutcome(decision="accept")

    monkeypatch.setattr(orchestrator, "pass_gate", _gate)

    orchestrator.run(ctx, max_passes=3)

    assert fake.guidance[("refine", 1)] is None
    assert fake.guidance[("refine", 2)] == "Tighten the tolerances."
    assert "redirect: pass 1" in _subjects(tmp_path)
    assert load_state(ctx.config.state_file) == PersistedState.complete(2)


@pytest.mark.parametrize(
    "state, expected",
    [
        (PersistedState.in_pass(1, "execute", "in_progress"), ["execute", "validate"]),
        (PersistedState.in_pass(1, "ddv_red", "complete"), ["build", "execute", "validate"]),
        (PersistedState.in_pass(1, "validate", "complete"), []),
        (PersistedState.pass_review(1), []),
        (PersistedState.scope_review(), ["refine", "ddv_red", "build", "execute", "validate"]),
        (PersistedState.scope_complete(), ["refine", "ddv_red", "build", "execute", "validate"]),
        (PersistedState.complete(1), []),
    ],
    ids=lambda value: value.describe() if isinstance(value, PersistedState) else None,
)
def test_resume_continues_from_persisted_state(
    tmp_path: Path, monkeypatch, state: PersistedState, expected: list[str]
) -> None:
    ctx = _make_project(tmp_path, max_passes=1, with_plan=True)
    fake = _install(monkeypatch, _FakeAgents())
    save_state(ctx.config.state_file, state)

    orchestrator.resume(ctx)

    assert fake.phases == expected
    if state.kind != "complete":
        assert load_state(ctx.config.state_file) == PersistedState.pass_review(1)


def test_resume_interrupted_build_keeps_iteration(tmp_path: Path, monkeypatch) -> None:
    ctx = _make_project(tmp_path, max_passes=1, with_plan=True)
    _install(monkeypatch, _FakeAgents())
    save_state(ctx.config.state_file, PersistedState.in_pass(1, "build", "in_progress", iteration=3))

    orchestrator.resume(ctx)

    assert "build: pass 1 iteration 3" in _subjects(tmp_path)


def test_resume_not_started_scopes_first(tmp_path: Path, monkeypatch) -> None:
    ctx = _make_project(tmp_path, max_passes=1)
    fake = _install(monkeypatch, _FakeAgents())

    orchestrator.resume(ctx)

    assert fake.phases == ["scope", "refine", "ddv_red", "build", "execute", "validate"]


def test_resume_shows_and_clears_last_error(tmp_path: Path, monkeypatch, capsys) -> None:
    ctx = _make_project(tmp_path, max_passes=1, with_plan=True)
    _install(monkeypatch, _FakeAgents())
    save_state(ctx.config.state_file, PersistedState.complete(1))
    ctx.config.last_error_file.write_text("# Last Error\n\nboom\n", encoding="utf-8")

    orchestrator.resume(ctx)

    assert "PREVIOUS FAILURE" in capsys.readouterr().out
    assert not ctx.config.last_error_file.exists()


def test_scope_quit_stops_before_passes(tmp_path: Path, monkeypatch) -> None:
    ctx = _make_project(tmp_path)
    fake = _install(monkeypatch, _FakeAgents())
    monkeypatch.setattr(orchestrator, "scope_gate", lambda config, *, auto: GateOutcome(decision="quit"))

    assert orchestrator.run_scope(ctx) is False
    assert fake.phases == ["scope"]
    assert load_state(ctx.config.state_file) == PersistedState.scope_review()


def test_scope_refine_reruns_agent_with_feedback(tmp_path: Path, monkeypatch) -> None:
    ctx = _make_project(tmp_path)
    fake = _install(monkeypatch, _FakeAgents())
    outcomes = [GateOutcome(decision="refine", guidance="Narrow to 1D."), GateOutcome(decision="proceed")]
    monkeypatch.setattr(orchestrator, "scope_gate", lambda config, *, auto: outcomes.pop(0))

    assert orchestrator.run_scope(ctx) is True
    assert fake.phases == ["scope", "scope"]
    assert fake.guidance[("scope", 0)] == "Narrow to 1D."
    assert load_state(ctx.config.state_file) == PersistedState.scope_complete()
