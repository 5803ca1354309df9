"""螺旋状态机：scope -> pass(refine, ddv_red, build, execute, validate) -> 审阅 -> finalize

fresh run 与 resume 共用 `run_pass_phases` / `run_pass_range` 与阶段处理表，
resume 只负责把持久化状态映射到起点。
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable

from .agent_runner import run_agent_step
from .build_loop import run_build_loop
from .config import SPIRAL_COMPLETE_FILE_NAME
from .enforcement import verify_isolation
from .errors import EnforcementViolation, GitOperationError, OrchestratorError
from .file_ops import _atomic_write_text, _log, _read_text, _rel_path
from .git_ops import commit_with_retry, create_tag, push
from .prompt_builder import redirect_file
from .review import environment_gate, extract_guidance, pass_gate, redirect_template, scope_gate
from .runtime_context import RunContext
from .state import PersistedState, load_state, save_state
from .telemetry import log_event
from .types import PASS_PHASES, PHASE_LABELS, PhaseKind

PhaseHandler = Callable[[RunContext, int, "PersistedState | None"], None]


def _save(ctx: RunContext, state: PersistedState) -> None:
    save_state(ctx.config.state_file, state)


def _commit(ctx: RunContext, message: str) -> None:
    commit_with_retry(message, project_root=ctx.config.project_root, enabled=ctx.config.git.auto_commit)


def _push(ctx: RunContext) -> None:
    """Push failures are reported, never fatal."""
    try:
        push(project_root=ctx.config.project_root, enabled=ctx.config.git.auto_push)
    except GitOperationError as exc:
        _log(f"lisa: error: push failed: {exc}")
        log_event("push_failed", trace_id=ctx.trace_id, error=str(exc))


def _tag(ctx: RunContext, name: str) -> None:
    if not ctx.config.git.auto_commit:
        return
    try:
        create_tag(name, project_root=ctx.config.project_root)
    except GitOperationError as exc:
        _log(f"lisa: warning: could not create tag {name}: {exc}")


def _load_redirect(ctx: RunContext, pass_number: int) -> str | None:
    path = redirect_file(ctx.config, pass_number)
    if not path.exists():
        return None
    guidance = extract_guidance(_read_text(path), redirect_template(pass_number))
    return guidance or None


# ---------------------------------------------------------------- phase handlers


def _run_refine(ctx: RunContext, pass_number: int, resumed: PersistedState | None) -> None:
    config = ctx.config
    extra: list[str] = []
    guidance: str | None = None
    if pass_number > 1:
        previous = pass_number - 1
        extra.append(f"Review the results of pass {previous} in {_rel_path(config.pass_dir(previous), config.project_root)}")
        guidance = _load_redirect(ctx, previous)
        if guidance is not None:
            extra.append(
                "The human redirected the spiral: "
                f"{_rel_path(redirect_file(config, previous), config.project_root)}"
            )
    run_agent_step(
        ctx,
        prompt_name="refine",
        label=f"Pass {pass_number} refine",
        pass_number=pass_number,
        extra_context=tuple(extra),
        guidance=guidance,
    )


def _run_ddv_red(ctx: RunContext, pass_number: int, resumed: PersistedState | None) -> None:
    config = ctx.config
    result = run_agent_step(
        ctx,
        prompt_name="ddv_red",
        label=f"Pass {pass_number} DDV red",
        pass_number=pass_number,
        extra_context=(f"Do not read or modify anything under: {', '.join(config.paths.source)}",),
    )
    try:
        verify_isolation(
            result.tool_log,
            config.paths.source,
            project_root=config.project_root,
            phase="ddv_red",
        )
    except EnforcementViolation as exc:
        log_event(
            "isolation_violation",
            trace_id=ctx.trace_id,
            pass_number=pass_number,
            violations=[{"rule": v.rule, "tool": v.tool, "target": v.target} for v in exc.violations],
        )
        raise


def _run_build(ctx: RunContext, pass_number: int, resumed: PersistedState | None) -> None:
    start_iteration = resumed.iteration if resumed is not None and resumed.iteration else 1
    scope = resumed.scope if resumed is not None else None
    outcome = run_build_loop(ctx, pass_number, scope=scope, start_iteration=start_iteration)
    log_event("build_outcome", trace_id=ctx.trace_id, pass_number=pass_number, outcome=outcome)
    if outcome == "stopped_by_user":
        _log(f"lisa: pass {pass_number}: build stopped by operator; remaining tasks deferred")
    elif outcome == "exhausted":
        _log(f"lisa: warning: pass {pass_number}: build iteration budget exhausted with tasks remaining")


def _agent_phase(phase: PhaseKind) -> PhaseHandler:
    def _handler(ctx: RunContext, pass_number: int, resumed: PersistedState | None) -> None:
        run_agent_step(
            ctx,
            prompt_name=phase,
            label=f"Pass {pass_number} {phase}",
            pass_number=pass_number,
        )

    return _handler


PHASE_HANDLERS: dict[PhaseKind, PhaseHandler] = {
    "refine": _run_refine,
    "ddv_red": _run_ddv_red,
    "build": _run_build,
    "execute": _agent_phase("execute"),
    "validate": _agent_phase("validate"),
}


# ---------------------------------------------------------------- pass sequencing


def run_pass_phases(
    ctx: RunContext,
    pass_number: int,
    *,
    start_phase: PhaseKind = "refine",
    resumed: PersistedState | None = None,
) -> None:
    """Run `start_phase` and every later phase of the pass, persisting around each."""
    config = ctx.config
    start_index = PASS_PHASES.index(start_phase)
    config.pass_dir(pass_number).mkdir(parents=True, exist_ok=True)

    for phase in PASS_PHASES[start_index:]:
        phase_resume = resumed if phase == start_phase else None
        iteration = None
        scope = None
        if phase == "build":
            iteration = phase_resume.iteration if phase_resume is not None and phase_resume.iteration else 1
            scope = phase_resume.scope if phase_resume is not None else None
        _save(ctx, PersistedState.in_pass(pass_number, phase, "in_progress", iteration=iteration, scope=scope))
        _log(f"\n=== Pass {pass_number}: {PHASE_LABELS[phase]} ===")
        log_event("phase_start", trace_id=ctx.trace_id, pass_number=pass_number, phase=phase)

        PHASE_HANDLERS[phase](ctx, pass_number, phase_resume)

        _commit(ctx, f"{phase}: pass {pass_number}")
        if phase == "build":
            done_state = load_state(config.state_file)
            iteration, scope = done_state.iteration, done_state.scope
        _save(ctx, PersistedState.in_pass(pass_number, phase, "complete", iteration=iteration, scope=scope))
        log_event("phase_complete", trace_id=ctx.trace_id, pass_number=pass_number, phase=phase)


def _review_pass(ctx: RunContext, pass_number: int) -> bool:
    """Show the pass gate; True when the operator accepted (spiral finalized)."""
    outcome = pass_gate(ctx.config, pass_number, auto=ctx.auto)
    log_event("gate_decision", trace_id=ctx.trace_id, gate="pass", pass_number=pass_number, decision=outcome.decision)
    if outcome.decision == "accept":
        finalize(ctx, pass_number)
        return True
    if outcome.decision == "redirect":
        _commit(ctx, f"redirect: pass {pass_number}")
    return False


def _finish_pass(ctx: RunContext, pass_number: int) -> bool:
    _push(ctx)
    _tag(ctx, f"lisa/pass-{pass_number}")
    _save(ctx, PersistedState.pass_review(pass_number))
    return _review_pass(ctx, pass_number)


def run_pass_range(
    ctx: RunContext,
    start_pass: int,
    last_pass: int,
    *,
    start_phase: PhaseKind = "refine",
    resumed: PersistedState | None = None,
) -> bool:
    """Run passes start_pass..last_pass; True when a pass was accepted."""
    if start_pass > last_pass:
        _log(f"lisa: warning: max passes ({last_pass}) reached without acceptance")
        return False
    for pass_number in range(start_pass, last_pass + 1):
        first = pass_number == start_pass
        run_pass_phases(
            ctx,
            pass_number,
            start_phase=start_phase if first else "refine",
            resumed=resumed if first else None,
        )
        if _finish_pass(ctx, pass_number):
            return True
    _log(f"lisa: warning: max passes ({last_pass}) reached without acceptance; raise --max-passes or run `lisa resume`")
    return False


def finalize(ctx: RunContext, final_pass: int) -> None:
    config = ctx.config
    _log(f"\n=== Finalize (accepted after pass {final_pass}) ===")
    run_agent_step(ctx, prompt_name="finalize", label="Finalize", pass_number=final_pass)
    timestamp = datetime.now().isoformat(timespec="seconds")
    _atomic_write_text(
        config.spiral_dir / SPIRAL_COMPLETE_FILE_NAME,
        f"# Spiral Complete\n\n- Accepted after pass: {final_pass}\n- Finalized: {timestamp}\n",
    )
    _save(ctx, PersistedState.complete(final_pass))
    _commit(ctx, f"finalize: spiral complete after pass {final_pass}")
    _push(ctx)
    log_event("spiral_complete", trace_id=ctx.trace_id, final_pass=final_pass)
    _log(f"lisa: spiral complete after pass {final_pass}")


# ---------------------------------------------------------------- scope


def run_scope(ctx: RunContext, *, review_only: bool = False) -> bool:
    """Scope the project (pass 0); False when the operator quit at the gate."""
    config = ctx.config
    feedback: str | None = None
    while True:
        if not review_only:
            _save(ctx, PersistedState.scoping())
            config.pass_dir(0).mkdir(parents=True, exist_ok=True)
            _log("\n=== Scope ===")
            log_event("phase_start", trace_id=ctx.trace_id, pass_number=0, phase="scope")
            extra = ("Refine the existing scope artifacts using the human feedback",) if feedback else ()
            run_agent_step(ctx, prompt_name="scope", label="Scope", pass_number=0, extra_context=extra, guidance=feedback)
            _commit(ctx, "scope: pass 0")
            _save(ctx, PersistedState.scope_review())
        review_only = False

        env = environment_gate(config, auto=ctx.auto)
        if env is not None:
            log_event("gate_decision", trace_id=ctx.trace_id, gate="environment", decision=env)
        outcome = scope_gate(config, auto=ctx.auto)
        log_event("gate_decision", trace_id=ctx.trace_id, gate="scope", decision=outcome.decision)
        if outcome.decision == "refine":
            feedback = outcome.guidance
            continue
        if outcome.decision == "quit":
            _log("lisa: stopped after scope review; run `lisa resume` to review again")
            return False
        break

    if outcome.decision == "edit":
        _commit(ctx, "scope: human edits")
    _save(ctx, PersistedState.scope_complete())
    _tag(ctx, "lisa/pass-0")
    log_event("phase_complete", trace_id=ctx.trace_id, pass_number=0, phase="scope")
    return True


# ---------------------------------------------------------------- entry points


def run(ctx: RunContext, *, max_passes: int | None = None) -> None:
    """Fresh run: scope when needed, then passes 1..max_passes."""
    config = ctx.config
    if max_passes == 0:  # 关键分支：显式 0 表示不执行任何 pass
        _log("lisa: --max-passes 0: nothing to run")
        return
    last_pass = max_passes if max_passes is not None else config.limits.max_spiral_passes

    state = load_state(config.state_file)
    if state.kind in ("in_pass", "pass_review"):
        raise OrchestratorError(
            f"A spiral is already in progress ({state.describe()}); run `lisa resume` to continue it"
        )
    if state.kind == "complete":
        _log(f"lisa: spiral already complete ({state.describe()})")
        return
    if state.kind != "scope_complete":
        if not run_scope(ctx, review_only=state.kind == "scope_review"):
            return
    run_pass_range(ctx, 1, last_pass)


def _resume_in_pass(ctx: RunContext, state: PersistedState) -> None:
    assert state.phase is not None
    max_passes = ctx.config.limits.max_spiral_passes
    pass_number = state.pass_number
    last_pass = max(max_passes, pass_number)
    if state.status == "in_progress":  # 关键分支：重跑中断的阶段
        run_pass_range(ctx, pass_number, last_pass, start_phase=state.phase, resumed=state)
        return
    index = PASS_PHASES.index(state.phase)
    if index + 1 < len(PASS_PHASES):  # 关键分支：阶段已完成，从下一阶段继续
        run_pass_range(ctx, pass_number, last_pass, start_phase=PASS_PHASES[index + 1])
        return
    if _finish_pass(ctx, pass_number):  # 关键分支：validate 已完成，进入 pass 边界
        return
    run_pass_range(ctx, pass_number + 1, max_passes)


def _resume_pass_review(ctx: RunContext, state: PersistedState) -> None:
    if _review_pass(ctx, state.pass_number):
        return
    run_pass_range(ctx, state.pass_number + 1, ctx.config.limits.max_spiral_passes)


def _resume_scope(ctx: RunContext, state: PersistedState) -> None:
    if run_scope(ctx, review_only=state.kind == "scope_review"):
        run_pass_range(ctx, 1, ctx.config.limits.max_spiral_passes)


def _resume_passes(ctx: RunContext, state: PersistedState) -> None:
    run_pass_range(ctx, 1, ctx.config.limits.max_spiral_passes)


def _resume_not_started(ctx: RunContext, state: PersistedState) -> None:
    run(ctx)


def _resume_complete(ctx: RunContext, state: PersistedState) -> None:
    _log(f"lisa: spiral already complete ({state.describe()}); nothing to resume")


# 关键变量：每种状态恰好对应一个续跑入口
RESUME_HANDLERS: dict[str, Callable[[RunContext, PersistedState], None]] = {
    "not_started": _resume_not_started,
    "scoping": _resume_scope,
    "scope_review": _resume_scope,
    "scope_complete": _resume_passes,
    "in_pass": _resume_in_pass,
    "pass_review": _resume_pass_review,
    "complete": _resume_complete,
}


def show_last_error(ctx: RunContext) -> None:
    path = ctx.config.last_error_file
    if not path.exists():
        return
    print("\n========== PREVIOUS FAILURE ==========", flush=True)
    print(_read_text(path).rstrip(), flush=True)
    print("======================================\n", flush=True)
    path.unlink()


def resume(ctx: RunContext) -> None:
    show_last_error(ctx)
    state = load_state(ctx.config.state_file)
    _log(f"lisa: resuming from: {state.describe()}")
    log_event("resume", trace_id=ctx.trace_id, state=state.kind, pass_number=state.pass_number, phase=state.phase)
    RESUME_HANDLERS[state.kind](ctx, state)
