from __future__ import annotations

from .agent_runner import run_agent_step
from .enforcement import verify_protected_unmodified
from .errors import StallExhausted
from .file_ops import _log
from .git_ops import commit_with_retry
from .repo_changes import capture_dirty_file_digests
from .review import block_gate
from .runtime_context import RunContext
from .state import PersistedState, save_state
from .tasks import (
    Task,
    blocked_tasks,
    count_tasks,
    ledger_fingerprint,
    load_tasks,
    remaining_tasks,
    select_next_task,
    unassigned_tasks,
)
from .telemetry import log_event
from .types import BlockDecision, BuildOutcome


def _gate(ctx: RunContext, pass_number: int, tasks: list[Task], *, reason: str) -> BlockDecision:
    decision = block_gate(
        pass_number=pass_number,
        counts=count_tasks(tasks, pass_number),
        blocked=blocked_tasks(tasks, pass_number),
        reason=reason,
        auto=ctx.auto,
    )
    log_event("gate_decision", trace_id=ctx.trace_id, gate="block", reason=reason, pass_number=pass_number, decision=decision)
    if decision == "abort":  # 关键分支：中止向调用方传播
        raise StallExhausted(f"Build loop aborted by operator in pass {pass_number} ({reason})")
    return decision


def _warn_unassigned(tasks: list[Task]) -> None:
    for task in unassigned_tasks(tasks):
        _log(f"lisa: warning: {task.name} has no pass assigned and will not be built")


def _iteration_context(pass_number: int, iteration: int, scope: str | None, next_task: Task | None) -> tuple[str, ...]:
    items = [f"Build iteration: {iteration}"]
    if scope:
        items.append(f"Build scope: {scope}")
    if next_task is not None:
        items.append(f"Next eligible task: {next_task.name}")
    else:
        items.append(f"No TODO task in pass {pass_number} has all dependencies done; unblock or finish in-progress work")
    return tuple(items)


def run_build_loop(
    ctx: RunContext,
    pass_number: int,
    *,
    scope: str | None = None,
    start_iteration: int = 1,
    max_iterations: int | None = None,
) -> BuildOutcome:
    """Iterate the build agent until every task of the pass is done.

    Each iteration works on one task: persist the iteration, invoke the agent,
    revert any edit to the DDV tests, commit, then re-read the plan. The plan is
    only read after the commit. A plan whose full text is unchanged for
    `stall_threshold` consecutive iterations raises the block gate once; the
    counter then starts over.
    Resuming past the budget (the operator extended it before a crash) opens a
    fresh window of `max_iterations` iterations from `start_iteration`.

    Returns "completed", "stopped_by_user" (block gate skip) or "exhausted"
    (iteration budget spent and the operator chose skip).

    Raises:
        StallExhausted: block gate abort
        TaskParseError: plan missing or without any parseable task
    """
    config = ctx.config
    budget = config.limits.max_build_iterations if max_iterations is None else max_iterations
    threshold = config.limits.stall_threshold
    if start_iteration < 1:
        raise ValueError(f"start_iteration must be >= 1, got {start_iteration}")
    if budget < 0:
        raise ValueError(f"max_iterations must be >= 0, got {budget}")

    tasks, plan_text = load_tasks(config.plan_file)
    _warn_unassigned(tasks)
    if not remaining_tasks(tasks, pass_number):  # 关键分支：开工前已无剩余任务
        if not blocked_tasks(tasks, pass_number):
            _log(f"lisa: pass {pass_number}: no remaining tasks, build complete")
            return "completed"
        if _gate(ctx, pass_number, tasks, reason="blocked") == "skip":
            return "stopped_by_user"
        tasks, plan_text = load_tasks(config.plan_file)

    if budget == 0:  # 关键分支：显式 0 表示不执行任何迭代
        _log(f"lisa: pass {pass_number}: build iteration budget is 0; tasks left for a later run")
        return "exhausted"

    fingerprint = ledger_fingerprint(plan_text)  # 关键变量：停滞检测基准
    stall_count = 0
    # 关键变量：续跑时预算窗口从续跑点起算
    last_iteration = budget if start_iteration <= budget else start_iteration - 1 + budget
    iteration = start_iteration

    while True:
        if iteration > last_iteration:  # 关键分支：迭代预算耗尽
            _log(f"lisa: pass {pass_number}: build iteration budget ({budget}) exhausted")
            if _gate(ctx, pass_number, tasks, reason="exhausted") == "skip":
                return "exhausted"
            last_iteration += budget
            stall_count = 0
            tasks, plan_text = load_tasks(config.plan_file)
            fingerprint = ledger_fingerprint(plan_text)
            continue

        save_state(
            config.state_file,
            PersistedState.in_pass(pass_number, "build", "in_progress", iteration=iteration, scope=scope),
        )
        next_task = select_next_task(tasks, pass_number)
        baseline = capture_dirty_file_digests(
            project_root=config.project_root,
            include_prefixes=(config.paths.tests_ddv,),
        )
        run_agent_step(
            ctx,
            prompt_name="build",
            label=f"Pass {pass_number} build {iteration}",
            pass_number=pass_number,
            extra_context=_iteration_context(pass_number, iteration, scope, next_task),
        )

        reverted = verify_protected_unmodified(
            config.paths.tests_ddv,
            project_root=config.project_root,
            baseline=baseline,
        )
        if reverted:
            log_event("protected_reverted", trace_id=ctx.trace_id, pass_number=pass_number, iteration=iteration)
        commit_with_retry(
            f"build: pass {pass_number} iteration {iteration}",
            project_root=config.project_root,
            enabled=config.git.auto_commit,
        )

        tasks, plan_text = load_tasks(config.plan_file)  # 关键变量：提交后重新解析
        counts = count_tasks(tasks, pass_number)
        log_event(
            "build_iteration",
            trace_id=ctx.trace_id,
            pass_number=pass_number,
            iteration=iteration,
            task=next_task.task_id if next_task else None,
            done=counts.done,
            blocked=counts.blocked,
            total=counts.total,
        )
        _log(f"lisa: pass {pass_number} iteration {iteration}: {counts.done}/{counts.total} done, {counts.blocked} blocked")

        if not remaining_tasks(tasks, pass_number):
            if not blocked_tasks(tasks, pass_number):
                _log(f"lisa: pass {pass_number}: all tasks done")
                return "completed"
            if _gate(ctx, pass_number, tasks, reason="blocked") == "skip":
                return "stopped_by_user"
            tasks, plan_text = load_tasks(config.plan_file)
            fingerprint = ledger_fingerprint(plan_text)
            stall_count = 0
            iteration += 1
            continue

        current = ledger_fingerprint(plan_text)
        if current == fingerprint:
            stall_count += 1
        else:
            fingerprint = current
            stall_count = 0
        if stall_count >= threshold:  # 关键分支：停滞达到阈值，只触发一次
            _log(f"lisa: pass {pass_number}: plan unchanged for {stall_count} iteration(s), build stalled")
            log_event("stall_detected", trace_id=ctx.trace_id, pass_number=pass_number, iteration=iteration)
            if _gate(ctx, pass_number, tasks, reason="stalled") == "skip":
                return "stopped_by_user"
            stall_count = 0
            tasks, plan_text = load_tasks(config.plan_file)
            fingerprint = ledger_fingerprint(plan_text)
        iteration += 1
