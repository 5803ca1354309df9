from __future__ import annotations

import threading
import time

from .cli import AgentResult, CLIConfig, CLIRunner, StreamItem, ToolCallRecord, create_cli_runner
from .errors import AgentProcessError
from .file_ops import _log
from .prompt_builder import build_prompt
from .runtime_context import RunContext
from .telemetry import log_event
from .usage import check_budget, load_usage, make_usage_entry, record_usage, total_cost

_DETAIL_MAX_CHARS = 80  # 关键变量：工具详情截断长度
_THINKING_MAX_CHARS = 120


def _format_elapsed(seconds: float) -> str:
    total = int(seconds)
    if total < 60:
        return f"{total}s"
    minutes, secs = divmod(total, 60)
    return f"{minutes}m{secs:02d}s"


def _truncate(text: str, limit: int) -> str:
    first_line = text.strip().splitlines()[0] if text.strip() else ""
    if len(first_line) > limit:
        return first_line[: limit - 3] + "..."
    return first_line


def format_tool_detail(record: ToolCallRecord) -> str:
    if record.category == "command":
        return f"{record.tool} $ {_truncate(record.target, _DETAIL_MAX_CHARS)}"
    if record.category == "other":
        return record.tool
    return f"{record.tool} {_truncate(record.target, _DETAIL_MAX_CHARS)}"


def _print_stream_item(item: StreamItem, record: ToolCallRecord | None) -> None:
    if record is not None:
        print(f"  > {format_tool_detail(record)}", flush=True)
    elif item.kind == "thinking" and item.text:
        print(f"  ~ {_truncate(item.text, _THINKING_MAX_CHARS)}", flush=True)
    elif item.kind == "text" and item.text:
        print(f"  | {_truncate(item.text, _THINKING_MAX_CHARS)}", flush=True)


class LivenessTicker(threading.Thread):
    """Prints elapsed time while a collapsed agent run is in flight.

    The cancellation event is the only state shared with the caller; `stop()`
    sets it and joins, so no tick can land after the summary line.
    """

    def __init__(self, label: str, interval_seconds: float):
        super().__init__(name=f"lisa-liveness-{label}", daemon=True)
        self._label = label
        self._interval = interval_seconds
        self._stop_event = threading.Event()
        self._started_at = time.monotonic()
        self.ticks = 0

    def run(self) -> None:
        while not self._stop_event.wait(self._interval):
            self.ticks += 1
            elapsed = _format_elapsed(time.monotonic() - self._started_at)
            print(f"  ... {self._label} still running ({elapsed})", flush=True)

    def stop(self) -> None:
        self._stop_event.set()
        if self.is_alive():
            self.join()


def _run_cli(
    ctx: RunContext,
    runner: CLIRunner,
    prompt: str,
    cli_config: CLIConfig,
    label: str,
) -> AgentResult:
    if not ctx.collapse_output:  # 关键分支：透传模式逐条展示
        return runner.run(prompt, cli_config, label, on_item=_print_stream_item)
    ticker = LivenessTicker(label, ctx.config.terminal.liveness_interval_seconds)
    ticker.start()
    try:
        return runner.run(prompt, cli_config, label)
    finally:
        ticker.stop()  # 关键变量：结果被使用前心跳线程已结束


def _check_budget_before_run(ctx: RunContext) -> None:
    limits = ctx.config.limits
    if limits.budget_usd <= 0:
        return
    check_budget(total_cost(load_usage(ctx.config.usage_file)), limits.budget_usd, limits.budget_warn_pct)


def invoke_agent(
    ctx: RunContext,
    prompt: str,
    *,
    label: str,
    phase: str,
    pass_number: int,
    model: str,
    runner: CLIRunner | None = None,
) -> AgentResult:
    """Run one agent invocation to completion; never returns a failed run.

    Raises:
        AgentProcessError: spawn failure, non-zero exit, malformed stream or error result
        BudgetExceededError: the recorded spend already reached limits.budget_usd
    """
    config = ctx.config
    _check_budget_before_run(ctx)
    runner = runner or create_cli_runner(config.agent.cli)
    cli_config = CLIConfig(
        command=config.agent.command,
        model=model,
        work_dir=config.project_root,
        extra_args=config.agent.extra_args,
    )

    _log(f"\n> {label} ({runner.name}, model {model})")
    log_event("agent_start", trace_id=ctx.trace_id, label=label, phase=phase, pass_number=pass_number, model=model)
    try:
        result = _run_cli(ctx, runner, prompt, cli_config, label)
    except AgentProcessError as exc:
        log_event(
            "agent_failed",
            trace_id=ctx.trace_id,
            label=label,
            phase=phase,
            pass_number=pass_number,
            exit_code=exc.exit_code,
            temporary=exc.temporary,
        )
        hint = " (looks temporary; wait and run `lisa resume`)" if exc.temporary else ""
        _log(f"x {label} failed{hint}")
        raise

    stats = result.stats
    _log(
        f"v {label} ({_format_elapsed(result.elapsed_seconds)}, {stats.tool_count} tools, "
        f"{stats.file_writes} files written, {stats.test_runs} test runs)"
    )

    usage = result.usage
    record_usage(
        config.usage_file,
        make_usage_entry(
            phase=phase,
            pass_number=pass_number,
            model=model,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            cache_read_tokens=usage.cache_read_tokens,
            cache_creation_tokens=usage.cache_creation_tokens,
            cost_usd=usage.cost_usd,
            elapsed_seconds=result.elapsed_seconds,
        ),
    )
    log_event(
        "agent_invocation",
        trace_id=ctx.trace_id,
        label=label,
        phase=phase,
        pass_number=pass_number,
        model=model,
        tool_count=stats.tool_count,
        file_writes=stats.file_writes,
        test_runs=stats.test_runs,
        cost_usd=usage.cost_usd,
        elapsed_seconds=round(result.elapsed_seconds, 3),
    )

    limits = config.limits
    if limits.budget_usd > 0:
        spent = total_cost(load_usage(config.usage_file))
        if spent >= limits.budget_usd:  # 关键分支：本次结果保留，下一次调用前才拦截
            _log(f"lisa: warning: budget of ${limits.budget_usd:.2f} reached; the next agent run will stop")
        elif check_budget(spent, limits.budget_usd, limits.budget_warn_pct) == "warning":
            _log(f"lisa: warning: ${spent:.2f} of ${limits.budget_usd:.2f} budget used")
    return result


def run_agent_step(
    ctx: RunContext,
    *,
    prompt_name: str,
    label: str,
    pass_number: int,
    extra_context: tuple[str, ...] = (),
    guidance: str | None = None,
) -> AgentResult:
    """Render the prompt for `prompt_name` and invoke the agent with that phase's model."""
    prompt = build_prompt(
        ctx.config,
        prompt_name,
        pass_number=pass_number,
        extra_context=extra_context,
        guidance=guidance,
    )
    return invoke_agent(
        ctx,
        prompt,
        label=label,
        phase=prompt_name,
        pass_number=pass_number,
        model=ctx.config.models.for_phase(prompt_name),
    )
