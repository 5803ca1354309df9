from __future__ import annotations

import argparse
import traceback
from datetime import datetime
from pathlib import Path

from .config import LisaConfig, load_config
from .errors import ConfigError, OrchestratorError
from .file_ops import _atomic_write_text, _bind_log_file, _log, _rel_path
from .git_ops import is_git_repo
from .orchestrator import resume, run, run_scope
from .runtime_context import build_run_context
from .state import load_state
from .tasks import count_tasks, load_tasks, unassigned_tasks
from .telemetry import _bind_events_file, log_event, new_trace_id
from .usage import load_usage, pass_cost, total_cost


def _non_negative_int(raw: str) -> int:
    try:
        value = int(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected an integer, got {raw!r}") from exc
    if value < 0:
        raise argparse.ArgumentTypeError(f"must be >= 0, got {value}")
    return value


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lisa",
        description="Resumable, human-gated spiral orchestrator for the claude CLI",
    )  # 关键变量：CLI 解析器
    parser.add_argument(
        "-C",
        "--project-root",
        type=Path,
        default=None,
        help="Project directory containing lisa.toml (default: current directory).",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    scope = sub.add_parser("scope", help="Run the scoping phase only.")
    scope.add_argument("--no-pause", action="store_true", help="Do not stop at review gates.")
    scope.add_argument("-v", "--verbose", action="store_true", help="Show every tool call instead of a summary line.")

    run_parser = sub.add_parser("run", help="Scope if needed, then run spiral passes.")
    run_parser.add_argument(
        "--max-passes",
        type=_non_negative_int,
        default=None,
        help="Number of passes to run (0 runs none; default: [limits] max_spiral_passes).",
    )
    run_parser.add_argument("--no-pause", action="store_true", help="Do not stop at review gates.")
    run_parser.add_argument("-v", "--verbose", action="store_true", help="Show every tool call instead of a summary line.")

    resume_parser = sub.add_parser("resume", help="Continue from the persisted state.")
    resume_parser.add_argument("--no-pause", action="store_true", help="Do not stop at review gates.")
    resume_parser.add_argument("-v", "--verbose", action="store_true", help="Show every tool call instead of a summary line.")

    sub.add_parser("status", help="Show state, task counts and spend.")
    return parser


def _print_status(config: LisaConfig) -> None:
    state = load_state(config.state_file)
    print(f"Project: {config.project_name}")
    print(f"State:   {state.describe()}")

    if config.plan_file.exists():
        tasks, _ = load_tasks(config.plan_file)
        counts = count_tasks(tasks)
        print(
            f"Tasks:   {counts.done} done, {counts.in_progress} in progress, {counts.todo} todo, "
            f"{counts.blocked} blocked ({counts.total} total)"
        )
        for task in unassigned_tasks(tasks):
            print(f"         unassigned: {task.name}")
    else:
        print(f"Tasks:   no plan yet ({_rel_path(config.plan_file, config.project_root)})")

    entries = load_usage(config.usage_file)
    if entries:
        print(f"Spend:   ${total_cost(entries):.2f} over {len(entries)} agent run(s)")
        for pass_number in sorted({e["pass_number"] for e in entries}):
            print(f"         pass {pass_number}: ${pass_cost(entries, pass_number):.2f}")
    if config.limits.budget_usd > 0:
        print(f"Budget:  ${config.limits.budget_usd:.2f}")

    if config.spiral_dir.is_dir():
        for pass_dir in sorted(config.spiral_dir.glob("pass-*")):
            files = sorted(p.name for p in pass_dir.iterdir() if p.is_file())
            print(f"  {pass_dir.name}: {', '.join(files) if files else '(empty)'}")
    if config.last_error_file.exists():
        print(f"Last run failed; details in {_rel_path(config.last_error_file, config.project_root)}")


def _write_last_error(config: LisaConfig, *, command: str, exc: BaseException) -> None:
    try:
        state_text = load_state(config.state_file).describe()
    except ConfigError as state_exc:
        state_text = f"unreadable ({state_exc})"
    timestamp = datetime.now().isoformat(timespec="seconds")
    content = (
        "# Last Error\n\n"
        f"- Time: {timestamp}\n"
        f"- Command: lisa {command}\n"
        f"- State: {state_text}\n"
        f"- Error: {type(exc).__name__}\n\n"
        "```\n"
        f"{exc}\n"
        "```\n"
    )
    _atomic_write_text(config.last_error_file, content)


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)  # 关键变量：解析后的参数
    project_root = (args.project_root or Path.cwd()).resolve()

    try:
        config = load_config(project_root)
    except ConfigError as exc:
        print(f"lisa: {exc}", flush=True)
        return 1

    if args.command == "status":  # 关键分支：只读命令，不绑定日志、不写任何文件
        try:
            _print_status(config)
        except OrchestratorError as exc:
            print(f"lisa: {exc}", flush=True)
            return 1
        return 0

    if not is_git_repo(project_root):
        print(f"lisa: {project_root} is not a git repository; run `git init` first", flush=True)
        return 1

    _bind_log_file(config.log_file)
    _bind_events_file(config.events_file)
    ctx = build_run_context(
        config,
        trace_id=new_trace_id(),
        no_pause=args.no_pause,
        verbose=args.verbose,
    )
    log_event("run_start", trace_id=ctx.trace_id, command=args.command, auto=ctx.auto)

    try:
        if args.command == "scope":
            run_scope(ctx)
        elif args.command == "run":
            run(ctx, max_passes=args.max_passes)
        else:
            resume(ctx)
    except OrchestratorError as exc:  # 关键分支：未恢复的编排错误，保存现场后退出
        _write_last_error(config, command=args.command, exc=exc)
        log_event("run_error", trace_id=ctx.trace_id, error_type=type(exc).__name__, error=str(exc))
        _log(f"\nlisa: error: {exc}")
        _log("lisa: state has been saved; fix the problem and run `lisa resume`")
        return 1
    except KeyboardInterrupt:
        _log("\nlisa: interrupted; run `lisa resume` to continue from the last saved phase")
        log_event("run_interrupted", trace_id=ctx.trace_id)
        return 130
    except Exception as exc:
        _write_last_error(config, command=args.command, exc=exc)
        log_event("run_error", trace_id=ctx.trace_id, error_type=type(exc).__name__, error=str(exc))
        _log(traceback.format_exc())
        raise
    log_event("run_end", trace_id=ctx.trace_id, command=args.command)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
