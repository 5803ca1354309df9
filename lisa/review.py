"""人工审阅关卡（scope / pass / block / environment）

所有关卡同步阻塞等待输入；`auto=True` 时不询问，直接取最保守的分支：
scope 只做确认、pass 选 continue（绝不 accept）、block 选 skip（绝不 fix）。
"""

from __future__ import annotations

import os
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path

from .config import (
    ENVIRONMENT_RESOLUTION_FILE_NAME,
    SCOPE_FEEDBACK_FILE_NAME,
    LisaConfig,
)
from .errors import OrchestratorError
from .file_ops import _atomic_write_text, _log, _read_text, _rel_path
from .prompt_builder import redirect_file
from .tasks import Task, TaskCounts
from .types import BlockDecision, EnvironmentDecision, PassDecision, ScopeDecision


@dataclass(frozen=True)
class GateOutcome:
    decision: str
    guidance: str | None = None  # 关键变量：redirect / refine 时的人工指导


def _ask(prompt: str, choices: dict[str, str]) -> str:
    """循环读取输入直到命中合法选项"""
    while True:
        try:
            raw = input(prompt).strip().lower()  # 关键变量：用户输入
        except EOFError as exc:  # 关键分支：stdin 关闭，无法继续等待
            raise OrchestratorError(
                "Input closed while waiting for a review decision; run `lisa resume` in a terminal"
            ) from exc
        if raw in choices:
            return choices[raw]
        print("Please answer with one of the bracketed letters.", flush=True)


def _wait_for_enter(message: str) -> None:
    try:
        input(message)
    except EOFError as exc:
        raise OrchestratorError("Input closed while waiting for confirmation") from exc


def _open_editor(path: Path) -> None:
    editor = os.environ.get("VISUAL") or os.environ.get("EDITOR") or "vi"
    try:
        proc = subprocess.run([*shlex.split(editor), str(path)])
    except OSError as exc:
        raise OrchestratorError(f"Unable to start editor {editor!r}: {exc}") from exc
    if proc.returncode != 0:
        _log(f"lisa: warning: editor {editor!r} exited with code {proc.returncode}")


def extract_guidance(text: str, template: str = "") -> str:
    """Lines that are not blank, not HTML comments and not copied from `template`.

    Headings the operator writes are guidance; only the seeded ones are dropped.
    """
    seeded = {line.strip() for line in template.splitlines() if line.strip()}  # 关键变量：模板自带的行
    kept: list[str] = []
    in_comment = False
    for line in text.splitlines():
        stripped = line.strip()
        if in_comment:
            if "-->" in stripped:
                in_comment = False
            continue
        if stripped.startswith("<!--"):
            if "-->" not in stripped:
                in_comment = True
            continue
        if not stripped or stripped in seeded:
            continue
        kept.append(line.rstrip())
    return "\n".join(kept).strip()


def _collect_guidance(path: Path, template: str) -> str | None:
    """写入模板、打开编辑器；未编辑（只有模板）视为没有指导并删除文件"""
    _atomic_write_text(path, template)
    _open_editor(path)
    guidance = extract_guidance(_read_text(path), template) if path.exists() else ""
    if not guidance:  # 关键分支：未编辑的模板不是指导
        if path.exists():
            path.unlink()
        return None
    return guidance


def redirect_template(pass_number: int) -> str:
    return (
        f"# Human Redirect: Pass {pass_number}\n"
        "\n"
        "<!-- Write your guidance for the next pass below. -->\n"
        "<!-- Comment lines are ignored; leave the file as is to cancel. -->\n"
        "\n"
    )


def scope_feedback_template() -> str:
    return (
        "# Scope Feedback\n"
        "\n"
        "<!-- Describe what the scoping agent should change. -->\n"
        "<!-- Comment lines are ignored; leave the file as is to cancel. -->\n"
        "\n"
    )


def _list_artifacts(directory: Path, project_root: Path) -> None:
    if not directory.is_dir():
        return
    for path in sorted(p for p in directory.rglob("*") if p.is_file()):
        print(f"    {_rel_path(path, project_root)}", flush=True)


def scope_gate(config: LisaConfig, *, auto: bool) -> GateOutcome:
    if auto:  # 关键分支：scope 关卡只是确认
        _log("lisa: scope review skipped (no pause); proceeding")
        return GateOutcome(decision="proceed")

    print("\n========== SCOPE REVIEW ==========", flush=True)
    print("Scope artifacts:", flush=True)
    _list_artifacts(config.pass_dir(0), config.project_root)
    feedback_path = config.pass_dir(0) / SCOPE_FEEDBACK_FILE_NAME
    while True:
        decision: ScopeDecision = _ask(  # type: ignore[assignment]
            "[A]pprove / [E]dit then approve / [R]efine with feedback / [Q]uit: ",
            {"a": "proceed", "approve": "proceed", "e": "edit", "edit": "edit",
             "r": "refine", "refine": "refine", "q": "quit", "quit": "quit"},
        )
        if decision == "edit":
            _wait_for_enter("Edit the scope files, then press Enter to continue...")
            return GateOutcome(decision="edit")
        if decision == "refine":
            feedback = _collect_guidance(feedback_path, scope_feedback_template())
            if feedback is None:
                print("No feedback written; back to the menu.", flush=True)
                continue
            return GateOutcome(decision="refine", guidance=feedback)
        return GateOutcome(decision=decision)


def environment_gate(config: LisaConfig, *, auto: bool) -> EnvironmentDecision | None:
    """Offered after scoping when the agent listed environment requirements."""
    path = config.pass_dir(0) / ENVIRONMENT_RESOLUTION_FILE_NAME
    if not path.exists() or not _read_text(path).strip():
        return None
    if auto:  # 关键分支：自动模式不假装环境已就绪
        _log(f"lisa: warning: environment requirements pending, see {_rel_path(path, config.project_root)}")
        return "skip"

    print("\n========== ENVIRONMENT ==========", flush=True)
    print(_read_text(path).rstrip(), flush=True)
    decision: EnvironmentDecision = _ask(  # type: ignore[assignment]
        "[F]ix (install now, then press Enter) / [S]kip: ",
        {"f": "fix", "fix": "fix", "s": "skip", "skip": "skip"},
    )
    if decision == "fix":
        _wait_for_enter("Resolve the environment, then press Enter to continue...")
    return decision


def pass_gate(config: LisaConfig, pass_number: int, *, auto: bool) -> GateOutcome:
    if auto:  # 关键分支：自动模式绝不 accept
        _log(f"lisa: pass {pass_number} review skipped (no pause); continuing")
        return GateOutcome(decision="continue")

    print(f"\n========== PASS {pass_number} REVIEW ==========", flush=True)
    print("Pass artifacts:", flush=True)
    _list_artifacts(config.pass_dir(pass_number), config.project_root)
    path = redirect_file(config, pass_number)
    while True:
        decision: PassDecision = _ask(  # type: ignore[assignment]
            "[A]ccept and finalize / [C]ontinue to next pass / [R]edirect with guidance: ",
            {"a": "accept", "accept": "accept", "c": "continue", "continue": "continue",
             "r": "redirect", "redirect": "redirect"},
        )
        if decision != "redirect":
            return GateOutcome(decision=decision)
        guidance = _collect_guidance(path, redirect_template(pass_number))
        if guidance is None:
            print("Redirect file left unedited; no redirect recorded.", flush=True)
            continue
        _log(f"lisa: redirect guidance saved to {_rel_path(path, config.project_root)}")
        return GateOutcome(decision="redirect", guidance=guidance)


def block_gate(
    *,
    pass_number: int,
    counts: TaskCounts,
    blocked: list[Task],
    reason: str,
    auto: bool,
) -> BlockDecision:
    if auto:  # 关键分支：自动模式绝不 fix
        _log(f"lisa: build {reason} in pass {pass_number} (no pause); skipping remaining tasks")
        return "skip"

    print(f"\n========== BUILD {reason.upper()} (pass {pass_number}) ==========", flush=True)
    print(
        f"tasks: {counts.done} done, {counts.todo + counts.in_progress} remaining, "
        f"{counts.blocked} blocked, {counts.total} total",
        flush=True,
    )
    for task in blocked:
        print(f"  BLOCKED {task.name}", flush=True)
    decision: BlockDecision = _ask(  # type: ignore[assignment]
        "[F]ix (edit the plan, then continue) / [S]kip remaining tasks / [X] abort: ",
        {"f": "fix", "fix": "fix", "s": "skip", "skip": "skip", "x": "abort", "abort": "abort"},
    )
    if decision == "fix":
        _wait_for_enter("Unblock the tasks in the plan, then press Enter to resume the build loop...")
    return decision
