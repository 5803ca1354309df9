from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from .errors import TaskParseError
from .file_ops import _log, _read_text, _sha256_text
from .types import TASK_STATUSES, TaskStatus

# `### Task 3: Title`, `## task 2a - Title`, `#### TASK 1.2`; `## Tasks` is not a task heading.
_TASK_HEADING_RE = re.compile(r"^ {0,3}(?P<hashes>#{2,4})\s+task\b\s*(?P<rest>.*)$", re.IGNORECASE)
_ANY_HEADING_RE = re.compile(r"^ {0,3}(?P<hashes>#{1,6})\s")
_TASK_ID_RE = re.compile(r"^(?P<id>[A-Za-z0-9][\w.\-]*)\s*[:.\-]?\s*(?P<title>.*)$")

# `- **Status:** DONE`, `**Status**: DONE`, `Status: DONE`, `* **spiral pass:** 2`
_ATTRIBUTE_RE = re.compile(
    r"^\s*(?:[-*+]\s+)?\**\s*(?P<key>[A-Za-z][A-Za-z ]*?)\s*\**\s*:\s*\**\s*(?P<value>.*?)\s*$"
)
_DEPENDENCY_RE = re.compile(r"^(?:task\s*)?#?\s*(?P<id>[A-Za-z0-9][\w.\-]*)", re.IGNORECASE)

_STATUS_KEYS = {"status"}
_PASS_KEYS = {"pass", "spiral pass"}
_DEPENDENCY_KEYS = {"dependencies", "depends on", "deps"}
_UNASSIGNED_VALUES = {"", "unassigned", "none", "tbd", "-", "n/a"}
_NO_DEPENDENCY_VALUES = {"", "none", "-", "n/a"}
_REMAINING_STATUSES = {"TODO", "IN_PROGRESS"}


@dataclass(frozen=True)
class Task:
    task_id: str
    title: str
    status: TaskStatus
    pass_number: int | None  # None: no pass assigned, never eligible
    dependencies: tuple[str, ...]
    body: str

    @property
    def name(self) -> str:
        return f"Task {self.task_id}: {self.title}" if self.title else f"Task {self.task_id}"

    def is_assigned_up_to(self, current_pass: int) -> bool:
        return self.pass_number is not None and self.pass_number <= current_pass


@dataclass(frozen=True)
class TaskCounts:
    total: int
    todo: int
    in_progress: int
    done: int
    blocked: int
    unassigned: int


def _normalise_key(key: str) -> str:
    return " ".join(key.lower().split())


def _parse_status(value: str) -> str | None:
    token = re.split(r"[^A-Za-z_\- ]", value, maxsplit=1)[0].strip()
    token = re.sub(r"[\s\-]+", "_", token).upper()
    return token if token in TASK_STATUSES else None


def _parse_pass(value: str) -> tuple[bool, int | None]:
    """Return (ok, pass_number); unassigned markers yield (True, None)."""
    cleaned = value.strip().strip("*").strip()
    if cleaned.lower() in _UNASSIGNED_VALUES:
        return True, None
    match = re.match(r"^(?:pass\s*)?(\d+)\b", cleaned, re.IGNORECASE)
    if match is None:
        return False, None
    return True, int(match.group(1))


def _parse_dependencies(value: str) -> tuple[str, ...] | None:
    cleaned = value.strip().strip("*").strip()
    if cleaned.lower() in _NO_DEPENDENCY_VALUES:
        return ()
    deps: list[str] = []
    for item in re.split(r"[,;]", cleaned):
        item = item.strip()
        if not item:
            continue
        match = _DEPENDENCY_RE.match(item)
        if match is None:  # 关键分支：无法识别的依赖项视为块损坏
            return None
        deps.append(match.group("id").rstrip(".-"))
    return tuple(deps)


def _split_blocks(document: str) -> list[tuple[int, str, list[str]]]:
    """Split the document into (line_no, heading_rest, body_lines) task blocks."""
    blocks: list[tuple[int, str, list[str]]] = []
    # 关键变量：文档开头/任务前的内容不属于任何任务
    current: tuple[int, str, list[str]] | None = None
    current_level = 0
    in_fence = False

    for line_no, line in enumerate(document.splitlines(), start=1):
        if line.lstrip().startswith("```"):  # 关键分支：代码块内的 `#` 不是标题
            in_fence = not in_fence
        if not in_fence:
            heading = _TASK_HEADING_RE.match(line)
            if heading is not None:
                current = (line_no, heading.group("rest").strip(), [])
                current_level = len(heading.group("hashes"))
                blocks.append(current)
                continue
            other = _ANY_HEADING_RE.match(line)
            if other is not None and current is not None and len(other.group("hashes")) <= current_level:
                current = None  # 关键分支：同级或更高级标题结束当前任务块
                continue
        if current is not None:
            current[2].append(line)
    return blocks


def parse_tasks_with_diagnostics(document: str) -> tuple[list[Task], list[str]]:
    blocks = _split_blocks(document)
    diagnostics: list[str] = []
    tasks: list[Task] = []
    seen: set[str] = set()

    for line_no, rest, body_lines in blocks:
        where = f"line {line_no}"
        id_match = _TASK_ID_RE.match(rest)
        if id_match is None:
            diagnostics.append(f"{where}: task heading has no id: {rest!r}")
            continue
        task_id = id_match.group("id").rstrip(".-")
        title = id_match.group("title").strip()

        status: str | None = None
        pass_ok, pass_number = True, None
        dependencies: tuple[str, ...] | None = ()
        problem: str | None = None
        seen_keys: set[str] = set()
        in_fence = False

        for line in body_lines:
            if line.lstrip().startswith("```"):
                in_fence = not in_fence
                continue
            if in_fence:
                continue
            attr = _ATTRIBUTE_RE.match(line)
            if attr is None:
                continue
            key = _normalise_key(attr.group("key"))
            value = attr.group("value").strip("*").strip()
            if key in _STATUS_KEYS and "status" not in seen_keys:
                seen_keys.add("status")
                status = _parse_status(value)
                if status is None:
                    problem = f"unknown status {value!r}"
            elif key in _PASS_KEYS and "pass" not in seen_keys:
                seen_keys.add("pass")
                pass_ok, pass_number = _parse_pass(value)
                if not pass_ok:
                    problem = f"pass is not an integer: {value!r}"
            elif key in _DEPENDENCY_KEYS and "deps" not in seen_keys:
                seen_keys.add("deps")
                dependencies = _parse_dependencies(value)
                if dependencies is None:
                    problem = f"unrecognised dependencies: {value!r}"

        if problem is None and "status" not in seen_keys:
            problem = "missing status"
        if problem is None and task_id in seen:
            problem = "duplicate task id"
        if problem is not None:  # 关键分支：损坏的任务块跳过并记录诊断
            diagnostics.append(f"{where}: Task {task_id}: {problem}; block skipped")
            continue

        seen.add(task_id)
        tasks.append(
            Task(
                task_id=task_id,
                title=title,
                status=status,  # type: ignore[arg-type]
                pass_number=pass_number,
                dependencies=dependencies or (),
                body="\n".join(body_lines).strip(),
            )
        )
    return tasks, diagnostics


def parse_tasks(document: str) -> list[Task]:
    """Parse the task ledger; a non-empty ledger without any valid task is an error."""
    tasks, diagnostics = parse_tasks_with_diagnostics(document)
    for message in diagnostics:
        _log(f"lisa: plan warning: {message}")
    if not tasks and document.strip():
        detail = f" ({len(diagnostics)} malformed block(s))" if diagnostics else ""
        raise TaskParseError(f"Task ledger is not empty but contains no parseable task{detail}")
    return tasks


def load_tasks(plan_file: Path) -> tuple[list[Task], str]:
    if not plan_file.exists():
        raise TaskParseError(f"Task ledger not found: {plan_file}")
    text = _read_text(plan_file)
    return parse_tasks(text), text


def ledger_fingerprint(document: str) -> str:
    return _sha256_text(document.replace("\r\n", "\n"))


def remaining_tasks(tasks: list[Task], current_pass: int) -> list[Task]:
    return [t for t in tasks if t.is_assigned_up_to(current_pass) and t.status in _REMAINING_STATUSES]


def blocked_tasks(tasks: list[Task], current_pass: int) -> list[Task]:
    return [t for t in tasks if t.is_assigned_up_to(current_pass) and t.status == "BLOCKED"]


def unassigned_tasks(tasks: list[Task]) -> list[Task]:
    return [t for t in tasks if t.pass_number is None]


def select_next_task(tasks: list[Task], current_pass: int) -> Task | None:
    """First TODO task of the pass window whose dependencies are all DONE."""
    done = {t.task_id for t in tasks if t.status == "DONE"}
    for task in tasks:
        if task.status != "TODO" or not task.is_assigned_up_to(current_pass):
            continue
        if all(dep in done for dep in task.dependencies):
            return task
    return None


def count_tasks(tasks: list[Task], current_pass: int | None = None) -> TaskCounts:
    """Count by status; with current_pass, only tasks assigned up to that pass."""
    scoped = tasks if current_pass is None else [t for t in tasks if t.is_assigned_up_to(current_pass)]
    return TaskCounts(
        total=len(scoped),
        todo=sum(1 for t in scoped if t.status == "TODO"),
        in_progress=sum(1 for t in scoped if t.status == "IN_PROGRESS"),
        done=sum(1 for t in scoped if t.status == "DONE"),
        blocked=sum(1 for t in scoped if t.status == "BLOCKED"),
        unassigned=sum(1 for t in tasks if t.pass_number is None),
    )
