from __future__ import annotations

import sys
from dataclasses import dataclass
from typing import Literal, TypedDict

if sys.version_info >= (3, 11):
    from typing import NotRequired
else:
    from typing_extensions import NotRequired

PhaseKind = Literal["refine", "ddv_red", "build", "execute", "validate"]  # 关键变量：pass 内阶段枚举（有序）
StateKind = Literal[
    "not_started",
    "scoping",
    "scope_review",
    "scope_complete",
    "in_pass",
    "pass_review",
    "complete",
]  # 关键变量：状态机种类（终态/边界态显式建模）
PhaseStatus = Literal["in_progress", "complete"]  # 关键变量：阶段状态
TaskStatus = Literal["TODO", "IN_PROGRESS", "DONE", "BLOCKED"]  # 关键变量：任务状态枚举
ToolCategory = Literal["read", "write", "edit", "command", "search", "subagent", "other"]  # 关键变量：工具调用分类
AccessVerdict = Literal["forbidden", "allowed", "unknown"]  # 关键变量：访问策略判定

ScopeDecision = Literal["proceed", "edit", "refine", "quit"]  # 关键变量：scope gate 决策
PassDecision = Literal["accept", "continue", "redirect"]  # 关键变量：pass gate 决策
BlockDecision = Literal["fix", "skip", "abort"]  # 关键变量：block gate 决策
EnvironmentDecision = Literal["fix", "skip"]  # 关键变量：environment gate 决策
BuildOutcome = Literal["completed", "stopped_by_user", "exhausted"]  # 关键变量：构建循环结果

PASS_PHASES: tuple[PhaseKind, ...] = ("refine", "ddv_red", "build", "execute", "validate")  # 关键变量：阶段执行顺序
STATE_KINDS: tuple[StateKind, ...] = (
    "not_started",
    "scoping",
    "scope_review",
    "scope_complete",
    "in_pass",
    "pass_review",
    "complete",
)
PHASE_STATUSES: tuple[PhaseStatus, ...] = ("in_progress", "complete")
TASK_STATUSES: tuple[TaskStatus, ...] = ("TODO", "IN_PROGRESS", "DONE", "BLOCKED")

PHASE_LABELS: dict[PhaseKind, str] = {
    "refine": "Refine",
    "ddv_red": "DDV Red",
    "build": "Build",
    "execute": "Execute",
    "validate": "Validate",
}


@dataclass(frozen=True)
class ViolationRecord:
    rule: str  # 关键变量：违规规则（isolation_read/isolation_write/isolation_command）
    target: str  # 关键变量：违规路径或命令
    tool: str | None = None  # 关键变量：工具名（diff 检测时为空）
    detail: str = ""


class StreamUsage(TypedDict, total=False):
    input_tokens: int
    output_tokens: int
    cache_read_input_tokens: int
    cache_creation_input_tokens: int


class StreamResultEvent(TypedDict):
    """`type == "result"` line of the claude stream-json protocol."""
    type: str
    result: NotRequired[str]
    is_error: NotRequired[bool]
    total_cost_usd: NotRequired[float]
    usage: NotRequired[StreamUsage]


class UsageEntry(TypedDict):
    ts: str  # 关键变量：记录时间
    phase: str  # 关键变量：阶段标签
    pass_number: int  # 关键变量：pass 编号
    model: str  # 关键变量：模型
    input_tokens: int
    output_tokens: int
    cache_read_tokens: int
    cache_creation_tokens: int
    cost_usd: float  # 关键变量：本次调用成本
    elapsed_seconds: float
