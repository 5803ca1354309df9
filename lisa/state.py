from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path

from .errors import ConfigError
from .file_ops import _atomic_write_text, _read_text
from .types import (
    PASS_PHASES,
    PHASE_LABELS,
    PHASE_STATUSES,
    STATE_KINDS,
    PhaseKind,
    PhaseStatus,
    StateKind,
)

STATE_SCHEMA_VERSION = 1  # 关键变量：状态文档版本

_PAYLOAD_KEYS = ("schema_version", "state", "pass", "phase", "status", "scope", "iteration")  # 关键变量：字段顺序（规范化输出）
_SCOPE_KINDS = {"not_started", "scoping", "scope_review", "scope_complete"}  # 关键变量：pass 0 的状态


@dataclass(frozen=True)
class PersistedState:
    """Position of the spiral: the single resume point on disk.

    `phase`/`status` exist only for `in_pass`, `iteration` only for the build
    phase. Boundary states (`scope_complete`, `pass_review`, `complete`) are
    kinds of their own instead of magic values in the numeric fields.
    """

    kind: StateKind
    pass_number: int = 0
    phase: PhaseKind | None = None
    status: PhaseStatus | None = None
    scope: str | None = None
    iteration: int | None = None

    @classmethod
    def not_started(cls) -> "PersistedState":
        return cls(kind="not_started")

    @classmethod
    def scoping(cls) -> "PersistedState":
        return cls(kind="scoping")

    @classmethod
    def scope_review(cls) -> "PersistedState":
        return cls(kind="scope_review")

    @classmethod
    def scope_complete(cls) -> "PersistedState":
        return cls(kind="scope_complete")

    @classmethod
    def in_pass(
        cls,
        pass_number: int,
        phase: PhaseKind,
        status: PhaseStatus,
        *,
        iteration: int | None = None,
        scope: str | None = None,
    ) -> "PersistedState":
        return cls(
            kind="in_pass",
            pass_number=pass_number,
            phase=phase,
            status=status,
            scope=scope,
            iteration=iteration,
        )

    @classmethod
    def pass_review(cls, pass_number: int) -> "PersistedState":
        return cls(kind="pass_review", pass_number=pass_number)

    @classmethod
    def complete(cls, final_pass: int) -> "PersistedState":
        return cls(kind="complete", pass_number=final_pass)

    def describe(self) -> str:
        if self.kind == "not_started":
            return "Not started"
        if self.kind == "scoping":
            return "Scoping"
        if self.kind == "scope_review":
            return "Scope review"
        if self.kind == "scope_complete":
            return "Scope complete"
        if self.kind == "pass_review":
            return f"Pass {self.pass_number} review"
        if self.kind == "complete":
            return f"Complete (accepted after pass {self.pass_number})"
        assert self.phase is not None
        text = f"Pass {self.pass_number} / {PHASE_LABELS[self.phase]}"
        if self.iteration is not None:
            text += f" iteration {self.iteration}"
        if self.scope:
            text += f" [{self.scope}]"
        if self.status == "complete":
            text += " (complete)"
        return text


def validate_state(state: PersistedState) -> None:
    """Raise ValueError when the fields contradict the state kind."""
    if state.kind not in STATE_KINDS:  # 关键分支：非法状态种类
        raise ValueError(f"state kind invalid: {state.kind!r}")
    if isinstance(state.pass_number, bool) or not isinstance(state.pass_number, int):
        raise ValueError(f"pass must be an integer: {state.pass_number!r}")
    if state.kind in _SCOPE_KINDS:
        if state.pass_number != 0:
            raise ValueError(f"{state.kind} must have pass 0, got {state.pass_number}")
    elif state.pass_number < 1:
        raise ValueError(f"{state.kind} must have pass >= 1, got {state.pass_number}")

    if state.kind == "in_pass":
        if state.phase not in PASS_PHASES:  # 关键分支：阶段必须在闭集合内
            raise ValueError(f"phase invalid: {state.phase!r}")
        if state.status not in PHASE_STATUSES:
            raise ValueError(f"status invalid: {state.status!r}")
        if state.phase == "build":
            if (
                isinstance(state.iteration, bool)
                or not isinstance(state.iteration, int)
                or state.iteration < 1
            ):
                raise ValueError(f"build phase requires iteration >= 1, got {state.iteration!r}")
        elif state.iteration is not None:
            raise ValueError(f"iteration is only allowed in the build phase, got phase {state.phase!r}")
    else:
        if state.phase is not None or state.status is not None or state.iteration is not None:
            raise ValueError(f"{state.kind} must not carry phase/status/iteration")
        if state.scope is not None:
            raise ValueError(f"{state.kind} must not carry a scope")
    if state.scope is not None and (not isinstance(state.scope, str) or not state.scope.strip()):
        raise ValueError(f"scope must be a non-empty string, got {state.scope!r}")


def _state_to_payload(state: PersistedState) -> dict[str, object]:
    return {
        "schema_version": STATE_SCHEMA_VERSION,
        "state": state.kind,
        "pass": state.pass_number,
        "phase": state.phase,
        "status": state.status,
        "scope": state.scope,
        "iteration": state.iteration,
    }


def dump_state(state: PersistedState) -> str:
    validate_state(state)
    return json.dumps(_state_to_payload(state), ensure_ascii=True, indent=2) + "\n"


def parse_state(raw: str, *, source: str = "state document") -> PersistedState:
    if not raw.strip():  # 关键分支：空文件直接失败
        raise ConfigError(f"{source} is empty")
    try:  # 关键分支：解析 JSON
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"{source} is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigError(f"{source} must be a JSON object")

    unknown = sorted(set(payload) - set(_PAYLOAD_KEYS))
    if unknown:  # 关键分支：未知字段视为损坏
        raise ConfigError(f"{source} has unknown field(s): {', '.join(unknown)}")
    missing = [key for key in _PAYLOAD_KEYS if key not in payload]
    if missing:
        raise ConfigError(f"{source} is missing field(s): {', '.join(missing)}")
    if payload["schema_version"] != STATE_SCHEMA_VERSION:
        raise ConfigError(f"{source} schema_version unsupported: {payload['schema_version']!r}")

    state = PersistedState(
        kind=payload["state"],
        pass_number=payload["pass"],
        phase=payload["phase"],
        status=payload["status"],
        scope=payload["scope"],
        iteration=payload["iteration"],
    )
    try:
        validate_state(state)
    except ValueError as exc:  # 关键分支：字段与状态种类矛盾即损坏，不允许"从头再来"
        raise ConfigError(f"{source} is inconsistent: {exc}") from exc
    return state


def load_state(path: Path) -> PersistedState:
    if not path.exists():  # 关键分支：无文件即尚未开始
        return PersistedState.not_started()
    return parse_state(_read_text(path), source=str(path))


def save_state(path: Path, state: PersistedState) -> None:
    _atomic_write_text(path, dump_state(state))
