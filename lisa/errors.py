from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .types import ViolationRecord


class OrchestratorError(RuntimeError):
    """Base error for orchestrator failures (fail fast, no silent fallback)."""


class ConfigError(OrchestratorError):
    """lisa.toml, the state document or a prompt template is missing or malformed."""


class AgentProcessError(OrchestratorError):
    """The agent process failed: spawn error, non-zero exit, malformed stream or error result.

    `temporary` only tunes the operator message (rate limit, overload...); the
    orchestrator never retries an agent run on its own.
    """

    def __init__(
        self,
        message: str,
        *,
        label: str,
        exit_code: int | None = None,
        temporary: bool = False,
    ):
        super().__init__(message)
        self.label = label
        self.exit_code = exit_code
        self.temporary = temporary


class EnforcementViolation(OrchestratorError):
    """The isolation audit found forbidden accesses; aborts the current phase."""

    def __init__(self, violations: "list[ViolationRecord]", *, phase: str):
        self.violations = list(violations)
        self.phase = phase
        lines = [f"{phase}: {len(self.violations)} isolation violation(s) detected"]
        for v in self.violations:
            lines.append(f"  - [{v.rule}] {v.tool or 'diff'}: {v.target}")
        super().__init__("\n".join(lines))


class GitOperationError(OrchestratorError):
    """A git subprocess (commit, push, tag, diff, revert) failed."""


class TaskParseError(OrchestratorError):
    """The task ledger is missing or yields no tasks at all."""


class StallExhausted(OrchestratorError):
    """The operator aborted the build loop after a stall or an exhausted iteration budget."""


class BudgetExceededError(OrchestratorError):
    """Cumulative agent cost reached limits.budget_usd."""
