from __future__ import annotations

import os
import re
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath

from .cli import ToolCallRecord
from .errors import EnforcementViolation
from .file_ops import _log
from .git_ops import restore_path_from_head
from .repo_changes import capture_dirty_file_digests, path_under_prefix
from .types import AccessVerdict, ViolationRecord

_RULE_BY_CATEGORY = {
    "read": "isolation_read",
    "write": "isolation_write",
    "edit": "isolation_write",
    "search": "isolation_read",
    "command": "isolation_command",
}


class AccessPolicy(ABC):
    """Decides whether one logged tool call touched forbidden territory.

    The only shipped policy audits the tool-call log. Calls it cannot see into
    (sub-agents) come back as "unknown" and are reported as audit gaps.
    """

    @abstractmethod
    def classify(self, record: ToolCallRecord) -> AccessVerdict:
        """Return "forbidden", "allowed" or "unknown"."""


class PathPrefixPolicy(AccessPolicy):
    def __init__(self, forbidden_prefixes: tuple[str, ...], *, project_root: Path):
        self._prefixes = tuple(p for p in (_clean_prefix(x) for x in forbidden_prefixes) if p)
        self._project_root = project_root
        self._command_patterns = [self._command_pattern(p) for p in self._prefixes]

    def _command_pattern(self, prefix: str) -> re.Pattern[str]:
        root = re.escape(self._project_root.as_posix().rstrip("/"))
        # `cat src/x`, `ls ./src`, `grep -r foo "src/"`, `cd /abs/root/src && ...`
        return re.compile(
            rf"(?:^|[\s'\"=(:]|{root}/)(?:\./)?{re.escape(prefix)}(?:/|$|[\s'\");&|])"
        )

    def _relative(self, target: str) -> str | None:
        raw = target.strip().replace("\\", "/")
        if not raw:
            return None
        path = PurePosixPath(raw)
        if path.is_absolute():
            root = PurePosixPath(self._project_root.as_posix())
            try:
                path = path.relative_to(root)
            except ValueError:
                return None  # 项目外路径不属于隔离范围
        normalised = os.path.normpath(path.as_posix())
        if normalised.startswith(".."):
            return None
        return normalised

    def _path_forbidden(self, target: str) -> bool:
        rel = self._relative(target)
        if rel is None:
            return False
        return any(path_under_prefix(rel, prefix) for prefix in self._prefixes)

    def classify(self, record: ToolCallRecord) -> AccessVerdict:
        if record.category in ("read", "write", "edit", "search"):
            return "forbidden" if self._path_forbidden(record.target) else "allowed"
        if record.category == "command":
            if any(p.search(record.target) for p in self._command_patterns):
                return "forbidden"
            return "allowed"
        if record.category == "subagent":  # 关键分支：子代理的工具调用不可见
            return "unknown"
        return "allowed"


def _clean_prefix(prefix: str) -> str:
    cleaned = prefix.strip().replace("\\", "/")
    while cleaned.startswith("./"):
        cleaned = cleaned[2:]
    return cleaned.rstrip("/")


def find_isolation_violations(
    tool_log: list[ToolCallRecord],
    policy: AccessPolicy,
) -> tuple[list[ViolationRecord], list[ToolCallRecord]]:
    """Return (violations, unaudited records) for the whole log."""
    violations: list[ViolationRecord] = []
    unknown: list[ToolCallRecord] = []
    for record in tool_log:
        verdict = policy.classify(record)
        if verdict == "forbidden":
            violations.append(
                ViolationRecord(
                    rule=_RULE_BY_CATEGORY.get(record.category, "isolation_other"),
                    target=record.target,
                    tool=record.tool,
                    detail=f"tool call #{record.order}",
                )
            )
        elif verdict == "unknown":
            unknown.append(record)
    return violations, unknown


def verify_isolation(
    tool_log: list[ToolCallRecord],
    forbidden_prefixes: tuple[str, ...],
    *,
    project_root: Path,
    phase: str = "ddv_red",
    policy: AccessPolicy | None = None,
) -> None:
    """Raise EnforcementViolation listing every forbidden access in `tool_log`."""
    policy = policy or PathPrefixPolicy(forbidden_prefixes, project_root=project_root)
    violations, unknown = find_isolation_violations(tool_log, policy)
    for record in unknown:
        _log(f"lisa: audit gap: {record.tool} call #{record.order} ({record.target!r}) cannot be inspected")
    if violations:  # 关键分支：任一违规即硬失败，绝不降级为警告
        raise EnforcementViolation(violations, phase=phase)


def find_protected_changes(
    protected_prefix: str,
    *,
    project_root: Path,
    baseline: dict[str, str | None] | None = None,
) -> list[str]:
    """Paths under `protected_prefix` that differ from HEAD and from `baseline`."""
    current = capture_dirty_file_digests(project_root=project_root, include_prefixes=(protected_prefix,))
    before = baseline or {}
    return sorted(path for path, digest in current.items() if path not in before or before[path] != digest)


def verify_protected_unmodified(
    protected_prefix: str,
    *,
    project_root: Path,
    baseline: dict[str, str | None] | None = None,
) -> bool:
    """Revert staged, unstaged and untracked changes under `protected_prefix`.

    `baseline` is a `capture_dirty_file_digests` snapshot taken before the agent ran;
    files already dirty with the same content are left alone. Returns True when
    something had to be reverted.
    """
    changed = find_protected_changes(protected_prefix, project_root=project_root, baseline=baseline)
    if not changed:
        return False
    for path in changed:
        if baseline and path in baseline:
            # 运行前已是脏文件：只能回到 HEAD，原有未提交改动无法恢复
            _log(f"lisa: warning: {path} had uncommitted changes before this iteration; restoring HEAD version")
        restore_path_from_head(path, project_root=project_root)
        _log(f"lisa: reverted protected file: {path}")
    _log(f"lisa: {len(changed)} protected file(s) under {protected_prefix} were modified and have been reverted")
    return True
