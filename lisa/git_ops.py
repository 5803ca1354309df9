from __future__ import annotations

import subprocess
import time
from pathlib import Path

from .errors import GitOperationError
from .file_ops import _append_log_line, _log

_MAX_COMMIT_RETRIES = 2  # 关键变量：提交可重试次数
_BACKOFF_BASE_SECONDS = 1.0  # 关键变量：退避基数


def _run_git(
    args: list[str],
    *,
    project_root: Path,
    check: bool = True,
) -> subprocess.CompletedProcess[str]:
    try:
        proc = subprocess.run(
            ["git", *args],
            cwd=project_root,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )
    except OSError as exc:  # 关键分支：git 不可执行
        raise GitOperationError(f"Unable to run git: {exc}") from exc
    if check and proc.returncode != 0:  # 关键分支：非零退出即失败
        raise GitOperationError(
            f"git {' '.join(args)} failed (exit {proc.returncode}): {proc.stderr.strip() or proc.stdout.strip()}"
        )
    return proc


def is_git_repo(project_root: Path) -> bool:
    try:
        proc = _run_git(["rev-parse", "--is-inside-work-tree"], project_root=project_root, check=False)
    except GitOperationError:
        return False
    return proc.returncode == 0 and proc.stdout.strip() == "true"


def current_branch(project_root: Path) -> str:
    return _run_git(["rev-parse", "--abbrev-ref", "HEAD"], project_root=project_root).stdout.strip()


def path_in_head(path: str, *, project_root: Path) -> bool:
    proc = _run_git(["cat-file", "-e", f"HEAD:{path}"], project_root=project_root, check=False)
    return proc.returncode == 0


def commit_all(message: str, *, project_root: Path, enabled: bool = True) -> bool:
    """Stage everything and commit; False when disabled or nothing changed."""
    if not enabled:  # 关键分支：git.auto_commit = false
        return False
    _run_git(["add", "-A"], project_root=project_root)
    staged = _run_git(["diff", "--cached", "--quiet"], project_root=project_root, check=False)
    if staged.returncode == 0:  # 关键分支：无暂存变更，无需提交
        _append_log_line(f"lisa: commit skipped (no changes): {message}\n")
        return False
    if staged.returncode != 1:
        raise GitOperationError(f"git diff --cached --quiet failed (exit {staged.returncode}): {staged.stderr.strip()}")
    _run_git(["commit", "-q", "-m", message], project_root=project_root)
    _append_log_line(f"lisa: committed: {message}\n")
    return True


def _sleep_backoff(*, label: str, attempt: int) -> None:
    delay = _BACKOFF_BASE_SECONDS * (2 ** attempt)
    _append_log_line(f"lisa: {label} retry backoff={delay:.1f}s attempt={attempt + 1}\n")
    time.sleep(delay)


def commit_with_retry(message: str, *, project_root: Path, enabled: bool = True) -> bool:
    attempt = 0
    while True:
        try:
            return commit_all(message, project_root=project_root, enabled=enabled)
        except GitOperationError as exc:
            if attempt >= _MAX_COMMIT_RETRIES:  # 关键分支：重试耗尽，向上抛出
                raise
            _log(f"lisa: commit failed, retrying: {exc}")
            _sleep_backoff(label="commit", attempt=attempt)
            attempt += 1


def push(*, project_root: Path, enabled: bool = False) -> bool:
    if not enabled:  # 关键分支：git.auto_push = false
        return False
    branch = current_branch(project_root)
    try:
        _run_git(["push", "-u", "origin", branch], project_root=project_root)
    except GitOperationError as exc:
        raise GitOperationError(f"{exc}\nFix the remote and run `lisa resume`, or push manually.") from exc
    _append_log_line(f"lisa: pushed {branch}\n")
    return True


def create_tag(name: str, *, project_root: Path) -> None:
    # 重跑同一 pass 时标签需要前移
    _run_git(["tag", "-f", name], project_root=project_root)


def restore_path_from_head(path: str, *, project_root: Path) -> None:
    """Put `path` back to its HEAD content, or drop it when HEAD does not have it."""
    if path_in_head(path, project_root=project_root):
        _run_git(["checkout", "-q", "HEAD", "--", path], project_root=project_root)
        return
    _run_git(["rm", "-q", "--cached", "--ignore-unmatch", "--", path], project_root=project_root)
    abs_path = project_root / path
    if abs_path.is_file() or abs_path.is_symlink():
        abs_path.unlink()
