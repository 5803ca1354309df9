from __future__ import annotations

import hashlib
import subprocess
from pathlib import Path
from typing import TypedDict

from .errors import GitOperationError


class GitStatusEntry(TypedDict):
    code: str  # two-letter XY status, e.g. " M", "??", "R "
    path: str  # path (for rename/copy: the NEW path)
    orig_path: str | None  # old path for rename/copy


def _sha256_file_bytes(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def _normalise_prefix(prefix: str) -> str:
    cleaned = prefix.strip().replace("\\", "/")
    while cleaned.startswith("./"):
        cleaned = cleaned[2:]
    return cleaned.rstrip("/")


def path_under_prefix(path: str, prefix: str) -> bool:
    """True when repo-relative `path` equals `prefix` or lies below it."""
    prefix = _normalise_prefix(prefix)
    path = _normalise_prefix(path)
    if not prefix:
        return True
    return path == prefix or path.startswith(prefix + "/")


def _run_git_status_porcelain_z(*, project_root: Path) -> list[GitStatusEntry]:
    """
    Return `git status --porcelain=v1 -z --untracked-files=all` entries.

    Notes:
    - With `-z`, records are NUL-separated.
    - For rename/copy, the record contains the **new** path, and the **old** path is the next NUL token.
    - Untracked directories are expanded to files so every new file gets its own record.
    """
    cmd = ["git", "status", "--porcelain=v1", "-z", "--untracked-files=all"]
    try:
        proc = subprocess.run(
            cmd,
            cwd=project_root,
            check=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
    except (OSError, subprocess.CalledProcessError) as exc:
        stderr = getattr(exc, "stderr", b"") or b""
        raise GitOperationError(
            f"git status failed in {project_root}: {stderr.decode('utf-8', errors='replace').strip() or exc}"
        ) from exc
    data = proc.stdout
    if not data:
        return []

    tokens = data.split(b"\0")
    entries: list[GitStatusEntry] = []
    i = 0
    while i < len(tokens):
        raw = tokens[i]
        if not raw:
            break
        line = raw.decode("utf-8", errors="surrogateescape")
        if len(line) < 4 or line[2] != " ":
            raise GitOperationError(f"Unexpected git status porcelain record: {line!r}")
        code = line[:2]
        path = line[3:]
        orig_path: str | None = None
        if "R" in code or "C" in code:
            # rename/copy includes an extra path token (the OLD path); the record path is the NEW path.
            i += 1
            if i >= len(tokens) or not tokens[i]:
                raise GitOperationError(f"Missing old path for rename/copy record: {line!r}")
            orig_path = tokens[i].decode("utf-8", errors="surrogateescape")
        entries.append({"code": code, "path": path, "orig_path": orig_path})
        i += 1
    return entries


def capture_dirty_file_digests(
    *,
    project_root: Path,
    include_prefixes: tuple[str, ...] = (),
    exclude_prefixes: tuple[str, ...] = (),
) -> dict[str, str | None]:
    """
    Capture sha256 digests for files that are currently 'dirty' in git (modified/staged/untracked).

    With `include_prefixes`, only paths under one of the prefixes are kept. The old side of a
    rename is recorded too (as missing), so a staged rename shows up under both of its paths.

    Returns:
      { "relative/path": "<sha256>" | None } where None means the path is missing on disk (e.g. deleted).
    """
    entries = _run_git_status_porcelain_z(project_root=project_root)
    snapshots: dict[str, str | None] = {}

    def _keep(path: str) -> bool:
        if any(path_under_prefix(path, prefix) for prefix in exclude_prefixes):
            return False
        if include_prefixes and not any(path_under_prefix(path, prefix) for prefix in include_prefixes):
            return False
        return True

    for item in entries:
        for path in (item["path"], item["orig_path"]):
            if path is None or not _keep(path):
                continue
            abs_path = project_root / path
            if abs_path.exists() and abs_path.is_file():
                snapshots[path] = _sha256_file_bytes(abs_path)
            else:
                snapshots[path] = None

    return snapshots
