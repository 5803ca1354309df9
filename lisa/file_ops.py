from __future__ import annotations

import hashlib
import os
import tempfile
from datetime import datetime
from pathlib import Path

_LOG_FILE: Path | None = None  # 关键变量：当前运行日志文件（由 main 绑定）


def _bind_log_file(path: Path | None) -> None:
    global _LOG_FILE
    _LOG_FILE = path


def _read_text(path: Path) -> str:
    return path.read_text(encoding="utf-8")  # 关键变量：统一以 UTF-8 读取


def _atomic_write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path: Path | None = None
    try:
        with tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=path.parent,
            delete=False,
        ) as tmp:
            tmp.write(content)
            tmp_path = Path(tmp.name)
        os.replace(tmp_path, path)
    finally:
        if tmp_path is not None and tmp_path.exists():
            tmp_path.unlink()


def _append_log_line(line: str) -> None:
    if _LOG_FILE is None:  # 关键分支：未绑定（如 status 命令）时不落盘
        return
    _LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().isoformat(timespec="seconds")
    with _LOG_FILE.open("a", encoding="utf-8") as f:
        f.write(f"[{timestamp}] {line}")  # 关键变量：追加日志文本


def _log(message: str) -> None:
    print(message, flush=True)
    _append_log_line(f"{message}\n")


def _sha256_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()  # 关键变量：内容哈希


def _rel_path(path: Path, project_root: Path) -> str:
    try:  # 关键分支：尝试生成相对路径
        return path.relative_to(project_root).as_posix()
    except ValueError as exc:  # 关键分支：路径不在项目根内
        raise ValueError(f"Path must be under project root: {path}") from exc
