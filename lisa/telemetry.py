from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from pathlib import Path

_EVENTS_FILE: Path | None = None  # 关键变量：结构化事件文件（由 main 绑定）


def _bind_events_file(path: Path | None) -> None:
    global _EVENTS_FILE
    _EVENTS_FILE = path


def new_trace_id() -> str:
    return str(uuid.uuid4())


def log_event(event: str, *, trace_id: str, **fields: object) -> None:
    if _EVENTS_FILE is None:
        return
    payload = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "event": event,
        "trace_id": trace_id,
        **fields,
    }
    _EVENTS_FILE.parent.mkdir(parents=True, exist_ok=True)
    with _EVENTS_FILE.open("a", encoding="utf-8") as f:
        f.write(json.dumps(payload, ensure_ascii=False) + "\n")
