from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal

from .errors import BudgetExceededError, ConfigError
from .file_ops import _read_text
from .types import UsageEntry

BudgetStatus = Literal["unlimited", "ok", "warning"]

_ENTRY_KEYS = set(UsageEntry.__annotations__)


def make_usage_entry(
    *,
    phase: str,
    pass_number: int,
    model: str,
    input_tokens: int,
    output_tokens: int,
    cache_read_tokens: int,
    cache_creation_tokens: int,
    cost_usd: float,
    elapsed_seconds: float,
) -> UsageEntry:
    return {
        "ts": datetime.now(timezone.utc).isoformat(timespec="seconds"),
        "phase": phase,
        "pass_number": pass_number,
        "model": model,
        "input_tokens": input_tokens,
        "output_tokens": output_tokens,
        "cache_read_tokens": cache_read_tokens,
        "cache_creation_tokens": cache_creation_tokens,
        "cost_usd": round(cost_usd, 6),
        "elapsed_seconds": round(elapsed_seconds, 3),
    }


def record_usage(usage_file: Path, entry: UsageEntry) -> None:
    usage_file.parent.mkdir(parents=True, exist_ok=True)
    with usage_file.open("a", encoding="utf-8") as f:
        f.write(json.dumps(entry, ensure_ascii=False) + "\n")


def load_usage(usage_file: Path) -> list[UsageEntry]:
    if not usage_file.exists():
        return []
    entries: list[UsageEntry] = []
    for line_no, line in enumerate(_read_text(usage_file).splitlines(), start=1):
        if not line.strip():
            continue
        try:
            payload = json.loads(line)
        except json.JSONDecodeError as exc:
            raise ConfigError(f"{usage_file}:{line_no}: invalid usage record: {exc}") from exc
        if not isinstance(payload, dict) or not _ENTRY_KEYS.issubset(payload):
            raise ConfigError(f"{usage_file}:{line_no}: usage record is missing fields")
        entries.append(payload)  # type: ignore[arg-type]
    return entries


def total_cost(entries: list[UsageEntry]) -> float:
    return sum(float(e["cost_usd"]) for e in entries)


def pass_cost(entries: list[UsageEntry], pass_number: int) -> float:
    return sum(float(e["cost_usd"]) for e in entries if e["pass_number"] == pass_number)


def check_budget(cumulative_usd: float, budget_usd: float, warn_pct: int) -> BudgetStatus:
    """Raise BudgetExceededError at or over budget; budget <= 0 means unlimited."""
    if budget_usd <= 0:
        return "unlimited"
    if cumulative_usd >= budget_usd:
        raise BudgetExceededError(
            f"Budget exhausted: ${cumulative_usd:.2f} spent of ${budget_usd:.2f}. "
            "Raise [limits] budget_usd in lisa.toml, then run `lisa resume`."
        )
    if cumulative_usd >= budget_usd * warn_pct / 100:
        return "warning"
    return "ok"
