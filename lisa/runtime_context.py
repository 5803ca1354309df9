from __future__ import annotations

from dataclasses import dataclass

from .config import LisaConfig


@dataclass(frozen=True)
class RunContext:
    config: LisaConfig
    trace_id: str
    auto: bool  # 关键变量：关卡自动决策（--no-pause 或 review.pause = false），取最保守分支
    collapse_output: bool  # 关键变量：折叠显示（心跳 + 摘要行）或逐条透传


def build_run_context(
    config: LisaConfig,
    *,
    trace_id: str,
    no_pause: bool = False,
    verbose: bool = False,
) -> RunContext:
    return RunContext(
        config=config,
        trace_id=trace_id,
        auto=no_pause or not config.review.pause,
        collapse_output=config.terminal.collapse_output and not verbose,
    )
