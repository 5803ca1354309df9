"""Agent CLI 工厂函数"""

from __future__ import annotations

from typing import TYPE_CHECKING

from ..errors import ConfigError
from .claude_adapter import ClaudeRunner

if TYPE_CHECKING:
    from .base import CLIRunner


# 已注册的 Agent CLI 适配器（事件流协议按 claude stream-json 设计）
_CLI_REGISTRY: dict[str, type["CLIRunner"]] = {
    "claude": ClaudeRunner,
}


def create_cli_runner(cli_name: str) -> "CLIRunner":
    """创建 CLI 运行器实例

    Raises:
        ConfigError: 名称未注册
    """
    runner_class = _CLI_REGISTRY.get(cli_name)
    if runner_class is None:  # 关键分支：不做静默回退
        raise ConfigError(
            f"[agent] cli {cli_name!r} is not supported. Registered CLIs: {sorted(_CLI_REGISTRY)}"
        )
    return runner_class()
