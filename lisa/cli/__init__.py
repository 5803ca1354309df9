"""Agent CLI 统一抽象层

启动 agent 进程、解析逐行事件流、记录工具调用日志。
"""

from .base import AgentResult, AgentStats, AgentUsage, CLIConfig, CLIRunner, StreamItem, ToolCallRecord
from .factory import create_cli_runner

__all__ = [
    "AgentResult",
    "AgentStats",
    "AgentUsage",
    "CLIConfig",
    "CLIRunner",
    "StreamItem",
    "ToolCallRecord",
    "create_cli_runner",
]
