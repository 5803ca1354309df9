"""Claude Code CLI 适配器"""

from __future__ import annotations

import json

from ..types import StreamResultEvent, ToolCategory
from .base import AgentUsage, CLIConfig, CLIRunner, StreamItem, ToolCallRecord


def _token_count(raw_usage: dict[str, object], key: str) -> int:
    value = raw_usage.get(key)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"result usage.{key} is not an integer: {value!r}")
    return value


class ClaudeRunner(CLIRunner):
    """Claude Code CLI 适配器

    使用 `claude -p` 非交互模式执行任务。
    - 通过 stdin 传递 prompt
    - 通过 `--output-format stream-json` 获取逐行 JSON 事件
    - assistant 事件携带 tool_use / thinking / text，result 事件携带最终文本与用量
    """

    # 工具名 -> (分类, 目标字段候选)
    TOOL_CATEGORIES: dict[str, tuple[ToolCategory, tuple[str, ...]]] = {
        "Read": ("read", ("file_path",)),
        "Write": ("write", ("file_path",)),
        "Edit": ("edit", ("file_path",)),
        "MultiEdit": ("edit", ("file_path",)),
        "NotebookEdit": ("edit", ("notebook_path",)),
        "Bash": ("command", ("command",)),
        "Glob": ("search", ("path", "pattern")),
        "Grep": ("search", ("path", "pattern")),
        "LS": ("search", ("path",)),
        "Task": ("subagent", ("description", "prompt")),
    }

    @property
    def name(self) -> str:
        return "claude"

    def build_command(self, config: CLIConfig) -> list[str]:
        """构建 claude -p 命令"""
        cmd: list[str] = [
            *config.command,
            "-p",  # 非交互模式
            "--dangerously-skip-permissions",
            "--verbose",  # stream-json 需要 verbose
            "--model", config.model,
            "--output-format", "stream-json",
        ]
        if config.extra_args:
            cmd.extend(config.extra_args)
        return cmd

    def parse_stream_line(self, line: str) -> list[StreamItem]:
        try:
            data = json.loads(line)
        except json.JSONDecodeError as exc:
            raise ValueError(f"not JSON ({exc.msg})") from exc
        if not isinstance(data, dict):
            raise ValueError("event is not a JSON object")
        event_type = data.get("type")
        if not isinstance(event_type, str):
            raise ValueError("event has no type")

        if event_type == "assistant":
            return self._parse_assistant(data)
        if event_type == "result":
            return [self._parse_result(data)]  # type: ignore[arg-type]
        # system / user(tool_result) 等事件不需要展示
        return []

    def _parse_assistant(self, data: dict[str, object]) -> list[StreamItem]:
        message = data.get("message")
        if not isinstance(message, dict):
            return []
        content = message.get("content")
        if not isinstance(content, list):
            return []
        items: list[StreamItem] = []
        for entry in content:
            if not isinstance(entry, dict):
                continue
            entry_type = entry.get("type")
            if entry_type == "tool_use":
                tool_input = entry.get("input")
                items.append(
                    StreamItem(
                        kind="tool_use",
                        name=str(entry.get("name") or "unknown"),
                        tool_input=tool_input if isinstance(tool_input, dict) else {},
                    )
                )
            elif entry_type == "thinking":
                text = entry.get("thinking")
                if isinstance(text, str) and text.strip():
                    items.append(StreamItem(kind="thinking", text=text))
            elif entry_type == "text":
                text = entry.get("text")
                if isinstance(text, str) and text.strip():
                    items.append(StreamItem(kind="text", text=text))
        return items

    def _parse_result(self, data: StreamResultEvent) -> StreamItem:
        result = data.get("result")
        raw_usage = data.get("usage")
        if raw_usage is None:
            raw_usage = {}
        if not isinstance(raw_usage, dict):  # 关键分支：结构错误视为非法行
            raise ValueError("result usage is not a JSON object")
        cost = data.get("total_cost_usd")
        if cost is None:
            cost = 0.0
        if isinstance(cost, bool) or not isinstance(cost, (int, float)):
            raise ValueError(f"result total_cost_usd is not a number: {cost!r}")
        usage = AgentUsage(
            input_tokens=_token_count(raw_usage, "input_tokens"),
            output_tokens=_token_count(raw_usage, "output_tokens"),
            cache_read_tokens=_token_count(raw_usage, "cache_read_input_tokens"),
            cache_creation_tokens=_token_count(raw_usage, "cache_creation_input_tokens"),
            cost_usd=float(cost),
        )
        return StreamItem(
            kind="result",
            text=result if isinstance(result, str) else None,
            is_error=bool(data.get("is_error", False)),
            usage=usage,
        )

    def describe_tool_call(self, order: int, name: str, tool_input: dict[str, object]) -> ToolCallRecord:
        category, fields = self.TOOL_CATEGORIES.get(name, ("other", ()))
        target = name
        for key in fields:
            value = tool_input.get(key)
            if isinstance(value, str) and value.strip():
                target = value
                break
        return ToolCallRecord(order=order, tool=name, category=category, target=target)
