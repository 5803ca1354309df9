"""Agent CLI 抽象基类"""

from __future__ import annotations

import subprocess
import tempfile
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Literal

from ..types import ToolCategory


@dataclass(frozen=True)
class ToolCallRecord:
    """一次工具调用的描述（按发生顺序记录）"""
    order: int                           # 在日志中的位置
    tool: str                            # 工具名（原样）
    category: ToolCategory               # 分类
    target: str                          # 路径 / 命令 / 模式 / 描述


@dataclass
class AgentStats:
    tool_count: int = 0
    file_writes: int = 0
    test_runs: int = 0


@dataclass(frozen=True)
class AgentUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0
    cost_usd: float = 0.0


@dataclass
class AgentResult:
    """Agent 执行结果（仅在退出码为 0 时产生）"""
    result_text: str | None              # 最终文本（可能缺失）
    tool_log: list[ToolCallRecord]       # 工具调用日志
    exit_code: int = 0
    stats: AgentStats = field(default_factory=AgentStats)
    usage: AgentUsage = field(default_factory=AgentUsage)
    elapsed_seconds: float = 0.0


@dataclass(frozen=True)
class StreamItem:
    """事件流中的一条可观察内容"""
    kind: Literal["tool_use", "thinking", "text", "result"]
    name: str = ""
    tool_input: dict[str, object] = field(default_factory=dict)
    text: str | None = None
    is_error: bool = False
    usage: AgentUsage | None = None


@dataclass(frozen=True)
class CLIConfig:
    """Agent CLI 运行配置"""
    command: tuple[str, ...]             # 可执行命令前缀
    model: str                           # 模型
    work_dir: Path                       # 工作目录
    extra_args: tuple[str, ...] = ()     # 额外参数


# 临时错误关键词（仅用于提示操作者，编排器不会自动重试）
TEMPORARY_ERROR_HINTS = (
    "timeout",
    "timed out",
    "rate limit",
    "429",
    "500",
    "502",
    "503",
    "504",
    "529",
    "overloaded",
    "temporar",
    "network",
    "connection reset",
    "connection refused",
    "econnreset",
    "econnrefused",
    "high demand",
    "internal server error",
    "service unavailable",
)

_STDERR_TAIL_CHARS = 2000


def is_temporary_failure(output: str) -> bool:
    """判断是否为临时性错误"""
    lowered = output.lower()
    return any(hint in lowered for hint in TEMPORARY_ERROR_HINTS)


def _is_test_command(command: str) -> bool:
    lowered = command.lower()
    return "test" in lowered or "pytest" in lowered


class CLIRunner(ABC):
    """Agent CLI 抽象基类

    子类需实现：
    - name: CLI 工具名称
    - build_command: 构建命令行参数
    - parse_stream_line: 解析一行事件流
    - describe_tool_call: 将工具调用归类为 ToolCallRecord
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """CLI 工具名称"""

    @abstractmethod
    def build_command(self, config: CLIConfig) -> list[str]:
        """构建命令行参数"""

    @abstractmethod
    def parse_stream_line(self, line: str) -> list[StreamItem]:
        """解析一行输出；非法行抛出 ValueError"""

    @abstractmethod
    def describe_tool_call(self, order: int, name: str, tool_input: dict[str, object]) -> ToolCallRecord:
        """把工具名与输入映射为分类记录"""

    def run(
        self,
        prompt: str,
        config: CLIConfig,
        label: str,
        *,
        on_item: Callable[[StreamItem, ToolCallRecord | None], None] | None = None,
    ) -> AgentResult:
        """执行 Agent CLI

        prompt 写入 stdin 后关闭；stdout 逐行解析为事件；stderr 落到临时文件，
        结束后只用于错误信息。退出码始终检查。

        Raises:
            AgentProcessError: 启动失败、退出码非零、事件流非法或结果标记为错误
        """
        from ..errors import AgentProcessError
        from ..file_ops import _append_log_line

        cmd = self.build_command(config)
        line_prefix = f"{label.lower()}: "
        _append_log_line(f"----- {self.name} ({label}) model={config.model} -----\n")

        tool_log: list[ToolCallRecord] = []
        stats = AgentStats()
        usage = AgentUsage()
        result_text: str | None = None
        result_is_error = False
        malformed: list[str] = []
        started = time.monotonic()

        with tempfile.TemporaryFile("w+", encoding="utf-8") as stderr_file:
            try:
                proc = subprocess.Popen(
                    cmd,
                    cwd=config.work_dir,
                    stdin=subprocess.PIPE,
                    stdout=subprocess.PIPE,
                    stderr=stderr_file,
                    text=True,
                    encoding="utf-8",
                    bufsize=1,
                )
            except OSError as exc:  # 关键分支：可执行文件缺失等
                raise AgentProcessError(
                    f"Unable to start {self.name} ({' '.join(cmd)}): {exc}", label=label
                ) from exc

            try:
                assert proc.stdin is not None
                try:
                    proc.stdin.write(prompt)
                    proc.stdin.close()
                except BrokenPipeError:
                    # 进程提前退出；退出码检查会给出真正原因
                    _append_log_line(f"{line_prefix}stdin closed early by {self.name}\n")

                assert proc.stdout is not None
                for line in proc.stdout:
                    _append_log_line(f"{line_prefix}{line}" if line.endswith("\n") else f"{line_prefix}{line}\n")
                    stripped = line.strip()
                    if not stripped:
                        continue
                    try:
                        items = self.parse_stream_line(stripped)
                    except ValueError as exc:  # 关键分支：非法行记录下来，结束后统一失败
                        malformed.append(f"{exc}: {stripped[:200]}")
                        continue
                    for item in items:
                        record: ToolCallRecord | None = None
                        if item.kind == "tool_use":
                            record = self.describe_tool_call(len(tool_log), item.name, item.tool_input)
                            tool_log.append(record)
                            stats.tool_count += 1
                            if record.category in ("write", "edit"):
                                stats.file_writes += 1
                            elif record.category == "command" and _is_test_command(record.target):
                                stats.test_runs += 1
                        elif item.kind == "result":
                            result_text = item.text
                            result_is_error = item.is_error
                            if item.usage is not None:
                                usage = item.usage
                        if on_item is not None:
                            on_item(item, record)

                return_code = proc.wait()
            finally:
                if proc.poll() is None:  # 关键分支：中断时不留下孤儿进程
                    proc.kill()
                    proc.wait()

            stderr_file.seek(0)
            stderr_text = stderr_file.read()

        elapsed = time.monotonic() - started
        stderr_tail = stderr_text[-_STDERR_TAIL_CHARS:].strip()
        if stderr_tail:
            _append_log_line(f"{line_prefix}stderr:\n{stderr_tail}\n")

        if return_code != 0:  # 关键分支：非零退出一律视为失败，结果作废
            hint_text = f"{stderr_text}\n{result_text or ''}"
            raise AgentProcessError(
                f"{self.name} ({label}) exited with code {return_code}\n"
                f"cmd: {' '.join(cmd)}\n"
                f"stderr:\n{stderr_tail or '(empty)'}",
                label=label,
                exit_code=return_code,
                temporary=is_temporary_failure(hint_text),
            )
        if malformed:  # 关键分支：事件流非法
            raise AgentProcessError(
                f"{self.name} ({label}) produced {len(malformed)} malformed stream line(s); first: {malformed[0]}",
                label=label,
                exit_code=return_code,
            )
        if result_is_error:  # 关键分支：退出码为 0 但结果标记为错误
            raise AgentProcessError(
                f"{self.name} ({label}) reported an error result: {(result_text or '')[:500]}",
                label=label,
                exit_code=return_code,
                temporary=is_temporary_failure(result_text or ""),
            )

        return AgentResult(
            result_text=result_text,
            tool_log=tool_log,
            exit_code=return_code,
            stats=stats,
            usage=usage,
            elapsed_seconds=elapsed,
        )
