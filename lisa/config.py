from __future__ import annotations

import sys
from dataclasses import dataclass, field
from pathlib import Path

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from .errors import ConfigError

CONFIG_FILE_NAME = "lisa.toml"  # 关键变量：项目配置文件名
STATE_FILE_NAME = "state.json"  # 关键变量：状态文件名
USAGE_FILE_NAME = "usage.jsonl"  # 关键变量：用量账本
LAST_ERROR_FILE_NAME = "last-error.md"  # 关键变量：最近一次失败上下文
LOG_FILE_NAME = "lisa.log"  # 关键变量：运行日志
EVENTS_FILE_NAME = "events.jsonl"  # 关键变量：结构化事件日志
PLAN_RELATIVE_PATH = Path("methodology") / "plan.md"  # 关键变量：任务账本（相对 lisa_root）
SPIRAL_COMPLETE_FILE_NAME = "SPIRAL_COMPLETE.md"
REDIRECT_FILE_NAME = "human-redirect.md"
SCOPE_FEEDBACK_FILE_NAME = "scope-feedback.md"
ENVIRONMENT_RESOLUTION_FILE_NAME = "environment-resolution.md"

DEFAULT_LIVENESS_INTERVAL_SECONDS = 5.0  # 关键变量：折叠模式心跳间隔


@dataclass(frozen=True)
class ModelsConfig:
    scope: str = "opus"
    refine: str = "opus"
    ddv: str = "opus"
    build: str = "sonnet"
    execute: str = "opus"
    validate: str = "opus"
    finalize: str = "opus"

    def for_phase(self, phase: str) -> str:
        key = "ddv" if phase == "ddv_red" else phase
        if key not in _SCHEMA["models"]:  # 关键分支：未知阶段直接失败
            raise ValueError(f"No model configured for phase: {phase!r}")
        return getattr(self, key)


@dataclass(frozen=True)
class LimitsConfig:
    max_spiral_passes: int = 5
    max_build_iterations: int = 50
    stall_threshold: int = 2
    budget_usd: float = 0.0  # 0 = unlimited
    budget_warn_pct: int = 80


@dataclass(frozen=True)
class ReviewConfig:
    pause: bool = True


@dataclass(frozen=True)
class GitConfig:
    auto_commit: bool = True
    auto_push: bool = False


@dataclass(frozen=True)
class TerminalConfig:
    collapse_output: bool = True
    liveness_interval_seconds: float = DEFAULT_LIVENESS_INTERVAL_SECONDS


@dataclass(frozen=True)
class PathsConfig:
    lisa_root: str = ".lisa"
    source: tuple[str, ...] = ("src",)
    tests_ddv: str = "tests/ddv"
    tests_software: str = "tests/software"
    tests_integration: str = "tests/integration"


@dataclass(frozen=True)
class AgentConfig:
    cli: str = "claude"
    command: tuple[str, ...] = ("claude",)
    extra_args: tuple[str, ...] = ()


@dataclass(frozen=True)
class CommandsConfig:
    setup: str = ""
    build: str = ""
    test_all: str = ""
    test_ddv: str = ""
    test_software: str = ""
    test_integration: str = ""
    lint: str = ""


@dataclass(frozen=True)
class LisaConfig:
    project_root: Path
    project_name: str
    models: ModelsConfig = field(default_factory=ModelsConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    review: ReviewConfig = field(default_factory=ReviewConfig)
    git: GitConfig = field(default_factory=GitConfig)
    terminal: TerminalConfig = field(default_factory=TerminalConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    commands: CommandsConfig = field(default_factory=CommandsConfig)

    @property
    def lisa_root(self) -> Path:
        return self.project_root / self.paths.lisa_root

    @property
    def state_file(self) -> Path:
        return self.lisa_root / STATE_FILE_NAME

    @property
    def usage_file(self) -> Path:
        return self.lisa_root / USAGE_FILE_NAME

    @property
    def last_error_file(self) -> Path:
        return self.lisa_root / LAST_ERROR_FILE_NAME

    @property
    def log_file(self) -> Path:
        return self.lisa_root / "logs" / LOG_FILE_NAME

    @property
    def events_file(self) -> Path:
        return self.lisa_root / "logs" / EVENTS_FILE_NAME

    @property
    def plan_file(self) -> Path:
        return self.lisa_root / PLAN_RELATIVE_PATH

    @property
    def prompts_dir(self) -> Path:
        return self.lisa_root / "prompts"

    @property
    def spiral_dir(self) -> Path:
        return self.lisa_root / "spiral"

    def pass_dir(self, pass_number: int) -> Path:
        return self.spiral_dir / f"pass-{pass_number}"


# 关键变量：lisa.toml 结构（section -> key -> 期望类型），未列出的键一律拒绝
_SCHEMA: dict[str, dict[str, str]] = {
    "project": {"name": "str"},
    "models": {
        "scope": "str",
        "refine": "str",
        "ddv": "str",
        "build": "str",
        "execute": "str",
        "validate": "str",
        "finalize": "str",
    },
    "limits": {
        "max_spiral_passes": "int",
        "max_build_iterations": "int",
        "stall_threshold": "int",
        "budget_usd": "number",
        "budget_warn_pct": "int",
    },
    "review": {"pause": "bool"},
    "git": {"auto_commit": "bool", "auto_push": "bool"},
    "terminal": {"collapse_output": "bool", "liveness_interval_seconds": "number"},
    "paths": {
        "lisa_root": "str",
        "source": "str_list",
        "tests_ddv": "str",
        "tests_software": "str",
        "tests_integration": "str",
    },
    "agent": {"cli": "str", "command": "str_list", "extra_args": "str_list"},
    "commands": {
        "setup": "str",
        "build": "str",
        "test_all": "str",
        "test_ddv": "str",
        "test_software": "str",
        "test_integration": "str",
        "lint": "str",
    },
}

# 旧版配置键名
_KEY_ALIASES = {("limits", "max_ralph_iterations"): "max_build_iterations"}


def _check_value(section: str, key: str, kind: str, value: object) -> object:
    where = f"{CONFIG_FILE_NAME}: [{section}] {key}"
    if kind == "str":
        if not isinstance(value, str):
            raise ConfigError(f"{where} must be a string, got {value!r}")
        return value
    if kind == "bool":
        if not isinstance(value, bool):
            raise ConfigError(f"{where} must be true or false, got {value!r}")
        return value
    if kind == "int":
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError(f"{where} must be an integer, got {value!r}")
        return value
    if kind == "number":
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigError(f"{where} must be a number, got {value!r}")
        return float(value)
    if kind == "str_list":
        if isinstance(value, str):  # 关键分支：单个字符串视为单元素列表
            value = [value]
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            raise ConfigError(f"{where} must be a list of strings, got {value!r}")
        return tuple(value)
    raise ValueError(f"Unknown schema kind: {kind!r}")


def _section_values(raw: dict[str, object], section: str) -> dict[str, object]:
    table = raw.get(section, {})
    if not isinstance(table, dict):
        raise ConfigError(f"{CONFIG_FILE_NAME}: [{section}] must be a table")
    schema = _SCHEMA[section]
    values: dict[str, object] = {}
    for key, value in table.items():
        key = _KEY_ALIASES.get((section, key), key)
        if key not in schema:  # 关键分支：未知键快速失败，防止拼写错误被静默忽略
            raise ConfigError(f"{CONFIG_FILE_NAME}: unknown key [{section}] {key}")
        values[key] = _check_value(section, key, schema[key], value)
    return values


def _validate(config: LisaConfig) -> None:
    limits = config.limits
    if not config.project_name.strip():
        raise ConfigError(f"{CONFIG_FILE_NAME}: [project] name must be non-empty")
    if limits.max_spiral_passes < 1:
        raise ConfigError(f"{CONFIG_FILE_NAME}: [limits] max_spiral_passes must be >= 1")
    if limits.max_build_iterations < 1:
        raise ConfigError(f"{CONFIG_FILE_NAME}: [limits] max_build_iterations must be >= 1")
    if limits.stall_threshold < 1:
        raise ConfigError(f"{CONFIG_FILE_NAME}: [limits] stall_threshold must be >= 1")
    if limits.budget_usd < 0:
        raise ConfigError(f"{CONFIG_FILE_NAME}: [limits] budget_usd must be >= 0")
    if not 0 < limits.budget_warn_pct <= 100:
        raise ConfigError(f"{CONFIG_FILE_NAME}: [limits] budget_warn_pct must be in 1..100")
    if config.terminal.liveness_interval_seconds <= 0:
        raise ConfigError(f"{CONFIG_FILE_NAME}: [terminal] liveness_interval_seconds must be > 0")
    if not config.paths.source:
        raise ConfigError(f"{CONFIG_FILE_NAME}: [paths] source must list at least one directory")
    for name in (config.paths.lisa_root, config.paths.tests_ddv, *config.paths.source):
        if not name.strip() or Path(name).is_absolute():
            raise ConfigError(f"{CONFIG_FILE_NAME}: [paths] entries must be relative paths, got {name!r}")
    if not config.agent.command:
        raise ConfigError(f"{CONFIG_FILE_NAME}: [agent] command must not be empty")


def parse_config(text: str, *, project_root: Path) -> LisaConfig:
    try:
        raw = tomllib.loads(text)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"{CONFIG_FILE_NAME}: invalid TOML: {exc}") from exc

    unknown = sorted(set(raw) - set(_SCHEMA))
    if unknown:  # 关键分支：未知 section 快速失败
        raise ConfigError(f"{CONFIG_FILE_NAME}: unknown section(s): {', '.join(unknown)}")

    project = _section_values(raw, "project")
    if "name" not in project:
        raise ConfigError(f"{CONFIG_FILE_NAME}: [project] name is required")

    config = LisaConfig(
        project_root=project_root,
        project_name=str(project["name"]),
        models=ModelsConfig(**_section_values(raw, "models")),  # type: ignore[arg-type]
        limits=LimitsConfig(**_section_values(raw, "limits")),  # type: ignore[arg-type]
        review=ReviewConfig(**_section_values(raw, "review")),  # type: ignore[arg-type]
        git=GitConfig(**_section_values(raw, "git")),  # type: ignore[arg-type]
        terminal=TerminalConfig(**_section_values(raw, "terminal")),  # type: ignore[arg-type]
        paths=PathsConfig(**_section_values(raw, "paths")),  # type: ignore[arg-type]
        agent=AgentConfig(**_section_values(raw, "agent")),  # type: ignore[arg-type]
        commands=CommandsConfig(**_section_values(raw, "commands")),  # type: ignore[arg-type]
    )
    _validate(config)
    return config


def load_config(project_root: Path) -> LisaConfig:
    config_file = project_root / CONFIG_FILE_NAME
    if not config_file.exists():  # 关键分支：不在 Lisa 项目内
        raise ConfigError(f"Missing {CONFIG_FILE_NAME} in {project_root}; not a Lisa project")
    return parse_config(config_file.read_text(encoding="utf-8"), project_root=project_root)
