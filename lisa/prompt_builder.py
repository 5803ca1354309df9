from __future__ import annotations

import re
from pathlib import Path

from .config import REDIRECT_FILE_NAME, LisaConfig
from .errors import ConfigError
from .file_ops import _read_text, _rel_path

# 阶段 -> 提示词模板文件名（位于 <lisa_root>/prompts/）
PROMPT_FILES: dict[str, str] = {
    "scope": "scope.md",
    "refine": "refine.md",
    "ddv_red": "ddv.md",
    "build": "build.md",
    "execute": "execute.md",
    "validate": "validate.md",
    "finalize": "finalize.md",
}

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([a-z_]+)\s*\}\}")


def _placeholders(config: LisaConfig) -> dict[str, str]:
    paths = config.paths
    return {
        "lisa_root": paths.lisa_root,
        "source_dirs": ", ".join(paths.source),
        "tests_ddv": paths.tests_ddv,
        "tests_software": paths.tests_software,
        "tests_integration": paths.tests_integration,
        "project_name": config.project_name,
    }


def render_template(template: str, values: dict[str, str]) -> str:
    def _replace(match: re.Match[str]) -> str:
        key = match.group(1)
        if key not in values:  # 关键分支：未知占位符原样保留，交给 agent 自行理解
            return match.group(0)
        return values[key]

    return _PLACEHOLDER_RE.sub(_replace, template)


def load_prompt_template(config: LisaConfig, prompt_name: str) -> str:
    file_name = PROMPT_FILES.get(prompt_name)
    if file_name is None:
        raise ValueError(f"Unknown prompt: {prompt_name!r}")
    path = config.prompts_dir / file_name
    if not path.exists():  # 关键分支：模板缺失快速失败
        raise ConfigError(f"Missing prompt template: {path}")
    return _read_text(path)


def _inject_text(*, label: str, content: str) -> str:
    header = f"============= Injected File: {label} ============="
    footer = f"============= End Injected File: {label} ============="
    return "\n".join([header, content, footer])


def redirect_file(config: LisaConfig, pass_number: int) -> Path:
    return config.pass_dir(pass_number) / REDIRECT_FILE_NAME


def _context_preamble(
    config: LisaConfig,
    *,
    prompt_name: str,
    pass_number: int,
    extra_context: tuple[str, ...],
) -> str:
    paths = config.paths
    lines = [
        "# Lisa Loop context",
        "",
        f"- Project: {config.project_name}",
        f"- Lisa root: {paths.lisa_root}",
        f"- Source directories: {', '.join(paths.source)}",
        f"- DDV tests: {paths.tests_ddv}",
        f"- Software tests: {paths.tests_software}",
        f"- Integration tests: {paths.tests_integration}",
        f"- Pass: {pass_number}",
        f"- Phase: {prompt_name}",
        f"- Pass artifacts: {_rel_path(config.pass_dir(pass_number), config.project_root)}",
    ]
    if pass_number > 1:
        previous = config.pass_dir(pass_number - 1)
        lines.append(f"- Previous pass artifacts: {_rel_path(previous, config.project_root)}")
    commands = config.commands
    for label, command in (
        ("Setup command", commands.setup),
        ("Build command", commands.build),
        ("Test command", commands.test_all),
        ("DDV test command", commands.test_ddv),
        ("Software test command", commands.test_software),
        ("Integration test command", commands.test_integration),
        ("Lint command", commands.lint),
    ):
        if command:
            lines.append(f"- {label}: `{command}`")
    for item in extra_context:
        lines.append(f"- {item}")
    return "\n".join(lines)


def build_prompt(
    config: LisaConfig,
    prompt_name: str,
    *,
    pass_number: int,
    extra_context: tuple[str, ...] = (),
    guidance: str | None = None,
) -> str:
    """Render `<lisa_root>/prompts/<name>.md` behind a context preamble."""
    template = render_template(load_prompt_template(config, prompt_name), _placeholders(config))
    parts = [
        _context_preamble(config, prompt_name=prompt_name, pass_number=pass_number, extra_context=extra_context),
    ]
    if guidance:
        parts.append(_inject_text(label="human guidance", content=guidance.rstrip()))
    parts.append(template.rstrip())
    return "\n\n".join(parts) + "\n"
