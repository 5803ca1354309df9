from __future__ import annotations

from pathlib import Path

import pytest

from lisa.config import load_config, parse_config
from lisa.errors import ConfigError


def test_minimal_config_uses_defaults(tmp_path: Path) -> None:
    config = parse_config('[project]\nname = "demo"\n', project_root=tmp_path)

    assert config.project_name == "demo"
    assert config.models.build == "sonnet"
    assert config.models.for_phase("ddv_red") == "opus"
    assert config.limits.max_spiral_passes == 5
    assert config.limits.max_build_iterations == 50
    assert config.limits.stall_threshold == 2
    assert config.review.pause is True
    assert config.git.auto_commit is True
    assert config.git.auto_push is False
    assert config.paths.source == ("src",)
    assert config.state_file == tmp_path / ".lisa" / "state.json"
    assert config.plan_file == tmp_path / ".lisa" / "methodology" / "plan.md"
    assert config.pass_dir(2) == tmp_path / ".lisa" / "spiral" / "pass-2"


def test_overrides_and_legacy_key(tmp_path: Path) -> None:
    text = """
[project]
name = "demo"

[limits]
max_ralph_iterations = 7
stall_threshold = 3
budget_usd = 12

[paths]
source = ["lib", "app"]
tests_ddv = "checks/ddv"

[agent]
command = ["/opt/claude/bin/claude"]
"""
    config = parse_config(text, project_root=tmp_path)

    assert config.limits.max_build_iterations == 7
    assert config.limits.stall_threshold == 3
    assert config.limits.budget_usd == 12.0
    assert config.paths.source == ("lib", "app")
    assert config.paths.tests_ddv == "checks/ddv"
    assert config.agent.command == ("/opt/claude/bin/claude",)


@pytest.mark.parametrize(
    "text, message",
    [
        ('[project]\nname = "x"\n[limits]\nstall_threshold = 0\n', "stall_threshold"),
        ('[project]\nname = "x"\n[limits]\nmax_spiral_passes = "3"\n', "integer"),
        ('[project]\nname = "x"\n[review]\npause = "no"\n', "true or false"),
        ('[project]\nname = "x"\n[git]\nauto_comit = true\n', "unknown key"),
        ('[project]\nname = "x"\n[extras]\nfoo = 1\n', "unknown section"),
        ('[models]\nbuild = "opus"\n', "name is required"),
        ('[project]\nname = "x"\n[paths]\nsource = ["/abs/src"]\n', "relative"),
        ("[project\n", "invalid TOML"),
    ],
)
def test_invalid_config_fails_fast(tmp_path: Path, text: str, message: str) -> None:
    with pytest.raises(ConfigError, match=message):
        parse_config(text, project_root=tmp_path)


def test_load_config_requires_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="lisa.toml"):
        load_config(tmp_path)
