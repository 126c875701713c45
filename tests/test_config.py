from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from forge.config import DEFAULT_CONFIG_TEMPLATE, AgentConfig, write_default_config
from forge.models.registry import DEFAULT_ORCHESTRATOR, DEFAULT_SUB_AGENT


def test_defaults_resolve_paths_under_project_root(tmp_path: Path) -> None:
    config = AgentConfig.from_mapping({}, base_dir=tmp_path, env={})

    assert config.project_root == tmp_path.resolve()
    assert config.data_root == tmp_path.resolve() / ".forge"
    assert config.logs_root == tmp_path.resolve() / ".forge" / "logs"
    assert config.usage_db == tmp_path.resolve() / ".forge" / "usage.json"
    assert config.project_name == tmp_path.name
    assert config.models.orchestrator == DEFAULT_ORCHESTRATOR
    assert config.models.sub_agent == DEFAULT_SUB_AGENT
    assert config.budget.max_tokens == 400_000
    assert config.planning.confidence_threshold == 90
    assert config.commands.package_manager == "npm"


def test_invalid_values_fall_back_to_defaults(tmp_path: Path) -> None:
    data = {
        "models": {"timeout": "soon", "max_attempts": -1, "retry_delay": -2},
        "rate_limit": {"max_sessions": 0},
        "planning": {"confidence_threshold": 250},
        "commands": {"allowed_prefixes": ["make ", "", 7]},
        "verification": {"base_url": "http://localhost:8000/"},
        "budget": {"max_tokens": None},
    }

    config = AgentConfig.from_mapping(data, base_dir=tmp_path, env={})

    assert config.models.timeout == 120.0
    assert config.models.max_attempts == 3
    assert config.models.retry_delay == 0.5
    assert config.rate_limit.max_sessions == 10
    assert config.planning.confidence_threshold == 100
    assert config.commands.allowed_prefixes == ("make ",)
    assert config.verification.base_url == "http://localhost:8000"
    assert config.budget.max_tokens is None


def test_environment_overrides(tmp_path: Path) -> None:
    env = {
        "MAX_TOKEN_BUDGET": "5000",
        "FORGE_ORCHESTRATOR_MODEL": " gpt-4o ",
        "FORGE_SUB_AGENT_MODEL": "gpt-4o-mini",
        "FORGE_LLM_TIMEOUT": "30",
        "ANTHROPIC_API_KEY": "anthropic-key",
        "OPENAI_API_KEY": "  ",
        "FORGE_SEARCH_API_KEY": "search-key",
    }

    config = AgentConfig.from_mapping({}, base_dir=tmp_path, env=env)

    assert config.budget.max_tokens == 5000
    assert config.models.orchestrator == "gpt-4o"
    assert config.models.sub_agent == "gpt-4o-mini"
    assert config.models.timeout == 30.0
    assert config.models.anthropic_api_key == "anthropic-key"
    assert config.models.openai_api_key is None
    assert config.search.api_key == "search-key"


@pytest.mark.parametrize("value", ["lots", "0", "-10"])
def test_invalid_budget_override_is_ignored(tmp_path: Path, value: str) -> None:
    config = AgentConfig.from_mapping({"budget": {"max_tokens": 1234}}, base_dir=tmp_path, env={"FORGE_MAX_TOKEN_BUDGET": value})

    assert config.budget.max_tokens == 1234


def test_file_keys_win_over_environment_keys(tmp_path: Path) -> None:
    data = {"models": {"anthropic_api_key": "from-file"}}

    config = AgentConfig.from_mapping(data, base_dir=tmp_path, env={"ANTHROPIC_API_KEY": "from-env"})

    assert config.models.anthropic_api_key == "from-file"


def test_load_resolves_relative_to_config_file(tmp_path: Path) -> None:
    config_dir = tmp_path / "conf"
    config_dir.mkdir()
    (config_dir / "forge.yaml").write_text(
        yaml.safe_dump({"project": {"root": "../app", "name": "shop"}, "paths": {"data": "state"}}),
        encoding="utf-8",
    )

    config = AgentConfig.load(config_dir / "forge.yaml", env={})

    assert config.project_root == (tmp_path / "app").resolve()
    assert config.data_root == (tmp_path / "app" / "state").resolve()
    assert config.project_name == "shop"


def test_load_missing_file_uses_defaults(tmp_path: Path) -> None:
    config = AgentConfig.load(tmp_path / "absent.yaml", env={})

    assert config.project_root == tmp_path.resolve()


def test_load_rejects_non_mapping(tmp_path: Path) -> None:
    path = tmp_path / "forge.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")

    with pytest.raises(ValueError, match="mapping"):
        AgentConfig.load(path, env={})


def test_write_default_config_round_trips(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "forge.yaml"

    write_default_config(path)

    assert yaml.safe_load(path.read_text(encoding="utf-8")) == DEFAULT_CONFIG_TEMPLATE
    config = AgentConfig.load(path, env={})
    assert config.budget.max_tokens == 400_000
    assert config.search.api_key is None
