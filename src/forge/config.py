"""Agent configuration loaded from ``forge.yaml`` with environment overrides."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from .models.registry import DEFAULT_ORCHESTRATOR, DEFAULT_SUB_AGENT

LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIG_NAME = "forge.yaml"
DEFAULT_SEARCH_ENDPOINT = "https://api.search.brave.com/res/v1/web/search"

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "project": {
        "name": "",
        "root": ".",
    },
    "models": {
        "orchestrator": DEFAULT_ORCHESTRATOR,
        "sub_agent": DEFAULT_SUB_AGENT,
        "timeout": 120,
        "max_attempts": 3,
        "retry_delay": 0.5,
    },
    "budget": {
        "max_tokens": 400_000,
    },
    "rate_limit": {
        "max_sessions": 10,
        "window_seconds": 60,
    },
    "planning": {
        "confidence_threshold": 90,
        "history_window": 10,
    },
    "commands": {
        "timeout": 120,
        "max_output_chars": 4_000,
        "package_manager": "npm",
        "allowed_prefixes": [],
    },
    "verification": {
        "enabled": True,
        "base_url": "http://localhost:3000",
        "timeout": 10,
        "max_routes_per_module": 5,
    },
    "search": {
        "endpoint": DEFAULT_SEARCH_ENDPOINT,
        "api_key": "",
        "count": 5,
    },
    "snapshots": {
        "enabled": True,
        "commit_results": False,
        "timeout": 30,
    },
    "paths": {
        "data": ".forge",
        "logs": ".forge/logs",
        "usage_db": ".forge/usage.json",
    },
    "streaming": {
        "heartbeat_seconds": 15,
    },
}


@dataclass(slots=True)
class ModelsConfig:
    orchestrator: str = DEFAULT_ORCHESTRATOR
    sub_agent: str = DEFAULT_SUB_AGENT
    timeout: float = 120.0
    max_attempts: int = 3
    retry_delay: float = 0.5
    anthropic_api_key: Optional[str] = None
    openai_api_key: Optional[str] = None


@dataclass(slots=True)
class BudgetConfig:
    max_tokens: Optional[int] = 400_000


@dataclass(slots=True)
class RateLimitConfig:
    max_sessions: int = 10
    window_seconds: float = 60.0


@dataclass(slots=True)
class PlanningConfig:
    confidence_threshold: int = 90
    history_window: int = 10


@dataclass(slots=True)
class CommandsConfig:
    timeout: float = 120.0
    max_output_chars: int = 4_000
    package_manager: str = "npm"
    allowed_prefixes: tuple[str, ...] = ()


@dataclass(slots=True)
class VerificationConfig:
    enabled: bool = True
    base_url: str = "http://localhost:3000"
    timeout: float = 10.0
    max_routes_per_module: int = 5


@dataclass(slots=True)
class SearchConfig:
    endpoint: str = DEFAULT_SEARCH_ENDPOINT
    api_key: Optional[str] = None
    count: int = 5


@dataclass(slots=True)
class SnapshotConfig:
    enabled: bool = True
    commit_results: bool = False
    timeout: float = 30.0


@dataclass(slots=True)
class StreamingConfig:
    heartbeat_seconds: float = 15.0


@dataclass(slots=True)
class AgentConfig:
    """Resolved configuration for one agent deployment."""

    project_root: Path
    data_root: Path
    logs_root: Path
    usage_db: Path
    project_name: str = ""
    models: ModelsConfig = field(default_factory=ModelsConfig)
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    planning: PlanningConfig = field(default_factory=PlanningConfig)
    commands: CommandsConfig = field(default_factory=CommandsConfig)
    verification: VerificationConfig = field(default_factory=VerificationConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    snapshots: SnapshotConfig = field(default_factory=SnapshotConfig)
    streaming: StreamingConfig = field(default_factory=StreamingConfig)

    @classmethod
    def from_mapping(
        cls,
        data: Mapping[str, Any] | None,
        *,
        base_dir: Path | str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> "AgentConfig":
        """Build a config from a parsed YAML mapping, applying environment overrides."""
        env_mapping = os.environ if env is None else env
        raw = data or {}
        base = Path(base_dir or Path.cwd()).resolve()

        project = _section(raw, "project")
        root_value = project.get("root") or project.get("repo_root") or "."
        project_root = _resolve_path(str(root_value), base)

        paths = _section(raw, "paths")
        data_root = _resolve_path(str(paths.get("data") or ".forge"), project_root)
        logs_root = _resolve_path(str(paths.get("logs") or (data_root / "logs")), project_root)
        usage_db = _resolve_path(str(paths.get("usage_db") or (data_root / "usage.json")), project_root)

        models_raw = _section(raw, "models")
        models = ModelsConfig(
            orchestrator=str(models_raw.get("orchestrator") or DEFAULT_ORCHESTRATOR),
            sub_agent=str(models_raw.get("sub_agent") or DEFAULT_SUB_AGENT),
            timeout=_positive_float(models_raw.get("timeout"), 120.0),
            max_attempts=_positive_int(models_raw.get("max_attempts"), 3),
            retry_delay=_non_negative_float(models_raw.get("retry_delay"), 0.5),
            anthropic_api_key=_optional_str(models_raw.get("anthropic_api_key")),
            openai_api_key=_optional_str(models_raw.get("openai_api_key")),
        )

        budget_raw = _section(raw, "budget")
        budget_value = budget_raw.get("max_tokens", 400_000)
        budget = BudgetConfig(max_tokens=None if budget_value is None else _positive_int(budget_value, 400_000))

        rate_raw = _section(raw, "rate_limit")
        rate_limit = RateLimitConfig(
            max_sessions=_positive_int(rate_raw.get("max_sessions"), 10),
            window_seconds=_positive_float(rate_raw.get("window_seconds"), 60.0),
        )

        planning_raw = _section(raw, "planning")
        planning = PlanningConfig(
            confidence_threshold=_clamp(_positive_int(planning_raw.get("confidence_threshold"), 90), 0, 100),
            history_window=_positive_int(planning_raw.get("history_window"), 10),
        )

        commands_raw = _section(raw, "commands")
        prefixes = commands_raw.get("allowed_prefixes") or []
        commands = CommandsConfig(
            timeout=_positive_float(commands_raw.get("timeout"), 120.0),
            max_output_chars=_positive_int(commands_raw.get("max_output_chars"), 4_000),
            package_manager=str(commands_raw.get("package_manager") or "npm"),
            allowed_prefixes=tuple(str(item) for item in prefixes if isinstance(item, str) and item.strip()),
        )

        verification_raw = _section(raw, "verification")
        verification = VerificationConfig(
            enabled=bool(verification_raw.get("enabled", True)),
            base_url=str(verification_raw.get("base_url") or "http://localhost:3000").rstrip("/"),
            timeout=_positive_float(verification_raw.get("timeout"), 10.0),
            max_routes_per_module=_positive_int(verification_raw.get("max_routes_per_module"), 5),
        )

        search_raw = _section(raw, "search")
        search = SearchConfig(
            endpoint=str(search_raw.get("endpoint") or DEFAULT_SEARCH_ENDPOINT),
            api_key=_optional_str(search_raw.get("api_key")),
            count=_positive_int(search_raw.get("count"), 5),
        )

        snapshot_raw = _section(raw, "snapshots")
        snapshots = SnapshotConfig(
            enabled=bool(snapshot_raw.get("enabled", True)),
            commit_results=bool(snapshot_raw.get("commit_results", False)),
            timeout=_positive_float(snapshot_raw.get("timeout"), 30.0),
        )

        streaming_raw = _section(raw, "streaming")
        streaming = StreamingConfig(
            heartbeat_seconds=_positive_float(streaming_raw.get("heartbeat_seconds"), 15.0),
        )

        config = cls(
            project_root=project_root,
            data_root=data_root,
            logs_root=logs_root,
            usage_db=usage_db,
            project_name=str(project.get("name") or project_root.name),
            models=models,
            budget=budget,
            rate_limit=rate_limit,
            planning=planning,
            commands=commands,
            verification=verification,
            search=search,
            snapshots=snapshots,
            streaming=streaming,
        )
        config.apply_env(env_mapping)
        return config

    @classmethod
    def load(
        cls,
        path: Path | str | None = None,
        *,
        env: Mapping[str, str] | None = None,
    ) -> "AgentConfig":
        """Load configuration from ``path``; a missing file yields the defaults."""
        config_path = Path(path or DEFAULT_CONFIG_NAME)
        data: Mapping[str, Any] = {}
        if config_path.exists():
            with config_path.open("r", encoding="utf-8") as handle:
                loaded = yaml.safe_load(handle) or {}
            if not isinstance(loaded, Mapping):
                raise ValueError(f"Configuration must be a mapping at the top level: {config_path}")
            data = loaded
        else:
            LOGGER.debug("Config file %s not found; using defaults.", config_path)
        return cls.from_mapping(data, base_dir=config_path.resolve().parent, env=env)

    def apply_env(self, env: Mapping[str, str]) -> None:
        """Apply ``FORGE_*`` and provider key overrides; invalid values are ignored."""
        budget_override = env.get("FORGE_MAX_TOKEN_BUDGET") or env.get("MAX_TOKEN_BUDGET")
        if budget_override:
            try:
                parsed = int(str(budget_override).strip())
            except ValueError:
                LOGGER.warning("Ignoring invalid token budget override %r", budget_override)
            else:
                if parsed > 0:
                    self.budget.max_tokens = parsed
        orchestrator = env.get("FORGE_ORCHESTRATOR_MODEL")
        if orchestrator and orchestrator.strip():
            self.models.orchestrator = orchestrator.strip()
        sub_agent = env.get("FORGE_SUB_AGENT_MODEL")
        if sub_agent and sub_agent.strip():
            self.models.sub_agent = sub_agent.strip()
        timeout = env.get("FORGE_LLM_TIMEOUT")
        if timeout:
            self.models.timeout = _positive_float(timeout, self.models.timeout)
        if not self.models.anthropic_api_key:
            self.models.anthropic_api_key = _optional_str(env.get("ANTHROPIC_API_KEY"))
        if not self.models.openai_api_key:
            self.models.openai_api_key = _optional_str(env.get("OPENAI_API_KEY"))
        if not self.search.api_key:
            self.search.api_key = _optional_str(env.get("FORGE_SEARCH_API_KEY"))


def write_default_config(path: Path) -> None:
    """Persist the default configuration template with stable formatting."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(DEFAULT_CONFIG_TEMPLATE, handle, sort_keys=False)


def _section(data: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = data.get(key)
    return value if isinstance(value, Mapping) else {}


def _resolve_path(value: str, base: Path) -> Path:
    candidate = Path(value).expanduser()
    if not candidate.is_absolute():
        candidate = base / candidate
    return candidate.resolve()


def _optional_str(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _positive_int(value: Any, default: int) -> int:
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default


def _positive_float(value: Any, default: float) -> float:
    try:
        parsed = float(str(value).strip())
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default


def _non_negative_float(value: Any, default: float) -> float:
    try:
        parsed = float(str(value).strip())
    except (TypeError, ValueError):
        return default
    return parsed if parsed >= 0 else default


def _clamp(value: int, lower: int, upper: int) -> int:
    return max(lower, min(upper, value))


__all__ = [
    "AgentConfig",
    "BudgetConfig",
    "CommandsConfig",
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_CONFIG_TEMPLATE",
    "ModelsConfig",
    "PlanningConfig",
    "RateLimitConfig",
    "SearchConfig",
    "SnapshotConfig",
    "StreamingConfig",
    "VerificationConfig",
    "write_default_config",
]
