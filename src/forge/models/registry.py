"""Registry of supported language models and their pricing tiers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

Provider = Literal["anthropic", "openai"]
Tier = Literal["orchestrator", "sub-agent", "both"]

ORCHESTRATOR_OUTPUT_CAP = 8192
SUB_AGENT_OUTPUT_CAP = 4096


@dataclass(frozen=True, slots=True)
class ModelInfo:
    """Static description of one model the agent may route calls to."""

    id: str
    name: str
    provider: Provider
    tier: Tier
    cost_per_1k_tokens: float

    @property
    def max_output_tokens(self) -> int:
        if self.tier == "sub-agent":
            return SUB_AGENT_OUTPUT_CAP
        return ORCHESTRATOR_OUTPUT_CAP

    def cost(self, tokens: int) -> float:
        return round(max(tokens, 0) / 1000 * self.cost_per_1k_tokens, 6)


MODELS: tuple[ModelInfo, ...] = (
    ModelInfo("claude-opus-4-20250514", "Claude Opus 4", "anthropic", "orchestrator", 0.075),
    ModelInfo("claude-sonnet-4-20250514", "Claude Sonnet 4", "anthropic", "both", 0.015),
    ModelInfo("gpt-4o", "GPT-4o", "openai", "both", 0.01),
    ModelInfo("claude-3-haiku-20240307", "Claude 3 Haiku", "anthropic", "sub-agent", 0.00125),
    ModelInfo("gpt-4o-mini", "GPT-4o Mini", "openai", "sub-agent", 0.00075),
    ModelInfo("claude-3-5-sonnet-20241022", "Claude 3.5 Sonnet", "anthropic", "both", 0.015),
)

DEFAULT_ORCHESTRATOR = "claude-sonnet-4-20250514"
DEFAULT_SUB_AGENT = "claude-3-haiku-20240307"

_BY_ID = {model.id: model for model in MODELS}


def get_model(model_id: str) -> ModelInfo | None:
    """Return the registry entry for ``model_id`` or ``None`` when unknown."""
    return _BY_ID.get(model_id)


def models_for_tier(tier: str) -> list[ModelInfo]:
    """Return models usable in ``tier``; models tagged ``both`` qualify for either tier."""
    return [model for model in MODELS if model.tier == tier or model.tier == "both"]


def output_cap(model_id: str, *, sub_agent: bool = False) -> int:
    """Return the output-token ceiling for a call routed to ``model_id``."""
    if sub_agent:
        return SUB_AGENT_OUTPUT_CAP
    model = get_model(model_id)
    return model.max_output_tokens if model else ORCHESTRATOR_OUTPUT_CAP


__all__ = [
    "DEFAULT_ORCHESTRATOR",
    "DEFAULT_SUB_AGENT",
    "MODELS",
    "ModelInfo",
    "get_model",
    "models_for_tier",
    "output_cap",
]
