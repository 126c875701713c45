from __future__ import annotations

import pytest

from forge.budget import TokenBudget
from forge.errors import BudgetExceeded
from forge.models.registry import (
    ORCHESTRATOR_OUTPUT_CAP,
    SUB_AGENT_OUTPUT_CAP,
    get_model,
    models_for_tier,
    output_cap,
)


def test_budget_is_exhausted_once_spent_reaches_limit() -> None:
    budget = TokenBudget(limit=100)

    budget.record(60, "claude-sonnet-4-20250514")
    assert not budget.exceeded
    assert budget.remaining == 40

    budget.record(40, "claude-3-haiku-20240307")
    assert budget.exceeded
    assert budget.remaining == 0
    with pytest.raises(BudgetExceeded) as excinfo:
        budget.check()
    assert excinfo.value.details == {"spent": 100, "limit": 100}


def test_unlimited_budget_never_exhausts() -> None:
    budget = TokenBudget(limit=None)
    budget.record(10_000_000)

    assert not budget.exceeded
    assert budget.remaining is None
    budget.check()


def test_non_positive_records_are_ignored() -> None:
    budget = TokenBudget(limit=10)
    budget.record(0, "gpt-4o")
    budget.record(-5, "gpt-4o")

    assert budget.spent == 0
    assert budget.by_model == {}


def test_cost_uses_registry_pricing_and_skips_unknown_models() -> None:
    budget = TokenBudget()
    budget.record(2000, "claude-sonnet-4-20250514")
    budget.record(1000, "claude-3-haiku-20240307")
    budget.record(5000, "homegrown-model")

    assert budget.cost() == pytest.approx(0.03 + 0.00125)


def test_registry_tiers_and_output_caps() -> None:
    sub_agents = {model.id for model in models_for_tier("sub-agent")}

    assert "claude-3-haiku-20240307" in sub_agents
    assert "gpt-4o" in sub_agents
    assert "claude-opus-4-20250514" not in sub_agents
    assert get_model("missing") is None
    assert output_cap("claude-3-haiku-20240307") == SUB_AGENT_OUTPUT_CAP
    assert output_cap("claude-opus-4-20250514") == ORCHESTRATOR_OUTPUT_CAP
    assert output_cap("claude-opus-4-20250514", sub_agent=True) == SUB_AGENT_OUTPUT_CAP
    assert output_cap("unknown") == ORCHESTRATOR_OUTPUT_CAP
