"""Session-scoped token budget and cost ledger."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

from .errors import BudgetExceeded
from .models.registry import get_model

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class TokenBudget:
    """Hard ceiling on the tokens a session may spend across all LLM calls.

    ``limit`` of ``None`` disables the ceiling. Once ``spent`` reaches the
    limit the budget is exhausted and no further steps may start.
    """

    limit: Optional[int] = None
    spent: int = 0
    by_model: Dict[str, int] = field(default_factory=dict)

    def record(self, tokens: int, model: str | None = None) -> None:
        if tokens <= 0:
            return
        self.spent += tokens
        if model:
            self.by_model[model] = self.by_model.get(model, 0) + tokens
        if self.exceeded:
            LOGGER.info("Token budget exhausted: %s/%s", self.spent, self.limit)

    @property
    def remaining(self) -> Optional[int]:
        if self.limit is None:
            return None
        return max(self.limit - self.spent, 0)

    @property
    def exceeded(self) -> bool:
        return self.limit is not None and self.spent >= self.limit

    def check(self) -> None:
        """Raise :class:`BudgetExceeded` when no budget remains."""
        if self.exceeded:
            raise BudgetExceeded(
                f"Token budget exhausted ({self.spent}/{self.limit} tokens)",
                details={"spent": self.spent, "limit": self.limit},
            )

    def cost(self) -> float:
        """Return the estimated spend in dollars using registry pricing."""
        total = 0.0
        for model_id, tokens in self.by_model.items():
            info = get_model(model_id)
            if info is not None:
                total += info.cost(tokens)
        return round(total, 6)


__all__ = ["TokenBudget"]
