"""Client wrapper that charges every completion against a token budget."""

from __future__ import annotations

from ..budget import TokenBudget
from .llm_client import LLMClient, LLMRequest, LLMResponse


class MeteredClient(LLMClient):
    """Delegate to ``inner`` and record the tokens each response reports."""

    def __init__(self, inner: LLMClient, budget: TokenBudget) -> None:
        super().__init__(model=inner.model, max_attempts=1)
        self.inner = inner
        self.budget = budget

    def complete(self, request: LLMRequest) -> LLMResponse:
        response = self.inner.complete(request)
        self.budget.record(response.total_tokens, response.model or request.model or self.inner.model)
        return response


__all__ = ["MeteredClient"]
