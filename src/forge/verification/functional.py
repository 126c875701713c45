"""Model-judged functional review of a session's diff."""

from __future__ import annotations

import logging
from typing import Any, List, Mapping, Optional

from pydantic import Field, ValidationError, field_validator

from ..models.llm_client import LLMClient, LLMClientError, LLMRequest
from ..models.registry import output_cap
from ..prompts import functional_review_system_prompt, render_functional_review_prompt
from ..schema import StepModel, TestResult
from ..tools.workspace import smart_truncate

LOGGER = logging.getLogger(__name__)

MAX_FINDINGS = 10
DIFF_LIMIT = 24_000
_SEVERITIES = frozenset({"pass", "warn", "fail"})


class ReviewFinding(StepModel):
    severity: str = "warn"
    title: str = "Functional check"
    detail: str = ""
    file: Optional[str] = Field(default=None)

    @field_validator("severity", mode="before")
    @classmethod
    def _coerce_severity(cls, value: Any) -> str:
        text = str(value or "").strip().lower()
        return text if text in _SEVERITIES else "warn"

    @field_validator("title", "detail", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> Any:
        return "" if value is None else value


class FunctionalReviewer:
    """Ask the sub-agent model whether the diff fulfils the request end-to-end."""

    def __init__(self, client: LLMClient, *, model: Optional[str] = None) -> None:
        self._client = client
        self._model = model or client.model

    def review(self, request: str, diff: str, *, session_id: str = "") -> List[TestResult]:
        llm_request = LLMRequest(
            prompt=render_functional_review_prompt(request, smart_truncate(diff, DIFF_LIMIT)),
            system_prompt=functional_review_system_prompt(),
            model=self._model,
            max_output_tokens=output_cap(self._model, sub_agent=True),
            purpose="functional-review",
            metadata={"session_id": session_id},
        )
        try:
            response = self._client.complete(llm_request)
            raw = self._client.parse_json(response.text)
        except LLMClientError as error:
            LOGGER.warning("Functional review failed: %s", error)
            return [
                TestResult(
                    id="func-error",
                    category="functional",
                    severity="warn",
                    title="Functional review could not run",
                    detail=f"Review failed: {error}",
                )
            ]
        return self._results(raw)

    @staticmethod
    def _results(raw: Any) -> List[TestResult]:
        if isinstance(raw, Mapping):
            raw = raw.get("results") or raw.get("findings") or []
        if not isinstance(raw, list):
            return []
        results: list[TestResult] = []
        for entry in raw:
            if len(results) >= MAX_FINDINGS:
                break
            if not isinstance(entry, Mapping):
                continue
            try:
                finding = ReviewFinding.model_validate(entry)
            except ValidationError:
                continue
            results.append(
                TestResult(
                    id=f"func-{len(results) + 1}",
                    category="functional",
                    severity=finding.severity,  # type: ignore[arg-type]
                    title=finding.title or "Functional check",
                    detail=finding.detail,
                    file=finding.file or None,
                )
            )
        return results


__all__ = ["FunctionalReviewer", "ReviewFinding"]
