"""Turn a user request into a validated, confidence-scored execution plan."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from pydantic import TypeAdapter, ValidationError

from ..errors import PlanParseError
from ..models.llm_client import LLMClient, LLMRequest, LLMResponseFormatError
from ..models.registry import output_cap
from ..prompts import planner_system_prompt, render_plan_prompt
from ..schema import (
    KNOWN_ACTIONS,
    ChatStep,
    ExecutionPlan,
    Intent,
    PlanStep,
    PlanStepBase,
    StepStatus,
)
from .context import trim_history
from .heuristics import auto_correct, normalise_intent

LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIDENCE_THRESHOLD = 90

_STEP_ADAPTER: TypeAdapter[Any] = TypeAdapter(PlanStep)


@dataclass(slots=True)
class PlanResult:
    """Plan plus the bookkeeping the orchestrator needs."""

    plan: ExecutionPlan
    tokens_used: int = 0
    model: str = ""
    fallback: bool = False
    dropped_steps: int = 0


def _default_title(step: PlanStepBase) -> str:
    if step.detail:
        first_line = step.detail.strip().splitlines()[0]
        return first_line[:60].rstrip()
    return step.action.replace("_", " ").capitalize()  # type: ignore[attr-defined]


def parse_steps(raw_steps: Iterable[Any], *, start_id: int = 1) -> tuple[List[PlanStepBase], int]:
    """Validate raw step mappings, dropping unknown actions and malformed entries.

    Ids are reassigned sequentially from ``start_id``, missing titles are
    filled in and every step starts ``pending``. Returns the steps and the
    number dropped.
    """
    steps: list[PlanStepBase] = []
    dropped = 0
    for raw in raw_steps:
        if not isinstance(raw, Mapping):
            dropped += 1
            continue
        payload: Dict[str, Any] = dict(raw)
        action = str(payload.get("action") or "").strip().lower()
        if action not in KNOWN_ACTIONS:
            LOGGER.info("Dropping plan step with unknown action %r", payload.get("action"))
            dropped += 1
            continue
        payload["action"] = action
        payload.pop("status", None)
        payload.pop("id", None)
        if payload.get("title") is None:
            payload.pop("title", None)
        if "description" in payload and not payload.get("detail"):
            payload["detail"] = payload["description"]
        try:
            step = _STEP_ADAPTER.validate_python(payload)
        except ValidationError as error:
            LOGGER.info("Dropping malformed %s step: %s", action, error.errors()[:1])
            dropped += 1
            continue
        step.id = start_id + len(steps)
        step.status = StepStatus.PENDING
        if not str(step.title).strip():
            step.title = _default_title(step)
        steps.append(step)
    return steps, dropped


def fallback_plan(text: str, *, summary: str = "Conversational reply") -> ExecutionPlan:
    """Single ``chat`` step used when the planner output cannot be parsed."""
    message = (text or "").strip() or "I could not produce a plan for that request."
    return ExecutionPlan(
        intent=Intent.CHAT,
        confidence=100,
        summary=summary,
        steps=[ChatStep(id=1, title="Reply", detail=message[:200], message=message)],
    )


def needs_clarification(plan: ExecutionPlan, threshold: int = DEFAULT_CONFIDENCE_THRESHOLD) -> bool:
    """Low-confidence plans that carry a question stop before execution."""
    return plan.confidence < threshold and bool((plan.clarify_question or "").strip())


class PlanEngine:
    """Produce execution plans from one planner completion."""

    def __init__(
        self,
        client: LLMClient,
        *,
        model: Optional[str] = None,
        history_window: int = 10,
        confidence_threshold: int = DEFAULT_CONFIDENCE_THRESHOLD,
    ) -> None:
        self._client = client
        self._model = model or client.model
        self.history_window = history_window
        self.confidence_threshold = confidence_threshold

    def create_plan(
        self,
        message: str,
        *,
        project_context: str = "",
        history: Sequence[Mapping[str, Any]] | None = None,
        open_file: Optional[str] = None,
        session_id: str = "",
    ) -> PlanResult:
        request = LLMRequest(
            prompt=render_plan_prompt(message, project_context or "(no project context)", open_file),
            system_prompt=planner_system_prompt(),
            history=trim_history(history, self.history_window),
            model=self._model,
            max_output_tokens=output_cap(self._model),
            purpose="plan",
            metadata={"session_id": session_id},
        )
        response = self._client.complete(request)
        tokens = response.total_tokens

        try:
            raw = self.parse_payload(response.text)
        except PlanParseError as error:
            LOGGER.warning("Planner returned unparseable output (%s); falling back to chat.", error)
            return PlanResult(
                plan=fallback_plan(response.text),
                tokens_used=tokens,
                model=response.model or self._model,
                fallback=True,
            )

        plan, dropped = self.build_plan(raw, message=message, open_file=open_file)
        LOGGER.info(
            "Plan ready: intent=%s confidence=%s steps=%s dropped=%s",
            plan.intent.value,
            plan.confidence,
            len(plan.steps),
            dropped,
        )
        return PlanResult(plan=plan, tokens_used=tokens, model=response.model or self._model, dropped_steps=dropped)

    def parse_payload(self, text: str) -> Mapping[str, Any]:
        """Return the planner mapping in ``text`` or raise :class:`PlanParseError`."""
        try:
            raw = self._client.parse_json(text)
        except LLMResponseFormatError as error:
            raise PlanParseError(str(error)) from error
        if isinstance(raw, list):
            raw = {"steps": raw}
        if not isinstance(raw, Mapping):
            raise PlanParseError(f"Planner returned {type(raw).__name__}, expected an object")
        return raw

    def build_plan(
        self,
        raw: Mapping[str, Any],
        *,
        message: str = "",
        open_file: Optional[str] = None,
    ) -> tuple[ExecutionPlan, int]:
        """Validate a raw planner mapping into an :class:`ExecutionPlan`."""
        raw_steps = raw.get("steps")
        steps, dropped = parse_steps(raw_steps if isinstance(raw_steps, list) else [])
        clarify = raw.get("clarifyQuestion", raw.get("clarify_question"))
        plan = ExecutionPlan(
            intent=normalise_intent(raw.get("intent"), has_steps=bool(steps)),
            confidence=raw.get("confidence", 100),
            summary=str(raw.get("summary") or ""),
            clarify_question=str(clarify).strip() if clarify else None,
            steps=[],
        )
        plan.steps = steps
        if not plan.steps and not needs_clarification(plan, self.confidence_threshold):
            fallback_text = plan.summary or plan.clarify_question or "There is nothing to do for this request."
            plan.steps = [ChatStep(id=1, title="Reply", detail=fallback_text[:200], message=fallback_text)]
            plan.intent = Intent.CHAT
        return auto_correct(plan, message, open_file=open_file), dropped

    def needs_clarification(self, plan: ExecutionPlan) -> bool:
        return needs_clarification(plan, self.confidence_threshold)


__all__ = [
    "DEFAULT_CONFIDENCE_THRESHOLD",
    "PlanEngine",
    "PlanResult",
    "fallback_plan",
    "needs_clarification",
    "parse_steps",
]
