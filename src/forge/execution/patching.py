"""Model-driven file modification: line-numbered edits with a full-rewrite fallback."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Literal, Optional

from ..errors import PatchError
from ..models.llm_client import LLMClient, LLMRequest, LLMResponseFormatError
from ..models.registry import output_cap
from ..prompts import patch_system_prompt, render_patch_prompt, render_rewrite_prompt
from ..telemetry import emit_event
from ..tools.diff import unified_diff
from ..tools.patch import EditPlan, apply_edits, dedupe_rewrite, number_lines
from .generation import MIN_CODE_LENGTH, strip_code_fences

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class PatchResult:
    """Outcome of modifying one file."""

    path: str
    content: str
    strategy: Literal["line-edits", "rewrite"]
    applied: int = 0
    skipped: List[str] = field(default_factory=list)
    deduplicated: bool = False
    diff: str = ""


class PatchEngine:
    """Modify existing files through the model.

    The primary strategy asks for a JSON edit list against the numbered
    file. When nothing parses or nothing applies, one full-file rewrite is
    requested and guarded against the model echoing the file twice.
    """

    def __init__(self, client: LLMClient, *, model: Optional[str] = None, design_context: str = "") -> None:
        self._client = client
        self._model = model or client.model
        self._design_context = design_context

    def modify(
        self,
        path: str,
        content: str,
        instruction: str,
        *,
        context: str = "",
        step_id: int = 0,
        session_id: str = "",
    ) -> PatchResult:
        metadata = {"session_id": session_id, "step_id": step_id, "path": path}
        request = LLMRequest(
            prompt=render_patch_prompt(path=path, numbered=number_lines(content), instruction=instruction, context=context),
            system_prompt=patch_system_prompt(self._design_context),
            model=self._model,
            max_output_tokens=output_cap(self._model),
            purpose="patch",
            metadata=metadata,
        )
        plan: EditPlan | None = None
        try:
            plan, _ = self._client.invoke_structured(request, EditPlan)
        except LLMResponseFormatError as error:
            LOGGER.info("Edit list for %s did not parse: %s", path, error)

        if plan is not None and plan.edits:
            outcome = apply_edits(content, plan)
            if outcome.applied > 0:
                return PatchResult(
                    path=path,
                    content=outcome.content,
                    strategy="line-edits",
                    applied=outcome.applied,
                    skipped=list(outcome.skipped),
                    diff=unified_diff(content, outcome.content, path),
                )
            LOGGER.info("No edits applied to %s (%s skipped); falling back to rewrite", path, len(outcome.skipped))

        return self._rewrite(path, content, instruction, context=context, metadata=metadata)

    def _rewrite(self, path: str, content: str, instruction: str, *, context: str, metadata: dict) -> PatchResult:
        emit_event("patch.rewrite_fallback", path=path)
        request = LLMRequest(
            prompt=render_rewrite_prompt(path=path, content=content, instruction=instruction, context=context),
            system_prompt=patch_system_prompt(self._design_context),
            model=self._model,
            max_output_tokens=output_cap(self._model),
            purpose="patch-rewrite",
            metadata=metadata,
        )
        response = self._client.complete(request)
        rewritten = strip_code_fences(response.text)
        if len(rewritten.strip()) < MIN_CODE_LENGTH:
            raise PatchError(f"Rewrite of {path} produced insufficient content", details={"path": path})
        rewritten, deduplicated = dedupe_rewrite(rewritten)
        return PatchResult(
            path=path,
            content=rewritten,
            strategy="rewrite",
            deduplicated=deduplicated,
            diff=unified_diff(content, rewritten, path),
        )


__all__ = ["PatchEngine", "PatchResult"]
