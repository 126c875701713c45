"""Backend-needs analysis for ``delegate_backend`` steps."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Literal, Optional, Sequence

from pydantic import Field, field_validator

from ..models.llm_client import LLMClient, LLMRequest
from ..models.registry import output_cap
from ..prompts import render_backend_analysis_prompt
from ..schema import GeneratedFile, StepModel
from .generation import ComponentGenerator, GenerationRequest

LOGGER = logging.getLogger(__name__)

ANALYSIS_FILE_LIMIT = 3000
MAX_ANALYSED_FILES = 8


class BackendTask(StepModel):
    kind: Literal["endpoint", "seed", "collection", "other"] = "other"
    title: str = ""
    detail: str = ""
    file_path: Optional[str] = Field(default=None, alias="filePath")
    auto_apply: bool = Field(default=False, alias="autoApply")

    @field_validator("kind", mode="before")
    @classmethod
    def _coerce_kind(cls, value: object) -> object:
        if value in {"endpoint", "seed", "collection"}:
            return value
        return "other"

    @property
    def applicable(self) -> bool:
        return self.auto_apply and bool((self.file_path or "").strip())

    def describe(self) -> str:
        target = f" ({self.file_path})" if self.file_path else ""
        return f"[{self.kind}] {self.title or self.detail}{target}"


class BackendAnalysis(StepModel):
    tasks: List[BackendTask] = Field(default_factory=list)


@dataclass(slots=True)
class DelegationResult:
    tasks: List[BackendTask] = field(default_factory=list)
    files: List[GeneratedFile] = field(default_factory=list)
    followups: List[str] = field(default_factory=list)


class BackendDelegate:
    """Ask the sub-agent model what backend work the produced files rely on.

    Tasks it marks ``autoApply`` with a target file are generated right away
    through the orchestrator's generator; everything else is returned as a
    manual follow-up.
    """

    def __init__(self, client: LLMClient, generator: ComponentGenerator, *, model: Optional[str] = None) -> None:
        self._client = client
        self._generator = generator
        self._model = model or client.model

    def analyse(self, files: Sequence[GeneratedFile], *, session_id: str = "", step_id: int = 0) -> List[BackendTask]:
        sample = [(item.path, item.content[:ANALYSIS_FILE_LIMIT]) for item in files[:MAX_ANALYSED_FILES]]
        request = LLMRequest(
            prompt=render_backend_analysis_prompt(sample),
            system_prompt="You are a backend engineer reviewing frontend code for missing server-side work.",
            model=self._model,
            max_output_tokens=output_cap(self._model, sub_agent=True),
            purpose="backend-analysis",
            metadata={"session_id": session_id, "step_id": step_id},
        )
        analysis, _ = self._client.invoke_structured(request, BackendAnalysis)
        return analysis.tasks

    def delegate(
        self,
        files: Sequence[GeneratedFile],
        *,
        context: str = "",
        session_id: str = "",
        step_id: int = 0,
    ) -> DelegationResult:
        result = DelegationResult(tasks=self.analyse(files, session_id=session_id, step_id=step_id))
        for task in result.tasks:
            if not task.applicable:
                result.followups.append(task.describe())
                continue
            LOGGER.info("Auto-applying backend task %r -> %s", task.title, task.file_path)
            generated = self._generator.generate(
                GenerationRequest(
                    title=task.title or f"Backend {task.kind}",
                    detail=task.detail,
                    path=str(task.file_path),
                    context=context,
                    step_id=step_id,
                    session_id=session_id,
                )
            )
            result.files.extend(generated)
        return result


__all__ = ["BackendAnalysis", "BackendDelegate", "BackendTask", "DelegationResult"]
