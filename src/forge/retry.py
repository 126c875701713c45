"""Escalating recovery for failed plan steps, plus re-planning after repeated failures."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, List, Mapping, Optional, Sequence

from pydantic import Field, field_validator

from .errors import ForgeError, StepExecutionError
from .execution.executor import default_component_path
from .execution.generation import files_from_response
from .execution.state import EventSink, SessionState
from .models.llm_client import LLMClient, LLMClientError, LLMRequest, LLMResponseFormatError
from .models.registry import output_cap
from .planning.engine import parse_steps
from .prompts import (
    JSON_RESPONSE_INSTRUCTION,
    generation_system_prompt,
    render_contextual_retry_prompt,
    render_decompose_prompt,
    render_diagnosis_prompt,
    render_diagnostic_fix_prompt,
    render_replan_prompt,
    render_subtask_prompt,
)
from .schema import GeneratedFile, PlanStepBase, RetryAttempt, StepModel
from .telemetry import emit_event
from .tools.workspace import ProjectFiles

LOGGER = logging.getLogger(__name__)

MAX_STRATEGIES = 3
TARGET_CONTENT_LIMIT = 8000
FILE_CONTEXT_LIMIT = 4000
SUBTASK_CONTEXT_LIMIT = 3000
PRIOR_FILE_LIMIT = 3000
MAX_DIAGNOSTIC_SEARCHES = 3
MAX_DIAGNOSTIC_FILES = 4
DIAGNOSTIC_SEARCH_RESULTS = 10
DIAGNOSTIC_MATCHES_SHOWN = 8
MAX_SUBTASKS = 4

SUCCESS_DETAILS = {
    1: "Succeeded on contextual retry (strategy 1)",
    2: "Succeeded via diagnostic analysis (strategy 2)",
    3: "Succeeded by decomposing into sub-steps (strategy 3)",
}
STRATEGY_LABELS = {1: "contextual retry", 2: "diagnostic", 3: "decompose"}


class Diagnosis(StepModel):
    root_cause: str = Field(default="", alias="rootCause")
    search_queries: List[str] = Field(default_factory=list, alias="searchQueries")
    files_to_read: List[str] = Field(default_factory=list, alias="filesToRead")
    fix_approach: str = Field(default="", alias="fixApproach")

    @field_validator("search_queries", "files_to_read", mode="before")
    @classmethod
    def _coerce_lists(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [value] if value.strip() else []
        if isinstance(value, list):
            return [str(item) for item in value if str(item).strip()]
        return value


class SubTask(StepModel):
    title: str = ""
    detail: str = ""
    file_path: Optional[str] = Field(default=None, alias="filePath")
    dependencies: str = ""

    @field_validator("dependencies", "detail", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> Any:
        if value is None:
            return ""
        if isinstance(value, list):
            return ", ".join(str(item) for item in value)
        return value


@dataclass(slots=True)
class RetryResult:
    """Outcome of escalating one failed step through the recovery strategies."""

    success: bool
    files: List[GeneratedFile] = field(default_factory=list)
    detail: str = ""
    attempts: List[RetryAttempt] = field(default_factory=list)


@dataclass(slots=True)
class ReplanResult:
    success: bool
    steps: List[PlanStepBase] = field(default_factory=list)
    dropped: int = 0


class RetryEngine:
    """Run up to three recovery strategies for a failed step, stopping at the first success.

    1. Contextual retry: resend the task with the error and current file content.
    2. Diagnose then fix: ask for a root cause and lookups, gather the
       codebase context they name, then ask for a fix grounded in it.
    3. Decompose: split the task into small single-file sub-tasks that see
       each other's output; any sub-task producing a file counts as success.
    """

    def __init__(
        self,
        client: LLMClient,
        files: ProjectFiles,
        *,
        model: Optional[str] = None,
        design_context: str = "",
        session_id: str = "",
    ) -> None:
        self._client = client
        self._files = files
        self._model = model or client.model
        self._design_context = design_context
        self.session_id = session_id

    # -------------------------------------------------------------- recover
    def recover(self, step: PlanStepBase, error: str, state: SessionState, emit: EventSink) -> RetryResult:
        strategies: dict[int, Callable[[PlanStepBase, str, List[str], SessionState, EventSink], List[GeneratedFile]]] = {
            1: self._contextual_retry,
            2: self._diagnose_and_fix,
            3: self._decompose,
        }
        failures: list[str] = []
        attempts: list[RetryAttempt] = []
        for number in range(1, MAX_STRATEGIES + 1):
            label = STRATEGY_LABELS[number]
            emit("progress", {"step_id": step.id, "message": f'Strategy {number}/{MAX_STRATEGIES}: {label} for "{step.title}"'})
            try:
                files = strategies[number](step, error, failures, state, emit)
            except StepExecutionError as failure:
                entry = f"Strategy {number} ({label}): {failure}"
            except (ForgeError, LLMClientError, OSError) as failure:
                LOGGER.warning("Retry strategy %s threw: %s", number, failure)
                entry = f"Strategy {number} threw: {failure}"
            else:
                attempts.append(RetryAttempt(strategy=number))
                emit_event("retry.strategy", step_id=step.id, strategy=number, succeeded=True, files=len(files))
                return RetryResult(success=True, files=files, detail=SUCCESS_DETAILS[number], attempts=attempts)
            failures.append(entry)
            attempts.append(RetryAttempt(strategy=number, error=entry))
            emit_event("retry.strategy", step_id=step.id, strategy=number, succeeded=False, error=entry)

        listing = "\n".join(f"  {index}. {entry}" for index, entry in enumerate(failures, start=1))
        return RetryResult(
            success=False,
            detail=f"All {MAX_STRATEGIES} retry strategies failed:\n{listing}",
            attempts=attempts,
        )

    # ----------------------------------------------------------- strategies
    def _contextual_retry(
        self,
        step: PlanStepBase,
        error: str,
        failures: List[str],
        state: SessionState,
        emit: EventSink,
    ) -> List[GeneratedFile]:
        path = step.target_path
        current = ""
        if path:
            current = state.current_content(path) or self._files.read_optional(path) or ""
        prompt = render_contextual_retry_prompt(
            title=step.title,
            detail=step.detail,
            error=error,
            path=path,
            current_content=current[:TARGET_CONTENT_LIMIT],
            web_context=state.web_block(),
            file_context=state.context_block(FILE_CONTEXT_LIMIT),
        )
        response = self._client.complete(self._code_request(prompt, "retry-contextual", step))
        try:
            return files_from_response(response.text, self._default_path(step), f"Retry fix: {step.detail}")
        except StepExecutionError as failure:
            raise StepExecutionError("Model returned insufficient content on retry") from failure

    def _diagnose_and_fix(
        self,
        step: PlanStepBase,
        error: str,
        failures: List[str],
        state: SessionState,
        emit: EventSink,
    ) -> List[GeneratedFile]:
        request = self._json_request(
            render_diagnosis_prompt(title=step.title, detail=step.detail, error=error, previous_failures=failures),
            "retry-diagnose",
            step,
            system="You are an expert debugger analysing a failure.",
        )
        try:
            diagnosis, _ = self._client.invoke_structured(request, Diagnosis)
        except LLMResponseFormatError as failure:
            raise StepExecutionError("Could not parse diagnostic analysis") from failure
        emit("progress", {"step_id": step.id, "message": f"Root cause: {diagnosis.root_cause or 'unknown'}"})

        context = self._diagnostic_context(diagnosis, state)
        emit("progress", {"step_id": step.id, "message": "Applying fix based on diagnostic analysis"})
        prompt = render_diagnostic_fix_prompt(
            title=step.title,
            detail=step.detail,
            error=error,
            root_cause=diagnosis.root_cause,
            fix_approach=diagnosis.fix_approach,
            diagnostic_context=context,
            generated_paths=[item.path for item in state.generated],
            web_context=state.web_block(),
        )
        response = self._client.complete(self._code_request(prompt, "retry-diagnostic-fix", step))
        try:
            return files_from_response(response.text, self._default_path(step), f"Diagnostic fix: {step.detail}")
        except StepExecutionError as failure:
            raise StepExecutionError(
                f"Diagnostic fix produced insufficient output. Root cause: {diagnosis.root_cause}"
            ) from failure

    def _diagnostic_context(self, diagnosis: Diagnosis, state: SessionState) -> str:
        sections: list[str] = []
        for query in diagnosis.search_queries[:MAX_DIAGNOSTIC_SEARCHES]:
            try:
                matches = self._files.search(query, max_results=DIAGNOSTIC_SEARCH_RESULTS)
            except (re.error, OSError) as failure:
                LOGGER.debug("Diagnostic search for %r failed: %s", query, failure)
                continue
            if matches:
                formatted = "\n".join(match.format() for match in matches[:DIAGNOSTIC_MATCHES_SHOWN])
                sections.append(f'Search "{query}":\n{formatted}')
        for path in diagnosis.files_to_read[:MAX_DIAGNOSTIC_FILES]:
            content = state.current_content(path)
            if content is None:
                content = self._files.read_optional(path)
                if content is None:
                    continue
                state.loaded[path] = content
            sections.append(f"File {path}:\n```\n{content[:FILE_CONTEXT_LIMIT]}\n```")
        return "\n\n".join(sections)

    def _decompose(
        self,
        step: PlanStepBase,
        error: str,
        failures: List[str],
        state: SessionState,
        emit: EventSink,
    ) -> List[GeneratedFile]:
        request = self._json_request(
            render_decompose_prompt(title=step.title, detail=step.detail, error=error, previous_failures=failures),
            "retry-decompose",
            step,
            system="You are an expert task decomposer.",
        )
        try:
            subtasks, _ = self._client.invoke_structured(request, List[SubTask])
        except LLMResponseFormatError as failure:
            raise StepExecutionError("Could not decompose step into sub-tasks") from failure
        if not subtasks:
            raise StepExecutionError("Could not decompose step into sub-tasks")
        subtasks = subtasks[:MAX_SUBTASKS]
        emit("progress", {"step_id": step.id, "message": f"Decomposed into {len(subtasks)} sub-tasks"})

        produced: list[GeneratedFile] = []
        results: list[str] = []
        for index, subtask in enumerate(subtasks, start=1):
            emit("progress", {"step_id": step.id, "message": f"Sub-task {index}/{len(subtasks)}: {subtask.title}"})
            path = subtask.file_path or default_component_path(subtask.title)
            prompt = render_subtask_prompt(
                title=subtask.title,
                detail=subtask.detail,
                path=path,
                dependencies=subtask.dependencies,
                prior_files=[(item.path, item.content[:PRIOR_FILE_LIMIT]) for item in produced],
                file_context=state.context_block(SUBTASK_CONTEXT_LIMIT),
                web_context=state.web_block(),
            )
            try:
                response = self._client.complete(self._code_request(prompt, f"retry-subtask-{index}", step))
                files = files_from_response(response.text, path, f"Sub-task: {subtask.title}")
            except StepExecutionError:
                results.append(f'Sub-task {index} "{subtask.title}": produced insufficient output')
                continue
            except LLMClientError as failure:
                results.append(f'Sub-task {index} "{subtask.title}": threw {failure}')
                continue
            produced.extend(files)
            results.append(f'Sub-task {index} "{subtask.title}": succeeded')

        if not produced:
            raise StepExecutionError(f"Decomposition produced no files: {'; '.join(results)}")
        return produced

    # --------------------------------------------------------------- replan
    def replan(
        self,
        message: str,
        *,
        completed: Sequence[PlanStepBase],
        failed: Sequence[tuple[PlanStepBase, str]],
        remaining: Sequence[PlanStepBase],
        generated_paths: Sequence[str],
    ) -> ReplanResult:
        """Ask for revised remaining steps; ids continue after completed and failed counts."""
        prompt = render_replan_prompt(
            message=message,
            completed=[f"{step.title}: {step.detail}" for step in completed],
            failed=[f"{step.title}: {error}" for step, error in failed],
            remaining=[f"{step.title}: {step.detail}" for step in remaining],
            generated_paths=generated_paths,
        )
        request = LLMRequest(
            prompt=prompt,
            system_prompt=f"You are an expert planner revising a failed execution plan. {JSON_RESPONSE_INSTRUCTION}",
            model=self._model,
            max_output_tokens=output_cap(self._model),
            purpose="replan",
            metadata={"session_id": self.session_id},
        )
        response = self._client.complete(request)
        try:
            raw = self._client.parse_json(response.text)
        except LLMResponseFormatError as failure:
            LOGGER.warning("Re-plan response did not parse: %s", failure)
            return ReplanResult(success=False)
        if isinstance(raw, Mapping):
            raw = raw.get("steps")
        if not isinstance(raw, list) or not raw:
            return ReplanResult(success=False)
        steps, dropped = parse_steps(raw, start_id=len(completed) + len(failed) + 1)
        emit_event("retry.replan", steps=len(steps), dropped=dropped)
        return ReplanResult(success=bool(steps), steps=steps, dropped=dropped)

    # -------------------------------------------------------------- helpers
    def _default_path(self, step: PlanStepBase) -> str:
        return step.target_path or default_component_path(step.title)

    def _code_request(self, prompt: str, purpose: str, step: PlanStepBase) -> LLMRequest:
        return LLMRequest(
            prompt=prompt,
            system_prompt=generation_system_prompt(self._design_context),
            model=self._model,
            max_output_tokens=output_cap(self._model),
            purpose=purpose,
            metadata={"session_id": self.session_id, "step_id": step.id},
        )

    def _json_request(self, prompt: str, purpose: str, step: PlanStepBase, *, system: str) -> LLMRequest:
        return LLMRequest(
            prompt=prompt,
            system_prompt=f"{system} {JSON_RESPONSE_INSTRUCTION}",
            model=self._model,
            max_output_tokens=output_cap(self._model),
            purpose=purpose,
            metadata={"session_id": self.session_id, "step_id": step.id},
        )


__all__ = ["Diagnosis", "ReplanResult", "RetryEngine", "RetryResult", "SubTask"]
