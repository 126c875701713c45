"""Step executor: one handler per plan action, dispatched on the step variant."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from ..errors import CommandNotAllowed, PatchError, PathEscapeError, StepExecutionError
from ..models.llm_client import LLMClient, LLMClientError, LLMRequest
from ..models.registry import output_cap
from ..prompts import generation_system_prompt, render_create_api_prompt
from ..schema import (
    STEP_TYPES,
    ChatStep,
    CreateApiStep,
    DelegateBackendStep,
    DeleteFileStep,
    GenerateComponentStep,
    GeneratedFile,
    InstallPackagesStep,
    ListDirectoryStep,
    ModifyFilesStep,
    ModifyFileStep,
    PlanStepBase,
    ReadFileStep,
    RunCommandStep,
    SearchCodebaseStep,
    SearchWebStep,
    StepOutcome,
    StepStatus,
)
from ..tools.commands import CommandRunner
from ..tools.diff import unified_diff
from ..tools.search import SearchError, WebSearchClient, format_results
from ..tools.workspace import ProjectFiles, smart_truncate
from ..utils import pascal_case, slugify
from .backend import BackendDelegate
from .generation import ComponentGenerator, GenerationRequest, files_from_response, language_for
from .patching import PatchEngine
from .state import EventSink, SessionState

LOGGER = logging.getLogger(__name__)

FILE_CONTEXT_LIMIT = 4000
SEARCH_RESULT_LIMIT = 50

# Retries regenerate code for the step target; other actions fail without escalation.
RETRYABLE_STEPS = (GenerateComponentStep, ModifyFileStep, ModifyFilesStep, CreateApiStep)

# Receives a project-relative path; returns True when the caller approves the delete.
ConfirmDelete = Callable[[str], bool]
Handler = Callable[[PlanStepBase, SessionState, EventSink], StepOutcome]


def _deny_delete(path: str) -> bool:
    return False


def default_component_path(title: str) -> str:
    return f"src/components/{pascal_case(title, fallback='GeneratedComponent')}.tsx"


def default_api_path(resource: str) -> str:
    slug = slugify(resource, fallback="resource", max_length=40)
    return f"backend/src/{slug}/{slug}.controller.ts"


@dataclass(slots=True)
class WriteReport:
    generated: List[GeneratedFile]
    modified: List[GeneratedFile]
    rejected: List[str]


class StepExecutor:
    """Run plan steps against the project tree.

    Handlers raise on failure; :meth:`execute` turns every expected error into
    a failed :class:`StepOutcome` whose ``retryable`` flag tells the
    orchestrator whether the retry engine should see it.
    """

    def __init__(
        self,
        *,
        files: ProjectFiles,
        client: LLMClient,
        generator: ComponentGenerator,
        patcher: PatchEngine,
        commands: CommandRunner,
        backend: BackendDelegate,
        search: Optional[WebSearchClient] = None,
        confirm_delete: Optional[ConfirmDelete] = None,
        design_context: str = "",
        session_id: str = "",
    ) -> None:
        self.files = files
        self._client = client
        self._generator = generator
        self._patcher = patcher
        self._commands = commands
        self._backend = backend
        self._search = search
        self._confirm_delete = confirm_delete or _deny_delete
        self._design_context = design_context
        self.session_id = session_id
        self._handlers: Dict[type, Handler] = {
            SearchWebStep: self._search_web,
            SearchCodebaseStep: self._search_codebase,
            GenerateComponentStep: self._generate_component,
            ModifyFileStep: self._modify_file,
            ModifyFilesStep: self._modify_files,
            InstallPackagesStep: self._install_packages,
            RunCommandStep: self._run_command,
            DelegateBackendStep: self._delegate_backend,
            CreateApiStep: self._create_api,
            ReadFileStep: self._read_file,
            ListDirectoryStep: self._list_directory,
            DeleteFileStep: self._delete_file,
            ChatStep: self._chat,
        }
        missing = [step_type.__name__ for step_type in STEP_TYPES if step_type not in self._handlers]
        if missing:
            raise TypeError(f"No handler registered for: {', '.join(missing)}")

    # -------------------------------------------------------------- dispatch
    def execute(self, step: PlanStepBase, state: SessionState, emit: EventSink) -> StepOutcome:
        handler = self._handlers.get(type(step))
        if handler is None:
            raise TypeError(f"Unhandled plan step type: {type(step).__name__}")
        try:
            outcome = handler(step, state, emit)
        except CommandNotAllowed as error:
            LOGGER.warning("Step %s rejected: %s", step.id, error)
            outcome = StepOutcome(status=StepStatus.FAILED, detail=str(error), retryable=False)
        except StepExecutionError as error:
            outcome = StepOutcome(status=StepStatus.FAILED, detail=str(error), retryable=error.retryable)
        except PathEscapeError as error:
            outcome = StepOutcome(status=StepStatus.FAILED, detail=str(error), retryable=False)
        except (PatchError, LLMClientError, SearchError, OSError) as error:
            LOGGER.info("Step %s (%s) failed: %s", step.id, type(step).__name__, error)
            outcome = StepOutcome(status=StepStatus.FAILED, detail=str(error))
        if not isinstance(step, RETRYABLE_STEPS):
            outcome.retryable = False
        return outcome

    # ---------------------------------------------------------------- writes
    def write_files(self, files: Sequence[GeneratedFile], state: SessionState, emit: EventSink) -> WriteReport:
        """Write ``files`` to disk, rejecting only the individual paths that escape the root."""
        report = WriteReport(generated=[], modified=[], rejected=[])
        for item in files:
            try:
                relative = self.files.relative(item.path)
            except PathEscapeError as error:
                LOGGER.warning("Rejected write: %s", error)
                report.rejected.append(item.path)
                emit("progress", {"message": f"Skipped {item.path}: path is outside the project root"})
                continue
            original = self.files.read_optional(relative)
            self.files.write(relative, item.content)
            written = GeneratedFile(
                path=relative,
                content=item.content,
                language=item.language if item.language != "text" else language_for(relative),
                description=item.description,
            )
            state.record_write(written, original)
            (report.modified if original is not None else report.generated).append(written)
            emit(
                "file-update",
                {
                    "path": relative,
                    "action": "modified" if original is not None else "created",
                    "language": written.language,
                    "diff": unified_diff(original or "", item.content, relative),
                },
            )
        if files and not report.generated and not report.modified:
            raise StepExecutionError(
                f"Every output path was outside the project root: {', '.join(report.rejected)}",
                retryable=False,
            )
        return report

    def _written(self, files: Sequence[GeneratedFile], state: SessionState, emit: EventSink, detail: str) -> StepOutcome:
        report = self.write_files(files, state, emit)
        if report.rejected:
            detail = f"{detail} (rejected: {', '.join(report.rejected)})"
        return StepOutcome(status=StepStatus.DONE, detail=detail, generated=report.generated, modified=report.modified)

    def _prompt_context(self, state: SessionState) -> str:
        parts = [part for part in (state.context_block(), state.web_block()) if part]
        return "\n\n".join(parts)

    # --------------------------------------------------------------- context
    def _search_web(self, step: SearchWebStep, state: SessionState, emit: EventSink) -> StepOutcome:
        query = step.query or step.detail or step.title
        if self._search is None or not self._search.configured:
            note = f'Web search for "{query}" skipped: no search API key configured.'
            state.web_context.append(note)
            return StepOutcome(status=StepStatus.DONE, detail=note, context=note)
        try:
            results = self._search.search(query)
        except SearchError as error:
            # Web research is context only and never fails the plan.
            LOGGER.info("Web search for %r failed: %s", query, error)
            note = f'Web search for "{query}" failed: {error}'
            state.web_context.append(note)
            return StepOutcome(status=StepStatus.DONE, detail=note, context=note)
        block = format_results(query, results)
        state.web_context.append(block)
        return StepOutcome(status=StepStatus.DONE, detail=f"Found {len(results)} web result(s)", context=block)

    def _search_codebase(self, step: SearchCodebaseStep, state: SessionState, emit: EventSink) -> StepOutcome:
        query = step.query or step.title
        try:
            matches = self.files.search(
                query,
                include=step.include_pattern,
                is_regex=step.is_regex,
                max_results=SEARCH_RESULT_LIMIT,
            )
        except (re.error, OSError) as error:
            # Context gathering never fails the plan.
            LOGGER.info("Codebase search for %r failed: %s", query, error)
            return StepOutcome(status=StepStatus.DONE, detail=f"Search failed: {error}")
        if not matches:
            return StepOutcome(status=StepStatus.DONE, detail=f'No matches for "{query}"')
        block = f'Codebase search "{query}":\n' + "\n".join(match.format() for match in matches)
        state.codebase_context.append(block)
        return StepOutcome(status=StepStatus.DONE, detail=f"Found {len(matches)} match(es)", context=block)

    def _read_file(self, step: ReadFileStep, state: SessionState, emit: EventSink) -> StepOutcome:
        path = step.target_file
        found = self.files.read_with_variants(path) if path else None
        if found is None:
            return StepOutcome(status=StepStatus.DONE, detail=f"File not found: {path or '(none)'}")
        resolved, content = found
        state.loaded[resolved] = content
        block = f"### {resolved}\n```\n{smart_truncate(content, FILE_CONTEXT_LIMIT)}\n```"
        state.file_context.append(block)
        return StepOutcome(status=StepStatus.DONE, detail=f"Read {resolved} ({len(content)} chars)", context=block)

    def _list_directory(self, step: ListDirectoryStep, state: SessionState, emit: EventSink) -> StepOutcome:
        try:
            entries = self.files.list_directory(step.directory or ".")
        except PathEscapeError as error:
            return StepOutcome(status=StepStatus.DONE, detail=str(error))
        block = f"Directory {step.directory or '.'}:\n" + ("\n".join(entries) if entries else "(empty)")
        state.codebase_context.append(block)
        return StepOutcome(status=StepStatus.DONE, detail=f"Listed {len(entries)} entr(y/ies)", context=block)

    def _chat(self, step: ChatStep, state: SessionState, emit: EventSink) -> StepOutcome:
        message = step.message or step.detail
        state.replies.append(message)
        emit("progress", {"step_id": step.id, "message": message})
        return StepOutcome(status=StepStatus.DONE, detail=message)

    # ------------------------------------------------------------- mutation
    def _generate_component(self, step: GenerateComponentStep, state: SessionState, emit: EventSink) -> StepOutcome:
        path = step.new_file_path or default_component_path(step.title)
        files = self._generator.generate(
            GenerationRequest(
                title=step.title,
                detail=step.detail,
                path=path,
                siblings=state.generated[-3:],
                context=self._prompt_context(state),
                step_id=step.id,
                session_id=self.session_id,
            )
        )
        return self._written(files, state, emit, f"Generated {', '.join(item.path for item in files)}")

    def _load_target(self, path: str, state: SessionState) -> tuple[str, str]:
        normalised = self.files.normalise(path)
        content = state.current_content(normalised)
        if content is not None:
            return normalised, content
        found = self.files.read_with_variants(normalised)
        if found is None:
            raise StepExecutionError(f"File not found: {path}")
        resolved, content = found
        state.loaded[resolved] = content
        return resolved, content

    def _patch(self, path: str, instruction: str, state: SessionState, step_id: int) -> GeneratedFile:
        resolved, content = self._load_target(path, state)
        result = self._patcher.modify(
            resolved,
            content,
            instruction,
            context=self._prompt_context(state),
            step_id=step_id,
            session_id=self.session_id,
        )
        LOGGER.info("Patched %s via %s (%s edit(s))", resolved, result.strategy, result.applied)
        return GeneratedFile(path=resolved, content=result.content, language=language_for(resolved), description=instruction)

    def _modify_file(self, step: ModifyFileStep, state: SessionState, emit: EventSink) -> StepOutcome:
        if not step.target_file:
            raise StepExecutionError("modify_file step has no target file")
        updated = self._patch(step.target_file, step.detail or step.title, state, step.id)
        return self._written([updated], state, emit, f"Modified {updated.path}")

    def _modify_files(self, step: ModifyFilesStep, state: SessionState, emit: EventSink) -> StepOutcome:
        if not step.target_files:
            raise StepExecutionError("modify_files step has no target files")
        updated: list[GeneratedFile] = []
        failures: list[str] = []
        for path in step.target_files:
            try:
                updated.append(self._patch(path, step.detail or step.title, state, step.id))
            except (StepExecutionError, PatchError, PathEscapeError, LLMClientError) as error:
                failures.append(f"{path}: {error}")
        if not updated:
            raise StepExecutionError("; ".join(failures))
        detail = f"Modified {', '.join(item.path for item in updated)}"
        if failures:
            detail += f"; failed: {'; '.join(failures)}"
        return self._written(updated, state, emit, detail)

    def _install_packages(self, step: InstallPackagesStep, state: SessionState, emit: EventSink) -> StepOutcome:
        if not step.packages:
            raise StepExecutionError("install_packages step lists no packages", retryable=False)
        result = self._commands.install(step.packages, dev=step.dev)
        if not result.ok:
            raise StepExecutionError(f"Install failed: {result.summary()}", retryable=False)
        return StepOutcome(status=StepStatus.DONE, detail=f"Installed {', '.join(step.packages)}", context=result.summary())

    def _run_command(self, step: RunCommandStep, state: SessionState, emit: EventSink) -> StepOutcome:
        result = self._commands.run(step.command)
        if result.skipped:
            return StepOutcome(
                status=StepStatus.DONE,
                detail=f"Skipped `{step.command}`: build, lint and test run during verification",
            )
        if not result.ok:
            raise StepExecutionError(f"Command failed: {result.summary()}", retryable=False)
        output = result.summary()
        state.codebase_context.append(f"$ {step.command}\n{output}")
        return StepOutcome(status=StepStatus.DONE, detail=f"Ran `{step.command}`", context=output)

    def _delegate_backend(self, step: DelegateBackendStep, state: SessionState, emit: EventSink) -> StepOutcome:
        produced = state.produced
        if not produced:
            return StepOutcome(status=StepStatus.DONE, detail="No generated files to analyse for backend needs")
        result = self._backend.delegate(
            produced,
            context=self._prompt_context(state),
            session_id=self.session_id,
            step_id=step.id,
        )
        state.followups.extend(result.followups)
        for followup in result.followups:
            emit("progress", {"step_id": step.id, "message": f"Manual follow-up: {followup}"})
        detail = f"{len(result.tasks)} backend task(s): {len(result.files)} file(s) applied, {len(result.followups)} follow-up(s)"
        if not result.files:
            return StepOutcome(status=StepStatus.DONE, detail=detail)
        return self._written(result.files, state, emit, detail)

    def _create_api(self, step: CreateApiStep, state: SessionState, emit: EventSink) -> StepOutcome:
        resource = step.resource or step.title
        path = step.new_file_path or default_api_path(resource)
        request = LLMRequest(
            prompt=render_create_api_prompt(
                resource=resource,
                detail=step.detail,
                path=path,
                context=self._prompt_context(state),
            ),
            system_prompt=generation_system_prompt(self._design_context),
            model=self._client.model,
            max_output_tokens=output_cap(self._client.model),
            purpose="create-api",
            metadata={"session_id": self.session_id, "step_id": step.id},
        )
        response = self._client.complete(request)
        files = files_from_response(response.text, path, step.detail or f"{resource} API")
        return self._written(files, state, emit, f"Created API {', '.join(item.path for item in files)}")

    def _delete_file(self, step: DeleteFileStep, state: SessionState, emit: EventSink) -> StepOutcome:
        if not step.target_file:
            raise StepExecutionError("delete_file step has no target file", retryable=False)
        path = self.files.relative(step.target_file)
        if not self.files.exists(path):
            raise StepExecutionError(f"File not found: {path}", retryable=False)
        emit("progress", {"step_id": step.id, "message": f"Confirm deletion of {path}", "confirm": True, "path": path})
        if not self._confirm_delete(path):
            raise StepExecutionError(f"Deletion of {path} was not confirmed", retryable=False)
        original = self.files.read_optional(path)
        self.files.delete(path)
        state.record_delete(path, original)
        emit("file-update", {"path": path, "action": "deleted", "diff": unified_diff(original or "", "", path)})
        return StepOutcome(status=StepStatus.DONE, detail=f"Deleted {path}")


__all__ = ["ConfirmDelete", "StepExecutor", "WriteReport", "default_api_path", "default_component_path"]
