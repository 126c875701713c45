"""Session orchestration: plan, execute, recover, checkpoint, verify and report."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Iterator, List, Mapping, Optional, Sequence
from uuid import uuid4

from .budget import TokenBudget
from .config import AgentConfig
from .errors import BudgetExceeded, RateLimitExceeded, StepExecutionError
from .execution import (
    BackendDelegate,
    ComponentGenerator,
    ConfirmDelete,
    PatchEngine,
    SessionState,
    StepExecutor,
)
from .models.llm_client import LLMClient, LLMClientError
from .models.metered import MeteredClient
from .models.providers import build_client
from .planning import PlanEngine
from .planning.context import build_project_context
from .prompts import render_design_context
from .ratelimit import FixedWindowRateLimiter
from .retry import RetryEngine
from .schema import (
    ExecutionPlan,
    GeneratedFile,
    Intent,
    PlanStepBase,
    Snapshot,
    StepOutcome,
    StepStatus,
    TestReport,
)
from .snapshots import SnapshotManager
from .streaming import AgentEvent
from .telemetry import emit_event
from .tools.call_logs import CallLogWriter
from .tools.commands import CommandRunner, Runner
from .tools.diff import combined_diff
from .tools.search import WebSearchClient
from .tools.vcs import GitError, GitRepository
from .tools.workspace import ProjectFiles
from .usage import JsonStore, UsageLedger
from .verification import ApiSmokeTester, FunctionalReviewer, VerificationAgent
from .verification.api_smoke import Probe

LOGGER = logging.getLogger(__name__)

RATE_LIMIT_KEY = "agent-session"
BUDGET_SKIP_DETAIL = "Not started: token budget exhausted"
REPLAN_FAILURE_THRESHOLD = 2
REVIEW_DIFF_LIMIT = 40_000


def _new_session_id() -> str:
    return uuid4().hex[:12]


@dataclass(slots=True)
class SessionRequest:
    """One agent turn as submitted by a caller."""

    message: str
    history: Sequence[Mapping[str, Any]] = ()
    open_file: Optional[str] = None
    previous_files: Sequence[str] = ()
    verify: bool = True
    session_id: str = field(default_factory=_new_session_id)


@dataclass(slots=True)
class StepRecord:
    """Executed-plan entry for a step that was actually started."""

    id: int
    title: str
    action: str
    status: StepStatus
    detail: str = ""
    tokens_used: int = 0
    recovered: bool = False
    files: List[str] = field(default_factory=list)


@dataclass(slots=True)
class SessionResult:
    session_id: str
    plan: Optional[ExecutionPlan] = None
    steps: List[StepRecord] = field(default_factory=list)
    generated: List[GeneratedFile] = field(default_factory=list)
    modified: List[GeneratedFile] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    replies: List[str] = field(default_factory=list)
    followups: List[str] = field(default_factory=list)
    snapshot: Optional[Snapshot] = None
    report: Optional[TestReport] = None
    clarify_question: Optional[str] = None
    budget_exhausted: bool = False
    replanned: bool = False
    tokens_used: int = 0
    cost: float = 0.0
    summary: str = ""
    error: Optional[str] = None
    events: List[AgentEvent] = field(default_factory=list)

    @property
    def touched_files(self) -> List[str]:
        """Paths written or deleted by the session, the scope for a later rollback."""
        paths = [item.path for item in (*self.generated, *self.modified)]
        return [*paths, *(path for path in self.deleted if path not in paths)]

    @property
    def ok(self) -> bool:
        if self.error is not None or self.budget_exhausted:
            return False
        return all(record.status == StepStatus.DONE for record in self.steps)


@dataclass(slots=True)
class SessionServices:
    """Per-session wiring of the stateless services around one metered client."""

    budget: TokenBudget
    client: MeteredClient
    files: ProjectFiles
    planner: PlanEngine
    executor: StepExecutor
    retry: RetryEngine
    verifier: VerificationAgent
    snapshots: SnapshotManager


def step_summary(step: PlanStepBase) -> Dict[str, Any]:
    return {
        "id": step.id,
        "title": step.title,
        "action": getattr(step, "action", ""),
        "status": step.status.value,
        "target": step.target_path,
    }


class SessionOrchestrator:
    """Sequence the agent services for one request.

    :meth:`stream` yields progress events as the session advances and always
    finishes with a ``done`` event; :meth:`run` drains it into a
    :class:`SessionResult`. Steps run strictly one after another, the token
    budget is checked before each one, and a failing step is handed to the
    retry engine unless its failure is final (disallowed command, refused
    delete, failed install).
    """

    def __init__(
        self,
        config: AgentConfig,
        *,
        client: Optional[LLMClient] = None,
        rate_limiter: Optional[FixedWindowRateLimiter] = None,
        usage: Optional[UsageLedger] = None,
        search: Optional[WebSearchClient] = None,
        confirm_delete: Optional[ConfirmDelete] = None,
        command_runner: Optional[Runner] = None,
        smoke_probe: Optional[Probe] = None,
        log_calls: Optional[bool] = None,
    ) -> None:
        self.config = config
        self._log_calls = client is None if log_calls is None else log_calls
        self._client = client or build_client(
            anthropic_api_key=config.models.anthropic_api_key,
            openai_api_key=config.models.openai_api_key,
            model=config.models.orchestrator,
            timeout=config.models.timeout,
            max_attempts=config.models.max_attempts,
            retry_delay=config.models.retry_delay,
        )
        self.rate_limiter = rate_limiter or FixedWindowRateLimiter(
            config.rate_limit.max_sessions,
            config.rate_limit.window_seconds,
        )
        self.usage = usage or UsageLedger(JsonStore(config.usage_db))
        self._search = search or WebSearchClient(
            config.search.endpoint,
            config.search.api_key,
            count=config.search.count,
        )
        self._confirm_delete = confirm_delete
        self._command_runner = command_runner
        self._smoke_probe = smoke_probe

    # ----------------------------------------------------------------- wiring
    def build_services(self, session_id: str) -> SessionServices:
        config = self.config
        orchestrator_model = config.models.orchestrator
        sub_agent_model = config.models.sub_agent
        if self._log_calls:
            self._client.call_logger = CallLogWriter(config.logs_root, session_id=session_id)

        budget = TokenBudget(limit=config.budget.max_tokens)
        client = MeteredClient(self._client, budget)
        git = GitRepository(config.project_root, timeout=config.snapshots.timeout)
        files = ProjectFiles(config.project_root, git=git)
        design = render_design_context(app_context=f"Project: {config.project_name}" if config.project_name else "")

        generator = ComponentGenerator(client, model=orchestrator_model, design_context=design)
        executor = StepExecutor(
            files=files,
            client=client,
            generator=generator,
            patcher=PatchEngine(client, model=orchestrator_model, design_context=design),
            commands=CommandRunner(
                config.project_root,
                allowed_prefixes=config.commands.allowed_prefixes,
                timeout=config.commands.timeout,
                max_output_chars=config.commands.max_output_chars,
                package_manager=config.commands.package_manager,
                runner=self._command_runner,
            ),
            backend=BackendDelegate(client, generator, model=sub_agent_model),
            search=self._search,
            confirm_delete=self._confirm_delete,
            design_context=design,
            session_id=session_id,
        )
        return SessionServices(
            budget=budget,
            client=client,
            files=files,
            planner=PlanEngine(
                client,
                model=orchestrator_model,
                history_window=config.planning.history_window,
                confidence_threshold=config.planning.confidence_threshold,
            ),
            executor=executor,
            retry=RetryEngine(client, files, model=orchestrator_model, design_context=design, session_id=session_id),
            verifier=VerificationAgent(
                smoke=self._smoke_tester(),
                reviewer=FunctionalReviewer(client, model=sub_agent_model),
            ),
            snapshots=SnapshotManager(git),
        )

    # -------------------------------------------------------------- sessions
    def run(self, request: SessionRequest) -> SessionResult:
        result = SessionResult(session_id=request.session_id)
        for event in self.stream(request, result=result):
            result.events.append(event)
        return result

    def stream(self, request: SessionRequest, *, result: Optional[SessionResult] = None) -> Iterator[AgentEvent]:
        result = result if result is not None else SessionResult(session_id=request.session_id)
        pending: Deque[AgentEvent] = deque()

        def emit(event: str, data: Mapping[str, Any]) -> None:
            pending.append(AgentEvent(event, dict(data)))

        try:
            yield from self._session(request, result, emit, pending)
        except RateLimitExceeded as error:
            result.error = str(error)
            yield AgentEvent(
                "error",
                {"message": str(error), "retry_after": round(self.rate_limiter.retry_after(RATE_LIMIT_KEY), 3)},
            )
        except Exception as error:  # every failure still ends the stream with error + done
            LOGGER.exception("Session %s failed", request.session_id)
            result.error = str(error) or type(error).__name__
            if result.plan is not None:
                for step in result.plan.steps:
                    if step.status == StepStatus.RUNNING:
                        step.status = StepStatus.FAILED
            while pending:
                yield pending.popleft()
            yield AgentEvent("error", {"message": result.error})
        yield AgentEvent("done", {"session_id": request.session_id, "ok": result.ok})

    def _session(
        self,
        request: SessionRequest,
        result: SessionResult,
        emit: Callable[[str, Mapping[str, Any]], None],
        pending: Deque[AgentEvent],
    ) -> Iterator[AgentEvent]:
        def drain() -> Iterator[AgentEvent]:
            while pending:
                yield pending.popleft()

        self.rate_limiter.acquire(RATE_LIMIT_KEY)
        services = self.build_services(request.session_id)
        state = SessionState(message=request.message)
        LOGGER.info("Session %s started: %r", request.session_id, request.message[:120])

        # Plan
        planned = services.planner.create_plan(
            request.message,
            project_context=build_project_context(services.files, generated=request.previous_files),
            history=request.history,
            open_file=request.open_file,
            session_id=request.session_id,
        )
        plan = planned.plan
        result.plan = plan
        yield AgentEvent(
            "plan",
            {
                "intent": plan.intent.value,
                "confidence": plan.confidence,
                "summary": plan.summary,
                "fallback": planned.fallback,
                "dropped_steps": planned.dropped_steps,
                "steps": [step_summary(step) for step in plan.steps],
            },
        )

        if services.planner.needs_clarification(plan):
            result.clarify_question = plan.clarify_question
            result.summary = plan.clarify_question or ""
            self._finish(request, result, services, state)
            yield AgentEvent("result", self._result_payload(result))
            return

        # Checkpoint
        if plan.intent == Intent.BUILD and plan.has_mutations and self.config.snapshots.enabled:
            try:
                result.snapshot = services.snapshots.create(f"Before: {request.message[:60]}")
            except GitError as error:
                LOGGER.warning("Snapshot failed; continuing without a checkpoint: %s", error)
                yield AgentEvent(
                    "progress",
                    {"level": "warning", "message": f"Snapshot failed, continuing without a checkpoint: {error}"},
                )
            else:
                yield AgentEvent(
                    "snapshot",
                    {
                        "commit": result.snapshot.commit_hash,
                        "label": result.snapshot.label,
                        "timestamp": result.snapshot.timestamp.isoformat(),
                    },
                )

        # Execute
        steps: list[PlanStepBase] = list(plan.steps)
        completed: list[PlanStepBase] = []
        failed: list[tuple[PlanStepBase, str]] = []
        index = 0
        while index < len(steps):
            try:
                services.budget.check()
            except BudgetExceeded as error:
                result.budget_exhausted = True
                for skipped in steps[index:]:
                    skipped.status = StepStatus.FAILED
                message = f"{error}; {len(steps) - index} step(s) not started"
                LOGGER.warning("Session %s: %s", request.session_id, message)
                yield AgentEvent("progress", {"level": "warning", "message": message, "skipped": BUDGET_SKIP_DETAIL})
                break

            step = steps[index]
            index += 1
            record = yield from self._execute_step(step, state, services, emit, drain)
            result.steps.append(record)
            if record.status == StepStatus.DONE:
                completed.append(step)
                continue
            failed.append((step, record.detail))

            if len(failed) >= REPLAN_FAILURE_THRESHOLD and not result.replanned:
                result.replanned = True
                revised = self._replan(request, services, state, completed, failed, steps[index:])
                if revised:
                    steps = [*steps[:index], *revised]
                    plan.steps = steps
                    yield AgentEvent(
                        "plan",
                        {
                            "replanned": True,
                            "summary": plan.summary,
                            "steps": [step_summary(item) for item in revised],
                        },
                    )

        # Commit
        if result.snapshot is not None and self.config.snapshots.commit_results and state.produced:
            try:
                services.snapshots.commit(f"Agent: {request.message[:60]}")
            except GitError as error:
                LOGGER.warning("Commit after session failed: %s", error)
                yield AgentEvent("progress", {"level": "warning", "message": f"Commit failed: {error}"})

        # Verify
        if request.verify and self.config.verification.enabled and state.produced:
            spent_before = services.budget.spent
            verifier = services.verifier
            if services.budget.exceeded:
                verifier = VerificationAgent(smoke=self._smoke_tester())
            diff = combined_diff(
                [(item.path, state.originals.get(item.path), item.content) for item in state.produced],
                limit=REVIEW_DIFF_LIMIT,
            )
            report = verifier.run(request.message, state.produced, diff, emit=emit, session_id=request.session_id)
            report.tokens_used = services.budget.spent - spent_before
            result.report = report
            yield from drain()

        self._finish(request, result, services, state)
        yield AgentEvent("result", self._result_payload(result))

    def _execute_step(
        self,
        step: PlanStepBase,
        state: SessionState,
        services: SessionServices,
        emit: Callable[[str, Mapping[str, Any]], None],
        drain: Callable[[], Iterator[AgentEvent]],
    ) -> Iterator[AgentEvent]:
        spent_before = services.budget.spent
        step.status = StepStatus.RUNNING
        yield AgentEvent("step_start", step_summary(step))

        outcome = services.executor.execute(step, state, emit)
        yield from drain()
        recovered = False
        if not outcome.ok and outcome.retryable:
            recovery = services.retry.recover(step, outcome.detail, state, emit)
            yield from drain()
            if recovery.success:
                try:
                    written = services.executor.write_files(recovery.files, state, emit)
                except StepExecutionError as error:
                    outcome = StepOutcome(status=StepStatus.FAILED, detail=f"{recovery.detail}, but {error}")
                else:
                    recovered = True
                    outcome = StepOutcome(
                        status=StepStatus.DONE,
                        detail=recovery.detail,
                        generated=written.generated,
                        modified=written.modified,
                    )
                yield from drain()
            else:
                outcome = StepOutcome(status=StepStatus.FAILED, detail=f"{outcome.detail}\n{recovery.detail}")

        step.status = outcome.status
        record = StepRecord(
            id=step.id,
            title=step.title,
            action=getattr(step, "action", ""),
            status=outcome.status,
            detail=outcome.detail,
            tokens_used=services.budget.spent - spent_before,
            recovered=recovered,
            files=[item.path for item in outcome.files_produced],
        )
        emit_event(
            "step.completed",
            step_id=step.id,
            action=record.action,
            status=record.status.value,
            tokens=record.tokens_used,
            recovered=recovered,
        )
        yield AgentEvent(
            "task-done",
            {
                "id": record.id,
                "title": record.title,
                "action": record.action,
                "status": record.status.value,
                "detail": record.detail,
                "tokens_used": record.tokens_used,
                "recovered": recovered,
                "files": record.files,
            },
        )
        return record

    def _replan(
        self,
        request: SessionRequest,
        services: SessionServices,
        state: SessionState,
        completed: Sequence[PlanStepBase],
        failed: Sequence[tuple[PlanStepBase, str]],
        remaining: Sequence[PlanStepBase],
    ) -> List[PlanStepBase]:
        if services.budget.exceeded:
            return []
        try:
            replanned = services.retry.replan(
                request.message,
                completed=completed,
                failed=failed,
                remaining=remaining,
                generated_paths=[item.path for item in state.generated],
            )
        except LLMClientError as error:
            LOGGER.warning("Re-plan failed: %s", error)
            return []
        if not replanned.success:
            return []
        LOGGER.info("Re-planned %s remaining step(s) into %s", len(remaining), len(replanned.steps))
        return list(replanned.steps)

    def _smoke_tester(self) -> ApiSmokeTester:
        return ApiSmokeTester(
            self.config.verification.base_url,
            timeout=self.config.verification.timeout,
            max_routes=self.config.verification.max_routes_per_module,
            probe=self._smoke_probe,
        )

    # ---------------------------------------------------------------- report
    def _finish(
        self,
        request: SessionRequest,
        result: SessionResult,
        services: SessionServices,
        state: SessionState,
    ) -> None:
        result.generated = list(state.generated)
        result.modified = list(state.modified)
        result.deleted = list(state.deleted)
        result.replies = list(state.replies)
        result.followups = list(state.followups)
        result.tokens_used = services.budget.spent
        result.cost = services.budget.cost()
        if not result.summary:
            result.summary = summarise_session(result)

        by_model = services.budget.by_model
        sub_agent_model = self.config.models.sub_agent
        sub_agent_tokens = by_model.get(sub_agent_model, 0) if sub_agent_model != self.config.models.orchestrator else 0
        self.usage.record_session(
            orchestrator_model=self.config.models.orchestrator,
            sub_agent_model=sub_agent_model,
            orchestrator_tokens=services.budget.spent - sub_agent_tokens,
            sub_agent_tokens=sub_agent_tokens,
            files_generated=len(result.generated) + len(result.modified),
            session_id=request.session_id,
        )
        emit_event(
            "session.completed",
            session_id=request.session_id,
            steps=len(result.steps),
            tokens=result.tokens_used,
            budget_exhausted=result.budget_exhausted,
        )

    @staticmethod
    def _result_payload(result: SessionResult) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "session_id": result.session_id,
            "summary": result.summary,
            "steps": [
                {"id": record.id, "title": record.title, "status": record.status.value, "detail": record.detail}
                for record in result.steps
            ],
            "generated": [item.path for item in result.generated],
            "modified": [item.path for item in result.modified],
            "deleted": list(result.deleted),
            "followups": list(result.followups),
            "tokens_used": result.tokens_used,
            "cost": result.cost,
            "budget_exhausted": result.budget_exhausted,
            "snapshot": result.snapshot.commit_hash if result.snapshot else None,
        }
        if result.clarify_question:
            payload["clarify_question"] = result.clarify_question
        if result.replies:
            payload["reply"] = "\n\n".join(result.replies)
        if result.report is not None:
            payload["tests"] = {
                "summary": result.report.summary,
                "passed": result.report.passed,
                "warnings": result.report.warnings,
                "failures": result.report.failures,
                "duration_ms": result.report.duration_ms,
                "results": [
                    {
                        "id": item.id,
                        "category": item.category,
                        "severity": item.severity,
                        "title": item.title,
                        "detail": item.detail,
                        "file": item.file,
                    }
                    for item in result.report.results
                ],
            }
        return payload


def summarise_session(result: SessionResult) -> str:
    """Human-readable account of what succeeded, what failed and why."""
    done = [record for record in result.steps if record.status == StepStatus.DONE]
    failed = [record for record in result.steps if record.status != StepStatus.DONE]
    lines = [f"Completed {len(done)}/{len(result.steps)} step(s)"]
    if result.generated or result.modified or result.deleted:
        lines.append(
            f"Files: {len(result.generated)} created, {len(result.modified)} modified, {len(result.deleted)} deleted"
        )
    if result.budget_exhausted:
        lines.append("Stopped early: token budget exhausted")
    for record in failed:
        lines.append(f"Failed step {record.id} ({record.title}): {record.detail}")
    if result.followups:
        lines.append("Follow-ups: " + "; ".join(result.followups))
    if result.report is not None:
        lines.append(f"Tests: {result.report.summary}")
    return "\n".join(lines)


__all__ = [
    "SessionOrchestrator",
    "SessionRequest",
    "SessionResult",
    "StepRecord",
    "summarise_session",
]
