from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from forge.orchestrator import BUDGET_SKIP_DETAIL, SessionOrchestrator, SessionRequest, SessionResult
from forge.ratelimit import FixedWindowRateLimiter
from forge.retry import SUCCESS_DETAILS
from forge.schema import StepStatus
from forge.snapshots import SnapshotManager
from forge.tools.search import SearchError, WebSearchClient
from forge.tools.vcs import GitRepository

from conftest import SUB_AGENT_MODEL, ScriptedClient, TinyProject, make_config

CARD_PATH = "src/components/PricingCard.tsx"
CARD = (
    "export default function PricingCard({ name }: { name: string }) {\n"
    "  return <section className=\"card\">{name}</section>;\n"
    "}\n"
)


def _plan(*steps: Dict[str, Any], confidence: int = 95, **extra: Any) -> str:
    return json.dumps({"intent": "build", "confidence": confidence, "summary": "Pricing", "steps": list(steps), **extra})


GENERATE_CARD = {"action": "generate_component", "title": "Pricing card", "detail": "Card", "newFilePath": CARD_PATH}
CHAT_DONE = {"action": "chat", "title": "Wrap up", "message": "Added the pricing card."}


def _orchestrator(
    project: TinyProject,
    client: ScriptedClient,
    overrides: Optional[Dict[str, Any]] = None,
    **kwargs: Any,
) -> SessionOrchestrator:
    kwargs.setdefault("smoke_probe", lambda url, timeout: 200)
    return SessionOrchestrator(make_config(project.root, overrides), client=client, **kwargs)


def _names(result: SessionResult, *, skip_progress: bool = True) -> List[str]:
    return [event.event for event in result.events if not (skip_progress and event.event == "progress")]


def _payload(result: SessionResult, name: str) -> Dict[str, Any]:
    return next(event.data for event in result.events if event.event == name)


def test_build_session_checkpoints_executes_and_verifies(tiny_project: TinyProject) -> None:
    before = tiny_project.head()
    client = ScriptedClient(
        {
            "plan": [_plan(GENERATE_CARD, CHAT_DONE)],
            "generate": [CARD],
            "functional-review": ['[{"severity": "pass", "title": "Card renders"}]'],
        }
    )
    orchestrator = _orchestrator(tiny_project, client)

    result = orchestrator.run(SessionRequest(message="Add a pricing card"))

    assert _names(result) == [
        "plan",
        "snapshot",
        "step_start",
        "file-update",
        "task-done",
        "step_start",
        "task-done",
        "result",
        "done",
    ]
    assert result.ok
    assert _payload(result, "done") == {"session_id": result.session_id, "ok": True}
    assert result.snapshot is not None and result.snapshot.commit_hash != before
    assert tiny_project.read(CARD_PATH) == CARD
    assert [record.status for record in result.steps] == [StepStatus.DONE, StepStatus.DONE]
    assert result.steps[0].files == [CARD_PATH]
    assert result.steps[0].tokens_used == 150
    assert result.replies == ["Added the pricing card."]
    assert result.touched_files == [CARD_PATH]
    assert client.purposes == ["plan", "generate", "functional-review"]

    assert result.report is not None
    assert result.report.passed == 1
    assert result.report.tokens_used == 150
    payload = _payload(result, "result")
    assert payload["generated"] == [CARD_PATH]
    assert payload["reply"] == "Added the pricing card."
    assert payload["tests"]["passed"] == 1
    assert payload["snapshot"] == result.snapshot.commit_hash

    assert result.tokens_used == 450
    stats = orchestrator.usage.stats()
    assert stats["sessions"] == 1
    assert stats["totalTokens"] == 450
    assert stats["subAgentTokens"] == 150
    assert stats["filesGenerated"] == 1


def test_rollback_after_session_reverts_only_session_files(tiny_project: TinyProject) -> None:
    client = ScriptedClient({"plan": [_plan(GENERATE_CARD)], "generate": [CARD]})
    result = _orchestrator(tiny_project, client).run(SessionRequest(message="Add a pricing card", verify=False))
    tiny_project.write("package.json", '{"name": "user-edit"}\n')

    rollback = SnapshotManager(GitRepository(tiny_project.root)).rollback(
        result.snapshot.commit_hash, result.touched_files
    )

    assert rollback.deleted == [CARD_PATH]
    assert not (tiny_project.root / CARD_PATH).exists()
    assert tiny_project.read("package.json") == '{"name": "user-edit"}\n'


def test_clarifying_question_stops_before_execution(tiny_project: TinyProject) -> None:
    before = tiny_project.head()
    client = ScriptedClient({"plan": [_plan(confidence=40, clarifyQuestion="Which page should show it?")]})

    result = _orchestrator(tiny_project, client).run(SessionRequest(message="Add it somewhere"))

    assert _names(result) == ["plan", "result", "done"]
    assert result.clarify_question == "Which page should show it?"
    assert _payload(result, "result")["clarify_question"] == "Which page should show it?"
    assert result.steps == []
    assert result.snapshot is None
    assert tiny_project.head() == before


def test_budget_exhaustion_skips_remaining_steps(tiny_project: TinyProject) -> None:
    client = ScriptedClient({"plan": [_plan(GENERATE_CARD, CHAT_DONE)], "generate": [CARD]})
    orchestrator = _orchestrator(tiny_project, client, {"budget": {"max_tokens": 200}})

    result = orchestrator.run(SessionRequest(message="Add a pricing card"))

    assert result.budget_exhausted
    assert not result.ok
    assert [record.id for record in result.steps] == [1]
    assert result.plan is not None
    assert [step.status for step in result.plan.steps] == [StepStatus.DONE, StepStatus.FAILED]
    warning = next(event.data for event in result.events if event.data.get("skipped"))
    assert warning["skipped"] == BUDGET_SKIP_DETAIL
    assert "1 step(s) not started" in warning["message"]
    # Smoke checks still run once the budget is gone, the model review does not.
    assert "functional-review" not in client.purposes
    assert result.report is not None and result.report.tokens_used == 0
    assert "Stopped early: token budget exhausted" in result.summary
    assert _payload(result, "done")["ok"] is False


def test_budget_ceiling_between_steps_never_starts_the_rest(tiny_project: TinyProject) -> None:
    header = {"action": "generate_component", "title": "Header", "detail": "Header", "newFilePath": "src/components/Header.tsx"}
    client = ScriptedClient({"plan": [_plan(GENERATE_CARD, header, CHAT_DONE)], "generate": [CARD, CARD]})
    orchestrator = _orchestrator(tiny_project, client, {"budget": {"max_tokens": 200}})

    result = orchestrator.run(SessionRequest(message="Add a pricing card and a header", verify=False))

    assert client.purposes == ["plan", "generate"]
    assert [record.id for record in result.steps] == [1]
    assert 3 not in {record.id for record in result.steps}
    assert [step.status for step in result.plan.steps] == [StepStatus.DONE, StepStatus.FAILED, StepStatus.FAILED]
    assert [event.data["id"] for event in result.events if event.event == "step_start"] == [1]
    assert not (tiny_project.root / "src/components/Header.tsx").exists()
    warning = next(event.data for event in result.events if event.data.get("skipped"))
    assert warning["message"].startswith("Token budget exhausted (")
    assert "2 step(s) not started" in warning["message"]


def test_failed_step_is_recovered_by_retry_engine(tiny_project: TinyProject) -> None:
    client = ScriptedClient(
        {"plan": [_plan(GENERATE_CARD)], "generate": ["ok"], "retry-contextual": [CARD]}
    )

    result = _orchestrator(tiny_project, client).run(SessionRequest(message="Add a pricing card", verify=False))

    (record,) = result.steps
    assert record.status == StepStatus.DONE
    assert record.recovered is True
    assert record.detail == SUCCESS_DETAILS[1]
    assert record.files == [CARD_PATH]
    assert tiny_project.read(CARD_PATH) == CARD
    task_done = _payload(result, "task-done")
    assert task_done["recovered"] is True


def test_search_outage_does_not_escalate_to_code_retries(tiny_project: TinyProject) -> None:
    def unreachable(url: str, headers: Dict[str, str]) -> str:
        raise SearchError("Search provider unreachable: timed out")

    research = {"action": "search_web", "title": "Research chart libs", "query": "react chart libraries"}
    client = ScriptedClient({"plan": [_plan(research, CHAT_DONE)]})
    search = WebSearchClient("https://search.invalid", transport=unreachable)

    result = _orchestrator(tiny_project, client, search=search).run(SessionRequest(message="Which chart library?"))

    assert client.purposes == ["plan"]
    assert [record.status for record in result.steps] == [StepStatus.DONE, StepStatus.DONE]
    assert "failed: Search provider unreachable" in result.steps[0].detail
    assert result.steps[0].recovered is False
    assert result.touched_files == []
    assert not (tiny_project.root / "src/components/ResearchChartLibs.tsx").exists()


def test_repeated_failures_trigger_one_replan(tiny_project: TinyProject) -> None:
    revised = {"steps": [{"action": "chat", "title": "Explain", "message": "Those files were already gone."}]}
    client = ScriptedClient(
        {
            "plan": [
                _plan(
                    {"action": "delete_file", "title": "Remove old", "targetFile": "src/Old.tsx"},
                    {"action": "delete_file", "title": "Remove legacy", "targetFile": "src/Legacy.tsx"},
                    GENERATE_CARD,
                )
            ],
            "replan": [json.dumps(revised)],
        }
    )

    result = _orchestrator(tiny_project, client).run(SessionRequest(message="Clean up and add a card"))

    assert client.purposes == ["plan", "replan"]
    assert result.replanned
    assert [(record.id, record.status) for record in result.steps] == [
        (1, StepStatus.FAILED),
        (2, StepStatus.FAILED),
        (3, StepStatus.DONE),
    ]
    assert result.steps[0].detail == "File not found: src/Old.tsx"
    replan_event = [event.data for event in result.events if event.event == "plan"][1]
    assert replan_event["replanned"] is True
    assert [step["id"] for step in replan_event["steps"]] == [3]
    assert not (tiny_project.root / CARD_PATH).exists()
    assert not result.ok


def test_rate_limited_session_reports_retry_after(tiny_project: TinyProject) -> None:
    limiter = FixedWindowRateLimiter(1, 60, clock=lambda: 100.0)
    client = ScriptedClient({"plan": [_plan(CHAT_DONE)]})
    orchestrator = _orchestrator(tiny_project, client, rate_limiter=limiter)

    first = orchestrator.run(SessionRequest(message="hello"))
    second = orchestrator.run(SessionRequest(message="hello again"))

    assert first.ok
    assert _names(second) == ["error", "done"]
    assert _payload(second, "error")["retry_after"] == 60.0
    assert second.error is not None
    assert _payload(second, "done")["ok"] is False


def test_unexpected_failure_still_ends_with_done(tiny_project: TinyProject) -> None:
    client = ScriptedClient({"plan": [RuntimeError("planner exploded")]})

    result = _orchestrator(tiny_project, client).run(SessionRequest(message="anything"))

    assert _names(result) == ["error", "done"]
    assert _payload(result, "error") == {"message": "planner exploded"}
    assert result.error == "planner exploded"
    assert _payload(result, "done")["ok"] is False


def test_commit_results_records_a_follow_up_commit(tiny_project: TinyProject) -> None:
    client = ScriptedClient({"plan": [_plan(GENERATE_CARD)], "generate": [CARD]})
    orchestrator = _orchestrator(tiny_project, client, {"snapshots": {"commit_results": True}})

    result = orchestrator.run(SessionRequest(message="Add a pricing card", verify=False))

    assert result.snapshot is not None
    assert tiny_project.head() != result.snapshot.commit_hash


def test_sub_agent_tokens_are_split_out_in_usage(tiny_project: TinyProject) -> None:
    client = ScriptedClient(
        {
            "plan": [_plan(GENERATE_CARD)],
            "generate": [CARD],
            "functional-review": ['[{"severity": "warn", "title": "Needs copy"}]'],
        },
        tokens=(10, 10),
    )
    orchestrator = _orchestrator(tiny_project, client)

    result = orchestrator.run(SessionRequest(message="Add a pricing card"))

    assert result.report is not None and result.report.warnings == 1
    history = orchestrator.usage.stats()["history"][-1]
    assert history["subAgentModel"] == SUB_AGENT_MODEL
    assert history["subAgentTokens"] == 20
    assert history["orchestratorTokens"] == 40
