from __future__ import annotations

import json
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import pytest

from forge.execution import (
    BackendDelegate,
    ComponentGenerator,
    PatchEngine,
    SessionState,
    StepExecutor,
)
from forge.execution.executor import default_api_path, default_component_path
from forge.models.llm_client import LLMTransportError
from forge.schema import (
    ChatStep,
    CreateApiStep,
    DelegateBackendStep,
    DeleteFileStep,
    GenerateComponentStep,
    GeneratedFile,
    InstallPackagesStep,
    ModifyFilesStep,
    ModifyFileStep,
    ReadFileStep,
    RunCommandStep,
    SearchCodebaseStep,
    SearchWebStep,
    StepStatus,
)
from forge.tools.commands import CommandRunner
from forge.tools.search import SearchError, WebSearchClient
from forge.tools.workspace import ProjectFiles

from conftest import APP_COMPONENT, ScriptedClient

CARD = (
    "export default function PricingCard() {\n"
    "  return <section className=\"card\">Pro plan</section>;\n"
    "}\n"
)

Events = List[Tuple[str, Dict[str, Any]]]


class FakeRunner:
    def __init__(self, returncode: int = 0) -> None:
        self.calls: List[List[str]] = []
        self.returncode = returncode

    def __call__(self, argv: List[str], cwd: Path, timeout: float) -> subprocess.CompletedProcess:
        self.calls.append(list(argv))
        return subprocess.CompletedProcess(argv, self.returncode, "", "boom" if self.returncode else "")


class Harness:
    def __init__(
        self,
        root: Path,
        client: ScriptedClient,
        *,
        runner: Optional[FakeRunner] = None,
        search: Optional[WebSearchClient] = None,
        confirm: Optional[bool] = None,
    ) -> None:
        self.root = root
        self.client = client
        self.runner = runner or FakeRunner()
        self.events: Events = []
        self.state = SessionState(message="test request")
        self.confirmed: List[str] = []
        generator = ComponentGenerator(client)

        def _confirm(path: str) -> bool:
            self.confirmed.append(path)
            return bool(confirm)

        self.executor = StepExecutor(
            files=ProjectFiles(root),
            client=client,
            generator=generator,
            patcher=PatchEngine(client),
            commands=CommandRunner(root, runner=self.runner),
            backend=BackendDelegate(client, generator),
            search=search,
            confirm_delete=_confirm if confirm is not None else None,
        )

    def emit(self, event: str, data: Mapping[str, Any]) -> None:
        self.events.append((event, dict(data)))

    def run(self, step):
        return self.executor.execute(step, self.state, self.emit)

    def events_named(self, name: str) -> List[Dict[str, Any]]:
        return [data for event, data in self.events if event == name]


@pytest.fixture()
def project(tmp_path: Path) -> Path:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "App.tsx").write_text(APP_COMPONENT, encoding="utf-8")
    return tmp_path


def test_generate_component_writes_and_reports_creation(project: Path) -> None:
    harness = Harness(project, ScriptedClient({"generate": [CARD]}))
    step = GenerateComponentStep(id=1, title="Pricing card", new_file_path="src/components/PricingCard.tsx")

    outcome = harness.run(step)

    assert outcome.status == StepStatus.DONE
    assert [item.path for item in outcome.generated] == ["src/components/PricingCard.tsx"]
    assert (project / "src/components/PricingCard.tsx").read_text(encoding="utf-8") == CARD
    (update,) = harness.events_named("file-update")
    assert update["action"] == "created"
    assert update["language"] == "typescript"
    assert "+export default function PricingCard()" in update["diff"]
    assert harness.state.originals == {"src/components/PricingCard.tsx": None}


def test_generated_siblings_are_passed_as_examples(project: Path) -> None:
    harness = Harness(project, ScriptedClient({"generate": [CARD, CARD.replace("PricingCard", "Other")]}))

    harness.run(GenerateComponentStep(id=1, title="Pricing card", new_file_path="src/components/PricingCard.tsx"))
    harness.run(GenerateComponentStep(id=2, title="Other", new_file_path="src/components/Other.tsx"))

    assert "src/components/PricingCard.tsx" in harness.client.requests[1].prompt


def test_escaping_output_path_is_rejected_individually(project: Path) -> None:
    reply = (
        "===FILE: src/components/PricingCard.tsx===\n" + CARD + "===END_FILE===\n"
        "===FILE: ../outside.tsx===\n" + CARD + "===END_FILE===\n"
        "SUMMARY: Pricing card"
    )
    harness = Harness(project, ScriptedClient({"generate": [reply]}))

    outcome = harness.run(GenerateComponentStep(id=1, title="Pricing card"))

    assert outcome.status == StepStatus.DONE
    assert "rejected: ../outside.tsx" in outcome.detail
    assert not (project.parent / "outside.tsx").exists()
    assert any("outside the project root" in data["message"] for data in harness.events_named("progress"))


def test_every_output_path_escaping_is_a_final_failure(project: Path) -> None:
    harness = Harness(project, ScriptedClient({"generate": [CARD]}))

    outcome = harness.run(GenerateComponentStep(id=1, title="Card", new_file_path="../../escape.tsx"))

    assert outcome.status == StepStatus.FAILED
    assert outcome.retryable is False


def test_modify_file_patches_and_reports_modification(project: Path) -> None:
    edits = {"edits": [{"type": "replace", "startLine": 4, "endLine": 4, "newCode": "  return <main>Hi</main>;"}]}
    harness = Harness(project, ScriptedClient({"patch": [json.dumps(edits)]}))

    outcome = harness.run(ModifyFileStep(id=1, title="Greet", detail="Say hi", target_file="/src/App.tsx"))

    assert outcome.status == StepStatus.DONE
    assert [item.path for item in outcome.modified] == ["src/App.tsx"]
    assert "<main>Hi</main>" in (project / "src/App.tsx").read_text(encoding="utf-8")
    assert harness.state.originals["src/App.tsx"] == APP_COMPONENT
    (update,) = harness.events_named("file-update")
    assert update["action"] == "modified"
    assert "-  return <main className" in update["diff"]


def test_modify_file_reuses_in_session_content(project: Path) -> None:
    edits = {"edits": [{"type": "insert_after", "afterLine": 3, "newCode": "// tweaked"}]}
    client = ScriptedClient({"generate": [CARD], "patch": [json.dumps(edits)]})
    harness = Harness(project, client)

    harness.run(GenerateComponentStep(id=1, title="Card", new_file_path="src/components/PricingCard.tsx"))
    outcome = harness.run(ModifyFileStep(id=2, title="Tweak", target_file="src/components/PricingCard.tsx"))

    assert outcome.status == StepStatus.DONE
    assert "Pro plan" in client.requests[1].prompt
    assert [item.path for item in harness.state.generated] == ["src/components/PricingCard.tsx"]
    assert harness.state.generated[0].content.endswith("// tweaked\n")


def test_modify_missing_file_is_retryable(project: Path) -> None:
    harness = Harness(project, ScriptedClient())

    outcome = harness.run(ModifyFileStep(id=1, title="Fix", target_file="src/Missing.tsx"))

    assert outcome.status == StepStatus.FAILED
    assert outcome.retryable is True
    assert "File not found" in outcome.detail


def test_modify_files_collects_per_file_failures(project: Path) -> None:
    edits = {"edits": [{"type": "replace", "startLine": 1, "endLine": 1, "newCode": "import React, { useState } from 'react';"}]}
    harness = Harness(project, ScriptedClient({"patch": [json.dumps(edits)]}))

    outcome = harness.run(ModifyFilesStep(id=1, title="State", target_files=["src/App.tsx", "src/Missing.tsx"]))

    assert outcome.status == StepStatus.DONE
    assert outcome.detail.startswith("Modified src/App.tsx; failed: src/Missing.tsx: File not found")


def test_disallowed_command_is_not_retryable(project: Path) -> None:
    harness = Harness(project, ScriptedClient())

    outcome = harness.run(RunCommandStep(id=1, title="Nuke", command="rm -rf src"))

    assert outcome.status == StepStatus.FAILED
    assert outcome.retryable is False
    assert harness.runner.calls == []


def test_build_command_is_a_successful_no_op(project: Path) -> None:
    harness = Harness(project, ScriptedClient())

    outcome = harness.run(RunCommandStep(id=1, title="Build", command="npm run build"))

    assert outcome.status == StepStatus.DONE
    assert "Skipped" in outcome.detail
    assert harness.runner.calls == []


def test_failing_command_is_not_retryable(project: Path) -> None:
    harness = Harness(project, ScriptedClient(), runner=FakeRunner(returncode=1))

    outcome = harness.run(RunCommandStep(id=1, title="List", command="ls nowhere"))

    assert outcome.status == StepStatus.FAILED
    assert outcome.retryable is False


def test_install_packages(project: Path) -> None:
    harness = Harness(project, ScriptedClient())

    empty = harness.run(InstallPackagesStep(id=1, title="Nothing"))
    installed = harness.run(InstallPackagesStep(id=2, title="Deps", packages=["zod"], dev=True))

    assert empty.status == StepStatus.FAILED and empty.retryable is False
    assert installed.status == StepStatus.DONE
    assert harness.runner.calls == [["npm", "install", "--save-dev", "zod"]]


def test_delete_requires_confirmation(project: Path) -> None:
    harness = Harness(project, ScriptedClient())

    outcome = harness.run(DeleteFileStep(id=1, title="Remove app", target_file="src/App.tsx"))

    assert outcome.status == StepStatus.FAILED
    assert outcome.retryable is False
    assert (project / "src/App.tsx").exists()
    (prompt,) = harness.events_named("progress")
    assert prompt["confirm"] is True and prompt["path"] == "src/App.tsx"


def test_confirmed_delete_removes_file(project: Path) -> None:
    harness = Harness(project, ScriptedClient(), confirm=True)

    outcome = harness.run(DeleteFileStep(id=1, title="Remove app", target_file="./src/App.tsx"))

    assert outcome.status == StepStatus.DONE
    assert harness.confirmed == ["src/App.tsx"]
    assert not (project / "src/App.tsx").exists()
    assert harness.state.deleted == ["src/App.tsx"]
    assert harness.events_named("file-update")[0]["action"] == "deleted"


def test_read_file_loads_context_and_missing_file_is_not_fatal(project: Path) -> None:
    harness = Harness(project, ScriptedClient())

    found = harness.run(ReadFileStep(id=1, title="Read", target_file="src/App.tsx"))
    missing = harness.run(ReadFileStep(id=2, title="Read", target_file="src/Nope.tsx"))

    assert found.status == StepStatus.DONE
    assert harness.state.loaded["src/App.tsx"] == APP_COMPONENT
    assert "### src/App.tsx" in harness.state.context_block()
    assert missing.status == StepStatus.DONE
    assert missing.detail == "File not found: src/Nope.tsx"


def test_search_web_without_key_records_skip(project: Path) -> None:
    harness = Harness(project, ScriptedClient(), search=WebSearchClient("https://search.invalid"))

    outcome = harness.run(SearchWebStep(id=1, title="Docs", query="react query v5"))

    assert outcome.status == StepStatus.DONE
    assert "skipped" in outcome.detail
    assert harness.state.web_context == [outcome.detail]


def test_search_web_collects_results(project: Path) -> None:
    payload = {"web": {"results": [{"title": "TanStack Query", "url": "https://tanstack.com", "description": "Docs"}]}}
    search = WebSearchClient("https://search.invalid", transport=lambda url, headers: json.dumps(payload))
    harness = Harness(project, ScriptedClient(), search=search)

    outcome = harness.run(SearchWebStep(id=1, title="Docs", query="react query"))

    assert outcome.detail == "Found 1 web result(s)"
    assert "1. TanStack Query (https://tanstack.com)" in harness.state.web_block()


def test_search_web_provider_failure_is_a_context_note(project: Path) -> None:
    def broken(url: str, headers: Dict[str, str]) -> str:
        raise SearchError("Search provider unreachable: timed out")

    harness = Harness(project, ScriptedClient(), search=WebSearchClient("https://search.invalid", transport=broken))

    outcome = harness.run(SearchWebStep(id=1, title="Chart libs", query="react chart libraries"))

    assert outcome.status == StepStatus.DONE
    assert outcome.detail == 'Web search for "react chart libraries" failed: Search provider unreachable: timed out'
    assert harness.state.web_context == [outcome.detail]
    assert outcome.files_produced == []


def test_search_codebase_never_fails(project: Path) -> None:
    harness = Harness(project, ScriptedClient())

    hit = harness.run(SearchCodebaseStep(id=1, title="Find", query="className"))
    miss = harness.run(SearchCodebaseStep(id=2, title="Find", query="definitely-absent"))

    assert hit.detail == "Found 1 match(es)"
    assert "src/App.tsx:4:" in harness.state.context_block()
    assert miss.status == StepStatus.DONE


def test_chat_step_records_reply(project: Path) -> None:
    harness = Harness(project, ScriptedClient())

    outcome = harness.run(ChatStep(id=1, title="Reply", message="Hooks let you reuse state logic."))

    assert outcome.status == StepStatus.DONE
    assert harness.state.replies == ["Hooks let you reuse state logic."]


def test_create_api_defaults_to_controller_path(project: Path) -> None:
    controller = "import { Controller, Get } from '@nestjs/common';\n\n@Controller('orders')\nexport class OrdersController {}\n"
    client = ScriptedClient({"create-api": [controller]})
    harness = Harness(project, client)

    outcome = harness.run(CreateApiStep(id=1, title="Orders API", resource="Orders"))

    assert outcome.status == StepStatus.DONE
    assert (project / "backend/src/orders/orders.controller.ts").exists()


def test_delegate_backend_applies_and_defers_tasks(project: Path) -> None:
    analysis = {
        "tasks": [
            {"kind": "endpoint", "title": "Plans endpoint", "filePath": "backend/src/plans.ts", "autoApply": True},
            {"kind": "database", "title": "Seed plans", "autoApply": False},
        ]
    }
    endpoint = "export function listPlans() {\n  return [{ id: 1, name: 'Pro plan' }];\n}\n"
    client = ScriptedClient({"backend-analysis": [json.dumps(analysis)], "generate": [endpoint]})
    harness = Harness(project, client)
    harness.state.record_write(GeneratedFile(path="src/components/PricingCard.tsx", content=CARD), None)

    outcome = harness.run(DelegateBackendStep(id=3, title="Backend"))

    assert outcome.status == StepStatus.DONE
    assert (project / "backend/src/plans.ts").exists()
    assert harness.state.followups == ["[other] Seed plans"]
    assert outcome.detail.startswith("2 backend task(s): 1 file(s) applied, 1 follow-up(s)")


def test_model_failure_is_retryable(project: Path) -> None:
    harness = Harness(project, ScriptedClient({"generate": [LLMTransportError("connection reset")]}))

    outcome = harness.run(GenerateComponentStep(id=1, title="Card"))

    assert outcome.status == StepStatus.FAILED
    assert outcome.retryable is True


def test_backend_analysis_failure_is_not_retryable(project: Path) -> None:
    harness = Harness(project, ScriptedClient({"backend-analysis": [LLMTransportError("connection reset")]}))
    harness.state.record_write(GeneratedFile(path="src/components/PricingCard.tsx", content=CARD), None)

    outcome = harness.run(DelegateBackendStep(id=2, title="Backend"))

    assert outcome.status == StepStatus.FAILED
    assert outcome.retryable is False


def test_default_paths() -> None:
    assert default_component_path("user profile card") == "src/components/UserProfileCard.tsx"
    assert default_api_path("Order Items") == "backend/src/order-items/order-items.controller.ts"
