from __future__ import annotations

import json

import pytest

from forge.errors import PlanParseError
from forge.planning import PlanEngine, parse_steps
from forge.planning.heuristics import infer_new_path, normalise_intent
from forge.schema import (
    ChatStep,
    GenerateComponentStep,
    InstallPackagesStep,
    Intent,
    ModifyFileStep,
    StepStatus,
)

from conftest import ScriptedClient


def _engine(*replies: str) -> tuple[PlanEngine, ScriptedClient]:
    client = ScriptedClient({"plan": list(replies)})
    return PlanEngine(client), client


def test_plan_is_validated_and_unknown_actions_dropped() -> None:
    raw = {
        "intent": "build",
        "confidence": 95,
        "summary": "Add a card",
        "steps": [
            {
                "action": "generate_component",
                "title": "Create card",
                "detail": "Reusable card",
                "newFilePath": "src/components/Card.tsx",
                "status": "done",
            },
            {"action": "teleport", "title": "Nope"},
            {"action": "MODIFY_FILE", "targetFile": "src/App.tsx", "detail": "Render the card on the home page"},
        ],
    }
    engine, _ = _engine(json.dumps(raw))

    result = engine.create_plan("Add a card")

    plan = result.plan
    assert result.dropped_steps == 1
    assert result.fallback is False
    assert result.tokens_used == 150
    assert plan.intent == Intent.BUILD
    assert [step.id for step in plan.steps] == [1, 2]
    assert all(step.status == StepStatus.PENDING for step in plan.steps)
    assert isinstance(plan.steps[0], GenerateComponentStep)
    assert plan.steps[0].target_path == "src/components/Card.tsx"
    assert isinstance(plan.steps[1], ModifyFileStep)
    assert plan.steps[1].title == "Render the card on the home page"
    assert plan.has_mutations


def test_unparseable_planner_output_falls_back_to_chat() -> None:
    engine, _ = _engine("Sure! I think you should add a card component.")

    result = engine.create_plan("Add a card")

    assert result.fallback is True
    assert result.plan.intent == Intent.CHAT
    (step,) = result.plan.steps
    assert isinstance(step, ChatStep)
    assert step.message == "Sure! I think you should add a card component."


def test_parse_payload_raises_plan_parse_error_for_prose() -> None:
    engine, _ = _engine()

    with pytest.raises(PlanParseError):
        engine.parse_payload("Sure! I think you should add a card component.")
    assert engine.parse_payload('[{"action": "chat", "title": "Hi"}]') == {"steps": [{"action": "chat", "title": "Hi"}]}


def test_low_confidence_with_question_needs_clarification() -> None:
    raw = {"intent": "clarify", "confidence": 55, "clarifyQuestion": "Which page should show the card?", "steps": []}
    engine, _ = _engine(json.dumps(raw))

    result = engine.create_plan("Add a card somewhere")

    assert engine.needs_clarification(result.plan)
    assert result.plan.clarify_question == "Which page should show the card?"
    assert result.plan.steps == []


def test_low_confidence_without_question_proceeds() -> None:
    raw = {"intent": "build", "confidence": 40, "summary": "Nothing obvious to change", "steps": []}
    engine, _ = _engine(json.dumps(raw))

    result = engine.create_plan("Hmm")

    assert not engine.needs_clarification(result.plan)
    assert result.plan.intent == Intent.CHAT
    assert isinstance(result.plan.steps[0], ChatStep)
    assert result.plan.steps[0].message == "Nothing obvious to change"


def test_confidence_is_clamped() -> None:
    engine, _ = _engine(json.dumps({"confidence": 250, "steps": [{"action": "chat", "message": "hi"}]}))

    assert engine.create_plan("hi").plan.confidence == 100


def test_creation_request_rewrites_modify_of_open_file() -> None:
    raw = {
        "intent": "build",
        "confidence": 92,
        "steps": [{"action": "modify_file", "title": "Pricing page", "targetFile": "src/pages/Home.tsx"}],
    }
    engine, _ = _engine(json.dumps(raw))

    plan = engine.create_plan("Create a pricing page", open_file="src/pages/Home.tsx").plan

    (step,) = plan.steps
    assert isinstance(step, GenerateComponentStep)
    assert step.new_file_path == "src/pages/PricingPage.tsx"


def test_mixed_request_keeps_modification_of_open_file() -> None:
    raw = {
        "intent": "build",
        "confidence": 92,
        "steps": [
            {"action": "generate_component", "title": "Button", "newFilePath": "src/components/Button.tsx"},
            {"action": "modify_file", "title": "Use the button", "targetFile": "src/pages/Home.tsx"},
        ],
    }
    engine, _ = _engine(json.dumps(raw))

    plan = engine.create_plan("Create a button and update Home to use it", open_file="src/pages/Home.tsx").plan

    assert isinstance(plan.steps[1], ModifyFileStep)


def test_history_is_trimmed_to_window() -> None:
    history = [{"role": "user" if index % 2 == 0 else "assistant", "content": f"turn {index}"} for index in range(15)]
    history.append({"role": "system", "content": "ignored"})
    client = ScriptedClient({"plan": ['{"steps": [{"action": "chat", "message": "ok"}]}']})

    PlanEngine(client, history_window=4).create_plan("next", history=history)

    assert [entry["content"] for entry in client.requests[0].history] == ["turn 11", "turn 12", "turn 13", "turn 14"]


def test_parse_steps_continues_ids_and_splits_packages() -> None:
    steps, dropped = parse_steps(
        ["not a mapping", {"action": "install_packages", "packages": "axios, zod"}, {"action": "chat"}],
        start_id=5,
    )

    assert dropped == 1
    assert [step.id for step in steps] == [5, 6]
    assert isinstance(steps[0], InstallPackagesStep)
    assert steps[0].packages == ["axios", "zod"]
    assert steps[1].title == "Chat"


def test_normalise_intent_maps_clarify_and_unknown() -> None:
    assert normalise_intent("clarify", has_steps=False) == Intent.BUILD
    assert normalise_intent("whatever", has_steps=False) == Intent.CHAT
    assert normalise_intent(None, has_steps=True) == Intent.BUILD


def test_infer_new_path_avoids_the_open_file() -> None:
    step = ModifyFileStep(title="Home", target_file="src/Home.tsx")

    assert infer_new_path(step, "src/Home.tsx") == "src/HomeNew.tsx"
