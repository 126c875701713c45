"""Post-processing rules applied to raw planner output."""

from __future__ import annotations

import logging
import re
from pathlib import PurePosixPath
from typing import Any, Optional

from ..schema import ExecutionPlan, GenerateComponentStep, Intent, ModifyFileStep, PlanStepBase
from ..utils.slug import pascal_case

LOGGER = logging.getLogger(__name__)

CREATION_PATTERN = re.compile(
    r"\b(?:create|creating|generate|scaffold|add\s+(?:a|an)\s+new|build\s+(?:a|an|me)|make\s+(?:a|an)|new\s+(?:page|component|file|screen))\b",
    re.IGNORECASE,
)
MODIFICATION_PATTERN = re.compile(r"\b(?:modify|fix|update|change|edit|refactor|rename|tweak)\b", re.IGNORECASE)
_NAME_STOPWORDS = frozenset(
    {"create", "creating", "generate", "scaffold", "add", "build", "make", "new", "a", "an", "the", "for", "me", "to", "with"}
)


def indicates_creation(text: str) -> bool:
    return bool(CREATION_PATTERN.search(text or ""))


def indicates_modification(text: str) -> bool:
    return bool(MODIFICATION_PATTERN.search(text or ""))


def normalise_intent(value: Any, *, has_steps: bool) -> Intent:
    """Map planner intents onto ``chat``/``build``; ``clarify`` and unknown values become ``build``."""
    text = str(value or "").strip().lower()
    if text == Intent.CHAT.value:
        return Intent.CHAT
    if text == Intent.BUILD.value or text == "clarify":
        return Intent.BUILD
    return Intent.BUILD if has_steps else Intent.CHAT


def infer_new_path(step: PlanStepBase, open_file: str) -> str:
    """Derive a sibling path for a new file based on the step title."""
    source = PurePosixPath(open_file)
    words = [word for word in re.findall(r"[A-Za-z0-9]+", step.title or step.detail) if word.lower() not in _NAME_STOPWORDS]
    name = pascal_case(" ".join(words[:4]), fallback="NewComponent")
    suffix = source.suffix or ".tsx"
    candidate = source.with_name(f"{name}{suffix}")
    if candidate.as_posix() == source.as_posix():
        candidate = source.with_name(f"{name}New{suffix}")
    return candidate.as_posix()


def _normalise_path(value: str) -> str:
    return value.strip().replace("\\", "/").lstrip("/").removeprefix("./")


def _same_path(left: Optional[str], right: Optional[str]) -> bool:
    if not left or not right:
        return False
    a, b = _normalise_path(left), _normalise_path(right)
    return a == b or a.endswith("/" + b) or b.endswith("/" + a)


def auto_correct(plan: ExecutionPlan, message: str, *, open_file: Optional[str] = None) -> ExecutionPlan:
    """Rewrite ``modify_file`` steps aimed at the open file into ``generate_component`` for creation requests."""
    if not open_file or not indicates_creation(message):
        return plan
    request_modifies = indicates_modification(message)
    corrected = []
    for step in plan.steps:
        if isinstance(step, ModifyFileStep) and _same_path(step.target_file, open_file):
            step_text = f"{step.title} {step.detail}"
            if not request_modifies or indicates_creation(step_text):
                new_path = infer_new_path(step, open_file)
                LOGGER.info("Rewriting step %s from modify_file(%s) to generate_component(%s)", step.id, open_file, new_path)
                step = GenerateComponentStep(
                    id=step.id,
                    title=step.title,
                    detail=step.detail,
                    status=step.status,
                    new_file_path=new_path,
                )
        corrected.append(step)
    plan.steps = corrected
    return plan


__all__ = [
    "auto_correct",
    "indicates_creation",
    "indicates_modification",
    "infer_new_path",
    "normalise_intent",
]
