"""Inputs assembled for the planner: bounded history and a project scan."""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Sequence

from ..tools.workspace import ProjectFiles, smart_truncate

PROJECT_CONTEXT_LIMIT = 12_000


def trim_history(history: Sequence[Mapping[str, Any]] | None, window: int) -> List[Dict[str, str]]:
    """Keep the last ``window`` user/assistant turns with non-empty text."""
    if not history or window <= 0:
        return []
    cleaned: list[Dict[str, str]] = []
    for entry in history:
        role = str(entry.get("role") or "").strip().lower()
        content = entry.get("content")
        if role in {"user", "assistant"} and isinstance(content, str) and content.strip():
            cleaned.append({"role": role, "content": content})
    return cleaned[-window:]


def build_project_context(files: ProjectFiles, *, generated: Sequence[str] = ()) -> str:
    """Render the project scan for the planning prompt."""
    return smart_truncate(files.scan(generated=generated).render(), PROJECT_CONTEXT_LIMIT)


__all__ = ["PROJECT_CONTEXT_LIMIT", "build_project_context", "trim_history"]
