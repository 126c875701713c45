"""Unified diff rendering for session summaries and review prompts."""

from __future__ import annotations

import difflib
from typing import Iterable, Optional, Tuple

NO_CHANGES = "(no changes)"


def unified_diff(old: str, new: str, path: str, *, context: int = 3) -> str:
    """Return a unified diff of ``old`` -> ``new`` with ``@@`` hunk headers.

    Identical inputs yield ``"(no changes)"``.
    """
    lines = list(
        difflib.unified_diff(
            old.splitlines(),
            new.splitlines(),
            fromfile=f"a/{path}",
            tofile=f"b/{path}",
            n=context,
            lineterm="",
        )
    )
    if not lines:
        return NO_CHANGES
    return "\n".join(lines)


def combined_diff(changes: Iterable[Tuple[str, Optional[str], str]], *, limit: int | None = None) -> str:
    """Render ``(path, old, new)`` triples as one diff; ``old`` of ``None`` marks a new file."""
    parts: list[str] = []
    for path, old, new in changes:
        if old is None:
            body = "\n".join(f"+{line}" for line in new.splitlines())
            parts.append(f"--- /dev/null\n+++ b/{path}\n@@ -0,0 +1,{len(new.splitlines())} @@\n{body}")
            continue
        rendered = unified_diff(old, new, path)
        if rendered != NO_CHANGES:
            parts.append(rendered)
    text = "\n".join(parts) if parts else NO_CHANGES
    if limit is not None and len(text) > limit:
        return text[:limit] + "\n... diff truncated ..."
    return text


__all__ = ["NO_CHANGES", "combined_diff", "unified_diff"]
