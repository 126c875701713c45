"""Line-numbered edit application and rewrite guards."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, List, Literal, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..telemetry import emit_event

LOGGER = logging.getLogger(__name__)

_IMPORT_START = re.compile(
    r"^\s*(?:import\s|import\{|from\s+\S+\s+import\s|export\s+\*\s+from\s|export\s+\{[^}]*\}\s+from\s"
    r"|(?:const|let|var)\s+[\w{}\s,]+=\s*require\()"
)
_EXPORT_SIGNATURE = re.compile(
    r"^(?:export\s+(?:default\s+)?(?:async\s+)?(?:function|class|const|interface|type|enum)\s+\w+"
    r"|(?:async\s+)?def\s+\w+|class\s+\w+)"
)


class LineEdit(BaseModel):
    """One positional edit against a 1-indexed, line-numbered file."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    type: Literal["replace", "insert_after", "delete"]
    start_line: Optional[int] = Field(default=None, alias="startLine")
    end_line: Optional[int] = Field(default=None, alias="endLine")
    after_line: Optional[int] = Field(default=None, alias="afterLine")
    new_code: str = Field(default="", alias="newCode")

    @field_validator("new_code", mode="before")
    @classmethod
    def _coerce_code(cls, value: Any) -> Any:
        if value is None:
            return ""
        if isinstance(value, list):
            return "\n".join(str(item) for item in value)
        return value

    @property
    def anchor(self) -> int:
        if self.type == "insert_after":
            return self.after_line if self.after_line is not None else -1
        return self.start_line if self.start_line is not None else -1


class EditPlan(BaseModel):
    """Edit list returned by the model, plus import lines to splice in once."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    edits: List[LineEdit] = Field(default_factory=list)
    imports: List[str] = Field(default_factory=list, alias="newImports")

    @field_validator("imports", mode="before")
    @classmethod
    def _split_imports(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [line for line in value.splitlines() if line.strip()]
        return value


@dataclass(slots=True)
class EditOutcome:
    """Result of applying an :class:`EditPlan` to a file."""

    content: str
    applied: int = 0
    skipped: List[str] = field(default_factory=list)
    imports_added: int = 0

    @property
    def changed(self) -> bool:
        return self.applied > 0 or self.imports_added > 0


def number_lines(text: str) -> str:
    """Render ``text`` with right-aligned 1-indexed line numbers."""
    lines = text.splitlines()
    width = max(len(str(len(lines))), 3)
    return "\n".join(f"{index:>{width}}| {line}" for index, line in enumerate(lines, start=1))


def _import_block_end(lines: Sequence[str]) -> int:
    """Return the number of leading lines up to and including the last import statement."""
    end = 0
    index = 0
    while index < len(lines):
        line = lines[index]
        if _IMPORT_START.match(line):
            # Follow multi-line ``import { a, b } from 'x'`` / ``from x import (a, b)`` statements.
            closing = index
            if ("{" in line and "}" not in line) or ("(" in line and ")" not in line):
                while closing + 1 < len(lines) and not re.search(r"[})]", lines[closing]):
                    closing += 1
            end = closing + 1
            index = closing + 1
            continue
        index += 1
    return end


def splice_imports(lines: List[str], imports: Sequence[str]) -> tuple[int, int]:
    """Insert new ``imports`` after the last existing import, skipping duplicates.

    Returns ``(position, inserted)`` where ``position`` is the number of lines
    that precede the inserted block.
    """
    existing = {line.strip() for line in lines}
    fresh: list[str] = []
    for entry in imports:
        for line in str(entry).splitlines():
            if line.strip() and line.strip() not in existing and line.strip() not in {item.strip() for item in fresh}:
                fresh.append(line)
    position = _import_block_end(lines)
    lines[position:position] = fresh
    return position, len(fresh)


def apply_edits(source: str, plan: EditPlan) -> EditOutcome:
    """Apply ``plan`` to ``source``.

    Imports are spliced in first and positional edits below the splice point
    are shifted accordingly. Edits are then applied bottom-up (descending line
    number) so earlier edits never invalidate later indices; out-of-range or
    overlapping edits are skipped rather than failing the whole plan.
    """
    trailing_newline = source.endswith("\n")
    lines = source.splitlines()
    position, inserted = splice_imports(lines, plan.imports) if plan.imports else (0, 0)

    outcome = EditOutcome(content=source, imports_added=inserted)
    prepared: list[tuple[int, LineEdit]] = []
    for index, edit in enumerate(plan.edits):
        shifted = edit.model_copy()
        if inserted:
            if shifted.type == "insert_after" and shifted.after_line is not None and shifted.after_line > position:
                shifted.after_line += inserted
            elif shifted.start_line is not None and shifted.start_line > position:
                shifted.start_line += inserted
                if shifted.end_line is not None:
                    shifted.end_line += inserted
        prepared.append((index, shifted))

    prepared.sort(key=lambda item: (item[1].anchor, item[1].type == "insert_after", item[0]), reverse=True)

    floor = len(lines) + 1
    for index, edit in prepared:
        total = len(lines)
        replacement = edit.new_code.splitlines() if edit.new_code else []
        if edit.type == "insert_after":
            after = edit.after_line
            if after is None or after < 0 or after > total:
                outcome.skipped.append(f"edit {index + 1}: insert_after {after} out of range (1-{total})")
                continue
            if after >= floor:
                outcome.skipped.append(f"edit {index + 1}: overlaps a later edit")
                continue
            lines[after:after] = replacement
            floor = after + 1
        else:
            start = edit.start_line
            end = edit.end_line if edit.end_line is not None else start
            if start is None or end is None or start < 1 or end < start or end > total:
                outcome.skipped.append(f"edit {index + 1}: {edit.type} {start}-{end} out of range (1-{total})")
                continue
            if end >= floor:
                outcome.skipped.append(f"edit {index + 1}: overlaps a later edit")
                continue
            lines[start - 1 : end] = [] if edit.type == "delete" else replacement
            floor = start
        outcome.applied += 1

    content = "\n".join(lines)
    if trailing_newline and content:
        content += "\n"
    outcome.content = content
    emit_event(
        "patch.line_edits",
        requested=len(plan.edits),
        applied=outcome.applied,
        skipped=len(outcome.skipped),
        imports_added=inserted,
    )
    return outcome


def _repeat_start(lines: Sequence[str], first_signature: int, repeat: int) -> int:
    """Return the index where the repeated copy ending at ``repeat`` begins.

    The copy usually opens with the same line as the file; otherwise blank and
    import lines directly above the repeated signature belong to it.
    """
    opening = next((index for index, line in enumerate(lines) if line.strip()), 0)
    head = lines[opening].strip()
    for index in range(repeat, first_signature, -1):
        if index > opening and lines[index].strip() == head:
            return index
    start = repeat
    while start - 1 > first_signature and (not lines[start - 1].strip() or _IMPORT_START.match(lines[start - 1])):
        start -= 1
    return start


def dedupe_rewrite(content: str) -> tuple[str, bool]:
    """Truncate a rewrite that repeats the file.

    When the first top-level export signature appears a second time, the
    repeated copy is dropped from where it begins, including any imports it
    echoed above the signature. Returns the (possibly truncated) content and
    whether truncation happened.
    """
    lines = content.splitlines()
    first: int | None = None
    for index, line in enumerate(lines):
        if _EXPORT_SIGNATURE.match(line):
            first = index
            break
    if first is None:
        return content, False
    signature = lines[first].strip()
    for index in range(first + 1, len(lines)):
        if lines[index].strip() != signature:
            continue
        cut = _repeat_start(lines, first, index)
        truncated = "\n".join(lines[:cut]).rstrip() + "\n"
        LOGGER.warning("Rewrite repeated %r; truncated at line %s", signature, cut + 1)
        emit_event("patch.rewrite_deduplicated", signature=signature, line=cut + 1)
        return truncated, True
    return content, False


__all__ = [
    "EditOutcome",
    "EditPlan",
    "LineEdit",
    "apply_edits",
    "dedupe_rewrite",
    "number_lines",
    "splice_imports",
]
