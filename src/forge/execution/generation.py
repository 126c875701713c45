"""Code generation: model output cleaning, multi-file parsing and the component generator."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import List, Optional, Sequence

from ..errors import StepExecutionError
from ..models.llm_client import LLMClient, LLMRequest
from ..models.registry import output_cap
from ..prompts import generation_system_prompt, render_generation_prompt
from ..schema import GeneratedFile

LOGGER = logging.getLogger(__name__)

MIN_CODE_LENGTH = 50
SIBLING_EXAMPLE_LIMIT = 3000

_FILE_BLOCK = re.compile(r"===FILE:\s*(?P<path>[^=\n]+?)\s*===\s*\n(?P<body>.*?)\n?===END_FILE===", re.DOTALL)
_SUMMARY_LINE = re.compile(r"^SUMMARY:\s*(?P<summary>.+)$", re.MULTILINE)
_FENCE_OPEN = re.compile(r"^\s*```[\w+.-]*[ \t]*\n")
_FENCE_CLOSE = re.compile(r"\n?```\s*$")

_LANGUAGES = {
    ".ts": "typescript",
    ".tsx": "typescript",
    ".js": "javascript",
    ".jsx": "javascript",
    ".py": "python",
    ".json": "json",
    ".css": "css",
    ".scss": "scss",
    ".html": "html",
    ".md": "markdown",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".sql": "sql",
    ".sh": "shell",
}


def language_for(path: str) -> str:
    return _LANGUAGES.get(PurePosixPath(path).suffix.lower(), "text")


def strip_code_fences(text: str) -> str:
    """Remove a Markdown fence wrapping model output, plus any trailing SUMMARY line."""
    cleaned = (text or "").strip()
    cleaned = _SUMMARY_LINE.sub("", cleaned).strip()
    if cleaned.startswith("```"):
        cleaned = _FENCE_OPEN.sub("", cleaned, count=1)
        cleaned = _FENCE_CLOSE.sub("", cleaned)
    elif "```" in cleaned:
        # Prose around a single fenced block: keep the block.
        match = re.search(r"```[\w+.-]*[ \t]*\n(.*?)```", cleaned, re.DOTALL)
        if match:
            cleaned = match.group(1)
    return cleaned.strip("\n") + "\n" if cleaned.strip() else ""


def parse_file_blocks(text: str) -> tuple[List[GeneratedFile], Optional[str]]:
    """Parse ``===FILE: path===`` ... ``===END_FILE===`` blocks and an optional ``SUMMARY:`` line."""
    files: list[GeneratedFile] = []
    for match in _FILE_BLOCK.finditer(text or ""):
        path = match.group("path").strip().strip("`'\"")
        body = strip_code_fences(match.group("body"))
        if not path or not body.strip():
            continue
        files.append(GeneratedFile(path=path, content=body, language=language_for(path)))
    summary_match = _SUMMARY_LINE.search(_FILE_BLOCK.sub("", text or ""))
    summary = summary_match.group("summary").strip() if summary_match else None
    return files, summary


def files_from_response(text: str, default_path: str, description: str) -> List[GeneratedFile]:
    """Interpret a code response as delimited files, or as one file at ``default_path``.

    Raises :class:`StepExecutionError` when the response is too short to be code.
    """
    files, summary = parse_file_blocks(text)
    if files:
        for item in files:
            item.description = summary or description
        return files
    cleaned = strip_code_fences(text)
    if len(cleaned.strip()) < MIN_CODE_LENGTH:
        raise StepExecutionError("Model returned insufficient content")
    return [GeneratedFile(path=default_path, content=cleaned, language=language_for(default_path), description=description)]


@dataclass(slots=True)
class GenerationRequest:
    title: str
    detail: str
    path: str
    siblings: Sequence[GeneratedFile] = field(default_factory=tuple)
    context: str = ""
    step_id: int = 0
    session_id: str = ""


class ComponentGenerator:
    """Generate new files from a step description with design and sibling context."""

    def __init__(self, client: LLMClient, *, model: Optional[str] = None, design_context: str = "") -> None:
        self._client = client
        self._model = model or client.model
        self._design_context = design_context

    def generate(self, request: GenerationRequest) -> List[GeneratedFile]:
        siblings = [(item.path, item.content[:SIBLING_EXAMPLE_LIMIT]) for item in request.siblings]
        llm_request = LLMRequest(
            prompt=render_generation_prompt(
                title=request.title,
                detail=request.detail,
                path=request.path,
                sibling_files=siblings,
                context=request.context,
            ),
            system_prompt=generation_system_prompt(self._design_context),
            model=self._model,
            max_output_tokens=output_cap(self._model),
            purpose="generate",
            metadata={"session_id": request.session_id, "step_id": request.step_id},
        )
        response = self._client.complete(llm_request)
        files = files_from_response(response.text, request.path, request.detail or request.title)
        LOGGER.info("Generated %s file(s) for %r", len(files), request.title)
        return files


__all__ = [
    "ComponentGenerator",
    "GenerationRequest",
    "MIN_CODE_LENGTH",
    "files_from_response",
    "language_for",
    "parse_file_blocks",
    "strip_code_fences",
]
