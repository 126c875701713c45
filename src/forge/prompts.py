"""Prompt templates shared by the planning, execution, retry and verification services."""

from __future__ import annotations

from typing import Iterable, Sequence

from .schema import KNOWN_ACTIONS

JSON_RESPONSE_INSTRUCTION = (
    "Return only JSON. Do not include markdown fences, explanations, or trailing text. "
    "Use double-quoted keys and strings."
)

CODE_RESPONSE_INSTRUCTION = "Return ONLY the complete code. No explanation, no markdown fences."

FILE_BLOCK_INSTRUCTION = (
    "When producing more than one file, wrap each one as:\n"
    "===FILE: relative/path.ext===\n<complete file content>\n===END_FILE===\n"
    "and optionally finish with a single line `SUMMARY: <one sentence>`."
)

DEFAULT_DESIGN_SYSTEM = """
DESIGN SYSTEM RULES (follow exactly):
- Framework: React 18 with TypeScript, functional components and hooks
- UI library: Material-UI 5 (@mui/material), icons from @mui/icons-material
- Styling: the sx prop only, never separate CSS files
- Colours: primary=#667eea, secondary=#764ba2, dark=#1a1a2e, background=#fafbfc
- Export components as named exports: export function ComponentName()
- API calls: fetch() with explicit error handling and a loading state
- Lists render with a stable key and an empty state
- Define TypeScript interfaces inline rather than importing from missing type files
""".strip()


def render_design_context(design_system: str | None = None, app_context: str = "") -> str:
    """Combine the design-system rules with any app-specific style context."""
    parts = [(design_system or DEFAULT_DESIGN_SYSTEM).strip()]
    if app_context.strip():
        parts.append(app_context.strip())
    return "\n\n".join(parts)


def _bullets(items: Iterable[str], empty: str = "(none)") -> str:
    body = "\n".join(f"- {item}" for item in items if item)
    return body or empty


def _section(heading: str, body: str) -> str:
    return f"## {heading}\n{body}" if body else ""


def _numbered(items: Sequence[str], empty: str = "(none)") -> str:
    if not items:
        return empty
    return "\n".join(f"{index}. {item}" for index, item in enumerate(items, start=1))


# ------------------------------------------------------------------ planning
def planner_system_prompt() -> str:
    actions = ", ".join(sorted(KNOWN_ACTIONS))
    return f"""You are the planning brain of an autonomous coding agent working inside an existing project.
Turn the user's request into an execution plan.

Return a JSON object:
{{
  "intent": "chat" | "build",
  "confidence": 0-100,
  "summary": "one sentence",
  "clarifyQuestion": "only when confidence is below 90 and you genuinely need an answer",
  "steps": [{{"id": 1, "title": "...", "detail": "...", "action": "<action>", ...action fields}}]
}}

Allowed actions: {actions}.
Action fields:
- search_web: query
- search_codebase: query, includePattern?, isRegex?
- generate_component: newFilePath
- modify_file: targetFile
- modify_files: targetFiles
- install_packages: packages (list of name or name@version), dev?
- run_command: command
- delegate_backend: (no extra fields)
- create_api: resource, newFilePath?
- read_file: targetFile
- list_directory: directory
- delete_file: targetFile
- chat: message

Selection rules:
- "create", "add a new", "build a" => generate_component with a NEW file path, never modify_file.
- "modify", "fix", "update", "change" => modify_file on the existing file.
- Add search_codebase or read_file steps before modify_file when you have not seen the file.
- Questions and conversation => intent "chat" with a single chat step.
- Build, lint and test commands are unnecessary; verification runs automatically afterwards.
{JSON_RESPONSE_INSTRUCTION}"""


def render_plan_prompt(message: str, project_context: str, open_file: str | None = None) -> str:
    open_line = f"\n## Currently open file\n{open_file}\n" if open_file else ""
    return f"""## Request
{message}
{open_line}
## Project context
{project_context}
"""


# ---------------------------------------------------------------- generation
def generation_system_prompt(design_context: str) -> str:
    return f"""You are an expert software engineer generating production-ready code for an existing project.
{design_context}

{FILE_BLOCK_INSTRUCTION}
Otherwise return the complete file content only."""


def render_generation_prompt(
    *,
    title: str,
    detail: str,
    path: str,
    sibling_files: Sequence[tuple[str, str]] = (),
    context: str = "",
) -> str:
    examples = "\n\n".join(f"### {name}\n```\n{content}\n```" for name, content in sibling_files)
    return f"""## Task: {title}
{detail}

## Output file
{path}

{_section("Files already generated in this session (match their types and imports)", examples)}
{_section("Context gathered so far", context)}

Generate the COMPLETE file. No placeholders, no stubs.
{CODE_RESPONSE_INSTRUCTION}"""


# ------------------------------------------------------------------ patching
def patch_system_prompt(design_context: str) -> str:
    return f"""You edit existing source files with precise, line-numbered edits.
{design_context}

Return a JSON object:
{{
  "edits": [
    {{"type": "replace", "startLine": 3, "endLine": 4, "newCode": "..."}},
    {{"type": "insert_after", "afterLine": 10, "newCode": "..."}},
    {{"type": "delete", "startLine": 7, "endLine": 7}}
  ],
  "newImports": ["import line", "..."]
}}
Line numbers refer to the numbered file you are given. "afterLine": 0 inserts at the top.
Put new import lines in newImports instead of editing the import block.
{JSON_RESPONSE_INSTRUCTION}"""


def render_patch_prompt(*, path: str, numbered: str, instruction: str, context: str = "") -> str:
    return f"""## File: {path}
```
{numbered}
```

## Change requested
{instruction}

{_section("Context", context)}"""


def render_rewrite_prompt(*, path: str, content: str, instruction: str, context: str = "") -> str:
    return f"""FALLBACK: the line-numbered edit attempt failed. Rewrite the whole file instead.

## File: {path}
```
{content}
```

## Change requested
{instruction}

{_section("Context", context)}
Output the file exactly ONCE, with the change applied and everything else preserved.
{CODE_RESPONSE_INSTRUCTION}"""


# --------------------------------------------------------------------- retry
def render_contextual_retry_prompt(
    *,
    title: str,
    detail: str,
    error: str,
    path: str | None,
    current_content: str,
    web_context: str,
    file_context: str,
) -> str:
    current = f"## Current file content ({path}):\n```\n{current_content}\n```\n" if current_content else ""
    web = f"## Web context:\n{web_context}\n" if web_context else ""
    project = f"## Project context:\n{file_context}\n" if file_context else ""
    return f"""You are retrying a failed operation. The PREVIOUS attempt FAILED.

## What failed
- Step: "{title}"
- Task: {detail}
- Error: {error}

Common causes: wrong import paths, missing type definitions, incorrect API usage,
a file that does not exist, or syntax errors in generated code.

{current}{web}{project}
## Instructions
1. Work out WHY the previous attempt failed.
2. Fix the root cause and do not repeat the mistake.
3. Produce the COMPLETE corrected code.

{CODE_RESPONSE_INSTRUCTION}"""


def render_diagnosis_prompt(*, title: str, detail: str, error: str, previous_failures: Sequence[str]) -> str:
    return f"""A coding step failed. Diagnose it and list what to look up in the codebase to fix it.

## Failed step: "{title}"
## Task: {detail}
## Error: {error}
## Previous retry failures:
{_numbered(previous_failures)}

Return a JSON object:
{{
  "rootCause": "one sentence",
  "searchQueries": ["query1", "query2", "query3"],
  "filesToRead": ["path/to/file"],
  "fixApproach": "how to fix it once the context is gathered"
}}
{JSON_RESPONSE_INSTRUCTION}"""


def render_diagnostic_fix_prompt(
    *,
    title: str,
    detail: str,
    error: str,
    root_cause: str,
    fix_approach: str,
    diagnostic_context: str,
    generated_paths: Sequence[str],
    web_context: str,
) -> str:
    web = f"## Web context:\n{web_context}\n" if web_context else ""
    return f"""You are fixing a failed coding step with full diagnostic context.

## Failed step: "{title}"
## Task: {detail}
## Error: {error}
## Root cause: {root_cause}
## Fix approach: {fix_approach}

## Diagnostic context from the codebase
{diagnostic_context or "(no additional context found)"}

## Files already generated in this session
{_bullets(generated_paths)}

{web}
## Instructions
- Reference the EXACT paths and symbols shown in the diagnostic context.
- Match the style of the existing files.
- Generate COMPLETE file(s), no stubs.

{FILE_BLOCK_INSTRUCTION}"""


def render_decompose_prompt(*, title: str, detail: str, error: str, previous_failures: Sequence[str]) -> str:
    return f"""A coding step failed several times. Split it into 2-4 smaller, independent sub-tasks.

## Failed step: "{title}"
## Task: {detail}
## Original error: {error}
## What already failed:
{_numbered(previous_failures)}

Each sub-task must produce exactly one complete file and be simple enough to succeed.
Return a JSON array:
[{{"title": "...", "detail": "...", "filePath": "path/to/file", "dependencies": "what it needs from earlier sub-tasks"}}]
{JSON_RESPONSE_INSTRUCTION}"""


def render_subtask_prompt(
    *,
    title: str,
    detail: str,
    path: str,
    dependencies: str,
    prior_files: Sequence[tuple[str, str]],
    file_context: str,
    web_context: str,
) -> str:
    prior = "\n".join(f"## {name}:\n```\n{content}\n```" for name, content in prior_files)
    sections = [
        "Generate code for this focused sub-task. It is part of a larger task that was decomposed for reliability.",
        f"## Sub-task: {title}\n## Detail: {detail}\n## Output file: {path}",
    ]
    if dependencies:
        sections.append(f"## Dependencies: {dependencies}")
    if prior:
        sections.append(f"## Previously generated sub-task files (reuse their types and exports):\n{prior}")
    if file_context:
        sections.append(f"## Project context:\n{file_context}")
    if web_context:
        sections.append(f"## Web context:\n{web_context}")
    sections.append(f"Generate the COMPLETE file. {CODE_RESPONSE_INSTRUCTION}")
    return "\n\n".join(sections)


def render_replan_prompt(
    *,
    message: str,
    completed: Sequence[str],
    failed: Sequence[str],
    remaining: Sequence[str],
    generated_paths: Sequence[str],
) -> str:
    return f"""You are revising an execution plan because several steps failed.

## Original request
{message}

## What succeeded
{_numbered(completed, "(nothing yet)")}

## What failed
{_numbered(failed)}

## Planned but not attempted
{_numbered(remaining, "(nothing)")}

## Files already generated
{_bullets(generated_paths)}

## Instructions
- Learn from the failures; do not repeat the same approach.
- Add search_codebase steps before modify_file steps so file contents are not guessed.
- Split complex steps into smaller ones.

Return a JSON array of revised steps in the same format as plan steps.
{JSON_RESPONSE_INSTRUCTION}"""


# ------------------------------------------------------------------- backend
def render_backend_analysis_prompt(files: Sequence[tuple[str, str]]) -> str:
    listing = "\n\n".join(f"### {path}\n```\n{content}\n```" for path, content in files)
    return f"""Review the files below and list the backend work they depend on
(API endpoints, seed data, database collections) that does not exist yet.

{listing or "(no files)"}

Return a JSON object:
{{
  "tasks": [
    {{"kind": "endpoint" | "seed" | "collection" | "other",
      "title": "...", "detail": "...", "filePath": "path or null",
      "autoApply": true | false}}
  ]
}}
Mark autoApply true only when the task can be completed by generating one new file.
{JSON_RESPONSE_INSTRUCTION}"""


def render_create_api_prompt(*, resource: str, detail: str, path: str, context: str = "") -> str:
    return f"""Create a REST API module for the resource "{resource}".

## Detail
{detail}

## Output file
{path}

{_section("Context", context)}
Include list, get-by-id, create, update and delete handlers with input validation and error handling.
{CODE_RESPONSE_INSTRUCTION}"""


# -------------------------------------------------------------- verification
def functional_review_system_prompt() -> str:
    return f"""You are a strict QA reviewer. Judge whether the code change actually fulfils the user's request end-to-end.
Return a JSON array of 3-8 findings:
[{{"severity": "pass" | "warn" | "fail", "title": "...", "detail": "...", "file": "path or null"}}]
Check that:
- the request is implemented, not just scaffolded;
- external integrations are wired correctly;
- empty, error and loading states are handled.
{JSON_RESPONSE_INSTRUCTION}"""


def render_functional_review_prompt(request: str, diff: str) -> str:
    return f"""## User request
{request}

## Code changes
```diff
{diff}
```"""


__all__ = [
    "CODE_RESPONSE_INSTRUCTION",
    "DEFAULT_DESIGN_SYSTEM",
    "FILE_BLOCK_INSTRUCTION",
    "JSON_RESPONSE_INSTRUCTION",
    "functional_review_system_prompt",
    "generation_system_prompt",
    "patch_system_prompt",
    "planner_system_prompt",
    "render_backend_analysis_prompt",
    "render_contextual_retry_prompt",
    "render_create_api_prompt",
    "render_decompose_prompt",
    "render_design_context",
    "render_diagnosis_prompt",
    "render_diagnostic_fix_prompt",
    "render_functional_review_prompt",
    "render_generation_prompt",
    "render_patch_prompt",
    "render_plan_prompt",
    "render_replan_prompt",
    "render_rewrite_prompt",
    "render_subtask_prompt",
]
