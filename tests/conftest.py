from __future__ import annotations

import subprocess
import sys
import textwrap
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Sequence, Union

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from forge.config import AgentConfig  # noqa: E402
from forge.models.llm_client import LLMClient, LLMClientError, LLMRequest, LLMResponse  # noqa: E402

Reply = Union[str, Exception, Callable[[LLMRequest], str]]

ORCHESTRATOR_MODEL = "claude-sonnet-4-20250514"
SUB_AGENT_MODEL = "claude-3-haiku-20240307"


class ScriptedClient(LLMClient):
    """Fake client answering each request from a per-purpose queue of replies.

    A reply may be text, an exception to raise, or a callable receiving the
    request. Requests whose purpose has no queued reply fall back to
    ``default`` or raise :class:`LLMClientError`.
    """

    def __init__(
        self,
        script: Optional[Mapping[str, Sequence[Reply]]] = None,
        *,
        model: str = ORCHESTRATOR_MODEL,
        tokens: tuple[int, int] = (100, 50),
        default: Optional[Reply] = None,
    ) -> None:
        super().__init__(model, max_attempts=1, retry_delay=0.0)
        self.script: Dict[str, Deque[Reply]] = {key: deque(value) for key, value in (script or {}).items()}
        self.tokens = tokens
        self.default = default
        self.requests: List[LLMRequest] = []

    def queue(self, purpose: str, *replies: Reply) -> None:
        self.script.setdefault(purpose, deque()).extend(replies)

    @property
    def purposes(self) -> List[str]:
        return [request.purpose for request in self.requests]

    def _raw_invoke(self, request: LLMRequest, model: str) -> LLMResponse:
        self.requests.append(request)
        replies = self.script.get(request.purpose)
        if replies:
            reply = replies.popleft()
        elif self.default is not None:
            reply = self.default
        else:
            raise LLMClientError(f"No scripted reply for purpose {request.purpose!r}")
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            reply = reply(request)
        return LLMResponse(text=reply, input_tokens=self.tokens[0], output_tokens=self.tokens[1], model=model)


@pytest.fixture()
def scripted_client() -> ScriptedClient:
    return ScriptedClient()


def run_git(root: Path, *args: str) -> str:
    completed = subprocess.run(
        ["git", *args],
        cwd=root,
        check=True,
        capture_output=True,
        text=True,
    )
    return completed.stdout.strip()


APP_COMPONENT = textwrap.dedent(
    """
    import React from 'react';

    export default function App() {
      return <main className="app">Hello</main>;
    }
    """
).lstrip()

PACKAGE_JSON = textwrap.dedent(
    """
    {
      "name": "tiny-web",
      "version": "0.0.1",
      "scripts": {"dev": "vite"}
    }
    """
).lstrip()


@dataclass(slots=True)
class TinyProject:
    """Fixture payload: a committed git project with a small frontend."""

    root: Path

    def write(self, path: str, content: str) -> Path:
        target = self.root / path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        return target

    def read(self, path: str) -> str:
        return (self.root / path).read_text(encoding="utf-8")

    def head(self) -> str:
        return run_git(self.root, "rev-parse", "HEAD")


@pytest.fixture()
def tiny_project(tmp_path: Path) -> TinyProject:
    """Create a git repository with a package.json and one component."""
    root = tmp_path / "tiny-web"
    root.mkdir()
    run_git(root, "init")
    run_git(root, "config", "user.email", "agent@example.com")
    run_git(root, "config", "user.name", "Forge Agent")

    project = TinyProject(root=root)
    project.write("package.json", PACKAGE_JSON)
    project.write("src/App.tsx", APP_COMPONENT)
    project.write(".gitignore", ".forge/\nnode_modules/\n")
    run_git(root, "add", ".")
    run_git(root, "commit", "-m", "Initial tiny project")
    return project


def make_config(root: Path, overrides: Optional[Mapping[str, Any]] = None) -> AgentConfig:
    """Build a config rooted at ``root`` with no environment overrides applied."""
    data: Dict[str, Any] = {
        "project": {"root": ".", "name": "tiny-web"},
        "models": {"orchestrator": ORCHESTRATOR_MODEL, "sub_agent": SUB_AGENT_MODEL},
        "verification": {"enabled": True},
    }
    for key, value in (overrides or {}).items():
        if isinstance(value, Mapping) and isinstance(data.get(key), Mapping):
            merged = dict(data[key])
            merged.update(value)
            data[key] = merged
        else:
            data[key] = value
    return AgentConfig.from_mapping(data, base_dir=root, env={})


@pytest.fixture()
def project_config(tiny_project: TinyProject) -> AgentConfig:
    return make_config(tiny_project.root)
