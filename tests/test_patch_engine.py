from __future__ import annotations

import json

import pytest

from forge.errors import PatchError
from forge.execution.patching import PatchEngine

from conftest import APP_COMPONENT, ScriptedClient

REWRITTEN = (
    "import React from 'react';\n\n"
    "export default function App() {\n"
    "  return <main className=\"app\">Rewritten greeting</main>;\n"
    "}\n"
)


def test_line_edits_are_preferred() -> None:
    edits = {
        "edits": [
            {"type": "replace", "startLine": 4, "endLine": 4, "newCode": '  return <main className="app">Hi</main>;'}
        ]
    }
    client = ScriptedClient({"patch": [json.dumps(edits)]})

    result = PatchEngine(client).modify("src/App.tsx", APP_COMPONENT, "Say hi")

    assert result.strategy == "line-edits"
    assert result.applied == 1
    assert ">Hi</main>" in result.content
    assert "-  return <main" in result.diff
    assert client.purposes == ["patch"]


def test_unparseable_edit_list_falls_back_to_rewrite() -> None:
    client = ScriptedClient({"patch": ["I would change the greeting."], "patch-rewrite": [f"```tsx\n{REWRITTEN}```"]})

    result = PatchEngine(client).modify("src/App.tsx", APP_COMPONENT, "Change the greeting")

    assert result.strategy == "rewrite"
    assert result.content == REWRITTEN
    assert client.purposes == ["patch", "patch-rewrite"]


def test_edits_that_apply_nowhere_fall_back_to_rewrite() -> None:
    edits = {"edits": [{"type": "replace", "startLine": 40, "endLine": 41, "newCode": "x"}]}
    client = ScriptedClient({"patch": [json.dumps(edits)], "patch-rewrite": [REWRITTEN]})

    result = PatchEngine(client).modify("src/App.tsx", APP_COMPONENT, "Change the greeting")

    assert result.strategy == "rewrite"
    assert "Rewritten greeting" in result.content


def test_duplicated_rewrite_is_truncated() -> None:
    client = ScriptedClient({"patch": ['{"edits": []}'], "patch-rewrite": [REWRITTEN + "\n" + REWRITTEN]})

    result = PatchEngine(client).modify("src/App.tsx", APP_COMPONENT, "Change the greeting")

    assert result.deduplicated is True
    assert result.content.count("export default function App()") == 1
    assert result.content.count("import React from 'react';") == 1
    assert result.content == REWRITTEN


def test_short_rewrite_raises_patch_error() -> None:
    client = ScriptedClient({"patch": ['{"edits": []}'], "patch-rewrite": ["// todo"]})

    with pytest.raises(PatchError):
        PatchEngine(client).modify("src/App.tsx", APP_COMPONENT, "Change the greeting")
