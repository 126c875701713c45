from __future__ import annotations

from forge.tools.patch import EditPlan, LineEdit, apply_edits, dedupe_rewrite, number_lines

FIVE_LINES = "a\nb\nc\nd\ne\n"


def _plan(*edits: dict, imports: list[str] | None = None) -> EditPlan:
    return EditPlan.model_validate({"edits": list(edits), "newImports": imports or []})


def test_edits_listed_top_down_are_applied_bottom_up() -> None:
    plan = _plan(
        {"type": "replace", "startLine": 2, "endLine": 2, "newCode": "B"},
        {"type": "insert_after", "afterLine": 4, "newCode": "X"},
    )

    outcome = apply_edits(FIVE_LINES, plan)

    assert outcome.applied == 2
    assert outcome.content == "a\nB\nc\nd\nX\ne\n"


def test_delete_and_multi_line_replace() -> None:
    plan = _plan(
        {"type": "delete", "startLine": 5, "endLine": 5},
        {"type": "replace", "startLine": 1, "endLine": 2, "newCode": "one\ntwo\nthree"},
    )

    outcome = apply_edits(FIVE_LINES, plan)

    assert outcome.content == "one\ntwo\nthree\nc\nd\n"


def test_imports_are_spliced_once_and_later_edits_shift() -> None:
    source = "import a from 'a';\nconst x = 1;\nexport default x;\n"
    plan = _plan(
        {"type": "replace", "startLine": 2, "endLine": 2, "newCode": "const x = 2;"},
        imports=["import b from 'b';", "import a from 'a';"],
    )

    outcome = apply_edits(source, plan)

    assert outcome.imports_added == 1
    assert outcome.content == "import a from 'a';\nimport b from 'b';\nconst x = 2;\nexport default x;\n"


def test_out_of_range_edits_are_skipped_not_fatal() -> None:
    plan = _plan(
        {"type": "replace", "startLine": 10, "endLine": 12, "newCode": "nope"},
        {"type": "insert_after", "afterLine": 1, "newCode": "kept"},
    )

    outcome = apply_edits("first\nsecond\n", plan)

    assert outcome.applied == 1
    assert len(outcome.skipped) == 1
    assert "out of range" in outcome.skipped[0]
    assert outcome.content == "first\nkept\nsecond\n"


def test_overlapping_edit_is_skipped() -> None:
    plan = _plan(
        {"type": "replace", "startLine": 2, "endLine": 3, "newCode": "wide"},
        {"type": "replace", "startLine": 3, "endLine": 3, "newCode": "narrow"},
    )

    outcome = apply_edits(FIVE_LINES, plan)

    assert outcome.applied == 1
    assert outcome.skipped == ["edit 1: overlaps a later edit"]
    assert outcome.content == "a\nb\nnarrow\nd\ne\n"


def test_line_edit_accepts_code_as_list() -> None:
    edit = LineEdit.model_validate({"type": "insert_after", "afterLine": 0, "newCode": ["x", "y"]})

    assert edit.new_code == "x\ny"
    assert edit.anchor == 0


def test_number_lines_pads_indices() -> None:
    assert number_lines("alpha\nbeta") == "  1| alpha\n  2| beta"


def test_dedupe_rewrite_truncates_repeated_file() -> None:
    body = "export default function App() {\n  return null;\n}\n"

    content, truncated = dedupe_rewrite(body + "\n" + body)

    assert truncated is True
    assert content == body


def test_dedupe_rewrite_leaves_single_copy_alone() -> None:
    body = "def main():\n    return 1\n"

    assert dedupe_rewrite(body) == (body, False)


def test_dedupe_rewrite_drops_imports_echoed_by_the_copy() -> None:
    body = "import React from 'react';\n\nexport default function App() {\n  return null;\n}\n"

    content, truncated = dedupe_rewrite(body + "\n" + body)

    assert truncated is True
    assert content == body
    assert content.count("import React from 'react';") == 1


def test_dedupe_rewrite_walks_back_over_imports_when_header_differs() -> None:
    original = "// App shell\nimport a from 'a';\n\nexport function App() {}\n"
    echoed = "import a from 'a';\n\nexport function App() {}\n"

    content, truncated = dedupe_rewrite(original + echoed)

    assert truncated is True
    assert content == original
    assert sum(line.startswith("import ") for line in content.splitlines()) == 1


def test_ten_line_file_replace_and_insert_yields_eleven_lines() -> None:
    source = "".join(f"line {number}\n" for number in range(1, 11))
    plan = _plan(
        {"type": "replace", "startLine": 3, "endLine": 4, "newCode": "merged"},
        {"type": "insert_after", "afterLine": 10, "newCode": "tail 1\ntail 2"},
    )

    outcome = apply_edits(source, plan)

    lines = outcome.content.splitlines()
    assert outcome.applied == 2
    assert len(lines) == 11
    assert lines[:4] == ["line 1", "line 2", "merged", "line 5"]
    assert lines[-3:] == ["line 10", "tail 1", "tail 2"]


def test_same_edits_from_the_same_source_give_the_same_result() -> None:
    source = "import a from 'a';\nconst x = 1;\nconst y = 2;\nexport default x + y;\n"
    plan = _plan(
        {"type": "replace", "startLine": 2, "endLine": 2, "newCode": "const x = 10;"},
        {"type": "delete", "startLine": 3, "endLine": 3},
        {"type": "insert_after", "afterLine": 4, "newCode": "// end"},
        imports=["import b from 'b';"],
    )

    first = apply_edits(source, plan)
    second = apply_edits(source, plan)

    assert first.content == second.content
    assert (first.applied, first.imports_added, first.skipped) == (second.applied, second.imports_added, second.skipped)
    assert first.content == "import a from 'a';\nimport b from 'b';\nconst x = 10;\nexport default x + y;\n// end\n"
