"""Tests for prompt rendering and project rule extraction."""

from __future__ import annotations

import pytest

from diffsentry.prompts import (
    DEFAULT_RULES,
    batch_system_prompt,
    build_batch_prompt,
    build_group_prompt,
    extract_rule_block,
    group_system_prompt,
)
from diffsentry.schemas import AddedLine, ChangeGroup


def _group(gid: int, start: int, *contents: str) -> ChangeGroup:
    lines = [AddedLine(line_number=start + i, content=c) for i, c in enumerate(contents)]
    return ChangeGroup(id=gid, lines=lines, start_line=start, end_line=start + len(lines) - 1)


GROUPS = [
    _group(1, 3, "const a = 1;", "const b = a * 60;"),
    _group(2, 20, "function go(x, y, z, w) {"),
]


class TestBatchPrompt:
    def test_header_and_numbered_groups(self) -> None:
        prompt = build_batch_prompt("src/a.js", GROUPS)
        assert prompt.startswith("Code review - file: src/a.js\n")
        assert "1. Lines 3-4:\nconst a = 1;\nconst b = a * 60;\n" in prompt
        assert "2. Lines 20-20:\nfunction go(x, y, z, w) {\n" in prompt
        assert prompt.index("1. Lines 3-4") < prompt.index("2. Lines 20-20")

    def test_default_rules_and_contract(self) -> None:
        prompt = build_batch_prompt("a.js", GROUPS)
        assert DEFAULT_RULES.strip() in prompt
        assert "Reply format:" in prompt
        assert "PASS" in prompt

    def test_override_replaces_rules_but_keeps_contract(self) -> None:
        prompt = build_batch_prompt("a.js", GROUPS, rules_override="Only flag SQL injection.")
        assert "Only flag SQL injection." in prompt
        assert "No magic numbers" not in prompt
        assert prompt.rstrip().endswith('"the code looks good".')
        assert "Reply format:" in prompt

    def test_blank_override_ignored(self) -> None:
        assert DEFAULT_RULES.strip() in build_batch_prompt("a.js", GROUPS, rules_override="  \n")

    def test_language(self) -> None:
        assert "write in Chinese" in build_batch_prompt("a.js", GROUPS, language="Chinese")
        assert "Reply in Chinese" in batch_system_prompt("Chinese")


class TestGroupPrompt:
    def test_single_group(self) -> None:
        prompt = build_group_prompt("a.js", GROUPS[1])
        assert "1. Lines 20-20:" in prompt
        assert "Lines 3-4" not in prompt
        assert "exactly PASS" in prompt
        assert "exactly PASS" in group_system_prompt()


class TestExtractRuleBlock:
    def test_marker_block_wins(self) -> None:
        text = (
            "# Team rules\nintro\n<!-- review-rules:start -->\nFlag N+1 queries.\n"
            "<!-- review-rules:end -->\nprompt += `ignored`"
        )
        assert extract_rule_block(text) == "Flag N+1 queries."

    def test_js_fragments(self) -> None:
        text = "let prompt = '';\nprompt += `Rule one.\n`;\nprompt += `Rule two.`;\n"
        assert extract_rule_block(text) == "Rule one.\nRule two."

    def test_whole_text(self) -> None:
        assert extract_rule_block("\n  Be strict about naming.  \n") == "Be strict about naming."

    @pytest.mark.parametrize("text", [None, "", "   "])
    def test_nothing_usable(self, text: str | None) -> None:
        assert extract_rule_block(text) is None

    def test_empty_marker_block_falls_through(self) -> None:
        text = "<!-- review-rules:start --> <!-- review-rules:end -->"
        assert extract_rule_block(text) == text
