"""Prompt templates for batch and single-group reviews."""

from __future__ import annotations

import logging
import re

from diffsentry.schemas import ChangeGroup

logger = logging.getLogger(__name__)

PASS_SENTINEL = "PASS"


# ---------------------------------------------------------------------------
# System instructions
# ---------------------------------------------------------------------------

BATCH_SYSTEM_PROMPT = """\
You are a code review expert. Analyse the numbered code groups and give a \
concrete improvement suggestion only for groups that have a real problem. \
Answer PASS for a group that has none, and never write "no issues" style \
comments. Reply in {language}. Be concise."""

GROUP_SYSTEM_PROMPT = """\
You are a code review expert. Review the single code group you are given. \
If it has a real problem, reply with one concrete suggestion. If it has \
none, reply with exactly PASS. Reply in {language}. Be concise."""


# ---------------------------------------------------------------------------
# Rule section
# ---------------------------------------------------------------------------

DEFAULT_RULES = """\
Review the code against these rules:

**Code quality (check these)**
1. Naming: variables, functions and classes should be descriptive; avoid vague abbreviations.
2. Single responsibility: a function does one thing and stays under 100 lines.
3. DRY: point out near-identical blocks that should become a shared helper.
4. Follow the project's naming convention (camelCase, snake_case, PascalCase).
5. TODO and tech-debt comments need an owner (e.g. @alice); temporary workarounds need a reason.
6. Boolean names should start with is, has or can.
7. More than 3 function parameters must be flagged; suggest an options object.
8. Loops: only check whether they can fail to terminate.
9. No magic numbers.

**Do not check (these cause false positives)**
10. Where a variable or function is defined or imported from.
11. Basic error handling such as try/except or try/catch around calls.
12. Simple logic: trivial helpers, counters, error log statements.
13. Parameter meaning already clear from names or comments.
14. Repeated component attributes, nested i18n calls, mixed-type constants, \
enum values used as labels, or URL concatenation.

**Security**
15. Never hard-code passwords, API keys or other secrets.
"""

RESPONSE_CONTRACT = """\

Reply format:
1. [concrete suggestion or PASS]
2. [concrete suggestion or PASS]
...

Requirements: write in {language}; one line per group in the order given; \
each suggestion under 100 characters; reply PASS for a group without \
problems; never emit filler such as "no issues" or "the code looks good"."""

GROUP_RESPONSE_CONTRACT = """\

Reply with one concrete suggestion under 100 characters, in {language}, or \
with exactly PASS if there is nothing worth changing."""


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

def _render_groups(file_path: str, groups: list[ChangeGroup]) -> str:
    parts = [f"Code review - file: {file_path}\n"]
    for index, group in enumerate(groups, 1):
        parts.append(f"{index}. Lines {group.start_line}-{group.end_line}:\n{group.code}\n")
    return "\n".join(parts) + "\n"


def build_batch_prompt(
    file_path: str,
    groups: list[ChangeGroup],
    rules_override: str | None = None,
    language: str = "English",
) -> str:
    """Render one prompt covering every group in the batch.

    ``rules_override`` is a project-supplied rule block; when present it
    replaces the default rules verbatim. The reply-format contract is
    always appended.
    """
    rules = rules_override if rules_override and rules_override.strip() else DEFAULT_RULES
    return (
        _render_groups(file_path, groups)
        + rules.rstrip()
        + "\n"
        + RESPONSE_CONTRACT.format(language=language)
    )


def build_group_prompt(
    file_path: str,
    group: ChangeGroup,
    rules_override: str | None = None,
    language: str = "English",
) -> str:
    rules = rules_override if rules_override and rules_override.strip() else DEFAULT_RULES
    return (
        _render_groups(file_path, [group])
        + rules.rstrip()
        + "\n"
        + GROUP_RESPONSE_CONTRACT.format(language=language)
    )


def batch_system_prompt(language: str = "English") -> str:
    return BATCH_SYSTEM_PROMPT.format(language=language)


def group_system_prompt(language: str = "English") -> str:
    return GROUP_SYSTEM_PROMPT.format(language=language)


# ---------------------------------------------------------------------------
# Project override extraction
# ---------------------------------------------------------------------------

RULES_BLOCK_RE = re.compile(
    r"<!--\s*review-rules:start\s*-->(.*?)<!--\s*review-rules:end\s*-->", re.DOTALL
)
# Rule files written as JS prompt builders: prompt += `...`
JS_APPEND_RE = re.compile(r"prompt\s*\+=\s*`([^`]+)`")


def extract_rule_block(text: str | None) -> str | None:
    """Pull the rule text out of a project's override asset.

    Tried in order: an explicit ``review-rules`` marker block, a sequence of
    ``prompt += `...``` fragments, then the whole file. Returns None when
    nothing usable is left.
    """
    if not text or not text.strip():
        return None

    match = RULES_BLOCK_RE.search(text)
    if match and match.group(1).strip():
        return match.group(1).strip()

    fragments = [f for f in JS_APPEND_RE.findall(text) if f.strip()]
    if fragments:
        return "\n".join(f.rstrip("\n") for f in fragments)

    return text.strip()
