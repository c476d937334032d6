"""Merge filtered added lines into contiguous review units."""

from __future__ import annotations

import logging
import re

from diffsentry.schemas import AddedLine, ChangeGroup

logger = logging.getLogger(__name__)

DEFAULT_MAX_LINES = 40

# Boundary patterns, matched against trimmed line content. A match means
# the line starts a new group.
FUNCTION_START_PATTERNS = [
    r"^(export\s+)?(default\s+)?(async\s+)?function\b",
    r"^(export\s+)?(const|let|var)\s+\w+\s*=\s*(async\s+)?(function\b|\([^)]*\)\s*=>|\w+\s*=>)",
    r"^(async\s+)?\w+\s*\([^)]*\)\s*{\s*$",  # object / class method
    r"^static\s+(async\s+)?\w+\s*\(",
    r"^(async\s+)?def\s+\w+\s*\(",
]

DECLARATION_START_PATTERNS = [
    r"^(export\s+)?(default\s+)?(abstract\s+)?(class|interface|type|enum)\s+\w+",
]

BLOCK_COMMENT_PATTERNS = [
    r"^/\*\*",
    r"^/\*",
    r"\*/$",
]

_BOUNDARY_RE = [
    re.compile(p)
    for p in FUNCTION_START_PATTERNS + DECLARATION_START_PATTERNS + BLOCK_COMMENT_PATTERNS
]
_RESERVED = {"if", "for", "while", "switch", "catch", "with", "return"}


def is_semantic_boundary(content: str) -> bool:
    text = content.strip()
    if not text:
        return False
    # `if (x) {` looks like a method signature to the pattern above
    first_word = re.split(r"[\s(]", text, maxsplit=1)[0]
    if first_word in _RESERVED:
        return False
    return any(p.search(text) for p in _BOUNDARY_RE)


def group_lines(
    lines: list[AddedLine],
    max_lines: int = DEFAULT_MAX_LINES,
    smart: bool = True,
) -> list[ChangeGroup]:
    """Greedy single pass over lines already sorted by line number.

    A new group starts on a line-number gap or when the current group is
    full. In smart mode it also starts before any function, declaration or
    block-comment boundary.
    """
    if max_lines < 1:
        raise ValueError("max_lines must be >= 1")

    groups: list[ChangeGroup] = []
    current: list[AddedLine] = []

    def close() -> None:
        if current:
            groups.append(_make_group(len(groups) + 1, list(current)))
            current.clear()

    for line in lines:
        if current:
            gap = line.line_number != current[-1].line_number + 1
            full = len(current) >= max_lines
            boundary = smart and is_semantic_boundary(line.content)
            if gap or full or boundary:
                close()
        current.append(line)
    close()

    logger.debug(
        "Grouped %d lines into %d groups (smart=%s, max_lines=%d)",
        len(lines), len(groups), smart, max_lines,
    )
    return groups


def group_new_file(lines: list[AddedLine]) -> list[ChangeGroup]:
    """A new file is reviewed as one unit, whatever its length."""
    if not lines:
        return []
    return [_make_group(1, list(lines))]


def _make_group(group_id: int, lines: list[AddedLine]) -> ChangeGroup:
    return ChangeGroup(
        id=group_id,
        lines=lines,
        start_line=lines[0].line_number,
        end_line=lines[-1].line_number,
    )
