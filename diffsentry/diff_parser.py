"""Unified diff parsing: resolve added lines to new-file line numbers."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterator
from typing import NamedTuple

from diffsentry.schemas import AddedLine

logger = logging.getLogger(__name__)

HUNK_HEADER_RE = re.compile(r"^@@ -(\d+)(?:,\d+)? \+(\d+)(?:,\d+)? @@")

ADDED = "added"
REMOVED = "removed"
CONTEXT = "context"


class DiffLine(NamedTuple):
    kind: str
    line_number: int | None  # new-file position; None for removed lines
    content: str


def iter_diff_lines(diff_text: str) -> Iterator[DiffLine]:
    """Walk a unified diff, tracking the new-file line counter.

    Only lines inside a hunk are yielded; file headers (``diff --git``,
    ``index``, ``---``/``+++``) before the first hunk are skipped, so an
    added line that itself starts with ``++`` is still an addition. A hunk
    header resets the counter to the new-file start. A header that does not
    match the expected shape is logged and the counter is left as it was.
    """
    current = 0
    in_hunk = False
    for raw in diff_text.split("\n"):
        if raw.startswith("@@"):
            match = HUNK_HEADER_RE.match(raw)
            if match:
                current = int(match.group(2))
            else:
                logger.warning("Malformed hunk header, keeping line counter at %d: %r", current, raw)
            in_hunk = True
            continue
        if raw.startswith("diff --git "):
            in_hunk = False
            continue
        if not in_hunk or raw.startswith("\\"):
            continue
        if raw.startswith("+"):
            yield DiffLine(ADDED, current, raw[1:])
            current += 1
        elif raw.startswith("-"):
            yield DiffLine(REMOVED, None, raw[1:])
        else:
            yield DiffLine(CONTEXT, current, raw[1:] if raw.startswith(" ") else raw)
            current += 1


def parse_added_lines(diff_text: str) -> list[AddedLine]:
    """Return the added lines of a diff in order. Empty input yields []."""
    if not diff_text:
        return []
    return [
        AddedLine(line_number=dl.line_number, content=dl.content)
        for dl in iter_diff_lines(diff_text)
        if dl.kind == ADDED
    ]


def split_changed_lines(diff_text: str) -> tuple[list[str], list[str]]:
    """Return ``(added, removed)`` raw line contents, without their markers."""
    added: list[str] = []
    removed: list[str] = []
    for dl in iter_diff_lines(diff_text):
        if dl.kind == ADDED:
            added.append(dl.content)
        elif dl.kind == REMOVED:
            removed.append(dl.content)
    return added, removed


def is_pure_addition(diff_text: str) -> bool:
    """True when the diff has added lines and nothing else in its hunks."""
    saw_added = False
    for dl in iter_diff_lines(diff_text):
        if dl.kind == ADDED:
            saw_added = True
        elif dl.kind == REMOVED:
            return False
        elif dl.content.strip():
            return False
    return saw_added
