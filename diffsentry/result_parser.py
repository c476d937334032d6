"""Map free-form model replies back onto the groups they describe.

Model output rarely follows the requested format exactly, so parsing is a
ladder of strategies tried in order. None of them raise: a reply that
cannot be understood yields fewer results, never an exception.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable

from diffsentry.schemas import ChangeGroup, ReviewResult

logger = logging.getLogger(__name__)

PASS_RE = re.compile(r"\bPASS\b")
NUMBERED_RE = re.compile(r"^(\d+)\.\s*(.+)$")
NUMBER_PREFIX_RE = re.compile(r"^\d+\.\s*")

MIN_NUMBERED_LENGTH = 10  # numbered entries this short or shorter are noise
MIN_SINGLE_LENGTH = 10
MAX_SINGLE_LENGTH = 200

Strategy = Callable[[list[ChangeGroup], list[str], str], "list[ReviewResult] | None"]


def is_pass(text: str) -> bool:
    return bool(PASS_RE.search(text))


def _result(group: ChangeGroup, text: str) -> ReviewResult:
    return ReviewResult(
        line_number=group.last_line.line_number,
        text=text,
        group_id=group.id,
        group_size=len(group.lines),
    )


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

def parse_numbered(
    groups: list[ChangeGroup], lines: list[str], text: str
) -> list[ReviewResult] | None:
    """``N. suggestion`` lines, matched to the N-th group."""
    results: list[ReviewResult] = []
    for line in lines:
        match = NUMBERED_RE.match(line)
        if not match:
            continue
        index = int(match.group(1)) - 1
        body = match.group(2).strip()
        if not 0 <= index < len(groups):
            logger.debug("Reply entry %d has no matching group (have %d)", index + 1, len(groups))
            continue
        if is_pass(body) or len(body) <= MIN_NUMBERED_LENGTH:
            continue
        results.append(_result(groups[index], body))
    return results or None


def parse_positional(
    groups: list[ChangeGroup], lines: list[str], text: str
) -> list[ReviewResult] | None:
    """One reply line per group, in order, numbering optional."""
    if len(lines) < len(groups):
        return None
    results: list[ReviewResult] = []
    for group, line in zip(groups, lines):
        if is_pass(line):
            continue
        body = NUMBER_PREFIX_RE.sub("", line).strip()
        if body:
            results.append(_result(group, body))
    return results or None


def parse_whole_text(
    groups: list[ChangeGroup], lines: list[str], text: str
) -> list[ReviewResult] | None:
    """Fewer reply lines than groups: attach the whole reply to the first group."""
    if not groups or len(lines) >= len(groups):
        return None
    body = "\n".join(line for line in lines if not is_pass(line)).strip()
    if not body:
        return None
    return [_result(groups[0], body)]


STRATEGIES: list[Strategy] = [parse_numbered, parse_positional, parse_whole_text]


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------

def parse_batch_review(groups: list[ChangeGroup], text: str) -> list[ReviewResult]:
    """Turn a batch reply into results; the first strategy with output wins."""
    if not groups or not text or not text.strip():
        return []

    lines = [line.strip() for line in text.split("\n") if line.strip()]
    if all(is_pass(line) for line in lines):
        return []

    for strategy in STRATEGIES:
        try:
            results = strategy(groups, lines, text)
        except Exception:
            logger.exception("Reply parsing strategy %s failed", strategy.__name__)
            continue
        if results:
            if strategy is not parse_numbered:
                logger.info(
                    "Reply did not follow numbered format; used %s (%d results)",
                    strategy.__name__, len(results),
                )
            return results
    return []


def parse_single_review(group: ChangeGroup, text: str) -> ReviewResult | None:
    """Reply to a single-group prompt. PASS or very short replies mean no comment."""
    body = (text or "").strip()
    if not body or is_pass(body) or len(body) < MIN_SINGLE_LENGTH:
        return None
    body = NUMBER_PREFIX_RE.sub("", body).strip()
    if len(body) > MAX_SINGLE_LENGTH:
        body = body[:MAX_SINGLE_LENGTH] + "..."
    return _result(group, body)
