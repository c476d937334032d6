"""Pre-review filtering: file-type gate, format-only detection and line heuristics."""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass, field

from pydantic import BaseModel, Field

from diffsentry.diff_parser import ADDED, REMOVED, iter_diff_lines, split_changed_lines
from diffsentry.schemas import AddedLine

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Filter policy configuration
# ---------------------------------------------------------------------------

class SpecialAction(str, enum.Enum):
    SKIP = "skip"
    SYNTAX_ONLY = "syntax-only"
    SKIP_STYLE = "skip-style"


class SpecialFileRule(BaseModel):
    """Per-file policy that takes priority over the extension ignore-list."""

    name: str
    patterns: list[str]  # case-insensitive substrings of the file path
    action: SpecialAction
    enabled: bool = True


class FilterConfig(BaseModel):
    """Heuristic tables for deciding what is worth sending to the model.

    Everything here is data: tune the lists rather than the code that
    walks them.
    """

    ignored_extensions: list[str] = Field(
        default_factory=lambda: [
            # style sheets
            ".css", ".scss", ".sass", ".less", ".styl",
            # documents
            ".md", ".markdown", ".mdx", ".txt", ".rst", ".adoc", ".doc", ".docx", ".pdf",
            # generic config
            ".yml", ".yaml", ".toml", ".ini", ".conf", ".cfg", ".config",
        ],
        description="File suffixes that are never reviewed.",
    )

    special_files: list[SpecialFileRule] = Field(
        default_factory=lambda: [
            SpecialFileRule(
                name="package-manifests",
                patterns=["package.json", "package-lock.json"],
                action=SpecialAction.SKIP,
            ),
            SpecialFileRule(
                name="lock-files",
                patterns=["pnpm-lock.yaml", "yarn.lock"],
                action=SpecialAction.SYNTAX_ONLY,
            ),
            SpecialFileRule(
                name="single-file-components",
                patterns=[".vue", ".svelte"],
                action=SpecialAction.SKIP_STYLE,
            ),
        ],
    )

    skip_patterns: list[str] = Field(
        default_factory=lambda: [
            r"^\s*//\s*(TODO|FIXME|NOTE):",
            r"^\s*#\s*(TODO|FIXME|NOTE):",
            r"^\s*/\*.*\*/\s*$",
            r"^\s*console\.(log|warn|error|debug|info)\s*\(",
            r"^\s*print\s*\(",
            r"^\s*(logger|logging)\.debug\s*\(",
            r"^\s*debugger\s*;?\s*$",
            r"^\s*breakpoint\(\)\s*$",
            r"^\s*import\s+.*\s+from\s+['\"]",
            r"^\s*export\s+",
            r"^\s*from\s+[\w.]+\s+import\s+",
            r"^\s*import\s+[\w.]+(\s+as\s+\w+)?\s*$",
            r"^\s*}\s*$",
            r"^\s*{\s*$",
            r"^\s*\)\s*$",
            r"^\s*\(\s*$",
            r"^\s*\]\s*$",
            r"^\s*\[\s*$",
            r"^\s*;\s*$",
            r"^\s*,\s*$",
            r"^\s*\[\s*\]\s*$",
            r"^\s*{\s*}\s*$",
        ],
        description="Regexes (case-insensitive) for trimmed lines that never need review.",
    )

    comment_line_patterns: list[str] = Field(
        default_factory=lambda: [r"^//", r"^/\*", r"^\*", r"^#(\s|$)", r"^<!--"],
        description="Regexes identifying a trimmed line as comment syntax only.",
    )

    syntax_anomaly_markers: list[str] = Field(
        default_factory=lambda: ["{{", "}}", "<<", ">>"],
    )

    style_tag_pattern: str = r"</?style\b"

    min_length: int = 3
    long_line_length: int = 200


# ---------------------------------------------------------------------------
# File-level gate
# ---------------------------------------------------------------------------

@dataclass
class GateVerdict:
    """Outcome of the file-level gate for one change entry."""

    review: bool
    reason: str = ""
    excluded_lines: frozenset[int] = field(default_factory=frozenset)


class FileGate:
    """Decides per file whether its changes are reviewable at all."""

    def __init__(self, policy: FilterConfig) -> None:
        self.policy = policy
        self._comment_re = [re.compile(p) for p in policy.comment_line_patterns]
        self._style_re = re.compile(policy.style_tag_pattern, re.I)

    def check(self, file_path: str, diff_text: str, new_file: bool = False) -> GateVerdict:
        """Apply special-file policies, the extension ignore-list and, for
        modified files, the format-only check.

        Args:
            file_path: Path of the file in the new revision.
            diff_text: Unified diff for this file only.
            new_file: New files are judged on their type alone.
        """
        path_lower = file_path.lower()

        for rule in self.policy.special_files:
            if rule.enabled and any(p.lower() in path_lower for p in rule.patterns):
                return self._apply_special(rule, diff_text)

        if any(path_lower.endswith(ext.lower()) for ext in self.policy.ignored_extensions):
            return GateVerdict(False, "ignored-extension")

        if new_file:
            return GateVerdict(True)

        added, _ = split_changed_lines(diff_text)
        if not added:
            return GateVerdict(False, "no-additions")
        if is_format_only_change(diff_text, self._comment_re):
            return GateVerdict(False, "format-only")
        return GateVerdict(True)

    def _apply_special(self, rule: SpecialFileRule, diff_text: str) -> GateVerdict:
        if rule.action == SpecialAction.SKIP:
            return GateVerdict(False, f"special:{rule.name}")
        if rule.action == SpecialAction.SYNTAX_ONLY:
            if self.has_syntax_anomaly(diff_text):
                return GateVerdict(True, f"special:{rule.name}:anomaly")
            return GateVerdict(False, f"special:{rule.name}")
        # SKIP_STYLE
        style_lines = self.style_region_lines(diff_text)
        added_numbers = {
            dl.line_number for dl in iter_diff_lines(diff_text) if dl.kind == ADDED
        }
        if not added_numbers - style_lines:
            return GateVerdict(False, f"special:{rule.name}:style-only")
        return GateVerdict(True, f"special:{rule.name}", frozenset(style_lines))

    def has_syntax_anomaly(self, diff_text: str) -> bool:
        """Look for merge/template markers or unbalanced delimiters in added lines."""
        added, _ = split_changed_lines(diff_text)
        balance = {"{": 0, "[": 0}
        for raw in added:
            content = raw.strip()
            if any(marker in content for marker in self.policy.syntax_anomaly_markers):
                return True
            balance["{"] += content.count("{") - content.count("}")
            balance["["] += content.count("[") - content.count("]")
        return any(v != 0 for v in balance.values())

    def style_region_lines(self, diff_text: str) -> set[int]:
        """New-file line numbers inside (or delimiting) a ``<style>`` block."""
        lines: set[int] = set()
        in_style = False
        for dl in iter_diff_lines(diff_text):
            if dl.kind == REMOVED:
                continue
            content = dl.content.strip()
            if self._style_re.search(content):
                lines.add(dl.line_number)
                opens = "<style" in content.lower()
                closes = "</style" in content.lower()
                if opens and not closes:
                    in_style = True
                elif closes:
                    in_style = False
                continue
            if in_style:
                lines.add(dl.line_number)
        return lines


def is_format_only_change(
    diff_text: str,
    comment_patterns: list[re.Pattern] | None = None,  # type: ignore[type-arg]
) -> bool:
    """True when a change only touches whitespace, layout or comment syntax."""
    added, removed = split_changed_lines(diff_text)
    if not added and not removed:
        return False

    added = [line.strip() for line in added]
    removed = [line.strip() for line in removed]

    # Whitespace-only
    if all(not line for line in added) and all(not line for line in removed):
        return True

    # Comment syntax only
    if comment_patterns is None:
        comment_patterns = [re.compile(p) for p in FilterConfig().comment_line_patterns]
    changed = [line for line in added + removed if line]
    if changed and all(any(p.search(line) for p in comment_patterns) for line in changed):
        return True

    # Re-indented / re-spaced: every pair identical once whitespace is gone
    if len(added) == len(removed):
        return all(
            re.sub(r"\s+", "", a) == re.sub(r"\s+", "", r) for a, r in zip(added, removed)
        )
    return False


# ---------------------------------------------------------------------------
# Line-level filter
# ---------------------------------------------------------------------------

class LineFilter:
    """Drops added lines that cannot plausibly need review."""

    def __init__(self, policy: FilterConfig) -> None:
        self.policy = policy
        self._skip_re = [re.compile(p, re.I) for p in policy.skip_patterns]

    def should_review(self, content: str) -> bool:
        text = content.strip()
        if len(text) < self.policy.min_length:
            return False
        if len(text) > self.policy.long_line_length:
            return True
        if any(p.search(text) for p in self._skip_re):
            return False
        return bool(text.strip())

    def filter(
        self, lines: list[AddedLine], excluded: frozenset[int] = frozenset()
    ) -> list[AddedLine]:
        kept = [
            line for line in lines
            if line.line_number not in excluded and self.should_review(line.content)
        ]
        logger.debug("Line filter kept %d of %d added lines", len(kept), len(lines))
        return kept
