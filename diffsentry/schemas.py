"""Data models for DiffSentry."""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from pydantic import BaseModel, Field

GENERAL_COMMENT_PATH = "general"


# ---------------------------------------------------------------------------
# Change-set
# ---------------------------------------------------------------------------

class ChangeEntry(BaseModel):
    """One file's change within a merge/pull request."""

    new_path: str = ""
    old_path: str | None = None
    diff_text: str = ""
    base_sha: str = ""
    start_sha: str = ""
    head_sha: str = ""
    new_file: bool = False  # as reported by the host, when it reports it

    @property
    def file_path(self) -> str:
        return self.new_path or self.old_path or ""

    @property
    def is_new(self) -> bool:
        """True for files with no prior version, or whose diff is pure addition."""
        from diffsentry.diff_parser import is_pure_addition

        if self.new_file or not self.old_path:
            return True
        return is_pure_addition(self.diff_text)


class AddedLine(BaseModel):
    line_number: int
    content: str


class ChangeGroup(BaseModel):
    """A run of adjacent added lines reviewed as one unit."""

    id: int
    lines: list[AddedLine]
    start_line: int
    end_line: int

    @property
    def last_line(self) -> AddedLine:
        return self.lines[-1]

    @property
    def code(self) -> str:
        return "\n".join(line.content for line in self.lines)


# ---------------------------------------------------------------------------
# Existing comments
# ---------------------------------------------------------------------------

class ExistingComment(BaseModel):
    file_path: str = GENERAL_COMMENT_PATH
    line: int | None = None
    start_line: int | None = None
    end_line: int | None = None
    text: str = ""

    @property
    def is_general(self) -> bool:
        return self.file_path == GENERAL_COMMENT_PATH


# ---------------------------------------------------------------------------
# Review output
# ---------------------------------------------------------------------------

class ReviewResult(BaseModel):
    line_number: int  # always the group's last line
    text: str
    group_id: int
    group_size: int


class FileReview(BaseModel):
    file_path: str
    results: list[ReviewResult] = Field(default_factory=list)
    source_change: ChangeEntry


class Severity(str, enum.Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ReviewSummary(BaseModel):
    total_files: int = 0
    total_issues: int = 0
    severity_breakdown: dict[Severity, int] = Field(
        default_factory=lambda: {s: 0 for s in Severity}
    )
    generated_at: datetime = Field(default_factory=lambda: datetime.now(tz=timezone.utc))
