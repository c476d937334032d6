"""Skip change groups that an earlier review comment already covers."""

from __future__ import annotations

import logging
import re

from pydantic import BaseModel, Field

from diffsentry.schemas import GENERAL_COMMENT_PATH, ChangeGroup, ExistingComment

logger = logging.getLogger(__name__)


class DedupConfig(BaseModel):
    """Keyword tables and threshold for the similarity heuristic."""

    issue_keywords: list[str] = Field(
        default_factory=lambda: [
            "comment", "remove", "redundant", "useless", "meaningless",
            "code quality", "best practice", "code structure", "invalid",
            "注释", "无意义", "无用", "删除", "代码质量", "代码规范", "最佳实践",
            "代码结构", "无效", "冗余",
        ],
        description="A prior comment must mention one of these to block a group.",
    )
    comment_keywords: list[str] = Field(
        default_factory=lambda: [
            "comment", "meaningless", "useless", "remove", "invalid", "redundant",
            "注释", "无意义", "无用", "删除", "无效", "冗余",
        ],
    )
    removal_keywords: list[str] = Field(
        default_factory=lambda: ["remove", "replace", "avoid", "删除", "替换", "避免"],
    )
    comment_markers: list[str] = Field(default_factory=lambda: ["//", "/*", "*/", "#"])
    overlap_threshold: float = 0.05


class CommentDeduplicator:
    """Pure filter: same inputs always give the same surviving groups."""

    def __init__(self, config: DedupConfig | None = None) -> None:
        self.config = config or DedupConfig()

    def filter_groups(
        self,
        file_path: str,
        groups: list[ChangeGroup],
        existing: list[ExistingComment],
    ) -> list[ChangeGroup]:
        kept = [g for g in groups if not self.is_duplicate(file_path, g, existing)]
        if len(kept) != len(groups):
            logger.debug(
                "%s: %d of %d groups already covered by existing comments",
                file_path, len(groups) - len(kept), len(groups),
            )
        return kept

    def is_duplicate(
        self, file_path: str, group: ChangeGroup, existing: list[ExistingComment]
    ) -> bool:
        for comment in existing:
            if comment.file_path not in (file_path, GENERAL_COMMENT_PATH):
                continue
            if overlaps(comment, group.start_line, group.end_line) and self.is_similar(
                comment.text, group.code
            ):
                return True
        return False

    def is_similar(self, comment_text: str, code: str) -> bool:
        if not comment_text or not comment_text.strip():
            return False
        text = comment_text.lower()
        code = code.lower()

        if not any(k in text for k in self.config.issue_keywords):
            return False
        if self._is_comment_removal(text, code):
            return True
        return word_overlap(text, code) > self.config.overlap_threshold

    def _is_comment_removal(self, text: str, code: str) -> bool:
        cfg = self.config
        if not any(k in text for k in cfg.comment_keywords):
            return False
        if not any(m in code for m in cfg.comment_markers):
            return False
        return any(k in text for k in cfg.removal_keywords)


def overlaps(comment: ExistingComment, start_line: int, end_line: int) -> bool:
    """Whether a prior comment's position touches the line range."""
    if comment.start_line is not None and comment.end_line is not None:
        return not (end_line < comment.start_line or start_line > comment.end_line)
    if comment.line is not None:
        return start_line <= comment.line <= end_line
    return comment.is_general


def _words(text: str) -> set[str]:
    return {w for w in re.split(r"\s+", text) if len(w) > 1}


def word_overlap(a: str, b: str) -> float:
    """Shared words over the larger word set; 0.0 when nothing is shared."""
    wa, wb = _words(a.lower()), _words(b.lower())
    if not wa or not wb:
        return 0.0
    shared = len(wa & wb)
    return shared / max(len(wa), len(wb))
