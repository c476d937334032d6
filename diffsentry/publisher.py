"""Post review results back to the host as inline comments and a summary."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Protocol

from diffsentry.config import AI_REVIEW_MARKER
from diffsentry.schemas import (
    ChangeEntry,
    ExistingComment,
    FileReview,
    ReviewSummary,
    Severity,
)

logger = logging.getLogger(__name__)

MAX_FILES = 100
MAX_COMMENTS_PER_FILE = 10
POST_DELAY = 0.2  # seconds between posts

HIGH_SEVERITY_KEYWORDS = [
    "security", "vulnerability", "injection", "xss", "csrf", "sql injection",
    "permission", "authentication", "authorization", "sensitive", "secret",
    "安全", "漏洞", "注入", "sql注入", "权限", "认证", "授权", "敏感",
]
MEDIUM_SEVERITY_KEYWORDS = [
    "performance", "memory", "leak", "deadlock", "race condition", "concurrency",
    "exception", "error handling",
    "性能", "内存", "泄漏", "死锁", "竞态", "并发", "异常", "错误处理",
]


class ReviewHost(Protocol):
    def post_inline_comment(
        self, project: Any, iid: int, entry: ChangeEntry, line: int, body: str
    ) -> Any: ...

    def post_note(self, project: Any, iid: int, body: str) -> Any: ...


@dataclass
class PublishReport:
    posted: int = 0
    skipped: int = 0
    failed: int = 0
    files: int = 0
    summary_posted: bool = False


def classify_severity(text: str) -> Severity:
    lowered = text.lower()
    if any(k in lowered for k in HIGH_SEVERITY_KEYWORDS):
        return Severity.HIGH
    if any(k in lowered for k in MEDIUM_SEVERITY_KEYWORDS):
        return Severity.MEDIUM
    return Severity.LOW


def summarize(file_reviews: list[FileReview]) -> ReviewSummary:
    summary = ReviewSummary(total_files=len(file_reviews))
    for review in file_reviews:
        for result in review.results:
            summary.total_issues += 1
            summary.severity_breakdown[classify_severity(result.text)] += 1
    return summary


def render_summary(summary: ReviewSummary, model: str, platform: str) -> str:
    """Markdown summary note for the merge/pull request."""
    lines = ["## AI code review summary", ""]
    if summary.total_issues == 0:
        lines += ["No issues worth changing were found in this review.", ""]
    else:
        breakdown = summary.severity_breakdown
        lines += [
            "| | |",
            "|---|---|",
            f"| Files reviewed | {summary.total_files} |",
            f"| Issues found | {summary.total_issues} |",
            f"| High severity | {breakdown.get(Severity.HIGH, 0)} |",
            f"| Medium severity | {breakdown.get(Severity.MEDIUM, 0)} |",
            f"| Low severity | {breakdown.get(Severity.LOW, 0)} |",
            "",
        ]
    platform_name = {"gitlab": "GitLab", "github": "GitHub"}.get(platform, platform)
    lines += [
        f"**Platform**: {platform_name}",
        f"**Model**: {model}",
        f"**Reviewed at**: {summary.generated_at:%Y-%m-%d %H:%M UTC}",
        "",
    ]
    if summary.total_issues:
        lines.append("> Each suggestion is advisory. Apply what fits and discuss the rest.")
        high = summary.severity_breakdown.get(Severity.HIGH, 0)
        if high:
            lines.append("")
            lines.append(f"**{high} high-severity issue(s) found; please address these first.**")
    return "\n".join(lines) + "\n"


class ReviewPublisher:
    def __init__(
        self,
        host: ReviewHost,
        marker: str = AI_REVIEW_MARKER,
        max_files: int = MAX_FILES,
        max_comments_per_file: int = MAX_COMMENTS_PER_FILE,
        post_delay: float = POST_DELAY,
    ) -> None:
        self.host = host
        self.marker = marker
        self.max_files = max_files
        self.max_comments_per_file = max_comments_per_file
        self.post_delay = post_delay

    def format_comment(self, text: str) -> str:
        return f"{self.marker}\n\n{text}"

    def publish(
        self,
        project: Any,
        iid: int,
        file_reviews: list[FileReview],
        existing: list[ExistingComment] | None = None,
        summary_model: str | None = None,
        platform: str = "gitlab",
    ) -> PublishReport:
        """Post every result; a failed post is logged and counted, never fatal.

        When ``summary_model`` is given a summary note is posted afterwards.
        """
        report = PublishReport()
        taken = {(c.file_path, c.line) for c in existing or [] if c.line is not None}

        if len(file_reviews) > self.max_files:
            logger.warning("Too many files (%d); publishing the first %d", len(file_reviews), self.max_files)
            file_reviews = file_reviews[: self.max_files]

        for review in file_reviews:
            report.files += 1
            posted_here = 0
            for result in review.results:
                if posted_here >= self.max_comments_per_file:
                    logger.warning("%s: comment limit reached, skipping the rest", review.file_path)
                    break
                if (review.file_path, result.line_number) in taken:
                    logger.info("Already commented on %s:%d, skipping", review.file_path, result.line_number)
                    report.skipped += 1
                    continue
                try:
                    self.host.post_inline_comment(
                        project, iid, review.source_change, result.line_number,
                        self.format_comment(result.text),
                    )
                except Exception as e:
                    logger.error("Failed to post comment on %s:%d: %s", review.file_path, result.line_number, e)
                    report.failed += 1
                else:
                    report.posted += 1
                    posted_here += 1
                    taken.add((review.file_path, result.line_number))
                if self.post_delay:
                    time.sleep(self.post_delay)

        if summary_model is not None:
            body = self.format_comment(render_summary(summarize(file_reviews), summary_model, platform))
            try:
                self.host.post_note(project, iid, body)
                report.summary_posted = True
            except Exception as e:
                logger.error("Failed to post review summary: %s", e)

        logger.info(
            "Published review: %d posted, %d skipped, %d failed across %d files",
            report.posted, report.skipped, report.failed, report.files,
        )
        return report


def is_skip_requested(title: str | None, marker: str) -> bool:
    return bool(title and marker and marker.lower() in title.lower())
