"""Drive the diff-to-review pipeline across a change-set.

Files fan out under one semaphore, model calls under another. Everything
between the two suspension points (fetching a project's rule override and
the model call itself) is plain synchronous code.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from diffsentry.cache import ReviewCache
from diffsentry.config import Config
from diffsentry.dedup import CommentDeduplicator
from diffsentry.diff_parser import parse_added_lines
from diffsentry.grouper import group_lines, group_new_file
from diffsentry.line_filter import FileGate, LineFilter
from diffsentry.prompts import extract_rule_block
from diffsentry.providers import ProviderError, ProviderUnavailableError
from diffsentry.quality import QualityFilter
from diffsentry.result_parser import parse_batch_review, parse_single_review
from diffsentry.review_client import ReviewClient
from diffsentry.schemas import (
    ChangeEntry,
    ChangeGroup,
    ExistingComment,
    FileReview,
    ReviewResult,
)

logger = logging.getLogger(__name__)

# Added to the client's own timeout when bounding a call from outside
CALL_TIMEOUT_GRACE = 1.0

OverrideFetcher = Callable[[str], "str | None"]


@dataclass
class RunStats:
    model_calls: int = 0
    failed_calls: int = 0
    cache_hits: int = 0
    files_skipped: int = 0


@dataclass
class _Run:
    """State scoped to one ``review()`` call."""

    existing: list[ExistingComment]
    file_slots: asyncio.Semaphore
    ai_slots: asyncio.Semaphore
    stats: RunStats = field(default_factory=RunStats)
    overrides: dict[str, asyncio.Future[Any]] = field(default_factory=dict)


def _chunks(items: list[ChangeGroup], size: int) -> list[list[ChangeGroup]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


def _release_slot(call: asyncio.Future[Any], slots: asyncio.Semaphore) -> None:
    slots.release()
    if not call.cancelled():
        call.exception()  # marks a late failure of an abandoned call as retrieved


class ReviewOrchestrator:
    """Turns a change-set plus prior comments into per-file review results.

    The cache is owned by the orchestrator and outlives individual runs;
    construct one orchestrator per process and reuse it.
    """

    def __init__(
        self,
        client: ReviewClient,
        config: Config | None = None,
        cache: ReviewCache | None = None,
        override_fetcher: OverrideFetcher | None = None,
    ) -> None:
        self.client = client
        self.config = config or Config()
        review = self.config.review
        self.max_concurrent_files = max(1, review.max_concurrent_files)
        self.max_concurrent_ai = max(1, review.max_concurrent_ai)
        self.max_groups_per_batch = max(1, review.max_groups_per_batch)
        self.max_lines_per_group = review.max_lines_per_group
        self.small_batch_size = max(1, review.small_batch_size)
        self.smart_grouping = review.smart_grouping

        self.cache = cache or ReviewCache(
            ttl_seconds=self.config.cache.ttl_seconds,
            max_entries=self.config.cache.max_entries,
        )
        self.gate = FileGate(self.config.filters)
        self.line_filter = LineFilter(self.config.filters)
        self.deduplicator = CommentDeduplicator(self.config.dedup)
        self.quality = QualityFilter(self.config.quality)
        self.override_fetcher = override_fetcher
        self.last_stats: RunStats | None = None

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def review(
        self,
        change_set: list[ChangeEntry],
        existing_comments: list[ExistingComment] | None = None,
    ) -> list[FileReview]:
        """Synchronous entry point. Returns [] when nothing needs commenting.

        Raises:
            ProviderUnavailableError: every model call of the run failed.
        """
        return asyncio.run(self.review_async(change_set, existing_comments))

    async def review_async(
        self,
        change_set: list[ChangeEntry],
        existing_comments: list[ExistingComment] | None = None,
    ) -> list[FileReview]:
        run = _Run(
            existing=list(existing_comments or []),
            file_slots=asyncio.Semaphore(self.max_concurrent_files),
            ai_slots=asyncio.Semaphore(self.max_concurrent_ai),
        )
        self.last_stats = run.stats
        logger.info(
            "Reviewing %d files (%d existing comments)", len(change_set), len(run.existing)
        )

        reviews = await asyncio.gather(*(self._guarded_file(entry, run) for entry in change_set))
        stats = run.stats
        logger.info(
            "Review run done: %d files with comments, %d model calls (%d failed), %d cache hits",
            sum(1 for r in reviews if r), stats.model_calls, stats.failed_calls, stats.cache_hits,
        )
        if stats.model_calls and stats.failed_calls == stats.model_calls:
            raise ProviderUnavailableError(
                f"All {stats.model_calls} model calls failed; provider {self.client.model} unreachable"
            )
        return [r for r in reviews if r is not None]

    # ------------------------------------------------------------------
    # Per file
    # ------------------------------------------------------------------

    async def _guarded_file(self, entry: ChangeEntry, run: _Run) -> FileReview | None:
        async with run.file_slots:
            try:
                return await self._review_file(entry, run)
            except Exception:
                logger.exception("Review of %s failed", entry.file_path)
                return None

    def _select_groups(self, entry: ChangeEntry, run: _Run) -> list[ChangeGroup]:
        path = entry.file_path
        is_new = entry.is_new
        verdict = self.gate.check(path, entry.diff_text, new_file=is_new)
        if not verdict.review:
            logger.info("Skipping %s: %s", path, verdict.reason)
            run.stats.files_skipped += 1
            return []

        lines = parse_added_lines(entry.diff_text)
        if verdict.excluded_lines:
            lines = [line for line in lines if line.line_number not in verdict.excluded_lines]
        if is_new:
            return group_new_file(lines)

        lines = self.line_filter.filter(lines)
        if not lines:
            logger.info("Skipping %s: no reviewable lines after filtering", path)
            run.stats.files_skipped += 1
            return []
        return group_lines(lines, self.max_lines_per_group, smart=self.smart_grouping)

    async def _review_file(self, entry: ChangeEntry, run: _Run) -> FileReview | None:
        path = entry.file_path
        groups = self._select_groups(entry, run)
        if not groups:
            return None

        rules = await self._rules_for(entry.head_sha, run)
        batches = _chunks(groups, self.max_groups_per_batch)
        batch_results = await asyncio.gather(
            *(self._review_batch(path, batch, rules, run) for batch in batches)
        )
        results = [r for batch in batch_results for r in batch]
        results = self.quality.filter(results)
        if not results:
            logger.info("%s: no comments survived filtering", path)
            return None

        logger.info("%s: %d comments from %d groups", path, len(results), len(groups))
        return FileReview(file_path=path, results=results, source_change=entry)

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    async def _review_batch(
        self, path: str, batch: list[ChangeGroup], rules: str | None, run: _Run
    ) -> list[ReviewResult]:
        groups = self.deduplicator.filter_groups(path, batch, run.existing)
        if not groups:
            return []

        key = self.cache.make_key(path, groups)
        cached = self.cache.get_cached_review(key)
        if cached is not None:
            run.stats.cache_hits += 1
            logger.info("%s: cache hit for %d groups", path, len(groups))
            return cached

        results, clean = await self._review_groups(path, groups, rules, run)
        if clean:
            self.cache.cache_review(key, results)
        return results

    async def _review_groups(
        self, path: str, groups: list[ChangeGroup], rules: str | None, run: _Run
    ) -> tuple[list[ReviewResult], bool]:
        """Review groups, halving large sets into concurrent sub-batches.

        Returns the results and whether every model call behind them
        succeeded.
        """
        if len(groups) <= self.small_batch_size:
            return await self._review_leaf(path, groups, rules, run)

        mid = math.ceil(len(groups) / 2)
        (first, first_ok), (second, second_ok) = await asyncio.gather(
            self._review_groups(path, groups[:mid], rules, run),
            self._review_groups(path, groups[mid:], rules, run),
        )
        return first + second, first_ok and second_ok

    async def _review_leaf(
        self, path: str, groups: list[ChangeGroup], rules: str | None, run: _Run
    ) -> tuple[list[ReviewResult], bool]:
        try:
            text = await self._call_model(run, self.client.review_batch, path, groups, rules)
        except ProviderError as e:
            logger.warning(
                "Batch review of %s (%d groups) failed: %s; falling back to per-group review",
                path, len(groups), e,
            )
            return await self._review_individually(path, groups, rules, run), False
        return parse_batch_review(groups, text), True

    async def _review_individually(
        self, path: str, groups: list[ChangeGroup], rules: str | None, run: _Run
    ) -> list[ReviewResult]:
        results: list[ReviewResult] = []
        for group in groups:
            try:
                text = await self._call_model(run, self.client.review_group, path, group, rules)
            except ProviderError as e:
                logger.warning("Review of %s group %d failed: %s", path, group.id, e)
                continue
            result = parse_single_review(group, text)
            if result is not None:
                results.append(result)
        return results

    async def _call_model(self, run: _Run, fn: Callable[..., str], *args: Any) -> str:
        """Run one blocking model call in a worker thread.

        The AI slot is held until the worker thread finishes, not until we
        stop waiting for it: a call abandoned on timeout keeps its slot.
        """
        timeout = self.client.timeout + CALL_TIMEOUT_GRACE
        await run.ai_slots.acquire()
        run.stats.model_calls += 1
        call = asyncio.ensure_future(asyncio.to_thread(fn, *args))
        call.add_done_callback(lambda f: _release_slot(f, run.ai_slots))
        try:
            return await asyncio.wait_for(asyncio.shield(call), timeout=timeout)
        except asyncio.TimeoutError as e:
            run.stats.failed_calls += 1
            raise ProviderError(f"model call exceeded {timeout:.1f}s") from e
        except ProviderError:
            run.stats.failed_calls += 1
            raise

    # ------------------------------------------------------------------
    # Project rule override
    # ------------------------------------------------------------------

    async def _rules_for(self, ref: str, run: _Run) -> str | None:
        if self.override_fetcher is None:
            return None
        if ref not in run.overrides:
            run.overrides[ref] = asyncio.ensure_future(self._fetch_override(ref))
        return await run.overrides[ref]

    async def _fetch_override(self, ref: str) -> str | None:
        assert self.override_fetcher is not None
        try:
            text = await asyncio.to_thread(self.override_fetcher, ref)
        except Exception as e:
            logger.warning("Could not fetch project review rules at %s: %s", ref or "HEAD", e)
            return None
        rules = extract_rule_block(text)
        if rules:
            logger.info("Using project review rules at %s", ref or "HEAD")
        return rules
