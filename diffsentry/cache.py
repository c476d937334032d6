"""In-memory TTL cache of batch review results."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import NamedTuple

from diffsentry.schemas import ChangeGroup, ReviewResult

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 24 * 60 * 60
DEFAULT_MAX_ENTRIES = 1000


class _Entry(NamedTuple):
    results: list[ReviewResult]
    stored_at: float


class ReviewCache:
    """Maps (file, exact group contents) to the results a model produced.

    Owned by one orchestrator for the life of the process. Safe to share
    across the orchestrator's worker threads.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._lock = threading.Lock()

    @staticmethod
    def make_key(file_path: str, groups: list[ChangeGroup]) -> str:
        parts = [
            f"{g.start_line}-{g.end_line}:" + "".join(line.content for line in g.lines)
            for g in groups
        ]
        return f"{file_path}:" + "|".join(parts)

    def get_cached_review(self, key: str) -> list[ReviewResult] | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() - entry.stored_at < self.ttl_seconds:
                return list(entry.results)
            del self._entries[key]
            return None

    def cache_review(self, key: str, results: list[ReviewResult]) -> None:
        with self._lock:
            self._entries[key] = _Entry(list(results), self._clock())
            oversized = len(self._entries) > self.max_entries
        if oversized:
            self.sweep()

    def sweep(self) -> int:
        """Drop every expired entry. Returns how many were removed."""
        with self._lock:
            now = self._clock()
            stale = [k for k, e in self._entries.items() if now - e.stored_at >= self.ttl_seconds]
            for key in stale:
                del self._entries[key]
        if stale:
            logger.debug("Review cache swept %d expired entries", len(stale))
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
