"""End-to-end tests for the review orchestrator with a scripted provider."""

from __future__ import annotations

import re
import threading
import time
from collections.abc import Callable

import pytest

from diffsentry import orchestrator as orchestrator_module
from diffsentry.config import Config
from diffsentry.orchestrator import ReviewOrchestrator
from diffsentry.providers import ProviderError, ProviderUnavailableError
from diffsentry.review_client import ReviewClient
from diffsentry.schemas import ChangeEntry, ExistingComment

GROUP_HEADER_RE = re.compile(r"^\d+\. Lines (\d+)-(\d+):$", re.M)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class ScriptedProvider:
    """Answers prompts through ``handler`` and records every call."""

    name = "scripted"
    model = "scripted-model"

    def __init__(self, handler: Callable[[str, str], str] | None = None, delay: float = 0.0) -> None:
        self.handler = handler or (lambda system, user: "1. PASS")
        self.delay = delay
        self.calls: list[tuple[str, str]] = []
        self.in_flight = 0
        self.peak_in_flight = 0
        self._lock = threading.Lock()

    def complete(self, system_prompt: str, user_prompt: str) -> str:
        with self._lock:
            self.calls.append((system_prompt, user_prompt))
            self.in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            if self.delay:
                time.sleep(self.delay)
            return self.handler(system_prompt, user_prompt)
        finally:
            with self._lock:
                self.in_flight -= 1

    @property
    def batch_calls(self) -> list[str]:
        return [user for system, user in self.calls if _is_batch(system)]

    @property
    def group_calls(self) -> list[str]:
        return [user for system, user in self.calls if not _is_batch(system)]


def _is_batch(system_prompt: str) -> bool:
    return "numbered code groups" in system_prompt


def _spans(prompt: str) -> list[tuple[int, int]]:
    return [(int(a), int(b)) for a, b in GROUP_HEADER_RE.findall(prompt)]


def _orchestrator(
    provider: ScriptedProvider,
    timeout: float = 6.0,
    **review_settings,
) -> ReviewOrchestrator:
    config = Config(review=review_settings) if review_settings else Config()
    return ReviewOrchestrator(ReviewClient(provider, timeout=timeout), config=config)


def _entry(path: str, diff: str, new_file: bool = False, head_sha: str = "abc123") -> ChangeEntry:
    return ChangeEntry(
        new_path=path,
        old_path=None if new_file else path,
        diff_text=diff,
        head_sha=head_sha,
        new_file=new_file,
    )


def _modified(path: str, *starts: int, lines_per_run: int = 1) -> ChangeEntry:
    """A modification adding ``lines_per_run`` lines at each start, with context around."""
    body = []
    for start in starts:
        body.append(f"@@ -{start},1 +{start},{lines_per_run + 1} @@")
        body.append(" anchor = 0")
        body.extend(f"+value_{start + 1 + i} = compute({start + 1 + i})" for i in range(lines_per_run))
    return _entry(path, "\n".join(body) + "\n")


SIMPLE_DIFF = "@@ -1,2 +1,3 @@\n a = 1\n-b = 2\n+b = compute(2)\n+timeout_ms = 3000\n"


# ---------------------------------------------------------------------------
# Basic flow
# ---------------------------------------------------------------------------

class TestBasicFlow:
    def test_single_group_comment_on_last_line(self) -> None:
        provider = ScriptedProvider(lambda s, u: "1. Extract 3000 into a named constant")
        reviews = _orchestrator(provider).review([_entry("app.py", SIMPLE_DIFF)])

        assert len(reviews) == 1
        review = reviews[0]
        assert review.file_path == "app.py"
        assert [(r.line_number, r.text) for r in review.results] == [
            (3, "Extract 3000 into a named constant")
        ]
        assert review.source_change.new_path == "app.py"
        assert _spans(provider.batch_calls[0]) == [(2, 3)]

    def test_all_pass_gives_no_reviews(self) -> None:
        provider = ScriptedProvider(lambda s, u: "1. PASS")
        assert _orchestrator(provider).review([_entry("app.py", SIMPLE_DIFF)]) == []
        assert len(provider.calls) == 1

    def test_empty_change_set(self) -> None:
        provider = ScriptedProvider()
        assert _orchestrator(provider).review([]) == []
        assert provider.calls == []

    def test_format_only_change_makes_no_calls(self) -> None:
        diff = "@@ -1 +1 @@\n-const x = { a: 1 };\n+const x = {a: 1};\n"
        provider = ScriptedProvider()
        orch = _orchestrator(provider)
        assert orch.review([_entry("x.js", diff)]) == []
        assert provider.calls == []
        assert orch.last_stats is not None and orch.last_stats.files_skipped == 1

    def test_ignored_extension_makes_no_calls(self) -> None:
        provider = ScriptedProvider()
        assert _orchestrator(provider).review([_entry("docs/notes.md", SIMPLE_DIFF)]) == []
        assert provider.calls == []

    def test_filtered_lines_never_reach_model(self) -> None:
        diff = "@@ -1,1 +1,4 @@\n anchor = 0\n+import os\n+print(value)\n+}\n"
        provider = ScriptedProvider()
        assert _orchestrator(provider).review([_entry("app.py", diff)]) == []
        assert provider.calls == []

    def test_quality_filter_applied(self) -> None:
        provider = ScriptedProvider(lambda s, u: "1. Looks good to me, nice work here")
        assert _orchestrator(provider).review([_entry("app.py", SIMPLE_DIFF)]) == []


# ---------------------------------------------------------------------------
# New files
# ---------------------------------------------------------------------------

class TestNewFiles:
    def test_fifty_line_new_file_is_one_group(self) -> None:
        body = "\n".join(f"+value_{i} = compute({i})" for i in range(1, 51))
        diff = f"@@ -0,0 +1,50 @@\n{body}\n"
        provider = ScriptedProvider(lambda s, u: "1. Collapse the fifty assignments into a loop")
        reviews = _orchestrator(provider, max_lines_per_group=40).review(
            [_entry("src/values.py", diff, new_file=True)]
        )

        assert len(provider.calls) == 1
        assert _spans(provider.batch_calls[0]) == [(1, 50)]
        assert reviews[0].results[0].line_number == 50
        assert reviews[0].results[0].group_size == 50

    def test_new_file_keeps_lines_the_filter_would_drop(self) -> None:
        diff = "@@ -0,0 +1,3 @@\n+import os\n+}\n+value = os.getenv('X')\n"
        provider = ScriptedProvider(lambda s, u: "1. PASS")
        _orchestrator(provider).review([_entry("src/env.py", diff, new_file=True)])
        assert "import os" in provider.batch_calls[0]


# ---------------------------------------------------------------------------
# Dedup against existing comments
# ---------------------------------------------------------------------------

class TestDedup:
    DIFF = (
        "@@ -7,1 +7,6 @@\n anchor = 0\n"
        "+let total = 0;\n+// loop over items\n+for (const item of items) {\n"
        "+  total += item.price;\n+  count += 1;\n"
    )

    def test_duplicate_group_dropped_before_model(self) -> None:
        existing = [ExistingComment(file_path="cart.js", line=10, text="remove this comment, it's redundant")]
        provider = ScriptedProvider()
        assert _orchestrator(provider).review([_entry("cart.js", self.DIFF)], existing) == []
        assert provider.calls == []

    def test_comment_on_other_file_does_not_dedup(self) -> None:
        existing = [ExistingComment(file_path="other.js", line=10, text="remove this comment, it's redundant")]
        provider = ScriptedProvider()
        _orchestrator(provider).review([_entry("cart.js", self.DIFF)], existing)
        assert len(provider.calls) == 1


# ---------------------------------------------------------------------------
# Batching and fallback
# ---------------------------------------------------------------------------

class TestBatching:
    def test_large_batch_split_into_halves(self) -> None:
        provider = ScriptedProvider()
        entry = _modified("app.py", *range(0, 70, 10))  # 7 separate groups
        _orchestrator(provider).review([entry])

        sizes = sorted(len(_spans(p)) for p in provider.batch_calls)
        assert sizes == [2, 2, 3]
        all_spans = sorted(s for p in provider.batch_calls for s in _spans(p))
        assert all_spans == [(n + 1, n + 1) for n in range(0, 70, 10)]

    def test_small_batch_single_call(self) -> None:
        provider = ScriptedProvider()
        _orchestrator(provider).review([_modified("app.py", 0, 10, 20)])
        assert len(provider.calls) == 1
        assert len(_spans(provider.calls[0][1])) == 3

    def test_max_groups_per_batch(self) -> None:
        provider = ScriptedProvider()
        _orchestrator(provider, max_groups_per_batch=2).review([_modified("app.py", 0, 10, 20, 30)])
        assert sorted(len(_spans(p)) for p in provider.batch_calls) == [2, 2]

    def test_group_results_map_to_their_group(self) -> None:
        def handler(system: str, user: str) -> str:
            return "\n".join(
                f"{i}. Rename value_{end} to something descriptive"
                for i, (_, end) in enumerate(_spans(user), 1)
            )

        provider = ScriptedProvider(handler)
        reviews = _orchestrator(provider).review([_modified("app.py", *range(0, 70, 10))])
        results = reviews[0].results
        assert len(results) == 7
        for r in results:
            assert r.text == f"Rename value_{r.line_number} to something descriptive"

    def test_batch_failure_falls_back_to_single_groups(self) -> None:
        def handler(system: str, user: str) -> str:
            if _is_batch(system):
                raise ProviderError("batch endpoint overloaded")
            (_, end), = _spans(user)
            return f"Guard value_{end} against a None result" if end == 11 else "PASS"

        provider = ScriptedProvider(handler)
        orch = _orchestrator(provider)
        reviews = orch.review([_modified("app.py", 0, 10)])

        assert len(provider.batch_calls) == 1
        assert len(provider.group_calls) == 2
        assert [(r.line_number, r.text) for r in reviews[0].results] == [
            (11, "Guard value_11 against a None result")
        ]
        assert orch.last_stats is not None
        assert orch.last_stats.failed_calls == 1

    def test_fallback_is_per_leaf(self) -> None:
        failing = {"first": True}
        lock = threading.Lock()

        def handler(system: str, user: str) -> str:
            if _is_batch(system):
                with lock:
                    if failing["first"]:
                        failing["first"] = False
                        raise ProviderError("flaky")
            return "1. PASS" if _is_batch(system) else "PASS"

        provider = ScriptedProvider(handler)
        _orchestrator(provider).review([_modified("app.py", *range(0, 70, 10))])
        assert len(provider.batch_calls) == 3
        assert 2 <= len(provider.group_calls) <= 3

    def test_call_timeout_counts_as_failure(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(orchestrator_module, "CALL_TIMEOUT_GRACE", 0.0)

        def handler(system: str, user: str) -> str:
            if _is_batch(system):
                time.sleep(0.5)
                return "1. Too late to matter for anyone"
            return "Split this assignment into two steps"

        provider = ScriptedProvider(handler)
        reviews = _orchestrator(provider, timeout=0.1).review([_modified("app.py", 0)])
        assert [r.text for r in reviews[0].results] == ["Split this assignment into two steps"]

    def test_timed_out_call_keeps_its_slot(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(orchestrator_module, "CALL_TIMEOUT_GRACE", 0.0)

        def handler(system: str, user: str) -> str:
            if _is_batch(system):
                time.sleep(0.3)
                return "1. PASS"
            return "PASS"

        provider = ScriptedProvider(handler)
        orch = _orchestrator(provider, timeout=0.05, max_concurrent_ai=1)
        orch.review([_modified("app.py", 0, 10, 20)])

        assert len(provider.batch_calls) == 1
        assert len(provider.group_calls) == 3
        assert provider.peak_in_flight <= 1


# ---------------------------------------------------------------------------
# Provider outages
# ---------------------------------------------------------------------------

class TestProviderUnavailable:
    def test_every_call_failing_raises(self) -> None:
        def handler(system: str, user: str) -> str:
            raise ProviderError("connection refused")

        provider = ScriptedProvider(handler)
        with pytest.raises(ProviderUnavailableError):
            _orchestrator(provider).review([_entry("app.py", SIMPLE_DIFF)])

    def test_partial_failure_does_not_raise(self) -> None:
        def handler(system: str, user: str) -> str:
            if _is_batch(system):
                raise ProviderError("overloaded")
            return "PASS"

        assert _orchestrator(ScriptedProvider(handler)).review([_entry("app.py", SIMPLE_DIFF)]) == []

    def test_unexpected_error_isolated_to_its_file(self) -> None:
        def handler(system: str, user: str) -> str:
            if "broken.py" in user:
                raise RuntimeError("boom")
            return "1. Extract 3000 into a named constant"

        provider = ScriptedProvider(handler)
        reviews = _orchestrator(provider).review(
            [_entry("broken.py", SIMPLE_DIFF), _entry("fine.py", SIMPLE_DIFF)]
        )
        assert [r.file_path for r in reviews] == ["fine.py"]


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------

class TestCache:
    def test_second_run_served_from_cache(self) -> None:
        provider = ScriptedProvider(lambda s, u: "1. Extract 3000 into a named constant")
        orch = _orchestrator(provider)
        first = orch.review([_entry("app.py", SIMPLE_DIFF)])
        second = orch.review([_entry("app.py", SIMPLE_DIFF)])

        assert len(provider.calls) == 1
        assert first[0].results == second[0].results
        assert orch.last_stats is not None and orch.last_stats.cache_hits == 1

    def test_pass_results_cached(self) -> None:
        provider = ScriptedProvider(lambda s, u: "1. PASS")
        orch = _orchestrator(provider)
        orch.review([_entry("app.py", SIMPLE_DIFF)])
        orch.review([_entry("app.py", SIMPLE_DIFF)])
        assert len(provider.calls) == 1

    def test_failed_batch_not_cached(self) -> None:
        def handler(system: str, user: str) -> str:
            if _is_batch(system):
                raise ProviderError("overloaded")
            return "Rename b to something that explains it"

        provider = ScriptedProvider(handler)
        orch = _orchestrator(provider)
        orch.review([_entry("app.py", SIMPLE_DIFF)])
        orch.review([_entry("app.py", SIMPLE_DIFF)])
        assert len(provider.batch_calls) == 2

    def test_changed_content_misses_cache(self) -> None:
        provider = ScriptedProvider()
        orch = _orchestrator(provider)
        orch.review([_entry("app.py", SIMPLE_DIFF)])
        orch.review([_entry("app.py", SIMPLE_DIFF.replace("3000", "4000"))])
        assert len(provider.calls) == 2


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------

class TestConcurrency:
    def test_ai_calls_bounded(self) -> None:
        provider = ScriptedProvider(delay=0.05)
        entries = [_entry(f"mod_{i}.py", SIMPLE_DIFF.replace("3000", str(i))) for i in range(8)]
        _orchestrator(provider, max_concurrent_ai=2, max_concurrent_files=8).review(entries)
        assert len(provider.calls) == 8
        assert provider.peak_in_flight <= 2

    def test_file_slots_bound_calls_too(self) -> None:
        provider = ScriptedProvider(delay=0.05)
        entries = [_entry(f"mod_{i}.py", SIMPLE_DIFF.replace("3000", str(i))) for i in range(6)]
        _orchestrator(provider, max_concurrent_ai=5, max_concurrent_files=1).review(entries)
        assert provider.peak_in_flight == 1


# ---------------------------------------------------------------------------
# Project rule override
# ---------------------------------------------------------------------------

class TestRuleOverride:
    def test_fetched_once_per_ref(self) -> None:
        fetched: list[str] = []

        def fetcher(ref: str) -> str:
            fetched.append(ref)
            return "<!-- review-rules:start -->\nOnly flag SQL injection.\n<!-- review-rules:end -->"

        provider = ScriptedProvider()
        client = ReviewClient(provider)
        orch = ReviewOrchestrator(client, override_fetcher=fetcher)
        orch.review([_entry("a.py", SIMPLE_DIFF), _entry("b.py", SIMPLE_DIFF.replace("3000", "9"))])

        assert fetched == ["abc123"]
        assert all("Only flag SQL injection." in user for _, user in provider.calls)
        assert all("No magic numbers" not in user for _, user in provider.calls)

    def test_fetch_failure_uses_default_rules(self) -> None:
        def fetcher(ref: str) -> str:
            raise ConnectionError("host down")

        provider = ScriptedProvider()
        orch = ReviewOrchestrator(ReviewClient(provider), override_fetcher=fetcher)
        orch.review([_entry("a.py", SIMPLE_DIFF)])
        assert "No magic numbers" in provider.calls[0][1]

    def test_missing_override_uses_default_rules(self) -> None:
        provider = ScriptedProvider()
        orch = ReviewOrchestrator(ReviewClient(provider), override_fetcher=lambda ref: None)
        orch.review([_entry("a.py", SIMPLE_DIFF)])
        assert "No magic numbers" in provider.calls[0][1]
