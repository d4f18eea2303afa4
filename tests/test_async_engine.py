"""
Tests for core/async_engine.py

Tests cover:
- One result per submitted item, in submission order
- Failure and timeout containment
- Bounded concurrency
- Cache-first lookups and budget-gated paid lookups
- Deadline handling and batch summaries
"""

import pytest

from opportunity_engine.agents.models import Confidence, WorkItemStatus
from opportunity_engine.core.async_engine import ParallelTaskExecutor
from opportunity_engine.core.budget_ledger import BudgetLedger
from opportunity_engine.core.cache_layer import ResearchCache
from tests.conftest import FakeSearch


@pytest.fixture
def cache(clock):
    return ResearchCache(max_size=1_000_000, clock=clock)


@pytest.fixture
def ledger():
    return BudgetLedger(monthly_limit=2000)


@pytest.fixture
def search():
    return FakeSearch()


@pytest.fixture
def executor(cache, ledger, search, clock):
    return ParallelTaskExecutor(cache, ledger, search, max_concurrent=3, clock=clock)


class TestConfidence:

    def test_bands(self):
        assert Confidence.for_hit_count(0) == Confidence.LOW
        assert Confidence.for_hit_count(1) == Confidence.LOW
        assert Confidence.for_hit_count(2) == Confidence.MEDIUM
        assert Confidence.for_hit_count(5) == Confidence.HIGH


class TestExecute:

    @pytest.mark.asyncio
    async def test_one_result_per_item_in_order(self, executor, make_item, ledger):
        items = [make_item(query=f"query {i}") for i in range(7)]
        results = await executor.execute(items)
        assert len(results) == 7
        assert [r.item.id for r in results] == [i.id for i in items]
        assert all(r.item.status == WorkItemStatus.COMPLETED for r in results)
        assert all(r.confidence == Confidence.MEDIUM for r in results)
        assert ledger.spent == 70

    @pytest.mark.asyncio
    async def test_empty_batch(self, executor):
        assert await executor.execute([]) == []

    @pytest.mark.asyncio
    async def test_failure_is_contained(self, cache, ledger, clock, make_item):
        search = FakeSearch(fail_on={"bad"})
        executor = ParallelTaskExecutor(cache, ledger, search, clock=clock)
        items = [make_item(query="good 1"), make_item(query="bad"), make_item(query="good 2")]
        results = await executor.execute(items)

        assert [r.degraded for r in results] == [False, True, False]
        failed = results[1]
        assert failed.item.status == WorkItemStatus.FAILED
        assert failed.confidence == Confidence.LOW
        assert failed.hits == []
        assert "lookup failed" in failed.failure_note
        assert ledger.spent == 20
        assert ledger.reserved == 0

    @pytest.mark.asyncio
    async def test_timeout_degrades_and_releases_reservation(self, cache, ledger, make_item):
        search = FakeSearch(delay=1.0)
        executor = ParallelTaskExecutor(cache, ledger, search, lookup_timeout=0.05)
        results = await executor.execute([make_item()])
        assert results[0].degraded
        assert "timed out" in results[0].failure_note
        assert ledger.spent == 0
        assert ledger.reserved == 0

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_stub(self, executor, make_item):
        original = executor.run_item

        async def flaky(item, deadline=None):
            if item.query == "boom":
                raise RuntimeError("boom")
            return await original(item, deadline)

        executor.run_item = flaky
        results = await executor.execute([make_item(query="fine"), make_item(query="boom")])
        assert not results[0].degraded
        assert results[1].degraded
        assert "unexpected error" in results[1].failure_note

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, cache, ledger, make_item):
        search = FakeSearch(delay=0.02)
        executor = ParallelTaskExecutor(cache, ledger, search, max_concurrent=3)
        await executor.execute([make_item(query=f"q{i}") for i in range(12)])
        assert 1 <= search.max_active <= 3
        assert len(search.calls) == 12

    @pytest.mark.asyncio
    async def test_progress_callback(self, executor, make_item):
        seen = []

        async def on_progress(done, total, result):
            seen.append((done, total))

        await executor.execute([make_item(query=f"q{i}") for i in range(4)],
                               progress_callback=on_progress)
        assert len(seen) == 4
        assert sorted(d for d, _ in seen) == [1, 2, 3, 4]
        assert all(t == 4 for _, t in seen)

    @pytest.mark.asyncio
    async def test_failing_progress_callback_keeps_results(self, executor, make_item, ledger):
        async def broken(done, total, result):
            raise ValueError("listener gone")

        results = await executor.execute([make_item(query="a"), make_item(query="b")],
                                         progress_callback=broken)
        assert [r.degraded for r in results] == [False, False]
        assert all(r.hits for r in results)
        assert ledger.spent == sum(r.cost for r in results) == 20

    @pytest.mark.asyncio
    async def test_waves_run_in_order(self, executor, make_item, search):
        first = [make_item(query="a"), make_item(query="b")]
        second = [make_item(query="c")]
        results = await executor.execute_waves([first, second])
        assert [r.item.query for r in results] == ["a", "b", "c"]
        assert search.calls[-1][0] == "c"


class TestCacheAndBudget:

    @pytest.mark.asyncio
    async def test_cache_hit_skips_lookup_and_charge(self, cache, executor, make_item, search, ledger):
        item = make_item(query="fintech japan")
        cache.set(item.category, item.query, item.language, item.region,
                  [{"title": "cached", "url": "https://example.com/c"}])

        results = await executor.execute([item])

        assert search.calls == []
        assert ledger.spent == 0
        assert results[0].from_cache
        assert results[0].cost == 0
        assert results[0].hits[0].title == "cached"

    @pytest.mark.asyncio
    async def test_successful_lookup_is_cached(self, executor, make_item, cache, search):
        await executor.execute([make_item(query="fresh")])
        again = make_item(query="fresh")
        results = await executor.execute([again])
        assert results[0].from_cache
        assert len(search.calls) == 1

    @pytest.mark.asyncio
    async def test_exhausted_budget_falls_back_to_free_source(self, cache, clock, make_item):
        ledger = BudgetLedger(monthly_limit=10)
        paid = FakeSearch()
        free = FakeSearch(name="google_news_rss", cost_source="google_news_rss")
        executor = ParallelTaskExecutor(cache, ledger, paid, free_source=free,
                                        max_concurrent=1, clock=clock)

        results = await executor.execute([make_item(query=f"q{i}") for i in range(3)])

        names = [r.source_name for r in results]
        assert names.count("serper") == 1
        assert names.count("google_news_rss") == 2
        assert ledger.spent == 10
        assert not any(r.degraded for r in results)

    @pytest.mark.asyncio
    async def test_exhausted_budget_without_free_source_stubs(self, cache, clock, make_item):
        ledger = BudgetLedger(monthly_limit=10)
        ledger.record_usage("serper")
        paid = FakeSearch()
        executor = ParallelTaskExecutor(cache, ledger, paid, clock=clock)

        results = await executor.execute([make_item(query="q")])

        assert paid.calls == []
        assert results[0].degraded
        assert results[0].failure_note == "budget exhausted"
        assert ledger.spent == 10


class TestDeadline:

    @pytest.mark.asyncio
    async def test_past_deadline_yields_stubs(self, executor, make_item, clock, search):
        items = [make_item(query=f"q{i}") for i in range(3)]
        results = await executor.execute(items, deadline=clock() - 1)
        assert search.calls == []
        assert all(r.degraded and r.failure_note == "deadline exceeded" for r in results)
        assert all(i.status == WorkItemStatus.FAILED for i in items)


class TestSummarize:

    @pytest.mark.asyncio
    async def test_summary_flags_high_failure_ratio(self, cache, ledger, clock, make_item):
        search = FakeSearch(fail_on={"x1", "x2", "x3"})
        executor = ParallelTaskExecutor(cache, ledger, search, clock=clock)
        results = await executor.execute([make_item(query=q) for q in ("ok", "x1", "x2", "x3")])

        summary = executor.summarize(results)
        assert summary.total == 4
        assert summary.degraded == 3
        assert summary.completed == 1
        assert summary.total_cost == 10
        assert summary.degraded_ratio == 0.75
        assert summary.exceeds_failure_threshold

    def test_empty_summary(self, executor):
        summary = executor.summarize([])
        assert summary.total == 0
        assert not summary.exceeds_failure_threshold
