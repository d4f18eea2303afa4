"""
Async Engine - parallel execution of research work items.

Each item consults the cache first, then the budget ledger, then the
web lookup source. Concurrency is bounded by a semaphore; a failing or
slow item degrades to a stub result without touching its siblings.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from opportunity_engine.agents.models import (
    Confidence, SearchHit, TaskResult, WorkItem, WorkItemStatus,
)
from opportunity_engine.core.budget_ledger import BudgetLedger
from opportunity_engine.core.cache_layer import ResearchCache
from opportunity_engine.sources.web_search import WebSearchClient

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, TaskResult], Awaitable[None]]


@dataclass
class BatchSummary:
    total: int
    completed: int
    degraded: int
    cache_hits: int
    total_cost: float
    degraded_ratio: float
    exceeds_failure_threshold: bool

    def to_dict(self) -> Dict:
        return {
            "total": self.total,
            "completed": self.completed,
            "degraded": self.degraded,
            "cache_hits": self.cache_hits,
            "total_cost": self.total_cost,
            "degraded_ratio": self.degraded_ratio,
            "exceeds_failure_threshold": self.exceeds_failure_threshold,
        }


class ParallelTaskExecutor:
    """
    Executes work items in parallel with bounded fan-out.

    Returns exactly one TaskResult per submitted item, in submission
    order. Paid lookups are reserved against the ledger before the call
    and committed only on success.
    """

    def __init__(
        self,
        cache: ResearchCache,
        ledger: BudgetLedger,
        source: WebSearchClient,
        free_source: Optional[WebSearchClient] = None,
        max_concurrent: int = 5,
        lookup_timeout: float = 30.0,
        max_failure_fraction: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cache = cache
        self.ledger = ledger
        self.source = source
        self.free_source = free_source
        self.max_concurrent = max_concurrent
        self.lookup_timeout = lookup_timeout
        self.max_failure_fraction = max_failure_fraction
        self._clock = clock

    async def execute(
        self,
        items: Sequence[WorkItem],
        deadline: Optional[float] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> List[TaskResult]:
        """Run all items; `deadline` is an absolute time on the executor clock."""
        semaphore = asyncio.Semaphore(self.max_concurrent)
        completed = 0

        async def _run(item: WorkItem) -> TaskResult:
            nonlocal completed
            async with semaphore:
                result = await self.run_item(item, deadline)
            completed += 1
            if progress_callback:
                try:
                    await progress_callback(completed, len(items), result)
                except Exception as e:
                    logger.warning(f"Progress callback failed for {item.id}: {e}")
            return result

        outcomes = await asyncio.gather(*[_run(i) for i in items], return_exceptions=True)

        results = []
        for item, outcome in zip(items, outcomes):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                logger.error(f"Unexpected error in work item {item.id}: {outcome!r}")
                outcome = self._stub(item, f"unexpected error: {outcome}", None)
            results.append(outcome)
        return results

    async def execute_waves(
        self,
        waves: Sequence[Sequence[WorkItem]],
        deadline: Optional[float] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> List[TaskResult]:
        """Run dependency waves in order; items within a wave run in parallel."""
        results = []
        for wave in waves:
            results.extend(await self.execute(wave, deadline, progress_callback))
        return results

    async def run_item(self, item: WorkItem, deadline: Optional[float] = None) -> TaskResult:
        start = self._clock()

        if deadline is not None and start >= deadline:
            return self._stub(item, "deadline exceeded", None)

        item.transition(WorkItemStatus.IN_PROGRESS)

        cached = self.cache.get(item.category, item.query, item.language, item.region)
        if cached is not None:
            hits = [SearchHit.from_dict(h) for h in cached]
            item.transition(WorkItemStatus.COMPLETED)
            logger.debug(f"Cache hit for {item.id}: {item.query}")
            return TaskResult(
                item=item,
                hits=hits,
                confidence=Confidence.for_hit_count(len(hits)),
                from_cache=True,
                source_name="cache",
                elapsed_ms=(self._clock() - start) * 1000,
            )

        source, reservation = self._select_source(item)
        if source is None:
            return self._stub(item, "budget exhausted", start)

        timeout = self.lookup_timeout
        if deadline is not None:
            timeout = max(0.0, min(timeout, deadline - self._clock()))

        committed = False
        try:
            hits = await asyncio.wait_for(
                source.search(item.query, item.language, item.region),
                timeout=timeout,
            )
            cost = self.ledger.commit(reservation) if reservation else 0.0
            committed = True
        except asyncio.TimeoutError:
            return self._stub(item, f"{source.name} lookup timed out after {timeout:.0f}s", start)
        except Exception as e:
            logger.warning(f"Lookup failed for {item.id} via {source.name}: {e}")
            return self._stub(item, f"{source.name} lookup failed: {e}", start)
        finally:
            if reservation and not committed:
                self.ledger.release(reservation)

        self.cache.set(
            item.category, item.query, item.language, item.region,
            [h.to_dict() for h in hits],
            priority=item.priority.cache_weight,
        )
        item.transition(WorkItemStatus.COMPLETED)
        return TaskResult(
            item=item,
            hits=hits,
            confidence=Confidence.for_hit_count(len(hits)),
            cost=cost,
            source_name=source.name,
            elapsed_ms=(self._clock() - start) * 1000,
        )

    def _select_source(self, item: WorkItem):
        """Pick the paid source if the ledger can hold its cost, else the free tier."""
        if self.ledger.unit_cost(self.source.cost_source) <= 0:
            return self.source, None

        reservation = self.ledger.reserve(self.source.cost_source, 1, item.category.value)
        if reservation is not None:
            return self.source, reservation

        if self.free_source is not None:
            logger.info(f"Budget refused paid lookup for {item.id}; using {self.free_source.name}")
            return self.free_source, None
        return None, None

    def _stub(self, item: WorkItem, note: str, start: Optional[float]) -> TaskResult:
        if not item.is_terminal:
            item.transition(WorkItemStatus.FAILED)
        return TaskResult(
            item=item,
            confidence=Confidence.LOW,
            degraded=True,
            failure_note=note,
            elapsed_ms=(self._clock() - start) * 1000 if start is not None else 0.0,
        )

    def summarize(self, results: Sequence[TaskResult]) -> BatchSummary:
        total = len(results)
        degraded = sum(1 for r in results if r.degraded)
        ratio = degraded / total if total else 0.0
        return BatchSummary(
            total=total,
            completed=total - degraded,
            degraded=degraded,
            cache_hits=sum(1 for r in results if r.from_cache),
            total_cost=sum(r.cost for r in results),
            degraded_ratio=ratio,
            exceeds_failure_threshold=ratio > self.max_failure_fraction,
        )


def run_async(coro):
    """Helper to run async code from sync context."""
    try:
        loop = asyncio.get_event_loop()
        if loop.is_running():
            # Inside an existing event loop (e.g. Jupyter)
            import nest_asyncio
            nest_asyncio.apply()
            return loop.run_until_complete(coro)
        return loop.run_until_complete(coro)
    except RuntimeError:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        try:
            return loop.run_until_complete(coro)
        finally:
            loop.close()
