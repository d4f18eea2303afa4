"""
Report Pipeline - coordinator for one business-opportunity report.

Phases run in order:
  1. Initial analysis (draft)
  2. Gap planning
  3. Parallel enrichment (cache + budget + web lookup)
  4. Aggregation
  5. Drafting, evaluation and revision rounds
  6. Finalization and storage

Each ReportPipeline owns its cache, budget ledger and configuration.
"""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from opportunity_engine.agents.analyst import Analyst
from opportunity_engine.agents.critic import CriticScorer
from opportunity_engine.agents.gap_planner import GapPlanner, PlanConstraints
from opportunity_engine.agents.models import Idea, Report, SectionKind, Section, SECTION_TITLES, new_id
from opportunity_engine.agents.writer import ReportWriter
from opportunity_engine.config.settings import PipelineConfig, settings
from opportunity_engine.core.async_engine import ParallelTaskExecutor, run_async
from opportunity_engine.core.budget_ledger import BudgetLedger
from opportunity_engine.core.cache_layer import ResearchCache
from opportunity_engine.core.llm_client import LLMClient, TextGenerator
from opportunity_engine.core.logging_utils import (
    get_error_info, log_exception, setup_run_logging, teardown_run_logging,
)
from opportunity_engine.core.progress_streamer import PipelinePhase, ProgressStreamer
from opportunity_engine.core.report_store import JsonReportStore, ReportStore
from opportunity_engine.errors import ConfigurationError
from opportunity_engine.sources.web_search import GoogleNewsRSS, SerperSearch, WebSearchClient
from opportunity_engine.synthesis.knowledge_aggregator import merge
from opportunity_engine.synthesis.revision_controller import RevisionController
from opportunity_engine.validation.quality_evaluator import QualityEvaluator

logger = logging.getLogger(__name__)

# Options a caller may change for a single run
RUN_OVERRIDES = {
    "max_work_items",
    "max_revisions",
    "quality_passing_threshold",
    "run_deadline_seconds",
    "max_parallel_requests",
    "lookup_timeout_seconds",
    "max_failure_fraction",
}

# Finished runs kept for status polling
MAX_TRACKED_RUNS = 200


@dataclass
class PipelineResult:
    run_id: str
    report: Report
    statistics: Dict[str, Any]
    meets_threshold: bool
    incomplete: bool = False

    def to_dict(self) -> Dict:
        return {
            "run_id": self.run_id,
            "report": self.report.to_dict(),
            "statistics": self.statistics,
            "meets_threshold": self.meets_threshold,
            "incomplete": self.incomplete,
        }


class RunRegistry:
    """
    Run id -> live progress, readable while the run executes.

    Keeps at most `max_runs` entries; the oldest finished runs are
    dropped first. Running runs are never dropped.
    """

    def __init__(self, max_runs: int = MAX_TRACKED_RUNS):
        self.max_runs = max_runs
        self._runs: Dict[str, Dict[str, Any]] = {}
        self._streamers: Dict[str, ProgressStreamer] = {}
        self._lock = threading.Lock()

    def register(self, run_id: str, streamer: ProgressStreamer, idea_title: str):
        with self._lock:
            self._streamers[run_id] = streamer
            self._runs[run_id] = {
                "run_id": run_id,
                "idea": idea_title,
                "state": "running",
                "started_at": datetime.now().isoformat(),
                "finished_at": None,
                "error": None,
                "meets_threshold": None,
            }
            self._evict_finished()

    def _evict_finished(self):
        excess = len(self._runs) - self.max_runs
        if excess <= 0:
            return
        finished = [rid for rid, run in self._runs.items() if run["state"] != "running"]
        for rid in finished[:excess]:
            del self._runs[rid]
            del self._streamers[rid]

    def finish(self, run_id: str, state: str, **fields):
        with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                return
            run.update(fields)
            run["state"] = state
            run["finished_at"] = datetime.now().isoformat()
            self._evict_finished()

    def status(self, run_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                return None
            streamer = self._streamers[run_id]
            summary = streamer.get_summary()
            last = streamer.events[-1].message if streamer.events else ""
            return {
                **run,
                "phase": summary["current_phase"],
                "progress": summary["overall_progress"],
                "message": last,
                "elapsed_seconds": summary["elapsed_seconds"],
            }

    def __contains__(self, run_id: str) -> bool:
        with self._lock:
            return run_id in self._runs


class ReportPipeline:
    """
    Coordinates the report agents, cache and budget for single-idea runs.

    Usage:
        pipeline = ReportPipeline.from_settings()
        result = await pipeline.run_pipeline(idea)
        if not result.meets_threshold:
            ...
    """

    def __init__(
        self,
        generator: TextGenerator,
        search_client: WebSearchClient,
        free_search_client: Optional[WebSearchClient] = None,
        config: Optional[PipelineConfig] = None,
        store: Optional[ReportStore] = None,
        use_critic: bool = False,
        progress_callback: Optional[Callable] = None,
        log_dir: Optional[str] = None,
        verbose: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or PipelineConfig.from_settings()
        self.generator = generator
        self.search_client = search_client
        self.free_search_client = free_search_client
        self.store = store
        self.use_critic = use_critic
        self.progress_callback = progress_callback
        self.log_dir = log_dir
        self.verbose = verbose
        self._clock = clock

        self.cache = ResearchCache(
            max_size=self.config.cache_max_bytes,
            default_ttl=self.config.cache_default_ttl,
            category_ttl=self.config.cache_ttl_by_category,
            real_time_categories=self.config.real_time_categories,
        )
        self.ledger = BudgetLedger(
            monthly_limit=self.config.monthly_budget,
            alert_threshold=self.config.alert_threshold_fraction,
            enforce_limit=self.config.enforce_budget_limit,
        )
        self.planner = GapPlanner()
        self.analyst = Analyst(generator)
        self.writer = ReportWriter(generator)
        self.runs = RunRegistry()

    @classmethod
    def from_settings(cls, **kwargs) -> "ReportPipeline":
        """Pipeline on the configured LLM providers and search sources."""
        config = kwargs.pop("config", None) or PipelineConfig.from_settings()
        generator = kwargs.pop("generator", None) or LLMClient(timeout=config.generation_timeout_seconds)
        free = GoogleNewsRSS(timeout=config.lookup_timeout_seconds)
        primary = SerperSearch(timeout=config.lookup_timeout_seconds) if settings.SERPER_API_KEY else free
        return cls(
            generator=generator,
            search_client=kwargs.pop("search_client", primary),
            free_search_client=kwargs.pop("free_search_client", free),
            config=config,
            store=kwargs.pop("store", None) or JsonReportStore(),
            log_dir=kwargs.pop("log_dir", str(settings.LOGS_DIR)),
            **kwargs,
        )

    async def start(self):
        """Start background cache maintenance on the running loop."""
        self.cache.start_sweeper(self.config.cache_sweep_interval)

    async def close(self):
        await self.cache.stop_sweeper()

    def run_config(self, constraints: Optional[Dict[str, Any]] = None) -> PipelineConfig:
        constraints = dict(constraints or {})
        unknown = set(constraints) - RUN_OVERRIDES
        if unknown:
            raise ConfigurationError(
                f"Options cannot be set per run: {', '.join(sorted(unknown))}"
            )
        return PipelineConfig.build(**{**self.config.model_dump(), **constraints})

    def get_run_status(self, run_id: str) -> Optional[Dict[str, Any]]:
        """Phase and progress of a run, or None for an unknown id."""
        return self.runs.status(run_id)

    def run_pipeline_sync(self, idea: Idea, constraints: Optional[Dict[str, Any]] = None,
                          run_id: Optional[str] = None) -> PipelineResult:
        return run_async(self.run_pipeline(idea, constraints, run_id=run_id))

    async def run_pipeline(self, idea: Idea, constraints: Optional[Dict[str, Any]] = None,
                           run_id: Optional[str] = None) -> PipelineResult:
        """
        Generate one report.

        Args:
            idea: Upstream idea
            constraints: Per-run overrides (see RUN_OVERRIDES)
            run_id: Optional id, so callers can poll before the run returns

        Raises:
            ConfigurationError: invalid options
            PlanningCycleError: work item dependencies form a cycle
        """
        config = self.run_config(constraints)
        run_id = run_id or new_id("run")
        streamer = ProgressStreamer(callback=self.progress_callback, verbose=self.verbose)
        self.runs.register(run_id, streamer, idea.title)

        handler = None
        if self.log_dir:
            _, handler, _ = setup_run_logging(self.log_dir, run_id, idea.title)

        try:
            result = await self._run(idea, config, run_id, streamer)
        except Exception as e:
            log_exception(logger, e, context=f"Run {run_id} failed", idea=idea.title)
            self.runs.finish(run_id, "failed", error=get_error_info(e))
            raise
        finally:
            if handler is not None:
                teardown_run_logging(handler)

        self.runs.finish(run_id, "completed", meets_threshold=result.meets_threshold,
                         incomplete=result.incomplete)
        return result

    async def _run(self, idea: Idea, config: PipelineConfig, run_id: str,
                   streamer: ProgressStreamer) -> PipelineResult:
        started = self._clock()
        deadline = started + config.run_deadline_seconds
        spend_before = self.ledger.status()["spent"]
        deadline_hit = []

        def expired(phase: PipelinePhase) -> bool:
            if self._clock() >= deadline:
                if not deadline_hit:
                    logger.warning(f"Run {run_id}: deadline reached during {phase.value}")
                    deadline_hit.append(phase.value)
                return True
            return False

        streamer.update(PipelinePhase.INITIALIZATION, f"Starting report for '{idea.title}'", 1.0,
                        detail={"run_id": run_id})

        # 1. Initial analysis
        streamer.update(PipelinePhase.INITIAL_ANALYSIS, "Running initial analysis", 0.0)
        try:
            draft = await self.analyst.analyze(idea)
        except Exception as e:
            log_exception(logger, e, context="Initial analysis failed; using default draft")
            draft = Analyst.default_draft(idea)
        if not expired(PipelinePhase.INITIAL_ANALYSIS):
            try:
                draft.suggested_research = await self.analyst.propose_gaps(idea, draft)
            except Exception as e:
                log_exception(logger, e, context="Gap proposal failed")
        streamer.update(PipelinePhase.INITIAL_ANALYSIS, "Initial analysis done", 1.0,
                        detail={"confidence": draft.overall_confidence,
                                "competitors": len(draft.competitors)})

        # 2. Gap planning
        streamer.update(PipelinePhase.GAP_PLANNING, "Planning follow-up research", 0.0)
        items = self.planner.plan(draft, idea, PlanConstraints(
            max_items=config.max_work_items,
            unit_cost=self.ledger.unit_cost(self.search_client.cost_source),
        ))
        waves = self.planner.order_by_dependencies(items)
        streamer.update(PipelinePhase.GAP_PLANNING, f"{len(items)} work items planned", 1.0,
                        detail={"items": [i.to_dict() for i in items]})

        # 3. Enrichment
        executor = ParallelTaskExecutor(
            cache=self.cache,
            ledger=self.ledger,
            source=self.search_client,
            free_source=self.free_search_client,
            max_concurrent=config.max_parallel_requests,
            lookup_timeout=config.lookup_timeout_seconds,
            max_failure_fraction=config.max_failure_fraction,
            clock=self._clock,
        )

        async def on_item(done: int, total: int, result):
            streamer.update(PipelinePhase.ENRICHMENT, f"{done}/{total}: {result.item.query}",
                            done / total, detail={"degraded": result.degraded,
                                                  "from_cache": result.from_cache})

        streamer.update(PipelinePhase.ENRICHMENT, "Running research lookups", 0.0)
        results = await executor.execute_waves(waves, deadline=deadline, progress_callback=on_item)
        batch = executor.summarize(results)
        if batch.exceeds_failure_threshold:
            logger.warning(
                f"Run {run_id}: {batch.degraded}/{batch.total} lookups degraded; "
                "continuing with partial data"
            )
        if any(r.failure_note == "deadline exceeded" for r in results):
            expired(PipelinePhase.ENRICHMENT)
        streamer.update(PipelinePhase.ENRICHMENT, "Research done", 1.0, detail=batch.to_dict())

        # 4. Aggregation
        enrichment = merge(results)
        streamer.update(PipelinePhase.AGGREGATION, f"{enrichment.unique_hits} unique findings", 1.0,
                        detail={"gaps": enrichment.information_gaps})
        context = enrichment.to_prompt_text()

        # 5. Drafting, evaluation, revision
        evaluator = QualityEvaluator(
            scorer=CriticScorer(self.generator) if self.use_critic else None,
            weights=config.criteria_weights,
            passing_threshold=config.quality_passing_threshold,
        )
        controller = RevisionController(
            evaluator=evaluator,
            writer=self.writer,
            max_revisions=config.max_revisions,
            streamer=streamer,
            clock=self._clock,
        )

        async def produce_draft() -> Report:
            if expired(PipelinePhase.REPORT_DRAFTING):
                return self._placeholder_report(idea)
            return await self.writer.write_report(idea, draft, enrichment)

        outcome = await controller.run(produce_draft, context=context, deadline=deadline)
        report = outcome.report

        # 6. Finalization
        incomplete = bool(deadline_hit) or outcome.incomplete
        statistics = {
            "work_items_planned": len(items),
            "work_items_completed": batch.completed,
            "work_items_degraded": batch.degraded,
            "enrichment_failure_threshold_exceeded": batch.exceeds_failure_threshold,
            "cache_hits": batch.cache_hits,
            "research_spend": self.ledger.status()["spent"] - spend_before,
            "unique_findings": enrichment.unique_hits,
            "information_gaps": enrichment.information_gaps,
            "revisions": outcome.revision_count,
            "final_score": outcome.assessment.overall_score,
            "states": outcome.states,
            "deadline_reached_in": deadline_hit[0] if deadline_hit else None,
            "elapsed_seconds": self._clock() - started,
            "budget": self.ledger.status(),
            "cache": self.cache.get_stats(),
            "timeline": streamer.get_timeline(),
        }

        streamer.update(PipelinePhase.FINALIZATION, "Saving report", 0.0)
        if self.store is not None:
            try:
                self.store.save(report, metadata={"run_id": run_id, "incomplete": incomplete})
            except Exception as e:
                log_exception(logger, e, context=f"Saving report {report.id} failed")
        streamer.update(
            PipelinePhase.COMPLETE,
            f"Report finished: {outcome.assessment.overall_score:.2f} "
            f"({'meets' if outcome.meets_threshold else 'below'} threshold)",
            1.0,
        )

        return PipelineResult(
            run_id=run_id,
            report=report,
            statistics=statistics,
            meets_threshold=outcome.meets_threshold,
            incomplete=incomplete,
        )

    @staticmethod
    def _placeholder_report(idea: Idea) -> Report:
        return Report(idea=idea, sections=[
            Section(kind=kind.value, title=SECTION_TITLES[kind],
                    content=ReportWriter.placeholder(kind, idea))
            for kind in SectionKind
        ])


async def run_pipeline(idea: Idea, constraints: Optional[Dict[str, Any]] = None,
                       pipeline: Optional[ReportPipeline] = None) -> PipelineResult:
    """Run one report on a fresh pipeline unless one is supplied."""
    pipeline = pipeline or ReportPipeline.from_settings()
    return await pipeline.run_pipeline(idea, constraints)
