"""
End-to-end tests for report_pipeline.py with scripted generation and
in-memory search clients.
"""

import pytest

from opportunity_engine.agents.models import SectionKind
from opportunity_engine.config.settings import PipelineConfig
from opportunity_engine.core.progress_streamer import PipelinePhase, ProgressStreamer
from opportunity_engine.core.report_store import JsonReportStore
from opportunity_engine.errors import ConfigurationError, PlanningCycleError
from opportunity_engine.report_pipeline import ReportPipeline, RunRegistry, run_pipeline
from tests.conftest import GOOD_SECTION, FakeSearch, ScriptedGenerator


class TickingClock:
    """Advances by `step` seconds every time it is read."""

    def __init__(self, step: float):
        self.now = 0.0
        self.step = step

    def __call__(self) -> float:
        self.now += self.step
        return self.now


class FailingAnalysisGenerator(ScriptedGenerator):
    async def generate(self, prompt):
        if prompt.startswith("Analyze this business idea"):
            raise ConnectionError("provider down")
        return await super().generate(prompt)


@pytest.fixture
def search():
    return FakeSearch()


@pytest.fixture
def free_search():
    return FakeSearch(name="google_news_rss", cost_source="google_news_rss")


@pytest.fixture
def make_pipeline(search, free_search, tmp_path):
    def _make(generator=None, **kwargs):
        kwargs.setdefault("config", PipelineConfig.build())
        return ReportPipeline(
            generator=generator or ScriptedGenerator(),
            search_client=search,
            free_search_client=free_search,
            store=JsonReportStore(tmp_path / "reports"),
            verbose=False,
            **kwargs,
        )
    return _make


class TestRunPipeline:

    @pytest.mark.asyncio
    async def test_report_passes_first_evaluation(self, make_pipeline, idea, search):
        pipeline = make_pipeline()
        result = await pipeline.run_pipeline(idea)

        assert result.meets_threshold
        assert not result.incomplete
        assert [s.kind for s in result.report.sections] == [k.value for k in SectionKind]
        stats = result.statistics
        assert stats["work_items_planned"] == 5
        assert stats["work_items_degraded"] == 0
        assert stats["research_spend"] == 50
        assert stats["revisions"] == 0
        assert stats["final_score"] >= 80
        assert stats["unique_findings"] > 0
        assert len(search.calls) == 5
        assert result.report.final_score == stats["final_score"]

    @pytest.mark.asyncio
    async def test_second_run_is_served_from_cache(self, make_pipeline, idea, search):
        pipeline = make_pipeline()
        await pipeline.run_pipeline(idea)
        second = await pipeline.run_pipeline(idea)

        assert second.statistics["cache_hits"] == 5
        assert second.statistics["research_spend"] == 0
        assert len(search.calls) == 5
        assert pipeline.ledger.spent == 50

    @pytest.mark.asyncio
    async def test_weak_draft_is_revised(self, make_pipeline, idea):
        generator = ScriptedGenerator(section_text="Thin.", revised_text=GOOD_SECTION)
        result = await make_pipeline(generator).run_pipeline(idea)

        assert result.meets_threshold
        assert result.statistics["revisions"] == 1
        history = result.report.revision_history
        assert len(history) == 1
        assert history[0].after_score > history[0].before_score
        assert "revising" in result.statistics["states"]

    @pytest.mark.asyncio
    async def test_below_threshold_after_revisions(self, make_pipeline, idea):
        generator = ScriptedGenerator(section_text="Thin.", revised_text="Still thin.")
        result = await make_pipeline(generator).run_pipeline(idea, {"max_revisions": 1})

        assert not result.meets_threshold
        assert result.statistics["revisions"] == 1
        assert len(result.report.sections) == len(SectionKind)

    @pytest.mark.asyncio
    async def test_failed_analysis_uses_default_draft(self, make_pipeline, idea):
        result = await make_pipeline(FailingAnalysisGenerator()).run_pipeline(idea)
        assert result.statistics["work_items_planned"] == 5
        assert len(result.report.sections) == len(SectionKind)

    @pytest.mark.asyncio
    async def test_malformed_critique_does_not_abort_run(self, make_pipeline, idea):
        generator = ScriptedGenerator(critique='{"criteria": "all good", "feedback": "x"}')
        pipeline = make_pipeline(generator, use_critic=True)
        result = await pipeline.run_pipeline(idea, run_id="run_critic")
        assert result.meets_threshold
        assert pipeline.get_run_status("run_critic")["state"] == "completed"

    @pytest.mark.asyncio
    async def test_failed_lookups_are_absorbed(self, make_pipeline, idea):
        pipeline = make_pipeline()
        pipeline.search_client.fail_on = {
            f"{idea.target_market} {idea.proposed_solution} 競合",
        }
        result = await pipeline.run_pipeline(idea)
        assert result.statistics["work_items_degraded"] == 1
        assert result.statistics["research_spend"] == 40

    @pytest.mark.asyncio
    async def test_exhausted_budget_uses_free_source(self, make_pipeline, idea, free_search):
        pipeline = make_pipeline(config=PipelineConfig.build(monthly_budget=20))
        result = await pipeline.run_pipeline(idea)
        assert result.statistics["research_spend"] == 20
        assert len(free_search.calls) == 3
        assert result.statistics["work_items_degraded"] == 0

    @pytest.mark.asyncio
    async def test_deadline_yields_incomplete_report(self, make_pipeline, idea, search):
        pipeline = make_pipeline(clock=TickingClock(step=1000))
        result = await pipeline.run_pipeline(idea)

        assert result.incomplete
        assert result.statistics["deadline_reached_in"] == PipelinePhase.INITIAL_ANALYSIS.value
        assert search.calls == []
        assert len(result.report.sections) == len(SectionKind)

    @pytest.mark.asyncio
    async def test_report_is_stored(self, make_pipeline, idea, tmp_path):
        result = await make_pipeline().run_pipeline(idea)
        store = JsonReportStore(tmp_path / "reports")
        assert store.list_reports() == [result.report.id]
        assert store.load(result.report.id)["metadata"]["run_id"] == result.run_id

    @pytest.mark.asyncio
    async def test_progress_callback_sees_every_phase(self, make_pipeline, idea):
        events = []
        await make_pipeline(progress_callback=events.append).run_pipeline(idea)
        phases = [e.phase for e in events]
        assert phases[0] == PipelinePhase.INITIALIZATION
        assert phases[-1] == PipelinePhase.COMPLETE
        for phase in (PipelinePhase.INITIAL_ANALYSIS, PipelinePhase.GAP_PLANNING,
                      PipelinePhase.ENRICHMENT, PipelinePhase.AGGREGATION,
                      PipelinePhase.EVALUATION, PipelinePhase.FINALIZATION):
            assert phase in phases

    @pytest.mark.asyncio
    async def test_module_level_entry_point(self, make_pipeline, idea):
        result = await run_pipeline(idea, pipeline=make_pipeline())
        assert result.meets_threshold


class TestConfiguration:

    @pytest.mark.asyncio
    async def test_unknown_override_rejected(self, make_pipeline, idea, search):
        with pytest.raises(ConfigurationError):
            await make_pipeline().run_pipeline(idea, {"monthly_budget": 5})
        assert search.calls == []

    @pytest.mark.asyncio
    async def test_invalid_override_value_rejected(self, make_pipeline, idea):
        with pytest.raises(ConfigurationError):
            await make_pipeline().run_pipeline(idea, {"max_revisions": -1})

    def test_invalid_budget_rejected(self):
        with pytest.raises(ConfigurationError):
            PipelineConfig.build(monthly_budget=0)

    def test_invalid_weights_rejected(self):
        with pytest.raises(ConfigurationError):
            PipelineConfig.build(criteria_weights={"clarity": 0.5})

    @pytest.mark.asyncio
    async def test_override_applies_to_one_run(self, make_pipeline, idea):
        pipeline = make_pipeline()
        result = await pipeline.run_pipeline(idea, {"max_work_items": 2})
        assert result.statistics["work_items_planned"] == 2
        assert pipeline.config.max_work_items == 5


class TestRunStatus:

    @pytest.mark.asyncio
    async def test_status_after_completion(self, make_pipeline, idea):
        pipeline = make_pipeline()
        result = await pipeline.run_pipeline(idea, run_id="run_test")
        status = pipeline.get_run_status("run_test")

        assert result.run_id == "run_test"
        assert status["state"] == "completed"
        assert status["phase"] == PipelinePhase.COMPLETE.value
        assert status["progress"] == 1.0
        assert status["meets_threshold"] is True

    def test_unknown_run(self, make_pipeline):
        assert make_pipeline().get_run_status("run_missing") is None

    @pytest.mark.asyncio
    async def test_status_during_run(self, make_pipeline, idea):
        seen = []
        pipeline = make_pipeline()

        def on_event(event):
            if event.phase == PipelinePhase.ENRICHMENT and not seen:
                seen.append(pipeline.get_run_status("run_live"))

        pipeline.progress_callback = on_event
        await pipeline.run_pipeline(idea, run_id="run_live")
        assert seen[0]["state"] == "running"
        assert seen[0]["phase"] == PipelinePhase.ENRICHMENT.value
        assert 0 < seen[0]["progress"] < 1

    @pytest.mark.asyncio
    async def test_dependency_cycle_fails_run(self, make_pipeline, idea, make_item):
        pipeline = make_pipeline()
        a = make_item(query="a")
        b = make_item(query="b", depends_on=[a.id])
        a.depends_on.append(b.id)
        pipeline.planner.plan = lambda draft, idea, constraints=None: [a, b]

        with pytest.raises(PlanningCycleError):
            await pipeline.run_pipeline(idea, run_id="run_cycle")
        status = pipeline.get_run_status("run_cycle")
        assert status["state"] == "failed"
        assert status["error"]["error_type"] == "PlanningCycleError"


class TestRunRegistry:

    def test_oldest_finished_runs_are_dropped(self):
        registry = RunRegistry(max_runs=2)
        for run_id in ("run_1", "run_2", "run_3"):
            registry.register(run_id, ProgressStreamer(verbose=False), "idea")
            registry.finish(run_id, "completed")
        assert "run_1" not in registry
        assert registry.status("run_1") is None
        assert registry.status("run_3")["state"] == "completed"

    def test_running_runs_are_kept(self):
        registry = RunRegistry(max_runs=1)
        registry.register("run_live", ProgressStreamer(verbose=False), "idea")
        registry.register("run_other", ProgressStreamer(verbose=False), "idea")
        assert "run_live" in registry
        assert "run_other" in registry
        registry.finish("run_live", "completed")
        assert "run_live" not in registry
        assert "run_other" in registry
