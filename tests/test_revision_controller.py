"""
Tests for synthesis/revision_controller.py

Tests cover:
- Termination after max_revisions with the best-effort report
- Early stop on a passing evaluation
- Revision history and score bookkeeping
- Deadline handling and single-use instances
"""

import pytest

from opportunity_engine.agents.models import Report, Section, SectionKind
from opportunity_engine.agents.writer import ReportWriter
from opportunity_engine.core.progress_streamer import PipelinePhase, ProgressStreamer
from opportunity_engine.errors import InvalidTransitionError
from opportunity_engine.synthesis.revision_controller import RevisionController
from opportunity_engine.validation.quality_evaluator import QualityEvaluator
from tests.conftest import ScriptedGenerator

REVISED = "REVISED section with more detail"


class ContentScorer:
    """Scores revised content high and anything else low."""

    def __init__(self, low=50, high=95):
        self.low = low
        self.high = high

    async def score(self, section, report):
        value = self.high if section.content.startswith("REVISED") else self.low
        return {name: value for name in ("logical_consistency", "actionable_specificity",
                                         "data_support", "clarity")}, "needs numbers"


def draft_factory(idea, content="first draft"):
    async def produce():
        return Report(idea=idea, sections=[
            Section(kind=kind.value, title=kind.value, content=content) for kind in SectionKind
        ])
    return produce


def controller(scorer, generator=None, max_revisions=2, **kwargs):
    evaluator = QualityEvaluator(scorer=scorer, passing_threshold=80)
    writer = ReportWriter(generator or ScriptedGenerator(revised_text=REVISED))
    return RevisionController(evaluator, writer, max_revisions=max_revisions, **kwargs)


class TestTermination:

    @pytest.mark.asyncio
    async def test_stops_after_max_revisions(self, idea):
        # revisions never help: the generator keeps returning low-scoring text
        rc = controller(ContentScorer(), ScriptedGenerator(revised_text="still weak"))
        outcome = await rc.run(draft_factory(idea))

        assert outcome.revision_count == 2
        assert not outcome.meets_threshold
        assert not outcome.incomplete
        assert outcome.states == [
            "drafting", "evaluating", "revising", "evaluating",
            "revising", "evaluating", "finalized",
        ]
        assert len(outcome.report.revision_history) == 2
        assert outcome.report.final_score == outcome.assessment.overall_score == 50

    @pytest.mark.asyncio
    async def test_zero_revisions_allowed(self, idea):
        outcome = await controller(ContentScorer(), max_revisions=0).run(draft_factory(idea))
        assert outcome.revision_count == 0
        assert outcome.states == ["drafting", "evaluating", "finalized"]

    @pytest.mark.asyncio
    async def test_passing_draft_is_not_revised(self, idea):
        generator = ScriptedGenerator()
        outcome = await controller(ContentScorer(), generator).run(draft_factory(idea, content=REVISED))

        assert outcome.meets_threshold
        assert outcome.revision_count == 0
        assert outcome.states == ["drafting", "evaluating", "passed", "finalized"]
        assert outcome.report.revision_history == []
        assert generator.prompts == []


class TestRevisionRounds:

    @pytest.mark.asyncio
    async def test_revision_lifts_score_and_records_history(self, idea):
        outcome = await controller(ContentScorer()).run(draft_factory(idea), context="research")

        assert outcome.meets_threshold
        assert outcome.revision_count == 1
        record = outcome.report.revision_history[0]
        assert record.revision_number == 1
        assert record.before_score == 50
        assert record.after_score == 95
        assert record.sections_touched == [k.value for k in SectionKind]
        assert record.changes[0].old_excerpt == "first draft"
        assert record.changes[0].new_excerpt == REVISED
        assert "below 80" in record.trigger_reason

    @pytest.mark.asyncio
    async def test_revision_prompt_carries_feedback_and_context(self, idea):
        generator = ScriptedGenerator(revised_text=REVISED)
        await controller(ContentScorer(), generator).run(draft_factory(idea), context="market data X")
        revise_prompts = [p for p in generator.prompts if p.startswith("Revise this section")]
        assert len(revise_prompts) == len(SectionKind)
        assert "needs numbers" in revise_prompts[0]
        assert "market data X" in revise_prompts[0]

    @pytest.mark.asyncio
    async def test_revised_sections_gain_completeness(self, idea):
        outcome = await controller(ContentScorer()).run(draft_factory(idea))
        assert all(s.completeness_score == 10 for s in outcome.report.sections)


class TestDeadline:

    @pytest.mark.asyncio
    async def test_expired_deadline_finalizes_incomplete(self, idea, clock):
        rc = controller(ContentScorer(), clock=clock)
        outcome = await rc.run(draft_factory(idea), deadline=clock() - 1)
        assert outcome.incomplete
        assert outcome.revision_count == 0
        assert outcome.states[-1] == "finalized"


class TestStateMachine:

    @pytest.mark.asyncio
    async def test_instance_runs_once(self, idea):
        rc = controller(ContentScorer())
        await rc.run(draft_factory(idea))
        with pytest.raises(InvalidTransitionError):
            await rc.run(draft_factory(idea))

    @pytest.mark.asyncio
    async def test_progress_events(self, idea):
        streamer = ProgressStreamer(verbose=False)
        await controller(ContentScorer(), streamer=streamer).run(draft_factory(idea))
        phases = {e.phase for e in streamer.events}
        assert {PipelinePhase.REPORT_DRAFTING, PipelinePhase.EVALUATION,
                PipelinePhase.REVISION} <= phases
