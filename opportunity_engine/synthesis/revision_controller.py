"""
Revision Controller - the quality-gated draft / evaluate / revise loop.

    DRAFTING -> EVALUATING -> PASSED -> FINALIZED
                    |  ^
                    v  |
                 REVISING          (at most max_revisions rounds)

A passing evaluation is terminal. When revisions run out, or the run
deadline passes, the current report is finalized as best effort.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, List, Optional

from opportunity_engine.agents.critic import revision_instructions
from opportunity_engine.agents.models import ChangeRecord, QualityAssessment, Report, RevisionRecord
from opportunity_engine.agents.writer import ReportWriter
from opportunity_engine.core.progress_streamer import PipelinePhase, ProgressStreamer
from opportunity_engine.errors import InvalidTransitionError
from opportunity_engine.validation.quality_evaluator import QualityEvaluator

logger = logging.getLogger(__name__)

EXCERPT_LENGTH = 200


class RevisionState(Enum):
    DRAFTING = "drafting"
    EVALUATING = "evaluating"
    PASSED = "passed"
    REVISING = "revising"
    FINALIZED = "finalized"


_TRANSITIONS = {
    RevisionState.DRAFTING: {RevisionState.EVALUATING},
    RevisionState.EVALUATING: {RevisionState.PASSED, RevisionState.REVISING, RevisionState.FINALIZED},
    RevisionState.REVISING: {RevisionState.EVALUATING},
    RevisionState.PASSED: {RevisionState.FINALIZED},
    RevisionState.FINALIZED: set(),
}


@dataclass
class RevisionOutcome:
    report: Report
    assessment: QualityAssessment
    revision_count: int
    meets_threshold: bool
    incomplete: bool
    states: List[str] = field(default_factory=list)


class RevisionController:
    """Drives one report through the revision state machine."""

    def __init__(self, evaluator: QualityEvaluator, writer: ReportWriter,
                 max_revisions: int = 2,
                 streamer: Optional[ProgressStreamer] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.evaluator = evaluator
        self.writer = writer
        self.max_revisions = max_revisions
        self.streamer = streamer
        self._clock = clock
        self.state = RevisionState.DRAFTING
        self.states: List[RevisionState] = [RevisionState.DRAFTING]

    def _move(self, new_state: RevisionState):
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidTransitionError(f"{self.state.value} -> {new_state.value}")
        self.state = new_state
        self.states.append(new_state)

    def _expired(self, deadline: Optional[float]) -> bool:
        return deadline is not None and self._clock() >= deadline

    def _emit(self, phase: PipelinePhase, message: str, progress: float, **detail):
        if self.streamer:
            self.streamer.update(phase, message, progress, detail=detail)

    async def run(self, produce_draft: Callable[[], Awaitable[Report]],
                  context: str = "", deadline: Optional[float] = None) -> RevisionOutcome:
        """
        Args:
            produce_draft: Returns the first report
            context: Research summary passed to section revisions
            deadline: Absolute time on the controller clock
        """
        if self.state != RevisionState.DRAFTING:
            raise InvalidTransitionError("RevisionController instances run once")

        self._emit(PipelinePhase.REPORT_DRAFTING, "Drafting report sections", 0.0)
        report = await produce_draft()
        self._emit(PipelinePhase.REPORT_DRAFTING, "Report drafted", 1.0, sections=len(report.sections))
        self._move(RevisionState.EVALUATING)

        revision_count = 0
        incomplete = False

        while True:
            self._emit(PipelinePhase.EVALUATION, f"Evaluating (round {revision_count})", 0.0)
            assessment = await self.evaluator.evaluate(report)
            report.quality_assessment = assessment
            if report.revision_history:
                report.revision_history[-1].after_score = assessment.overall_score
            self._emit(PipelinePhase.EVALUATION, f"Score {assessment.overall_score:.2f}", 1.0,
                       score=assessment.overall_score, passed=assessment.passed)

            if assessment.passed:
                self._move(RevisionState.PASSED)
                break
            if revision_count >= self.max_revisions:
                logger.info(f"Revision budget exhausted at {assessment.overall_score:.2f}")
                break
            if self._expired(deadline):
                logger.warning("Run deadline reached; finalizing without further revision")
                incomplete = True
                break

            self._move(RevisionState.REVISING)
            revision_count += 1
            record, cut_short = await self._revise(report, assessment, revision_count, context, deadline)
            report.revision_history.append(record)
            incomplete = incomplete or cut_short
            self._move(RevisionState.EVALUATING)

        self._move(RevisionState.FINALIZED)
        report.final_score = assessment.overall_score
        return RevisionOutcome(
            report=report,
            assessment=assessment,
            revision_count=revision_count,
            meets_threshold=assessment.passed,
            incomplete=incomplete,
            states=[s.value for s in self.states],
        )

    async def _revise(self, report: Report, assessment: QualityAssessment,
                      number: int, context: str, deadline: Optional[float]):
        kinds = self.evaluator.sections_to_revise(assessment)
        threshold = self.evaluator.passing_threshold
        changes: List[ChangeRecord] = []
        touched: List[str] = []
        cut_short = False

        for i, kind in enumerate(kinds):
            if self._expired(deadline):
                cut_short = True
                break
            self._emit(PipelinePhase.REVISION, f"Revision {number}: {kind}", i / len(kinds))
            old = report.section(kind)
            score = assessment.score_for(kind)
            new = await self.writer.revise_section(
                old, report.idea, revision_instructions(score, threshold), context
            )
            report.replace_section(new)
            touched.append(kind)
            changes.append(ChangeRecord(
                section=kind,
                change_type="content_revision",
                old_excerpt=old.content[:EXCERPT_LENGTH],
                new_excerpt=new.content[:EXCERPT_LENGTH],
                reason=score.feedback if score else "",
            ))

        self._emit(PipelinePhase.REVISION, f"Revision {number} done", 1.0, sections=touched)
        record = RevisionRecord(
            revision_number=number,
            trigger_reason=(
                f"overall score {assessment.overall_score:.2f} below {threshold:g}"
            ),
            sections_touched=touched,
            before_score=assessment.overall_score,
            changes=changes,
        )
        return record, cut_short
