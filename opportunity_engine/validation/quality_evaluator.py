"""
Quality Evaluator - weighted criteria scoring of a report.

Each section gets a score from four criteria; the report score is the
mean of section scores. Only that aggregate decides pass/fail. Section
scores decide which sections a revision round regenerates.
"""

import logging
import re
from typing import Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from opportunity_engine.agents.models import QualityAssessment, Report, Section, SectionScore
from opportunity_engine.config.settings import DEFAULT_CRITERIA_WEIGHTS
from opportunity_engine.errors import ConfigurationError

logger = logging.getLogger(__name__)

CRITERIA = tuple(DEFAULT_CRITERIA_WEIGHTS)

_ACTION_RE = re.compile(r"実施|策定|検討|validate|launch|interview|pilot|test|build|hire", re.IGNORECASE)
_NUMBER_RE = re.compile(r"\d[\d,.]*\s*(?:%|億|万|円|yen|million|billion)?", re.IGNORECASE)
_HEADING_RE = re.compile(r"^#{1,6}\s", re.MULTILINE)
_LIST_RE = re.compile(r"^\s*(?:[-*]|\d+\.)\s", re.MULTILINE)


class CriteriaScorer(Protocol):
    """Scores one section on each criterion (0-100) with optional feedback."""

    async def score(self, section: Section, report: Report) -> Tuple[Dict[str, float], str]:
        ...


def _clamp(value: float) -> float:
    return max(0.0, min(100.0, value))


class HeuristicScorer:
    """Content-based criteria scores; identical content gives identical scores."""

    async def score(self, section: Section, report: Report) -> Tuple[Dict[str, float], str]:
        return self.score_content(section.content, len(section.data_sources))

    def score_content(self, text: str, source_count: int = 0) -> Tuple[Dict[str, float], str]:
        length_ratio = min(1.0, len(text) / 2000)
        headings = len(_HEADING_RE.findall(text))
        list_items = len(_LIST_RE.findall(text))
        numbers = len(_NUMBER_RE.findall(text))
        actions = len(_ACTION_RE.findall(text))
        paragraphs = [p for p in text.split("\n\n") if p.strip()]
        longest = max((len(p) for p in paragraphs), default=0)

        criteria = {
            "logical_consistency": _clamp(40 + 10 * min(headings, 3) + 30 * length_ratio),
            "actionable_specificity": _clamp(30 + 10 * min(list_items, 4) + 10 * min(actions, 3)),
            "data_support": _clamp(20 + 10 * min(numbers, 5) + 10 * min(source_count, 3)),
            "clarity": _clamp(
                (45 if len(text) < 200 else 85)
                + (10 if headings or list_items else 0)
                - (25 if longest > 800 else 0)
            ),
        }
        weakest = min(criteria, key=criteria.get)
        return {k: round(v, 1) for k, v in criteria.items()}, f"Weakest criterion: {weakest}"


class QualityEvaluator:
    """
    Scores a report against weighted criteria.

    Usage:
        evaluator = QualityEvaluator(passing_threshold=80)
        assessment = await evaluator.evaluate(report)
        if not assessment.passed:
            kinds = evaluator.sections_to_revise(assessment)
    """

    def __init__(self, scorer: Optional[CriteriaScorer] = None,
                 weights: Optional[Mapping[str, float]] = None,
                 passing_threshold: float = 80.0):
        self.scorer = scorer or HeuristicScorer()
        self.weights = dict(weights or DEFAULT_CRITERIA_WEIGHTS)
        self.passing_threshold = passing_threshold
        self._validate_weights()

    def _validate_weights(self):
        if any(w < 0 for w in self.weights.values()):
            raise ConfigurationError("criteria weights must be non-negative")
        total = sum(self.weights.values())
        if abs(total - 1.0) > 1e-6:
            raise ConfigurationError(f"criteria weights must sum to 1 (got {total:.4f})")

    def section_score(self, criteria: Mapping[str, float]) -> float:
        return round(_clamp(sum(w * criteria.get(name, 0.0) for name, w in self.weights.items())))

    async def evaluate(self, report: Report) -> QualityAssessment:
        scores = []
        for section in report.sections:
            criteria, feedback = await self.scorer.score(section, report)
            scores.append(SectionScore(
                section=section.kind,
                score=self.section_score(criteria),
                criteria=dict(criteria),
                feedback=feedback,
            ))
        assessment = self.assess(scores, report)
        logger.info(
            f"Evaluation: {assessment.overall_score:.2f} "
            f"(threshold {self.passing_threshold}, {'pass' if assessment.passed else 'fail'})"
        )
        return assessment

    def assess(self, section_scores: Sequence[SectionScore],
               report: Optional[Report] = None) -> QualityAssessment:
        """Aggregate section scores into an assessment."""
        overall = (
            round(sum(s.score for s in section_scores) / len(section_scores), 2)
            if section_scores else 0.0
        )
        notes = []
        for s in section_scores:
            if s.score < self.passing_threshold:
                title = s.section
                if report is not None and report.section(s.section) is not None:
                    title = report.section(s.section).title
                notes.append(f"{title}: {s.score:.0f} - {s.feedback}".rstrip(" -"))

        return QualityAssessment(
            overall_score=overall,
            section_scores=tuple(section_scores),
            passed=overall >= self.passing_threshold,
            threshold=self.passing_threshold,
            weights=tuple(sorted(self.weights.items())),
            improvement_notes=tuple(notes),
        )

    def sections_to_revise(self, assessment: QualityAssessment) -> List[str]:
        """Sections under the threshold, or the single lowest if none is."""
        below = [s.section for s in assessment.section_scores if s.score < self.passing_threshold]
        if below or not assessment.section_scores:
            return below
        lowest = min(assessment.section_scores, key=lambda s: s.score)
        return [lowest.section]
