"""
Report Writer - generates and revises the seven report sections.
"""

import logging
import re
from typing import Dict, Optional

from opportunity_engine.agents.base_agent import BaseAgent
from opportunity_engine.agents.models import (
    AnalysisDraft, Confidence, Idea, Report, Section, SectionKind, SECTION_TITLES,
)
from opportunity_engine.core.llm_client import TextGenerator
from opportunity_engine.synthesis.knowledge_aggregator import EnrichmentSummary

logger = logging.getLogger(__name__)

MIN_SECTION_LENGTH = 200
MAX_SECTION_LENGTH = 2000
REVISION_COMPLETENESS_GAIN = 10

_DATA_MARKERS = ("億円", "万円", "%", "年", "$")
_ACTION_MARKERS = ("実施", "策定", "検討", "validate", "launch", "interview", "pilot")

SECTION_BRIEFS: Dict[SectionKind, str] = {
    SectionKind.OVERVIEW: "Summarize the opportunity, the problem and why now.",
    SectionKind.TARGET_AND_PROBLEM: "Describe target customers and their concrete pains.",
    SectionKind.SOLUTION_AND_MODEL: "Describe the solution hypothesis and how it makes money.",
    SectionKind.MARKET_AND_COMPETITION: "Give market size figures and compare direct competitors.",
    SectionKind.STRATEGIC_FIT: "Explain strategic significance and synergies for the company.",
    SectionKind.VALIDATION_ACTIONS: "List concrete validation steps with owners and timelines.",
    SectionKind.RISKS: "List key risks with likelihood, impact and mitigations.",
}


def completeness_score(content: str) -> float:
    """Length, structure and content-signal score on 0-100."""
    score = 0.0
    length = len(content)
    if length >= MIN_SECTION_LENGTH:
        score += min(40.0, length / MAX_SECTION_LENGTH * 40)

    headings = len(re.findall(r"^#{1,6}\s", content, re.MULTILINE))
    lists = len(re.findall(r"^\s*(?:[-*]|\d+\.)\s", content, re.MULTILINE))
    tables = 1 if re.search(r"^\|.*\|$", content, re.MULTILINE) else 0
    score += min(30.0, headings * 10 + min(lists, 3) * 5 + tables * 15)

    if any(m in content for m in _DATA_MARKERS):
        score += 15
    if any(m in content.lower() for m in _ACTION_MARKERS):
        score += 15
    return round(min(score, 100.0), 1)


def section_confidence(kind: SectionKind, draft: AnalysisDraft) -> Confidence:
    level = draft.overall_confidence
    if kind == SectionKind.MARKET_AND_COMPETITION:
        market = draft.sections.get("market")
        market_conf = market.confidence if market else Confidence.LOW
        if market_conf == Confidence.HIGH and level >= 8:
            return Confidence.HIGH
        if market_conf == Confidence.MEDIUM and level >= 6:
            return Confidence.MEDIUM
        return Confidence.LOW
    if level >= 8:
        return Confidence.HIGH
    if level >= 6:
        return Confidence.MEDIUM
    return Confidence.LOW


class ReportWriter(BaseAgent):
    """Writes report sections from the idea, draft and enrichment."""

    def __init__(self, generator: TextGenerator):
        super().__init__("ReportWriter", generator, "Writes and revises report sections")

    async def write_report(self, idea: Idea, draft: AnalysisDraft,
                           enrichment: EnrichmentSummary) -> Report:
        report = Report(idea=idea)
        sources = sorted({
            src for summary in enrichment.categories.values()
            for src in summary.source_breakdown
        })
        for kind in SectionKind:
            report.sections.append(await self.write_section(kind, idea, draft, enrichment, sources))
        logger.info(f"Drafted report {report.id} ({report.word_count} chars)")
        return report

    async def write_section(self, kind: SectionKind, idea: Idea, draft: AnalysisDraft,
                            enrichment: EnrichmentSummary, sources=None) -> Section:
        prompt = f"""Write the "{SECTION_TITLES[kind]}" section of a business opportunity report
in Markdown. {SECTION_BRIEFS[kind]}

Idea: {idea.title}
Target market: {idea.target_market}
Problem: {idea.problem_statement}
Solution: {idea.proposed_solution}
Business model: {idea.business_model}

Initial analysis:
{self._json(draft.to_dict())}

Research:
{enrichment.to_prompt_text()}"""

        try:
            content = await self._generate_text(prompt)
        except Exception as e:
            logger.warning(f"Section {kind.value} generation failed: {e}")
            content = ""

        if not content.strip():
            content = self.placeholder(kind, idea)

        return Section(
            kind=kind.value,
            title=SECTION_TITLES[kind],
            content=content.strip(),
            completeness_score=completeness_score(content),
            confidence=section_confidence(kind, draft),
            data_sources=list(sources or []),
        )

    async def revise_section(self, section: Section, idea: Idea,
                             instructions: str, context: Optional[str] = None) -> Section:
        """Regenerate one section; a failed call keeps the old content."""
        prompt = f"""Revise this section of the business opportunity report for "{idea.title}".

Section: {section.title}
Current content:
{section.content}

Reviewer feedback:
{instructions}

{f"Research context:{chr(10)}{context}" if context else ""}

Return only the revised section in Markdown."""

        try:
            content = (await self._generate_text(prompt)).strip()
        except Exception as e:
            logger.warning(f"Revision of {section.kind} failed: {e}")
            content = ""

        return Section(
            kind=section.kind,
            title=section.title,
            content=content or section.content,
            completeness_score=min(100.0, section.completeness_score + REVISION_COMPLETENESS_GAIN),
            confidence=section.confidence,
            data_sources=list(section.data_sources),
        )

    @staticmethod
    def placeholder(kind: SectionKind, idea: Idea) -> str:
        return f"{SECTION_TITLES[kind]} for '{idea.title}' is not available yet."
