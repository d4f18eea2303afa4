"""
Analyst Agent - initial market, competition and risk pass over an idea.

The draft it produces is deliberately rough; its weak spots are what
the gap planner turns into follow-up lookups.
"""

import logging
from typing import Any, Dict, List

from opportunity_engine.agents.base_agent import BaseAgent
from opportunity_engine.agents.models import AnalysisDraft, Confidence, Idea, Section
from opportunity_engine.core.llm_client import TextGenerator

logger = logging.getLogger(__name__)

DRAFT_SECTIONS = {
    "market": "Market Size",
    "competition": "Competitive Landscape",
    "risk": "Risk Assessment",
}

KEY_FIGURES = ("tam", "sam", "som")

DRAFT_SCHEMA = {
    "sections": {
        "market": {"content": "string", "confidence": "high|medium|low", "completeness": "0-100"},
        "competition": {"content": "string", "confidence": "high|medium|low", "completeness": "0-100"},
        "risk": {"content": "string", "confidence": "high|medium|low", "completeness": "0-100"},
    },
    "competitors": ["company name"],
    "key_figures": {"tam": "number or null", "sam": "number or null", "som": "number or null"},
    "risk_factors": ["string"],
    "overall_confidence": "1-10",
}

GAP_SCHEMA = {
    "research_needs": [
        {
            "request_type": "market_data|competitor_info|industry_trends|regulatory_info|customer_insights",
            "specific_query": "string",
            "justification": "string",
            "priority": "high|medium|low",
        }
    ]
}


def _confidence(value: Any) -> Confidence:
    try:
        return Confidence(str(value).lower())
    except ValueError:
        return Confidence.LOW


def _number(value: Any):
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class Analyst(BaseAgent):
    """Produces the initial AnalysisDraft for an idea."""

    def __init__(self, generator: TextGenerator):
        super().__init__("Analyst", generator, "Initial market/competitor/risk analysis")

    async def analyze(self, idea: Idea) -> AnalysisDraft:
        prompt = f"""Analyze this business idea for the Japanese market.

Title: {idea.title}
Target market: {idea.target_market}
Problem: {idea.problem_statement}
Solution: {idea.proposed_solution}
Business model: {idea.business_model}

Cover market size (TAM/SAM/SOM where you can estimate them), direct
competitors, and the main risks. Rate your confidence honestly."""

        result = await self._generate_structured(prompt, DRAFT_SCHEMA, purpose="initial analysis")
        if not result.ok:
            return self.default_draft(idea)
        return self._to_draft(result.value)

    async def propose_gaps(self, idea: Idea, draft: AnalysisDraft) -> List[Dict[str, Any]]:
        """Ask for follow-up research needs; an unparseable answer yields none."""
        prompt = f"""Review this initial analysis and list the follow-up research it needs.

Idea: {idea.title}
Target market: {idea.target_market}
Competitors identified: {len(draft.competitors)}
Overall confidence: {draft.overall_confidence}/10
Sections:
{self._json({k: s.confidence.value for k, s in draft.sections.items()})}

Pick 3-5 needs."""

        result = await self._generate_structured(prompt, GAP_SCHEMA, purpose="gap analysis")
        if not result.ok:
            return []
        needs = result.value.get("research_needs", [])
        return [n for n in needs if isinstance(n, dict)]

    def _to_draft(self, data: Dict[str, Any]) -> AnalysisDraft:
        raw_sections = data.get("sections") or {}
        sections = {}
        for kind, title in DRAFT_SECTIONS.items():
            raw = raw_sections.get(kind) or {}
            completeness = _number(raw.get("completeness")) or 0.0
            sections[kind] = Section(
                kind=kind,
                title=title,
                content=str(raw.get("content", "")),
                completeness_score=max(0.0, min(100.0, completeness)),
                confidence=_confidence(raw.get("confidence")),
            )

        figures = data.get("key_figures") or {}
        confidence = _number(data.get("overall_confidence")) or 1.0

        return AnalysisDraft(
            sections=sections,
            competitors=[str(c) for c in data.get("competitors") or []],
            key_figures={k: _number(figures.get(k)) for k in KEY_FIGURES},
            overall_confidence=max(1.0, min(10.0, confidence)),
            risk_factors=[str(r) for r in data.get("risk_factors") or []],
        )

    @staticmethod
    def default_draft(idea: Idea) -> AnalysisDraft:
        """Fallback draft: every section low-confidence, no figures, no competitors."""
        sections = {
            kind: Section(
                kind=kind,
                title=title,
                content=f"{title} for '{idea.title}' could not be analyzed.",
                completeness_score=0.0,
                confidence=Confidence.LOW,
            )
            for kind, title in DRAFT_SECTIONS.items()
        }
        return AnalysisDraft(
            sections=sections,
            key_figures={k: None for k in KEY_FIGURES},
            overall_confidence=1.0,
        )
