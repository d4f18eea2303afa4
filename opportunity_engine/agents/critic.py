"""
Critic Agent - LLM criteria scoring and revision instructions.
"""

import logging
from typing import Dict, Optional, Tuple

from opportunity_engine.agents.base_agent import BaseAgent
from opportunity_engine.agents.models import Report, Section, SectionScore
from opportunity_engine.core.llm_client import TextGenerator
from opportunity_engine.validation.quality_evaluator import CRITERIA, HeuristicScorer

logger = logging.getLogger(__name__)

CRITIC_SCHEMA = {
    "criteria": {name: "0-100" for name in CRITERIA},
    "feedback": "one or two concrete improvement suggestions",
}

CRITERIA_GUIDANCE = {
    "logical_consistency": "Tighten the argument so each claim follows from the previous one.",
    "actionable_specificity": "Replace general statements with concrete actions, owners and timelines.",
    "data_support": "Back claims with figures and cite the research sources.",
    "clarity": "Shorten paragraphs and add headings or lists.",
}


class CriticScorer(BaseAgent):
    """
    Criteria scorer backed by the text generator.

    Unparseable or failed critiques fall back to the heuristic scorer for
    that section, so an evaluation always completes.
    """

    def __init__(self, generator: TextGenerator, fallback: Optional[HeuristicScorer] = None):
        super().__init__("Critic", generator, "Scores report sections against criteria")
        self.fallback = fallback or HeuristicScorer()
        self.fallback_count = 0

    async def score(self, section: Section, report: Report) -> Tuple[Dict[str, float], str]:
        prompt = f"""You are a strict reviewer of business opportunity reports.
Score this section of the report on "{report.idea.title}" from 0 to 100 on each criterion:
logical_consistency, actionable_specificity, data_support, clarity.

Section: {section.title}
{section.content}"""

        try:
            result = await self._generate_structured(prompt, CRITIC_SCHEMA, purpose=f"critique of {section.kind}")
        except Exception as e:
            logger.warning(f"Critique of {section.kind} failed: {e}")
            result = None

        raw = result.value.get("criteria") if result is not None and result.ok else None
        if not isinstance(raw, dict):
            if result is not None and result.ok:
                logger.warning(f"Critique of {section.kind} has no criteria object; using heuristics")
            self.fallback_count += 1
            return await self.fallback.score(section, report)

        criteria = {}
        for name in CRITERIA:
            try:
                value = float(raw.get(name, 0))
            except (TypeError, ValueError):
                value = 0.0
            criteria[name] = max(0.0, min(100.0, value))
        return criteria, str(result.value.get("feedback", ""))


def revision_instructions(score: SectionScore, threshold: float) -> str:
    """Reviewer feedback plus guidance for each criterion below the threshold."""
    lines = []
    if score.feedback:
        lines.append(score.feedback)
    weak = sorted(
        (name for name, value in score.criteria.items() if value < threshold),
        key=lambda name: score.criteria[name],
    )
    for name in weak:
        guidance = CRITERIA_GUIDANCE.get(name)
        if guidance:
            lines.append(f"- {name} ({score.criteria[name]:.0f}): {guidance}")
    if not lines:
        lines.append("Strengthen the section with more specific, data-backed content.")
    return "\n".join(lines)
