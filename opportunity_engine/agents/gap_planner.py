"""
Gap Planner - turns weaknesses of the initial draft into ranked
follow-up lookups.

Candidate needs are derived deterministically from the draft; the
analyst's own suggestions are appended after them. The list is ranked
by priority tier, then creation order, and truncated to the cap.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from opportunity_engine.agents.models import (
    AnalysisDraft, Confidence, Idea, Priority, RequestType, ResearchCategory, WorkItem,
)
from opportunity_engine.core.cache_layer import normalize_query
from opportunity_engine.errors import PlanningCycleError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LookupStrategy:
    category: ResearchCategory
    language: str
    region: str
    query_template: str


# request type -> where and how to look
STRATEGIES: Dict[RequestType, LookupStrategy] = {
    RequestType.MARKET_DATA: LookupStrategy(
        ResearchCategory.MARKET_TRENDS, "ja", "japan", "{target_market} 市場規模 日本 統計"),
    RequestType.COMPETITOR_INFO: LookupStrategy(
        ResearchCategory.COMPETITION, "ja", "japan", "{title} 競合 企業 サービス"),
    RequestType.INDUSTRY_TRENDS: LookupStrategy(
        ResearchCategory.TECHNOLOGY, "en", "global", "{title} industry trends"),
    RequestType.REGULATORY_INFO: LookupStrategy(
        ResearchCategory.REGULATION, "ja", "japan", "{target_market} 規制 法律 ガイドライン"),
    RequestType.CUSTOMER_INSIGHTS: LookupStrategy(
        ResearchCategory.CONSUMER_BEHAVIOR, "ja", "japan", "{target_market} 顧客 課題 調査"),
}

# draft section -> request type used when that section is weak
SECTION_NEEDS = {
    "market": (RequestType.MARKET_DATA, Priority.HIGH),
    "competition": (RequestType.COMPETITOR_INFO, Priority.HIGH),
    "risk": (RequestType.REGULATORY_INFO, Priority.MEDIUM),
}


@dataclass
class PlanConstraints:
    max_items: int = 5
    min_competitors: int = 2
    confidence_floor: float = 6.0
    min_risk_factors: int = 3
    unit_cost: float = 0.0


def _parse_enum(enum_cls, value, default=None):
    try:
        return enum_cls(str(value).lower())
    except ValueError:
        return default


class GapPlanner:
    """Ranks and caps follow-up work items for a draft."""

    def plan(self, draft: AnalysisDraft, idea: Idea,
             constraints: Optional[PlanConstraints] = None) -> List[WorkItem]:
        constraints = constraints or PlanConstraints()
        candidates = self.candidates(draft, idea, constraints)
        ranked = sorted(candidates, key=lambda w: (-w.priority.tier, w.sequence))
        selected = ranked[:constraints.max_items]
        logger.info(f"Gap planning: {len(selected)}/{len(candidates)} work items selected")
        return selected

    def candidates(self, draft: AnalysisDraft, idea: Idea,
                   constraints: PlanConstraints) -> List[WorkItem]:
        items: List[WorkItem] = []
        seen = set()

        def add(request_type: RequestType, priority: Priority, justification: str,
                query: Optional[str] = None):
            strategy = STRATEGIES[request_type]
            query = query or strategy.query_template.format(
                title=idea.title, target_market=idea.target_market
            )
            key = (strategy.category, normalize_query(query))
            if key in seen:
                return
            seen.add(key)
            items.append(WorkItem(
                request_type=request_type,
                category=strategy.category,
                query=query,
                priority=priority,
                language=strategy.language,
                region=strategy.region,
                estimated_cost=constraints.unit_cost,
                justification=justification,
            ))

        for kind, (request_type, priority) in SECTION_NEEDS.items():
            section = draft.sections.get(kind)
            if section is None or section.confidence == Confidence.LOW:
                add(request_type, priority, f"{kind} section has low confidence")

        if len(draft.competitors) < constraints.min_competitors:
            add(RequestType.COMPETITOR_INFO, Priority.HIGH,
                f"only {len(draft.competitors)} competitors identified",
                query=f"{idea.target_market} {idea.proposed_solution} 競合")

        missing = [k for k, v in draft.key_figures.items() if v is None]
        if missing or not draft.key_figures:
            add(RequestType.MARKET_DATA, Priority.HIGH,
                f"missing figures: {', '.join(missing) or 'all'}",
                query=f"{idea.target_market} 市場規模 成長率 予測")

        if draft.overall_confidence < constraints.confidence_floor:
            add(RequestType.CUSTOMER_INSIGHTS, Priority.MEDIUM,
                f"overall confidence {draft.overall_confidence:g}/10")
            add(RequestType.INDUSTRY_TRENDS, Priority.LOW,
                f"overall confidence {draft.overall_confidence:g}/10")

        if len(draft.risk_factors) < constraints.min_risk_factors:
            add(RequestType.REGULATORY_INFO, Priority.MEDIUM,
                f"only {len(draft.risk_factors)} risk factors")

        for need in draft.suggested_research:
            request_type = _parse_enum(RequestType, need.get("request_type"))
            if request_type is None:
                logger.warning(f"Ignoring research need with unknown type: {need.get('request_type')}")
                continue
            query = str(need.get("specific_query") or "").strip() or None
            add(request_type,
                _parse_enum(Priority, need.get("priority"), Priority.MEDIUM),
                str(need.get("justification", "suggested by analyst")),
                query=query)

        return items

    @staticmethod
    def order_by_dependencies(items: List[WorkItem]) -> List[List[WorkItem]]:
        """
        Group items into waves so every item runs after the items it
        depends on. Dependencies outside the list count as satisfied.

        Raises:
            PlanningCycleError: the dependencies form a cycle
        """
        known = {item.id for item in items}
        pending = {
            item.id: {d for d in item.depends_on if d in known}
            for item in items
        }
        waves: List[List[WorkItem]] = []
        done = set()

        while pending:
            wave = [item for item in items
                    if item.id in pending and pending[item.id] <= done]
            if not wave:
                raise PlanningCycleError(sorted(pending))
            for item in wave:
                del pending[item.id]
                done.add(item.id)
            waves.append(wave)
        return waves
