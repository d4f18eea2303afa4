"""
Tests for agents/gap_planner.py
"""

import pytest

from opportunity_engine.agents.gap_planner import GapPlanner, PlanConstraints
from opportunity_engine.agents.models import (
    AnalysisDraft, Confidence, Priority, RequestType, ResearchCategory, Section,
)
from opportunity_engine.errors import PlanningCycleError


def make_draft(market=Confidence.HIGH, competition=Confidence.HIGH, risk=Confidence.HIGH,
               competitors=("A", "B", "C"), figures=None, confidence=8.0,
               risk_factors=("r1", "r2", "r3"), suggested=()):
    sections = {
        kind: Section(kind=kind, title=kind, content="...", confidence=level)
        for kind, level in (("market", market), ("competition", competition), ("risk", risk))
    }
    return AnalysisDraft(
        sections=sections,
        competitors=list(competitors),
        key_figures=figures if figures is not None else {"tam": 1.0, "sam": 1.0, "som": 1.0},
        overall_confidence=confidence,
        risk_factors=list(risk_factors),
        suggested_research=list(suggested),
    )


@pytest.fixture
def planner():
    return GapPlanner()


class TestPlan:

    def test_strong_draft_needs_nothing(self, planner, idea):
        assert planner.plan(make_draft(), idea) == []

    def test_weak_draft_is_ranked_and_capped(self, planner, idea):
        draft = make_draft(market=Confidence.LOW, competitors=["A"],
                           figures={"tam": 1.0, "sam": None, "som": None},
                           confidence=5, risk_factors=["r1", "r2"])
        plan = planner.plan(draft, idea, PlanConstraints(max_items=5))

        assert len(plan) == 5
        tiers = [w.priority.tier for w in plan]
        assert tiers == sorted(tiers, reverse=True)
        assert [w.request_type for w in plan[:3]] == [
            RequestType.MARKET_DATA, RequestType.COMPETITOR_INFO, RequestType.MARKET_DATA,
        ]
        # the LOW industry-trends item is cut by the cap
        assert all(w.priority != Priority.LOW for w in plan)

    def test_cap_is_respected(self, planner, idea):
        draft = make_draft(market=Confidence.LOW, competition=Confidence.LOW,
                           risk=Confidence.LOW, competitors=[], confidence=2)
        assert len(planner.plan(draft, idea, PlanConstraints(max_items=2))) == 2

    def test_strategy_sets_category_language_region(self, planner, idea):
        plan = planner.plan(make_draft(confidence=3), idea)
        by_type = {w.request_type: w for w in plan}
        trends = by_type[RequestType.INDUSTRY_TRENDS]
        assert trends.category == ResearchCategory.TECHNOLOGY
        assert (trends.language, trends.region) == ("en", "global")
        insights = by_type[RequestType.CUSTOMER_INSIGHTS]
        assert insights.category == ResearchCategory.CONSUMER_BEHAVIOR
        assert (insights.language, insights.region) == ("ja", "japan")

    def test_unit_cost_becomes_estimate(self, planner, idea):
        plan = planner.plan(make_draft(confidence=3), idea, PlanConstraints(unit_cost=10))
        assert all(w.estimated_cost == 10 for w in plan)

    def test_deterministic(self, planner, idea):
        draft = make_draft(market=Confidence.LOW, competitors=[], confidence=4)
        first = [(w.request_type, w.query, w.priority) for w in planner.plan(draft, idea)]
        second = [(w.request_type, w.query, w.priority) for w in planner.plan(draft, idea)]
        assert first == second


class TestSuggestions:

    def test_duplicate_suggestion_is_dropped(self, planner, idea):
        draft = make_draft(competitors=["A"], suggested=[{
            "request_type": "competitor_info",
            "specific_query": f"  {idea.target_market}   {idea.proposed_solution} 競合 ",
            "priority": "high",
        }])
        plan = planner.plan(draft, idea)
        assert len(plan) == 1

    def test_suggestion_appended_with_priority(self, planner, idea):
        draft = make_draft(suggested=[
            {"request_type": "regulatory_info", "specific_query": "資金決済法 改正", "priority": "low"},
            {"request_type": "market_data", "specific_query": "給与天引き 貯蓄 市場", "priority": "high"},
        ])
        plan = planner.plan(draft, idea)
        assert [w.query for w in plan] == ["給与天引き 貯蓄 市場", "資金決済法 改正"]
        assert plan[1].category == ResearchCategory.REGULATION

    def test_unknown_type_is_skipped(self, planner, idea):
        draft = make_draft(suggested=[{"request_type": "weather", "specific_query": "rain"}])
        assert planner.plan(draft, idea) == []

    def test_missing_priority_defaults_to_medium(self, planner, idea):
        draft = make_draft(suggested=[{"request_type": "industry_trends", "specific_query": "x"}])
        assert planner.plan(draft, idea)[0].priority == Priority.MEDIUM


class TestDependencies:

    def test_independent_items_form_one_wave(self, planner, idea):
        plan = planner.plan(make_draft(confidence=3), idea)
        waves = GapPlanner.order_by_dependencies(plan)
        assert len(waves) == 1
        assert waves[0] == plan

    def test_dependencies_become_waves(self, make_item):
        a = make_item(query="a")
        b = make_item(query="b", depends_on=[a.id])
        c = make_item(query="c", depends_on=[b.id, "outside"])
        waves = GapPlanner.order_by_dependencies([c, b, a])
        assert [[w.query for w in wave] for wave in waves] == [["a"], ["b"], ["c"]]

    def test_cycle_raises(self, make_item):
        a = make_item(query="a")
        b = make_item(query="b", depends_on=[a.id])
        a.depends_on.append(b.id)
        free = make_item(query="free")
        with pytest.raises(PlanningCycleError) as excinfo:
            GapPlanner.order_by_dependencies([a, b, free])
        assert excinfo.value.cycle_ids == sorted([a.id, b.id])
