"""
Shared fixtures: simulated clocks, scripted generators and search clients.
"""

import asyncio
import json
from datetime import datetime, timedelta

import pytest

from opportunity_engine.agents.models import (
    Idea, Priority, RequestType, ResearchCategory, SearchHit, WorkItem,
)


class FakeClock:
    """Monotonic-style clock advanced by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeDateClock:
    """datetime clock advanced by hand."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakeSearch:
    """Search client returning canned hits; records every call."""

    def __init__(self, name="serper", cost_source="serper", hits_per_query=3,
                 fail_on=(), delay=0.0):
        self.name = name
        self.cost_source = cost_source
        self.hits_per_query = hits_per_query
        self.fail_on = set(fail_on)
        self.delay = delay
        self.calls = []
        self.active = 0
        self.max_active = 0

    async def search(self, query, language, region):
        self.calls.append((query, language, region))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if query in self.fail_on:
                raise ConnectionError(f"provider error for {query}")
            return [
                SearchHit(
                    title=f"{query} result {i}",
                    url=f"https://example.com/{abs(hash(query))}/{i}",
                    snippet=f"finding {i} about {query}",
                    source=self.name,
                )
                for i in range(self.hits_per_query)
            ]
        finally:
            self.active -= 1


GOOD_SECTION = """# Heading

## Market

The market is worth 1,200億円 with 15% annual growth since 2020 and 3 million users.

- Validate demand through 20 customer interviews in month 1
- Launch a pilot with 3 partners in month 2
- Build the MVP and test pricing at 5,000円 per month
- Hire a sales lead in month 4

| Metric | Value |
|---|---|
| TAM | 1,200億円 |
"""


class ScriptedGenerator:
    """
    Text generator answering by prompt type.

    Structured prompts (analysis, gap analysis, critique) get JSON;
    section prompts get `section_text`.
    """

    def __init__(self, section_text=GOOD_SECTION, analysis=None, gaps=None,
                 critique=None, revised_text=None):
        self.section_text = section_text
        self.revised_text = revised_text or section_text
        self.analysis = analysis if analysis is not None else {
            "sections": {
                "market": {"content": "Market is large", "confidence": "low", "completeness": 40},
                "competition": {"content": "Few known players", "confidence": "medium", "completeness": 50},
                "risk": {"content": "Regulatory risk", "confidence": "high", "completeness": 70},
            },
            "competitors": ["A Corp"],
            "key_figures": {"tam": 120000000000, "sam": None, "som": None},
            "risk_factors": ["regulation", "adoption"],
            "overall_confidence": 5,
        }
        self.gaps = gaps if gaps is not None else {"research_needs": []}
        self.critique = critique
        self.prompts = []

    async def generate(self, prompt):
        self.prompts.append(prompt)
        if prompt.startswith("Analyze this business idea"):
            return json.dumps(self.analysis)
        if prompt.startswith("Review this initial analysis"):
            return json.dumps(self.gaps)
        if prompt.startswith("You are a strict reviewer"):
            if callable(self.critique):
                return self.critique(prompt)
            return self.critique or "not json"
        if prompt.startswith("Revise this section"):
            return self.revised_text
        return self.section_text


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def idea():
    return Idea(
        title="Fintech savings app",
        target_market="fintech japan",
        problem_statement="Young workers in Japan do not save consistently",
        proposed_solution="Automated round-up savings linked to payroll",
        business_model="Subscription plus employer licensing",
    )


@pytest.fixture
def make_item():
    def _make(query="fintech japan", category=ResearchCategory.MARKET_TRENDS,
              priority=Priority.MEDIUM, request_type=RequestType.MARKET_DATA,
              language="ja", region="japan", **kwargs):
        return WorkItem(
            request_type=request_type,
            category=category,
            query=query,
            priority=priority,
            language=language,
            region=region,
            **kwargs,
        )
    return _make
