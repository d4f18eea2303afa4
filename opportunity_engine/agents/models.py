"""
Data Models for the Opportunity Report pipeline.
"""

import itertools
import uuid
from dataclasses import dataclass, field, asdict
from typing import List, Dict, Optional, Any
from datetime import datetime
from enum import Enum

from opportunity_engine.errors import InvalidTransitionError


class ResearchCategory(Enum):
    MARKET_TRENDS = "market_trends"
    TECHNOLOGY = "technology"
    INVESTMENT = "investment"
    REGULATION = "regulation"
    CONSUMER_BEHAVIOR = "consumer_behavior"
    COMPETITION = "competition"
    MACROECONOMICS = "macroeconomics"


class RequestType(Enum):
    MARKET_DATA = "market_data"
    COMPETITOR_INFO = "competitor_info"
    INDUSTRY_TRENDS = "industry_trends"
    REGULATORY_INFO = "regulatory_info"
    CUSTOMER_INSIGHTS = "customer_insights"


class Priority(Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def tier(self) -> int:
        return {Priority.HIGH: 3, Priority.MEDIUM: 2, Priority.LOW: 1}[self]

    @property
    def cache_weight(self) -> int:
        return {Priority.HIGH: 8, Priority.MEDIUM: 5, Priority.LOW: 2}[self]


class Confidence(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @classmethod
    def for_hit_count(cls, count: int) -> "Confidence":
        if count >= 5:
            return cls.HIGH
        if count >= 2:
            return cls.MEDIUM
        return cls.LOW


class WorkItemStatus(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


_ALLOWED_TRANSITIONS = {
    WorkItemStatus.PENDING: {WorkItemStatus.IN_PROGRESS, WorkItemStatus.FAILED},
    WorkItemStatus.IN_PROGRESS: {WorkItemStatus.COMPLETED, WorkItemStatus.FAILED},
    WorkItemStatus.COMPLETED: set(),
    WorkItemStatus.FAILED: set(),
}

_sequence = itertools.count()


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


@dataclass
class Idea:
    """Business idea handed over by the ideation stage"""
    title: str
    target_market: str
    problem_statement: str
    proposed_solution: str
    business_model: str
    id: str = field(default_factory=lambda: new_id("idea"))

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class WorkItem:
    """A single bounded follow-up lookup produced by gap planning"""
    request_type: RequestType
    category: ResearchCategory
    query: str
    priority: Priority = Priority.MEDIUM
    language: str = "ja"
    region: str = "japan"
    estimated_cost: float = 0.0
    justification: str = ""
    depends_on: List[str] = field(default_factory=list)
    id: str = field(default_factory=lambda: new_id("item"))
    status: WorkItemStatus = WorkItemStatus.PENDING
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())
    sequence: int = field(default_factory=lambda: next(_sequence))

    @property
    def is_terminal(self) -> bool:
        return self.status in (WorkItemStatus.COMPLETED, WorkItemStatus.FAILED)

    def transition(self, new_status: WorkItemStatus):
        if new_status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"{self.id}: {self.status.value} -> {new_status.value} not allowed"
            )
        self.status = new_status

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "request_type": self.request_type.value,
            "category": self.category.value,
            "query": self.query,
            "priority": self.priority.value,
            "language": self.language,
            "region": self.region,
            "estimated_cost": self.estimated_cost,
            "justification": self.justification,
            "depends_on": list(self.depends_on),
            "status": self.status.value,
            "created_at": self.created_at,
        }


@dataclass
class SearchHit:
    """One ranked web lookup result"""
    title: str
    url: str = ""
    snippet: str = ""
    source: str = ""
    published_at: str = ""

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> "SearchHit":
        return cls(
            title=data.get("title", ""),
            url=data.get("url", ""),
            snippet=data.get("snippet", ""),
            source=data.get("source", ""),
            published_at=data.get("published_at", ""),
        )


@dataclass
class TaskResult:
    """Outcome of one work item; degraded results keep batch cardinality"""
    item: WorkItem
    hits: List[SearchHit] = field(default_factory=list)
    confidence: Confidence = Confidence.LOW
    from_cache: bool = False
    cost: float = 0.0
    source_name: str = ""
    degraded: bool = False
    failure_note: Optional[str] = None
    elapsed_ms: float = 0.0

    def to_dict(self) -> Dict:
        return {
            "item": self.item.to_dict(),
            "hits": [h.to_dict() for h in self.hits],
            "confidence": self.confidence.value,
            "from_cache": self.from_cache,
            "cost": self.cost,
            "source_name": self.source_name,
            "degraded": self.degraded,
            "failure_note": self.failure_note,
            "elapsed_ms": self.elapsed_ms,
        }


class SectionKind(Enum):
    OVERVIEW = "overview"
    TARGET_AND_PROBLEM = "target_and_problem"
    SOLUTION_AND_MODEL = "solution_and_model"
    MARKET_AND_COMPETITION = "market_and_competition"
    STRATEGIC_FIT = "strategic_fit"
    VALIDATION_ACTIONS = "validation_actions"
    RISKS = "risks"


SECTION_TITLES = {
    SectionKind.OVERVIEW: "Overview",
    SectionKind.TARGET_AND_PROBLEM: "Target Customers & Problems",
    SectionKind.SOLUTION_AND_MODEL: "Solution Hypothesis & Business Model",
    SectionKind.MARKET_AND_COMPETITION: "Market Size & Competition",
    SectionKind.STRATEGIC_FIT: "Strategic Fit",
    SectionKind.VALIDATION_ACTIONS: "Validation Actions",
    SectionKind.RISKS: "Risks",
}


@dataclass
class Section:
    """A generated section of a draft or report"""
    kind: str
    title: str
    content: str
    completeness_score: float = 0.0  # 0-100
    confidence: Confidence = Confidence.MEDIUM
    data_sources: List[str] = field(default_factory=list)
    id: str = field(default_factory=lambda: new_id("section"))
    last_updated: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "kind": self.kind,
            "title": self.title,
            "content": self.content,
            "completeness_score": self.completeness_score,
            "confidence": self.confidence.value,
            "data_sources": list(self.data_sources),
            "last_updated": self.last_updated,
        }


@dataclass
class AnalysisDraft:
    """Initial analysis pass; its weaknesses drive gap planning"""
    sections: Dict[str, Section] = field(default_factory=dict)
    competitors: List[str] = field(default_factory=list)
    key_figures: Dict[str, Optional[float]] = field(default_factory=dict)
    overall_confidence: float = 5.0  # 1-10
    risk_factors: List[str] = field(default_factory=list)
    suggested_research: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "sections": {k: s.to_dict() for k, s in self.sections.items()},
            "competitors": list(self.competitors),
            "key_figures": dict(self.key_figures),
            "overall_confidence": self.overall_confidence,
            "risk_factors": list(self.risk_factors),
        }


@dataclass(frozen=True)
class SectionScore:
    section: str
    score: float
    criteria: Dict[str, float]
    feedback: str = ""

    def to_dict(self) -> Dict:
        return {
            "section": self.section,
            "score": self.score,
            "criteria": dict(self.criteria),
            "feedback": self.feedback,
        }


@dataclass(frozen=True)
class QualityAssessment:
    """One evaluation pass; immutable once produced"""
    overall_score: float
    section_scores: tuple
    passed: bool
    threshold: float
    weights: tuple
    improvement_notes: tuple = ()
    assessed_at: str = field(default_factory=lambda: datetime.now().isoformat())

    def score_for(self, section: str) -> Optional[SectionScore]:
        for score in self.section_scores:
            if score.section == section:
                return score
        return None

    def to_dict(self) -> Dict:
        return {
            "overall_score": self.overall_score,
            "section_scores": [s.to_dict() for s in self.section_scores],
            "passed": self.passed,
            "threshold": self.threshold,
            "weights": dict(self.weights),
            "improvement_notes": list(self.improvement_notes),
            "assessed_at": self.assessed_at,
        }


@dataclass
class ChangeRecord:
    section: str
    change_type: str
    old_excerpt: str
    new_excerpt: str
    reason: str

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class RevisionRecord:
    """Append-only history entry for one revision round"""
    revision_number: int
    trigger_reason: str
    sections_touched: List[str]
    before_score: float
    after_score: Optional[float] = None
    changes: List[ChangeRecord] = field(default_factory=list)
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> Dict:
        return {
            "revision_number": self.revision_number,
            "trigger_reason": self.trigger_reason,
            "sections_touched": list(self.sections_touched),
            "before_score": self.before_score,
            "after_score": self.after_score,
            "changes": [c.to_dict() for c in self.changes],
            "created_at": self.created_at,
        }


@dataclass
class Report:
    """The business-opportunity report being generated and revised"""
    idea: Idea
    sections: List[Section] = field(default_factory=list)
    revision_history: List[RevisionRecord] = field(default_factory=list)
    quality_assessment: Optional[QualityAssessment] = None
    final_score: float = 0.0
    id: str = field(default_factory=lambda: new_id("report"))
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())
    last_updated: str = field(default_factory=lambda: datetime.now().isoformat())

    def section(self, kind: str) -> Optional[Section]:
        for section in self.sections:
            if section.kind == kind:
                return section
        return None

    def replace_section(self, new_section: Section):
        for i, section in enumerate(self.sections):
            if section.kind == new_section.kind:
                self.sections[i] = new_section
                self.last_updated = datetime.now().isoformat()
                return
        raise KeyError(new_section.kind)

    @property
    def word_count(self) -> int:
        return sum(len(s.content) for s in self.sections)

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "idea": self.idea.to_dict(),
            "sections": [s.to_dict() for s in self.sections],
            "revision_history": [r.to_dict() for r in self.revision_history],
            "quality_assessment": (
                self.quality_assessment.to_dict() if self.quality_assessment else None
            ),
            "final_score": self.final_score,
            "word_count": self.word_count,
            "created_at": self.created_at,
            "last_updated": self.last_updated,
        }
