"""
Knowledge Aggregator - merges task results into one enrichment summary.

Pure: no external calls, no mutation of work items or hits.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Sequence, Tuple

from opportunity_engine.agents.models import Confidence, ResearchCategory, SearchHit, TaskResult

SIMILARITY_THRESHOLD = 0.8
SAME_URL_SIMILARITY = 0.95
TITLE_WEIGHT = 0.7
CONTENT_WEIGHT = 0.3
KEY_FINDINGS_PER_CATEGORY = 5


def jaccard_similarity(text1: str, text2: str) -> float:
    words1 = set(text1.lower().split())
    words2 = set(text2.lower().split())
    union = words1 | words2
    return len(words1 & words2) / len(union) if union else 0.0


def hit_similarity(a: SearchHit, b: SearchHit) -> float:
    if a.url and b.url and a.url == b.url:
        return SAME_URL_SIMILARITY
    return (jaccard_similarity(a.title, b.title) * TITLE_WEIGHT
            + jaccard_similarity(a.snippet, b.snippet) * CONTENT_WEIGHT)


@dataclass
class CategorySummary:
    category: str
    total_hits: int
    key_findings: List[str]
    source_breakdown: Dict[str, int]
    confidence: Confidence
    hits: List[SearchHit] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "category": self.category,
            "total_hits": self.total_hits,
            "key_findings": list(self.key_findings),
            "source_breakdown": dict(self.source_breakdown),
            "confidence": self.confidence.value,
        }


@dataclass
class EnrichmentSummary:
    categories: Dict[str, CategorySummary]
    total_hits: int
    unique_hits: int
    deduplication_rate: float
    information_gaps: List[str]
    failure_notes: List[str]
    from_cache: int
    degraded: int

    @property
    def is_empty(self) -> bool:
        return self.unique_hits == 0

    def to_dict(self) -> Dict:
        return {
            "categories": {k: v.to_dict() for k, v in self.categories.items()},
            "total_hits": self.total_hits,
            "unique_hits": self.unique_hits,
            "deduplication_rate": self.deduplication_rate,
            "information_gaps": list(self.information_gaps),
            "failure_notes": list(self.failure_notes),
            "from_cache": self.from_cache,
            "degraded": self.degraded,
        }

    def to_prompt_text(self, max_hits_per_category: int = 5) -> str:
        """Render the summary as context for report generation."""
        lines = []
        for name, summary in self.categories.items():
            if not summary.hits:
                continue
            lines.append(f"## {name} ({summary.confidence.value} confidence, {summary.total_hits} sources)")
            for hit in summary.hits[:max_hits_per_category]:
                snippet = f": {hit.snippet}" if hit.snippet else ""
                lines.append(f"- {hit.title}{snippet} [{hit.source or hit.url}]")
        if self.information_gaps:
            lines.append(f"No data found for: {', '.join(self.information_gaps)}")
        return "\n".join(lines) if lines else "No additional research available."


def deduplicate(hits: Sequence[SearchHit]) -> List[SearchHit]:
    """Keep the first of any group of hits more than 80% similar."""
    unique: List[SearchHit] = []
    for hit in hits:
        if all(hit_similarity(hit, kept) <= SIMILARITY_THRESHOLD for kept in unique):
            unique.append(hit)
    return unique


def merge(results: Sequence[TaskResult]) -> EnrichmentSummary:
    """Merge task results across categories into one EnrichmentSummary."""
    tagged: List[Tuple[str, SearchHit]] = []
    requested: List[str] = []
    failure_notes: List[str] = []

    for result in results:
        category = result.item.category.value
        if category not in requested:
            requested.append(category)
        if result.failure_note:
            failure_notes.append(f"{result.item.query}: {result.failure_note}")
        tagged.extend((category, hit) for hit in result.hits)

    kept_hits = deduplicate([hit for _, hit in tagged])
    kept_ids = {id(hit) for hit in kept_hits}

    by_category: Dict[str, List[SearchHit]] = {}
    for category, hit in tagged:
        if id(hit) in kept_ids:
            kept_ids.discard(id(hit))
            by_category.setdefault(category, []).append(hit)

    categories: Dict[str, CategorySummary] = {}
    for category in [c.value for c in ResearchCategory]:
        if category not in requested:
            continue
        hits = by_category.get(category, [])
        sources: Dict[str, int] = {}
        for hit in hits:
            sources[hit.source or "unknown"] = sources.get(hit.source or "unknown", 0) + 1
        categories[category] = CategorySummary(
            category=category,
            total_hits=len(hits),
            key_findings=[h.title for h in hits[:KEY_FINDINGS_PER_CATEGORY]],
            source_breakdown=sources,
            confidence=Confidence.for_hit_count(len(hits)),
            hits=hits,
        )

    total = len(tagged)
    unique = sum(s.total_hits for s in categories.values())
    return EnrichmentSummary(
        categories=categories,
        total_hits=total,
        unique_hits=unique,
        deduplication_rate=(total - unique) / total * 100 if total else 0.0,
        information_gaps=[c for c, s in categories.items() if s.total_hits == 0],
        failure_notes=failure_notes,
        from_cache=sum(1 for r in results if r.from_cache),
        degraded=sum(1 for r in results if r.degraded),
    )
