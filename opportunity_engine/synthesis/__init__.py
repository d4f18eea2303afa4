from .knowledge_aggregator import EnrichmentSummary, merge

__all__ = [
    'EnrichmentSummary',
    'merge',
]
