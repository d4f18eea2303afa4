from .quality_evaluator import QualityEvaluator, HeuristicScorer

__all__ = [
    'QualityEvaluator',
    'HeuristicScorer',
]
