from .llm_client import LLMClient, parse_structured
from .cache_layer import ResearchCache
from .budget_ledger import BudgetLedger

__all__ = [
    'LLMClient',
    'parse_structured',
    'ResearchCache',
    'BudgetLedger',
]
