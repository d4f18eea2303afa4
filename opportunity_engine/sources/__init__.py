from .web_search import WebSearchClient, SerperSearch, GoogleNewsRSS

__all__ = [
    'WebSearchClient',
    'SerperSearch',
    'GoogleNewsRSS',
]
