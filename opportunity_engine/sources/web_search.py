"""
Web lookup sources.

SerperSearch is the paid Google search API; GoogleNewsRSS is the free
tier used when the budget refuses a paid call. Both raise on transport
or HTTP errors; the executor turns failures into degraded results.
"""

import logging
import xml.etree.ElementTree as ET
from typing import List, Optional, Protocol

import aiohttp

from opportunity_engine.agents.models import SearchHit
from opportunity_engine.config.settings import settings

logger = logging.getLogger(__name__)

REGION_CODES = {
    "japan": "jp",
    "jp": "jp",
    "global": "us",
    "us": "us",
    "usa": "us",
    "uk": "gb",
}


def region_code(region: str) -> str:
    return REGION_CODES.get((region or "").lower(), "us")


class WebSearchClient(Protocol):
    """search(query, language, region) -> ranked hits"""

    name: str
    cost_source: str

    async def search(self, query: str, language: str, region: str) -> List[SearchHit]:
        ...


class SerperSearch:
    """Google search through serper.dev (paid per request)."""

    BASE_URL = "https://google.serper.dev/search"
    name = "serper"
    cost_source = "serper"

    def __init__(self, api_key: Optional[str] = None, num_results: int = 10,
                 timeout: float = None):
        self.api_key = api_key or settings.SERPER_API_KEY
        self.num_results = num_results
        self.timeout = aiohttp.ClientTimeout(total=timeout or settings.LOOKUP_TIMEOUT_SECONDS)

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    async def search(self, query: str, language: str = "ja",
                     region: str = "japan") -> List[SearchHit]:
        if not self.api_key:
            raise RuntimeError("SERPER_API_KEY is not configured")

        payload = {
            "q": query,
            "gl": region_code(region),
            "hl": language,
            "num": self.num_results,
        }
        headers = {"X-API-KEY": self.api_key, "Content-Type": "application/json"}

        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.post(self.BASE_URL, json=payload, headers=headers) as resp:
                resp.raise_for_status()
                data = await resp.json()

        return self._parse(data)

    def _parse(self, data: dict) -> List[SearchHit]:
        hits = []
        for item in data.get("organic", []):
            hits.append(SearchHit(
                title=item.get("title", ""),
                url=item.get("link", ""),
                snippet=item.get("snippet", ""),
                source=self.name,
                published_at=item.get("date", ""),
            ))
        for item in data.get("news", []):
            hits.append(SearchHit(
                title=item.get("title", ""),
                url=item.get("link", ""),
                snippet=item.get("snippet", ""),
                source=item.get("source", self.name),
                published_at=item.get("date", ""),
            ))
        return hits


class GoogleNewsRSS:
    """Google News RSS search (free)."""

    BASE_URL = "https://news.google.com/rss/search"
    name = "google_news_rss"
    cost_source = "google_news_rss"

    def __init__(self, max_items: int = 10, timeout: float = None):
        self.max_items = max_items
        self.timeout = aiohttp.ClientTimeout(total=timeout or settings.LOOKUP_TIMEOUT_SECONDS)

    async def search(self, query: str, language: str = "ja",
                     region: str = "japan") -> List[SearchHit]:
        country = region_code(region).upper()
        params = {
            "q": query,
            "hl": language,
            "gl": country,
            "ceid": f"{country}:{language}",
        }
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.get(self.BASE_URL, params=params) as resp:
                resp.raise_for_status()
                text = await resp.text()

        return self.parse_feed(text)

    def parse_feed(self, xml_text: str) -> List[SearchHit]:
        root = ET.fromstring(xml_text)
        hits = []
        for item in root.iter("item"):
            source_el = item.find("source")
            hits.append(SearchHit(
                title=(item.findtext("title") or "").strip(),
                url=(item.findtext("link") or "").strip(),
                snippet=(item.findtext("description") or "").strip(),
                source=source_el.text.strip() if source_el is not None and source_el.text else self.name,
                published_at=(item.findtext("pubDate") or "").strip(),
            ))
            if len(hits) >= self.max_items:
                break
        return hits
