"""
Caching Layer - category-aware research cache.

In-memory cache for web lookup results keyed by
(category, normalized query, language, region). Freshness is set per
category, volatile "real-time" categories get a quartered TTL, and
capacity is bounded by estimated payload size rather than entry count.
"""

import asyncio
import json
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from opportunity_engine.agents.models import ResearchCategory
from opportunity_engine.config.settings import DEFAULT_CATEGORY_TTL

logger = logging.getLogger(__name__)

REAL_TIME_TTL_DIVISOR = 4
MAX_ENTRY_FRACTION = 0.1


@dataclass
class CacheEntry:
    key: str
    category: str
    payload: Any
    created_at: float
    expires_at: float
    last_access: float
    priority: float
    size: int
    order: int
    hits: int = 0

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def to_dict(self) -> Dict:
        return {
            'key': self.key,
            'category': self.category,
            'payload': self.payload,
            'created_at': self.created_at,
            'expires_at': self.expires_at,
            'last_access': self.last_access,
            'priority': self.priority,
            'size': self.size,
            'hits': self.hits,
        }


def _category_value(category) -> str:
    return category.value if isinstance(category, ResearchCategory) else str(category)


def normalize_query(query: str) -> str:
    return " ".join((query or "").lower().split())


class ResearchCache:
    """
    Size-bounded research cache with per-category TTL.

    Eviction removes the least protected entry first, scored as
    (seconds since last access) / priority. All state changes happen
    under one lock so concurrent workers can share an instance.
    """

    def __init__(self, max_size: int = 100 * 1024 * 1024,
                 default_ttl: int = 3600,
                 category_ttl: Dict[str, int] = None,
                 real_time_categories: Iterable = None,
                 clock: Callable[[], float] = time.time):
        self.max_size = max_size
        self.default_ttl = default_ttl
        self.category_ttl: Dict[str, int] = dict(DEFAULT_CATEGORY_TTL)
        if category_ttl:
            self.category_ttl.update({_category_value(k): v for k, v in category_ttl.items()})
        if real_time_categories is None:
            real_time_categories = [ResearchCategory.INVESTMENT, ResearchCategory.MACROECONOMICS]
        self.real_time_categories = {_category_value(c) for c in real_time_categories}
        self._clock = clock

        self._entries: Dict[str, CacheEntry] = {}
        self._total_size = 0
        self._insert_counter = 0
        self._lock = threading.RLock()

        self.hit_count = 0
        self.miss_count = 0
        self.eviction_count = 0
        self.expired_count = 0
        self.rejected_count = 0
        self.last_cleaned = datetime.now().isoformat()

        self._sweeper: Optional[asyncio.Task] = None

    def _make_key(self, category, query: str, language: str, region: str) -> str:
        """Generate cache key from lookup parameters."""
        return f"{_category_value(category)}:{language}:{region}:{normalize_query(query)}"

    def _estimate_size(self, payload: Any) -> int:
        return len(json.dumps(payload, default=str, ensure_ascii=False)) * 2

    def effective_ttl(self, category) -> float:
        """TTL actually applied to new entries of this category."""
        value = _category_value(category)
        ttl = self.category_ttl.get(value, self.default_ttl)
        if value in self.real_time_categories:
            ttl = ttl / REAL_TIME_TTL_DIVISOR
        return ttl

    # ==================== Lookup ====================

    def get(self, category, query: str, language: str, region: str) -> Optional[Any]:
        """Return the cached payload, or None on a miss or expired entry."""
        key = self._make_key(category, query, language, region)
        with self._lock:
            entry = self._entries.get(key)
            now = self._clock()

            if entry is None:
                self.miss_count += 1
                return None

            if entry.is_expired(now):
                self._remove(key)
                self.expired_count += 1
                self.miss_count += 1
                return None

            entry.last_access = now
            entry.hits += 1
            self.hit_count += 1
            return entry.payload

    def set(self, category, query: str, language: str, region: str,
            payload: Any, priority: float = 5) -> bool:
        """
        Store a payload. Returns False when the entry is rejected for
        being larger than a tenth of the total capacity.
        """
        key = self._make_key(category, query, language, region)
        size = self._estimate_size(payload)

        if size > self.max_size * MAX_ENTRY_FRACTION:
            with self._lock:
                self.rejected_count += 1
            logger.warning(f"Cache entry too large: {size} bytes ({key})")
            return False

        with self._lock:
            now = self._clock()
            if key in self._entries:
                self._remove(key)
            self._ensure_capacity(size, now)

            self._insert_counter += 1
            self._entries[key] = CacheEntry(
                key=key,
                category=_category_value(category),
                payload=payload,
                created_at=now,
                expires_at=now + self.effective_ttl(category),
                last_access=now,
                priority=priority if priority and priority > 0 else 1,
                size=size,
                order=self._insert_counter,
            )
            self._total_size += size
        return True

    def _remove(self, key: str):
        entry = self._entries.pop(key, None)
        if entry is not None:
            self._total_size -= entry.size

    def _ensure_capacity(self, new_size: int, now: float):
        """Evict least protected entries until new_size fits."""
        target = self.max_size - new_size
        while self._total_size > target and self._entries:
            victim = max(
                self._entries.values(),
                key=lambda e: ((now - e.last_access) / e.priority, -e.order)
            )
            self._remove(victim.key)
            self.eviction_count += 1
            logger.debug(f"Evicted cache entry {victim.key}")

    # ==================== Invalidation ====================

    def invalidate(self, category, query: str, language: str, region: str) -> bool:
        key = self._make_key(category, query, language, region)
        with self._lock:
            existed = key in self._entries
            self._remove(key)
            return existed

    def invalidate_category(self, category) -> int:
        value = _category_value(category)
        with self._lock:
            keys = [k for k, e in self._entries.items() if e.category == value]
            for key in keys:
                self._remove(key)
        logger.info(f"Invalidated {len(keys)} entries for category: {value}")
        return len(keys)

    def update_ttl(self, category, ttl: int):
        with self._lock:
            self.category_ttl[_category_value(category)] = ttl

    def set_real_time_categories(self, categories: Iterable):
        with self._lock:
            self.real_time_categories = {_category_value(c) for c in categories}

    # ==================== Maintenance ====================

    def purge_expired(self) -> int:
        """Remove expired cache entries."""
        with self._lock:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                self._remove(key)
            self.expired_count += len(expired)
            self.last_cleaned = datetime.now().isoformat()
        if expired:
            logger.info(f"Cache cleanup: removed {len(expired)} expired entries")
        return len(expired)

    def start_sweeper(self, interval: float = 300.0) -> asyncio.Task:
        """Purge expired entries every `interval` seconds on the running loop."""
        if self._sweeper is not None and not self._sweeper.done():
            return self._sweeper

        async def _sweep():
            while True:
                await asyncio.sleep(interval)
                self.purge_expired()

        self._sweeper = asyncio.get_running_loop().create_task(_sweep())
        return self._sweeper

    async def stop_sweeper(self):
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    def get_stats(self) -> Dict:
        """Get cache statistics."""
        with self._lock:
            lookups = self.hit_count + self.miss_count
            return {
                'total_entries': len(self._entries),
                'total_size': self._total_size,
                'max_size': self.max_size,
                'hit_count': self.hit_count,
                'miss_count': self.miss_count,
                'eviction_count': self.eviction_count,
                'expired_count': self.expired_count,
                'rejected_count': self.rejected_count,
                'hit_rate': self.hit_count / lookups if lookups else 0.0,
                'last_cleaned': self.last_cleaned,
            }

    def usage_details(self, top_n: int = 10) -> Dict:
        """Size usage, per-category counts and the most-hit entries."""
        with self._lock:
            now = self._clock()
            breakdown = {c.value: 0 for c in ResearchCategory}
            entries = []
            for key, entry in self._entries.items():
                breakdown[entry.category] = breakdown.get(entry.category, 0) + 1
                entries.append({
                    'key': key,
                    'hits': entry.hits,
                    'size': entry.size,
                    'age': now - entry.created_at,
                })
            entries.sort(key=lambda e: e['hits'], reverse=True)
            return {
                'total_size': self._total_size,
                'max_size': self.max_size,
                'usage_percent': self._total_size / self.max_size * 100,
                'entry_count': len(self._entries),
                'category_breakdown': breakdown,
                'top_entries': entries[:top_n],
            }

    def export(self) -> List[Dict]:
        """Snapshot of all entries, for backup."""
        with self._lock:
            return [entry.to_dict() for entry in self._entries.values()]

    def import_entries(self, data: List[Dict]) -> int:
        """Restore entries from `export`, skipping expired ones."""
        imported = 0
        with self._lock:
            now = self._clock()
            for raw in data:
                if now > raw['expires_at']:
                    continue
                if raw['key'] in self._entries:
                    self._remove(raw['key'])
                self._ensure_capacity(raw['size'], now)
                self._insert_counter += 1
                self._entries[raw['key']] = CacheEntry(
                    key=raw['key'],
                    category=raw['category'],
                    payload=raw['payload'],
                    created_at=raw['created_at'],
                    expires_at=raw['expires_at'],
                    last_access=raw.get('last_access', raw['created_at']),
                    priority=raw.get('priority', 5) or 1,
                    size=raw['size'],
                    order=self._insert_counter,
                    hits=raw.get('hits', 0),
                )
                self._total_size += raw['size']
                imported += 1
        return imported

    def clear_all(self):
        """Clear all entries and counters."""
        with self._lock:
            self._entries.clear()
            self._total_size = 0
            self.hit_count = 0
            self.miss_count = 0
            self.eviction_count = 0
            self.expired_count = 0
            self.rejected_count = 0
            self.last_cleaned = datetime.now().isoformat()

    def __len__(self):
        return len(self._entries)
