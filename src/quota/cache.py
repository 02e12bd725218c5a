import hashlib
import json
import logging
import threading
from collections import OrderedDict
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from .models import CacheEntry, CacheKeyParams, utcnow

logger = logging.getLogger(__name__)

# TTLs (seconds) by query category
TTL_MARKET_DATA = 5 * 60
TTL_COMPANY_INFO = 24 * 60 * 60
TTL_FINANCIAL_METRICS = 12 * 60 * 60
TTL_NEWS = 30 * 60
TTL_DEFAULT = 60 * 60

DEFAULT_MAX_ENTRIES = 1000

_TTL_RULES = [
    (("market", "stock price", "current price", "trending"), TTL_MARKET_DATA),
    (("company", "business", "corporation", "enterprise"), TTL_COMPANY_INFO),
    (("financial", "revenue", "profit", "earnings", "balance sheet"), TTL_FINANCIAL_METRICS),
    (("news", "recent", "announcement", "published"), TTL_NEWS),
]


def ttl_for_query(text: Optional[str]) -> int:
    """Pick a freshness window from the wording of a query."""
    lowered = (text or "").lower()
    for words, ttl in _TTL_RULES:
        if any(w in lowered for w in words):
            return ttl
    return TTL_DEFAULT


def derive_cache_key(
    endpoint: str,
    model: str,
    params: Optional[CacheKeyParams] = None,
    messages: Optional[Sequence[Dict[str, Any]]] = None,
    temperature: Optional[float] = None,
    max_tokens: Optional[int] = None,
) -> str:
    """Build a stable cache key for a request.

    With ``params`` the key covers endpoint, model and the normalized
    topic/category/limit/offset. Without them the full prompt (messages,
    temperature, max_tokens) is hashed instead.
    """
    if params is not None:
        if not isinstance(params, CacheKeyParams):
            params = CacheKeyParams.model_validate(params)
        material: Dict[str, Any] = {
            "endpoint": endpoint,
            "model": model,
            "params": params.model_dump(),
        }
        prefix = "q"
    else:
        material = {
            "endpoint": endpoint,
            "model": model,
            "messages": list(messages or []),
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        prefix = "p"
    raw = json.dumps(material, sort_keys=True, separators=(",", ":"), default=str)
    return f"{prefix}:{hashlib.sha256(raw.encode('utf-8')).hexdigest()}"


class ResponseCache:
    """In-memory response cache with per-entry TTL.

    Expiry is lazy: a stale entry is reported as a miss by ``get`` but stays
    stored (and reachable through ``get_stale``) until overwritten, purged or
    invalidated. Once ``max_entries`` is exceeded, expired entries are purged
    first, then the least recently stored ones are evicted.
    """

    def __init__(
        self,
        default_ttl_seconds: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None,
        max_entries: int = DEFAULT_MAX_ENTRIES,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self._default_ttl = default_ttl_seconds
        self._max_entries = max_entries
        self._clock = clock or utcnow
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def get(self, key: str) -> Optional[Any]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or not entry.is_fresh(now):
                self._misses += 1
                return None
            self._hits += 1
            return entry.payload

    def get_stale(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
        return entry.payload if entry is not None else None

    def put(self, key: str, payload: Any, ttl_seconds: Optional[float] = None) -> Optional[CacheEntry]:
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        if ttl is None:
            ttl = TTL_DEFAULT
        if ttl <= 0:
            return None
        with self._lock:
            now = self._clock()
            entry = CacheEntry(key=key, payload=payload, stored_at=now, ttl_seconds=ttl)
            self._entries[key] = entry
            self._entries.move_to_end(key)
            if len(self._entries) > self._max_entries:
                self._evict(now)
        return entry

    def _evict(self, now: datetime) -> None:
        # caller holds the lock
        for k in [k for k, e in self._entries.items() if not e.is_fresh(now)]:
            del self._entries[k]
        evicted = 0
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)
            evicted += 1
        if evicted:
            logger.debug("Evicted %d cache entries over the %d cap", evicted, self._max_entries)

    def invalidate(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        logger.info("Response cache cleared (%d entries)", count)
        return count

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired: List[str] = [k for k, e in self._entries.items() if not e.is_fresh(now)]
            for k in expired:
                del self._entries[k]
        return len(expired)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {"size": len(self._entries), "hits": self._hits, "misses": self._misses}

    def __len__(self) -> int:
        return len(self._entries)
