from .cache import ResponseCache, derive_cache_key, ttl_for_query
from .models import CacheEntry, CacheKeyParams, CallRecord, Limits, QuotaAdvisory, UsageMetrics
from .tracker import QuotaTracker

__all__ = [
    "CacheEntry",
    "CacheKeyParams",
    "CallRecord",
    "Limits",
    "QuotaAdvisory",
    "QuotaTracker",
    "ResponseCache",
    "UsageMetrics",
    "derive_cache_key",
    "ttl_for_query",
]
