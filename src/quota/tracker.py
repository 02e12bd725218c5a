import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional

from .models import CallRecord, UsageMetrics, utcnow

logger = logging.getLogger(__name__)

MINUTE = 60
HOUR = 60 * 60
DAY = 24 * 60 * 60

DEFAULT_MAX_HISTORY = 500


class QuotaTracker:
    """Rolling request/token accounting backed by a bounded call history.

    Counters are never stored; every read recomputes them from the history
    against the current clock. Entries older than the day window, or beyond
    the most recent ``max_history`` entries, are dropped.
    """

    def __init__(
        self,
        max_history: int = DEFAULT_MAX_HISTORY,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if max_history < 1:
            raise ValueError("max_history must be >= 1")
        self._max_history = max_history
        self._clock = clock or utcnow
        self._history: List[CallRecord] = []
        self._lock = threading.Lock()

    @property
    def max_history(self) -> int:
        return self._max_history

    def record_call(
        self,
        endpoint: str,
        model: str,
        tokens_used: int,
        success: bool,
        latency_ms: int,
    ) -> CallRecord:
        with self._lock:
            # stamped under the lock so the history stays in timestamp order
            record = CallRecord(
                endpoint=endpoint,
                model=model,
                tokens=max(0, int(tokens_used or 0)),
                timestamp=self._clock(),
                success=success,
                latency_ms=max(0, int(latency_ms or 0)),
            )
            self._history.append(record)
            self._enforce_cap()
        return record

    def metrics(self) -> UsageMetrics:
        now = self._clock()
        with self._lock:
            self._prune(now)
            history = list(self._history)

        minute_start = now - timedelta(seconds=MINUTE)
        hour_start = now - timedelta(seconds=HOUR)
        day_start = now - timedelta(seconds=DAY)

        day = [r for r in history if r.timestamp >= day_start]
        return UsageMetrics(
            requests_last_minute=sum(1 for r in day if r.timestamp >= minute_start),
            requests_last_hour=sum(1 for r in day if r.timestamp >= hour_start),
            requests_last_24h=len(day),
            tokens_used_24h=sum(r.tokens for r in day),
            history=history,
            quota_resets=(min(r.timestamp for r in day) if day else now) + timedelta(seconds=DAY),
        )

    def retry_after(self, window_seconds: int) -> float:
        """Seconds until the oldest entry counted in the window falls out of it."""
        now = self._clock()
        start = now - timedelta(seconds=window_seconds)
        with self._lock:
            in_window = [r.timestamp for r in self._history if r.timestamp >= start]
        if not in_window:
            return 0.0
        expires = min(in_window) + timedelta(seconds=window_seconds)
        return max(0.0, (expires - now).total_seconds())

    def reset(self) -> None:
        with self._lock:
            self._history.clear()
        logger.info("Quota history reset")

    def snapshot(self) -> List[CallRecord]:
        with self._lock:
            return list(self._history)

    def load(self, records: Iterable[CallRecord]) -> int:
        """Replace the history with ``records``; returns how many were kept."""
        ordered = sorted(records, key=lambda r: r.timestamp)
        now = self._clock()
        with self._lock:
            self._history = ordered
            self._prune(now)
            self._enforce_cap()
            return len(self._history)

    def _enforce_cap(self) -> None:
        overflow = len(self._history) - self._max_history
        if overflow > 0:
            del self._history[:overflow]

    def _prune(self, now: datetime) -> None:
        cutoff = now - timedelta(seconds=DAY)
        # history is appended in clock order, so stale entries sit at the front
        idx = 0
        while idx < len(self._history) and self._history[idx].timestamp < cutoff:
            idx += 1
        if idx:
            del self._history[:idx]
