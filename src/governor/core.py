import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Optional, Union

from pydantic import ValidationError

from gateway.schemas import ChatResponse, GovernorRequest
from quota.cache import ResponseCache, derive_cache_key, ttl_for_query
from quota.models import CacheKeyParams, Limits, QuotaAdvisory, UsageMetrics
from quota.tracker import DAY, HOUR, MINUTE, QuotaTracker
from upstream.base import UpstreamAdapter
from .errors import GovernorError, InvalidRequest, QuotaExceeded, UpstreamUnavailable
from .retry import FAIL, INVALID, RetryPolicy, classify_error

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass
class GovernorResult:
    payload: Optional[ChatResponse] = None
    error: Optional[GovernorError] = None
    advisory: Optional[QuotaAdvisory] = None
    from_cache: bool = False
    fallback: Optional[ChatResponse] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> ChatResponse:
        if self.error is not None:
            raise self.error
        if self.payload is None:
            raise ValueError("result carries neither a payload nor an error")
        return self.payload


class RequestGovernor:
    """Gatekeeper for every call to the upstream completion service.

    Order of decisions: fresh cache entry, quota check, live call with
    bounded retries. Expected failures come back as ``GovernorResult.error``
    rather than being raised.
    """

    def __init__(
        self,
        upstream: UpstreamAdapter,
        tracker: QuotaTracker,
        cache: ResponseCache,
        limits: Limits,
        retry_policy: Optional[RetryPolicy] = None,
        warning_ratio: float = 0.8,
        cache_ttl_seconds: Optional[float] = None,
        sleep: Optional[Sleep] = None,
    ) -> None:
        self._upstream = upstream
        self._tracker = tracker
        self._cache = cache
        self._limits = limits
        self._retry = retry_policy or RetryPolicy()
        self._warning_ratio = warning_ratio
        self._cache_ttl = cache_ttl_seconds
        self._sleep = sleep or asyncio.sleep

    @property
    def upstream(self) -> UpstreamAdapter:
        return self._upstream

    @property
    def tracker(self) -> QuotaTracker:
        return self._tracker

    @property
    def cache(self) -> ResponseCache:
        return self._cache

    def get_metrics(self) -> UsageMetrics:
        return self._tracker.metrics()

    def get_limits(self) -> Limits:
        return self._limits

    def reset_metrics(self) -> None:
        self._tracker.reset()

    def clear_cache(self) -> int:
        return self._cache.clear()

    def invalidate(self, params: CacheKeyParams, endpoint: str = "chat", model: str = "sonar") -> bool:
        return self._cache.invalidate(derive_cache_key(endpoint, model, params=params))

    async def execute(self, request: Union[GovernorRequest, Mapping[str, Any]]) -> GovernorResult:
        if request is None:
            raise TypeError("execute() requires a request")
        if not isinstance(request, GovernorRequest):
            try:
                request = GovernorRequest.model_validate(request)
            except ValidationError as e:
                return GovernorResult(error=InvalidRequest(_summarize_validation(e)))

        problem = self._validate(request)
        if problem is not None:
            logger.info("Rejected invalid request from %s: %s", request.endpoint, problem)
            return GovernorResult(error=InvalidRequest(problem))

        key = derive_cache_key(
            request.endpoint,
            request.model,
            params=request.cache,
            messages=[m.model_dump() for m in request.messages],
            temperature=request.temperature,
            max_tokens=request.max_tokens,
        )

        if not request.bypass_cache:
            cached = self._cache.get(key)
            if cached is not None:
                logger.debug("Cache hit for %s", key)
                return GovernorResult(payload=cached, from_cache=True, advisory=self._advisory(self._tracker.metrics()))

        exceeded = self._check_quota(request)
        if exceeded is not None:
            logger.info(
                "Quota %s reached for %s; retry after %.1fs",
                exceeded.limit_name,
                request.endpoint,
                exceeded.retry_after_seconds,
            )
            return GovernorResult(error=exceeded)

        return await self._call_upstream(request, key)

    async def _call_upstream(self, request: GovernorRequest, key: str) -> GovernorResult:
        chat_request = request.to_chat_request()
        slept = 0.0
        last_error: Optional[Exception] = None

        for attempt in range(1, self._retry.max_attempts + 1):
            if attempt > 1:
                exceeded = self._check_quota(request)
                if exceeded is not None:
                    logger.warning(
                        "Quota %s reached while retrying %s; giving up after %d attempts",
                        exceeded.limit_name,
                        request.endpoint,
                        attempt - 1,
                    )
                    return GovernorResult(error=exceeded, fallback=self._cache.get_stale(key))

            started = time.monotonic()
            try:
                logger.info("Upstream %s attempt %d for %s", self._upstream.name, attempt, request.endpoint)
                resp = await self._upstream.chat(chat_request)
            except Exception as e:
                latency_ms = int((time.monotonic() - started) * 1000)
                self._tracker.record_call(request.endpoint, request.model, 0, False, latency_ms)
                last_error = e
                action, status_code, retry_after = classify_error(e)

                if action == INVALID:
                    logger.warning("Upstream rejected request (status %s): %s", status_code, e)
                    return GovernorResult(error=InvalidRequest(f"upstream rejected request: {e}"))
                if action == FAIL:
                    logger.error("Non-retryable upstream error (status %s): %s", status_code, e)
                    break
                if attempt >= self._retry.max_attempts:
                    break

                remaining = self._retry.max_total_delay - slept
                if remaining <= 0:
                    logger.warning("Retry delay budget of %.2fs spent; not retrying", self._retry.max_total_delay)
                    break
                delay = min(self._retry.backoff(attempt, retry_after), remaining)
                logger.info("Retrying upstream after %.2fs due to status %s", delay, status_code)
                if delay > 0:
                    await self._sleep(delay)
                    slept += delay
                continue

            latency_ms = int((time.monotonic() - started) * 1000)
            self._tracker.record_call(
                request.endpoint, request.model, resp.usage.total_tokens, True, latency_ms
            )
            self._cache.put(key, resp, self._ttl_for(request))
            return GovernorResult(payload=resp, advisory=self._advisory(self._tracker.metrics()))

        logger.error("Upstream %s unavailable; last error: %s", self._upstream.name, last_error)
        return GovernorResult(
            error=UpstreamUnavailable(_describe(last_error)),
            fallback=self._cache.get_stale(key),
        )

    def _validate(self, request: GovernorRequest) -> Optional[str]:
        if not request.model or not request.model.strip():
            return "model must not be blank"
        if not request.messages:
            return "messages must contain at least one message"
        for i, m in enumerate(request.messages):
            if not m.content or not m.content.strip():
                return f"message {i} has empty content"
        if not request.endpoint.strip():
            return "endpoint must not be blank"
        return None

    def _check_quota(self, request: GovernorRequest) -> Optional[QuotaExceeded]:
        m = self._tracker.metrics()
        lim = self._limits
        if m.requests_last_minute >= lim.max_requests_per_minute:
            return QuotaExceeded("perMinute", self._tracker.retry_after(MINUTE))
        if m.requests_last_hour >= lim.max_requests_per_hour:
            return QuotaExceeded("perHour", self._tracker.retry_after(HOUR))
        if m.requests_last_24h >= lim.max_requests_per_day:
            return QuotaExceeded("perDay", self._tracker.retry_after(DAY))
        estimated = estimate_tokens_from_request_text("\n".join(msg.content for msg in request.messages))
        if m.tokens_used_24h + estimated > lim.max_tokens_per_day:
            return QuotaExceeded("tokensPerDay", self._tracker.retry_after(DAY))
        return None

    def _ttl_for(self, request: GovernorRequest) -> float:
        if request.cache_ttl_seconds is not None:
            return request.cache_ttl_seconds
        if self._cache_ttl is not None:
            return self._cache_ttl
        topic = request.cache.topic if request.cache is not None else None
        if not topic:
            users = [m.content for m in request.messages if m.role == "user"]
            topic = users[-1] if users else ""
        return ttl_for_query(topic)

    def _advisory(self, metrics: UsageMetrics) -> Optional[QuotaAdvisory]:
        limit = self._limits.max_tokens_per_day
        if limit <= 0:
            return None
        used = metrics.tokens_used_24h
        ratio = used / limit
        if ratio <= self._warning_ratio:
            return None
        return QuotaAdvisory(
            limit_name="tokensPerDay",
            used=used,
            limit=limit,
            ratio=round(ratio, 4),
            message=f"Used {ratio:.0%} of the daily token quota; defer non-critical calls.",
        )


def estimate_tokens_from_request_text(text: str) -> int:
    # Very rough heuristic: ~4 characters per token
    return max(1, int(len(text) / 4))


def _describe(exc: Optional[Exception]) -> str:
    if exc is None:
        return "no attempt made"
    return f"{type(exc).__name__}: {exc}"


def _summarize_validation(err: ValidationError) -> str:
    parts = []
    for item in err.errors():
        loc = ".".join(str(p) for p in item.get("loc", ()))
        parts.append(f"{loc}: {item.get('msg')}" if loc else str(item.get("msg")))
    return "; ".join(parts) or "invalid request"
