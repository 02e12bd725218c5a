import logging
import math
import os
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from gateway.schemas import (
    CacheInvalidateRequest,
    ChatMessage,
    CompletionEnvelope,
    GovernorRequest,
)
from governor import GovernorResult, InvalidRequest, QuotaExceeded, RequestGovernor, RetryPolicy, UpstreamUnavailable
from governor.config import GovernorSettings, load_settings
from quota.cache import ResponseCache
from quota.models import CacheKeyParams
from quota.persistence import load_history, save_history
from quota.tracker import QuotaTracker
from upstream import PerplexityAdapter, UpstreamAdapter

logger = logging.getLogger(__name__)

app = FastAPI(title="FinSight API Governor", version="0.1.0")

NEWS_SYSTEM_PROMPT = (
    "You are a financial news assistant. Answer with a concise numbered list of recent, "
    "factual headlines, each followed by its source name."
)


def build_governor(settings: GovernorSettings, upstream: Optional[UpstreamAdapter] = None) -> RequestGovernor:
    if upstream is None:
        upstream = PerplexityAdapter(base_url=settings.upstream.base_url, timeout=settings.upstream.timeout)
    retry = settings.retry
    return RequestGovernor(
        upstream=upstream,
        tracker=QuotaTracker(max_history=settings.history.max_entries),
        cache=ResponseCache(default_ttl_seconds=settings.cache.ttl_seconds, max_entries=settings.cache.max_entries),
        limits=settings.limits,
        retry_policy=RetryPolicy(
            max_attempts=retry.max_attempts,
            base_delay=retry.base_delay,
            multiplier=retry.multiplier,
            max_delay=retry.max_delay,
            max_total_delay=retry.max_total_delay,
        ),
        warning_ratio=settings.warning_ratio,
        cache_ttl_seconds=settings.cache.ttl_seconds,
    )


@app.on_event("startup")
async def startup_event() -> None:
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())

    settings = load_settings()
    governor = build_governor(settings)

    if settings.history.path:
        kept = governor.tracker.load(load_history(settings.history.path))
        logger.info("Restored %d usage records from %s", kept, settings.history.path)

    app.state.settings = settings
    app.state.governor = governor

    logger.info("Governor initialized for upstream %s", governor.upstream.name)


@app.on_event("shutdown")
async def shutdown_event() -> None:
    governor: Optional[RequestGovernor] = getattr(app.state, "governor", None)
    settings: Optional[GovernorSettings] = getattr(app.state, "settings", None)
    if governor is None:
        return
    if settings is not None and settings.history.path:
        try:
            save_history(settings.history.path, governor.tracker.snapshot())
        except OSError as e:
            logger.error("Failed to persist usage history: %s", e)
    await governor.upstream.aclose()


def _governor() -> RequestGovernor:
    return app.state.governor


def _settings() -> GovernorSettings:
    return getattr(app.state, "settings", None) or GovernorSettings()


def _result_response(result: GovernorResult) -> JSONResponse:
    if result.ok:
        envelope = CompletionEnvelope(response=result.payload, from_cache=result.from_cache, advisory=result.advisory)
        return JSONResponse(status_code=200, content=envelope.model_dump(mode="json"))

    err = result.error
    body: Dict[str, Any] = {"error": err.to_dict()}
    headers: Dict[str, str] = {}
    if isinstance(err, QuotaExceeded):
        status = 429
        headers["Retry-After"] = str(max(1, math.ceil(err.retry_after_seconds)))
    elif isinstance(err, UpstreamUnavailable):
        status = 503
        if result.fallback is not None:
            body["fallback"] = result.fallback.model_dump(mode="json")
    else:
        status = 400
    return JSONResponse(status_code=status, content=body, headers=headers)


@app.get("/health", tags=["health"])
async def health():
    return {"status": "ok"}


@app.post("/v1/chat/completions")
async def chat_completions(request: Request):
    # decoded by the governor so schema errors share the InvalidRequest shape
    try:
        body = await request.json()
    except ValueError:
        return _result_response(GovernorResult(error=InvalidRequest("body is not valid JSON")))
    if not isinstance(body, dict):
        return _result_response(GovernorResult(error=InvalidRequest("body must be a JSON object")))
    result = await _governor().execute(body)
    return _result_response(result)


@app.get("/v1/market-news")
async def market_news(
    topic: str = Query(default="financial markets"),
    category: Optional[str] = Query(default=None),
    limit: int = Query(default=5),
    offset: int = Query(default=0),
    refresh: bool = Query(default=False),
):
    if limit < 1 or limit > 20:
        raise HTTPException(status_code=400, detail="Limit must be a number between 1 and 20")
    if offset < 0:
        raise HTTPException(status_code=400, detail="Offset must not be negative")
    if not topic.strip():
        raise HTTPException(status_code=400, detail="Topic must not be empty")

    subject = topic.strip()
    if category and category.strip():
        subject = f"{subject} ({category.strip()})"
    prompt = f"List {limit} recent news headlines about {subject}"
    if offset:
        prompt += f", skipping the {offset} most recent"
    prompt += "."

    req = GovernorRequest(
        endpoint="market-news",
        model=_settings().upstream.default_model,
        messages=[
            ChatMessage(role="system", content=NEWS_SYSTEM_PROMPT),
            ChatMessage(role="user", content=prompt),
        ],
        cache=CacheKeyParams(topic=topic, category=category, limit=limit, offset=offset),
        bypass_cache=refresh,
    )
    return _result_response(await _governor().execute(req))


@app.get("/v1/usage/metrics")
async def usage_metrics():
    metrics = _governor().get_metrics()
    return JSONResponse(metrics.model_dump(mode="json"))


@app.get("/v1/usage/limits")
async def usage_limits():
    return JSONResponse(_governor().get_limits().model_dump())


@app.post("/v1/usage/reset")
async def usage_reset():
    _governor().reset_metrics()
    return {"status": "reset"}


@app.delete("/v1/cache")
async def cache_clear():
    removed = _governor().clear_cache()
    return {"removed": removed}


@app.post("/v1/cache/invalidate")
async def cache_invalidate(req: CacheInvalidateRequest):
    removed = _governor().invalidate(req.cache, endpoint=req.endpoint, model=req.model)
    return {"removed": removed}
