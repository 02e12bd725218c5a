import asyncio

import httpx
import pytest

# Ensure import path includes src
import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from governor.retry import FAIL, INVALID, RETRY, RetryPolicy, classify_error
from upstream.base_openai import UpstreamRateLimitError, UpstreamResponseError


class HTTPExc(Exception):
    def __init__(self, status_code: int):
        self.status_code = status_code


def _status_error(code: int, headers=None) -> httpx.HTTPStatusError:
    req = httpx.Request("POST", "https://api.perplexity.ai/chat/completions")
    resp = httpx.Response(code, request=req, headers=headers or {})
    return httpx.HTTPStatusError(f"HTTP {code}", request=req, response=resp)


def test_exponential_backoff_is_capped():
    policy = RetryPolicy(base_delay=0.5, multiplier=2.0, max_delay=2.0)
    assert [policy.backoff(a) for a in (1, 2, 3, 4)] == [0.5, 1.0, 2.0, 2.0]


def test_retry_after_header_wins_within_cap():
    policy = RetryPolicy(max_delay=2.0)
    assert policy.backoff(1, "1") == 1.0
    assert policy.backoff(1, "30") == 2.0
    # HTTP-date form falls back to the schedule
    assert policy.backoff(2, "Wed, 21 Oct 2026 07:28:00 GMT") == 1.0


@pytest.mark.parametrize(
    "exc, action",
    [
        (HTTPExc(429), RETRY),
        (HTTPExc(500), RETRY),
        (HTTPExc(503), RETRY),
        (HTTPExc(400), INVALID),
        (HTTPExc(422), INVALID),
        (HTTPExc(401), FAIL),
        (HTTPExc(404), FAIL),
        (httpx.ConnectError("refused"), RETRY),
        (httpx.ReadTimeout("slow"), RETRY),
        (asyncio.TimeoutError(), RETRY),
        (UpstreamResponseError("bad shape"), FAIL),
        (ValueError("unexpected"), FAIL),
    ],
)
def test_classify_error(exc, action):
    assert classify_error(exc)[0] == action


def test_classify_reads_httpx_status_and_headers():
    action, status, retry_after = classify_error(_status_error(502, {"Retry-After": "3"}))
    assert (action, status, retry_after) == (RETRY, 502, "3")


def test_classify_rate_limit_error():
    exc = UpstreamRateLimitError("Rate limited", 429, {"retry-after": "7"})
    assert classify_error(exc) == (RETRY, 429, "7")
