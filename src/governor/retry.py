import asyncio
from dataclasses import dataclass
from typing import Optional, Tuple

import httpx

from upstream.base_openai import UpstreamResponseError

RETRY = "retry"
INVALID = "invalid"
FAIL = "fail"


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 2.0
    max_total_delay: float = 4.0

    def backoff(self, attempt: int, retry_after: Optional[str] = None) -> float:
        """Delay before the attempt following ``attempt`` (1-based).

        A numeric Retry-After value wins over the exponential schedule; both
        are capped at ``max_delay``.
        """
        if retry_after:
            try:
                return min(self.max_delay, max(0.0, float(retry_after)))
            except ValueError:
                # HTTP-date form is not parsed
                pass
        return min(self.max_delay, self.base_delay * self.multiplier ** (attempt - 1))


def _status_and_retry_after(exc: Exception) -> Tuple[Optional[int], Optional[str]]:
    """Pull an HTTP status and Retry-After value off an upstream exception.

    Understands ``httpx.HTTPStatusError`` and any exception carrying
    ``status_code`` / ``retry_after`` attributes (``UpstreamRateLimitError``).
    """
    status = getattr(exc, "status_code", None)
    retry_after = getattr(exc, "retry_after", None)
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        retry_after = retry_after or exc.response.headers.get("retry-after")
    if not isinstance(status, int):
        status = None
    return status, (str(retry_after) if retry_after else None)


def classify_error(exc: Exception) -> Tuple[str, Optional[int], Optional[str]]:
    """Classify an upstream exception for retry handling.

    Returns (action, status_code, retry_after) where action is one of:
    - "retry": transient (network, timeout, 429, 5xx); try again after backoff
    - "invalid": the upstream rejected the request itself (400, 422)
    - "fail": permanent for this call; stop retrying
    """
    if isinstance(exc, UpstreamResponseError):
        return FAIL, None, None
    if isinstance(exc, (httpx.TransportError, asyncio.TimeoutError)):
        return RETRY, None, None

    status_code, retry_after = _status_and_retry_after(exc)

    if status_code == 429 or (status_code is not None and status_code >= 500):
        return RETRY, status_code, retry_after
    if status_code in (400, 422):
        return INVALID, status_code, retry_after
    return FAIL, status_code, retry_after
