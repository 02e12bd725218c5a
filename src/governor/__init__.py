from .core import GovernorResult, RequestGovernor
from .errors import GovernorError, InvalidRequest, QuotaExceeded, UpstreamUnavailable
from .retry import RetryPolicy

__all__ = [
    "GovernorError",
    "GovernorResult",
    "InvalidRequest",
    "QuotaExceeded",
    "RequestGovernor",
    "RetryPolicy",
    "UpstreamUnavailable",
]
