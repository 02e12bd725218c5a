from typing import Any, Dict


class GovernorError(Exception):
    """Base class for the expected failure outcomes of a governed call."""

    code = "governor_error"

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": str(self)}


class QuotaExceeded(GovernorError):
    code = "quota_exceeded"

    def __init__(self, limit_name: str, retry_after_seconds: float) -> None:
        super().__init__(f"Quota limit {limit_name} reached; retry after {retry_after_seconds:.1f}s")
        self.limit_name = limit_name
        self.retry_after_seconds = retry_after_seconds

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d.update({"limit_name": self.limit_name, "retry_after_seconds": round(self.retry_after_seconds, 3)})
        return d


class UpstreamUnavailable(GovernorError):
    code = "upstream_unavailable"

    def __init__(self, last_error: str) -> None:
        super().__init__(f"Upstream temporarily unavailable: {last_error}")
        self.last_error = last_error

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["last_error"] = self.last_error
        return d


class InvalidRequest(GovernorError):
    code = "invalid_request"

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason
