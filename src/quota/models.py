from datetime import datetime, timezone
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CallRecord(BaseModel):
    endpoint: str
    model: str
    tokens: int = 0
    timestamp: datetime = Field(default_factory=utcnow)
    success: bool = True
    latency_ms: int = 0

    @field_validator("timestamp")
    @classmethod
    def _as_utc(cls, v: datetime) -> datetime:
        # naive values are taken to be UTC
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)


class UsageMetrics(BaseModel):
    requests_last_minute: int = 0
    requests_last_hour: int = 0
    requests_last_24h: int = 0
    tokens_used_24h: int = 0
    history: List[CallRecord] = Field(default_factory=list)
    quota_resets: datetime = Field(default_factory=utcnow)


class Limits(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_requests_per_minute: int = Field(default=10, ge=0)
    max_requests_per_hour: int = Field(default=120, ge=0)
    max_requests_per_day: int = Field(default=1000, ge=0)
    max_tokens_per_day: int = Field(default=100000, ge=0)


class CacheEntry(BaseModel):
    key: str
    payload: Any = None
    stored_at: datetime = Field(default_factory=utcnow)
    ttl_seconds: float

    def is_fresh(self, now: datetime) -> bool:
        return (now - self.stored_at).total_seconds() <= self.ttl_seconds


class CacheKeyParams(BaseModel):
    topic: Optional[str] = None
    category: Optional[str] = None
    limit: Optional[int] = Field(default=None, ge=0)
    offset: Optional[int] = Field(default=None, ge=0)

    @field_validator("topic", "category")
    @classmethod
    def _normalize_text(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip().lower()
        return v or None


class QuotaAdvisory(BaseModel):
    limit_name: str
    used: int
    limit: int
    ratio: float
    message: str
