import logging
import os
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from quota.cache import DEFAULT_MAX_ENTRIES
from quota.models import Limits
from quota.tracker import DEFAULT_MAX_HISTORY

logger = logging.getLogger(__name__)

_ENV_LIMITS = {
    "GOVERNOR_MAX_REQUESTS_PER_MINUTE": "max_requests_per_minute",
    "GOVERNOR_MAX_REQUESTS_PER_HOUR": "max_requests_per_hour",
    "GOVERNOR_MAX_REQUESTS_PER_DAY": "max_requests_per_day",
    "GOVERNOR_MAX_TOKENS_PER_DAY": "max_tokens_per_day",
}


class HistorySettings(BaseModel):
    max_entries: int = Field(default=DEFAULT_MAX_HISTORY, ge=1)
    path: Optional[str] = None


class CacheSettings(BaseModel):
    ttl_seconds: Optional[float] = Field(default=None, ge=0)
    max_entries: int = Field(default=DEFAULT_MAX_ENTRIES, ge=1)


class RetrySettings(BaseModel):
    max_attempts: int = Field(default=3, ge=1, le=10)
    base_delay: float = Field(default=0.5, ge=0)
    multiplier: float = Field(default=2.0, ge=1)
    max_delay: float = Field(default=2.0, ge=0)
    max_total_delay: float = Field(default=4.0, ge=0)


class UpstreamSettings(BaseModel):
    base_url: str = "https://api.perplexity.ai"
    timeout: float = Field(default=15.0, gt=0)
    default_model: str = "sonar"


class GovernorSettings(BaseModel):
    limits: Limits = Field(default_factory=Limits)
    history: HistorySettings = Field(default_factory=HistorySettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    upstream: UpstreamSettings = Field(default_factory=UpstreamSettings)
    warning_ratio: float = Field(default=0.8, gt=0, le=1)


def default_config_path() -> str:
    return os.getenv(
        "GOVERNOR_CONFIG_PATH",
        os.path.join(os.path.dirname(os.path.dirname(os.path.dirname(__file__))), "config", "governor.yaml"),
    )


def _read_yaml(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.warning("Governor config not found at %s; using defaults", path)
        return {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Failed to load governor config from %s: %s", path, e)
        return {}
    if not isinstance(data, dict):
        logger.warning("Governor config at %s is not a mapping; using defaults", path)
        return {}
    return data


def _apply_env_overrides(data: Dict[str, Any]) -> Dict[str, Any]:
    limits = dict(data.get("limits") or {})
    for env_name, field in _ENV_LIMITS.items():
        value = os.getenv(env_name)
        if value is None or not value.strip():
            continue
        try:
            limits[field] = int(value)
        except ValueError:
            logger.warning("Ignoring non-integer %s=%r", env_name, value)
    data["limits"] = limits

    history_path = os.getenv("GOVERNOR_HISTORY_PATH")
    if history_path:
        history = dict(data.get("history") or {})
        history["path"] = history_path
        data["history"] = history
    return data


def load_settings(path: Optional[str] = None) -> GovernorSettings:
    """Load governor settings from YAML, then apply environment overrides.

    Invalid values raise ``pydantic.ValidationError``: a misconfigured quota
    should stop startup rather than run unguarded.
    """
    path = path or default_config_path()
    data = _apply_env_overrides(dict(_read_yaml(path)))
    try:
        settings = GovernorSettings.model_validate(data)
    except ValidationError:
        logger.error("Invalid governor config at %s", path)
        raise
    logger.info(
        "Governor limits: %d/min %d/hour %d/day %d tokens/day",
        settings.limits.max_requests_per_minute,
        settings.limits.max_requests_per_hour,
        settings.limits.max_requests_per_day,
        settings.limits.max_tokens_per_day,
    )
    return settings
