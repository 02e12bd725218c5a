from .base import UpstreamAdapter
from .base_openai import OpenAICompatibleAdapter, UpstreamRateLimitError, UpstreamResponseError
from .perplexity import PerplexityAdapter

__all__ = [
    "OpenAICompatibleAdapter",
    "PerplexityAdapter",
    "UpstreamAdapter",
    "UpstreamRateLimitError",
    "UpstreamResponseError",
]
