from typing import Optional

import httpx

from .base_openai import OpenAICompatibleAdapter

DEFAULT_MODEL = "sonar"


class PerplexityAdapter(OpenAICompatibleAdapter):
    """Perplexity chat completions adapter (OpenAI-compatible).

    Authentication:
    - Requires PERPLEXITY_API_KEY environment variable (or an explicit api_key)
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = "https://api.perplexity.ai",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 15.0,
    ) -> None:
        super().__init__(
            provider_name="perplexity",
            api_key_env="PERPLEXITY_API_KEY",
            base_url=base_url,
            client=client,
            timeout=timeout,
            api_key=api_key,
        )
