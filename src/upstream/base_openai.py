import json
import logging
import os
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError

from gateway.schemas import ChatRequest, ChatResponse
from upstream.base import UpstreamAdapter

logger = logging.getLogger(__name__)


class UpstreamRateLimitError(Exception):
    def __init__(self, message: str, status_code: int, headers: Dict[str, str]):
        super().__init__(message)
        self.status_code = status_code
        self.headers = headers
        self.retry_after = headers.get("retry-after") or headers.get("Retry-After")

    def __str__(self) -> str:
        return f"UpstreamRateLimitError(status_code={self.status_code}, retry_after={self.retry_after})"


class UpstreamResponseError(Exception):
    """The upstream answered 2xx but the body is not a chat completion."""


class OpenAICompatibleAdapter(UpstreamAdapter):
    """Adapter for OpenAI-compatible chat completions endpoints.

    Subclasses provide the provider name, base_url and the environment
    variable holding the bearer credential.
    """

    def __init__(
        self,
        provider_name: str,
        api_key_env: str,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 15.0,
        api_key: Optional[str] = None,
    ) -> None:
        self._provider_name = provider_name
        self._api_key_env = api_key_env
        self._api_key = api_key or os.getenv(api_key_env, "").strip()
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None
        if not self._api_key:
            logger.warning("%s not set; calls will fail until configured.", api_key_env)

    @property
    def name(self) -> str:
        return self._provider_name

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def build_payload(self, request: ChatRequest) -> Dict[str, Any]:
        messages: List[Dict[str, Any]] = [{"role": m.role, "content": m.content} for m in request.messages]
        payload: Dict[str, Any] = {"model": request.model, "messages": messages}
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.max_tokens is not None:
            payload["max_tokens"] = request.max_tokens
        return payload

    async def chat(self, request: ChatRequest) -> ChatResponse:
        client = self._get_client()
        payload = self.build_payload(request)

        try:
            resp = await client.post("/chat/completions", headers=self._headers(), content=json.dumps(payload))
            if resp.status_code == 429:
                raise UpstreamRateLimitError("Rate limited", resp.status_code, dict(resp.headers))
            resp.raise_for_status()
        except UpstreamRateLimitError:
            raise
        except httpx.HTTPStatusError as e:
            logger.error("%s API error (%s): %s", self._provider_name, e.response.status_code, e.response.text[:200])
            raise
        except httpx.TransportError as e:
            logger.warning("%s transport error: %s", self._provider_name, e)
            raise

        return self.parse_response(resp, request)

    def parse_response(self, resp: httpx.Response, request: ChatRequest) -> ChatResponse:
        try:
            data = resp.json()
        except ValueError as e:
            raise UpstreamResponseError(f"{self._provider_name} returned non-JSON body") from e
        if not isinstance(data, dict):
            raise UpstreamResponseError(f"{self._provider_name} returned {type(data).__name__}, expected object")

        choices = data.get("choices")
        if not isinstance(choices, list) or not choices:
            raise UpstreamResponseError(f"{self._provider_name} response has no choices")

        normalized: List[Dict[str, Any]] = []
        for i, ch in enumerate(choices):
            if not isinstance(ch, dict) or not isinstance(ch.get("message"), dict):
                raise UpstreamResponseError(f"{self._provider_name} choice {i} has no message")
            msg = ch["message"]
            normalized.append(
                {
                    "index": ch.get("index", i),
                    "message": {"role": msg.get("role", "assistant"), "content": msg.get("content")},
                    "finish_reason": ch.get("finish_reason"),
                }
            )

        usage = data.get("usage") or {}
        if not isinstance(usage, dict):
            raise UpstreamResponseError(f"{self._provider_name} usage block is not an object")
        try:
            return ChatResponse.model_validate(
                {
                    "id": data.get("id", ""),
                    "created": int(data.get("created", 0) or 0),
                    "model": data.get("model", request.model),
                    "choices": normalized,
                    "usage": {
                        "prompt_tokens": int(usage.get("prompt_tokens", 0) or 0),
                        "completion_tokens": int(usage.get("completion_tokens", 0) or 0),
                        "total_tokens": int(usage.get("total_tokens", 0) or 0),
                    },
                    "citations": data.get("citations"),
                }
            )
        except (ValidationError, TypeError, ValueError) as e:
            raise UpstreamResponseError(f"{self._provider_name} response shape mismatch: {e}") from e
