import json
from typing import Any, Dict

import httpx
import pytest

# Ensure import path includes src
import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from upstream.perplexity import PerplexityAdapter
from upstream.base_openai import UpstreamRateLimitError, UpstreamResponseError
from gateway.schemas import ChatRequest, ChatMessage


class _MockTransport(httpx.AsyncBaseTransport):
    def __init__(self, handlers: Dict[str, Any]):
        self.handlers = handlers

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:  # type: ignore[override]
        key = f"{request.method} {request.url.path}"
        handler = self.handlers.get(key)
        if handler is None:
            return httpx.Response(404, request=request, json={"error": "not found"})
        return await handler(request)


def _adapter(handler) -> PerplexityAdapter:
    transport = _MockTransport({"POST /chat/completions": handler})
    client = httpx.AsyncClient(base_url="https://api.perplexity.ai", transport=transport)
    return PerplexityAdapter(api_key="test-key", client=client)


def _request() -> ChatRequest:
    return ChatRequest(
        model="sonar",
        messages=[ChatMessage(role="system", content="Be brief."), ChatMessage(role="user", content="VN-Index today?")],
        temperature=0.2,
        max_tokens=300,
    )


@pytest.mark.asyncio
async def test_chat_completion_mapping():
    async def chat_handler(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        assert request.headers["authorization"] == "Bearer test-key"
        assert payload == {
            "model": "sonar",
            "messages": [
                {"role": "system", "content": "Be brief."},
                {"role": "user", "content": "VN-Index today?"},
            ],
            "temperature": 0.2,
            "max_tokens": 300,
        }
        return httpx.Response(
            200,
            json={
                "id": "pplx-1",
                "model": "sonar",
                "created": 1760000000,
                "choices": [{"index": 0, "message": {"role": "assistant", "content": "Up 0.4%"}, "finish_reason": "stop"}],
                "usage": {"prompt_tokens": 12, "completion_tokens": 5, "total_tokens": 17},
                "citations": ["https://example.com/vnindex"],
            },
        )

    adapter = _adapter(chat_handler)
    resp = await adapter.chat(_request())
    assert resp.id == "pplx-1"
    assert resp.content == "Up 0.4%"
    assert resp.usage.total_tokens == 17
    assert resp.citations == ["https://example.com/vnindex"]
    await adapter._client.aclose()


@pytest.mark.asyncio
async def test_rate_limit_error_raised():
    async def rl_handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(429, headers={"retry-after": "10"}, json={"error": "rate limited"})

    adapter = _adapter(rl_handler)
    with pytest.raises(UpstreamRateLimitError) as exc:
        await adapter.chat(_request())
    assert exc.value.status_code == 429
    assert exc.value.retry_after == "10"
    await adapter._client.aclose()


@pytest.mark.asyncio
async def test_server_error_raises_http_status_error():
    async def err_handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="bad gateway")

    adapter = _adapter(err_handler)
    with pytest.raises(httpx.HTTPStatusError) as exc:
        await adapter.chat(_request())
    assert exc.value.response.status_code == 502
    await adapter._client.aclose()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [
        {"id": "x", "choices": []},
        {"id": "x", "choices": [{"index": 0}]},
        {"id": "x", "choices": [{"message": {"role": "assistant", "content": None}}]},
        {"id": "x", "choices": [{"message": {"role": "assistant", "content": "ok"}}], "usage": "lots"},
        ["not", "an", "object"],
    ],
)
async def test_malformed_body_raises_response_error(body):
    async def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=body)

    adapter = _adapter(handler)
    with pytest.raises(UpstreamResponseError):
        await adapter.chat(_request())
    await adapter._client.aclose()


@pytest.mark.asyncio
async def test_non_json_body_raises_response_error():
    async def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>maintenance</html>")

    adapter = _adapter(handler)
    with pytest.raises(UpstreamResponseError):
        await adapter.chat(_request())
    await adapter._client.aclose()


def test_api_key_read_from_environment(monkeypatch):
    monkeypatch.setenv("PERPLEXITY_API_KEY", " env-key ")
    adapter = PerplexityAdapter()
    assert adapter.name == "perplexity"
    assert adapter._headers()["Authorization"] == "Bearer env-key"
