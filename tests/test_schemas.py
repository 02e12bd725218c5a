import os
import sys

import pytest
from pydantic import ValidationError

# Ensure 'src' is on the import path for tests
sys.path.append(os.path.join(os.path.dirname(__file__), "..", "src"))

from gateway.schemas import (
    ChatChoice,
    ChatMessage,
    ChatRequest,
    ChatResponse,
    GovernorRequest,
)
from quota.models import CacheKeyParams


def test_governor_request_defaults():
    req = GovernorRequest(messages=[ChatMessage(role="user", content="hello")])
    assert req.model == "sonar"
    assert req.endpoint == "chat"
    assert req.temperature == 0.2
    assert req.max_tokens == 2000
    assert req.cache is None
    assert req.bypass_cache is False


def test_to_chat_request_drops_governor_fields():
    req = GovernorRequest(
        messages=[ChatMessage(role="user", content="hello")],
        cache=CacheKeyParams(topic="rates"),
        cache_ttl_seconds=30,
    )
    chat = req.to_chat_request()
    assert type(chat) is ChatRequest
    assert set(chat.model_dump()) == {"model", "messages", "temperature", "max_tokens"}


def test_request_bounds_enforced():
    with pytest.raises(ValidationError):
        ChatRequest(messages=[ChatMessage(role="user", content="x")], temperature=3)
    with pytest.raises(ValidationError):
        ChatRequest(messages=[ChatMessage(role="user", content="x")], max_tokens=0)
    with pytest.raises(ValidationError):
        ChatMessage(role="tool", content="x")


def test_cache_key_params_normalize_text():
    params = CacheKeyParams(topic="  Vietnam Tariffs ", category=" ", limit=5)
    assert params.topic == "vietnam tariffs"
    assert params.category is None
    with pytest.raises(ValidationError):
        CacheKeyParams(offset=-1)


def test_chat_response_content():
    msg = ChatMessage(role="assistant", content="ok")
    resp = ChatResponse(id="t", created=0, model="sonar", choices=[ChatChoice(index=0, message=msg)])
    assert resp.object == "chat.completion"
    assert resp.content == "ok"
    assert resp.usage.total_tokens == 0
    assert ChatResponse(id="t", created=0, model="sonar", choices=[]).content == ""
