from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from quota.models import CacheKeyParams, QuotaAdvisory


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    model: str = "sonar"
    messages: List[ChatMessage]
    temperature: Optional[float] = Field(default=0.2, ge=0, le=2)
    max_tokens: Optional[int] = Field(default=2000, gt=0)


class GovernorRequest(ChatRequest):
    endpoint: str = Field(default="chat", description="Logical caller endpoint, recorded with usage")
    cache: Optional[CacheKeyParams] = Field(
        default=None, description="Parameters that identify equivalent requests for caching"
    )
    cache_ttl_seconds: Optional[float] = Field(default=None, ge=0)
    bypass_cache: bool = Field(default=False, description="Skip the cache lookup (manual refresh)")

    def to_chat_request(self) -> ChatRequest:
        return ChatRequest(
            model=self.model,
            messages=self.messages,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )


class ChatUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ChatChoice(BaseModel):
    index: int
    message: ChatMessage
    finish_reason: Optional[str] = None


class ChatResponse(BaseModel):
    id: str
    object: Literal["chat.completion"] = "chat.completion"
    created: int
    model: str
    choices: List[ChatChoice]
    usage: ChatUsage = Field(default_factory=ChatUsage)
    citations: Optional[List[str]] = None

    @property
    def content(self) -> str:
        if not self.choices:
            return ""
        return self.choices[0].message.content


class CompletionEnvelope(BaseModel):
    response: ChatResponse
    from_cache: bool = False
    advisory: Optional[QuotaAdvisory] = None


class CacheInvalidateRequest(BaseModel):
    endpoint: str = "chat"
    model: str = "sonar"
    cache: CacheKeyParams
