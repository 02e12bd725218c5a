from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from gateway.schemas import ChatRequest, ChatResponse


class UpstreamAdapter(ABC):
    """Abstract base class for upstream completion services.

    Implementations raise on failure; classifying errors as transient or not
    is left to the governor's retry policy.
    """

    name: str = "upstream"

    @abstractmethod
    async def chat(self, request: "ChatRequest") -> "ChatResponse":
        """Execute a chat completion request and return a decoded response."""

    async def aclose(self) -> None:
        """Release network resources held by the adapter."""
