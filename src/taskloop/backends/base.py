from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Literal

FinishReason = Literal["stop", "tool_calls", "length", "other"]


class GatewayError(RuntimeError):
    """Raised when a model gateway call fails."""

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        status_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.retriable = retriable


class GatewayTimeoutError(GatewayError):
    """Raised when a gateway call exceeds the configured timeout."""


class GatewayCancelledError(GatewayError):
    """Raised when the cancellation signal is set before a call."""

    def __init__(self, message: str = "Cancelled", *, provider: str | None = None) -> None:
        super().__init__(message, provider=provider, retriable=False)


@dataclass(slots=True)
class ToolCall:
    id: str
    name: str
    arguments: str = "{}"

    def to_message(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass(slots=True)
class ChatMessage:
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: FinishReason = "stop"
    role: str = "assistant"

    def to_message(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            payload["tool_calls"] = [call.to_message() for call in self.tool_calls]
        return payload


class ModelGateway(ABC):
    """One chat completion per call, bound to a single provider and model."""

    name: str = "gateway"

    @abstractmethod
    async def chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        cancel: asyncio.Event | None = None,
    ) -> ChatMessage:
        """Send the messages and return the assistant reply."""


def ensure_not_cancelled(cancel: asyncio.Event | None, provider: str | None = None) -> None:
    if cancel is not None and cancel.is_set():
        raise GatewayCancelledError(provider=provider)
