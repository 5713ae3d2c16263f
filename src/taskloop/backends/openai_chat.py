from __future__ import annotations

import asyncio
import os
from typing import Any

import openai
from openai import AsyncOpenAI

from taskloop.backends.base import (
    ChatMessage,
    FinishReason,
    GatewayError,
    GatewayTimeoutError,
    ModelGateway,
    ToolCall,
    ensure_not_cancelled,
)

KNOWN_FINISH_REASONS: frozenset[str] = frozenset({"stop", "tool_calls", "length"})


class OpenAIChatGateway(ModelGateway):
    """Chat completions gateway for OpenAI-compatible endpoints."""

    name = "openai"

    def __init__(
        self,
        *,
        model: str = "gpt-4.1-mini",
        base_url: str | None = None,
        api_key_env: str = "OPENAI_API_KEY",
        client: Any | None = None,
    ) -> None:
        self.model = model
        self.base_url = base_url or None
        self.api_key_env = api_key_env
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            api_key = os.environ.get(self.api_key_env)
            try:
                self._client = AsyncOpenAI(api_key=api_key, base_url=self.base_url)
            except openai.OpenAIError as exc:
                raise GatewayError(
                    f"OpenAI client could not be created: {exc}",
                    provider=self.name,
                    retriable=False,
                ) from exc
        return self._client

    @staticmethod
    def _normalize_finish_reason(value: Any) -> FinishReason:
        if isinstance(value, str) and value in KNOWN_FINISH_REASONS:
            return value  # type: ignore[return-value]
        return "other"

    @staticmethod
    def _extract_message(payload: Any) -> ChatMessage:
        choices = getattr(payload, "choices", None) or []
        if not choices:
            return ChatMessage(content="", finish_reason="other")
        choice = choices[0]
        message = getattr(choice, "message", None)
        content = getattr(message, "content", None) or ""
        tool_calls: list[ToolCall] = []
        for item in getattr(message, "tool_calls", None) or []:
            function = getattr(item, "function", None)
            if function is None:
                continue
            tool_calls.append(
                ToolCall(
                    id=str(getattr(item, "id", "") or ""),
                    name=str(getattr(function, "name", "") or ""),
                    arguments=str(getattr(function, "arguments", "") or "{}"),
                )
            )
        return ChatMessage(
            content=str(content),
            tool_calls=tool_calls,
            finish_reason=OpenAIChatGateway._normalize_finish_reason(
                getattr(choice, "finish_reason", None)
            ),
        )

    async def chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        cancel: asyncio.Event | None = None,
    ) -> ChatMessage:
        ensure_not_cancelled(cancel, self.name)
        client = self._get_client()
        request: dict[str, Any] = {"model": self.model, "messages": messages}
        if tools:
            request["tools"] = tools
            request["tool_choice"] = "auto"

        try:
            payload = await client.chat.completions.create(**request)
        except openai.APITimeoutError as exc:
            raise GatewayTimeoutError(
                f"OpenAI request timed out: {exc}", provider=self.name, retriable=True
            ) from exc
        except (openai.APIConnectionError, openai.RateLimitError) as exc:
            raise GatewayError(
                f"OpenAI request failed: {exc}", provider=self.name, retriable=True
            ) from exc
        except openai.APIStatusError as exc:
            raise GatewayError(
                f"OpenAI returned HTTP {exc.status_code}: {exc.message}",
                provider=self.name,
                status_code=exc.status_code,
                retriable=exc.status_code >= 500,
            ) from exc
        except openai.OpenAIError as exc:
            raise GatewayError(
                f"OpenAI request failed: {exc}", provider=self.name, retriable=False
            ) from exc

        return self._extract_message(payload)
