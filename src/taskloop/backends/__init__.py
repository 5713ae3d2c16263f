from taskloop.backends.base import (
    ChatMessage,
    GatewayCancelledError,
    GatewayError,
    GatewayTimeoutError,
    ModelGateway,
    ToolCall,
)
from taskloop.backends.openai_chat import OpenAIChatGateway
from taskloop.backends.resilient import ResilientGateway, RetryPolicy

__all__ = [
    "ChatMessage",
    "GatewayCancelledError",
    "GatewayError",
    "GatewayTimeoutError",
    "ModelGateway",
    "OpenAIChatGateway",
    "ResilientGateway",
    "RetryPolicy",
    "ToolCall",
]
