from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from taskloop.backends.base import (
    ChatMessage,
    GatewayCancelledError,
    GatewayError,
    GatewayTimeoutError,
    ModelGateway,
    ensure_not_cancelled,
)

GatewayEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 120.0


class ResilientGateway(ModelGateway):
    """Wraps a primary and optional fallback gateway with timeout, retry, and failover."""

    def __init__(
        self,
        primary: ModelGateway,
        retry_policy: RetryPolicy,
        *,
        fallback: ModelGateway | None = None,
        event_hook: GatewayEventHook | None = None,
    ) -> None:
        self.primary = primary
        self.fallback = fallback
        self.retry_policy = retry_policy
        self.event_hook = event_hook
        self.name = primary.name

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        cancel: asyncio.Event | None = None,
    ) -> ChatMessage:
        attempts: list[tuple[str, ModelGateway]] = [(self.primary.name, self.primary)]
        if self.fallback is not None and self.fallback is not self.primary:
            attempts.append((self.fallback.name, self.fallback))

        errors: list[str] = []
        for gateway_name, gateway in attempts:
            for attempt in range(self.retry_policy.max_retries + 1):
                ensure_not_cancelled(cancel, gateway_name)
                if attempt > 0:
                    delay = self.retry_policy.backoff_seconds * (2 ** (attempt - 1))
                    self._emit(
                        {
                            "event": "gateway_retry",
                            "gateway": gateway_name,
                            "attempt": attempt,
                            "delay_seconds": delay,
                        }
                    )
                    await asyncio.sleep(delay)
                    ensure_not_cancelled(cancel, gateway_name)
                try:
                    reply = await asyncio.wait_for(
                        gateway.chat(messages, tools, cancel),
                        timeout=self.retry_policy.timeout_seconds,
                    )
                    if gateway is not self.primary:
                        self._emit(
                            {
                                "event": "gateway_fallback_success",
                                "gateway": gateway_name,
                                "attempt": attempt,
                            }
                        )
                    return reply
                except GatewayCancelledError:
                    raise
                except TimeoutError:
                    error = GatewayTimeoutError(
                        f"Gateway request timed out after {self.retry_policy.timeout_seconds:.1f}s",
                        provider=gateway_name,
                        retriable=True,
                    )
                    errors.append(f"{gateway_name}[{attempt}]: {error}")
                    self._emit(
                        {
                            "event": "gateway_attempt_failed",
                            "gateway": gateway_name,
                            "attempt": attempt,
                            "error": str(error),
                            "retriable": True,
                        }
                    )
                except GatewayError as exc:
                    errors.append(f"{gateway_name}[{attempt}]: {exc}")
                    self._emit(
                        {
                            "event": "gateway_attempt_failed",
                            "gateway": gateway_name,
                            "attempt": attempt,
                            "error": str(exc),
                            "retriable": exc.retriable,
                        }
                    )
                    if not exc.retriable:
                        break
                except Exception as exc:
                    errors.append(f"{gateway_name}[{attempt}]: {exc}")
                    self._emit(
                        {
                            "event": "gateway_attempt_failed",
                            "gateway": gateway_name,
                            "attempt": attempt,
                            "error": str(exc),
                            "retriable": True,
                        }
                    )

        summary = "; ".join(errors[-6:])
        raise GatewayError(
            f"All gateway attempts failed. {summary}",
            provider=self.name,
            retriable=False,
        )
