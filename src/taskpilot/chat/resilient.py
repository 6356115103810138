from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any, TypeVar

from taskpilot.chat.base import (
    ChatModel,
    ChatModelError,
    ChatModelTimeoutError,
    Message,
    ToolInfo,
)

logger = logging.getLogger(__name__)

ModelEventHook = Callable[[dict[str, Any]], None]
T = TypeVar("T")


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 90.0


class ResilientChatModel(ChatModel):
    """Wraps primary/fallback chat models with timeout, retry, and failover."""

    def __init__(
        self,
        primary_name: str,
        primary_model: ChatModel,
        fallback_name: str,
        fallback_model: ChatModel,
        retry_policy: RetryPolicy,
        event_hook: ModelEventHook | None = None,
    ) -> None:
        self.primary_name = primary_name
        self.primary_model = primary_model
        self.fallback_name = fallback_name
        self.fallback_model = fallback_model
        self.retry_policy = retry_policy
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        logger.debug("chat model event: %s", event)
        if self.event_hook:
            self.event_hook(event)

    def bind_tools(self, tools: Sequence[ToolInfo]) -> ChatModel:
        return ResilientChatModel(
            primary_name=self.primary_name,
            primary_model=self.primary_model.bind_tools(tools),
            fallback_name=self.fallback_name,
            fallback_model=self.fallback_model.bind_tools(tools),
            retry_policy=self.retry_policy,
            event_hook=self.event_hook,
        )

    async def _with_timeout(self, call: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(call, timeout=self.retry_policy.timeout_seconds)
        except TimeoutError as exc:
            raise ChatModelTimeoutError(
                f"Chat model request timed out after {self.retry_policy.timeout_seconds:.1f}s",
                retriable=True,
            ) from exc

    async def _execute_attempts(
        self,
        call_name: str,
        call: Callable[[ChatModel], Awaitable[T]],
    ) -> T:
        attempts: list[tuple[str, ChatModel]] = [(self.primary_name, self.primary_model)]
        if self.fallback_model is not self.primary_model:
            attempts.append((self.fallback_name, self.fallback_model))

        errors: list[str] = []
        for model_name, model in attempts:
            if model is not self.primary_model:
                self._emit(
                    {
                        "event": "model_failover_start",
                        "from": self.primary_name,
                        "to": model_name,
                        "call": call_name,
                    }
                )
            for attempt in range(self.retry_policy.max_retries + 1):
                if attempt > 0:
                    delay = self.retry_policy.backoff_seconds * (2 ** (attempt - 1))
                    self._emit(
                        {
                            "event": "model_retry",
                            "model": model_name,
                            "attempt": attempt,
                            "delay_seconds": delay,
                            "call": call_name,
                        }
                    )
                    await asyncio.sleep(delay)
                try:
                    result = await self._with_timeout(call(model))
                except ChatModelError as exc:
                    errors.append(f"{model_name}[{attempt}]: {exc}")
                    self._emit(
                        {
                            "event": "model_attempt_failed",
                            "model": model_name,
                            "attempt": attempt,
                            "call": call_name,
                            "error": str(exc),
                            "retriable": exc.retriable,
                        }
                    )
                    if not exc.retriable:
                        break
                    continue
                except Exception as exc:
                    errors.append(f"{model_name}[{attempt}]: {exc}")
                    self._emit(
                        {
                            "event": "model_attempt_failed",
                            "model": model_name,
                            "attempt": attempt,
                            "call": call_name,
                            "error": str(exc),
                            "retriable": True,
                        }
                    )
                    continue
                if model is not self.primary_model:
                    self._emit(
                        {
                            "event": "model_fallback_success",
                            "model": model_name,
                            "attempt": attempt,
                            "call": call_name,
                        }
                    )
                return result

        summary = "; ".join(errors[-6:])
        raise ChatModelError(
            f"All chat model attempts failed for {call_name}. {summary}",
            retriable=False,
        )

    async def generate(self, messages: Sequence[Message]) -> Message:
        return await self._execute_attempts(
            "generate",
            lambda model: model.generate(messages),
        )

    async def stream(self, messages: Sequence[Message]) -> AsyncIterator[Message]:
        """Stream from the first model that produces a chunk.

        Retries and failover cover the wait for the first chunk only; an error
        after it propagates to the caller.
        """

        async def _open(model: ChatModel) -> tuple[AsyncIterator[Message], Message | None]:
            chunks = aiter(model.stream(messages))
            try:
                first = await anext(chunks)
            except StopAsyncIteration:
                return chunks, None
            return chunks, first

        chunks, first = await self._execute_attempts("stream", _open)
        if first is None:
            return
        yield first
        async for chunk in chunks:
            yield chunk
