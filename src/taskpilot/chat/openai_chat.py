from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from typing import Any

import openai
from openai import AsyncOpenAI

from taskpilot.chat.base import ChatModel, ChatModelError, Message, ToolCall, ToolInfo


class OpenAIChatModel(ChatModel):
    """Chat completions client for OpenAI-compatible endpoints."""

    def __init__(
        self,
        *,
        model: str = "gpt-4o-mini",
        base_url: str | None = None,
        tools: Sequence[ToolInfo] | None = None,
        client: Any | None = None,
    ) -> None:
        self.model = model
        self.base_url = base_url or None
        self.tools = list(tools or [])
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            try:
                self._client = AsyncOpenAI(base_url=self.base_url)
            except openai.OpenAIError as exc:
                raise ChatModelError(
                    f"OpenAI client could not be created: {exc}",
                    provider="openai",
                    retriable=False,
                ) from exc
        return self._client

    def bind_tools(self, tools: Sequence[ToolInfo]) -> ChatModel:
        return OpenAIChatModel(
            model=self.model,
            base_url=self.base_url,
            tools=tools,
            client=self._client,
        )

    def _request_kwargs(self, messages: Sequence[Message]) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": [message.to_dict() for message in messages],
        }
        if self.tools:
            kwargs["tools"] = [info.to_dict() for info in self.tools]
        return kwargs

    @staticmethod
    def _wrap_error(exc: openai.OpenAIError) -> ChatModelError:
        retriable = True
        if isinstance(exc, openai.APIStatusError):
            retriable = exc.status_code >= 500 or exc.status_code == 429
        return ChatModelError(
            f"OpenAI request failed: {exc}",
            provider="openai",
            retriable=retriable,
        )

    @staticmethod
    def _to_message(payload: Any) -> Message:
        choices = getattr(payload, "choices", None) or []
        if not choices:
            return Message.assistant("")
        raw = choices[0].message
        tool_calls = [
            ToolCall(
                id=str(call.id),
                name=str(call.function.name),
                arguments=str(call.function.arguments or "{}"),
            )
            for call in (getattr(raw, "tool_calls", None) or [])
        ]
        return Message.assistant(str(getattr(raw, "content", None) or ""), tool_calls)

    async def generate(self, messages: Sequence[Message]) -> Message:
        client = self._get_client()
        try:
            payload = await client.chat.completions.create(**self._request_kwargs(messages))
        except openai.OpenAIError as exc:
            raise self._wrap_error(exc) from exc
        return self._to_message(payload)

    async def stream(self, messages: Sequence[Message]) -> AsyncIterator[Message]:
        client = self._get_client()
        try:
            response = await client.chat.completions.create(
                stream=True,
                **self._request_kwargs(messages),
            )
            async for chunk in response:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                content = getattr(delta, "content", None)
                if content:
                    yield Message.assistant(content)
        except openai.OpenAIError as exc:
            raise self._wrap_error(exc) from exc
