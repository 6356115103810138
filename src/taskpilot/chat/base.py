from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
from typing import Any, Literal

Role = Literal["system", "user", "assistant", "tool"]


class ChatModelError(RuntimeError):
    """Raised when a chat model request fails."""

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.retriable = retriable


class ChatModelTimeoutError(ChatModelError):
    """Raised when a chat model request exceeds its timeout."""


@dataclass(slots=True)
class ToolCall:
    id: str
    name: str
    arguments: str = "{}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass(slots=True)
class ToolInfo:
    name: str
    description: str
    parameters: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


@dataclass(slots=True)
class Message:
    role: Role
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str | None = None
    name: str | None = None

    @classmethod
    def system(cls, content: str) -> Message:
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: str) -> Message:
        return cls(role="user", content=content)

    @classmethod
    def assistant(cls, content: str, tool_calls: list[ToolCall] | None = None) -> Message:
        return cls(role="assistant", content=content, tool_calls=list(tool_calls or []))

    @classmethod
    def tool(cls, content: str, *, tool_call_id: str, name: str | None = None) -> Message:
        return cls(role="tool", content=content, tool_call_id=tool_call_id, name=name)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            payload["tool_calls"] = [call.to_dict() for call in self.tool_calls]
        if self.tool_call_id:
            payload["tool_call_id"] = self.tool_call_id
        if self.name:
            payload["name"] = self.name
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        tool_calls: list[ToolCall] = []
        for item in data.get("tool_calls") or []:
            if not isinstance(item, dict):
                continue
            function = item.get("function") or {}
            tool_calls.append(
                ToolCall(
                    id=str(item.get("id", "")),
                    name=str(function.get("name", "")),
                    arguments=str(function.get("arguments") or "{}"),
                )
            )
        return cls(
            role=data.get("role", "user"),
            content=str(data.get("content") or ""),
            tool_calls=tool_calls,
            tool_call_id=data.get("tool_call_id"),
            name=data.get("name"),
        )


def clean_messages(messages: Sequence[Message | None]) -> list[Message]:
    """Drop entries with an empty role or blank content.

    Assistant messages that request tool calls and tool results answering a
    call are kept even without text so every request stays paired.
    """

    cleaned: list[Message] = []
    for message in messages:
        if message is None or not message.role:
            continue
        if message.tool_calls or (message.role == "tool" and message.tool_call_id):
            cleaned.append(message)
            continue
        if not message.content.strip():
            continue
        cleaned.append(message)
    return cleaned


class ChatModel(ABC):
    @abstractmethod
    async def generate(self, messages: Sequence[Message]) -> Message:
        """Return one complete assistant message."""

    @abstractmethod
    def stream(self, messages: Sequence[Message]) -> AsyncIterator[Message]:
        """Stream assistant message chunks."""

    def bind_tools(self, tools: Sequence[ToolInfo]) -> ChatModel:
        """Return a model that may answer with tool calls. Default: unchanged."""
        _ = tools
        return self
