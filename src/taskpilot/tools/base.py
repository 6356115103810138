"""Tool set contract and a registry that never lets a tool failure escape."""

from __future__ import annotations

import inspect
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from taskpilot.chat.base import Message, ToolCall, ToolInfo

logger = logging.getLogger(__name__)

ToolHandler = Callable[[dict[str, Any]], Awaitable[str] | str]


class ToolError(RuntimeError):
    """Raised by a tool to report a failed invocation."""


@dataclass(slots=True)
class ToolErrorResult:
    """Structured tool failure carried as ordinary tool message content."""

    error_message: str
    tool_name: str
    success: bool = False
    error: bool = True

    def to_json(self) -> str:
        return json.dumps(
            {
                "success": self.success,
                "error": self.error,
                "error_message": self.error_message,
                "tool_name": self.tool_name,
            },
            ensure_ascii=False,
        )


def parse_tool_error(content: str) -> ToolErrorResult | None:
    """Return the structured error carried by ``content``, if any."""

    text = content.strip()
    if not (text.startswith("{") and text.endswith("}")):
        return None
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict) or payload.get("error") is not True:
        return None
    if payload.get("success") is True:
        return None
    return ToolErrorResult(
        error_message=str(payload.get("error_message", "")),
        tool_name=str(payload.get("tool_name", "")),
    )


class ToolSet(ABC):
    @abstractmethod
    def infos(self) -> list[ToolInfo]:
        """Describe the tools available to the chat model."""

    @abstractmethod
    async def invoke(self, message: Message) -> list[Message]:
        """Run every tool call of ``message`` and return one message per call."""


@dataclass(slots=True)
class FunctionTool:
    name: str
    description: str
    handler: ToolHandler
    parameters: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    def info(self) -> ToolInfo:
        return ToolInfo(name=self.name, description=self.description, parameters=self.parameters)

    async def call(self, arguments: dict[str, Any]) -> str:
        result = self.handler(arguments)
        if inspect.isawaitable(result):
            result = await result
        return result if isinstance(result, str) else json.dumps(result, ensure_ascii=False)


class ToolRegistry(ToolSet):
    def __init__(self, tools: list[FunctionTool] | None = None) -> None:
        self._tools: dict[str, FunctionTool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: FunctionTool) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Tool already registered: {tool.name}")
        self._tools[tool.name] = tool

    def infos(self) -> list[ToolInfo]:
        return [tool.info() for tool in self._tools.values()]

    @staticmethod
    def _parse_arguments(raw: str) -> dict[str, Any]:
        if not raw.strip():
            return {}
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ToolError(f"Invalid tool arguments: {exc}") from exc
        if not isinstance(parsed, dict):
            raise ToolError("Tool arguments must be a JSON object.")
        return parsed

    async def _invoke_one(self, call: ToolCall) -> Message:
        args_preview = call.arguments if len(call.arguments) <= 500 else call.arguments[:500] + "..."
        logger.info("tool call %s args=%s", call.name, args_preview)
        tool = self._tools.get(call.name)
        try:
            if tool is None:
                raise ToolError(f"Unknown tool: {call.name}")
            content = await tool.call(self._parse_arguments(call.arguments))
        except Exception as exc:
            logger.warning("tool %s failed: %s", call.name, exc)
            content = ToolErrorResult(error_message=str(exc), tool_name=call.name).to_json()
        return Message.tool(content, tool_call_id=call.id, name=call.name)

    async def invoke(self, message: Message) -> list[Message]:
        return [await self._invoke_one(call) for call in message.tool_calls]
