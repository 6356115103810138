import asyncio
import json
from typing import Any

import pytest

from taskpilot.chat.base import Message, ToolCall
from taskpilot.tools import FunctionTool, ToolError, ToolRegistry, parse_tool_error


async def _diagnose(args: dict[str, Any]) -> dict[str, Any]:
    return {"room": args["room"], "status": "lamp burnt out"}


def _fill_ticket(args: dict[str, Any]) -> str:
    if not args.get("summary"):
        raise ToolError("Ticket error: summary is required")
    return f"ticket created: {args['summary']}"


def _registry() -> ToolRegistry:
    return ToolRegistry(
        [
            FunctionTool("diagnose_room", "Diagnose a meeting room", _diagnose),
            FunctionTool("fill_ticket", "Fill a repair ticket", _fill_ticket),
        ]
    )


def test_registry_returns_one_message_per_call() -> None:
    request = Message.assistant(
        "",
        [
            ToolCall(id="c1", name="diagnose_room", arguments='{"room": "305"}'),
            ToolCall(id="c2", name="fill_ticket", arguments='{"summary": "projector"}'),
        ],
    )

    results = asyncio.run(_registry().invoke(request))

    assert [message.tool_call_id for message in results] == ["c1", "c2"]
    assert json.loads(results[0].content) == {"room": "305", "status": "lamp burnt out"}
    assert results[1].content == "ticket created: projector"
    assert all(message.role == "tool" for message in results)


def test_tool_failures_become_structured_error_messages() -> None:
    request = Message.assistant(
        "",
        [
            ToolCall(id="c1", name="fill_ticket", arguments="{}"),
            ToolCall(id="c2", name="unknown_tool"),
            ToolCall(id="c3", name="diagnose_room", arguments="not json"),
        ],
    )

    results = asyncio.run(_registry().invoke(request))
    errors = [parse_tool_error(message.content) for message in results]

    assert all(error is not None for error in errors)
    assert errors[0].error_message == "Ticket error: summary is required"
    assert errors[0].tool_name == "fill_ticket"
    assert "Unknown tool" in errors[1].error_message
    assert "Invalid tool arguments" in errors[2].error_message


def test_parse_tool_error_ignores_regular_content() -> None:
    assert parse_tool_error("plain text") is None
    assert parse_tool_error('{"error": false, "status": "ok"}') is None
    assert parse_tool_error('{"success": true, "error": true}') is None
    assert parse_tool_error("{broken") is None


def test_registry_rejects_duplicate_names_and_lists_infos() -> None:
    registry = _registry()

    with pytest.raises(ValueError):
        registry.register(FunctionTool("fill_ticket", "again", _fill_ticket))

    infos = registry.infos()
    assert [info.name for info in infos] == ["diagnose_room", "fill_ticket"]
    assert infos[0].to_dict()["type"] == "function"
