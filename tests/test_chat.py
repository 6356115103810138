import asyncio
import json
from collections.abc import AsyncIterator, Sequence
from types import SimpleNamespace
from typing import Any

import pytest

from taskpilot.chat import (
    ChatModel,
    ChatModelError,
    Message,
    OpenAIChatModel,
    ResilientChatModel,
    RetryPolicy,
    ToolInfo,
)


class AlwaysFailModel(ChatModel):
    def __init__(self, *, retriable: bool = True) -> None:
        self.retriable = retriable
        self.calls = 0

    async def generate(self, messages: Sequence[Message]) -> Message:
        _ = messages
        self.calls += 1
        raise ChatModelError("boom", provider="fake", retriable=self.retriable)

    async def stream(self, messages: Sequence[Message]) -> AsyncIterator[Message]:
        _ = messages
        self.calls += 1
        raise ChatModelError("boom", provider="fake", retriable=self.retriable)
        yield Message.assistant("")  # pragma: no cover


class SuccessModel(ChatModel):
    def __init__(self) -> None:
        self.bound: list[ToolInfo] = []

    async def generate(self, messages: Sequence[Message]) -> Message:
        _ = messages
        return Message.assistant("ok")

    async def stream(self, messages: Sequence[Message]) -> AsyncIterator[Message]:
        _ = messages
        for part in ("o", "k"):
            yield Message.assistant(part)

    def bind_tools(self, tools: Sequence[ToolInfo]) -> ChatModel:
        bound = SuccessModel()
        bound.bound = list(tools)
        return bound


class SlowModel(SuccessModel):
    async def generate(self, messages: Sequence[Message]) -> Message:
        await asyncio.sleep(1)
        return Message.assistant("late")


def _resilient(primary: ChatModel, fallback: ChatModel, events: list[dict[str, Any]], **policy):
    return ResilientChatModel(
        primary_name="primary",
        primary_model=primary,
        fallback_name="fallback",
        fallback_model=fallback,
        retry_policy=RetryPolicy(
            max_retries=policy.get("max_retries", 1),
            backoff_seconds=0.0,
            timeout_seconds=policy.get("timeout_seconds", 5.0),
        ),
        event_hook=events.append,
    )


def test_resilient_model_fallback_and_retry_events() -> None:
    events: list[dict[str, Any]] = []
    primary = AlwaysFailModel()
    model = _resilient(primary, SuccessModel(), events)

    reply = asyncio.run(model.generate([Message.user("hi")]))

    assert reply.content == "ok"
    assert primary.calls == 2
    event_names = [event["event"] for event in events]
    assert "model_retry" in event_names
    assert "model_failover_start" in event_names
    assert "model_fallback_success" in event_names


def test_resilient_model_stream_falls_back() -> None:
    events: list[dict[str, Any]] = []
    model = _resilient(AlwaysFailModel(), SuccessModel(), events)

    async def _run() -> str:
        return "".join([chunk.content async for chunk in model.stream([Message.user("hi")])])

    assert asyncio.run(_run()) == "ok"


def test_non_retriable_error_skips_retries_and_fails_after_fallback() -> None:
    events: list[dict[str, Any]] = []
    primary = AlwaysFailModel(retriable=False)
    fallback = AlwaysFailModel(retriable=False)
    model = _resilient(primary, fallback, events, max_retries=3)

    with pytest.raises(ChatModelError) as excinfo:
        asyncio.run(model.generate([Message.user("hi")]))

    assert primary.calls == 1
    assert fallback.calls == 1
    assert excinfo.value.retriable is False
    assert "All chat model attempts failed" in str(excinfo.value)


def test_timeout_is_reported_as_model_error() -> None:
    events: list[dict[str, Any]] = []
    slow = SlowModel()
    model = _resilient(slow, slow, events, max_retries=0, timeout_seconds=0.01)

    with pytest.raises(ChatModelError):
        asyncio.run(model.generate([Message.user("hi")]))

    assert events[0]["event"] == "model_attempt_failed"
    assert "timed out" in events[0]["error"]


def test_bind_tools_rebinds_both_models() -> None:
    events: list[dict[str, Any]] = []
    model = _resilient(SuccessModel(), SuccessModel(), events)
    info = ToolInfo(name="fill_ticket", description="Fill a repair ticket")

    bound = model.bind_tools([info])

    assert isinstance(bound, ResilientChatModel)
    assert bound.primary_model.bound == [info]
    assert bound.fallback_model.bound == [info]


class FakeCompletions:
    def __init__(self, payload: Any) -> None:
        self.payload = payload
        self.kwargs: dict[str, Any] = {}

    async def create(self, **kwargs: Any) -> Any:
        self.kwargs = kwargs
        return self.payload


def test_openai_model_parses_tool_calls_and_sends_tools() -> None:
    raw_call = SimpleNamespace(
        id="call-1",
        function=SimpleNamespace(name="diagnose_room", arguments='{"room": "305"}'),
    )
    payload = SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=None, tool_calls=[raw_call]))]
    )
    completions = FakeCompletions(payload)
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    info = ToolInfo(name="diagnose_room", description="Diagnose a meeting room")
    model = OpenAIChatModel(model="gpt-test", client=client).bind_tools([info])

    reply = asyncio.run(model.generate([Message.system("sys"), Message.user("check 305")]))

    assert reply.content == ""
    assert reply.tool_calls[0].name == "diagnose_room"
    assert json.loads(reply.tool_calls[0].arguments) == {"room": "305"}
    assert completions.kwargs["model"] == "gpt-test"
    assert completions.kwargs["messages"][0] == {"role": "system", "content": "sys"}
    assert completions.kwargs["tools"][0]["function"]["name"] == "diagnose_room"


class TrackingStreamModel(SuccessModel):
    def __init__(self) -> None:
        super().__init__()
        self.produced: list[str] = []

    async def stream(self, messages: Sequence[Message]) -> AsyncIterator[Message]:
        _ = messages
        for part in ("o", "k"):
            self.produced.append(part)
            yield Message.assistant(part)


def test_resilient_stream_yields_chunks_as_they_arrive() -> None:
    events: list[dict[str, Any]] = []
    primary = TrackingStreamModel()
    model = _resilient(primary, SuccessModel(), events)

    async def _run() -> list[tuple[str, list[str]]]:
        seen = []
        async for chunk in model.stream([Message.user("hi")]):
            seen.append((chunk.content, list(primary.produced)))
        return seen

    assert asyncio.run(_run()) == [("o", ["o"]), ("k", ["o", "k"])]
    assert events == []
