import asyncio

import pytest

from taskpilot.progress import EventKind, ProgressBus, ProgressEvent


async def _drain(bus: ProgressBus) -> list[ProgressEvent]:
    return [event async for event in bus]


def test_send_never_blocks_and_drops_when_full() -> None:
    async def scenario() -> tuple[list[ProgressEvent], int]:
        bus = ProgressBus("s1", capacity=3)
        accepted = [bus.emit(EventKind.COMPLETE, "step", str(index)) for index in range(5)]
        assert accepted == [True, True, True, False, False]
        bus.close()
        return await _drain(bus), bus.dropped

    events, dropped = asyncio.run(scenario())

    assert [event.message for event in events] == ["0", "1", "2"]
    assert dropped == 2


def test_terminal_events_bypass_capacity() -> None:
    async def scenario() -> list[ProgressEvent]:
        bus = ProgressBus("s1", capacity=1)
        bus.emit(EventKind.START, "run", "go")
        bus.emit(EventKind.COMPLETE, "plan", "dropped")
        assert bus.emit(EventKind.ERROR, "run", "boom", error="model down")
        bus.close()
        return await _drain(bus)

    events = asyncio.run(scenario())

    assert [event.kind for event in events] == [EventKind.START, EventKind.ERROR]
    assert events[-1].error == "model down"
    assert events[-1].session_id == "s1"


def test_close_is_idempotent_and_late_sends_are_dropped() -> None:
    async def scenario() -> list[ProgressEvent]:
        bus = ProgressBus("s1")
        bus.emit(EventKind.DONE, "run", "finished")
        bus.close()
        bus.close()
        assert not bus.emit(EventKind.COMPLETE, "late", "ignored")
        return await _drain(bus)

    events = asyncio.run(scenario())

    assert [event.label for event in events] == ["run"]


def test_consumer_receives_events_sent_while_waiting() -> None:
    async def scenario() -> list[str]:
        bus = ProgressBus("s1")

        async def produce() -> None:
            for index in range(3):
                await asyncio.sleep(0)
                bus.emit(EventKind.RESULT_CHUNK, "summary", f"chunk-{index}")
            bus.emit(EventKind.DONE, "run", "ok")
            bus.close()

        producer = asyncio.create_task(produce())
        messages = [event.message async for event in bus]
        await producer
        return messages

    assert asyncio.run(scenario()) == ["chunk-0", "chunk-1", "chunk-2", "ok"]


def test_event_to_dict_omits_empty_fields() -> None:
    event = ProgressEvent(kind=EventKind.RESULT_CHUNK, label="summary", message="hi", session_id="s1")

    data = event.to_dict()

    assert data["kind"] == "result_chunk"
    assert "payload" not in data
    assert "error" not in data
    assert data["timestamp"]


def test_capacity_must_be_positive() -> None:
    with pytest.raises(ValueError):
        ProgressBus("s1", capacity=0)
