"""Unit tests for :mod:`codeloop.ai.orchestration.events`."""

from __future__ import annotations

import dataclasses

import pytest

from codeloop.ai.messages import ToolCall
from codeloop.ai.orchestration.events import (
    AgentEvent,
    EventBus,
    PhaseChanged,
    TextAppended,
    ToolCallLog,
    ToolCallUpdated,
    snapshot_tool_call,
)


class TestEventBus:
    """Subscription, filtering and listener isolation."""

    def test_listener_receives_events(self) -> None:
        bus = EventBus()
        received: list[AgentEvent] = []
        bus.subscribe(received.append)

        event = PhaseChanged("s1", previous="idle", phase="thinking")
        bus.publish(event)

        assert received == [event]

    def test_type_filter(self) -> None:
        bus = EventBus()
        phases: list[AgentEvent] = []
        bus.subscribe(phases.append, PhaseChanged)

        bus.publish(TextAppended("s1", message_id="m1", text="hi"))
        bus.publish(PhaseChanged("s1", previous="idle", phase="thinking"))

        assert [type(event) for event in phases] == [PhaseChanged]

    def test_unsubscribe(self) -> None:
        bus = EventBus()
        received: list[AgentEvent] = []
        unsubscribe = bus.subscribe(received.append)

        unsubscribe()
        unsubscribe()
        bus.publish(PhaseChanged("s1", previous="idle", phase="done"))

        assert received == []
        assert len(bus) == 0

    def test_failing_listener_does_not_stop_others(self) -> None:
        bus = EventBus()
        received: list[AgentEvent] = []

        def _broken(event: AgentEvent) -> None:
            raise RuntimeError("listener bug")

        bus.subscribe(_broken)
        bus.subscribe(received.append)
        bus.publish(PhaseChanged("s1", previous="idle", phase="thinking"))

        assert len(received) == 1

    def test_events_are_immutable(self) -> None:
        event = TextAppended("s1", message_id="m1", text="hi")
        with pytest.raises(dataclasses.FrozenInstanceError):
            event.text = "changed"  # type: ignore[misc]


def test_tool_call_snapshot_is_detached() -> None:
    call = ToolCall("c1", "read_file", {"path": "a.txt"})
    event = ToolCallUpdated("s1", message_id="m1", tool_call=snapshot_tool_call(call))

    call.arguments["path"] = "b.txt"

    assert event.status == "pending"
    assert event.tool_call["arguments"] == {"path": "a.txt"}


class TestToolCallLog:
    """Ring buffer of tool requests and responses."""

    def test_records_requests_and_responses(self) -> None:
        log = ToolCallLog()

        log.record_request("read_file", {"path": "a.txt"})
        log.record_response("read_file", "x" * 600, success=True, duration_ms=3.5)

        request, response = log.tail()
        assert request.type == "request"
        assert request.data == {"arguments": {"path": "a.txt"}}
        assert response.success is True
        assert response.duration_ms == 3.5
        assert len(response.data["result"]) == 500

    def test_capacity_drops_oldest(self) -> None:
        log = ToolCallLog(capacity=3)

        for index in range(5):
            log.record_request(f"tool_{index}", {})

        assert len(log) == 3
        assert [entry.tool_name for entry in log.tail()] == ["tool_2", "tool_3", "tool_4"]
        assert [entry.tool_name for entry in log.tail(1)] == ["tool_4"]

    def test_clear(self) -> None:
        log = ToolCallLog()
        log.record_request("read_file", {})

        log.clear()

        assert log.tail() == []
