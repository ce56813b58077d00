"""Tests for the telemetry event emitter."""

from __future__ import annotations

import logging

from cmdsupervisor.core.events import EventEmitter, EventType
from cmdsupervisor.core.models import ExecutionMode


class TestEventEmitter:
    """Tests for subscription and the recent-event window."""

    def test_subscribers_receive_events(self):
        emitter = EventEmitter()
        received = []
        emitter.subscribe(received.append)

        event = emitter.emit(EventType.TASK_STARTED, mode=ExecutionMode.BACKGROUND, owner_id="bash_1")

        assert received == [event]
        assert event.owner_id == "bash_1"
        assert event.timestamp is not None

    def test_unsubscribe(self):
        emitter = EventEmitter()
        received = []
        unsubscribe = emitter.subscribe(received.append)

        unsubscribe()
        unsubscribe()  # second call is harmless
        emitter.emit(EventType.SESSION_CLOSED)

        assert received == []

    def test_failing_subscriber_is_isolated(self, caplog):
        emitter = EventEmitter()
        received = []

        def broken(event):
            raise RuntimeError("sink down")

        emitter.subscribe(broken)
        emitter.subscribe(received.append)

        with caplog.at_level(logging.ERROR, logger="cmdsupervisor.core.events"):
            emitter.emit(EventType.PROCESS_EXITED, payload={"exit_code": 0})

        assert len(received) == 1
        assert "Event subscriber failed" in caplog.text

    def test_recent_is_bounded_and_filterable(self):
        emitter = EventEmitter(recent_size=3)
        for i in range(4):
            emitter.emit(EventType.PROCESS_SPAWNED, payload={"i": i})
        emitter.emit(EventType.PROCESS_EXITED)

        recent = emitter.recent()
        assert len(recent) == 3
        assert [e.payload.get("i") for e in recent] == [2, 3, None]
        assert len(emitter.recent(event_type=EventType.PROCESS_SPAWNED)) == 2
        assert emitter.recent(limit=1)[0].event_type == EventType.PROCESS_EXITED
