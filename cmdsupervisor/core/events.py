"""Structured telemetry events.

Events describe what happened (spawn, exit, kill, rejection, eviction)
for logging and metrics sinks. Publishing never influences control flow:
a failing subscriber is logged and skipped.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from cmdsupervisor.core.models import ExecutionMode, _utc_now

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Types of supervisor events."""

    # Validation
    COMMAND_REJECTED = "command_rejected"

    # Process lifecycle
    PROCESS_SPAWNED = "process_spawned"
    SPAWN_FAILED = "spawn_failed"
    PROCESS_EXITED = "process_exited"
    TIMEOUT_FIRED = "timeout_fired"
    LIMIT_EXCEEDED = "limit_exceeded"

    # Background tasks
    TASK_STARTED = "task_started"
    TASK_KILL_REQUESTED = "task_kill_requested"
    TASK_FINISHED = "task_finished"
    TASK_REMOVED = "task_removed"

    # Sessions
    SESSION_CREATED = "session_created"
    SESSION_COMMAND = "session_command"
    SESSION_EVICTED = "session_evicted"
    SESSION_CLOSED = "session_closed"


class Event(BaseModel):
    """Immutable telemetry event."""

    model_config = {"frozen": True}

    event_type: EventType
    mode: ExecutionMode | None = None
    owner_id: str | None = None
    command: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utc_now)


Subscriber = Callable[[Event], None]


class EventEmitter:
    """Fan events out to subscribers and keep a bounded recent window."""

    def __init__(self, recent_size: int = 500):
        self._subscribers: list[Subscriber] = []
        self._recent: deque[Event] = deque(maxlen=recent_size)
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a subscriber. Returns a function that unsubscribes it."""
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def emit(self, event_type: EventType, **fields: Any) -> Event:
        event = Event(event_type=event_type, **fields)
        with self._lock:
            self._recent.append(event)
            subscribers = list(self._subscribers)

        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception(f"Event subscriber failed on {event_type.value}")
        return event

    def recent(self, limit: int | None = None, event_type: EventType | None = None) -> list[Event]:
        with self._lock:
            events = list(self._recent)
        if event_type is not None:
            events = [e for e in events if e.event_type == event_type]
        if limit is not None:
            events = events[-limit:]
        return events
