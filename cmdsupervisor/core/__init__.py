"""Core modules for the command supervisor."""

from cmdsupervisor.core.buffer import CircularBuffer
from cmdsupervisor.core.errors import (
    ConfigError,
    KillFailed,
    PoolExhausted,
    ResourceLimitExceeded,
    SessionTerminatedError,
    SpawnFailed,
    SupervisorError,
    TimedOut,
    UnknownSessionError,
    UnknownTaskError,
    ValidationRejected,
)
from cmdsupervisor.core.events import Event, EventEmitter, EventType
from cmdsupervisor.core.models import (
    BackgroundStatus,
    ExecutionMode,
    ExecutionRequest,
    ForegroundResult,
    KillOutcome,
    SessionOutput,
    TaskStatus,
    ValidationResult,
)
from cmdsupervisor.core.validator import CommandValidator

__all__ = [
    "BackgroundStatus",
    "CircularBuffer",
    "CommandValidator",
    "ConfigError",
    "Event",
    "EventEmitter",
    "EventType",
    "ExecutionMode",
    "ExecutionRequest",
    "ForegroundResult",
    "KillFailed",
    "KillOutcome",
    "PoolExhausted",
    "ResourceLimitExceeded",
    "SessionOutput",
    "SessionTerminatedError",
    "SpawnFailed",
    "SupervisorError",
    "TaskStatus",
    "TimedOut",
    "UnknownSessionError",
    "UnknownTaskError",
    "ValidationRejected",
    "ValidationResult",
]
