"""Data models for the command supervisor.

Uses Pydantic for validated, immutable request/result values.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

from cmdsupervisor.core.errors import TimedOut

# Hard ceiling on any single command's timeout (10 minutes).
MAX_TIMEOUT_MS = 600_000


def _utc_now() -> datetime:
    return datetime.now(UTC)


class ExecutionMode(str, Enum):
    """How a request is dispatched."""

    FOREGROUND = "foreground"
    BACKGROUND = "background"
    SESSION = "session"


class TaskStatus(str, Enum):
    """Status of a background task.

    running -> killing -> {completed, failed}, or running -> {completed, failed}.
    """

    RUNNING = "running"
    KILLING = "killing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


class SessionStatus(str, Enum):
    """Status of a pooled shell session."""

    INITIALIZING = "initializing"
    READY = "ready"
    TERMINATING = "terminating"
    TERMINATED = "terminated"


class RuleCategory(str, Enum):
    """Which family of validator rule rejected a command."""

    DANGEROUS_PATTERN = "dangerous pattern"
    RESTRICTED_EXECUTABLE = "restricted executable"
    PROTECTED_PATH = "protected path"


class ValidationResult(BaseModel):
    """Verdict of the command validator."""

    model_config = {"frozen": True}

    allowed: bool
    rule: str | None = None
    category: RuleCategory | None = None
    reason: str | None = None

    @classmethod
    def accept(cls) -> ValidationResult:
        return cls(allowed=True)

    @classmethod
    def reject(cls, rule: str, category: RuleCategory, detail: str) -> ValidationResult:
        return cls(
            allowed=False,
            rule=rule,
            category=category,
            reason=f"Blocked {category.value} [{rule}]: {detail}",
        )


class ExecutionRequest(BaseModel):
    """A command submission. Immutable once created."""

    model_config = {"frozen": True}

    command: str = Field(min_length=1)
    cwd: Path | None = None
    env: dict[str, str] = Field(default_factory=dict)
    timeout_ms: int | None = None
    mode: ExecutionMode = ExecutionMode.FOREGROUND
    output_filter: str | None = None
    session_id: str | None = None

    @field_validator("command")
    @classmethod
    def validate_command(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("command must not be blank")
        return v

    @field_validator("timeout_ms")
    @classmethod
    def validate_timeout(cls, v: int | None) -> int | None:
        if v is None:
            return v
        if v <= 0 or v > MAX_TIMEOUT_MS:
            raise ValueError(f"timeout_ms must be between 1 and {MAX_TIMEOUT_MS}")
        return v

    @field_validator("output_filter")
    @classmethod
    def validate_output_filter(cls, v: str | None) -> str | None:
        if v is None:
            return v
        try:
            re.compile(v)
        except re.error as e:
            raise ValueError(f"output_filter is not a valid regular expression: {e}") from e
        return v


class ForegroundResult(BaseModel):
    """Outcome of one process run. Also the terminal result of a background task."""

    model_config = {"frozen": True}

    command: str
    exit_code: int | None = None
    signal: str | None = None
    stdout: str = ""
    stderr: str = ""
    duration_ms: float = 0.0
    killed: bool = False
    timed_out: bool = False
    stdout_truncated: bool = False
    stderr_truncated: bool = False
    error: str | None = None
    limit_exceeded: str | None = None
    timeout_ms: int | None = None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and self.signal is None and self.error is None

    @property
    def truncated(self) -> bool:
        return self.stdout_truncated or self.stderr_truncated

    def raise_for_timeout(self) -> None:
        """Raise TimedOut if the timeout path killed the process."""
        if self.timed_out:
            raise TimedOut(self.command, self.timeout_ms)


class ResourceMetrics(BaseModel):
    """Sampled resource usage. Approximate, not exact."""

    cpu_time_seconds: float = 0.0
    peak_rss_bytes: int = 0
    output_bytes: int = 0
    sampled_at: datetime | None = None


class BackgroundStatus(BaseModel):
    """Point-in-time snapshot of a background task."""

    task_id: str
    command: str
    status: TaskStatus
    stdout: str
    stderr: str
    stdout_truncated: bool = False
    stderr_truncated: bool = False
    metrics: ResourceMetrics = Field(default_factory=ResourceMetrics)
    result: ForegroundResult | None = None
    started_at: datetime
    duration_ms: float
    filter_pattern: str | None = None
    exit_code: int | None = None


class TaskSummary(BaseModel):
    """Row in a background task listing."""

    task_id: str
    command: str
    status: TaskStatus
    started_at: datetime
    duration_ms: float


class KillOutcome(BaseModel):
    """Result of a kill request."""

    success: bool
    reason: str | None = None


class SessionOutput(BaseModel):
    """Output captured from one command sent to a shell session."""

    session_id: str
    command: str
    stdout: str
    stderr: str
    duration_ms: float
    timed_out: bool = False
    truncated: bool = False
    session_terminated: bool = False


class SessionInfo(BaseModel):
    """Row in a session listing."""

    session_id: str
    status: SessionStatus
    created_at: datetime
    last_activity: datetime
    commands_run: int
    busy: bool = False
    metrics: ResourceMetrics = Field(default_factory=ResourceMetrics)


class ProcessRecord(BaseModel):
    """Retired process kept in the tracker's bounded history."""

    handle_id: str
    pid: int
    owner: ExecutionMode
    owner_id: str
    command: str
    started_at: datetime
    ended_at: datetime = Field(default_factory=_utc_now)
    duration_ms: float = 0.0
    exit_code: int | None = None
    signal: str | None = None
    metrics: ResourceMetrics = Field(default_factory=ResourceMetrics)

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and self.signal is None
