"""Exception taxonomy for the command supervisor.

``ValidationRejected`` and ``SpawnFailed`` are raised synchronously to the
caller before anything is registered. Once a process is running, failures
are captured into results and status snapshots instead of being raised.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from cmdsupervisor.core.models import ValidationResult


class SupervisorError(Exception):
    """Base class for all supervisor errors."""

    pass


class ConfigError(SupervisorError):
    """Invalid supervisor configuration file."""

    pass


class ValidationRejected(SupervisorError):
    """Command blocked by the safety gate before any process was spawned."""

    def __init__(self, verdict: ValidationResult):
        self.verdict = verdict
        self.rule = verdict.rule
        self.category = verdict.category
        self.reason = verdict.reason or "command rejected"
        super().__init__(self.reason)


class SpawnFailed(SupervisorError):
    """Command could not be started (missing executable, bad cwd, EPERM)."""

    def __init__(self, command: str, message: str, cause: BaseException | None = None):
        self.command = command
        self.cause = cause
        super().__init__(message)


class TimedOut(SupervisorError):
    """Foreground timeout escalation fired."""

    def __init__(self, command: str, timeout_ms: int | None):
        self.command = command
        self.timeout_ms = timeout_ms
        super().__init__(f"Command timed out after {timeout_ms}ms: {command}")


class KillFailed(SupervisorError):
    """Target process not found or already reaped."""

    pass


class PoolExhausted(SupervisorError):
    """Session pool is full and no session could be evicted."""

    pass


class ResourceLimitExceeded(SupervisorError):
    """Process was terminated by the OS for breaching a resource limit.

    Observed after the fact from the exit status, never raised proactively.
    """

    def __init__(self, limit: str, signal_name: str):
        self.limit = limit
        self.signal_name = signal_name
        super().__init__(f"Resource limit exceeded: {limit} ({signal_name})")


class UnknownTaskError(SupervisorError, KeyError):
    """No background task registered under this id."""

    def __str__(self) -> str:
        return Exception.__str__(self)


class UnknownSessionError(SupervisorError, KeyError):
    """No shell session registered under this id."""

    def __str__(self) -> str:
        return Exception.__str__(self)


class SessionTerminatedError(SupervisorError):
    """Shell session process is no longer running."""

    pass
