"""Mode-independent entry point wiring all supervisor components together."""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from types import TracebackType

from cmdsupervisor.core.background import BackgroundTaskManager
from cmdsupervisor.core.config import SupervisorConfig
from cmdsupervisor.core.events import EventEmitter
from cmdsupervisor.core.foreground import ForegroundExecutor
from cmdsupervisor.core.models import (
    BackgroundStatus,
    ExecutionMode,
    ExecutionRequest,
    ForegroundResult,
    KillOutcome,
    SessionInfo,
    SessionOutput,
    TaskSummary,
    ValidationResult,
)
from cmdsupervisor.core.sessions import ShellSessionPool
from cmdsupervisor.core.signals import SignalManager
from cmdsupervisor.core.tracker import ProcessTracker

logger = logging.getLogger(__name__)


class CommandSupervisor:
    """Facade over validation, the three execution modes, and tracking.

    Every spawn path validates first, applies the configured resource
    policy, registers with the shared tracker, and terminates through the
    shared signal manager.

    USAGE:
        with CommandSupervisor(load_config()) as supervisor:
            result = supervisor.execute(ExecutionRequest(command="ls -la"))
            task_id = supervisor.execute_background(ExecutionRequest(command="npm test"))
            supervisor.get_background_status(task_id)
    """

    def __init__(self, config: SupervisorConfig | None = None, events: EventEmitter | None = None):
        self.config = config or SupervisorConfig()
        self.events = events or EventEmitter()
        cfg = self.config
        drain = cfg.drain_timeout_ms / 1000
        policy = cfg.resource_policy()

        self.validator = cfg.build_validator()
        self.signals = SignalManager(grace_period=cfg.grace_period_ms / 1000)
        self.tracker = ProcessTracker(
            sample_interval=cfg.tracker.sample_interval_ms / 1000,
            history_size=cfg.tracker.history_size,
        )
        self.foreground = ForegroundExecutor(
            self.validator,
            self.signals,
            self.tracker,
            shell=cfg.shell,
            policy=policy,
            default_timeout_ms=cfg.default_timeout_ms,
            max_timeout_ms=cfg.max_timeout_ms,
            drain_timeout=drain,
            events=self.events,
        )
        self.background = BackgroundTaskManager(
            self.validator,
            self.signals,
            self.tracker,
            shell=cfg.shell,
            policy=policy,
            max_timeout_ms=cfg.max_timeout_ms,
            drain_timeout=drain,
            events=self.events,
        )
        self.sessions = ShellSessionPool(
            self.validator,
            self.signals,
            self.tracker,
            shell=cfg.shell,
            policy=policy,
            max_sessions=cfg.sessions.max_sessions,
            idle_timeout=cfg.sessions.idle_timeout_ms / 1000,
            quiet_period=cfg.sessions.quiet_period_ms / 1000,
            command_timeout=cfg.sessions.command_timeout_ms / 1000,
            sweep_interval=cfg.sessions.sweep_interval_ms / 1000,
            init_timeout=cfg.sessions.init_timeout_ms / 1000,
            drain_timeout=drain,
            events=self.events,
        )
        self.tracker.start()

    def validate(self, command: str) -> ValidationResult:
        return self.validator.validate(command)

    # Foreground

    def execute(self, request: ExecutionRequest, cancel_event: threading.Event | None = None) -> ForegroundResult:
        return self.foreground.run(request, cancel_event)

    # Background

    def execute_background(self, request: ExecutionRequest) -> str:
        return self.background.start(request)

    def get_background_status(self, task_id: str, output_filter: str | None = None) -> BackgroundStatus:
        return self.background.status(task_id, output_filter)

    def kill_background(self, task_id: str, signal: int | None = None) -> KillOutcome:
        return self.background.kill(task_id, signal)

    def list_background_tasks(self) -> list[TaskSummary]:
        return self.background.list_tasks()

    def cleanup_background_tasks(self, max_age_seconds: float = 3600) -> int:
        return self.background.cleanup_completed(max_age_seconds)

    # Sessions

    def acquire_session(
        self,
        session_id: str | None = None,
        cwd: Path | str | None = None,
        env: dict[str, str] | None = None,
    ) -> str:
        return self.sessions.acquire(session_id, cwd=cwd, env=env).session_id

    def run_in_session(self, session_id: str, command: str, timeout_ms: int | None = None) -> SessionOutput:
        return self.sessions.execute(session_id, command, timeout_ms)

    def close_session(self, session_id: str) -> bool:
        return self.sessions.close(session_id)

    def list_sessions(self) -> list[SessionInfo]:
        return self.sessions.list_sessions()

    # Dispatch

    def submit(self, request: ExecutionRequest) -> ForegroundResult | str | SessionOutput:
        """Dispatch by ``request.mode``.

        Returns a ForegroundResult, a background task id, or a SessionOutput.
        Session requests without a ``session_id`` get a fresh session.
        """
        if request.mode == ExecutionMode.BACKGROUND:
            return self.execute_background(request)
        if request.mode == ExecutionMode.SESSION:
            # A rejected command must not create a session.
            self.validator.ensure_allowed(request.command)
            session_id = self.acquire_session(request.session_id, cwd=request.cwd, env=request.env)
            return self.run_in_session(session_id, request.command, request.timeout_ms)
        return self.execute(request)

    # Lifecycle

    def shutdown(self) -> None:
        """Kill running tasks, close sessions and stop sampling."""
        logger.debug("Shutting down command supervisor")
        self.background.shutdown()
        self.sessions.shutdown()
        self.tracker.stop()

    def __enter__(self) -> CommandSupervisor:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.shutdown()
