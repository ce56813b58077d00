"""Background tasks: start now, poll output later, kill on request.

Each task owns a per-task lock that guards its status transitions. The
registry lock is held only to add, look up, or remove tasks, never while
signalling or waiting. Lock order is task.lock, then handle.lock.

Status machine (terminal states are final)::

    running -> killing -> {completed, failed}
    running -> {completed, failed}

Only the exit handler moves a task into a terminal state.
"""

from __future__ import annotations

import itertools
import logging
import signal as signal_module
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from cmdsupervisor.core.buffer import CircularBuffer
from cmdsupervisor.core.errors import KillFailed, SpawnFailed, UnknownTaskError, ValidationRejected
from cmdsupervisor.core.events import EventEmitter, EventType
from cmdsupervisor.core.formatting import apply_line_filter
from cmdsupervisor.core.models import (
    MAX_TIMEOUT_MS,
    BackgroundStatus,
    ExecutionMode,
    ExecutionRequest,
    ForegroundResult,
    KillOutcome,
    ResourceMetrics,
    TaskStatus,
    TaskSummary,
    _utc_now,
)
from cmdsupervisor.core.process import ProcessHandle, spawn, split_returncode
from cmdsupervisor.core.signals import SignalManager
from cmdsupervisor.core.tracker import ProcessTracker
from cmdsupervisor.core.validator import CommandValidator
from cmdsupervisor.sandbox.limits import ResourceLimiter, ResourcePolicy, SpawnOptions, detect_limit_breach

logger = logging.getLogger(__name__)

SUMMARY_COMMAND_CHARS = 50
DEFAULT_MAX_AGE_SECONDS = 3600


@dataclass
class BackgroundTask:
    """A long-running command started without blocking the caller."""

    task_id: str
    command: str
    request: ExecutionRequest
    stdout: CircularBuffer
    stderr: CircularBuffer
    status: TaskStatus = TaskStatus.RUNNING
    started_at: datetime = field(default_factory=_utc_now)
    started_monotonic: float = field(default_factory=time.monotonic)
    finished_monotonic: float | None = None
    handle: ProcessHandle | None = None
    result: ForegroundResult | None = None
    metrics: ResourceMetrics = field(default_factory=ResourceMetrics)
    kill_requested: bool = False
    timed_out: bool = False
    timeout_timer: threading.Timer | None = None
    lock: threading.RLock = field(default_factory=threading.RLock)

    def duration_ms(self) -> float:
        end = self.finished_monotonic if self.finished_monotonic is not None else time.monotonic()
        return (end - self.started_monotonic) * 1000


class BackgroundTaskManager:
    """Registry of background tasks.

    ``start``, ``status`` and ``kill`` never block on the child process.

    USAGE:
        manager = BackgroundTaskManager(validator, signals, tracker)
        task_id = manager.start(ExecutionRequest(command="make test", mode="background"))
        manager.status(task_id).stdout
        manager.kill(task_id)
    """

    def __init__(
        self,
        validator: CommandValidator,
        signals: SignalManager,
        tracker: ProcessTracker,
        shell: str = "/bin/sh",
        policy: ResourcePolicy | None = None,
        max_timeout_ms: int = MAX_TIMEOUT_MS,
        drain_timeout: float = 1.0,
        events: EventEmitter | None = None,
    ):
        self.validator = validator
        self.signals = signals
        self.tracker = tracker
        self.shell = shell
        self.policy = policy or ResourcePolicy()
        self.max_timeout_ms = max_timeout_ms
        self.drain_timeout = drain_timeout
        self.events = events or EventEmitter()
        self._tasks: dict[str, BackgroundTask] = {}
        self._lock = threading.Lock()
        self._ids = itertools.count(1)

    # -- start ----------------------------------------------------------------

    def start(self, request: ExecutionRequest) -> str:
        """Spawn ``request.command`` and return its task id once the process exists.

        Background commands run without a timeout unless the request sets one.

        Raises:
            ValidationRejected: Command blocked before spawn.
            SpawnFailed: Process could not be started. No task is registered.
        """
        command = request.command
        try:
            self.validator.ensure_allowed(command)
        except ValidationRejected as e:
            self.events.emit(
                EventType.COMMAND_REJECTED,
                mode=ExecutionMode.BACKGROUND,
                command=command,
                payload={"rule": e.rule, "reason": e.reason},
            )
            raise

        task = BackgroundTask(
            task_id=f"bash_{next(self._ids)}",
            command=command,
            request=request,
            stdout=CircularBuffer(self.policy.max_output_bytes),
            stderr=CircularBuffer(self.policy.max_output_bytes),
        )
        options = ResourceLimiter.apply_policy(
            SpawnOptions.for_command(self.shell, command, request.cwd, request.env), self.policy
        )

        # The exit handler blocks on task.lock until registration is done.
        with task.lock:
            try:
                handle = spawn(
                    options,
                    command,
                    task.stdout.write,
                    task.stderr.write,
                    on_exit=self._exit_handler(task),
                    drain_timeout=self.drain_timeout,
                )
            except SpawnFailed as e:
                self.events.emit(
                    EventType.SPAWN_FAILED,
                    mode=ExecutionMode.BACKGROUND,
                    command=command,
                    payload={"error": str(e)},
                )
                raise

            task.handle = handle
            self.tracker.register(
                handle,
                ExecutionMode.BACKGROUND,
                task.task_id,
                output_counter=lambda: task.stdout.total_bytes_written + task.stderr.total_bytes_written,
            )
            if request.timeout_ms is not None:
                timeout_ms = min(request.timeout_ms, self.max_timeout_ms)
                timer = threading.Timer(timeout_ms / 1000, self._on_timeout, args=(task, timeout_ms))
                timer.daemon = True
                task.timeout_timer = timer
                timer.start()

            with self._lock:
                self._tasks[task.task_id] = task

        logger.info(f"Started background task {task.task_id} (pid {handle.pid}): {command!r}")
        self.events.emit(
            EventType.TASK_STARTED,
            mode=ExecutionMode.BACKGROUND,
            owner_id=task.task_id,
            command=command,
            payload={"pid": handle.pid},
        )
        return task.task_id

    def _exit_handler(self, task: BackgroundTask) -> Callable[[int], None]:
        def _on_exit(returncode: int) -> None:
            self._finish(task, returncode)

        return _on_exit

    def _finish(self, task: BackgroundTask, returncode: int) -> None:
        with task.lock:
            handle = task.handle
            if task.timeout_timer is not None:
                task.timeout_timer.cancel()
                task.timeout_timer = None

            exit_code, sig_name = split_returncode(returncode)
            breach = detect_limit_breach(returncode)
            error = None
            if breach is not None:
                error = str(breach)
            elif task.timed_out:
                error = "timed out"
            elif task.kill_requested:
                error = "killed"

            task.finished_monotonic = time.monotonic()
            task.result = ForegroundResult(
                command=task.command,
                exit_code=exit_code,
                signal=sig_name,
                stdout=task.stdout.text(),
                stderr=task.stderr.text(),
                duration_ms=task.duration_ms(),
                killed=task.kill_requested or task.timed_out,
                timed_out=task.timed_out,
                stdout_truncated=task.stdout.truncated,
                stderr_truncated=task.stderr.truncated,
                error=error,
                limit_exceeded=breach.limit if breach is not None else None,
                timeout_ms=task.request.timeout_ms,
            )
            if handle is not None:
                record = self.tracker.retire(handle.handle_id, returncode)
                if record is not None:
                    task.metrics = record.metrics
            task.status = TaskStatus.COMPLETED if returncode == 0 and error is None else TaskStatus.FAILED
            task.handle = None

        logger.info(f"Background task {task.task_id} {task.status.value} (returncode {returncode})")
        self.events.emit(
            EventType.TASK_FINISHED,
            mode=ExecutionMode.BACKGROUND,
            owner_id=task.task_id,
            command=task.command,
            payload={"status": task.status.value, "exit_code": exit_code, "signal": sig_name},
        )

    def _on_timeout(self, task: BackgroundTask, timeout_ms: int) -> None:
        with task.lock:
            task.timeout_timer = None
            if task.status != TaskStatus.RUNNING or task.handle is None:
                return
            if self.signals.terminate(task.handle):
                task.timed_out = True
                task.status = TaskStatus.KILLING
                logger.info(f"Background task {task.task_id} timed out after {timeout_ms}ms")
        if task.timed_out:
            self.events.emit(
                EventType.TIMEOUT_FIRED,
                mode=ExecutionMode.BACKGROUND,
                owner_id=task.task_id,
                command=task.command,
                payload={"timeout_ms": timeout_ms},
            )

    # -- queries --------------------------------------------------------------

    def _get(self, task_id: str) -> BackgroundTask:
        with self._lock:
            task = self._tasks.get(task_id)
        if task is None:
            raise UnknownTaskError(f"Unknown background task: {task_id}")
        return task

    def status(self, task_id: str, output_filter: str | None = None) -> BackgroundStatus:
        """Snapshot a task's status and output. Never blocks on the process.

        An invalid ``output_filter`` returns the output unfiltered.

        Raises:
            UnknownTaskError: No task with this id.
        """
        task = self._get(task_id)
        with task.lock:
            status = task.status
            result = task.result
            handle = task.handle
            metrics = task.metrics
            duration_ms = task.duration_ms()

        if handle is not None:
            metrics = self.tracker.metrics(handle.handle_id) or metrics

        return BackgroundStatus(
            task_id=task.task_id,
            command=task.command,
            status=status,
            stdout=apply_line_filter(task.stdout.text(), output_filter),
            stderr=apply_line_filter(task.stderr.text(), output_filter),
            stdout_truncated=task.stdout.truncated,
            stderr_truncated=task.stderr.truncated,
            metrics=metrics,
            result=result,
            started_at=task.started_at,
            duration_ms=result.duration_ms if result is not None else duration_ms,
            filter_pattern=output_filter,
            exit_code=result.exit_code if result is not None else None,
        )

    def list_tasks(self) -> list[TaskSummary]:
        with self._lock:
            tasks = list(self._tasks.values())
        summaries = []
        for task in tasks:
            with task.lock:
                command = task.command
                if len(command) > SUMMARY_COMMAND_CHARS:
                    command = command[: SUMMARY_COMMAND_CHARS - 3] + "..."
                summaries.append(
                    TaskSummary(
                        task_id=task.task_id,
                        command=command,
                        status=task.status,
                        started_at=task.started_at,
                        duration_ms=task.duration_ms(),
                    )
                )
        return summaries

    def running_count(self) -> int:
        with self._lock:
            tasks = list(self._tasks.values())
        return sum(1 for t in tasks if not t.status.is_terminal)

    # -- kill -----------------------------------------------------------------

    def kill(self, task_id: str, signal: int | None = None) -> KillOutcome:
        """Request termination of a running task.

        A default kill runs SIGTERM -> grace -> SIGKILL. While a kill is in
        progress only an explicit SIGKILL is accepted, to force it.

        Raises:
            UnknownTaskError: No task with this id.
        """
        task = self._get(task_id)
        with task.lock:
            if task.status.is_terminal or task.handle is None:
                return KillOutcome(success=False, reason="not running")

            handle = task.handle
            if task.status == TaskStatus.KILLING:
                if signal != signal_module.SIGKILL:
                    return KillOutcome(success=False, reason="kill already in progress")
                try:
                    self.signals.send_signal(handle, signal_module.SIGKILL)
                except KillFailed as e:
                    return KillOutcome(success=False, reason=str(e))
                return KillOutcome(success=True)

            sent = self.signals.terminate(handle, sig=signal or signal_module.SIGTERM)
            if not sent:
                return KillOutcome(success=False, reason="not running")
            task.status = TaskStatus.KILLING
            task.kill_requested = True

        logger.info(f"Kill requested for background task {task_id}")
        self.events.emit(
            EventType.TASK_KILL_REQUESTED,
            mode=ExecutionMode.BACKGROUND,
            owner_id=task_id,
            command=task.command,
            payload={"signal": signal_module.Signals(signal or signal_module.SIGTERM).name},
        )
        return KillOutcome(success=True)

    # -- housekeeping ---------------------------------------------------------

    def remove(self, task_id: str) -> bool:
        """Evict a terminal task. Returns False if it is still running.

        Raises:
            UnknownTaskError: No task with this id.
        """
        task = self._get(task_id)
        with task.lock:
            if not task.status.is_terminal:
                return False
        with self._lock:
            self._tasks.pop(task_id, None)
        self.events.emit(EventType.TASK_REMOVED, mode=ExecutionMode.BACKGROUND, owner_id=task_id)
        return True

    def cleanup_completed(self, max_age_seconds: float = DEFAULT_MAX_AGE_SECONDS) -> int:
        """Evict terminal tasks that finished more than ``max_age_seconds`` ago."""
        now = time.monotonic()
        with self._lock:
            tasks = list(self._tasks.values())

        removed = 0
        for task in tasks:
            with task.lock:
                expired = (
                    task.status.is_terminal
                    and task.finished_monotonic is not None
                    and now - task.finished_monotonic >= max_age_seconds
                )
            if expired and self.remove(task.task_id):
                removed += 1
        if removed:
            logger.debug(f"Cleaned up {removed} finished background task(s)")
        return removed

    def shutdown(self, wait: float | None = None) -> None:
        """Terminate every running task and wait for them to exit."""
        with self._lock:
            tasks = list(self._tasks.values())

        handles = []
        for task in tasks:
            with task.lock:
                if task.handle is None or task.status.is_terminal:
                    continue
                handles.append(task.handle)
                if self.signals.terminate(task.handle):
                    task.status = TaskStatus.KILLING
                    task.kill_requested = True

        timeout = wait if wait is not None else self.signals.grace_period + self.drain_timeout + 1
        deadline = time.monotonic() + timeout
        for handle in handles:
            handle.wait(max(0.0, deadline - time.monotonic()))
