"""Blocking single-command execution with timeout enforcement."""

from __future__ import annotations

import logging
import threading
import time

from cmdsupervisor.core.buffer import CircularBuffer
from cmdsupervisor.core.errors import SpawnFailed, ValidationRejected
from cmdsupervisor.core.events import EventEmitter, EventType
from cmdsupervisor.core.formatting import apply_line_filter
from cmdsupervisor.core.models import MAX_TIMEOUT_MS, ExecutionMode, ExecutionRequest, ForegroundResult
from cmdsupervisor.core.process import ProcessHandle, spawn, split_returncode
from cmdsupervisor.core.signals import SignalManager
from cmdsupervisor.core.tracker import ProcessTracker
from cmdsupervisor.core.validator import CommandValidator
from cmdsupervisor.sandbox.limits import ResourceLimiter, ResourcePolicy, SpawnOptions, detect_limit_breach

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 120_000
# How often run() wakes up to check a cancel event.
_CANCEL_POLL_SECONDS = 0.05


class ForegroundExecutor:
    """Run one command to completion and return its captured result.

    The caller blocks until the process exits. A timeout, or a set
    ``cancel_event``, starts SIGTERM -> grace -> SIGKILL; run() still
    waits for the exit so the result always reflects the final state.

    USAGE:
        executor = ForegroundExecutor(CommandValidator(), SignalManager(), ProcessTracker())
        result = executor.run(ExecutionRequest(command="echo hello"))
        result.stdout  # "hello\\n"
    """

    def __init__(
        self,
        validator: CommandValidator,
        signals: SignalManager,
        tracker: ProcessTracker,
        shell: str = "/bin/sh",
        policy: ResourcePolicy | None = None,
        default_timeout_ms: int = DEFAULT_TIMEOUT_MS,
        max_timeout_ms: int = MAX_TIMEOUT_MS,
        drain_timeout: float = 1.0,
        events: EventEmitter | None = None,
    ):
        self.validator = validator
        self.signals = signals
        self.tracker = tracker
        self.shell = shell
        self.policy = policy or ResourcePolicy()
        self.default_timeout_ms = default_timeout_ms
        self.max_timeout_ms = max_timeout_ms
        self.drain_timeout = drain_timeout
        self.events = events or EventEmitter()

    def run(self, request: ExecutionRequest, cancel_event: threading.Event | None = None) -> ForegroundResult:
        """Execute ``request.command`` and block until it exits.

        Raises:
            ValidationRejected: Command blocked before spawn.
            SpawnFailed: Process could not be started.
        """
        command = request.command
        try:
            self.validator.ensure_allowed(command)
        except ValidationRejected as e:
            self.events.emit(
                EventType.COMMAND_REJECTED,
                mode=ExecutionMode.FOREGROUND,
                command=command,
                payload={"rule": e.rule, "reason": e.reason},
            )
            raise

        timeout_ms = min(request.timeout_ms or self.default_timeout_ms, self.max_timeout_ms)
        stdout = CircularBuffer(self.policy.max_output_bytes)
        stderr = CircularBuffer(self.policy.max_output_bytes)

        options = ResourceLimiter.apply_policy(
            SpawnOptions.for_command(self.shell, command, request.cwd, request.env), self.policy
        )
        # on_exit blocks on this lock until the handle is registered.
        registration = threading.Lock()

        def on_exit(returncode: int) -> None:
            with registration:
                self.tracker.retire(handle.handle_id, returncode)

        with registration:
            try:
                handle = spawn(
                    options, command, stdout.write, stderr.write, on_exit=on_exit, drain_timeout=self.drain_timeout
                )
            except SpawnFailed as e:
                self.events.emit(
                    EventType.SPAWN_FAILED, mode=ExecutionMode.FOREGROUND, command=command, payload={"error": str(e)}
                )
                raise

            self.tracker.register(
                handle,
                ExecutionMode.FOREGROUND,
                handle.handle_id,
                output_counter=lambda: stdout.total_bytes_written + stderr.total_bytes_written,
            )
        self.events.emit(
            EventType.PROCESS_SPAWNED,
            mode=ExecutionMode.FOREGROUND,
            owner_id=handle.handle_id,
            command=command,
            payload={"pid": handle.pid, "timeout_ms": timeout_ms},
        )

        timed_out = False
        cancelled = False
        try:
            timed_out, cancelled = self._wait(handle, timeout_ms, cancel_event)
        finally:
            if not handle.exit_event.is_set():
                # Interrupted while waiting (e.g. KeyboardInterrupt).
                self.signals.terminate(handle)
                handle.wait(self.signals.grace_period + self.drain_timeout + 1)

        returncode = handle.returncode
        exit_code, sig_name = split_returncode(returncode)
        breach = detect_limit_breach(returncode)
        if breach is not None:
            self.events.emit(
                EventType.LIMIT_EXCEEDED,
                mode=ExecutionMode.FOREGROUND,
                owner_id=handle.handle_id,
                command=command,
                payload={"limit": breach.limit, "signal": breach.signal_name},
            )

        result = ForegroundResult(
            command=command,
            exit_code=exit_code,
            signal=sig_name,
            stdout=apply_line_filter(stdout.text(), request.output_filter),
            stderr=apply_line_filter(stderr.text(), request.output_filter),
            duration_ms=handle.elapsed_ms(),
            killed=timed_out or cancelled,
            timed_out=timed_out,
            stdout_truncated=stdout.truncated,
            stderr_truncated=stderr.truncated,
            error=str(breach) if breach is not None else None,
            limit_exceeded=breach.limit if breach is not None else None,
            timeout_ms=timeout_ms,
        )
        self.events.emit(
            EventType.PROCESS_EXITED,
            mode=ExecutionMode.FOREGROUND,
            owner_id=handle.handle_id,
            command=command,
            payload={
                "exit_code": exit_code,
                "signal": sig_name,
                "timed_out": timed_out,
                "duration_ms": result.duration_ms,
            },
        )
        return result

    def _wait(
        self,
        handle: ProcessHandle,
        timeout_ms: int,
        cancel_event: threading.Event | None,
    ) -> tuple[bool, bool]:
        """Wait for exit, starting termination on timeout or cancel.

        Returns (timed_out, cancelled). Each is True only if this call
        actually delivered the termination signal.
        """
        deadline = time.monotonic() + timeout_ms / 1000
        timed_out = False
        cancelled = False
        terminating = False

        while True:
            if terminating:
                handle.wait()
                break

            remaining = deadline - time.monotonic()
            step = remaining if cancel_event is None else min(remaining, _CANCEL_POLL_SECONDS)
            if handle.wait(max(step, 0.0)):
                break

            if cancel_event is not None and cancel_event.is_set():
                cancelled = self.signals.terminate(handle)
                terminating = True
                logger.info(f"Foreground command cancelled: {handle.command!r}")
            elif time.monotonic() >= deadline:
                timed_out = self.signals.terminate(handle)
                terminating = True
                if timed_out:
                    logger.info(f"Foreground command timed out after {timeout_ms}ms: {handle.command!r}")
                    self.events.emit(
                        EventType.TIMEOUT_FIRED,
                        mode=ExecutionMode.FOREGROUND,
                        owner_id=handle.handle_id,
                        command=handle.command,
                        payload={"timeout_ms": timeout_ms},
                    )
        return timed_out, cancelled
