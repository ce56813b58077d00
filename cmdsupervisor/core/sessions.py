"""Pool of persistent interactive shell sessions.

A session is one long-lived shell reading commands from a stdin pipe, so
state such as the working directory and exported variables carries over
between commands. One caller at a time may run a command in a session.

Command completion is detected heuristically: ``execute`` returns once no
new output has arrived for the quiet period. A slow command that goes
silent will be reported early; its later output shows up in the next
command's result. It is a heuristic for a pipe-driven shell, not an
exit-code boundary.

A command that exceeds its timeout takes the session down with it: the
shell's process group is terminated and the session must be re-acquired.
"""

from __future__ import annotations

import logging
import os
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from cmdsupervisor.core.buffer import CircularBuffer
from cmdsupervisor.core.errors import (
    PoolExhausted,
    SessionTerminatedError,
    SpawnFailed,
    UnknownSessionError,
    ValidationRejected,
)
from cmdsupervisor.core.events import EventEmitter, EventType
from cmdsupervisor.core.models import ExecutionMode, ResourceMetrics, SessionInfo, SessionOutput, SessionStatus, _utc_now
from cmdsupervisor.core.process import ProcessHandle, spawn
from cmdsupervisor.core.signals import SignalManager
from cmdsupervisor.core.tracker import ProcessTracker
from cmdsupervisor.core.validator import CommandValidator
from cmdsupervisor.sandbox.limits import ResourceLimiter, ResourcePolicy, SpawnOptions

logger = logging.getLogger(__name__)

READY_MARKER = "__CMDSUPERVISOR_SESSION_READY__"


@dataclass
class SessionCommand:
    """One entry in a session's command history."""

    command: str
    started_at: datetime
    duration_ms: float
    timed_out: bool = False


@dataclass
class ShellSession:
    """A persistent shell owned by the pool."""

    session_id: str
    stdout: CircularBuffer
    stderr: CircularBuffer
    handle: ProcessHandle | None = None
    status: SessionStatus = SessionStatus.INITIALIZING
    created_at: datetime = field(default_factory=_utc_now)
    last_activity: datetime = field(default_factory=_utc_now)
    last_activity_monotonic: float = field(default_factory=time.monotonic)
    history: list[SessionCommand] = field(default_factory=list)
    busy: bool = False
    # Serialises callers: held for the whole of a command.
    lock: threading.Lock = field(default_factory=threading.Lock)
    # Signalled on every output chunk and on shell exit.
    output_cond: threading.Condition = field(default_factory=threading.Condition)

    @property
    def alive(self) -> bool:
        return (
            self.status == SessionStatus.READY
            and self.handle is not None
            and self.handle.is_running()
        )

    def output_total(self) -> int:
        return self.stdout.total_bytes_written + self.stderr.total_bytes_written

    def touch(self) -> None:
        self.last_activity = _utc_now()
        self.last_activity_monotonic = time.monotonic()

    def idle_seconds(self) -> float:
        return time.monotonic() - self.last_activity_monotonic


def _session_argv(shell: str) -> list[str]:
    if os.path.basename(shell) == "bash":
        return [shell, "--noprofile", "--norc", "-s"]
    return [shell, "-s"]


class ShellSessionPool:
    """Bounded pool of shell sessions with LRU eviction and idle expiry.

    USAGE:
        pool = ShellSessionPool(validator, signals, tracker, max_sessions=4)
        session = pool.acquire()
        pool.execute(session.session_id, "cd /tmp")
        pool.execute(session.session_id, "pwd").stdout  # "/tmp\\n"
        pool.close(session.session_id)
    """

    def __init__(
        self,
        validator: CommandValidator,
        signals: SignalManager,
        tracker: ProcessTracker,
        shell: str = "/bin/sh",
        policy: ResourcePolicy | None = None,
        max_sessions: int = 4,
        idle_timeout: float = 900.0,
        quiet_period: float = 0.25,
        command_timeout: float = 30.0,
        sweep_interval: float = 30.0,
        init_timeout: float = 5.0,
        drain_timeout: float = 1.0,
        events: EventEmitter | None = None,
    ):
        if max_sessions <= 0:
            raise ValueError("max_sessions must be > 0")
        self.validator = validator
        self.signals = signals
        self.tracker = tracker
        self.shell = shell
        self.policy = policy or ResourcePolicy()
        self.max_sessions = max_sessions
        self.idle_timeout = idle_timeout
        self.quiet_period = quiet_period
        self.command_timeout = command_timeout
        self.sweep_interval = sweep_interval
        self.init_timeout = init_timeout
        self.drain_timeout = drain_timeout
        self.events = events or EventEmitter()

        self._sessions: dict[str, ShellSession] = {}
        # Slots reserved by acquire() calls still spawning their shell.
        self._pending = 0
        self._lock = threading.Lock()
        # Notified whenever a reserved slot is released.
        self._slot_released = threading.Condition(self._lock)
        self._stop = threading.Event()
        self._sweeper: threading.Thread | None = None

    # -- acquire / create -----------------------------------------------------

    def acquire(
        self,
        session_id: str | None = None,
        cwd: Path | str | None = None,
        env: dict[str, str] | None = None,
    ) -> ShellSession:
        """Return a ready session, creating or evicting as needed.

        When the pool is full only because other callers are still creating
        sessions, this waits for those creations to finish and retries.

        Raises:
            PoolExhausted: Pool is full and every session is mid-command.
            SpawnFailed: The shell could not be started.
        """
        victim: ShellSession | None = None
        dead: ShellSession | None = None
        with self._slot_released:
            while True:
                if session_id is not None and session_id in self._sessions:
                    existing = self._sessions[session_id]
                    if existing.alive:
                        existing.touch()
                        return existing
                    dead = self._sessions.pop(session_id)

                if len(self._sessions) + self._pending < self.max_sessions:
                    break
                victim = self._claim_lru_victim()
                if victim is not None:
                    break
                if self._pending == 0:
                    raise PoolExhausted(
                        f"All {self.max_sessions} shell sessions are busy; cannot create another"
                    )
                self._slot_released.wait()
            self._pending += 1

        try:
            if dead is not None:
                self._terminate(dead)
            if victim is not None:
                self._evict(victim)
            session = self._create(session_id or f"session_{uuid.uuid4().hex[:8]}", cwd, env)
        except BaseException:
            with self._slot_released:
                self._pending -= 1
                self._slot_released.notify_all()
            raise

        # Release the reserved slot and publish under one lock hold.
        with self._slot_released:
            self._pending -= 1
            self._slot_released.notify_all()
            raced = self._sessions.get(session.session_id)
            if raced is None or not raced.alive:
                self._sessions[session.session_id] = session
        if raced is not None and raced.alive:
            # Another caller created this id first.
            self._terminate(session)
            raced.touch()
            return raced
        self._ensure_sweeper()
        return session

    def _claim_lru_victim(self) -> ShellSession | None:
        """Pick and detach the least-recently-used session that is not mid-command.

        Caller holds the pool lock. The victim's own lock is taken without
        blocking so a session whose command is starting cannot be chosen.
        """
        for candidate in sorted(self._sessions.values(), key=lambda s: s.last_activity_monotonic):
            if candidate.busy or not candidate.lock.acquire(blocking=False):
                continue
            try:
                candidate.status = SessionStatus.TERMINATING
                del self._sessions[candidate.session_id]
            finally:
                candidate.lock.release()
            return candidate
        return None

    def _evict(self, victim: ShellSession) -> None:
        logger.info(f"Evicting least-recently-used session {victim.session_id}")
        self.events.emit(
            EventType.SESSION_EVICTED,
            mode=ExecutionMode.SESSION,
            owner_id=victim.session_id,
            payload={"idle_seconds": round(victim.idle_seconds(), 3)},
        )
        if not self._terminate(victim):
            raise PoolExhausted(f"Evicted session {victim.session_id} did not exit in time")

    def _create(
        self,
        session_id: str,
        cwd: Path | str | None,
        env: dict[str, str] | None,
    ) -> ShellSession:
        session = ShellSession(
            session_id=session_id,
            stdout=CircularBuffer(self.policy.max_output_bytes),
            stderr=CircularBuffer(self.policy.max_output_bytes),
        )
        merged_env = dict(os.environ)
        merged_env.update(env or {})
        options = ResourceLimiter.apply_policy(
            SpawnOptions(
                argv=_session_argv(self.shell),
                cwd=Path(cwd) if cwd is not None else None,
                env=merged_env,
                stdin=True,
            ),
            self.policy,
        )

        def on_output(buffer: CircularBuffer):
            def _write(chunk: bytes) -> None:
                buffer.write(chunk)
                with session.output_cond:
                    session.output_cond.notify_all()

            return _write

        def on_exit(returncode: int) -> None:
            with session.output_cond:
                session.status = SessionStatus.TERMINATED
                session.output_cond.notify_all()
            if session.handle is not None:
                self.tracker.retire(session.handle.handle_id, returncode)
            logger.debug(f"Session {session_id} shell exited with {returncode}")

        handle = spawn(
            options,
            f"<session {session_id}>",
            on_output(session.stdout),
            on_output(session.stderr),
            on_exit=on_exit,
            drain_timeout=self.drain_timeout,
        )
        session.handle = handle
        self.tracker.register(
            handle, ExecutionMode.SESSION, session_id, output_counter=session.output_total
        )

        if not self._wait_ready(session):
            self._terminate(session)
            raise SpawnFailed(
                self.shell, f"Shell session {session_id} did not become ready within {self.init_timeout}s"
            )

        session.status = SessionStatus.READY
        session.touch()
        logger.info(f"Created shell session {session_id} (pid {handle.pid})")
        self.events.emit(
            EventType.SESSION_CREATED,
            mode=ExecutionMode.SESSION,
            owner_id=session_id,
            payload={"pid": handle.pid},
        )
        return session

    def _wait_ready(self, session: ShellSession) -> bool:
        if not self._write_line(session, f"echo {READY_MARKER}"):
            return False
        marker = READY_MARKER.encode()
        deadline = time.monotonic() + self.init_timeout
        with session.output_cond:
            while marker not in session.stdout.read():
                remaining = deadline - time.monotonic()
                if remaining <= 0 or session.status == SessionStatus.TERMINATED:
                    return False
                session.output_cond.wait(remaining)
        return True

    # -- execute --------------------------------------------------------------

    def get(self, session_id: str) -> ShellSession:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise UnknownSessionError(f"Unknown shell session: {session_id}")
        return session

    def execute(self, session_id: str, command: str, timeout_ms: int | None = None) -> SessionOutput:
        """Send ``command`` to the session's shell and collect its output.

        Blocks until output has been quiet for the quiet period, the
        command timeout elapses, or the shell exits.

        Raises:
            ValidationRejected: Command blocked; nothing is written to the shell.
            UnknownSessionError: No session with this id.
            SessionTerminatedError: The session's shell is no longer running.
        """
        try:
            self.validator.ensure_allowed(command)
        except ValidationRejected as e:
            self.events.emit(
                EventType.COMMAND_REJECTED,
                mode=ExecutionMode.SESSION,
                owner_id=session_id,
                command=command,
                payload={"rule": e.rule, "reason": e.reason},
            )
            raise

        session = self.get(session_id)
        timeout = timeout_ms / 1000 if timeout_ms is not None else self.command_timeout

        with session.lock:
            if not session.alive:
                raise SessionTerminatedError(f"Shell session {session_id} is not running")
            session.busy = True
            try:
                return self._run_command(session, command, timeout)
            finally:
                session.busy = False
                session.touch()

    def _run_command(self, session: ShellSession, command: str, timeout: float) -> SessionOutput:
        started_at = _utc_now()
        start = time.monotonic()
        out_mark = session.stdout.total_bytes_written
        err_mark = session.stderr.total_bytes_written

        timed_out = False
        terminated = False
        if not self._write_line(session, command):
            terminated = True
        else:
            deadline = start + timeout
            last_total = session.output_total()
            last_change = time.monotonic()
            with session.output_cond:
                while True:
                    now = time.monotonic()
                    if session.status == SessionStatus.TERMINATED:
                        terminated = True
                        break
                    total = session.output_total()
                    if total != last_total:
                        last_total = total
                        last_change = now
                    elif now - last_change >= self.quiet_period:
                        break
                    if now >= deadline:
                        timed_out = True
                        break
                    wait_for = min(self.quiet_period - (now - last_change), deadline - now)
                    session.output_cond.wait(max(wait_for, 0.001))

        if timed_out:
            logger.info(f"Session {session.session_id} command timed out after {timeout}s: {command!r}")
            self.events.emit(
                EventType.TIMEOUT_FIRED,
                mode=ExecutionMode.SESSION,
                owner_id=session.session_id,
                command=command,
                payload={"timeout_ms": int(timeout * 1000)},
            )
            session.status = SessionStatus.TERMINATING
            self._terminate(session)
            terminated = True

        stdout, out_complete = session.stdout.tail_since(out_mark)
        stderr, err_complete = session.stderr.tail_since(err_mark)
        duration_ms = (time.monotonic() - start) * 1000
        session.history.append(
            SessionCommand(command=command, started_at=started_at, duration_ms=duration_ms, timed_out=timed_out)
        )
        self.events.emit(
            EventType.SESSION_COMMAND,
            mode=ExecutionMode.SESSION,
            owner_id=session.session_id,
            command=command,
            payload={"duration_ms": duration_ms, "timed_out": timed_out},
        )
        return SessionOutput(
            session_id=session.session_id,
            command=command,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            duration_ms=duration_ms,
            timed_out=timed_out,
            truncated=not (out_complete and err_complete),
            session_terminated=terminated,
        )

    @staticmethod
    def _write_line(session: ShellSession, line: str) -> bool:
        stdin = session.handle.stdin if session.handle is not None else None
        if stdin is None:
            return False
        try:
            stdin.write((line + "\n").encode())
            stdin.flush()
        except (BrokenPipeError, ValueError, OSError) as e:
            logger.debug(f"Write to session {session.session_id} failed: {e}")
            return False
        return True

    # -- close / sweep --------------------------------------------------------

    def _terminate(self, session: ShellSession) -> bool:
        """Stop a session's shell. Returns True once it has exited."""
        handle = session.handle
        if handle is None:
            session.status = SessionStatus.TERMINATED
            return True
        if session.status != SessionStatus.TERMINATED:
            session.status = SessionStatus.TERMINATING
        if handle.stdin is not None:
            try:
                handle.stdin.close()
            except OSError:
                pass
        self.signals.terminate(handle)
        exited = handle.wait(self.signals.grace_period + self.drain_timeout + 1)
        session.status = SessionStatus.TERMINATED
        if exited:
            self.tracker.retire(handle.handle_id, handle.returncode)
        return exited

    def close(self, session_id: str) -> bool:
        """Terminate and remove a session. Returns False if it was not in the pool."""
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        self._terminate(session)
        logger.info(f"Closed shell session {session_id}")
        self.events.emit(EventType.SESSION_CLOSED, mode=ExecutionMode.SESSION, owner_id=session_id)
        return True

    def sweep_idle(self) -> list[str]:
        """Close sessions idle past the idle timeout, and drop dead ones."""
        expired: list[ShellSession] = []
        with self._lock:
            for session in list(self._sessions.values()):
                if session.alive and session.idle_seconds() < self.idle_timeout:
                    continue
                if session.busy or not session.lock.acquire(blocking=False):
                    continue
                try:
                    session.status = (
                        SessionStatus.TERMINATING if session.alive else SessionStatus.TERMINATED
                    )
                    del self._sessions[session.session_id]
                finally:
                    session.lock.release()
                expired.append(session)

        for session in expired:
            self._terminate(session)
            logger.info(f"Closed idle shell session {session.session_id}")
            self.events.emit(
                EventType.SESSION_CLOSED,
                mode=ExecutionMode.SESSION,
                owner_id=session.session_id,
                payload={"reason": "idle"},
            )
        return [s.session_id for s in expired]

    def _run_sweeper(self) -> None:
        while not self._stop.wait(self.sweep_interval):
            try:
                self.sweep_idle()
            except Exception:
                logger.exception("Idle session sweep failed")

    def _ensure_sweeper(self) -> None:
        with self._lock:
            if self._sweeper is not None and self._sweeper.is_alive():
                return
            self._stop.clear()
            self._sweeper = threading.Thread(target=self._run_sweeper, name="session-sweeper", daemon=True)
            self._sweeper.start()

    # -- listing / shutdown ---------------------------------------------------

    def list_sessions(self) -> list[SessionInfo]:
        with self._lock:
            sessions = list(self._sessions.values())
        infos = []
        for session in sessions:
            metrics = ResourceMetrics()
            if session.handle is not None:
                metrics = self.tracker.metrics(session.handle.handle_id) or metrics
            infos.append(
                SessionInfo(
                    session_id=session.session_id,
                    status=session.status,
                    created_at=session.created_at,
                    last_activity=session.last_activity,
                    commands_run=len(session.history),
                    busy=session.busy,
                    metrics=metrics,
                )
            )
        return infos

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def shutdown(self) -> None:
        """Stop the sweeper and close every session."""
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=1)
            self._sweeper = None
        with self._lock:
            session_ids = list(self._sessions)
        for session_id in session_ids:
            self.close(session_id)
