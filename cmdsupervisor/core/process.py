"""Process handles and the per-process event feed.

Each spawned process gets:
- one pump thread per output pipe, delivering chunks in order per stream
- one reaper thread that waits for exit, reaps the child under the
  handle lock, drains the pumps and then reports the exit

Every child is started in its own session so signals can target the
whole process group.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import IO

from cmdsupervisor.core.errors import SpawnFailed
from cmdsupervisor.core.models import _utc_now
from cmdsupervisor.sandbox.limits import SpawnOptions

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096

ChunkCallback = Callable[[bytes], None]
ExitCallback = Callable[[int], None]


@dataclass
class ProcessHandle:
    """A live OS process owned by exactly one executor, task or session.

    ``lock`` guards reaping and signalling. While it is held, either the
    child has not been reaped yet (so its pid is still reserved) or
    ``exited`` is already True.
    """

    handle_id: str
    proc: subprocess.Popen
    command: str
    started_at: datetime = field(default_factory=_utc_now)
    started_monotonic: float = field(default_factory=time.monotonic)
    lock: threading.RLock = field(default_factory=threading.RLock)
    exited: bool = False
    returncode: int | None = None
    termination_started: bool = False
    force_killed: bool = False
    escalation_timer: threading.Timer | None = None
    exit_event: threading.Event = field(default_factory=threading.Event)
    _pumps: list[threading.Thread] = field(default_factory=list, repr=False)

    @property
    def pid(self) -> int:
        return self.proc.pid

    @property
    def stdin(self) -> IO[bytes] | None:
        return self.proc.stdin

    def elapsed_ms(self) -> float:
        return (time.monotonic() - self.started_monotonic) * 1000

    def wait(self, timeout: float | None = None) -> bool:
        """Block until exit has been fully reported. Returns False on timeout."""
        return self.exit_event.wait(timeout)

    def is_running(self) -> bool:
        with self.lock:
            return not self.exited


def split_returncode(returncode: int | None) -> tuple[int | None, str | None]:
    """Split a Popen returncode into (exit_code, signal_name).

    A negative returncode means the process died from a signal, in which
    case there is no exit code.
    """
    if returncode is None:
        return None, None
    if returncode >= 0:
        return returncode, None
    try:
        return None, signal.Signals(-returncode).name
    except ValueError:
        return None, f"SIG{-returncode}"


def _pump(stream: IO[bytes], callback: ChunkCallback, label: str) -> None:
    try:
        while True:
            chunk = stream.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            try:
                callback(chunk)
            except Exception:
                logger.exception(f"Output callback failed for {label}")
    except (OSError, ValueError) as e:
        # Pipe closed underneath us during shutdown.
        logger.debug(f"Pump for {label} stopped: {e}")
    finally:
        try:
            stream.close()
        except OSError:
            pass


def _wait_for_exit(proc: subprocess.Popen) -> None:
    """Block until the child exits without reaping it."""
    if hasattr(os, "waitid"):
        try:
            os.waitid(os.P_PID, proc.pid, os.WEXITED | os.WNOWAIT)
            return
        except ChildProcessError:
            return
        except InterruptedError:
            pass
    while proc.poll() is None:
        time.sleep(0.01)


def _reap(
    handle: ProcessHandle,
    on_exit: ExitCallback | None,
    drain_timeout: float,
) -> None:
    _wait_for_exit(handle.proc)

    with handle.lock:
        returncode = handle.proc.wait()
        handle.returncode = returncode
        handle.exited = True
        if handle.escalation_timer is not None:
            handle.escalation_timer.cancel()
            handle.escalation_timer = None

    deadline = time.monotonic() + drain_timeout
    for pump in handle._pumps:
        pump.join(max(0.0, deadline - time.monotonic()))
        if pump.is_alive():
            logger.debug(f"Output of {handle.handle_id} still open after exit (orphaned children?)")

    logger.debug(f"Process {handle.pid} ({handle.handle_id}) exited with {returncode}")
    try:
        if on_exit is not None:
            on_exit(returncode)
    except Exception:
        logger.exception(f"Exit callback failed for {handle.handle_id}")
    finally:
        handle.exit_event.set()


def spawn(
    options: SpawnOptions,
    command: str,
    on_stdout: ChunkCallback,
    on_stderr: ChunkCallback,
    on_exit: ExitCallback | None = None,
    drain_timeout: float = 1.0,
) -> ProcessHandle:
    """Start a child process and wire up its event feed.

    Args:
        options: argv, cwd, environment and pre-exec hook.
        command: The user-facing command string (for logs and errors).
        on_stdout / on_stderr: Called from pump threads with each chunk.
        on_exit: Called once, after the child is reaped and its pipes drained.
        drain_timeout: Seconds to wait for pipes to reach EOF after exit.

    Raises:
        SpawnFailed: If the process could not be started.
    """
    if options.cwd is not None and not options.cwd.is_dir():
        raise SpawnFailed(command, f"Working directory does not exist: {options.cwd}")

    try:
        proc = subprocess.Popen(
            options.argv,
            stdin=subprocess.PIPE if options.stdin else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=str(options.cwd) if options.cwd is not None else None,
            env=options.env or None,
            bufsize=0,
            start_new_session=True,
            preexec_fn=options.preexec_fn,
        )
    except FileNotFoundError as e:
        raise SpawnFailed(command, f"Executable not found: {e.filename or options.argv[0]}", e) from e
    except PermissionError as e:
        raise SpawnFailed(command, f"Permission denied: {e}", e) from e
    except NotADirectoryError as e:
        raise SpawnFailed(command, f"Not a directory: {e.filename or options.cwd}", e) from e
    except (OSError, subprocess.SubprocessError) as e:
        raise SpawnFailed(command, f"Failed to start command: {e}", e) from e

    handle = ProcessHandle(handle_id=f"proc-{uuid.uuid4().hex[:12]}", proc=proc, command=command)
    logger.debug(f"Spawned pid {proc.pid} as {handle.handle_id}: {command!r}")

    for stream, callback, name in (
        (proc.stdout, on_stdout, "stdout"),
        (proc.stderr, on_stderr, "stderr"),
    ):
        label = f"{handle.handle_id}:{name}"
        pump = threading.Thread(target=_pump, args=(stream, callback, label), name=label, daemon=True)
        handle._pumps.append(pump)
        pump.start()

    threading.Thread(
        target=_reap,
        args=(handle, on_exit, drain_timeout),
        name=f"{handle.handle_id}:reaper",
        daemon=True,
    ).start()
    return handle
