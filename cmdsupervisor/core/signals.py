"""Graceful-then-forceful termination shared by every execution mode.

Protocol: send the graceful signal to the process group, arm a grace
timer, and escalate to SIGKILL if the process is still alive when the
timer fires. All decisions are made under the handle lock, which the
reaper also holds while reaping, so a signal is never sent to a pid that
has already been reaped.
"""

from __future__ import annotations

import logging
import os
import signal
import threading

from cmdsupervisor.core.errors import KillFailed
from cmdsupervisor.core.process import ProcessHandle

logger = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD = 5.0


def _signal_group(handle: ProcessHandle, sig: int) -> None:
    # Children run in their own session, so pgid == pid.
    try:
        os.killpg(handle.pid, sig)
    except ProcessLookupError:
        # Group leader already gone but not yet reaped by us; signal it directly.
        os.kill(handle.pid, sig)


class SignalManager:
    """Send signals and run the SIGTERM -> grace -> SIGKILL escalation.

    USAGE:
        signals = SignalManager(grace_period=5.0)
        signals.terminate(handle)            # idempotent
        signals.send_signal(handle, signal.SIGINT)
    """

    def __init__(self, grace_period: float = DEFAULT_GRACE_PERIOD):
        if grace_period < 0:
            raise ValueError("grace_period must be >= 0")
        self.grace_period = grace_period

    def terminate(
        self,
        handle: ProcessHandle,
        grace_period: float | None = None,
        sig: int = signal.SIGTERM,
    ) -> bool:
        """Start termination of ``handle``'s process group.

        Returns True if this call sent the graceful signal. Repeated calls,
        and calls after the process exited, do nothing and return False.
        """
        grace = self.grace_period if grace_period is None else grace_period
        with handle.lock:
            if handle.exited or handle.termination_started:
                return False
            handle.termination_started = True

            try:
                _signal_group(handle, sig)
            except (ProcessLookupError, PermissionError) as e:
                logger.warning(f"Could not signal pid {handle.pid}: {e}")
                return False

            logger.debug(
                f"Sent {signal.Signals(sig).name} to pid {handle.pid}, escalating in {grace:.2f}s"
            )
            if sig != signal.SIGKILL:
                timer = threading.Timer(grace, self._escalate, args=(handle,))
                timer.daemon = True
                timer.name = f"{handle.handle_id}:escalate"
                handle.escalation_timer = timer
                timer.start()
            return True

    def _escalate(self, handle: ProcessHandle) -> None:
        with handle.lock:
            handle.escalation_timer = None
            if handle.exited:
                return
            try:
                _signal_group(handle, signal.SIGKILL)
                handle.force_killed = True
                logger.info(f"Grace period expired; sent SIGKILL to pid {handle.pid}")
            except (ProcessLookupError, PermissionError) as e:
                logger.debug(f"SIGKILL to pid {handle.pid} failed: {e}")

    def cancel(self, handle: ProcessHandle) -> None:
        """Disarm a pending escalation timer, if any."""
        with handle.lock:
            if handle.escalation_timer is not None:
                handle.escalation_timer.cancel()
                handle.escalation_timer = None

    def send_signal(self, handle: ProcessHandle, sig: int) -> None:
        """Deliver one explicit signal to the process group.

        Raises:
            KillFailed: If the process has exited or cannot be signalled.
        """
        with handle.lock:
            if handle.exited:
                raise KillFailed(f"Process {handle.pid} has already exited")
            try:
                _signal_group(handle, sig)
            except ProcessLookupError as e:
                raise KillFailed(f"Process {handle.pid} not found") from e
            except PermissionError as e:
                raise KillFailed(f"Not permitted to signal process {handle.pid}") from e
            if sig == signal.SIGKILL:
                handle.force_killed = True
            logger.debug(f"Sent {signal.Signals(sig).name} to pid {handle.pid}")
