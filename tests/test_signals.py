"""Tests for process spawning and the termination protocol."""

from __future__ import annotations

import signal
import time

import psutil
import pytest

from conftest import SHELL, wait_for

from cmdsupervisor.core.buffer import CircularBuffer
from cmdsupervisor.core.errors import KillFailed, SpawnFailed
from cmdsupervisor.core.process import spawn, split_returncode
from cmdsupervisor.core.signals import SignalManager
from cmdsupervisor.sandbox.limits import SpawnOptions


def _gone(pid: int) -> bool:
    try:
        return psutil.Process(pid).status() == psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return True


def _start(command: str, **kwargs):
    out = CircularBuffer(4096)
    err = CircularBuffer(4096)
    handle = spawn(SpawnOptions.for_command(SHELL, command, **kwargs), command, out.write, err.write, drain_timeout=0.5)
    return handle, out, err


# =============================================================================
# Spawning
# =============================================================================


class TestSpawn:
    """Tests for process handles and output pumps."""

    def test_captures_both_streams(self):
        handle, out, err = _start("echo out; echo err >&2; exit 3")

        assert handle.wait(5)
        assert handle.returncode == 3
        assert out.text() == "out\n"
        assert err.text() == "err\n"
        assert not handle.is_running()

    def test_on_exit_called_after_output_drained(self):
        seen = []
        out = CircularBuffer(4096)
        handle = spawn(
            SpawnOptions.for_command(SHELL, "printf 'a%.0s' 1 2 3"),
            "printf",
            out.write,
            lambda chunk: None,
            on_exit=lambda rc: seen.append((rc, out.text())),
        )

        assert handle.wait(5)
        assert seen == [(0, "aaa")]

    def test_missing_cwd_raises(self, tmp_path):
        with pytest.raises(SpawnFailed, match="Working directory"):
            _start("true", cwd=tmp_path / "missing")

    def test_missing_shell_raises(self):
        options = SpawnOptions(argv=["/nonexistent/shell", "-c", "true"])
        with pytest.raises(SpawnFailed, match="not found"):
            spawn(options, "true", lambda c: None, lambda c: None)


class TestSplitReturncode:
    """Tests for exit-status decoding."""

    @pytest.mark.parametrize(
        "returncode,expected",
        [
            (None, (None, None)),
            (0, (0, None)),
            (2, (2, None)),
            (-signal.SIGTERM, (None, "SIGTERM")),
            (-signal.SIGKILL, (None, "SIGKILL")),
        ],
    )
    def test_split(self, returncode, expected):
        assert split_returncode(returncode) == expected


# =============================================================================
# Termination
# =============================================================================


class TestSignalManager:
    """Tests for SIGTERM -> grace -> SIGKILL escalation."""

    def test_graceful_exit_on_sigterm(self, signals):
        handle, _, _ = _start("sleep 10")

        assert signals.terminate(handle)
        assert handle.wait(5)
        assert handle.returncode == -signal.SIGTERM
        assert not handle.force_killed

    def test_escalates_when_sigterm_ignored(self, signals):
        handle, out, _ = _start("trap '' TERM; echo ready; sleep 10")
        assert wait_for(lambda: out.text() == "ready\n")

        start = time.monotonic()
        assert signals.terminate(handle)
        assert handle.wait(5)

        assert handle.returncode == -signal.SIGKILL
        assert handle.force_killed
        assert time.monotonic() - start >= signals.grace_period

    def test_terminate_is_idempotent(self, signals, mocker):
        handle, _, _ = _start("sleep 10")
        spy = mocker.spy(SignalManager, "_escalate")

        assert signals.terminate(handle)
        assert not signals.terminate(handle)
        assert not signals.terminate(handle)
        assert handle.wait(5)
        # Exited on SIGTERM, so the armed timer was cancelled by the reaper.
        time.sleep(signals.grace_period + 0.1)
        assert spy.call_count == 0

    def test_terminate_after_exit_is_noop(self, signals):
        handle, _, _ = _start("true")
        assert handle.wait(5)

        assert not signals.terminate(handle)
        assert handle.returncode == 0

    def test_signals_whole_process_group(self, signals, tmp_path):
        """Grandchildren die with the shell."""
        pidfile = tmp_path / "child.pid"
        handle, _, _ = _start(f"sleep 10 & echo $! > {pidfile}; wait")
        assert wait_for(lambda: pidfile.exists() and pidfile.read_text().strip() != "")
        child_pid = int(pidfile.read_text())

        signals.terminate(handle)
        assert handle.wait(5)

        assert wait_for(lambda: _gone(child_pid))

    def test_send_signal_delivers(self, signals):
        handle, _, _ = _start("sleep 10")

        signals.send_signal(handle, signal.SIGKILL)

        assert handle.wait(5)
        assert handle.returncode == -signal.SIGKILL
        assert handle.force_killed

    def test_send_signal_after_exit_raises(self, signals):
        handle, _, _ = _start("true")
        assert handle.wait(5)

        with pytest.raises(KillFailed):
            signals.send_signal(handle, signal.SIGTERM)

    def test_negative_grace_rejected(self):
        with pytest.raises(ValueError):
            SignalManager(grace_period=-1)
