"""Tests for the process tracker and resource sampling."""

from __future__ import annotations

import os
import signal
from types import SimpleNamespace

import psutil
import pytest

from conftest import SHELL, wait_for

from cmdsupervisor.core import tracker as tracker_module
from cmdsupervisor.core.models import ExecutionMode
from cmdsupervisor.core.process import spawn
from cmdsupervisor.core.tracker import ProcessTracker
from cmdsupervisor.sandbox.limits import SpawnOptions


def _spawn(command: str):
    return spawn(SpawnOptions.for_command(SHELL, command), command, lambda c: None, lambda c: None)


def _kill(handle) -> None:
    os.killpg(handle.pid, signal.SIGKILL)


def _fake_process(cpu: float, rss: int, children=()):
    proc = SimpleNamespace()
    proc.oneshot = lambda: _NullContext()
    proc.cpu_times = lambda: SimpleNamespace(user=cpu / 2, system=cpu / 2)
    proc.memory_info = lambda: SimpleNamespace(rss=rss)
    proc.children = lambda recursive=False: list(children)
    return proc


class _NullContext:
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class TestRegistration:
    """Tests for the live arena and history."""

    def test_register_and_retire(self, tracker):
        handle = _spawn("sleep 10")
        try:
            tracker.register(handle, ExecutionMode.BACKGROUND, "bash_1", output_counter=lambda: 42)

            assert len(tracker) == 1
            assert tracker.get(handle.handle_id).owner_id == "bash_1"
            assert tracker.get_by_pid(handle.pid).handle is handle
        finally:
            _kill(handle)
        assert handle.wait(5)

        record = tracker.retire(handle.handle_id, handle.returncode)

        assert len(tracker) == 0
        assert tracker.get_by_pid(handle.pid) is None
        assert record.owner == ExecutionMode.BACKGROUND
        assert record.signal == "SIGKILL"
        assert record.exit_code is None
        assert record.metrics.output_bytes == 42
        assert tracker.history() == [record]

    def test_retire_is_idempotent(self, tracker):
        handle = _spawn("true")
        tracker.register(handle, ExecutionMode.FOREGROUND, "fg")
        assert handle.wait(5)

        assert tracker.retire(handle.handle_id, 0) is not None
        assert tracker.retire(handle.handle_id, 0) is None
        assert len(tracker.history()) == 1

    def test_duplicate_pid_rejected(self, tracker):
        handle = _spawn("sleep 10")
        try:
            tracker.register(handle, ExecutionMode.FOREGROUND, "a")
            impostor = SimpleNamespace(pid=handle.pid, handle_id="proc-other", command="x")

            with pytest.raises(ValueError, match="already tracked"):
                tracker.register(impostor, ExecutionMode.FOREGROUND, "b")
        finally:
            _kill(handle)
            handle.wait(5)

    def test_reaped_owner_pid_can_be_reused(self, tracker):
        """A pid whose owner already exited may be registered by a new handle."""
        handle = _spawn("true")
        tracker.register(handle, ExecutionMode.FOREGROUND, "old")
        assert handle.wait(5)
        successor = SimpleNamespace(pid=handle.pid, handle_id="proc-successor", command="y", exited=False)

        tracker.register(successor, ExecutionMode.BACKGROUND, "new")
        tracker.retire(handle.handle_id, 0)

        assert tracker.get_by_pid(handle.pid).owner_id == "new"
        assert len(tracker) == 1

    def test_history_is_bounded(self):
        tracker = ProcessTracker(history_size=3)
        for i in range(5):
            handle = _spawn("true")
            tracker.register(handle, ExecutionMode.FOREGROUND, f"fg-{i}")
            handle.wait(5)
            tracker.retire(handle.handle_id, 0)

        assert [r.owner_id for r in tracker.history()] == ["fg-2", "fg-3", "fg-4"]


class TestSampling:
    """Tests for psutil-based resource sampling."""

    def test_sample_sums_process_tree(self, tracker):
        handle = _spawn("sleep 10")
        try:
            entry = tracker.register(handle, ExecutionMode.FOREGROUND, "fg")
            child = _fake_process(0.5, 1000)
            entry.ps = _fake_process(1.0, 3000, children=[child])

            metrics = tracker.sample(handle.handle_id)

            assert metrics.cpu_time_seconds == pytest.approx(1.5)
            assert metrics.peak_rss_bytes == 4000
            assert metrics.sampled_at is not None
        finally:
            _kill(handle)
            handle.wait(5)

    def test_peak_and_cpu_never_decrease(self, tracker):
        handle = _spawn("sleep 10")
        try:
            entry = tracker.register(handle, ExecutionMode.FOREGROUND, "fg")
            entry.ps = _fake_process(2.0, 5000)
            tracker.sample(handle.handle_id)
            entry.ps = _fake_process(1.0, 1000)

            metrics = tracker.sample(handle.handle_id)

            assert metrics.cpu_time_seconds == 2.0
            assert metrics.peak_rss_bytes == 5000
        finally:
            _kill(handle)
            handle.wait(5)

    def test_vanished_process_tolerated(self, tracker, mocker):
        handle = _spawn("sleep 10")
        try:
            entry = tracker.register(handle, ExecutionMode.FOREGROUND, "fg")
            gone = _fake_process(0, 0)
            gone.children = mocker.Mock(side_effect=psutil.NoSuchProcess(handle.pid))
            gone.cpu_times = mocker.Mock(side_effect=psutil.NoSuchProcess(handle.pid))
            entry.ps = gone

            metrics = tracker.sample(handle.handle_id)

            assert metrics.cpu_time_seconds == 0
            assert metrics.peak_rss_bytes == 0
        finally:
            _kill(handle)
            handle.wait(5)

    def test_unknown_handle(self, tracker):
        assert tracker.sample("proc-missing") is None
        assert tracker.metrics("proc-missing") is None

    def test_background_sampler_runs(self, tracker, mocker):
        spy = mocker.spy(tracker_module, "_sample_tree")
        handle = _spawn("sleep 10")
        try:
            tracker.register(handle, ExecutionMode.FOREGROUND, "fg")
            tracker.start()

            assert wait_for(lambda: tracker.get(handle.handle_id).metrics.sampled_at is not None)
            assert spy.call_count > 0
        finally:
            tracker.stop()
            _kill(handle)
            handle.wait(5)
