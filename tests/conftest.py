# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the command supervisor test suite.

Provides:
- A fast configuration (short grace periods and quiet periods)
- Wired-up components: validator, signal manager, tracker, executors, pool
- A polling helper for asserting on asynchronous state changes

Real-process tests use short POSIX commands only (echo, sleep, printf, trap).
"""

from __future__ import annotations

import time
from collections.abc import Callable, Generator
from pathlib import Path

import pytest

from cmdsupervisor.core.background import BackgroundTaskManager
from cmdsupervisor.core.config import SupervisorConfig
from cmdsupervisor.core.events import EventEmitter
from cmdsupervisor.core.foreground import ForegroundExecutor
from cmdsupervisor.core.sessions import ShellSessionPool
from cmdsupervisor.core.signals import SignalManager
from cmdsupervisor.core.supervisor import CommandSupervisor
from cmdsupervisor.core.tracker import ProcessTracker
from cmdsupervisor.core.validator import CommandValidator
from cmdsupervisor.sandbox.limits import ResourcePolicy

SHELL = "/bin/sh"
GRACE = 0.2


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.02) -> bool:
    """Poll ``predicate`` until it is true or ``timeout`` expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


# =============================================================================
# Environment Fixtures
# =============================================================================


@pytest.fixture
def isolated_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point HOME at a temp dir and clear the config env var."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.delenv("CMDSUPERVISOR_CONFIG", raising=False)
    return home


# =============================================================================
# Component Fixtures
# =============================================================================


@pytest.fixture
def events() -> EventEmitter:
    return EventEmitter()


@pytest.fixture
def validator() -> CommandValidator:
    return CommandValidator(home="/home/tester")


@pytest.fixture
def signals() -> SignalManager:
    return SignalManager(grace_period=GRACE)


@pytest.fixture
def tracker() -> Generator[ProcessTracker, None, None]:
    tracker = ProcessTracker(sample_interval=0.05, history_size=50)
    yield tracker
    tracker.stop()


@pytest.fixture
def policy() -> ResourcePolicy:
    return ResourcePolicy(max_output_bytes=64 * 1024)


@pytest.fixture
def foreground(validator, signals, tracker, policy, events) -> ForegroundExecutor:
    return ForegroundExecutor(
        validator,
        signals,
        tracker,
        shell=SHELL,
        policy=policy,
        default_timeout_ms=10_000,
        drain_timeout=0.5,
        events=events,
    )


@pytest.fixture
def background(validator, signals, tracker, policy, events) -> Generator[BackgroundTaskManager, None, None]:
    manager = BackgroundTaskManager(
        validator, signals, tracker, shell=SHELL, policy=policy, drain_timeout=0.5, events=events
    )
    yield manager
    manager.shutdown(wait=2)


@pytest.fixture
def pool(validator, signals, tracker, policy, events) -> Generator[ShellSessionPool, None, None]:
    pool = ShellSessionPool(
        validator,
        signals,
        tracker,
        shell=SHELL,
        policy=policy,
        max_sessions=2,
        idle_timeout=60,
        quiet_period=0.15,
        command_timeout=5,
        sweep_interval=60,
        init_timeout=5,
        drain_timeout=0.5,
        events=events,
    )
    yield pool
    pool.shutdown()


@pytest.fixture
def fast_config() -> SupervisorConfig:
    return SupervisorConfig(
        shell=SHELL,
        default_timeout_ms=10_000,
        grace_period_ms=200,
        drain_timeout_ms=500,
        max_output_bytes=64 * 1024,
        sessions={"max_sessions": 2, "quiet_period_ms": 150, "command_timeout_ms": 5_000},
        tracker={"sample_interval_ms": 50, "history_size": 50},
    )


@pytest.fixture
def supervisor(fast_config) -> Generator[CommandSupervisor, None, None]:
    sup = CommandSupervisor(fast_config)
    yield sup
    sup.shutdown()
