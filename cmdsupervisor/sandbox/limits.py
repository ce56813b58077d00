"""OS resource limits for spawned commands.

Limits are installed in the child between fork and exec via a pre-exec
hook, so the kernel enforces them. The supervisor only learns about a
breach afterwards, from the exit status.

Output volume is not an rlimit: it is capped by the circular buffers.
"""

from __future__ import annotations

import logging
import os
import resource
import signal
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path

from cmdsupervisor.core.errors import ResourceLimitExceeded

logger = logging.getLogger(__name__)

DEFAULT_MAX_OUTPUT_BYTES = 4 * 1024 * 1024

# Signal -> limit name. The kernel raises these when a soft limit is hit.
_BREACH_SIGNALS: dict[int, str] = {
    signal.SIGXCPU: "cpu_time",
    signal.SIGXFSZ: "file_size",
}


@dataclass(frozen=True)
class ResourcePolicy:
    """Resource caps for one spawned process tree.

    None means "inherit whatever the supervisor itself runs with".
    """

    cpu_seconds: int | None = None
    memory_bytes: int | None = None
    file_size_bytes: int | None = None
    max_processes: int | None = None
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES

    def __post_init__(self) -> None:
        for name in ("cpu_seconds", "memory_bytes", "file_size_bytes", "max_processes"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ValueError(f"{name} must be > 0")
        if self.max_output_bytes <= 0:
            raise ValueError("max_output_bytes must be > 0")

    @property
    def has_rlimits(self) -> bool:
        return any(
            v is not None
            for v in (self.cpu_seconds, self.memory_bytes, self.file_size_bytes, self.max_processes)
        )


@dataclass(frozen=True)
class SpawnOptions:
    """Everything needed to start one child process."""

    argv: list[str]
    cwd: Path | None = None
    env: dict[str, str] = field(default_factory=dict)
    stdin: bool = False
    preexec_fn: Callable[[], None] | None = None

    @classmethod
    def for_command(
        cls,
        shell: str,
        command: str,
        cwd: Path | str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> SpawnOptions:
        """Build options for ``shell -c command`` with overrides merged over os.environ."""
        merged = dict(os.environ)
        merged.update(env or {})
        return cls(
            argv=[shell, "-c", command],
            cwd=Path(cwd) if cwd is not None else None,
            env=merged,
        )


def _bounded_soft_limit(target: int, hard: int) -> int:
    if hard == resource.RLIM_INFINITY:
        return target
    return min(target, hard)


def _set_limit(limit_name: str, target: int | None) -> None:
    if target is None:
        return
    limit = getattr(resource, limit_name, None)
    if limit is None:
        return
    _, hard = resource.getrlimit(limit)
    resource.setrlimit(limit, (_bounded_soft_limit(target, hard), hard))


class ResourceLimiter:
    """Attach rlimit policy to spawn options.

    USAGE:
        policy = ResourcePolicy(cpu_seconds=30, memory_bytes=512 * 1024 * 1024)
        options = ResourceLimiter.apply_policy(SpawnOptions.for_command("/bin/sh", "make"), policy)
    """

    @staticmethod
    def preexec_fn(policy: ResourcePolicy) -> Callable[[], None]:
        """Return a pre-exec hook that applies the policy's rlimits in the child."""

        def _apply_limits() -> None:
            _set_limit("RLIMIT_CPU", policy.cpu_seconds)
            _set_limit("RLIMIT_AS", policy.memory_bytes)
            _set_limit("RLIMIT_FSIZE", policy.file_size_bytes)
            _set_limit("RLIMIT_NPROC", policy.max_processes)

        return _apply_limits

    @classmethod
    def apply_policy(cls, options: SpawnOptions, policy: ResourcePolicy | None) -> SpawnOptions:
        """Return ``options`` with the policy's pre-exec hook chained in."""
        if policy is None or not policy.has_rlimits:
            return options

        limits_hook = cls.preexec_fn(policy)
        existing = options.preexec_fn
        if existing is None:
            hook = limits_hook
        else:

            def hook() -> None:
                existing()
                limits_hook()

        return replace(options, preexec_fn=hook)


def detect_limit_breach(returncode: int | None) -> ResourceLimitExceeded | None:
    """Map an exit status to the resource limit that killed the process.

    Handles both a direct signal death (negative returncode) and a shell
    reporting its child's signal as ``128 + n``.
    """
    if returncode is None:
        return None
    if returncode < 0:
        signum = -returncode
    elif returncode > 128:
        signum = returncode - 128
    else:
        return None

    limit = _BREACH_SIGNALS.get(signum)
    if limit is None:
        return None
    breach = ResourceLimitExceeded(limit, signal.Signals(signum).name)
    logger.warning(str(breach))
    return breach
