"""Resource limiting for spawned commands."""

from cmdsupervisor.sandbox.limits import (
    DEFAULT_MAX_OUTPUT_BYTES,
    ResourceLimiter,
    ResourcePolicy,
    SpawnOptions,
    detect_limit_breach,
)

__all__ = [
    "DEFAULT_MAX_OUTPUT_BYTES",
    "ResourceLimiter",
    "ResourcePolicy",
    "SpawnOptions",
    "detect_limit_breach",
]
