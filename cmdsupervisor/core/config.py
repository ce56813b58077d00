"""Supervisor configuration loaded from YAML.

Search order (first hit wins):
1. explicit ``path`` argument
2. ``$CMDSUPERVISOR_CONFIG``
3. ``<project>/.cmdsupervisor/config.yaml``
4. ``~/.cmdsupervisor/config.yaml``

With no file, built-in defaults apply.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from cmdsupervisor.core.errors import ConfigError
from cmdsupervisor.core.models import MAX_TIMEOUT_MS
from cmdsupervisor.core.validator import CommandValidator
from cmdsupervisor.sandbox.limits import DEFAULT_MAX_OUTPUT_BYTES, ResourcePolicy

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "CMDSUPERVISOR_CONFIG"
CONFIG_DIR_NAME = ".cmdsupervisor"
CONFIG_FILE_NAME = "config.yaml"


def _default_shell() -> str:
    return shutil.which("bash") or "/bin/sh"


class ResourcePolicyConfig(BaseModel):
    """rlimits applied to every spawned process. Null means inherit."""

    cpu_seconds: int | None = Field(default=None, gt=0)
    memory_bytes: int | None = Field(default=None, gt=0)
    file_size_bytes: int | None = Field(default=None, gt=0)
    max_processes: int | None = Field(default=None, gt=0)


class SessionPoolConfig(BaseModel):
    max_sessions: int = Field(default=4, gt=0)
    idle_timeout_ms: int = Field(default=15 * 60 * 1000, gt=0)
    quiet_period_ms: int = Field(default=250, gt=0)
    command_timeout_ms: int = Field(default=30_000, gt=0)
    sweep_interval_ms: int = Field(default=30_000, gt=0)
    init_timeout_ms: int = Field(default=5_000, gt=0)


class TrackerConfig(BaseModel):
    sample_interval_ms: int = Field(default=1_000, gt=0)
    history_size: int = Field(default=256, gt=0)


class ValidatorConfig(BaseModel):
    """Extra rules on top of the built-in ones (which cannot be removed)."""

    dangerous_patterns: dict[str, str] = Field(default_factory=dict)
    restricted_executables: list[str] = Field(default_factory=list)
    protected_paths: list[str] = Field(default_factory=list)

    @field_validator("dangerous_patterns")
    @classmethod
    def validate_patterns(cls, v: dict[str, str]) -> dict[str, str]:
        for name, pattern in v.items():
            try:
                re.compile(pattern)
            except re.error as e:
                raise ValueError(f"pattern '{name}' is not a valid regular expression: {e}") from e
        return v


class SupervisorConfig(BaseModel):
    """Top-level supervisor configuration."""

    shell: str = Field(default_factory=_default_shell)
    default_timeout_ms: int = Field(default=120_000, gt=0)
    max_timeout_ms: int = Field(default=MAX_TIMEOUT_MS, gt=0, le=MAX_TIMEOUT_MS)
    grace_period_ms: int = Field(default=5_000, ge=0)
    max_output_bytes: int = Field(default=DEFAULT_MAX_OUTPUT_BYTES, gt=0)
    drain_timeout_ms: int = Field(default=1_000, ge=0)
    resources: ResourcePolicyConfig = Field(default_factory=ResourcePolicyConfig)
    sessions: SessionPoolConfig = Field(default_factory=SessionPoolConfig)
    tracker: TrackerConfig = Field(default_factory=TrackerConfig)
    validator: ValidatorConfig = Field(default_factory=ValidatorConfig)

    @model_validator(mode="after")
    def check_timeouts(self) -> SupervisorConfig:
        if self.default_timeout_ms > self.max_timeout_ms:
            raise ValueError("default_timeout_ms must not exceed max_timeout_ms")
        return self

    def resource_policy(self) -> ResourcePolicy:
        return ResourcePolicy(
            cpu_seconds=self.resources.cpu_seconds,
            memory_bytes=self.resources.memory_bytes,
            file_size_bytes=self.resources.file_size_bytes,
            max_processes=self.resources.max_processes,
            max_output_bytes=self.max_output_bytes,
        )

    def build_validator(self) -> CommandValidator:
        return CommandValidator(
            extra_patterns=self.validator.dangerous_patterns.items(),
            extra_executables=self.validator.restricted_executables,
            extra_protected_paths=self.validator.protected_paths,
        )

    def effective_timeout_ms(self, requested: int | None) -> int:
        """Requested timeout, or the default, capped at the maximum."""
        return min(requested or self.default_timeout_ms, self.max_timeout_ms)


DEFAULT_CONFIG_YAML = """\
# Command supervisor configuration

# Shell used for `shell -c COMMAND` and for pooled sessions
# shell: /bin/bash

# Timeouts (milliseconds)
default_timeout_ms: 120000
max_timeout_ms: 600000
grace_period_ms: 5000    # SIGTERM -> SIGKILL escalation delay

# Per-stream output capture (bytes); older output is dropped first
max_output_bytes: 4194304

# rlimits for spawned commands (null = inherit)
resources:
  cpu_seconds: null
  memory_bytes: null
  file_size_bytes: null
  max_processes: null

sessions:
  max_sessions: 4
  idle_timeout_ms: 900000
  quiet_period_ms: 250
  command_timeout_ms: 30000

tracker:
  sample_interval_ms: 1000
  history_size: 256

# Extra safety rules (built-in rules always apply)
validator:
  dangerous_patterns: {}
  restricted_executables: []
  protected_paths: []
"""


def find_config_file(path: Path | str | None = None, project_dir: Path | None = None) -> Path | None:
    """Locate the config file following the search order."""
    if path is not None:
        explicit = Path(path).expanduser()
        if not explicit.exists():
            raise ConfigError(f"Config file not found: {explicit}")
        return explicit

    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        candidate = Path(env_path).expanduser()
        if not candidate.exists():
            raise ConfigError(f"{CONFIG_ENV_VAR} points to a missing file: {candidate}")
        return candidate

    project = project_dir or Path.cwd()
    for candidate in (
        project / CONFIG_DIR_NAME / CONFIG_FILE_NAME,
        Path.home() / CONFIG_DIR_NAME / CONFIG_FILE_NAME,
    ):
        if candidate.exists():
            return candidate
    return None


def parse_config(data: dict[str, Any] | None, source: str = "<config>") -> SupervisorConfig:
    if data is None:
        return SupervisorConfig()
    if not isinstance(data, dict):
        raise ConfigError(f"{source}: top level must be a mapping")
    try:
        return SupervisorConfig(**data)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigError(f"{source}: {problems}") from e


def load_config(path: Path | str | None = None, project_dir: Path | None = None) -> SupervisorConfig:
    """Load configuration, falling back to defaults when no file exists.

    Raises:
        ConfigError: If a file was found but is not valid YAML or has invalid values.
    """
    config_path = find_config_file(path, project_dir)
    if config_path is None:
        logger.debug("No config file found, using defaults")
        return SupervisorConfig()

    try:
        with open(config_path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Cannot read {config_path}: {e}") from e

    logger.debug(f"Loaded config from {config_path}")
    return parse_config(data, str(config_path))
