"""Safety gate for shell commands.

Runs before every spawn path. Pure and deterministic: the same command
string always yields the same verdict and the same rule. Configuration
can add rules but never remove the built-in ones.
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from cmdsupervisor.core.errors import ValidationRejected
from cmdsupervisor.core.models import RuleCategory, ValidationResult

logger = logging.getLogger(__name__)

# A shell token boundary: end of input or a separator.
_END = r"(?=$|[\s;&|)])"
# Start of a simple command: input start, a separator, or a subshell opener.
_CMD_START = r"(?:^|[;&|(`]\s*|\$\(\s*)"


@dataclass(frozen=True)
class DangerousPattern:
    """A named regex that blocks a command when it matches anywhere."""

    name: str
    pattern: re.Pattern[str]
    description: str


def _rx(pattern: str, flags: int = 0) -> re.Pattern[str]:
    return re.compile(pattern, flags)


DANGEROUS_PATTERNS: tuple[DangerousPattern, ...] = (
    DangerousPattern(
        "root_deletion",
        _rx(
            r"\brm\s+(?=(?:-{1,2}[\w-]+\s+)*?(?:-[a-zA-Z]*[rR][a-zA-Z]*|--recursive)\s)"
            r"(?:-{1,2}[\w-]+\s+)+(?:/\*?|~/?|\$HOME/?|\$\{HOME\}/?)" + _END
        ),
        "recursive deletion of the root or home directory",
    ),
    DangerousPattern(
        "fork_bomb",
        _rx(r"([\w:]+)\s*\(\s*\)\s*\{\s*\1\s*\|\s*\1\s*&"),
        "fork bomb",
    ),
    DangerousPattern(
        "raw_disk_write",
        _rx(
            r"\bdd\b[^;&|]*\bof=/dev/(?:sd|hd|vd|xvd|nvme|mmcblk|disk|rdisk)\w*"
            r"|>\s*/dev/(?:sd|hd|vd|xvd|nvme|mmcblk|disk|rdisk)\w*"
        ),
        "raw write to a block device",
    ),
    DangerousPattern(
        "filesystem_format",
        _rx(_CMD_START + r"(?:[\w./-]*/)?(?:mkfs(?:\.\w+)?|mke2fs|mkswap|wipefs|newfs(?:_\w+)?)" + _END),
        "filesystem formatting",
    ),
    DangerousPattern(
        "privilege_escalation",
        _rx(_CMD_START + r"(?:sudo|doas|pkexec|su)" + _END),
        "privilege escalation",
    ),
    DangerousPattern(
        "setuid_bit",
        _rx(r"\bchmod\s+(?:-\w+\s+)*(?:[ugoa]*\+[rwxXt]*s|[2467][0-7]{3})\b"),
        "setting setuid/setgid bits",
    ),
    DangerousPattern(
        "recursive_root_permissions",
        _rx(r"\b(?:chmod|chown|chgrp)\s+(?:-\w+\s+|[\w:+=,.-]+\s+)*?-\w*R\w*\s+(?:\S+\s+)?/" + _END),
        "recursive permission or ownership change on /",
    ),
    DangerousPattern(
        "pipe_to_shell",
        _rx(
            r"\b(?:curl|wget|fetch)\b[^;&|]*\|\s*(?:sudo\s+)?"
            r"(?:ba|z|k|da|c|tc|fi)?sh\b"
            r"|\b(?:curl|wget|fetch)\b[^;&|]*\|\s*(?:sudo\s+)?(?:python[\d.]*|perl|ruby|node)\b"
            r"|\b(?:ba|z|k|da)?sh\s+<\(\s*(?:curl|wget|fetch)\b"
            r"|\beval\s+[\"']?\$\(\s*(?:curl|wget|fetch)\b"
        ),
        "piping a network download into a shell or interpreter",
    ),
    DangerousPattern(
        "reverse_shell",
        _rx(
            r"/dev/(?:tcp|udp)/"
            r"|\b(?:nc|ncat|netcat)\b[^;&|]*\s-[a-zA-Z]*[ec]\b"
            r"|\bsocat\b[^;&|]*\b(?:exec|system):"
        ),
        "reverse shell",
    ),
)


RESTRICTED_EXECUTABLES: frozenset[str] = frozenset(
    {
        # System power state
        "shutdown", "reboot", "halt", "poweroff", "init", "telinit",
        # User account management
        "useradd", "userdel", "usermod", "adduser", "deluser", "passwd",
        "chpasswd", "groupadd", "groupdel", "groupmod", "visudo", "vipw",
        # Service managers
        "systemctl", "service", "launchctl", "rc-service", "update-rc.d",
        "chkconfig", "initctl",
    }
)


PROTECTED_PATHS: tuple[str, ...] = (
    "~/.ssh",
    "~/.aws",
    "~/.gnupg",
    "~/.kube",
    "~/.docker",
    "~/.netrc",
    "~/.pgpass",
    "~/.git-credentials",
    "~/.config/gcloud",
    "~/.azure",
    "/etc",
    "/boot",
    "/usr",
    "/bin",
    "/sbin",
    "/lib",
    "/lib64",
    "/var/lib",
    "/System",
    "/Library",
)

# Output redirections: >, >>, 2>, &>, >|, and tee's file arguments.
_REDIRECT_RE = re.compile(
    r"(?:\d*>>?|&>>?|>\|)\s*(\"[^\"]*\"|'[^']*'|[^\s;&|<>()]+)"
)
_TEE_RE = re.compile(r"\btee\b((?:\s+(?!\|)[^\s;&|<>()]+)+)")


def _is_env_assignment(token: str) -> bool:
    """Check if a token is a leading VAR=value assignment."""
    if "=" not in token or token.startswith("=") or token.startswith("-"):
        return False
    key = token.split("=", 1)[0]
    if not key or not (key[0].isalpha() or key[0] == "_"):
        return False
    return all(c.isalnum() or c == "_" for c in key)


def _normalize_path(raw: str, home: str) -> str:
    path = raw.strip("\"'")
    if path == "~" or path.startswith("~/"):
        path = home + path[1:]
    for var in ("$HOME", "${HOME}"):
        if path == var or path.startswith(var + "/"):
            path = home + path[len(var):]
    return os.path.normpath(path) if path else path


class CommandValidator:
    """Stateless gate rejecting dangerous commands before spawn.

    Checks, in order (first match wins):
    1. dangerous patterns anywhere in the command
    2. restricted executable as the first token
    3. output redirection into a protected path

    USAGE:
        validator = CommandValidator()
        verdict = validator.validate("rm -rf /")
        if not verdict.allowed:
            print(verdict.reason)
    """

    def __init__(
        self,
        extra_patterns: Iterable[tuple[str, str]] = (),
        extra_executables: Iterable[str] = (),
        extra_protected_paths: Iterable[str] = (),
        home: str | None = None,
    ):
        self._home = home or str(Path.home())
        patterns = list(DANGEROUS_PATTERNS)
        for name, regex in extra_patterns:
            patterns.append(
                DangerousPattern(name, re.compile(regex), f"matches configured rule '{name}'")
            )
        self._patterns = tuple(patterns)
        self._executables = RESTRICTED_EXECUTABLES | frozenset(extra_executables)
        self._protected = tuple(
            _normalize_path(p, self._home) for p in (*PROTECTED_PATHS, *extra_protected_paths)
        )

    def validate(self, command: str) -> ValidationResult:
        """Return an allow/reject verdict for ``command``."""
        for check in (self._check_patterns, self._check_executable, self._check_redirections):
            verdict = check(command)
            if verdict is not None:
                logger.info(f"Rejected command ({verdict.rule}): {command!r}")
                return verdict
        return ValidationResult.accept()

    def ensure_allowed(self, command: str) -> None:
        """Raise ValidationRejected unless ``command`` passes every check."""
        verdict = self.validate(command)
        if not verdict.allowed:
            raise ValidationRejected(verdict)

    def _check_patterns(self, command: str) -> ValidationResult | None:
        for rule in self._patterns:
            if rule.pattern.search(command):
                return ValidationResult.reject(
                    rule.name, RuleCategory.DANGEROUS_PATTERN, rule.description
                )
        return None

    def _check_executable(self, command: str) -> ValidationResult | None:
        executable = self.first_executable(command)
        if executable and executable in self._executables:
            return ValidationResult.reject(
                executable,
                RuleCategory.RESTRICTED_EXECUTABLE,
                f"'{executable}' may not be run by the agent",
            )
        return None

    def _check_redirections(self, command: str) -> ValidationResult | None:
        targets = [m.group(1) for m in _REDIRECT_RE.finditer(command)]
        for m in _TEE_RE.finditer(command):
            targets.extend(t for t in m.group(1).split() if not t.startswith("-"))

        for target in targets:
            path = _normalize_path(target, self._home)
            if not path or path.startswith("&"):
                continue
            for protected in self._protected:
                if path == protected or path.startswith(protected.rstrip("/") + "/"):
                    return ValidationResult.reject(
                        protected,
                        RuleCategory.PROTECTED_PATH,
                        f"writing to '{target}' is not allowed",
                    )
        return None

    @staticmethod
    def first_executable(command: str) -> str | None:
        """Basename of the first whitespace-delimited token after VAR=value prefixes."""
        for token in command.split():
            if _is_env_assignment(token):
                continue
            return os.path.basename(token.strip("\"'"))
        return None
