"""Render results as text blocks for the orchestration loop."""

from __future__ import annotations

import re

from cmdsupervisor.core.models import BackgroundStatus, ForegroundResult, SessionOutput, _utc_now

MAX_DISPLAY_CHARS = 30_000
TRUNCATION_NOTICE = "\n\n[Output truncated]"
EARLY_OUTPUT_DROPPED = "[Earlier output dropped]\n"


def apply_line_filter(text: str, pattern: str | None) -> str:
    """Keep only lines matching ``pattern``.

    An invalid pattern leaves the text unfiltered rather than failing a poll.
    """
    if not pattern:
        return text
    try:
        regex = re.compile(pattern)
    except re.error:
        return text
    return "\n".join(line for line in text.split("\n") if regex.search(line))


def normalize_newlines(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n")


def truncate_for_display(text: str, max_chars: int = MAX_DISPLAY_CHARS) -> tuple[str, bool]:
    """Cut ``text`` to ``max_chars`` and append a notice. Returns (text, was_truncated)."""
    if len(text) <= max_chars:
        return text, False
    return text[:max_chars] + TRUNCATION_NOTICE, True


def _stream_block(tag: str, text: str, dropped: bool) -> str | None:
    body, _ = truncate_for_display(normalize_newlines(text))
    if not body.strip():
        return None
    prefix = EARLY_OUTPUT_DROPPED if dropped else ""
    return f"<{tag}>\n{prefix}{body.rstrip()}\n</{tag}>"


def _render(
    status: str,
    exit_code: int | None,
    stdout: str,
    stderr: str,
    stdout_dropped: bool,
    stderr_dropped: bool,
    extra: list[str],
) -> str:
    blocks = [f"<status>{status}</status>"]
    if exit_code is not None:
        blocks.append(f"<exit_code>{exit_code}</exit_code>")
    blocks.extend(extra)
    for block in (
        _stream_block("stdout", stdout, stdout_dropped),
        _stream_block("stderr", stderr, stderr_dropped),
    ):
        if block:
            blocks.append(block)
    blocks.append(f"<timestamp>{_utc_now().isoformat()}</timestamp>")
    return "\n\n".join(blocks)


def format_foreground_result(result: ForegroundResult) -> str:
    if result.error:
        status = "error"
    elif result.timed_out:
        status = "timed_out"
    elif result.killed:
        status = "killed"
    else:
        status = "completed" if result.succeeded else "failed"

    extra = []
    if result.signal:
        extra.append(f"<signal>{result.signal}</signal>")
    if result.limit_exceeded:
        extra.append(f"<limit_exceeded>{result.limit_exceeded}</limit_exceeded>")
    if result.error:
        extra.append(f"<error>{result.error}</error>")
    return _render(
        status,
        result.exit_code,
        result.stdout,
        result.stderr,
        result.stdout_truncated,
        result.stderr_truncated,
        extra,
    )


def format_background_status(status: BackgroundStatus) -> str:
    extra = []
    if status.filter_pattern:
        extra.append(f"<filter>{status.filter_pattern}</filter>")
    if status.result is not None and status.result.signal:
        extra.append(f"<signal>{status.result.signal}</signal>")
    return _render(
        status.status.value,
        status.exit_code,
        status.stdout,
        status.stderr,
        status.stdout_truncated,
        status.stderr_truncated,
        extra,
    )


def format_session_output(output: SessionOutput) -> str:
    if output.session_terminated:
        status = "session_terminated"
    elif output.timed_out:
        status = "timed_out"
    else:
        status = "completed"
    return _render(status, None, output.stdout, output.stderr, output.truncated, False, [])
