"""Tests for result rendering and output filtering."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from cmdsupervisor.core.formatting import (
    TRUNCATION_NOTICE,
    apply_line_filter,
    format_background_status,
    format_foreground_result,
    format_session_output,
    normalize_newlines,
    truncate_for_display,
)
from cmdsupervisor.core.models import BackgroundStatus, ForegroundResult, SessionOutput, TaskStatus


class TestHelpers:
    """Tests for text helpers."""

    def test_line_filter(self):
        assert apply_line_filter("a1\nb2\na3", "^a") == "a1\na3"

    @pytest.mark.parametrize("pattern", [None, ""])
    def test_no_filter(self, pattern):
        assert apply_line_filter("x\ny", pattern) == "x\ny"

    def test_invalid_filter_passes_through(self):
        assert apply_line_filter("x\ny", "(") == "x\ny"

    def test_normalize_newlines(self):
        assert normalize_newlines("a\r\nb\rc\n") == "a\nb\nc\n"

    def test_truncate_for_display(self):
        assert truncate_for_display("short", max_chars=10) == ("short", False)
        text, cut = truncate_for_display("x" * 20, max_chars=10)
        assert cut
        assert text == "x" * 10 + TRUNCATION_NOTICE


class TestFormatters:
    """Tests for the tagged text blocks."""

    def test_completed_foreground(self):
        text = format_foreground_result(ForegroundResult(command="echo hi", exit_code=0, stdout="hi\n"))

        assert text.startswith("<status>completed</status>")
        assert "<exit_code>0</exit_code>" in text
        assert "<stdout>\nhi\n</stdout>" in text
        assert "<stderr>" not in text
        assert "<timestamp>" in text

    @pytest.mark.parametrize(
        "fields,status",
        [
            ({"exit_code": 2}, "failed"),
            ({"signal": "SIGTERM", "killed": True}, "killed"),
            ({"signal": "SIGKILL", "killed": True, "timed_out": True}, "timed_out"),
            ({"exit_code": 153, "error": "Resource limit exceeded: file_size (SIGXFSZ)"}, "error"),
        ],
    )
    def test_foreground_status(self, fields, status):
        text = format_foreground_result(ForegroundResult(command="x", **fields))
        assert f"<status>{status}</status>" in text

    def test_dropped_output_marked(self):
        result = ForegroundResult(command="yes", exit_code=0, stdout="tail\n", stdout_truncated=True)

        assert "<stdout>\n[Earlier output dropped]\ntail\n</stdout>" in format_foreground_result(result)

    def test_background_status(self):
        status = BackgroundStatus(
            task_id="bash_1",
            command="make",
            status=TaskStatus.RUNNING,
            stdout="building\n",
            stderr="warning\n",
            started_at=datetime.now(UTC),
            duration_ms=10,
            filter_pattern="b",
        )

        text = format_background_status(status)

        assert "<status>running</status>" in text
        assert "<filter>b</filter>" in text
        assert "<exit_code>" not in text
        assert "<stderr>\nwarning\n</stderr>" in text

    def test_session_output(self):
        output = SessionOutput(
            session_id="s", command="loop", stdout="tick\n", stderr="", duration_ms=5, timed_out=True,
            session_terminated=True,
        )
        assert "<status>session_terminated</status>" in format_session_output(output)
