"""Tests for the circular output buffer.

Tests cover:
- Chronological ordering before and after wrap
- Oversized writes keeping only the tail
- Truncation flags and byte accounting
- Incremental reads via tail_since
- Concurrent writers
"""

from __future__ import annotations

import threading

import pytest

from cmdsupervisor.core.buffer import CircularBuffer

# =============================================================================
# Ordering
# =============================================================================


class TestOrdering:
    """Tests for read() ordering against a byte-accurate trace."""

    def test_wrap_keeps_most_recent_bytes_in_order(self):
        """Capacity 10, writes abcde / fghij / k -> bcdefghijk."""
        buf = CircularBuffer(10)
        buf.write(b"abcde")
        buf.write(b"fghij")
        buf.write(b"k")

        assert buf.read() == b"bcdefghijk"
        assert buf.wrapped
        assert buf.size == 10
        assert buf.total_bytes_written == 11

    def test_unwrapped_read_returns_written_prefix(self):
        buf = CircularBuffer(10)
        buf.write(b"abc")
        buf.write(b"de")

        assert buf.read() == b"abcde"
        assert not buf.wrapped
        assert len(buf) == 5

    def test_exact_fill_wraps_cursor_without_loss(self):
        """Filling to exactly capacity marks wrapped but drops nothing."""
        buf = CircularBuffer(5)
        buf.write(b"hello")

        assert buf.wrapped
        assert buf.read() == b"hello"
        assert not buf.truncated

    def test_write_spanning_end_splits_correctly(self):
        buf = CircularBuffer(6)
        buf.write(b"1234")
        buf.write(b"5678")

        assert buf.read() == b"345678"

    def test_oversized_chunk_keeps_tail(self):
        buf = CircularBuffer(4)
        buf.write(b"ab")
        buf.write(b"0123456789")

        assert buf.read() == b"6789"
        assert buf.truncated

    def test_many_small_writes_match_reference(self):
        """Random-ish write sizes agree with a naive reference model."""
        buf = CircularBuffer(7)
        reference = b""
        for i in range(50):
            chunk = bytes([65 + (i % 26)]) * (i % 5 + 1)
            buf.write(chunk)
            reference += chunk
            assert buf.read() == reference[-7:]
            assert buf.size <= buf.capacity


# =============================================================================
# Accounting and Helpers
# =============================================================================


class TestAccounting:
    """Tests for flags, text decoding and reset."""

    def test_capacity_must_be_positive(self):
        with pytest.raises(ValueError):
            CircularBuffer(0)

    def test_empty_write_is_noop(self):
        buf = CircularBuffer(4)
        buf.write(b"")
        assert buf.read() == b""
        assert buf.total_bytes_written == 0

    def test_str_is_encoded_utf8(self):
        buf = CircularBuffer(16)
        buf.write("héllo")
        assert buf.text() == "héllo"

    def test_text_replaces_split_multibyte_sequence(self):
        """A wrap that cuts a UTF-8 sequence decodes with a replacement char."""
        buf = CircularBuffer(3)
        buf.write("é".encode() + b"abc")  # the 2-byte é is pushed out entirely
        assert buf.text() == "abc"

        buf = CircularBuffer(4)
        buf.write(b"x" + "é".encode() + b"ab")  # keeps only the tail byte of é
        buf.write(b"c")
        assert buf.text() == "�abc"

    def test_truncated_only_after_bytes_dropped(self):
        buf = CircularBuffer(3)
        buf.write(b"abc")
        assert not buf.truncated
        buf.write(b"d")
        assert buf.truncated

    def test_clear_resets_state(self):
        buf = CircularBuffer(3)
        buf.write(b"abcdef")
        buf.clear()

        assert buf.read() == b""
        assert not buf.wrapped
        assert buf.total_bytes_written == 0


class TestTailSince:
    """Tests for incremental reads used by shell sessions."""

    def test_returns_only_new_bytes(self):
        buf = CircularBuffer(32)
        buf.write(b"old output\n")
        mark = buf.total_bytes_written
        buf.write(b"new\n")

        assert buf.tail_since(mark) == (b"new\n", True)

    def test_nothing_new(self):
        buf = CircularBuffer(8)
        buf.write(b"abc")
        assert buf.tail_since(buf.total_bytes_written) == (b"", True)

    def test_reports_incomplete_when_overwritten(self):
        buf = CircularBuffer(4)
        buf.write(b"abcdef")

        assert buf.tail_since(0) == (b"cdef", False)


# =============================================================================
# Concurrency
# =============================================================================


class TestConcurrency:
    """Tests for concurrent writers and readers."""

    def test_concurrent_writes_are_all_counted(self):
        buf = CircularBuffer(100)

        def writer():
            for _ in range(500):
                buf.write(b"xy")

        threads = [threading.Thread(target=writer) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert buf.total_bytes_written == 4 * 500 * 2
        assert buf.read() == b"xy" * 50
