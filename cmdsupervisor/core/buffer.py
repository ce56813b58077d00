"""Fixed-capacity circular byte buffer for process output.

Every execution mode routes stdout/stderr through one of these so memory
stays bounded no matter how much a command prints. Overflow is not an
error: the oldest bytes are overwritten and ``truncated`` becomes True.
"""

from __future__ import annotations

import threading


class CircularBuffer:
    """Ring buffer that always yields the most recent ``capacity`` bytes.

    The backing array is allocated once. ``_cursor`` is the next write
    position; once the ring has wrapped, it is also the position of the
    oldest retained byte, which is why ``read()`` must stitch
    ``[cursor, capacity)`` in front of ``[0, cursor)``.

    Writes come from pump threads while pollers read concurrently, so all
    state changes happen under a lock.

    USAGE:
        buf = CircularBuffer(10)
        buf.write(b"abcde")
        buf.write(b"fghij")
        buf.write(b"k")
        buf.read()  # b"bcdefghijk"
    """

    def __init__(self, capacity: int):
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        self._capacity = capacity
        self._data = bytearray(capacity)
        self._cursor = 0
        self._wrapped = False
        self._total_written = 0
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def size(self) -> int:
        """Number of bytes currently retained (never more than capacity)."""
        with self._lock:
            return self._capacity if self._wrapped else self._cursor

    @property
    def wrapped(self) -> bool:
        with self._lock:
            return self._wrapped

    @property
    def total_bytes_written(self) -> int:
        """Bytes ever written, including those since overwritten."""
        with self._lock:
            return self._total_written

    @property
    def truncated(self) -> bool:
        """True once any written byte has been dropped."""
        with self._lock:
            return self._total_written > self._capacity

    def write(self, data: bytes | bytearray | memoryview | str) -> None:
        """Append ``data``, overwriting the oldest bytes on overflow."""
        if isinstance(data, str):
            data = data.encode("utf-8", errors="replace")
        chunk = bytes(data)
        n = len(chunk)
        if n == 0:
            return

        cap = self._capacity
        with self._lock:
            self._total_written += n

            if n >= cap:
                # Only the tail of an oversized chunk survives.
                self._data[:] = chunk[-cap:]
                self._cursor = 0
                self._wrapped = True
                return

            end = self._cursor + n
            if end < cap:
                self._data[self._cursor:end] = chunk
                self._cursor = end
            elif end == cap:
                self._data[self._cursor:] = chunk
                self._cursor = 0
                self._wrapped = True
            else:
                first = cap - self._cursor
                self._data[self._cursor:] = chunk[:first]
                rest = n - first
                self._data[:rest] = chunk[first:]
                self._cursor = rest
                self._wrapped = True

    def read(self) -> bytes:
        """Return the retained bytes in chronological order."""
        with self._lock:
            return self._read_locked()

    def _read_locked(self) -> bytes:
        if not self._wrapped:
            return bytes(self._data[: self._cursor])
        return bytes(self._data[self._cursor:]) + bytes(self._data[: self._cursor])

    def text(self, encoding: str = "utf-8") -> str:
        """Decode the retained bytes.

        A wrap can split a multi-byte sequence at the head, so undecodable
        bytes are replaced rather than raising.
        """
        return self.read().decode(encoding, errors="replace")

    def tail_since(self, mark: int) -> tuple[bytes, bool]:
        """Return bytes written after ``total_bytes_written`` was ``mark``.

        Returns:
            (data, complete) - ``complete`` is False when part of that
            output has already been overwritten.
        """
        with self._lock:
            new_bytes = self._total_written - mark
            if new_bytes <= 0:
                return b"", True
            data = self._read_locked()
            if new_bytes > len(data):
                return data, False
            return data[-new_bytes:], True

    def clear(self) -> None:
        with self._lock:
            self._cursor = 0
            self._wrapped = False
            self._total_written = 0

    def __len__(self) -> int:
        return self.size

    def __repr__(self) -> str:
        return (
            f"CircularBuffer(capacity={self._capacity}, size={self.size}, "
            f"total_bytes_written={self.total_bytes_written})"
        )
