"""
Bounded in-memory window between the network producer and the audio decoder.
"""

import logging
import threading
from typing import Optional

import miniaudio

logger = logging.getLogger(__name__)


class BufferClosed(Exception):
    """Raised when writing to a closed buffer."""


class StreamBuffer(miniaudio.StreamableSource):
    """
    Thread-safe bounded byte buffer, readable by a miniaudio decoder.

    The producer (the HTTP pump, via an executor thread) blocks in put() while
    the window is full. The consumer (the decoder, on the audio thread) gets
    nothing until prefetch_bytes have been buffered, then reads whatever is
    available.
    """

    def __init__(self, capacity: int, prefetch_bytes: int = 0):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self.prefetch_bytes = max(0, min(prefetch_bytes, capacity))
        self._data = bytearray()
        self._cond = threading.Condition()
        self._prefetched = threading.Event()
        self._eof = False
        self._closed = False
        self.total_written = 0
        self.total_read = 0

        if self.prefetch_bytes == 0:
            self._prefetched.set()

    @property
    def buffered(self) -> int:
        with self._cond:
            return len(self._data)

    @property
    def prefetched(self) -> bool:
        return self._prefetched.is_set()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def eof(self) -> bool:
        return self._eof

    def put(self, data: bytes, timeout: Optional[float] = None) -> None:
        """
        Append data, blocking while the buffer is full.

        Args:
            data: Audio bytes to append
            timeout: Max seconds to wait for free space (None = forever)

        Raises:
            BufferClosed: If the buffer is closed or at EOF
            TimeoutError: If no space freed up within timeout
        """
        view = memoryview(data)
        while view:
            with self._cond:
                if self._closed or self._eof:
                    raise BufferClosed("buffer is closed")
                if not self._cond.wait_for(self._has_space, timeout):
                    raise TimeoutError("timed out waiting for buffer space")
                if self._closed:
                    raise BufferClosed("buffer is closed")

                free = self.capacity - len(self._data)
                piece = view[:free]
                self._data.extend(piece)
                self.total_written += len(piece)
                view = view[len(piece):]

                if not self.prefetched and len(self._data) >= self.prefetch_bytes:
                    logger.debug(f"Prefetched {len(self._data)} bytes")
                    self._prefetched.set()
                self._cond.notify_all()

    def read(self, num_bytes: int) -> bytes:
        """Read up to num_bytes. Returns b"" at end of stream or once closed."""
        with self._cond:
            self._cond.wait_for(lambda: self._closed or self._eof or self.prefetched)
            self._cond.wait_for(lambda: self._closed or self._eof or len(self._data) > 0)
            if self._closed:
                return b""

            chunk = bytes(self._data[:num_bytes])
            del self._data[:num_bytes]
            self.total_read += len(chunk)
            self._cond.notify_all()
            return chunk

    def mark_eof(self) -> None:
        """No more data will be written; readers drain what is left."""
        with self._cond:
            self._eof = True
            self._prefetched.set()
            self._cond.notify_all()

    def close(self) -> None:
        """Discard buffered data and wake all waiting threads."""
        with self._cond:
            self._closed = True
            self._data.clear()
            self._prefetched.set()
            self._cond.notify_all()

    def wait_prefetched(self, timeout: Optional[float] = None) -> bool:
        return self._prefetched.wait(timeout)

    def _has_space(self) -> bool:
        return self._closed or len(self._data) < self.capacity
