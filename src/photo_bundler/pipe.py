"""
Bounded, backpressured byte channel between the archive producer and the
upload consumer.

The producer blocks in ``write`` while the buffer holds ``capacity`` bytes or
more; the consumer blocks in ``read_chunk`` while it is empty. Either side can
abort the channel, which wakes the other one up.
"""

import logging
import threading
from collections import deque

from .exceptions import ArchiveStreamAbortedError

logger = logging.getLogger(__name__)


class BytePipe:
    def __init__(self, capacity: int):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._capacity = capacity
        self._chunks: deque[bytes] = deque()
        self._buffered = 0
        self._closed = False
        self._abort_reason: str | None = None
        self._bytes_written = 0
        self._cond = threading.Condition()

    @property
    def bytes_written(self) -> int:
        return self._bytes_written

    @property
    def aborted(self) -> bool:
        return self._abort_reason is not None

    # --- producer side ---

    def write(self, data) -> int:
        """Queue ``data``; blocks while the buffer is full."""
        data = bytes(data)
        if not data:
            return 0
        with self._cond:
            # A single write larger than the capacity is accepted into an empty buffer.
            while self._buffered >= self._capacity and self._abort_reason is None:
                self._cond.wait()
            if self._abort_reason is not None:
                raise ArchiveStreamAbortedError(self._abort_reason)
            if self._closed:
                raise ValueError("write to closed pipe")
            self._chunks.append(data)
            self._buffered += len(data)
            self._bytes_written += len(data)
            self._cond.notify_all()
        return len(data)

    def flush(self) -> None:
        if self._abort_reason is not None:
            raise ArchiveStreamAbortedError(self._abort_reason)

    def close(self) -> None:
        """Signal end-of-stream to the consumer."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    # --- consumer side ---

    def read_chunk(self) -> bytes:
        """
        Next buffered chunk, or ``b""`` once the producer closed the pipe and
        everything was drained.
        """
        with self._cond:
            while not self._chunks and not self._closed and self._abort_reason is None:
                self._cond.wait()
            if self._abort_reason is not None:
                raise ArchiveStreamAbortedError(self._abort_reason)
            if not self._chunks:
                return b""
            chunk = self._chunks.popleft()
            self._buffered -= len(chunk)
            self._cond.notify_all()
            return chunk

    # --- either side ---

    def abort(self, reason: str) -> None:
        """Fail both ends; buffered bytes are dropped."""
        with self._cond:
            if self._abort_reason is None:
                self._abort_reason = reason
                logger.debug("Byte pipe aborted", extra={"reason": reason})
            self._chunks.clear()
            self._buffered = 0
            self._cond.notify_all()


class PipeWriter:
    """
    Write-only file object handed to ``zipfile``.

    It deliberately has no ``tell``/``seek`` so zipfile treats the output as an
    unseekable stream and writes data descriptors after each entry.
    """

    def __init__(self, pipe: BytePipe):
        self._pipe = pipe
        self.closed = False

    def write(self, data) -> int:
        return self._pipe.write(data)

    def flush(self) -> None:
        self._pipe.flush()

    def writable(self) -> bool:
        return True

    def close(self) -> None:
        # Closing is owned by the archive builder, which closes the pipe itself.
        self.closed = True
