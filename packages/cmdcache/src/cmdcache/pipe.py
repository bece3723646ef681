"""Bounded, blocking in-process byte channel.

StreamPipe connects one producer thread to one consumer thread:

- writer.write() blocks while the buffer is full (backpressure)
- reader.read() blocks while the buffer is empty and the pipe is open
- close() ends the stream; buffered bytes stay readable, then the reader
  sees EOF (or the close error)
- reader.close() abandons the stream; buffered bytes are dropped and the
  producer's next write fails

Every close is idempotent, so each side can close on its own exit path
without coordinating with the other.
"""

from __future__ import annotations

import threading

from cmdcache.errors import PipeClosedError

DEFAULT_CAPACITY = 64 * 1024


class StreamPipe:
    """Single-producer, single-consumer byte channel.

    Attributes:
        reader: Consumer end.
        writer: Producer end.

    Example:
        >>> pipe = StreamPipe()
        >>> pipe.writer.write(b"data")
        4
        >>> pipe.close()
        True
        >>> pipe.reader.read()
        b'data'
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity <= 0:
            msg = f"capacity must be positive, got {capacity}"
            raise ValueError(msg)
        self._capacity = capacity
        self._buffer = bytearray()
        self._cond = threading.Condition()
        self._write_closed = False
        self._read_closed = False
        self._close_error: BaseException | None = None
        self.reader = PipeReader(self)
        self.writer = PipeWriter(self)

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def closed(self) -> bool:
        """True once the stream has been ended or abandoned."""
        with self._cond:
            return self._write_closed or self._read_closed

    def close(self, error: BaseException | None = None) -> bool:
        """End the stream.

        Args:
            error: Reported to the reader once buffered data is consumed.
                None means a clean end of stream.

        Returns:
            True if this call closed the pipe, False if it was already closed.
        """
        with self._cond:
            if self._write_closed:
                return False
            self._write_closed = True
            self._close_error = error
            self._cond.notify_all()
            return True

    def _abandon(self) -> bool:
        with self._cond:
            if self._read_closed:
                return False
            self._read_closed = True
            self._buffer.clear()
            self._cond.notify_all()
            return True

    def _write(self, data: bytes | bytearray | memoryview) -> int:
        view = memoryview(data).cast("B")
        total = len(view)
        with self._cond:
            while view:
                if self._read_closed:
                    raise PipeClosedError("write on pipe abandoned by reader")
                if self._write_closed:
                    raise PipeClosedError("write on closed pipe")
                space = self._capacity - len(self._buffer)
                if space <= 0:
                    self._cond.wait()
                    continue
                self._buffer += view[:space]
                view = view[space:]
                self._cond.notify_all()
        return total

    def _read_chunk(self, size: int) -> bytes:
        with self._cond:
            while True:
                if self._read_closed:
                    raise PipeClosedError("read on closed pipe")
                if self._buffer:
                    data = bytes(self._buffer[:size])
                    del self._buffer[:size]
                    self._cond.notify_all()
                    return data
                if self._write_closed:
                    if self._close_error is not None:
                        if isinstance(self._close_error, PipeClosedError):
                            raise self._close_error
                        raise PipeClosedError(str(self._close_error)) from self._close_error
                    return b""
                self._cond.wait()


class PipeReader:
    """Consumer end of a StreamPipe; a minimal binary file object."""

    def __init__(self, pipe: StreamPipe) -> None:
        self._pipe = pipe

    def readable(self) -> bool:
        return True

    def read(self, size: int | None = -1) -> bytes:
        """Read up to size bytes, or until EOF when size is negative or None.

        Raises:
            PipeClosedError: If this end was closed, or the stream was ended
                with an error.
        """
        if size == 0:
            return b""
        if size is None or size < 0:
            chunks = []
            while chunk := self._pipe._read_chunk(self._pipe.capacity):
                chunks.append(chunk)
            return b"".join(chunks)
        return self._pipe._read_chunk(size)

    def close(self) -> bool:
        """Abandon the stream, failing any pending or future write."""
        return self._pipe._abandon()

    @property
    def closed(self) -> bool:
        return self._pipe._read_closed


class PipeWriter:
    """Producer end of a StreamPipe; a minimal binary file object."""

    def __init__(self, pipe: StreamPipe) -> None:
        self._pipe = pipe

    def writable(self) -> bool:
        return True

    def write(self, data: bytes | bytearray | memoryview) -> int:
        """Write all of data, blocking while the buffer is full.

        Raises:
            PipeClosedError: If either end has been closed.
        """
        return self._pipe._write(data)

    def flush(self) -> None:
        pass

    def close(self, error: BaseException | None = None) -> bool:
        """End the stream; see StreamPipe.close()."""
        return self._pipe.close(error)

    @property
    def closed(self) -> bool:
        return self._pipe._write_closed
