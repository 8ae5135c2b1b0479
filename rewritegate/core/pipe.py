"""Unbuffered producer/consumer handoff."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator

from rewritegate.core.errors import SinkWriteError


class RendezvousPipe:
    """Single-producer, single-consumer byte channel with no internal buffer.

    ``write`` returns only after ``read`` has taken the chunk, so the producer
    runs at the consumer's pace. ``close_writer(error)`` ends the stream; the
    reader sees ``b""`` on a clean close, or the error raised. The first close
    wins. ``close_reader`` makes every pending and future write fail with
    :class:`SinkWriteError`.
    """

    def __init__(self) -> None:
        self._pending: bytes | None = None
        self._readable = asyncio.Event()
        self._accepted = asyncio.Event()
        self._write_lock = asyncio.Lock()
        self._writer_closed = False
        self._writer_error: BaseException | None = None
        self._reader_closed = False

    @property
    def closed(self) -> bool:
        return self._writer_closed or self._reader_closed

    async def write(self, data: bytes) -> int:
        async with self._write_lock:
            if self._reader_closed:
                raise SinkWriteError("write on pipe whose reader is closed")
            if self._writer_closed:
                raise SinkWriteError("write on closed pipe")
            if not data:
                return 0
            self._pending = data
            self._accepted.clear()
            self._readable.set()
            await self._accepted.wait()
            if self._pending is not None:
                # reader 在取走数据前关闭
                self._pending = None
                raise SinkWriteError("pipe reader closed before accepting data")
            return len(data)

    async def read(self) -> bytes:
        while True:
            if self._pending is not None:
                data = self._pending
                self._pending = None
                self._readable.clear()
                self._accepted.set()
                return data
            if self._writer_closed:
                if self._writer_error is not None:
                    raise self._writer_error
                return b""
            if self._reader_closed:
                return b""
            await self._readable.wait()
            self._readable.clear()

    def close_writer(self, error: BaseException | None = None) -> None:
        if self._writer_closed:
            return
        self._writer_closed = True
        self._writer_error = error
        self._readable.set()

    def close_reader(self) -> None:
        if self._reader_closed:
            return
        self._reader_closed = True
        self._accepted.set()
        self._readable.set()

    async def iter_chunks(self) -> AsyncGenerator[bytes, None]:
        try:
            while True:
                chunk = await self.read()
                if not chunk:
                    return
                yield chunk
        finally:
            self.close_reader()
