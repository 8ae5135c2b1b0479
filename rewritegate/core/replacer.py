"""Streaming literal replace with a bounded tail buffer."""

from __future__ import annotations

from typing import Protocol

from rewritegate.core.errors import SinkWriteError


class ByteSink(Protocol):
    async def write(self, data: bytes) -> int: ...


class StreamingPatternReplacer:
    """Replace every occurrence of ``pattern`` in a chunked byte stream.

    Emission trails the input by at most ``len(pattern) - 1`` bytes: those
    bytes may still be the start of a match whose remainder has not arrived.
    Matching is literal, leftmost-first and non-overlapping, so the output of
    ``write(...)``/``flush()`` equals ``data.replace(pattern, replacement)``
    on the concatenated input, however it was chunked.
    """

    def __init__(self, sink: ByteSink, pattern: bytes, replacement: bytes) -> None:
        if not pattern:
            raise ValueError("pattern must not be empty")
        self._sink = sink
        self._pattern = bytes(pattern)
        self._replacement = bytes(replacement)
        self._window = len(self._pattern) - 1
        self._buf = b""
        self.matches = 0
        self.bytes_in = 0
        self.bytes_out = 0

    @property
    def pending(self) -> int:
        return len(self._buf)

    async def write(self, chunk: bytes) -> int:
        if not chunk:
            return 0
        self.bytes_in += len(chunk)
        self._buf += chunk
        out = self._drain(final=False)
        if out:
            await self._emit(out)
        return len(chunk)

    async def flush(self) -> None:
        if not self._buf:
            return
        out = self._drain(final=True)
        if out:
            await self._emit(out)

    def _drain(self, *, final: bool) -> bytes:
        buf = self._buf
        pattern = self._pattern
        parts: list[bytes] = []
        pos = 0
        while True:
            idx = buf.find(pattern, pos)
            if idx < 0:
                break
            parts.append(buf[pos:idx])
            parts.append(self._replacement)
            pos = idx + len(pattern)
            self.matches += 1
        # 未命中区域只放出 safe 之前的部分，其余可能是跨块匹配的前缀
        keep_from = len(buf) if final else max(pos, len(buf) - self._window)
        parts.append(buf[pos:keep_from])
        self._buf = buf[keep_from:]
        return b"".join(parts)

    async def _emit(self, data: bytes) -> None:
        try:
            await self._sink.write(data)
        except SinkWriteError:
            raise
        except Exception as exc:
            raise SinkWriteError(f"sink write failed: {exc}") from exc
        self.bytes_out += len(data)
