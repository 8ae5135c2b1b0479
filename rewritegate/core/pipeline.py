"""Response rewriting pipeline: content-type gate, header fixups, producer task."""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import AsyncGenerator, AsyncIterator, Iterable

import httpx

from rewritegate.core.errors import RewriteGateError, UpstreamReadError
from rewritegate.core.models import PipelineResult, RewriteRule
from rewritegate.core.pipe import RendezvousPipe
from rewritegate.core.replacer import StreamingPatternReplacer
from rewritegate.observability.logging import log_event
from rewritegate.util.logger import logger

DEFAULT_TEXTUAL_MARKERS: tuple[str, ...] = ("json", "text", "javascript")
# 改写后长度未知；aiter_bytes 已解码，原编码头也不再成立
LENGTH_DEPENDENT_HEADERS = frozenset({"content-length", "content-encoding"})

_stream_ids = itertools.count(1)


def parse_markers(raw: str) -> tuple[str, ...]:
    markers = tuple(item.strip().lower() for item in raw.split(",") if item.strip())
    return markers or DEFAULT_TEXTUAL_MARKERS


async def _release_upstream(upstream: httpx.Response, label: str) -> None:
    try:
        await upstream.aclose()
    except Exception as exc:
        logger.warning("upstream close failed stream=%s error_type=%s error=%s", label, type(exc).__name__, exc)


class RewriteStream:
    """One rewritten response body: replacer + pipe + background producer."""

    def __init__(self, rule: RewriteRule, upstream: httpx.Response, *, label: str = "") -> None:
        self._upstream = upstream
        self._pipe = RendezvousPipe()
        self.replacer = StreamingPatternReplacer(self._pipe, rule.pattern, rule.replacement)
        self.label = label or f"rewrite-{next(_stream_ids)}"
        self.error: RewriteGateError | None = None
        self._task: asyncio.Task | None = None

    def start(self) -> None:
        if self._task is not None or self._pipe.closed:
            return
        self._task = asyncio.create_task(self._pump(), name=f"rewritegate-{self.label}")

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    async def _pump(self) -> None:
        body = self._upstream.aiter_bytes()
        try:
            while True:
                try:
                    chunk = await anext(body)
                except StopAsyncIteration:
                    break
                except Exception as exc:
                    detail = (str(exc) or "").strip() or type(exc).__name__
                    raise UpstreamReadError(f"upstream read failed: {detail}") from exc
                await self.replacer.write(chunk)
            await self.replacer.flush()
        except RewriteGateError as exc:
            self.error = exc
            logger.warning(
                "rewrite stream aborted stream=%s error_type=%s error=%s bytes_in=%s bytes_out=%s",
                self.label,
                type(exc).__name__,
                exc,
                self.replacer.bytes_in,
                self.replacer.bytes_out,
            )
            self._pipe.close_writer(exc)
        finally:
            try:
                await _release_upstream(self._upstream, self.label)
            finally:
                self._pipe.close_writer()
        if self.error is None:
            log_event(
                "rewrite_stream_done",
                stream=self.label,
                matches=self.replacer.matches,
                bytes_in=self.replacer.bytes_in,
                bytes_out=self.replacer.bytes_out,
            )

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._iter_body()

    async def _iter_body(self) -> AsyncGenerator[bytes, None]:
        self.start()
        try:
            async for chunk in self._pipe.iter_chunks():
                yield chunk
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        # 先同步关闭读端，即使随后的 await 被取消，producer 也会自行退出
        self._pipe.close_reader()
        task = self._task
        if task is None:
            self._pipe.close_writer()
            await asyncio.shield(_release_upstream(self._upstream, self.label))
            return
        await asyncio.shield(task)


class RewritingResponsePipeline:
    def __init__(self, rule: RewriteRule, textual_markers: Iterable[str] = DEFAULT_TEXTUAL_MARKERS) -> None:
        self.rule = rule
        self.textual_markers = tuple(marker.lower() for marker in textual_markers if marker)

    def should_rewrite(self, content_type: str) -> bool:
        lowered = (content_type or "").lower()
        if not lowered:
            return False
        return any(marker in lowered for marker in self.textual_markers)

    @staticmethod
    def rewrite_headers(headers: Iterable[tuple[str, str]]) -> list[tuple[str, str]]:
        return [(key, value) for key, value in headers if key.lower() not in LENGTH_DEPENDENT_HEADERS]

    def process(self, upstream: httpx.Response, *, label: str = "") -> PipelineResult:
        """Wrap ``upstream`` (an ``httpx.Response`` opened with ``stream=True``).

        Non-textual responses pass through with their headers and raw body
        untouched. Textual ones lose ``Content-Length``/``Content-Encoding``
        and get a :class:`RewriteStream` body whose producer starts at once.
        """

        original_headers = list(upstream.headers.multi_items())
        content_type = upstream.headers.get("content-type", "")
        if not self.should_rewrite(content_type):
            logger.debug("rewrite skipped content_type=%s stream=%s", content_type, label)
            return PipelineResult(headers=original_headers, body=PassthroughStream(upstream, label=label), rewritten=False)

        headers = self.rewrite_headers(original_headers)
        removed = [key for key, _ in original_headers if key.lower() in LENGTH_DEPENDENT_HEADERS]
        stream = RewriteStream(self.rule, upstream, label=label)
        stream.start()
        logger.debug(
            "rewrite started stream=%s content_type=%s removed_headers=%s",
            stream.label,
            content_type,
            removed,
        )
        return PipelineResult(headers=headers, body=stream, rewritten=True, removed_headers=removed)


class PassthroughStream:
    """Raw upstream body for responses that are not rewritten."""

    def __init__(self, upstream: httpx.Response, *, label: str = "") -> None:
        self._upstream = upstream
        self.label = label

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._iter_body()

    async def _iter_body(self) -> AsyncGenerator[bytes, None]:
        body = self._upstream.aiter_raw()
        try:
            while True:
                try:
                    chunk = await anext(body)
                except StopAsyncIteration:
                    return
                except Exception as exc:
                    detail = (str(exc) or "").strip() or type(exc).__name__
                    raise UpstreamReadError(f"upstream read failed: {detail}") from exc
                yield chunk
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        if self._upstream.is_closed:
            return
        await asyncio.shield(_release_upstream(self._upstream, self.label))
