import asyncio
import gzip

import httpx
import pytest

from rewritegate.core import pipeline as pipeline_module
from rewritegate.core.errors import SinkWriteError, UpstreamReadError
from rewritegate.core.models import RewriteRule
from rewritegate.core.pipeline import PassthroughStream, RewriteStream, RewritingResponsePipeline, parse_markers


class _UpstreamBody:
    """Async byte source that records how far the producer pulled it."""

    def __init__(self, *parts: bytes, error: Exception | None = None) -> None:
        self.parts = parts
        self.error = error
        self.pulled = 0

    async def __aiter__(self):
        for part in self.parts:
            self.pulled += 1
            yield part
        if self.error is not None:
            raise self.error


class _FailingCloseStream(httpx.AsyncByteStream):
    def __init__(self, *parts: bytes) -> None:
        self.parts = parts

    async def __aiter__(self):
        for part in self.parts:
            yield part

    async def aclose(self) -> None:
        raise RuntimeError("socket already gone")


def _upstream(headers: dict[str, str], body: _UpstreamBody) -> httpx.Response:
    return httpx.Response(200, headers=headers, content=body)


async def _drain(body) -> bytes:
    return b"".join([chunk async for chunk in body])


@pytest.fixture
def pipeline() -> RewritingResponsePipeline:
    return RewritingResponsePipeline(RewriteRule(pattern=b'"poweredBy": "giscus"', replacement=b'"poweredBy": ""'))


@pytest.mark.parametrize(
    ("content_type", "expected"),
    [
        ("application/json", True),
        ("application/json; charset=utf-8", True),
        ("TEXT/HTML", True),
        ("application/javascript", True),
        ("text/css", True),
        ("image/png", False),
        ("application/octet-stream", False),
        ("", False),
    ],
)
def test_should_rewrite_uses_marker_allow_list(pipeline, content_type, expected):
    assert pipeline.should_rewrite(content_type) is expected


def test_custom_markers_replace_default_list():
    custom = RewritingResponsePipeline(RewriteRule(pattern=b"x"), textual_markers=parse_markers(" xml , ld+json "))
    assert custom.should_rewrite("application/xhtml+xml")
    assert custom.should_rewrite("application/ld+json")
    assert not custom.should_rewrite("text/html")


def test_parse_markers_falls_back_to_defaults():
    assert parse_markers("") == ("json", "text", "javascript")
    assert parse_markers(" , ") == ("json", "text", "javascript")


def test_rewrite_rule_rejects_empty_pattern():
    with pytest.raises(ValueError):
        RewriteRule(pattern=b"", replacement=b"x")


def test_rewrite_headers_drops_length_and_encoding_only():
    headers = [
        ("Content-Type", "application/json"),
        ("Content-Length", "42"),
        ("Content-Encoding", "gzip"),
        ("Set-Cookie", "a=1"),
        ("Set-Cookie", "b=2"),
    ]
    assert RewritingResponsePipeline.rewrite_headers(headers) == [
        ("Content-Type", "application/json"),
        ("Set-Cookie", "a=1"),
        ("Set-Cookie", "b=2"),
    ]


@pytest.mark.asyncio
async def test_json_response_is_rewritten_and_length_headers_removed(pipeline):
    original = b'{"a": 1, "poweredBy": "giscus", "b": 2}'
    upstream = _upstream(
        {
            "content-type": "application/json",
            "content-length": str(len(original)),
            "content-encoding": "identity",
            "cache-control": "no-cache",
        },
        _UpstreamBody(original[:20], original[20:]),
    )

    result = pipeline.process(upstream)
    header_names = {key.lower() for key, _ in result.headers}

    assert result.rewritten is True
    assert "content-length" not in header_names
    assert "content-encoding" not in header_names
    assert ("cache-control", "no-cache") in [(key.lower(), value) for key, value in result.headers]
    assert sorted(name.lower() for name in result.removed_headers) == ["content-encoding", "content-length"]
    assert await _drain(result.body) == b'{"a": 1, "poweredBy": "", "b": 2}'
    assert upstream.is_closed


@pytest.mark.asyncio
async def test_non_textual_response_passes_through_untouched(pipeline):
    payload = b"\x89PNG\r\n" + b'"poweredBy": "giscus"' + b"\x00\x01"
    upstream = _upstream(
        {"content-type": "image/png", "content-length": str(len(payload))},
        _UpstreamBody(payload[:5], payload[5:]),
    )
    original_headers = list(upstream.headers.multi_items())

    result = pipeline.process(upstream)

    assert result.rewritten is False
    assert result.headers == original_headers
    assert await _drain(result.body) == payload
    assert upstream.is_closed


@pytest.mark.asyncio
async def test_compressed_textual_body_is_decoded_before_matching(pipeline):
    text = b'<script>var c = {"poweredBy": "giscus"};</script>'
    compressed = gzip.compress(text)
    upstream = _upstream(
        {"content-type": "text/html", "content-encoding": "gzip", "content-length": str(len(compressed))},
        _UpstreamBody(compressed[:10], compressed[10:]),
    )

    result = pipeline.process(upstream)

    assert all(key.lower() != "content-encoding" for key, _ in result.headers)
    assert await _drain(result.body) == b'<script>var c = {"poweredBy": ""};</script>'


@pytest.mark.asyncio
async def test_upstream_failure_surfaces_as_stream_error_without_tail():
    rule = RewriteRule(pattern=b"abc", replacement=b"X")
    body = _UpstreamBody(b"hello ab", error=httpx.ReadError("connection reset"))
    upstream = _upstream({"content-type": "text/plain"}, body)

    result = RewritingResponsePipeline(rule).process(upstream)
    received: list[bytes] = []
    with pytest.raises(UpstreamReadError, match="connection reset"):
        async for chunk in result.body:
            received.append(chunk)

    # "ab" 仍可能是匹配前缀，出错时不能当作最终内容输出
    assert b"".join(received) == b"hello "
    assert isinstance(result.body.error, UpstreamReadError)
    assert upstream.is_closed


@pytest.mark.asyncio
async def test_consumer_close_stops_producer_and_releases_upstream():
    rule = RewriteRule(pattern=b"zz", replacement=b"")
    body = _UpstreamBody(*[f"chunk-{i};".encode() for i in range(50)])
    upstream = _upstream({"content-type": "text/plain"}, body)

    result = RewritingResponsePipeline(rule).process(upstream)
    iterator = result.body.__aiter__()
    first = await anext(iterator)
    await iterator.aclose()

    stream = result.body
    assert first.startswith(b"chunk-0")
    assert stream.done
    assert isinstance(stream.error, SinkWriteError)
    assert upstream.is_closed
    assert body.pulled < 50


@pytest.mark.asyncio
async def test_producer_waits_for_consumer():
    rule = RewriteRule(pattern=b"zz", replacement=b"")
    body = _UpstreamBody(b"aaaa", b"bbbb", b"cccc")
    upstream = _upstream({"content-type": "application/json"}, body)

    stream = RewriteStream(rule, upstream, label="backpressure")
    stream.start()
    for _ in range(20):
        await asyncio.sleep(0)

    assert body.pulled == 1
    assert not stream.done
    assert await _drain(stream) == b"aaaabbbbcccc"
    assert body.pulled == 3


@pytest.mark.asyncio
async def test_completed_stream_logs_event(monkeypatch, pipeline):
    events: list[tuple[str, dict]] = []
    monkeypatch.setattr(pipeline_module, "log_event", lambda event, **payload: events.append((event, payload)))
    upstream = _upstream(
        {"content-type": "application/json"},
        _UpstreamBody(b'["poweredBy": "giscus", ', b'"poweredBy": "giscus"]'),
    )

    result = pipeline.process(upstream, label="req-test")
    await _drain(result.body)

    assert events == [
        (
            "rewrite_stream_done",
            {"stream": "req-test", "matches": 2, "bytes_in": 46, "bytes_out": 34},
        )
    ]


@pytest.mark.asyncio
async def test_upstream_close_failure_does_not_mask_stream_outcome():
    rule = RewriteRule(pattern=b"zz", replacement=b"")
    upstream = httpx.Response(
        200,
        headers={"content-type": "text/plain"},
        stream=_FailingCloseStream(*[f"part-{i};".encode() for i in range(10)]),
    )

    stream = RewriteStream(rule, upstream, label="close-fails")
    iterator = stream.__aiter__()
    first = await anext(iterator)
    await iterator.aclose()

    assert first.startswith(b"part-0")
    assert stream.done
    assert isinstance(stream.error, SinkWriteError)


@pytest.mark.asyncio
async def test_closing_unread_bodies_releases_upstream(pipeline):
    text_body = _UpstreamBody(b'{"a": 1}')
    text_upstream = _upstream({"content-type": "application/json"}, text_body)
    unstarted = RewriteStream(pipeline.rule, text_upstream, label="never-read")

    await unstarted.aclose()
    unstarted.start()

    assert text_upstream.is_closed
    assert not unstarted.done
    assert text_body.pulled == 0

    raw_upstream = _upstream({"content-type": "image/png"}, _UpstreamBody(b"\x89PNG"))
    result = pipeline.process(raw_upstream)
    assert isinstance(result.body, PassthroughStream)

    await result.body.aclose()
    assert raw_upstream.is_closed
