"""Single-upstream reverse proxy with streaming response rewriting."""

from __future__ import annotations

import itertools
from collections.abc import AsyncGenerator
from functools import lru_cache

import httpx
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.types import Receive, Scope, Send

from rewritegate.adapters.reverse_proxy.upstream import (
    build_client_response_headers,
    build_forward_headers,
    build_upstream_url,
    get_upstream_async_client,
    upstream_base,
)
from rewritegate.config.settings import settings
from rewritegate.core.errors import RewriteGateError
from rewritegate.core.models import PipelineResult, ResponseBody, RewriteRule
from rewritegate.core.pipeline import RewritingResponsePipeline, parse_markers
from rewritegate.util.logger import logger

router = APIRouter()

_ALL_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS")
_request_ids = itertools.count(1)


@lru_cache(maxsize=1)
def get_rewrite_rule() -> RewriteRule:
    return RewriteRule.from_text(settings.rewrite_pattern, settings.rewrite_replacement)


@lru_cache(maxsize=1)
def get_pipeline() -> RewritingResponsePipeline:
    rule = get_rewrite_rule()
    markers = parse_markers(settings.textual_content_markers)
    logger.info("rewrite pipeline ready pattern_bytes=%d markers=%s", len(rule.pattern), markers)
    return RewritingResponsePipeline(rule, markers)


def _upstream_unavailable() -> JSONResponse:
    return JSONResponse(
        status_code=502,
        content={
            "error": {
                "message": "upstream unavailable",
                "type": "rewritegate_error",
                "code": "upstream_unavailable",
            }
        },
    )


class ProxyStreamingResponse(StreamingResponse):
    """Streaming response whose upstream body is released when the ASGI call ends,
    including when the body iterator was never started.
    """

    def __init__(self, content, *, upstream_body: ResponseBody, status_code: int = 200) -> None:
        super().__init__(content, status_code=status_code)
        self.upstream_body = upstream_body

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self.upstream_body.aclose()


def _build_streaming_response(result: PipelineResult, status_code: int, *, label: str, target_url: str) -> Response:
    async def _iter_body() -> AsyncGenerator[bytes, None]:
        try:
            async for chunk in result.body:
                yield chunk
        except RewriteGateError as exc:
            # 不吞错：让服务端中断连接，客户端不会把截断当作完整响应
            logger.warning("upstream stream interrupted stream=%s target=%s error=%s", label, target_url, exc)
            raise
        finally:
            await result.body.aclose()

    response = ProxyStreamingResponse(_iter_body(), upstream_body=result.body, status_code=status_code)
    for key, value in build_client_response_headers(result.headers):
        response.headers.append(key, value)
    return response


@router.api_route("/{proxy_path:path}", methods=list(_ALL_METHODS))
async def reverse_proxy(request: Request, proxy_path: str = "") -> Response:
    del proxy_path

    label = f"req-{next(_request_ids)}"
    base = upstream_base()
    target_url = build_upstream_url(base, request.url.path, request.url.query)
    forward_headers = build_forward_headers(
        request.headers,
        base=base,
        client_host=request.client.host if request.client else "",
        scheme=request.url.scheme,
    )
    request_body = await request.body()
    logger.debug(
        "proxy forward stream=%s method=%s path=%s target=%s body_size=%d",
        label,
        request.method,
        request.url.path,
        target_url,
        len(request_body),
    )

    client = await get_upstream_async_client()
    upstream_request = client.build_request(
        request.method,
        target_url,
        headers=forward_headers,
        content=request_body,
    )
    try:
        upstream_response = await client.send(upstream_request, stream=True)
    except httpx.HTTPError as exc:
        detail = (str(exc) or "").strip() or "connection_failed_or_timeout"
        logger.warning("upstream unreachable stream=%s target=%s error=%s", label, target_url, detail)
        return _upstream_unavailable()

    result = get_pipeline().process(upstream_response, label=label)
    logger.info(
        "proxy response stream=%s method=%s path=%s status=%s rewritten=%s",
        label,
        request.method,
        request.url.path,
        upstream_response.status_code,
        result.rewritten,
    )
    return _build_streaming_response(result, upstream_response.status_code, label=label, target_url=target_url)
