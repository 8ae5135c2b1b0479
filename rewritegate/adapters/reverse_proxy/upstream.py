"""
上游目标解析、转发头构造与共享 httpx 客户端。从 router 拆出，便于维护与单测。
"""

from __future__ import annotations

import asyncio
from typing import Any, Iterable, Mapping
from urllib.parse import urlparse, urlunparse

import httpx

from rewritegate.config.settings import settings
from rewritegate.util.logger import logger

HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)

_upstream_async_client: httpx.AsyncClient | None = None
_upstream_client_lock: Any = None


def _upstream_http_limits() -> httpx.Limits:
    return httpx.Limits(
        max_connections=max(10, int(settings.upstream_max_connections)),
        max_keepalive_connections=max(5, int(settings.upstream_max_keepalive_connections)),
    )


def _upstream_http_timeout() -> httpx.Timeout:
    timeout = float(settings.upstream_timeout_seconds)
    return httpx.Timeout(connect=timeout, read=timeout, write=timeout, pool=timeout)


async def get_upstream_async_client() -> httpx.AsyncClient:
    global _upstream_async_client, _upstream_client_lock
    if _upstream_async_client is not None:
        return _upstream_async_client
    if _upstream_client_lock is None:
        _upstream_client_lock = asyncio.Lock()
    async with _upstream_client_lock:
        if _upstream_async_client is None:
            _upstream_async_client = httpx.AsyncClient(
                follow_redirects=False,
                http2=False,
                timeout=_upstream_http_timeout(),
                limits=_upstream_http_limits(),
            )
    return _upstream_async_client


async def close_upstream_async_client() -> None:
    global _upstream_async_client
    if _upstream_async_client is not None:
        await _upstream_async_client.aclose()
        _upstream_async_client = None


def normalize_upstream_base(raw_base: str) -> str:
    candidate = raw_base.strip()
    parsed = urlparse(candidate)
    if parsed.scheme not in {"http", "https"}:
        raise ValueError("invalid_upstream_scheme")
    if not parsed.netloc:
        raise ValueError("invalid_upstream_host")
    if parsed.query or parsed.fragment:
        raise ValueError("invalid_upstream_query_fragment")
    cleaned_path = parsed.path.rstrip("/")
    return urlunparse((parsed.scheme, parsed.netloc, cleaned_path, "", "", ""))


def upstream_base() -> str:
    return normalize_upstream_base(settings.upstream_base_url)


def upstream_host(base: str) -> str:
    return urlparse(base).netloc


def build_upstream_url(base: str, path: str, query: str = "") -> str:
    route_path = path or "/"
    if not route_path.startswith("/"):
        route_path = f"/{route_path}"
    url = f"{base}{route_path}"
    if query:
        url = f"{url}?{query}"
    return url


_FORWARDED_HEADERS = frozenset({"x-forwarded-for", "x-forwarded-host", "x-forwarded-proto"})


def _header_items(headers: Mapping[str, str] | Iterable[tuple[str, str]]) -> list[tuple[str, str]]:
    # starlette Headers.items() 保留重复头；普通 dict 只能各保留一个
    if isinstance(headers, Mapping):
        return list(headers.items())
    return list(headers)


def build_forward_headers(
    headers: Mapping[str, str] | Iterable[tuple[str, str]],
    *,
    base: str,
    client_host: str = "",
    scheme: str = "http",
) -> list[tuple[str, str]]:
    """Inbound headers rewritten for the fixed upstream, repeated lines kept in order.

    Host follows the target, and the upstream is asked for an identity
    encoding so response bodies can be matched without decompression.
    """

    excluded = {"host", "content-length", "accept-encoding", *HOP_BY_HOP_HEADERS, *_FORWARDED_HEADERS}
    forwarded: list[tuple[str, str]] = []
    inbound_host = ""
    forwarded_for: list[str] = []
    for key, value in _header_items(headers):
        lowered = key.lower()
        if lowered == "host":
            inbound_host = value
        elif lowered == "x-forwarded-for" and value.strip():
            forwarded_for.append(value.strip())
        if lowered in excluded:
            continue
        forwarded.append((key, value))

    if client_host:
        forwarded_for.append(client_host)
    if forwarded_for:
        forwarded.append(("X-Forwarded-For", ", ".join(forwarded_for)))
    if inbound_host:
        forwarded.append(("X-Forwarded-Host", inbound_host))
    forwarded.append(("X-Forwarded-Proto", scheme))
    forwarded.append(("Host", upstream_host(base)))
    forwarded.append(("Accept-Encoding", "identity"))
    logger.debug("forward headers built host=%s header_count=%d", upstream_host(base), len(forwarded))
    return forwarded


def build_client_response_headers(headers: list[tuple[str, str]]) -> list[tuple[str, str]]:
    return [(key, value) for key, value in headers if key.lower() not in HOP_BY_HOP_HEADERS]
