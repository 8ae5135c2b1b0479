"""FastAPI app entry."""

from __future__ import annotations

import time

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from rewritegate.adapters.reverse_proxy.router import get_pipeline, router as proxy_router
from rewritegate.adapters.reverse_proxy.upstream import close_upstream_async_client, upstream_base
from rewritegate.config.settings import settings
from rewritegate.util.logger import logger

HEALTH_PATH = "/__gw__/health"

app = FastAPI(title=settings.app_name, docs_url=None, redoc_url=None, openapi_url=None)


def _error_response(status_code: int, reason: str, detail: str | None = None) -> JSONResponse:
    detail_text = (detail or reason).strip() or reason
    return JSONResponse(
        status_code=status_code,
        content={
            "error": {
                "message": detail_text,
                "type": "rewritegate_error",
                "code": reason,
            }
        },
    )


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    started = time.perf_counter()
    logger.debug("request enter method=%s path=%s", request.method, request.url.path)
    try:
        response = await call_next(request)
    except Exception as exc:  # pragma: no cover - fail-safe
        logger.exception("gateway unhandled exception path=%s", request.url.path)
        return _error_response(
            status_code=500,
            reason="gateway_internal_error",
            detail=f"gateway internal error: {exc}",
        )
    logger.debug(
        "request exit method=%s path=%s status=%s elapsed_ms=%.1f",
        request.method,
        request.url.path,
        response.status_code,
        (time.perf_counter() - started) * 1000.0,
    )
    return response


@app.get(HEALTH_PATH)
def health() -> dict:
    logger.info("health check")
    return {"status": "ok", "upstream": upstream_base()}


@app.on_event("startup")
async def startup_check() -> None:
    try:
        base = upstream_base()
        get_pipeline()
    except Exception as exc:  # pragma: no cover
        logger.error("rewritegate startup check failed: %s", exc)
        raise
    logger.info("reverse proxy on %s:%s -> %s", settings.host, settings.port, base)


@app.on_event("shutdown")
async def shutdown_cleanup() -> None:
    await close_upstream_async_client()


# 健康检查必须先于通配代理路由注册
app.include_router(proxy_router)
