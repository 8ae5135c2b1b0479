#!/usr/bin/env python3
"""
启动 RewriteGate 反向代理（uvicorn）。

用法：
  python -m rewritegate.server                 # 使用 REWRITEGATE_* / PORT 环境变量
  python -m rewritegate.server --port 9000
  rewritegate --host 127.0.0.1 --log-level debug
"""

from __future__ import annotations

import argparse

import uvicorn

from rewritegate.config.settings import settings
from rewritegate.util.logger import set_level


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Reverse proxy that rewrites a literal fragment in response bodies.")
    parser.add_argument("--host", default=None, help=f"listen host (default {settings.host})")
    parser.add_argument("--port", type=int, default=None, help=f"listen port (default {settings.port}, or $PORT)")
    parser.add_argument("--log-level", default=None, help=f"log level (default {settings.log_level})")
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    host = args.host or settings.host
    port = args.port if args.port is not None else settings.port
    log_level = (args.log_level or settings.log_level).lower()
    set_level(log_level)
    uvicorn.run("rewritegate.core.gateway:app", host=host, port=port, log_level=log_level)


if __name__ == "__main__":
    main()
