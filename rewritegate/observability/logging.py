"""Structured event lines in the same ``key=value`` shape as the rest of the logs."""

from __future__ import annotations

from rewritegate.util.logger import logger


def format_event(event: str, payload: dict[str, object]) -> str:
    fields = " ".join(f"{key}={payload[key]}" for key in sorted(payload))
    return f"event={event} {fields}" if fields else f"event={event}"


def log_event(event: str, **payload: object) -> None:
    logger.info("%s", format_event(event, payload))
