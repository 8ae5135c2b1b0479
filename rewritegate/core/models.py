"""Internal transport models."""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Protocol

from pydantic import BaseModel, ConfigDict, Field


class RewriteRule(BaseModel):
    """Literal pattern/replacement pair, fixed for the process lifetime."""

    model_config = ConfigDict(frozen=True)

    pattern: bytes = Field(min_length=1)
    replacement: bytes = b""

    @classmethod
    def from_text(cls, pattern: str, replacement: str) -> "RewriteRule":
        return cls(pattern=pattern.encode("utf-8"), replacement=replacement.encode("utf-8"))


class ResponseBody(Protocol):
    """Body the proxy streams to the client; ``aclose`` releases the upstream even if never iterated."""

    def __aiter__(self) -> AsyncIterator[bytes]: ...

    async def aclose(self) -> None: ...


@dataclass(slots=True)
class PipelineResult:
    headers: list[tuple[str, str]]
    body: ResponseBody
    rewritten: bool = False
    removed_headers: list[str] = field(default_factory=list)
