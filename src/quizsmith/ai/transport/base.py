"""Transport contracts."""

from __future__ import annotations

from typing import AsyncIterator, Protocol, Sequence, runtime_checkable

from ..cancellation import CancellationToken
from .types import Content, FunctionDeclaration, GenerateRequest, ModelInfo, ResponseChunk

__all__ = ["LLMTransport", "CachingBackend", "TokenCountingService"]


@runtime_checkable
class LLMTransport(Protocol):
    """Uniform call surface over a model backend.

    Every implementation yields structurally identical :class:`ResponseChunk`
    objects and raises :class:`~quizsmith.ai.errors.Cancelled` when the token
    fires, distinct from :class:`~quizsmith.ai.errors.TransportError`.
    """

    supports_caching: bool

    def stream_generate(
        self, request: GenerateRequest, *, cancel: CancellationToken | None = None
    ) -> AsyncIterator[ResponseChunk]:
        ...

    async def generate(
        self, request: GenerateRequest, *, cancel: CancellationToken | None = None
    ) -> ResponseChunk:
        ...

    def list_models(self) -> AsyncIterator[ModelInfo]:
        ...

    async def aclose(self) -> None:
        ...


@runtime_checkable
class CachingBackend(Protocol):
    """Server-side prompt caching, offered by transports with ``supports_caching``."""

    async def create_cache(
        self,
        *,
        model: str,
        system_instruction: str,
        contents: Sequence[Content],
        tools: Sequence[FunctionDeclaration],
        ttl: str,
        display_name: str,
    ) -> str:
        ...

    async def delete_cache(self, name: str) -> None:
        ...


@runtime_checkable
class TokenCountingService(Protocol):
    """Authoritative token counts for a request's contents."""

    async def count_tokens(self, model: str, contents: Sequence[Content]) -> int:
        ...
