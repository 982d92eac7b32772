"""Shared test helpers and stub classes.

Import from here instead of duplicating fakes in individual test files.
"""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Iterable, Mapping, Sequence

from quizsmith.ai.cancellation import CancellationToken, ensure_token, iterate_with_cancel
from quizsmith.ai.transport.types import (
    Content,
    FunctionCall,
    FunctionDeclaration,
    GenerateRequest,
    ModelInfo,
    ResponseChunk,
)

SKY_DOCUMENT = "<p><strong>1: What color is the sky?</strong></p><p><strong>Blue</strong></p>"

QUIZ_DOCUMENT = (
    "<h1>Astronomy quiz</h1>\n"
    "<p><strong>1: What is the closest star to Earth?</strong></p>\n"
    "<p><strong>The Sun</strong></p>\n"
    "<p><em>Reference: Chapter 1</em></p>\n"
    "<p><strong>2. Which planet has rings?</strong></p>\n"
    "<ul><li>Mars</li><li><strong>Saturn</strong></li><li>Venus</li></ul>\n"
    "<p><strong>3) How many moons does Mars have?</strong></p>\n"
    "<p>Answer: Two</p>\n"
)


def text_chunk(text: str) -> ResponseChunk:
    return ResponseChunk(text=text)


def call_chunk(name: str = "edit_document", **args: Any) -> ResponseChunk:
    return ResponseChunk(function_calls=(FunctionCall(name=name, args=args),))


class BlockingStream:
    """Marker: the scripted stream stops here and waits until cancelled."""


class ScriptedTransport:
    """Transport fake that replays scripted responses.

    Each script entry is either a sequence of chunks (one streamed response),
    an exception to raise when the request is made, or a sequence ending in
    :class:`BlockingStream` to simulate a response that never finishes.
    """

    def __init__(
        self,
        script: Iterable[Any] = (),
        *,
        supports_caching: bool = False,
        generate_responses: Iterable[Any] = (),
    ) -> None:
        self.supports_caching = supports_caching
        self._script = list(script)
        self._generate = list(generate_responses)
        self.requests: list[GenerateRequest] = []
        self.generate_requests: list[GenerateRequest] = []
        self.created_caches: list[dict[str, Any]] = []
        self.deleted_caches: list[str] = []
        self.fail_cache_create = False
        self.fail_cache_delete = False
        self.closed = False

    async def stream_generate(
        self, request: GenerateRequest, *, cancel: CancellationToken | None = None
    ) -> AsyncIterator[ResponseChunk]:
        token = ensure_token(cancel)
        self.requests.append(request)
        if not self._script:
            raise AssertionError("No scripted response left")
        entry = self._script.pop(0)
        if isinstance(entry, BaseException):
            raise entry
        async for chunk in iterate_with_cancel(self._replay(entry), token):
            yield chunk

    @staticmethod
    async def _replay(entry: Sequence[Any]) -> AsyncIterator[ResponseChunk]:
        for item in entry:
            if isinstance(item, BlockingStream):
                await asyncio.Event().wait()
            yield item

    async def generate(
        self, request: GenerateRequest, *, cancel: CancellationToken | None = None
    ) -> ResponseChunk:
        self.generate_requests.append(request)
        entry = self._generate.pop(0)
        if isinstance(entry, BaseException):
            raise entry
        return entry

    async def list_models(self) -> AsyncIterator[ModelInfo]:
        for name in ("model-a", "model-b"):
            yield ModelInfo(name=name, display_name=name.upper())

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
        from quizsmith.ai.errors import TransportError

        if self.fail_cache_create:
            raise TransportError(message="caching unsupported for model")
        self.created_caches.append(
            {
                "model": model,
                "system_instruction": system_instruction,
                "contents": list(contents),
                "tools": list(tools),
                "ttl": ttl,
                "display_name": display_name,
            }
        )
        return f"cachedContents/{len(self.created_caches)}"

    async def delete_cache(self, name: str) -> None:
        from quizsmith.ai.errors import TransportError

        if self.fail_cache_delete:
            raise TransportError(message="404 cache not found")
        self.deleted_caches.append(name)

    async def aclose(self) -> None:
        self.closed = True


class FakeFixer:
    """Stands in for :class:`LLMEditFixer` with a canned correction."""

    def __init__(self, corrected: str | None) -> None:
        self.corrected = corrected
        self.calls: list[Mapping[str, Any]] = []

    async def fix(self, **kwargs: Any) -> str | None:
        self.calls.append(kwargs)
        return self.corrected


class RecordingSleep:
    """Replacement for ``asyncio.sleep`` that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
