"""Transport backed by the google-genai SDK."""

from __future__ import annotations

import base64
import inspect
import logging
from typing import Any, AsyncIterator, Mapping, Sequence

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from ..cancellation import CancellationToken, ensure_token, iterate_with_cancel
from ..errors import Cancelled, TransportError
from .types import Content, FunctionDeclaration, GenerateRequest, ModelInfo, ResponseChunk, normalize_google_response

__all__ = ["GenAITransport"]

LOGGER = logging.getLogger(__name__)


class GenAITransport:
    """Direct SDK transport; the only backend that supports server-side caching."""

    supports_caching = True

    def __init__(
        self,
        *,
        api_key: str,
        request_timeout: float | None = 90.0,
        client: Any | None = None,
    ) -> None:
        self._client = client or self._build_client(api_key, request_timeout)

    @staticmethod
    def _build_client(api_key: str, request_timeout: float | None) -> genai.Client:
        http_options = None
        if request_timeout:
            http_options = types.HttpOptions(timeout=int(request_timeout * 1000))
        return genai.Client(api_key=api_key, http_options=http_options)

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------
    async def stream_generate(
        self, request: GenerateRequest, *, cancel: CancellationToken | None = None
    ) -> AsyncIterator[ResponseChunk]:
        token = ensure_token(cancel)
        LOGGER.debug("Streaming %s with %s content item(s)", request.model, len(request.contents))
        try:
            stream = await token.run(
                self._client.aio.models.generate_content_stream(
                    model=request.model,
                    contents=self._build_contents(request.contents),
                    config=self._build_config(request),
                )
            )
            async for raw in iterate_with_cancel(stream, token):
                chunk = normalize_google_response(_dump(raw))
                if not chunk.is_empty:
                    yield chunk
        except (Cancelled, TransportError):
            raise
        except (genai_errors.APIError, httpx.HTTPError) as exc:
            raise TransportError.from_exception(exc) from exc

    async def generate(
        self, request: GenerateRequest, *, cancel: CancellationToken | None = None
    ) -> ResponseChunk:
        token = ensure_token(cancel)
        try:
            raw = await token.run(
                self._client.aio.models.generate_content(
                    model=request.model,
                    contents=self._build_contents(request.contents),
                    config=self._build_config(request),
                )
            )
        except (Cancelled, TransportError):
            raise
        except (genai_errors.APIError, httpx.HTTPError) as exc:
            raise TransportError.from_exception(exc) from exc
        return normalize_google_response(_dump(raw))

    async def list_models(self) -> AsyncIterator[ModelInfo]:
        try:
            pager = await self._client.aio.models.list(config={"page_size": 50})
            async for model in pager:
                yield ModelInfo(
                    name=str(getattr(model, "name", "") or ""),
                    display_name=str(getattr(model, "display_name", "") or ""),
                    description=str(getattr(model, "description", "") or ""),
                    input_token_limit=getattr(model, "input_token_limit", None),
                    output_token_limit=getattr(model, "output_token_limit", None),
                )
        except (genai_errors.APIError, httpx.HTTPError) as exc:
            raise TransportError.from_exception(exc) from exc

    # ------------------------------------------------------------------
    # Token counting and caching
    # ------------------------------------------------------------------
    async def count_tokens(self, model: str, contents: Sequence[Content]) -> int:
        try:
            response = await self._client.aio.models.count_tokens(
                model=model, contents=self._build_contents(contents)
            )
        except (genai_errors.APIError, httpx.HTTPError) as exc:
            raise TransportError.from_exception(exc) from exc
        return int(getattr(response, "total_tokens", 0) or 0)

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
        config = types.CreateCachedContentConfig(
            system_instruction=system_instruction,
            contents=self._build_contents(contents),
            tools=self._build_tools(tools),
            ttl=ttl,
            display_name=display_name,
        )
        try:
            cache = await self._client.aio.caches.create(model=model, config=config)
        except (genai_errors.APIError, httpx.HTTPError) as exc:
            raise TransportError.from_exception(exc) from exc
        name = getattr(cache, "name", None)
        if not name:
            raise TransportError(message="Cache creation returned no name")
        return str(name)

    async def delete_cache(self, name: str) -> None:
        try:
            await self._client.aio.caches.delete(name=name)
        except (genai_errors.APIError, httpx.HTTPError) as exc:
            raise TransportError.from_exception(exc) from exc

    async def aclose(self) -> None:
        aio = getattr(self._client, "aio", None)
        close = getattr(aio, "aclose", None)
        if close is None:
            return
        result = close()
        if inspect.isawaitable(result):
            await result

    # ------------------------------------------------------------------
    # Request mapping
    # ------------------------------------------------------------------
    def _build_config(self, request: GenerateRequest) -> types.GenerateContentConfig:
        options: dict[str, Any] = {}
        if request.cached_content:
            # cached content already carries the system instruction and tools
            options["cached_content"] = request.cached_content
        else:
            if request.system_instruction:
                options["system_instruction"] = request.system_instruction
            tools = self._build_tools(request.tools)
            if tools:
                options["tools"] = tools
        if request.temperature is not None:
            options["temperature"] = request.temperature
        if request.max_output_tokens is not None:
            options["max_output_tokens"] = request.max_output_tokens
        if request.include_thoughts:
            options["thinking_config"] = types.ThinkingConfig(include_thoughts=True)
        if request.tools and not request.cached_content:
            options["automatic_function_calling"] = types.AutomaticFunctionCallingConfig(disable=True)
        return types.GenerateContentConfig(**options)

    @staticmethod
    def _build_tools(declarations: Sequence[FunctionDeclaration]) -> list[types.Tool] | None:
        if not declarations:
            return None
        functions = [
            types.FunctionDeclaration(
                name=str(item["name"]),
                description=str(item.get("description", "")),
                parameters_json_schema=dict(item.get("parameters") or {"type": "object", "properties": {}}),
            )
            for item in declarations
        ]
        return [types.Tool(function_declarations=functions)]

    @staticmethod
    def _build_contents(contents: Sequence[Content]) -> list[types.Content]:
        built: list[types.Content] = []
        for item in contents:
            parts: list[types.Part] = []
            for part in item.get("parts") or []:
                if "text" in part:
                    parts.append(types.Part(text=str(part["text"])))
                    continue
                inline = part.get("inlineData") or part.get("inline_data")
                if isinstance(inline, Mapping):
                    parts.append(
                        types.Part.from_bytes(
                            data=base64.b64decode(inline.get("data", "")),
                            mime_type=str(inline.get("mimeType") or inline.get("mime_type")),
                        )
                    )
            if parts:
                built.append(types.Content(role=str(item.get("role", "user")), parts=parts))
        return built


def _dump(raw: Any) -> Mapping[str, Any]:
    if isinstance(raw, Mapping):
        return raw
    return raw.model_dump(mode="json", by_alias=True, exclude_none=True)
