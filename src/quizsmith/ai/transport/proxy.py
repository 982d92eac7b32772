"""Transport for an HTTP proxy that speaks the Google response shape over event streams."""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Mapping

import httpx

from ..cancellation import CancellationToken, ensure_token, iterate_with_cancel
from ..errors import Cancelled, TransportError
from .types import GenerateRequest, ModelInfo, ResponseChunk, normalize_google_response

__all__ = ["ProxyTransport", "iter_event_stream"]

LOGGER = logging.getLogger(__name__)

_COMPLETIONS_PATH = "/v1/chat/completions"
_MODELS_PATH = "/v1/models"


class ProxyTransport:
    """POSTs Google-shaped requests to ``{base_url}/v1/chat/completions?response_format=google``."""

    supports_caching = False

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str | None = None,
        request_timeout: float | None = 90.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = client or self._build_client(self._base_url, api_key, request_timeout)
        self._owns_client = client is None

    @staticmethod
    def _build_client(base_url: str, api_key: str | None, request_timeout: float | None) -> httpx.AsyncClient:
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else None
        return httpx.AsyncClient(base_url=base_url, headers=headers, timeout=request_timeout)

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------
    async def stream_generate(
        self, request: GenerateRequest, *, cancel: CancellationToken | None = None
    ) -> AsyncIterator[ResponseChunk]:
        token = ensure_token(cancel)
        token.raise_if_cancelled()
        body = build_proxy_body(request, stream=True)
        try:
            async with self._client.stream(
                "POST", _COMPLETIONS_PATH, params={"response_format": "google"}, json=body
            ) as response:
                if response.status_code >= 400:
                    detail = (await response.aread()).decode("utf-8", errors="replace")
                    raise _proxy_error(response.status_code, detail)
                async for payload in iterate_with_cancel(iter_event_stream(response.aiter_lines()), token):
                    chunk = normalize_google_response(payload)
                    if not chunk.is_empty:
                        yield chunk
        except (Cancelled, TransportError):
            raise
        except httpx.HTTPError as exc:
            raise TransportError.from_exception(exc) from exc

    async def generate(
        self, request: GenerateRequest, *, cancel: CancellationToken | None = None
    ) -> ResponseChunk:
        token = ensure_token(cancel)
        body = build_proxy_body(request, stream=False)
        try:
            response = await token.run(
                self._client.post(_COMPLETIONS_PATH, params={"response_format": "google"}, json=body)
            )
        except (Cancelled, TransportError):
            raise
        except httpx.HTTPError as exc:
            raise TransportError.from_exception(exc) from exc
        if response.status_code >= 400:
            raise _proxy_error(response.status_code, response.text)
        try:
            payload = response.json()
        except ValueError as exc:
            raise TransportError(message=f"Proxy returned invalid JSON: {exc}", status_code=response.status_code) from exc
        return normalize_google_response(payload)

    async def list_models(self) -> AsyncIterator[ModelInfo]:
        try:
            response = await self._client.get(_MODELS_PATH)
        except httpx.HTTPError as exc:
            raise TransportError.from_exception(exc) from exc
        if response.status_code >= 400:
            raise _proxy_error(response.status_code, response.text)
        for item in response.json().get("data") or []:
            name = item.get("id") or item.get("name")
            if not name:
                continue
            yield ModelInfo(
                name=str(name),
                display_name=str(item.get("display_name") or name),
                description=str(item.get("description") or ""),
                input_token_limit=item.get("input_token_limit"),
                output_token_limit=item.get("output_token_limit"),
            )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def build_proxy_body(request: GenerateRequest, *, stream: bool) -> dict[str, Any]:
    """Translate a :class:`GenerateRequest` into the proxy's JSON body."""

    body: dict[str, Any] = {
        "model": request.model,
        "contents": list(request.contents),
        "stream": stream,
    }
    if request.system_instruction and not request.cached_content:
        body["systemInstruction"] = {"parts": [{"text": request.system_instruction}]}
    if request.tools and not request.cached_content:
        body["tools"] = [{"functionDeclarations": [dict(item) for item in request.tools]}]
    if request.cached_content:
        body["cachedContent"] = request.cached_content

    generation: dict[str, Any] = {}
    if request.temperature is not None:
        generation["temperature"] = request.temperature
    if request.max_output_tokens is not None:
        generation["maxOutputTokens"] = request.max_output_tokens
    if request.include_thoughts:
        generation["thinkingConfig"] = {"includeThoughts": True}
    if generation:
        body["generationConfig"] = generation
    return body


async def iter_event_stream(lines: AsyncIterator[str]) -> AsyncIterator[Mapping[str, Any]]:
    """Parse ``data:`` frames from an event stream into JSON payloads."""

    async for line in lines:
        line = line.strip()
        if not line.startswith("data:"):
            continue
        data = line[len("data:"):].strip()
        if not data or data == "[DONE]":
            continue
        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            LOGGER.debug("Skipping malformed event-stream frame: %.200s", data)
            continue
        if isinstance(payload, Mapping):
            yield payload


def _proxy_error(status: int, detail: str) -> TransportError:
    return TransportError(
        message=f"Proxy error {status}: {detail.strip()[:500]}",
        status_code=status,
    )
