"""Transport for OpenAI-compatible chat completion endpoints."""

from __future__ import annotations

import inspect
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Mapping, Sequence

import httpx
from openai import APIError, AsyncOpenAI

from ..cancellation import CancellationToken, ensure_token, iterate_with_cancel
from ..errors import Cancelled, TransportError
from ..tokens import TiktokenCounter, TokenCounterRegistry
from .types import (
    Content,
    FunctionCall,
    FunctionDeclaration,
    GenerateRequest,
    ModelInfo,
    ResponseChunk,
    UsageMetadata,
)

__all__ = ["OpenAITransport", "contents_to_messages"]

LOGGER = logging.getLogger(__name__)

_ROLE_MAP = {"user": "user", "model": "assistant", "system": "system"}


class OpenAITransport:
    """Streams chat completions and maps them to :class:`ResponseChunk` objects."""

    supports_caching = False

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str | None = None,
        organization: str | None = None,
        request_timeout: float | None = 90.0,
        default_headers: Mapping[str, str] | None = None,
        client: Any | None = None,
        token_registry: TokenCounterRegistry | None = None,
    ) -> None:
        self._client = client or AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            organization=organization,
            timeout=request_timeout,
            default_headers=dict(default_headers) if default_headers else None,
            # retries are owned by the agent's retry policy
            max_retries=0,
        )
        self._token_registry = token_registry or TokenCounterRegistry()

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------
    async def stream_generate(
        self, request: GenerateRequest, *, cancel: CancellationToken | None = None
    ) -> AsyncIterator[ResponseChunk]:
        token = ensure_token(cancel)
        token.raise_if_cancelled()
        payload = self._build_chat_payload(request)
        payload["stream_options"] = {"include_usage": True}
        LOGGER.debug("Starting streamed chat completion via %s with %s message(s)", request.model, len(payload["messages"]))
        try:
            async with self._client.chat.completions.stream(**payload) as stream:
                async for event in iterate_with_cancel(stream, token):
                    chunk = self._normalize_stream_event(event)
                    if chunk is not None:
                        yield chunk
                completion = await token.run(stream.get_final_completion())
        except (Cancelled, TransportError):
            raise
        except (APIError, httpx.HTTPError) as exc:
            raise TransportError.from_exception(exc) from exc
        final = self._completion_to_chunk(completion, include_text=False, include_calls=False)
        if not final.is_empty:
            yield final

    async def generate(
        self, request: GenerateRequest, *, cancel: CancellationToken | None = None
    ) -> ResponseChunk:
        token = ensure_token(cancel)
        payload = self._build_chat_payload(request)
        try:
            completion = await token.run(self._client.chat.completions.create(**payload))
        except (Cancelled, TransportError):
            raise
        except (APIError, httpx.HTTPError) as exc:
            raise TransportError.from_exception(exc) from exc
        return self._completion_to_chunk(completion, include_text=True, include_calls=True)

    async def list_models(self) -> AsyncIterator[ModelInfo]:
        try:
            response = await self._client.models.list()
        except (APIError, httpx.HTTPError) as exc:
            raise TransportError.from_exception(exc) from exc
        for item in response.data:
            model_id = getattr(item, "id", None)
            if model_id:
                yield ModelInfo(name=str(model_id), display_name=str(model_id))

    async def count_tokens(self, model: str, contents: Sequence[Content]) -> int:
        counter = self._get_token_counter(model)
        total = 0
        for item in contents:
            for part in item.get("parts") or []:
                text = part.get("text")
                if isinstance(text, str):
                    total += counter.count(text)
        return total

    async def aclose(self) -> None:
        close = getattr(self._client, "close", None)
        if close is None:
            return
        result = close()
        if inspect.isawaitable(result):
            await result

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _get_token_counter(self, model: str):
        if not self._token_registry.has(model):
            self._token_registry.register(model, TiktokenCounter(model))
        return self._token_registry.get(model)

    def _build_chat_payload(self, request: GenerateRequest) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": request.model,
            "messages": contents_to_messages(request.contents, request.system_instruction),
        }
        tools = _declarations_to_tools(request.tools)
        if tools:
            payload["tools"] = tools
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.max_output_tokens is not None:
            payload["max_completion_tokens"] = request.max_output_tokens
        return payload

    @staticmethod
    def _normalize_stream_event(event: Any) -> ResponseChunk | None:
        event_type = getattr(event, "type", None)
        if event_type == "content.delta":
            delta_text = getattr(event, "delta", None)
            if delta_text:
                return ResponseChunk(text=str(delta_text))
        elif event_type == "tool_calls.function.arguments.done":
            name = getattr(event, "name", None)
            if name:
                call = FunctionCall(name=str(name), args=_parse_arguments(getattr(event, "arguments", None)))
                return ResponseChunk(function_calls=(call,))
        return None

    @staticmethod
    def _completion_to_chunk(completion: Any, *, include_text: bool, include_calls: bool) -> ResponseChunk:
        choices = getattr(completion, "choices", None) or []
        text = ""
        calls: list[FunctionCall] = []
        finish_reason = None
        if choices:
            choice = choices[0]
            finish_reason = getattr(choice, "finish_reason", None)
            message = getattr(choice, "message", None)
            if include_text:
                text = getattr(message, "content", None) or ""
            tool_calls = (getattr(message, "tool_calls", None) or []) if include_calls else []
            for tool_call in tool_calls:
                function = getattr(tool_call, "function", None)
                if function is None:
                    continue
                calls.append(
                    FunctionCall(
                        name=str(function.name),
                        args=_parse_arguments(getattr(function, "arguments", None)),
                        id=getattr(tool_call, "id", None),
                    )
                )
        usage = None
        raw_usage = getattr(completion, "usage", None)
        if raw_usage is not None:
            details = getattr(raw_usage, "prompt_tokens_details", None)
            usage = UsageMetadata(
                prompt_tokens=int(getattr(raw_usage, "prompt_tokens", 0) or 0),
                completion_tokens=int(getattr(raw_usage, "completion_tokens", 0) or 0),
                total_tokens=int(getattr(raw_usage, "total_tokens", 0) or 0),
                cached_tokens=int(getattr(details, "cached_tokens", 0) or 0),
            )
        return ResponseChunk(
            text=text,
            function_calls=tuple(calls),
            usage=usage,
            finish_reason=str(finish_reason) if finish_reason else None,
        )


def contents_to_messages(contents: Sequence[Content], system_instruction: str | None = None) -> List[Dict[str, Any]]:
    """Convert Google-shaped contents into chat completion messages."""

    messages: List[Dict[str, Any]] = []
    if system_instruction:
        messages.append({"role": "system", "content": system_instruction})
    for item in contents:
        role = _ROLE_MAP.get(str(item.get("role", "user")), "user")
        texts: list[str] = []
        media: list[Dict[str, Any]] = []
        for part in item.get("parts") or []:
            if "text" in part:
                texts.append(str(part["text"]))
                continue
            inline = part.get("inlineData") or part.get("inline_data")
            if not isinstance(inline, Mapping):
                continue
            mime_type = str(inline.get("mimeType") or inline.get("mime_type") or "application/octet-stream")
            data_url = f"data:{mime_type};base64,{inline.get('data', '')}"
            if mime_type.startswith("image/"):
                media.append({"type": "image_url", "image_url": {"url": data_url}})
            else:
                media.append({"type": "file", "file": {"filename": f"attachment.{mime_type.split('/')[-1]}", "file_data": data_url}})
        if media and role == "user":
            content: list[Dict[str, Any]] = [{"type": "text", "text": text} for text in texts]
            messages.append({"role": role, "content": content + media})
        else:
            messages.append({"role": role, "content": "\n\n".join(texts)})
    return messages


def _declarations_to_tools(declarations: Sequence[FunctionDeclaration]) -> list[Dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {
                "name": str(item["name"]),
                "description": str(item.get("description", "")),
                "parameters": dict(item.get("parameters") or {"type": "object", "properties": {}}),
            },
        }
        for item in declarations
    ]


def _parse_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, Mapping):
        return dict(raw)
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        LOGGER.warning("Tool call arguments were not valid JSON: %.200s", raw)
        return {}
    return parsed if isinstance(parsed, dict) else {}
