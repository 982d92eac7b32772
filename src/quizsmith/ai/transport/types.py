"""Canonical request/response shapes shared by every transport."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

__all__ = [
    "Content",
    "FunctionCall",
    "FunctionDeclaration",
    "GenerateRequest",
    "ModelInfo",
    "ResponseChunk",
    "UsageMetadata",
    "normalize_google_response",
    "text_content",
]

LOGGER = logging.getLogger(__name__)

# ``{"role": "user" | "model", "parts": [{"text": ...} | {"inlineData": {...}}]}``
Content = dict[str, Any]
# ``{"name": ..., "description": ..., "parameters": <JSON schema>}``
FunctionDeclaration = Mapping[str, Any]


def text_content(role: str, text: str) -> Content:
    return {"role": role, "parts": [{"text": text}]}


@dataclass(slots=True)
class GenerateRequest:
    """Backend-neutral description of one model call."""

    model: str
    contents: list[Content]
    system_instruction: str | None = None
    tools: Sequence[FunctionDeclaration] = ()
    cached_content: str | None = None
    temperature: float | None = None
    max_output_tokens: int | None = None
    include_thoughts: bool = False


@dataclass(slots=True, frozen=True)
class FunctionCall:
    name: str
    args: Mapping[str, Any] = field(default_factory=dict)
    id: str | None = None


@dataclass(slots=True, frozen=True)
class UsageMetadata:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cached_tokens: int = 0


@dataclass(slots=True, frozen=True)
class ResponseChunk:
    """One normalized piece of model output.

    ``text`` is the concatenation of the non-thought text parts; thought parts
    are collected separately in ``thinking``.
    """

    text: str = ""
    function_calls: tuple[FunctionCall, ...] = ()
    usage: UsageMetadata | None = None
    finish_reason: str | None = None
    thinking: str = ""

    @property
    def is_empty(self) -> bool:
        return not (self.text or self.function_calls or self.usage or self.finish_reason or self.thinking)


@dataclass(slots=True, frozen=True)
class ModelInfo:
    name: str
    display_name: str = ""
    description: str = ""
    input_token_limit: int | None = None
    output_token_limit: int | None = None


def normalize_google_response(payload: Mapping[str, Any]) -> ResponseChunk:
    """Map a Google-style ``GenerateContentResponse`` payload to a :class:`ResponseChunk`.

    Accepts camelCase keys (wire format and SDK objects dumped by alias) and
    snake_case keys. A ``{"response": {...}}`` envelope is unwrapped first.
    """

    envelope = payload.get("response")
    if isinstance(envelope, Mapping):
        payload = envelope

    text_parts: list[str] = []
    thought_parts: list[str] = []
    calls: list[FunctionCall] = []
    finish_reason: str | None = None

    candidates = payload.get("candidates") or []
    if candidates:
        candidate = candidates[0] or {}
        finish = _get(candidate, "finishReason", "finish_reason")
        finish_reason = str(finish) if finish else None
        content = candidate.get("content") or {}
        for part in content.get("parts") or []:
            if not isinstance(part, Mapping):
                continue
            call = _get(part, "functionCall", "function_call")
            if isinstance(call, Mapping) and call.get("name"):
                calls.append(
                    FunctionCall(
                        name=str(call["name"]),
                        args=dict(call.get("args") or {}),
                        id=call.get("id"),
                    )
                )
                continue
            text = part.get("text")
            if not isinstance(text, str) or not text:
                continue
            if part.get("thought"):
                thought_parts.append(text)
            else:
                text_parts.append(text)

    return ResponseChunk(
        text="".join(text_parts),
        function_calls=tuple(calls),
        usage=_normalize_usage(_get(payload, "usageMetadata", "usage_metadata")),
        finish_reason=finish_reason,
        thinking="".join(thought_parts),
    )


def _normalize_usage(raw: Any) -> UsageMetadata | None:
    if not isinstance(raw, Mapping):
        return None
    prompt = int(_get(raw, "promptTokenCount", "prompt_token_count") or 0)
    completion = int(_get(raw, "candidatesTokenCount", "candidates_token_count") or 0)
    total = int(_get(raw, "totalTokenCount", "total_token_count") or prompt + completion)
    cached = int(_get(raw, "cachedContentTokenCount", "cached_content_token_count") or 0)
    return UsageMetadata(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total, cached_tokens=cached)


def _get(mapping: Mapping[str, Any], camel: str, snake: str) -> Any:
    value = mapping.get(camel)
    if value is None:
        value = mapping.get(snake)
    return value
