"""Conversation history entries shared by the budget manager and the agent loop."""

from __future__ import annotations

import base64
from dataclasses import dataclass
from typing import Any, Literal, Sequence

from .transport.types import Content

__all__ = ["ChatMessage", "ImageAttachment", "Role"]

Role = Literal["user", "model", "system"]


@dataclass(slots=True, frozen=True)
class ImageAttachment:
    mime_type: str
    data: bytes

    def to_part(self) -> dict[str, Any]:
        return {"inlineData": {"mimeType": self.mime_type, "data": base64.b64encode(self.data).decode("ascii")}}


@dataclass(slots=True, frozen=True)
class ChatMessage:
    """One entry of the conversation history."""

    role: Role
    text: str
    images: tuple[ImageAttachment, ...] = ()
    thinking: str | None = None

    @classmethod
    def user(cls, text: str, *, images: Sequence[ImageAttachment] = ()) -> "ChatMessage":
        return cls(role="user", text=text, images=tuple(images))

    @classmethod
    def model(cls, text: str, *, thinking: str | None = None) -> "ChatMessage":
        return cls(role="model", text=text, thinking=thinking or None)

    @classmethod
    def system(cls, text: str) -> "ChatMessage":
        return cls(role="system", text=text)

    def to_content(self) -> Content:
        parts: list[dict[str, Any]] = [{"text": self.text}]
        parts.extend(image.to_part() for image in self.images)
        return {"role": self.role, "parts": parts}
