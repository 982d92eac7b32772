"""Shared result types for document tools."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Mapping, Protocol

from ..cancellation import CancellationToken
from ..errors import QuizsmithError

__all__ = ["ScrollHint", "ToolResult", "DocumentTool"]

ScrollKind = Literal["question", "text", "top"]


@dataclass(slots=True, frozen=True)
class ScrollHint:
    """Where the hosting editor should scroll after an edit."""

    type: ScrollKind
    number: int | None = None
    text: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.type}
        if self.number is not None:
            payload["number"] = self.number
        if self.text is not None:
            payload["text"] = self.text
        return payload


@dataclass(slots=True)
class ToolResult:
    """Outcome of one tool call.

    Attributes:
        success: Whether the tool completed successfully.
        message: Human-readable summary fed back to the model.
        markup: New document markup when the tool edited the document.
        output: Text output for read-only tools.
        scroll_hint: Optional editor scroll target after an edit.
        error: Error details if unsuccessful.
        metadata: Additional details (edit type, matching layer, fallbacks).
    """

    success: bool
    message: str = ""
    markup: str | None = None
    output: str | None = None
    scroll_hint: ScrollHint | None = None
    error: QuizsmithError | None = None
    duration_ms: float = 0.0
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def changed_document(self) -> bool:
        return self.success and self.markup is not None

    @classmethod
    def failure(cls, error: QuizsmithError, **metadata: Any) -> "ToolResult":
        parts = [error.message]
        diagnostic = getattr(error, "diagnostic", None)
        if diagnostic and diagnostic != error.message:
            parts = [diagnostic]
        if error.suggestion:
            parts.append(f"Suggestion: {error.suggestion}")
        return cls(success=False, message="\n".join(parts), error=error, metadata=dict(metadata))

    def to_dict(self) -> dict[str, Any]:
        if not self.success:
            result = self.error.to_dict() if self.error else {"error": "unknown", "message": self.message}
        else:
            result = {"message": self.message}
            if self.scroll_hint is not None:
                result["scroll_hint"] = self.scroll_hint.to_dict()
        if self.metadata:
            result["_metadata"] = dict(self.metadata)
        return result


class DocumentTool(Protocol):
    """A tool the model can call against the current document markup."""

    name: str
    declaration: Mapping[str, Any]

    async def run(
        self,
        document: str,
        arguments: Mapping[str, Any],
        *,
        cancel: CancellationToken | None = None,
    ) -> ToolResult:
        ...
