"""Value types exchanged between the hosting application and the agent loop."""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Literal, Mapping, Sequence

from ..messages import ChatMessage, ImageAttachment

if TYPE_CHECKING:
    from ..errors import QuizsmithError
    from ..services.context_budget import ContextBudget
    from ..tools.base import ScrollHint

__all__ = [
    "AgentState",
    "ChatMessage",
    "DocumentAttachment",
    "ImageAttachment",
    "SelectionDescriptor",
    "TemplateDescriptor",
    "ToolCallRecord",
    "TurnInput",
    "TurnResult",
]


class AgentState(str, Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    STREAMING = "streaming"
    APPLYING_EDIT = "applying_edit"
    DONE = "done"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class DocumentAttachment:
    """A reference source document.

    ``native`` attachments are passed to the provider untouched as inline data;
    ``text`` attachments are token-counted and may be truncated.
    """

    name: str
    kind: Literal["native", "text"]
    text: str = ""
    data: bytes = b""
    mime_type: str = "text/plain"

    @classmethod
    def from_text(cls, name: str, text: str) -> "DocumentAttachment":
        return cls(name=name, kind="text", text=text)

    @classmethod
    def from_bytes(cls, name: str, data: bytes, mime_type: str) -> "DocumentAttachment":
        return cls(name=name, kind="native", data=data, mime_type=mime_type)

    def labelled_text(self) -> str:
        return f"[{self.name}]\n{self.text}"

    def to_part(self) -> dict[str, Any]:
        return {
            "inlineData": {
                "mimeType": self.mime_type,
                "data": base64.b64encode(self.data).decode("ascii"),
            }
        }


@dataclass(slots=True, frozen=True)
class SelectionDescriptor:
    text: str
    markup: str
    start_line: int
    end_line: int
    context_before: str | None = None
    context_after: str | None = None


@dataclass(slots=True, frozen=True)
class TemplateDescriptor:
    question_type: str
    markup_template: str


@dataclass(slots=True)
class TurnInput:
    """Everything the agent needs for one user turn."""

    message: str
    document_markup: str
    history: Sequence[ChatMessage] = ()
    attachments: Sequence[DocumentAttachment] = ()
    images: Sequence[ImageAttachment] = ()
    selection: SelectionDescriptor | None = None
    template: TemplateDescriptor | None = None


@dataclass(slots=True)
class ToolCallRecord:
    name: str
    arguments: Mapping[str, Any]
    success: bool
    message: str
    iteration: int
    duration_ms: float = 0.0
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TurnResult:
    """Outcome of one user turn.

    ``document_markup`` is the document after every edit that fully succeeded;
    it equals the input markup when nothing was applied.
    """

    status: Literal["done", "failed"]
    text: str
    document_markup: str
    document_changed: bool = False
    thinking: str = ""
    scroll_hint: "ScrollHint | None" = None
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    iterations: int = 0
    step_limit_reached: bool = False
    cancelled: bool = False
    error: "QuizsmithError | None" = None
    warnings: list["QuizsmithError"] = field(default_factory=list)
    messages: list[ChatMessage] = field(default_factory=list)
    budget: "ContextBudget | None" = None

    @property
    def ok(self) -> bool:
        return self.status == "done"
