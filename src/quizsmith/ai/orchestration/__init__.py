"""Agent loop, tool execution and conversation sessions."""

from .agent_loop import MAX_AGENT_TURNS, AgentConfig, AgentLoop, StateCallback, TextCallback
from .session import ChatSession, TurnPolicy
from .tool_executor import ToolBatch, ToolExecutor, describe_function_calls, format_tool_results
from .types import (
    AgentState,
    ChatMessage,
    DocumentAttachment,
    ImageAttachment,
    SelectionDescriptor,
    TemplateDescriptor,
    ToolCallRecord,
    TurnInput,
    TurnResult,
)

__all__ = [
    "MAX_AGENT_TURNS",
    "AgentConfig",
    "AgentLoop",
    "StateCallback",
    "TextCallback",
    "ChatSession",
    "TurnPolicy",
    "ToolBatch",
    "ToolExecutor",
    "describe_function_calls",
    "format_tool_results",
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
