"""Tool execution and result formatting."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Mapping, Sequence

from ..cancellation import CancellationToken
from ..errors import Cancelled, ErrorCode, QuizsmithError
from ..tools.base import DocumentTool, ScrollHint, ToolResult
from ..transport.types import FunctionCall
from .types import ToolCallRecord

__all__ = [
    "ToolBatch",
    "ToolExecutor",
    "describe_function_calls",
    "format_tool_results",
]

LOGGER = logging.getLogger(__name__)

RETRY_HINT = "Please review the error and try again with corrected parameters."


@dataclass(slots=True)
class ToolBatch:
    """Results of every call in one model response, in call order."""

    document: str
    results: list[ToolResult] = field(default_factory=list)
    records: list[ToolCallRecord] = field(default_factory=list)
    scroll_hint: ScrollHint | None = None

    @property
    def document_changed(self) -> bool:
        return any(result.changed_document for result in self.results)


class ToolExecutor:
    """Runs function calls sequentially against the live document.

    Each call sees the markup produced by the calls before it. A failed call
    leaves the document as it was and the remaining calls still run.
    """

    def __init__(self, tools: Sequence[DocumentTool]) -> None:
        self._tools: dict[str, DocumentTool] = {tool.name: tool for tool in tools}

    @property
    def declarations(self) -> list[Mapping[str, object]]:
        return [tool.declaration for tool in self._tools.values()]

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    async def execute(
        self,
        calls: Sequence[FunctionCall],
        document: str,
        *,
        iteration: int,
        cancel: CancellationToken | None = None,
    ) -> ToolBatch:
        batch = ToolBatch(document=document)
        for call in calls:
            if cancel is not None:
                cancel.raise_if_cancelled()
            result = await self._execute_one(call, batch.document, cancel=cancel)
            if result.changed_document and result.markup is not None:
                batch.document = result.markup
            if result.success and result.scroll_hint is not None:
                batch.scroll_hint = result.scroll_hint
            batch.results.append(result)
            batch.records.append(
                ToolCallRecord(
                    name=call.name,
                    arguments=dict(call.args),
                    success=result.success,
                    message=result.message,
                    iteration=iteration,
                    duration_ms=result.duration_ms,
                    metadata=dict(result.metadata),
                )
            )
        return batch

    async def _execute_one(
        self,
        call: FunctionCall,
        document: str,
        *,
        cancel: CancellationToken | None,
    ) -> ToolResult:
        tool = self._tools.get(call.name)
        if tool is None:
            LOGGER.warning("Model requested unknown tool %r", call.name)
            return ToolResult.failure(
                QuizsmithError(
                    error_code=ErrorCode.UNKNOWN_TOOL,
                    message=f"Tool '{call.name}' is not available",
                    suggestion=f"Use one of: {', '.join(sorted(self._tools))}",
                )
            )
        started = time.perf_counter()
        try:
            result = await tool.run(document, call.args, cancel=cancel)
        except Cancelled:
            raise
        except QuizsmithError as exc:
            result = ToolResult.failure(exc)
        if not result.duration_ms:
            result.duration_ms = (time.perf_counter() - started) * 1000.0
        LOGGER.debug(
            "Tool %s finished (success=%s, %.1fms): %s",
            call.name,
            result.success,
            result.duration_ms,
            result.message,
        )
        return result


def describe_function_calls(calls: Sequence[FunctionCall], text: str = "") -> str:
    """Text of the synthetic model turn that records the requested calls."""

    lines = [text.strip()] if text.strip() else []
    for call in calls:
        arguments = json.dumps(dict(call.args), ensure_ascii=False, sort_keys=True)
        lines.append(f"[Tool Call] {call.name}({arguments})")
    return "\n".join(lines)


def format_tool_results(results: Sequence[ToolResult], *, iteration: int, max_turns: int) -> str:
    """Text of the synthetic user turn that feeds tool results back to the model."""

    parts: list[str] = []
    for result in results:
        if result.output:
            parts.append(f"[Tool Result]\n{result.output}")
        if result.success and result.markup is not None:
            parts.append(f"[Edit Result] ✅ Edit applied successfully: {result.message}")
        elif not result.success:
            parts.append(f"[Edit Result] ❌ Edit failed: {result.message}")
            parts.append(RETRY_HINT)
    parts.append(f"(Agent step {iteration}/{max_turns})")
    return "\n\n".join(parts)
