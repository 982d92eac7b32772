"""The ``read_document`` tool."""

from __future__ import annotations

from typing import Any, Mapping

from ...documents.question_parser import parse_questions, summarize_document
from ..cancellation import CancellationToken
from .base import ToolResult
from .schema import READ_DOCUMENT_DECLARATION

__all__ = ["ReadDocumentTool"]


class ReadDocumentTool:
    """Outline of the parsed questions; never mutates the document."""

    name = "read_document"
    declaration = READ_DOCUMENT_DECLARATION

    async def run(
        self,
        document: str,
        arguments: Mapping[str, Any],
        *,
        cancel: CancellationToken | None = None,
    ) -> ToolResult:
        summary = summarize_document(parse_questions(document))
        return ToolResult(success=True, message="Read the document outline", output=summary)
