"""Document tools exposed to the model."""

from .base import DocumentTool, ScrollHint, ToolResult
from .edit_document import EditDocumentTool, infer_edit_type
from .edit_matching import EditMatcher, LayerAttempt, MatchResult, normalize_text
from .llm_edit_fixer import LLMEditFixer
from .read_document import ReadDocumentTool
from .schema import EDIT_DOCUMENT_DECLARATION, EDIT_TYPES, READ_DOCUMENT_DECLARATION

__all__ = [
    "DocumentTool",
    "ScrollHint",
    "ToolResult",
    "EditDocumentTool",
    "ReadDocumentTool",
    "EditMatcher",
    "LayerAttempt",
    "MatchResult",
    "LLMEditFixer",
    "normalize_text",
    "infer_edit_type",
    "EDIT_TYPES",
    "EDIT_DOCUMENT_DECLARATION",
    "READ_DOCUMENT_DECLARATION",
]
