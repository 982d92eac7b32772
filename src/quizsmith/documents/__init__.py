"""Structural view over numbered question/answer markup."""

from .markup import strip_code_block_wrappers, strip_tags
from .question_parser import (
    QUESTION_FIELDS,
    ParsedQuestion,
    ParseResult,
    parse_questions,
    rebuild_document,
    renumber_questions,
    summarize_document,
    update_question_field,
)

__all__ = [
    "QUESTION_FIELDS",
    "ParsedQuestion",
    "ParseResult",
    "parse_questions",
    "rebuild_document",
    "renumber_questions",
    "summarize_document",
    "update_question_field",
    "strip_code_block_wrappers",
    "strip_tags",
]
