"""The ``edit_document`` tool: structural and snippet edits over question markup.

Every variant is all-or-nothing: it either returns complete new markup or a
failure, never a partially rewritten document.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import replace
from typing import Any, Mapping

from ...documents.markup import strip_code_block_wrappers, strip_tags
from ...documents.question_parser import (
    QUESTION_FIELDS,
    ParsedQuestion,
    ParseResult,
    parse_questions,
    rebuild_document,
    renumber_questions,
    update_question_field,
)
from ..cancellation import CancellationToken
from ..errors import (
    Cancelled,
    ErrorCode,
    InvalidToolArgumentsError,
    QuizsmithError,
    StructuralParseError,
)
from .base import ScrollHint, ToolResult
from .edit_matching import EditMatcher
from .schema import EDIT_DOCUMENT_DECLARATION, EDIT_TYPES, validate_edit_arguments

__all__ = ["EditDocumentTool", "infer_edit_type"]

LOGGER = logging.getLogger(__name__)

SECTION_FIELDS: tuple[str, ...] = ("preamble", "postamble")
_SCROLL_TEXT_CHARS = 80
_AFTER_RE = re.compile(r"^\s*(?:after\s*[:\s]\s*)?(\d+)\s*$", re.IGNORECASE)


def infer_edit_type(arguments: Mapping[str, Any]) -> str:
    """Return the explicit ``edit_type`` or infer it from the populated fields."""

    explicit = str(arguments.get("edit_type") or "").strip().lower()
    if explicit in EDIT_TYPES:
        return explicit
    if arguments.get("html_snippet_to_replace"):
        return "snippet_replace"
    if "full_document_html" in arguments:
        return "full_replace"
    field = arguments.get("field")
    has_number = arguments.get("question_number") is not None
    if field in SECTION_FIELDS and "new_content" in arguments:
        return "edit_section"
    if has_number and field:
        return "edit_question"
    if arguments.get("new_content") and not has_number:
        return "add_questions"
    if has_number:
        return "delete_question"
    raise InvalidToolArgumentsError(
        message="Could not determine which edit to perform from the arguments",
        suggestion=f"Set edit_type to one of: {', '.join(EDIT_TYPES)}",
    )


class EditDocumentTool:
    """Applies one :data:`EDIT_TYPES` variant to the document markup."""

    name = "edit_document"
    declaration = EDIT_DOCUMENT_DECLARATION

    def __init__(self, matcher: EditMatcher | None = None) -> None:
        self._matcher = matcher or EditMatcher()

    @property
    def matcher(self) -> EditMatcher:
        return self._matcher

    async def run(
        self,
        document: str,
        arguments: Mapping[str, Any],
        *,
        cancel: CancellationToken | None = None,
    ) -> ToolResult:
        started = time.perf_counter()
        edit_type = "unknown"
        try:
            args = validate_edit_arguments(arguments)
            edit_type = infer_edit_type(args)
            handler = getattr(self, f"_{edit_type}")
            result: ToolResult = await handler(document, args, cancel)
        except Cancelled:
            raise
        except QuizsmithError as exc:
            LOGGER.info("edit_document (%s) failed: %s", edit_type, exc)
            result = ToolResult.failure(exc, edit_type=edit_type)
        result.duration_ms = (time.perf_counter() - started) * 1000.0
        result.metadata.setdefault("edit_type", edit_type)
        return result

    # ------------------------------------------------------------------
    # Question-level variants
    # ------------------------------------------------------------------
    async def _edit_question(self, document: str, args: dict[str, Any], cancel: CancellationToken | None) -> ToolResult:
        number = _require(args, "question_number", "edit_question")
        field = _require(args, "field", "edit_question")
        new_content = _require(args, "new_content", "edit_question")
        if field not in QUESTION_FIELDS:
            raise InvalidToolArgumentsError(
                message=f"Unknown field {field!r} for edit_question",
                suggestion=f"Use one of: {', '.join(QUESTION_FIELDS)}",
            )
        parsed = _parse_structured(document, "edit_question")
        question = _find_question(parsed, number)

        metadata: dict[str, Any] = {}
        if field == "full_question":
            new_content = _keep_trailing_whitespace(question.full_markup, new_content)
        updated = update_question_field(question, field, new_content)
        if updated is None:
            fallback = _fallback_full_question(question, field, new_content)
            if fallback is None:
                raise QuizsmithError(
                    error_code=ErrorCode.FIELD_NOT_FOUND,
                    message=f"Could not locate the {field} of question {number} in its markup",
                    suggestion="Retry with field 'full_question' and the complete question HTML",
                )
            updated = update_question_field(question, "full_question", fallback)
            metadata["fallback"] = "full_question"
        assert updated is not None

        blocks = [updated if item is question else item for item in parsed.questions]
        markup = rebuild_document(document, parsed, blocks)
        label = field.replace("_", " ")
        return ToolResult(
            success=True,
            message=f"Updated {label} of question {number}",
            markup=markup,
            scroll_hint=ScrollHint(type="question", number=number),
            metadata=metadata,
        )

    async def _add_questions(self, document: str, args: dict[str, Any], cancel: CancellationToken | None) -> ToolResult:
        new_content = strip_code_block_wrappers(_require(args, "new_content", "add_questions"))
        parsed = parse_questions(document)
        incoming = parse_questions(new_content)
        where, after = _parse_position(args.get("position"))

        if not incoming.questions:
            return self._insert_raw(document, parsed, new_content, where, after)

        if not parsed.questions:
            # no existing blocks: place the content, then number what is there
            combined = _splice_raw(document, new_content, len(document.rstrip()) if where != "start" else 0)
            return _renumbered_result(combined, "Added question(s) to the document")

        if where == "after" and parsed.find(after) is None:
            raise _question_not_found(parsed, after)

        separator = _block_separator(parsed, document)
        new_blocks = _incoming_blocks(incoming, separator)
        existing = list(parsed.questions)
        if where == "start":
            index = 0
        elif where == "after":
            index = next(i for i, item in enumerate(existing) if item.number == after) + 1
        else:
            index = len(existing)
        blocks = existing[:index] + new_blocks + existing[index:]
        blocks = _ensure_separated(blocks, separator)
        blocks = renumber_questions(blocks)
        markup = rebuild_document(document, parsed, blocks)
        first_number = index + 1
        return ToolResult(
            success=True,
            message=f"Added {len(new_blocks)} question(s) starting at question {first_number}; questions renumbered",
            markup=markup,
            scroll_hint=ScrollHint(type="question", number=first_number),
            metadata={"added": len(new_blocks)},
        )

    def _insert_raw(
        self, document: str, parsed: ParseResult, content: str, where: str, after: int | None
    ) -> ToolResult:
        """Insert content that has no question headers, leaving existing numbering alone."""

        if not parsed.questions:
            offset = 0 if where == "start" else len(document.rstrip())
        elif where == "start":
            offset = parsed.questions[0].start_offset
        elif where == "after":
            target = parsed.find(after) if after is not None else None
            if target is None:
                raise _question_not_found(parsed, after)
            offset = target.end_offset
        else:
            offset = parsed.questions[-1].end_offset
        markup = _splice_raw(document, content, offset)
        return ToolResult(
            success=True,
            message="Inserted content without question headers; existing numbering unchanged",
            markup=markup,
            scroll_hint=ScrollHint(type="text", text=_scroll_text(content)),
            metadata={"fallback": "raw_insert"},
        )

    async def _delete_question(self, document: str, args: dict[str, Any], cancel: CancellationToken | None) -> ToolResult:
        number = _require(args, "question_number", "delete_question")
        parsed = _parse_structured(document, "delete_question")
        question = _find_question(parsed, number)
        remaining = [item for item in parsed.questions if item is not question]
        if remaining and question is parsed.questions[-1]:
            last = remaining[-1]
            remaining[-1] = replace(last, full_markup=last.full_markup.rstrip())
        markup = rebuild_document(document, parsed, renumber_questions(remaining))
        hint = ScrollHint(type="question", number=min(number, len(remaining))) if remaining else ScrollHint(type="top")
        return ToolResult(
            success=True,
            message=f"Deleted question {number}; {len(remaining)} question(s) remain and were renumbered",
            markup=markup,
            scroll_hint=hint,
        )

    async def _edit_section(self, document: str, args: dict[str, Any], cancel: CancellationToken | None) -> ToolResult:
        field = _require(args, "field", "edit_section")
        new_content = _require(args, "new_content", "edit_section")
        if field not in SECTION_FIELDS:
            raise InvalidToolArgumentsError(
                message=f"Unknown section {field!r}",
                suggestion="Use field 'preamble' or 'postamble'",
            )
        parsed = _parse_structured(document, "edit_section")
        blocks = list(parsed.questions)
        separator = _block_separator(parsed, document)
        if field == "preamble":
            preamble = new_content
            if preamble.strip() and not preamble[-1:].isspace():
                preamble += separator
            markup = preamble + "".join(block.full_markup for block in blocks) + parsed.postamble
        else:
            body = "".join(block.full_markup for block in blocks)
            tail = separator + new_content if new_content.strip() else ""
            trailing = "\n" if document.endswith("\n") else ""
            markup = parsed.preamble + body + tail + trailing
        return ToolResult(
            success=True,
            message=f"Replaced the document {field}",
            markup=markup,
            scroll_hint=ScrollHint(type="top"),
        )

    # ------------------------------------------------------------------
    # Free-form variants
    # ------------------------------------------------------------------
    async def _snippet_replace(self, document: str, args: dict[str, Any], cancel: CancellationToken | None) -> ToolResult:
        snippet = _require(args, "html_snippet_to_replace", "snippet_replace")
        replacement = args.get("replacement_html")
        if replacement is None:
            raise InvalidToolArgumentsError(
                message="snippet_replace requires replacement_html",
                suggestion="Provide replacement_html, or an empty string to delete the snippet",
            )
        outcome = await self._matcher.replace(
            document,
            snippet,
            replacement,
            instruction=args.get("instruction"),
            cancel=cancel,
        )
        text = _scroll_text(replacement)
        return ToolResult(
            success=True,
            message="Replaced the snippet" if replacement else "Deleted the snippet",
            markup=outcome.markup,
            scroll_hint=ScrollHint(type="text", text=text) if text else ScrollHint(type="top"),
            metadata={"layer": outcome.layer},
        )

    async def _full_replace(self, document: str, args: dict[str, Any], cancel: CancellationToken | None) -> ToolResult:
        markup = strip_code_block_wrappers(_require(args, "full_document_html", "full_replace"))
        return ToolResult(
            success=True,
            message="Replaced the whole document" if markup else "Cleared the document",
            markup=markup,
            scroll_hint=ScrollHint(type="top"),
        )


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------


def _require(args: Mapping[str, Any], key: str, edit_type: str) -> Any:
    if key not in args:
        raise InvalidToolArgumentsError(
            message=f"{edit_type} requires '{key}'",
            details={"missing": key},
        )
    return args[key]


def _parse_structured(document: str, edit_type: str) -> ParseResult:
    parsed = parse_questions(document)
    if not parsed.questions:
        raise StructuralParseError(
            message=f"{edit_type} needs numbered question blocks, but the document has none",
        )
    return parsed


def _question_not_found(parsed: ParseResult, number: int | None) -> QuizsmithError:
    available = [item.number for item in parsed.questions]
    return QuizsmithError(
        error_code=ErrorCode.QUESTION_NOT_FOUND,
        message=f"Question {number} does not exist",
        details={"available": available},
        suggestion="Call read_document to see the current question numbers",
    )


def _find_question(parsed: ParseResult, number: int) -> ParsedQuestion:
    question = parsed.find(number)
    if question is None:
        raise _question_not_found(parsed, number)
    return question


def _fallback_full_question(question: ParsedQuestion, field: str, new_content: str) -> str | None:
    """Build full-question markup that adds a missing answer or reference line."""

    if field == "answer" and not question.answer_text:
        header = question.header_markup
        return header + f"<p><strong>{new_content}</strong></p>" + question.body_markup
    if field == "reference" and not question.reference:
        core = question.full_markup.rstrip()
        trailing = question.full_markup[len(core):]
        return core + f"<p><em>Reference: {new_content}</em></p>" + trailing
    return None


def _keep_trailing_whitespace(original: str, new_markup: str) -> str:
    trailing = original[len(original.rstrip()):]
    return new_markup.rstrip() + trailing


def _parse_position(position: Any) -> tuple[str, int | None]:
    if position is None:
        return "end", None
    text = str(position).strip().lower()
    if text in ("", "end", "bottom", "last"):
        return "end", None
    if text in ("start", "beginning", "top", "first"):
        return "start", None
    match = _AFTER_RE.match(text)
    if match:
        return "after", int(match.group(1))
    raise InvalidToolArgumentsError(
        message=f"Unrecognized position {position!r}",
        suggestion="Use 'end', 'start' or 'after:N'",
    )


def _block_separator(parsed: ParseResult, document: str) -> str:
    for block in parsed.questions[:-1]:
        trailing = block.full_markup[len(block.full_markup.rstrip()):]
        if trailing:
            return trailing
    return "\n" if "\n" in document else ""


def _incoming_blocks(incoming: ParseResult, separator: str) -> list[ParsedQuestion]:
    blocks = list(incoming.questions)
    lead = incoming.preamble.strip()
    if lead:
        first = blocks[0]
        blocks[0] = replace(first, full_markup=lead + separator + first.full_markup)
    return blocks


def _ensure_separated(blocks: list[ParsedQuestion], separator: str) -> list[ParsedQuestion]:
    result: list[ParsedQuestion] = []
    last_index = len(blocks) - 1
    for index, block in enumerate(blocks):
        markup = block.full_markup
        if index < last_index and separator and not markup[-1:].isspace():
            markup += separator
        elif index == last_index:
            markup = markup.rstrip()
        result.append(block if markup == block.full_markup else replace(block, full_markup=markup))
    return result


def _splice_raw(document: str, content: str, offset: int) -> str:
    before, after = document[:offset], document[offset:]
    separator = "\n" if "\n" in document or "\n" in content else ""
    if before and not before[-1:].isspace() and separator:
        content = separator + content
    if after.strip() and not content[-1:].isspace() and separator:
        content += separator
    return before + content + after


def _renumbered_result(markup: str, message: str) -> ToolResult:
    parsed = parse_questions(markup)
    blocks = renumber_questions(parsed.questions)
    rebuilt = rebuild_document(markup, parsed, blocks)
    number = 1 if blocks else None
    hint = ScrollHint(type="question", number=number) if number else ScrollHint(type="top")
    return ToolResult(success=True, message=message, markup=rebuilt, scroll_hint=hint)


def _scroll_text(markup: str) -> str:
    return strip_tags(markup)[:_SCROLL_TEXT_CHARS]
