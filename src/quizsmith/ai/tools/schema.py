"""Function declarations advertised to the model, and argument validation."""

from __future__ import annotations

import copy
from typing import Any, Mapping

from jsonschema import Draft202012Validator

from ..errors import InvalidToolArgumentsError

__all__ = [
    "EDIT_TYPES",
    "EDIT_DOCUMENT_DECLARATION",
    "READ_DOCUMENT_DECLARATION",
    "validate_edit_arguments",
]

EDIT_TYPES: tuple[str, ...] = (
    "edit_question",
    "add_questions",
    "delete_question",
    "edit_section",
    "snippet_replace",
    "full_replace",
)

EDIT_DOCUMENT_DECLARATION: Mapping[str, Any] = {
    "name": "edit_document",
    "description": (
        "Edits the document. Choose edit_type: edit_question (question_number, field, new_content), "
        "add_questions (new_content, position), delete_question (question_number), edit_section "
        "(field preamble|postamble, new_content), snippet_replace (html_snippet_to_replace, "
        "replacement_html, instruction) or full_replace (full_document_html)."
    ),
    "parameters": {
        "type": "object",
        "properties": {
            "edit_type": {
                "type": "string",
                "enum": list(EDIT_TYPES),
                "description": "Which kind of edit to perform.",
            },
            "question_number": {
                "type": "integer",
                "description": "Number of the question to edit or delete.",
            },
            "field": {
                "type": "string",
                "enum": ["question_text", "answer", "reference", "full_question", "preamble", "postamble"],
                "description": "Part of the question (edit_question) or section (edit_section) to replace.",
            },
            "new_content": {
                "type": "string",
                "description": "Replacement text or HTML; for add_questions, one or more complete question blocks.",
            },
            "position": {
                "type": "string",
                "description": "Where add_questions inserts: 'end' (default), 'start' or 'after:N'.",
            },
            "full_document_html": {
                "type": "string",
                "description": "Complete new HTML for the whole document. An empty string clears it.",
            },
            "html_snippet_to_replace": {
                "type": "string",
                "description": "Exact HTML copied from the current document, including tags and spacing.",
            },
            "replacement_html": {
                "type": "string",
                "description": "HTML that replaces html_snippet_to_replace. An empty string deletes it.",
            },
            "instruction": {
                "type": "string",
                "description": "One sentence describing the intended edit, used to recover from snippet mismatches.",
            },
        },
    },
}

READ_DOCUMENT_DECLARATION: Mapping[str, Any] = {
    "name": "read_document",
    "description": "Returns an outline of the numbered questions in the current document without changing it.",
    "parameters": {"type": "object", "properties": {}},
}


def _validation_schema() -> dict[str, Any]:
    schema = copy.deepcopy(dict(EDIT_DOCUMENT_DECLARATION["parameters"]))
    # unknown edit_type values are inferred from the populated fields instead of rejected
    schema["properties"]["edit_type"].pop("enum", None)
    schema["properties"]["field"].pop("enum", None)
    return schema


_VALIDATOR = Draft202012Validator(_validation_schema())


def validate_edit_arguments(arguments: Mapping[str, Any]) -> dict[str, Any]:
    """Coerce loosely typed values and validate against the parameter schema."""

    coerced = {key: value for key, value in dict(arguments).items() if value is not None}
    number = coerced.get("question_number")
    if isinstance(number, str) and number.strip().isdigit():
        coerced["question_number"] = int(number.strip())
    elif isinstance(number, float) and number.is_integer():
        coerced["question_number"] = int(number)
    position = coerced.get("position")
    if isinstance(position, int) and not isinstance(position, bool):
        coerced["position"] = f"after:{position}"

    errors = sorted(_VALIDATOR.iter_errors(coerced), key=lambda err: list(err.path))
    if errors:
        messages = [
            f"{'.'.join(str(part) for part in error.path) or 'arguments'}: {error.message}" for error in errors
        ]
        raise InvalidToolArgumentsError(
            message="Invalid edit_document arguments: " + "; ".join(messages),
            details={"errors": messages},
        )
    return coerced
