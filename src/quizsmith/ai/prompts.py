"""Prompt text for the chat agent and the snippet fixer."""

from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from .orchestration.types import SelectionDescriptor, TemplateDescriptor

__all__ = [
    "FIXER_NO_MATCH",
    "FIXER_SYSTEM_PROMPT",
    "base_system_instruction",
    "document_state_block",
    "fixer_user_prompt",
    "selection_block",
    "source_documents_block",
    "step_limit_notice",
    "template_block",
    "user_prompt",
]

FIXER_NO_MATCH = "NO_MATCH"

FIXER_SYSTEM_PROMPT = f"""You repair failed search-and-replace operations on an HTML document.

You receive an INSTRUCTION describing the intended edit, a FAILED SEARCH STRING that was not found, the ERROR that was reported, and the FULL DOCUMENT HTML.

Return ONLY the text from the document that the search string was meant to match.
- The returned text must be a verbatim substring of the document HTML.
- Keep tags, attributes, whitespace and entities exactly as they appear in the document.
- Do not add explanations, quotes or code fences.
- If nothing in the document plausibly matches, reply with exactly: {FIXER_NO_MATCH}"""

_EDITING_RULES = """## Document format
- The document is HTML. Each question header is a paragraph with bold numbered text, for example <p><strong>1: What is the capital of France?</strong></p>.
- The answer follows in its own bold paragraph (<p><strong>Paris</strong></p>) or, for multiple choice, as the bold item of a list.
- References are italic paragraphs: <p><em>Reference: Chapter 2</em></p>.
- Chat replies use Markdown; document content always uses HTML.

## Editing the document
Always change the document through the edit_document tool. Pick the narrowest edit_type that does the job:
1. edit_question: question_number + field (question_text, answer, reference, full_question) + new_content.
2. add_questions: new_content with one or more question blocks; position is "end", "start" or "after:N". Questions are renumbered automatically.
3. delete_question: question_number. Remaining questions are renumbered automatically.
4. edit_section: field "preamble" (content before the first question) or "postamble" (content after the last) + new_content.
5. snippet_replace: html_snippet_to_replace copied EXACTLY from the document + replacement_html (empty string deletes). Add a short instruction describing the edit.
6. full_replace: full_document_html with the complete new document (empty string clears it). Use this for large restructuring or when a snippet cannot be matched.
Call read_document to get an outline of the current questions when you need to plan.

## Working style
- Say briefly what you are about to change before calling a tool.
- After the edits, summarize what changed and why.
- If a tool reports a failure, read the message and retry with corrected parameters or a coarser edit_type."""


def base_system_instruction(*, has_source_documents: bool) -> str:
    """Static instruction shared by every request of a session."""

    if has_source_documents:
        documents_note = (
            "Source documents are attached. Base questions and answers on their content."
        )
    else:
        documents_note = (
            "No source documents are attached. Do not generate new questions unless the user "
            "explicitly asks for content without documents; suggest attaching documents instead."
        )
    return (
        "You are an assistant inside a question-and-answer document editor. You answer the user's "
        "questions and modify the document on request.\n\n"
        f"## Source documents\n{documents_note}\n\n{_EDITING_RULES}"
    )


def source_documents_block(documents: Sequence[str]) -> str:
    if not documents:
        return ""
    joined = "\n\n---\n\n".join(documents)
    return f"--- SOURCE DOCUMENTS START ---\n{joined}\n--- SOURCE DOCUMENTS END ---"


def template_block(template: "TemplateDescriptor | None") -> str:
    if template is None:
        return ""
    return (
        "## Question template\n"
        f"Question type: {template.question_type}\n"
        "New questions must follow this HTML template. Placeholders: [number], [question], "
        "[answer], [reference], and [choice1]-[choice4] for multiple choice.\n"
        f"```\n{template.markup_template}\n```"
    )


def document_state_block(markup: str) -> str:
    if not markup or not markup.strip():
        return (
            "## Document state: EMPTY\n"
            "The editor is empty. To create content, call edit_document with edit_type "
            "'full_replace' and the complete new HTML."
        )
    return (
        "## Current document\n"
        "Copy snippets for html_snippet_to_replace from this exact markup.\n"
        f'"""\n{markup}\n"""'
    )


def _line_info(selection: "SelectionDescriptor") -> str:
    if selection.start_line == selection.end_line:
        return f"Line {selection.start_line}"
    return f"Lines {selection.start_line}-{selection.end_line}"


def selection_block(selection: "SelectionDescriptor | None") -> str:
    if selection is None:
        return ""
    lines = [
        "## User selection",
        f"The user highlighted this content at {_line_info(selection)}:",
        f'"""{selection.markup or selection.text}"""',
    ]
    if selection.context_before:
        lines.append(f"--- Text before the selection ---\n{selection.context_before}")
    if selection.context_after:
        lines.append(f"--- Text after the selection ---\n{selection.context_after}")
    lines.append(
        "Keep edits focused on the selection. Prefer snippet_replace for small changes inside it "
        "and full_replace when the structure changes substantially."
    )
    return "\n".join(lines)


def user_prompt(message: str, selection: "SelectionDescriptor | None" = None) -> str:
    if selection is None:
        return message
    return (
        f"{message}\n\nApply this to the selected content at {_line_info(selection)}:\n"
        f'"""\n{selection.markup or selection.text}\n"""'
    )


def fixer_user_prompt(*, instruction: str, failed_search: str, error: str, document: str) -> str:
    return (
        f"INSTRUCTION: {instruction}\n\n"
        f'FAILED SEARCH STRING:\n"""\n{failed_search}\n"""\n\n'
        f"ERROR: {error}\n\n"
        f'FULL DOCUMENT HTML:\n"""\n{document}\n"""\n\n'
        "Return the corrected search string that exactly matches a portion of the document:"
    )


def step_limit_notice(max_turns: int) -> str:
    return (
        f"\n\n> Reached the step limit ({max_turns} tool rounds) for this message. "
        "Send another message to continue."
    )
