"""Parse question/answer markup into numbered blocks and edit them structurally.

A block starts at a header paragraph whose bold text begins with a number and a
separator (``<p><strong>3: What is ...?</strong></p>``) and runs until the next
header. Everything before the first header is the preamble; trailing whitespace
after the last block is the postamble. Blocks keep their markup untouched, so::

    result = parse_questions(markup)
    rebuild_document(markup, result, result.questions) == markup

All functions are pure; offsets refer to the markup that was parsed.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, replace
from typing import Sequence

from .markup import strip_tags

__all__ = [
    "QUESTION_FIELDS",
    "ParsedQuestion",
    "ParseResult",
    "parse_questions",
    "update_question_field",
    "renumber_questions",
    "rebuild_document",
    "summarize_document",
]

LOGGER = logging.getLogger(__name__)

QUESTION_FIELDS: tuple[str, ...] = ("question_text", "answer", "reference", "full_question")

_BOLD_OPEN = r"<(?:strong|b)(?:\s[^>]*)?>"
_BOLD_CLOSE = r"</(?:strong|b)>"

_HEADER_RE = re.compile(
    r"(?P<open><p(?:\s[^>]*)?>\s*<(?P<tag>strong|b)(?:\s[^>]*)?>\s*)"
    r"(?P<number>\d+)"
    r"(?P<sep>\s*[:.)\-]\s*)"
    r"(?P<text>.*?)"
    r"(?P<close>\s*</(?P=tag)>\s*</p>)",
    re.IGNORECASE,
)

_ANSWER_PATTERNS: tuple[re.Pattern[str], ...] = (
    # <p><strong>Answer: X</strong></p> or <p><strong>X</strong></p>
    re.compile(
        rf"<p(?:\s[^>]*)?>\s*{_BOLD_OPEN}\s*(?:Answer:\s*)?(?P<value>.+?)\s*{_BOLD_CLOSE}\s*</p>",
        re.IGNORECASE,
    ),
    # bolded list item (the correct multiple-choice option)
    re.compile(
        rf"<li(?:\s[^>]*)?>\s*{_BOLD_OPEN}(?P<value>.+?){_BOLD_CLOSE}\s*</li>",
        re.IGNORECASE,
    ),
    # <p>Answer: X</p>
    re.compile(r"<p(?:\s[^>]*)?>\s*Answer:\s*(?P<value>.+?)\s*</p>", re.IGNORECASE),
)
_CHOICE_RE = re.compile(r"<li(?:\s[^>]*)?>(.*?)</li>", re.IGNORECASE | re.DOTALL)
_REFERENCE_RE = re.compile(
    r"<(?P<tag>i|em)(?:\s[^>]*)?>\s*Reference:\s*(?P<value>.+?)\s*</(?P=tag)>",
    re.IGNORECASE,
)


@dataclass(slots=True, frozen=True)
class ParsedQuestion:
    """Structural view over one question block."""

    number: int
    question_text: str
    answer_text: str
    full_markup: str
    start_offset: int
    end_offset: int
    choices: tuple[str, ...] | None = None
    reference: str | None = None
    index: int = 0

    @property
    def header_markup(self) -> str:
        match = _HEADER_RE.match(self.full_markup)
        return match.group(0) if match else ""

    @property
    def body_markup(self) -> str:
        return self.full_markup[len(self.header_markup):]


@dataclass(slots=True, frozen=True)
class ParseResult:
    questions: tuple[ParsedQuestion, ...]
    preamble: str
    postamble: str

    def find(self, number: int) -> ParsedQuestion | None:
        for question in self.questions:
            if question.number == number:
                return question
        return None


def parse_questions(markup: str) -> ParseResult:
    """Split ``markup`` into preamble, numbered blocks and postamble."""

    if not markup or not markup.strip():
        return ParseResult(questions=(), preamble=markup or "", postamble="")

    headers = list(_HEADER_RE.finditer(markup))
    if not headers:
        return ParseResult(questions=(), preamble=markup, postamble="")

    content_end = len(markup.rstrip())
    questions: list[ParsedQuestion] = []
    for index, header in enumerate(headers):
        start = header.start()
        end = headers[index + 1].start() if index + 1 < len(headers) else content_end
        questions.append(_build_question(markup, header, start, end, index))

    return ParseResult(
        questions=tuple(questions),
        preamble=markup[: headers[0].start()],
        postamble=markup[content_end:],
    )


def _build_question(markup: str, header: re.Match[str], start: int, end: int, index: int) -> ParsedQuestion:
    body = markup[header.end():end]
    choices = tuple(strip_tags(item) for item in _CHOICE_RE.findall(body))
    reference = _REFERENCE_RE.search(body)
    return ParsedQuestion(
        number=int(header.group("number")),
        question_text=strip_tags(header.group("text")),
        answer_text=_extract_answer(body),
        full_markup=markup[start:end],
        start_offset=start,
        end_offset=end,
        choices=choices or None,
        reference=strip_tags(reference.group("value")) if reference else None,
        index=index,
    )


def _extract_answer(body: str) -> str:
    for pattern in _ANSWER_PATTERNS:
        for match in pattern.finditer(body):
            value = strip_tags(match.group("value"))
            if not value or value.lower().startswith("reference"):
                continue
            return value
    return ""


# ---------------------------------------------------------------------------
# Structural edits
# ---------------------------------------------------------------------------


def update_question_field(question: ParsedQuestion, field: str, new_text: str) -> ParsedQuestion | None:
    """Rewrite the smallest markup span holding ``field``.

    Returns ``None`` when the block has no existing occurrence of the field; the
    caller then replaces ``full_question`` instead.
    """

    if field == "full_question":
        return replace(question, full_markup=new_text)
    if field == "question_text":
        header = _HEADER_RE.match(question.full_markup)
        if header is None:
            return None
        updated = (
            question.full_markup[: header.start("text")]
            + new_text
            + question.full_markup[header.end("text"):]
        )
        return replace(question, question_text=strip_tags(new_text), full_markup=updated)
    if field == "answer":
        if not question.answer_text:
            return None
        escaped = re.escape(question.answer_text)
        patterns = (
            re.compile(rf"({_BOLD_OPEN}\s*(?:Answer:\s*)?){escaped}(\s*{_BOLD_CLOSE})", re.IGNORECASE),
            re.compile(rf"(<p(?:\s[^>]*)?>\s*Answer:\s*){escaped}(\s*</p>)", re.IGNORECASE),
        )
        body = _replace_in_body(question, patterns, new_text)
        if body is None:
            return None
        return replace(question, answer_text=strip_tags(new_text), full_markup=question.header_markup + body)
    if field == "reference":
        if not question.reference:
            return None
        pattern = re.compile(
            rf"(<(?:i|em)(?:\s[^>]*)?>\s*Reference:\s*){re.escape(question.reference)}(\s*</(?:i|em)>)",
            re.IGNORECASE,
        )
        body = _replace_in_body(question, (pattern,), new_text)
        if body is None:
            return None
        return replace(question, reference=strip_tags(new_text), full_markup=question.header_markup + body)
    raise ValueError(f"Unknown question field {field!r}; expected one of {', '.join(QUESTION_FIELDS)}")


def _replace_in_body(
    question: ParsedQuestion, patterns: Sequence[re.Pattern[str]], new_text: str
) -> str | None:
    body = question.body_markup
    for pattern in patterns:
        match = pattern.search(body)
        if match is not None:
            return body[: match.end(1)] + new_text + body[match.start(2):]
    return None


def renumber_questions(questions: Sequence[ParsedQuestion]) -> list[ParsedQuestion]:
    """Number blocks 1..N, rewriting only the numeral in each header."""

    renumbered: list[ParsedQuestion] = []
    for index, question in enumerate(questions):
        number = index + 1
        if question.number == number:
            renumbered.append(question if question.index == index else replace(question, index=index))
            continue
        header = _HEADER_RE.match(question.full_markup)
        if header is None:
            LOGGER.debug("Block %s has no header to renumber", question.number)
            renumbered.append(replace(question, number=number, index=index))
            continue
        markup = (
            question.full_markup[: header.start("number")]
            + str(number)
            + question.full_markup[header.end("number"):]
        )
        renumbered.append(replace(question, number=number, index=index, full_markup=markup))
    return renumbered


def rebuild_document(original: str, parsed: ParseResult, blocks: Sequence[ParsedQuestion]) -> str:
    """Reassemble ``preamble + blocks + postamble``.

    A document that had no blocks cannot be rebuilt structurally and is
    returned unchanged.
    """

    if not parsed.questions:
        return original
    return parsed.preamble + "".join(block.full_markup for block in blocks) + parsed.postamble


def summarize_document(parsed: ParseResult) -> str:
    """Plain-text outline for the ``read_document`` tool."""

    if not parsed.questions:
        length = len(parsed.preamble)
        if not parsed.preamble.strip():
            return "The document is empty."
        return f"The document contains no numbered questions ({length} characters of free-form content)."

    lines = [f"Document contains {len(parsed.questions)} question(s):", ""]
    for question in parsed.questions:
        entry = f"  {question.number}. {_preview(question.question_text, 80)}"
        if question.answer_text:
            entry += f"\n     Answer: {_preview(question.answer_text, 60)}"
        if question.choices:
            entry += f"\n     [Multiple choice: {len(question.choices)} options]"
        if question.reference:
            entry += f"\n     Ref: {question.reference}"
        lines.append(entry)
    return "\n".join(lines)


def _preview(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[: limit - 3] + "..."
