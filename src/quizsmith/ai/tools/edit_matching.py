"""Locate and replace a model-proposed snippet in document markup.

Layers run in order and the first success wins:

1. ``exact``   literal substring replacement
2. ``tree``    scored match over block elements of the parsed markup tree
3. ``fuzzy``   whitespace-tolerant regular expression anchored on normalized text
4. ``llm_fix`` a secondary model call proposes the verbatim substring, which is
               then applied as an exact match

The cancellation token is checked before every layer.
"""

from __future__ import annotations

import html
import logging
import re
from collections import Counter
from dataclasses import dataclass
from typing import Callable

from bs4 import BeautifulSoup, Tag

from ..cancellation import CancellationToken
from ..errors import MatchNotFoundError
from .llm_edit_fixer import LLMEditFixer

__all__ = [
    "BLOCK_TAGS",
    "CONTAINER_TAGS",
    "EditMatcher",
    "LayerAttempt",
    "MatchResult",
    "normalize_text",
]

LOGGER = logging.getLogger(__name__)

BLOCK_TAGS: tuple[str, ...] = (
    "p", "div", "li", "h1", "h2", "h3", "h4", "h5", "h6", "blockquote", "tr", "section", "article",
)
CONTAINER_TAGS: tuple[str, ...] = ("div", "section", "article", "blockquote")

ELEMENT_THRESHOLD = 5
CONTAINER_THRESHOLD = 8
FUZZY_ANCHOR_CHARS = 50

_WHITESPACE_RE = re.compile(r"\s+")
_TAG_RE = re.compile(r"<[^>]*>")


@dataclass(slots=True, frozen=True)
class LayerAttempt:
    layer: str
    succeeded: bool
    detail: str

    def __str__(self) -> str:
        status = "matched" if self.succeeded else "failed"
        return f"{self.layer}: {status} ({self.detail})"


@dataclass(slots=True, frozen=True)
class MatchResult:
    markup: str
    layer: str
    attempts: tuple[LayerAttempt, ...]


def normalize_text(text: str) -> str:
    """Decode entities, collapse whitespace and lowercase."""

    return _WHITESPACE_RE.sub(" ", html.unescape(text or "")).strip().lower()


class EditMatcher:
    """Multi-layer snippet replacement with per-layer diagnostics.

    ``calls`` counts how many times each layer ran, which makes the layer
    ordering observable.
    """

    def __init__(self, fixer: LLMEditFixer | None = None) -> None:
        self._fixer = fixer
        self.calls: Counter[str] = Counter()

    async def replace(
        self,
        document: str,
        snippet: str,
        replacement: str,
        *,
        instruction: str | None = None,
        cancel: CancellationToken | None = None,
    ) -> MatchResult:
        """Replace the first match of ``snippet`` or raise :class:`MatchNotFoundError`."""

        if not snippet:
            raise MatchNotFoundError(message="html_snippet_to_replace is empty")

        attempts: list[LayerAttempt] = []
        sync_layers: tuple[tuple[str, Callable[[str, str, str], tuple[str | None, str]]], ...] = (
            ("exact", self._match_exact),
            ("tree", self._match_tree),
            ("fuzzy", self._match_fuzzy),
        )
        for name, layer in sync_layers:
            if cancel is not None:
                cancel.raise_if_cancelled()
            self.calls[name] += 1
            markup, detail = layer(document, snippet, replacement)
            attempts.append(LayerAttempt(name, markup is not None, detail))
            if markup is not None:
                LOGGER.debug("Snippet matched by %s layer: %s", name, detail)
                return MatchResult(markup=markup, layer=name, attempts=tuple(attempts))

        if cancel is not None:
            cancel.raise_if_cancelled()
        if self._fixer is not None and instruction:
            self.calls["llm_fix"] += 1
            markup, detail = await self._match_with_fixer(document, snippet, replacement, instruction, attempts, cancel)
            attempts.append(LayerAttempt("llm_fix", markup is not None, detail))
            if markup is not None:
                LOGGER.info("Snippet recovered by model self-correction")
                return MatchResult(markup=markup, layer="llm_fix", attempts=tuple(attempts))
        else:
            reason = "no instruction provided" if self._fixer is not None else "no fixer configured"
            attempts.append(LayerAttempt("llm_fix", False, f"skipped, {reason}"))

        LOGGER.info("Snippet could not be matched: %s", "; ".join(str(item) for item in attempts))
        raise MatchNotFoundError(
            details={"attempts": [str(item) for item in attempts]},
            attempts=tuple(attempts),
        )

    # ------------------------------------------------------------------
    # Layer 1
    # ------------------------------------------------------------------
    @staticmethod
    def _match_exact(document: str, snippet: str, replacement: str) -> tuple[str | None, str]:
        index = document.find(snippet)
        if index < 0:
            return None, "snippet is not a verbatim substring of the document"
        return document[:index] + replacement + document[index + len(snippet):], f"offset {index}"

    # ------------------------------------------------------------------
    # Layer 2
    # ------------------------------------------------------------------
    @staticmethod
    def _match_tree(document: str, snippet: str, replacement: str) -> tuple[str | None, str]:
        snippet_tree = BeautifulSoup(snippet, "html.parser")
        target = normalize_text(snippet_tree.get_text())
        if not target:
            return None, "snippet has no text content"
        soup = BeautifulSoup(document, "html.parser")

        top_level = [node for node in snippet_tree.contents if isinstance(node, Tag)]
        if len(top_level) > 1:
            container, score = _best_container(soup, target)
            if container is not None and score >= CONTAINER_THRESHOLD:
                markup = _replace_element(document, soup, container, replacement)
                return markup, f"container <{container.name}> scored {score}"

        element, score = _best_element(soup, target, snippet.strip())
        if element is not None and score >= ELEMENT_THRESHOLD:
            markup = _replace_element(document, soup, element, replacement)
            return markup, f"element <{element.name}> scored {score}"
        if element is not None:
            return None, f"best candidate scored {score} (below threshold of {ELEMENT_THRESHOLD})"
        return None, "no element text resembles the snippet"

    # ------------------------------------------------------------------
    # Layer 3
    # ------------------------------------------------------------------
    @staticmethod
    def _match_fuzzy(document: str, snippet: str, replacement: str) -> tuple[str | None, str]:
        normalized_snippet = _strip_and_collapse(snippet)
        if not normalized_snippet:
            return None, "snippet has no text content"
        anchor = normalized_snippet[:FUZZY_ANCHOR_CHARS]
        if anchor not in _strip_and_collapse(document):
            return None, "normalized anchor text not found"
        pieces = _WHITESPACE_RE.split(snippet.strip())
        pattern = r"\s*".join(re.escape(piece) for piece in pieces if piece)
        pattern = pattern.replace("><", r">\s*<")
        match = re.search(pattern, document, re.IGNORECASE)
        if match is None:
            return None, "whitespace-tolerant pattern did not match the markup"
        return (
            document[: match.start()] + replacement + document[match.end():],
            f"offset {match.start()}",
        )

    # ------------------------------------------------------------------
    # Layer 4
    # ------------------------------------------------------------------
    async def _match_with_fixer(
        self,
        document: str,
        snippet: str,
        replacement: str,
        instruction: str,
        attempts: list[LayerAttempt],
        cancel: CancellationToken | None,
    ) -> tuple[str | None, str]:
        assert self._fixer is not None
        corrected = await self._fixer.fix(
            instruction=instruction,
            failed_search=snippet,
            error="; ".join(str(item) for item in attempts),
            document=document,
            cancel=cancel,
        )
        if corrected is None:
            return None, "model could not propose a verbatim match"
        markup, _ = self._match_exact(document, corrected, replacement)
        if markup is None:  # pragma: no cover - fixer already validated presence
            return None, "corrected snippet vanished from the document"
        return markup, f"corrected snippet of {len(corrected)} characters"


def _strip_and_collapse(markup: str) -> str:
    return _WHITESPACE_RE.sub(" ", _TAG_RE.sub(" ", markup)).strip().lower()


def _depth(element: Tag) -> int:
    # the BeautifulSoup root is itself a parent
    return sum(1 for _ in element.parents) - 1


def _score_element(element: Tag, target: str, snippet_markup: str) -> int:
    text = normalize_text(element.get_text())
    if not text:
        return 0
    score = 0
    if text == target:
        score = 10
    elif target in text:
        score = 6
    elif text in target:
        score = 3
    else:
        target_words = {word for word in target.split(" ") if len(word) > 2}
        element_words = {word for word in text.split(" ") if len(word) > 2}
        if target_words:
            ratio = len(target_words & element_words) / len(target_words)
            if ratio >= 0.7:
                score = round(ratio * 5)
    if score <= 0:
        return 0
    if snippet_markup and snippet_markup in str(element):
        score += 3
    if _depth(element) <= 2:
        score += 1
    return score


def _best_element(soup: BeautifulSoup, target: str, snippet_markup: str) -> tuple[Tag | None, int]:
    best: Tag | None = None
    best_score = 0
    for element in soup.find_all(BLOCK_TAGS):
        score = _score_element(element, target, snippet_markup)
        # strict comparison keeps the first element in document order on ties
        if score > best_score:
            best, best_score = element, score
    return best, best_score


def _best_container(soup: BeautifulSoup, target: str) -> tuple[Tag | None, int]:
    best: Tag | None = None
    best_score = 0
    for element in soup.find_all(CONTAINER_TAGS):
        text = normalize_text(element.get_text())
        if not text:
            continue
        if text == target:
            score = 12
        elif target in text and len(text) < len(target) * 1.5:
            score = 8
        else:
            continue
        if score > best_score:
            best, best_score = element, score
    return best, best_score


def _replace_element(document: str, soup: BeautifulSoup, element: Tag, replacement: str) -> str:
    """Swap ``element`` for ``replacement`` and return the new document.

    The element's own source span is spliced so markup outside it stays
    byte-identical. When the span cannot be located (for example an
    implicitly closed ``<li>``), the tree is edited and reserialized instead.
    """

    start = _source_offset(document, element)
    end = _closing_offset(document, element.name, start) if start is not None else None
    if start is None or end is None:
        LOGGER.debug("Source span of <%s> not found; reserializing the document", element.name)
        _replace_subtree(element, replacement)
        return str(soup)
    return document[:start] + replacement + document[end:]


def _source_offset(document: str, element: Tag) -> int | None:
    line, column = element.sourceline, element.sourcepos
    if line is None or column is None:
        return None
    offset = 0
    for _ in range(line - 1):
        offset = document.find("\n", offset) + 1
        if offset == 0:
            return None
    offset += column
    if document[offset:offset + len(element.name) + 1].lower() != f"<{element.name}":
        return None
    return offset


def _closing_offset(document: str, name: str, start: int) -> int | None:
    tag_re = re.compile(rf"<(/?){re.escape(name)}(?=[\s/>])[^>]*>", re.IGNORECASE)
    depth = 0
    for match in tag_re.finditer(document, start):
        if match.group(1):
            depth -= 1
            if depth == 0:
                return match.end()
        elif not match.group(0).endswith("/>"):
            depth += 1
    return None


def _replace_subtree(element: Tag, replacement: str) -> None:
    fragment = BeautifulSoup(replacement, "html.parser")
    nodes = [node.extract() for node in list(fragment.contents)]
    if not nodes:
        element.decompose()
        return
    element.replace_with(*nodes)
