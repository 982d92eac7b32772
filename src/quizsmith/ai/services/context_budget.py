"""Token budgeting, source-document truncation and history compaction.

Everything here is a pure function of its inputs except
:class:`ContextBudgetManager`, which binds the configured limits and an
optional exact token counting service.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Sequence

from ...services.settings import ContextPolicySettings
from ..errors import Cancelled
from ..messages import ChatMessage
from ..tokens import estimate_tokens
from ..transport.base import TokenCountingService
from ..transport.types import Content

__all__ = [
    "MAX_HISTORY_TURNS",
    "MAX_HISTORY_TOKENS",
    "PRACTICAL_TOKEN_BUDGET",
    "SOURCE_DOC_BUDGET",
    "OVERFLOW_KEEP_TURNS",
    "TRUNCATION_MARKER",
    "COMPACTION_ACKNOWLEDGEMENT",
    "ContextBudget",
    "ContextBudgetManager",
    "build_context_budget",
    "compact_history",
    "estimate_tokens",
    "prune_history",
    "summarize_dropped_messages",
    "truncate_source_documents",
]

LOGGER = logging.getLogger(__name__)

MAX_HISTORY_TURNS = 10
MAX_HISTORY_TOKENS = 50_000
PRACTICAL_TOKEN_BUDGET = 100_000
SOURCE_DOC_BUDGET = math.floor(PRACTICAL_TOKEN_BUDGET * 0.2)
OVERFLOW_KEEP_TURNS = 3

TRUNCATION_MARKER = "\n\n[… Document truncated to fit context window]"
COMPACTION_ACKNOWLEDGEMENT = "Understood, I have context from the earlier discussion."
_MAX_TOPICS = 5
_MAX_TOPIC_CHARS = 100


@dataclass(slots=True)
class ContextBudget:
    """Estimated token cost of each contributor to the next request."""

    system_prompt: int
    source_documents: int
    document_state: int
    history: int
    new_message: int
    total: int
    budget: int
    over_budget: bool
    recommendation: str | None = None
    exact: bool = False

    @property
    def excess(self) -> int:
        return max(0, self.total - self.budget)

    def as_payload(self) -> dict[str, object]:
        return {
            "system_prompt": int(self.system_prompt),
            "source_documents": int(self.source_documents),
            "document_state": int(self.document_state),
            "history": int(self.history),
            "new_message": int(self.new_message),
            "total": int(self.total),
            "budget": int(self.budget),
            "over_budget": bool(self.over_budget),
            "recommendation": self.recommendation,
            "exact": bool(self.exact),
        }


# -----------------------------------------------------------------------------
# Budget estimation
# -----------------------------------------------------------------------------

def history_tokens(messages: Sequence[ChatMessage]) -> int:
    return sum(estimate_tokens(message.text) for message in messages)


def build_context_budget(
    *,
    system_prompt: str,
    source_documents: Sequence[str] = (),
    document_state: str = "",
    history: Sequence[ChatMessage] = (),
    new_message: str = "",
    budget: int = PRACTICAL_TOKEN_BUDGET,
) -> ContextBudget:
    """Sum per-contributor estimates and flag requests above ``budget``."""

    system_tokens = estimate_tokens(system_prompt)
    source_tokens = sum(estimate_tokens(doc) for doc in source_documents)
    document_tokens = estimate_tokens(document_state)
    history_total = history_tokens(history)
    message_tokens = estimate_tokens(new_message)
    total = system_tokens + source_tokens + document_tokens + history_total + message_tokens
    result = ContextBudget(
        system_prompt=system_tokens,
        source_documents=source_tokens,
        document_state=document_tokens,
        history=history_total,
        new_message=message_tokens,
        total=total,
        budget=budget,
        over_budget=total > budget,
    )
    result.recommendation = _recommendation(result)
    return result


def _recommendation(budget: ContextBudget) -> str | None:
    if not budget.over_budget:
        return None
    excess = budget.excess
    if budget.history > excess:
        return f"Prune history ({budget.history} tokens) to save ~{excess} tokens"
    if budget.source_documents > excess:
        return f"Truncate source documents ({budget.source_documents} tokens) to stay within budget"
    return (
        f"Context is {budget.total} tokens (budget: {budget.budget}). "
        "Consider reducing document size or history."
    )


# -----------------------------------------------------------------------------
# Source documents
# -----------------------------------------------------------------------------

def truncate_source_documents(documents: Sequence[str], max_tokens: int = SOURCE_DOC_BUDGET) -> list[str]:
    """Trim documents proportionally to their share of the combined size.

    Documents are returned unchanged when the total already fits. A trimmed
    document keeps room for :data:`TRUNCATION_MARKER` inside its share, so the
    result is never larger than the input.
    """

    docs = list(documents)
    if not docs:
        return docs
    total = sum(estimate_tokens(doc) for doc in docs)
    if total <= max_tokens:
        return docs

    ratio = max(0, max_tokens) / total
    truncated: list[str] = []
    for doc in docs:
        max_chars = math.floor(len(doc) * ratio)
        if len(doc) <= max_chars or len(doc) <= len(TRUNCATION_MARKER):
            truncated.append(doc)
            continue
        keep = max(0, max_chars - len(TRUNCATION_MARKER))
        truncated.append(doc[:keep] + TRUNCATION_MARKER)
    return truncated


# -----------------------------------------------------------------------------
# History pruning
# -----------------------------------------------------------------------------

def _split_history(
    messages: Sequence[ChatMessage],
    *,
    max_turns: int,
    max_tokens: int,
) -> tuple[list[ChatMessage], list[ChatMessage]]:
    history = [message for message in messages if message.role != "system"]

    cut = 0
    user_positions = [index for index, message in enumerate(history) if message.role == "user"]
    if max_turns <= 0:
        cut = len(history)
    elif len(user_positions) > max_turns:
        cut = user_positions[-max_turns]
    dropped, kept = history[:cut], history[cut:]

    # Whole turns leave from the front; the most recent turn always stays.
    total = history_tokens(kept)
    while total > max_tokens:
        next_user = next((i for i in range(1, len(kept)) if kept[i].role == "user"), None)
        if next_user is None:
            break
        removed, kept = kept[:next_user], kept[next_user:]
        dropped.extend(removed)
        total -= history_tokens(removed)
    return dropped, kept


def prune_history(
    messages: Sequence[ChatMessage],
    *,
    max_turns: int = MAX_HISTORY_TURNS,
    max_tokens: int = MAX_HISTORY_TOKENS,
) -> list[ChatMessage]:
    """Keep at most ``max_turns`` user turns and ``max_tokens`` of history.

    Turns are dropped whole (the user message and every model message after
    it), so the result never starts with a model reply whose prompt was
    removed. ``system`` entries are not part of the provider history and are
    discarded.
    """

    _, kept = _split_history(messages, max_turns=max_turns, max_tokens=max_tokens)
    return kept


def summarize_dropped_messages(dropped: Sequence[ChatMessage]) -> str:
    topics: list[str] = []
    for message in dropped:
        if message.role != "user":
            continue
        first_line = message.text.strip().split("\n")[0]
        if len(first_line) > _MAX_TOPIC_CHARS:
            first_line = first_line[:_MAX_TOPIC_CHARS] + "…"
        topics.append(first_line)
        if len(topics) == _MAX_TOPICS:
            break
    if not topics:
        return ""
    return f"[Earlier in this conversation, the user discussed: {'; '.join(topics)}]"


def compact_history(
    messages: Sequence[ChatMessage],
    *,
    max_turns: int = MAX_HISTORY_TURNS,
    max_tokens: int = MAX_HISTORY_TOKENS,
) -> list[ChatMessage]:
    """Prune history and prepend a one-line summary of what was dropped."""

    dropped, kept = _split_history(messages, max_turns=max_turns, max_tokens=max_tokens)
    summary = summarize_dropped_messages(dropped)
    if not summary:
        return kept
    LOGGER.debug("Compacted %d history message(s) into a summary", len(dropped))
    return [ChatMessage.user(summary), ChatMessage.model(COMPACTION_ACKNOWLEDGEMENT), *kept]


# -----------------------------------------------------------------------------
# Configured manager
# -----------------------------------------------------------------------------

class ContextBudgetManager:
    """Applies the configured limits and consults an exact counter when present."""

    def __init__(
        self,
        policy: ContextPolicySettings | None = None,
        *,
        counter: TokenCountingService | None = None,
    ) -> None:
        self.policy = policy or ContextPolicySettings()
        self._counter = counter

    @property
    def has_exact_counter(self) -> bool:
        return self._counter is not None

    def truncate_sources(self, documents: Sequence[str]) -> list[str]:
        return truncate_source_documents(documents, self.policy.source_document_budget)

    def compact(self, history: Sequence[ChatMessage]) -> list[ChatMessage]:
        return compact_history(
            history,
            max_turns=self.policy.max_history_turns,
            max_tokens=self.policy.max_history_tokens,
        )

    def compact_for_overflow(self, history: Sequence[ChatMessage]) -> list[ChatMessage]:
        """Aggressive compaction used after the provider rejected the request size."""

        return compact_history(
            history,
            max_turns=self.policy.overflow_keep_turns,
            max_tokens=self.policy.max_history_tokens,
        )

    def estimate(
        self,
        *,
        system_prompt: str,
        source_documents: Sequence[str] = (),
        document_state: str = "",
        history: Sequence[ChatMessage] = (),
        new_message: str = "",
    ) -> ContextBudget:
        return build_context_budget(
            system_prompt=system_prompt,
            source_documents=source_documents,
            document_state=document_state,
            history=history,
            new_message=new_message,
            budget=self.policy.practical_token_budget,
        )

    async def refine(
        self,
        budget: ContextBudget,
        *,
        model: str,
        contents: Sequence[Content],
        contents_include_document_state: bool = False,
    ) -> ContextBudget:
        """Replace the heuristic total with an exact count when a counter is available.

        Only ``contents`` is counted exactly. The system prompt and the source
        documents travel outside it (system instruction or cache entry), and so
        does the document state unless ``contents_include_document_state`` is
        set; their heuristic estimates are added to the exact count.

        The heuristic budget is returned untouched when no counter is configured
        or the counter fails.
        """

        if self._counter is None:
            return budget
        try:
            exact = await self._counter.count_tokens(model, contents)
        except Cancelled:
            raise
        except Exception as exc:
            LOGGER.warning("Exact token count failed; using heuristic estimate: %s", exc)
            return budget
        outside = budget.system_prompt + budget.source_documents
        if not contents_include_document_state:
            outside += budget.document_state
        budget.total = int(exact) + outside
        budget.exact = True
        budget.over_budget = budget.total > budget.budget
        budget.recommendation = _recommendation(budget)
        return budget
