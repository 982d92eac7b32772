"""Agent loop: drives one user turn through bounded model/tool round trips.

States move ``idle -> requesting -> streaming`` and then either finish
(``done``) or apply the requested tool calls (``applying_edit``) and go back
to ``requesting`` with the tool results appended as a synthetic user turn.
Edits within one response run sequentially, so a later call sees the markup
produced by an earlier one.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

from ...services.settings import Settings
from ..cancellation import CancellationToken, ensure_token
from ..errors import BudgetExceededError, Cancelled, ProviderError, QuizsmithError, TransportError
from ..messages import ChatMessage
from ..prompts import (
    base_system_instruction,
    document_state_block,
    selection_block,
    source_documents_block,
    step_limit_notice,
    template_block,
    user_prompt,
)
from ..services.context_budget import ContextBudget, ContextBudgetManager
from ..services.error_classifier import ClassifiedError, RetryPolicy, to_provider_error
from ..services.response_cache import ResponseCache
from ..tools.base import ScrollHint
from ..transport.base import LLMTransport
from ..transport.types import Content, FunctionCall, GenerateRequest, UsageMetadata
from .tool_executor import ToolExecutor, describe_function_calls, format_tool_results
from .types import AgentState, ToolCallRecord, TurnInput, TurnResult

__all__ = [
    "MAX_AGENT_TURNS",
    "AgentConfig",
    "AgentLoop",
    "StateCallback",
    "TextCallback",
]

LOGGER = logging.getLogger(__name__)

MAX_AGENT_TURNS = 5

# Callback invoked with each streamed text delta
TextCallback = Callable[[str], None]

# Callback invoked on every state transition
StateCallback = Callable[[AgentState], None]


@dataclass(slots=True, frozen=True)
class AgentConfig:
    """Per-loop model options.

    ``api_key`` only feeds the response cache fingerprint so that switching
    keys never reuses another account's cache entry.
    """

    model: str
    temperature: float | None = 0.7
    max_output_tokens: int | None = None
    max_agent_turns: int = MAX_AGENT_TURNS
    include_thoughts: bool = True
    api_key: str = ""

    @classmethod
    def from_settings(cls, settings: Settings) -> "AgentConfig":
        return cls(
            model=settings.model,
            temperature=settings.temperature,
            max_agent_turns=max(1, int(settings.max_agent_turns)),
            include_thoughts=bool(settings.enable_thinking),
            api_key=settings.api_key,
        )


@dataclass(slots=True)
class _StreamOutcome:
    text: str = ""
    thinking: str = ""
    function_calls: list[FunctionCall] = field(default_factory=list)
    usage: UsageMetadata | None = None
    finish_reason: str | None = None


@dataclass(slots=True)
class _TurnState:
    turn: TurnInput
    document: str
    source_texts: list[str]
    static_prompt: str
    cached_content: str | None = None
    tool_turns: list[ChatMessage] = field(default_factory=list)
    overflow: bool = False
    budget: ContextBudget | None = None
    warnings: list[QuizsmithError] = field(default_factory=list)
    budget_warned: bool = False


class AgentLoop:
    """Runs turns against one transport with the configured collaborators."""

    def __init__(
        self,
        transport: LLMTransport,
        tools: ToolExecutor,
        *,
        config: AgentConfig,
        budget: ContextBudgetManager | None = None,
        retry: RetryPolicy | None = None,
        cache: ResponseCache | None = None,
    ) -> None:
        self._transport = transport
        self._tools = tools
        self._config = config
        self._budget = budget or ContextBudgetManager()
        self._retry = retry or RetryPolicy()
        self._cache = cache
        self._state = AgentState.IDLE

    @property
    def state(self) -> AgentState:
        return self._state

    @property
    def config(self) -> AgentConfig:
        return self._config

    @property
    def cache(self) -> ResponseCache | None:
        return self._cache

    async def run(
        self,
        turn: TurnInput,
        *,
        cancel: CancellationToken | None = None,
        on_text: TextCallback | None = None,
        on_state: StateCallback | None = None,
    ) -> TurnResult:
        """Execute one user turn and return its outcome.

        Never raises for provider, tool or cancellation failures; those are
        reported on the returned :class:`TurnResult`.
        """

        token = ensure_token(cancel)
        max_turns = max(1, self._config.max_agent_turns)
        user_message = ChatMessage.user(turn.message, images=turn.images)
        state = self._prepare(turn)
        records: list[ToolCallRecord] = []
        texts: list[str] = []
        thinking: list[str] = []
        scroll_hint: ScrollHint | None = None
        iteration = 0
        step_limit_reached = False

        def transition(new_state: AgentState) -> None:
            self._state = new_state
            if on_state is not None:
                on_state(new_state)

        try:
            await self._attach_cache(state, token)
            while True:
                if iteration >= max_turns:
                    step_limit_reached = True
                    LOGGER.warning("Turn reached the step limit (%d)", max_turns)
                    break
                iteration += 1
                transition(AgentState.REQUESTING)
                outcome = await self._request_with_retry(state, token, on_text, transition)
                if outcome.text.strip():
                    texts.append(outcome.text.strip())
                if outcome.thinking:
                    thinking.append(outcome.thinking)
                if not outcome.function_calls:
                    break

                transition(AgentState.APPLYING_EDIT)
                batch = await self._tools.execute(
                    outcome.function_calls, state.document, iteration=iteration, cancel=token
                )
                state.document = batch.document
                records.extend(batch.records)
                if batch.scroll_hint is not None:
                    scroll_hint = batch.scroll_hint
                state.tool_turns.append(ChatMessage.model(describe_function_calls(outcome.function_calls, outcome.text)))
                state.tool_turns.append(
                    ChatMessage.user(format_tool_results(batch.results, iteration=iteration, max_turns=max_turns))
                )
        except Cancelled as exc:
            transition(AgentState.FAILED)
            LOGGER.info("Turn cancelled after %d iteration(s): %s", iteration, exc.message)
            return TurnResult(
                status="failed",
                text="",
                document_markup=state.document,
                document_changed=state.document != turn.document_markup,
                scroll_hint=scroll_hint,
                tool_calls=records,
                iterations=iteration,
                cancelled=True,
                error=exc,
                warnings=state.warnings,
                messages=[user_message],
                budget=state.budget,
            )
        except (TransportError, ProviderError) as exc:
            transition(AgentState.FAILED)
            error = to_provider_error(exc, self._retry.settings)
            LOGGER.error("Turn failed (%s): %s", error.kind, exc)
            return TurnResult(
                status="failed",
                text=error.message,
                document_markup=state.document,
                document_changed=state.document != turn.document_markup,
                scroll_hint=scroll_hint,
                tool_calls=records,
                iterations=iteration,
                error=error,
                warnings=state.warnings,
                messages=[user_message],
                budget=state.budget,
            )

        text = "\n\n".join(texts)
        if step_limit_reached:
            text += step_limit_notice(max_turns)
        joined_thinking = "\n\n".join(thinking)
        transition(AgentState.DONE)
        return TurnResult(
            status="done",
            text=text,
            document_markup=state.document,
            document_changed=state.document != turn.document_markup,
            thinking=joined_thinking,
            scroll_hint=scroll_hint,
            tool_calls=records,
            iterations=iteration,
            step_limit_reached=step_limit_reached,
            warnings=state.warnings,
            messages=[user_message, ChatMessage.model(text, thinking=joined_thinking)],
            budget=state.budget,
        )

    # ------------------------------------------------------------------
    # Request assembly
    # ------------------------------------------------------------------
    def _prepare(self, turn: TurnInput) -> _TurnState:
        text_documents = [doc.labelled_text() for doc in turn.attachments if doc.kind == "text"]
        source_texts = self._budget.truncate_sources(text_documents)
        static_prompt = "\n\n".join(
            block
            for block in (
                base_system_instruction(has_source_documents=bool(turn.attachments)),
                template_block(turn.template),
            )
            if block
        )
        return _TurnState(
            turn=turn,
            document=turn.document_markup,
            source_texts=source_texts,
            static_prompt=static_prompt,
        )

    async def _attach_cache(self, state: _TurnState, token: CancellationToken) -> None:
        if self._cache is None or not getattr(self._transport, "supports_caching", False):
            return
        state.cached_content = await self._cache.get_or_create(
            model=self._config.model,
            system_instruction=state.static_prompt,
            source_documents=state.source_texts,
            tools=self._tools.declarations,
            api_key=self._config.api_key,
            cancel=token,
        )

    def _dynamic_context(self, state: _TurnState) -> str:
        return "\n\n".join(
            block
            for block in (document_state_block(state.document), selection_block(state.turn.selection))
            if block
        )

    def _history(self, state: _TurnState) -> list[ChatMessage]:
        if state.overflow:
            return self._budget.compact_for_overflow(state.turn.history)
        return self._budget.compact(state.turn.history)

    def _first_user_content(self, state: _TurnState, prompt_text: str) -> Content:
        turn = state.turn
        parts: list[dict[str, Any]] = [{"text": prompt_text}]
        parts.extend(doc.to_part() for doc in turn.attachments if doc.kind == "native")
        parts.extend(image.to_part() for image in turn.images)
        return {"role": "user", "parts": parts}

    async def _build_request(self, state: _TurnState, token: CancellationToken) -> GenerateRequest:
        history = self._history(state)
        dynamic = self._dynamic_context(state)
        prompt = user_prompt(state.turn.message, state.turn.selection)
        if state.cached_content:
            system_instruction = None
            prompt_text = f"{dynamic}\n\n{prompt}"
        else:
            system_instruction = "\n\n".join(
                block for block in (state.static_prompt, source_documents_block(state.source_texts), dynamic) if block
            )
            prompt_text = prompt

        budget = self._budget.estimate(
            system_prompt=state.static_prompt,
            source_documents=state.source_texts,
            document_state=dynamic,
            history=[*history, *state.tool_turns],
            new_message=prompt,
        )
        contents = self._contents(history, state, prompt_text)
        if budget.over_budget:
            budget = await self._budget.refine(
                budget,
                model=self._config.model,
                contents=contents,
                contents_include_document_state=bool(state.cached_content),
            )
        if budget.over_budget and not state.overflow:
            self._record_budget_warning(state, budget)
            state.overflow = True
            history = self._history(state)
            contents = self._contents(history, state, prompt_text)
            budget = self._budget.estimate(
                system_prompt=state.static_prompt,
                source_documents=state.source_texts,
                document_state=dynamic,
                history=[*history, *state.tool_turns],
                new_message=prompt,
            )
        state.budget = budget
        token.raise_if_cancelled()
        return GenerateRequest(
            model=self._config.model,
            contents=contents,
            system_instruction=system_instruction,
            tools=self._tools.declarations,
            cached_content=state.cached_content,
            temperature=self._config.temperature,
            max_output_tokens=self._config.max_output_tokens,
            include_thoughts=self._config.include_thoughts,
        )

    def _contents(self, history: Sequence[ChatMessage], state: _TurnState, prompt_text: str) -> list[Content]:
        contents = [message.to_content() for message in history]
        contents.append(self._first_user_content(state, prompt_text))
        contents.extend(message.to_content() for message in state.tool_turns)
        return contents

    def _record_budget_warning(self, state: _TurnState, budget: ContextBudget) -> None:
        if state.budget_warned:
            return
        state.budget_warned = True
        warning = BudgetExceededError(
            message=f"Context is {budget.total} tokens (budget: {budget.budget}); history was compacted",
            details=budget.as_payload(),
            suggestion=budget.recommendation or "",
        )
        state.warnings.append(warning)
        LOGGER.warning("%s", warning)

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------
    async def _request_with_retry(
        self,
        state: _TurnState,
        token: CancellationToken,
        on_text: TextCallback | None,
        transition: Callable[[AgentState], None],
    ) -> _StreamOutcome:
        async def attempt() -> _StreamOutcome:
            request = await self._build_request(state, token)
            return await self._stream(request, token, on_text, transition)

        async def on_retry(classified: ClassifiedError, attempt_number: int) -> None:
            if classified.kind == "context_overflow":
                LOGGER.info("Provider rejected the context size; keeping only recent turns")
                state.overflow = True
            transition(AgentState.REQUESTING)

        return await self._retry.call(attempt, on_retry=on_retry, cancel=token)

    async def _stream(
        self,
        request: GenerateRequest,
        token: CancellationToken,
        on_text: TextCallback | None,
        transition: Callable[[AgentState], None],
    ) -> _StreamOutcome:
        outcome = _StreamOutcome()
        text_parts: list[str] = []
        thinking_parts: list[str] = []
        streaming = False
        async for chunk in self._transport.stream_generate(request, cancel=token):
            token.raise_if_cancelled()
            if not streaming:
                streaming = True
                transition(AgentState.STREAMING)
            if chunk.text:
                text_parts.append(chunk.text)
                if on_text is not None:
                    on_text(chunk.text)
            if chunk.thinking:
                thinking_parts.append(chunk.thinking)
            if chunk.function_calls:
                outcome.function_calls.extend(chunk.function_calls)
            if chunk.usage is not None:
                outcome.usage = chunk.usage
            if chunk.finish_reason:
                outcome.finish_reason = chunk.finish_reason
        token.raise_if_cancelled()
        outcome.text = "".join(text_parts)
        outcome.thinking = "".join(thinking_parts)
        LOGGER.debug(
            "Model response: %d chars, %d tool call(s), finish=%s",
            len(outcome.text),
            len(outcome.function_calls),
            outcome.finish_reason,
        )
        return outcome
