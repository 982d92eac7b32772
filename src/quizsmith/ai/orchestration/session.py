"""Conversation session: transient history and one-turn-at-a-time execution."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Callable, Sequence

from ..cancellation import CancellationToken
from ..errors import Cancelled
from ..messages import ChatMessage, ImageAttachment
from .agent_loop import AgentLoop, StateCallback, TextCallback
from .types import DocumentAttachment, SelectionDescriptor, TemplateDescriptor, TurnInput, TurnResult

__all__ = ["ChatSession", "TurnPolicy"]

LOGGER = logging.getLogger(__name__)

# Returns (history cut index, message text, images) for edit and retry turns
_Resolver = Callable[[], tuple[int, str, tuple[ImageAttachment, ...]]]


class TurnPolicy(str, Enum):
    """What happens to an in-flight turn when a new message arrives."""

    CANCEL = "cancel"
    QUEUE = "queue"


class ChatSession:
    """Holds the history of one conversation and serializes its turns.

    Turns never interleave: document edits are not commutative. With
    :attr:`TurnPolicy.CANCEL` a new message cancels every turn that is running
    or waiting; with :attr:`TurnPolicy.QUEUE` it waits for them to finish.

    A turn whose ``document_markup`` was captured before an earlier turn
    committed edits runs against the committed document instead, so queued
    turns build on each other's results.
    """

    def __init__(
        self,
        agent: AgentLoop,
        *,
        policy: TurnPolicy = TurnPolicy.CANCEL,
        attachments: Sequence[DocumentAttachment] = (),
        template: TemplateDescriptor | None = None,
    ) -> None:
        self._agent = agent
        self._policy = TurnPolicy(policy)
        self._attachments: tuple[DocumentAttachment, ...] = tuple(attachments)
        self.template = template
        self._history: list[ChatMessage] = []
        self._lock = asyncio.Lock()
        self._tokens: list[CancellationToken] = []
        # Bumped whenever a turn commits a changed document
        self._revision = 0
        self._document: str | None = None

    @property
    def history(self) -> tuple[ChatMessage, ...]:
        return tuple(self._history)

    @property
    def attachments(self) -> tuple[DocumentAttachment, ...]:
        return self._attachments

    @property
    def policy(self) -> TurnPolicy:
        return self._policy

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def set_attachments(self, attachments: Sequence[DocumentAttachment]) -> None:
        self._attachments = tuple(attachments)

    # ------------------------------------------------------------------
    # Turn entry points
    # ------------------------------------------------------------------
    async def send(
        self,
        message: str,
        document_markup: str,
        *,
        images: Sequence[ImageAttachment] = (),
        selection: SelectionDescriptor | None = None,
        on_text: TextCallback | None = None,
        on_state: StateCallback | None = None,
    ) -> TurnResult:
        return await self._run_turn(
            None,
            message,
            document_markup,
            images=images,
            selection=selection,
            on_text=on_text,
            on_state=on_state,
        )

    async def edit_message(
        self,
        index: int,
        text: str,
        document_markup: str,
        *,
        selection: SelectionDescriptor | None = None,
        on_text: TextCallback | None = None,
        on_state: StateCallback | None = None,
    ) -> TurnResult:
        """Replace the user message at ``index`` and resend it.

        Everything from ``index`` onward is discarded.
        """

        def resolve() -> tuple[int, str, tuple[ImageAttachment, ...]]:
            original = self._user_message_at(index)
            return index, text, original.images

        return await self._run_turn(
            resolve, text, document_markup, selection=selection, on_text=on_text, on_state=on_state
        )

    async def retry_message(
        self,
        index: int,
        document_markup: str,
        *,
        selection: SelectionDescriptor | None = None,
        on_text: TextCallback | None = None,
        on_state: StateCallback | None = None,
    ) -> TurnResult:
        """Resend the user message at ``index``, discarding what followed it."""

        def resolve() -> tuple[int, str, tuple[ImageAttachment, ...]]:
            original = self._user_message_at(index)
            return index, original.text, original.images

        return await self._run_turn(
            resolve, "", document_markup, selection=selection, on_text=on_text, on_state=on_state
        )

    async def retry_model_message(
        self,
        index: int,
        document_markup: str,
        *,
        selection: SelectionDescriptor | None = None,
        on_text: TextCallback | None = None,
        on_state: StateCallback | None = None,
    ) -> TurnResult:
        """Regenerate the model response at ``index`` from the user message before it."""

        def resolve() -> tuple[int, str, tuple[ImageAttachment, ...]]:
            self._check_index(index)
            if self._history[index].role != "model":
                raise ValueError(f"Message {index} is not a model response")
            for position in range(index - 1, -1, -1):
                candidate = self._history[position]
                if candidate.role == "user":
                    return position, candidate.text, candidate.images
            raise ValueError(f"Model response {index} has no preceding user message")

        return await self._run_turn(
            resolve, "", document_markup, selection=selection, on_text=on_text, on_state=on_state
        )

    def stop(self, reason: str = "Stopped by user") -> None:
        """Cancel the running turn and any turn waiting behind it."""

        for token in list(self._tokens):
            token.cancel(reason)

    async def reset(self) -> None:
        """Stop everything, forget the history and drop the cache entry."""

        self.stop("Session reset")
        async with self._lock:
            self._history.clear()
            self._document = None
            cache = self._agent.cache
            if cache is not None:
                await cache.clear()
        LOGGER.debug("Session reset")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _check_index(self, index: int) -> None:
        if not 0 <= index < len(self._history):
            raise IndexError(f"No message at index {index}")

    def _user_message_at(self, index: int) -> ChatMessage:
        self._check_index(index)
        message = self._history[index]
        if message.role != "user":
            raise ValueError(f"Message {index} is not a user message")
        return message

    async def _run_turn(
        self,
        resolve: _Resolver | None,
        message: str,
        document_markup: str,
        *,
        images: Sequence[ImageAttachment] = (),
        selection: SelectionDescriptor | None,
        on_text: TextCallback | None,
        on_state: StateCallback | None,
    ) -> TurnResult:
        token = CancellationToken()
        revision = self._revision
        if self._policy is TurnPolicy.CANCEL:
            self.stop("Superseded by a new message")
        self._tokens.append(token)
        try:
            async with self._lock:
                if token.cancelled:
                    LOGGER.debug("Turn cancelled before it started")
                    return TurnResult(
                        status="failed",
                        text="",
                        document_markup=document_markup,
                        cancelled=True,
                        error=Cancelled(message=token.reason or "Operation cancelled"),
                    )
                if revision != self._revision and self._document is not None:
                    LOGGER.debug("Rebasing turn onto the document committed by an earlier turn")
                    document_markup = self._document
                if resolve is not None:
                    cut, message, stored_images = resolve()
                    images = images or stored_images
                    del self._history[cut:]
                turn = TurnInput(
                    message=message,
                    document_markup=document_markup,
                    history=tuple(self._history),
                    attachments=self._attachments,
                    images=tuple(images),
                    selection=selection,
                    template=self.template,
                )
                result = await self._agent.run(turn, cancel=token, on_text=on_text, on_state=on_state)
                self._history.extend(result.messages)
                if result.document_changed:
                    self._document = result.document_markup
                    self._revision += 1
                return result
        finally:
            self._tokens.remove(token)
