"""Classify provider failures and retry the recoverable ones."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Literal, TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from ...services.settings import RetrySettings
from ..cancellation import CancellationToken
from ..errors import Cancelled, ProviderError

__all__ = [
    "ErrorKind",
    "ClassifiedError",
    "RetryPolicy",
    "classify_error",
    "to_provider_error",
]

LOGGER = logging.getLogger(__name__)

ErrorKind = Literal["rate_limit", "context_overflow", "auth", "network", "transient", "unknown"]
T = TypeVar("T")

_RATE_LIMIT = ("429", "resource_exhausted", "rate limit", "quota")
_CONTEXT_OVERFLOW = (
    "exceeds the maximum",
    "context length",
    "too many tokens",
    "token limit",
    "request too large",
)
_AUTH = ("401", "403", "permission_denied", "unauthorized", "api key", "authentication")
_NETWORK = ("failed to fetch", "network", "econnrefused", "enotfound", "timeout", "connection")
_TRANSIENT = ("500", "502", "503", "internal", "unavailable", "overloaded")


@dataclass(slots=True, frozen=True)
class ClassifiedError:
    kind: ErrorKind
    user_message: str
    retryable: bool
    retry_delay: float | None = None


def _error_text(error: BaseException | str) -> str:
    if isinstance(error, str):
        return error.lower()
    pieces = [getattr(error, "message", None) or str(error) or error.__class__.__name__]
    for attr in ("status_code", "code", "status"):
        value = getattr(error, attr, None)
        if value is not None and not callable(value):
            pieces.append(str(value))
    return " ".join(str(piece) for piece in pieces).lower()


def _contains(text: str, needles: tuple[str, ...]) -> bool:
    return any(needle in text for needle in needles)


def classify_error(error: BaseException | str, retry: RetrySettings | None = None) -> ClassifiedError:
    """Map a raw failure onto one of the recovery categories.

    Matching is a case-insensitive substring search over the error text and any
    status code attribute; the first matching category wins.
    """

    delays = retry or RetrySettings()
    text = _error_text(error)

    if _contains(text, _RATE_LIMIT):
        return ClassifiedError(
            kind="rate_limit",
            user_message="⏳ Rate limit reached. Retrying in a few seconds…",
            retryable=True,
            retry_delay=delays.rate_limit_delay,
        )
    if _contains(text, _CONTEXT_OVERFLOW) or ("invalid_argument" in text and "content" in text):
        return ClassifiedError(
            kind="context_overflow",
            user_message="📏 Context too large. Pruning conversation history and retrying…",
            retryable=True,
            retry_delay=0.0,
        )
    if _contains(text, _AUTH):
        return ClassifiedError(
            kind="auth",
            user_message="🔑 API key issue. Please check your API key in settings.",
            retryable=False,
        )
    if _contains(text, _NETWORK):
        return ClassifiedError(
            kind="network",
            user_message="🌐 Network error. Please check your internet connection and try again.",
            retryable=True,
            retry_delay=delays.network_delay,
        )
    if _contains(text, _TRANSIENT):
        return ClassifiedError(
            kind="transient",
            user_message="⚙️ Server error. Retrying…",
            retryable=True,
            retry_delay=delays.transient_delay,
        )
    return ClassifiedError(
        kind="unknown",
        user_message="❌ An unexpected error occurred. Please try again.",
        retryable=False,
    )


def to_provider_error(error: BaseException, retry: RetrySettings | None = None) -> ProviderError:
    if isinstance(error, ProviderError):
        return error
    return ProviderError.from_classified(classify_error(error, retry), cause=error)


RetryHook = Callable[[ClassifiedError, int], Awaitable[None]]


class RetryPolicy:
    """Retries a request at most ``max_retries_per_error`` times per failure.

    The delay depends on the classified kind. ``on_retry`` runs right before the
    next attempt, which is where the agent loop prunes history after a
    ``context_overflow``.
    """

    def __init__(
        self,
        settings: RetrySettings | None = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.settings = settings or RetrySettings()
        self._sleep = sleep

    def classify(self, error: BaseException | str) -> ClassifiedError:
        return classify_error(error, self.settings)

    def is_retryable(self, error: BaseException) -> bool:
        if isinstance(error, (Cancelled, asyncio.CancelledError)):
            return False
        return self.classify(error).retryable

    def _wait(self, retry_state: RetryCallState) -> float:
        outcome = retry_state.outcome
        if outcome is None or outcome.exception() is None:
            return 0.0
        return float(self.classify(outcome.exception()).retry_delay or 0.0)

    async def call(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        on_retry: RetryHook | None = None,
        cancel: CancellationToken | None = None,
    ) -> T:
        pending: list[ClassifiedError] = []

        def _before_sleep(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            classified = self.classify(error) if error is not None else self.classify("unknown")
            pending.append(classified)
            LOGGER.warning(
                "Request failed (%s, attempt %d); retrying in %.1fs: %s",
                classified.kind,
                retry_state.attempt_number,
                classified.retry_delay or 0.0,
                error,
            )

        async def _sleep(seconds: float) -> None:
            if cancel is None:
                await self._sleep(seconds)
            else:
                await cancel.run(self._sleep(seconds))

        retrying = AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(1 + max(0, self.settings.max_retries_per_error)),
            wait=self._wait,
            retry=retry_if_exception(self.is_retryable),
            before_sleep=_before_sleep,
            sleep=_sleep,
        )
        async for attempt in retrying:
            with attempt:
                if pending:
                    classified = pending.pop()
                    if cancel is not None:
                        cancel.raise_if_cancelled()
                    if on_retry is not None:
                        await on_retry(classified, attempt.retry_state.attempt_number)
                return await operation()
        raise AssertionError("unreachable")  # pragma: no cover
