"""Cooperative cancellation threaded through every async boundary."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import AsyncIterable, AsyncIterator, Awaitable, TypeVar

from .errors import Cancelled

__all__ = ["CancellationToken", "iterate_with_cancel", "ensure_token"]

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """Single-shot cancellation signal shared by a turn and everything it awaits."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Operation cancelled") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        LOGGER.debug("Cancellation requested: %s", reason)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled(message=self.reason or "Operation cancelled")

    async def wait(self) -> None:
        await self._event.wait()

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first.

        The losing side of the race is cancelled; a fired token raises
        :class:`Cancelled` even if the awaitable finished in the same tick.
        """

        if self._event.is_set():
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise Cancelled(message=self.reason or "Operation cancelled")
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            if not waiter.done():
                waiter.cancel()
        if self._event.is_set():
            if not work.done():
                work.cancel()
                try:
                    await work
                except asyncio.CancelledError:
                    pass
            elif not work.cancelled():
                # retrieve so asyncio does not log an unretrieved exception
                work.exception()
            raise Cancelled(message=self.reason or "Operation cancelled")
        return work.result()


def ensure_token(token: CancellationToken | None) -> CancellationToken:
    return token if token is not None else CancellationToken()


async def iterate_with_cancel(source: AsyncIterable[T], token: CancellationToken | None) -> AsyncIterator[T]:
    """Yield from ``source`` while racing every receive against ``token``."""

    iterator = source.__aiter__()
    try:
        while True:
            if token is None:
                try:
                    item = await iterator.__anext__()
                except StopAsyncIteration:
                    return
            else:
                try:
                    item = await token.run(iterator.__anext__())
                except StopAsyncIteration:
                    return
            yield item
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()
