"""Server-side caching of the static prompt prefix."""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
from dataclasses import dataclass
from typing import Callable, Sequence

from ..cancellation import CancellationToken
from ..errors import TransportError
from ..transport.base import CachingBackend
from ..transport.types import Content, FunctionDeclaration, text_content

__all__ = ["CacheEntry", "ResponseCache", "compute_fingerprint", "source_document_contents"]

LOGGER = logging.getLogger(__name__)

DEFAULT_TTL = "3600s"
DEFAULT_REUSE_SECONDS = 30 * 60
_DISPLAY_PREFIX = "quizsmith-"
_SOURCE_ACK = "I have received the source documents and will use them for reference."


@dataclass(slots=True, frozen=True)
class CacheEntry:
    id: str
    fingerprint: str
    created_at: float


def compute_fingerprint(
    *,
    model: str,
    system_instruction: str,
    source_documents: Sequence[str],
    tools: Sequence[FunctionDeclaration],
    api_key: str,
) -> str:
    digest = hashlib.sha256()
    for part in (
        model,
        system_instruction,
        *source_documents,
        json.dumps(list(tools), sort_keys=True, default=str),
        api_key,
    ):
        digest.update(part.encode("utf-8"))
        digest.update(b"\x1f")
    return digest.hexdigest()


def source_document_contents(source_documents: Sequence[str]) -> list[Content]:
    if not source_documents:
        return []
    joined = "\n\n---\n\n".join(source_documents)
    return [
        text_content(
            "user",
            "<source_documents>\n"
            "The following source documents are provided for reference. "
            "Base your knowledge and Q&A generation on this content.\n\n"
            f"{joined}\n</source_documents>",
        ),
        text_content("model", _SOURCE_ACK),
    ]


class ResponseCache:
    """Holds at most one live cache entry for a session.

    A new entry is created when the fingerprint changes or the current entry
    is older than the reuse window. The superseded entry is deleted only after
    its replacement exists; a failed delete is logged and otherwise ignored.
    """

    def __init__(
        self,
        backend: CachingBackend,
        *,
        ttl: str = DEFAULT_TTL,
        reuse_seconds: float = DEFAULT_REUSE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._backend = backend
        self._ttl = ttl
        self._reuse_seconds = reuse_seconds
        self._clock = clock
        self._entry: CacheEntry | None = None
        self._lock = asyncio.Lock()

    @property
    def active_entry(self) -> CacheEntry | None:
        return self._entry

    @property
    def has_active_entry(self) -> bool:
        return self._entry is not None

    async def get_or_create(
        self,
        *,
        model: str,
        system_instruction: str,
        source_documents: Sequence[str],
        tools: Sequence[FunctionDeclaration],
        api_key: str,
        cancel: CancellationToken | None = None,
    ) -> str | None:
        """Return a cache id for the given prefix, or ``None`` for uncached mode."""

        fingerprint = compute_fingerprint(
            model=model,
            system_instruction=system_instruction,
            source_documents=source_documents,
            tools=tools,
            api_key=api_key,
        )
        async with self._lock:
            current = self._entry
            if current is not None and current.fingerprint == fingerprint:
                age = self._clock() - current.created_at
                if age < self._reuse_seconds:
                    LOGGER.debug("Reusing cache %s (age %.0fs)", current.id, age)
                    return current.id
                LOGGER.debug("Cache %s is past its reuse window", current.id)

            create = self._backend.create_cache(
                model=model,
                system_instruction=system_instruction,
                contents=source_document_contents(source_documents),
                tools=tools,
                ttl=self._ttl,
                display_name=f"{_DISPLAY_PREFIX}{fingerprint[:12]}",
            )
            try:
                cache_id = await (cancel.run(create) if cancel is not None else create)
            except TransportError as exc:
                LOGGER.warning("Caching failed, falling back to uncached mode: %s", exc)
                return None

            if current is not None:
                await self._delete(current.id)
            self._entry = CacheEntry(id=cache_id, fingerprint=fingerprint, created_at=self._clock())
            LOGGER.info("Created cache %s", cache_id)
            return cache_id

    async def clear(self) -> None:
        async with self._lock:
            if self._entry is None:
                return
            await self._delete(self._entry.id)
            self._entry = None

    async def _delete(self, cache_id: str) -> None:
        try:
            await self._backend.delete_cache(cache_id)
        except TransportError as exc:
            LOGGER.warning("Could not delete cache %s; it will expire on its own: %s", cache_id, exc)
        else:
            LOGGER.debug("Deleted cache %s", cache_id)
