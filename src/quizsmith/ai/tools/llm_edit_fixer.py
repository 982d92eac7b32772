"""Secondary model call that repairs a snippet the primary model got slightly wrong."""

from __future__ import annotations

import logging

from ...documents.markup import strip_code_block_wrappers
from ..cancellation import CancellationToken
from ..errors import TransportError
from ..prompts import FIXER_NO_MATCH, FIXER_SYSTEM_PROMPT, fixer_user_prompt
from ..transport.base import LLMTransport
from ..transport.types import GenerateRequest, text_content

__all__ = ["LLMEditFixer"]

LOGGER = logging.getLogger(__name__)


class LLMEditFixer:
    """Asks a model for the verbatim document substring a failed snippet meant."""

    def __init__(self, transport: LLMTransport, *, model: str) -> None:
        self._transport = transport
        self._model = model

    async def fix(
        self,
        *,
        instruction: str,
        failed_search: str,
        error: str,
        document: str,
        cancel: CancellationToken | None = None,
    ) -> str | None:
        """Return a corrected search string present in ``document``, or ``None``."""

        request = GenerateRequest(
            model=self._model,
            contents=[
                text_content(
                    "user",
                    fixer_user_prompt(
                        instruction=instruction,
                        failed_search=failed_search,
                        error=error,
                        document=document,
                    ),
                )
            ],
            system_instruction=FIXER_SYSTEM_PROMPT,
            temperature=0.0,
        )
        try:
            response = await self._transport.generate(request, cancel=cancel)
        except TransportError as exc:
            LOGGER.warning("Snippet fixer call failed: %s", exc)
            return None

        corrected = strip_code_block_wrappers(response.text or "").strip()
        if not corrected or corrected == FIXER_NO_MATCH:
            LOGGER.debug("Snippet fixer found no match")
            return None
        if corrected not in document:
            LOGGER.debug("Snippet fixer returned text that is not in the document: %.120s", corrected)
            return None
        return corrected
