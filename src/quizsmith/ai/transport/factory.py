"""Build the configured transport."""

from __future__ import annotations

import logging

from ...services.settings import PROVIDER_CHOICES, Settings
from .base import LLMTransport
from .genai import GenAITransport
from .openai_compat import OpenAITransport
from .proxy import ProxyTransport

__all__ = ["create_transport"]

LOGGER = logging.getLogger(__name__)


def create_transport(settings: Settings) -> LLMTransport:
    provider = (settings.provider or "").strip().lower()
    LOGGER.debug("Creating %s transport for model %s", provider, settings.model)
    if provider == "genai":
        return GenAITransport(api_key=settings.api_key, request_timeout=settings.request_timeout)
    if provider == "proxy":
        return ProxyTransport(
            base_url=settings.proxy_base_url,
            api_key=settings.api_key or None,
            request_timeout=settings.request_timeout,
        )
    if provider == "openai":
        return OpenAITransport(
            api_key=settings.api_key,
            base_url=settings.base_url,
            request_timeout=settings.request_timeout,
            default_headers=settings.default_headers or None,
        )
    raise ValueError(f"Unknown provider {settings.provider!r}; expected one of {', '.join(PROVIDER_CHOICES)}")
