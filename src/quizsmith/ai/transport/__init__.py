"""Model backends behind one streaming interface."""

from .base import CachingBackend, LLMTransport, TokenCountingService
from .factory import create_transport
from .genai import GenAITransport
from .openai_compat import OpenAITransport
from .proxy import ProxyTransport
from .types import (
    Content,
    FunctionCall,
    GenerateRequest,
    ModelInfo,
    ResponseChunk,
    UsageMetadata,
    normalize_google_response,
    text_content,
)

__all__ = [
    "LLMTransport",
    "CachingBackend",
    "TokenCountingService",
    "GenAITransport",
    "OpenAITransport",
    "ProxyTransport",
    "create_transport",
    "Content",
    "FunctionCall",
    "GenerateRequest",
    "ModelInfo",
    "ResponseChunk",
    "UsageMetadata",
    "normalize_google_response",
    "text_content",
]
