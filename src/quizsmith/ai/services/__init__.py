"""Budgeting, retry and caching services used by the agent loop."""

from .context_budget import (
    ContextBudget,
    ContextBudgetManager,
    build_context_budget,
    compact_history,
    estimate_tokens,
    prune_history,
    truncate_source_documents,
)
from .error_classifier import ClassifiedError, RetryPolicy, classify_error, to_provider_error
from .response_cache import CacheEntry, ResponseCache, compute_fingerprint

__all__ = [
    "ContextBudget",
    "ContextBudgetManager",
    "build_context_budget",
    "compact_history",
    "estimate_tokens",
    "prune_history",
    "truncate_source_documents",
    "ClassifiedError",
    "RetryPolicy",
    "classify_error",
    "to_provider_error",
    "CacheEntry",
    "ResponseCache",
    "compute_fingerprint",
]
