"""Agent core: transports, edit tools, budgeting and the agent loop."""

from .cancellation import CancellationToken
from .errors import (
    BudgetExceededError,
    Cancelled,
    MatchNotFoundError,
    ProviderError,
    QuizsmithError,
    StructuralParseError,
    TransportError,
)

__all__ = [
    "CancellationToken",
    "QuizsmithError",
    "TransportError",
    "ProviderError",
    "MatchNotFoundError",
    "StructuralParseError",
    "BudgetExceededError",
    "Cancelled",
]
