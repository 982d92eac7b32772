"""Error taxonomy for the agent core.

Every error is a dataclass exception with a machine-readable ``error_code``,
a human-readable ``message``, optional structured ``details`` and a recovery
``suggestion``. Tool failures are serialized with :meth:`QuizsmithError.to_dict`
and fed back to the model; provider failures surface on the turn result.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar, Sequence

if TYPE_CHECKING:
    from .services.error_classifier import ClassifiedError

__all__ = [
    "ErrorCode",
    "QuizsmithError",
    "TransportError",
    "ProviderError",
    "MatchNotFoundError",
    "StructuralParseError",
    "BudgetExceededError",
    "InvalidToolArgumentsError",
    "Cancelled",
]


# -----------------------------------------------------------------------------
# Error Code Constants
# -----------------------------------------------------------------------------

class ErrorCode:
    """Constants for error codes used in tool results and turn results."""

    TRANSPORT_ERROR = "transport_error"
    PROVIDER_ERROR = "provider_error"

    MATCH_NOT_FOUND = "match_not_found"
    STRUCTURAL_PARSE_ERROR = "structural_parse_error"
    QUESTION_NOT_FOUND = "question_not_found"
    FIELD_NOT_FOUND = "field_not_found"
    INVALID_PARAMETER = "invalid_parameter"
    UNKNOWN_TOOL = "unknown_tool"

    BUDGET_EXCEEDED = "budget_exceeded"
    OPERATION_CANCELLED = "operation_cancelled"


# -----------------------------------------------------------------------------
# Base Error Class
# -----------------------------------------------------------------------------

@dataclass
class QuizsmithError(Exception):
    """Base exception for all agent-core errors.

    Attributes:
        error_code: Machine-readable error identifier.
        message: Human-readable error description.
        details: Additional structured error information.
        suggestion: Actionable guidance for recovery.
    """

    error_code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = ""

    severity: ClassVar[str] = "error"

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a dictionary for tool results."""
        result: dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = dict(self.details)
        if self.suggestion:
            result["suggestion"] = self.suggestion
        return result

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"


# -----------------------------------------------------------------------------
# Transport / Provider Errors
# -----------------------------------------------------------------------------

@dataclass
class TransportError(QuizsmithError):
    """Network or protocol failure while talking to a model backend."""

    error_code: str = field(default=ErrorCode.TRANSPORT_ERROR)
    message: str = field(default="Model backend request failed")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = ""

    status_code: int | None = field(default=None)

    @classmethod
    def from_exception(cls, exc: BaseException, *, status_code: int | None = None) -> "TransportError":
        status = status_code if status_code is not None else _status_of(exc)
        text = str(exc) or exc.__class__.__name__
        if status is not None and str(status) not in text:
            text = f"{status}: {text}"
        return cls(
            message=text,
            details={"exception_type": exc.__class__.__name__},
            status_code=status,
        )


@dataclass
class ProviderError(QuizsmithError):
    """A classified provider failure that could not be recovered by retrying."""

    error_code: str = field(default=ErrorCode.PROVIDER_ERROR)
    message: str = field(default="The model provider returned an error")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = ""

    classification: "ClassifiedError | None" = field(default=None)

    @classmethod
    def from_classified(cls, classified: "ClassifiedError", *, cause: BaseException | None = None) -> "ProviderError":
        details: dict[str, Any] = {"kind": classified.kind, "retryable": classified.retryable}
        if cause is not None:
            details["cause"] = str(cause)
        return cls(message=classified.user_message, details=details, classification=classified)

    @property
    def kind(self) -> str:
        return self.classification.kind if self.classification is not None else "unknown"


# -----------------------------------------------------------------------------
# Document / Edit Errors
# -----------------------------------------------------------------------------

@dataclass
class MatchNotFoundError(QuizsmithError):
    """All snippet matching layers failed to locate the proposed snippet."""

    error_code: str = field(default=ErrorCode.MATCH_NOT_FOUND)
    message: str = field(default="Could not find the snippet to replace in the document")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(
        default="Copy the exact HTML from the current document, or use edit_type 'full_replace'"
    )

    attempts: Sequence[Any] = field(default_factory=tuple)

    @property
    def diagnostic(self) -> str:
        lines = [self.message]
        for attempt in self.attempts:
            lines.append(f"- {attempt}")
        return "\n".join(lines)


@dataclass
class StructuralParseError(QuizsmithError):
    """A structural edit was requested on a document without numbered question blocks."""

    error_code: str = field(default=ErrorCode.STRUCTURAL_PARSE_ERROR)
    message: str = field(default="The document has no numbered question blocks")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Use edit_type 'snippet_replace' or 'full_replace' instead")


@dataclass
class InvalidToolArgumentsError(QuizsmithError):
    """Tool-call arguments failed validation."""

    error_code: str = field(default=ErrorCode.INVALID_PARAMETER)
    message: str = field(default="Invalid tool arguments")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Check the tool parameters and try again")


@dataclass
class BudgetExceededError(QuizsmithError):
    """Informational: the assembled request is larger than the practical budget."""

    error_code: str = field(default=ErrorCode.BUDGET_EXCEEDED)
    message: str = field(default="The request exceeds the practical context budget")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = ""

    severity: ClassVar[str] = "warning"


# -----------------------------------------------------------------------------
# Cancellation
# -----------------------------------------------------------------------------

@dataclass
class Cancelled(QuizsmithError):
    """The operation was cancelled through its cancellation token."""

    error_code: str = field(default=ErrorCode.OPERATION_CANCELLED)
    message: str = field(default="Operation cancelled")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = ""


def _status_of(exc: BaseException) -> int | None:
    for attr in ("status_code", "code", "status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(exc, "response", None)
    status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None
