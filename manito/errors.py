"""Error taxonomy shared by the quoting pipeline."""
from __future__ import annotations

from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover - hints for type-checkers only
    from manito.distance import DistanceEstimate


class QuoteError(Exception):
    """Base class for every error raised by the quoting pipeline."""


class ValidationError(QuoteError, ValueError):
    """A malformed or missing field. Never retried automatically."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class DistanceServiceError(QuoteError):
    """The routed-distance lookup failed or timed out."""

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = True,
        attempts: int = 0,
        fallback: Optional["DistanceEstimate"] = None,
    ) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.attempts = attempts
        self.fallback = fallback


class SubmissionError(QuoteError):
    """The backend rejected the quote.

    Safe to retry with the same ``idempotency_token``.
    """

    def __init__(
        self,
        message: str,
        *,
        idempotency_token: Optional[str] = None,
        retryable: bool = True,
    ) -> None:
        super().__init__(message)
        self.idempotency_token = idempotency_token
        self.retryable = retryable


class ProtocolError(QuoteError):
    """A collaborator answered with an unexpected response shape."""


class StateTransitionError(QuoteError):
    """An operation was attempted in a composer state that does not allow it."""


__all__ = [
    "DistanceServiceError",
    "ProtocolError",
    "QuoteError",
    "StateTransitionError",
    "SubmissionError",
    "ValidationError",
]
