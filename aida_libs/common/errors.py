"""
Error taxonomy for the context engine.

Provides:
- ``EngineError`` base carrying the envelope ``error_type`` and retry/fallback flags
- Concrete errors for validation, timeouts, providers, data integrity and persistence
- ``Outcome`` and ``best_effort`` for auxiliary operations whose failure must not
  block a user-visible response
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Generic, Optional, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class EngineError(Exception):
    """Base class for all engine errors."""

    error_type = "processing"
    retryable = False
    fallback_eligible = True

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict:
        return {
            "type": self.error_type,
            "message": self.message,
            "retryable": self.retryable,
        }


class ValidationError(EngineError):
    """Bad input. Never retried."""

    error_type = "validation"
    fallback_eligible = False


class RequestTimeoutError(EngineError):
    """Pipeline exceeded its deadline."""

    error_type = "timeout"
    retryable = True


class ProviderError(EngineError):
    """Embedding or completion provider failure (non-2xx, unavailable, bad payload)."""

    error_type = "provider"
    retryable = True

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retryable: bool = True,
        **context: Any,
    ):
        super().__init__(message, status_code=status_code, **context)
        self.status_code = status_code
        self.retryable = retryable


class GenerationError(EngineError):
    """Completion failed after all retry attempts."""

    error_type = "generation"


class DimensionMismatchError(EngineError):
    """Two vectors of unequal length were compared."""

    error_type = "dimension_mismatch"
    fallback_eligible = False


class InvalidEmbeddingError(EngineError):
    """Provider returned a vector that does not match the configured dimension."""

    error_type = "invalid_embedding"
    fallback_eligible = False


class PersistenceError(EngineError):
    """Store read/write failure."""

    error_type = "persistence"


class ProcessingError(EngineError):
    """Any other pipeline stage failure."""

    error_type = "processing"


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Result of an auxiliary operation: either a value or the error it raised."""

    value: Optional[T] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap_or(self, default: T) -> T:
        return self.value if self.error is None else default


async def best_effort(awaitable: Awaitable[T], operation: str, **log_context: Any) -> Outcome[T]:
    """
    Await an auxiliary operation and capture its failure instead of raising.

    Cancellation is never captured; only ``Exception`` subclasses are.

    Args:
        awaitable: The side effect to run (persist, analytics, summary refresh...)
        operation: Name used in the log line
        **log_context: Extra key/values for the log line

    Returns:
        Outcome with either the value or the captured error
    """
    try:
        return Outcome(value=await awaitable)
    except Exception as e:
        logger.warning(
            "Auxiliary operation failed",
            operation=operation,
            error=str(e),
            error_type=type(e).__name__,
            **log_context,
        )
        return Outcome(error=e)
