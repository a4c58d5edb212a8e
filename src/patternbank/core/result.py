"""
Unified Result types and error hierarchy for patternbank.

This module provides:
1. Result[T, E] type for explicit error handling
2. Domain-specific exception hierarchy

Usage:
    from patternbank.core.result import Ok, Err, Result, NotFoundError

    def lookup(pattern_id: str) -> Result[Pattern, NotFoundError]:
        if pattern_id not in rows:
            return Err(NotFoundError("Pattern not found", context={"id": pattern_id}))
        return Ok(rows[pattern_id])

    match lookup("abc"):
        case Ok(pattern):
            print(pattern.key)
        case Err(err):
            print(err)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Generic, TypeVar

T = TypeVar("T")
U = TypeVar("U")
E = TypeVar("E", bound=Exception)
F = TypeVar("F", bound=Exception)


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    """Represents a successful result containing a value."""

    value: T

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        """Return the contained value."""
        return self.value

    def unwrap_or(self, default: T) -> T:
        """Return the contained value (ignores default for Ok)."""
        return self.value

    def map(self, fn: Callable[[T], U]) -> Ok[U]:
        """Apply a function to the contained value."""
        return Ok(fn(self.value))

    def map_err(self, fn: Callable[[E], F]) -> Ok[T]:
        """No-op for Ok - returns self unchanged."""
        return self


@dataclass(frozen=True, slots=True)
class Err(Generic[E]):
    """Represents a failed result containing an error."""

    error: E

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self) -> T:
        """Raise the contained error."""
        raise self.error

    def unwrap_or(self, default: T) -> T:
        """Return the default value."""
        return default

    def map(self, fn: Callable[[T], U]) -> Err[E]:
        """No-op for Err - returns self unchanged."""
        return self

    def map_err(self, fn: Callable[[E], F]) -> Err[F]:
        """Apply a function to the contained error."""
        return Err(fn(self.error))


# Type alias for Result
Result = Ok[T] | Err[E]


# ---------------------------------------------------------------------------
# Domain-specific error hierarchy
# ---------------------------------------------------------------------------


class PatternBankError(Exception):
    """Base exception for all patternbank errors.

    All custom exceptions should inherit from this class to enable
    consistent error handling across the codebase.
    """

    def __init__(self, message: str, *, context: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} [{ctx_str}]"
        return self.message


class ValidationError(PatternBankError):
    """Raised for input validation failures.

    Examples:
    - Non-positive result limits
    - Embedding dimensionality mismatch for a model
    - Consolidation thresholds out of range
    """

    pass


class InvalidConfidenceError(ValidationError):
    """Raised when a confidence value falls outside [0, 1]. Never retried."""

    pass


class NotFoundError(PatternBankError):
    """A lookup referenced a pattern that does not exist.

    Returned inside ``Err`` by lookups; callers decide whether it matters.
    """

    pass


class SemanticSearchError(PatternBankError):
    """Base for failures on the semantic path. Always recovered by fallback."""

    pass


class EmbeddingUnavailableError(SemanticSearchError):
    """The embedding provider is missing, down, or returned nothing."""

    pass


class SemanticTimeoutError(SemanticSearchError):
    """Semantic search exceeded its deadline."""

    pass


class StorageError(PatternBankError):
    """Raised for durable-storage failures.

    Examples:
    - Disk I/O errors
    - Database corruption
    - Use of a closed storage handle

    Fatal: propagated to the caller and never retried automatically.
    """

    pass


class LifecycleError(PatternBankError):
    """Raised when an operation is attempted after shutdown."""

    pass


__all__ = [
    # Result types
    "Ok",
    "Err",
    "Result",
    # Error hierarchy
    "PatternBankError",
    "ValidationError",
    "InvalidConfidenceError",
    "NotFoundError",
    "SemanticSearchError",
    "EmbeddingUnavailableError",
    "SemanticTimeoutError",
    "StorageError",
    "LifecycleError",
]
