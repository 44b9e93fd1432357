"""
Custom Exceptions Module.

This module defines the error taxonomy of the VAT extraction pipeline.
Every exception carries an ErrorCategory so the monitor can count
failures per category without inspecting exception types.

Exception Hierarchy:
    VATExtractionError (base)
    ├── InputError                      INPUT_ERROR
    │   ├── UnsupportedMediaTypeError
    │   └── CorruptedDocumentError
    ├── ExternalAPIError                EXTERNAL_API_ERROR
    │   ├── ModelTimeoutError
    │   └── ModelLoadError
    ├── ParseError                      PARSE_ERROR
    ├── ReconciliationError             VALIDATION_ERROR
    ├── InvalidTransitionError          VALIDATION_ERROR
    └── CacheError                      CACHE_ERROR
"""

from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCategory(str, Enum):
    """Failure categories counted by the confidence monitor."""

    INPUT_ERROR = "INPUT_ERROR"
    EXTERNAL_API_ERROR = "EXTERNAL_API_ERROR"
    PARSE_ERROR = "PARSE_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    CACHE_ERROR = "CACHE_ERROR"


class VATExtractionError(Exception):
    """
    Base exception for all pipeline errors.

    Attributes:
        message: Human-readable error message.
        details: Dictionary with additional error context.
        category: ErrorCategory used for monitoring.
    """

    category: ErrorCategory = ErrorCategory.VALIDATION_ERROR

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


# =============================================================================
# INPUT ERRORS
# =============================================================================

class InputError(VATExtractionError):
    """Base exception for document normalization errors."""

    category = ErrorCategory.INPUT_ERROR


class UnsupportedMediaTypeError(InputError):
    """
    Raised when a document's declared media type is not supported.

    Example:
        >>> raise UnsupportedMediaTypeError("application/msword", ["application/pdf"])
    """

    def __init__(self, media_type: str, supported_types: List[str]):
        message = f"Unsupported media type: '{media_type}'"
        details = {"media_type": media_type, "supported_types": sorted(supported_types)}
        super().__init__(message, details)
        self.media_type = media_type


class CorruptedDocumentError(InputError):
    """Raised when a document is empty, truncated or otherwise unreadable."""

    def __init__(self, reason: str, source: Optional[str] = None):
        message = f"Corrupted or unreadable document: {reason}"
        details = {"reason": reason}
        if source:
            details["source"] = source
        super().__init__(message, details)
        self.reason = reason


# =============================================================================
# EXTERNAL API ERRORS
# =============================================================================

class ExternalAPIError(VATExtractionError):
    """
    Raised when the external vision model cannot produce a response.

    Attributes:
        retryable: Whether another attempt may succeed.
        attempts: Number of attempts made before giving up.
    """

    category = ErrorCategory.EXTERNAL_API_ERROR

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        retryable: bool = False,
        attempts: int = 0
    ):
        super().__init__(message, details)
        self.retryable = retryable
        self.attempts = attempts


class ModelTimeoutError(ExternalAPIError):
    """Raised when a single model call exceeds its hard timeout."""

    def __init__(self, timeout: float, attempts: int = 0):
        message = f"Model call exceeded timeout of {timeout:.1f}s"
        super().__init__(message, {"timeout": timeout}, retryable=True, attempts=attempts)
        self.timeout = timeout


class ModelLoadError(ExternalAPIError):
    """Raised when a vision backend cannot be initialised."""

    def __init__(self, backend: str, reason: Optional[str] = None):
        message = f"Failed to initialise vision backend: {backend}"
        super().__init__(message, {"backend": backend, "reason": reason}, retryable=False)


# =============================================================================
# PARSE ERRORS
# =============================================================================

class ParseError(VATExtractionError):
    """Raised when model output cannot be interpreted."""

    category = ErrorCategory.PARSE_ERROR

    def __init__(self, reason: str, diagnostic: Optional[str] = None):
        message = f"Could not parse model response: {reason}"
        super().__init__(message, {"reason": reason, "diagnostic": diagnostic})
        self.diagnostic = diagnostic


# =============================================================================
# VALIDATION ERRORS
# =============================================================================

class ReconciliationError(VATExtractionError):
    """Raised when extraction candidates cannot be reconciled."""

    category = ErrorCategory.VALIDATION_ERROR

    def __init__(self, reason: str, candidates: Optional[List[str]] = None):
        message = f"Reconciliation failed: {reason}"
        super().__init__(message, {"reason": reason, "candidates": candidates or []})


class InvalidTransitionError(VATExtractionError):
    """
    Raised on an illegal lifecycle transition.

    Example:
        >>> raise InvalidTransitionError("job", "succeeded", "failed")
    """

    category = ErrorCategory.VALIDATION_ERROR

    def __init__(self, entity: str, current: str, target: str):
        message = f"Illegal {entity} transition: {current} -> {target}"
        super().__init__(message, {"entity": entity, "current": current, "target": target})


# =============================================================================
# CACHE ERRORS
# =============================================================================

class CacheError(VATExtractionError):
    """Raised when a cache entry fails its integrity check."""

    category = ErrorCategory.CACHE_ERROR

    def __init__(self, key: str, reason: Optional[str] = None):
        message = f"Invalid cache entry: {key}"
        super().__init__(message, {"key": key, "reason": reason})


def categorize(error: BaseException) -> ErrorCategory:
    """
    Map any exception to an ErrorCategory.

    Exceptions outside the pipeline hierarchy count as VALIDATION_ERROR.
    """
    if isinstance(error, VATExtractionError):
        return error.category
    return ErrorCategory.VALIDATION_ERROR


__all__ = [
    'ErrorCategory',
    'VATExtractionError',
    'InputError',
    'UnsupportedMediaTypeError',
    'CorruptedDocumentError',
    'ExternalAPIError',
    'ModelTimeoutError',
    'ModelLoadError',
    'ParseError',
    'ReconciliationError',
    'InvalidTransitionError',
    'CacheError',
    'categorize',
]
