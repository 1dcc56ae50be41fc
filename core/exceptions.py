"""
Custom exceptions for the ingestion pipeline with structured error context.

This module provides the exception hierarchy used by the stage machine,
the chunked fetcher and the reconciliation loader. Each exception carries
context information for the run audit log.

Exception Hierarchy:
    ETLException (base)
    ├── ExtractionError
    │   └── FetchError
    │       ├── ChunkFetchError
    │       ├── NetworkError          (retryable)
    │       ├── RateLimitError        (retryable)
    │       ├── WindowTooLargeError   (retryable, shrinks the window)
    │       ├── AuthenticationError   (non-retryable)
    │       └── ResourceNotFoundError (non-retryable)
    ├── ConfigurationError            (non-retryable)
    ├── TransformationError
    │   └── RecordValidationError
    ├── LoadError
    │   └── ReconciliationAborted
    ├── StageError
    └── RetryableError / NonRetryableError (mixins)
"""

from typing import Optional, Dict, Any
from datetime import datetime


class ETLException(Exception):
    """
    Base exception for all pipeline errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (window, symbol, row, etc.)
        original_exception: The original exception that was caught (if any)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.utcnow()

        self.context["error_timestamp"] = self.timestamp.isoformat()

        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(ETLException):
    """
    Mixin for errors that should trigger retry logic.

    Use this for transient errors like:
    - Network timeouts
    - Rate limiting (HTTP 429)
    - Service unavailable (HTTP 5xx)
    """
    pass


class NonRetryableError(ETLException):
    """
    Mixin for errors that should NOT trigger retry logic.

    Use this for permanent errors like:
    - Authentication failures (HTTP 401, 403)
    - Missing credentials or unknown symbol mappings
    - Resource not found (HTTP 404)
    """
    pass


# ============================================================================
# Extraction Errors
# ============================================================================

class ExtractionError(ETLException):
    """Base exception for data extraction failures."""
    pass


class FetchError(ExtractionError):
    """
    Exception raised when fetching a window from a provider fails.

    Context should include:
        - source: Adapter name
        - window_start / window_end: The sub-range being fetched
        - status_code: HTTP status code (if applicable)
    """
    pass


class ChunkFetchError(FetchError):
    """A single window ran out of retry attempts."""

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        window: Any = None
    ):
        super().__init__(message, context, original_exception)
        self.window = window
        if window is not None:
            self.context["window"] = str(window)


class NetworkError(RetryableError, FetchError):
    """Timeouts, transport failures and 5xx responses."""
    pass


class RateLimitError(RetryableError, FetchError):
    """Rate limiting errors (HTTP 429) that should be retried with a longer backoff."""

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        retry_after: Optional[float] = None
    ):
        super().__init__(message, context, original_exception)
        self.retry_after = retry_after  # Seconds to wait before retry
        if retry_after:
            self.context["retry_after"] = retry_after


class WindowTooLargeError(RetryableError, FetchError):
    """The provider refused the window because it holds too many items."""
    pass


class AuthenticationError(NonRetryableError, FetchError):
    """Authentication failures (HTTP 401, 403) that should not be retried."""
    pass


class ResourceNotFoundError(NonRetryableError, FetchError):
    """Resource not found errors (HTTP 404) that should not be retried."""
    pass


class ConfigurationError(NonRetryableError):
    """
    Missing credential, unknown adapter or unsupported symbol/granularity.

    Fails the run at whichever stage first needs the value.
    """
    pass


# ============================================================================
# Transformation Errors
# ============================================================================

class TransformationError(ETLException):
    """Base exception for data transformation failures."""
    pass


class RecordValidationError(TransformationError):
    """
    Exception raised when a candidate record fails structural validation.

    Context should include:
        - row: Source row/offset of the candidate
        - reason: Validation failure description
    """
    pass


# ============================================================================
# Load Errors
# ============================================================================

class LoadError(ETLException):
    """Base exception for data loading failures."""
    pass


class ReconciliationAborted(LoadError):
    """
    Raised when the rejected-record ceiling is exceeded.

    Carries the partial result so the already applied work is still
    counted on the run.
    """

    def __init__(
        self,
        message: str,
        result: Any = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, context)
        self.result = result


# ============================================================================
# Stage Errors
# ============================================================================

class StageError(ETLException):
    """A stage handler could not satisfy its contract (e.g. nothing to import)."""
    pass
