"""
Custom exceptions for the sync pipeline with structured error context.

Every stage raises from this hierarchy so the stage boundary can decide
whether a failure is worth another attempt. Each exception carries a
context dictionary that ends up in structured logs and in the job's
error column.

Exception Hierarchy:
    PipelineException (base)
    ├── ConnectorError
    │   ├── NetworkError (retryable)
    │   ├── RateLimitError (retryable)
    │   ├── AuthenticationError
    │   └── ResourceNotFoundError
    ├── PipelineValidationError
    │   ├── UnsupportedEntityTypeError
    │   ├── DataSourceNotFoundError
    │   ├── DataSourceInactiveError
    │   └── InvalidActionError
    ├── ProcessingError
    │   └── RecordNormalizationError
    ├── StorageError
    ├── PublishError (retryable)
    └── RetryableError / NonRetryableError (mixins)
"""

from typing import Optional, Dict, Any
from datetime import datetime, timezone


class PipelineException(Exception):
    """
    Base exception for all pipeline errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (tenant, data source, etc.)
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
        self.timestamp = datetime.now(timezone.utc)

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

    @property
    def retryable(self) -> bool:
        return not isinstance(self, NonRetryableError)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "retryable": self.retryable,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


def is_retryable(error: Exception) -> bool:
    """Unknown exceptions are treated as transient."""
    if isinstance(error, PipelineException):
        return error.retryable
    return True


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(PipelineException):
    """
    Mixin for errors that should trigger retry logic.

    Use this for transient errors like:
    - Network timeouts
    - Rate limiting (HTTP 429)
    - Bus publish failures
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        max_retries: int = 3,
        retry_delay: float = 1.0
    ):
        super().__init__(message, context, original_exception)
        self.max_retries = max_retries
        self.retry_delay = retry_delay


class NonRetryableError(PipelineException):
    """
    Mixin for errors that should NOT trigger retry logic.

    A job failed with one of these goes straight to the invalid state.
    """
    pass


# ============================================================================
# Connector Errors
# ============================================================================

class ConnectorError(PipelineException):
    """
    Base exception for failures talking to an external integration.

    Context should include:
        - url: The endpoint that failed
        - status_code: HTTP status code (if applicable)
        - retry_count: Number of retries attempted
    """
    pass


class NetworkError(RetryableError, ConnectorError):
    """Timeouts, connection resets and 5xx responses."""
    pass


class RateLimitError(RetryableError, ConnectorError):
    """Rate limiting errors (HTTP 429) that should be retried with backoff."""

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        retry_after: Optional[int] = None
    ):
        super().__init__(message, context, original_exception)
        self.retry_after = retry_after
        if retry_after:
            self.context["retry_after"] = retry_after


class AuthenticationError(NonRetryableError, ConnectorError):
    """Authentication failures (HTTP 401, 403) that should not be retried."""
    pass


class ResourceNotFoundError(NonRetryableError, ConnectorError):
    """Resource not found errors (HTTP 404) that should not be retried."""
    pass


# ============================================================================
# Validation Errors
# ============================================================================

class PipelineValidationError(NonRetryableError):
    """Configuration or job-level problems that another attempt cannot fix."""
    pass


class UnsupportedEntityTypeError(PipelineValidationError):
    """
    Raised when a job asks an integration for an entity type it does not sync.

    Context should include:
        - integration_id
        - entity_type
    """
    pass


class DataSourceNotFoundError(PipelineValidationError):
    """The job references a data source that no longer exists."""
    pass


class DataSourceInactiveError(PipelineValidationError):
    """The job references a data source that has been deactivated."""
    pass


class InvalidActionError(PipelineValidationError):
    """Job action is not of the form sync.<entityType>."""
    pass


# ============================================================================
# Processing Errors
# ============================================================================

class ProcessingError(PipelineException):
    """Base exception for failures while turning raw records into entities."""
    pass


class RecordNormalizationError(NonRetryableError, ProcessingError):
    """
    Raised when a single raw record cannot be normalized.

    Context should include:
        - integration_id
        - entity_type
        - external_id: Record identifier (if it could be read)
    """
    pass


# ============================================================================
# Infrastructure Errors
# ============================================================================

class StorageError(RetryableError):
    """
    Exception raised when a store operation fails.

    Context should include:
        - operation: query, insert, update, claim
        - table: Logical table name
    """
    pass


class PublishError(RetryableError):
    """The bus rejected a publish."""
    pass
