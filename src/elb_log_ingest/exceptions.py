# src/elb_log_ingest/exceptions.py

"""
Shared custom exceptions for the ELB Log Ingest service.

Centralizing exception definitions in a separate module prevents circular
import errors between other modules that need to raise or catch them.

Exception Hierarchy:
- LogIngestError (base)
  - RetryableError (can be retried by the caller)
    - S3ThrottlingError
    - S3TimeoutError
    - BulkIndexError
    - IndexingTimeoutError
    - IngestBatchError
  - NonRetryableError (should not be retried)
    - ValidationError
      - InvalidS3EventError
    - S3AccessDeniedError
    - S3ObjectNotFoundError
    - ConfigurationError
    - GrokPatternError

Line-, member- and item-level problems are never raised; they are counted
on the per-file stats instead.
"""

from typing import Any, Dict, Optional


class LogIngestError(Exception):
    """Base exception for all ELB Log Ingest errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.context = dict(context) if context else {}
        self.correlation_id = correlation_id

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for structured logging."""
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "error_message": self.message,
            "context": self.context,
            "correlation_id": self.correlation_id,
            "retryable": isinstance(self, RetryableError),
        }


class RetryableError(LogIngestError):
    """Base class for errors that can be retried."""

    pass


class NonRetryableError(LogIngestError):
    """Base class for errors that should not be retried."""

    pass


# === S3-Related Errors ===


class S3Error(LogIngestError):
    """Base class for S3-related errors."""

    pass


class S3ObjectNotFoundError(S3Error, NonRetryableError):
    """Raised when a requested S3 object does not exist."""

    def __init__(self, bucket: str, key: str, **kwargs):
        message = f"S3 object not found: s3://{bucket}/{key}"
        context = {"bucket": bucket, "key": key}
        context.update(kwargs.pop("context", None) or {})
        super().__init__(
            message, error_code="S3_OBJECT_NOT_FOUND", context=context, **kwargs
        )


class S3AccessDeniedError(S3Error, NonRetryableError):
    """Raised when access is denied to an S3 object."""

    def __init__(self, bucket: str, key: str, **kwargs):
        message = f"Access denied to S3 object: s3://{bucket}/{key}"
        context = {"bucket": bucket, "key": key}
        context.update(kwargs.pop("context", None) or {})
        super().__init__(
            message, error_code="S3_ACCESS_DENIED", context=context, **kwargs
        )


class S3ThrottlingError(S3Error, RetryableError):
    """Raised when S3 operations are being throttled."""

    def __init__(self, operation: str, **kwargs):
        message = f"S3 operation throttled: {operation}"
        context = {"operation": operation}
        context.update(kwargs.pop("context", None) or {})
        super().__init__(message, error_code="S3_THROTTLING", context=context, **kwargs)


class S3TimeoutError(S3Error, RetryableError):
    """Raised when S3 operations time out or the endpoint is unreachable."""

    def __init__(self, operation: str, **kwargs):
        message = f"S3 operation timed out: {operation}"
        context = {}
        context.update(kwargs.pop("context", None) or {})
        context["operation"] = operation
        super().__init__(message, error_code="S3_TIMEOUT", context=context, **kwargs)


class S3ClientError(S3Error, NonRetryableError):
    """Raised for any other S3 client error."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("error_code", "S3_CLIENT_ERROR")
        super().__init__(message, **kwargs)


# === Validation Errors ===


class ValidationError(NonRetryableError):
    """Base class for validation errors."""

    pass


class InvalidS3EventError(ValidationError):
    """Raised when an S3 event notification is malformed."""

    def __init__(self, message: str, **kwargs):
        if "error_code" not in kwargs:
            kwargs["error_code"] = "INVALID_S3_EVENT"
        super().__init__(message, **kwargs)


# === Indexing Errors ===


class IndexingError(LogIngestError):
    """Base class for errors raised by the indexing stage."""

    pass


class BulkIndexError(IndexingError, RetryableError):
    """Raised when a bulk request fails as a whole."""

    def __init__(self, reason: str, **kwargs):
        message = f"Bulk index request failed: {reason}"
        context = {"reason": reason}
        context.update(kwargs.pop("context", None) or {})
        super().__init__(
            message, error_code="BULK_INDEX_FAILED", context=context, **kwargs
        )


class IndexingTimeoutError(IndexingError, RetryableError):
    """Raised when not enough invocation time is left to run a flush."""

    def __init__(self, remaining_time_ms: int, **kwargs):
        message = f"Insufficient time remaining for bulk flush: {remaining_time_ms}ms"
        context = {"remaining_time_ms": remaining_time_ms}
        context.update(kwargs.pop("context", None) or {})
        super().__init__(
            message, error_code="INDEXING_TIMEOUT", context=context, **kwargs
        )


class IngestBatchError(RetryableError):
    """Raised when one or more files of a directly-invoked event failed."""

    def __init__(self, failed_keys: list[str], **kwargs):
        message = f"{len(failed_keys)} file(s) failed to ingest"
        context = {"failed_keys": list(failed_keys)}
        super().__init__(
            message, error_code="INGEST_BATCH_FAILED", context=context, **kwargs
        )


# === Configuration Errors ===


class ConfigurationError(NonRetryableError):
    """Raised when there's an error in the application configuration."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, error_code="CONFIGURATION_ERROR", **kwargs)


class GrokPatternError(NonRetryableError):
    """Raised when a grok pattern definition cannot be compiled."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, error_code="GROK_PATTERN_ERROR", **kwargs)


# === Utility Functions ===


def is_retryable_error(error: Exception) -> bool:
    """Check if an error is retryable."""
    return isinstance(error, RetryableError)


def get_error_context(error: Exception) -> Dict[str, Any]:
    """Extract error context for logging."""
    if isinstance(error, LogIngestError):
        return error.to_dict()
    else:
        return {
            "error_type": error.__class__.__name__,
            "error_message": str(error),
            "retryable": False,  # Unknown errors default to non-retryable
        }
