# src/photo_bundler/exceptions.py

"""
Shared custom exceptions for the photo bundle worker.

Centralizing exception definitions in a separate module prevents circular
import errors between other modules that need to raise or catch them.

Exception Hierarchy:
- BundlerError (base)
  - RetryableError (can be retried)
    - S3ThrottlingError
    - S3TimeoutError
    - QueueReceiveError
  - NonRetryableError (should not be retried)
    - ValidationError
      - InvalidJobMessageError
    - ConfigurationError
    - S3AccessDeniedError
    - S3UploadError
    - QueueAcknowledgeError
    - UploadStateError
  - ItemError (absorbed per media item)
    - FetchFailedError
    - ArchiveWriteFailedError
  - JobFailedError (terminal for the job)
    - AllItemsFailedError
    - PartUploadFailedError
    - ArchiveStreamAbortedError
  - NotificationFailedError
"""

from typing import Any, Dict, Optional


class BundlerError(Exception):
    """Base exception for all photo bundle worker errors."""

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
        self.context = dict(context) if context else {}  # Copy context to prevent mutation
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


class RetryableError(BundlerError):
    """Base class for errors that can be retried."""
    pass


class NonRetryableError(BundlerError):
    """Base class for errors that should not be retried."""
    pass


# === Object Storage Errors ===

class S3Error(BundlerError):
    """Base class for object storage errors."""
    pass


class S3AccessDeniedError(S3Error, NonRetryableError):
    """Raised when access is denied to a bucket or object."""

    def __init__(self, bucket: str, key: str, **kwargs):
        message = f"Access denied to S3 object: s3://{bucket}/{key}"
        context = {"bucket": bucket, "key": key}
        context.update(kwargs.pop("context", None) or {})
        super().__init__(message, error_code="S3_ACCESS_DENIED", context=context, **kwargs)


class S3ThrottlingError(S3Error, RetryableError):
    """Raised when object storage operations are being throttled."""

    def __init__(self, operation: str, **kwargs):
        message = f"S3 operation throttled: {operation}"
        context = {"operation": operation}
        context.update(kwargs.pop("context", None) or {})
        super().__init__(message, error_code="S3_THROTTLING", context=context, **kwargs)


class S3TimeoutError(S3Error, RetryableError):
    """Raised when object storage operations time out or cannot connect."""

    def __init__(self, operation: str, **kwargs):
        message = f"S3 operation timed out: {operation}"
        context = {"operation": operation}
        context.update(kwargs.pop("context", None) or {})
        super().__init__(message, error_code="S3_TIMEOUT", context=context, **kwargs)


class S3UploadError(S3Error, NonRetryableError):
    """Raised for any other client error returned by the object store."""

    def __init__(self, operation: str, reason: str, **kwargs):
        message = f"S3 {operation} failed: {reason}"
        context = {"operation": operation, "reason": reason}
        context.update(kwargs.pop("context", None) or {})
        super().__init__(message, error_code="S3_CLIENT_ERROR", context=context, **kwargs)


# === Queue Errors ===

class QueueReceiveError(RetryableError):
    """Raised when the job queue cannot be polled."""

    def __init__(self, reason: str, **kwargs):
        message = f"Failed to receive from job queue: {reason}"
        context = {"reason": reason}
        context.update(kwargs.pop("context", None) or {})
        super().__init__(message, error_code="QUEUE_RECEIVE_FAILED", context=context, **kwargs)


class QueueAcknowledgeError(NonRetryableError):
    """Raised when a queue message cannot be deleted or released."""

    def __init__(self, message_id: str, reason: str, **kwargs):
        message = f"Failed to update queue message {message_id}: {reason}"
        context = {"message_id": message_id, "reason": reason}
        super().__init__(message, error_code="QUEUE_ACK_FAILED", context=context, **kwargs)


# === Validation Errors ===

class ValidationError(NonRetryableError):
    """Base class for validation errors."""
    pass


class InvalidJobMessageError(ValidationError):
    """Raised when a queue message body cannot be turned into a Job."""

    def __init__(self, message: str, **kwargs):
        if "error_code" not in kwargs:
            kwargs["error_code"] = "INVALID_JOB_MESSAGE"
        super().__init__(message, **kwargs)


class ConfigurationError(NonRetryableError):
    """Raised when there's an error in the worker configuration."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, error_code="CONFIGURATION_ERROR", **kwargs)


# === Per-Item Errors (absorbed into the job outcome) ===

class ItemError(BundlerError):
    """Base class for failures that only skip one media item."""
    pass


class FetchFailedError(ItemError):
    """Raised when a media URL cannot be fetched (HTTP error, timeout, redirects)."""

    def __init__(self, url: str, reason: str, status_code: int | None = None, **kwargs):
        message = f"Fetch failed: {reason}"
        context = {"url": url, "reason": reason, "status_code": status_code}
        super().__init__(message, error_code="FETCH_FAILED", context=context, **kwargs)
        self.reason = reason
        self.status_code = status_code


class ArchiveWriteFailedError(ItemError):
    """Raised when a source stream breaks before its entry could be written."""

    def __init__(self, entry_name: str, reason: str, **kwargs):
        message = f"Archive entry '{entry_name}' failed: {reason}"
        context = {"entry_name": entry_name, "reason": reason}
        super().__init__(message, error_code="ARCHIVE_WRITE_FAILED", context=context, **kwargs)
        self.reason = reason


# === Job-Fatal Errors ===

class JobFailedError(BundlerError):
    """Base class for failures that terminate the job."""
    pass


class AllItemsFailedError(JobFailedError):
    """Raised when a job produced zero archive entries."""

    def __init__(self, reason: str, failed_count: int = 0, **kwargs):
        message = reason
        context = {"failed_count": failed_count}
        super().__init__(message, error_code="ALL_ITEMS_FAILED", context=context, **kwargs)


class PartUploadFailedError(JobFailedError):
    """Raised when one multipart part exhausted its retries."""

    def __init__(self, part_number: int, attempts: int, reason: str, **kwargs):
        message = f"Upload of part {part_number} failed after {attempts} attempts: {reason}"
        context = {"part_number": part_number, "attempts": attempts, "reason": reason}
        super().__init__(message, error_code="PART_UPLOAD_FAILED", context=context, **kwargs)
        self.part_number = part_number


class ArchiveStreamAbortedError(JobFailedError):
    """Raised on the producer side of the byte pipe once the consumer gave up."""

    def __init__(self, reason: str, **kwargs):
        super().__init__(
            f"Archive stream aborted: {reason}",
            error_code="ARCHIVE_STREAM_ABORTED",
            context={"reason": reason},
            **kwargs,
        )


class UploadStateError(NonRetryableError):
    """Raised on an illegal multipart upload state transition."""

    def __init__(self, operation: str, state: str, **kwargs):
        message = f"Cannot {operation} while upload is {state}"
        context = {"operation": operation, "state": state}
        super().__init__(message, error_code="UPLOAD_STATE_ERROR", context=context, **kwargs)


# === Notification Errors ===

class NotificationFailedError(BundlerError):
    """Raised when a webhook endpoint does not accept a notification."""

    def __init__(self, endpoint: str, reason: str, **kwargs):
        message = f"Notification to {endpoint} failed: {reason}"
        context = {"endpoint": endpoint, "reason": reason}
        super().__init__(message, error_code="NOTIFICATION_FAILED", context=context, **kwargs)


# === Utility Functions ===

def get_error_context(error: Exception) -> Dict[str, Any]:
    """Extract error context for logging."""
    if isinstance(error, BundlerError):
        return error.to_dict()
    else:
        return {
            "error_type": error.__class__.__name__,
            "error_message": str(error),
            "retryable": False,  # Unknown errors default to non-retryable
        }
