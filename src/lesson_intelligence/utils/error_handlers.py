"""
Error handling utilities for the Lesson Intelligence System.

This module provides the exception hierarchy used throughout the pipeline and
helpers that decide whether a failure is worth retrying.

Classes:
    PipelineError: Base exception for all pipeline errors.
    CapabilityError: Base for failures of an external capability call.
    TransientCapabilityError: Capability failure that may succeed on retry.
    PermanentCapabilityError: Capability failure that will not succeed on retry.
    DocumentParseError: Source document cannot be opened or read.
    FatalStageError: A fatal-policy stage could not complete.
    DatabaseError: Exception for row store operation errors.
    BlobStoreError: Exception for blob store operation errors.
    ConfigurationError: Exception for configuration and contract errors.
    JobStateError: Illegal job state transition.
    JobNotFoundError: Unknown job, or a job owned by another user.

Functions:
    log_error_with_context: Log error with full context for debugging.
    is_retriable_error: Determine if an error should trigger a retry.
    get_retry_delay: Calculate retry delay using exponential backoff.
"""

import logging
import random
import traceback
from typing import Any, Dict, Optional


class PipelineError(Exception):
    """
    Base exception for pipeline errors.

    Attributes:
        message: Error message describing what went wrong.
        job_id: Optional identifier of the job being processed.
        stage: Optional pipeline stage where the error occurred.
        recoverable: Whether the error is recoverable with retry.
        original_error: Optional underlying exception that was wrapped.
    """

    def __init__(
        self,
        message: str,
        job_id: Optional[str] = None,
        stage: Optional[str] = None,
        recoverable: bool = False,
        original_error: Optional[Exception] = None,
    ):
        self.message = message
        self.job_id = job_id
        self.stage = stage
        self.recoverable = recoverable
        self.original_error = original_error
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert exception to dictionary for logging and storage.

        Returns:
            Dictionary containing error_type, message, job_id, stage,
            recoverable status, and original error information if available.
        """
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "job_id": self.job_id,
            "stage": self.stage,
            "recoverable": self.recoverable,
        }

        if self.original_error:
            result["original_error_type"] = type(self.original_error).__name__
            result["original_error_message"] = str(self.original_error)

        return result


class CapabilityError(PipelineError):
    """
    Failure of an external capability (rasterizer, LLM, speech, storage).

    Attributes:
        capability: Name of the failing capability (e.g. 'openai', 'rasterizer').
        status_code: Optional HTTP status code reported by the provider.
    """

    def __init__(
        self,
        message: str,
        capability: Optional[str] = None,
        status_code: Optional[int] = None,
        job_id: Optional[str] = None,
        stage: Optional[str] = None,
        recoverable: bool = False,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            message=message,
            job_id=job_id,
            stage=stage,
            recoverable=recoverable,
            original_error=original_error,
        )
        self.capability = capability
        self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["capability"] = self.capability
        result["status_code"] = self.status_code
        return result


class TransientCapabilityError(CapabilityError):
    """Rate limit, timeout or temporary network failure. Always retriable."""

    def __init__(
        self,
        message: str,
        capability: Optional[str] = None,
        status_code: Optional[int] = None,
        job_id: Optional[str] = None,
        stage: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            message=message,
            capability=capability,
            status_code=status_code,
            job_id=job_id,
            stage=stage,
            recoverable=True,
            original_error=original_error,
        )


class PermanentCapabilityError(CapabilityError):
    """Bad input, authentication failure or unusable output. Never retried."""

    def __init__(
        self,
        message: str,
        capability: Optional[str] = None,
        status_code: Optional[int] = None,
        job_id: Optional[str] = None,
        stage: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            message=message,
            capability=capability,
            status_code=status_code,
            job_id=job_id,
            stage=stage,
            recoverable=False,
            original_error=original_error,
        )


class DocumentParseError(PermanentCapabilityError):
    """
    Exception for source documents that cannot be opened or rendered.

    Attributes:
        page_number: Optional page number where the error occurred.
    """

    def __init__(
        self,
        message: str,
        job_id: Optional[str] = None,
        page_number: Optional[int] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            message=message,
            capability="rasterizer",
            job_id=job_id,
            stage="ingest",
            original_error=original_error,
        )
        self.page_number = page_number

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["page_number"] = self.page_number
        return result


class FatalStageError(PipelineError):
    """
    A stage with a fatal failure policy could not complete.

    Attributes:
        unit_index: Optional index of the unit whose failure was fatal.
    """

    def __init__(
        self,
        message: str,
        job_id: Optional[str] = None,
        stage: Optional[str] = None,
        unit_index: Optional[int] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            message=message,
            job_id=job_id,
            stage=stage,
            recoverable=False,
            original_error=original_error,
        )
        self.unit_index = unit_index

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["unit_index"] = self.unit_index
        return result


class DatabaseError(PipelineError):
    """
    Exception for database operation errors.

    Attributes:
        operation: Name of the database operation that failed.
    """

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        job_id: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            message=message,
            job_id=job_id,
            stage="database",
            recoverable=False,
            original_error=original_error,
        )
        self.operation = operation

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["operation"] = self.operation
        return result


class BlobStoreError(PipelineError):
    """
    Exception for blob store errors.

    Attributes:
        key: Blob key involved in the failed operation.
        operation: Name of the failed operation ('put', 'get', 'sign', ...).
    """

    def __init__(
        self,
        message: str,
        key: Optional[str] = None,
        operation: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            message=message,
            stage="storage",
            recoverable=False,
            original_error=original_error,
        )
        self.key = key
        self.operation = operation

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["key"] = self.key
        result["operation"] = self.operation
        return result


class ConfigurationError(PipelineError):
    """
    Exception for configuration errors.

    Attributes:
        config_key: Optional configuration key that caused the error.
    """

    def __init__(self, message: str, config_key: Optional[str] = None):
        super().__init__(message=message, stage="configuration", recoverable=False)
        self.config_key = config_key

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["config_key"] = self.config_key
        return result


class JobStateError(PipelineError):
    """
    Illegal job status transition.

    Attributes:
        current_status: Status the job was in.
        requested_status: Status that was requested.
    """

    def __init__(
        self,
        message: str,
        job_id: Optional[str] = None,
        current_status: Optional[str] = None,
        requested_status: Optional[str] = None,
    ):
        super().__init__(message=message, job_id=job_id, recoverable=False)
        self.current_status = current_status
        self.requested_status = requested_status

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["current_status"] = self.current_status
        result["requested_status"] = self.requested_status
        return result


class JobNotFoundError(PipelineError):
    """Job does not exist or is not visible to the requesting user."""

    def __init__(self, job_id: str):
        super().__init__(message=f"Job not found: {job_id}", job_id=job_id)


def log_error_with_context(
    error: Exception, logger: logging.Logger, context: Dict[str, Any]
) -> None:
    """
    Log error with comprehensive context information for debugging.

    Args:
        error: The exception that occurred.
        logger: Logger instance to use for logging.
        context: Dictionary with contextual information (job_id, stage, etc.).

    Note:
        Stack traces are only logged when logger is at DEBUG level or lower.
    """
    error_type = type(error).__name__
    job_id = context.get("job_id", "unknown")
    stage = context.get("stage", "unknown")

    logger.error(
        f"Error in {stage} for job {job_id}: [{error_type}] {error}",
        extra={"job_id": job_id, "stage": stage},
    )

    if isinstance(error, PipelineError) and error.original_error:
        original_type = type(error.original_error).__name__
        logger.error(f"  Original error: [{original_type}] {error.original_error}")

    for key, value in context.items():
        if key not in ("job_id", "stage"):
            logger.error(f"  {key}: {value}")

    if logger.isEnabledFor(logging.DEBUG):
        logger.debug("Stack trace:")
        logger.debug(traceback.format_exc())


def is_retriable_error(error: Exception) -> bool:
    """
    Determine if an error should trigger a retry attempt.

    Args:
        error: The exception to evaluate.

    Returns:
        True for transient capability errors, network errors and HTTP 429;
        False for everything else.

    Note:
        - PipelineError instances use their recoverable flag.
        - Network errors (ConnectionError, TimeoutError) are retriable.
        - Programming errors (TypeError, KeyError, ...) are never retriable.

    Example:
        >>> is_retriable_error(TransientCapabilityError("429 from provider"))
        True
        >>> is_retriable_error(PermanentCapabilityError("invalid api key"))
        False
    """
    if isinstance(error, PipelineError):
        return error.recoverable

    if isinstance(error, (ConnectionError, TimeoutError)):
        return True

    if getattr(error, "status_code", None) == 429:
        return True

    return False


def get_retry_delay(
    attempt: int,
    base_delay: float = 1.0,
    backoff_base: float = 2.0,
    max_delay: float = 60.0,
    jitter: float = 0.0,
) -> float:
    """
    Calculate retry delay using exponential backoff with cap and jitter.

    delay = min(base_delay * backoff_base^(attempt-1), max_delay), then a
    random fraction of up to `jitter` of that delay is added.

    Args:
        attempt: Current retry attempt number (1-indexed). First retry is 1.
        base_delay: Delay in seconds before the first retry.
        backoff_base: Multiplier applied per additional attempt.
        max_delay: Upper bound of the backoff before jitter.
        jitter: Maximum random fraction added to the delay (0 disables).

    Returns:
        Delay in seconds.

    Example:
        >>> get_retry_delay(1)
        1.0
        >>> get_retry_delay(5)
        16.0
        >>> get_retry_delay(10)
        60.0
    """
    delay = min(base_delay * (backoff_base ** (attempt - 1)), max_delay)
    if jitter > 0:
        delay += random.uniform(0, jitter * delay)
    return delay
