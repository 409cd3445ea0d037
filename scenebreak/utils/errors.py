"""
Custom exceptions for the scenebreak screenplay analysis system.

This module defines all custom exceptions used throughout the application.
Each family maps to one class of failure: format errors are permanent,
extraction and analysis failures are retried by their owning subsystem,
balance failures halt a project until resolved externally.
"""

from typing import Any, Optional


class ScenebreakError(Exception):
    """Base exception for all scenebreak-specific errors."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        """
        Initialize the exception.

        Args:
            message: Error message
            details: Optional dictionary with additional error details
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        """Return string representation of the error."""
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


# =============================================================================
# Format Exceptions
# =============================================================================


class FormatError(ScenebreakError):
    """Base exception for document format errors. Never retried."""

    pass


class UnrecognizedFormatError(FormatError):
    """Declared or inferred document format is not supported."""

    def __init__(self, format_hint: Any, supported: list[str]) -> None:
        """Initialize with format information."""
        message = (
            f"Format '{format_hint}' not recognized. "
            f"Supported formats: {', '.join(supported)}"
        )
        super().__init__(message, {"format": str(format_hint), "supported": supported})


class EmptyDocumentError(FormatError):
    """Document has no usable content."""

    pass


class MalformedStructureError(FormatError):
    """Document content does not have the expected screenplay structure."""

    pass


# =============================================================================
# Submission Exceptions
# =============================================================================


class SubmissionRejectedError(ScenebreakError):
    """Document failed pre-submission validation."""

    def __init__(
        self,
        filename: str,
        errors: list[str],
        warnings: Optional[list[str]] = None,
    ) -> None:
        """Initialize with every validation error found."""
        message = f"'{filename}' rejected: {'; '.join(errors)}"
        super().__init__(
            message,
            {"filename": filename, "errors": errors, "warnings": warnings or []},
        )
        self.errors = errors
        self.warnings = warnings or []


# =============================================================================
# Extraction Queue Exceptions
# =============================================================================


class ExtractionError(ScenebreakError):
    """Base exception for extraction queue errors."""

    pass


class ExtractionFailedError(ExtractionError):
    """Text extraction failed for a job attempt."""

    pass


class JobNotFoundError(ExtractionError):
    """Extraction job not found."""

    def __init__(self, job_id: str) -> None:
        """Initialize with job ID."""
        message = f"Extraction job '{job_id}' not found"
        super().__init__(message, {"job_id": job_id})


class QueueClosedError(ExtractionError):
    """Queue is not open for the requested operation."""

    pass


# =============================================================================
# Scene Analysis Exceptions
# =============================================================================


class AnalysisFailure(ScenebreakError):
    """Retryable failure of one analysis attempt."""

    pass


class AnalysisTimeoutError(AnalysisFailure):
    """Analysis call did not finish before its timeout."""

    def __init__(self, scene_number: int, timeout: float) -> None:
        """Initialize with timeout information."""
        message = f"Analysis of scene {scene_number} timed out after {timeout} seconds"
        super().__init__(message, {"scene_number": scene_number, "timeout": timeout})


class AnalysisServiceError(AnalysisFailure):
    """Network error or non-success response from the analysis service."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        """Initialize with the HTTP status when there was one."""
        details = {"status_code": status_code} if status_code is not None else {}
        super().__init__(message, details)
        self.status_code = status_code


class AnalysisSchemaError(AnalysisFailure):
    """Analysis payload is not JSON or does not match the required shape."""

    def __init__(self, problems: list[str]) -> None:
        """Initialize with the list of schema problems."""
        message = f"Analysis payload rejected: {'; '.join(problems[:5])}"
        if len(problems) > 5:
            message += f" (+{len(problems) - 5} more)"
        super().__init__(message, {"problems": problems})
        self.problems = problems


class SceneStateError(ScenebreakError):
    """Requested scene status transition is not allowed."""

    def __init__(self, scene_number: int, current: str, requested: str) -> None:
        """Initialize with transition information."""
        message = f"Scene {scene_number} cannot move from {current} to {requested}"
        super().__init__(
            message,
            {"scene_number": scene_number, "current": current, "requested": requested},
        )


class RetryLimitExceededError(ScenebreakError):
    """Scene has used every analysis attempt."""

    def __init__(self, scene_number: int, retry_count: int) -> None:
        """Initialize with retry information."""
        message = f"Scene {scene_number} has reached the retry limit ({retry_count} attempts)"
        super().__init__(message, {"scene_number": scene_number, "retry_count": retry_count})


# =============================================================================
# Consumption Exceptions
# =============================================================================


class InsufficientBalanceError(ScenebreakError):
    """Caller balance cannot cover the requested charge."""

    def __init__(self, caller_id: str, balance: int, required: int) -> None:
        """Initialize with balance information."""
        message = f"Insufficient balance for '{caller_id}': {balance} available, {required} required"
        super().__init__(
            message,
            {"caller_id": caller_id, "balance": balance, "required": required},
        )
        self.caller_id = caller_id
        self.balance = balance
        self.required = required


# =============================================================================
# Configuration Exceptions
# =============================================================================


class ConfigurationError(ScenebreakError):
    """Configuration error."""

    pass


class MissingConfigurationError(ConfigurationError):
    """Required configuration missing."""

    def __init__(self, config_name: str) -> None:
        """Initialize with config name."""
        message = f"Required configuration '{config_name}' is missing"
        super().__init__(message, {"config_name": config_name})
