"""
Custom exceptions for LogNexus.

Provides structured error handling with appropriate HTTP status codes
and error details for API responses.
"""

from typing import Any, Dict, Optional


class LogNexusException(Exception):
    """Base exception for LogNexus."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        error_code: str = "internal_error",
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}


class ValidationError(LogNexusException):
    """Raised when request validation fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(
            message=message,
            status_code=400,
            error_code="validation_error",
            details=details,
        )


class AuthenticationError(LogNexusException):
    """Raised when authentication fails."""

    def __init__(self, message: str = "Invalid or missing authentication token") -> None:
        super().__init__(
            message=message,
            status_code=401,
            error_code="authentication_error",
        )


class RuleConfigurationError(LogNexusException):
    """Raised when an alert rule is rejected at registration."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(
            message=message,
            status_code=400,
            error_code="rule_configuration_error",
            details=details,
        )


class DuplicateRuleError(RuleConfigurationError):
    """Raised when a rule id is already registered."""

    def __init__(self, rule_id: str) -> None:
        super().__init__(
            message=f"Rule with ID '{rule_id}' already exists",
            details={"rule_id": rule_id},
        )
        self.status_code = 409
        self.error_code = "duplicate_rule"


class RuleNotFoundError(LogNexusException):
    """Raised when a rule id is unknown."""

    def __init__(self, rule_id: str) -> None:
        super().__init__(
            message=f"Rule '{rule_id}' not found",
            status_code=404,
            error_code="rule_not_found",
            details={"rule_id": rule_id},
        )


class BatchSizeExceededError(LogNexusException):
    """Raised when a batch exceeds the configured maximum size."""

    def __init__(self, size: int, max_size: int) -> None:
        super().__init__(
            message=f"Batch size {size} exceeds maximum {max_size}",
            status_code=413,
            error_code="batch_size_exceeded",
            details={"size": size, "max_size": max_size},
        )


class BatchTimeoutError(LogNexusException):
    """Raised when a batch does not complete within its timeout."""

    def __init__(self, batch_id: str, timeout_ms: int) -> None:
        super().__init__(
            message="Batch processing timeout",
            status_code=504,
            error_code="batch_timeout",
            details={"batch_id": batch_id, "timeout_ms": timeout_ms},
        )


class DeliveryError(LogNexusException):
    """Raised when a delivery sink rejects a batch."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(
            message=message,
            status_code=502,
            error_code="delivery_error",
            details=details,
        )


class ExportFormatError(ValidationError):
    """Raised when an unsupported export format is requested."""

    def __init__(self, fmt: str) -> None:
        super().__init__(
            message=f"Unsupported export format '{fmt}'",
            details={"format": fmt, "supported": ["json", "csv"]},
        )
        self.error_code = "export_format_error"
