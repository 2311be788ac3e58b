"""
docsync - Base Service Class
============================

Provides common patterns and utilities for all services:
- Logging with bound context
- Error taxonomy shared by the pipeline
- Identifier validation

Error codes are stable strings so SyncLog details and CLI output can be
matched on them.
"""

import uuid
from abc import ABC
from typing import Optional, Any

import structlog

logger = structlog.get_logger(__name__)


class ServiceException(Exception):
    """Base exception for all service errors."""

    def __init__(self, message: str, code: str = "SERVICE_ERROR", details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code, "details": self.details}


class ConfigurationException(ServiceException):
    """Invalid configuration error."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message, code="CONFIGURATION_ERROR", details=details)


class ValidationError(ServiceException):
    """Input validation error, raised before any I/O happens."""

    def __init__(self, message: str, field: Optional[str] = None, details: Optional[dict] = None):
        details = details or {}
        if field:
            details["field"] = field
        super().__init__(message, code="VALIDATION_ERROR", details=details)


class NotFoundError(ServiceException):
    """Resource not found error."""

    def __init__(self, resource_type: str, resource_id: Any, details: Optional[dict] = None):
        message = f"{resource_type} not found: {resource_id}"
        details = details or {}
        details["resource_type"] = resource_type
        details["resource_id"] = str(resource_id)
        super().__init__(message, code="NOT_FOUND", details=details)


class JobStateError(ServiceException):
    """An operation was attempted on a job in the wrong state."""

    def __init__(self, message: str, current: Optional[str] = None, details: Optional[dict] = None):
        details = details or {}
        if current:
            details["current_status"] = current
        super().__init__(message, code="INVALID_JOB_STATE", details=details)


class AuthError(ServiceException):
    """Platform rejected the stored secret (invalid, expired or revoked)."""

    def __init__(self, platform: str, message: str, details: Optional[dict] = None):
        details = details or {}
        details["platform"] = platform
        super().__init__(message, code="AUTH_ERROR", details=details)


class DownloadError(ServiceException):
    """Remote content could not be retrieved. Retryable."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message, code="DOWNLOAD_ERROR", details=details)


class ConversionError(ServiceException):
    """Input is malformed or unsupported. Never retried."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message, code="CONVERSION_ERROR", details=details)


class IntegrityError(ServiceException):
    """Encrypted credential blob failed authentication."""

    def __init__(self, message: str = "Credential blob failed integrity check", details: Optional[dict] = None):
        super().__init__(message, code="INTEGRITY_ERROR", details=details)


class BaseService(ABC):
    """
    Base class for all services.

    Provides:
    - Structured logging with service context
    - Common utility methods

    Usage:
        class MyService(BaseService):
            async def my_operation(self, source_id: str) -> Result:
                self.log_info("Starting operation", source_id=source_id)
                try:
                    ...
                except Exception as e:
                    self.log_error("Operation failed", error=e)
                    raise
    """

    def __init__(self, **context: Any):
        """
        Initialize service with optional logging context.

        Args:
            **context: Key/value pairs bound to every log line of this service
        """
        self._context = {k: v for k, v in context.items() if v is not None}
        self._logger = structlog.get_logger(self.__class__.__name__).bind(**self._context)

    def log_info(self, message: str, **kwargs):
        """Log info with service context."""
        self._logger.info(message, **kwargs)

    def log_debug(self, message: str, **kwargs):
        """Log debug with service context."""
        self._logger.debug(message, **kwargs)

    def log_warning(self, message: str, **kwargs):
        """Log warning with service context."""
        self._logger.warning(message, **kwargs)

    def log_error(self, message: str, error: Optional[Exception] = None, **kwargs):
        """Log error with service context and optional exception."""
        self._logger.error(
            message,
            error=str(error) if error else None,
            exc_info=error is not None,
            **kwargs,
        )

    def validate_uuid(self, value: Any, field_name: str = "id") -> uuid.UUID:
        """
        Validate and convert a value to UUID.

        Raises:
            ValidationError: If value is not a valid UUID
        """
        if isinstance(value, uuid.UUID):
            return value

        if isinstance(value, str):
            try:
                return uuid.UUID(value)
            except ValueError:
                pass

        raise ValidationError(f"Invalid {field_name}: {value!r}", field=field_name)
