"""Dealhook exception hierarchy.

Provides structured exceptions for error handling throughout the codebase.
All exceptions inherit from DealhookError for easy catching.
"""

from __future__ import annotations


class DealhookError(Exception):
    """Base exception for all Dealhook errors.

    Attributes:
        message: Human-readable error description.
        code: Machine-readable error code for API responses.
    """

    code: str = "dealhook_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
            }
        }


class ValidationError(DealhookError):
    """Invalid input provided.

    Raised when a subscription registration or update fails validation,
    including a failed endpoint check.

    Attributes:
        field: The field that failed validation.
        message: Description of the validation failure.
    """

    code: str = "validation_error"

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        super().__init__(f"{field}: {message}")

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "field": self.field,
                "message": self.message,
            }
        }


class NotFoundError(DealhookError):
    """Resource not found.

    Attributes:
        resource_type: Type of resource ("subscription", "delivery").
        resource_id: ID of the missing resource.
    """

    code: str = "not_found"

    def __init__(self, resource_type: str, resource_id: str) -> None:
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(f"{resource_type} not found: {resource_id}")

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "resource_type": self.resource_type,
                "resource_id": self.resource_id,
                "message": self.message,
            }
        }


class StorageError(DealhookError):
    """Storage operation failed."""

    code: str = "storage_error"


class TransportError(DealhookError):
    """A delivery attempt failed before any HTTP response was received.

    Covers timeouts, DNS failures and refused connections. The dispatcher
    catches it and records the delivery as failed.

    Attributes:
        url: Endpoint the attempt was sent to.
    """

    code: str = "transport_error"

    def __init__(self, message: str, url: str | None = None) -> None:
        self.url = url
        super().__init__(message)


class ConfigurationError(DealhookError):
    """Configuration error.

    Raised when required configuration is missing or invalid.
    """

    code: str = "configuration_error"
