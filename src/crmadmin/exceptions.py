"""
Exception classes for crmadmin.
"""

from typing import Any, Dict, Optional


class CrmAdminError(Exception):
    """Base exception for all crmadmin errors."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.cause = cause

    def __str__(self) -> str:
        result = self.message
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            result += f" [{details_str}]"
        if self.cause:
            result += f" (caused by: {self.cause})"
        return result


class ConfigurationError(CrmAdminError):
    """Raised when there's an error in configuration."""

    pass


class ValidationError(CrmAdminError):
    """Raised when operator input is rejected before any side effect."""

    pass


class SameNameError(ValidationError):
    """Raised when a rename would leave the column identifier unchanged."""

    pass


class DuplicateError(CrmAdminError):
    """Raised when a unique value (email, phone number, column name) is already taken."""

    def __init__(
        self,
        field: str,
        value: Optional[str] = None,
        cause: Optional[Exception] = None,
    ) -> None:
        message = f"A record with this {field.replace('_', ' ')} already exists"
        details = {"field": field}
        if value is not None:
            details["value"] = value
        super().__init__(message, details, cause)
        self.field = field
        self.value = value


class NotFoundError(CrmAdminError):
    """Raised when a record addressed by identifier does not exist."""

    pass


class AuthenticationError(CrmAdminError):
    """Raised when credentials or session tokens are rejected."""

    pass


class DatabaseError(CrmAdminError):
    """Raised when there's an error with database operations."""

    pass


class DatabaseConnectionError(DatabaseError):
    """Raised when there's an error establishing or maintaining database connections."""

    pass


class DatabaseConfigurationError(DatabaseError):
    """Raised when there's an error in database configuration."""

    pass


class SchemaError(DatabaseError):
    """Raised when a structural change against the live table fails."""

    pass


class MetadataError(DatabaseError):
    """Raised when a metadata or user record cannot be written or read."""

    pass


class InconsistencyError(SchemaError):
    """Raised when the live table and the column metadata no longer mirror each other."""

    def __init__(
        self,
        kind: str,
        column_name: str,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ) -> None:
        super().__init__(
            f"Schema and metadata out of sync: {kind} '{column_name}'",
            details,
            cause,
        )
        self.kind = kind
        self.column_name = column_name
