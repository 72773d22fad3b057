from __future__ import annotations


class ExportError(RuntimeError):
    """Base class for failures that abort an export run."""


class ConfigError(ExportError):
    """Missing or invalid configuration."""


class AuthError(ExportError):
    """Credential exchange or validation failed, or no credential source is configured."""


class QueryError(ExportError):
    """Non-success response from the query API."""

    def __init__(self, message: str, status: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.body = body


class PlanningError(ExportError):
    """Submit succeeded but the response lacks a query handle."""


class WriteError(ExportError):
    """Output file could not be opened or written."""


class StorageError(ExportError):
    """Object storage call failed."""
