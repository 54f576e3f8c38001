from __future__ import annotations


class ConfigError(RuntimeError):
    """Raised when configuration is missing or invalid."""


class ValidationError(ValueError):
    """Raised when an ingestion payload is malformed; nothing is written."""


class ExternalServiceError(RuntimeError):
    """Raised when the vision analysis service is unreachable or returns garbage."""


class StorageError(RuntimeError):
    """Raised when reading or writing state in SQLite fails."""


class ExportError(RuntimeError):
    """Raised when writing an export file fails."""
