"""Custom exception hierarchy for the WAL archiver."""

from typing import Any, Optional


class ArchiverError(Exception):
    """Base exception for all archiver errors."""

    def __init__(
        self,
        message: str,
        *,
        correlation_id: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        """Initialize archiver error.

        Args:
            message: Error message
            correlation_id: Optional correlation ID for tracing
            context: Optional context dictionary with additional details
        """
        super().__init__(message)
        self.message = message
        self.correlation_id = correlation_id
        self.context = context or {}

    def __str__(self) -> str:
        """Return formatted error message."""
        parts = [self.message]
        if self.correlation_id:
            parts.append(f"[correlation_id={self.correlation_id}]")
        if self.context:
            parts.append(f"[context={self.context}]")
        return " ".join(parts)


class ConfigurationError(ArchiverError):
    """Configuration-related errors."""

    pass


class WalValidationError(ArchiverError):
    """A WAL file failed the pre-archive sanity check."""

    reason = "invalid"


class WalNotFoundError(WalValidationError):
    """WAL file does not exist or cannot be opened."""

    reason = "not_found"


class WalTooSmallError(WalValidationError):
    """WAL file is smaller than the minimum archive size."""

    reason = "too_small"


class WalTooLargeError(WalValidationError):
    """WAL file is larger than a WAL segment can be."""

    reason = "too_large"


class AlreadyArchivedError(ArchiverError):
    """The destination already holds an archive for this WAL name."""

    reason = "already_archived"


class StageError(ArchiverError):
    """A pipeline stage failed to start or exited with a non-zero status."""

    reason = "stage"


class SinkError(ArchiverError):
    """Writing to, listing or deleting from the archive destination failed."""

    reason = "sink"


class S3Error(SinkError):
    """S3-related errors."""

    reason = "s3"


class CatalogError(ArchiverError):
    """Backup catalog errors."""

    pass


class RetentionPolicyError(ArchiverError):
    """Retention policy cannot be applied."""

    pass
