"""Custom exception hierarchy for the partition archiver."""

from enum import Enum
from typing import Any, Optional


class ArchiverError(Exception):
    """Base exception for all partition archiver errors."""

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
            correlation_id: Optional correlation ID (run id) for tracing
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


class ConfigurationNotFoundError(ConfigurationError):
    """No archival configuration row matches the source table."""

    pass


class ConfigurationInactiveError(ConfigurationError):
    """Archival configuration exists but is not active."""

    pass


class PreconditionError(ArchiverError):
    """A run precondition failed before any partition work started."""

    pass


class RelationNotFoundError(PreconditionError):
    """A required relation does not exist."""

    pass


class TableNotPartitionedError(PreconditionError):
    """The source table is not partitioned."""

    pass


class StructuralErrorKind(Enum):
    """Causes of exchange incompatibility, in validation order."""

    SOURCE_MISSING = 20010
    ARCHIVE_MISSING = 20011
    STAGING_MISSING = 20012
    ARCHIVE_NOT_PARTITIONED = 20013
    STAGING_PARTITIONED = 20014
    COLUMN_COUNT_MISMATCH = 20015
    ARCHIVE_COLUMN_MISMATCH = 20016
    STAGING_COLUMN_MISMATCH = 20017
    PARTITION_KEY_MISMATCH = 20018

    @property
    def code(self) -> int:
        """Numeric cause code."""
        return self.value


class StructuralError(PreconditionError):
    """Source, archive and staging relations are not exchange-compatible."""

    def __init__(
        self,
        kind: StructuralErrorKind,
        message: str,
        *,
        correlation_id: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        """Initialize structural error.

        Args:
            kind: Which compatibility check failed
            message: Error message
            correlation_id: Optional correlation ID for tracing
            context: Optional context dictionary with additional details
        """
        super().__init__(message, correlation_id=correlation_id, context=context)
        self.kind = kind


class DatabaseError(ArchiverError):
    """Database-related errors."""

    pass


class ExchangeError(ArchiverError):
    """A partition exchange step failed for one partition-date."""

    pass


class LockError(ArchiverError):
    """Run serialization lock errors."""

    pass


class TransactionError(ArchiverError):
    """Transaction-related errors."""

    pass
