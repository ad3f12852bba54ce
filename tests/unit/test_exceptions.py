"""Unit tests for exception classes."""

from partition_archiver.exceptions import (
    ArchiverError,
    ConfigurationError,
    ConfigurationInactiveError,
    ConfigurationNotFoundError,
    DatabaseError,
    ExchangeError,
    LockError,
    PreconditionError,
    RelationNotFoundError,
    StructuralError,
    StructuralErrorKind,
    TableNotPartitionedError,
    TransactionError,
)


def test_archiver_error_basic() -> None:
    """Test basic ArchiverError."""
    error = ArchiverError("Test error")
    assert str(error) == "Test error"
    assert error.message == "Test error"
    assert error.correlation_id is None
    assert error.context == {}


def test_archiver_error_with_correlation_id() -> None:
    """Test ArchiverError with correlation ID."""
    error = ArchiverError("Test error", correlation_id="abc123")
    assert "abc123" in str(error)
    assert error.correlation_id == "abc123"


def test_archiver_error_with_context() -> None:
    """Test ArchiverError with context."""
    error = ArchiverError("Test error", context={"source": "public.sales"})
    assert error.context == {"source": "public.sales"}
    assert "public.sales" in str(error)


def test_structural_error_carries_kind() -> None:
    error = StructuralError(StructuralErrorKind.STAGING_PARTITIONED, "Staging is partitioned")
    assert error.kind is StructuralErrorKind.STAGING_PARTITIONED
    assert error.kind.code == 20014
    assert error.message == "Staging is partitioned"


def test_error_hierarchy() -> None:
    """Test exception hierarchy."""
    assert issubclass(ConfigurationError, ArchiverError)
    assert issubclass(ConfigurationNotFoundError, ConfigurationError)
    assert issubclass(ConfigurationInactiveError, ConfigurationError)
    assert issubclass(PreconditionError, ArchiverError)
    assert issubclass(RelationNotFoundError, PreconditionError)
    assert issubclass(TableNotPartitionedError, PreconditionError)
    assert issubclass(StructuralError, PreconditionError)
    for error_class in (DatabaseError, ExchangeError, LockError, TransactionError):
        assert issubclass(error_class, ArchiverError)
