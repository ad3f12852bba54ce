"""Execution log records and the out-of-band trace channel.

Execution log rows are written on the partition-date transaction, so they
commit or roll back with the exchange they describe. Trace events go through
their own pooled connection in autocommit mode, so the trail of a failed date
survives that date's rollback.
"""

from dataclasses import asdict, dataclass, field, fields
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional

import structlog

from partition_archiver.database import DatabaseManager, Executor
from partition_archiver.exceptions import DatabaseError
from partition_archiver.relations import RelationRef
from partition_archiver.run_context import RunContext
from utils import safe_identifier
from utils.logging import get_logger


class ExecutionStatus(Enum):
    """Outcome of one archived partition-date."""

    SUCCESS = "SUCCESS"
    WARNING = "WARNING"
    ERROR = "ERROR"


class DataValidationStatus(Enum):
    """Result of the record-count conservation check."""

    PASS = "PASS"
    FAIL = "FAIL"


class Severity(Enum):
    """Trace event severity."""

    INFO = "I"
    ERROR = "E"


@dataclass
class ExecutionLogRecord:
    """One row of the execution log."""

    source_table_name: str
    archive_table_name: str
    source_partition_name: str
    archive_partition_name: str
    partition_date: date
    records_archived: int
    source_records_before: int
    source_records_after: int
    archive_records_before: int
    archive_records_after: int
    data_validation_status: DataValidationStatus = DataValidationStatus.PASS
    record_count_match: bool = True
    status: ExecutionStatus = ExecutionStatus.SUCCESS
    partition_size_mb: Optional[float] = None
    source_index_count: Optional[int] = None
    archive_index_count: Optional[int] = None
    source_index_size_mb: Optional[float] = None
    archive_index_size_mb: Optional[float] = None
    invalid_indexes_before: int = 0
    invalid_indexes_after: int = 0
    is_compressed: bool = False
    compression_type: Optional[str] = None
    exchange_duration_seconds: Optional[float] = None
    stats_gather_duration_seconds: Optional[float] = None
    total_duration_seconds: Optional[float] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    run_id: Optional[str] = None
    executed_by: Optional[str] = None
    execution_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    execution_id: Optional[int] = None

    @property
    def source_moved(self) -> int:
        return self.source_records_before - self.source_records_after

    @property
    def archive_added(self) -> int:
        return self.archive_records_after - self.archive_records_before

    def counts_conserved(self) -> bool:
        """Rows removed from source == rows archived == rows added to archive."""
        return self.source_moved == self.records_archived == self.archive_added

    def apply_validation(self) -> bool:
        """Set validation fields from the conservation check.

        A mismatch downgrades the record to WARNING; it never stays SUCCESS.

        Returns:
            True if the counts are conserved
        """
        conserved = self.counts_conserved()
        self.record_count_match = conserved
        if conserved:
            self.data_validation_status = DataValidationStatus.PASS
            if self.status is not ExecutionStatus.ERROR:
                self.status = ExecutionStatus.SUCCESS
        else:
            self.data_validation_status = DataValidationStatus.FAIL
            self.status = ExecutionStatus.WARNING
            self.error_code = "RECORD_COUNT_MISMATCH"
            self.error_message = (
                f"Expected {self.records_archived} rows moved; "
                f"source lost {self.source_moved}, archive gained {self.archive_added}"
            )
        return conserved

    def to_row(self) -> dict[str, Any]:
        """Column values for insertion (enums and flags in their stored form)."""
        row = asdict(self)
        row.pop("execution_id")
        row["data_validation_status"] = self.data_validation_status.value
        row["status"] = self.status.value
        row["record_count_match"] = "Y" if self.record_count_match else "N"
        row["is_compressed"] = "Y" if self.is_compressed else "N"
        return row


INSERT_COLUMNS = [f.name for f in fields(ExecutionLogRecord) if f.name != "execution_id"]


@dataclass
class TraceEvent:
    """A lightweight, rollback-resistant diagnostic message."""

    severity: Severity
    step_code: int
    message: str
    detail: Optional[str] = None
    run_id: Optional[str] = None
    sequence: int = 0
    source_table_name: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    executed_by: Optional[str] = None
    event_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ExecutionLogStore:
    """Append-mostly store for execution log records."""

    def __init__(
        self,
        table: RelationRef,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize execution log store.

        Args:
            table: Execution log table
            logger: Optional logger instance
        """
        self.table = table
        self.logger = logger or get_logger("execution_log")

    async def ensure_schema(self, conn: Executor) -> None:
        """Create the execution log table and its lookup index if missing."""
        await conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {self.table.quoted} (
                execution_id BIGINT GENERATED ALWAYS AS IDENTITY PRIMARY KEY,
                execution_time TIMESTAMPTZ NOT NULL DEFAULT now(),
                run_id TEXT,
                source_table_name TEXT NOT NULL,
                archive_table_name TEXT NOT NULL,
                source_partition_name TEXT NOT NULL,
                archive_partition_name TEXT NOT NULL,
                partition_date DATE NOT NULL,
                records_archived BIGINT NOT NULL,
                partition_size_mb DOUBLE PRECISION,
                source_index_count INTEGER,
                archive_index_count INTEGER,
                source_index_size_mb DOUBLE PRECISION,
                archive_index_size_mb DOUBLE PRECISION,
                invalid_indexes_before INTEGER NOT NULL DEFAULT 0,
                invalid_indexes_after INTEGER NOT NULL DEFAULT 0,
                data_validation_status TEXT NOT NULL
                    CHECK (data_validation_status IN ('PASS', 'FAIL')),
                record_count_match CHAR(1) NOT NULL CHECK (record_count_match IN ('Y', 'N')),
                source_records_before BIGINT NOT NULL,
                source_records_after BIGINT NOT NULL,
                archive_records_before BIGINT NOT NULL,
                archive_records_after BIGINT NOT NULL,
                is_compressed CHAR(1) NOT NULL DEFAULT 'N' CHECK (is_compressed IN ('Y', 'N')),
                compression_type TEXT,
                exchange_duration_seconds DOUBLE PRECISION,
                stats_gather_duration_seconds DOUBLE PRECISION,
                total_duration_seconds DOUBLE PRECISION,
                status TEXT NOT NULL CHECK (status IN ('SUCCESS', 'WARNING', 'ERROR')),
                error_code TEXT,
                error_message TEXT,
                executed_by TEXT
            )
            """
        )
        index_name = f"{self.table.name[:50]}_src_time_idx"
        await conn.execute(
            f"CREATE INDEX IF NOT EXISTS {safe_identifier(index_name)} "
            f"ON {self.table.quoted} (source_table_name, execution_time DESC)"
        )

    async def insert(self, conn: Executor, record: ExecutionLogRecord) -> int:
        """Insert one record on the caller's connection/transaction.

        Returns:
            The new execution_id
        """
        row = record.to_row()
        placeholders = ", ".join(f"${i}" for i in range(1, len(INSERT_COLUMNS) + 1))
        query = (
            f"INSERT INTO {self.table.quoted} ({', '.join(INSERT_COLUMNS)}) "
            f"VALUES ({placeholders}) RETURNING execution_id"
        )
        try:
            execution_id = await conn.fetchval(query, *(row[name] for name in INSERT_COLUMNS))
        except Exception as e:
            raise DatabaseError(
                f"Failed to insert execution log record: {e}",
                context={
                    "source": record.source_table_name,
                    "partition": record.source_partition_name,
                },
            ) from e

        record.execution_id = execution_id
        self.logger.debug(
            "Execution log record inserted",
            execution_id=execution_id,
            partition=record.source_partition_name,
            status=record.status.value,
        )
        return execution_id

    async def backfill_stats_duration(
        self,
        conn: Executor,
        source_table: str,
        since: datetime,
        duration_seconds: float,
    ) -> bool:
        """Set the statistics duration on the latest record for a source table.

        Only records written since ``since`` (the run start) are eligible.

        Returns:
            True if a record was updated
        """
        status = await conn.execute(
            f"""
            UPDATE {self.table.quoted}
            SET stats_gather_duration_seconds = $1
            WHERE execution_id = (
                SELECT max(execution_id)
                FROM {self.table.quoted}
                WHERE source_table_name = $2
                  AND execution_time >= $3
            )
            """,
            duration_seconds,
            source_table,
            since,
        )
        return status.endswith(" 1")

    async def recent(
        self, conn: Executor, source_table: Optional[str] = None, limit: int = 20
    ) -> list[dict[str, Any]]:
        """Most recent records, newest first."""
        if source_table:
            rows = await conn.fetch(
                f"SELECT * FROM {self.table.quoted} WHERE source_table_name = $1 "
                "ORDER BY execution_id DESC LIMIT $2",
                source_table,
                limit,
            )
        else:
            rows = await conn.fetch(
                f"SELECT * FROM {self.table.quoted} ORDER BY execution_id DESC LIMIT $1",
                limit,
            )
        return [dict(row) for row in rows]


class TraceLogger:
    """Writes trace events through a transaction independent of the caller's.

    Each event is inserted on a freshly acquired pooled connection in
    autocommit mode. It is committed the moment it is written, whatever
    happens to the partition-date transaction running alongside it.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        table: RelationRef,
        logger: Optional[structlog.BoundLogger] = None,
        procedure: str = "ARCHIVE_PARTITIONS",
        persist: bool = True,
    ) -> None:
        """Initialize trace logger.

        Args:
            db_manager: Database manager (its pool supplies the side-channel connection)
            table: Trace table
            logger: Optional logger instance
            procedure: Procedure name recorded with each event
            persist: Write events to the trace table (False only mirrors them to the log)
        """
        self.db_manager = db_manager
        self.table = table
        self.logger = logger or get_logger("trace")
        self.procedure = procedure
        self.persist = persist
        self.write_failures = 0

    async def ensure_schema(self, conn: Executor) -> None:
        """Create the trace table if missing."""
        await conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {self.table.quoted} (
                trace_id BIGINT GENERATED ALWAYS AS IDENTITY PRIMARY KEY,
                event_time TIMESTAMPTZ NOT NULL DEFAULT now(),
                run_id TEXT,
                sequence INTEGER NOT NULL,
                procedure_name TEXT NOT NULL,
                severity CHAR(1) NOT NULL CHECK (severity IN ('I', 'E')),
                step_code INTEGER NOT NULL,
                source_table_name TEXT,
                message TEXT NOT NULL,
                detail TEXT,
                error_code TEXT,
                error_message TEXT,
                executed_by TEXT
            )
            """
        )

    async def info(self, ctx: RunContext, message: str, detail: Optional[str] = None) -> TraceEvent:
        return await self.log(ctx, Severity.INFO, message, detail)

    async def error(
        self,
        ctx: RunContext,
        message: str,
        detail: Optional[str] = None,
        error: Optional[BaseException] = None,
    ) -> TraceEvent:
        return await self.log(ctx, Severity.ERROR, message, detail, error=error)

    async def log(
        self,
        ctx: RunContext,
        severity: Severity,
        message: str,
        detail: Optional[str] = None,
        error: Optional[BaseException] = None,
    ) -> TraceEvent:
        """Record one trace event at the context's current step.

        A failed write is logged and counted; it never interrupts archival.
        """
        event = TraceEvent(
            severity=severity,
            step_code=ctx.step_code,
            message=message,
            detail=detail,
            run_id=ctx.run_id,
            sequence=ctx.next_sequence(),
            source_table_name=str(ctx.source),
            error_code=error_code_of(error),
            error_message=str(error) if error is not None else None,
            executed_by=ctx.executed_by,
        )

        log_method = self.logger.error if severity is Severity.ERROR else self.logger.info
        log_method(
            message,
            detail=detail,
            sequence=event.sequence,
            error_code=event.error_code,
            error=event.error_message,
            **ctx.as_log_context(),
        )

        if not self.persist:
            return event

        try:
            async with self.db_manager.acquire_connection() as conn:
                await conn.execute(
                    f"""
                    INSERT INTO {self.table.quoted} (
                        event_time, run_id, sequence, procedure_name, severity, step_code,
                        source_table_name, message, detail, error_code, error_message,
                        executed_by
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                    """,
                    event.event_time,
                    event.run_id,
                    event.sequence,
                    self.procedure,
                    event.severity.value,
                    event.step_code,
                    event.source_table_name,
                    event.message,
                    event.detail,
                    event.error_code,
                    event.error_message,
                    event.executed_by,
                )
        except Exception as e:
            self.write_failures += 1
            self.logger.warning(
                "Failed to write trace event (non-critical)",
                trace_message=message,
                error=str(e),
                **ctx.as_log_context(),
            )

        return event


def error_code_of(error: Optional[BaseException]) -> Optional[str]:
    """SQLSTATE of the first database error in the chain, else the exception type."""
    current: Optional[BaseException] = error
    while current is not None:
        sqlstate = getattr(current, "sqlstate", None)
        if sqlstate:
            return str(sqlstate)
        current = current.__cause__
    return type(error).__name__ if error is not None else None
