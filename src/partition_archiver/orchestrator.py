"""Partition archival orchestrator that coordinates all components."""

import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional

import asyncpg
import structlog

from partition_archiver.config import PartitionArchiverConfig
from partition_archiver.config_store import ArchivalConfiguration, ConfigurationStore
from partition_archiver.database import DatabaseManager
from partition_archiver.exceptions import (
    ArchiverError,
    ConfigurationError,
    ExchangeError,
    PreconditionError,
    RelationNotFoundError,
    TableNotPartitionedError,
)
from partition_archiver.exchange import PartitionExchanger
from partition_archiver.execution_log import (
    ExecutionLogRecord,
    ExecutionLogStore,
    ExecutionStatus,
    TraceLogger,
    error_code_of,
)
from partition_archiver.index_health import HealthValidator
from partition_archiver.locking import Lock, LockManager
from partition_archiver.metrics import ArchivalMetrics
from partition_archiver.partitions import PartitionHandle, PartitionLocator
from partition_archiver.relations import RelationRef, StatementBuilder, partition_name_for
from partition_archiver.run_context import (
    DATE_AFTER_METRICS,
    DATE_ARCHIVE_PARTITION,
    DATE_BEFORE_METRICS,
    DATE_COUNTED,
    DATE_EXCHANGED,
    DATE_LOCATED,
    DATE_LOGGED,
    DATE_NOT_FOUND,
    DATE_SOURCE_DROPPED,
    DATE_STAGED_FROM_SOURCE,
    DATE_STAGED_INTO_ARCHIVE,
    POST_STATS_ARCHIVE,
    POST_STATS_SOURCE,
    POST_SUMMARY,
    STEP_BEFORE_STATS,
    STEP_CHECK_SOURCE,
    STEP_INDEX_HEALTH,
    STEP_LOAD_CONFIG,
    STEP_VALIDATE_STRUCTURE,
    RunContext,
)
from partition_archiver.structure_validator import StructureValidator
from partition_archiver.table_stats import MetricsCollector, to_megabytes
from partition_archiver.transaction_manager import TransactionManager
from utils import safe_identifier
from utils.dates import DateLike, normalize_dates
from utils.logging import bind_run, get_logger, unbind_run

# attcompression, lz4 TOAST compression and pg_partition_tree
MIN_POSTGRES_MAJOR = 14


class DateOutcome(Enum):
    """What happened to one requested partition-date."""

    ARCHIVED = "archived"
    WARNING = "warning"  # archived, but the record counts did not reconcile
    SKIPPED = "skipped"  # no partition holds the date
    DROPPED_EMPTY = "dropped_empty"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PLANNED = "planned"  # dry run


@dataclass
class DateResult:
    """Per-date result reported in the run summary."""

    partition_date: date
    outcome: DateOutcome
    source_partition: Optional[str] = None
    archive_partition: Optional[str] = None
    records_archived: int = 0
    execution_id: Optional[int] = None
    step_code: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "partition_date": self.partition_date.isoformat(),
            "outcome": self.outcome.value,
            "source_partition": self.source_partition,
            "archive_partition": self.archive_partition,
            "records_archived": self.records_archived,
            "execution_id": self.execution_id,
            "step_code": self.step_code,
            "error": self.error,
        }


@dataclass
class RunSummary:
    """Aggregate result of one archive() call.

    Always returned once the up-front checks pass, even when dates were
    skipped or failed.
    """

    run_id: str
    source_table: str
    archive_table: Optional[str] = None
    dry_run: bool = False
    outcomes: list[DateResult] = field(default_factory=list)
    index_warnings: int = 0
    stats_duration_seconds: Optional[float] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None

    def _count(self, *outcomes: DateOutcome) -> int:
        return sum(1 for result in self.outcomes if result.outcome in outcomes)

    @property
    def partitions_archived(self) -> int:
        return self._count(DateOutcome.ARCHIVED, DateOutcome.WARNING)

    @property
    def rows_archived(self) -> int:
        return sum(
            result.records_archived
            for result in self.outcomes
            if result.outcome in (DateOutcome.ARCHIVED, DateOutcome.WARNING)
        )

    @property
    def dates_skipped(self) -> int:
        return self._count(DateOutcome.SKIPPED)

    @property
    def empty_partitions_dropped(self) -> int:
        return self._count(DateOutcome.DROPPED_EMPTY)

    @property
    def dates_failed(self) -> int:
        return self._count(DateOutcome.FAILED)

    @property
    def dates_cancelled(self) -> int:
        return self._count(DateOutcome.CANCELLED)

    @property
    def integrity_warnings(self) -> int:
        return self._count(DateOutcome.WARNING)

    @property
    def status(self) -> str:
        """Run status: error if any date failed, warning on any other anomaly, else success."""
        if self.dates_failed:
            return "error"
        if self.integrity_warnings or self.index_warnings or self.dates_cancelled:
            return "warning"
        return "success"

    def to_dict(self) -> dict[str, Any]:
        duration = None
        if self.finished_at is not None:
            duration = (self.finished_at - self.started_at).total_seconds()
        return {
            "run_id": self.run_id,
            "source_table": self.source_table,
            "archive_table": self.archive_table,
            "dry_run": self.dry_run,
            "status": self.status,
            "partitions_archived": self.partitions_archived,
            "rows_archived": self.rows_archived,
            "dates_requested": len(self.outcomes),
            "dates_skipped": self.dates_skipped,
            "empty_partitions_dropped": self.empty_partitions_dropped,
            "dates_failed": self.dates_failed,
            "dates_cancelled": self.dates_cancelled,
            "integrity_warnings": self.integrity_warnings,
            "index_warnings": self.index_warnings,
            "stats_duration_seconds": self.stats_duration_seconds,
            "duration_seconds": duration,
            "outcomes": [result.to_dict() for result in self.outcomes],
        }


class PartitionArchiver:
    """Moves whole partitions from a live table into its archive table.

    Each date runs through a two-hop swap (source -> staging -> archive)
    inside its own transaction. A failure rolls back that date only; the
    run continues with the next one.
    """

    def __init__(
        self,
        config: PartitionArchiverConfig,
        db_manager: DatabaseManager,
        dry_run: bool = False,
        logger: Optional[structlog.BoundLogger] = None,
        metrics: Optional[ArchivalMetrics] = None,
    ) -> None:
        """Initialize archiver.

        Args:
            config: Archiver configuration
            db_manager: Connected database manager
            dry_run: If True, only locate and count partitions
            logger: Optional logger instance
            metrics: Optional metrics instance (created when metrics are enabled)
        """
        self.config = config
        self.db_manager = db_manager
        self.dry_run = dry_run
        self.logger = logger or get_logger("archiver")
        self._cancel_requested = False

        control = config.control
        defaults = config.defaults
        self.locator = PartitionLocator(logger=self.logger)
        self.structure_validator = StructureValidator(logger=self.logger)
        self.health_validator = HealthValidator(logger=self.logger)
        self.stats = MetricsCollector(logger=self.logger)
        self.exchanger = PartitionExchanger(logger=self.logger)
        self.config_store = ConfigurationStore(
            RelationRef(control.schema_name, control.config_table),
            default_schema=defaults.default_schema,
            logger=self.logger,
        )
        self.execution_log = ExecutionLogStore(
            RelationRef(control.schema_name, control.execution_log_table),
            logger=self.logger,
        )
        self.trace = TraceLogger(
            db_manager,
            RelationRef(control.schema_name, control.trace_table),
            logger=self.logger,
            persist=not dry_run,
        )

        monitoring = config.monitoring
        if metrics is not None:
            self.metrics: Optional[ArchivalMetrics] = metrics
        elif monitoring.metrics_enabled:
            self.metrics = ArchivalMetrics(logger=self.logger)
        else:
            self.metrics = None

        if self.metrics and monitoring.metrics_server_enabled:
            try:
                self.metrics.start_metrics_server(port=monitoring.metrics_port)
            except Exception as e:
                self.logger.warning(
                    "Failed to start metrics server (non-critical)",
                    port=monitoring.metrics_port,
                    error=str(e),
                )

    def request_cancel(self) -> None:
        """Stop after the date currently in progress; remaining dates are reported as cancelled."""
        if not self._cancel_requested:
            self.logger.warning("Cancellation requested, stopping at the next date boundary")
        self._cancel_requested = True

    async def init_schema(self) -> None:
        """Create the control tables (configuration, execution log, trace) if missing."""
        async with self.db_manager.transaction() as conn:
            await conn.execute(
                f"CREATE SCHEMA IF NOT EXISTS {safe_identifier(self.config.control.schema_name)}"
            )
            await self.config_store.ensure_schema(conn)
            await self.execution_log.ensure_schema(conn)
            await self.trace.ensure_schema(conn)
        self.logger.info(
            "Control tables ready",
            config_table=str(self.config_store.table),
            execution_log_table=str(self.execution_log.table),
            trace_table=str(self.trace.table),
        )

    async def archive(self, source_table: str, dates: Iterable[DateLike]) -> RunSummary:
        """Archive the partitions of ``source_table`` holding the given dates.

        Args:
            source_table: Source table name ("table" or "schema.table")
            dates: Business dates to archive (de-duplicated, processed ascending)

        Returns:
            Run summary

        Raises:
            ConfigurationError: If no active configuration exists for the table
            PreconditionError: If the source table is missing or not partitioned,
                the three relations are not exchange-compatible, or the server
                predates PostgreSQL 14
            LockError: If another run holds the lock for the configuration pair
        """
        try:
            source = RelationRef.parse(source_table, self.config.defaults.default_schema)
            partition_dates = normalize_dates(dates)
        except ValueError as e:
            raise ConfigurationError(
                f"Invalid archival request: {e}",
                context={"source_table": source_table},
            ) from e

        ctx = RunContext(source, executed_by=await self._executed_by())
        ctx.date_count = len(partition_dates)
        bind_run(ctx.run_id, source_table=str(source))
        run_started = time.monotonic()
        self.logger.info(
            "Starting partition archival",
            dates=len(partition_dates),
            dry_run=self.dry_run,
        )

        try:
            configuration = await self._preflight(ctx)
            summary = RunSummary(
                run_id=ctx.run_id,
                source_table=str(source),
                archive_table=str(ctx.archive),
                dry_run=self.dry_run,
                started_at=ctx.started_at,
            )

            if self.dry_run:
                await self._check_index_health(ctx, configuration)
                await self._plan(ctx, partition_dates, summary)
            else:
                await self._run_locked(ctx, configuration, partition_dates, summary)

        except ArchiverError as e:
            if e.correlation_id is None:
                e.correlation_id = ctx.run_id
            await self.trace.error(ctx, "Archival run aborted", detail=e.message, error=e)
            if self.metrics:
                self.metrics.record_error(type(e).__name__, str(source))
                self.metrics.record_run_status("fatal")
            raise
        finally:
            unbind_run("source_table", "archive_table")

        summary.finished_at = datetime.now(timezone.utc)
        if self.metrics:
            self.metrics.record_duration(str(source), "run", time.monotonic() - run_started)
            self.metrics.record_run_status(summary.status)

        self.logger.info(
            "Partition archival completed",
            run_id=ctx.run_id,
            status=summary.status,
            partitions_archived=summary.partitions_archived,
            rows_archived=summary.rows_archived,
            dates_skipped=summary.dates_skipped,
            dates_failed=summary.dates_failed,
        )
        return summary

    async def _executed_by(self) -> Optional[str]:
        if self.config.defaults.executed_by:
            return self.config.defaults.executed_by
        try:
            return await self.db_manager.current_user()
        except Exception as e:
            self.logger.warning("Failed to read current user (non-critical)", error=str(e))
            return None

    async def _preflight(self, ctx: RunContext) -> ArchivalConfiguration:
        """Fatal checks run once before any partition work."""
        db = self.db_manager
        source = ctx.source

        ctx.setup_step(STEP_CHECK_SOURCE)
        await self._check_server_version()
        kind = await self.locator.relation_kind(db, source)
        if kind is None:
            raise RelationNotFoundError(
                f"Source table {source} does not exist",
                context={"source": str(source)},
            )
        if kind != "p":
            raise TableNotPartitionedError(
                f"Source table {source} is not partitioned",
                context={"source": str(source), "relkind": kind},
            )
        await self.trace.info(ctx, f"Source table {source} is partitioned")

        ctx.setup_step(STEP_LOAD_CONFIG)
        configuration = await self.config_store.load_active(db, source)
        _, ctx.archive, ctx.staging = configuration.relations(self.config.defaults.default_schema)
        bind_run(ctx.run_id, source_table=str(source), archive_table=str(ctx.archive))
        await self.trace.info(
            ctx,
            "Archival configuration loaded",
            detail=f"archive={ctx.archive}, staging={ctx.staging}, "
            f"validate={configuration.validate_before_exchange}, "
            f"gather_stats={configuration.gather_stats_after_exchange}",
        )

        ctx.setup_step(STEP_VALIDATE_STRUCTURE)
        columns = await self.structure_validator.validate(db, source, ctx.archive, ctx.staging)
        await self.trace.info(
            ctx,
            "Table structure validation passed",
            detail=", ".join(f"{key}={value}" for key, value in columns.items()),
        )

        ctx.setup_step(STEP_BEFORE_STATS)
        for role, table in (("source", source), ("archive", ctx.archive)):
            await self.trace.info(
                ctx, f"Before archival {role} stats", detail=await self.stats.describe(db, table)
            )

        return configuration

    async def _check_server_version(self) -> None:
        version = await self.db_manager.get_postgres_version()
        try:
            major = int(version.split(".")[0])
        except ValueError:
            self.logger.warning("Could not determine PostgreSQL version", version=version)
            return
        if major < MIN_POSTGRES_MAJOR:
            raise PreconditionError(
                f"PostgreSQL {MIN_POSTGRES_MAJOR} or later is required, server is {version}",
                context={"server_version": version},
            )

    async def _check_index_health(
        self, ctx: RunContext, configuration: ArchivalConfiguration
    ) -> None:
        """Rebuild unusable indexes before any exchange (inspect only on a dry run).

        Called with the run lock held so concurrent runs never repair together.
        """
        if not configuration.validate_before_exchange:
            return

        ctx.setup_step(STEP_INDEX_HEALTH)
        for table in (ctx.source, ctx.archive):
            report = await self.health_validator.check_and_repair(
                self.db_manager, table, repair=not self.dry_run
            )
            if report.invalid_count:
                await self.trace.info(
                    ctx,
                    f"Rebuilt {len(report.repaired)} of {report.invalid_count} unusable "
                    f"indexes on {table}",
                    detail=", ".join(report.repaired) or None,
                )
            for index, error in report.failed.items():
                await self.trace.error(ctx, f"Failed to rebuild index {index}", detail=error)

    async def _plan(self, ctx: RunContext, dates: list[date], summary: RunSummary) -> None:
        """Dry run: locate and count partitions without changing anything."""
        for index, partition_date in enumerate(dates):
            ctx.begin_date(index, partition_date)
            handle = await self.locator.locate(self.db_manager, ctx.source, partition_date)
            if handle is None:
                ctx.date_step(DATE_NOT_FOUND)
                await self.trace.info(ctx, f"No partition found for {partition_date}, would skip")
                summary.outcomes.append(DateResult(partition_date, DateOutcome.SKIPPED))
                continue

            ctx.date_step(DATE_COUNTED)
            rows = await self.stats.row_count(self.db_manager, handle.relation)
            action = "archive" if rows else "drop empty partition"
            await self.trace.info(
                ctx, f"Would {action} {handle.relation}", detail=f"rows={rows}, bound={handle.bound.spec}"
            )
            summary.outcomes.append(
                DateResult(
                    partition_date,
                    DateOutcome.PLANNED,
                    source_partition=str(handle.relation),
                    records_archived=rows,
                    step_code=ctx.step_code,
                )
            )

    async def _run_locked(
        self,
        ctx: RunContext,
        configuration: ArchivalConfiguration,
        dates: list[date],
        summary: RunSummary,
    ) -> None:
        lock: Optional[Lock] = None
        lock_manager = LockManager(self.db_manager, owner=ctx.run_id, logger=self.logger)
        if self.config.defaults.lock_enabled:
            lock = await lock_manager.acquire(ctx.source, ctx.archive)

        try:
            await self._check_index_health(ctx, configuration)

            for index, partition_date in enumerate(dates):
                if self._cancel_requested:
                    for remaining in dates[index:]:
                        summary.outcomes.append(DateResult(remaining, DateOutcome.CANCELLED))
                    ctx.begin_date(index, partition_date)
                    await self.trace.info(
                        ctx, f"Run cancelled, {len(dates) - index} dates not processed"
                    )
                    break

                result = await self._archive_date(ctx, configuration, index, partition_date)
                summary.outcomes.append(result)
                if self.metrics:
                    self.metrics.record_date_outcome(str(ctx.source), result.outcome.value)

            await self._post_run(ctx, configuration, summary)
        finally:
            if lock is not None:
                await lock_manager.release(lock)

    async def _archive_date(
        self,
        ctx: RunContext,
        configuration: ArchivalConfiguration,
        index: int,
        partition_date: date,
    ) -> DateResult:
        """Run one date in its own transaction; failures are absorbed and traced."""
        ctx.begin_date(index, partition_date)
        await self.trace.info(ctx, f"Processing partition date {partition_date}")
        result = DateResult(partition_date, DateOutcome.FAILED)

        try:
            async with self.db_manager.acquire_connection() as conn:
                manager = TransactionManager(
                    conn,
                    timeout_seconds=self.config.defaults.statement_timeout_seconds,
                    lock_timeout_seconds=self.config.defaults.lock_timeout_seconds,
                    logger=self.logger,
                )
                async with manager.transaction():
                    await self._process_date(conn, ctx, configuration, result)
        except Exception as e:
            result.outcome = DateOutcome.FAILED
            result.step_code = ctx.step_code
            result.error = str(e)
            result.execution_id = None
            await self.trace.error(
                ctx,
                f"Failed to archive partition date {partition_date}, rolled back",
                detail=f"step={ctx.step_code}, partition={result.source_partition}",
                error=e,
            )
            if self.metrics:
                self.metrics.record_error(error_code_of(e) or "unknown", str(ctx.source))

        return result

    async def _process_date(
        self,
        conn: asyncpg.Connection,
        ctx: RunContext,
        configuration: ArchivalConfiguration,
        result: DateResult,
    ) -> None:
        """The per-date state machine, executed inside the date's transaction."""
        source, archive, staging = ctx.source, ctx.archive, ctx.staging
        partition_date = result.partition_date
        started = time.monotonic()

        if await self.exchanger.clear_standalone(conn, staging):
            await self.trace.info(ctx, f"Residual rows cleared from staging table {staging}")

        handle = await self.locator.locate(conn, source, partition_date)
        if handle is None:
            ctx.date_step(DATE_NOT_FOUND)
            result.outcome = DateOutcome.SKIPPED
            await self.trace.info(ctx, f"No partition found for {partition_date}, skipping")
            return

        ctx.date_step(DATE_LOCATED)
        result.source_partition = str(handle.relation)
        await self.trace.info(ctx, f"Located partition {handle.relation}", detail=handle.bound.spec)

        ctx.date_step(DATE_COUNTED)
        rows = await self.stats.row_count(conn, handle.relation)
        await self.trace.info(ctx, f"Partition {handle.relation} holds {rows} rows")

        if rows == 0:
            await self.exchanger.drop_partition(conn, handle.relation)
            ctx.date_step(DATE_SOURCE_DROPPED)
            result.outcome = DateOutcome.DROPPED_EMPTY
            await self.trace.info(ctx, f"Dropped empty partition {handle.relation}")
            return

        ctx.date_step(DATE_BEFORE_METRICS)
        source_before = await self.stats.snapshot(conn, source)
        archive_before = await self.stats.snapshot(conn, archive)
        invalid_before = await self.health_validator.count_invalid(conn, source, archive)
        partition_bytes = await self.stats.partition_size(conn, handle.relation)

        exchange_started = time.monotonic()
        ctx.date_step(DATE_STAGED_FROM_SOURCE)
        await self.exchanger.exchange(conn, source, handle, staging)
        await self.trace.info(ctx, f"Exchanged {handle.relation} into staging table {staging}")

        ctx.date_step(DATE_ARCHIVE_PARTITION)
        archive_handle = await self._resolve_archive_partition(conn, ctx, handle, partition_date)
        result.archive_partition = str(archive_handle.relation)

        ctx.date_step(DATE_STAGED_INTO_ARCHIVE)
        await self.exchanger.exchange(conn, archive, archive_handle, staging)
        exchange_seconds = time.monotonic() - exchange_started

        ctx.date_step(DATE_EXCHANGED)
        await self.trace.info(
            ctx,
            f"Exchanged staging table {staging} into {archive_handle.relation}",
            detail=f"exchange_seconds={exchange_seconds:.3f}",
        )
        if configuration.enable_compression and configuration.compression_type:
            await self.exchanger.apply_compression(
                conn, archive_handle.relation, configuration.compression_type
            )
        if self.config.defaults.rebuild_indexes_after_exchange:
            await self.health_validator.check_and_repair(conn, archive_handle.relation)

        ctx.date_step(DATE_AFTER_METRICS)
        source_after = await self.stats.snapshot(conn, source)
        archive_after = await self.stats.snapshot(conn, archive)
        invalid_after = await self.health_validator.count_invalid(conn, source, archive)
        compressed, compression_mode = await self.stats.is_compressed(conn, archive_handle.relation)

        record = ExecutionLogRecord(
            source_table_name=str(source),
            archive_table_name=str(archive),
            source_partition_name=str(handle.relation),
            archive_partition_name=str(archive_handle.relation),
            partition_date=partition_date,
            records_archived=rows,
            source_records_before=source_before.row_count,
            source_records_after=source_after.row_count,
            archive_records_before=archive_before.row_count,
            archive_records_after=archive_after.row_count,
            partition_size_mb=to_megabytes(partition_bytes),
            source_index_count=source_before.index_count,
            archive_index_count=archive_before.index_count,
            source_index_size_mb=to_megabytes(source_before.index_size_bytes),
            archive_index_size_mb=to_megabytes(archive_before.index_size_bytes),
            invalid_indexes_before=invalid_before,
            invalid_indexes_after=invalid_after,
            is_compressed=compressed,
            compression_type=compression_mode,
            exchange_duration_seconds=round(exchange_seconds, 3),
            run_id=ctx.run_id,
            executed_by=ctx.executed_by,
        )
        if not record.apply_validation():
            await self.trace.error(ctx, "Record count validation failed", detail=record.error_message)

        ctx.date_step(DATE_SOURCE_DROPPED)
        if not await self.exchanger.is_empty(conn, handle.relation):
            raise ExchangeError(
                f"Source partition {handle.relation} still holds rows after exchange",
                context={"partition": str(handle.relation)},
            )
        await self.exchanger.drop_partition(conn, handle.relation)
        await self.trace.info(ctx, f"Dropped emptied source partition {handle.relation}")

        ctx.date_step(DATE_LOGGED)
        record.total_duration_seconds = round(time.monotonic() - started, 3)
        result.execution_id = await self.execution_log.insert(conn, record)
        result.records_archived = rows
        result.step_code = ctx.step_code
        result.outcome = (
            DateOutcome.ARCHIVED if record.status is ExecutionStatus.SUCCESS else DateOutcome.WARNING
        )
        await self.trace.info(
            ctx,
            f"Archived {rows} rows from {handle.relation} to {archive_handle.relation}",
            detail=f"execution_id={result.execution_id}, status={record.status.value}",
        )

        if self.metrics:
            self.metrics.record_archived(str(source), str(archive), rows)
            self.metrics.record_duration(str(source), "exchange", exchange_seconds)
            self.metrics.record_duration(str(source), "date_total", record.total_duration_seconds)

    async def _resolve_archive_partition(
        self,
        conn: asyncpg.Connection,
        ctx: RunContext,
        source_handle: PartitionHandle,
        partition_date: date,
    ) -> PartitionHandle:
        """Find the empty archive partition matching the source bound, or create it.

        Runs while the rows are parked in staging.
        """
        archive = ctx.archive
        located = await self.locator.locate(conn, archive, partition_date)

        # An archive DEFAULT partition only counts for a DEFAULT source partition
        if located is not None and (not located.is_default or source_handle.is_default):
            if located.bound.spec != source_handle.bound.spec:
                raise ExchangeError(
                    f"Archive partition {located.relation} bound does not match source",
                    context={
                        "archive_bound": located.bound.spec,
                        "source_bound": source_handle.bound.spec,
                    },
                )
            if not await self.exchanger.is_empty(conn, located.relation):
                raise ExchangeError(
                    f"Archive partition {located.relation} already holds rows",
                    context={"partition": str(located.relation)},
                )
            await self.trace.info(ctx, f"Using existing archive partition {located.relation}")
            return located

        name = partition_name_for(archive, source_handle.bound.date_tag())
        created = await self.exchanger.materialize_partition(
            conn, archive, archive.with_name(name), source_handle.bound.spec
        )
        await self.trace.info(
            ctx, f"Created archive partition {created.relation}", detail=created.bound.spec
        )
        return created

    async def _post_run(
        self,
        ctx: RunContext,
        configuration: ArchivalConfiguration,
        summary: RunSummary,
    ) -> None:
        """Index drift report, optional statistics refresh and final stats."""
        db = self.db_manager
        ctx.begin_post_run()

        if configuration.validate_before_exchange:
            for table in (ctx.source, ctx.archive):
                try:
                    report = await self.health_validator.check_and_repair(db, table, repair=False)
                except ArchiverError as e:
                    await self.trace.error(
                        ctx, f"Index health check on {table} failed after archival", error=e
                    )
                    continue
                if self.metrics:
                    self.metrics.set_invalid_indexes(str(table), report.invalid_count)
                if report.invalid_count:
                    summary.index_warnings += report.invalid_count
                    await self.trace.error(
                        ctx,
                        f"{report.invalid_count} unusable indexes on {table} after archival "
                        "(not repaired)",
                    )

        if configuration.gather_stats_after_exchange and summary.partitions_archived:
            await self._refresh_statistics(ctx, summary)

        ctx.post_step(POST_SUMMARY)
        for role, table in (("source", ctx.source), ("archive", ctx.archive)):
            try:
                await self.trace.info(
                    ctx, f"After archival {role} stats", detail=await self.stats.describe(db, table)
                )
            except ArchiverError as e:
                self.logger.warning(
                    "Failed to collect final table stats (non-critical)", table=str(table), error=str(e)
                )

        await self.trace.info(
            ctx,
            f"Archival completed: {summary.partitions_archived} partitions, "
            f"{summary.rows_archived} rows",
            detail=f"status={summary.status}, skipped={summary.dates_skipped}, "
            f"failed={summary.dates_failed}, dropped_empty={summary.empty_partitions_dropped}",
        )

    async def _refresh_statistics(self, ctx: RunContext, summary: RunSummary) -> None:
        db = self.db_manager
        started = time.monotonic()
        try:
            ctx.post_step(POST_STATS_SOURCE)
            await db.execute(StatementBuilder.analyze(ctx.source))
            ctx.post_step(POST_STATS_ARCHIVE)
            await db.execute(StatementBuilder.analyze(ctx.archive))
        except ArchiverError as e:
            await self.trace.error(ctx, "Statistics refresh failed", error=e)
            return

        duration = round(time.monotonic() - started, 3)
        summary.stats_duration_seconds = duration
        if self.metrics:
            self.metrics.record_duration(str(ctx.source), "statistics", duration)

        try:
            updated = await self.execution_log.backfill_stats_duration(
                db, str(ctx.source), ctx.started_at, duration
            )
        except ArchiverError as e:
            await self.trace.error(ctx, "Failed to record statistics duration", error=e)
            return
        await self.trace.info(
            ctx,
            f"Statistics refreshed in {duration:.3f}s",
            detail=f"backfilled={updated}",
        )
