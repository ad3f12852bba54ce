"""Prometheus metrics for monitoring archival runs."""

import time
from typing import Optional

import structlog
from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    start_http_server,
)

from utils.logging import get_logger


class ArchivalMetrics:
    """Prometheus metrics for the partition archiver."""

    def __init__(
        self,
        logger: Optional[structlog.BoundLogger] = None,
        registry: Optional[CollectorRegistry] = None,
    ) -> None:
        """Initialize metrics.

        Args:
            logger: Optional logger instance
            registry: Optional Prometheus registry (a fresh one per instance by default)
        """
        self.logger = logger or get_logger("metrics")
        self.registry = registry or CollectorRegistry()

        self.partitions_archived_total = Counter(
            "partition_archiver_partitions_archived_total",
            "Total number of partitions moved to the archive table",
            ["source_table", "archive_table"],
            registry=self.registry,
        )

        self.records_archived_total = Counter(
            "partition_archiver_records_archived_total",
            "Total number of rows moved to the archive table",
            ["source_table", "archive_table"],
            registry=self.registry,
        )

        self.dates_total = Counter(
            "partition_archiver_dates_total",
            "Partition-dates processed, by outcome",
            ["source_table", "outcome"],  # archived, warning, skipped, dropped_empty, failed, cancelled
            registry=self.registry,
        )

        self.runs_total = Counter(
            "partition_archiver_runs_total",
            "Total number of archival runs",
            ["status"],  # success, warning, error, fatal
            registry=self.registry,
        )

        self.errors_total = Counter(
            "partition_archiver_errors_total",
            "Total number of errors",
            ["type", "source_table"],
            registry=self.registry,
        )

        self.duration_seconds = Histogram(
            "partition_archiver_duration_seconds",
            "Duration of archival phases in seconds",
            ["source_table", "phase"],  # exchange, statistics, date_total, run
            buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 300.0, 1800.0],
            registry=self.registry,
        )

        self.invalid_indexes = Gauge(
            "partition_archiver_invalid_indexes",
            "Unusable indexes observed on a relation",
            ["table"],
            registry=self.registry,
        )

        self.last_success_timestamp = Gauge(
            "partition_archiver_last_success_timestamp",
            "Unix timestamp of last archival run without errors",
            registry=self.registry,
        )

    def record_archived(
        self, source_table: str, archive_table: str, records: int
    ) -> None:
        """Record one archived partition and its rows.

        Args:
            source_table: Source table name
            archive_table: Archive table name
            records: Rows moved
        """
        labels = {"source_table": source_table, "archive_table": archive_table}
        self.partitions_archived_total.labels(**labels).inc()
        self.records_archived_total.labels(**labels).inc(records)

    def record_date_outcome(self, source_table: str, outcome: str) -> None:
        self.dates_total.labels(source_table=source_table, outcome=outcome).inc()

    def record_duration(self, source_table: str, phase: str, duration_seconds: float) -> None:
        """Record duration for a specific phase.

        Args:
            source_table: Source table name
            phase: Phase name (exchange, statistics, date_total, run)
            duration_seconds: Duration in seconds
        """
        self.duration_seconds.labels(source_table=source_table, phase=phase).observe(
            duration_seconds
        )

    def record_error(self, error_type: str, source_table: Optional[str] = None) -> None:
        self.errors_total.labels(type=error_type, source_table=source_table or "unknown").inc()

    def set_invalid_indexes(self, table: str, count: int) -> None:
        self.invalid_indexes.labels(table=table).set(count)

    def record_run_status(self, status: str) -> None:
        """Record run status.

        Args:
            status: Run status (success, warning, error, fatal)
        """
        self.runs_total.labels(status=status).inc()
        if status in ("success", "warning"):
            self.last_success_timestamp.set(time.time())

    def get_metrics(self) -> bytes:
        """Get Prometheus metrics in text format."""
        return generate_latest(self.registry)

    def start_metrics_server(self, port: int = 8000) -> None:
        """Start HTTP server for Prometheus metrics.

        Args:
            port: Port to listen on (default: 8000)
        """
        try:
            start_http_server(port, registry=self.registry)
            self.logger.info(
                "Prometheus metrics server started",
                port=port,
                endpoint=f"http://localhost:{port}/metrics",
            )
        except Exception as e:
            self.logger.error(
                "Failed to start metrics server",
                port=port,
                error=str(e),
            )
            raise
