"""Read-only row count, index and storage measurements."""

from dataclasses import dataclass
from typing import Optional

import structlog

from partition_archiver.database import Executor
from partition_archiver.relations import RelationRef, StatementBuilder
from utils.logging import get_logger

COMPRESSION_METHOD_NAMES = {"p": "pglz", "l": "lz4"}


@dataclass(frozen=True)
class TableSnapshot:
    """Point-in-time measurements of one relation (including its partitions)."""

    row_count: int
    index_count: int
    index_size_bytes: int


class MetricsCollector:
    """Captures before/after measurements for the integrity check and the execution log."""

    _INDEX_STATS_QUERY = """
        SELECT
            count(*) AS index_count,
            coalesce(sum(pg_catalog.pg_relation_size(i.indexrelid)), 0)::bigint AS index_size
        FROM pg_catalog.pg_partition_tree($1::regclass) tree
        JOIN pg_catalog.pg_index i ON i.indrelid = tree.relid
    """

    _SIZE_QUERY = "SELECT pg_catalog.pg_total_relation_size($1::regclass)::bigint"

    _TREE_SIZE_QUERY = """
        SELECT coalesce(sum(pg_catalog.pg_total_relation_size(tree.relid)), 0)::bigint
        FROM pg_catalog.pg_partition_tree($1::regclass) tree
        WHERE tree.isleaf
    """

    _COMPRESSION_QUERY = """
        SELECT DISTINCT a.attcompression::text AS method
        FROM pg_catalog.pg_attribute a
        WHERE a.attrelid = $1::regclass
          AND a.attnum > 0
          AND NOT a.attisdropped
          AND a.attcompression <> ''
    """

    def __init__(self, logger: Optional[structlog.BoundLogger] = None) -> None:
        """Initialize metrics collector.

        Args:
            logger: Optional logger instance
        """
        self.logger = logger or get_logger("metrics_collector")

    async def row_count(self, conn: Executor, relation: RelationRef) -> int:
        return int(await conn.fetchval(StatementBuilder.count_rows(relation)) or 0)

    async def snapshot(self, conn: Executor, table: RelationRef) -> TableSnapshot:
        """Row count plus index count and size across the partition tree."""
        rows = await self.row_count(conn, table)
        index_row = await conn.fetchrow(self._INDEX_STATS_QUERY, table.regclass)
        snapshot = TableSnapshot(
            row_count=rows,
            index_count=int(index_row["index_count"]) if index_row else 0,
            index_size_bytes=int(index_row["index_size"]) if index_row else 0,
        )
        self.logger.debug(
            "Table snapshot",
            table=str(table),
            rows=snapshot.row_count,
            indexes=snapshot.index_count,
            index_bytes=snapshot.index_size_bytes,
        )
        return snapshot

    async def partition_size(self, conn: Executor, partition: RelationRef) -> int:
        """Total on-disk size of one partition (heap, TOAST and indexes) in bytes."""
        return int(await conn.fetchval(self._SIZE_QUERY, partition.regclass) or 0)

    async def is_compressed(
        self, conn: Executor, partition: RelationRef
    ) -> tuple[bool, Optional[str]]:
        """Whether any column of the partition has an explicit compression method.

        Returns:
            (compressed, mode) where mode is "pglz", "lz4" or "mixed"
        """
        rows = await conn.fetch(self._COMPRESSION_QUERY, partition.regclass)
        methods = sorted({COMPRESSION_METHOD_NAMES.get(r["method"], r["method"]) for r in rows})
        if not methods:
            return False, None
        if len(methods) > 1:
            return True, "mixed"
        return True, methods[0]

    async def describe(self, conn: Executor, table: RelationRef) -> str:
        """One-line size summary used in the before/after run trace."""
        snapshot = await self.snapshot(conn, table)
        total_bytes = int(await conn.fetchval(self._TREE_SIZE_QUERY, table.regclass) or 0)
        return (
            f"rows={snapshot.row_count}, size_mb={to_megabytes(total_bytes)}, "
            f"indexes={snapshot.index_count}, "
            f"index_size_mb={to_megabytes(snapshot.index_size_bytes)}"
        )


def to_megabytes(size_bytes: Optional[int]) -> Optional[float]:
    """Bytes to megabytes rounded to two decimals (None stays None)."""
    if size_bytes is None:
        return None
    return round(size_bytes / 1024 / 1024, 2)
