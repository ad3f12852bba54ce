"""Secondary-index health checks and repair."""

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import structlog

from partition_archiver.database import Executor
from partition_archiver.relations import RelationRef, StatementBuilder
from utils.logging import get_logger


class IndexStatus(Enum):
    """Whether the planner can use an index."""

    USABLE = "usable"
    UNUSABLE = "unusable"

    @classmethod
    def from_flags(cls, is_valid: bool, is_ready: bool) -> "IndexStatus":
        return cls.USABLE if is_valid and is_ready else cls.UNUSABLE


@dataclass(frozen=True)
class IndexInfo:
    """One index in a relation's partition tree."""

    index: RelationRef
    table: RelationRef
    status: IndexStatus
    partitioned: bool = False  # parent index of a partitioned table


@dataclass
class HealthReport:
    """Outcome of a health check on one relation."""

    table: RelationRef
    invalid_count: int
    repaired: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def healthy(self) -> bool:
        return self.invalid_count == 0 or len(self.repaired) == self.invalid_count


def repair_plan(indexes: Iterable[IndexInfo]) -> list[IndexInfo]:
    """Indexes that need a rebuild, leaf indexes before partitioned parents.

    A partitioned parent index turns valid once every partition has a valid
    index, so leaves are rebuilt first.
    """
    unusable = [info for info in indexes if info.status is IndexStatus.UNUSABLE]
    return sorted(unusable, key=lambda info: info.partitioned)


class HealthValidator:
    """Checks secondary indexes on a relation and rebuilds unusable ones."""

    _INDEXES_QUERY = """
        SELECT
            ni.nspname AS index_schema,
            ci.relname AS index_name,
            nt.nspname AS table_schema,
            ct.relname AS table_name,
            i.indisvalid AS is_valid,
            i.indisready AS is_ready,
            ci.relkind = 'I' AS is_partitioned
        FROM pg_catalog.pg_partition_tree($1::regclass) tree
        JOIN pg_catalog.pg_index i ON i.indrelid = tree.relid
        JOIN pg_catalog.pg_class ci ON ci.oid = i.indexrelid
        JOIN pg_catalog.pg_namespace ni ON ni.oid = ci.relnamespace
        JOIN pg_catalog.pg_class ct ON ct.oid = i.indrelid
        JOIN pg_catalog.pg_namespace nt ON nt.oid = ct.relnamespace
        ORDER BY tree.level, ci.relname
    """

    def __init__(self, logger: Optional[structlog.BoundLogger] = None) -> None:
        """Initialize health validator.

        Args:
            logger: Optional logger instance
        """
        self.logger = logger or get_logger("index_health")

    async def list_indexes(self, conn: Executor, table: RelationRef) -> list[IndexInfo]:
        """Enumerate indexes on a relation and all of its partitions."""
        rows = await conn.fetch(self._INDEXES_QUERY, table.regclass)
        return [
            IndexInfo(
                index=RelationRef(row["index_schema"], row["index_name"]),
                table=RelationRef(row["table_schema"], row["table_name"]),
                status=IndexStatus.from_flags(row["is_valid"], row["is_ready"]),
                partitioned=row["is_partitioned"],
            )
            for row in rows
        ]

    async def count_invalid(self, conn: Executor, *tables: RelationRef) -> int:
        """Number of unusable indexes across the given relations."""
        total = 0
        for table in tables:
            indexes = await self.list_indexes(conn, table)
            total += sum(1 for info in indexes if info.status is IndexStatus.UNUSABLE)
        return total

    async def check_and_repair(
        self, conn: Executor, table: RelationRef, repair: bool = True
    ) -> HealthReport:
        """Find unusable indexes and, when ``repair`` is set, rebuild them in place.

        A failed rebuild is recorded in the report rather than raised, so one
        broken index does not block the run.
        """
        plan = repair_plan(await self.list_indexes(conn, table))
        report = HealthReport(table=table, invalid_count=len(plan))

        if not plan:
            self.logger.debug("All indexes usable", table=str(table))
            return report

        self.logger.warning(
            "Unusable indexes found",
            table=str(table),
            count=len(plan),
            indexes=[str(info.index) for info in plan],
            repair=repair,
        )
        if not repair:
            return report

        for info in plan:
            try:
                await conn.execute(StatementBuilder.reindex(info.index))
                report.repaired.append(str(info.index))
                self.logger.info("Rebuilt unusable index", index=str(info.index))
            except Exception as e:
                report.failed[str(info.index)] = str(e)
                self.logger.error(
                    "Error rebuilding index",
                    index=str(info.index),
                    error=str(e),
                )

        return report
