"""Partition swap primitive and partition DDL helpers.

PostgreSQL has no EXCHANGE PARTITION. The swap here detaches the partition,
trades names (and schemas) with the standalone table, and attaches the
standalone storage under the original bound. All statements run on the
caller's transaction, so a rollback restores every relation.
"""

import uuid
from typing import Optional

import structlog

from partition_archiver.database import Executor
from partition_archiver.partitions import PartitionBound, PartitionHandle
from partition_archiver.relations import RelationRef, StatementBuilder
from utils.logging import get_logger


SWAP_NAME_PREFIX = "pa_swap_"


def swap_statements(
    parent: RelationRef,
    partition: PartitionHandle,
    standalone: RelationRef,
    temp_name: Optional[str] = None,
) -> list[str]:
    """Statements that swap a partition with a standalone table, in execution order."""
    target = partition.relation
    temp_name = temp_name or f"{SWAP_NAME_PREFIX}{uuid.uuid4().hex[:16]}"
    statements = [
        StatementBuilder.detach_partition(parent, target),
        StatementBuilder.rename(target, temp_name),
    ]

    # Standalone takes over the partition's schema and name
    moved = standalone
    if moved.schema != target.schema:
        statements.append(StatementBuilder.set_schema(moved, target.schema))
        moved = RelationRef(target.schema, moved.name)
    if moved.name != target.name:
        statements.append(StatementBuilder.rename(moved, target.name))

    # Detached partition takes over the standalone's schema and name
    parked = target.with_name(temp_name)
    if parked.schema != standalone.schema:
        statements.append(StatementBuilder.set_schema(parked, standalone.schema))
        parked = RelationRef(standalone.schema, temp_name)
    statements.append(StatementBuilder.rename(parked, standalone.name))

    statements.append(StatementBuilder.attach_partition(parent, target, partition.bound.spec))
    return statements


class PartitionExchanger:
    """Runs the DDL that moves partitions between source, staging and archive."""

    _COMPRESSIBLE_COLUMNS_QUERY = """
        SELECT a.attname AS column_name
        FROM pg_catalog.pg_attribute a
        JOIN pg_catalog.pg_type t ON t.oid = a.atttypid
        WHERE a.attrelid = $1::regclass
          AND a.attnum > 0
          AND NOT a.attisdropped
          AND t.typstorage <> 'p'
        ORDER BY a.attnum
    """

    def __init__(self, logger: Optional[structlog.BoundLogger] = None) -> None:
        """Initialize partition exchanger.

        Args:
            logger: Optional logger instance
        """
        self.logger = logger or get_logger("exchange")

    async def exchange(
        self,
        conn: Executor,
        parent: RelationRef,
        partition: PartitionHandle,
        standalone: RelationRef,
    ) -> None:
        """Swap the storage of ``partition`` with ``standalone``.

        Afterwards the partition of ``parent`` holds the standalone table's
        former rows and indexes, and ``standalone`` holds the partition's.
        Names, schemas and the partition bound are unchanged.
        """
        for statement in swap_statements(parent, partition, standalone):
            await conn.execute(statement)

        self.logger.debug(
            "Partition exchanged",
            parent=str(parent),
            partition=str(partition.relation),
            standalone=str(standalone),
            bound=partition.bound.spec,
        )

    async def materialize_partition(
        self,
        conn: Executor,
        parent: RelationRef,
        partition: RelationRef,
        bound_spec: str,
    ) -> PartitionHandle:
        """Create an empty partition of ``parent`` with the given bound."""
        await conn.execute(StatementBuilder.create_partition(parent, partition, bound_spec))
        self.logger.debug(
            "Archive partition created",
            parent=str(parent),
            partition=str(partition),
            bound=bound_spec,
        )
        return PartitionHandle(relation=partition, bound=PartitionBound.parse(bound_spec))

    async def drop_partition(self, conn: Executor, partition: RelationRef) -> None:
        await conn.execute(StatementBuilder.drop_table(partition))
        self.logger.debug("Partition dropped", partition=str(partition))

    async def is_empty(self, conn: Executor, relation: RelationRef) -> bool:
        return not await conn.fetchval(StatementBuilder.has_rows(relation))

    async def clear_standalone(self, conn: Executor, relation: RelationRef) -> bool:
        """Truncate a standalone table left with rows by an earlier attempt.

        Returns:
            True if rows were found and removed
        """
        if await self.is_empty(conn, relation):
            return False
        await conn.execute(StatementBuilder.truncate(relation))
        self.logger.warning("Residual rows cleared from staging table", staging=str(relation))
        return True

    async def apply_compression(self, conn: Executor, relation: RelationRef, method: str) -> list[str]:
        """Set the TOAST compression method on every compressible column.

        Only affects values written afterwards.

        Returns:
            Names of the altered columns
        """
        rows = await conn.fetch(self._COMPRESSIBLE_COLUMNS_QUERY, relation.regclass)
        columns = [row["column_name"] for row in rows]
        for column in columns:
            await conn.execute(StatementBuilder.set_column_compression(relation, column, method))
        self.logger.debug(
            "Column compression applied",
            relation=str(relation),
            method=method,
            columns=len(columns),
        )
        return columns
