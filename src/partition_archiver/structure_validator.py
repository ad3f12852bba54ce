"""Exchange-compatibility checks across source, archive and staging relations."""

from dataclasses import dataclass, field
from typing import Optional

import structlog

from partition_archiver.database import Executor
from partition_archiver.exceptions import StructuralError, StructuralErrorKind
from partition_archiver.relations import RelationRef
from utils.logging import get_logger


@dataclass(frozen=True)
class ColumnSpec:
    """One column as the exchange primitive sees it."""

    name: str
    data_type: str  # format_type() output, includes length/precision/scale
    nullable: bool


@dataclass
class RelationStructure:
    """Catalog snapshot of a relation taken for validation."""

    relation: RelationRef
    exists: bool
    partitioned: bool = False
    columns: list[ColumnSpec] = field(default_factory=list)
    partition_key: list[str] = field(default_factory=list)

    @property
    def column_set(self) -> frozenset[ColumnSpec]:
        return frozenset(self.columns)


def column_differences(left: RelationStructure, right: RelationStructure) -> int:
    """Number of column definitions present on one side but not the other."""
    return len(left.column_set.symmetric_difference(right.column_set))


def compare_structures(
    source: RelationStructure,
    archive: RelationStructure,
    staging: RelationStructure,
) -> None:
    """Fail fast on the first exchange incompatibility.

    Raises:
        StructuralError: With the kind of the first violated check
    """
    for structure, kind, role in (
        (source, StructuralErrorKind.SOURCE_MISSING, "Source"),
        (archive, StructuralErrorKind.ARCHIVE_MISSING, "Archive"),
        (staging, StructuralErrorKind.STAGING_MISSING, "Staging"),
    ):
        if not structure.exists:
            raise StructuralError(
                kind,
                f"{role} table {structure.relation} does not exist",
                context={"table": str(structure.relation)},
            )

    if not archive.partitioned:
        raise StructuralError(
            StructuralErrorKind.ARCHIVE_NOT_PARTITIONED,
            f"Archive table {archive.relation} must be partitioned",
            context={"archive": str(archive.relation)},
        )

    if staging.partitioned:
        raise StructuralError(
            StructuralErrorKind.STAGING_PARTITIONED,
            f"Staging table {staging.relation} must NOT be partitioned",
            context={"staging": str(staging.relation)},
        )

    counts = {
        "source": len(source.columns),
        "archive": len(archive.columns),
        "staging": len(staging.columns),
    }
    if len(set(counts.values())) != 1:
        raise StructuralError(
            StructuralErrorKind.COLUMN_COUNT_MISMATCH,
            "Column count mismatch - Source: {source}, Archive: {archive}, "
            "Staging: {staging}".format(**counts),
            context=counts,
        )

    for other, kind in (
        (archive, StructuralErrorKind.ARCHIVE_COLUMN_MISMATCH),
        (staging, StructuralErrorKind.STAGING_COLUMN_MISMATCH),
    ):
        differences = column_differences(source, other)
        if differences:
            raise StructuralError(
                kind,
                f"Column structure mismatch between {source.relation} and "
                f"{other.relation} ({differences} differences)",
                context={
                    "source": str(source.relation),
                    "other": str(other.relation),
                    "differences": differences,
                },
            )

    if source.partition_key != archive.partition_key:
        raise StructuralError(
            StructuralErrorKind.PARTITION_KEY_MISMATCH,
            "Partition key mismatch - Source: ({}), Archive: ({})".format(
                ",".join(source.partition_key), ",".join(archive.partition_key)
            ),
            context={
                "source_key": source.partition_key,
                "archive_key": archive.partition_key,
            },
        )


class StructureValidator:
    """Reads relation structure from the catalog and checks exchange compatibility."""

    _RELATION_QUERY = """
        SELECT c.oid, c.relkind::text AS relkind
        FROM pg_catalog.pg_class c
        JOIN pg_catalog.pg_namespace n ON n.oid = c.relnamespace
        WHERE n.nspname = $1
          AND c.relname = $2
          AND c.relkind IN ('r', 'p')
    """

    _COLUMNS_QUERY = """
        SELECT
            a.attname AS column_name,
            pg_catalog.format_type(a.atttypid, a.atttypmod) AS data_type,
            NOT a.attnotnull AS is_nullable
        FROM pg_catalog.pg_attribute a
        WHERE a.attrelid = $1
          AND a.attnum > 0
          AND NOT a.attisdropped
        ORDER BY a.attnum
    """

    _PARTITION_KEY_QUERY = """
        SELECT a.attname AS column_name
        FROM pg_catalog.pg_partitioned_table pt
        CROSS JOIN LATERAL unnest(pt.partattrs::int2[]) WITH ORDINALITY AS k(attnum, ord)
        JOIN pg_catalog.pg_attribute a
            ON a.attrelid = pt.partrelid
           AND a.attnum = k.attnum
        WHERE pt.partrelid = $1
        ORDER BY k.ord
    """

    def __init__(self, logger: Optional[structlog.BoundLogger] = None) -> None:
        """Initialize structure validator.

        Args:
            logger: Optional logger instance
        """
        self.logger = logger or get_logger("structure_validator")

    async def describe(self, conn: Executor, relation: RelationRef) -> RelationStructure:
        """Take a catalog snapshot of one relation."""
        row = await conn.fetchrow(self._RELATION_QUERY, relation.schema, relation.name)
        if not row:
            return RelationStructure(relation=relation, exists=False)

        oid = row["oid"]
        partitioned = row["relkind"] == "p"

        columns = [
            ColumnSpec(
                name=r["column_name"],
                data_type=r["data_type"],
                nullable=r["is_nullable"],
            )
            for r in await conn.fetch(self._COLUMNS_QUERY, oid)
        ]

        partition_key: list[str] = []
        if partitioned:
            partition_key = [
                r["column_name"] for r in await conn.fetch(self._PARTITION_KEY_QUERY, oid)
            ]

        return RelationStructure(
            relation=relation,
            exists=True,
            partitioned=partitioned,
            columns=columns,
            partition_key=partition_key,
        )

    async def validate(
        self,
        conn: Executor,
        source: RelationRef,
        archive: RelationRef,
        staging: RelationRef,
    ) -> dict[str, int]:
        """Check that the three relations are exchange-compatible.

        Returns:
            Column counts per relation, for reporting

        Raises:
            StructuralError: On the first incompatibility found
        """
        source_structure = await self.describe(conn, source)
        archive_structure = await self.describe(conn, archive)
        staging_structure = await self.describe(conn, staging)

        compare_structures(source_structure, archive_structure, staging_structure)

        self.logger.debug(
            "Table structure validation passed",
            source=str(source),
            archive=str(archive),
            staging=str(staging),
            columns=len(source_structure.columns),
            partition_key=source_structure.partition_key,
        )
        return {
            "source_columns": len(source_structure.columns),
            "archive_columns": len(archive_structure.columns),
            "staging_columns": len(staging_structure.columns),
        }
