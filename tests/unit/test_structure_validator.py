"""Unit tests for the exchange-compatibility validator."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from partition_archiver.exceptions import StructuralError, StructuralErrorKind
from partition_archiver.relations import RelationRef
from partition_archiver.structure_validator import (
    ColumnSpec,
    RelationStructure,
    StructureValidator,
    column_differences,
    compare_structures,
)

SOURCE = RelationRef("public", "sales")
ARCHIVE = RelationRef("public", "sales_archive")
STAGING = RelationRef("public", "sales_staging")

COLUMNS = [
    ColumnSpec("sale_id", "bigint", False),
    ColumnSpec("sale_date", "date", False),
    ColumnSpec("amount", "numeric(12,2)", True),
]


def structure(
    relation: RelationRef,
    partitioned: bool,
    columns: list[ColumnSpec] = COLUMNS,
    key: list[str] = None,
    exists: bool = True,
) -> RelationStructure:
    return RelationStructure(
        relation=relation,
        exists=exists,
        partitioned=partitioned,
        columns=list(columns),
        partition_key=key if key is not None else (["sale_date"] if partitioned else []),
    )


def compatible() -> tuple[RelationStructure, RelationStructure, RelationStructure]:
    return (
        structure(SOURCE, partitioned=True),
        structure(ARCHIVE, partitioned=True),
        structure(STAGING, partitioned=False),
    )


def assert_kind(kind: StructuralErrorKind, source, archive, staging) -> None:
    with pytest.raises(StructuralError) as exc_info:
        compare_structures(source, archive, staging)
    assert exc_info.value.kind is kind


def test_compatible_structures_pass() -> None:
    compare_structures(*compatible())


@pytest.mark.parametrize(
    "missing, kind",
    [
        (0, StructuralErrorKind.SOURCE_MISSING),
        (1, StructuralErrorKind.ARCHIVE_MISSING),
        (2, StructuralErrorKind.STAGING_MISSING),
    ],
)
def test_missing_relation(missing: int, kind: StructuralErrorKind) -> None:
    structures = list(compatible())
    structures[missing] = RelationStructure(structures[missing].relation, exists=False)
    assert_kind(kind, *structures)


def test_archive_must_be_partitioned() -> None:
    source, _, staging = compatible()
    assert_kind(
        StructuralErrorKind.ARCHIVE_NOT_PARTITIONED,
        source,
        structure(ARCHIVE, partitioned=False),
        staging,
    )


def test_partitioned_staging_is_rejected() -> None:
    source, archive, _ = compatible()
    assert_kind(
        StructuralErrorKind.STAGING_PARTITIONED,
        source,
        archive,
        structure(STAGING, partitioned=True),
    )


def test_column_count_mismatch() -> None:
    source, archive, _ = compatible()
    staging = structure(STAGING, partitioned=False, columns=COLUMNS[:2])
    with pytest.raises(StructuralError) as exc_info:
        compare_structures(source, archive, staging)
    assert exc_info.value.kind is StructuralErrorKind.COLUMN_COUNT_MISMATCH
    assert exc_info.value.context == {"source": 3, "archive": 3, "staging": 2}


@pytest.mark.parametrize(
    "changed",
    [
        ColumnSpec("amount", "numeric(14,2)", True),  # precision
        ColumnSpec("amount", "numeric(12,2)", False),  # nullability
        ColumnSpec("total", "numeric(12,2)", True),  # name
        ColumnSpec("amount", "double precision", True),  # type
    ],
)
def test_archive_column_mismatch(changed: ColumnSpec) -> None:
    source, _, staging = compatible()
    archive = structure(ARCHIVE, partitioned=True, columns=[*COLUMNS[:2], changed])
    assert_kind(StructuralErrorKind.ARCHIVE_COLUMN_MISMATCH, source, archive, staging)


def test_staging_column_mismatch() -> None:
    source, archive, _ = compatible()
    staging = structure(
        STAGING,
        partitioned=False,
        columns=[*COLUMNS[:2], ColumnSpec("amount", "character varying(20)", True)],
    )
    assert_kind(StructuralErrorKind.STAGING_COLUMN_MISMATCH, source, archive, staging)


def test_column_order_does_not_matter() -> None:
    source, _, staging = compatible()
    archive = structure(ARCHIVE, partitioned=True, columns=list(reversed(COLUMNS)))
    compare_structures(source, archive, staging)


def test_partition_key_mismatch() -> None:
    source, _, staging = compatible()
    archive = structure(ARCHIVE, partitioned=True, key=["sale_id"])
    assert_kind(StructuralErrorKind.PARTITION_KEY_MISMATCH, source, archive, staging)


def test_checks_fail_fast_in_order() -> None:
    # Both staging partitioned and columns mismatched: the earlier check wins
    source, archive, _ = compatible()
    staging = structure(STAGING, partitioned=True, columns=COLUMNS[:1])
    assert_kind(StructuralErrorKind.STAGING_PARTITIONED, source, archive, staging)


def test_column_differences_counts_both_sides() -> None:
    left = structure(SOURCE, partitioned=True)
    right = structure(
        ARCHIVE, partitioned=True, columns=[*COLUMNS[:2], ColumnSpec("amount", "money", True)]
    )
    assert column_differences(left, right) == 2


def test_error_codes_are_stable() -> None:
    assert StructuralErrorKind.SOURCE_MISSING.code == 20010
    assert StructuralErrorKind.PARTITION_KEY_MISMATCH.code == 20018


@pytest.mark.asyncio
async def test_validator_reads_catalog() -> None:
    column_rows = [
        {"column_name": c.name, "data_type": c.data_type, "is_nullable": c.nullable}
        for c in COLUMNS
    ]
    relations = {
        ("public", "sales"): {"oid": 1, "relkind": "p"},
        ("public", "sales_archive"): {"oid": 2, "relkind": "p"},
        ("public", "sales_staging"): {"oid": 3, "relkind": "r"},
    }

    async def fetchrow(query: str, schema: str, name: str):
        return relations.get((schema, name))

    async def fetch(query: str, oid: int):
        if "pg_partitioned_table" in query:
            return [{"column_name": "sale_date"}]
        return column_rows

    conn = MagicMock()
    conn.fetchrow = AsyncMock(side_effect=fetchrow)
    conn.fetch = AsyncMock(side_effect=fetch)

    validator = StructureValidator()
    counts = await validator.validate(conn, SOURCE, ARCHIVE, STAGING)
    assert counts == {"source_columns": 3, "archive_columns": 3, "staging_columns": 3}

    staging = await validator.describe(conn, STAGING)
    assert staging.partitioned is False
    assert staging.partition_key == []


@pytest.mark.asyncio
async def test_validator_reports_missing_staging() -> None:
    async def fetchrow(query: str, schema: str, name: str):
        if name == "sales_staging":
            return None
        return {"oid": 1, "relkind": "p"}

    conn = MagicMock()
    conn.fetchrow = AsyncMock(side_effect=fetchrow)
    conn.fetch = AsyncMock(return_value=[])

    with pytest.raises(StructuralError) as exc_info:
        await StructureValidator().validate(conn, SOURCE, ARCHIVE, STAGING)
    assert exc_info.value.kind is StructuralErrorKind.STAGING_MISSING
