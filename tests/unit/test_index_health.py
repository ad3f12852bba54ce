"""Unit tests for index health checks and repair."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from partition_archiver.index_health import (
    HealthValidator,
    IndexInfo,
    IndexStatus,
    repair_plan,
)
from partition_archiver.relations import RelationRef

TABLE = RelationRef("public", "sales_archive")


def index_row(name: str, valid: bool = True, ready: bool = True, partitioned: bool = False) -> dict:
    return {
        "index_schema": "public",
        "index_name": name,
        "table_schema": "public",
        "table_name": "sales_archive",
        "is_valid": valid,
        "is_ready": ready,
        "is_partitioned": partitioned,
    }


@pytest.fixture
def conn() -> MagicMock:
    conn = MagicMock()
    conn.fetch = AsyncMock(return_value=[])
    conn.execute = AsyncMock(return_value="REINDEX")
    return conn


@pytest.mark.parametrize(
    "valid, ready, expected",
    [
        (True, True, IndexStatus.USABLE),
        (False, True, IndexStatus.UNUSABLE),
        (True, False, IndexStatus.UNUSABLE),
    ],
)
def test_status_from_flags(valid: bool, ready: bool, expected: IndexStatus) -> None:
    assert IndexStatus.from_flags(valid, ready) is expected


def test_repair_plan_rebuilds_leaves_first() -> None:
    parent = IndexInfo(RelationRef("public", "idx_parent"), TABLE, IndexStatus.UNUSABLE, True)
    leaf = IndexInfo(RelationRef("public", "idx_leaf"), TABLE, IndexStatus.UNUSABLE, False)
    healthy = IndexInfo(RelationRef("public", "idx_ok"), TABLE, IndexStatus.USABLE, False)

    assert repair_plan([parent, healthy, leaf]) == [leaf, parent]


@pytest.mark.asyncio
async def test_healthy_table_needs_no_repair(conn: MagicMock) -> None:
    conn.fetch.return_value = [index_row("sales_archive_pkey")]

    report = await HealthValidator().check_and_repair(conn, TABLE)

    assert report.invalid_count == 0
    assert report.healthy is True
    conn.execute.assert_not_awaited()


@pytest.mark.asyncio
async def test_unusable_indexes_are_rebuilt(conn: MagicMock) -> None:
    conn.fetch.return_value = [
        index_row("sales_archive_pkey"),
        index_row("sales_archive_date_idx", valid=False),
    ]

    report = await HealthValidator().check_and_repair(conn, TABLE)

    assert report.invalid_count == 1
    assert report.repaired == ["public.sales_archive_date_idx"]
    assert report.healthy is True
    conn.execute.assert_awaited_once_with('REINDEX INDEX "public"."sales_archive_date_idx"')


@pytest.mark.asyncio
async def test_report_only_mode_does_not_rebuild(conn: MagicMock) -> None:
    conn.fetch.return_value = [index_row("sales_archive_date_idx", ready=False)]

    report = await HealthValidator().check_and_repair(conn, TABLE, repair=False)

    assert report.invalid_count == 1
    assert report.healthy is False
    conn.execute.assert_not_awaited()


@pytest.mark.asyncio
async def test_failed_rebuild_is_recorded_not_raised(conn: MagicMock) -> None:
    conn.fetch.return_value = [
        index_row("idx_a", valid=False),
        index_row("idx_b", valid=False),
    ]
    conn.execute.side_effect = [RuntimeError("could not create unique index"), "REINDEX"]

    report = await HealthValidator().check_and_repair(conn, TABLE)

    assert report.repaired == ["public.idx_b"]
    assert "public.idx_a" in report.failed
    assert report.healthy is False


@pytest.mark.asyncio
async def test_count_invalid_sums_tables(conn: MagicMock) -> None:
    conn.fetch.side_effect = [
        [index_row("idx_a", valid=False), index_row("idx_b")],
        [index_row("idx_c", valid=False), index_row("idx_d", ready=False)],
    ]

    total = await HealthValidator().count_invalid(conn, TABLE, RelationRef("public", "sales"))

    assert total == 3
