"""Integration tests against a live PostgreSQL (run with ``pytest -m integration``).

Connection settings come from ARCHIVER_TEST_DB_* environment variables; the
tests are skipped when ARCHIVER_TEST_DB_PASSWORD is not set.
"""

import os
import uuid
from collections.abc import AsyncGenerator
from datetime import date

import pytest
import pytest_asyncio

from partition_archiver.config import PartitionArchiverConfig
from partition_archiver.config_store import ArchivalConfiguration
from partition_archiver.database import DatabaseManager
from partition_archiver.exceptions import StructuralError
from partition_archiver.orchestrator import DateOutcome, PartitionArchiver

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(
        "ARCHIVER_TEST_DB_PASSWORD" not in os.environ,
        reason="ARCHIVER_TEST_DB_PASSWORD not set",
    ),
]


@pytest.fixture
def schema() -> str:
    return f"pa_it_{uuid.uuid4().hex[:8]}"


@pytest.fixture
def live_config(schema: str) -> PartitionArchiverConfig:
    return PartitionArchiverConfig.model_validate(
        {
            "version": "1.0",
            "database": {
                "name": os.getenv("ARCHIVER_TEST_DB_NAME", "test_db"),
                "host": os.getenv("ARCHIVER_TEST_DB_HOST", "localhost"),
                "port": int(os.getenv("ARCHIVER_TEST_DB_PORT", "5432")),
                "user": os.getenv("ARCHIVER_TEST_DB_USER", "archiver"),
                "password_env": "ARCHIVER_TEST_DB_PASSWORD",
            },
            "control": {"schema": schema},
            "defaults": {"default_schema": schema},
            "monitoring": {"metrics_enabled": False},
        }
    )


@pytest_asyncio.fixture
async def db_manager(
    live_config: PartitionArchiverConfig, schema: str
) -> AsyncGenerator[DatabaseManager, None]:
    async with DatabaseManager(live_config.database) as manager:
        await manager.execute(f'CREATE SCHEMA "{schema}"')
        try:
            yield manager
        finally:
            await manager.execute(f'DROP SCHEMA "{schema}" CASCADE')


@pytest_asyncio.fixture
async def archiver(
    live_config: PartitionArchiverConfig, db_manager: DatabaseManager, schema: str
) -> PartitionArchiver:
    columns = "sale_id bigint NOT NULL, sale_date date NOT NULL, amount numeric(12,2)"
    statements = [
        f'CREATE TABLE "{schema}".sales ({columns}) PARTITION BY RANGE (sale_date)',
        f'CREATE TABLE "{schema}".sales_archive ({columns}) PARTITION BY RANGE (sale_date)',
        f'CREATE TABLE "{schema}".sales_staging ({columns})',
        f'CREATE INDEX ON "{schema}".sales (sale_id)',
        f'CREATE INDEX ON "{schema}".sales_archive (sale_id)',
        f'CREATE INDEX ON "{schema}".sales_staging (sale_id)',
    ]
    for day in (15, 16, 17):
        statements.append(
            f'CREATE TABLE "{schema}".sales_p202401{day} PARTITION OF "{schema}".sales '
            f"FOR VALUES FROM ('2024-01-{day}') TO ('2024-01-{day + 1}')"
        )
    statements.append(
        f'INSERT INTO "{schema}".sales '
        "SELECT g, DATE '2024-01-15', g FROM generate_series(1, 42) g"
    )
    statements.append(
        f'INSERT INTO "{schema}".sales '
        "SELECT g, DATE '2024-01-17', g FROM generate_series(43, 50) g"
    )
    for statement in statements:
        await db_manager.execute(statement)

    archiver = PartitionArchiver(live_config, db_manager)
    await archiver.init_schema()
    await archiver.config_store.add(
        db_manager,
        ArchivalConfiguration(
            source_table_name="sales",
            archive_table_name="sales_archive",
            staging_table_name="sales_staging",
        ),
    )
    return archiver


@pytest.mark.asyncio
async def test_archive_moves_partitions(
    archiver: PartitionArchiver, db_manager: DatabaseManager, schema: str
) -> None:
    """42 rows on the 15th are archived, the empty 16th dropped, the 18th skipped."""
    summary = await archiver.archive(
        "sales", [date(2024, 1, 15), date(2024, 1, 16), date(2024, 1, 18)]
    )

    assert [r.outcome for r in summary.outcomes] == [
        DateOutcome.ARCHIVED,
        DateOutcome.DROPPED_EMPTY,
        DateOutcome.SKIPPED,
    ]
    assert summary.status == "success"

    assert await db_manager.fetchval(f'SELECT count(*) FROM "{schema}".sales') == 8
    assert await db_manager.fetchval(f'SELECT count(*) FROM "{schema}".sales_archive') == 42
    assert await db_manager.fetchval(f'SELECT count(*) FROM "{schema}".sales_staging') == 0
    assert await db_manager.fetchval(f"SELECT to_regclass('\"{schema}\".sales_p20240115')") is None
    assert await db_manager.fetchval(f"SELECT to_regclass('\"{schema}\".sales_p20240116')") is None

    row = await db_manager.fetchrow(
        f'SELECT records_archived, record_count_match, status '
        f'FROM "{schema}".partition_archive_execution_log'
    )
    assert dict(row) == {"records_archived": 42, "record_count_match": "Y", "status": "SUCCESS"}

    bound = await db_manager.fetchval(
        "SELECT pg_get_expr(c.relpartbound, c.oid) FROM pg_class c "
        "JOIN pg_namespace n ON n.oid = c.relnamespace "
        "WHERE n.nspname = $1 AND c.relname = 'sales_archive_20240115'",
        schema,
    )
    assert bound == "FOR VALUES FROM ('2024-01-15') TO ('2024-01-16')"

    traces = await db_manager.fetchval(
        f'SELECT count(*) FROM "{schema}".partition_archive_trace WHERE run_id = $1',
        summary.run_id,
    )
    assert traces > 0


@pytest.mark.asyncio
async def test_rerun_is_a_no_op(archiver: PartitionArchiver, db_manager: DatabaseManager, schema: str) -> None:
    await archiver.archive("sales", [date(2024, 1, 15)])

    summary = await archiver.archive("sales", [date(2024, 1, 15)])

    assert summary.outcomes[0].outcome is DateOutcome.SKIPPED
    assert await db_manager.fetchval(f'SELECT count(*) FROM "{schema}".sales_archive') == 42
    assert (
        await db_manager.fetchval(f'SELECT count(*) FROM "{schema}".partition_archive_execution_log')
        == 1
    )


@pytest.mark.asyncio
async def test_structural_mismatch_changes_nothing(
    archiver: PartitionArchiver, db_manager: DatabaseManager, schema: str
) -> None:
    await db_manager.execute(f'ALTER TABLE "{schema}".sales_staging ADD COLUMN note text')

    with pytest.raises(StructuralError):
        await archiver.archive("sales", [date(2024, 1, 15)])

    assert await db_manager.fetchval(f'SELECT count(*) FROM "{schema}".sales') == 50
    assert (
        await db_manager.fetchval(f'SELECT count(*) FROM "{schema}".partition_archive_execution_log')
        == 0
    )
