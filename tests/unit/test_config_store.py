"""Unit tests for archival configuration rows."""

from unittest.mock import MagicMock

import pytest
from pydantic import ValidationError

from partition_archiver.config_store import ArchivalConfiguration, ConfigurationStore
from partition_archiver.exceptions import (
    ConfigurationError,
    ConfigurationInactiveError,
    ConfigurationNotFoundError,
)
from partition_archiver.relations import RelationRef


def config_row(config_id: int = 1, active="Y", **overrides) -> dict:
    row = {
        "config_id": config_id,
        "source_table_name": "sales",
        "archive_table_name": "history.sales_archive",
        "staging_table_name": "sales_staging",
        "is_active": active,
        "validate_before_exchange": "Y",
        "gather_stats_after_exchange": "N",
        "enable_compression": False,
        "compression_type": None,
        "created_date": None,
        "created_by": "dba",
        "updated_date": None,
        "updated_by": None,
    }
    row.update(overrides)
    return row


@pytest.fixture
def store() -> ConfigurationStore:
    return ConfigurationStore(RelationRef("archiver", "partition_archive_config"))


def test_from_row_converts_flags() -> None:
    configuration = ArchivalConfiguration.from_row(config_row())
    assert configuration.is_active is True
    assert configuration.validate_before_exchange is True
    assert configuration.gather_stats_after_exchange is False
    assert configuration.enable_compression is False


def test_relations_apply_default_schema() -> None:
    configuration = ArchivalConfiguration.from_row(config_row())
    source, archive, staging = configuration.relations("public")
    assert source == RelationRef("public", "sales")
    assert archive == RelationRef("history", "sales_archive")
    assert staging == RelationRef("public", "sales_staging")


def test_relations_reject_invalid_names() -> None:
    configuration = ArchivalConfiguration.from_row(config_row(staging_table_name="bad name"))
    with pytest.raises(ConfigurationError, match="Invalid table name"):
        configuration.relations()


def test_compression_type_normalized() -> None:
    configuration = ArchivalConfiguration.from_row(
        config_row(enable_compression="Y", compression_type=" LZ4 ")
    )
    assert configuration.compression_type == "lz4"

    with pytest.raises(ValidationError):
        ArchivalConfiguration.from_row(config_row(compression_type="zstd"))


@pytest.mark.asyncio
async def test_load_active(store: ConfigurationStore, mock_connection: MagicMock) -> None:
    mock_connection.fetch.return_value = [config_row()]

    configuration = await store.load_active(mock_connection, RelationRef("public", "sales"))

    assert configuration.config_id == 1
    args = mock_connection.fetch.await_args.args
    assert args[1:] == ("public.sales", "sales", True)


@pytest.mark.asyncio
async def test_bare_name_match_only_in_default_schema(
    store: ConfigurationStore, mock_connection: MagicMock
) -> None:
    await store.find(mock_connection, RelationRef("reporting", "sales"))
    assert mock_connection.fetch.await_args.args[1:] == ("reporting.sales", "sales", False)


@pytest.mark.asyncio
async def test_load_active_not_found(store: ConfigurationStore, mock_connection: MagicMock) -> None:
    mock_connection.fetch.return_value = []

    with pytest.raises(ConfigurationNotFoundError, match="No archival configuration"):
        await store.load_active(mock_connection, RelationRef("public", "sales"))


@pytest.mark.asyncio
async def test_load_active_inactive(store: ConfigurationStore, mock_connection: MagicMock) -> None:
    mock_connection.fetch.return_value = [config_row(active="N")]

    with pytest.raises(ConfigurationInactiveError, match="not active"):
        await store.load_active(mock_connection, RelationRef("public", "sales"))


@pytest.mark.asyncio
async def test_load_active_prefers_first_active(
    store: ConfigurationStore, mock_connection: MagicMock
) -> None:
    mock_connection.fetch.return_value = [
        config_row(1, active="N"),
        config_row(2, active="Y"),
        config_row(3, active="Y", archive_table_name="sales_archive_2"),
    ]

    configuration = await store.load_active(mock_connection, RelationRef("public", "sales"))

    assert configuration.config_id == 2


@pytest.mark.asyncio
async def test_add(store: ConfigurationStore, mock_connection: MagicMock) -> None:
    mock_connection.fetchval.return_value = 9
    configuration = ArchivalConfiguration(
        source_table_name="sales",
        archive_table_name="sales_archive",
        staging_table_name="sales_staging",
    )

    assert await store.add(mock_connection, configuration) == 9
    assert mock_connection.fetchval.await_args.args[1:4] == (
        "sales",
        "sales_archive",
        "sales_staging",
    )
