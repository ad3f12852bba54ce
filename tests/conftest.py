"""Pytest configuration and shared fixtures."""

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import pytest

from partition_archiver.config import PartitionArchiverConfig
from partition_archiver.database import DatabaseManager


@pytest.fixture
def archiver_config() -> PartitionArchiverConfig:
    """Minimal valid configuration."""
    return PartitionArchiverConfig.model_validate(
        {
            "version": "1.0",
            "database": {
                "name": "warehouse",
                "host": "localhost",
                "user": "archiver",
                "password_env": "ARCHIVER_DB_PASSWORD",
            },
            "monitoring": {"metrics_enabled": False},
        }
    )


@pytest.fixture
def mock_connection() -> MagicMock:
    """asyncpg-like connection with async query methods."""
    conn = MagicMock()
    conn.execute = AsyncMock(return_value="OK")
    conn.fetch = AsyncMock(return_value=[])
    conn.fetchrow = AsyncMock(return_value=None)
    conn.fetchval = AsyncMock(return_value=None)
    return conn


@pytest.fixture
def mock_db_manager(mock_connection: MagicMock) -> MagicMock:
    """DatabaseManager whose pooled connections are all ``mock_connection``."""
    db_manager = MagicMock(spec=DatabaseManager)
    db_manager.execute = AsyncMock(return_value="OK")
    db_manager.fetch = AsyncMock(return_value=[])
    db_manager.fetchrow = AsyncMock(return_value=None)
    db_manager.fetchval = AsyncMock(return_value=None)
    db_manager.current_user = AsyncMock(return_value="archiver")
    db_manager.get_postgres_version = AsyncMock(return_value="16.2")

    @asynccontextmanager
    async def acquire_connection():
        yield mock_connection

    db_manager.acquire_connection = acquire_connection
    return db_manager
