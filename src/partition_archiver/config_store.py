"""Archival configuration rows stored in the database."""

from datetime import datetime
from typing import Any, Optional

import structlog
from pydantic import BaseModel, Field, field_validator

from partition_archiver.database import Executor
from partition_archiver.exceptions import (
    ConfigurationError,
    ConfigurationInactiveError,
    ConfigurationNotFoundError,
)
from partition_archiver.relations import COMPRESSION_METHODS, RelationRef
from utils.logging import get_logger


class ArchivalConfiguration(BaseModel):
    """One (source, archive) pair with its staging relation and options."""

    config_id: Optional[int] = None
    source_table_name: str = Field(description="Live, range-partitioned table")
    archive_table_name: str = Field(description="Partitioned archive table")
    staging_table_name: str = Field(description="Unpartitioned staging table used for the two-hop swap")
    is_active: bool = True
    validate_before_exchange: bool = True
    gather_stats_after_exchange: bool = True
    enable_compression: bool = False
    compression_type: Optional[str] = None
    created_date: Optional[datetime] = None
    created_by: Optional[str] = None
    updated_date: Optional[datetime] = None
    updated_by: Optional[str] = None

    @field_validator("compression_type")
    @classmethod
    def validate_compression_type(cls, v: Optional[str]) -> Optional[str]:
        """Compression must name a TOAST compression method."""
        if v is None:
            return v
        v = v.strip().lower()
        if v not in COMPRESSION_METHODS:
            raise ValueError(
                f"Unsupported compression_type: {v!r}. Must be one of {', '.join(COMPRESSION_METHODS)}"
            )
        return v

    @classmethod
    def from_row(cls, row: Any) -> "ArchivalConfiguration":
        values = dict(row)
        for flag in (
            "is_active",
            "validate_before_exchange",
            "gather_stats_after_exchange",
            "enable_compression",
        ):
            if isinstance(values.get(flag), str):
                values[flag] = values[flag].upper() == "Y"
        return cls.model_validate(values)

    def relations(self, default_schema: str = "public") -> tuple[RelationRef, RelationRef, RelationRef]:
        """Source, archive and staging references.

        Raises:
            ConfigurationError: If a stored name is not a valid identifier
        """
        try:
            return (
                RelationRef.parse(self.source_table_name, default_schema),
                RelationRef.parse(self.archive_table_name, default_schema),
                RelationRef.parse(self.staging_table_name, default_schema),
            )
        except ValueError as e:
            raise ConfigurationError(
                f"Invalid table name in archival configuration: {e}",
                context={"config_id": self.config_id, "source": self.source_table_name},
            ) from e


class ConfigurationStore:
    """Read access to the archival configuration table.

    The orchestrator never writes configuration rows; ``add`` exists for
    operator tooling and tests.
    """

    _SELECT_COLUMNS = (
        "config_id, source_table_name, archive_table_name, staging_table_name, "
        "is_active, validate_before_exchange, gather_stats_after_exchange, "
        "enable_compression, compression_type, created_date, created_by, "
        "updated_date, updated_by"
    )

    def __init__(
        self,
        table: RelationRef,
        default_schema: str = "public",
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize configuration store.

        Args:
            table: Configuration table
            default_schema: Schema assumed for unqualified table names
            logger: Optional logger instance
        """
        self.table = table
        self.default_schema = default_schema
        self.logger = logger or get_logger("config_store")

    async def ensure_schema(self, conn: Executor) -> None:
        await conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {self.table.quoted} (
                config_id BIGINT GENERATED ALWAYS AS IDENTITY PRIMARY KEY,
                source_table_name TEXT NOT NULL,
                archive_table_name TEXT NOT NULL,
                staging_table_name TEXT NOT NULL,
                is_active BOOLEAN NOT NULL DEFAULT true,
                validate_before_exchange BOOLEAN NOT NULL DEFAULT true,
                gather_stats_after_exchange BOOLEAN NOT NULL DEFAULT true,
                enable_compression BOOLEAN NOT NULL DEFAULT false,
                compression_type TEXT,
                created_date TIMESTAMPTZ NOT NULL DEFAULT now(),
                created_by TEXT NOT NULL DEFAULT current_user,
                updated_date TIMESTAMPTZ,
                updated_by TEXT,
                UNIQUE (source_table_name, archive_table_name)
            )
            """
        )

    async def find(self, conn: Executor, source: RelationRef) -> list[ArchivalConfiguration]:
        """All rows whose source matches, qualified or not, case-insensitively."""
        rows = await conn.fetch(
            f"SELECT {self._SELECT_COLUMNS} FROM {self.table.quoted} "
            "WHERE lower(source_table_name) = lower($1) "
            "   OR (lower(source_table_name) = lower($2) AND $3) "
            "ORDER BY config_id",
            str(source),
            source.name,
            source.schema == self.default_schema,
        )
        return [ArchivalConfiguration.from_row(row) for row in rows]

    async def load_active(self, conn: Executor, source: RelationRef) -> ArchivalConfiguration:
        """Return the active configuration for a source table.

        Raises:
            ConfigurationNotFoundError: If no row matches the source table
            ConfigurationInactiveError: If rows match but none is active
        """
        configurations = await self.find(conn, source)
        if not configurations:
            raise ConfigurationNotFoundError(
                f"No archival configuration found for {source}",
                context={"source": str(source), "config_table": str(self.table)},
            )

        active = [c for c in configurations if c.is_active]
        if not active:
            raise ConfigurationInactiveError(
                f"Archival configuration for {source} is not active",
                context={
                    "source": str(source),
                    "config_ids": [c.config_id for c in configurations],
                },
            )

        if len(active) > 1:
            self.logger.warning(
                "Multiple active configurations for source table, using the first",
                source=str(source),
                config_ids=[c.config_id for c in active],
            )

        chosen = active[0]
        self.logger.debug(
            "Archival configuration loaded",
            source=str(source),
            archive=chosen.archive_table_name,
            staging=chosen.staging_table_name,
            config_id=chosen.config_id,
        )
        return chosen

    async def add(self, conn: Executor, configuration: ArchivalConfiguration) -> int:
        """Insert a configuration row and return its id."""
        return await conn.fetchval(
            f"""
            INSERT INTO {self.table.quoted} (
                source_table_name, archive_table_name, staging_table_name, is_active,
                validate_before_exchange, gather_stats_after_exchange,
                enable_compression, compression_type
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            RETURNING config_id
            """,
            configuration.source_table_name,
            configuration.archive_table_name,
            configuration.staging_table_name,
            configuration.is_active,
            configuration.validate_before_exchange,
            configuration.gather_stats_after_exchange,
            configuration.enable_compression,
            configuration.compression_type,
        )
