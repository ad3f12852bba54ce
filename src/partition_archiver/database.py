"""Database connection and query management using asyncpg."""

import re
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any, Optional, Union

import asyncpg
from structlog import BoundLogger

from partition_archiver.config import DatabaseConfig
from partition_archiver.exceptions import DatabaseError
from utils.logging import get_logger


class DatabaseManager:
    """Manages the PostgreSQL connection pool shared by one archival run.

    The pool must hold at least three connections: the advisory-lock session,
    the partition-date transaction and the independent trace channel.
    """

    def __init__(
        self,
        config: DatabaseConfig,
        pool_size: Optional[int] = None,
        logger: Optional[BoundLogger] = None,
    ) -> None:
        """Initialize database manager.

        Args:
            config: Database configuration
            pool_size: Connection pool size (defaults to config.connection_pool_size)
            logger: Optional logger instance
        """
        self.config = config
        self.pool_size = pool_size or config.connection_pool_size
        self.logger = logger or get_logger("database")
        self.pool: Optional[asyncpg.Pool] = None
        self._dsn: Optional[str] = None

    @property
    def dsn(self) -> str:
        """Get database connection DSN."""
        if self._dsn is None:
            try:
                password = self.config.get_password()
            except ValueError as e:
                raise DatabaseError(
                    str(e),
                    context={"database": self.config.name},
                ) from e

            self._dsn = (
                f"postgresql://{self.config.user}:{password}@"
                f"{self.config.host}:{self.config.port}/{self.config.name}"
            )
        return self._dsn

    async def connect(self) -> None:
        """Create connection pool."""
        try:
            self.logger.debug(
                "Creating connection pool",
                database=self.config.name,
                host=self.config.host,
                pool_size=self.pool_size,
            )

            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=1,
                max_size=self.pool_size,
                command_timeout=None,
                server_settings={
                    "application_name": "partition_archiver",
                },
            )

            async with self.pool.acquire() as conn:
                version = await conn.fetchval("SELECT version()")
                self.logger.debug(
                    "Database connection established",
                    database=self.config.name,
                    version=version.split(",")[0] if version else "unknown",
                )

        except Exception as e:
            raise DatabaseError(
                f"Failed to create connection pool: {e}",
                context={"database": self.config.name, "host": self.config.host},
            ) from e

    async def disconnect(self) -> None:
        """Close connection pool."""
        if self.pool:
            self.logger.debug("Closing connection pool", database=self.config.name)
            await self.pool.close()
            self.pool = None

    async def __aenter__(self) -> "DatabaseManager":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.disconnect()

    def require_pool(self) -> asyncpg.Pool:
        if not self.pool:
            raise DatabaseError(
                "Connection pool not initialized. Call connect() first.",
                context={"database": self.config.name},
            )
        return self.pool

    @asynccontextmanager
    async def acquire_connection(self) -> AsyncGenerator[asyncpg.Connection, None]:
        """Acquire a connection from the pool.

        Statements on the yielded connection run in autocommit mode unless the
        caller opens a transaction on it.

        Yields:
            Database connection

        Raises:
            DatabaseError: If pool is not initialized
        """
        pool = self.require_pool()
        conn = await pool.acquire()
        try:
            yield conn
        finally:
            await pool.release(conn)

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[asyncpg.Connection, None]:
        """Start a database transaction on a dedicated pooled connection.

        Yields:
            Database connection in transaction
        """
        pool = self.require_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    async def _run(self, method: str, query: str, *args: Any) -> Any:
        try:
            async with self.acquire_connection() as conn:
                return await getattr(conn, method)(query, *args)
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError(
                f"Query execution failed: {e}",
                context={
                    "database": self.config.name,
                    "query": query[:100],
                    "sqlstate": getattr(e, "sqlstate", None),
                },
            ) from e

    async def execute(self, query: str, *args: Any) -> str:
        """Execute a query that doesn't return rows.

        Returns:
            Command status string

        Raises:
            DatabaseError: If execution fails
        """
        return await self._run("execute", query, *args)

    async def fetch(self, query: str, *args: Any) -> list[asyncpg.Record]:
        """Execute a query and return all rows.

        Raises:
            DatabaseError: If execution fails
        """
        return await self._run("fetch", query, *args)

    async def fetchrow(self, query: str, *args: Any) -> Optional[asyncpg.Record]:
        """Execute a query and return one row.

        Raises:
            DatabaseError: If execution fails
        """
        return await self._run("fetchrow", query, *args)

    async def fetchval(self, query: str, *args: Any) -> Any:
        """Execute a query and return a single value.

        Raises:
            DatabaseError: If execution fails
        """
        return await self._run("fetchval", query, *args)

    async def current_user(self) -> str:
        """Return the session user, recorded as the executing principal."""
        return await self.fetchval("SELECT current_user")

    async def get_postgres_version(self) -> str:
        """Get PostgreSQL version.

        Returns:
            PostgreSQL version string (e.g., "16.2")
        """
        version = await self.fetchval("SELECT version()")
        if version:
            match = re.search(r"PostgreSQL (\d+(?:\.\d+)?)", version)
            if match:
                return match.group(1)
        return "unknown"


# Anything with asyncpg's execute/fetch/fetchrow/fetchval signatures: a pooled
# DatabaseManager for autocommit reads, or a Connection inside a transaction.
Executor = Union[DatabaseManager, asyncpg.Connection]
