"""Transaction management for per-date archival work."""

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager, suppress
from datetime import datetime
from typing import Optional

import asyncpg
import structlog

from partition_archiver.exceptions import TransactionError
from partition_archiver.relations import StatementBuilder
from utils.logging import get_logger


class TransactionManager:
    """Runs one partition-date inside a transaction with statement and lock timeouts."""

    def __init__(
        self,
        connection: asyncpg.Connection,
        timeout_seconds: int = 1800,
        lock_timeout_seconds: int = 30,
        monitor_interval_seconds: float = 30,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize transaction manager.

        Args:
            connection: Database connection
            timeout_seconds: Statement timeout in seconds
            lock_timeout_seconds: Maximum wait for a structural lock in seconds
            monitor_interval_seconds: How often the transaction age is checked
            logger: Optional logger instance
        """
        self.connection = connection
        self.timeout_seconds = timeout_seconds
        self.lock_timeout_seconds = lock_timeout_seconds
        self.monitor_interval_seconds = monitor_interval_seconds
        self.logger = logger or get_logger("transaction_manager")
        self._transaction_start: Optional[datetime] = None

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[asyncpg.Connection, None]:
        """Start a database transaction with timeout monitoring.

        Exceptions raised by the body roll the transaction back and propagate
        unchanged; only failures of the transaction itself (begin, settings,
        commit) are wrapped.

        Yields:
            Database connection in transaction

        Raises:
            TransactionError: If the transaction cannot be started or committed
        """
        self._transaction_start = datetime.now()
        monitor: Optional[asyncio.Task] = None
        body_failed = False

        try:
            async with self.connection.transaction():
                await self.connection.execute(
                    StatementBuilder.set_local("statement_timeout", f"{self.timeout_seconds * 1000}")
                )
                await self.connection.execute(
                    StatementBuilder.set_local("lock_timeout", f"{self.lock_timeout_seconds * 1000}")
                )

                monitor = asyncio.create_task(self._monitor_transaction())

                self.logger.debug(
                    "Transaction started",
                    timeout_seconds=self.timeout_seconds,
                    lock_timeout_seconds=self.lock_timeout_seconds,
                )

                try:
                    yield self.connection
                except BaseException:
                    body_failed = True
                    raise

            self.logger.debug("Transaction committed successfully")

        except asyncpg.PostgresError as e:
            if body_failed:
                raise
            self.logger.error(
                "Transaction failed",
                error=str(e),
                error_code=getattr(e, "sqlstate", None),
            )
            raise TransactionError(
                f"Transaction failed: {e}",
                context={"error_code": getattr(e, "sqlstate", None)},
            ) from e
        finally:
            self._transaction_start = None
            if monitor is not None:
                monitor.cancel()
                with suppress(asyncio.CancelledError):
                    await monitor

    async def _monitor_transaction(self) -> None:
        """Monitor transaction age and warn if approaching timeout."""
        while self._transaction_start is not None:
            await asyncio.sleep(self.monitor_interval_seconds)

            if self._transaction_start is None:
                break

            age = (datetime.now() - self._transaction_start).total_seconds()
            threshold = self.timeout_seconds * 0.5

            if age > threshold:
                self.logger.warning(
                    "Transaction age approaching timeout",
                    age_seconds=age,
                    timeout_seconds=self.timeout_seconds,
                    percentage=(age / self.timeout_seconds) * 100,
                )

            if age > self.timeout_seconds:
                self.logger.error(
                    "Transaction exceeded timeout",
                    age_seconds=age,
                    timeout_seconds=self.timeout_seconds,
                )
                break

    def get_transaction_age(self) -> Optional[float]:
        """Get current transaction age in seconds.

        Returns:
            Transaction age in seconds, or None if no active transaction
        """
        if self._transaction_start is None:
            return None

        return (datetime.now() - self._transaction_start).total_seconds()
