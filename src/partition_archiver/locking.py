"""Run serialization per (source, archive) pair using PostgreSQL advisory locks."""

import hashlib
from datetime import datetime, timezone
from typing import Optional

import asyncpg
import structlog

from partition_archiver.database import DatabaseManager
from partition_archiver.exceptions import LockError
from partition_archiver.relations import RelationRef
from utils.logging import get_logger


def lock_key_for(source: RelationRef, archive: RelationRef) -> str:
    return f"partition_archiver:{source}:{archive}"


def advisory_lock_id(lock_key: str) -> int:
    """Stable signed 64-bit advisory lock id for a key.

    Python's hash() is salted per process, so it cannot be used to agree on
    a lock id across runs.
    """
    digest = hashlib.blake2b(lock_key.encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=True)


class Lock:
    """Represents a held run lock."""

    def __init__(
        self,
        lock_key: str,
        lock_id: int,
        acquired_at: datetime,
        owner: str,
        connection: Optional[asyncpg.Connection] = None,
    ) -> None:
        """Initialize lock.

        Args:
            lock_key: Human-readable lock key
            lock_id: Advisory lock id
            acquired_at: When lock was acquired
            owner: Lock owner identifier (run id)
            connection: Session holding the advisory lock
        """
        self.lock_key = lock_key
        self.lock_id = lock_id
        self.acquired_at = acquired_at
        self.owner = owner
        self.connection = connection

    def held_seconds(self) -> float:
        return (datetime.now(timezone.utc) - self.acquired_at).total_seconds()


class LockManager:
    """Prevents concurrent runs against the same staging relation.

    The advisory lock is session-scoped, so the connection that took it is
    kept out of the pool until the lock is released.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        owner: str,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize lock manager.

        Args:
            db_manager: Database manager providing the pool
            owner: Owner recorded on acquired locks (usually the run id)
            logger: Optional logger instance
        """
        self.db_manager = db_manager
        self.owner = owner
        self.logger = logger or get_logger("lock_manager")
        self._acquired_locks: dict[str, Lock] = {}

    async def acquire(self, source: RelationRef, archive: RelationRef) -> Lock:
        """Acquire the run lock for a configuration pair.

        Returns:
            Acquired Lock object

        Raises:
            LockError: If another session holds the lock or acquisition fails
        """
        lock_key = lock_key_for(source, archive)
        lock_id = advisory_lock_id(lock_key)

        if lock_key in self._acquired_locks:
            raise LockError(
                f"Lock already held by this instance: {lock_key}",
                context={"lock_id": lock_id, "lock_key": lock_key},
            )

        pool = self.db_manager.require_pool()
        try:
            conn = await pool.acquire()
        except Exception as e:
            raise LockError(
                f"Failed to acquire connection for run lock: {e}",
                context={"lock_key": lock_key},
            ) from e

        try:
            acquired = await conn.fetchval("SELECT pg_try_advisory_lock($1)", lock_id)
        except Exception as e:
            await pool.release(conn)
            raise LockError(
                f"Failed to acquire PostgreSQL lock: {e}",
                context={"lock_key": lock_key, "lock_id": lock_id},
            ) from e

        if not acquired:
            await pool.release(conn)
            raise LockError(
                f"Lock already held: {lock_key}",
                context={"lock_id": lock_id, "lock_key": lock_key},
            )

        lock = Lock(
            lock_key=lock_key,
            lock_id=lock_id,
            acquired_at=datetime.now(timezone.utc),
            owner=self.owner,
            connection=conn,
        )
        self._acquired_locks[lock_key] = lock

        self.logger.debug("Run lock acquired", lock_key=lock_key, lock_id=lock_id)
        return lock

    async def release(self, lock: Lock) -> None:
        """Release a run lock and return its connection to the pool.

        Failures are logged; the lock also disappears when its session ends.
        """
        self._acquired_locks.pop(lock.lock_key, None)
        conn = lock.connection
        if conn is None:
            return

        try:
            released = await conn.fetchval("SELECT pg_advisory_unlock($1)", lock.lock_id)
            if not released:
                self.logger.warning(
                    "Run lock was not held at release",
                    lock_key=lock.lock_key,
                    lock_id=lock.lock_id,
                )
            else:
                self.logger.debug(
                    "Run lock released",
                    lock_key=lock.lock_key,
                    held_seconds=round(lock.held_seconds(), 3),
                )
        except Exception as e:
            self.logger.warning(
                "Failed to release run lock (non-critical)",
                lock_key=lock.lock_key,
                error=str(e),
            )
        finally:
            lock.connection = None
            pool = self.db_manager.pool
            if pool is not None:
                await pool.release(conn)
