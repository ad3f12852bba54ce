"""Partition lookup for range-partitioned tables."""

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Optional

import structlog

from partition_archiver.database import Executor
from partition_archiver.exceptions import DatabaseError
from partition_archiver.relations import RelationRef
from utils.logging import get_logger

_RANGE_PATTERN = re.compile(r"^FOR VALUES FROM \((?P<lower>[^()]*)\) TO \((?P<upper>[^()]*)\)$")


def _parse_bound_value(token: str) -> Optional[datetime]:
    """Parse one side of a range bound.

    Returns None for MINVALUE/MAXVALUE. Aware timestamps are converted to
    naive UTC so they compare with plain dates.

    Raises:
        ValueError: If the token is not a date/timestamp literal or sentinel
    """
    token = token.strip()
    if token.upper() in ("MINVALUE", "MAXVALUE"):
        return None
    if not (token.startswith("'") and token.endswith("'")):
        raise ValueError(f"Not a date literal: {token!r}")
    text = token[1:-1].replace("T", " ")
    # pg_get_expr renders offsets as "+00" / "-05:30"
    if re.search(r"\d{2}:\d{2}(?::\d{2}(?:\.\d+)?)?[+-]\d{2}$", text):
        text += ":00"
    value = datetime.fromisoformat(text)
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


@dataclass(frozen=True)
class PartitionBound:
    """Boundaries of one range partition.

    ``upper`` is exclusive; ``None`` means unbounded (MAXVALUE or DEFAULT).
    """

    spec: str
    lower: Optional[datetime]
    upper: Optional[datetime]
    is_default: bool = False

    @classmethod
    def parse(cls, spec: str) -> "PartitionBound":
        """Parse a pg_get_expr(relpartbound) expression.

        Raises:
            ValueError: If the expression is not a single-column date range or DEFAULT
        """
        spec = spec.strip()
        if spec.upper() == "DEFAULT":
            return cls(spec="DEFAULT", lower=None, upper=None, is_default=True)

        match = _RANGE_PATTERN.match(spec)
        if not match or "," in match.group("lower") or "," in match.group("upper"):
            raise ValueError(f"Unsupported partition bound: {spec!r}")

        return cls(
            spec=spec,
            lower=_parse_bound_value(match.group("lower")),
            upper=_parse_bound_value(match.group("upper")),
        )

    def contains(self, moment: datetime) -> bool:
        """Whether a range (not DEFAULT) bound holds the given moment."""
        if self.is_default:
            return False
        if self.lower is not None and moment < self.lower:
            return False
        return self.upper is None or moment < self.upper

    def date_tag(self) -> Optional[str]:
        """Compact tag of the lower bound (e.g. "20240115") used to name partitions."""
        if self.is_default or self.lower is None:
            return None
        if self.lower.time() == datetime.min.time():
            return self.lower.strftime("%Y%m%d")
        return self.lower.strftime("%Y%m%d%H%M%S")


@dataclass(frozen=True)
class PartitionHandle:
    """A located partition: its relation and its boundaries. Never persisted."""

    relation: RelationRef
    bound: PartitionBound

    @property
    def name(self) -> str:
        return self.relation.name

    @property
    def upper(self) -> Optional[datetime]:
        return self.bound.upper

    @property
    def lower(self) -> Optional[datetime]:
        return self.bound.lower

    @property
    def is_default(self) -> bool:
        return self.bound.is_default


def _sort_key(handle: PartitionHandle) -> tuple[int, datetime]:
    # Range partitions by upper bound, MAXVALUE after them, DEFAULT last
    if handle.is_default:
        return (2, datetime.max)
    if handle.upper is None:
        return (1, datetime.max)
    return (0, handle.upper)


def order_partitions(partitions: Iterable[PartitionHandle]) -> list[PartitionHandle]:
    """Sort partitions in ascending upper-boundary order."""
    return sorted(partitions, key=_sort_key)


def locate_partition(
    partitions: Sequence[PartitionHandle], target: date
) -> Optional[PartitionHandle]:
    """Find the partition holding a date.

    Scans in ascending upper-boundary order and returns the first range
    partition whose exclusive upper bound exceeds the date (a date equal to a
    boundary belongs to the next partition), provided its lower bound does
    not exceed it. A DEFAULT partition catches dates no range covers.

    Returns:
        The partition handle, or None when no partition holds the date
    """
    moment = datetime(target.year, target.month, target.day)
    default: Optional[PartitionHandle] = None

    for handle in order_partitions(partitions):
        if handle.is_default:
            default = handle
            continue
        if handle.upper is not None and not moment < handle.upper:
            continue
        if handle.bound.contains(moment):
            return handle
        # First partition past the date starts after it: the date sits in a gap
        break

    return default


class PartitionLocator:
    """Reads partition metadata from the PostgreSQL catalog."""

    _RELATION_KIND_QUERY = """
        SELECT c.relkind::text AS relkind
        FROM pg_catalog.pg_class c
        JOIN pg_catalog.pg_namespace n ON n.oid = c.relnamespace
        WHERE n.nspname = $1
          AND c.relname = $2
    """

    _PARTITIONS_QUERY = """
        SELECT
            n.nspname AS partition_schema,
            c.relname AS partition_name,
            pg_catalog.pg_get_expr(c.relpartbound, c.oid) AS bound
        FROM pg_catalog.pg_inherits i
        JOIN pg_catalog.pg_class c ON c.oid = i.inhrelid
        JOIN pg_catalog.pg_namespace n ON n.oid = c.relnamespace
        WHERE i.inhparent = $1::regclass
          AND c.relispartition
    """

    def __init__(self, logger: Optional[structlog.BoundLogger] = None) -> None:
        """Initialize partition locator.

        Args:
            logger: Optional logger instance
        """
        self.logger = logger or get_logger("partition_locator")

    async def relation_kind(self, conn: Executor, relation: RelationRef) -> Optional[str]:
        """Return pg_class.relkind ('r', 'p', ...) or None if the relation is missing."""
        row = await conn.fetchrow(self._RELATION_KIND_QUERY, relation.schema, relation.name)
        return row["relkind"] if row else None

    async def is_partitioned(self, conn: Executor, relation: RelationRef) -> bool:
        return await self.relation_kind(conn, relation) == "p"

    async def list_partitions(
        self, conn: Executor, table: RelationRef
    ) -> list[PartitionHandle]:
        """List the locatable partitions of a table in ascending boundary order.

        Partitions whose bounds are not single-column date ranges are skipped.
        """
        try:
            rows = await conn.fetch(self._PARTITIONS_QUERY, table.regclass)
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError(
                f"Failed to list partitions: {e}",
                context={"table": str(table)},
            ) from e

        handles: list[PartitionHandle] = []
        for row in rows:
            handle = self._to_handle(row)
            if handle is not None:
                handles.append(handle)

        return order_partitions(handles)

    def _to_handle(self, row: Any) -> Optional[PartitionHandle]:
        try:
            bound = PartitionBound.parse(row["bound"])
            relation = RelationRef(row["partition_schema"], row["partition_name"])
        except ValueError as e:
            self.logger.debug(
                "Skipping partition with unsupported bound",
                partition=row["partition_name"],
                bound=row["bound"],
                error=str(e),
            )
            return None
        return PartitionHandle(relation=relation, bound=bound)

    async def locate(
        self, conn: Executor, table: RelationRef, target: date
    ) -> Optional[PartitionHandle]:
        """Return the partition of ``table`` holding ``target``, or None (a skip, not a fault)."""
        partitions = await self.list_partitions(conn, table)
        handle = locate_partition(partitions, target)

        self.logger.debug(
            "Partition lookup",
            table=str(table),
            date=target.isoformat(),
            partition=handle.name if handle else None,
            candidates=len(partitions),
        )
        return handle
