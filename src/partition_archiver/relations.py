"""Typed relation references and the SQL statement builder.

Every table, partition and index name used in a generated statement passes
through RelationRef, which validates it against the identifier allow-list
before it is quoted. Statement text is only ever assembled here.
"""

import re
from dataclasses import dataclass
from typing import Optional

from utils import quote_literal, safe_identifier, validate_identifier

# Bound literal: digits, date/time punctuation, optional fractional seconds and offset
_LITERAL = r"'[0-9][0-9 :.+\-T]*'"
_BOUND_VALUE = rf"(?:MINVALUE|MAXVALUE|{_LITERAL})"
_BOUND_SPEC_PATTERN = re.compile(
    rf"^(?:DEFAULT|FOR VALUES FROM \({_BOUND_VALUE}\) TO \({_BOUND_VALUE}\))$"
)

COMPRESSION_METHODS = ("pglz", "lz4", "default")


@dataclass(frozen=True)
class RelationRef:
    """A schema-qualified relation name."""

    schema: str
    name: str

    def __post_init__(self) -> None:
        validate_identifier(self.schema)
        validate_identifier(self.name)

    @classmethod
    def parse(cls, value: str, default_schema: str = "public") -> "RelationRef":
        """Build a reference from "table" or "schema.table".

        Raises:
            ValueError: If either part is not a valid identifier
        """
        value = value.strip()
        if "." in value:
            schema, name = value.split(".", 1)
            return cls(schema, name)
        return cls(default_schema, value)

    @property
    def quoted(self) -> str:
        """Quoted, schema-qualified name for use in statements."""
        return safe_identifier(f"{self.schema}.{self.name}")

    @property
    def regclass(self) -> str:
        """Text form accepted by a ``$1::regclass`` parameter."""
        return self.quoted

    def with_name(self, name: str) -> "RelationRef":
        """Same schema, different relation name."""
        return RelationRef(self.schema, name)

    def __str__(self) -> str:
        return f"{self.schema}.{self.name}"


def validate_bound_spec(bound_spec: str) -> str:
    """Check a partition bound expression before embedding it in DDL.

    Accepts the forms produced by pg_get_expr() for single-column range
    partitions on date/timestamp keys, and DEFAULT.

    Raises:
        ValueError: If the expression is not a recognised bound
    """
    if not _BOUND_SPEC_PATTERN.match(bound_spec.strip()):
        raise ValueError(f"Unsupported partition bound expression: {bound_spec!r}")
    return bound_spec.strip()


class StatementBuilder:
    """Builds the statements the orchestrator executes."""

    @staticmethod
    def count_rows(relation: RelationRef) -> str:
        return f"SELECT count(*) FROM {relation.quoted}"

    @staticmethod
    def has_rows(relation: RelationRef) -> str:
        return f"SELECT EXISTS (SELECT 1 FROM {relation.quoted})"

    @staticmethod
    def detach_partition(parent: RelationRef, partition: RelationRef) -> str:
        return f"ALTER TABLE {parent.quoted} DETACH PARTITION {partition.quoted}"

    @staticmethod
    def attach_partition(parent: RelationRef, partition: RelationRef, bound_spec: str) -> str:
        bound = validate_bound_spec(bound_spec)
        return f"ALTER TABLE {parent.quoted} ATTACH PARTITION {partition.quoted} {bound}"

    @staticmethod
    def rename(relation: RelationRef, new_name: str) -> str:
        return f"ALTER TABLE {relation.quoted} RENAME TO {safe_identifier(new_name)}"

    @staticmethod
    def set_schema(relation: RelationRef, schema: str) -> str:
        return f"ALTER TABLE {relation.quoted} SET SCHEMA {safe_identifier(schema)}"

    @staticmethod
    def create_partition(parent: RelationRef, partition: RelationRef, bound_spec: str) -> str:
        bound = validate_bound_spec(bound_spec)
        return f"CREATE TABLE {partition.quoted} PARTITION OF {parent.quoted} {bound}"

    @staticmethod
    def drop_table(relation: RelationRef) -> str:
        return f"DROP TABLE {relation.quoted}"

    @staticmethod
    def truncate(relation: RelationRef) -> str:
        return f"TRUNCATE TABLE {relation.quoted}"

    @staticmethod
    def reindex(index: RelationRef) -> str:
        return f"REINDEX INDEX {index.quoted}"

    @staticmethod
    def analyze(relation: RelationRef) -> str:
        return f"ANALYZE {relation.quoted}"

    @staticmethod
    def set_column_compression(relation: RelationRef, column: str, method: str) -> str:
        method = method.lower()
        if method not in COMPRESSION_METHODS:
            raise ValueError(f"Unsupported compression method: {method!r}")
        return (
            f"ALTER TABLE {relation.quoted} ALTER COLUMN {safe_identifier(column)} "
            f"SET COMPRESSION {method}"
        )

    @staticmethod
    def set_local(setting: str, value: str) -> str:
        validate_identifier(setting)
        return f"SET LOCAL {setting} = {quote_literal(value)}"


def partition_name_for(archive: RelationRef, suffix: Optional[str]) -> str:
    """Name for an archive partition created by the orchestrator.

    The suffix is usually the source partition's date tag (e.g. "20240115").
    The result is truncated to fit PostgreSQL's identifier limit.
    """
    base = archive.name
    if suffix:
        tail = f"_{suffix}"
        name = base[: 63 - len(tail)] + tail
    else:
        name = base[:55] + "_default"
    return validate_identifier(name)
