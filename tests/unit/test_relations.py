"""Unit tests for relation references, identifier checks and the statement builder."""

import pytest

from partition_archiver.relations import (
    RelationRef,
    StatementBuilder,
    partition_name_for,
    validate_bound_spec,
)
from utils import quote_literal, safe_identifier, validate_identifier


@pytest.mark.parametrize("name", ["sales", "_sales", "Sales_2024", "sales$1"])
def test_validate_identifier_accepts_plain_names(name: str) -> None:
    assert validate_identifier(name) == name


@pytest.mark.parametrize(
    "name",
    ["", "1sales", "sales-archive", "sales archive", 'sales"; DROP TABLE x; --', "a" * 64],
)
def test_validate_identifier_rejects(name: str) -> None:
    with pytest.raises(ValueError, match="Invalid SQL identifier"):
        validate_identifier(name)


def test_safe_identifier_quotes_each_part() -> None:
    assert safe_identifier("sales") == '"sales"'
    assert safe_identifier("public.sales") == '"public"."sales"'


def test_quote_literal_escapes_quotes() -> None:
    assert quote_literal("o'clock") == "'o''clock'"


def test_relation_ref_parse_and_render() -> None:
    qualified = RelationRef.parse("archive.sales_archive")
    bare = RelationRef.parse("sales", default_schema="live")

    assert qualified == RelationRef("archive", "sales_archive")
    assert bare == RelationRef("live", "sales")
    assert qualified.quoted == '"archive"."sales_archive"'
    assert str(bare) == "live.sales"
    assert bare.with_name("sales_staging") == RelationRef("live", "sales_staging")


def test_relation_ref_rejects_invalid_names() -> None:
    with pytest.raises(ValueError):
        RelationRef.parse("public.sales;drop")
    with pytest.raises(ValueError):
        RelationRef("bad schema", "sales")


@pytest.mark.parametrize(
    "spec",
    [
        "DEFAULT",
        "FOR VALUES FROM ('2024-01-15') TO ('2024-01-16')",
        "FOR VALUES FROM (MINVALUE) TO ('2024-01-01 00:00:00')",
        "FOR VALUES FROM ('2024-01-01 00:00:00+00') TO (MAXVALUE)",
    ],
)
def test_validate_bound_spec_accepts_catalog_forms(spec: str) -> None:
    assert validate_bound_spec(spec) == spec


@pytest.mark.parametrize(
    "spec",
    [
        "FOR VALUES IN ('a')",
        "FOR VALUES FROM ('2024-01-15'); DROP TABLE sales; --') TO ('2024-01-16')",
        "FOR VALUES FROM ('x') TO ('y')",
    ],
)
def test_validate_bound_spec_rejects_other_text(spec: str) -> None:
    with pytest.raises(ValueError, match="Unsupported partition bound"):
        validate_bound_spec(spec)


def test_statement_builder_partition_ddl() -> None:
    parent = RelationRef("public", "sales")
    partition = RelationRef("public", "sales_p20240115")
    bound = "FOR VALUES FROM ('2024-01-15') TO ('2024-01-16')"

    assert (
        StatementBuilder.detach_partition(parent, partition)
        == 'ALTER TABLE "public"."sales" DETACH PARTITION "public"."sales_p20240115"'
    )
    assert StatementBuilder.attach_partition(parent, partition, bound) == (
        'ALTER TABLE "public"."sales" ATTACH PARTITION "public"."sales_p20240115" ' + bound
    )
    assert StatementBuilder.create_partition(parent, partition, bound) == (
        'CREATE TABLE "public"."sales_p20240115" PARTITION OF "public"."sales" ' + bound
    )
    assert StatementBuilder.rename(partition, "tmp") == (
        'ALTER TABLE "public"."sales_p20240115" RENAME TO "tmp"'
    )
    assert StatementBuilder.set_schema(partition, "archive") == (
        'ALTER TABLE "public"."sales_p20240115" SET SCHEMA "archive"'
    )


def test_statement_builder_rejects_unsafe_bound() -> None:
    with pytest.raises(ValueError):
        StatementBuilder.attach_partition(
            RelationRef("public", "sales"), RelationRef("public", "p1"), "FOR VALUES FROM (now()) TO (MAXVALUE)"
        )


def test_statement_builder_compression_and_settings() -> None:
    table = RelationRef("public", "sales_archive_20240115")
    assert StatementBuilder.set_column_compression(table, "payload", "LZ4") == (
        'ALTER TABLE "public"."sales_archive_20240115" ALTER COLUMN "payload" SET COMPRESSION lz4'
    )
    with pytest.raises(ValueError, match="Unsupported compression method"):
        StatementBuilder.set_column_compression(table, "payload", "zstd")

    assert StatementBuilder.set_local("lock_timeout", "30000") == "SET LOCAL lock_timeout = '30000'"


def test_partition_name_for() -> None:
    archive = RelationRef("public", "sales_archive")
    assert partition_name_for(archive, "20240115") == "sales_archive_20240115"
    assert partition_name_for(archive, None) == "sales_archive_default"

    long_archive = RelationRef("public", "a" * 63)
    name = partition_name_for(long_archive, "20240115")
    assert len(name) == 63
    assert name.endswith("_20240115")
