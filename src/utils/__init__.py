"""Partition Archiver - Shared utilities."""

import re

# PostgreSQL truncates identifiers longer than NAMEDATALEN - 1 bytes
MAX_IDENTIFIER_LENGTH = 63

_IDENTIFIER_PATTERN = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_$]*$")


def validate_identifier(name: str) -> str:
    """Check a bare PostgreSQL identifier against the allow-list.

    Args:
        name: Unquoted identifier (table, partition, index, column or schema name)

    Returns:
        The identifier, unchanged

    Raises:
        ValueError: If the identifier contains invalid characters or is too long
    """
    if not isinstance(name, str) or not _IDENTIFIER_PATTERN.match(name):
        raise ValueError(
            f"Invalid SQL identifier: {name!r}. "
            "Only letters, digits, underscores and '$' are allowed."
        )
    if len(name) > MAX_IDENTIFIER_LENGTH:
        raise ValueError(
            f"Invalid SQL identifier: {name!r}. "
            f"Identifiers are limited to {MAX_IDENTIFIER_LENGTH} characters."
        )
    return name


def safe_identifier(name: str) -> str:
    """Validate and quote a PostgreSQL identifier to prevent SQL injection.

    Schema-qualified names ("public.sales") are validated and quoted part by part.

    Args:
        name: SQL identifier

    Returns:
        Safely quoted identifier (e.g., '"public"."sales"')

    Raises:
        ValueError: If the identifier contains invalid characters
    """
    if "." in name:
        schema, relation = name.split(".", 1)
        return f"{safe_identifier(schema)}.{safe_identifier(relation)}"

    return f'"{validate_identifier(name)}"'


def quote_literal(value: str) -> str:
    """Quote a string as a SQL literal, doubling embedded single quotes."""
    return "'" + value.replace("'", "''") + "'"
