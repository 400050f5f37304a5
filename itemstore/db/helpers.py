from __future__ import annotations

import re
from typing import Any

from sqlalchemy.engine import Dialect
from sqlalchemy.exc import IntegrityError

from ..errors import ConflictError, ValidationError


def _validate_identifier(name: str, identifier_type: str = "identifier") -> str:
    """
    Validate that an identifier (collection/field name) is safe for SQL interpolation.

    Identifiers come from the schema provider, never from payload values, but
    payload keys are checked against the schema before they reach this point.
    Restricted to alphanumeric + underscore.

    Raises:
        TypeError: If identifier is not a string
        ValueError: If identifier contains unsafe characters or is invalid

    Example:
        >>> _validate_identifier("articles", "collection")
        'articles'
        >>> _validate_identifier("'; DROP TABLE--", "collection")
        ValueError: Invalid collection '; DROP TABLE--': ...
    """
    if not isinstance(name, str):
        raise TypeError(f"{identifier_type} must be a string, got {type(name).__name__}")

    if not name:
        raise ValueError(f"{identifier_type} cannot be empty")

    if not re.match(r'^[a-zA-Z_][a-zA-Z0-9_]*$', name):
        raise ValueError(
            f"Invalid {identifier_type} {name!r}: "
            "must start with letter/underscore and contain only alphanumeric characters and underscores"
        )

    if len(name) > 64:
        raise ValueError(f"{identifier_type} {name!r} exceeds the 64-character limit")

    return name


def quote(dialect: Dialect, name: str, identifier_type: str = "identifier") -> str:
    """Validate an identifier and quote it for the given dialect."""
    return dialect.identifier_preparer.quote(_validate_identifier(name, identifier_type))


def is_duplicate_key_error(exc: IntegrityError) -> bool:
    error_msg = str(exc.orig) if getattr(exc, "orig", None) is not None else str(exc)
    error_code = getattr(exc.orig, "args", [None])[0] if getattr(exc, "orig", None) is not None else None

    # MySQL 1062 is ER_DUP_ENTRY; sqlite and postgres only expose the message
    return (
        error_code == 1062
        or "Duplicate entry" in error_msg
        or "duplicate key" in error_msg.lower()
        or "UNIQUE constraint failed" in error_msg
    )


def translate_db_error(exc: IntegrityError, collection: str) -> Exception:
    """
    Map a driver IntegrityError onto the itemstore error hierarchy.

    Unique violations become ConflictError; NOT NULL, CHECK and foreign key
    violations are payload problems and become ValidationError.
    """
    detail = str(exc.orig) if getattr(exc, "orig", None) is not None else str(exc)
    if is_duplicate_key_error(exc):
        return ConflictError(f"Value for collection {collection!r} has to be unique: {detail}")
    return ValidationError(f"Invalid payload for collection {collection!r}: {detail}")


def reset_auto_increment_sequence(tx: Any, table: str, pk_field: str) -> None:
    """
    Move a PostgreSQL serial sequence past the highest stored key.

    Needed after inserting an explicit integer key; MySQL and SQLite keep the
    counter in sync on their own, so nothing is done for them.
    """
    if tx.dialect.name != "postgresql":
        return
    table_sql = quote(tx.dialect, table, "collection")
    pk_sql = quote(tx.dialect, pk_field, "field")
    tx.execute_scalar(
        f"SELECT setval(pg_get_serial_sequence(:table, :column), "
        f"(SELECT MAX({pk_sql}) FROM {table_sql}))",
        {"table": table, "column": pk_field},
    )
