from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from sqlalchemy.dialects import mysql, postgresql, sqlite
from sqlalchemy.exc import IntegrityError

from itemstore.db.helpers import (
    _validate_identifier,
    is_duplicate_key_error,
    quote,
    reset_auto_increment_sequence,
    translate_db_error,
)
from itemstore.errors import ConflictError, ValidationError


class TestValidateIdentifier:
    def test_accepts_plain_names(self) -> None:
        assert _validate_identifier("directus_users", "collection") == "directus_users"

    @pytest.mark.parametrize("name", ["", "1abc", "a-b", "a; DROP TABLE x", "x" * 65])
    def test_rejects_unsafe_names(self, name: str) -> None:
        with pytest.raises(ValueError):
            _validate_identifier(name, "collection")

    def test_rejects_non_strings(self) -> None:
        with pytest.raises(TypeError):
            _validate_identifier(42)  # type: ignore[arg-type]


def test_quote_uses_dialect_quoting() -> None:
    """Reserved words are quoted per dialect; plain names are left alone."""
    assert quote(mysql.dialect(), "order") == "`order`"
    assert quote(postgresql.dialect(), "user") == '"user"'
    assert quote(sqlite.dialect(), "articles") == "articles"


def _integrity_error(*args) -> IntegrityError:
    return IntegrityError("INSERT ...", {}, Exception(*args))


class TestTranslateDbError:
    def test_mysql_duplicate_entry_is_conflict(self) -> None:
        exc = _integrity_error(1062, "Duplicate entry 'a' for key 'slug'")
        assert is_duplicate_key_error(exc)
        assert isinstance(translate_db_error(exc, "articles"), ConflictError)

    def test_sqlite_unique_is_conflict(self) -> None:
        exc = _integrity_error("UNIQUE constraint failed: articles.slug")
        assert isinstance(translate_db_error(exc, "articles"), ConflictError)

    def test_postgres_unique_is_conflict(self) -> None:
        exc = _integrity_error('duplicate key value violates unique constraint "articles_slug_key"')
        assert isinstance(translate_db_error(exc, "articles"), ConflictError)

    def test_not_null_is_validation_error(self) -> None:
        exc = _integrity_error("NOT NULL constraint failed: articles.title")
        error = translate_db_error(exc, "articles")
        assert isinstance(error, ValidationError)
        assert "articles" in str(error)


class TestResetAutoIncrementSequence:
    def test_noop_outside_postgres(self) -> None:
        tx = MagicMock()
        tx.dialect = sqlite.dialect()

        reset_auto_increment_sequence(tx, "articles", "id")

        tx.execute_scalar.assert_not_called()

    def test_setval_on_postgres(self) -> None:
        tx = MagicMock()
        tx.dialect = postgresql.dialect()

        reset_auto_increment_sequence(tx, "articles", "id")

        sql, params = tx.execute_scalar.call_args.args
        assert "setval(pg_get_serial_sequence(:table, :column)" in sql
        assert "MAX(id) FROM articles" in sql
        assert params == {"table": "articles", "column": "id"}
