from __future__ import annotations

import pytest
from sqlalchemy import text

from itemstore.db.tx import DbFactory, DbTransaction
from itemstore.metrics.registry import DB_TRANSACTION_TOTAL


def _insert_author(tx, id: int, name: str) -> int:
    return tx.execute(
        "INSERT INTO authors (id, name) VALUES (:id, :name)",
        {"id": id, "name": name},
    )


def test_transaction_commits_on_explicit_commit(engine) -> None:
    """Test that transaction commits when commit() is called."""
    factory = DbFactory(engine)

    tx = factory.begin()
    _insert_author(tx, 1, "Ann")
    tx.commit()

    # Verify data was committed
    with factory.session() as session:
        row = session.fetch_one("SELECT id, name FROM authors WHERE id = :id", {"id": 1})
    assert row == {"id": 1, "name": "Ann"}


def test_transaction_rolls_back_on_explicit_rollback(engine) -> None:
    """Test that transaction rolls back when rollback() is called."""
    factory = DbFactory(engine)

    tx = factory.begin()
    _insert_author(tx, 1, "Ann")
    tx.rollback()

    with factory.session() as session:
        row = session.fetch_one("SELECT id FROM authors WHERE id = :id", {"id": 1})
    assert row is None


def test_transaction_cannot_be_reused_after_commit(engine) -> None:
    """Test that transaction cannot be used after commit."""
    tx = DbFactory(engine).begin()
    _insert_author(tx, 1, "Ann")
    tx.commit()

    assert tx.closed
    with pytest.raises(RuntimeError, match="closed"):
        _insert_author(tx, 2, "Bob")


def test_transaction_cannot_commit_twice(engine) -> None:
    """Test that commit() cannot be called twice."""
    tx = DbFactory(engine).begin()
    tx.commit()

    with pytest.raises(RuntimeError, match="Transaction is already closed"):
        tx.commit()


def test_transaction_cannot_rollback_twice(engine) -> None:
    """Test that rollback() cannot be called twice."""
    tx = DbFactory(engine).begin()
    tx.rollback()

    with pytest.raises(RuntimeError, match="Transaction is already closed"):
        tx.rollback()


def test_insert_returns_generated_key(engine) -> None:
    """Test that insert() returns the autoincrement key on dialects without RETURNING."""
    tx = DbFactory(engine).begin()
    first = tx.insert("INSERT INTO authors (name) VALUES (:name)", {"name": "Ann"}, returning="id")
    second = tx.insert("INSERT INTO authors (name) VALUES (:name)", {"name": "Bob"}, returning="id")
    tx.commit()

    assert second == first + 1


def test_fetch_helpers(engine) -> None:
    """Test fetch_one, fetch_all and execute_scalar inside one transaction."""
    tx = DbFactory(engine).begin()
    try:
        _insert_author(tx, 1, "Ann")
        _insert_author(tx, 2, "Bob")

        assert tx.execute_scalar("SELECT COUNT(*) FROM authors") == 2
        assert tx.fetch_one("SELECT name FROM authors WHERE id = 2") == {"name": "Bob"}
        assert tx.fetch_one("SELECT name FROM authors WHERE id = 3") is None
        assert [r["name"] for r in tx.fetch_all("SELECT name FROM authors ORDER BY id")] == ["Ann", "Bob"]
        # accepts prepared TextClause as well as strings
        assert tx.execute_scalar(text("SELECT name FROM authors WHERE id = :id"), {"id": 1}) == "Ann"
    finally:
        tx.rollback()


def test_transaction_metrics_record_outcome(engine) -> None:
    """Test that commit and rollback are counted by status."""
    committed = DB_TRANSACTION_TOTAL.labels(status="success")._value.get()
    rolled_back = DB_TRANSACTION_TOTAL.labels(status="rollback")._value.get()

    DbFactory(engine).begin().commit()
    DbFactory(engine).begin().rollback()

    assert DB_TRANSACTION_TOTAL.labels(status="success")._value.get() == committed + 1
    assert DB_TRANSACTION_TOTAL.labels(status="rollback")._value.get() == rolled_back + 1


def test_session_rolls_back_on_exception(engine) -> None:
    """Test that DbSession rolls back when the block raises."""
    factory = DbFactory(engine)

    with pytest.raises(ValueError):
        with factory.session() as session:
            _insert_author(session, 1, "Ann")
            raise ValueError("boom")

    with factory.session() as session:
        assert session.execute_scalar("SELECT COUNT(*) FROM authors") == 0


def test_session_requires_context_manager(engine) -> None:
    session = DbFactory(engine).session()
    with pytest.raises(RuntimeError, match="not active"):
        session.fetch_all("SELECT 1")


def test_begin_returns_open_transaction(engine) -> None:
    tx = DbFactory(engine).begin()
    assert isinstance(tx, DbTransaction)
    assert not tx.closed
    tx.rollback()
