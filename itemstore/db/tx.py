from __future__ import annotations

import logging
from typing import Any, Mapping, Protocol

from sqlalchemy.engine import Connection, Dialect, Engine
from sqlalchemy.sql.elements import TextClause

from .metrics import observe_transaction
from .session import DbSession, SqlRunner

logger = logging.getLogger(__name__)


class DbTx(Protocol):
    """
    Protocol for the database handle a service works against.

    Satisfied by both DbTransaction (mutations) and DbSession (reads).
    """

    @property
    def dialect(self) -> Dialect:
        ...

    def execute(
        self,
        sql: str | TextClause,
        params: Mapping[str, Any] | None = None,
    ) -> int:
        """Execute a non-SELECT statement and return affected row count."""
        ...

    def insert(
        self,
        sql: str | TextClause,
        params: Mapping[str, Any] | None = None,
        returning: str | None = None,
    ) -> Any:
        """Execute an INSERT and return the generated key."""
        ...

    def execute_scalar(
        self,
        sql: str | TextClause,
        params: Mapping[str, Any] | None = None,
    ) -> Any:
        """Execute a statement expected to return a single scalar value."""
        ...

    def fetch_one(
        self,
        sql: str | TextClause,
        params: Mapping[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """Execute a SELECT expected to return 0 or 1 row."""
        ...

    def fetch_all(
        self,
        sql: str | TextClause,
        params: Mapping[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """Execute a SELECT returning multiple rows."""
        ...


class DbTransaction(SqlRunner):
    """
    Database transaction with explicit commit/rollback methods.

    Owned by the top-level mutation: every nested service call joins it
    instead of opening its own, so a failure anywhere in the call tree rolls
    back everything.

    The transaction begins on construction and must be explicitly
    committed or rolled back. After commit or rollback, the connection
    is closed and the transaction cannot be used again.

    Usage:
        factory = DbFactory(engine)
        tx = factory.begin()
        try:
            tx.execute("INSERT INTO ...", {...})
            tx.commit()
        except Exception:
            tx.rollback()
            raise
    """

    def __init__(self, engine: Engine) -> None:
        """
        Initialize and begin a new transaction.

        Args:
            engine: SQLAlchemy Engine instance
        """
        self.engine = engine
        self._conn: Connection | None = None
        self._tx = None
        self._closed = False

        # Begin transaction immediately
        self._conn = self.engine.connect()
        self._tx = self._conn.begin()

    @property
    def closed(self) -> bool:
        return self._closed

    def _connection(self) -> Connection:
        """Get the active connection, raising if closed."""
        if self._closed or self._conn is None:
            raise RuntimeError("Transaction is closed")
        return self._conn

    def _close(self) -> None:
        self._closed = True
        if self._conn is not None:
            self._conn.close()

        self._conn = None
        self._tx = None

    def commit(self) -> None:
        """
        Commit the transaction and close the connection.

        Raises:
            RuntimeError: If transaction is already closed
        """
        if self._closed:
            raise RuntimeError("Transaction is already closed")

        status = "success"
        try:
            if self._tx is not None:
                self._tx.commit()
        except Exception:
            status = "error"
            # Best-effort rollback on commit failure
            try:
                if self._tx is not None:
                    self._tx.rollback()
            except Exception:
                logger.debug("Rollback after failed commit also failed", exc_info=True)
            raise
        finally:
            self._close()
            observe_transaction(status)

    def rollback(self) -> None:
        """
        Rollback the transaction and close the connection.

        Raises:
            RuntimeError: If transaction is already closed
        """
        if self._closed:
            raise RuntimeError("Transaction is already closed")

        try:
            if self._tx is not None:
                self._tx.rollback()
        finally:
            # Cleanup even if rollback fails; rollback exceptions propagate
            self._close()
            observe_transaction("rollback")


class DbFactory:
    """
    Factory for creating database transactions and read sessions.

    Usage:
        factory = DbFactory(engine)
        tx = factory.begin()
    """

    def __init__(self, engine: Engine) -> None:
        """
        Initialize the factory with a SQLAlchemy Engine.

        Args:
            engine: SQLAlchemy Engine instance
        """
        self.engine = engine

    def begin(self) -> DbTransaction:
        """
        Begin a new transaction.

        Returns:
            A new DbTransaction instance with an active transaction
        """
        return DbTransaction(self.engine)

    def session(self) -> DbSession:
        """Return an inactive DbSession for read-only work; enter it to begin."""
        return DbSession(self.engine)
