from __future__ import annotations

import logging
from typing import Callable, Hashable, Optional

from ..db.tx import DbTransaction
from .options import UserIntegrityCheckFlag
from .tracker import MutationTracker

logger = logging.getLogger(__name__)


class MutationScope:
    """
    State owned by one top-level mutation and shared with every nested call.

    Holds the transaction, the mutation tracker, the pending integrity-check
    flags and the side effects that may only run once the outcome of the
    transaction is known.
    """

    def __init__(self, tx: DbTransaction, tracker: MutationTracker) -> None:
        self.tx = tx
        self.tracker = tracker
        self.integrity_flags = UserIntegrityCheckFlag.NONE
        self._after_commit: list[Callable[[], object]] = []
        self._after_commit_keys: set[Hashable] = set()
        self._on_rollback: list[Callable[[], object]] = []

    def request_integrity_check(self, flags: UserIntegrityCheckFlag) -> None:
        self.integrity_flags |= flags

    def after_commit(self, callback: Callable[[], object], key: Optional[Hashable] = None) -> None:
        """Queue `callback` to run after commit. Callbacks sharing a `key` run once."""
        if key is not None:
            if key in self._after_commit_keys:
                return
            self._after_commit_keys.add(key)
        self._after_commit.append(callback)

    def on_rollback(self, callback: Callable[[], object]) -> None:
        """Queue `callback` to run if the transaction is rolled back or fails to commit."""
        self._on_rollback.append(callback)

    def run_after_commit(self) -> None:
        callbacks, self._after_commit = self._after_commit, []
        self._on_rollback = []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                # already committed
                logger.exception("After-commit callback %r failed", callback)

    def run_on_rollback(self) -> None:
        callbacks, self._on_rollback = self._on_rollback, []
        self._after_commit = []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Rollback callback %r failed", callback)
