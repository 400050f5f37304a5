from __future__ import annotations

from typing import Optional

from ..errors import LimitExceededError


class MutationTracker:
    """
    Counts the mutations of one top-level operation and everything it triggers.

    One instance is shared by reference across the whole call tree, so a
    parent write cascading into five child writes is six mutations against
    one ceiling. `max_count=None` means unlimited.
    """

    def __init__(self, max_count: Optional[int] = None, initial_count: int = 0) -> None:
        if initial_count < 0:
            raise ValueError("initial_count must be >= 0")
        self.max_count = max_count
        self._count = initial_count

    def track_mutations(self, count: int) -> None:
        """
        Add `count` mutations to the running total.

        Raises:
            LimitExceededError: If the total now exceeds max_count
        """
        if count < 0:
            raise ValueError("count must be >= 0")
        self._count += count
        if self.max_count is not None and self._count > self.max_count:
            raise LimitExceededError(self.max_count, self._count)

    def get_count(self) -> int:
        return self._count

    def __repr__(self) -> str:
        return f"MutationTracker(count={self._count}, max_count={self.max_count})"
