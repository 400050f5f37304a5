from __future__ import annotations

import pytest

from itemstore.errors import LimitExceededError
from itemstore.services.tracker import MutationTracker


def test_counts_accumulate() -> None:
    tracker = MutationTracker()
    tracker.track_mutations(1)
    tracker.track_mutations(4)
    assert tracker.get_count() == 5


def test_unlimited_by_default() -> None:
    tracker = MutationTracker()
    tracker.track_mutations(1_000_000)
    assert tracker.get_count() == 1_000_000


def test_limit_is_inclusive() -> None:
    """Reaching max_count is allowed; going past it is not."""
    tracker = MutationTracker(max_count=3)
    tracker.track_mutations(3)

    with pytest.raises(LimitExceededError) as exc_info:
        tracker.track_mutations(1)

    assert exc_info.value.limit == 3
    assert exc_info.value.count == 4


def test_initial_count_counts_against_limit() -> None:
    tracker = MutationTracker(max_count=2, initial_count=2)
    with pytest.raises(LimitExceededError):
        tracker.track_mutations(1)


def test_zero_limit_rejects_any_mutation() -> None:
    tracker = MutationTracker(max_count=0)
    tracker.track_mutations(0)
    with pytest.raises(LimitExceededError):
        tracker.track_mutations(1)


def test_rejects_negative_values() -> None:
    with pytest.raises(ValueError):
        MutationTracker(initial_count=-1)
    with pytest.raises(ValueError):
        MutationTracker().track_mutations(-1)
