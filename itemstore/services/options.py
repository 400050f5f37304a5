from __future__ import annotations

from dataclasses import dataclass, replace
from enum import IntFlag
from typing import TYPE_CHECKING, Any, Callable, Optional, Union

from ..permissions import PermissionsAction

if TYPE_CHECKING:
    from ..events import ActionEventParams
    from .tracker import MutationTracker

PrimaryKey = Union[str, int]
Item = dict[str, Any]


class UserIntegrityCheckFlag(IntFlag):
    NONE = 0
    # at least one active admin must remain
    REMAINING_ADMINS = 1 << 0
    # active user / admin counts must stay within the configured seats
    USER_LIMITS = 1 << 1
    ALL = REMAINING_ADMINS | USER_LIMITS


@dataclass
class MutationOptions:
    """
    Side-effect controls for one mutating call.

    Defaults enable everything except the bypass flags:
    - on_revision_create: called once per mutated key after the write (default: none)
    - auto_purge_cache: purge the collection's cached queries after commit (default: True,
      only effective when ServiceConfig.cache_auto_purge is on)
    - auto_purge_system_cache: purge the system cache after commit (default: True)
    - emit_events: run filter hooks and emit action events (default: True)
    - bypass_emit_action: receives ActionEventParams instead of the event bus
      (ignored when emit_events is False)
    - bypass_limits: skip mutation tracking (default: False)
    - mutation_tracker: shared tracker; the owning transaction's tracker when unset
    - pre_mutation_error: raised right before the write
    - bypass_auto_increment_sequence_reset: skip sequence correction after explicit keys
    - user_integrity_check_flags: integrity checks the caller requests
    - on_require_user_integrity_check: called once, with the combined flags, right
      before the top-level mutation runs its integrity checks
    """
    on_revision_create: Optional[Callable[[PrimaryKey], None]] = None
    auto_purge_cache: bool = True
    auto_purge_system_cache: bool = True
    emit_events: bool = True
    bypass_emit_action: Optional[Callable[["ActionEventParams"], None]] = None
    bypass_limits: bool = False
    mutation_tracker: Optional["MutationTracker"] = None
    pre_mutation_error: Optional[Exception] = None
    bypass_auto_increment_sequence_reset: bool = False
    user_integrity_check_flags: UserIntegrityCheckFlag = UserIntegrityCheckFlag.NONE
    on_require_user_integrity_check: Optional[Callable[[UserIntegrityCheckFlag], None]] = None

    def for_nested(self) -> "MutationOptions":
        """
        Options for writes cascading from this one.

        The tracker and side-effect switches are shared; the revision callback,
        the pre-mutation error and the integrity callback stay with this call.
        """
        return MutationOptions(
            auto_purge_cache=self.auto_purge_cache,
            auto_purge_system_cache=self.auto_purge_system_cache,
            emit_events=self.emit_events,
            bypass_emit_action=self.bypass_emit_action,
            bypass_limits=self.bypass_limits,
            mutation_tracker=self.mutation_tracker,
            bypass_auto_increment_sequence_reset=self.bypass_auto_increment_sequence_reset,
        )

    def copy(self, **changes: Any) -> "MutationOptions":
        return replace(self, **changes)


@dataclass
class QueryOptions:
    strip_non_requested: bool = True
    permissions_action: PermissionsAction = "read"
    emit_events: bool = True
