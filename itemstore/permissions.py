from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Literal, Mapping, Optional, Protocol

from .errors import ForbiddenError

logger = logging.getLogger(__name__)

PermissionsAction = Literal["create", "read", "update", "delete"]


@dataclass(frozen=True)
class Accountability:
    """Who is performing an operation. `None` accountability means a trusted internal call."""
    user: Any = None
    role: Any = None
    admin: bool = False


@dataclass(frozen=True)
class PermissionDecision:
    allowed: bool
    # None means every field is permitted
    fields: Optional[frozenset[str]] = None


class PermissionEngine(Protocol):
    def authorize(
        self,
        accountability: Optional[Accountability],
        collection: str,
        action: PermissionsAction,
    ) -> PermissionDecision:
        ...


class AllowAll:
    """Permission engine for trusted, internal-only deployments."""

    def authorize(
        self,
        accountability: Optional[Accountability],
        collection: str,
        action: PermissionsAction,
    ) -> PermissionDecision:
        return PermissionDecision(allowed=True)


class RolePermissions:
    """
    Static role-based rules.

    rules: {role: {collection: {action: ["field", ...] or "*"}}}
    Admins and internal calls (no accountability) bypass the rules.
    """

    def __init__(self, rules: Mapping[Any, Mapping[str, Mapping[str, Iterable[str] | str]]]) -> None:
        self.rules = rules

    def authorize(
        self,
        accountability: Optional[Accountability],
        collection: str,
        action: PermissionsAction,
    ) -> PermissionDecision:
        if accountability is None or accountability.admin:
            return PermissionDecision(allowed=True)

        rule = self.rules.get(accountability.role, {}).get(collection, {}).get(action)
        if rule is None:
            return PermissionDecision(allowed=False)
        if rule == "*" or "*" in rule:
            return PermissionDecision(allowed=True)
        return PermissionDecision(allowed=True, fields=frozenset(rule))


def enforce(
    engine: PermissionEngine,
    accountability: Optional[Accountability],
    collection: str,
    action: PermissionsAction,
    fields: Iterable[str] = (),
) -> PermissionDecision:
    """
    Authorize `action` and check that every field in `fields` is permitted.

    Raises:
        ForbiddenError: If the action or any of the fields is not permitted
    """
    decision = engine.authorize(accountability, collection, action)
    if not decision.allowed:
        logger.debug("Denied %s on %s for %r", action, collection, accountability)
        raise ForbiddenError(collection=collection, action=action)

    if decision.fields is not None:
        denied = sorted(set(fields) - decision.fields)
        if denied:
            raise ForbiddenError(
                f"You don't have permission to {action} field(s) {denied} in collection {collection!r}.",
                collection=collection,
                action=action,
            )
    return decision
