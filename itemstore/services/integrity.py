from __future__ import annotations

import logging
from typing import Any, Mapping

from ..config import ServiceConfig
from ..db.helpers import quote
from ..db.tx import DbTx
from ..errors import IntegrityViolationError
from ..schema import ROLES_COLLECTION, USERS_COLLECTION, SchemaOverview
from .options import UserIntegrityCheckFlag

logger = logging.getLogger(__name__)

ACTIVE_STATUS = "active"

# changing any of these on a user can change who counts as an active admin
_USER_SENSITIVE_FIELDS = {"role", "status"}


def integrity_flags_for(collection: str, action: str, payload: Mapping[str, Any] | None = None) -> UserIntegrityCheckFlag:
    """
    Integrity checks a write implies on its own, before anything the caller requested.
    """
    payload = payload or {}
    if collection == USERS_COLLECTION:
        if action == "create":
            return UserIntegrityCheckFlag.USER_LIMITS
        if action == "update":
            if _USER_SENSITIVE_FIELDS & set(payload):
                return UserIntegrityCheckFlag.ALL
            return UserIntegrityCheckFlag.NONE
        if action == "delete":
            return UserIntegrityCheckFlag.REMAINING_ADMINS
    if collection == ROLES_COLLECTION:
        if action == "update" and "admin_access" in payload:
            return UserIntegrityCheckFlag.ALL
        if action == "delete":
            return UserIntegrityCheckFlag.ALL
    return UserIntegrityCheckFlag.NONE


class UserIntegrityChecker:
    """
    Pre-commit checks over the user population.

    Runs inside the owning transaction, so the counts include every staged
    write. A failure raises IntegrityViolationError and the caller rolls the
    transaction back.

    Expects `directus_users(id, role, status)` and `directus_roles(id, admin_access)`;
    when either collection is missing from the schema there are no users to
    protect and the checks pass.
    """

    def __init__(self, config: ServiceConfig) -> None:
        self.config = config

    def check(self, tx: DbTx, schema: SchemaOverview, flags: UserIntegrityCheckFlag) -> None:
        if not flags:
            return
        if USERS_COLLECTION not in schema or ROLES_COLLECTION not in schema:
            logger.debug("User collections not in schema; skipping integrity checks %r", flags)
            return

        admins = None
        if flags & UserIntegrityCheckFlag.REMAINING_ADMINS:
            admins = self.count_active_admins(tx)
            if admins == 0:
                raise IntegrityViolationError("The last active administrator can't be removed or demoted")

        if flags & UserIntegrityCheckFlag.USER_LIMITS:
            if self.config.max_active_users is not None:
                users = self.count_active_users(tx)
                if users > self.config.max_active_users:
                    raise IntegrityViolationError(
                        f"Active user limit of {self.config.max_active_users} exceeded ({users})"
                    )
            if self.config.max_admin_users is not None:
                if admins is None:
                    admins = self.count_active_admins(tx)
                if admins > self.config.max_admin_users:
                    raise IntegrityViolationError(
                        f"Admin user limit of {self.config.max_admin_users} exceeded ({admins})"
                    )

    def count_active_users(self, tx: DbTx) -> int:
        users = quote(tx.dialect, USERS_COLLECTION, "collection")
        count = tx.execute_scalar(
            f"SELECT COUNT(*) FROM {users} WHERE status = :status",
            {"status": ACTIVE_STATUS},
        )
        return int(count or 0)

    def count_active_admins(self, tx: DbTx) -> int:
        users = quote(tx.dialect, USERS_COLLECTION, "collection")
        roles = quote(tx.dialect, ROLES_COLLECTION, "collection")
        count = tx.execute_scalar(
            f"SELECT COUNT(*) FROM {users} u JOIN {roles} r ON u.role = r.id "
            "WHERE u.status = :status AND r.admin_access = :admin",
            {"status": ACTIVE_STATUS, "admin": True},
        )
        return int(count or 0)
