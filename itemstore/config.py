from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

ENV_PREFIX = "ITEMSTORE_"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(ENV_PREFIX + name)
    if raw is None or raw == "":
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValueError(f"{ENV_PREFIX}{name} must be a boolean, got {raw!r}")


def _env_int(env: Mapping[str, str], name: str, default: Optional[int]) -> Optional[int]:
    raw = env.get(ENV_PREFIX + name)
    if raw is None or raw == "":
        return default
    # "Infinity" mirrors the unlimited default
    if raw.strip().lower() in ("infinity", "none", "unlimited"):
        return None
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}{name} must be an integer, got {raw!r}") from None


@dataclass
class ServiceConfig:
    """
    Runtime settings shared by every service built from one ServiceContext.

    All limits use None for "unlimited".
    """
    max_batch_mutation: Optional[int] = None
    cache_auto_purge: bool = True
    query_limit_default: int = 100
    max_active_users: Optional[int] = None
    max_admin_users: Optional[int] = None
    storage_default: str = "local"
    import_timeout: float = 30.0
    track_revisions: bool = True

    def __post_init__(self) -> None:
        """Validate configuration parameters."""
        if self.max_batch_mutation is not None and self.max_batch_mutation < 0:
            raise ValueError("max_batch_mutation must be >= 0 or None for unlimited")
        if self.query_limit_default == 0 or self.query_limit_default < -1:
            raise ValueError("query_limit_default must be a positive integer or -1 for unlimited")
        for name in ("max_active_users", "max_admin_users"):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise ValueError(f"{name} must be >= 0 or None for unlimited")
        if self.import_timeout <= 0:
            raise ValueError("import_timeout must be > 0")

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "ServiceConfig":
        """Build a config from ITEMSTORE_* environment variables."""
        env = os.environ if env is None else env
        timeout = env.get(ENV_PREFIX + "IMPORT_TIMEOUT")
        query_limit = _env_int(env, "QUERY_LIMIT_DEFAULT", 100)
        return cls(
            max_batch_mutation=_env_int(env, "MAX_BATCH_MUTATION", None),
            cache_auto_purge=_env_bool(env, "CACHE_AUTO_PURGE", True),
            query_limit_default=-1 if query_limit is None else query_limit,
            max_active_users=_env_int(env, "MAX_ACTIVE_USERS", None),
            max_admin_users=_env_int(env, "MAX_ADMIN_USERS", None),
            storage_default=env.get(ENV_PREFIX + "STORAGE_DEFAULT") or "local",
            import_timeout=float(timeout) if timeout else 30.0,
            track_revisions=_env_bool(env, "TRACK_REVISIONS", True),
        )
