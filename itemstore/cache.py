from __future__ import annotations

import logging
from typing import Protocol

from redis import Redis
from redis.exceptions import RedisError

from .errors import ItemStoreError

logger = logging.getLogger(__name__)


class CacheError(ItemStoreError):
    """The cache store could not be purged."""


class CacheStore(Protocol):
    def purge(self, collection: str) -> int:
        """Drop cached query results for `collection`. Returns the number of keys removed."""
        ...

    def purge_system(self) -> int:
        """Drop cached schema/permission data. Returns the number of keys removed."""
        ...


class RedisCache:
    """
    Redis-backed cache store.

    Query results live under `<namespace>:data:<collection>:*`, system data
    under `<namespace>:system:*`. Purging scans and deletes in batches so it
    never blocks Redis the way KEYS would.
    """

    def __init__(self, redis: Redis, namespace: str = "itemstore", batch_size: int = 500) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        self.redis = redis
        self.namespace = namespace
        self.batch_size = batch_size

    def data_key(self, collection: str, key: str) -> str:
        return f"{self.namespace}:data:{collection}:{key}"

    def system_key(self, key: str) -> str:
        return f"{self.namespace}:system:{key}"

    def purge(self, collection: str) -> int:
        return self._delete_matching(self.data_key(collection, "*"))

    def purge_system(self) -> int:
        return self._delete_matching(self.system_key("*"))

    def _delete_matching(self, pattern: str) -> int:
        removed = 0
        batch: list = []
        try:
            for key in self.redis.scan_iter(match=pattern, count=self.batch_size):
                batch.append(key)
                if len(batch) >= self.batch_size:
                    removed += int(self.redis.delete(*batch))
                    batch = []
            if batch:
                removed += int(self.redis.delete(*batch))
        except RedisError as exc:
            raise CacheError(f"Failed to purge cache keys matching {pattern!r}: {exc}") from exc
        logger.debug("Purged %d cache keys matching %s", removed, pattern)
        return removed
