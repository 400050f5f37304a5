from __future__ import annotations

from ..metrics.registry import (
    CACHE_PURGE_TOTAL,
    DB_TRANSACTION_TOTAL,
    FILES_STORED_BYTES_TOTAL,
    ITEMS_MUTATION_LATENCY_SECONDS,
    ITEMS_MUTATION_TOTAL,
)


def observe_mutation(collection: str, action: str, status: str, latency_s: float) -> None:
    ITEMS_MUTATION_TOTAL.labels(collection=collection, action=action, status=status).inc()
    ITEMS_MUTATION_LATENCY_SECONDS.labels(collection=collection, action=action).observe(latency_s)


def observe_transaction(status: str) -> None:
    DB_TRANSACTION_TOTAL.labels(status=status).inc()


def observe_cache_purge(scope: str) -> None:
    CACHE_PURGE_TOTAL.labels(scope=scope).inc()


def observe_stored_bytes(storage: str, size: int) -> None:
    FILES_STORED_BYTES_TOTAL.labels(storage=storage).inc(size)
