from __future__ import annotations

from prometheus_client import Counter, Histogram

ITEMS_MUTATION_TOTAL = Counter(
    "itemstore_items_mutation_total",
    "Item mutations grouped by collection, action and outcome",
    ["collection", "action", "status"],
)

ITEMS_MUTATION_LATENCY_SECONDS = Histogram(
    "itemstore_items_mutation_latency_seconds",
    "Latency of item mutations, measured inside the owning transaction",
    ["collection", "action"],
)

DB_TRANSACTION_TOTAL = Counter(
    "itemstore_db_transaction_total",
    "Top-level transactions grouped by outcome",
    ["status"],
)

CACHE_PURGE_TOTAL = Counter(
    "itemstore_cache_purge_total",
    "Cache purges issued after commit",
    ["scope"],
)

FILES_STORED_BYTES_TOTAL = Counter(
    "itemstore_files_stored_bytes_total",
    "Bytes written to storage adapters",
    ["storage"],
)
