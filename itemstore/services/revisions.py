from __future__ import annotations

import json
import logging
from typing import Any, Callable, Mapping, Optional

from ..config import ServiceConfig
from ..db.helpers import quote
from ..db.tx import DbTx
from ..permissions import Accountability
from ..schema import REVISIONS_COLLECTION, CollectionSchema, SchemaOverview
from .options import PrimaryKey

logger = logging.getLogger(__name__)

# collections whose own writes are never revisioned
_UNTRACKED = {REVISIONS_COLLECTION, "directus_activity", "directus_sessions"}


def _dumps(value: Any) -> str:
    return json.dumps(value, default=str, sort_keys=True)


class RevisionRecorder:
    """
    Writes one revision row per mutated item and notifies the caller.

    Rows go to `directus_revisions` inside the mutation's own transaction, so
    a rolled-back write leaves no revision behind. Only the columns the
    revisions collection actually has are written.
    """

    def __init__(self, config: ServiceConfig, schema: SchemaOverview) -> None:
        self.config = config
        self.schema = schema

    def enabled_for(self, collection: str) -> bool:
        return (
            self.config.track_revisions
            and REVISIONS_COLLECTION in self.schema
            and collection not in _UNTRACKED
        )

    def record(
        self,
        tx: DbTx,
        action: str,
        collection: CollectionSchema,
        key: PrimaryKey,
        delta: Mapping[str, Any],
        accountability: Optional[Accountability] = None,
        on_revision_create: Optional[Callable[[PrimaryKey], None]] = None,
    ) -> Any:
        revision_id = None
        if self.enabled_for(collection.name):
            revision_id = self._insert(tx, action, collection, key, delta, accountability)
        if on_revision_create is not None:
            on_revision_create(key)
        return revision_id

    def _insert(
        self,
        tx: DbTx,
        action: str,
        collection: CollectionSchema,
        key: PrimaryKey,
        delta: Mapping[str, Any],
        accountability: Optional[Accountability],
    ) -> Any:
        dialect = tx.dialect
        data = tx.fetch_one(
            f"SELECT * FROM {quote(dialect, collection.name, 'collection')} "
            f"WHERE {quote(dialect, collection.primary_key, 'field')} = :key",
            {"key": key},
        )
        row = {
            "action": action,
            "collection": collection.name,
            "item": str(key),
            "data": _dumps(data),
            "delta": _dumps(dict(delta)),
            "user": accountability.user if accountability is not None else None,
        }
        revisions = self.schema.collection(REVISIONS_COLLECTION)
        row = {k: v for k, v in row.items() if k in revisions.fields}

        columns = ", ".join(quote(dialect, c, "field") for c in row)
        placeholders = ", ".join(f":{c}" for c in row)
        sql = f"INSERT INTO {quote(dialect, REVISIONS_COLLECTION, 'collection')} ({columns}) VALUES ({placeholders})"
        pk = revisions.primary_key
        if dialect.name == "postgresql":
            sql += f" RETURNING {quote(dialect, pk, 'field')}"
        revision_id = tx.insert(sql, row, returning=pk)
        logger.debug("Recorded revision %s for %s:%s (%s)", revision_id, collection.name, key, action)
        return revision_id
