from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError

from ..db.helpers import quote, reset_auto_increment_sequence, translate_db_error
from ..db.metrics import observe_cache_purge, observe_mutation
from ..db.tx import DbTx
from ..errors import NotFoundError, ValidationError
from ..events import ActionEventParams
from ..permissions import Accountability, PermissionDecision, PermissionsAction, enforce
from ..query import Query
from ..schema import SYSTEM_PREFIX, CollectionSchema
from .context import ServiceContext
from .integrity import integrity_flags_for
from .options import Item, MutationOptions, PrimaryKey, QueryOptions
from .scope import MutationScope
from .tracker import MutationTracker

logger = logging.getLogger(__name__)


class ItemsService:
    """
    CRUD, upsert and singleton access to one collection.

    Every mutating operation runs through the same pipeline:

    1. resolve the target keys
    2. filter hooks, validation and permissions
    3. mutation tracking (fails fast past the limit)
    4. the write itself
    5. revisions
    6. action event (after commit, or handed to `bypass_emit_action`)
    7. cache purge (after commit)
    8. user integrity flags, checked once by the top-level call before commit

    A service built with `scope=None` owns its transactions: each public
    mutation opens one, and commits it only after the integrity checks pass.
    A service built with a scope joins that scope's transaction, tracker and
    pending checks; this is how relational cascades and batch operations
    nest.
    """

    def __init__(
        self,
        collection: str,
        context: ServiceContext,
        accountability: Optional[Accountability] = None,
        scope: Optional[MutationScope] = None,
    ) -> None:
        self.collection = collection
        self.context = context
        self.schema = context.schema
        self.accountability = accountability
        self.scope = scope
        self.collection_schema: CollectionSchema = context.schema.collection(collection)
        if collection.startswith(SYSTEM_PREFIX):
            self.event_scope = collection[len(SYSTEM_PREFIX):]
        else:
            self.event_scope = "items"

    @property
    def primary_key(self) -> str:
        return self.collection_schema.primary_key

    def create_mutation_tracker(self, initial_count: int = 0) -> MutationTracker:
        return MutationTracker(self.context.config.max_batch_mutation, initial_count)

    def _nested(self, collection: str, scope: MutationScope) -> "ItemsService":
        return ItemsService(collection, self.context, self.accountability, scope)

    # -- transaction plumbing ---------------------------------------------

    @contextmanager
    def _mutation(self, opts: Optional[MutationOptions]) -> Iterator[tuple[MutationScope, MutationOptions]]:
        opts = opts or MutationOptions()

        if self.scope is not None:
            scope = self.scope
            if opts.mutation_tracker is None:
                opts = opts.copy(mutation_tracker=scope.tracker)
            scope.request_integrity_check(opts.user_integrity_check_flags)
            yield scope, opts
            return

        tracker = opts.mutation_tracker or self.create_mutation_tracker()
        opts = opts.copy(mutation_tracker=tracker)
        tx = self.context.db.begin()
        scope = MutationScope(tx, tracker)
        scope.request_integrity_check(opts.user_integrity_check_flags)
        try:
            yield scope, opts
            self._run_integrity_checks(scope, opts)
        except BaseException:
            tx.rollback()
            scope.run_on_rollback()
            raise

        try:
            tx.commit()
        except Exception:
            scope.run_on_rollback()
            raise
        logger.info(
            "Committed mutation on %s (%d tracked mutations)", self.collection, tracker.get_count()
        )
        scope.run_after_commit()

    def _run_integrity_checks(self, scope: MutationScope, opts: MutationOptions) -> None:
        flags = scope.integrity_flags
        if not flags:
            return
        if opts.on_require_user_integrity_check is not None:
            opts.on_require_user_integrity_check(flags)
        self.context.integrity.check(scope.tx, self.schema, flags)

    @contextmanager
    def _observed(self, action: str) -> Iterator[None]:
        start_time = time.monotonic()
        status = "success"
        try:
            yield
        except Exception:
            status = "error"
            raise
        finally:
            try:
                observe_mutation(self.collection, action, status, time.monotonic() - start_time)
            except Exception:
                # metrics must never mask the real outcome
                logger.debug("Failed to record mutation metrics", exc_info=True)

    def _track(self, opts: MutationOptions, count: int) -> None:
        if not opts.bypass_limits and opts.mutation_tracker is not None:
            opts.mutation_tracker.track_mutations(count)

    # -- events and cache ---------------------------------------------------

    def _event_names(self, action: str) -> list[str] | str:
        if self.event_scope == "items":
            return [f"items.{action}", f"{self.collection}.items.{action}"]
        return f"{self.event_scope}.{action}"

    def _event_context(self) -> dict[str, Any]:
        return {"schema": self.schema, "accountability": self.accountability}

    def _filter(self, action: str, payload: Any, meta: Mapping[str, Any], emit_events: bool) -> Any:
        events = self.context.events
        if not emit_events or events is None:
            return payload
        return events.filter(
            self._event_names(action),
            payload,
            {**meta, "collection": self.collection},
            self._event_context(),
        )

    def _emit_action(
        self,
        scope: MutationScope,
        opts: MutationOptions,
        action: str,
        meta: Mapping[str, Any],
    ) -> None:
        # emit_events=False wins over a collector: nothing is emitted or collected
        if not opts.emit_events:
            return
        params = ActionEventParams(
            event=self._event_names(action),
            meta={**meta, "collection": self.collection},
            context=self._event_context(),
        )
        if opts.bypass_emit_action is not None:
            opts.bypass_emit_action(params)
            return
        events = self.context.events
        if events is not None:
            scope.after_commit(lambda: events.emit(params.event, params.meta, params.context))

    def _schedule_cache_purge(self, scope: MutationScope, opts: MutationOptions) -> None:
        cache = self.context.cache
        if cache is None:
            return
        if self.context.config.cache_auto_purge and opts.auto_purge_cache:
            def purge_collection() -> None:
                cache.purge(self.collection)
                observe_cache_purge("collection")

            scope.after_commit(purge_collection, key=("purge", self.collection))
        if opts.auto_purge_system_cache:
            def purge_system() -> None:
                cache.purge_system()
                observe_cache_purge("system")

            scope.after_commit(purge_system, key=("purge_system",))

    def _finish_write(
        self,
        scope: MutationScope,
        opts: MutationOptions,
        action: str,
        keys: Sequence[PrimaryKey],
        payload: Mapping[str, Any],
        meta: Mapping[str, Any],
    ) -> None:
        """Steps 5-8 of the pipeline, shared by every write."""
        if action != "delete":
            for key in keys:
                self.context.revisions.record(
                    scope.tx,
                    action,
                    self.collection_schema,
                    key,
                    payload,
                    self.accountability,
                    opts.on_revision_create,
                )
        self._emit_action(scope, opts, action, meta)
        self._schedule_cache_purge(scope, opts)
        scope.request_integrity_check(integrity_flags_for(self.collection, action, payload))

    # -- validation -----------------------------------------------------------

    def _check_payload(self, data: Any, action: str) -> dict[str, Any]:
        if not isinstance(data, Mapping):
            raise ValidationError(f"Payload for {self.collection!r} must be a mapping, got {type(data).__name__}")
        payload = dict(data)
        unknown = sorted(set(payload) - set(self.collection_schema.fields))
        if unknown:
            raise ValidationError(
                f"Field(s) {unknown} don't exist in collection {self.collection!r}", field=unknown[0]
            )
        if action == "create":
            missing = [
                name
                for name in self.collection_schema.required_fields()
                if payload.get(name) is None and name not in self.collection_schema.relations
            ]
            if missing:
                raise ValidationError(f"Field(s) {missing} are required in collection {self.collection!r}", field=missing[0])
        return payload

    def _check_keys(self, keys: Any) -> list[PrimaryKey]:
        if isinstance(keys, (str, bytes)) or not isinstance(keys, Sequence):
            raise ValidationError("Keys must be a list of primary keys")
        unique: dict[str, PrimaryKey] = {}
        for key in keys:
            if key is None or isinstance(key, (Mapping, list, tuple)):
                raise ValidationError(f"Invalid primary key {key!r}")
            unique.setdefault(str(key), key)
        return list(unique.values())

    def _missing_keys(self, tx: DbTx, keys: Sequence[PrimaryKey]) -> list[PrimaryKey]:
        if not keys:
            return []
        dialect = tx.dialect
        pk = quote(dialect, self.primary_key, "field")
        params = {f"k{i}": key for i, key in enumerate(keys)}
        placeholders = ", ".join(f":{name}" for name in params)
        rows = tx.fetch_all(
            f"SELECT {pk} AS pk FROM {quote(dialect, self.collection, 'collection')} WHERE {pk} IN ({placeholders})",
            params,
        )
        found = {str(row["pk"]) for row in rows}
        return [key for key in keys if str(key) not in found]

    # -- relations --------------------------------------------------------------

    def _split_relations(self, payload: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
        """Separate o2m alias values from the column payload."""
        columns, o2m = {}, {}
        for name, value in payload.items():
            relation = self.collection_schema.relations.get(name)
            if relation is not None and relation.kind == "o2m":
                if not isinstance(value, list):
                    raise ValidationError(f"Field {name!r} expects a list of related items", field=name)
                o2m[name] = value
            else:
                columns[name] = value
        return columns, o2m

    def _process_m2o(self, scope: MutationScope, opts: MutationOptions, payload: dict[str, Any]) -> dict[str, Any]:
        for name, relation in self.collection_schema.relations.items():
            if relation.kind != "m2o" or not isinstance(payload.get(name), Mapping):
                continue
            related = self._nested(relation.related_collection, scope)
            payload[name] = related.upsert_one(payload[name], opts.for_nested())
        return payload

    def _process_o2m(
        self,
        scope: MutationScope,
        opts: MutationOptions,
        key: PrimaryKey,
        o2m: Mapping[str, list],
    ) -> None:
        for name, children in o2m.items():
            relation = self.collection_schema.relations[name]
            related = self._nested(relation.related_collection, scope)
            for child in children:
                if isinstance(child, Mapping):
                    related.upsert_one({**child, relation.related_field: key}, opts.for_nested())
                else:
                    related.update_one(child, {relation.related_field: key}, opts.for_nested())

    # -- persistence ------------------------------------------------------------

    def _insert_row(self, scope: MutationScope, opts: MutationOptions, columns: dict[str, Any]) -> PrimaryKey:
        tx = scope.tx
        dialect = tx.dialect
        pk = self.primary_key
        pk_field = self.collection_schema.pk_field

        key = columns.get(pk)
        if key is None and pk_field.type == "uuid":
            key = str(uuid.uuid4())
            columns[pk] = key

        table = quote(dialect, self.collection, "collection")
        if columns:
            names = list(columns)
            params = {f"v{i}": columns[name] for i, name in enumerate(names)}
            column_sql = ", ".join(quote(dialect, name, "field") for name in names)
            sql = f"INSERT INTO {table} ({column_sql}) VALUES ({', '.join(':' + p for p in params)})"
        else:
            params = {}
            sql = f"INSERT INTO {table} () VALUES ()" if dialect.name in ("mysql", "mariadb") else f"INSERT INTO {table} DEFAULT VALUES"
        if dialect.name == "postgresql":
            sql += f" RETURNING {quote(dialect, pk, 'field')}"

        try:
            generated = tx.insert(sql, params, returning=pk)
        except IntegrityError as exc:
            raise translate_db_error(exc, self.collection) from exc

        if key is None:
            return generated
        if pk_field.auto_increment and isinstance(key, int) and not opts.bypass_auto_increment_sequence_reset:
            reset_auto_increment_sequence(tx, self.collection, pk)
        return key

    def _update_rows(self, tx: DbTx, keys: Sequence[PrimaryKey], columns: Mapping[str, Any]) -> int:
        if not columns:
            return 0
        dialect = tx.dialect
        names = list(columns)
        params = {f"v{i}": columns[name] for i, name in enumerate(names)}
        set_sql = ", ".join(f"{quote(dialect, name, 'field')} = :v{i}" for i, name in enumerate(names))
        key_params = {f"k{i}": key for i, key in enumerate(keys)}
        params.update(key_params)
        sql = (
            f"UPDATE {quote(dialect, self.collection, 'collection')} SET {set_sql} "
            f"WHERE {quote(dialect, self.primary_key, 'field')} IN ({', '.join(':' + k for k in key_params)})"
        )
        try:
            return tx.execute(sql, params)
        except IntegrityError as exc:
            raise translate_db_error(exc, self.collection) from exc

    def _delete_rows(self, tx: DbTx, keys: Sequence[PrimaryKey]) -> int:
        dialect = tx.dialect
        params = {f"k{i}": key for i, key in enumerate(keys)}
        sql = (
            f"DELETE FROM {quote(dialect, self.collection, 'collection')} "
            f"WHERE {quote(dialect, self.primary_key, 'field')} IN ({', '.join(':' + k for k in params)})"
        )
        try:
            return tx.execute(sql, params)
        except IntegrityError as exc:
            raise translate_db_error(exc, self.collection) from exc

    # -- pipeline bodies --------------------------------------------------------

    def _create(self, scope: MutationScope, opts: MutationOptions, data: Any) -> PrimaryKey:
        with self._observed("create"):
            payload = self._check_payload(data, "create")
            payload = self._check_payload(self._filter("create", payload, {}, opts.emit_events), "create")
            enforce(self.context.permissions, self.accountability, self.collection, "create", payload)

            self._track(opts, 1)
            if opts.pre_mutation_error is not None:
                raise opts.pre_mutation_error

            columns, o2m = self._split_relations(payload)
            columns = self._process_m2o(scope, opts, columns)
            key = self._insert_row(scope, opts, columns)
            self._process_o2m(scope, opts, key, o2m)

            self._finish_write(scope, opts, "create", [key], payload, {"key": key, "payload": payload})
            logger.debug("Created %s:%s", self.collection, key)
            return key

    def _update(
        self,
        scope: MutationScope,
        opts: MutationOptions,
        keys: Any,
        data: Any,
    ) -> list[PrimaryKey]:
        with self._observed("update"):
            keys = self._check_keys(keys)
            payload = self._check_payload(data, "update")
            if self.primary_key in payload:
                if any(str(payload[self.primary_key]) != str(key) for key in keys):
                    raise ValidationError("Primary keys can't be changed", field=self.primary_key)
                del payload[self.primary_key]
            payload = self._check_payload(
                self._filter("update", payload, {"keys": keys}, opts.emit_events), "update"
            )
            enforce(self.context.permissions, self.accountability, self.collection, "update", payload)
            if not keys:
                return []

            missing = self._missing_keys(scope.tx, keys)
            if missing:
                raise NotFoundError(self.collection, missing)

            self._track(opts, len(keys))
            if opts.pre_mutation_error is not None:
                raise opts.pre_mutation_error

            columns, o2m = self._split_relations(payload)
            columns = self._process_m2o(scope, opts, columns)
            self._update_rows(scope.tx, keys, columns)
            for key in keys:
                self._process_o2m(scope, opts, key, o2m)

            self._finish_write(scope, opts, "update", keys, payload, {"keys": keys, "payload": payload})
            logger.debug("Updated %s:%s", self.collection, keys)
            return keys

    def _upsert(self, scope: MutationScope, opts: MutationOptions, data: Any) -> PrimaryKey:
        payload = self._check_payload(data, "update")
        key = payload.get(self.primary_key)
        if key is not None and not self._missing_keys(scope.tx, [key]):
            return self._update(scope, opts, [key], payload)[0]
        return self._create(scope, opts, payload)

    def _delete(self, scope: MutationScope, opts: MutationOptions, keys: Any) -> list[PrimaryKey]:
        with self._observed("delete"):
            keys = self._check_keys(keys)
            keys = self._check_keys(self._filter("delete", keys, {}, opts.emit_events))
            enforce(self.context.permissions, self.accountability, self.collection, "delete")
            if not keys:
                return []

            missing = self._missing_keys(scope.tx, keys)
            if missing:
                raise NotFoundError(self.collection, missing)

            self._track(opts, len(keys))
            if opts.pre_mutation_error is not None:
                raise opts.pre_mutation_error

            deleted = self._delete_rows(scope.tx, keys)
            logger.debug("Deleted %d row(s) from %s", deleted, self.collection)

            self._finish_write(scope, opts, "delete", keys, {}, {"keys": keys, "payload": keys})
            return keys

    # -- reads --------------------------------------------------------------------

    def _read(self, tx: DbTx, query: Query, opts: QueryOptions, scope: Optional[MutationScope] = None) -> list[Item]:
        # the primary key is always returned
        requested = [f for f in query.fields or [] if f not in ("*", self.primary_key)]
        decision = enforce(
            self.context.permissions, self.accountability, self.collection, opts.permissions_action, requested
        )
        query = self._filter("query", query, {"query": query}, opts.emit_events)
        rows = self.context.resolver.resolve(
            tx, self.collection_schema, query, self.context.config.query_limit_default
        )
        items = [self._shape(row, query, decision, opts) for row in rows]

        events = self.context.events
        if opts.emit_events and events is not None:
            names = self._event_names("read")
            meta = {"payload": items, "query": query, "collection": self.collection}
            context = self._event_context()
            if scope is not None:
                scope.after_commit(lambda: events.emit(names, meta, context))
            else:
                events.emit(names, meta, context)
        return items

    def _shape(self, row: dict[str, Any], query: Query, decision: PermissionDecision, opts: QueryOptions) -> Item:
        if decision.fields is not None:
            row = {k: v for k, v in row.items() if k in decision.fields or k == self.primary_key}
        if opts.strip_non_requested and query.fields and "*" not in query.fields:
            row = {k: v for k, v in row.items() if k in query.fields}
        return row

    def _run_read(self, query: Query, opts: QueryOptions) -> list[Item]:
        if self.scope is not None:
            return self._read(self.scope.tx, query, opts, self.scope)
        with self.context.db.session() as session:
            return self._read(session, query, opts)

    def _keys_by_query(self, tx: DbTx, query: Any, action: PermissionsAction = "read") -> list[PrimaryKey]:
        query = Query.parse(query).copy(fields=[self.primary_key])
        if query.limit is None:
            query = query.copy(limit=-1)
        rows = self._read(tx, query, QueryOptions(emit_events=False, permissions_action=action))
        return [row[self.primary_key] for row in rows]

    # -- public API: reads -------------------------------------------------------

    def get_keys_by_query(self, query: Any) -> list[PrimaryKey]:
        if self.scope is not None:
            return self._keys_by_query(self.scope.tx, query)
        with self.context.db.session() as session:
            return self._keys_by_query(session, query)

    def read_by_query(self, query: Any = None, opts: Optional[QueryOptions] = None) -> list[Item]:
        return self._run_read(Query.parse(query), opts or QueryOptions())

    def read_one(self, key: PrimaryKey, query: Any = None, opts: Optional[QueryOptions] = None) -> Item:
        self._check_keys([key])
        query = Query.parse(query).with_filter({self.primary_key: {"_eq": key}}).copy(limit=1, offset=None, page=None)
        items = self._run_read(query, opts or QueryOptions())
        if not items:
            raise NotFoundError(self.collection, [key])
        return items[0]

    def read_many(self, keys: Sequence[PrimaryKey], query: Any = None, opts: Optional[QueryOptions] = None) -> list[Item]:
        keys = self._check_keys(keys)
        query = Query.parse(query).with_filter({self.primary_key: {"_in": keys}})
        if query.limit is None:
            query = query.copy(limit=-1)
        return self._run_read(query, opts or QueryOptions())

    def read_singleton(self, query: Any = None, opts: Optional[QueryOptions] = None) -> Item:
        query = Query.parse(query).copy(limit=1, offset=None, page=None)
        items = self._run_read(query, opts or QueryOptions())
        if items:
            return items[0]

        defaults = self.collection_schema.defaults()
        defaults[self.primary_key] = None
        if query.fields and "*" not in query.fields:
            defaults = {k: v for k, v in defaults.items() if k in query.fields}
        return defaults

    # -- public API: mutations ----------------------------------------------------

    def create_one(self, data: Item, opts: Optional[MutationOptions] = None) -> PrimaryKey:
        with self._mutation(opts) as (scope, opts):
            return self._create(scope, opts, data)

    def create_many(self, data: Sequence[Item], opts: Optional[MutationOptions] = None) -> list[PrimaryKey]:
        if isinstance(data, Mapping) or not isinstance(data, Sequence):
            raise ValidationError("create_many expects a list of items")
        with self._mutation(opts) as (scope, opts):
            return [self._create(scope, opts, item) for item in data]

    def update_one(self, key: PrimaryKey, data: Item, opts: Optional[MutationOptions] = None) -> PrimaryKey:
        with self._mutation(opts) as (scope, opts):
            return self._update(scope, opts, [key], data)[0]

    def update_many(self, keys: Sequence[PrimaryKey], data: Item, opts: Optional[MutationOptions] = None) -> list[PrimaryKey]:
        with self._mutation(opts) as (scope, opts):
            return self._update(scope, opts, keys, data)

    def update_by_query(self, query: Any, data: Item, opts: Optional[MutationOptions] = None) -> list[PrimaryKey]:
        with self._mutation(opts) as (scope, opts):
            keys = self._keys_by_query(scope.tx, query, "update")
            return self._update(scope, opts, keys, data)

    def update_batch(self, data: Sequence[Item], opts: Optional[MutationOptions] = None) -> list[PrimaryKey]:
        """Apply a distinct payload to each item; every payload carries its own key."""
        if isinstance(data, Mapping) or not isinstance(data, Sequence):
            raise ValidationError("update_batch expects a list of items")
        with self._mutation(opts) as (scope, opts):
            keys = []
            for item in data:
                payload = self._check_payload(item, "update")
                key = payload.pop(self.primary_key, None)
                if key is None:
                    raise ValidationError(
                        f"Each item in a batch update needs its primary key {self.primary_key!r}",
                        field=self.primary_key,
                    )
                keys.extend(self._update(scope, opts, [key], payload))
            return keys

    def upsert_one(self, payload: Item, opts: Optional[MutationOptions] = None) -> PrimaryKey:
        with self._mutation(opts) as (scope, opts):
            return self._upsert(scope, opts, payload)

    def upsert_many(self, payloads: Sequence[Item], opts: Optional[MutationOptions] = None) -> list[PrimaryKey]:
        if isinstance(payloads, Mapping) or not isinstance(payloads, Sequence):
            raise ValidationError("upsert_many expects a list of items")
        with self._mutation(opts) as (scope, opts):
            return [self._upsert(scope, opts, payload) for payload in payloads]

    def upsert_singleton(self, data: Item, opts: Optional[MutationOptions] = None) -> PrimaryKey:
        with self._mutation(opts) as (scope, opts):
            dialect = scope.tx.dialect
            pk = quote(dialect, self.primary_key, "field")
            rows = scope.tx.fetch_all(
                f"SELECT {pk} AS pk FROM {quote(dialect, self.collection, 'collection')} LIMIT 1"
            )
            if rows:
                return self._update(scope, opts, [rows[0]["pk"]], data)[0]
            return self._create(scope, opts, data)

    def delete_one(self, key: PrimaryKey, opts: Optional[MutationOptions] = None) -> PrimaryKey:
        with self._mutation(opts) as (scope, opts):
            return self._delete(scope, opts, [key])[0]

    def delete_many(self, keys: Sequence[PrimaryKey], opts: Optional[MutationOptions] = None) -> list[PrimaryKey]:
        with self._mutation(opts) as (scope, opts):
            return self._delete(scope, opts, keys)

    def delete_by_query(self, query: Any, opts: Optional[MutationOptions] = None) -> list[PrimaryKey]:
        with self._mutation(opts) as (scope, opts):
            keys = self._keys_by_query(scope.tx, query, "delete")
            return self._delete(scope, opts, keys)
