from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Literal, Mapping

from sqlalchemy import Integer, inspect
from sqlalchemy.engine import Engine

from .errors import ForbiddenError

logger = logging.getLogger(__name__)

SYSTEM_PREFIX = "directus_"

USERS_COLLECTION = "directus_users"
ROLES_COLLECTION = "directus_roles"
FILES_COLLECTION = "directus_files"
REVISIONS_COLLECTION = "directus_revisions"


@dataclass
class FieldSchema:
    name: str
    type: str = "string"
    nullable: bool = True
    has_default: bool = False
    default: Any = None
    auto_increment: bool = False
    # o2m aliases have no column of their own
    alias: bool = False

    @property
    def required(self) -> bool:
        return not (self.nullable or self.has_default or self.auto_increment or self.alias)


@dataclass
class RelationSchema:
    """
    A relation as seen from `collection.field`.

    m2o: `field` holds the key of `related_collection` (whose key is `related_field`).
    o2m: `field` is an alias; rows of `related_collection` point back through `related_field`.
    """
    collection: str
    field: str
    related_collection: str
    related_field: str
    kind: Literal["m2o", "o2m"]


@dataclass
class CollectionSchema:
    name: str
    primary_key: str
    fields: dict[str, FieldSchema]
    singleton: bool = False
    relations: dict[str, RelationSchema] = field(default_factory=dict)

    @property
    def system(self) -> bool:
        return self.name.startswith(SYSTEM_PREFIX)

    @property
    def columns(self) -> list[str]:
        return [name for name, f in self.fields.items() if not f.alias]

    @property
    def pk_field(self) -> FieldSchema:
        return self.fields[self.primary_key]

    def required_fields(self) -> list[str]:
        # uuid keys are generated on insert
        return [
            name
            for name, f in self.fields.items()
            if f.required and not (name == self.primary_key and f.type == "uuid")
        ]

    def defaults(self) -> dict[str, Any]:
        return {name: f.default for name, f in self.fields.items() if not f.alias}


class SchemaOverview:
    """
    The schema provider consumed by the services: collection name -> CollectionSchema.
    """

    def __init__(self, collections: Iterable[CollectionSchema] = ()) -> None:
        self.collections: dict[str, CollectionSchema] = {c.name: c for c in collections}

    def __contains__(self, name: object) -> bool:
        return name in self.collections

    def add(self, collection: CollectionSchema) -> CollectionSchema:
        self.collections[collection.name] = collection
        return collection

    def collection(self, name: str) -> CollectionSchema:
        try:
            return self.collections[name]
        except KeyError:
            # unknown collections are indistinguishable from forbidden ones
            raise ForbiddenError(collection=name) from None

    def add_m2o(self, collection: str, field_name: str, related_collection: str) -> RelationSchema:
        related = self.collection(related_collection)
        relation = RelationSchema(
            collection=collection,
            field=field_name,
            related_collection=related_collection,
            related_field=related.primary_key,
            kind="m2o",
        )
        self.collection(collection).relations[field_name] = relation
        return relation

    def add_o2m(
        self,
        collection: str,
        alias: str,
        related_collection: str,
        related_field: str,
    ) -> RelationSchema:
        """Declare an o2m alias field on `collection` backed by `related_collection.related_field`."""
        schema = self.collection(collection)
        schema.fields[alias] = FieldSchema(name=alias, type="alias", alias=True)
        relation = RelationSchema(
            collection=collection,
            field=alias,
            related_collection=related_collection,
            related_field=related_field,
            kind="o2m",
        )
        schema.relations[alias] = relation
        return relation


def _parse_default(raw: Any) -> Any:
    """Turn a reflected server default (SQL text) into a Python literal where it is one."""
    if raw is None:
        return None
    text = str(raw).strip()
    while text.startswith("(") and text.endswith(")"):
        text = text[1:-1].strip()
    if len(text) >= 2 and text[0] == text[-1] == "'":
        return text[1:-1].replace("''", "'")
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return float(text)
    except ValueError:
        # expressions such as CURRENT_TIMESTAMP are left to the database
        return None


def reflect_schema(
    engine: Engine,
    singletons: Iterable[str] = (),
    o2m: Mapping[tuple[str, str], tuple[str, str]] | None = None,
) -> SchemaOverview:
    """
    Build a SchemaOverview from a live database.

    Foreign keys become m2o relations. o2m aliases cannot be discovered and
    are passed as {(collection, alias): (related_collection, related_field)}.
    Tables without a single-column primary key are skipped.
    """
    inspector = inspect(engine)
    singletons = set(singletons)
    overview = SchemaOverview()

    for table in inspector.get_table_names():
        pk_columns = inspector.get_pk_constraint(table).get("constrained_columns") or []
        if len(pk_columns) != 1:
            logger.debug("Skipping table %s without a single-column primary key", table)
            continue
        pk = pk_columns[0]

        fields: dict[str, FieldSchema] = {}
        for col in inspector.get_columns(table):
            is_pk = col["name"] == pk
            is_int = isinstance(col["type"], Integer)
            auto_increment = is_pk and is_int and col.get("autoincrement", "auto") is not False
            fields[col["name"]] = FieldSchema(
                name=col["name"],
                type="integer" if is_int else str(col["type"]).lower(),
                nullable=bool(col.get("nullable", True)) and not is_pk,
                has_default=col.get("default") is not None,
                default=_parse_default(col.get("default")),
                auto_increment=auto_increment,
            )

        overview.add(CollectionSchema(name=table, primary_key=pk, fields=fields, singleton=table in singletons))

    for table in list(overview.collections):
        for fk in inspector.get_foreign_keys(table):
            columns = fk.get("constrained_columns") or []
            if len(columns) == 1 and fk.get("referred_table") in overview:
                overview.add_m2o(table, columns[0], fk["referred_table"])

    for (collection, alias), (related_collection, related_field) in (o2m or {}).items():
        overview.add_o2m(collection, alias, related_collection, related_field)

    return overview
