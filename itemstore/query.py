from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Mapping, Optional, Protocol

from .db.helpers import quote
from .db.tx import DbTx
from .errors import ValidationError
from .schema import CollectionSchema

# MySQL has no "no limit" keyword; this is the documented idiom
_MYSQL_NO_LIMIT = "18446744073709551615"

_COMPARISONS = {
    "_eq": "=",
    "_neq": "<>",
    "_gt": ">",
    "_gte": ">=",
    "_lt": "<",
    "_lte": "<=",
}


@dataclass
class Query:
    """
    Declarative read request.

    filter: {"field": {"_op": value}}, combined with {"_and": [...]} / {"_or": [...]}.
    sort:   field names, "-field" for descending.
    limit:  None uses the configured default, -1 means unlimited.
    """
    fields: Optional[list[str]] = None
    filter: Optional[dict[str, Any]] = None
    sort: Optional[list[str]] = None
    limit: Optional[int] = None
    offset: Optional[int] = None
    page: Optional[int] = None

    @classmethod
    def parse(cls, raw: "Query | Mapping[str, Any] | None") -> "Query":
        if raw is None:
            return cls()
        if isinstance(raw, Query):
            return replace(raw)
        if not isinstance(raw, Mapping):
            raise ValidationError(f"Query must be a mapping, got {type(raw).__name__}")
        unknown = set(raw) - {"fields", "filter", "sort", "limit", "offset", "page"}
        if unknown:
            raise ValidationError(f"Unknown query parameters: {sorted(unknown)}")
        fields = raw.get("fields")
        sort = raw.get("sort")
        return cls(
            fields=[fields] if isinstance(fields, str) else fields,
            filter=raw.get("filter"),
            sort=[sort] if isinstance(sort, str) else sort,
            limit=raw.get("limit"),
            offset=raw.get("offset"),
            page=raw.get("page"),
        )

    def copy(self, **changes: Any) -> "Query":
        return replace(self, **changes)

    def with_filter(self, extra: Mapping[str, Any]) -> "Query":
        """Return a copy whose filter is AND-ed with `extra`."""
        combined = dict(extra) if not self.filter else {"_and": [self.filter, dict(extra)]}
        return replace(self, filter=combined)


class QueryResolver(Protocol):
    def resolve(
        self,
        tx: DbTx,
        collection: CollectionSchema,
        query: Query,
        default_limit: int,
    ) -> list[dict[str, Any]]:
        """Return the rows matching `query`, in order."""
        ...


@dataclass
class _Compiled:
    params: dict[str, Any] = field(default_factory=dict)

    def bind(self, value: Any) -> str:
        name = f"p{len(self.params)}"
        self.params[name] = value
        return f":{name}"


class SqlQueryResolver:
    """
    Minimal relational resolver for Query objects.

    Only column fields are selected; the primary key is always included so
    callers can match rows back to keys.
    """

    def resolve(
        self,
        tx: DbTx,
        collection: CollectionSchema,
        query: Query,
        default_limit: int,
    ) -> list[dict[str, Any]]:
        dialect = tx.dialect
        columns = self._select_columns(collection, query)
        select_sql = ", ".join(quote(dialect, c, "field") for c in columns)
        sql = f"SELECT {select_sql} FROM {quote(dialect, collection.name, 'collection')}"

        compiled = _Compiled()
        if query.filter:
            sql += " WHERE " + self._compile_filter(tx, collection, query.filter, compiled)

        order = []
        for entry in query.sort or []:
            desc = entry.startswith("-")
            name = entry[1:] if desc else entry
            self._check_column(collection, name)
            order.append(f"{quote(dialect, name, 'field')} {'DESC' if desc else 'ASC'}")
        if order:
            sql += " ORDER BY " + ", ".join(order)

        sql += self._pagination(dialect.name, query, default_limit, compiled)
        return tx.fetch_all(sql, compiled.params)

    def _select_columns(self, collection: CollectionSchema, query: Query) -> list[str]:
        if not query.fields or "*" in query.fields:
            return collection.columns
        selected = [collection.primary_key]
        for name in query.fields:
            if name not in collection.fields:
                raise ValidationError(
                    f"Field {name!r} does not exist in collection {collection.name!r}", field=name
                )
            if name not in selected and not collection.fields[name].alias:
                selected.append(name)
        return selected

    def _check_column(self, collection: CollectionSchema, name: str) -> None:
        spec = collection.fields.get(name)
        if spec is None or spec.alias:
            raise ValidationError(
                f"Cannot filter or sort on {name!r} in collection {collection.name!r}", field=name
            )

    def _compile_filter(
        self,
        tx: DbTx,
        collection: CollectionSchema,
        node: Mapping[str, Any],
        compiled: _Compiled,
    ) -> str:
        if not isinstance(node, Mapping) or not node:
            raise ValidationError("Filter must be a non-empty mapping")

        clauses = []
        for key, value in node.items():
            if key in ("_and", "_or"):
                if not isinstance(value, list) or not value:
                    raise ValidationError(f"{key} expects a non-empty list")
                joiner = " AND " if key == "_and" else " OR "
                parts = [self._compile_filter(tx, collection, child, compiled) for child in value]
                clauses.append("(" + joiner.join(parts) + ")")
                continue

            self._check_column(collection, key)
            column = quote(tx.dialect, key, "field")
            if not isinstance(value, Mapping):
                # shorthand {"field": value}
                value = {"_eq": value}
            for op, operand in value.items():
                clauses.append(self._compile_operator(column, op, operand, compiled))

        return "(" + " AND ".join(clauses) + ")"

    def _compile_operator(self, column: str, op: str, operand: Any, compiled: _Compiled) -> str:
        if op in _COMPARISONS:
            if operand is None and op in ("_eq", "_neq"):
                return f"{column} IS {'NOT ' if op == '_neq' else ''}NULL"
            return f"{column} {_COMPARISONS[op]} {compiled.bind(operand)}"
        if op in ("_in", "_nin"):
            if not isinstance(operand, (list, tuple, set)):
                raise ValidationError(f"{op} expects a list")
            if not operand:
                return "1 = 0" if op == "_in" else "1 = 1"
            placeholders = ", ".join(compiled.bind(v) for v in operand)
            return f"{column} {'NOT IN' if op == '_nin' else 'IN'} ({placeholders})"
        if op == "_null":
            return f"{column} IS {'' if operand else 'NOT '}NULL"
        if op == "_nnull":
            return f"{column} IS {'NOT ' if operand else ''}NULL"
        if op == "_contains":
            return f"{column} LIKE {compiled.bind(f'%{operand}%')}"
        raise ValidationError(f"Unknown filter operator {op!r}")

    def _pagination(self, dialect_name: str, query: Query, default_limit: int, compiled: _Compiled) -> str:
        limit = query.limit if query.limit is not None else default_limit
        offset = query.offset
        if query.page is not None and limit != -1:
            if query.page < 1:
                raise ValidationError("page must be >= 1")
            offset = (query.page - 1) * limit
        if limit is not None and limit < -1:
            raise ValidationError("limit must be >= -1")

        sql = ""
        if limit != -1:
            sql += f" LIMIT {compiled.bind(int(limit))}"
        elif offset:
            if dialect_name == "sqlite":
                sql += " LIMIT -1"
            elif dialect_name in ("mysql", "mariadb"):
                sql += f" LIMIT {_MYSQL_NO_LIMIT}"
        if offset:
            sql += f" OFFSET {compiled.bind(int(offset))}"
        return sql
