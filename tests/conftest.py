from __future__ import annotations

import os
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any, Mapping

import pytest
import sqlalchemy as sa
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine

from itemstore.config import ServiceConfig
from itemstore.events import EventEmitter
from itemstore.schema import FILES_COLLECTION, SchemaOverview, reflect_schema
from itemstore.services import ItemsService, ServiceContext
from itemstore.storage import LocalStorage, StorageRegistry


def _enable_foreign_keys(dbapi_conn: object, connection_record: object) -> None:
    cursor = dbapi_conn.cursor()  # type: ignore[union-attr]
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


metadata = sa.MetaData()

sa.Table(
    "authors",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("name", sa.String(255), nullable=False, unique=True),
)

sa.Table(
    "articles",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("title", sa.String(255), nullable=False),
    sa.Column("slug", sa.String(255), nullable=True, unique=True),
    sa.Column("status", sa.String(32), nullable=False, server_default="draft"),
    sa.Column("author", sa.Integer, sa.ForeignKey("authors.id"), nullable=True),
)

sa.Table(
    "comments",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("body", sa.String(255), nullable=False),
    sa.Column("article", sa.Integer, sa.ForeignKey("articles.id"), nullable=True),
)

sa.Table(
    "settings",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("site_name", sa.String(255), nullable=False, server_default="My Site"),
    sa.Column("theme", sa.String(32), nullable=True),
)

sa.Table(
    "directus_roles",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("name", sa.String(255), nullable=False),
    sa.Column("admin_access", sa.Boolean, nullable=False, server_default="0"),
)

sa.Table(
    "directus_users",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("email", sa.String(255), nullable=False, unique=True),
    sa.Column("role", sa.Integer, sa.ForeignKey("directus_roles.id"), nullable=True),
    sa.Column("status", sa.String(32), nullable=False, server_default="active"),
)

sa.Table(
    "directus_files",
    metadata,
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("storage", sa.String(64), nullable=False),
    sa.Column("filename_disk", sa.String(255), nullable=True),
    sa.Column("filename_download", sa.String(255), nullable=False),
    sa.Column("title", sa.String(255), nullable=True),
    sa.Column("type", sa.String(255), nullable=True),
    sa.Column("filesize", sa.Integer, nullable=True),
)

sa.Table(
    "directus_revisions",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("action", sa.String(32), nullable=False),
    sa.Column("collection", sa.String(64), nullable=False),
    sa.Column("item", sa.String(255), nullable=False),
    sa.Column("data", sa.Text, nullable=True),
    sa.Column("delta", sa.Text, nullable=True),
    sa.Column("user", sa.Integer, nullable=True),
)


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    """
    Database URL for service tests.

    Defaults to a throwaway SQLite file per test; set ITEMSTORE_TEST_DB_URL to
    run against another database (tables are created and dropped per test).
    """
    return os.environ.get("ITEMSTORE_TEST_DB_URL", f"sqlite:///{tmp_path / 'itemstore.db'}")


@pytest.fixture
def engine(db_url: str) -> Iterator[Engine]:
    eng = create_engine(db_url, pool_pre_ping=True)
    if eng.dialect.name == "sqlite":
        event.listen(eng, "connect", _enable_foreign_keys)
    metadata.create_all(eng)

    yield eng

    metadata.drop_all(eng)
    eng.dispose()


@pytest.fixture
def schema(engine: Engine) -> SchemaOverview:
    overview = reflect_schema(
        engine,
        singletons=["settings"],
        o2m={("articles", "comments"): ("comments", "article")},
    )
    overview.collection(FILES_COLLECTION).fields["id"].type = "uuid"
    return overview


class RecordingEvents(EventEmitter):
    """EventEmitter that remembers every action it emits."""

    def __init__(self) -> None:
        super().__init__()
        self.emitted: list[tuple[Any, dict]] = []

    def emit(self, event: Any, meta: Mapping[str, Any], context: Mapping[str, Any]) -> int:
        self.emitted.append((event, dict(meta)))
        return super().emit(event, meta, context)

    def names(self) -> list[str]:
        flat: list[str] = []
        for event, _ in self.emitted:
            flat.extend([event] if isinstance(event, str) else event)
        return flat


class RecordingCache:
    def __init__(self) -> None:
        self.purged: list[str] = []
        self.system_purges = 0

    def purge(self, collection: str) -> int:
        self.purged.append(collection)
        return 0

    def purge_system(self) -> int:
        self.system_purges += 1
        return 0


@pytest.fixture
def events() -> RecordingEvents:
    return RecordingEvents()


@pytest.fixture
def cache() -> RecordingCache:
    return RecordingCache()


@pytest.fixture
def upload_root(tmp_path: Path) -> Path:
    return tmp_path / "uploads"


@pytest.fixture
def storage(upload_root: Path) -> StorageRegistry:
    return StorageRegistry({"local": LocalStorage("local", upload_root)})


@pytest.fixture
def config() -> ServiceConfig:
    return ServiceConfig()


@pytest.fixture
def context(
    engine: Engine,
    schema: SchemaOverview,
    config: ServiceConfig,
    events: RecordingEvents,
    cache: RecordingCache,
    storage: StorageRegistry,
) -> ServiceContext:
    return ServiceContext(engine, schema, config=config, events=events, cache=cache, storage=storage)


@pytest.fixture
def service(context: ServiceContext) -> Callable[[str], ItemsService]:
    """
    Factory for ItemsService instances bound to the test context.

    Usage:
        articles = service("articles")
    """

    def _make(collection: str, **kwargs: Any) -> ItemsService:
        return ItemsService(collection, context, **kwargs)

    return _make


@pytest.fixture
def fetch_all(engine: Engine) -> Callable[..., list[dict[str, Any]]]:
    """Read rows straight from the database, bypassing the services."""

    def _fetch(sql: str, params: Mapping[str, Any] | None = None) -> list[dict[str, Any]]:
        with engine.connect() as conn:
            return [dict(row) for row in conn.execute(sa.text(sql), params or {}).mappings()]

    return _fetch


@pytest.fixture
def admin_setup(service: Callable[[str], ItemsService]) -> dict[str, Any]:
    """One admin role, one editor role, and a single active admin user."""
    roles = service("directus_roles")
    users = service("directus_users")
    admin_role = roles.create_one({"name": "Administrator", "admin_access": True})
    editor_role = roles.create_one({"name": "Editor", "admin_access": False})
    admin = users.create_one({"email": "admin@example.com", "role": admin_role})
    return {"admin_role": admin_role, "editor_role": editor_role, "admin": admin}
