from __future__ import annotations

from typing import Optional

from sqlalchemy.engine import Engine

from ..cache import CacheStore
from ..config import ServiceConfig
from ..db.tx import DbFactory
from ..events import EventBus
from ..permissions import AllowAll, PermissionEngine
from ..query import QueryResolver, SqlQueryResolver
from ..schema import SchemaOverview
from ..storage import StorageRegistry
from .integrity import UserIntegrityChecker
from .revisions import RevisionRecorder


class ServiceContext:
    """
    The collaborators every service works against.

    Built once per process (or per schema version) and shared by all
    ItemsService / FilesService instances.

    Usage:
        context = ServiceContext(engine, reflect_schema(engine), events=EventEmitter())
        articles = ItemsService("articles", context)
    """

    def __init__(
        self,
        engine: Engine,
        schema: SchemaOverview,
        *,
        config: Optional[ServiceConfig] = None,
        permissions: Optional[PermissionEngine] = None,
        events: Optional[EventBus] = None,
        cache: Optional[CacheStore] = None,
        storage: Optional[StorageRegistry] = None,
        resolver: Optional[QueryResolver] = None,
    ) -> None:
        self.engine = engine
        self.db = DbFactory(engine)
        self.schema = schema
        self.config = config or ServiceConfig()
        self.permissions = permissions or AllowAll()
        self.events = events
        self.cache = cache
        self.storage = storage
        self.resolver = resolver or SqlQueryResolver()
        self.integrity = UserIntegrityChecker(self.config)
        self.revisions = RevisionRecorder(self.config, schema)
