from .config import ServiceConfig
from .events import ActionEventParams, CollectActions, EventEmitter
from .query import Query
from .schema import SchemaOverview, reflect_schema
from .services import (
    FilesService,
    ItemsService,
    MutationOptions,
    MutationTracker,
    QueryOptions,
    ServiceContext,
    UserIntegrityCheckFlag,
)

__all__ = [
    "ServiceConfig",
    "ServiceContext",
    "ItemsService",
    "FilesService",
    "MutationOptions",
    "QueryOptions",
    "MutationTracker",
    "UserIntegrityCheckFlag",
    "ActionEventParams",
    "CollectActions",
    "EventEmitter",
    "Query",
    "SchemaOverview",
    "reflect_schema",
]
