from .context import ServiceContext
from .files import FilesService
from .integrity import UserIntegrityChecker, integrity_flags_for
from .items import ItemsService
from .options import MutationOptions, QueryOptions, UserIntegrityCheckFlag
from .revisions import RevisionRecorder
from .scope import MutationScope
from .tracker import MutationTracker

__all__ = [
    "ServiceContext",
    "ItemsService",
    "FilesService",
    "MutationOptions",
    "QueryOptions",
    "UserIntegrityCheckFlag",
    "UserIntegrityChecker",
    "integrity_flags_for",
    "RevisionRecorder",
    "MutationScope",
    "MutationTracker",
]
