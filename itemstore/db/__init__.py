from .helpers import reset_auto_increment_sequence, translate_db_error
from .session import DbSession
from .tx import DbFactory, DbTransaction, DbTx

__all__ = [
    "DbSession",
    "DbTx",
    "DbTransaction",
    "DbFactory",
    "reset_auto_increment_sequence",
    "translate_db_error",
]
