"""
dbmanager - generic CRUD and query resolution in front of a document store.

Quick start::

    from pathlib import Path

    from dbmanager import DBManager, SqliteDatabase

    manager = DBManager(collection="items")
    manager.init(SqliteDatabase(Path("store/documents.db")))

    item_id = await manager.insert_one({"name": "a"})
    await manager.update(id=str(item_id), set_fields={"name": "b"})
    item = await manager.get_one(id=str(item_id))
"""

from .api import DBManager
from .document_store import SqliteCollection, SqliteDatabase
from .errors import (
    ConfigurationError,
    DBManagerError,
    HookFailure,
    InvalidIdentifier,
    NotFound,
    StoreError,
    UnsupportedFilter,
    ValidationFailure,
)
from .events import ChangeNotifier, EventType
from .identifiers import IdentifierCaster
from .resolver import resolve_filter
from .types import (
    IDENTITY_FIELD,
    DeleteParams,
    ReadParams,
    Selector,
    UpdateParams,
    WriteFlags,
)

__version__ = "0.1.0"
__all__ = [
    "DBManager",
    "SqliteDatabase",
    "SqliteCollection",
    "IdentifierCaster",
    "resolve_filter",
    "ChangeNotifier",
    "EventType",
    "Selector",
    "ReadParams",
    "UpdateParams",
    "DeleteParams",
    "WriteFlags",
    "IDENTITY_FIELD",
    "DBManagerError",
    "ConfigurationError",
    "InvalidIdentifier",
    "NotFound",
    "StoreError",
    "UnsupportedFilter",
    "ValidationFailure",
    "HookFailure",
]
