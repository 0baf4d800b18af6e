"""
Pluggable storage backend factory.

Creates the database a DBManager is bound to, based on configuration.
The local backend is SQLite; ``mongo`` uses pymongo's async client. Other
backends register via the ``dbmanager.backends`` entry point group.

External backend packages provide a factory function::

    def create_database(config: StoreConfig) -> DatabaseProtocol:
        ...

and register it in their pyproject.toml::

    [project.entry-points."dbmanager.backends"]
    my-backend = "my_package.backend:create_database"
"""

import inspect
import logging

from .api import DBManager
from .config import StoreConfig
from .protocol import DatabaseProtocol

logger = logging.getLogger(__name__)

DEFAULT_MONGO_URI = "mongodb://localhost:27017"


def create_database(config: StoreConfig) -> DatabaseProtocol:
    """
    Create the store database from configuration.

    For ``backend = "local"`` (default), opens ``documents.db`` in the store
    directory. For ``backend = "mongo"``, connects with ``uri`` and
    ``database`` from the backend parameters.

    For other values, loads the backend via the ``dbmanager.backends`` entry
    point group.
    """
    name = config.backend.name
    if name == "local":
        return _create_local_database(config)
    if name == "mongo":
        return _create_mongo_database(config)
    return _load_backend(name, config)


def _create_local_database(config: StoreConfig) -> DatabaseProtocol:
    """Create the default local SQLite database."""
    from .document_store import SqliteDatabase

    filename = config.backend.params.get("filename", "documents.db")
    return SqliteDatabase(config.path / filename)


def _create_mongo_database(config: StoreConfig) -> DatabaseProtocol:
    """Connect to MongoDB with pymongo's asyncio client."""
    from pymongo import AsyncMongoClient

    params = config.backend.params
    uri = params.get("uri", DEFAULT_MONGO_URI)
    database = params.get("database")
    if not database:
        raise ValueError("backend 'mongo' needs a 'database' parameter")
    logger.info("Connecting to MongoDB database %s", database)
    client = AsyncMongoClient(uri)
    return client[database]


def _load_backend(name: str, config: StoreConfig) -> DatabaseProtocol:
    """Load a backend by entry point name."""
    from importlib.metadata import entry_points

    eps = entry_points(group="dbmanager.backends")
    for ep in eps:
        if ep.name == name:
            factory = ep.load()
            return factory(config)

    available = [ep.name for ep in eps]
    if available:
        raise ValueError(
            f"Unknown backend: {name!r}. Available: local, mongo, {', '.join(available)}"
        )
    raise ValueError(
        f"Unknown backend: {name!r}. Built-in backends are 'local' and 'mongo'."
    )


def create_manager(config: StoreConfig) -> DBManager:
    """Build a DBManager with the configured defaults, bound to the configured store."""
    manager = DBManager(collection=config.collection, auto_insert=config.auto_insert)
    manager.init(create_database(config))
    return manager


async def close_database(db: DatabaseProtocol) -> None:
    """Release a database created by create_database()."""
    # pymongo databases are closed through their client
    client = getattr(db, "client", None)
    close = getattr(client if client is not None else db, "close", None)
    if close is None:
        return
    result = close()
    if inspect.isawaitable(result):
        await result
