"""
Core API for dbmanager.

DBManager turns declarative call parameters into document store operations:
- get_one() / get_many() / get_path(): resolve filter → read → validate
- update() / set_path(): resolve → existence check → write → re-fetch → notify
- delete_one(): resolve → delete → pre-delete hook

Every operation is a coroutine. A manager holds only read-only defaults, so
concurrent calls on one instance are safe.
"""

import inspect
import logging
from dataclasses import replace
from typing import Any, Callable, Iterable, Mapping, Optional, Union

from .errors import (
    ConfigurationError,
    DBManagerError,
    HookFailure,
    NotFound,
    UnsupportedFilter,
    ValidationFailure,
    store_errors,
)
from .events import ChangeNotifier, EventType, Handler
from .identifiers import IdentifierCaster
from .protocol import CollectionProtocol, DatabaseProtocol
from .query import deep_get, is_equality_filter, upsert_seed
from .resolver import resolve_filter
from .types import (
    IDENTITY_FIELD,
    UPSERT_FLAGS,
    DeleteParams,
    ManagerDefaults,
    ReadParams,
    Selector,
    UpdateParams,
    WriteFlags,
)

logger = logging.getLogger(__name__)


async def _call_hook(fn: Callable, *args: Any) -> Any:
    """Call a sync or async hook and return its result."""
    result = fn(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


class DBManager:
    """
    Generic CRUD manager in front of a document store.

    Usage::

        manager = DBManager(collection="items")
        manager.init(db)              # pymongo AsyncDatabase or SqliteDatabase
        item_id = await manager.insert_one({"name": "a"})
        item = await manager.get_one(id=str(item_id))
    """

    def __init__(
        self,
        *,
        collection: Optional[str] = None,
        auto_insert: bool = False,
        flags: Optional[WriteFlags] = None,
        validate: Optional[Callable[[dict], Any]] = None,
        on_data: Optional[Callable[[dict], Any]] = None,
        on_delete_item: Optional[Callable[[dict], Any]] = None,
        on_ready: Optional[Callable[[dict], Any]] = None,
    ):
        """
        Args:
            collection: Default collection name
            auto_insert: Insert a document built from the filter when a read misses
            flags: Default write flags for update()
            validate: Default post-fetch hook (document → document, may raise)
            on_data: Default per-document transform for get_many()
            on_delete_item: Hook run after delete_one() commits
            on_ready: Called with ``{"db": db}`` by init()
        """
        self.defaults = ManagerDefaults(
            collection=collection,
            auto_insert=auto_insert,
            flags=flags,
            validate=validate,
            on_data=on_data,
            on_delete_item=on_delete_item,
            on_ready=on_ready,
        )
        self.events = ChangeNotifier()
        self._db: Optional[DatabaseProtocol] = None
        self._caster: Optional[IdentifierCaster] = None

    def init(
        self,
        db: DatabaseProtocol,
        caster: Union[IdentifierCaster, Callable[[str], Any], None] = None,
    ) -> None:
        """
        Bind the manager to a live store connection.

        Must be called before any store operation.

        Args:
            db: Database handing out collections via get_collection()
            caster: An IdentifierCaster, or a function turning a string into
                a native identifier (defaults to bson.ObjectId casting)

        Raises:
            TypeError: if caster is neither
        """
        if caster is None:
            caster = IdentifierCaster()
        elif not isinstance(caster, IdentifierCaster):
            if not callable(caster):
                raise TypeError(
                    f"caster must be an IdentifierCaster or a callable, got {type(caster).__name__}"
                )
            caster = IdentifierCaster(native=caster)
        self._db = db
        self._caster = caster
        logger.debug("DBManager bound to %r", db)
        if self.defaults.on_ready is not None:
            self.defaults.on_ready({"db": db})

    @property
    def is_ready(self) -> bool:
        return self._db is not None

    @property
    def db(self) -> DatabaseProtocol:
        """The bound store connection."""
        self._require_init()
        return self._db

    def _require_init(self) -> None:
        if self._db is None or self._caster is None:
            raise ConfigurationError("DBManager.init() must be called before using the store")

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def subscribe(self, handler: Handler) -> None:
        """Receive every item-updated notification of this manager."""
        self.events.subscribe(EventType.ITEM_UPDATED, handler)

    def unsubscribe(self, handler: Handler) -> None:
        self.events.unsubscribe(EventType.ITEM_UPDATED, handler)

    # -------------------------------------------------------------------------
    # Collections, identifiers, filters
    # -------------------------------------------------------------------------

    def collection(self, name: Optional[str] = None) -> CollectionProtocol:
        """Return a collection by name, falling back to the default collection."""
        self._require_init()
        name = name or self.defaults.collection
        if not name:
            raise ConfigurationError("No collection given and no default collection configured")
        return self._db.get_collection(name)

    def cast_id(self, value: Any) -> Any:
        self._require_init()
        return self._caster.cast(value)

    def cast_ids(self, values: Iterable[Any]) -> list[Any]:
        self._require_init()
        return self._caster.cast_many(values)

    def find_from_params(self, params: Selector) -> dict[str, Any]:
        """Build the store filter for ``params``."""
        self._require_init()
        return resolve_filter(params, self._caster)

    def _read_params(self, kwargs: dict) -> ReadParams:
        return self.defaults.merge(ReadParams(**kwargs))

    # -------------------------------------------------------------------------
    # Index and distinct
    # -------------------------------------------------------------------------

    async def create_index(self, fields: Any, *, collection: Optional[str] = None,
                           **options: Any) -> str:
        """Ensure an index exists. Returns the index name."""
        coll = self.collection(collection)
        with store_errors("create_index"):
            return await coll.create_index(fields, **options)

    async def distinct(
        self,
        field: str,
        *,
        find: Optional[Mapping[str, Any]] = None,
        id: Any = None,
        ids: Optional[list] = None,
        collection: Optional[str] = None,
        **options: Any,
    ) -> list:
        """Distinct values of ``field`` among the documents selected by find/id/ids."""
        params = self.defaults.merge(Selector(find=find, id=id, ids=ids, collection=collection))
        filter = self.find_from_params(params)
        coll = self.collection(params.collection)
        with store_errors("distinct"):
            return await coll.distinct(field, filter, **options)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_one(self, **kwargs: Any) -> Optional[dict]:
        """
        Retrieve a single document.

        Keyword arguments are those of ReadParams (find, id, ids, collection,
        auto_insert, validate).

        Returns:
            The (validated) document, or None when nothing matches and
            auto-insert is off

        Raises:
            InvalidIdentifier, StoreError, ValidationFailure, UnsupportedFilter
        """
        return await self._get_one(self._read_params(kwargs))

    async def _get_one(self, params: ReadParams) -> Optional[dict]:
        coll = self.collection(params.collection)
        filter = self.find_from_params(params)
        with store_errors("find_one"):
            item = await coll.find_one(filter)

        if item is None and params.auto_insert:
            item = await self._auto_insert(coll, params)

        if item is not None and params.validate is not None:
            item = await self._validate(params.validate, item)
        return item

    async def _auto_insert(self, coll: CollectionProtocol, params: ReadParams) -> Optional[dict]:
        """
        Persist a document built from the filter, then look it up again.

        The document holds the filter's equality predicates (dotted keys
        become nested fields). A filter with any other predicate, such as
        the ``$in`` produced by ``ids``, describes no single document and
        raises UnsupportedFilter before anything is written.
        """
        filter = self.find_from_params(params)
        if not is_equality_filter(filter):
            raise UnsupportedFilter(
                f"auto_insert needs plain equality predicates, got filter {filter!r}"
            )
        document = upsert_seed(filter)
        with store_errors("insert_one"):
            result = await coll.insert_one(document)
        logger.info("Auto-inserted %s into %s", result.inserted_id, getattr(coll, "name", "?"))

        filter = self.find_from_params(params)
        with store_errors("find_one"):
            return await coll.find_one(filter)

    async def _validate(self, validate: Callable, item: dict) -> Any:
        try:
            return await _call_hook(validate, item)
        except DBManagerError:
            raise
        except Exception as e:
            raise ValidationFailure(str(e)) from e

    async def get_many(self, **kwargs: Any) -> list[dict]:
        """
        Retrieve all matching documents, in stream order.

        ``sort`` and ``limit`` are folded into the cursor modifiers; every
        modifier is applied to the cursor by name. ``on_data`` transforms
        each document as it streams in.

        Raises:
            StoreError: if the stream fails; documents read so far are discarded
        """
        params = self._read_params(kwargs)
        coll = self.collection(params.collection)
        filter = self.find_from_params(params)

        with store_errors("find"):
            cursor = coll.find(filter)
            for name, arg in params.cursor_modifiers().items():
                cursor = getattr(cursor, name)(arg)

        items = []
        async for doc in self._stream(cursor):
            if params.on_data is not None:
                doc = await _call_hook(params.on_data, doc)
            items.append(doc)
        return items

    async def _stream(self, cursor):
        with store_errors("find"):
            async for doc in cursor:
                yield doc

    async def get_path(self, path: str, **kwargs: Any) -> Any:
        """
        Return the value at a dot-separated path of a single document.

        The path is walked token by token (numeric tokens index lists); it is
        never evaluated. A missing document or a missing step gives None.
        """
        item = await self.get_one(**kwargs)
        if item is None:
            return None
        return deep_get(item, path, None)

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def insert_one(self, payload: Mapping[str, Any], *,
                         collection: Optional[str] = None) -> Any:
        """Insert a document. Returns its identifier. ``payload`` is not modified."""
        coll = self.collection(collection)
        with store_errors("insert_one"):
            result = await coll.insert_one(dict(payload))
        return result.inserted_id

    async def insert_many(self, payloads: Iterable[Mapping[str, Any]], *,
                          collection: Optional[str] = None) -> Any:
        """Insert documents in bulk. Returns the store's result unchanged."""
        coll = self.collection(collection)
        documents = [dict(p) for p in payloads]
        with store_errors("insert_many"):
            return await coll.insert_many(documents)

    async def update(self, **kwargs: Any) -> Any:
        """
        Update a single document.

        Keyword arguments are those of UpdateParams (find, id, ids,
        collection, payload, set_fields, unset_fields, flags, auto_insert,
        validate).

        Without auto-insert the target must exist. The existence check and
        the write are two separate store calls: a document removed in
        between is not detected.

        After a successful write the document is fetched again and an
        item-updated event is published. A failing re-fetch is logged and
        only suppresses the event. Subscribers are awaited inline, before
        this call returns: a slow async subscriber delays the result, and a
        failing one is logged without affecting it. Subscribers that must
        not block should hand their work to a task of their own.

        Returns:
            The store's update result

        Raises:
            NotFound: if auto-insert is off and nothing matches (no write happens)
            InvalidIdentifier, StoreError, ValidationFailure
        """
        params = self.defaults.merge(UpdateParams(**kwargs))
        return await self._update(params)

    async def _update(self, params: UpdateParams) -> Any:
        if params.auto_insert:
            params = replace(params, flags=UPSERT_FLAGS)
        flags = params.flags or WriteFlags()

        coll = self.collection(params.collection)
        filter = self.find_from_params(params)

        if not params.auto_insert:
            existing = await self._get_one(params.as_read_params(auto_insert=False))
            if existing is None:
                raise NotFound("no item found")
            logger.debug("Existence check passed on %s; writing", getattr(coll, "name", coll))

        update = params.update_document()
        with store_errors("update_one"):
            result = await coll.update_one(filter, update, upsert=flags.upsert)

        await self._notify_updated(params)
        return result

    async def _notify_updated(self, params: UpdateParams) -> None:
        """Re-fetch the updated document and publish it. Never raises."""
        try:
            item = await self._get_one(params.as_read_params(auto_insert=False))
        except Exception as e:
            logger.warning("Re-fetch after update failed, no %s event: %s",
                           EventType.ITEM_UPDATED.value, e)
            return
        if item is not None:
            await self.events.publish(EventType.ITEM_UPDATED, item)

    async def set_path(self, path: str, value: Any, **kwargs: Any) -> Any:
        """Set a single (dotted) field with upsert flags, via update()."""
        kwargs.pop("set_fields", None)
        kwargs.pop("flags", None)
        params = self.defaults.merge(
            UpdateParams(set_fields={path: value}, flags=UPSERT_FLAGS, **kwargs)
        )
        return await self._update(params)

    async def delete_one(self, **kwargs: Any) -> Any:
        """
        Delete a single document.

        The deletion is committed first; the on_delete_item hook (if any) runs
        afterwards with ``{"_id": cast(id), "find": copy of find}``. A failing
        hook raises HookFailure even though the document is already gone.

        Returns:
            The store's delete result
        """
        params = self.defaults.merge(DeleteParams(**kwargs))
        coll = self.collection(params.collection)
        filter = self.find_from_params(params)

        with store_errors("delete_one"):
            result = await coll.delete_one(filter)

        if params.on_delete_item is not None:
            info = {
                IDENTITY_FIELD: self.cast_id(params.id),
                "find": dict(params.find or {}),
            }
            try:
                await _call_hook(params.on_delete_item, info)
            except DBManagerError:
                raise
            except Exception as e:
                raise HookFailure(f"on_delete_item failed: {e}") from e
        return result
