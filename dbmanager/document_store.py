"""
Local document store using SQLite.

Implements the async store contract (protocol.CollectionProtocol) on top of
a single SQLite file, so dbmanager works without a MongoDB server and tests
run against a real store.

Documents are stored as relaxed extended JSON (bson.json_util), which keeps
ObjectId and datetime values intact across a round trip. Filtering, sorting
and update operators are evaluated in Python by dbmanager.query.

All SQLite work runs in a worker thread (asyncio.to_thread) and is
serialized by a lock, so one store can be shared by concurrent coroutines.
"""

import asyncio
import json
import logging
import sqlite3
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Optional

from bson import ObjectId, json_util

from .query import (
    MISSING,
    apply_update,
    deep_get,
    dollar_key_path,
    is_operator_expression,
    match_query,
    sort_documents,
    upsert_seed,
    validate_update,
)
from .types import IDENTITY_FIELD

logger = logging.getLogger(__name__)


class DocumentStoreError(Exception):
    """Base class for local store errors."""


class DuplicateKeyError(DocumentStoreError):
    """Raised when a write violates _id or a unique index."""


class InvalidOperation(DocumentStoreError):
    """Raised when a cursor is reshaped after iteration started."""


class InvalidDocument(DocumentStoreError):
    """Raised when a document to insert has a field name starting with '$'."""


# -----------------------------------------------------------------------------
# Results (attribute names follow pymongo)
# -----------------------------------------------------------------------------

@dataclass
class InsertOneResult:
    inserted_id: Any
    acknowledged: bool = True


@dataclass
class InsertManyResult:
    inserted_ids: list
    acknowledged: bool = True


@dataclass
class UpdateResult:
    matched_count: int
    modified_count: int
    upserted_id: Any = None
    acknowledged: bool = True


@dataclass
class DeleteResult:
    deleted_count: int
    acknowledged: bool = True


@dataclass
class IndexInfo:
    """A registered index: ordered (field, direction) pairs."""
    name: str
    keys: list[tuple[str, int]]
    unique: bool = False


def _encode(doc: Mapping[str, Any]) -> str:
    return json_util.dumps(doc)


def _decode(body: str) -> dict:
    return json_util.loads(body)


def _doc_key(doc_id: Any) -> str:
    """Stable text key for an _id value (ObjectId and str never collide)."""
    return json_util.dumps(doc_id)


def _index_keys(keys: Any) -> list[tuple[str, int]]:
    if isinstance(keys, str):
        return [(keys, 1)]
    if isinstance(keys, Mapping):
        return [(k, v) for k, v in keys.items()]
    return [(k, v) for k, v in keys]


class SqliteDatabase:
    """
    SQLite-backed database handing out collections by name.

    Mirrors the parts of pymongo's AsyncDatabase used by DBManager.
    """

    def __init__(self, store_path: Path):
        """
        Args:
            store_path: Path to SQLite database file
        """
        self._db_path = Path(store_path)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._collections: dict[str, "SqliteCollection"] = {}
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA busy_timeout=5000")

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS documents (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                collection TEXT NOT NULL,
                doc_id TEXT NOT NULL,
                body TEXT NOT NULL,
                UNIQUE (collection, doc_id)
            )
        """)

        # Index for collection scans in insertion order
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_documents_collection
            ON documents(collection, seq)
        """)

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS indexes (
                collection TEXT NOT NULL,
                name TEXT NOT NULL,
                keys_json TEXT NOT NULL,
                is_unique INTEGER NOT NULL DEFAULT 0,
                PRIMARY KEY (collection, name)
            )
        """)

        self._conn.commit()

    @property
    def path(self) -> Path:
        return self._db_path

    def get_collection(self, name: str) -> "SqliteCollection":
        """Return the collection called ``name`` (created lazily on first write)."""
        if not name:
            raise ValueError("Collection name must be a non-empty string")
        if name not in self._collections:
            self._collections[name] = SqliteCollection(self, name)
        return self._collections[name]

    def __getitem__(self, name: str) -> "SqliteCollection":
        return self.get_collection(name)

    async def list_collection_names(self) -> list[str]:
        """List all collection names that hold at least one document."""
        def _list():
            with self._lock:
                cursor = self._conn.execute("""
                    SELECT DISTINCT collection FROM documents
                    ORDER BY collection
                """)
                return [row["collection"] for row in cursor]
        return await asyncio.to_thread(_list)

    async def drop_collection(self, name: str) -> int:
        """Delete all documents and indexes of a collection. Returns documents deleted."""
        def _drop():
            with self._lock:
                cursor = self._conn.execute(
                    "DELETE FROM documents WHERE collection = ?", (name,))
                self._conn.execute("DELETE FROM indexes WHERE collection = ?", (name,))
                self._conn.commit()
                return cursor.rowcount
        return await asyncio.to_thread(_drop)

    # -------------------------------------------------------------------------
    # Internal helpers (caller holds the lock)
    # -------------------------------------------------------------------------

    def _rows(self, collection: str, query: Mapping[str, Any]) -> Iterator[tuple[int, dict]]:
        """Yield (seq, document) for matching documents in insertion order."""
        doc_id = query.get(IDENTITY_FIELD, MISSING)
        if doc_id is not MISSING and not is_operator_expression(doc_id):
            # Direct lookup by _id
            cursor = self._conn.execute("""
                SELECT seq, body FROM documents
                WHERE collection = ? AND doc_id = ?
            """, (collection, _doc_key(doc_id)))
        else:
            cursor = self._conn.execute("""
                SELECT seq, body FROM documents
                WHERE collection = ?
                ORDER BY seq
            """, (collection,))
        for row in cursor.fetchall():
            doc = _decode(row["body"])
            if match_query(doc, query):
                yield row["seq"], doc

    def _indexes(self, collection: str) -> list[IndexInfo]:
        cursor = self._conn.execute("""
            SELECT name, keys_json, is_unique FROM indexes
            WHERE collection = ?
        """, (collection,))
        return [
            IndexInfo(
                name=row["name"],
                keys=[tuple(k) for k in json.loads(row["keys_json"])],
                unique=bool(row["is_unique"]),
            )
            for row in cursor
        ]

    def _check_unique(self, collection: str, doc: dict, exclude_seq: Optional[int] = None) -> None:
        """Raise DuplicateKeyError if ``doc`` collides with another document on a unique index."""
        unique = [ix for ix in self._indexes(collection) if ix.unique]
        if not unique:
            return
        cursor = self._conn.execute("""
            SELECT seq, body FROM documents WHERE collection = ?
        """, (collection,))
        others = [(row["seq"], _decode(row["body"])) for row in cursor if row["seq"] != exclude_seq]
        for ix in unique:
            values = tuple(deep_get(doc, k, None) for k, _ in ix.keys)
            for _, other in others:
                if tuple(deep_get(other, k, None) for k, _ in ix.keys) == values:
                    raise DuplicateKeyError(
                        f"E11000 duplicate key error collection: {collection} "
                        f"index: {ix.name} dup key: {values!r}"
                    )

    def _insert(self, collection: str, doc: dict) -> Any:
        bad_key = dollar_key_path(doc)
        if bad_key is not None:
            raise InvalidDocument(f"Field names must not start with '$': {bad_key}")
        if IDENTITY_FIELD not in doc:
            doc[IDENTITY_FIELD] = ObjectId()
        self._check_unique(collection, doc)
        try:
            self._conn.execute("""
                INSERT INTO documents (collection, doc_id, body)
                VALUES (?, ?, ?)
            """, (collection, _doc_key(doc[IDENTITY_FIELD]), _encode(doc)))
        except sqlite3.IntegrityError as e:
            raise DuplicateKeyError(
                f"E11000 duplicate key error collection: {collection} "
                f"index: _id_ dup key: {doc[IDENTITY_FIELD]!r}"
            ) from e
        return doc[IDENTITY_FIELD]

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class SqliteCollection:
    """One named collection inside a SqliteDatabase."""

    def __init__(self, database: SqliteDatabase, name: str):
        self._db = database
        self.name = name

    def __repr__(self) -> str:
        return f"SqliteCollection({self.name!r})"

    async def _run(self, fn, *args):
        def _locked():
            with self._db._lock:
                return fn(*args)
        return await asyncio.to_thread(_locked)

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    async def find_one(self, filter: Optional[Mapping[str, Any]] = None) -> Optional[dict]:
        """Return the first matching document in insertion order, or None."""
        def _find_one(query):
            for _, doc in self._db._rows(self.name, query):
                return doc
            return None
        return await self._run(_find_one, dict(filter or {}))

    def find(self, filter: Optional[Mapping[str, Any]] = None) -> "SqliteCursor":
        """Return a lazy cursor over matching documents. No I/O until iterated."""
        return SqliteCursor(self, dict(filter or {}))

    async def count_documents(self, filter: Optional[Mapping[str, Any]] = None) -> int:
        def _count(query):
            return sum(1 for _ in self._db._rows(self.name, query))
        return await self._run(_count, dict(filter or {}))

    async def distinct(
        self,
        key: str,
        filter: Optional[Mapping[str, Any]] = None,
        **kwargs: Any,
    ) -> list:
        """
        Distinct values of ``key`` among matching documents.

        Array values contribute their elements, like MongoDB.
        """
        def _distinct(query):
            out: list = []
            for _, doc in self._db._rows(self.name, query):
                value = deep_get(doc, key, MISSING)
                if value is MISSING:
                    continue
                for v in (value if isinstance(value, list) else [value]):
                    if v not in out:
                        out.append(v)
            return out
        return await self._run(_distinct, dict(filter or {}))

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    async def insert_one(self, document: dict) -> InsertOneResult:
        """
        Insert a document, generating an ObjectId ``_id`` when missing.

        Like pymongo, the generated ``_id`` is also set on ``document``.
        """
        def _insert_one():
            doc_id = self._db._insert(self.name, document)
            self._db._conn.commit()
            return InsertOneResult(inserted_id=doc_id)
        return await self._run(_insert_one)

    async def insert_many(self, documents: list[dict]) -> InsertManyResult:
        """Insert documents in order, all or nothing."""
        def _insert_many():
            try:
                ids = [self._db._insert(self.name, doc) for doc in documents]
            except Exception:
                self._db._conn.rollback()
                raise
            self._db._conn.commit()
            return InsertManyResult(inserted_ids=ids)
        return await self._run(_insert_many)

    async def update_one(
        self,
        filter: Mapping[str, Any],
        update: Mapping[str, Any],
        upsert: bool = False,
    ) -> UpdateResult:
        """
        Apply update operators to the first matching document.

        With ``upsert`` and no match, a new document is seeded from the
        filter's equality predicates and the update is applied to it.
        """
        validate_update(update)

        def _update_one(query):
            for seq, doc in self._db._rows(self.name, query):
                new_doc = apply_update(doc, update)
                if new_doc == doc:
                    return UpdateResult(matched_count=1, modified_count=0)
                self._db._check_unique(self.name, new_doc, exclude_seq=seq)
                self._db._conn.execute("""
                    UPDATE documents SET body = ? WHERE seq = ?
                """, (_encode(new_doc), seq))
                self._db._conn.commit()
                return UpdateResult(matched_count=1, modified_count=1)

            if not upsert:
                return UpdateResult(matched_count=0, modified_count=0)

            new_doc = apply_update(upsert_seed(query), update, is_upsert=True)
            doc_id = self._db._insert(self.name, new_doc)
            self._db._conn.commit()
            return UpdateResult(matched_count=0, modified_count=0, upserted_id=doc_id)

        return await self._run(_update_one, dict(filter))

    async def delete_one(self, filter: Mapping[str, Any]) -> DeleteResult:
        """Delete the first matching document."""
        def _delete_one(query):
            for seq, _ in self._db._rows(self.name, query):
                self._db._conn.execute("DELETE FROM documents WHERE seq = ?", (seq,))
                self._db._conn.commit()
                return DeleteResult(deleted_count=1)
            return DeleteResult(deleted_count=0)
        return await self._run(_delete_one, dict(filter))

    # -------------------------------------------------------------------------
    # Indexes
    # -------------------------------------------------------------------------

    async def create_index(self, keys: Any, unique: bool = False, name: Optional[str] = None,
                           **kwargs: Any) -> str:
        """
        Register an index. Creating an existing index is a no-op.

        Unique indexes are checked against existing documents and enforced on
        later writes. Other options are accepted and ignored.

        Returns:
            The index name, e.g. ``"email_1"``
        """
        pairs = _index_keys(keys)
        if not pairs:
            raise ValueError("create_index needs at least one key")
        index_name = name or "_".join(f"{k}_{d}" for k, d in pairs)

        def _create():
            existing = {ix.name for ix in self._db._indexes(self.name)}
            if index_name in existing:
                return index_name
            if unique:
                seen = set()
                for _, doc in self._db._rows(self.name, {}):
                    values = _doc_key([deep_get(doc, k, None) for k, _ in pairs])
                    if values in seen:
                        raise DuplicateKeyError(
                            f"E11000 duplicate key error collection: {self.name} "
                            f"index: {index_name}"
                        )
                    seen.add(values)
            self._db._conn.execute("""
                INSERT INTO indexes (collection, name, keys_json, is_unique)
                VALUES (?, ?, ?, ?)
            """, (self.name, index_name, json.dumps(pairs), int(unique)))
            self._db._conn.commit()
            logger.debug("Created index %s on %s", index_name, self.name)
            return index_name

        return await self._run(_create)

    async def index_information(self) -> dict[str, dict]:
        def _info():
            info = {"_id_": {"key": [(IDENTITY_FIELD, 1)]}}
            for ix in self._db._indexes(self.name):
                info[ix.name] = {"key": ix.keys, "unique": ix.unique}
            return info
        return await self._run(_info)


@dataclass
class _CursorSpec:
    sort: list[tuple[str, int]] = field(default_factory=list)
    skip: int = 0
    limit: int = 0
    # batch_size, max_time_ms, hint, comment, collation: accepted, no local effect
    options: dict[str, Any] = field(default_factory=dict)


class SqliteCursor:
    """
    Single-pass async cursor.

    Shaping methods (sort, skip, limit and the pymongo tuning options) return
    the cursor and must be called before iteration starts. The query runs on
    first iteration.
    """

    def __init__(self, collection: SqliteCollection, query: dict):
        self._collection = collection
        self._query = query
        self._spec = _CursorSpec()
        self._started = False

    def _check_not_started(self) -> None:
        if self._started:
            raise InvalidOperation("cannot set options after executing query")

    def sort(self, key_or_list: Any, direction: Optional[int] = None) -> "SqliteCursor":
        self._check_not_started()
        if isinstance(key_or_list, str):
            self._spec.sort = [(key_or_list, 1 if direction is None else direction)]
        else:
            self._spec.sort = _index_keys(key_or_list)
        return self

    def skip(self, skip: int) -> "SqliteCursor":
        self._check_not_started()
        if skip < 0:
            raise ValueError("skip must be >= 0")
        self._spec.skip = skip
        return self

    def limit(self, limit: int) -> "SqliteCursor":
        self._check_not_started()
        # A negative limit means "single batch" in MongoDB; same result here
        self._spec.limit = abs(limit)
        return self

    def _option(self, name: str, value: Any) -> "SqliteCursor":
        self._check_not_started()
        self._spec.options[name] = value
        return self

    def batch_size(self, batch_size: int) -> "SqliteCursor":
        if not isinstance(batch_size, int) or batch_size < 0:
            raise ValueError("batch_size must be a non-negative int")
        return self._option("batch_size", batch_size)

    def max_time_ms(self, max_time_ms: Optional[int]) -> "SqliteCursor":
        if max_time_ms is not None and not isinstance(max_time_ms, int):
            raise TypeError("max_time_ms must be an int or None")
        return self._option("max_time_ms", max_time_ms)

    def hint(self, index: Any) -> "SqliteCursor":
        return self._option("hint", index)

    def comment(self, comment: Any) -> "SqliteCursor":
        return self._option("comment", comment)

    def collation(self, collation: Optional[Mapping[str, Any]]) -> "SqliteCursor":
        return self._option("collation", collation)

    def _fetch(self) -> list[dict]:
        docs = [doc for _, doc in self._collection._db._rows(self._collection.name, self._query)]
        if self._spec.sort:
            docs = sort_documents(docs, self._spec.sort)
        if self._spec.skip:
            docs = docs[self._spec.skip:]
        if self._spec.limit:
            docs = docs[:self._spec.limit]
        return docs

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        if self._started:
            return
        self._started = True
        docs = await self._collection._run(self._fetch)
        for doc in docs:
            yield doc

    async def to_list(self, length: Optional[int] = None) -> list[dict]:
        out = []
        async for doc in self:
            out.append(doc)
            if length is not None and len(out) >= length:
                break
        return out
