"""
Shared pytest fixtures for dbmanager tests.

Tests run against the real local SQLite store in a temporary directory.
Failure injection wraps a real collection and delegates everything else.
"""

import pytest

from dbmanager import DBManager, SqliteDatabase
from dbmanager.types import CURSOR_MODIFIERS


class FailingCollection:
    """Collection wrapper that raises from selected methods on demand."""

    def __init__(self, real_collection):
        self._real = real_collection
        self.fail = set()
        self.calls = []

    def __getattr__(self, name):
        return getattr(self._real, name)

    def _check(self, method):
        self.calls.append(method)
        if method in self.fail:
            raise RuntimeError(f"simulated {method} failure")

    async def find_one(self, *args, **kwargs):
        self._check("find_one")
        return await self._real.find_one(*args, **kwargs)

    def find(self, *args, **kwargs):
        self._check("find")
        cursor = self._real.find(*args, **kwargs)
        if "stream" in self.fail:
            return FailingCursor(cursor, fail_after=1)
        return cursor

    async def insert_one(self, *args, **kwargs):
        self._check("insert_one")
        return await self._real.insert_one(*args, **kwargs)

    async def update_one(self, *args, **kwargs):
        self._check("update_one")
        return await self._real.update_one(*args, **kwargs)

    async def delete_one(self, *args, **kwargs):
        self._check("delete_one")
        return await self._real.delete_one(*args, **kwargs)


class FailingCursor:
    """Cursor wrapper that yields ``fail_after`` documents, then raises."""

    def __init__(self, real_cursor, fail_after: int = 0):
        self._real = real_cursor
        self._fail_after = fail_after

    def __getattr__(self, name):
        attr = getattr(self._real, name)
        if name in CURSOR_MODIFIERS:
            def _chain(*args, **kwargs):
                attr(*args, **kwargs)
                return self
            return _chain
        return attr

    async def _iterate(self):
        count = 0
        async for doc in self._real:
            if count >= self._fail_after:
                raise ConnectionError("simulated stream failure")
            count += 1
            yield doc

    def __aiter__(self):
        return self._iterate()


class FailingDatabase:
    """Database that hands out one FailingCollection per name."""

    def __init__(self, real_db):
        self._real = real_db
        self.collections = {}

    def __getattr__(self, name):
        return getattr(self._real, name)

    def get_collection(self, name):
        if name not in self.collections:
            self.collections[name] = FailingCollection(self._real.get_collection(name))
        return self.collections[name]


@pytest.fixture
def db(tmp_path):
    """A fresh local store."""
    database = SqliteDatabase(tmp_path / "documents.db")
    yield database
    database.close()


@pytest.fixture
def manager(db):
    """A DBManager bound to the local store with default collection 'items'."""
    m = DBManager(collection="items")
    m.init(db)
    return m


@pytest.fixture
def failing_db(db):
    return FailingDatabase(db)


@pytest.fixture
def failing_manager(failing_db):
    """A DBManager whose 'items' collection can be told to fail."""
    m = DBManager(collection="items")
    m.init(failing_db)
    return m


@pytest.fixture
def failing_items(failing_manager, failing_db):
    return failing_db.get_collection("items")
