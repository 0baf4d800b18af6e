"""
Protocol definitions for the document store consumed by DBManager.

The contract covers single and multi document reads, the
basic write primitives, index creation and distinct. It is satisfied by:
- pymongo's AsyncDatabase / AsyncCollection (MongoDB)
- SqliteDatabase / SqliteCollection (local SQLite store)
"""

from typing import Any, AsyncIterator, Mapping, Optional, Protocol, runtime_checkable


@runtime_checkable
class CursorProtocol(Protocol):
    """
    A lazy, single-pass stream of documents.

    Shaping methods return the cursor itself so they can be chained and
    applied dynamically by name.
    """

    def sort(self, key_or_list: Any, direction: Optional[int] = None) -> "CursorProtocol": ...

    def limit(self, limit: int) -> "CursorProtocol": ...

    def skip(self, skip: int) -> "CursorProtocol": ...

    def batch_size(self, batch_size: int) -> "CursorProtocol": ...

    def max_time_ms(self, max_time_ms: Optional[int]) -> "CursorProtocol": ...

    def hint(self, index: Any) -> "CursorProtocol": ...

    def comment(self, comment: Any) -> "CursorProtocol": ...

    def collation(self, collation: Optional[Mapping[str, Any]]) -> "CursorProtocol": ...

    def __aiter__(self) -> AsyncIterator[dict]: ...


@runtime_checkable
class CollectionProtocol(Protocol):
    """A named collection of documents."""

    # -- Reads --

    async def find_one(self, filter: Optional[Mapping[str, Any]] = None) -> Optional[dict]: ...

    def find(self, filter: Optional[Mapping[str, Any]] = None) -> CursorProtocol: ...

    async def distinct(
        self,
        key: str,
        filter: Optional[Mapping[str, Any]] = None,
        **kwargs: Any,
    ) -> list: ...

    # -- Writes --

    async def insert_one(self, document: dict) -> Any: ...

    async def insert_many(self, documents: list[dict]) -> Any: ...

    async def update_one(
        self,
        filter: Mapping[str, Any],
        update: Mapping[str, Any],
        upsert: bool = False,
    ) -> Any: ...

    async def delete_one(self, filter: Mapping[str, Any]) -> Any: ...

    # -- Indexes --

    async def create_index(self, keys: Any, **kwargs: Any) -> str: ...


@runtime_checkable
class DatabaseProtocol(Protocol):
    """A live store connection that hands out collections by name."""

    def get_collection(self, name: str) -> CollectionProtocol: ...
