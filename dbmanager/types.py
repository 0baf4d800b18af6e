"""
Per-operation parameter types for dbmanager.

Each operation takes its own small dataclass instead of one loosely-typed
parameter bag. Values are checked in ``__post_init__`` so that a malformed
call fails before any store work starts.

A field left as ``None`` inherits the manager's instance default (see
ManagerDefaults.merge).
"""

from collections.abc import Mapping
from dataclasses import dataclass, fields, replace
from typing import Any, Callable, Optional, Sequence


# Name of the identity field of every stored document
IDENTITY_FIELD = "_id"

# Cursor shaping methods that may be applied by name in get_many(); each is
# declared on protocol.CursorProtocol
CURSOR_MODIFIERS = frozenset({
    "sort", "limit", "skip", "batch_size", "max_time_ms", "hint", "comment", "collation",
})


@dataclass(frozen=True)
class WriteFlags:
    """Write behaviour for update_one."""
    upsert: bool = False
    safe: bool = True


# Flags forced by auto-insert and set_path
UPSERT_FLAGS = WriteFlags(upsert=True, safe=True)


def _check_callable(name: str, value: Any) -> None:
    if value is not None and not callable(value):
        raise TypeError(f"{name} must be callable, got {type(value).__name__}")


@dataclass
class Selector:
    """Identifies the target documents of an operation."""
    find: Optional[Mapping[str, Any]] = None
    id: Any = None
    ids: Optional[Sequence[Any]] = None
    collection: Optional[str] = None

    def __post_init__(self):
        if self.find is not None and not isinstance(self.find, Mapping):
            raise TypeError(f"find must be a mapping, got {type(self.find).__name__}")
        if self.ids is not None:
            if isinstance(self.ids, (str, bytes)) or not isinstance(self.ids, Sequence):
                raise TypeError(f"ids must be a list or tuple, got {type(self.ids).__name__}")
        if self.collection is not None and not isinstance(self.collection, str):
            raise TypeError(f"collection must be a string, got {type(self.collection).__name__}")


@dataclass
class ReadParams(Selector):
    """Parameters for get_one, get_many and get_path."""
    sort: Any = None
    limit: Optional[int] = None
    modifiers: Optional[Mapping[str, Any]] = None
    auto_insert: Optional[bool] = None
    validate: Optional[Callable[[dict], Any]] = None
    on_data: Optional[Callable[[dict], Any]] = None

    def __post_init__(self):
        super().__post_init__()
        if self.limit is not None and (isinstance(self.limit, bool) or not isinstance(self.limit, int)):
            raise TypeError(f"limit must be an int, got {type(self.limit).__name__}")
        if self.modifiers is not None:
            unknown = set(self.modifiers) - CURSOR_MODIFIERS
            if unknown:
                raise ValueError(f"Unknown cursor modifiers: {sorted(unknown)}")
        _check_callable("validate", self.validate)
        _check_callable("on_data", self.on_data)

    def cursor_modifiers(self) -> dict[str, Any]:
        """Modifiers with sort/limit folded in, in application order."""
        modifiers = dict(self.modifiers or {})
        if self.sort is not None:
            modifiers["sort"] = _normalize_sort(self.sort)
        if self.limit is not None:
            modifiers["limit"] = self.limit
        return modifiers


@dataclass
class UpdateParams(Selector):
    """Parameters for update and set_path."""
    payload: Optional[Mapping[str, Any]] = None
    set_fields: Optional[Mapping[str, Any]] = None
    unset_fields: Any = None
    flags: Optional[WriteFlags] = None
    auto_insert: Optional[bool] = None
    validate: Optional[Callable[[dict], Any]] = None

    def __post_init__(self):
        super().__post_init__()
        for name in ("payload", "set_fields"):
            value = getattr(self, name)
            if value is not None and not isinstance(value, Mapping):
                raise TypeError(f"{name} must be a mapping, got {type(value).__name__}")
        if self.flags is not None and not isinstance(self.flags, WriteFlags):
            raise TypeError(f"flags must be WriteFlags, got {type(self.flags).__name__}")
        _check_callable("validate", self.validate)

    def as_read_params(self, auto_insert: Optional[bool] = None) -> ReadParams:
        """The same selection, as used for existence checks and re-fetches."""
        return ReadParams(
            find=self.find,
            id=self.id,
            ids=self.ids,
            collection=self.collection,
            auto_insert=self.auto_insert if auto_insert is None else auto_insert,
            validate=self.validate,
        )

    def update_document(self) -> dict[str, Any]:
        """
        Build the write document for update_one.

        With upsert the payload seeds ``$set``; explicit set_fields always
        win over payload fields; unset_fields become ``$unset``.
        """
        update: dict[str, Any] = {}
        flags = self.flags or WriteFlags()
        if flags.upsert:
            update["$set"] = dict(self.payload or {})
        if self.set_fields is not None:
            update["$set"] = {**update.get("$set", {}), **self.set_fields}
        if self.unset_fields is not None:
            update["$unset"] = _normalize_unset(self.unset_fields)
        return update


@dataclass
class DeleteParams(Selector):
    """Parameters for delete_one."""
    on_delete_item: Optional[Callable[[dict], Any]] = None

    def __post_init__(self):
        super().__post_init__()
        _check_callable("on_delete_item", self.on_delete_item)


@dataclass(frozen=True)
class ManagerDefaults:
    """Instance-level defaults of a DBManager. Read-only once constructed."""
    collection: Optional[str] = None
    auto_insert: bool = False
    flags: Optional[WriteFlags] = None
    validate: Optional[Callable[[dict], Any]] = None
    on_data: Optional[Callable[[dict], Any]] = None
    on_delete_item: Optional[Callable[[dict], Any]] = None
    on_ready: Optional[Callable[[dict], Any]] = None

    def merge(self, params):
        """Return a copy of params with unset fields filled from these defaults."""
        own = {f.name for f in fields(self)}
        filled = {}
        for f in fields(params):
            if f.name in own and getattr(params, f.name) is None:
                default = getattr(self, f.name)
                if default is not None:
                    filled[f.name] = default
        return replace(params, **filled)


def _normalize_sort(sort: Any) -> Any:
    """Turn a ``{field: direction}`` mapping into the list-of-pairs form cursors accept."""
    if isinstance(sort, Mapping):
        return list(sort.items())
    if isinstance(sort, str):
        return [(sort, 1)]
    return sort


def _normalize_unset(unset: Any) -> dict[str, Any]:
    if isinstance(unset, Mapping):
        return dict(unset)
    if isinstance(unset, str):
        return {unset: ""}
    return {name: "" for name in unset}
