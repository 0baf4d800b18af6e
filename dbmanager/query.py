"""
In-process query and update engine for the local document store.

Implements the subset of MongoDB filter and update semantics the local
store needs: comparison and logical operators, dotted field paths, array
membership for equality, and the common field update operators.
"""

import copy
import re
from collections.abc import Mapping
from typing import Any, Iterable, Optional

from .types import IDENTITY_FIELD


class QueryError(Exception):
    """Raised when a filter uses unsupported syntax."""


class UpdateError(Exception):
    """Raised when an update document is invalid."""


# Marker for a path that does not exist (distinct from an explicit None)
MISSING = object()

COMPARATORS = frozenset({
    "$eq", "$ne", "$gt", "$gte", "$lt", "$lte",
    "$in", "$nin", "$exists", "$regex", "$options", "$size", "$all",
})
LOGICAL = frozenset({"$and", "$or", "$nor"})
UPDATE_OPERATORS = frozenset({"$set", "$unset", "$inc", "$push", "$setOnInsert"})


# -----------------------------------------------------------------------------
# Field paths
# -----------------------------------------------------------------------------

def deep_get(doc: Any, dotted_key: str, default: Any = None) -> Any:
    """
    Walk a dot-separated path through nested mappings and lists.

    Each token is a literal field name; a numeric token indexes a list.
    Returns ``default`` as soon as a step is missing.
    """
    cur = doc
    for part in dotted_key.split("."):
        if isinstance(cur, Mapping):
            if part not in cur:
                return default
            cur = cur[part]
        elif isinstance(cur, list) and part.isdigit():
            index = int(part)
            if index >= len(cur):
                return default
            cur = cur[index]
        else:
            return default
    return cur


def deep_set(doc: dict, dotted_key: str, value: Any) -> None:
    parts = dotted_key.split(".")
    cur = doc
    for p in parts[:-1]:
        if isinstance(cur, list):
            cur = cur[_list_index(cur, p, dotted_key)]
            continue
        if p not in cur or not isinstance(cur[p], (dict, list)):
            cur[p] = {}
        cur = cur[p]
    last = parts[-1]
    if isinstance(cur, list):
        cur[_list_index(cur, last, dotted_key)] = value
    else:
        cur[last] = value


def _list_index(arr: list, part: str, dotted_key: str) -> int:
    if not part.isdigit() or int(part) >= len(arr):
        raise UpdateError(f"Cannot create field '{part}' in array path: {dotted_key}")
    return int(part)


def deep_unset(doc: dict, dotted_key: str) -> None:
    parts = dotted_key.split(".")
    cur = doc
    for p in parts[:-1]:
        if p not in cur or not isinstance(cur[p], dict):
            return
        cur = cur[p]
    cur.pop(parts[-1], None)


# -----------------------------------------------------------------------------
# Matching
# -----------------------------------------------------------------------------

def match_query(doc: Mapping[str, Any], query: Mapping[str, Any]) -> bool:
    """True if ``doc`` satisfies every clause of ``query``."""
    if not isinstance(query, Mapping):
        raise QueryError("Query must be a mapping.")
    for key, cond in query.items():
        if key in LOGICAL:
            if not _eval_logical(doc, key, cond):
                return False
        elif key.startswith("$"):
            raise QueryError(f"Unsupported top-level operator: {key}")
        elif not _eval_field(doc, key, cond):
            return False
    return True


def _eval_logical(doc, op: str, clauses) -> bool:
    if not isinstance(clauses, list) or not clauses:
        raise QueryError(f"{op} requires a non-empty list of clauses.")
    results = (match_query(doc, clause) for clause in clauses)
    if op == "$and":
        return all(results)
    if op == "$or":
        return any(results)
    return not any(results)


def is_operator_expression(cond: Any) -> bool:
    return isinstance(cond, Mapping) and bool(cond) and all(
        isinstance(k, str) and k.startswith("$") for k in cond
    )


def _eval_field(doc, dotted_key: str, cond) -> bool:
    value = deep_get(doc, dotted_key, MISSING)
    if is_operator_expression(cond):
        for op, arg in cond.items():
            if op not in COMPARATORS:
                raise QueryError(f"Unsupported operator: {op}")
            if op == "$options":
                continue
            if op == "$regex":
                arg = (arg, cond.get("$options", ""))
            if not _eval_op(value, op, arg):
                return False
        return True
    return _equals(value, cond)


def _equals(value, expected) -> bool:
    """Equality with array membership: ``{"tags": "a"}`` matches ``["a", "b"]``."""
    if value is MISSING:
        return expected is None
    if value == expected:
        return True
    return isinstance(value, list) and not isinstance(expected, list) and expected in value


def _candidates(value) -> list:
    if value is MISSING:
        return []
    if isinstance(value, list):
        return [value, *value]
    return [value]


def _compare(value, op: str, arg) -> bool:
    for candidate in _candidates(value):
        if candidate is None:
            continue
        try:
            if op == "$gt" and candidate > arg:
                return True
            if op == "$gte" and candidate >= arg:
                return True
            if op == "$lt" and candidate < arg:
                return True
            if op == "$lte" and candidate <= arg:
                return True
        except TypeError:
            # Values of different types never compare
            continue
    return False


def _eval_op(value, op: str, arg) -> bool:
    if op == "$eq":
        return _equals(value, arg)
    if op == "$ne":
        return not _equals(value, arg)
    if op in ("$gt", "$gte", "$lt", "$lte"):
        return _compare(value, op, arg)
    if op == "$in":
        if not isinstance(arg, (list, tuple)):
            raise QueryError("$in needs an array")
        return any(_equals(value, a) for a in arg)
    if op == "$nin":
        if not isinstance(arg, (list, tuple)):
            raise QueryError("$nin needs an array")
        return not any(_equals(value, a) for a in arg)
    if op == "$exists":
        return (value is not MISSING) == bool(arg)
    if op == "$regex":
        pattern, options = arg
        if not isinstance(value, str):
            return False
        return re.search(pattern, value, _regex_flags(options)) is not None
    if op == "$size":
        return isinstance(value, list) and len(value) == arg
    if op == "$all":
        return isinstance(value, list) and all(item in value for item in arg)
    return False


def _regex_flags(options: str) -> int:
    flags = 0
    if "i" in options:
        flags |= re.IGNORECASE
    if "m" in options:
        flags |= re.MULTILINE
    if "s" in options:
        flags |= re.DOTALL
    return flags


# -----------------------------------------------------------------------------
# Sorting
# -----------------------------------------------------------------------------

def sort_documents(docs: list[dict], spec: Iterable[tuple[str, int]]) -> list[dict]:
    """Stable multi-key sort. Missing and None values sort first ascending."""
    for key, direction in reversed(list(spec)):
        docs.sort(key=lambda d: _sort_key(deep_get(d, key, None)), reverse=direction < 0)
    return docs


def _sort_key(value):
    if value is None:
        return (0, 0)
    if isinstance(value, bool):
        return (3, value)
    if isinstance(value, (int, float)):
        return (1, value)
    if isinstance(value, str):
        return (2, value)
    return (4, str(value))


# -----------------------------------------------------------------------------
# Updates
# -----------------------------------------------------------------------------

def validate_update(update: Mapping[str, Any]) -> None:
    if not isinstance(update, Mapping) or not update:
        raise UpdateError("Update document must be a non-empty mapping of operators.")
    for op in update:
        if op not in UPDATE_OPERATORS:
            raise UpdateError(f"Unsupported update operator: {op}")


def apply_update(doc: dict, update: Mapping[str, Any], is_upsert: bool = False) -> dict:
    """
    Return a new document with the update operators applied.

    Raises:
        UpdateError: on unknown operators, type mismatches, or an attempt to
            change ``_id`` of an existing document
    """
    validate_update(update)
    new_doc = copy.deepcopy(doc)
    for op, changes in update.items():
        if op == "$set":
            for k, v in changes.items():
                deep_set(new_doc, k, copy.deepcopy(v))
        elif op == "$unset":
            for k in changes:
                deep_unset(new_doc, k)
        elif op == "$inc":
            for k, v in changes.items():
                cur = deep_get(new_doc, k, 0)
                if not isinstance(cur, (int, float)) or isinstance(cur, bool):
                    raise UpdateError(f"$inc requires numeric field: {k}")
                deep_set(new_doc, k, cur + v)
        elif op == "$push":
            for k, v in changes.items():
                arr = deep_get(new_doc, k, None)
                if arr is None:
                    arr = []
                if not isinstance(arr, list):
                    raise UpdateError(f"$push requires array field: {k}")
                if isinstance(v, Mapping) and "$each" in v:
                    arr.extend(v["$each"])
                else:
                    arr.append(v)
                deep_set(new_doc, k, arr)
        elif op == "$setOnInsert" and is_upsert:
            for k, v in changes.items():
                deep_set(new_doc, k, copy.deepcopy(v))

    if not is_upsert and IDENTITY_FIELD in doc and new_doc.get(IDENTITY_FIELD) != doc[IDENTITY_FIELD]:
        raise UpdateError(
            "Performing an update on the path '_id' would modify the immutable field '_id'"
        )
    return new_doc


def upsert_seed(query: Mapping[str, Any]) -> dict:
    """The base document of an upsert: the filter's plain equality predicates."""
    seed: dict = {}
    for key, cond in query.items():
        if key.startswith("$"):
            continue
        if is_operator_expression(cond):
            if "$eq" in cond:
                deep_set(seed, key, copy.deepcopy(cond["$eq"]))
            continue
        deep_set(seed, key, copy.deepcopy(cond))
    return seed


def is_equality_filter(query: Mapping[str, Any]) -> bool:
    """True if every predicate of ``query`` is a plain (or ``$eq``) equality."""
    for key, cond in query.items():
        if key.startswith("$"):
            return False
        if is_operator_expression(cond) and set(cond) != {"$eq"}:
            return False
    return True


def dollar_key_path(doc: Any, prefix: str = "") -> Optional[str]:
    """Path of the first field name starting with ``$`` in ``doc``, or None."""
    if isinstance(doc, Mapping):
        items = doc.items()
    elif isinstance(doc, list):
        items = ((str(i), v) for i, v in enumerate(doc))
    else:
        return None
    for key, value in items:
        path = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(key, str) and key.startswith("$"):
            return path
        found = dollar_key_path(value, path)
        if found is not None:
            return found
    return None
