"""
Identifier casting.

External callers usually hand us identifiers as strings (from a URL, a CLI
argument, a JSON body). The store wants its native identifier type. Casting
is pure and idempotent: values that are not strings are assumed to be native
already and pass through untouched.
"""

from typing import Any, Callable, Iterable

from bson import ObjectId
from bson.errors import InvalidId

from .errors import InvalidIdentifier


class IdentifierCaster:
    """
    Converts string identifiers to the store's native identifier type.

    The native constructor defaults to ``bson.ObjectId``. A custom constructor
    must raise InvalidId, ValueError or TypeError for malformed input.
    """

    def __init__(self, native: Callable[[str], Any] = ObjectId):
        self._native = native

    def cast(self, value: Any) -> Any:
        """
        Cast a single identifier.

        Raises:
            InvalidIdentifier: if ``value`` is a string the native type rejects
        """
        if not isinstance(value, str):
            return value
        try:
            return self._native(value)
        except (InvalidId, ValueError, TypeError) as e:
            raise InvalidIdentifier(value) from e

    def cast_many(self, values: Iterable[Any]) -> list[Any]:
        """
        Cast a sequence of identifiers, in order.

        The first failure aborts the whole cast; no partial list is returned.
        """
        return [self.cast(value) for value in values]
