"""
Filter resolution: turns a Selector into a concrete store filter.

Precedence for the identity field: ``id`` beats ``ids``, which beats whatever
``find`` already says about ``_id``. Other predicates in ``find`` are kept.
"""

import logging
from typing import Any

from .identifiers import IdentifierCaster
from .types import IDENTITY_FIELD, Selector

logger = logging.getLogger(__name__)


def resolve_filter(selector: Selector, caster: IdentifierCaster) -> dict[str, Any]:
    """
    Build the filter for an operation. Performs no I/O.

    Args:
        selector: Parameters carrying find/id/ids
        caster: Identifier caster used for id and ids

    Returns:
        A new dict; ``selector.find`` is never modified

    Raises:
        InvalidIdentifier: if id or any of ids cannot be cast
    """
    find = dict(selector.find or {})

    if selector.id is not None:
        if selector.ids is not None:
            # Ambiguous input: id wins, ids is ignored
            logger.warning("Both id and ids given; using id=%r and ignoring %d ids",
                           selector.id, len(selector.ids))
        find[IDENTITY_FIELD] = caster.cast(selector.id)
        return find

    if selector.ids is not None:
        find[IDENTITY_FIELD] = {"$in": caster.cast_many(selector.ids)}

    return find
