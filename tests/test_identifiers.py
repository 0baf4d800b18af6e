"""Tests for identifier casting and filter resolution."""

import logging

import pytest
from bson import ObjectId

from dbmanager import IdentifierCaster, InvalidIdentifier, Selector, resolve_filter


HEX = "65f1c0ffee0000000000abcd"
HEX2 = "65f1c0ffee0000000000abce"


# ---------------------------------------------------------------------------
# IdentifierCaster
# ---------------------------------------------------------------------------


class TestCast:
    def test_string_becomes_object_id(self):
        assert IdentifierCaster().cast(HEX) == ObjectId(HEX)

    def test_native_passes_through(self):
        oid = ObjectId(HEX)
        assert IdentifierCaster().cast(oid) is oid

    def test_non_string_passes_through(self):
        assert IdentifierCaster().cast(42) == 42

    def test_idempotent(self):
        caster = IdentifierCaster()
        assert caster.cast(caster.cast(HEX)) == ObjectId(HEX)

    def test_invalid_string(self):
        with pytest.raises(InvalidIdentifier) as exc_info:
            IdentifierCaster().cast("not-an-id")
        assert exc_info.value.value == "not-an-id"
        assert "invalid id 'not-an-id'" in str(exc_info.value)

    def test_invalid_is_value_error(self):
        with pytest.raises(ValueError):
            IdentifierCaster().cast("xyz")

    def test_custom_native(self):
        caster = IdentifierCaster(native=int)
        assert caster.cast("12") == 12
        with pytest.raises(InvalidIdentifier):
            caster.cast("twelve")


class TestCastMany:
    def test_preserves_order(self):
        result = IdentifierCaster().cast_many([HEX2, HEX])
        assert result == [ObjectId(HEX2), ObjectId(HEX)]

    def test_empty(self):
        assert IdentifierCaster().cast_many([]) == []

    def test_first_failure_aborts(self):
        with pytest.raises(InvalidIdentifier) as exc_info:
            IdentifierCaster().cast_many([HEX, "bad", "worse"])
        assert exc_info.value.value == "bad"


# ---------------------------------------------------------------------------
# resolve_filter
# ---------------------------------------------------------------------------


class TestResolveFilter:
    def test_empty(self):
        assert resolve_filter(Selector(), IdentifierCaster()) == {}

    def test_find_is_copied(self):
        find = {"name": "a"}
        result = resolve_filter(Selector(find=find), IdentifierCaster())
        assert result == {"name": "a"}
        result["extra"] = 1
        assert find == {"name": "a"}

    def test_id_sets_identity(self):
        result = resolve_filter(Selector(id=HEX), IdentifierCaster())
        assert result == {"_id": ObjectId(HEX)}

    def test_id_overrides_find_identity(self):
        find = {"_id": "other", "name": "a"}
        result = resolve_filter(Selector(find=find, id=HEX), IdentifierCaster())
        assert result == {"_id": ObjectId(HEX), "name": "a"}
        assert find["_id"] == "other"

    def test_ids_become_in(self):
        result = resolve_filter(Selector(ids=[HEX, HEX2]), IdentifierCaster())
        assert result == {"_id": {"$in": [ObjectId(HEX), ObjectId(HEX2)]}}

    def test_empty_ids_matches_nothing(self):
        result = resolve_filter(Selector(ids=[]), IdentifierCaster())
        assert result == {"_id": {"$in": []}}

    def test_id_wins_over_ids(self, caplog):
        with caplog.at_level(logging.WARNING, logger="dbmanager.resolver"):
            result = resolve_filter(Selector(id=HEX, ids=[HEX2]), IdentifierCaster())
        assert result == {"_id": ObjectId(HEX)}
        assert "Both id and ids given" in caplog.text

    def test_invalid_id_propagates(self):
        with pytest.raises(InvalidIdentifier):
            resolve_filter(Selector(id="bad"), IdentifierCaster())

    def test_invalid_in_ids_propagates(self):
        with pytest.raises(InvalidIdentifier):
            resolve_filter(Selector(ids=[HEX, "bad"]), IdentifierCaster())


class TestSelectorValidation:
    def test_find_must_be_mapping(self):
        with pytest.raises(TypeError):
            Selector(find=["name"])

    def test_ids_must_be_sequence(self):
        with pytest.raises(TypeError):
            Selector(ids=HEX)

    def test_collection_must_be_string(self):
        with pytest.raises(TypeError):
            Selector(collection=3)
