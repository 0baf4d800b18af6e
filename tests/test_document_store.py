"""Tests for the local SQLite document store and its query engine."""

import pytest
from bson import ObjectId

from dbmanager.document_store import (
    DuplicateKeyError,
    InvalidDocument,
    InvalidOperation,
    SqliteDatabase,
)
from dbmanager.protocol import CursorProtocol
from dbmanager.query import (
    QueryError,
    UpdateError,
    apply_update,
    deep_get,
    is_equality_filter,
    match_query,
    sort_documents,
    upsert_seed,
)


# ---------------------------------------------------------------------------
# Query engine
# ---------------------------------------------------------------------------


class TestDeepGet:
    def test_nested(self):
        assert deep_get({"a": {"b": {"c": 1}}}, "a.b.c") == 1

    def test_list_index(self):
        assert deep_get({"a": [10, 20]}, "a.1") == 20

    def test_out_of_range(self):
        assert deep_get({"a": [10]}, "a.5", "dflt") == "dflt"

    def test_through_scalar(self):
        assert deep_get({"a": 1}, "a.b") is None

    def test_explicit_none_is_kept(self):
        assert deep_get({"a": None}, "a", "dflt") is None


class TestMatchQuery:
    DOC = {"name": "Ann", "age": 31, "tags": ["x", "y"], "profile": {"city": "Oslo"}}

    @pytest.mark.parametrize("query,expected", [
        ({}, True),
        ({"name": "Ann"}, True),
        ({"name": "Bob"}, False),
        ({"profile.city": "Oslo"}, True),
        ({"tags": "x"}, True),
        ({"tags": ["x", "y"]}, True),
        ({"age": {"$gt": 30, "$lte": 31}}, True),
        ({"age": {"$lt": 30}}, False),
        ({"age": {"$gt": "30"}}, False),
        ({"age": {"$in": [1, 31]}}, True),
        ({"age": {"$nin": [31]}}, False),
        ({"age": {"$ne": 30}}, True),
        ({"missing": {"$exists": False}}, True),
        ({"missing": None}, True),
        ({"name": {"$regex": "^a", "$options": "i"}}, True),
        ({"tags": {"$size": 2}}, True),
        ({"tags": {"$all": ["y", "x"]}}, True),
        ({"$or": [{"name": "Bob"}, {"age": 31}]}, True),
        ({"$and": [{"name": "Ann"}, {"age": 30}]}, False),
        ({"$nor": [{"name": "Bob"}]}, True),
    ])
    def test_operators(self, query, expected):
        assert match_query(self.DOC, query) is expected

    def test_unknown_operator(self):
        with pytest.raises(QueryError):
            match_query(self.DOC, {"age": {"$where": "1"}})

    def test_unknown_top_level_operator(self):
        with pytest.raises(QueryError):
            match_query(self.DOC, {"$where": "1"})


class TestApplyUpdate:
    def test_does_not_mutate(self):
        doc = {"a": {"b": 1}}
        apply_update(doc, {"$set": {"a.b": 2}})
        assert doc == {"a": {"b": 1}}

    def test_operators(self):
        doc = {"_id": 1, "n": 1, "old": True, "tags": ["a"]}
        new = apply_update(doc, {
            "$set": {"profile.city": "Oslo"},
            "$unset": {"old": ""},
            "$inc": {"n": 2},
            "$push": {"tags": {"$each": ["b", "c"]}},
        })
        assert new == {"_id": 1, "n": 3, "tags": ["a", "b", "c"], "profile": {"city": "Oslo"}}

    def test_set_on_insert_only_on_upsert(self):
        assert apply_update({}, {"$setOnInsert": {"a": 1}}) == {}
        assert apply_update({}, {"$setOnInsert": {"a": 1}}, is_upsert=True) == {"a": 1}

    def test_id_is_immutable(self):
        with pytest.raises(UpdateError):
            apply_update({"_id": 1}, {"$set": {"_id": 2}})

    def test_inc_non_numeric(self):
        with pytest.raises(UpdateError):
            apply_update({"n": "x"}, {"$inc": {"n": 1}})

    def test_set_past_end_of_list(self):
        with pytest.raises(UpdateError):
            apply_update({"tags": ["a"]}, {"$set": {"tags.3": "z"}})

    def test_empty_update(self):
        with pytest.raises(UpdateError):
            apply_update({}, {})

    def test_upsert_seed(self):
        seed = upsert_seed({"a": 1, "b.c": {"$eq": 2}, "d": {"$gt": 3}, "$or": [{"e": 1}]})
        assert seed == {"a": 1, "b": {"c": 2}}

    @pytest.mark.parametrize("query,expected", [
        ({}, True),
        ({"a": 1, "b.c": "x"}, True),
        ({"a": {"$eq": 1}}, True),
        ({"a": {"nested": 1}}, True),
        ({"_id": {"$in": [1, 2]}}, False),
        ({"a": {"$gte": 3}}, False),
        ({"a": {"$eq": 1, "$ne": 2}}, False),
        ({"$or": [{"a": 1}]}, False),
    ])
    def test_is_equality_filter(self, query, expected):
        assert is_equality_filter(query) is expected


class TestSortDocuments:
    def test_multi_key(self):
        docs = [{"a": 1, "b": 2}, {"a": 0, "b": 9}, {"a": 1, "b": 1}]
        result = sort_documents(docs, [("a", 1), ("b", -1)])
        assert result == [{"a": 0, "b": 9}, {"a": 1, "b": 2}, {"a": 1, "b": 1}]

    def test_missing_sorts_first(self):
        docs = [{"a": 2}, {}, {"a": 1}]
        assert sort_documents(docs, [("a", 1)]) == [{}, {"a": 1}, {"a": 2}]


# ---------------------------------------------------------------------------
# SqliteDatabase / SqliteCollection
# ---------------------------------------------------------------------------


class TestSqliteCollection:
    @pytest.mark.asyncio
    async def test_insert_generates_object_id(self, db):
        coll = db.get_collection("items")
        doc = {"name": "a"}
        result = await coll.insert_one(doc)
        assert isinstance(result.inserted_id, ObjectId)
        assert doc["_id"] == result.inserted_id

    @pytest.mark.asyncio
    async def test_round_trip_keeps_types(self, db):
        coll = db.get_collection("items")
        ref = ObjectId()
        await coll.insert_one({"_id": "k", "ref": ref, "n": 1.5})
        doc = await coll.find_one({"_id": "k"})
        assert doc == {"_id": "k", "ref": ref, "n": 1.5}

    @pytest.mark.asyncio
    async def test_string_and_object_id_do_not_collide(self, db):
        coll = db.get_collection("items")
        oid = ObjectId()
        await coll.insert_one({"_id": oid, "kind": "native"})
        await coll.insert_one({"_id": str(oid), "kind": "string"})
        assert (await coll.find_one({"_id": oid}))["kind"] == "native"
        assert (await coll.find_one({"_id": str(oid)}))["kind"] == "string"

    @pytest.mark.asyncio
    async def test_collections_are_separate(self, db):
        await db.get_collection("a").insert_one({"x": 1})
        assert await db.get_collection("b").find_one({}) is None
        assert await db.list_collection_names() == ["a"]

    @pytest.mark.asyncio
    async def test_update_no_change(self, db):
        coll = db.get_collection("items")
        await coll.insert_one({"_id": 1, "a": 1})
        result = await coll.update_one({"_id": 1}, {"$set": {"a": 1}})
        assert (result.matched_count, result.modified_count) == (1, 0)

    @pytest.mark.asyncio
    async def test_update_no_match(self, db):
        result = await db.get_collection("items").update_one({"_id": 1}, {"$set": {"a": 1}})
        assert (result.matched_count, result.upserted_id) == (0, None)

    @pytest.mark.asyncio
    async def test_upsert_seeds_from_filter(self, db):
        coll = db.get_collection("items")
        result = await coll.update_one({"slug": "x"}, {"$set": {"n": 1}}, upsert=True)
        doc = await coll.find_one({"_id": result.upserted_id})
        assert doc["slug"] == "x"
        assert doc["n"] == 1

    @pytest.mark.asyncio
    async def test_distinct_flattens_arrays(self, db):
        coll = db.get_collection("items")
        await coll.insert_many([{"t": ["a", "b"]}, {"t": "b"}, {"t": "c"}, {"other": 1}])
        assert await coll.distinct("t") == ["a", "b", "c"]
        assert await coll.distinct("t", {"t": "c"}) == ["c"]

    @pytest.mark.asyncio
    async def test_unique_index(self, db):
        coll = db.get_collection("users")
        name = await coll.create_index([("email", 1)], unique=True)
        assert name == "email_1"
        await coll.insert_one({"email": "a@x"})
        with pytest.raises(DuplicateKeyError):
            await coll.insert_one({"email": "a@x"})
        other = await coll.insert_one({"email": "b@x"})
        with pytest.raises(DuplicateKeyError):
            await coll.update_one({"_id": other.inserted_id}, {"$set": {"email": "a@x"}})

    @pytest.mark.asyncio
    async def test_unique_index_on_existing_duplicates(self, db):
        coll = db.get_collection("users")
        await coll.insert_many([{"email": "a@x"}, {"email": "a@x"}])
        with pytest.raises(DuplicateKeyError):
            await coll.create_index("email", unique=True)

    @pytest.mark.asyncio
    async def test_create_index_is_idempotent(self, db):
        coll = db.get_collection("users")
        assert await coll.create_index("email") == "email_1"
        assert await coll.create_index("email") == "email_1"
        info = await coll.index_information()
        assert set(info) == {"_id_", "email_1"}

    @pytest.mark.asyncio
    async def test_drop_collection(self, db):
        coll = db.get_collection("items")
        await coll.insert_many([{"a": 1}, {"a": 2}])
        assert await db.drop_collection("items") == 2
        assert await coll.count_documents({}) == 0

    @pytest.mark.asyncio
    async def test_persists_across_reopen(self, tmp_path):
        path = tmp_path / "store.db"
        with SqliteDatabase(path) as first:
            await first.get_collection("items").insert_one({"_id": "k", "a": 1})
        with SqliteDatabase(path) as second:
            assert await second.get_collection("items").find_one({"_id": "k"}) == {"_id": "k", "a": 1}

    def test_empty_collection_name(self, db):
        with pytest.raises(ValueError):
            db.get_collection("")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("doc,path", [
        ({"_id": {"$in": [1]}}, "_id.$in"),
        ({"a": {"$x": 1}}, "a.$x"),
        ({"tags": [{"ok": 1}, {"$bad": 2}]}, "tags.1.$bad"),
    ])
    async def test_insert_rejects_dollar_field_names(self, db, doc, path):
        coll = db.get_collection("items")
        with pytest.raises(InvalidDocument, match=path.replace("$", r"\$")):
            await coll.insert_one(doc)
        assert await coll.count_documents({}) == 0

    @pytest.mark.asyncio
    async def test_insert_many_rejects_dollar_field_names(self, db):
        coll = db.get_collection("items")
        with pytest.raises(InvalidDocument):
            await coll.insert_many([{"n": 1}, {"$set": {"n": 2}}])
        assert await coll.count_documents({}) == 0


class TestSqliteCursor:
    @pytest.mark.asyncio
    async def test_chain(self, db):
        coll = db.get_collection("items")
        await coll.insert_many([{"n": n} for n in (4, 2, 5, 1, 3)])
        docs = await coll.find({"n": {"$gte": 2}}).sort("n", -1).skip(1).limit(2).to_list()
        assert [d["n"] for d in docs] == [4, 3]

    @pytest.mark.asyncio
    async def test_single_pass(self, db):
        coll = db.get_collection("items")
        await coll.insert_many([{"n": 1}, {"n": 2}])
        cursor = coll.find()
        assert len(await cursor.to_list()) == 2
        assert await cursor.to_list() == []

    @pytest.mark.asyncio
    async def test_reshape_after_start(self, db):
        coll = db.get_collection("items")
        await coll.insert_one({"n": 1})
        cursor = coll.find()
        await cursor.to_list()
        with pytest.raises(InvalidOperation):
            cursor.limit(1)

    def test_negative_skip(self, db):
        with pytest.raises(ValueError):
            db.get_collection("items").find().skip(-1)

    @pytest.mark.asyncio
    async def test_tuning_options_chain(self, db):
        coll = db.get_collection("items")
        await coll.insert_many([{"n": 2}, {"n": 1}])
        cursor = coll.find()
        shaped = (cursor.batch_size(10).max_time_ms(100).hint([("n", 1)])
                  .comment("listing").collation({"locale": "en"}).sort("n", 1))
        assert shaped is cursor
        assert [d["n"] for d in await cursor.to_list()] == [1, 2]

    def test_bad_batch_size(self, db):
        cursor = db.get_collection("items").find()
        with pytest.raises(ValueError):
            cursor.batch_size(-1)
        with pytest.raises(TypeError):
            cursor.max_time_ms("soon")

    @pytest.mark.asyncio
    async def test_tuning_after_start(self, db):
        coll = db.get_collection("items")
        await coll.insert_one({"n": 1})
        cursor = coll.find()
        await cursor.to_list()
        with pytest.raises(InvalidOperation):
            cursor.batch_size(5)

    def test_satisfies_cursor_protocol(self, db):
        assert isinstance(db.get_collection("items").find(), CursorProtocol)
