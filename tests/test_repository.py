"""Behavioural tests for MongoRepository over the in-memory engine."""

from datetime import datetime

import pytest
from bson import ObjectId
from ninja_crud.config import PopulateField
from ninja_crud.memory import InMemoryDatabase
from ninja_crud.protocols import DocumentRepository
from ninja_crud.repository import MongoRepository, coerce_id


async def _seed(repository: MongoRepository, *names: str) -> list[dict]:
    return [await repository.create({"name": name, "status": "active"}) for name in names]


def test_satisfies_protocol(repository):
    assert isinstance(repository, DocumentRepository)


def test_coerce_id():
    oid = ObjectId()
    assert coerce_id(str(oid)) == oid
    assert coerce_id("not-an-id") == "not-an-id"
    assert coerce_id(42) == 42


async def test_create_sets_identity_timestamps_and_soft_delete_markers(repository):
    doc = await repository.create({"name": "Alpha"})
    assert isinstance(doc["_id"], ObjectId)
    assert isinstance(doc["created_at"], datetime)
    assert doc["updated_at"] == doc["created_at"]
    assert doc["deleted_at"] is None
    assert doc["deleted_by"] is None


async def test_find_by_id_accepts_string_id(repository):
    (doc,) = await _seed(repository, "Alpha")
    found = await repository.find_by_id(str(doc["_id"]))
    assert found["name"] == "Alpha"


async def test_soft_deleted_records_hidden_by_default(repository):
    alpha, beta = await _seed(repository, "Alpha", "Beta")
    deleted = await repository.delete_by_id(alpha["_id"])
    assert deleted["deleted_at"] is not None

    assert [d["name"] for d in await repository.find_all()] == ["Beta"]
    assert await repository.find_by_id(alpha["_id"]) is None
    assert await repository.find_one({"name": "Alpha"}) is None
    assert await repository.count_documents() == 1
    assert not await repository.exists({"name": "Alpha"})

    assert len(await repository.find_all(include_deleted=True)) == 2
    assert (await repository.find_by_id(alpha["_id"], include_deleted=True))["deleted_at"] is not None
    assert await repository.count_documents(include_deleted=True) == 2


async def test_soft_delete_keeps_record(repository, database):
    (doc,) = await _seed(repository, "Alpha")
    await repository.delete_by_id(doc["_id"])
    assert len(database["product"]) == 1


async def test_hard_delete_removes_record(repository, database):
    (doc,) = await _seed(repository, "Alpha")
    removed = await repository.delete_by_id(doc["_id"], soft_delete=False)
    assert removed["name"] == "Alpha"
    assert len(database["product"]) == 0


async def test_delete_of_already_deleted_returns_none(repository):
    (doc,) = await _seed(repository, "Alpha")
    await repository.delete_by_id(doc["_id"])
    assert await repository.delete_by_id(doc["_id"]) is None


async def test_restore_clears_markers(repository):
    (doc,) = await _seed(repository, "Alpha")
    await repository.delete_by_id(doc["_id"])
    restored = await repository.restore_by_id(doc["_id"])
    assert restored["deleted_at"] is None
    assert restored["deleted_by"] is None
    assert await repository.find_by_id(doc["_id"]) is not None


async def test_restore_only_targets_deleted_records(repository):
    (doc,) = await _seed(repository, "Alpha")
    assert await repository.restore_by_id(doc["_id"]) is None


async def test_restore_many(repository):
    await _seed(repository, "A", "B", "C")
    assert await repository.delete_many({"status": "active"}) == 3
    assert await repository.restore_many({"name": {"$in": ["A", "B"]}}) == 2
    assert await repository.count_documents() == 2


async def test_update_plain_patch_and_operators(repository):
    (doc,) = await _seed(repository, "Alpha")
    updated = await repository.update_by_id(doc["_id"], {"price": 5, "_id": "ignored"})
    assert updated["price"] == 5
    assert updated["_id"] == doc["_id"]
    bumped = await repository.update({"name": "Alpha"}, {"$inc": {"price": 2}})
    assert bumped["price"] == 7
    assert bumped["updated_at"] >= doc["updated_at"]


async def test_update_skips_deleted_unless_included(repository):
    (doc,) = await _seed(repository, "Alpha")
    await repository.delete_by_id(doc["_id"])
    assert await repository.update_by_id(doc["_id"], {"price": 1}) is None
    updated = await repository.update_by_id(doc["_id"], {"price": 1}, include_deleted=True)
    assert updated["price"] == 1


async def test_update_many_scoped_to_live_records(repository):
    a, _b, _c = await _seed(repository, "A", "B", "C")
    await repository.delete_by_id(a["_id"])
    assert await repository.update_many({"status": "active"}, {"status": "archived"}) == 2
    assert (await repository.find_by_id(a["_id"], include_deleted=True))["status"] == "active"


async def test_delete_many_hard(repository):
    await _seed(repository, "A", "B")
    assert await repository.delete_many({}, soft_delete=False) == 2
    assert await repository.count_documents(include_deleted=True) == 0


async def test_find_all_sort_skip_limit(repository):
    await _seed(repository, "C", "A", "B", "D")
    docs = await repository.find_all(sort={"name": 1}, skip=1, limit=2)
    assert [d["name"] for d in docs] == ["B", "C"]


async def test_query_on_deleted_at_is_conjoined(repository):
    (doc,) = await _seed(repository, "A")
    await repository.delete_by_id(doc["_id"])
    assert await repository.find_all({"deleted_at": {"$ne": None}}) == []
    assert len(await repository.find_all({"deleted_at": {"$ne": None}}, include_deleted=True)) == 1


async def test_create_many(repository):
    docs = await repository.create_many([{"name": "A"}, {"name": "B"}])
    assert all(isinstance(d["_id"], ObjectId) for d in docs)
    assert await repository.count_documents() == 2
    assert await repository.create_many([]) == []


async def test_aggregate_has_no_visibility_filter(repository):
    a, _b = await _seed(repository, "A", "B")
    await repository.delete_by_id(a["_id"])
    rows = await repository.aggregate([{"$count": "n"}])
    assert rows == [{"n": 2}]


async def test_populate_single_and_list_references(product_entity, database):
    categories = MongoRepository(product_entity.model_copy(update={"collection_name": "category"}), database)
    toys = await categories.create({"name": "Toys"})
    books = await categories.create({"name": "Books"})
    repository = MongoRepository(product_entity, database)
    product = await repository.create({"name": "Ball", "category": str(toys["_id"]), "related": [books["_id"]]})

    expanded = await repository.populate(
        product, ["category", PopulateField(path="related", collection="category", select=["name"])]
    )
    assert expanded["category"]["name"] == "Toys"
    assert expanded["related"] == [{"_id": books["_id"], "name": "Books"}]
    assert product["category"] == str(toys["_id"])


async def test_populate_dangling_and_unknown_references(repository):
    product = await repository.create({"name": "Ball", "category": ObjectId(), "owner": "x"})
    expanded = await repository.populate(product, ["category", "owner"])
    assert expanded["category"] is None
    assert expanded["owner"] == "x"


async def test_ensure_indexes(repository, database):
    names = await repository.ensure_indexes()
    assert names == ["sku_1", "status_1"]
    assert database["product"].indexes["sku_1"]["unique"] is True
    assert database["product"].indexes["status_1"]["unique"] is False
    assert database["product"].indexes["sku_1"]["partialFilterExpression"] == {
        "sku": {"$exists": True},
        "deleted_at": {"$type": "null"},
    }


async def test_missing_database_raises(product_entity):
    repository = MongoRepository(product_entity)
    with pytest.raises(RuntimeError, match="database"):
        await repository.find_all()


async def test_default_interceptor_chain(product_entity):
    repository = MongoRepository(product_entity, InMemoryDatabase())
    assert [i.kind for i in repository.interceptors] == ["timestamps"]
