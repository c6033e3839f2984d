"""Tests for MongoRepository error handling: raw driver exceptions are caught
and re-raised as domain PersistenceError subclasses."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from ninja_crud.exceptions import (
    ConnectionFailedError,
    DuplicateEntityError,
    PersistenceError,
    QueryError,
)
from ninja_crud.repository import MongoRepository, _is_connection_error, _is_duplicate_key_error
from ninja_crud.schema import EntitySchema
from pymongo.errors import BulkWriteError, DuplicateKeyError, ServerSelectionTimeoutError


def _make_repository(product_entity: EntitySchema, collection_mock: MagicMock) -> MongoRepository:
    """Create a MongoRepository with a mocked database and collection."""
    database = MagicMock()
    database.__getitem__ = MagicMock(return_value=collection_mock)
    return MongoRepository(product_entity, database)


class FakeDuplicateKeyError(Exception):
    """Simulates pymongo.errors.DuplicateKeyError."""

    pass


FakeDuplicateKeyError.__name__ = "DuplicateKeyError"


class FakeConnectionFailure(Exception):
    """Simulates pymongo.errors.ConnectionFailure."""

    pass


FakeConnectionFailure.__name__ = "ConnectionFailure"


class _FailingCursor:
    def __init__(self, exc: Exception) -> None:
        self._exc = exc

    def __aiter__(self):
        return self

    async def __anext__(self):
        raise self._exc


async def test_create_duplicate_raises_duplicate_entity_error(product_entity):
    coll = MagicMock()
    coll.insert_one = AsyncMock(side_effect=FakeDuplicateKeyError("dup"))
    repository = _make_repository(product_entity, coll)

    with pytest.raises(DuplicateEntityError) as exc_info:
        await repository.create({"name": "Alpha"})
    assert exc_info.value.entity_name == "Product"
    assert exc_info.value.operation == "create"


async def test_create_connection_error_raises_connection_failed(product_entity):
    coll = MagicMock()
    coll.insert_one = AsyncMock(side_effect=FakeConnectionFailure("timeout"))
    repository = _make_repository(product_entity, coll)

    with pytest.raises(ConnectionFailedError) as exc_info:
        await repository.create({"name": "Alpha"})
    assert exc_info.value.operation == "create"


async def test_create_generic_error_raises_persistence_error(product_entity):
    coll = MagicMock()
    coll.insert_one = AsyncMock(side_effect=RuntimeError("unexpected"))
    repository = _make_repository(product_entity, coll)

    with pytest.raises(PersistenceError) as exc_info:
        await repository.create({"name": "Alpha"})
    assert type(exc_info.value) is PersistenceError
    assert isinstance(exc_info.value.__cause__, RuntimeError)


async def test_create_many_bulk_duplicate_raises_duplicate_entity_error(product_entity):
    coll = MagicMock()
    coll.insert_many = AsyncMock(
        side_effect=BulkWriteError({"writeErrors": [{"index": 1, "code": 11000}], "nInserted": 1})
    )
    repository = _make_repository(product_entity, coll)

    with pytest.raises(DuplicateEntityError) as exc_info:
        await repository.create_many([{"name": "A"}, {"name": "A"}])
    assert exc_info.value.operation == "create_many"


async def test_find_one_error_raises_query_error(product_entity):
    coll = MagicMock()
    coll.find_one = AsyncMock(side_effect=RuntimeError("bad query"))
    repository = _make_repository(product_entity, coll)

    with pytest.raises(QueryError) as exc_info:
        await repository.find_by_id("abc")
    assert exc_info.value.operation == "find_one"


async def test_find_all_connection_error(product_entity):
    coll = MagicMock()
    coll.find = MagicMock(return_value=_FailingCursor(ServerSelectionTimeoutError("no servers")))
    repository = _make_repository(product_entity, coll)

    with pytest.raises(ConnectionFailedError) as exc_info:
        await repository.find_all()
    assert exc_info.value.operation == "find_all"


async def test_aggregate_error_raises_query_error(product_entity):
    coll = MagicMock()
    coll.aggregate = MagicMock(return_value=_FailingCursor(RuntimeError("bad stage")))
    repository = _make_repository(product_entity, coll)

    with pytest.raises(QueryError):
        await repository.aggregate([{"$bogus": {}}])


async def test_update_duplicate_raises_duplicate_entity_error(product_entity):
    coll = MagicMock()
    coll.find_one_and_update = AsyncMock(side_effect=DuplicateKeyError("E11000", 11000))
    repository = _make_repository(product_entity, coll)

    with pytest.raises(DuplicateEntityError) as exc_info:
        await repository.update_by_id("abc", {"sku": "taken"})
    assert exc_info.value.operation == "update"


async def test_delete_many_error_raises_persistence_error(product_entity):
    coll = MagicMock()
    coll.update_many = AsyncMock(side_effect=RuntimeError("boom"))
    repository = _make_repository(product_entity, coll)

    with pytest.raises(PersistenceError) as exc_info:
        await repository.delete_many({})
    assert exc_info.value.operation == "delete_many"


async def test_count_documents_omits_zero_skip_and_limit(product_entity):
    coll = MagicMock()
    coll.count_documents = AsyncMock(return_value=3)
    repository = _make_repository(product_entity, coll)

    assert await repository.count_documents({"status": "active"}) == 3
    coll.count_documents.assert_awaited_once_with({"status": "active", "deleted_at": None})


def test_is_duplicate_key_error():
    assert _is_duplicate_key_error(FakeDuplicateKeyError())
    assert _is_duplicate_key_error(DuplicateKeyError("E11000", 11000))
    assert _is_duplicate_key_error(BulkWriteError({"writeErrors": [{"code": 11000}]}))
    assert not _is_duplicate_key_error(BulkWriteError({"writeErrors": [{"code": 121}]}))
    assert not _is_duplicate_key_error(RuntimeError())


def test_is_connection_error():
    assert _is_connection_error(FakeConnectionFailure())
    assert _is_connection_error(ServerSelectionTimeoutError("x"))
    assert not _is_connection_error(ValueError())
