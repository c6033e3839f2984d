"""Shared fixtures for ninja-crud tests."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest
from ninja_crud.memory import InMemoryDatabase
from ninja_crud.repository import MongoRepository
from ninja_crud.schema import EntitySchema, FieldSchema, FieldType
from ninja_crud.service import CrudService


@pytest.fixture
def product_entity() -> EntitySchema:
    return EntitySchema(
        name="Product",
        fields=[
            FieldSchema(name="name", field_type=FieldType.STRING),
            FieldSchema(name="sku", field_type=FieldType.STRING, unique=True),
            FieldSchema(name="price", field_type=FieldType.FLOAT),
            FieldSchema(name="status", field_type=FieldType.STRING, indexed=True),
            FieldSchema(name="category", field_type=FieldType.OBJECT_ID, ref="category"),
        ],
        description="A catalogue product.",
    )


@pytest.fixture
def category_entity() -> EntitySchema:
    return EntitySchema(
        name="Category",
        fields=[FieldSchema(name="name", field_type=FieldType.STRING)],
    )


@pytest.fixture
def database() -> InMemoryDatabase:
    return InMemoryDatabase("test")


@pytest.fixture
def repository(product_entity: EntitySchema, database: InMemoryDatabase) -> MongoRepository:
    return MongoRepository(product_entity, database)


@pytest.fixture
def make_service(
    product_entity: EntitySchema, repository: MongoRepository
) -> Callable[..., CrudService]:
    """Factory building a product service over the shared in-memory repository."""

    def _make(config: dict[str, Any] | None = None) -> CrudService:
        return CrudService(repository, product_entity, config)

    return _make


@pytest.fixture
def service(make_service: Callable[..., CrudService]) -> CrudService:
    return make_service()


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
