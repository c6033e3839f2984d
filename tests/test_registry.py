"""Tests for the service registry."""

import pytest
from ninja_crud.connections import ConnectionManager, ConnectionProfile
from ninja_crud.interceptors import VersionInterceptor
from ninja_crud.registry import ServiceRegistry
from ninja_crud.repository import MongoRepository
from ninja_crud.service import CrudService


@pytest.fixture
def manager():
    return ConnectionManager(
        profiles={
            "default": ConnectionProfile(engine="memory", url="memory://"),
            "archive": ConnectionProfile(engine="memory", url="memory://", database="archive"),
        }
    )


@pytest.fixture
def registry(manager):
    return ServiceRegistry(manager)


def test_register_and_get(registry, manager, product_entity):
    service = registry.register(product_entity, {"soft_delete": False})
    assert isinstance(service, CrudService)
    assert registry.get("Product") is service
    assert "Product" in registry
    assert len(registry) == 1
    assert service.config.soft_delete is False
    assert service.repository._database is manager.get_mongo_database()


def test_register_on_named_profile(registry, manager, category_entity):
    service = registry.register(category_entity, profile_name="archive")
    assert service.repository._database is manager.get_mongo_database("archive")


def test_duplicate_registration_rejected(registry, product_entity):
    registry.register(product_entity)
    with pytest.raises(ValueError, match="already registered"):
        registry.register(product_entity)


def test_get_missing(registry):
    with pytest.raises(KeyError, match="No service registered"):
        registry.get("Ghost")


def test_register_service_overrides(registry, product_entity, service):
    registry.register(product_entity)
    registry.register_service(service)
    assert registry.get("Product") is service


async def test_interceptors_are_passed_through(registry, product_entity):
    service = registry.register(product_entity, interceptors=[VersionInterceptor()])
    doc = (await service.create({"name": "A"})).data["docs"]
    assert doc["version"] == 0
    assert "created_at" not in doc


async def test_ensure_indexes(registry, manager, product_entity, category_entity):
    registry.register(product_entity)
    registry.register(category_entity)
    created = await registry.ensure_indexes()
    assert created == {"Product": ["sku_1", "status_1"], "Category": []}

    indexes = manager.get_mongo_database()["product"].indexes
    assert indexes["sku_1"]["unique"] is True
    assert indexes["status_1"]["unique"] is False
    assert registry.entity_names == ["Category", "Product"]


async def test_unique_index_enforced_after_ensure(registry, product_entity):
    service = registry.register(product_entity)
    await registry.ensure_indexes()
    await service.batch_create([{"name": "A", "sku": "S-1"}])
    response = await service.batch_create([{"name": "B", "sku": "S-1"}])
    assert not response.success
    assert isinstance(registry.get("Product").repository, MongoRepository)
