"""Tests for entity and field declarations."""

import pytest
from ninja_crud.schema import EntitySchema, FieldSchema, FieldType
from pydantic import ValidationError


def test_derived_properties(product_entity):
    assert product_entity.collection == "product"
    assert product_entity.unique_fields == frozenset({"sku"})
    assert product_entity.indexed_fields == frozenset({"status"})
    assert product_entity.references == {"category": "category"}
    assert product_entity.field_names == ["name", "sku", "price", "status", "category"]


def test_collection_name_override():
    entity = EntitySchema(name="Person", collection_name="people")
    assert entity.collection == "people"


def test_unique_field_not_reported_as_plain_index():
    entity = EntitySchema(name="Tag", fields=[FieldSchema(name="label", unique=True, indexed=True)])
    assert entity.indexed_fields == frozenset()
    assert entity.unique_fields == frozenset({"label"})


def test_duplicate_field_names_rejected():
    with pytest.raises(ValidationError, match="duplicate field name"):
        EntitySchema(name="Tag", fields=[FieldSchema(name="label"), FieldSchema(name="label")])


@pytest.mark.parametrize("name", ["1abc", "with space", "semi;colon", "class"])
def test_invalid_field_names_rejected(name):
    with pytest.raises(ValidationError):
        FieldSchema(name=name)


def test_invalid_entity_name_rejected():
    with pytest.raises(ValidationError):
        EntitySchema(name="drop table")


def test_extra_keys_forbidden():
    with pytest.raises(ValidationError):
        FieldSchema(name="x", primary_key=True)


def test_field_type_default():
    assert FieldSchema(name="x").field_type is FieldType.STRING
