"""Entity and field declarations consumed by the repository and service layers."""

from __future__ import annotations

import keyword
import re
from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator

# Valid identifier: starts with a letter or underscore, alphanumeric + underscores, max 64 chars.
_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,63}$")

# Attributes maintained by the repository and interceptors rather than callers.
SYSTEM_FIELDS: tuple[str, ...] = (
    "_id",
    "created_at",
    "updated_at",
    "created_by",
    "updated_by",
    "deleted_at",
    "deleted_by",
    "version",
)


class FieldType(str, Enum):
    """Supported document field types."""

    STRING = "string"
    TEXT = "text"
    INTEGER = "integer"
    FLOAT = "float"
    BOOLEAN = "boolean"
    DATETIME = "datetime"
    OBJECT_ID = "object_id"
    JSON = "json"
    ARRAY = "array"


class FieldSchema(BaseModel):
    """Schema definition for a single document field."""

    name: str = Field(min_length=1, description="Field name.")
    field_type: FieldType = Field(default=FieldType.STRING, description="Data type of the field.")
    nullable: bool = Field(default=True, description="Whether the field accepts null values.")
    unique: bool = Field(default=False, description="Whether values must be unique across live records.")
    indexed: bool = Field(default=False, description="Whether the field should be indexed.")
    ref: str | None = Field(
        default=None,
        description="Collection referenced by this field; enables expansion of its ids.",
    )
    description: str | None = Field(default=None, description="Human-readable description.")

    model_config = {"extra": "forbid", "frozen": True}

    @field_validator("name")
    @classmethod
    def validate_field_name(cls, v: str) -> str:
        """Enforce a safe identifier pattern on field names."""
        if not _IDENTIFIER_RE.match(v):
            raise ValueError(
                f"Field name {v!r} is not a valid identifier. "
                "Must start with a letter or underscore, contain only alphanumeric "
                "characters and underscores, and be at most 64 characters."
            )
        if keyword.iskeyword(v):
            raise ValueError(f"Field name {v!r} is a Python reserved keyword.")
        return v


class EntitySchema(BaseModel):
    """Schema definition for an entity stored in one collection."""

    name: str = Field(min_length=1, description="Entity name (PascalCase recommended).")
    fields: list[FieldSchema] = Field(default_factory=list, description="Declared fields of the entity.")
    collection_name: str | None = Field(
        default=None,
        description="Override for the storage collection name. Defaults to the lower-cased entity name.",
    )
    description: str | None = Field(default=None, description="Human-readable description.")

    model_config = {"extra": "forbid", "frozen": True}

    @field_validator("name")
    @classmethod
    def validate_entity_name(cls, v: str) -> str:
        if not _IDENTIFIER_RE.match(v):
            raise ValueError(f"Entity name {v!r} is not a valid identifier.")
        return v

    @model_validator(mode="after")
    def validate_unique_field_names(self) -> EntitySchema:
        """Reject duplicate field names."""
        seen: set[str] = set()
        for f in self.fields:
            if f.name in seen:
                raise ValueError(f"Entity '{self.name}' has duplicate field name '{f.name}'")
            seen.add(f.name)
        return self

    @property
    def collection(self) -> str:
        return self.collection_name or self.name.lower()

    @property
    def field_names(self) -> list[str]:
        return [f.name for f in self.fields]

    @property
    def unique_fields(self) -> frozenset[str]:
        """Names of the fields flagged unique."""
        return frozenset(f.name for f in self.fields if f.unique)

    @property
    def indexed_fields(self) -> frozenset[str]:
        return frozenset(f.name for f in self.fields if f.indexed and not f.unique)

    @property
    def references(self) -> dict[str, str]:
        """Map of reference field name to the collection it points at."""
        return {f.name: f.ref for f in self.fields if f.ref}
