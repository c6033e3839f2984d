"""Service configuration models and the resolver that fills in defaults.

Nine independent concerns are configured per service, plus the top-level
``soft_delete`` switch.  Every model is frozen: once resolved, a
``ServiceConfig`` never changes for the lifetime of its service.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any

from pydantic import BaseModel, Field

from ninja_crud.utils import numbered_slug, slugify

Document = dict[str, Any]
FieldValidator = Callable[[Any, Document], Any]
DocumentCheck = Callable[[Document], Any]
Hook = Callable[..., Any]
PipelineBuilder = Callable[[dict[str, Any]], list[dict[str, Any]]]
CustomFilter = Callable[[Any], dict[str, Any]]
VirtualField = Callable[[Document], Any]

DEFAULT_SLUG_ATTEMPTS = 100

_FROZEN = {"frozen": True, "extra": "forbid"}


class PaginationConfig(BaseModel):
    """Page size and page number defaults for ``find_all``."""

    default_limit: int = Field(default=10, ge=1)
    max_limit: int = Field(default=100, ge=1)
    default_page: int = Field(default=1, ge=1)

    model_config = _FROZEN


class SearchConfig(BaseModel):
    """Substring search across configured fields."""

    enabled: bool = False
    fields: list[str] = Field(default_factory=list)
    case_sensitive: bool = False
    weighted_fields: dict[str, float] = Field(default_factory=dict)

    model_config = _FROZEN

    @property
    def searchable_fields(self) -> list[str]:
        """Configured fields followed by any weighted field not already listed."""
        extra = [f for f in self.weighted_fields if f not in self.fields]
        return [*self.fields, *extra]


class FilterConfig(BaseModel):
    """Which caller query keys are honoured and how results are ordered."""

    allowed_fields: list[str] = Field(default_factory=list)
    default_sort: dict[str, int] = Field(default_factory=lambda: {"created_at": -1})
    custom_filters: dict[str, CustomFilter] = Field(default_factory=dict)

    model_config = _FROZEN


class SlugConfig(BaseModel):
    """Unique slug derivation from a source field."""

    enabled: bool = False
    source_field: str = "name"
    target_field: str = "slug"
    generator: Callable[[str], str] = slugify
    unique_resolver: Callable[[str, int], str] = numbered_slug
    max_attempts: int = Field(default=DEFAULT_SLUG_ATTEMPTS, ge=1)

    model_config = _FROZEN


class PopulateField(BaseModel):
    """A reference field to expand, with an optional explicit target collection."""

    path: str
    collection: str | None = None
    select: list[str] | None = None

    model_config = _FROZEN


class PopulateConfig(BaseModel):
    """Expansion of reference fields on returned documents."""

    fields: list[str | PopulateField] = Field(default_factory=list)
    default_populate: bool = False

    model_config = _FROZEN


class ValidationConfig(BaseModel):
    """Per-field validators plus whole-document checks run around them."""

    custom_validators: dict[str, FieldValidator] = Field(default_factory=dict)
    pre_validate: DocumentCheck | None = None
    post_validate: DocumentCheck | None = None

    model_config = _FROZEN


class HooksConfig(BaseModel):
    """Lifecycle callbacks; each may be a plain function or a coroutine function."""

    before_create: Hook | None = None
    after_create: Hook | None = None
    before_update: Hook | None = None
    after_update: Hook | None = None
    before_delete: Hook | None = None
    after_delete: Hook | None = None

    model_config = _FROZEN


class CacheConfig(BaseModel):
    """In-process read cache."""

    enabled: bool = False
    ttl: float = Field(default=300, gt=0, description="Time to live in seconds.")
    ignored_fields: list[str] = Field(default_factory=list)

    model_config = _FROZEN


class AggregationConfig(BaseModel):
    """Named aggregation pipelines and computed response fields."""

    custom_pipelines: dict[str, PipelineBuilder] = Field(default_factory=dict)
    virtual_fields: dict[str, VirtualField] = Field(default_factory=dict)

    model_config = _FROZEN


class ServiceConfig(BaseModel):
    """Fully populated configuration of one ``CrudService``."""

    pagination: PaginationConfig = Field(default_factory=PaginationConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    filter: FilterConfig = Field(default_factory=FilterConfig)
    slug: SlugConfig = Field(default_factory=SlugConfig)
    populate: PopulateConfig = Field(default_factory=PopulateConfig)
    validation: ValidationConfig = Field(default_factory=ValidationConfig)
    hooks: HooksConfig = Field(default_factory=HooksConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    aggregation: AggregationConfig = Field(default_factory=AggregationConfig)
    soft_delete: bool = True

    model_config = _FROZEN


def resolve_config(partial: ServiceConfig | Mapping[str, Any] | None = None) -> ServiceConfig:
    """Merge a caller-supplied partial configuration with the defaults.

    Sub-configs given as mappings only need the keys the caller wants to
    override.  Mapping-valued options (custom filters, validators, pipelines,
    virtual fields, weighted search fields) replace the default wholesale.
    """
    if partial is None:
        return ServiceConfig()
    if isinstance(partial, ServiceConfig):
        return partial
    return ServiceConfig.model_validate(dict(partial))
