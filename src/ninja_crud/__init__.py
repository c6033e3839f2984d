"""Ninja CRUD: soft-delete aware repository and policy-enforcing service layer over MongoDB."""

from ninja_crud.cache import TTLCache, make_cache_key
from ninja_crud.config import (
    AggregationConfig,
    CacheConfig,
    FilterConfig,
    HooksConfig,
    PaginationConfig,
    PopulateConfig,
    PopulateField,
    SearchConfig,
    ServiceConfig,
    SlugConfig,
    ValidationConfig,
    resolve_config,
)
from ninja_crud.connections import ConnectionManager, ConnectionProfile, redact_url
from ninja_crud.context import SYSTEM_CONTEXT, CallContext
from ninja_crud.exceptions import (
    ConnectionFailedError,
    DuplicateEntityError,
    ErrorCode,
    ExportError,
    NotFoundError,
    OperationNotSupportedError,
    PersistenceError,
    PipelineNotFoundError,
    QueryError,
    ServiceError,
    SlugGenerationError,
    UniqueFieldError,
    ValidationFailedError,
)
from ninja_crud.interceptors import (
    AuditTrailInterceptor,
    HistoryInterceptor,
    InterceptorChain,
    TimestampInterceptor,
    VersionInterceptor,
    WriteEvent,
    WriteInterceptor,
    WriteOperation,
)
from ninja_crud.memory import InMemoryCollection, InMemoryDatabase
from ninja_crud.protocols import DocumentRepository
from ninja_crud.registry import ServiceRegistry
from ninja_crud.repository import MongoRepository
from ninja_crud.response import ServiceResponse
from ninja_crud.schema import EntitySchema, FieldSchema, FieldType
from ninja_crud.service import CrudService
from ninja_crud.utils import parse_sort_param, slugify

__all__ = [
    "AggregationConfig",
    "AuditTrailInterceptor",
    "CacheConfig",
    "CallContext",
    "ConnectionFailedError",
    "ConnectionManager",
    "ConnectionProfile",
    "CrudService",
    "DocumentRepository",
    "DuplicateEntityError",
    "EntitySchema",
    "ErrorCode",
    "ExportError",
    "FieldSchema",
    "FieldType",
    "FilterConfig",
    "HistoryInterceptor",
    "HooksConfig",
    "InMemoryCollection",
    "InMemoryDatabase",
    "InterceptorChain",
    "MongoRepository",
    "NotFoundError",
    "OperationNotSupportedError",
    "PaginationConfig",
    "PersistenceError",
    "PipelineNotFoundError",
    "PopulateConfig",
    "PopulateField",
    "QueryError",
    "SYSTEM_CONTEXT",
    "SearchConfig",
    "ServiceConfig",
    "ServiceError",
    "ServiceRegistry",
    "ServiceResponse",
    "SlugConfig",
    "SlugGenerationError",
    "TTLCache",
    "TimestampInterceptor",
    "UniqueFieldError",
    "ValidationConfig",
    "ValidationFailedError",
    "VersionInterceptor",
    "WriteEvent",
    "WriteInterceptor",
    "WriteOperation",
    "make_cache_key",
    "parse_sort_param",
    "redact_url",
    "resolve_config",
    "slugify",
]
