"""Generic CRUD service: the policy pipeline wrapped around one repository.

Every public coroutine returns a :class:`ServiceResponse`; no exception
crosses this boundary.  Deliberate policy failures (:class:`ServiceError`
subclasses) pass through unchanged and anything else is wrapped with the
error code of the operation family that produced it.

Write pipelines run their stages strictly in order:

- create: ``before_create`` hook, unique-field check, document validation,
  slug assignment, persist, ``after_create`` hook, expansion.
- update: load (404), ``before_update`` hook, unique-field check excluding
  self, validation, slug re-assignment when the source field changed,
  persist (404 if vanished), ``after_update`` hook, expansion.
- delete: load (404), ``before_delete`` hook, soft or hard delete,
  ``after_delete`` hook, expansion.
"""

from __future__ import annotations

import asyncio
import csv
import inspect
import io
import json
import logging
import math
from collections.abc import Mapping, Sequence
from datetime import datetime
from typing import Any

from ninja_crud.cache import TTLCache, make_cache_key
from ninja_crud.config import ServiceConfig, resolve_config
from ninja_crud.context import CallContext
from ninja_crud.exceptions import (
    ErrorCode,
    ExportError,
    NotFoundError,
    OperationNotSupportedError,
    PipelineNotFoundError,
    ServiceError,
    SlugGenerationError,
    UniqueFieldError,
    ValidationFailedError,
)
from ninja_crud.protocols import DocumentRepository
from ninja_crud.response import ServiceResponse
from ninja_crud.schema import SYSTEM_FIELDS, EntitySchema
from ninja_crud.utils import escape_regex, normalize_sort

logger = logging.getLogger(__name__)

EXPORT_FORMATS = ("json", "csv")


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def _patch_fields(patch: Mapping[str, Any]) -> dict[str, Any]:
    """Field values a patch assigns, whether plain or under ``$set``."""
    if any(str(key).startswith("$") for key in patch):
        return dict(patch.get("$set", {}))
    return dict(patch)


def _assign(patch: dict[str, Any], field_name: str, value: Any) -> None:
    if any(str(key).startswith("$") for key in patch):
        patch.setdefault("$set", {})[field_name] = value
    else:
        patch[field_name] = value


def _copy_patch(patch: Mapping[str, Any]) -> dict[str, Any]:
    return {k: dict(v) if str(k).startswith("$") and isinstance(v, Mapping) else v for k, v in patch.items()}


def _in_deleted_state(query: Mapping[str, Any]) -> dict[str, Any]:
    if "deleted_at" in query:
        return {"$and": [dict(query), {"deleted_at": {"$ne": None}}]}
    return {**query, "deleted_at": {"$ne": None}}


def _csv_value(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return value


class CrudService:
    """Policy-enforcing CRUD facade over one :class:`DocumentRepository`.

    Args:
        repository: The repository issuing all persistence operations.
        entity: Schema of the entity; its unique fields drive duplicate checks.
        config: Partial or full configuration, resolved once at construction.
    """

    def __init__(
        self,
        repository: DocumentRepository,
        entity: EntitySchema,
        config: ServiceConfig | Mapping[str, Any] | None = None,
    ) -> None:
        self._repository = repository
        self._entity = entity
        self._config = resolve_config(config)
        self._unique_fields = entity.unique_fields
        self._cache = TTLCache(self._config.cache.ttl)

    @property
    def config(self) -> ServiceConfig:
        return self._config

    @property
    def entity(self) -> EntitySchema:
        return self._entity

    @property
    def repository(self) -> DocumentRepository:
        return self._repository

    @property
    def unique_fields(self) -> frozenset[str]:
        return self._unique_fields

    @property
    def cache(self) -> TTLCache:
        return self._cache

    # -- Pipeline stages -------------------------------------------------------

    def _failure(self, exc: Exception, code: ErrorCode, operation: str) -> ServiceResponse[Any]:
        if isinstance(exc, ServiceError):
            logger.debug("%s %s rejected: %s", self._entity.name, operation, exc.code.value)
            return ServiceResponse.fail(exc)
        logger.error("%s %s failed: %s", self._entity.name, operation, type(exc).__name__)
        status_code = 400 if code is ErrorCode.EXPORT_ERROR else None
        return ServiceResponse.fail(ServiceError(str(exc), code=code, status_code=status_code, cause=exc))

    async def _run_hook(self, name: str, *args: Any) -> None:
        hook = getattr(self._config.hooks, name)
        if hook is not None:
            await _maybe_await(hook(*args))

    async def _validate_unique_fields(self, fields: Mapping[str, Any], exclude_id: Any = None) -> None:
        async def check(field_name: str) -> None:
            value = fields.get(field_name)
            if value is None or value == "":
                return
            query: dict[str, Any] = {field_name: value}
            if exclude_id is not None:
                query["_id"] = {"$ne": exclude_id}
            if await self._repository.exists(query):
                raise UniqueFieldError(field_name, value)

        await asyncio.gather(*(check(name) for name in sorted(self._unique_fields)))

    async def _run_field_validators(self, fields: Mapping[str, Any]) -> None:
        async def check(field_name: str, validator: Any) -> None:
            try:
                valid = await _maybe_await(validator(fields[field_name], fields))
            except ValueError as exc:
                raise ValidationFailedError(str(exc), field_name=field_name, cause=exc) from exc
            if not valid:
                raise ValidationFailedError(f"Validation failed for field {field_name}.", field_name=field_name)

        validators = self._config.validation.custom_validators
        await asyncio.gather(*(check(name, fn) for name, fn in validators.items() if name in fields))

    async def _run_document_check(self, check: Any, fields: Mapping[str, Any]) -> None:
        if check is None:
            return
        try:
            result = await _maybe_await(check(fields))
        except ValueError as exc:
            raise ValidationFailedError(str(exc), cause=exc) from exc
        if result is False:
            raise ValidationFailedError("Document validation failed.")

    async def _validate_document(self, fields: Mapping[str, Any]) -> None:
        """Pre-validate, per-field validators, then post-validate."""
        validation = self._config.validation
        await self._run_document_check(validation.pre_validate, fields)
        await self._run_field_validators(fields)
        await self._run_document_check(validation.post_validate, fields)

    async def _generate_slug(
        self, fields: Mapping[str, Any], exclude_id: Any = None, reserved: set[str] | None = None
    ) -> str | None:
        """Return the first free slug for the source value, or None if there is no source value."""
        source_value = fields.get(self._config.slug.source_field)
        if not source_value:
            return None
        return await self._free_slug(self._config.slug.generator(str(source_value)), exclude_id, reserved)

    async def _free_slug(self, base: str, exclude_id: Any = None, reserved: set[str] | None = None) -> str:
        slug_config = self._config.slug
        candidate = base
        for attempt in range(1, slug_config.max_attempts + 1):
            query: dict[str, Any] = {slug_config.target_field: candidate}
            if exclude_id is not None:
                query["_id"] = {"$ne": exclude_id}
            taken = reserved is not None and candidate in reserved
            if not taken and not await self._repository.exists(query):
                if reserved is not None:
                    reserved.add(candidate)
                return candidate
            candidate = slug_config.unique_resolver(base, attempt)
        raise SlugGenerationError(
            f"Could not generate a unique {slug_config.target_field} for '{base}'.",
            suggestions=[f"Tried {slug_config.max_attempts} candidates derived from '{base}'."],
        )

    async def _prepare_create(
        self, data: dict[str, Any], *, hooks: bool = True, reserved: set[str] | None = None
    ) -> None:
        if hooks:
            await self._run_hook("before_create", data)
        await self._validate_unique_fields(data)
        await self._validate_document(data)
        if self._config.slug.enabled:
            slug = await self._generate_slug(data, reserved=reserved)
            if slug is not None:
                data[self._config.slug.target_field] = slug

    async def _expand(self, document: dict[str, Any], populate: bool | None = None) -> dict[str, Any]:
        populate_config = self._config.populate
        wanted = populate_config.default_populate if populate is None else populate
        if not wanted or not populate_config.fields:
            return document
        return await self._repository.populate(document, populate_config.fields)

    def _shape(self, document: dict[str, Any]) -> dict[str, Any]:
        """Add configured virtual fields to an outgoing document."""
        virtual_fields = self._config.aggregation.virtual_fields
        if not virtual_fields:
            return document
        return {**document, **{name: compute(document) for name, compute in virtual_fields.items()}}

    async def _finish(self, document: dict[str, Any], populate: bool | None = None) -> dict[str, Any]:
        return self._shape(await self._expand(document, populate))

    async def _cached(self, method: str, params: dict[str, Any], compute: Any) -> Any:
        if not self._config.cache.enabled:
            return await compute()
        key = make_cache_key(method, params, self._config.cache.ignored_fields)
        return await self._cache.get_or_compute(key, compute)

    def _search_query(self, search: str | None) -> dict[str, Any] | None:
        search_config = self._config.search
        fields = search_config.searchable_fields
        if not search or not search_config.enabled or not fields:
            return None
        condition: dict[str, Any] = {"$regex": escape_regex(search)}
        if not search_config.case_sensitive:
            condition["$options"] = "i"
        return {"$or": [{name: dict(condition)} for name in fields]}

    def _build_query(self, query: Mapping[str, Any] | None, search: str | None = None) -> dict[str, Any]:
        """Allowed-fields filtered caller query AND custom filters AND the search clause."""
        filter_config = self._config.filter
        allowed = set(filter_config.allowed_fields)
        filtered: dict[str, Any] = {}
        clauses: list[dict[str, Any]] = []
        for key, value in (query or {}).items():
            if key in filter_config.custom_filters:
                clauses.append(filter_config.custom_filters[key](value))
            elif not allowed or key in allowed:
                filtered[key] = value
        search_query = self._search_query(search)
        if search_query:
            clauses.append(search_query)
        if not clauses:
            return filtered
        if filtered:
            clauses.insert(0, filtered)
        return clauses[0] if len(clauses) == 1 else {"$and": clauses}

    # -- Create ----------------------------------------------------------------

    async def create(
        self, data: Mapping[str, Any], *, context: CallContext | None = None
    ) -> ServiceResponse[dict[str, Any]]:
        try:
            document = dict(data)
            await self._prepare_create(document)
            created = await self._repository.create(document, context=context)
            await self._run_hook("after_create", created)
            return ServiceResponse.ok({"docs": await self._finish(created)})
        except Exception as exc:
            return self._failure(exc, ErrorCode.DATABASE_ERROR, "create")

    async def bulk_create(
        self,
        documents: Sequence[Mapping[str, Any]],
        *,
        skip_validation: bool = False,
        ordered: bool = True,
        context: CallContext | None = None,
    ) -> ServiceResponse[dict[str, Any]]:
        """Run the create pipeline for every document, then insert them in one call."""
        try:
            prepared = [dict(doc) for doc in documents]
            if not skip_validation:
                reserved: set[str] = set()
                for document in prepared:
                    await self._prepare_create(document, reserved=reserved)
            created = await self._repository.create_many(prepared, ordered=ordered, context=context)
            for document in created:
                await self._run_hook("after_create", document)
            return ServiceResponse.ok({"docs": [self._shape(doc) for doc in created]})
        except Exception as exc:
            return self._failure(exc, ErrorCode.BULK_CREATE_ERROR, "bulk_create")

    async def batch_create(
        self,
        documents: Sequence[Mapping[str, Any]],
        *,
        validate_before_insert: bool = False,
        skip_validation: bool = False,
        ordered: bool = True,
        context: CallContext | None = None,
    ) -> ServiceResponse[dict[str, Any]]:
        """Insert *documents* as one set; hooks are not run.

        Uniqueness, validation and slug assignment only run when
        ``validate_before_insert`` is set.
        """
        try:
            prepared = [dict(doc) for doc in documents]
            if validate_before_insert and not skip_validation:
                reserved: set[str] = set()
                for document in prepared:
                    await self._prepare_create(document, hooks=False, reserved=reserved)
            created = await self._repository.create_many(prepared, ordered=ordered, context=context)
            return ServiceResponse.ok({"docs": [self._shape(doc) for doc in created], "total": len(created)})
        except Exception as exc:
            return self._failure(exc, ErrorCode.BATCH_CREATE_ERROR, "batch_create")

    # -- Read ------------------------------------------------------------------

    async def find_all(
        self,
        query: Mapping[str, Any] | None = None,
        *,
        sort: Mapping[str, int] | str | None = None,
        page: int | None = None,
        limit: int | None = None,
        search: str | None = None,
        paginate: bool = True,
        include_deleted: bool = False,
        populate: bool | None = None,
    ) -> ServiceResponse[dict[str, Any]]:
        """List documents with filtering, search, sorting and pagination.

        ``meta.total`` counts every visible record, ``meta.results`` the
        records matching the combined query.  Paginated calls add ``page``,
        ``limit``, ``totalPages``, ``remainingItems`` and ``pageItemsCount``.
        """
        params = {
            "query": dict(query or {}),
            "sort": sort,
            "page": page,
            "limit": limit,
            "search": search,
            "paginate": paginate,
            "include_deleted": include_deleted,
            "populate": populate,
        }

        async def compute() -> ServiceResponse[dict[str, Any]]:
            pagination = self._config.pagination
            final_query = self._build_query(query, search)
            final_sort = normalize_sort(sort) or dict(self._config.filter.default_sort)
            final_page = max(1, pagination.default_page if page is None else page)
            final_limit = max(1, min(pagination.max_limit, pagination.default_limit if limit is None else limit))
            logger.debug("%s find_all query: %s", self._entity.name, final_query)

            skip, page_limit = ((final_page - 1) * final_limit, final_limit) if paginate else (0, 0)
            documents, total, results = await asyncio.gather(
                self._repository.find_all(
                    final_query, sort=final_sort, skip=skip, limit=page_limit, include_deleted=include_deleted
                ),
                self._repository.count_documents({}, include_deleted=include_deleted),
                self._repository.count_documents(final_query, include_deleted=include_deleted),
            )
            docs = [await self._finish(doc, populate) for doc in documents]
            meta: dict[str, Any] = {"total": total, "results": results}
            if paginate:
                meta.update(
                    page=final_page,
                    limit=final_limit,
                    totalPages=math.ceil(results / final_limit),
                    remainingItems=max(0, results - final_page * final_limit),
                    pageItemsCount=len(documents),
                )
            return ServiceResponse.ok({"docs": docs}, meta)

        try:
            return await self._cached("find_all", params, compute)
        except Exception as exc:
            return self._failure(exc, ErrorCode.DATABASE_ERROR, "find_all")

    async def _find_single(
        self, method: str, query: dict[str, Any], populate: bool | None, include_deleted: bool
    ) -> ServiceResponse[dict[str, Any]]:
        async def compute() -> ServiceResponse[dict[str, Any]]:
            document = await self._repository.find_one(query, include_deleted=include_deleted)
            if document is None:
                raise NotFoundError("The requested document was not found.")
            return ServiceResponse.ok({"docs": await self._finish(document, populate)})

        params = {"query": query, "populate": populate, "include_deleted": include_deleted}
        try:
            return await self._cached(method, params, compute)
        except Exception as exc:
            return self._failure(exc, ErrorCode.DATABASE_ERROR, method)

    async def find_one(
        self, query: Mapping[str, Any], *, populate: bool | None = None, include_deleted: bool = False
    ) -> ServiceResponse[dict[str, Any]]:
        return await self._find_single("find_one", dict(query), populate, include_deleted)

    async def find_by_id(
        self, id: Any, *, populate: bool | None = None, include_deleted: bool = False
    ) -> ServiceResponse[dict[str, Any]]:
        return await self._find_single("find_by_id", {"_id": id}, populate, include_deleted)

    async def exists(self, query: Mapping[str, Any], *, include_deleted: bool = False) -> ServiceResponse[dict[str, bool]]:
        try:
            found = await self._repository.exists(dict(query), include_deleted=include_deleted)
            return ServiceResponse.ok({"exists": found})
        except Exception as exc:
            return self._failure(exc, ErrorCode.DATABASE_ERROR, "exists")

    def clear_cache(self) -> None:
        """Drop every cached read result."""
        self._cache.clear()

    # -- Update ----------------------------------------------------------------

    async def update(
        self,
        query: Mapping[str, Any],
        patch: Mapping[str, Any],
        *,
        include_deleted: bool = False,
        context: CallContext | None = None,
    ) -> ServiceResponse[dict[str, Any]]:
        """Update the first matching record.

        *patch* is a plain field mapping or an operator-form update; validation
        and uniqueness checks see the fields it assigns.
        """
        try:
            existing = await self._repository.find_one(dict(query), include_deleted=include_deleted)
            if existing is None:
                raise NotFoundError("Document to update not found.")
            changes = _copy_patch(patch)
            await self._run_hook("before_update", existing, changes)

            fields = _patch_fields(changes)
            await self._validate_unique_fields(fields, exclude_id=existing["_id"])
            await self._validate_document(fields)

            slug_config = self._config.slug
            source = slug_config.source_field
            if slug_config.enabled and source in fields and fields[source] != existing.get(source):
                slug = await self._generate_slug(fields, exclude_id=existing["_id"])
                if slug is not None:
                    _assign(changes, slug_config.target_field, slug)

            updated = await self._repository.update(
                {"_id": existing["_id"]}, changes, include_deleted=include_deleted, context=context
            )
            if updated is None:
                raise NotFoundError("Updated document not found.")
            await self._run_hook("after_update", updated)
            return ServiceResponse.ok({"docs": await self._finish(updated)})
        except Exception as exc:
            return self._failure(exc, ErrorCode.DATABASE_ERROR, "update")

    async def update_by_id(
        self,
        id: Any,
        patch: Mapping[str, Any],
        *,
        include_deleted: bool = False,
        context: CallContext | None = None,
    ) -> ServiceResponse[dict[str, Any]]:
        return await self.update({"_id": id}, patch, include_deleted=include_deleted, context=context)

    async def _validate_each(self, query: dict[str, Any], patch: Mapping[str, Any]) -> None:
        fields = _patch_fields(patch)
        documents = await self._repository.find_all(query)
        await asyncio.gather(*(self._validate_document({**doc, **fields}) for doc in documents))

    async def bulk_update(
        self,
        query: Mapping[str, Any],
        patch: Mapping[str, Any],
        *,
        validate_each: bool = False,
        context: CallContext | None = None,
    ) -> ServiceResponse[dict[str, int]]:
        """Apply one patch to every live record matching *query*."""
        try:
            if validate_each:
                await self._validate_each(dict(query), patch)
            modified = await self._repository.update_many(dict(query), dict(patch), context=context)
            return ServiceResponse.ok({"modified": modified})
        except Exception as exc:
            return self._failure(exc, ErrorCode.BULK_UPDATE_ERROR, "bulk_update")

    async def batch_update(
        self,
        updates: Sequence[Mapping[str, Any]],
        *,
        validate_each: bool = False,
        context: CallContext | None = None,
    ) -> ServiceResponse[dict[str, int]]:
        """Run independent ``{"filter": ..., "update": ...}`` pairs concurrently and sum the results.

        Any failing member fails the whole batch.
        """

        async def run(item: Mapping[str, Any]) -> int:
            query, patch = dict(item["filter"]), dict(item["update"])
            if validate_each:
                await self._validate_each(query, patch)
            return await self._repository.update_many(query, patch, context=context)

        try:
            counts = await asyncio.gather(*(run(item) for item in updates))
            return ServiceResponse.ok({"updated": sum(counts)})
        except Exception as exc:
            return self._failure(exc, ErrorCode.BATCH_UPDATE_ERROR, "batch_update")

    # -- Delete ----------------------------------------------------------------

    async def delete(
        self, query: Mapping[str, Any], *, context: CallContext | None = None
    ) -> ServiceResponse[dict[str, Any]]:
        """Delete the first live matching record, softly unless soft delete is disabled."""
        try:
            existing = await self._repository.find_one(dict(query))
            if existing is None:
                raise NotFoundError("Document to delete not found.")
            await self._run_hook("before_delete", existing)
            deleted = await self._repository.delete(
                {"_id": existing["_id"]}, soft_delete=self._config.soft_delete, context=context
            )
            if deleted is None:
                raise NotFoundError(
                    "Document to soft delete not found." if self._config.soft_delete else "Document to delete not found."
                )
            await self._run_hook("after_delete", deleted)
            return ServiceResponse.ok({"docs": await self._finish(deleted)})
        except Exception as exc:
            return self._failure(exc, ErrorCode.DATABASE_ERROR, "delete")

    async def delete_by_id(self, id: Any, *, context: CallContext | None = None) -> ServiceResponse[dict[str, Any]]:
        return await self.delete({"_id": id}, context=context)

    async def bulk_delete(
        self,
        query: Mapping[str, Any],
        *,
        soft_delete: bool | None = None,
        context: CallContext | None = None,
    ) -> ServiceResponse[dict[str, int]]:
        try:
            soft = self._config.soft_delete if soft_delete is None else soft_delete
            deleted = await self._repository.delete_many(dict(query), soft_delete=soft, context=context)
            return ServiceResponse.ok({"deleted": deleted})
        except Exception as exc:
            return self._failure(exc, ErrorCode.BULK_DELETE_ERROR, "bulk_delete")

    async def batch_delete(
        self,
        filters: Sequence[Mapping[str, Any]],
        *,
        soft_delete: bool | None = None,
        validate_before_delete: bool = False,
        context: CallContext | None = None,
    ) -> ServiceResponse[dict[str, int]]:
        soft = self._config.soft_delete if soft_delete is None else soft_delete

        async def run(query: dict[str, Any]) -> int:
            if validate_before_delete and not await self._repository.exists(query):
                return 0
            return await self._repository.delete_many(query, soft_delete=soft, context=context)

        try:
            counts = await asyncio.gather(*(run(dict(f)) for f in filters))
            return ServiceResponse.ok({"deleted": sum(counts)})
        except Exception as exc:
            return self._failure(exc, ErrorCode.BATCH_DELETE_ERROR, "batch_delete")

    # -- Restore ---------------------------------------------------------------

    def _restore_unsupported(self) -> ServiceResponse[Any] | None:
        if self._config.soft_delete:
            return None
        return ServiceResponse.fail(OperationNotSupportedError("Soft delete is not enabled for this service."))

    async def _restore_record(self, record: dict[str, Any], context: CallContext | None) -> dict[str, Any] | None:
        """Bring one deleted record back, keeping unique fields and the slug unique among live records.

        A unique value re-used while the record was deleted fails the restore;
        a re-used slug is replaced by the next free one.
        """
        record_id = record["_id"]
        await self._validate_unique_fields(record, exclude_id=record_id)
        changes: dict[str, Any] = {}
        slug_config = self._config.slug
        current = record.get(slug_config.target_field)
        if slug_config.enabled and current:
            if await self._repository.exists({slug_config.target_field: current, "_id": {"$ne": record_id}}):
                slug = await self._generate_slug(record, exclude_id=record_id)
                changes[slug_config.target_field] = slug or await self._free_slug(str(current), record_id)
        return await self._repository.restore({"_id": record_id}, set_fields=changes or None, context=context)

    async def restore(
        self, query: Mapping[str, Any], *, context: CallContext | None = None
    ) -> ServiceResponse[dict[str, Any]]:
        unsupported = self._restore_unsupported()
        if unsupported is not None:
            return unsupported
        try:
            record = await self._repository.find_one(_in_deleted_state(query), include_deleted=True)
            if record is None:
                raise NotFoundError("Document not found in deleted state.")
            restored = await self._restore_record(record, context)
            if restored is None:
                raise NotFoundError("Document not found in deleted state.")
            return ServiceResponse.ok({"docs": await self._finish(restored)})
        except Exception as exc:
            return self._failure(exc, ErrorCode.RESTORE_ERROR, "restore")

    async def restore_by_id(self, id: Any, *, context: CallContext | None = None) -> ServiceResponse[dict[str, Any]]:
        return await self.restore({"_id": id}, context=context)

    async def batch_restore(
        self,
        filters: Sequence[Mapping[str, Any]],
        *,
        validate_before_restore: bool = False,
        context: CallContext | None = None,
    ) -> ServiceResponse[dict[str, int]]:
        """Restore every deleted record matching any of *filters*.

        Matching records are looked up concurrently and restored one at a
        time, so each sees the records restored before it when unique fields
        and slugs are checked.
        """
        unsupported = self._restore_unsupported()
        if unsupported is not None:
            return unsupported

        async def collect(query: Mapping[str, Any]) -> list[dict[str, Any]]:
            deleted_query = _in_deleted_state(query)
            if validate_before_restore and not await self._repository.exists(deleted_query, include_deleted=True):
                return []
            return await self._repository.find_all(deleted_query, include_deleted=True)

        try:
            groups = await asyncio.gather(*(collect(f) for f in filters))
            restored = 0
            for records in groups:
                for record in records:
                    if await self._restore_record(record, context) is not None:
                        restored += 1
            return ServiceResponse.ok({"restored": restored})
        except Exception as exc:
            return self._failure(exc, ErrorCode.BATCH_RESTORE_ERROR, "batch_restore")

    # -- Clone, aggregation, export --------------------------------------------

    async def clone(
        self,
        id: Any,
        overrides: Mapping[str, Any] | None = None,
        *,
        context: CallContext | None = None,
    ) -> ServiceResponse[dict[str, Any]]:
        """Copy a record (minus identity and audit fields) through the create pipeline."""
        try:
            source = await self._repository.find_by_id(id)
            if source is None:
                raise NotFoundError("Source document not found.")
            data = {k: v for k, v in source.items() if k not in SYSTEM_FIELDS}
            data.update(overrides or {})
        except Exception as exc:
            return self._failure(exc, ErrorCode.CLONE_ERROR, "clone")
        return await self.create(data, context=context)

    async def aggregate(self, name: str, params: Mapping[str, Any] | None = None) -> ServiceResponse[dict[str, Any]]:
        """Build the named pipeline from *params* and run it."""
        try:
            builder = self._config.aggregation.custom_pipelines.get(name)
            if builder is None:
                raise PipelineNotFoundError(f"Aggregation pipeline '{name}' not found.")
            rows = await self._repository.aggregate(builder(dict(params or {})))
            return ServiceResponse.ok({"docs": rows})
        except Exception as exc:
            return self._failure(exc, ErrorCode.AGGREGATION_ERROR, "aggregate")

    def _export_fields(
        self, documents: list[dict[str, Any]], include: Sequence[str] | None, exclude: Sequence[str] | None
    ) -> list[str]:
        if include:
            return list(include)
        fields = ["_id", *self._entity.field_names]
        for document in documents:
            fields.extend(key for key in document if key not in fields)
        excluded = set(exclude or ())
        return [name for name in fields if name not in excluded]

    async def export(
        self,
        query: Mapping[str, Any] | None = None,
        *,
        format: str = "json",
        include: Sequence[str] | None = None,
        exclude: Sequence[str] | None = None,
        delimiter: str = ",",
    ) -> ServiceResponse[dict[str, Any]]:
        """Export every matching record as JSON rows or delimited text.

        ``include`` and ``exclude`` are mutually exclusive projections.
        """
        try:
            if include and exclude:
                raise ExportError('The "include" and "exclude" options cannot be used together.')
            if format not in EXPORT_FORMATS:
                raise ExportError(f"Unsupported export format '{format}'.", suggestions=list(EXPORT_FORMATS))
            documents = await self._repository.find_all(
                self._build_query(query), sort=dict(self._config.filter.default_sort)
            )
            documents = [self._shape(doc) for doc in documents]
            fields = self._export_fields(documents, include, exclude)
            rows = [{name: doc.get(name) for name in fields} for doc in documents]
            if format == "csv":
                buffer = io.StringIO()
                writer = csv.writer(buffer, delimiter=delimiter, lineterminator="\n")
                writer.writerow(fields)
                writer.writerows([_csv_value(row[name]) for name in fields] for row in rows)
                return ServiceResponse.ok({"result": buffer.getvalue(), "format": "csv"})
            return ServiceResponse.ok({"result": rows, "format": "json"})
        except Exception as exc:
            return self._failure(exc, ErrorCode.EXPORT_ERROR, "export")

    def __repr__(self) -> str:
        return f"CrudService(entity={self._entity.name!r}, soft_delete={self._config.soft_delete})"
