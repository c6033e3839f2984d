"""Motor/MongoDB repository enforcing soft-delete visibility."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from bson import ObjectId
from pymongo import ReturnDocument

from ninja_crud.config import PopulateField
from ninja_crud.context import SYSTEM_CONTEXT, CallContext
from ninja_crud.exceptions import (
    ConnectionFailedError,
    DuplicateEntityError,
    PersistenceError,
    QueryError,
)
from ninja_crud.interceptors import InterceptorChain, WriteEvent, WriteInterceptor, WriteOperation, utcnow
from ninja_crud.schema import EntitySchema

logger = logging.getLogger(__name__)

DELETED_AT = "deleted_at"
DELETED_BY = "deleted_by"


def coerce_id(value: Any) -> Any:
    """Turn a 24-character hex string into an ``ObjectId``; leave anything else alone."""
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return value


class MongoRepository:
    """Async repository for one entity collection, backed by Motor.

    ``database`` is a Motor database (or any object whose ``database[name]``
    returns a Motor-compatible collection, such as
    :class:`ninja_crud.memory.InMemoryDatabase`).  Every write is wrapped in a
    :class:`WriteEvent` and passed through the interceptor chain, which
    defaults to timestamps only.
    """

    def __init__(
        self,
        entity: EntitySchema,
        database: Any = None,
        *,
        interceptors: Sequence[WriteInterceptor] | None = None,
    ) -> None:
        self._entity = entity
        self._database = database
        self._collection_name = entity.collection
        self._chain = InterceptorChain.of(interceptors)

    @property
    def entity(self) -> EntitySchema:
        return self._entity

    @property
    def interceptors(self) -> InterceptorChain:
        return self._chain

    def _get_collection(self, name: str | None = None) -> Any:
        """Return the Motor collection, raising if no database is configured."""
        if self._database is None:
            raise RuntimeError(
                "MongoRepository requires a Motor database instance. Pass it via the `database` constructor parameter."
            )
        return self._database[name or self._collection_name]

    # -- Query helpers ---------------------------------------------------------

    @staticmethod
    def _prepare(query: dict[str, Any] | None) -> dict[str, Any]:
        prepared = dict(query or {})
        if "_id" in prepared and not isinstance(prepared["_id"], dict):
            prepared["_id"] = coerce_id(prepared["_id"])
        return prepared

    def _visible(self, query: dict[str, Any] | None, include_deleted: bool = False) -> dict[str, Any]:
        """Conjoin the live-records predicate unless *include_deleted* is set."""
        prepared = self._prepare(query)
        if include_deleted:
            return prepared
        if DELETED_AT in prepared:
            return {"$and": [prepared, {DELETED_AT: None}]}
        return {**prepared, DELETED_AT: None}

    def _deleted(self, query: dict[str, Any] | None) -> dict[str, Any]:
        prepared = self._prepare(query)
        if DELETED_AT in prepared:
            return {"$and": [prepared, {DELETED_AT: {"$ne": None}}]}
        return {**prepared, DELETED_AT: {"$ne": None}}

    @staticmethod
    def _as_update(patch: dict[str, Any]) -> dict[str, Any]:
        """Wrap a plain field patch in ``$set``; operator-form updates pass through."""
        if any(str(key).startswith("$") for key in patch):
            return {op: dict(fields) for op, fields in patch.items()}
        return {"$set": {k: v for k, v in patch.items() if k != "_id"}}

    def _event(
        self, operation: WriteOperation, context: CallContext | None, **kwargs: Any
    ) -> WriteEvent:
        return WriteEvent(operation, self._entity.name, context or SYSTEM_CONTEXT, **kwargs)

    def _translate(self, exc: Exception, operation: str, detail: str, *, read: bool = False) -> PersistenceError:
        """Map a driver exception onto the persistence exception hierarchy and log it."""
        name = self._entity.name
        if _is_duplicate_key_error(exc):
            logger.error("Mongo %s failed for %s: duplicate key", operation, name)
            return DuplicateEntityError(
                entity_name=name,
                operation=operation,
                detail="A document with the same key already exists.",
                cause=exc,
            )
        if _is_connection_error(exc):
            logger.error("Mongo %s connection error for %s: %s", operation, name, type(exc).__name__)
            return ConnectionFailedError(
                entity_name=name,
                operation=operation,
                detail="Database connection failed.",
                cause=exc,
            )
        logger.error("Mongo %s failed for %s: %s", operation, name, type(exc).__name__)
        error_cls = QueryError if read else PersistenceError
        return error_cls(entity_name=name, operation=operation, detail=detail, cause=exc)

    # -- Create ----------------------------------------------------------------

    async def create(self, data: dict[str, Any], *, context: CallContext | None = None) -> dict[str, Any]:
        """Insert a new document and return it with its ``_id``."""
        document = dict(data)
        document.setdefault(DELETED_AT, None)
        document.setdefault(DELETED_BY, None)
        event = self._event(WriteOperation.CREATE, context, document=document)
        await self._chain.before(event)
        coll = self._get_collection()
        try:
            result = await coll.insert_one(document)
        except Exception as exc:
            raise self._translate(exc, "create", "Insert operation failed.") from exc
        document["_id"] = result.inserted_id
        event.result = document
        await self._chain.after(event)
        return document

    async def create_many(
        self,
        documents: Sequence[dict[str, Any]],
        *,
        ordered: bool = True,
        context: CallContext | None = None,
    ) -> list[dict[str, Any]]:
        """Insert several documents.

        With ``ordered=True`` the engine stops at the first failing insert;
        otherwise it attempts every document.  Any failure raises.
        """
        prepared: list[dict[str, Any]] = []
        events: list[WriteEvent] = []
        for data in documents:
            document = dict(data)
            document.setdefault(DELETED_AT, None)
            document.setdefault(DELETED_BY, None)
            event = self._event(WriteOperation.CREATE, context, document=document, many=True)
            await self._chain.before(event)
            prepared.append(document)
            events.append(event)
        if not prepared:
            return []
        coll = self._get_collection()
        try:
            result = await coll.insert_many(prepared, ordered=ordered)
        except Exception as exc:
            raise self._translate(exc, "create_many", "Bulk insert operation failed.") from exc
        for document, inserted_id, event in zip(prepared, result.inserted_ids, events):
            document["_id"] = inserted_id
            event.result = document
            await self._chain.after(event)
        return prepared

    # -- Read ------------------------------------------------------------------

    async def find_all(
        self,
        query: dict[str, Any] | None = None,
        *,
        sort: dict[str, int] | None = None,
        skip: int = 0,
        limit: int = 0,
        include_deleted: bool = False,
    ) -> list[dict[str, Any]]:
        """Return matching documents; ``limit=0`` means no limit."""
        filters = self._visible(query, include_deleted)
        logger.debug("Mongo find_all on %s: %s", self._collection_name, filters)
        coll = self._get_collection()
        try:
            cursor = coll.find(filters)
            if sort:
                cursor = cursor.sort(list(sort.items()))
            if skip:
                cursor = cursor.skip(skip)
            if limit:
                cursor = cursor.limit(limit)
            return [dict(doc) async for doc in cursor]
        except Exception as exc:
            raise self._translate(exc, "find_all", "Query execution failed.", read=True) from exc

    async def find_one(self, query: dict[str, Any], *, include_deleted: bool = False) -> dict[str, Any] | None:
        coll = self._get_collection()
        try:
            doc = await coll.find_one(self._visible(query, include_deleted))
        except Exception as exc:
            raise self._translate(exc, "find_one", "Query execution failed.", read=True) from exc
        return dict(doc) if doc else None

    async def find_by_id(self, id: Any, *, include_deleted: bool = False) -> dict[str, Any] | None:
        """Retrieve a single document by ``_id``."""
        return await self.find_one({"_id": id}, include_deleted=include_deleted)

    async def count_documents(
        self,
        query: dict[str, Any] | None = None,
        *,
        skip: int = 0,
        limit: int = 0,
        include_deleted: bool = False,
    ) -> int:
        options: dict[str, int] = {}
        if skip:
            options["skip"] = skip
        if limit:
            options["limit"] = limit
        coll = self._get_collection()
        try:
            return int(await coll.count_documents(self._visible(query, include_deleted), **options))
        except Exception as exc:
            raise self._translate(exc, "count_documents", "Count failed.", read=True) from exc

    async def exists(self, query: dict[str, Any], *, include_deleted: bool = False) -> bool:
        coll = self._get_collection()
        try:
            doc = await coll.find_one(self._visible(query, include_deleted), {"_id": 1})
        except Exception as exc:
            raise self._translate(exc, "exists", "Existence check failed.", read=True) from exc
        return doc is not None

    async def aggregate(self, pipeline: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Run *pipeline* as given; no soft-delete filter is added."""
        coll = self._get_collection()
        try:
            return [dict(doc) async for doc in coll.aggregate(pipeline)]
        except Exception as exc:
            raise self._translate(exc, "aggregate", "Aggregation failed.", read=True) from exc

    # -- Update ----------------------------------------------------------------

    async def _find_and_modify(
        self,
        operation: WriteOperation,
        filters: dict[str, Any],
        update: dict[str, Any],
        context: CallContext | None,
        *,
        soft: bool = False,
    ) -> dict[str, Any] | None:
        event = self._event(operation, context, query=filters, update=update, soft=soft)
        await self._chain.before(event)
        coll = self._get_collection()
        try:
            doc = await coll.find_one_and_update(filters, update, return_document=ReturnDocument.AFTER)
        except Exception as exc:
            raise self._translate(exc, operation.value, f"{operation.value.capitalize()} operation failed.") from exc
        event.result = dict(doc) if doc else None
        await self._chain.after(event)
        return event.result

    async def update(
        self,
        query: dict[str, Any],
        patch: dict[str, Any],
        *,
        include_deleted: bool = False,
        context: CallContext | None = None,
    ) -> dict[str, Any] | None:
        """Apply *patch* to the first matching document and return it updated.

        *patch* is either a plain field mapping (applied with ``$set``) or an
        operator-form update.
        """
        filters = self._visible(query, include_deleted)
        return await self._find_and_modify(WriteOperation.UPDATE, filters, self._as_update(patch), context)

    async def update_by_id(
        self,
        id: Any,
        patch: dict[str, Any],
        *,
        include_deleted: bool = False,
        context: CallContext | None = None,
    ) -> dict[str, Any] | None:
        return await self.update({"_id": id}, patch, include_deleted=include_deleted, context=context)

    async def update_many(
        self, query: dict[str, Any], patch: dict[str, Any], *, context: CallContext | None = None
    ) -> int:
        """Apply *patch* to every live matching document; return how many changed."""
        filters = self._visible(query)
        update = self._as_update(patch)
        event = self._event(WriteOperation.UPDATE, context, query=filters, update=update, many=True)
        await self._chain.before(event)
        coll = self._get_collection()
        try:
            result = await coll.update_many(filters, update)
        except Exception as exc:
            raise self._translate(exc, "update_many", "Bulk update operation failed.") from exc
        event.result = result.modified_count
        await self._chain.after(event)
        return result.modified_count

    # -- Delete / restore ------------------------------------------------------

    async def delete(
        self,
        query: dict[str, Any],
        *,
        soft_delete: bool = True,
        context: CallContext | None = None,
    ) -> dict[str, Any] | None:
        """Delete the first live matching document and return it.

        The soft path stamps ``deleted_at``; the hard path removes the document.
        """
        filters = self._visible(query)
        if soft_delete:
            update = {"$set": {DELETED_AT: utcnow()}}
            return await self._find_and_modify(WriteOperation.DELETE, filters, update, context, soft=True)
        event = self._event(WriteOperation.DELETE, context, query=filters)
        await self._chain.before(event)
        coll = self._get_collection()
        try:
            doc = await coll.find_one_and_delete(filters)
        except Exception as exc:
            raise self._translate(exc, "delete", "Delete operation failed.") from exc
        event.result = dict(doc) if doc else None
        await self._chain.after(event)
        return event.result

    async def delete_by_id(
        self, id: Any, *, soft_delete: bool = True, context: CallContext | None = None
    ) -> dict[str, Any] | None:
        return await self.delete({"_id": id}, soft_delete=soft_delete, context=context)

    async def delete_many(
        self,
        query: dict[str, Any],
        *,
        soft_delete: bool = True,
        context: CallContext | None = None,
    ) -> int:
        """Delete every live matching document; return how many were affected."""
        filters = self._visible(query)
        coll = self._get_collection()
        if soft_delete:
            update = {"$set": {DELETED_AT: utcnow()}}
            event = self._event(WriteOperation.DELETE, context, query=filters, update=update, soft=True, many=True)
            await self._chain.before(event)
            try:
                count = (await coll.update_many(filters, update)).modified_count
            except Exception as exc:
                raise self._translate(exc, "delete_many", "Bulk soft delete failed.") from exc
        else:
            event = self._event(WriteOperation.DELETE, context, query=filters, many=True)
            await self._chain.before(event)
            try:
                count = (await coll.delete_many(filters)).deleted_count
            except Exception as exc:
                raise self._translate(exc, "delete_many", "Bulk delete operation failed.") from exc
        event.result = count
        await self._chain.after(event)
        return count

    async def restore(
        self,
        query: dict[str, Any],
        *,
        set_fields: dict[str, Any] | None = None,
        context: CallContext | None = None,
    ) -> dict[str, Any] | None:
        """Clear the soft-delete markers of the first deleted matching document.

        *set_fields* are written in the same update, e.g. a replacement slug.
        """
        update = {"$set": {**(set_fields or {}), DELETED_AT: None, DELETED_BY: None}}
        return await self._find_and_modify(WriteOperation.RESTORE, self._deleted(query), update, context)

    async def restore_by_id(self, id: Any, *, context: CallContext | None = None) -> dict[str, Any] | None:
        return await self.restore({"_id": id}, context=context)

    async def restore_many(self, query: dict[str, Any], *, context: CallContext | None = None) -> int:
        filters = self._deleted(query)
        update = {"$set": {DELETED_AT: None, DELETED_BY: None}}
        event = self._event(WriteOperation.RESTORE, context, query=filters, update=update, many=True)
        await self._chain.before(event)
        coll = self._get_collection()
        try:
            result = await coll.update_many(filters, update)
        except Exception as exc:
            raise self._translate(exc, "restore_many", "Bulk restore operation failed.") from exc
        event.result = result.modified_count
        await self._chain.after(event)
        return result.modified_count

    # -- Expansion and indexes -------------------------------------------------

    async def populate(
        self, document: dict[str, Any], fields: Sequence[str | PopulateField]
    ) -> dict[str, Any]:
        """Replace reference ids with the referenced documents.

        The target collection comes from the ``PopulateField`` or, for plain
        field names, from the entity's ``ref`` declarations.  A dangling
        single reference becomes ``None``; dangling ids in a list are dropped.
        """
        expanded = dict(document)
        for spec in fields:
            if isinstance(spec, str):
                spec = PopulateField(path=spec)
            collection = spec.collection or self._entity.references.get(spec.path)
            if collection is None:
                logger.warning("No reference collection known for %s.%s; skipping", self._entity.name, spec.path)
                continue
            value = expanded.get(spec.path)
            if value is None:
                continue
            projection = {name: 1 for name in spec.select} if spec.select else None
            coll = self._get_collection(collection)
            try:
                if isinstance(value, list):
                    ids = [coerce_id(v) for v in value]
                    found = {doc["_id"]: dict(doc) async for doc in coll.find({"_id": {"$in": ids}}, projection)}
                    expanded[spec.path] = [found[i] for i in ids if i in found]
                else:
                    doc = await coll.find_one({"_id": coerce_id(value)}, projection)
                    expanded[spec.path] = dict(doc) if doc else None
            except Exception as exc:
                raise self._translate(exc, "populate", f"Expansion of {spec.path} failed.", read=True) from exc
        return expanded

    async def ensure_indexes(self) -> list[str]:
        """Create unique indexes for unique fields and plain indexes for indexed fields.

        Unique indexes only cover live records that carry the field.
        """
        coll = self._get_collection()
        names: list[str] = []
        try:
            for field_name in sorted(self._entity.unique_fields):
                names.append(
                    await coll.create_index(
                        [(field_name, 1)],
                        unique=True,
                        partialFilterExpression={field_name: {"$exists": True}, DELETED_AT: {"$type": "null"}},
                    )
                )
            for field_name in sorted(self._entity.indexed_fields):
                names.append(await coll.create_index([(field_name, 1)]))
        except Exception as exc:
            raise self._translate(exc, "ensure_indexes", "Index creation failed.") from exc
        logger.info("Ensured %d index(es) on %s", len(names), self._collection_name)
        return names


def _is_duplicate_key_error(exc: Exception) -> bool:
    """Check whether *exc* is a MongoDB duplicate-key error.

    Covers ``DuplicateKeyError``, ``WriteError`` with code 11000 and
    ``BulkWriteError`` whose write errors are all duplicate keys.
    """
    if type(exc).__name__ == "DuplicateKeyError":
        return True
    if getattr(exc, "code", None) == 11000:
        return True
    details = getattr(exc, "details", None)
    if isinstance(details, dict):
        write_errors = details.get("writeErrors") or []
        return bool(write_errors) and all(err.get("code") == 11000 for err in write_errors)
    return False


def _is_connection_error(exc: Exception) -> bool:
    """Check whether *exc* indicates a connection-level failure."""
    type_names = {cls.__name__ for cls in type(exc).__mro__}
    return bool(type_names & {"ConnectionFailure", "ServerSelectionTimeoutError", "AutoReconnect", "NetworkTimeout"})
