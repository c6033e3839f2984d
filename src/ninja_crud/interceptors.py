"""Ordered write interceptors invoked by the repository around each write.

Cross-cutting document behaviour (timestamps, audit trail, version counters,
history snapshots) is expressed as an explicit chain instead of hooks hidden on
the schema.  The repository builds a :class:`WriteEvent` for every write,
runs :meth:`InterceptorChain.before` (which may mutate the outgoing document or
update specification), performs the write, stores the outcome on the event and
runs :meth:`InterceptorChain.after`.  Interceptors run in list order and a
failing interceptor aborts the write.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar

from ninja_crud.context import SYSTEM_CONTEXT, CallContext

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WriteOperation(str, Enum):
    """Kinds of write the repository performs."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    RESTORE = "restore"


@dataclass
class WriteEvent:
    """A single write flowing through the interceptor chain.

    Exactly one of ``document`` (inserts) or ``update`` (operator-form update
    specifications, including soft delete and restore) is set for writes that
    carry data; hard deletes carry neither.
    """

    operation: WriteOperation
    entity_name: str
    context: CallContext = SYSTEM_CONTEXT
    query: dict[str, Any] | None = None
    document: dict[str, Any] | None = None
    update: dict[str, Any] | None = None
    soft: bool = False
    many: bool = False
    result: Any = None

    def set_fields(self, **values: Any) -> None:
        """Assign *values* on the outgoing document or through ``$set``."""
        if self.document is not None:
            self.document.update(values)
        elif self.update is not None:
            self.update.setdefault("$set", {}).update(values)

    def increment(self, field_name: str, amount: int = 1) -> None:
        """Increment a counter through ``$inc`` (or initialise it on insert)."""
        if self.document is not None:
            self.document.setdefault(field_name, 0)
        elif self.update is not None:
            self.update.setdefault("$inc", {})[field_name] = amount


class WriteInterceptor:
    """Base interceptor; subclasses override :meth:`before` and/or :meth:`after`."""

    kind: ClassVar[str] = "custom"
    operations: frozenset[WriteOperation] = frozenset(WriteOperation)

    def handles(self, operation: WriteOperation) -> bool:
        return operation in self.operations

    async def before(self, event: WriteEvent) -> None:
        return None

    async def after(self, event: WriteEvent) -> None:
        return None

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind!r})"


class TimestampInterceptor(WriteInterceptor):
    """Maintains ``created_at`` / ``updated_at``."""

    kind = "timestamps"

    def __init__(
        self,
        *,
        created_field: str = "created_at",
        updated_field: str = "updated_at",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.created_field = created_field
        self.updated_field = updated_field
        self._clock = clock

    async def before(self, event: WriteEvent) -> None:
        now = self._clock()
        if event.operation is WriteOperation.CREATE and event.document is not None:
            event.document.setdefault(self.created_field, now)
        event.set_fields(**{self.updated_field: now})


class AuditTrailInterceptor(WriteInterceptor):
    """Records the acting user from the call context on every write."""

    kind = "audit_trail"

    _FIELDS: ClassVar[dict[WriteOperation, str]] = {
        WriteOperation.CREATE: "created_by",
        WriteOperation.UPDATE: "updated_by",
        WriteOperation.DELETE: "deleted_by",
    }

    def __init__(self) -> None:
        self.operations = frozenset(self._FIELDS)

    async def before(self, event: WriteEvent) -> None:
        if event.operation is WriteOperation.DELETE and not event.soft:
            return
        user_id = event.context.user_id
        if not user_id:
            logger.warning(
                "No acting user for %s on %s; audit trail fields will be null.",
                event.operation.value,
                event.entity_name,
            )
        event.set_fields(**{self._FIELDS[event.operation]: user_id or None})


class VersionInterceptor(WriteInterceptor):
    """Initialises a version counter on insert and increments it on every change."""

    kind = "version"

    def __init__(self, field_name: str = "version") -> None:
        self.field_name = field_name

    async def before(self, event: WriteEvent) -> None:
        event.increment(self.field_name)


class HistoryInterceptor(WriteInterceptor):
    """Appends a snapshot of every written record to a history collection.

    *collection* is any Motor-compatible collection exposing ``insert_one``.
    Bulk writes record the filter and the affected count instead of snapshots.
    """

    kind = "history"

    def __init__(self, collection: Any, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._collection = collection
        self._clock = clock

    async def after(self, event: WriteEvent) -> None:
        record: dict[str, Any] = {
            "entity": event.entity_name,
            "operation": event.operation.value,
            "at": self._clock(),
            "by": event.context.user_id,
        }
        if isinstance(event.result, dict):
            record["entity_id"] = event.result.get("_id")
            record["snapshot"] = {k: v for k, v in event.result.items() if k != "_id"}
        elif event.result is None:
            return
        else:
            record["query"] = event.query
            record["count"] = event.result
        await self._collection.insert_one(record)


@dataclass
class InterceptorChain:
    """Runs interceptors in declaration order for the operations they handle."""

    interceptors: list[WriteInterceptor] = field(default_factory=list)

    def __iter__(self) -> Iterator[WriteInterceptor]:
        return iter(self.interceptors)

    def __len__(self) -> int:
        return len(self.interceptors)

    @classmethod
    def of(cls, interceptors: Iterable[WriteInterceptor] | None) -> InterceptorChain:
        if interceptors is None:
            return cls([TimestampInterceptor()])
        return cls(list(interceptors))

    async def before(self, event: WriteEvent) -> None:
        for interceptor in self.interceptors:
            if interceptor.handles(event.operation):
                await interceptor.before(event)

    async def after(self, event: WriteEvent) -> None:
        for interceptor in self.interceptors:
            if interceptor.handles(event.operation):
                await interceptor.after(event)
