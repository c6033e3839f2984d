"""Repository protocol: the storage contract the service layer depends on."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Protocol, runtime_checkable

from ninja_crud.config import PopulateField
from ninja_crud.context import CallContext

Document = dict[str, Any]
Query = dict[str, Any]


@runtime_checkable
class DocumentRepository(Protocol):
    """Soft-delete aware persistence interface for one entity collection.

    Every read, update and delete excludes records whose ``deleted_at`` is set
    unless ``include_deleted=True`` is passed.  ``restore*`` operations are the
    only ones that target soft-deleted records by default, and ``aggregate``
    applies no visibility filter at all.
    """

    async def create(self, data: Document, *, context: CallContext | None = None) -> Document:
        """Insert a new record and return it with its identity."""
        ...

    async def create_many(
        self, documents: Sequence[Document], *, ordered: bool = True, context: CallContext | None = None
    ) -> list[Document]:
        """Insert several records; ``ordered`` stops at the first failure."""
        ...

    async def find_all(
        self,
        query: Query | None = None,
        *,
        sort: dict[str, int] | None = None,
        skip: int = 0,
        limit: int = 0,
        include_deleted: bool = False,
    ) -> list[Document]:
        ...

    async def find_one(self, query: Query, *, include_deleted: bool = False) -> Document | None:
        ...

    async def find_by_id(self, id: Any, *, include_deleted: bool = False) -> Document | None:
        ...

    async def update(
        self,
        query: Query,
        patch: Document,
        *,
        include_deleted: bool = False,
        context: CallContext | None = None,
    ) -> Document | None:
        """Apply *patch* to the first matching record and return the updated record."""
        ...

    async def update_by_id(
        self, id: Any, patch: Document, *, include_deleted: bool = False, context: CallContext | None = None
    ) -> Document | None:
        ...

    async def update_many(self, query: Query, patch: Document, *, context: CallContext | None = None) -> int:
        """Apply *patch* to every live matching record; return the modified count."""
        ...

    async def delete(
        self, query: Query, *, soft_delete: bool = True, context: CallContext | None = None
    ) -> Document | None:
        ...

    async def delete_by_id(
        self, id: Any, *, soft_delete: bool = True, context: CallContext | None = None
    ) -> Document | None:
        ...

    async def delete_many(
        self, query: Query, *, soft_delete: bool = True, context: CallContext | None = None
    ) -> int:
        ...

    async def restore(
        self, query: Query, *, set_fields: Document | None = None, context: CallContext | None = None
    ) -> Document | None:
        ...

    async def restore_by_id(self, id: Any, *, context: CallContext | None = None) -> Document | None:
        ...

    async def restore_many(self, query: Query, *, context: CallContext | None = None) -> int:
        ...

    async def count_documents(
        self, query: Query | None = None, *, skip: int = 0, limit: int = 0, include_deleted: bool = False
    ) -> int:
        ...

    async def exists(self, query: Query, *, include_deleted: bool = False) -> bool:
        ...

    async def aggregate(self, pipeline: list[dict[str, Any]]) -> list[Document]:
        """Run *pipeline* unchanged; callers filter soft-deleted records themselves."""
        ...

    async def populate(self, document: Document, fields: Sequence[str | PopulateField]) -> Document:
        """Replace reference ids in *document* with the referenced records."""
        ...
