"""Uniform success/error envelope returned by every service operation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from ninja_crud.exceptions import ServiceError

TData = TypeVar("TData")


@dataclass(frozen=True)
class ServiceResponse(Generic[TData]):
    """Discriminated on ``success``.

    A success carries ``data`` and, for paginated reads only, ``meta``.
    A failure carries exactly one structured ``error`` and nothing else.
    """

    success: bool
    data: TData | None = None
    meta: dict[str, Any] | None = None
    error: ServiceError | None = None

    def __post_init__(self) -> None:
        if self.success:
            if self.error is not None:
                raise ValueError("A successful response cannot carry an error")
        else:
            if self.error is None:
                raise ValueError("A failed response requires an error")
            if self.data is not None or self.meta is not None:
                raise ValueError("A failed response cannot carry data or meta")

    @classmethod
    def ok(cls, data: TData, meta: dict[str, Any] | None = None) -> ServiceResponse[TData]:
        return cls(success=True, data=data, meta=meta)

    @classmethod
    def fail(cls, error: ServiceError) -> ServiceResponse[TData]:
        return cls(success=False, error=error)

    def to_dict(self) -> dict[str, Any]:
        """Plain mapping suitable for a transport layer."""
        if self.error is not None:
            return {"success": False, "error": self.error.to_dict()}
        result: dict[str, Any] = {"success": True, "data": self.data}
        if self.meta is not None:
            result["meta"] = self.meta
        return result
