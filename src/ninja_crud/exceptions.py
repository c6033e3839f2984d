"""Domain exceptions for the repository and service layers.

Driver exceptions raised by the storage engine are caught by the repository
and re-raised as one of the :class:`PersistenceError` subclasses.  The service
layer raises :class:`ServiceError` subclasses for policy failures and turns
every exception into the error branch of a ``ServiceResponse``.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class PersistenceError(Exception):
    """Base exception for all persistence-layer errors.

    Attributes:
        entity_name: The name of the entity/collection involved.
        operation: The repository operation that failed (e.g. ``"create"``).
        detail: A sanitised description of what went wrong.
    """

    def __init__(
        self,
        *,
        entity_name: str,
        operation: str,
        detail: str,
        cause: Exception | None = None,
    ) -> None:
        self.entity_name = entity_name
        self.operation = operation
        self.detail = detail
        msg = f"[{entity_name}] {operation} failed: {detail}"
        super().__init__(msg)
        if cause is not None:
            self.__cause__ = cause


class DuplicateEntityError(PersistenceError):
    """Raised when a write violates a uniqueness constraint."""


class ConnectionFailedError(PersistenceError):
    """Raised when the repository cannot reach the database."""


class QueryError(PersistenceError):
    """Raised for invalid queries or failed reads/aggregations."""


class ErrorCode(str, Enum):
    """Symbolic error kinds carried by the error envelope."""

    NOT_FOUND = "NOT_FOUND"
    UNIQUE_FIELD_ERROR = "UNIQUE_FIELD_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    OPERATION_NOT_SUPPORTED = "OPERATION_NOT_SUPPORTED"
    PIPELINE_NOT_FOUND = "PIPELINE_NOT_FOUND"
    EXPORT_ERROR = "EXPORT_ERROR"
    SLUG_GENERATION_ERROR = "SLUG_GENERATION_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"
    RESTORE_ERROR = "RESTORE_ERROR"
    CLONE_ERROR = "CLONE_ERROR"
    AGGREGATION_ERROR = "AGGREGATION_ERROR"
    BULK_CREATE_ERROR = "BULK_CREATE_ERROR"
    BULK_UPDATE_ERROR = "BULK_UPDATE_ERROR"
    BULK_DELETE_ERROR = "BULK_DELETE_ERROR"
    BATCH_CREATE_ERROR = "BATCH_CREATE_ERROR"
    BATCH_UPDATE_ERROR = "BATCH_UPDATE_ERROR"
    BATCH_DELETE_ERROR = "BATCH_DELETE_ERROR"
    BATCH_RESTORE_ERROR = "BATCH_RESTORE_ERROR"


class ServiceError(Exception):
    """Structured error returned in the failure branch of a response.

    Raised deliberately inside the service pipeline and passed through to the
    caller unchanged.  Unexpected exceptions are wrapped into a
    ``ServiceError`` with a family code and the original message.
    """

    code: ErrorCode = ErrorCode.DATABASE_ERROR
    status_code: int = 500

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode | None = None,
        suggestions: list[str] | None = None,
        status_code: int | None = None,
        cause: Exception | None = None,
    ) -> None:
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.message = message
        self.suggestions = suggestions or []
        super().__init__(message)
        if cause is not None:
            self.__cause__ = cause

    @property
    def cause(self) -> BaseException | None:
        return self.__cause__

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "suggestions": list(self.suggestions),
            "status_code": self.status_code,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code.value!r}, message={self.message!r})"


class NotFoundError(ServiceError):
    """The target record is absent, already removed, or already restored."""

    code = ErrorCode.NOT_FOUND
    status_code = 404


class UniqueFieldError(ServiceError):
    """A uniqueness-constrained field collides with an existing record."""

    code = ErrorCode.UNIQUE_FIELD_ERROR
    status_code = 409

    def __init__(self, field_name: str, value: Any) -> None:
        self.field_name = field_name
        self.value = value
        super().__init__(
            f"The {field_name} must be unique.",
            suggestions=[f"Value '{value}' is already taken for {field_name}."],
        )


class ValidationFailedError(ServiceError):
    """A per-field or whole-document validator rejected the input."""

    code = ErrorCode.VALIDATION_ERROR
    status_code = 422

    def __init__(self, message: str, *, field_name: str | None = None, cause: Exception | None = None) -> None:
        self.field_name = field_name
        suggestions = [f"Invalid value for {field_name}."] if field_name else []
        super().__init__(message, suggestions=suggestions, cause=cause)


class OperationNotSupportedError(ServiceError):
    """The operation is disabled by the service configuration."""

    code = ErrorCode.OPERATION_NOT_SUPPORTED
    status_code = 400


class PipelineNotFoundError(ServiceError):
    """No aggregation pipeline is registered under the requested name."""

    code = ErrorCode.PIPELINE_NOT_FOUND
    status_code = 404


class ExportError(ServiceError):
    """Export options conflict or the export could not be rendered."""

    code = ErrorCode.EXPORT_ERROR
    status_code = 400


class SlugGenerationError(ServiceError):
    """No free slug was found within the configured number of attempts."""

    code = ErrorCode.SLUG_GENERATION_ERROR
    status_code = 409
