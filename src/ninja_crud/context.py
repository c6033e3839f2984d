"""Call context threaded explicitly through service and repository writes."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class CallContext(BaseModel):
    """Identity of the caller on whose behalf an operation runs.

    Passed as the ``context`` keyword of every write operation instead of
    being read from ambient per-request storage.
    """

    user_id: str | None = None
    request_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}

    @property
    def is_authenticated(self) -> bool:
        return bool(self.user_id)

    def __repr__(self) -> str:
        return f"CallContext(user_id={self.user_id!r}, request_id={self.request_id!r})"


SYSTEM_CONTEXT = CallContext()
