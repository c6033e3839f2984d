"""In-process TTL cache consulted by service read operations."""

from __future__ import annotations

import copy
import json
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

logger = logging.getLogger(__name__)

V = TypeVar("V")


@dataclass
class CacheEntry(Generic[V]):
    """A cached value and the monotonic time it was stored."""

    value: V
    timestamp: float


class TTLCache:
    """Keyed store of ``(value, timestamp)`` pairs with a fixed time-to-live.

    Entries are inserted on a miss and expire once ``now - timestamp >= ttl``.
    There is no per-key invalidation: writes elsewhere never purge entries,
    only expiry and :meth:`clear` do.  Shared by every read path of one
    service instance; single-process async code needs no locking here.
    """

    def __init__(self, ttl: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[str, CacheEntry[Any]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self._lookup(key) is not None

    def _lookup(self, key: str) -> CacheEntry[Any] | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.timestamp >= self.ttl:
            del self._entries[key]
            return None
        return entry

    def get(self, key: str, default: Any = None) -> Any:
        entry = self._lookup(key)
        return default if entry is None else entry.value

    def set(self, key: str, value: Any) -> None:
        self._entries[key] = CacheEntry(value=value, timestamp=self._clock())

    def clear(self) -> None:
        self._entries.clear()

    async def get_or_compute(self, key: str, compute: Callable[[], Awaitable[V]]) -> V:
        """Return the cached value for *key*, computing and storing it on a miss.

        A failing *compute* leaves the cache untouched.  The stored value and
        every value handed out are separate copies, so callers may mutate
        what they receive.
        """
        entry = self._lookup(key)
        if entry is not None:
            logger.debug("Cache hit for %s", key)
            return copy.deepcopy(entry.value)
        value = await compute()
        self.set(key, copy.deepcopy(value))
        return value


def make_cache_key(method: str, params: Any, ignored_fields: Iterable[str] = ()) -> str:
    """Build a deterministic key from a method name and its arguments.

    Keys listed in *ignored_fields* do not take part in the key, whether they
    appear among the arguments or inside a mapping argument such as ``query``.
    """
    ignored = set(ignored_fields)
    if ignored and isinstance(params, dict):
        params = {
            k: ({ik: iv for ik, iv in v.items() if ik not in ignored} if isinstance(v, dict) else v)
            for k, v in params.items()
            if k not in ignored
        }
    return f"{method}:{json.dumps(params, sort_keys=True, default=str)}"
