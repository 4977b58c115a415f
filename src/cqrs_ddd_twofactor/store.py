"""Code store helpers and the in-memory store.

WARNING: ``InMemoryCodeStore`` keeps everything in a local dictionary. It is
atomic within a single event loop only and will NOT work with multiple
workers. Use ``RedisCodeStore`` (or another ``ICodeStore`` with a real
conditional write) in production.
"""

from __future__ import annotations

import inspect
import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from .clock import Clock, SystemClock
from .exceptions import StorageConflictError
from .ports import ICodeStore

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from .models import Method, RateOperation

logger = logging.getLogger("cqrs_ddd.twofactor.store")

T = TypeVar("T")

_UNCHANGED = object()


def canonical_json(value: dict[str, Any]) -> str:
    """Serialize a record so equal dicts give equal strings."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


class RecordKeys:
    """Key layout: ``<prefix>:<identity>:<scope>:<kind>``."""

    def __init__(self, prefix: str) -> None:
        self.prefix = prefix

    def _key(self, identity: str, scope: str, kind: str) -> str:
        return f"{self.prefix}:{identity}:{scope}:{kind}"

    def secret(self, identity: str, method: Method) -> str:
        return self._key(identity, method.value, "secret")

    def challenge(self, identity: str, method: Method) -> str:
        return self._key(identity, method.value, "challenge")

    def recovery(self, identity: str) -> str:
        return self._key(identity, "recovery", "codes")

    def devices(self, identity: str) -> str:
        return self._key(identity, "device", "trusted")

    def rate(self, identity: str, method: Method, operation: RateOperation) -> str:
        return self._key(identity, method.value, f"ratelimit:{operation.value}")


@dataclass(frozen=True)
class Change(Generic[T]):
    """What a mutation wants written, and what to hand back to the caller.

    ``value=None`` deletes the record. Use ``Change.keep`` to skip the write.
    """

    result: T
    value: Any = _UNCHANGED
    ttl: int | None = None

    @classmethod
    def keep(cls, result: T) -> Change[T]:
        return cls(result=result)

    @property
    def writes(self) -> bool:
        return self.value is not _UNCHANGED


async def update_record(
    store: ICodeStore,
    key: str,
    mutate: Callable[[dict[str, Any] | None], Change[T] | Awaitable[Change[T]]],
    *,
    max_retries: int,
) -> T:
    """Read-modify-write a record with compare-and-swap.

    ``mutate`` receives the current record (or None) and returns a
    ``Change``. When the conditional write loses a race the record is read
    again and ``mutate`` re-evaluated against the fresh value.

    Raises:
        StorageConflictError: After ``max_retries`` lost races.
    """
    for attempt in range(1, max_retries + 1):
        current = await store.get(key)
        change = mutate(current)
        if inspect.isawaitable(change):
            change = await change
        if not change.writes:
            return change.result
        if await store.compare_and_swap(key, current, change.value, ttl=change.ttl):
            return change.result
        logger.debug("CAS conflict on %s (attempt %d/%d)", key, attempt, max_retries)
    raise StorageConflictError(key, max_retries)


class InMemoryCodeStore(ICodeStore):
    """In-memory code store for TESTING ONLY.

    Records are kept as canonical JSON so callers can never mutate stored
    state through a returned dict.

    Example:
        ```python
        store = InMemoryCodeStore(clock=ManualClock())
        await store.put("k", {"a": 1}, ttl=60)
        assert await store.compare_and_swap("k", {"a": 1}, {"a": 2})
        ```
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or SystemClock()
        self._data: dict[str, tuple[str, float | None]] = {}

    def _live(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        raw, expires_at = entry
        if expires_at is not None and self._clock.now().timestamp() >= expires_at:
            del self._data[key]
            return None
        return raw

    def _write(self, key: str, value: dict[str, Any], ttl: int | None) -> None:
        expires_at = None
        if ttl is not None and ttl > 0:
            expires_at = self._clock.now().timestamp() + ttl
        self._data[key] = (canonical_json(value), expires_at)

    async def get(self, key: str) -> dict[str, Any] | None:
        raw = self._live(key)
        if raw is None:
            return None
        data: dict[str, Any] = json.loads(raw)
        return data

    async def put(
        self, key: str, value: dict[str, Any], ttl: int | None = None
    ) -> None:
        self._write(key, value, ttl)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def compare_and_swap(
        self,
        key: str,
        expected: dict[str, Any] | None,
        new: dict[str, Any] | None,
        ttl: int | None = None,
    ) -> bool:
        current = self._live(key)
        if expected is None:
            if current is not None:
                return False
        elif current != canonical_json(expected):
            return False

        if new is None:
            self._data.pop(key, None)
        else:
            self._write(key, new, ttl)
        return True

    def keys(self) -> list[str]:
        """Live keys, for test assertions."""
        return [k for k in list(self._data) if self._live(k) is not None]

    def clear_all(self) -> None:
        self._data.clear()


__all__: list[str] = [
    "canonical_json",
    "RecordKeys",
    "Change",
    "update_record",
    "InMemoryCodeStore",
]
