"""Redis implementation of the code store.

Conditional writes run as a Lua script so the compare and the write are a
single server-side step, safe across any number of host processes.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from redis.exceptions import RedisError

from .exceptions import StorageError
from .ports import ICodeStore
from .store import canonical_json

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = logging.getLogger("cqrs_ddd.twofactor.redis_store")

# KEYS[1] = record key
# ARGV[1] = expected canonical JSON ('' = must be absent)
# ARGV[2] = new canonical JSON ('' = delete)
# ARGV[3] = ttl in milliseconds (0 = no expiry)
CAS_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if ARGV[1] == '' then
    if current then
        return 0
    end
elseif current ~= ARGV[1] then
    return 0
end
if ARGV[2] == '' then
    redis.call('DEL', KEYS[1])
elseif tonumber(ARGV[3]) > 0 then
    redis.call('SET', KEYS[1], ARGV[2], 'PX', ARGV[3])
else
    redis.call('SET', KEYS[1], ARGV[2])
end
return 1
"""


class RedisCodeStore(ICodeStore):
    """Redis implementation of ICodeStore.

    Unlike a cache, failures are NOT swallowed: every Redis error is raised
    as ``StorageError`` so the host can decide on fallback.

    Example:
        ```python
        from redis.asyncio import Redis

        store = RedisCodeStore(Redis.from_url("redis://localhost:6379/0"))
        manager = TwoFactorManager(config, store)
        ```
    """

    def __init__(self, redis_client: Redis[bytes]) -> None:
        self._redis = redis_client

    async def get(self, key: str) -> dict[str, Any] | None:
        try:
            val = await self._redis.get(key)
        except RedisError as e:
            logger.warning("Redis get failed for key %s: %s", key, e)
            raise StorageError(f"Redis get failed for key {key}") from e
        if not val:
            return None
        try:
            data: dict[str, Any] = json.loads(val)
        except ValueError as e:
            raise StorageError(f"Corrupt record at key {key}") from e
        return data

    async def put(
        self, key: str, value: dict[str, Any], ttl: int | None = None
    ) -> None:
        try:
            if ttl:
                await self._redis.setex(key, ttl, canonical_json(value))
            else:
                await self._redis.set(key, canonical_json(value))
        except RedisError as e:
            logger.warning("Redis set failed for key %s: %s", key, e)
            raise StorageError(f"Redis set failed for key {key}") from e

    async def delete(self, key: str) -> None:
        try:
            await self._redis.delete(key)
        except RedisError as e:
            logger.warning("Redis delete failed for key %s: %s", key, e)
            raise StorageError(f"Redis delete failed for key {key}") from e

    async def compare_and_swap(
        self,
        key: str,
        expected: dict[str, Any] | None,
        new: dict[str, Any] | None,
        ttl: int | None = None,
    ) -> bool:
        expected_raw = "" if expected is None else canonical_json(expected)
        new_raw = "" if new is None else canonical_json(new)
        ttl_ms = int(ttl * 1000) if ttl else 0
        try:
            result = await self._redis.eval(  # type: ignore[no-untyped-call]
                CAS_SCRIPT, 1, key, expected_raw, new_raw, ttl_ms
            )
        except RedisError as e:
            logger.warning("Redis CAS failed for key %s: %s", key, e)
            raise StorageError(f"Redis compare-and-swap failed for key {key}") from e
        return int(result) == 1


__all__: list[str] = ["CAS_SCRIPT", "RedisCodeStore"]
