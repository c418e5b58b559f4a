"""Short-lived federation state.

Login flows span two HTTP requests that may hit different workers, so the
values that bridge them live here rather than in process memory:

    saml:state:<request id>            replay marker for an issued AuthnRequest
    idp:oidc:state:<state>             PKCE verifier, nonce and return path
    idp:<provider id>:oidc:discovery   OpenID configuration document
    idp:<provider id>:oidc:jwks        signing keys
    auth_bf:<strategy>:<subject>       failed attempt counters

Values are stored as JSON. Multi-worker deployments must set REDIS_URL; the
in-memory backend is for tests and a single dev process.
"""

from __future__ import annotations

import asyncio
import json
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import redis.asyncio as aioredis
import structlog

from grc_idp.config import Settings

log = structlog.get_logger(__name__)

T = TypeVar("T")


class CacheBackend(ABC):
    @abstractmethod
    async def get(self, key: str) -> Any | None: ...

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: int) -> None: ...

    @abstractmethod
    async def delete(self, key: str) -> None: ...

    @abstractmethod
    async def exists(self, key: str) -> bool: ...

    @abstractmethod
    async def pull(self, key: str) -> Any | None:
        """Read and remove ``key`` in one step; a second pull sees None."""

    @abstractmethod
    async def add(self, key: str, value: Any, ttl: int) -> bool:
        """Write only when ``key`` is absent and report whether it was written."""

    @abstractmethod
    async def compare_and_set(self, key: str, expected: Any, new: Any) -> Any | None:
        """Swap the value to ``new`` if it currently equals ``expected``.

        The prior value is returned (None for a missing key), so a caller
        knows it won the swap exactly when the result equals ``expected``.
        The key keeps its remaining TTL.
        """

    async def close(self) -> None:
        return None


# Lua keeps the read and the conditional write on one server round trip
_COMPARE_AND_SET = """
local current = redis.call('GET', KEYS[1])
if current == ARGV[1] then
    redis.call('SET', KEYS[1], ARGV[2], 'KEEPTTL')
end
return current
"""


def _encode(value: Any) -> str:
    return json.dumps(value, default=str, separators=(",", ":"))


def _decode(raw: str | None) -> Any | None:
    return None if raw is None else json.loads(raw)


class RedisCacheBackend(CacheBackend):
    """Redis-backed cache shared by every worker.

    Connection errors are logged and degrade to "nothing stored". A lost
    replay marker or OIDC state then makes the login fail rather than
    letting a response through twice.
    """

    def __init__(self, redis_url: str) -> None:
        self._url = redis_url
        self._redis: aioredis.Redis | None = None

    @property
    def client(self) -> aioredis.Redis:
        if self._redis is None:
            self._redis = aioredis.from_url(self._url, decode_responses=True)
        return self._redis

    async def _guarded(
        self, op: str, key: str, call: Callable[[], Awaitable[T]], fallback: T
    ) -> T:
        try:
            return await call()
        except aioredis.RedisError as exc:
            log.warning("cache.redis.unavailable", op=op, key=key, error=str(exc))
            return fallback

    async def get(self, key: str) -> Any | None:
        raw = await self._guarded("get", key, lambda: self.client.get(key), None)
        return _decode(raw)

    async def set(self, key: str, value: Any, ttl: int) -> None:
        await self._guarded(
            "set", key, lambda: self.client.set(key, _encode(value), ex=max(ttl, 1)), None
        )

    async def delete(self, key: str) -> None:
        await self._guarded("delete", key, lambda: self.client.delete(key), 0)

    async def exists(self, key: str) -> bool:
        return bool(await self._guarded("exists", key, lambda: self.client.exists(key), 0))

    async def pull(self, key: str) -> Any | None:
        return _decode(await self._guarded("pull", key, lambda: self.client.getdel(key), None))

    async def add(self, key: str, value: Any, ttl: int) -> bool:
        written = await self._guarded(
            "add",
            key,
            lambda: self.client.set(key, _encode(value), ex=max(ttl, 1), nx=True),
            None,
        )
        return bool(written)

    async def compare_and_set(self, key: str, expected: Any, new: Any) -> Any | None:
        raw = await self._guarded(
            "compare_and_set",
            key,
            lambda: self.client.eval(_COMPARE_AND_SET, 1, key, _encode(expected), _encode(new)),
            None,
        )
        return _decode(raw)

    async def close(self) -> None:
        if self._redis is None:
            return
        client, self._redis = self._redis, None
        await self._guarded("close", "-", client.aclose, None)


class InMemoryCacheBackend(CacheBackend):
    """Process-local cache; one asyncio.Lock serialises every operation."""

    def __init__(self) -> None:
        # key -> (monotonic deadline, value)
        self._items: dict[str, tuple[float, Any]] = {}
        self._lock = asyncio.Lock()

    def _read(self, key: str) -> tuple[bool, Any]:
        item = self._items.get(key)
        if item is None:
            return False, None
        deadline, value = item
        if time.monotonic() >= deadline:
            del self._items[key]
            return False, None
        return True, value

    def _write(self, key: str, value: Any, ttl: int) -> None:
        self._items[key] = (time.monotonic() + ttl, value)

    async def get(self, key: str) -> Any | None:
        async with self._lock:
            return self._read(key)[1]

    async def set(self, key: str, value: Any, ttl: int) -> None:
        async with self._lock:
            self._write(key, value, ttl)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._items.pop(key, None)

    async def exists(self, key: str) -> bool:
        async with self._lock:
            return self._read(key)[0]

    async def pull(self, key: str) -> Any | None:
        async with self._lock:
            found, value = self._read(key)
            if found:
                del self._items[key]
            return value

    async def add(self, key: str, value: Any, ttl: int) -> bool:
        async with self._lock:
            if self._read(key)[0]:
                return False
            self._write(key, value, ttl)
            return True

    async def compare_and_set(self, key: str, expected: Any, new: Any) -> Any | None:
        async with self._lock:
            found, current = self._read(key)
            if found and current == expected:
                deadline, _ = self._items[key]
                self._items[key] = (deadline, new)
            return current


def get_cache_backend(settings: Settings) -> CacheBackend:
    if settings.redis_url:
        log.info("cache.backend", backend="redis")
        return RedisCacheBackend(settings.redis_url)
    log.info("cache.backend", backend="memory")
    return InMemoryCacheBackend()
