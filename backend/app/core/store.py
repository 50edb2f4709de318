"""
store.py

Shared key-value store used for every coordination primitive (locks, claims,
queue, progress, snapshots). One async interface, two adapters:

- RedisStore: redis-py asyncio client; works against a local Redis or any
  hosted Redis reachable over the Redis protocol (rediss:// URLs).
- MemoryStore: in-process dict/sorted-set emulation for tests and
  single-process development.

Handles are created with create_store() (once at API startup, once per
Celery task run), connected explicitly and passed to the components that
use them.
"""
import time
from contextlib import asynccontextmanager
from typing import Callable, Dict, List, Optional, Tuple

from redis import asyncio as aioredis
from redis.asyncio.connection import ConnectionPool as AsyncConnectionPool
from redis.exceptions import RedisError

# Atomic compare-and-delete: only the holder of the exact value may delete the key
_DELETE_IF_EQUALS_LUA = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class StoreError(Exception):
    """Raised by store adapters when the backing store cannot be reached or fails a command."""
    pass


class KeyValueStore:
    """Interface implemented by every store adapter. All operations are individually atomic."""

    async def connect(self) -> None:
        raise NotImplementedError

    async def disconnect(self) -> None:
        raise NotImplementedError

    async def ping(self) -> bool:
        raise NotImplementedError

    # Strings
    async def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> None:
        raise NotImplementedError

    async def set_nx(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        raise NotImplementedError

    async def delete(self, key: str) -> int:
        raise NotImplementedError

    async def delete_if_equals(self, key: str, expected: str) -> bool:
        raise NotImplementedError

    # Sorted sets
    async def zadd_nx(self, key: str, score: float, member: str) -> bool:
        raise NotImplementedError

    async def zrem(self, key: str, member: str) -> int:
        raise NotImplementedError

    async def zrank(self, key: str, member: str) -> Optional[int]:
        raise NotImplementedError

    async def zrange_with_scores(self, key: str, start: int = 0, stop: int = -1) -> List[Tuple[str, float]]:
        raise NotImplementedError

    async def zcard(self, key: str) -> int:
        raise NotImplementedError


class RedisStore(KeyValueStore):
    def __init__(self, url: str, max_connections: int = 50):
        self.url = url
        self.max_connections = max_connections
        self._pool: Optional[AsyncConnectionPool] = None
        self._client: Optional[aioredis.Redis] = None
        self._delete_if_equals = None

    async def connect(self) -> None:
        if self._client is not None:
            return
        self._pool = AsyncConnectionPool.from_url(
            self.url,
            decode_responses=True,
            max_connections=self.max_connections,
            socket_connect_timeout=5,
            socket_timeout=5,
            retry_on_timeout=True,
        )
        self._client = aioredis.Redis(connection_pool=self._pool)
        self._delete_if_equals = self._client.register_script(_DELETE_IF_EQUALS_LUA)

    async def disconnect(self) -> None:
        if self._client is None:
            return
        try:
            await self._client.aclose()
            if self._pool is not None:
                await self._pool.disconnect()
        finally:
            self._client = None
            self._pool = None
            self._delete_if_equals = None

    @property
    def client(self) -> aioredis.Redis:
        if self._client is None:
            raise StoreError("RedisStore is not connected; call connect() first")
        return self._client

    @asynccontextmanager
    async def _errors(self, op: str, key: str):
        try:
            yield
        except RedisError as e:
            raise StoreError(f"Redis {op} failed for {key}: {e}") from e

    async def ping(self) -> bool:
        async with self._errors("ping", "-"):
            return bool(await self.client.ping())

    async def get(self, key: str) -> Optional[str]:
        async with self._errors("get", key):
            return await self.client.get(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> None:
        async with self._errors("set", key):
            await self.client.set(key, value, ex=ex)

    async def set_nx(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        async with self._errors("set nx", key):
            return bool(await self.client.set(key, value, ex=ex, nx=True))

    async def delete(self, key: str) -> int:
        async with self._errors("del", key):
            return int(await self.client.delete(key))

    async def delete_if_equals(self, key: str, expected: str) -> bool:
        async with self._errors("compare-and-delete", key):
            if self._delete_if_equals is None:
                raise StoreError("RedisStore is not connected; call connect() first")
            return bool(await self._delete_if_equals(keys=[key], args=[expected]))

    async def zadd_nx(self, key: str, score: float, member: str) -> bool:
        async with self._errors("zadd nx", key):
            return bool(await self.client.zadd(key, {member: score}, nx=True))

    async def zrem(self, key: str, member: str) -> int:
        async with self._errors("zrem", key):
            return int(await self.client.zrem(key, member))

    async def zrank(self, key: str, member: str) -> Optional[int]:
        async with self._errors("zrank", key):
            rank = await self.client.zrank(key, member)
            return None if rank is None else int(rank)

    async def zrange_with_scores(self, key: str, start: int = 0, stop: int = -1) -> List[Tuple[str, float]]:
        async with self._errors("zrange", key):
            rows = await self.client.zrange(key, start, stop, withscores=True)
            return [(member, float(score)) for member, score in rows]

    async def zcard(self, key: str) -> int:
        async with self._errors("zcard", key):
            return int(await self.client.zcard(key))


class MemoryStore(KeyValueStore):
    """In-process store. Each method body runs without awaiting, so it is atomic on one event loop."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._strings: Dict[str, Tuple[str, Optional[float]]] = {}
        self._zsets: Dict[str, Dict[str, float]] = {}

    async def connect(self) -> None:
        return None

    async def disconnect(self) -> None:
        return None

    async def ping(self) -> bool:
        return True

    def _live(self, key: str) -> Optional[str]:
        entry = self._strings.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._strings[key]
            return None
        return value

    def _expiry(self, ex: Optional[int]) -> Optional[float]:
        return self._clock() + ex if ex else None

    def _sorted(self, key: str) -> List[Tuple[str, float]]:
        members = self._zsets.get(key) or {}
        return sorted(members.items(), key=lambda kv: (kv[1], kv[0]))

    async def get(self, key: str) -> Optional[str]:
        return self._live(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> None:
        self._strings[key] = (value, self._expiry(ex))

    async def set_nx(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        if self._live(key) is not None:
            return False
        self._strings[key] = (value, self._expiry(ex))
        return True

    async def delete(self, key: str) -> int:
        existed = self._live(key) is not None
        self._strings.pop(key, None)
        return 1 if existed else 0

    async def delete_if_equals(self, key: str, expected: str) -> bool:
        if self._live(key) != expected:
            return False
        del self._strings[key]
        return True

    async def zadd_nx(self, key: str, score: float, member: str) -> bool:
        members = self._zsets.setdefault(key, {})
        if member in members:
            return False
        members[member] = float(score)
        return True

    async def zrem(self, key: str, member: str) -> int:
        members = self._zsets.get(key)
        if not members or member not in members:
            return 0
        del members[member]
        return 1

    async def zrank(self, key: str, member: str) -> Optional[int]:
        for idx, (m, _score) in enumerate(self._sorted(key)):
            if m == member:
                return idx
        return None

    async def zrange_with_scores(self, key: str, start: int = 0, stop: int = -1) -> List[Tuple[str, float]]:
        rows = self._sorted(key)
        end = len(rows) if stop == -1 else stop + 1
        return rows[start:end]

    async def zcard(self, key: str) -> int:
        return len(self._zsets.get(key) or {})


def create_store(settings) -> KeyValueStore:
    """Build the adapter selected by settings.store_backend. The caller owns connect()/disconnect()."""
    backend = (settings.store_backend or "redis").lower()
    if backend == "memory":
        return MemoryStore()
    if backend == "redis":
        return RedisStore(settings.redis_url)
    raise ValueError(f"Unknown store backend: {settings.store_backend}")
