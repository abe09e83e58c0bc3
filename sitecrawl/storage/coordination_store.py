"""
Coordination store backends shared by distributed crawler workers.

The store is the sole source of truth for cross-worker state. It must offer
atomic list push/pop, atomic set add/contains and expiring keys; no
multi-key transactions are assumed.
"""

import fnmatch
import logging
import time
from abc import ABC, abstractmethod
from collections import deque
from typing import Awaitable, Callable, Deque, Dict, List, Optional, Set, Tuple, TypeVar

import redis.asyncio as redis
from redis.exceptions import RedisError

from ..errors import StoreError
from ..utils.config import RedisConfig


T = TypeVar('T')


class CoordinationStore(ABC):
    """Narrow key-value/list/set interface used by the coordinator."""

    def __init__(self):
        self.operations = 0

    def _count(self):
        self.operations += 1

    async def connect(self):
        """Open the connection, if any."""

    async def close(self):
        """Close the connection, if any."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set(self, key: str, value: str):
        ...

    @abstractmethod
    async def setex(self, key: str, ttl: int, value: str):
        ...

    @abstractmethod
    async def delete(self, key: str):
        ...

    @abstractmethod
    async def keys(self, pattern: str) -> List[str]:
        ...

    @abstractmethod
    async def lpush(self, key: str, value: str) -> int:
        ...

    @abstractmethod
    async def rpop(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def llen(self, key: str) -> int:
        ...

    @abstractmethod
    async def sadd(self, key: str, value: str) -> int:
        """Add a member; returns 1 if it was newly added, 0 if already present."""

    @abstractmethod
    async def srem(self, key: str, value: str) -> int:
        """Remove a member; returns 1 if it was present."""

    @abstractmethod
    async def sismember(self, key: str, value: str) -> bool:
        ...

    @abstractmethod
    async def scard(self, key: str) -> int:
        ...

    @abstractmethod
    async def smembers(self, key: str) -> Set[str]:
        ...


class RedisCoordinationStore(CoordinationStore):
    """Coordination store backed by Redis."""

    def __init__(self, config: Optional[RedisConfig] = None, client: Optional[redis.Redis] = None):
        super().__init__()
        self.config = config or RedisConfig()
        self.client = client
        self.logger = logging.getLogger(__name__)

    async def connect(self):
        """Initialize the Redis connection."""
        if self.client is None:
            self.client = redis.Redis(
                host=self.config.host,
                port=self.config.port,
                db=self.config.db,
                password=self.config.password,
                decode_responses=True
            )
        await self._call('ping', lambda: self.client.ping())
        self.logger.info("Redis connection established")

    async def close(self):
        if self.client is not None:
            await self.client.aclose()
            self.client = None
            self.logger.info("Redis connection closed")

    async def _call(self, name: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Run one Redis command, translating client errors to StoreError."""
        if self.client is None:
            raise StoreError(f"Redis {name} failed: store is not connected")

        self._count()
        try:
            return await operation()
        except RedisError as e:
            raise StoreError(f"Redis {name} failed: {e}") from e

    @staticmethod
    def _decode(value) -> Optional[str]:
        if isinstance(value, bytes):
            return value.decode('utf-8')
        return value

    async def get(self, key: str) -> Optional[str]:
        return self._decode(await self._call('get', lambda: self.client.get(key)))

    async def set(self, key: str, value: str):
        await self._call('set', lambda: self.client.set(key, value))

    async def setex(self, key: str, ttl: int, value: str):
        await self._call('setex', lambda: self.client.setex(key, int(ttl), value))

    async def delete(self, key: str):
        await self._call('delete', lambda: self.client.delete(key))

    async def keys(self, pattern: str) -> List[str]:
        keys = await self._call('keys', lambda: self.client.keys(pattern))
        return [self._decode(key) for key in keys]

    async def lpush(self, key: str, value: str) -> int:
        return await self._call('lpush', lambda: self.client.lpush(key, value))

    async def rpop(self, key: str) -> Optional[str]:
        return self._decode(await self._call('rpop', lambda: self.client.rpop(key)))

    async def llen(self, key: str) -> int:
        return await self._call('llen', lambda: self.client.llen(key))

    async def sadd(self, key: str, value: str) -> int:
        return await self._call('sadd', lambda: self.client.sadd(key, value))

    async def srem(self, key: str, value: str) -> int:
        return await self._call('srem', lambda: self.client.srem(key, value))

    async def sismember(self, key: str, value: str) -> bool:
        return bool(await self._call('sismember', lambda: self.client.sismember(key, value)))

    async def scard(self, key: str) -> int:
        return await self._call('scard', lambda: self.client.scard(key))

    async def smembers(self, key: str) -> Set[str]:
        members = await self._call('smembers', lambda: self.client.smembers(key))
        return {self._decode(member) for member in members}


class InMemoryCoordinationStore(CoordinationStore):
    """
    Process-local store with Redis list/set/expiry semantics.

    Useful for single-process runs and tests; workers sharing one instance
    coordinate exactly as they would through Redis.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        super().__init__()
        self._clock = clock
        self._values: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lists: Dict[str, Deque[str]] = {}
        self._sets: Dict[str, Set[str]] = {}
        self.logger = logging.getLogger(__name__)

    def _live_value(self, key: str) -> Optional[str]:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._values[key]
            return None
        return value

    async def get(self, key: str) -> Optional[str]:
        self._count()
        return self._live_value(key)

    async def set(self, key: str, value: str):
        self._count()
        self._values[key] = (value, None)

    async def setex(self, key: str, ttl: int, value: str):
        self._count()
        self._values[key] = (value, self._clock() + ttl)

    async def delete(self, key: str):
        self._count()
        self._values.pop(key, None)
        self._lists.pop(key, None)
        self._sets.pop(key, None)

    async def keys(self, pattern: str) -> List[str]:
        self._count()
        candidates = [key for key in list(self._values) if self._live_value(key) is not None]
        candidates += [key for key, items in self._lists.items() if items]
        candidates += [key for key, members in self._sets.items() if members]
        return [key for key in candidates if fnmatch.fnmatchcase(key, pattern)]

    async def lpush(self, key: str, value: str) -> int:
        self._count()
        items = self._lists.setdefault(key, deque())
        items.appendleft(value)
        return len(items)

    async def rpop(self, key: str) -> Optional[str]:
        self._count()
        items = self._lists.get(key)
        return items.pop() if items else None

    async def llen(self, key: str) -> int:
        self._count()
        return len(self._lists.get(key, ()))

    async def sadd(self, key: str, value: str) -> int:
        self._count()
        members = self._sets.setdefault(key, set())
        if value in members:
            return 0
        members.add(value)
        return 1

    async def srem(self, key: str, value: str) -> int:
        self._count()
        members = self._sets.get(key)
        if not members or value not in members:
            return 0
        members.remove(value)
        return 1

    async def sismember(self, key: str, value: str) -> bool:
        self._count()
        return value in self._sets.get(key, ())

    async def scard(self, key: str) -> int:
        self._count()
        return len(self._sets.get(key, ()))

    async def smembers(self, key: str) -> Set[str]:
        self._count()
        return set(self._sets.get(key, ()))
