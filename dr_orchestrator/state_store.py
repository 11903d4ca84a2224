"""
Durable key-value namespace for orchestrator state
Redis in production, in-memory for tests and single-process development
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError, TimeoutError as RedisTimeoutError

from .logging_adapter import get_safe_logger
from .resilience import RetryConfig, call_with_retry

logger = get_safe_logger("dr_orchestrator.state_store")


class StateStore(ABC):
    """
    Minimal durable KV contract. Values are JSON strings; compare_and_set is
    the only primitive that must be atomic across processes.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def put(self, key: str, value: str) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    @abstractmethod
    async def scan(self, prefix: str) -> List[str]:
        """Keys starting with ``prefix``, sorted."""

    @abstractmethod
    async def compare_and_set(self, key: str, expected: Optional[str], new: Optional[str]) -> bool:
        """
        Atomically replace ``key`` when its current value equals ``expected``.

        ``expected=None`` means the key must be absent; ``new=None`` deletes it.
        Returns False, without writing, when the precondition does not hold.
        """

    async def close(self) -> None:
        return None


class InMemoryStateStore(StateStore):
    """Process-local store. Survives controller restarts within one process."""

    def __init__(self):
        self._data: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def put(self, key: str, value: str) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def scan(self, prefix: str) -> List[str]:
        return sorted(k for k in self._data if k.startswith(prefix))

    async def compare_and_set(self, key: str, expected: Optional[str], new: Optional[str]) -> bool:
        async with self._lock:
            if self._data.get(key) != expected:
                return False
            if new is None:
                self._data.pop(key, None)
            else:
                self._data[key] = new
            return True

    def snapshot(self) -> Dict[str, str]:
        return dict(self._data)


# KEYS[1] = key, ARGV = [expected, has_expected, new, has_new]
_CAS_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if ARGV[2] == '1' then
    if current ~= ARGV[1] then
        return 0
    end
elseif current then
    return 0
end
if ARGV[4] == '1' then
    redis.call('SET', KEYS[1], ARGV[3])
else
    redis.call('DEL', KEYS[1])
end
return 1
"""


class RedisStateStore(StateStore):
    """Redis-backed store; compare_and_set runs as a Lua script."""

    def __init__(self, redis_url: str, retry_config: Optional[RetryConfig] = None,
                 client: Optional[aioredis.Redis] = None):
        self.redis_url = redis_url
        self.redis = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            max_connections=20
        )
        self.retry_config = retry_config or RetryConfig(
            max_attempts=3,
            base_delay=0.1,
            max_delay=2.0,
            retryable_exceptions=(RedisConnectionError, RedisTimeoutError, ConnectionError, TimeoutError)
        )

    async def _call(self, operation, *args):
        return await call_with_retry(
            operation, *args, config=self.retry_config, service_name="state_store"
        )

    async def get(self, key: str) -> Optional[str]:
        return await self._call(self.redis.get, key)

    async def put(self, key: str, value: str) -> None:
        await self._call(self.redis.set, key, value)

    async def delete(self, key: str) -> None:
        await self._call(self.redis.delete, key)

    async def scan(self, prefix: str) -> List[str]:
        async def collect():
            pattern = glob_escape(prefix) + "*"
            return sorted([key async for key in self.redis.scan_iter(match=pattern, count=500)])
        return await self._call(collect)

    async def compare_and_set(self, key: str, expected: Optional[str], new: Optional[str]) -> bool:
        result = await self._call(
            self.redis.eval,
            _CAS_SCRIPT,
            1,
            key,
            expected if expected is not None else "",
            "1" if expected is not None else "0",
            new if new is not None else "",
            "1" if new is not None else "0",
        )
        return bool(int(result))

    async def close(self) -> None:
        await self.redis.aclose()
        logger.info("state_store_closed", redis_url=self.redis_url)


def glob_escape(value: str) -> str:
    """Escape glob metacharacters for a Redis MATCH pattern."""
    return "".join("\\" + c if c in "*?[]\\" else c for c in value)


def create_state_store(backend: str, redis_url: Optional[str] = None) -> StateStore:
    if backend == "redis":
        if not redis_url:
            raise ValueError("redis_url is required for the redis state backend")
        return RedisStateStore(redis_url)
    return InMemoryStateStore()
