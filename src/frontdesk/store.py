"""
Session state stores.

Key format: frontdesk:{tenant_id}:session:{session_id}
Value: the msgspec JSON blob from `src.frontdesk.state.encode_state`
TTL: STATE_TTL_SECONDS (a call never outlives it)

Every backend error surfaces as `StatePersistenceFailure` so the service can
re-emit the last prompt instead of advancing on state it could not save.
"""

import asyncio
import time
from typing import Dict, Optional, Protocol, Tuple

import structlog
import redis.asyncio as redis_asyncio
from redis.exceptions import RedisError

from src.frontdesk.errors import StatePersistenceFailure

logger = structlog.get_logger(__name__)


def _make_key(tenant_id: str, session_id: str) -> str:
    return f"frontdesk:{tenant_id}:session:{session_id}"


class StateStore(Protocol):
    async def get(self, tenant_id: str, session_id: str) -> Optional[bytes]: ...

    async def put(self, tenant_id: str, session_id: str, blob: bytes, ttl: int) -> None: ...

    async def delete(self, tenant_id: str, session_id: str) -> None: ...

    async def close(self) -> None: ...


class InMemoryStateStore:
    """Process-local store for development and tests."""

    def __init__(self) -> None:
        self._data: Dict[str, Tuple[float, bytes]] = {}
        self._lock = asyncio.Lock()

    async def get(self, tenant_id: str, session_id: str) -> Optional[bytes]:
        key = _make_key(tenant_id, session_id)
        async with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            expires_at, blob = entry
            if expires_at <= time.monotonic():
                del self._data[key]
                return None
            return blob

    async def put(self, tenant_id: str, session_id: str, blob: bytes, ttl: int) -> None:
        async with self._lock:
            self._data[_make_key(tenant_id, session_id)] = (time.monotonic() + ttl, blob)

    async def delete(self, tenant_id: str, session_id: str) -> None:
        async with self._lock:
            self._data.pop(_make_key(tenant_id, session_id), None)

    async def close(self) -> None:
        return None

    def __len__(self) -> int:
        return len(self._data)


class RedisStateStore:
    """Redis-backed store (redis.asyncio)."""

    def __init__(self, client=None, *, url: str = "redis://localhost:6379/0"):
        if client is None:
            client = redis_asyncio.Redis.from_url(
                url,
                socket_connect_timeout=2,
                socket_timeout=2,
            )
        self._client = client

    async def get(self, tenant_id: str, session_id: str) -> Optional[bytes]:
        try:
            value = await self._client.get(_make_key(tenant_id, session_id))
        except RedisError as e:
            logger.error("State load failed", session_id=session_id, error=str(e))
            raise StatePersistenceFailure(
                f"Failed to load state: {e}", session_id=session_id, operation="get"
            ) from e
        if value is None:
            return None
        return value.encode("utf-8") if isinstance(value, str) else value

    async def put(self, tenant_id: str, session_id: str, blob: bytes, ttl: int) -> None:
        try:
            await self._client.set(_make_key(tenant_id, session_id), blob, ex=ttl)
        except RedisError as e:
            logger.error("State save failed", session_id=session_id, error=str(e))
            raise StatePersistenceFailure(
                f"Failed to save state: {e}", session_id=session_id, operation="put"
            ) from e

    async def delete(self, tenant_id: str, session_id: str) -> None:
        try:
            await self._client.delete(_make_key(tenant_id, session_id))
        except RedisError as e:
            raise StatePersistenceFailure(
                f"Failed to delete state: {e}", session_id=session_id, operation="delete"
            ) from e

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except RedisError:
            return False

    async def close(self) -> None:
        await self._client.aclose()


def create_state_store(config) -> StateStore:
    if config.state_store == "redis":
        logger.info("Using Redis state store")
        return RedisStateStore(url=config.redis_url)
    logger.info("Using in-memory state store")
    return InMemoryStateStore()
