"""Cross-instance lease lock.

Prevents two replicas from responding to the same inbound event. A lease is
a TTL-bound, exclusively held claim on a key.

Backends:
- RedisLeaseBackend: atomic ``SET key owner NX PX ttl`` against a shared
  Redis. This is the only backend with a cross-process guarantee.
- MemoryLeaseBackend: in-process dict with the same acquire/expire
  semantics. Used when Redis is not configured or errors out. This is a
  DEGRADED mode: it only coordinates tasks inside one process.

LeaseLock composes the two. Every Redis failure is logged and retried
against the memory backend, so callers always get an answer.
"""

import itertools
import logging
import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Dict, Optional, Tuple

import redis.asyncio as aioredis

from codeforge.config.settings import get_settings

logger = logging.getLogger(__name__)

KEY_PREFIX = 'codeforge:respond-lock:'
DEFAULT_TTL_SECONDS = 180.0


@dataclass(frozen=True)
class LeaseResult:
    """Outcome of one acquisition attempt."""
    acquired: bool
    owner: str
    backend: str = 'memory'

    def __bool__(self) -> bool:
        return self.acquired


class LeaseBackend(ABC):
    """Storage strategy for leases."""

    name = 'abstract'

    @abstractmethod
    async def try_acquire(self, key: str, owner: str, ttl: float) -> Tuple[bool, str]:
        """Set key to owner if absent or expired.

        Returns (acquired, owner) where owner is the holder that won.
        """

    @abstractmethod
    async def release(self, key: str) -> None:
        """Delete the lease for key. Missing keys are not an error."""


class MemoryLeaseBackend(LeaseBackend):
    """Process-local leases. No cross-process guarantee.

    try_acquire never awaits between the expiry check and the write, so
    concurrent tasks on one event loop cannot both acquire.
    """

    name = 'memory'

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._leases: Dict[str, Tuple[str, float]] = {}

    async def try_acquire(self, key: str, owner: str, ttl: float) -> Tuple[bool, str]:
        return self.acquire_now(key, owner, ttl)

    def acquire_now(self, key: str, owner: str, ttl: float) -> Tuple[bool, str]:
        now = self._clock()
        held = self._leases.get(key)
        if held is not None and held[1] > now:
            return False, held[0]
        self._leases[key] = (owner, now + ttl)
        return True, owner

    async def release(self, key: str) -> None:
        self._leases.pop(key, None)

    def holder(self, key: str) -> Optional[str]:
        held = self._leases.get(key)
        if held is None or held[1] <= self._clock():
            return None
        return held[0]

    def size(self) -> int:
        return len(self._leases)


class RedisLeaseBackend(LeaseBackend):
    """Leases stored in Redis with native key expiry."""

    name = 'redis'

    def __init__(self, client: aioredis.Redis):
        self.client = client

    async def try_acquire(self, key: str, owner: str, ttl: float) -> Tuple[bool, str]:
        ok = await self.client.set(key, owner, nx=True, px=max(1, int(ttl * 1000)))
        return bool(ok), owner

    async def release(self, key: str) -> None:
        await self.client.delete(key)


class LeaseLock:
    """Named, TTL-bound lease with Redis primary and memory fallback.

    Example:
        >>> lock = LeaseLock(redis_backend, instance_id='replica-a')
        >>> result = await lock.acquire('guild:chan:msg')
        >>> if result.acquired:
        ...     try:
        ...         ...  # respond
        ...     finally:
        ...         await lock.release('guild:chan:msg')
    """

    def __init__(
        self,
        primary: Optional[LeaseBackend] = None,
        fallback: Optional[MemoryLeaseBackend] = None,
        instance_id: str = 'local',
        default_ttl: float = DEFAULT_TTL_SECONDS,
        key_prefix: str = KEY_PREFIX,
    ):
        self.primary = primary
        self.fallback = fallback if fallback is not None else MemoryLeaseBackend()
        self.instance_id = instance_id
        self.default_ttl = default_ttl
        self.key_prefix = key_prefix
        self._counter = itertools.count(1)
        self._degraded_logged = False

        if primary is None:
            logger.warning(
                "Lease lock running memory-only - no cross-instance guarantee (UNSAFE with multiple replicas!)"
            )
            self._degraded_logged = True

    def _make_owner(self) -> str:
        return f"{self.instance_id}-{next(self._counter)}-{int(time.time() * 1000)}"

    def _full_key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    async def acquire(self, key: str, ttl: Optional[float] = None) -> LeaseResult:
        """Try to take the lease for key. Never raises."""
        ttl = self.default_ttl if ttl is None else ttl
        owner = self._make_owner()
        full_key = self._full_key(key)

        if self.primary is not None:
            try:
                acquired, holder = await self.primary.try_acquire(full_key, owner, ttl)
                if acquired:
                    logger.debug(f"Acquired lease {full_key} as {owner}")
                else:
                    logger.info(f"Lease {full_key} held elsewhere; attempt {owner} skipped")
                return LeaseResult(acquired, holder, self.primary.name)
            except Exception as e:
                if not self._degraded_logged:
                    logger.warning(f"Lease store unavailable ({e}) - falling back to in-memory leases (degraded)")
                    self._degraded_logged = True
                else:
                    logger.debug(f"Lease store error on {full_key}: {e}")

        acquired, holder = self.fallback.acquire_now(full_key, owner, ttl)
        if not acquired:
            logger.info(f"Lease {full_key} held by {holder}; attempt {owner} skipped")
        return LeaseResult(acquired, holder, self.fallback.name)

    async def release(self, key: str) -> None:
        """Best-effort release on every backend. Never raises."""
        full_key = self._full_key(key)
        if self.primary is not None:
            try:
                await self.primary.release(full_key)
            except Exception as e:
                logger.warning(f"Error releasing lease {full_key}: {e}")
        await self.fallback.release(full_key)
        logger.debug(f"Released lease {full_key}")

    @asynccontextmanager
    async def lease(self, key: str, ttl: Optional[float] = None) -> AsyncIterator[LeaseResult]:
        """Acquire for the duration of the block; release only if acquired."""
        result = await self.acquire(key, ttl)
        try:
            yield result
        finally:
            if result.acquired:
                await self.release(key)


def get_redis_client(url: Optional[str]) -> Optional[aioredis.Redis]:
    """Build an asyncio Redis client, or None when no URL is configured.

    Connection errors surface on first use and trigger the memory fallback.
    """
    if not url:
        return None
    try:
        return aioredis.from_url(url, socket_timeout=5.0, socket_connect_timeout=5.0, decode_responses=True)
    except ValueError as e:
        logger.warning(f"Invalid REDIS_URL for leases: {e}")
        return None


# Global instance
_lease_lock: Optional[LeaseLock] = None


def get_lease_lock() -> LeaseLock:
    """Process-wide lease lock built from settings."""
    global _lease_lock
    if _lease_lock is None:
        settings = get_settings()
        client = get_redis_client(settings.redis_url)
        _lease_lock = LeaseLock(
            primary=RedisLeaseBackend(client) if client is not None else None,
            instance_id=settings.instance_id,
            default_ttl=settings.lock_ttl_seconds,
        )
    return _lease_lock


def reset_lease_lock() -> None:
    global _lease_lock
    _lease_lock = None
