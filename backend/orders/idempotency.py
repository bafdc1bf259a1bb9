"""
Idempotency Guard
=================
At-most-one order per logical checkout attempt.

``reserve(key)`` is atomic across concurrent identical requests: exactly one
caller gets a fresh reservation, every other caller waits for the winner and
receives the winner's order id. Keys are kept for a bounded retention window.

Backends:
- InMemoryIdempotencyStore: asyncio primitives (tests, single process)
- RedisIdempotencyStore: SET NX EX (multi-process)

pip install redis structlog
"""

import asyncio
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import structlog

from errors import IdempotencyConflict
from orders.models import utcnow

logger = structlog.get_logger().bind(component="idempotency")


class IdempotencySettings:
    def __init__(self):
        # Covers client retry timeouts with a wide margin
        self.TTL_SECONDS = int(os.getenv("IDEMPOTENCY_TTL_SECONDS", str(86400)))
        # How long a duplicate waits for an in-flight winner
        self.WAIT_SECONDS = float(os.getenv("IDEMPOTENCY_WAIT_SECONDS", "15"))
        self.POLL_INTERVAL_SECONDS = float(os.getenv("IDEMPOTENCY_POLL_SECONDS", "0.05"))


@dataclass(frozen=True)
class Reservation:
    key: str
    fresh: bool
    existing_order_id: Optional[str] = None

    @classmethod
    def duplicate(cls, key: str, order_id: str) -> "Reservation":
        return cls(key=key, fresh=False, existing_order_id=order_id)


@dataclass
class IdempotencyRecord:
    key: str
    status: str  # "processing", "completed"
    expires_at: datetime
    order_id: Optional[str] = None


class IIdempotencyStore(ABC):
    """Idempotency store interface"""

    @abstractmethod
    async def reserve(self, key: str) -> Reservation:
        """
        Reserve ``key`` for a new checkout.

        Raises:
            IdempotencyConflict: the winner is still in flight after the wait window.
        """
        pass

    @abstractmethod
    async def complete(self, key: str, order_id: str) -> None:
        """Bind the reservation to the created order."""
        pass

    @abstractmethod
    async def release(self, key: str) -> None:
        """Drop an uncompleted reservation so the key can be retried."""
        pass

    @abstractmethod
    async def purge_expired(self) -> int:
        pass


class InMemoryIdempotencyStore(IIdempotencyStore):

    def __init__(self, settings: Optional[IdempotencySettings] = None):
        self.settings = settings or IdempotencySettings()
        self._records: dict[str, IdempotencyRecord] = {}
        self._events: dict[str, asyncio.Event] = {}
        self._lock = asyncio.Lock()

    async def reserve(self, key: str) -> Reservation:
        deadline = asyncio.get_running_loop().time() + self.settings.WAIT_SECONDS
        while True:
            async with self._lock:
                record = self._records.get(key)
                if record and record.expires_at <= utcnow():
                    del self._records[key]
                    record = None

                if record is None:
                    self._records[key] = IdempotencyRecord(
                        key=key,
                        status="processing",
                        expires_at=utcnow() + timedelta(seconds=self.settings.TTL_SECONDS),
                    )
                    self._events[key] = asyncio.Event()
                    return Reservation(key=key, fresh=True)

                if record.status == "completed":
                    logger.info("idempotency_duplicate", key=key, order_id=record.order_id)
                    return Reservation.duplicate(key, record.order_id)

                event = self._events[key]

            remaining = deadline - asyncio.get_running_loop().time()
            if remaining <= 0:
                raise IdempotencyConflict(key)
            try:
                await asyncio.wait_for(event.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                raise IdempotencyConflict(key)

    async def complete(self, key: str, order_id: str) -> None:
        async with self._lock:
            self._records[key] = IdempotencyRecord(
                key=key,
                status="completed",
                order_id=order_id,
                expires_at=utcnow() + timedelta(seconds=self.settings.TTL_SECONDS),
            )
            event = self._events.pop(key, None)
        if event:
            event.set()

    async def release(self, key: str) -> None:
        async with self._lock:
            record = self._records.get(key)
            if record and record.status == "processing":
                del self._records[key]
            event = self._events.pop(key, None)
        if event:
            event.set()

    async def purge_expired(self) -> int:
        async with self._lock:
            now = utcnow()
            expired = [
                k for k, r in self._records.items()
                if r.expires_at <= now and r.status == "completed"
            ]
            for k in expired:
                del self._records[k]
        if expired:
            logger.info("idempotency_keys_purged", count=len(expired))
        return len(expired)

    async def get_record(self, key: str) -> Optional[IdempotencyRecord]:
        async with self._lock:
            return self._records.get(key)


class RedisIdempotencyStore(IIdempotencyStore):
    """
    Redis-backed guard.

    - reserve: SET idem:<key> processing NX EX ttl
    - complete: SET idem:<key> order:<id> EX ttl
    - release: DEL only while still processing
    Expiry is handled by Redis TTLs.
    """

    PROCESSING = "processing"
    PREFIX = "idem:"

    def __init__(self, redis, settings: Optional[IdempotencySettings] = None):
        self._redis = redis
        self.settings = settings or IdempotencySettings()

    def _name(self, key: str) -> str:
        return f"{self.PREFIX}{key}"

    async def reserve(self, key: str) -> Reservation:
        name = self._name(key)
        deadline = asyncio.get_running_loop().time() + self.settings.WAIT_SECONDS
        while True:
            acquired = await self._redis.set(name, self.PROCESSING, nx=True, ex=self.settings.TTL_SECONDS)
            if acquired:
                return Reservation(key=key, fresh=True)

            value = await self._redis.get(name)
            if isinstance(value, bytes):
                value = value.decode()
            if value and value.startswith("order:"):
                order_id = value.split(":", 1)[1]
                logger.info("idempotency_duplicate", key=key, order_id=order_id)
                return Reservation.duplicate(key, order_id)

            if asyncio.get_running_loop().time() >= deadline:
                raise IdempotencyConflict(key)
            await asyncio.sleep(self.settings.POLL_INTERVAL_SECONDS)

    async def complete(self, key: str, order_id: str) -> None:
        await self._redis.set(self._name(key), f"order:{order_id}", ex=self.settings.TTL_SECONDS)

    async def release(self, key: str) -> None:
        name = self._name(key)
        value = await self._redis.get(name)
        if isinstance(value, bytes):
            value = value.decode()
        if value == self.PROCESSING:
            await self._redis.delete(name)

    async def purge_expired(self) -> int:
        # Redis expires keys on its own
        return 0
