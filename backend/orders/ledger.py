"""
Order Ledger
============
Durable record of orders and bookings.

- Persistence interfaces (swap in-memory/Postgres without code changes)
- Compare-and-swap updates on ``version`` (serializes concurrent writers)
- Unique provider reference per provider, unique idempotency key
- Soft-deleted records hidden from customer-facing reads only
- Append-only audit log

pip install asyncpg pydantic structlog
"""

import asyncio
import json
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime
from typing import Callable, Generic, Optional, TypeVar

import asyncpg
import structlog

from database import Database, rows_affected
from errors import DuplicateOrderError, OrderNotFound, StaleOrderError
from orders.models import (
    AuditEventType,
    AuditLogEntry,
    Booking,
    Order,
    OrderStatus,
    StatefulRecord,
)

logger = structlog.get_logger().bind(component="ledger")

T = TypeVar("T", bound=StatefulRecord)


# =============================================================================
# PERSISTENCE INTERFACES
# =============================================================================

class IStatefulRepository(ABC, Generic[T]):
    """Operations every state-machine entity store provides"""

    kind = "entity"

    @abstractmethod
    async def get(self, entity_id: str, include_deleted: bool = False) -> Optional[T]:
        pass

    @abstractmethod
    async def create(self, entity: T) -> T:
        pass

    @abstractmethod
    async def update(self, entity: T, expected_version: int) -> T:
        """Persist ``entity`` only if the stored version is ``expected_version``."""
        pass

    @abstractmethod
    async def hard_delete(self, entity_id: str) -> bool:
        pass

    async def require(self, entity_id: str, include_deleted: bool = False) -> T:
        entity = await self.get(entity_id, include_deleted=include_deleted)
        if entity is None:
            raise OrderNotFound(entity_id, kind=self.kind)
        return entity


class IOrderRepository(IStatefulRepository[Order]):
    """Order-specific repository interface"""

    kind = "order"

    @abstractmethod
    async def get_by_provider_reference(self, provider: str, reference: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_by_idempotency_key(self, key: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def list_awaiting_payment(self, updated_before: datetime, limit: int = 50) -> list[Order]:
        pass


class IBookingRepository(IStatefulRepository[Booking]):
    kind = "booking"


class IAuditLog(ABC):
    """Audit log interface"""

    @abstractmethod
    async def append(self, entry: AuditLogEntry) -> None:
        pass

    @abstractmethod
    async def get_by_correlation_id(self, correlation_id: str) -> list[AuditLogEntry]:
        pass

    @abstractmethod
    async def get_by_entity(self, entity_type: str, entity_id: str) -> list[AuditLogEntry]:
        pass


# =============================================================================
# IN-MEMORY IMPLEMENTATIONS
# =============================================================================

class _InMemoryStatefulRepository(IStatefulRepository[T]):
    """Thread-safe in-memory store keyed by ``entity_id``"""

    def __init__(self):
        self._items: dict[str, T] = {}
        self._lock = asyncio.Lock()

    async def get(self, entity_id: str, include_deleted: bool = False) -> Optional[T]:
        async with self._lock:
            entity = self._items.get(entity_id)
            if entity is None or (entity.deleted and not include_deleted):
                return None
            return entity

    async def create(self, entity: T) -> T:
        async with self._lock:
            self._check_unique(entity)
            self._items[entity.entity_id] = entity
            return entity

    def _check_unique(self, entity: T) -> None:
        if entity.entity_id in self._items:
            raise DuplicateOrderError("id", entity.entity_id)

    async def update(self, entity: T, expected_version: int) -> T:
        async with self._lock:
            stored = self._items.get(entity.entity_id)
            if stored is None:
                raise OrderNotFound(entity.entity_id, kind=self.kind)
            if stored.version != expected_version:
                raise StaleOrderError(entity.entity_id, expected_version)
            self._items[entity.entity_id] = entity
            return entity

    async def hard_delete(self, entity_id: str) -> bool:
        async with self._lock:
            return self._items.pop(entity_id, None) is not None

    async def all(self) -> list[T]:
        async with self._lock:
            return list(self._items.values())


class InMemoryOrderRepository(_InMemoryStatefulRepository[Order], IOrderRepository):

    def _check_unique(self, entity: Order) -> None:
        super()._check_unique(entity)
        for order in self._items.values():
            if order.idempotency_key == entity.idempotency_key:
                raise DuplicateOrderError("idempotency_key", entity.idempotency_key)
            if (
                entity.provider_reference
                and order.provider == entity.provider
                and order.provider_reference == entity.provider_reference
            ):
                raise DuplicateOrderError("provider_reference", entity.provider_reference)

    async def update(self, entity: Order, expected_version: int) -> Order:
        async with self._lock:
            stored = self._items.get(entity.order_id)
            if stored is not None and entity.provider_reference and not stored.provider_reference:
                for other in self._items.values():
                    if (
                        other.order_id != entity.order_id
                        and other.provider == entity.provider
                        and other.provider_reference == entity.provider_reference
                    ):
                        raise DuplicateOrderError("provider_reference", entity.provider_reference)
        return await super().update(entity, expected_version)

    async def get_by_provider_reference(self, provider: str, reference: str) -> Optional[Order]:
        async with self._lock:
            for order in self._items.values():
                if order.provider == provider and order.provider_reference == reference:
                    return order
            return None

    async def get_by_idempotency_key(self, key: str) -> Optional[Order]:
        async with self._lock:
            for order in self._items.values():
                if order.idempotency_key == key:
                    return order
            return None

    async def list_awaiting_payment(self, updated_before: datetime, limit: int = 50) -> list[Order]:
        async with self._lock:
            stuck = [
                o for o in self._items.values()
                if o.status == OrderStatus.AWAITING_PAYMENT and o.updated_at < updated_before
            ]
            stuck.sort(key=lambda o: o.updated_at)
            return stuck[:limit]


class InMemoryBookingRepository(_InMemoryStatefulRepository[Booking], IBookingRepository):
    pass


class InMemoryAuditLog(IAuditLog):
    """Append-only audit log"""

    def __init__(self):
        self._logs: list[AuditLogEntry] = []
        self._by_correlation: dict[str, list[AuditLogEntry]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def append(self, entry: AuditLogEntry) -> None:
        async with self._lock:
            self._logs.append(entry)
            self._by_correlation[entry.correlation_id].append(entry)

    async def get_by_correlation_id(self, correlation_id: str) -> list[AuditLogEntry]:
        async with self._lock:
            return list(self._by_correlation.get(correlation_id, []))

    async def get_by_entity(self, entity_type: str, entity_id: str) -> list[AuditLogEntry]:
        async with self._lock:
            return [e for e in self._logs if e.entity_type == entity_type and e.entity_id == entity_id]


# =============================================================================
# POSTGRES IMPLEMENTATIONS
# =============================================================================

class PostgresOrderRepository(IOrderRepository):
    """Orders stored as JSONB documents with indexed lookup columns"""

    def __init__(self, db: Database):
        self.db = db

    @staticmethod
    def _load(row) -> Optional[Order]:
        if row is None:
            return None
        return Order.model_validate_json(row["document"])

    async def get(self, entity_id: str, include_deleted: bool = False) -> Optional[Order]:
        query = "SELECT document FROM orders WHERE order_id = $1"
        if not include_deleted:
            query += " AND deleted = FALSE"
        return self._load(await self.db.fetch_one(query, entity_id))

    async def get_by_provider_reference(self, provider: str, reference: str) -> Optional[Order]:
        row = await self.db.fetch_one(
            "SELECT document FROM orders WHERE provider = $1 AND provider_reference = $2",
            provider,
            reference,
        )
        return self._load(row)

    async def get_by_idempotency_key(self, key: str) -> Optional[Order]:
        row = await self.db.fetch_one("SELECT document FROM orders WHERE idempotency_key = $1", key)
        return self._load(row)

    async def create(self, entity: Order) -> Order:
        try:
            await self.db.execute(
                """
                INSERT INTO orders
                (storage_id, order_id, idempotency_key, provider, provider_reference,
                 status, deleted, version, document, created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                """,
                uuid.UUID(entity.storage_id),
                entity.order_id,
                entity.idempotency_key,
                entity.provider.value,
                entity.provider_reference,
                entity.status.value,
                entity.deleted,
                entity.version,
                entity.model_dump_json(),
                entity.created_at,
                entity.updated_at,
            )
        except asyncpg.UniqueViolationError as e:
            field = "provider_reference" if "provider_reference" in (e.constraint_name or "") else "idempotency_key"
            raise DuplicateOrderError(field, getattr(entity, field) or entity.order_id)
        return entity

    async def update(self, entity: Order, expected_version: int) -> Order:
        try:
            status = await self.db.execute(
                """
                UPDATE orders
                SET provider_reference = $1, status = $2, deleted = $3, version = $4,
                    document = $5, updated_at = $6
                WHERE order_id = $7 AND version = $8
                """,
                entity.provider_reference,
                OrderStatus(entity.status).value,
                entity.deleted,
                entity.version,
                entity.model_dump_json(),
                entity.updated_at,
                entity.order_id,
                expected_version,
            )
        except asyncpg.UniqueViolationError:
            raise DuplicateOrderError("provider_reference", entity.provider_reference)
        if rows_affected(status) == 0:
            if await self.get(entity.order_id, include_deleted=True) is None:
                raise OrderNotFound(entity.order_id)
            raise StaleOrderError(entity.order_id, expected_version)
        return entity

    async def hard_delete(self, entity_id: str) -> bool:
        status = await self.db.execute("DELETE FROM orders WHERE order_id = $1", entity_id)
        return rows_affected(status) > 0

    async def list_awaiting_payment(self, updated_before: datetime, limit: int = 50) -> list[Order]:
        rows = await self.db.fetch_all(
            """
            SELECT document FROM orders
            WHERE status = $1 AND updated_at < $2
            ORDER BY updated_at ASC
            LIMIT $3
            """,
            OrderStatus.AWAITING_PAYMENT.value,
            updated_before,
            limit,
        )
        return [self._load(row) for row in rows]


class PostgresBookingRepository(IBookingRepository):

    def __init__(self, db: Database):
        self.db = db

    async def get(self, entity_id: str, include_deleted: bool = False) -> Optional[Booking]:
        query = "SELECT document FROM bookings WHERE booking_id = $1"
        if not include_deleted:
            query += " AND deleted = FALSE"
        row = await self.db.fetch_one(query, entity_id)
        return Booking.model_validate_json(row["document"]) if row else None

    async def create(self, entity: Booking) -> Booking:
        try:
            await self.db.execute(
                """
                INSERT INTO bookings (booking_id, status, deleted, version, document, created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                """,
                entity.booking_id,
                entity.status.value,
                entity.deleted,
                entity.version,
                entity.model_dump_json(),
                entity.created_at,
                entity.updated_at,
            )
        except asyncpg.UniqueViolationError:
            raise DuplicateOrderError("booking_id", entity.booking_id)
        return entity

    async def update(self, entity: Booking, expected_version: int) -> Booking:
        status = await self.db.execute(
            """
            UPDATE bookings SET status = $1, deleted = $2, version = $3, document = $4, updated_at = $5
            WHERE booking_id = $6 AND version = $7
            """,
            str(getattr(entity.status, "value", entity.status)),
            entity.deleted,
            entity.version,
            entity.model_dump_json(),
            entity.updated_at,
            entity.booking_id,
            expected_version,
        )
        if rows_affected(status) == 0:
            if await self.get(entity.booking_id, include_deleted=True) is None:
                raise OrderNotFound(entity.booking_id, kind="booking")
            raise StaleOrderError(entity.booking_id, expected_version)
        return entity

    async def hard_delete(self, entity_id: str) -> bool:
        status = await self.db.execute("DELETE FROM bookings WHERE booking_id = $1", entity_id)
        return rows_affected(status) > 0


class PostgresAuditLog(IAuditLog):

    def __init__(self, db: Database):
        self.db = db

    async def append(self, entry: AuditLogEntry) -> None:
        await self.db.execute(
            """
            INSERT INTO audit_log (log_id, correlation_id, event_type, entity_type, entity_id, entry, timestamp)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            """,
            uuid.UUID(entry.log_id),
            entry.correlation_id,
            entry.event_type.value,
            entry.entity_type,
            entry.entity_id,
            entry.model_dump_json(),
            entry.timestamp,
        )

    async def get_by_correlation_id(self, correlation_id: str) -> list[AuditLogEntry]:
        rows = await self.db.fetch_all(
            "SELECT entry FROM audit_log WHERE correlation_id = $1 ORDER BY timestamp",
            correlation_id,
        )
        return [AuditLogEntry.model_validate(json.loads(row["entry"])) for row in rows]

    async def get_by_entity(self, entity_type: str, entity_id: str) -> list[AuditLogEntry]:
        rows = await self.db.fetch_all(
            "SELECT entry FROM audit_log WHERE entity_type = $1 AND entity_id = $2 ORDER BY timestamp",
            entity_type,
            entity_id,
        )
        return [AuditLogEntry.model_validate(json.loads(row["entry"])) for row in rows]


# =============================================================================
# WRITE HELPERS
# =============================================================================

Mutation = Callable[[T], Optional[T]]


async def update_with_retry(
    repo: IStatefulRepository[T],
    entity_id: str,
    mutate: Mutation,
    max_attempts: int = 3,
    include_deleted: bool = True,
) -> tuple[T, Optional[T]]:
    """
    Load, mutate and compare-and-swap an entity.

    ``mutate`` returns the new entity, or ``None`` when nothing changes. On a
    stale write the entity is reloaded and ``mutate`` re-applied, so guards
    are always evaluated against the version being replaced.

    Returns ``(before, after)``; ``after`` is ``None`` for a no-op.
    """
    for attempt in range(1, max_attempts + 1):
        current = await repo.require(entity_id, include_deleted=include_deleted)
        updated = mutate(current)
        if updated is None:
            return current, None
        try:
            return current, await repo.update(updated, expected_version=current.version)
        except StaleOrderError:
            if attempt == max_attempts:
                raise
            logger.warning("stale_write_retry", entity_id=entity_id, attempt=attempt, version=current.version)
    raise StaleOrderError(entity_id, -1)


async def emit_audit(
    audit: IAuditLog,
    event_type: AuditEventType,
    entity_type: str,
    entity_id: str,
    correlation_id: str,
    previous_state: Optional[dict] = None,
    new_state: Optional[dict] = None,
    metadata: Optional[dict] = None,
    actor: str = "system",
) -> AuditLogEntry:
    """Emit audit log entry"""
    entry = AuditLogEntry(
        correlation_id=correlation_id,
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        previous_state=previous_state,
        new_state=new_state,
        metadata=metadata or {},
        actor=actor,
    )
    await audit.append(entry)
    logger.info("audit_event",
                event_type=event_type.value,
                entity_type=entity_type,
                entity_id=entity_id,
                correlation_id=correlation_id)
    return entry
