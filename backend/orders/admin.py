"""
Administrative operations on orders and bookings.

Soft-delete / restore are orthogonal to the state machine: they never touch
``status`` or ``status_history``. Only cancelled records may be soft-deleted;
an irreversible hard delete requires an elevated privilege and is logged as a
security event.
"""

import uuid
from dataclasses import dataclass, field
from typing import Iterable, Optional

import structlog

from errors import FulfillmentError, InvalidTransition, PrivilegeDenied
from orders.ledger import IAuditLog, IBookingRepository, IOrderRepository, IStatefulRepository, emit_audit, update_with_retry
from orders.locks import KeyedLocks
from orders.models import AuditEventType, Booking, BookingStatus, OrderStatus, StatefulRecord, TransitionEvent
from orders.state_machine import BOOKING_MACHINE, TransitionResult

logger = structlog.get_logger().bind(component="admin")


@dataclass
class DeleteOutcome:
    entity_id: str
    action: str  # "soft_deleted", "hard_deleted", "already_deleted", "restored", "not_deleted"
    entity: Optional[StatefulRecord] = None

    def to_dict(self) -> dict:
        body = {"id": self.entity_id, "action": self.action}
        if self.entity is not None:
            body["status"] = getattr(self.entity.status, "value", self.entity.status)
            body["deleted"] = self.entity.deleted
        return body


@dataclass
class BulkResult:
    processed: list[dict] = field(default_factory=list)
    rejected: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "rejected": self.rejected,
            "processed_count": len(self.processed),
            "rejected_count": len(self.rejected),
        }


class SoftDeleteManager:
    """Delete / restore for one entity type, with the same rules for all."""

    def __init__(
        self,
        repo: IStatefulRepository,
        audit: IAuditLog,
        locks: KeyedLocks,
        entity_type: str,
        deletable_statuses: frozenset,
        events: dict,
    ):
        self.repo = repo
        self.audit = audit
        self.locks = locks
        self.entity_type = entity_type
        self.deletable_statuses = frozenset(s.value for s in deletable_statuses)
        self.events = events

    def _status(self, entity) -> str:
        return getattr(entity.status, "value", entity.status)

    async def delete(
        self,
        entity_id: str,
        reason: Optional[str],
        actor: str,
        hard_delete: bool = False,
        elevated: bool = False,
        correlation_id: Optional[str] = None,
    ) -> DeleteOutcome:
        """
        Soft-delete a cancelled record, or hard-delete any record when elevated.

        Raises:
            PrivilegeDenied: hard delete without elevation.
            InvalidTransition: soft delete of a record that is not cancelled.
            OrderNotFound: unknown id.
        """
        correlation_id = correlation_id or str(uuid.uuid4())
        if hard_delete:
            if not elevated:
                logger.warning("hard_delete_denied",
                               security_event=True,
                               entity_type=self.entity_type,
                               entity_id=entity_id,
                               actor=actor)
                raise PrivilegeDenied(f"Hard delete of {self.entity_type} {entity_id} requires elevated privilege")
            return await self._hard_delete(entity_id, reason, actor, correlation_id)

        def mutate(current):
            if current.deleted:
                return None
            status = self._status(current)
            if status not in self.deletable_statuses:
                raise InvalidTransition(
                    status, "deleted",
                    reason=f"only {', '.join(sorted(self.deletable_statuses))} records can be soft-deleted",
                    entity_id=entity_id,
                )
            return current.soft_deleted(actor, reason)

        async with self.locks.hold(entity_id):
            before, after = await update_with_retry(self.repo, entity_id, mutate)

        if after is None:
            return DeleteOutcome(entity_id, "already_deleted", before)

        await emit_audit(
            self.audit,
            self.events["soft_deleted"],
            self.entity_type,
            entity_id,
            correlation_id,
            previous_state={"deleted": False},
            new_state={"deleted": True, "status": self._status(after)},
            metadata={"reason": reason},
            actor=actor,
        )
        return DeleteOutcome(entity_id, "soft_deleted", after)

    async def _hard_delete(self, entity_id: str, reason: Optional[str], actor: str, correlation_id: str) -> DeleteOutcome:
        async with self.locks.hold(entity_id):
            entity = await self.repo.require(entity_id, include_deleted=True)
            await self.repo.hard_delete(entity_id)

        logger.warning("hard_delete_performed",
                       security_event=True,
                       entity_type=self.entity_type,
                       entity_id=entity_id,
                       status=self._status(entity),
                       actor=actor,
                       reason=reason)
        await emit_audit(
            self.audit,
            self.events["hard_deleted"],
            self.entity_type,
            entity_id,
            correlation_id,
            previous_state=entity.model_dump(mode="json"),
            metadata={"reason": reason},
            actor=actor,
        )
        return DeleteOutcome(entity_id, "hard_deleted")

    async def restore(self, entity_id: str, actor: str, correlation_id: Optional[str] = None) -> DeleteOutcome:
        """Clear the soft-delete fields; status and history are untouched."""
        correlation_id = correlation_id or str(uuid.uuid4())

        def mutate(current):
            return current.restored() if current.deleted else None

        async with self.locks.hold(entity_id):
            before, after = await update_with_retry(self.repo, entity_id, mutate)

        if after is None:
            return DeleteOutcome(entity_id, "not_deleted", before)

        await emit_audit(
            self.audit,
            self.events["restored"],
            self.entity_type,
            entity_id,
            correlation_id,
            previous_state={"deleted": True, "deleted_by": before.deleted_by},
            new_state={"deleted": False},
            actor=actor,
        )
        return DeleteOutcome(entity_id, "restored", after)

    async def bulk_delete(
        self,
        entity_ids: Iterable[str],
        reason: Optional[str],
        actor: str,
        hard_delete: bool = False,
        elevated: bool = False,
    ) -> BulkResult:
        """Apply ``delete`` to each id; failures are reported per member."""
        if hard_delete and not elevated:
            raise PrivilegeDenied(f"Bulk hard delete of {self.entity_type}s requires elevated privilege")

        correlation_id = str(uuid.uuid4())
        result = BulkResult()
        for entity_id in dict.fromkeys(entity_ids):
            try:
                outcome = await self.delete(entity_id, reason, actor, hard_delete, elevated, correlation_id)
            except FulfillmentError as e:
                result.rejected.append({"id": entity_id, **e.to_dict()})
            else:
                result.processed.append(outcome.to_dict())

        logger.info("bulk_delete_complete",
                    entity_type=self.entity_type,
                    processed=len(result.processed),
                    rejected=len(result.rejected),
                    hard_delete=hard_delete,
                    correlation_id=correlation_id)
        return result


def order_admin(orders: IOrderRepository, audit: IAuditLog, locks: KeyedLocks) -> SoftDeleteManager:
    return SoftDeleteManager(
        orders, audit, locks,
        entity_type="order",
        deletable_statuses=frozenset({OrderStatus.CANCELLED}),
        events={
            "soft_deleted": AuditEventType.ORDER_SOFT_DELETED,
            "hard_deleted": AuditEventType.ORDER_HARD_DELETED,
            "restored": AuditEventType.ORDER_RESTORED,
        },
    )


def booking_admin(bookings: IBookingRepository, audit: IAuditLog, locks: KeyedLocks) -> SoftDeleteManager:
    return SoftDeleteManager(
        bookings, audit, locks,
        entity_type="booking",
        deletable_statuses=frozenset({BookingStatus.CANCELLED}),
        events={
            "soft_deleted": AuditEventType.BOOKING_SOFT_DELETED,
            "hard_deleted": AuditEventType.BOOKING_HARD_DELETED,
            "restored": AuditEventType.BOOKING_RESTORED,
        },
    )


# =============================================================================
# BOOKINGS
# =============================================================================

class BookingService:
    """Booking lifecycle driven by the shared state machine"""

    def __init__(self, bookings: IBookingRepository, audit: IAuditLog, locks: KeyedLocks):
        self.bookings = bookings
        self.audit = audit
        self.locks = locks

    async def create(self, customer_name: str, customer_email: str, notes: Optional[str] = None,
                     quantity: int = 1) -> Booking:
        booking = Booking(
            customer_name=customer_name,
            customer_email=customer_email,
            notes=notes,
            quantity=quantity,
            status_history=[BOOKING_MACHINE.initial_entry(BookingStatus.PENDING, reason="booking requested")],
        )
        booking = await self.bookings.create(booking)
        logger.info("booking_created", booking_id=booking.booking_id)
        return booking

    async def get(self, booking_id: str, include_deleted: bool = False) -> Booking:
        return await self.bookings.require(booking_id, include_deleted=include_deleted)

    async def update_status(
        self,
        booking_id: str,
        status: str,
        actor: str,
        reason: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> TransitionResult:
        correlation_id = correlation_id or str(uuid.uuid4())
        event = TransitionEvent(target_status=status, reason=reason, actor=actor)
        previous = {}

        def mutate(current: Booking) -> Optional[Booking]:
            result = BOOKING_MACHINE.transition(current, event)
            previous["status"] = result.previous_status
            return result.entity if result.applied else None

        async with self.locks.hold(booking_id):
            before, after = await update_with_retry(self.bookings, booking_id, mutate, include_deleted=False)

        if after is None:
            return TransitionResult(entity=before, previous_status=previous["status"], applied=False)

        await emit_audit(
            self.audit,
            AuditEventType.BOOKING_TRANSITIONED,
            "booking",
            booking_id,
            correlation_id,
            previous_state={"status": previous["status"]},
            new_state={"status": after.status.value},
            metadata={"reason": reason},
            actor=actor,
        )
        return TransitionResult(entity=after, previous_status=previous["status"], applied=True)
