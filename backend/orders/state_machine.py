"""
State Machine
=============
One reusable transition component, parameterized by an entity's transition
table. Orders and bookings each get an instance.

Rules enforced for every entity:
- Only edges in the table are accepted; anything else raises InvalidTransition
  naming the attempted edge.
- Re-applying the current status is a no-op success (absorbs redelivery).
- An event's provider reference must match the stored one; a reference is
  assigned at most once.
- Each accepted transition appends exactly one history entry with a strictly
  increasing timestamp.
"""

from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Mapping, Optional, TypeVar

import structlog

from errors import InvalidTransition
from orders.models import (
    BookingStatus,
    OrderStatus,
    StatefulRecord,
    StatusHistoryEntry,
    TransitionEvent,
    utcnow,
)

logger = structlog.get_logger().bind(component="state_machine")

E = TypeVar("E", bound=StatefulRecord)

_TICK = timedelta(microseconds=1)


@dataclass(frozen=True)
class TransitionResult:
    entity: StatefulRecord
    previous_status: str
    applied: bool

    @property
    def status(self) -> str:
        return self.entity.status


class StateMachine:
    """Authoritative transition table plus guard conditions."""

    def __init__(
        self,
        name: str,
        status_type: type[Enum],
        transitions: Mapping[Enum, frozenset],
        terminal: frozenset,
    ):
        self.name = name
        self.status_type = status_type
        self.transitions = {k: frozenset(v) for k, v in transitions.items()}
        self.terminal = frozenset(terminal)

    def _coerce(self, value, entity_id: str, current: str) -> Enum:
        try:
            return self.status_type(value)
        except ValueError:
            raise InvalidTransition(current, str(value), reason="unknown status", entity_id=entity_id)

    def allowed_targets(self, status) -> frozenset:
        return self.transitions.get(self.status_type(status), frozenset())

    def can_transition(self, current, target) -> bool:
        return self.status_type(target) in self.allowed_targets(current)

    def is_terminal(self, status) -> bool:
        return self.status_type(status) in self.terminal

    def transition(self, entity: E, event: TransitionEvent) -> TransitionResult:
        entity_id = entity.entity_id
        current = self._coerce(entity.status, entity_id, str(entity.status))
        target = self._coerce(event.target_status, entity_id, current.value)

        stored_ref = getattr(entity, "provider_reference", None)
        if event.provider_reference and stored_ref and event.provider_reference != stored_ref:
            raise InvalidTransition(
                current.value, target.value,
                reason=f"provider reference {event.provider_reference} does not match {stored_ref}",
                entity_id=entity_id,
            )

        if target == current:
            logger.debug("transition_noop", machine=self.name, entity_id=entity_id, status=current.value)
            return TransitionResult(entity=entity, previous_status=current.value, applied=False)

        if target not in self.transitions.get(current, frozenset()):
            raise InvalidTransition(
                current.value, target.value,
                entity_id=entity_id,
                requires_review=current in self.terminal and target in self.terminal,
            )

        now = utcnow()
        if entity.status_history and now <= entity.status_history[-1].at:
            now = entity.status_history[-1].at + _TICK

        entry = StatusHistoryEntry(status=target.value, at=now, reason=event.reason, actor=event.actor)
        updates = {
            "status": target,
            "status_history": [*entity.status_history, entry],
            "updated_at": now,
            "version": entity.version + 1,
        }
        if event.provider_reference and not stored_ref and hasattr(entity, "provider_reference"):
            updates["provider_reference"] = event.provider_reference

        logger.info("transition_applied",
                    machine=self.name,
                    entity_id=entity_id,
                    edge=f"{current.value}->{target.value}",
                    actor=event.actor)
        return TransitionResult(
            entity=entity.model_copy(update=updates),
            previous_status=current.value,
            applied=True,
        )

    def initial_entry(self, status, reason: Optional[str] = None, actor: str = "system") -> StatusHistoryEntry:
        return StatusHistoryEntry(status=self.status_type(status).value, at=utcnow(), reason=reason, actor=actor)


ORDER_MACHINE = StateMachine(
    "order",
    OrderStatus,
    {
        OrderStatus.PENDING: frozenset({OrderStatus.AWAITING_PAYMENT}),
        OrderStatus.AWAITING_PAYMENT: frozenset({
            OrderStatus.PAID,
            OrderStatus.FAILED,
            OrderStatus.CANCELLED,
        }),
        OrderStatus.PAID: frozenset({OrderStatus.REFUNDED}),
    },
    terminal=frozenset({
        OrderStatus.PAID,
        OrderStatus.FAILED,
        OrderStatus.CANCELLED,
        OrderStatus.REFUNDED,
    }),
)


BOOKING_MACHINE = StateMachine(
    "booking",
    BookingStatus,
    {
        BookingStatus.PENDING: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED}),
        BookingStatus.CONFIRMED: frozenset({BookingStatus.IN_PROGRESS, BookingStatus.CANCELLED}),
        BookingStatus.IN_PROGRESS: frozenset({BookingStatus.COMPLETED}),
    },
    terminal=frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED}),
)
