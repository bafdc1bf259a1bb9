"""
Manual Review Queue
===================
Provider outcomes that could not be applied to an order land here for a
human decision: a late success on a failed order, a capture that raced a
customer cancel, a sweep lookup that contradicts the ledger.

Flagged items are never applied automatically. Each one is audited with
the provider evidence that produced it.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

import structlog
from pydantic import BaseModel, Field

from errors import InvalidTransition
from orders.ledger import IAuditLog, emit_audit
from orders.models import AuditEventType, Order, utcnow

logger = structlog.get_logger().bind(component="review_queue")


class ReviewItem(BaseModel):
    """A verified provider outcome that was not applied"""

    review_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    provider: str
    event_id: str
    event_type: str
    provider_reference: Optional[str] = None
    order_id: str
    current_status: str
    attempted_status: str
    reason: str
    correlation_id: str
    payload: dict = Field(default_factory=dict)
    flagged_at: datetime = Field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None

    @property
    def resolved(self) -> bool:
        return self.resolved_at is not None


class IReviewQueue(ABC):
    """Manual-review queue interface"""

    @abstractmethod
    async def enqueue(self, item: ReviewItem) -> None:
        pass

    @abstractmethod
    async def get_pending(self, limit: int = 100) -> list[ReviewItem]:
        pass

    @abstractmethod
    async def resolve(self, review_id: str, resolved_by: str) -> Optional[ReviewItem]:
        pass

    @abstractmethod
    async def get_stats(self) -> dict:
        pass


class InMemoryReviewQueue(IReviewQueue):

    def __init__(self):
        self._items: dict[str, ReviewItem] = {}
        self._lock = asyncio.Lock()

    async def enqueue(self, item: ReviewItem) -> None:
        async with self._lock:
            self._items[item.review_id] = item

    async def get_pending(self, limit: int = 100) -> list[ReviewItem]:
        async with self._lock:
            pending = [i for i in self._items.values() if not i.resolved]
            pending.sort(key=lambda i: i.flagged_at)
            return pending[:limit]

    async def resolve(self, review_id: str, resolved_by: str) -> Optional[ReviewItem]:
        async with self._lock:
            item = self._items.get(review_id)
            if item is None:
                return None
            if not item.resolved:
                item = item.model_copy(update={"resolved_at": utcnow(), "resolved_by": resolved_by})
                self._items[review_id] = item
            return item

    async def get_stats(self) -> dict:
        async with self._lock:
            return {
                "total": len(self._items),
                "pending": sum(1 for i in self._items.values() if not i.resolved),
                "resolved": sum(1 for i in self._items.values() if i.resolved),
            }


async def flag_for_review(
    queue: IReviewQueue,
    audit: IAuditLog,
    *,
    source: str,
    audit_event: AuditEventType,
    provider: str,
    event_id: str,
    event_type: str,
    order: Order,
    attempted_status: str,
    error: InvalidTransition,
    correlation_id: str,
    provider_reference: Optional[str] = None,
    payload: Optional[dict] = None,
) -> ReviewItem:
    """Queue an unapplied outcome and audit it under ``source``."""
    item = ReviewItem(
        provider=provider,
        event_id=event_id,
        event_type=event_type,
        provider_reference=provider_reference,
        order_id=order.order_id,
        current_status=error.current,
        attempted_status=attempted_status,
        reason=error.message,
        correlation_id=correlation_id,
        payload=payload or {},
    )
    await queue.enqueue(item)
    await emit_audit(
        audit,
        audit_event,
        source,
        order.order_id,
        correlation_id,
        previous_state={"status": error.current},
        metadata={
            "review_id": item.review_id,
            "event_id": event_id,
            "event_type": event_type,
            "attempted_status": attempted_status,
            "terminal_conflict": error.requires_review,
        },
        actor=f"provider:{provider}",
    )
    logger.error("outcome_flagged_for_review",
                 source=source,
                 order_id=order.order_id,
                 review_id=item.review_id,
                 edge=f"{error.current}->{attempted_status}",
                 terminal_conflict=error.requires_review,
                 correlation_id=correlation_id)
    return item
