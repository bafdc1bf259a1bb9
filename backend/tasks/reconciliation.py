"""
Reconciliation Sweep - The Safety Net
=====================================
Background task that finds orders stuck in ``awaiting_payment`` (lost
webhook, provider timeout on capture) and asks the owning provider for the
confirmed outcome.

Features:
- Runs every 5 minutes
- Only orders untouched for longer than the threshold
- Applies confirmed outcomes through the state machine, never guesses
- Purges expired idempotency keys
- Configurable thresholds
"""

import asyncio
import os
import uuid
from datetime import timedelta
from typing import Optional

import structlog

from errors import FulfillmentError, InvalidTransition, ProviderUnavailable
from orders.models import AuditEventType, Order, TransitionEvent, utcnow
from orders.review import flag_for_review
from orders.service import CAPTURE_TARGETS, OrderService

# Configure logger
logger = structlog.get_logger().bind(component="reconciliation")


# =============================================================================
# CONFIGURATION
# =============================================================================

class ReconciliationConfig:
    """Reconciliation sweep configuration"""

    def __init__(self):
        # How often to sweep (seconds)
        self.CHECK_INTERVAL = int(os.getenv("RECONCILIATION_INTERVAL", "300"))

        # How long an order may sit in awaiting_payment before we ask (minutes)
        self.STALE_THRESHOLD = int(os.getenv("RECONCILIATION_THRESHOLD", "15"))

        # Maximum orders to check per cycle
        self.BATCH_SIZE = int(os.getenv("RECONCILIATION_BATCH_SIZE", "25"))

        self.ENABLED = os.getenv("RECONCILIATION_ENABLED", "true").lower() == "true"


# =============================================================================
# SWEEP
# =============================================================================

class ReconciliationSweep:

    def __init__(self, service: OrderService, config: Optional[ReconciliationConfig] = None):
        self.service = service
        self.config = config or ReconciliationConfig()
        self._task: Optional[asyncio.Task] = None
        self.last_run: Optional[dict] = None

    async def run_once(self) -> dict:
        """One pass over stale orders. Returns per-outcome counts."""
        stats = {"checked": 0, "settled": 0, "pending": 0, "unavailable": 0, "flagged": 0, "purged": 0}
        cutoff = utcnow() - timedelta(minutes=self.config.STALE_THRESHOLD)
        stale = await self.service.orders.list_awaiting_payment(cutoff, limit=self.config.BATCH_SIZE)

        if stale:
            logger.warning("stale_orders_found", count=len(stale))

        for order in stale:
            stats["checked"] += 1
            try:
                stats[await self._reconcile(order)] += 1
            except ProviderUnavailable:
                stats["unavailable"] += 1
            except FulfillmentError as e:
                # One bad order must not hold back the rest of the batch
                logger.error("reconciliation_order_failed",
                             order_id=order.order_id,
                             provider=order.provider.value,
                             error_code=e.code,
                             error=e.message)
                stats["flagged"] += 1

        stats["purged"] = await self.service.idempotency.purge_expired()
        self.last_run = {**stats, "finished_at": utcnow().isoformat()}
        logger.info("reconciliation_cycle_complete", **stats)
        return stats

    async def _reconcile(self, order: Order) -> str:
        """Ask the provider about one stale order; returns the stats bucket."""
        provider = self.service.providers.get(order.provider)
        if provider is None or not order.provider_reference:
            logger.error("stale_order_unreconcilable", order_id=order.order_id, provider=order.provider.value)
            return "flagged"

        result = await provider.lookup(order.provider_reference)
        target = CAPTURE_TARGETS.get(result.outcome)
        if target is None:
            return "pending"

        correlation_id = str(uuid.uuid4())
        try:
            await self.service.transition(
                order.order_id,
                TransitionEvent(
                    target_status=target.value,
                    provider_reference=order.provider_reference,
                    raw_evidence=result.raw,
                    reason=f"reconciliation {result.outcome.value}",
                    actor="reconciliation",
                ),
                correlation_id,
            )
        except InvalidTransition as e:
            await flag_for_review(
                self.service.review_queue,
                self.service.audit,
                source="reconciliation",
                audit_event=AuditEventType.ORDER_FLAGGED,
                provider=provider.tag.value,
                event_id=f"lookup:{order.provider_reference}",
                event_type=f"lookup.{result.outcome.value}",
                order=order,
                attempted_status=target.value,
                error=e,
                correlation_id=correlation_id,
                provider_reference=order.provider_reference,
                payload=result.raw,
            )
            return "flagged"
        return "settled"

    async def run_forever(self):
        logger.info("reconciliation_loop_started",
                    interval=self.config.CHECK_INTERVAL,
                    threshold=self.config.STALE_THRESHOLD)

        while True:
            try:
                await self.run_once()
            except Exception as e:
                logger.error("reconciliation_loop_error", error=str(e))

            # Sleep until next check
            await asyncio.sleep(self.config.CHECK_INTERVAL)

    def start(self) -> Optional[asyncio.Task]:
        if not self.config.ENABLED:
            logger.info("reconciliation_disabled")
            return None
        if self._task is None:
            self._task = asyncio.create_task(self.run_forever())
        return self._task

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    def get_stats(self) -> dict:
        """Sweep statistics for monitoring"""
        return {
            "enabled": self.config.ENABLED,
            "running": self._task is not None and not self._task.done(),
            "interval_seconds": self.config.CHECK_INTERVAL,
            "threshold_minutes": self.config.STALE_THRESHOLD,
            "last_run": self.last_run,
        }
