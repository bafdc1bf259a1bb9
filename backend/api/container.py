"""
Service container: every long-lived component, explicitly constructed.

Nothing here is a module-level singleton; the server builds one container in
its lifespan (or receives one from tests) and hangs it on ``app.state``.

pip install asyncpg redis aio-pika
"""

import os
from dataclasses import dataclass
from typing import Optional

import structlog

from database import Database
from notifications.dispatcher import (
    EventBusNotificationDispatcher,
    InMemoryNotificationDispatcher,
    NotificationDispatcher,
)
from orders.admin import BookingService, SoftDeleteManager, booking_admin, order_admin
from orders.idempotency import IIdempotencyStore, InMemoryIdempotencyStore, RedisIdempotencyStore
from orders.ledger import (
    IAuditLog,
    IBookingRepository,
    IOrderRepository,
    InMemoryAuditLog,
    InMemoryBookingRepository,
    InMemoryOrderRepository,
    PostgresAuditLog,
    PostgresBookingRepository,
    PostgresOrderRepository,
)
from orders.locks import KeyedLocks
from orders.review import InMemoryReviewQueue, IReviewQueue
from orders.service import OrderService
from payments.base import PaymentProvider, ProviderRegistry
from payments.card import CardProvider
from payments.config import PayPalConfig, ProviderCallConfig, StripeConfig
from payments.redirect import RedirectProvider
from payments.wallet import WalletProvider
from payments.webhooks import WebhookReconciler
from tasks.reconciliation import ReconciliationConfig, ReconciliationSweep

logger = structlog.get_logger().bind(component="container")


# =============================================================================
# CONFIGURATION
# =============================================================================

class ServerConfig:
    """Server configuration from environment"""

    def __init__(self):
        self.ENV = os.getenv("ENV", "development")
        self.HOST = os.getenv("HOST", "0.0.0.0")
        self.PORT = int(os.getenv("PORT", "8000"))
        self.CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")

        # "memory" (development/tests) or "postgres"
        self.STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "memory").lower()
        self.REDIS_URL = os.getenv("REDIS_URL", "")
        self.RABBITMQ_URL = os.getenv("RABBITMQ_URL", "")

        # Admin access
        self.ADMIN_API_KEY = os.getenv("ADMIN_API_KEY", "")
        self.ADMIN_ELEVATION_KEY = os.getenv("ADMIN_ELEVATION_KEY", "")

        self.LOCK_TIMEOUT_SECONDS = float(os.getenv("LOCK_TIMEOUT_SECONDS", "30"))


# =============================================================================
# CONTAINER
# =============================================================================

@dataclass
class Container:
    config: ServerConfig
    orders: IOrderRepository
    bookings: IBookingRepository
    audit: IAuditLog
    idempotency: IIdempotencyStore
    providers: ProviderRegistry
    notifier: NotificationDispatcher
    review_queue: IReviewQueue
    locks: KeyedLocks
    service: OrderService
    reconciler: WebhookReconciler
    order_admin: SoftDeleteManager
    booking_admin: SoftDeleteManager
    bookings_service: BookingService
    sweep: ReconciliationSweep
    database: Optional[Database] = None
    redis: Optional[object] = None

    async def close(self):
        await self.sweep.stop()
        await self.notifier.close()
        await self.providers.close()
        if self.redis is not None:
            await self.redis.aclose()
        if self.database is not None:
            await self.database.close()
        logger.info("container_closed")


def default_providers(call_config: Optional[ProviderCallConfig] = None) -> ProviderRegistry:
    call_config = call_config or ProviderCallConfig.from_env()
    return ProviderRegistry([
        CardProvider(StripeConfig.from_env(), call_config),
        WalletProvider(StripeConfig.wallet_from_env(), call_config),
        RedirectProvider(PayPalConfig.from_env(), call_config),
    ])


def assemble(
    config: ServerConfig,
    orders: IOrderRepository,
    bookings: IBookingRepository,
    audit: IAuditLog,
    idempotency: IIdempotencyStore,
    providers: ProviderRegistry,
    notifier: NotificationDispatcher,
    review_queue: Optional[IReviewQueue] = None,
    sweep_config: Optional[ReconciliationConfig] = None,
) -> Container:
    """Wire components together. One lock registry shared by every writer."""
    locks = KeyedLocks(timeout_seconds=config.LOCK_TIMEOUT_SECONDS)
    review_queue = review_queue or InMemoryReviewQueue()
    service = OrderService(orders, idempotency, providers, audit, notifier, locks, review_queue=review_queue)
    return Container(
        config=config,
        orders=orders,
        bookings=bookings,
        audit=audit,
        idempotency=idempotency,
        providers=providers,
        notifier=notifier,
        review_queue=review_queue,
        locks=locks,
        service=service,
        reconciler=WebhookReconciler(service, providers, review_queue, audit),
        order_admin=order_admin(orders, audit, locks),
        booking_admin=booking_admin(bookings, audit, locks),
        bookings_service=BookingService(bookings, audit, locks),
        sweep=ReconciliationSweep(service, sweep_config),
    )


def build_in_memory_container(
    providers: list[PaymentProvider],
    config: Optional[ServerConfig] = None,
    notifier: Optional[NotificationDispatcher] = None,
    sweep_config: Optional[ReconciliationConfig] = None,
) -> Container:
    return assemble(
        config or ServerConfig(),
        orders=InMemoryOrderRepository(),
        bookings=InMemoryBookingRepository(),
        audit=InMemoryAuditLog(),
        idempotency=InMemoryIdempotencyStore(),
        providers=ProviderRegistry(providers),
        notifier=notifier or InMemoryNotificationDispatcher(),
        sweep_config=sweep_config,
    )


async def build_container(config: Optional[ServerConfig] = None) -> Container:
    """Production wiring from the environment."""
    config = config or ServerConfig()
    database = None
    redis_client = None

    if config.STORAGE_BACKEND == "postgres":
        database = Database()
        await database.initialize()
        orders = PostgresOrderRepository(database)
        bookings = PostgresBookingRepository(database)
        audit = PostgresAuditLog(database)
    else:
        logger.warning("in_memory_storage", env=config.ENV)
        orders = InMemoryOrderRepository()
        bookings = InMemoryBookingRepository()
        audit = InMemoryAuditLog()

    if config.REDIS_URL:
        import redis.asyncio as redis

        redis_client = redis.from_url(config.REDIS_URL)
        await redis_client.ping()
        idempotency = RedisIdempotencyStore(redis_client)
        logger.info("redis_connected", url=config.REDIS_URL[:20] + "...")
    else:
        idempotency = InMemoryIdempotencyStore()

    if config.RABBITMQ_URL:
        notifier = EventBusNotificationDispatcher()
        await notifier.initialize()
    else:
        notifier = InMemoryNotificationDispatcher()

    container = assemble(config, orders, bookings, audit, idempotency, default_providers(), notifier)
    container.database = database
    container.redis = redis_client
    logger.info("container_built",
                storage=config.STORAGE_BACKEND,
                redis=bool(redis_client),
                providers=container.providers.tags)
    return container
