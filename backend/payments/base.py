"""
Payment Provider Adapter
========================
Common capability set every external processor implements:

- initiate(order) -> ProviderSession
- capture(provider_reference) -> CaptureResult
- verify_webhook(raw_payload, headers) -> VerifiedEvent | ProviderAuthenticityError

Plus the shared plumbing adapters use at the provider boundary:
- Normalized outcome / event vocabularies (the reconciler never branches on provider)
- Retry with exponential backoff + bounded timeout -> ProviderUnavailable
- Circuit breaker per provider
- Event-type mapping registered with decorators
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Optional, TypeVar

import structlog
from pydantic import BaseModel, Field

from errors import ProviderUnavailable
from orders.models import Amounts, Order, ProviderTag, utcnow
from payments.config import ProviderCallConfig

logger = structlog.get_logger().bind(component="payment_provider")

T = TypeVar("T")


# =============================================================================
# NORMALIZED VOCABULARY
# =============================================================================

class CaptureOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    PENDING = "pending"
    FAILED = "failed"
    CANCELLED = "cancelled"


class EventKind(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    PENDING = "pending"
    IGNORED = "ignored"


class ProviderSession(BaseModel):
    """What the client needs to complete payment externally"""

    provider: ProviderTag
    provider_reference: str
    client_secret: Optional[str] = None
    redirect_url: Optional[str] = None
    amount: Decimal
    currency: str
    # Set only when the adapter substituted a recomputed breakdown
    substituted_amounts: Optional[Amounts] = Field(default=None, exclude=True)

    def public(self) -> dict:
        return self.model_dump(mode="json", exclude_none=True)


class CaptureResult(BaseModel):
    outcome: CaptureOutcome
    provider_reference: str
    raw: dict = Field(default_factory=dict)


class VerifiedEvent(BaseModel):
    """An authenticated provider event, already mapped to the common vocabulary"""

    provider: ProviderTag
    event_id: str
    event_type: str
    kind: EventKind
    provider_reference: Optional[str] = None
    occurred_at: datetime = Field(default_factory=utcnow)
    payload: dict = Field(default_factory=dict)


# =============================================================================
# EVENT MAPPING
# =============================================================================

ReferenceExtractor = Callable[[dict], Optional[str]]


class EventMapper:
    """Maps provider event types to an EventKind and a reference extractor."""

    def __init__(self, provider: str):
        self.provider = provider
        self._handlers: dict[str, tuple[EventKind, ReferenceExtractor]] = {}

    def register(self, event_type: str, kind: EventKind):
        """Decorator to register an extractor for an event type"""
        def decorator(extract: ReferenceExtractor):
            self._handlers[event_type] = (kind, extract)
            return extract
        return decorator

    def map(self, event_type: str, resource: dict) -> tuple[EventKind, Optional[str]]:
        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info("webhook_event_ignored", provider=self.provider, event_type=event_type)
            return EventKind.IGNORED, None
        kind, extract = handler
        return kind, extract(resource or {})

    @property
    def supported_events(self) -> list[str]:
        return list(self._handlers.keys())


# =============================================================================
# RESILIENCE
# =============================================================================

class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Circuit breaker around one provider's API"""

    def __init__(self, name: str, failure_threshold: int = 5, reset_timeout: float = 30.0):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout

        self._state = CircuitState.CLOSED
        self._failures = 0
        self._last_failure_time: Optional[datetime] = None
        self._lock = asyncio.Lock()
        self._logger = structlog.get_logger().bind(component="circuit_breaker", name=name)

    @property
    def state(self) -> CircuitState:
        return self._state

    async def can_execute(self) -> bool:
        """Check if circuit allows execution"""
        async with self._lock:
            if self._state == CircuitState.CLOSED:
                return True

            if self._state == CircuitState.OPEN:
                if self._last_failure_time:
                    elapsed = (utcnow() - self._last_failure_time).total_seconds()
                    if elapsed >= self.reset_timeout:
                        self._state = CircuitState.HALF_OPEN
                        self._logger.info("circuit_half_open", elapsed=elapsed)
                        return True
                return False

            # HALF_OPEN: allow one request
            return True

    async def record_success(self):
        async with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._logger.info("circuit_closed")
            self._state = CircuitState.CLOSED
            self._failures = 0

    async def record_failure(self, error: Any = None):
        async with self._lock:
            self._failures += 1
            self._last_failure_time = utcnow()

            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
                self._logger.warning("circuit_reopened", error=str(error))
            elif self._failures >= self.failure_threshold:
                self._state = CircuitState.OPEN
                self._logger.warning("circuit_opened", failures=self._failures, error=str(error))


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    provider: str,
    name: str,
    config: ProviderCallConfig,
    is_retryable: Callable[[BaseException], bool],
    breaker: Optional[CircuitBreaker] = None,
    order_id: Optional[str] = None,
) -> T:
    """
    Run ``operation`` with a per-attempt timeout and exponential backoff.

    Non-retryable errors propagate unchanged for the adapter to translate.
    Exhausted attempts raise ProviderUnavailable: the outcome is unknown and
    the caller must leave the order in its last confirmed status.
    """
    last_error = "no attempt made"
    for attempt in range(1, config.max_attempts + 1):
        if breaker and not await breaker.can_execute():
            raise ProviderUnavailable(provider, name, f"circuit {breaker.name} is open", order_id=order_id)
        try:
            result = await asyncio.wait_for(operation(), timeout=config.timeout_seconds)
        except asyncio.TimeoutError:
            last_error = f"timed out after {config.timeout_seconds}s"
        except Exception as e:
            if not is_retryable(e):
                raise
            last_error = str(e) or type(e).__name__
        else:
            if breaker:
                await breaker.record_success()
            return result

        if breaker:
            await breaker.record_failure(last_error)
        logger.warning("provider_call_failed",
                       provider=provider,
                       operation=name,
                       attempt=attempt,
                       max_attempts=config.max_attempts,
                       order_id=order_id,
                       error=last_error)
        if attempt < config.max_attempts:
            await asyncio.sleep(config.backoff(attempt))

    logger.error("provider_unavailable", provider=provider, operation=name, order_id=order_id, error=last_error)
    raise ProviderUnavailable(provider, name, last_error, order_id=order_id)


def to_minor_units(amount: Decimal) -> int:
    """EUR 49.99 -> 4999"""
    return int((Decimal(amount) * 100).to_integral_value())


def lower_headers(headers: Mapping[str, str]) -> dict[str, str]:
    return {k.lower(): v for k, v in (headers or {}).items()}


# =============================================================================
# PROVIDER INTERFACE
# =============================================================================

class PaymentProvider(ABC):
    """One implementation per external payment processor"""

    tag: ProviderTag

    # False when the order may only be recorded after the provider accepts
    # the session (the session id is the provider reference from the start).
    persists_before_initiate: bool = True

    @abstractmethod
    async def initiate(self, order: Order) -> ProviderSession:
        """Open a payment session/intent for ``order``."""
        pass

    @abstractmethod
    async def capture(self, provider_reference: str) -> CaptureResult:
        """Complete (or confirm) payment for a session."""
        pass

    @abstractmethod
    async def lookup(self, provider_reference: str) -> CaptureResult:
        """Read-only status check used by the reconciliation sweep."""
        pass

    @abstractmethod
    async def verify_webhook(self, raw_payload: bytes, headers: Mapping[str, str]) -> VerifiedEvent:
        """
        Authenticate an inbound event.

        Raises:
            ProviderAuthenticityError: signature or verification failure.
        """
        pass

    async def close(self) -> None:
        pass


class ProviderRegistry:
    """Explicitly constructed adapters, looked up by tag"""

    def __init__(self, providers: Optional[list[PaymentProvider]] = None):
        self._providers: dict[ProviderTag, PaymentProvider] = {}
        for provider in providers or []:
            self.register(provider)

    def register(self, provider: PaymentProvider) -> None:
        self._providers[ProviderTag(provider.tag)] = provider

    def get(self, tag) -> Optional[PaymentProvider]:
        try:
            return self._providers.get(ProviderTag(tag))
        except ValueError:
            return None

    def __contains__(self, tag) -> bool:
        return self.get(tag) is not None

    @property
    def tags(self) -> list[str]:
        return [t.value for t in self._providers]

    async def close(self) -> None:
        for provider in self._providers.values():
            await provider.close()
