"""
Billing event types and the engine-owned event bus.

This module defines all billing-related events, their typed payloads, and
the in-process ``EventBus`` handlers subscribe to. Services publish only
after their storage transaction has committed.
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

import structlog
from pydantic import BaseModel, ConfigDict, Field, SerializeAsAny

from ledgerline.billing.core.enums import SubscriptionStatus
from ledgerline.billing.core.models import Invoice, Subscription, new_id

logger = structlog.get_logger(__name__)


# ============================================================================
# Billing Event Types
# ============================================================================


class BillingEvents:
    """Billing event type constants."""

    # Subscription events
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_CANCELED = "subscription.canceled"
    SUBSCRIPTION_PAUSED = "subscription.paused"
    SUBSCRIPTION_RESUMED = "subscription.resumed"
    SUBSCRIPTION_TRIAL_ENDING = "subscription.trial_ending"
    SUBSCRIPTION_TRIAL_ENDED = "subscription.trial_ended"

    # Payment events
    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_FAILED = "payment.failed"

    # Invoice events
    INVOICE_CREATED = "invoice.created"
    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    INVOICE_VOIDED = "invoice.voided"

    @classmethod
    def all(cls) -> frozenset[str]:
        return frozenset(
            value for name, value in vars(cls).items() if name.isupper() and isinstance(value, str)
        )


# ============================================================================
# Payloads
# ============================================================================


class EventPayload(BaseModel):
    model_config = ConfigDict(frozen=True)


class SubscriptionEventPayload(EventPayload):
    subscription_id: str
    customer_id: str
    plan_id: str
    status: SubscriptionStatus
    previous_status: SubscriptionStatus | None = None
    current_period_start: datetime
    current_period_end: datetime
    trial_end: datetime | None = None
    cancel_at_period_end: bool = False
    reason: str | None = None

    @classmethod
    def from_subscription(
        cls,
        subscription: Subscription,
        previous_status: SubscriptionStatus | None = None,
        reason: str | None = None,
    ) -> SubscriptionEventPayload:
        return cls(
            subscription_id=subscription.id,
            customer_id=subscription.customer_id,
            plan_id=subscription.plan_id,
            status=subscription.status,
            previous_status=previous_status,
            current_period_start=subscription.current_period_start,
            current_period_end=subscription.current_period_end,
            trial_end=subscription.trial_end,
            cancel_at_period_end=subscription.cancel_at_period_end,
            reason=reason,
        )


class PaymentEventPayload(EventPayload):
    customer_id: str
    subscription_id: str | None = None
    invoice_id: str | None = None
    payment_id: str | None = None
    amount: int
    currency: str
    error_message: str | None = None
    retry_count: int | None = None
    next_retry_at: datetime | None = None


class InvoiceEventPayload(EventPayload):
    invoice_id: str
    customer_id: str
    subscription_id: str | None = None
    status: str
    total: int
    currency: str

    @classmethod
    def from_invoice(cls, invoice: Invoice) -> InvoiceEventPayload:
        return cls(
            invoice_id=invoice.id,
            customer_id=invoice.customer_id,
            subscription_id=invoice.subscription_id,
            status=invoice.status.value,
            total=invoice.total,
            currency=invoice.currency,
        )


class BillingEvent(BaseModel):
    """Domain event delivered to bus subscribers."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: new_id("evt"))
    type: str
    payload: SerializeAsAny[EventPayload]
    livemode: bool = False
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


# ============================================================================
# Event Bus
# ============================================================================

EventHandler = Callable[[BillingEvent], Awaitable[None] | None]
ErrorHandler = Callable[[BillingEvent, Exception], None]

_ANY = "*"


class EventBus:
    """In-process publish/subscribe for billing events.

    Handlers may be plain or ``async`` callables. A failing handler is
    logged (and passed to ``on_error`` when set) and never stops delivery
    to the remaining handlers or the publishing operation.
    """

    def __init__(self, on_error: ErrorHandler | None = None) -> None:
        self._handlers: dict[str, list[EventHandler]] = {}
        self._on_error = on_error

    def subscribe(self, event_type: str, handler: EventHandler) -> Callable[[], None]:
        """Register ``handler`` for ``event_type``; returns a disposer."""
        self._handlers.setdefault(event_type, []).append(handler)

        def dispose() -> None:
            self.unsubscribe(event_type, handler)

        return dispose

    def subscribe_any(self, handler: EventHandler) -> Callable[[], None]:
        return self.subscribe(_ANY, handler)

    def once(self, event_type: str, handler: EventHandler) -> Callable[[], None]:
        """Register a handler that is removed after its first delivery."""
        dispose: Callable[[], None]

        async def wrapper(event: BillingEvent) -> None:
            dispose()
            result = handler(event)
            if inspect.isawaitable(result):
                await result

        dispose = self.subscribe(event_type, wrapper)
        return dispose

    def unsubscribe(self, event_type: str, handler: EventHandler) -> None:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def handler_count(self, event_type: str | None = None) -> int:
        if event_type is None:
            return sum(len(handlers) for handlers in self._handlers.values())
        return len(self._handlers.get(event_type, []))

    def clear(self) -> None:
        self._handlers.clear()

    async def publish(
        self, event_type: str, payload: EventPayload, livemode: bool = False
    ) -> BillingEvent:
        event = BillingEvent(type=event_type, payload=payload, livemode=livemode)
        await self.dispatch(event)
        return event

    async def dispatch(self, event: BillingEvent) -> None:
        handlers = [*self._handlers.get(event.type, []), *self._handlers.get(_ANY, [])]
        for handler in handlers:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.error(
                    "billing.event.handler_failed",
                    event_type=event.type,
                    event_id=event.id,
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    error=str(exc),
                    exc_info=True,
                )
                if self._on_error is not None:
                    self._on_error(event, exc)

        logger.debug("billing.event.published", event_type=event.type, handlers=len(handlers))


class PendingEvents:
    """Events collected during a transaction and published after commit."""

    def __init__(self, livemode: bool = False) -> None:
        self.livemode = livemode
        self._items: list[tuple[str, EventPayload]] = []

    def add(self, event_type: str, payload: EventPayload) -> None:
        self._items.append((event_type, payload))

    def __len__(self) -> int:
        return len(self._items)

    async def flush(self, bus: EventBus) -> list[BillingEvent]:
        items, self._items = self._items, []
        return [await bus.publish(event_type, payload, self.livemode) for event_type, payload in items]


__all__ = [
    "BillingEvents",
    "EventPayload",
    "SubscriptionEventPayload",
    "PaymentEventPayload",
    "InvoiceEventPayload",
    "BillingEvent",
    "EventHandler",
    "EventBus",
    "PendingEvents",
]
