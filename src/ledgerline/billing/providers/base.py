"""
Payment provider adapter interface.

Adapters translate between the engine and one payment provider. Every
operation returns normalized pydantic models and signals failure with
``ProviderSyncError``; adapters never leak provider SDK types.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field

from ledgerline.billing.core.enums import PaymentStatus


class ProviderModel(BaseModel):
    model_config = ConfigDict(frozen=True)


class ProviderCustomer(ProviderModel):
    id: str
    customer_id: str
    email: str | None = None


class ProviderSubscription(ProviderModel):
    id: str
    customer_id: str
    price_id: str
    quantity: int = 1
    status: str
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool | None = None


class ProviderPayment(ProviderModel):
    id: str
    customer_id: str
    amount: int
    currency: str
    status: PaymentStatus
    failure_code: str | None = None
    failure_message: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == PaymentStatus.SUCCEEDED


class ProviderPrice(ProviderModel):
    id: str
    plan_id: str
    unit_amount: int
    currency: str


class ProviderWebhookEvent(ProviderModel):
    """Provider notification after signature verification and normalization."""

    id: str = Field(description="Provider's event id, the idempotency key")
    type: str = Field(description="Normalized event type, e.g. 'subscription.updated'")
    provider_type: str = Field(description="Event type as named by the provider")
    data: dict[str, Any] = Field(default_factory=dict)
    livemode: bool = False
    created_at: datetime | None = None


class CustomerAdapter(Protocol):
    async def create(self, customer_id: str, email: str | None = None) -> ProviderCustomer: ...

    async def retrieve(self, provider_customer_id: str) -> ProviderCustomer: ...


class SubscriptionAdapter(Protocol):
    async def create(
        self, customer_id: str, price_id: str, quantity: int = 1, trial_end: datetime | None = None
    ) -> ProviderSubscription: ...

    async def update(
        self, provider_subscription_id: str, price_id: str | None = None, quantity: int | None = None
    ) -> ProviderSubscription: ...

    async def cancel(
        self, provider_subscription_id: str, at_period_end: bool = False
    ) -> ProviderSubscription: ...

    async def pause(self, provider_subscription_id: str) -> ProviderSubscription: ...

    async def resume(self, provider_subscription_id: str) -> ProviderSubscription: ...

    async def retrieve(self, provider_subscription_id: str) -> ProviderSubscription: ...


class PaymentAdapter(Protocol):
    async def create(
        self,
        customer_id: str,
        amount: int,
        currency: str,
        description: str | None = None,
        idempotency_key: str | None = None,
    ) -> ProviderPayment:
        """Charge the customer's default payment method; declines return a failed payment."""
        ...

    async def capture(self, payment_id: str) -> ProviderPayment: ...

    async def cancel(self, payment_id: str) -> ProviderPayment: ...

    async def refund(self, payment_id: str, amount: int | None = None) -> ProviderPayment: ...


class PriceAdapter(Protocol):
    async def create(self, plan_id: str, unit_amount: int, currency: str) -> ProviderPrice: ...


class WebhookAdapter(Protocol):
    def verify_signature(self, payload: bytes, signature: str) -> bool: ...

    def construct_event(self, payload: bytes) -> ProviderWebhookEvent: ...


class PaymentProviderAdapter(Protocol):
    """One payment provider (Stripe, MercadoPago, the mock adapter...)."""

    provider: str
    customers: CustomerAdapter
    subscriptions: SubscriptionAdapter
    payments: PaymentAdapter
    prices: PriceAdapter
    webhooks: WebhookAdapter


__all__ = [
    "ProviderCustomer",
    "ProviderSubscription",
    "ProviderPayment",
    "ProviderPrice",
    "ProviderWebhookEvent",
    "CustomerAdapter",
    "SubscriptionAdapter",
    "PaymentAdapter",
    "PriceAdapter",
    "WebhookAdapter",
    "PaymentProviderAdapter",
]
