"""
Deterministic in-process payment provider for development and tests.

Charges succeed unless failures are queued with ``payments.decline_next``
(declined payment) or ``payments.fail_next`` (``ProviderSyncError``).
A repeated idempotency key returns the original charge.
Webhooks are signed with HMAC-SHA256 over the raw payload.
"""

from __future__ import annotations

import hashlib
import hmac
import itertools
import json
from collections import deque
from datetime import UTC, datetime
from typing import Any

import structlog

from ledgerline.billing.core.enums import PaymentStatus
from ledgerline.billing.exceptions import ProviderSyncError, ValidationError
from ledgerline.billing.providers.base import (
    ProviderCustomer,
    ProviderPayment,
    ProviderPrice,
    ProviderSubscription,
    ProviderWebhookEvent,
)

logger = structlog.get_logger(__name__)

PROVIDER_NAME = "mock"

# Provider event names mapped to the engine's normalized names
EVENT_TYPE_MAP = {
    "customer.subscription.updated": "subscription.updated",
    "customer.subscription.deleted": "subscription.canceled",
    "invoice.payment_succeeded": "payment.succeeded",
    "invoice.payment_failed": "payment.failed",
}


class _Ids:
    def __init__(self) -> None:
        self._counters: dict[str, itertools.count[int]] = {}

    def next(self, prefix: str) -> str:
        counter = self._counters.setdefault(prefix, itertools.count(1))
        return f"mock_{prefix}_{next(counter):04d}"


class MockCustomers:
    def __init__(self, ids: _Ids) -> None:
        self._ids = ids
        self.records: dict[str, ProviderCustomer] = {}

    async def create(self, customer_id: str, email: str | None = None) -> ProviderCustomer:
        customer = ProviderCustomer(id=self._ids.next("cus"), customer_id=customer_id, email=email)
        self.records[customer.id] = customer
        return customer

    async def retrieve(self, provider_customer_id: str) -> ProviderCustomer:
        try:
            return self.records[provider_customer_id]
        except KeyError:
            raise ProviderSyncError(
                f"No such customer: {provider_customer_id}",
                provider=PROVIDER_NAME,
                category="invalid_request",
            ) from None


class MockSubscriptions:
    def __init__(self, ids: _Ids) -> None:
        self._ids = ids
        self.records: dict[str, ProviderSubscription] = {}

    def _get(self, provider_subscription_id: str) -> ProviderSubscription:
        try:
            return self.records[provider_subscription_id]
        except KeyError:
            raise ProviderSyncError(
                f"No such subscription: {provider_subscription_id}",
                provider=PROVIDER_NAME,
                category="invalid_request",
            ) from None

    def _store(self, subscription: ProviderSubscription) -> ProviderSubscription:
        self.records[subscription.id] = subscription
        return subscription

    async def create(
        self, customer_id: str, price_id: str, quantity: int = 1, trial_end: datetime | None = None
    ) -> ProviderSubscription:
        return self._store(
            ProviderSubscription(
                id=self._ids.next("sub"),
                customer_id=customer_id,
                price_id=price_id,
                quantity=quantity,
                status="trialing" if trial_end else "active",
                cancel_at_period_end=False,
            )
        )

    async def update(
        self, provider_subscription_id: str, price_id: str | None = None, quantity: int | None = None
    ) -> ProviderSubscription:
        current = self._get(provider_subscription_id)
        changes: dict[str, Any] = {}
        if price_id is not None:
            changes["price_id"] = price_id
        if quantity is not None:
            changes["quantity"] = quantity
        return self._store(current.model_copy(update=changes))

    async def cancel(
        self, provider_subscription_id: str, at_period_end: bool = False
    ) -> ProviderSubscription:
        current = self._get(provider_subscription_id)
        if at_period_end:
            return self._store(current.model_copy(update={"cancel_at_period_end": True}))
        return self._store(current.model_copy(update={"status": "canceled"}))

    async def pause(self, provider_subscription_id: str) -> ProviderSubscription:
        return self._store(self._get(provider_subscription_id).model_copy(update={"status": "paused"}))

    async def resume(self, provider_subscription_id: str) -> ProviderSubscription:
        return self._store(self._get(provider_subscription_id).model_copy(update={"status": "active"}))

    async def retrieve(self, provider_subscription_id: str) -> ProviderSubscription:
        return self._get(provider_subscription_id)


class MockPayments:
    def __init__(self, ids: _Ids) -> None:
        self._ids = ids
        self.records: dict[str, ProviderPayment] = {}
        self._queued: deque[tuple[str, str]] = deque()
        self._by_key: dict[str, str] = {}

    def decline_next(self, count: int = 1, code: str = "card_declined") -> None:
        """Queue ``count`` declined charges."""
        self._queued.extend(("decline", code) for _ in range(count))

    def fail_next(self, count: int = 1, category: str = "network") -> None:
        """Queue ``count`` charges that raise ``ProviderSyncError``."""
        self._queued.extend(("error", category) for _ in range(count))

    def reset(self) -> None:
        self._queued.clear()
        self._by_key.clear()

    async def create(
        self,
        customer_id: str,
        amount: int,
        currency: str,
        description: str | None = None,
        idempotency_key: str | None = None,
    ) -> ProviderPayment:
        if amount < 0:
            raise ValidationError("Charge amount must not be negative", field="amount")
        if idempotency_key is not None and idempotency_key in self._by_key:
            return self.records[self._by_key[idempotency_key]]

        outcome = self._queued.popleft() if self._queued else None
        if outcome is not None and outcome[0] == "error":
            logger.info("mock.payment.error", customer_id=customer_id, category=outcome[1])
            raise ProviderSyncError(
                "Mock provider unavailable", provider=PROVIDER_NAME, category=outcome[1]
            )

        payment = ProviderPayment(
            id=self._ids.next("pay"),
            customer_id=customer_id,
            amount=amount,
            currency=currency.upper(),
            status=PaymentStatus.FAILED if outcome else PaymentStatus.SUCCEEDED,
            failure_code=outcome[1] if outcome else None,
            failure_message="Your card was declined." if outcome else None,
        )
        self.records[payment.id] = payment
        if idempotency_key is not None:
            self._by_key[idempotency_key] = payment.id
        return payment

    def _get(self, payment_id: str) -> ProviderPayment:
        try:
            return self.records[payment_id]
        except KeyError:
            raise ProviderSyncError(
                f"No such payment: {payment_id}", provider=PROVIDER_NAME, category="invalid_request"
            ) from None

    async def capture(self, payment_id: str) -> ProviderPayment:
        return self._get(payment_id)

    async def cancel(self, payment_id: str) -> ProviderPayment:
        payment = self._get(payment_id).model_copy(update={"status": PaymentStatus.CANCELED})
        self.records[payment_id] = payment
        return payment

    async def refund(self, payment_id: str, amount: int | None = None) -> ProviderPayment:
        payment = self._get(payment_id).model_copy(update={"status": PaymentStatus.REFUNDED})
        self.records[payment_id] = payment
        return payment


class MockPrices:
    def __init__(self, ids: _Ids) -> None:
        self._ids = ids
        self.records: dict[str, ProviderPrice] = {}

    async def create(self, plan_id: str, unit_amount: int, currency: str) -> ProviderPrice:
        price = ProviderPrice(
            id=self._ids.next("price"), plan_id=plan_id, unit_amount=unit_amount, currency=currency
        )
        self.records[price.id] = price
        return price


class MockWebhooks:
    def __init__(self, secret: str) -> None:
        self._secret = secret.encode()

    def sign(self, payload: bytes) -> str:
        return hmac.new(self._secret, payload, hashlib.sha256).hexdigest()

    def verify_signature(self, payload: bytes, signature: str) -> bool:
        if not signature:
            return False
        return hmac.compare_digest(self.sign(payload), signature)

    def construct_event(self, payload: bytes) -> ProviderWebhookEvent:
        try:
            body = json.loads(payload)
            provider_type = body["type"]
            created = body.get("created")
            return ProviderWebhookEvent(
                id=body["id"],
                type=EVENT_TYPE_MAP.get(provider_type, provider_type),
                provider_type=provider_type,
                data=body.get("data", {}),
                livemode=bool(body.get("livemode", False)),
                created_at=datetime.fromtimestamp(created, UTC) if created else None,
            )
        except (ValueError, KeyError, TypeError) as exc:
            raise ValidationError(f"Malformed webhook payload: {exc}", field="payload") from exc

    def build_payload(
        self,
        event_id: str,
        provider_type: str,
        data: dict[str, Any],
        livemode: bool = False,
    ) -> tuple[bytes, str]:
        """Serialize and sign an event the way the provider would deliver it."""
        payload = json.dumps(
            {"id": event_id, "type": provider_type, "data": data, "livemode": livemode},
            sort_keys=True,
        ).encode()
        return payload, self.sign(payload)


class MockPaymentProvider:
    """Payment provider adapter with no network access."""

    def __init__(self, webhook_secret: str = "whsec_mock", provider: str = PROVIDER_NAME) -> None:
        ids = _Ids()
        self.provider = provider
        self.customers = MockCustomers(ids)
        self.subscriptions = MockSubscriptions(ids)
        self.payments = MockPayments(ids)
        self.prices = MockPrices(ids)
        self.webhooks = MockWebhooks(webhook_secret)


__all__ = ["EVENT_TYPE_MAP", "MockPaymentProvider"]
