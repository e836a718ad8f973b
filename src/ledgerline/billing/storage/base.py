"""
Storage adapter interface.

Services depend on these protocols only. ``SQLAlchemyStorage`` in
``ledgerline.billing.storage.sql`` is the shipped implementation.

Every write on a versioned entity takes the version the caller read and
fails with ``OptimisticLockError`` when it no longer matches.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Any, Protocol

from ledgerline.billing.core.enums import GrantSource, SubscriptionStatus, WebhookEventStatus
from ledgerline.billing.core.models import (
    AddOn,
    CustomerEntitlement,
    CustomerLimit,
    Invoice,
    Plan,
    PromoCode,
    Subscription,
    SubscriptionAddOn,
    UsageRecord,
    WebhookEvent,
)


class PlanRepository(Protocol):
    async def save(self, plan: Plan) -> Plan: ...

    async def get(self, plan_id: str) -> Plan | None: ...

    async def list(self, active_only: bool = True) -> list[Plan]: ...


class AddOnRepository(Protocol):
    async def save(self, addon: AddOn) -> AddOn: ...

    async def get(self, addon_id: str) -> AddOn | None: ...

    async def list(self, active_only: bool = True) -> list[AddOn]: ...


class PromoCodeRepository(Protocol):
    async def save(self, promo_code: PromoCode) -> PromoCode: ...

    async def get(self, promo_code_id: str) -> PromoCode | None: ...

    async def get_by_code(self, code: str, livemode: bool = False) -> PromoCode | None: ...

    async def list(self, active_only: bool = True) -> list[PromoCode]: ...

    async def redeem(self, promo_code_id: str) -> PromoCode | None:
        """Count one redemption unless the cap is reached; ``None`` when it is."""
        ...


class SubscriptionAddOnRepository(Protocol):
    async def create(self, item: SubscriptionAddOn) -> SubscriptionAddOn: ...

    async def list_for_subscriptions(
        self, subscription_ids: Iterable[str], active_only: bool = True
    ) -> list[SubscriptionAddOn]: ...

    async def cancel(self, item_id: str, now: datetime) -> SubscriptionAddOn | None: ...


class SubscriptionRepository(Protocol):
    async def create(self, subscription: Subscription) -> Subscription: ...

    async def get(self, subscription_id: str, include_deleted: bool = False) -> Subscription | None: ...

    async def get_by_provider_id(self, provider: str, external_id: str) -> Subscription | None: ...

    async def link_provider(self, subscription_id: str, provider: str, external_id: str) -> None: ...

    async def list_for_customer(
        self, customer_id: str, statuses: Iterable[SubscriptionStatus] | None = None
    ) -> list[Subscription]: ...

    async def update(self, subscription: Subscription, expected_version: str) -> Subscription:
        """Persist ``subscription`` under a fresh version; stale ``expected_version`` raises."""
        ...

    async def claim(self, subscription_id: str, expected_version: str) -> Subscription | None:
        """Bump the version only. ``None`` when another writer got there first."""
        ...

    # Sweep queries
    async def find_due_for_renewal(self, now: datetime, limit: int) -> list[Subscription]: ...

    async def find_trials_ended(self, now: datetime, limit: int) -> list[Subscription]: ...

    async def find_needing_retry(self, now: datetime, limit: int) -> list[Subscription]: ...

    async def find_grace_expired(self, now: datetime, limit: int) -> list[Subscription]: ...

    async def find_trials_ending(
        self, now: datetime, until: datetime, limit: int
    ) -> list[Subscription]: ...

    async def find_scheduled_for_cancellation(
        self, now: datetime, limit: int
    ) -> list[Subscription]: ...


class InvoiceRepository(Protocol):
    async def create(self, invoice: Invoice) -> Invoice: ...

    async def get(self, invoice_id: str) -> Invoice | None: ...

    async def mark_paid(self, invoice_id: str, payment_id: str, now: datetime) -> Invoice | None:
        """Open or draft invoice to paid; ``None`` when it is not payable."""
        ...

    async def void(self, invoice_id: str, now: datetime) -> Invoice | None: ...

    async def list_for_subscription(self, subscription_id: str) -> list[Invoice]: ...

    async def list_for_customer(self, customer_id: str) -> list[Invoice]: ...


class WebhookEventRepository(Protocol):
    async def create_if_absent(self, event: WebhookEvent) -> tuple[WebhookEvent, bool]:
        """Insert unless (provider, provider_event_id) exists; returns (row, created)."""
        ...

    async def get(self, event_id: str) -> WebhookEvent | None: ...

    async def claim(
        self, event_id: str, now: datetime, lease_cutoff: datetime
    ) -> WebhookEvent | None:
        """Move a claimable event to processing and count the attempt."""
        ...

    async def mark_processed(self, event_id: str, now: datetime) -> WebhookEvent: ...

    async def mark_failed(
        self, event_id: str, error: str, next_attempt_at: datetime
    ) -> WebhookEvent: ...

    async def mark_dead_letter(self, event_id: str, error: str, now: datetime) -> WebhookEvent: ...

    async def list_due(
        self, now: datetime, lease_cutoff: datetime, limit: int
    ) -> list[WebhookEvent]: ...

    async def list_by_status(
        self, status: WebhookEventStatus, limit: int = 100
    ) -> list[WebhookEvent]: ...

    async def requeue(self, event_id: str, now: datetime) -> WebhookEvent | None: ...


class LimitRepository(Protocol):
    async def get(self, customer_id: str, limit_key: str) -> CustomerLimit | None: ...

    async def list_for_customer(self, customer_id: str) -> list[CustomerLimit]: ...

    async def upsert(self, limit: CustomerLimit) -> CustomerLimit:
        """Set ceiling, reset schedule and source; keeps the running counter."""
        ...

    async def ensure_counter(self, customer_id: str, limit_key: str, now: datetime) -> None:
        """Create an unlimited counter when none exists."""
        ...

    async def increment(
        self, customer_id: str, limit_key: str, amount: int, now: datetime, enforce: bool
    ) -> tuple[CustomerLimit | None, bool]:
        """Atomically add ``amount``; returns (row, applied)."""
        ...

    async def set_current(
        self, customer_id: str, limit_key: str, value: int, now: datetime
    ) -> CustomerLimit | None: ...

    async def revoke(self, customer_id: str, limit_key: str, now: datetime) -> CustomerLimit | None: ...

    async def reset_expired(self, now: datetime) -> int: ...

    async def add_usage(self, record: UsageRecord) -> UsageRecord: ...

    async def list_usage(
        self, customer_id: str, limit_key: str | None = None, since: datetime | None = None
    ) -> list[UsageRecord]: ...


class EntitlementRepository(Protocol):
    async def grant(self, entitlement: CustomerEntitlement) -> CustomerEntitlement: ...

    async def list_for_customer(self, customer_id: str) -> list[CustomerEntitlement]: ...

    async def revoke(
        self, customer_id: str, entitlement_key: str, now: datetime, source_id: str | None = None
    ) -> int: ...

    async def revoke_by_source(self, source: GrantSource, source_id: str, now: datetime) -> int: ...


class StorageAdapter(Protocol):
    plans: PlanRepository
    addons: AddOnRepository
    promo_codes: PromoCodeRepository
    subscription_addons: SubscriptionAddOnRepository
    subscriptions: SubscriptionRepository
    invoices: InvoiceRepository
    webhook_events: WebhookEventRepository
    limits: LimitRepository
    entitlements: EntitlementRepository

    def transaction(self) -> AbstractAsyncContextManager[None]:
        """Run the enclosed repository calls atomically."""
        ...

    async def after_commit(self, callback: Callable[[], Awaitable[Any]]) -> None:
        """Run ``callback`` once the outermost open transaction commits.

        Outside a transaction it runs at once. Callbacks queued by a
        transaction that rolls back are dropped.
        """
        ...


__all__ = [
    "PlanRepository",
    "AddOnRepository",
    "PromoCodeRepository",
    "SubscriptionAddOnRepository",
    "SubscriptionRepository",
    "InvoiceRepository",
    "WebhookEventRepository",
    "LimitRepository",
    "EntitlementRepository",
    "StorageAdapter",
]
