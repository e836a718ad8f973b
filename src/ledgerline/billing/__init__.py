"""
Billing engine.

Provides:
- Subscription lifecycle (trials, renewals, plan changes, pause/resume, cancel)
- Billing period arithmetic and proration
- Usage limits and entitlement resolution
- Exactly-once webhook ingestion with retry and dead-lettering
- Dunning sweeps for failed renewals

``BillingEngine`` is the entry point; the services are reachable from it.
"""

from __future__ import annotations

from ledgerline.billing.config import BillingConfig, get_billing_config, set_billing_config
from ledgerline.billing.core.enums import (
    UNLIMITED,
    BillingInterval,
    DiscountType,
    InvoiceStatus,
    ProrationBehavior,
    SubscriptionStatus,
    WebhookEventStatus,
)
from ledgerline.billing.core.models import (
    AddOn,
    AddOnLimit,
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
from ledgerline.billing.engine import BillingEngine
from ledgerline.billing.events import BillingEvent, BillingEvents, EventBus
from ledgerline.billing.exceptions import (
    BillingConfigurationError,
    BillingError,
    ConflictError,
    NotFoundError,
    OptimisticLockError,
    ProviderSyncError,
    SubscriptionStateError,
    UsageLimitExceededError,
    ValidationError,
    WebhookSignatureError,
)
from ledgerline.billing.storage.sql import SQLAlchemyStorage

__all__ = [
    # Engine
    "BillingEngine",
    "BillingConfig",
    "get_billing_config",
    "set_billing_config",
    "SQLAlchemyStorage",
    # Events
    "BillingEvent",
    "BillingEvents",
    "EventBus",
    # Models
    "Plan",
    "AddOn",
    "AddOnLimit",
    "PromoCode",
    "Subscription",
    "SubscriptionAddOn",
    "Invoice",
    "WebhookEvent",
    "CustomerLimit",
    "CustomerEntitlement",
    "UsageRecord",
    # Enums
    "UNLIMITED",
    "BillingInterval",
    "DiscountType",
    "InvoiceStatus",
    "ProrationBehavior",
    "SubscriptionStatus",
    "WebhookEventStatus",
    # Exceptions
    "BillingError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "SubscriptionStateError",
    "OptimisticLockError",
    "ProviderSyncError",
    "UsageLimitExceededError",
    "WebhookSignatureError",
    "BillingConfigurationError",
]
