"""
Core billing domain models.

Pydantic v2 models for every billing entity. These are the values passed
between services, the storage adapter and the event bus; the SQLAlchemy
tables in ``ledgerline.billing.storage.tables`` mirror them field for field.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ledgerline.billing.core.enums import (
    UNLIMITED,
    AddOnStatus,
    BillingInterval,
    DiscountType,
    GrantSource,
    InvoiceStatus,
    LimitAction,
    SubscriptionStatus,
    WebhookEventStatus,
)


def new_id(prefix: str) -> str:
    """Generate an opaque identifier such as ``sub_3f2a...``."""
    return f"{prefix}_{uuid4().hex}"


def new_version() -> str:
    return uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(UTC)


class BillingBaseModel(BaseModel):
    """Base model for all billing entities."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        validate_assignment=True,
    )


# ============================================================================
# Catalog
# ============================================================================


class Plan(BillingBaseModel):
    """Recurring price with the entitlements and limits it grants."""

    id: str = Field(description="Plan identifier, e.g. 'pro'")
    name: str
    unit_amount: int = Field(ge=0, description="Price per interval in minor units")
    currency: str = Field("USD", min_length=3, max_length=3)
    interval: BillingInterval = BillingInterval.MONTH
    interval_count: int = Field(1, ge=1)
    trial_days: int = Field(0, ge=0, description="Default trial length")
    entitlements: list[str] = Field(default_factory=list)
    limits: dict[str, int] = Field(
        default_factory=dict, description=f"Limit key to ceiling, {UNLIMITED} for unlimited"
    )
    active: bool = True
    livemode: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)


class AddOnLimit(BillingBaseModel):
    key: str
    value: int
    action: LimitAction = LimitAction.SET


class AddOn(BillingBaseModel):
    """Optional extra sold on top of a plan."""

    id: str
    name: str
    unit_amount: int = Field(ge=0)
    currency: str = Field("USD", min_length=3, max_length=3)
    entitlements: list[str] = Field(default_factory=list)
    limits: list[AddOnLimit] = Field(default_factory=list)
    active: bool = True
    livemode: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)


class PromoCode(BillingBaseModel):
    """Discount a customer redeems when subscribing.

    The discount applies to every full-period charge and to proration for
    as long as the subscription stays on an applicable plan.
    """

    id: str = Field(default_factory=lambda: new_id("promo"))
    code: str = Field(min_length=1, max_length=64)
    discount_type: DiscountType
    discount_value: int = Field(
        ge=0, description="Percent off (0-100) or minor units off per period"
    )
    currency: str | None = Field(
        None, min_length=3, max_length=3, description="Required currency for fixed amounts"
    )
    applicable_plan_ids: list[str] = Field(
        default_factory=list, description="Empty means every plan"
    )
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    max_redemptions: int | None = Field(None, ge=1)
    redemption_count: int = Field(0, ge=0)
    active: bool = True
    livemode: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)

    @model_validator(mode="after")
    def _percentage_in_range(self) -> PromoCode:
        if self.discount_type == DiscountType.PERCENTAGE and self.discount_value > 100:
            raise ValueError("percentage discounts cannot exceed 100")
        return self

    @property
    def is_exhausted(self) -> bool:
        return self.max_redemptions is not None and self.redemption_count >= self.max_redemptions

    def applies_to(self, plan_id: str) -> bool:
        return not self.applicable_plan_ids or plan_id in self.applicable_plan_ids


class SubscriptionAddOn(BillingBaseModel):
    id: str = Field(default_factory=lambda: new_id("sao"))
    subscription_id: str
    addon_id: str
    quantity: int = Field(1, ge=1)
    status: AddOnStatus = AddOnStatus.ACTIVE
    added_at: datetime = Field(default_factory=_utcnow)
    canceled_at: datetime | None = None
    expires_at: datetime | None = None

    def is_active(self, now: datetime) -> bool:
        if self.status != AddOnStatus.ACTIVE:
            return False
        return self.expires_at is None or self.expires_at > now


# ============================================================================
# Subscriptions
# ============================================================================


class Subscription(BillingBaseModel):
    """Customer subscription to a plan."""

    id: str = Field(default_factory=lambda: new_id("sub"))
    customer_id: str
    plan_id: str
    quantity: int = Field(1, ge=1)
    status: SubscriptionStatus

    current_period_start: datetime
    current_period_end: datetime
    trial_start: datetime | None = None
    trial_end: datetime | None = None

    cancel_at: datetime | None = None
    canceled_at: datetime | None = None
    cancel_at_period_end: bool = False
    cancel_reason: str | None = None
    paused_at: datetime | None = None

    # Dunning
    retry_count: int = Field(0, ge=0)
    next_retry_at: datetime | None = None
    grace_period_ends_at: datetime | None = None

    promo_code_id: str | None = None
    provider_subscription_ids: dict[str, str] = Field(default_factory=dict)

    version: str = Field(default_factory=new_version, description="Optimistic lock token")
    livemode: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    deleted_at: datetime | None = None

    @model_validator(mode="after")
    def _period_is_forward(self) -> Subscription:
        if self.current_period_end <= self.current_period_start:
            raise ValueError("current_period_end must be after current_period_start")
        return self

    @property
    def is_trialing(self) -> bool:
        return self.status == SubscriptionStatus.TRIALING

    def in_grace_period(self, now: datetime) -> bool:
        return (
            self.status == SubscriptionStatus.PAST_DUE
            and self.grace_period_ends_at is not None
            and now <= self.grace_period_ends_at
        )


# ============================================================================
# Invoices
# ============================================================================


class InvoiceLine(BillingBaseModel):
    description: str
    amount: int = Field(description="Line total in minor units, negative for credits")
    quantity: int = 1
    proration: bool = False
    period_start: datetime | None = None
    period_end: datetime | None = None


class Invoice(BillingBaseModel):
    id: str = Field(default_factory=lambda: new_id("in"))
    customer_id: str
    subscription_id: str | None = None
    status: InvoiceStatus = InvoiceStatus.OPEN
    currency: str = "USD"
    lines: list[InvoiceLine] = Field(default_factory=list)
    total: int = 0
    payment_id: str | None = None
    livemode: bool = False
    created_at: datetime = Field(default_factory=_utcnow)
    paid_at: datetime | None = None
    voided_at: datetime | None = None

    @model_validator(mode="after")
    def _total_matches_lines(self) -> Invoice:
        if self.lines and self.total != sum(line.amount for line in self.lines):
            raise ValueError("invoice total must equal the sum of its lines")
        return self


# ============================================================================
# Webhooks
# ============================================================================


class WebhookEvent(BillingBaseModel):
    """Durable record of one provider notification."""

    id: str = Field(default_factory=lambda: new_id("whe"))
    provider: str
    provider_event_id: str
    type: str
    status: WebhookEventStatus = WebhookEventStatus.PENDING
    payload: dict[str, Any] = Field(default_factory=dict)
    attempts: int = 0
    error: str | None = None
    next_attempt_at: datetime | None = None
    claimed_at: datetime | None = None
    processed_at: datetime | None = None
    livemode: bool = False
    created_at: datetime = Field(default_factory=_utcnow)


# ============================================================================
# Limits and entitlements
# ============================================================================


class CustomerLimit(BillingBaseModel):
    customer_id: str
    limit_key: str
    max_value: int | None = Field(None, description="None means unlimited")
    current_value: int = Field(0, ge=0)
    reset_at: datetime | None = None
    reset_interval: BillingInterval | None = None
    source: GrantSource = GrantSource.MANUAL
    source_id: str | None = None
    revoked_at: datetime | None = None
    updated_at: datetime = Field(default_factory=_utcnow)


class UsageRecord(BillingBaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str = Field(default_factory=lambda: new_id("ur"))
    customer_id: str
    limit_key: str
    quantity: int
    action: LimitAction = LimitAction.INCREMENT
    recorded_at: datetime = Field(default_factory=_utcnow)
    metadata: dict[str, Any] = Field(default_factory=dict)


class CustomerEntitlement(BillingBaseModel):
    """Stored grant. With ``value`` set it is a numeric limit grant."""

    id: str = Field(default_factory=lambda: new_id("ent"))
    customer_id: str
    entitlement_key: str
    value: int | None = None
    action: LimitAction = LimitAction.SET
    granted_at: datetime = Field(default_factory=_utcnow)
    expires_at: datetime | None = None
    source: GrantSource = GrantSource.MANUAL
    source_id: str | None = None
    revoked_at: datetime | None = None

    def is_active(self, now: datetime) -> bool:
        if self.revoked_at is not None:
            return False
        return self.expires_at is None or self.expires_at > now


__all__ = [
    "new_id",
    "new_version",
    "BillingBaseModel",
    "Plan",
    "AddOnLimit",
    "AddOn",
    "PromoCode",
    "SubscriptionAddOn",
    "Subscription",
    "InvoiceLine",
    "Invoice",
    "WebhookEvent",
    "CustomerLimit",
    "UsageRecord",
    "CustomerEntitlement",
]
