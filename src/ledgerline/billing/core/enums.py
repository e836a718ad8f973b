"""Billing enumerations shared across services, storage and providers."""

from enum import Enum


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle states."""

    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    PAUSED = "paused"
    UNPAID = "unpaid"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in (SubscriptionStatus.CANCELED, SubscriptionStatus.INCOMPLETE_EXPIRED)

    @property
    def is_live(self) -> bool:
        """States whose plan entitlements are honoured."""
        return self in (
            SubscriptionStatus.TRIALING,
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.PAST_DUE,
        )


class BillingInterval(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


class ProrationBehavior(str, Enum):
    """How plan or quantity changes are charged."""

    CREATE_PRORATIONS = "create_prorations"
    NONE = "none"
    ALWAYS_INVOICE = "always_invoice"


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    OPEN = "open"
    PAID = "paid"
    VOID = "void"
    UNCOLLECTIBLE = "uncollectible"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"
    REFUNDED = "refunded"


class WebhookEventStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"
    DEADLETTER = "deadletter"


class GrantSource(str, Enum):
    """Where a limit or entitlement row came from."""

    SUBSCRIPTION = "subscription"
    ADDON = "addon"
    PURCHASE = "purchase"
    MANUAL = "manual"
    # Counter opened by recorded usage, with no ceiling of its own
    USAGE = "usage"


class LimitAction(str, Enum):
    SET = "set"
    INCREMENT = "increment"


class DiscountType(str, Enum):
    """How a promo code reduces a price."""

    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"


class AddOnStatus(str, Enum):
    ACTIVE = "active"
    CANCELED = "canceled"


class GraceExpiryAction(str, Enum):
    """Status a past-due subscription moves to once its grace period is over."""

    UNPAID = "unpaid"
    CANCELED = "canceled"


class ConflictPolicy(str, Enum):
    """Resolution for several ``set`` grants on the same numeric limit."""

    MAX = "max"
    MIN = "min"
    LATEST = "latest"


# Sentinel stored in plan and add-on limit maps for "no ceiling"
UNLIMITED = -1
