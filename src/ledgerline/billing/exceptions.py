"""
Billing system exceptions.

Custom exceptions for billing operations with clear error messages.
Provides comprehensive error handling with status codes, context, and recovery hints.
"""

from typing import Any


class BillingError(Exception):
    """
    Base billing system error with enhanced context.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code for API responses
        status_code: HTTP status code for this error type
        context: Additional context data about the error
        recovery_hint: Suggested action to resolve the error
    """

    kind = "billing_error"

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int = 400,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        self.message = message
        self.error_code = error_code or "BILLING_ERROR"
        self.status_code = status_code
        self.context = context or {}
        self.recovery_hint = recovery_hint
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for API responses."""
        return {
            "kind": self.kind,
            "error_code": self.error_code,
            "message": self.message,
            "status_code": self.status_code,
            "context": self.context,
            "recovery_hint": self.recovery_hint,
        }


class ValidationError(BillingError):
    """Malformed or semantically invalid input."""

    kind = "validation"

    def __init__(
        self,
        message: str,
        field: str | None = None,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        context = dict(context or {})
        if field:
            context["field"] = field
        super().__init__(
            message,
            "VALIDATION_ERROR",
            status_code=400,
            context=context,
            recovery_hint=recovery_hint,
        )


class NotFoundError(BillingError):
    """Referenced resource does not exist."""

    kind = "not_found"

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message, "NOT_FOUND", status_code=404, context=context, recovery_hint=recovery_hint
        )


class SubscriptionNotFoundError(NotFoundError):
    """Subscription not found error."""

    def __init__(
        self, message: str, subscription_id: str | None = None, customer_id: str | None = None
    ):
        context = {}
        if subscription_id:
            context["subscription_id"] = subscription_id
        if customer_id:
            context["customer_id"] = customer_id

        super().__init__(
            message,
            context=context,
            recovery_hint="Verify the subscription ID and ensure it exists and is accessible",
        )
        self.error_code = "SUBSCRIPTION_NOT_FOUND"


class PlanNotFoundError(NotFoundError):
    """Plan or add-on not found in the catalog."""

    def __init__(self, message: str, plan_id: str | None = None) -> None:
        context = {}
        if plan_id:
            context["plan_id"] = plan_id

        super().__init__(
            message,
            context=context,
            recovery_hint="Verify the plan ID and ensure it exists and is active",
        )
        self.error_code = "PLAN_NOT_FOUND"


class WebhookEventNotFoundError(NotFoundError):
    """Stored webhook event not found."""

    def __init__(self, message: str, event_id: str | None = None) -> None:
        super().__init__(message, context={"event_id": event_id} if event_id else {})
        self.error_code = "WEBHOOK_EVENT_NOT_FOUND"


class LimitNotFoundError(NotFoundError):
    """Customer limit not found."""

    def __init__(self, message: str, customer_id: str, limit_key: str) -> None:
        super().__init__(
            message,
            context={"customer_id": customer_id, "limit_key": limit_key},
            recovery_hint="Set the limit before revoking or enforcing it",
        )
        self.error_code = "LIMIT_NOT_FOUND"


class ConflictError(BillingError):
    """Request conflicts with the current state of a resource."""

    kind = "conflict"

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message, "CONFLICT", status_code=409, context=context, recovery_hint=recovery_hint
        )


class SubscriptionStateError(ConflictError):
    """Invalid subscription state transition error."""

    def __init__(
        self,
        message: str,
        current_state: str,
        requested_state: str,
        subscription_id: str | None = None,
    ) -> None:
        context = {"current_state": current_state, "requested_state": requested_state}
        if subscription_id:
            context["subscription_id"] = subscription_id
        super().__init__(
            message,
            context=context,
            recovery_hint=f"Cannot transition from {current_state} to {requested_state}. Check subscription status first.",
        )
        self.error_code = "INVALID_SUBSCRIPTION_STATE"
        self.current_state = current_state
        self.requested_state = requested_state


class OptimisticLockError(ConflictError):
    """Write carried a stale version token."""

    def __init__(self, message: str, resource_id: str, expected_version: str | None) -> None:
        super().__init__(
            message,
            context={"resource_id": resource_id, "expected_version": expected_version},
            recovery_hint="Re-read the resource and retry the change with its current version",
        )
        self.error_code = "OPTIMISTIC_LOCK_FAILED"


class DuplicateResourceError(ConflictError):
    """Resource with the same natural key already exists."""

    def __init__(self, message: str, resource_type: str, key: str) -> None:
        super().__init__(
            message,
            context={"resource_type": resource_type, "key": key},
            recovery_hint="Use a unique identifier or update the existing resource",
        )
        self.error_code = "DUPLICATE_RESOURCE"


class ProviderSyncError(BillingError):
    """Payment provider call failed."""

    kind = "provider_sync"

    # Provider error categories that are worth retrying
    RETRYABLE_CATEGORIES = frozenset({"network", "rate_limit", "timeout", "provider_unavailable"})

    def __init__(
        self,
        message: str,
        provider: str,
        category: str = "unknown",
        retryable: bool | None = None,
        provider_code: str | None = None,
    ) -> None:
        if retryable is None:
            retryable = category in self.RETRYABLE_CATEGORIES
        super().__init__(
            message,
            "PROVIDER_SYNC_ERROR",
            status_code=502,
            context={
                "provider": provider,
                "category": category,
                "provider_code": provider_code,
                "retryable": retryable,
            },
            recovery_hint="Retry later" if retryable else "Check the payment method with the customer",
        )
        self.provider = provider
        self.category = category
        self.retryable = retryable


class UsageLimitExceededError(BillingError):
    """Usage limit exceeded error."""

    kind = "usage_limit_exceeded"

    def __init__(
        self, message: str, current_usage: int, limit: int | None, limit_key: str
    ) -> None:
        super().__init__(
            message,
            "USAGE_LIMIT_EXCEEDED",
            status_code=429,
            context={"current_usage": current_usage, "limit": limit, "limit_key": limit_key},
            recovery_hint="Upgrade your plan or purchase additional usage capacity",
        )


class WebhookSignatureError(BillingError):
    """Webhook payload failed signature verification."""

    kind = "webhook_signature"

    def __init__(self, message: str, provider: str | None = None) -> None:
        super().__init__(
            message,
            "WEBHOOK_SIGNATURE_INVALID",
            status_code=401,
            context={"provider": provider} if provider else {},
            recovery_hint="Check the webhook signing secret configured for this provider",
        )


class BillingConfigurationError(BillingError):
    """Billing configuration errors."""

    kind = "configuration"

    def __init__(
        self, message: str, config_key: str | None = None, recovery_hint: str | None = None
    ):
        context = {}
        if config_key:
            context["config_key"] = config_key

        super().__init__(
            message,
            "BILLING_CONFIG_ERROR",
            status_code=500,
            context=context,
            recovery_hint=recovery_hint or "Check billing configuration settings",
        )
