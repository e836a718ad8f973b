"""
Webhook event handlers.

Routes normalized provider events into the subscription state machine.
Unknown event types are acknowledged without side effects.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

import structlog

from ledgerline.billing.core.enums import PaymentStatus
from ledgerline.billing.exceptions import ValidationError
from ledgerline.billing.providers.base import ProviderPayment, ProviderWebhookEvent
from ledgerline.billing.subscriptions.service import SubscriptionService

logger = structlog.get_logger(__name__)

WebhookHandler = Callable[[str, ProviderWebhookEvent, datetime], Awaitable[None]]


def parse_timestamp(value: Any) -> datetime | None:
    """Accept unix seconds or ISO 8601; naive values are taken as UTC."""
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, int | float):
        return datetime.fromtimestamp(value, UTC)
    else:
        try:
            parsed = datetime.fromisoformat(str(value))
        except ValueError:
            raise ValidationError(f"Invalid timestamp: {value!r}", field="data") from None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _require(data: dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = data.get(key)
        if value:
            return str(value)
    raise ValidationError(f"Webhook data is missing '{keys[0]}'", field=keys[0])


class WebhookHandlerRegistry:
    """Maps normalized event types to handlers."""

    def __init__(self, subscriptions: SubscriptionService) -> None:
        self.subscriptions = subscriptions
        self._handlers: dict[str, WebhookHandler] = {
            "subscription.updated": self._subscription_updated,
            "subscription.canceled": self._subscription_canceled,
            "payment.succeeded": self._payment_succeeded,
            "payment.failed": self._payment_failed,
        }

    def register(self, event_type: str, handler: WebhookHandler) -> None:
        self._handlers[event_type] = handler

    def handles(self, event_type: str) -> bool:
        return event_type in self._handlers

    async def dispatch(self, provider: str, event: ProviderWebhookEvent, now: datetime) -> bool:
        """Run the handler for ``event``; ``False`` when nothing handles its type."""
        handler = self._handlers.get(event.type)
        if handler is None:
            logger.info(
                "billing.webhook.unhandled",
                provider=provider,
                event_id=event.id,
                event_type=event.type,
            )
            return False
        await handler(provider, event, now)
        return True

    # Built-in handlers -------------------------------------------------

    async def _subscription_updated(
        self, provider: str, event: ProviderWebhookEvent, now: datetime
    ) -> None:
        data = event.data
        cancel_flag = data.get("cancel_at_period_end")
        await self.subscriptions.apply_provider_state(
            provider,
            _require(data, "id", "subscription"),
            status=data.get("status"),
            current_period_start=parse_timestamp(data.get("current_period_start")),
            current_period_end=parse_timestamp(data.get("current_period_end")),
            cancel_at_period_end=None if cancel_flag is None else bool(cancel_flag),
            now=now,
        )

    async def _subscription_canceled(
        self, provider: str, event: ProviderWebhookEvent, now: datetime
    ) -> None:
        await self.subscriptions.apply_provider_state(
            provider, _require(event.data, "id", "subscription"), status="canceled", now=now
        )

    async def _payment(
        self, provider: str, event: ProviderWebhookEvent, now: datetime, status: PaymentStatus
    ) -> None:
        data = event.data
        payment = ProviderPayment(
            id=_require(data, "payment_id", "id"),
            customer_id=str(data.get("customer", "")),
            amount=int(data.get("amount", 0)),
            currency=str(data.get("currency", "USD")).upper(),
            status=status,
            failure_code=data.get("failure_code"),
            failure_message=data.get("failure_message"),
        )
        await self.subscriptions.record_external_payment(
            provider, _require(data, "subscription"), payment, now=now
        )

    async def _payment_succeeded(
        self, provider: str, event: ProviderWebhookEvent, now: datetime
    ) -> None:
        await self._payment(provider, event, now, PaymentStatus.SUCCEEDED)

    async def _payment_failed(
        self, provider: str, event: ProviderWebhookEvent, now: datetime
    ) -> None:
        await self._payment(provider, event, now, PaymentStatus.FAILED)


__all__ = ["WebhookHandler", "WebhookHandlerRegistry", "parse_timestamp"]
