"""
Webhook ingestion pipeline.

Receiving and processing are separate steps. ``receive`` verifies the
signature and records the event durably, deduplicated on
(provider, provider_event_id), so the provider can be acknowledged right
away. ``process`` claims the stored event with a conditional update, then
runs its handler and marks the event processed in one transaction. Domain
events raised by the handler are published only after that commit. Failures
are retried with exponential backoff and end in the dead-letter state once
attempts run out.
"""

from __future__ import annotations

from datetime import datetime, timedelta

import structlog
from pydantic import BaseModel, ConfigDict

from ledgerline.billing.config import BillingConfig, get_billing_config
from ledgerline.billing.core.enums import WebhookEventStatus
from ledgerline.billing.core.models import WebhookEvent
from ledgerline.billing.exceptions import (
    BillingError,
    ConflictError,
    WebhookEventNotFoundError,
    WebhookSignatureError,
)
from ledgerline.billing.metrics import BillingMetrics, get_billing_metrics
from ledgerline.billing.periods import resolve_now
from ledgerline.billing.providers.base import ProviderWebhookEvent
from ledgerline.billing.providers.registry import ProviderRegistry
from ledgerline.billing.recovery import ExponentialBackoff
from ledgerline.billing.storage.base import StorageAdapter
from ledgerline.billing.webhooks.handlers import WebhookHandlerRegistry
from ledgerline.logging import billing_context

logger = structlog.get_logger(__name__)


class WebhookReceipt(BaseModel):
    """Acknowledgement for one delivery."""

    model_config = ConfigDict(frozen=True)

    event: WebhookEvent
    duplicate: bool = False


class WebhookPipeline:
    def __init__(
        self,
        storage: StorageAdapter,
        providers: ProviderRegistry,
        handlers: WebhookHandlerRegistry,
        config: BillingConfig | None = None,
        metrics: BillingMetrics | None = None,
    ) -> None:
        self.storage = storage
        self.providers = providers
        self.handlers = handlers
        self.config = config or get_billing_config()
        self.metrics = metrics or get_billing_metrics()
        self.backoff = ExponentialBackoff(
            base_delay=self.config.webhook.backoff_base_seconds,
            max_delay=self.config.webhook.backoff_max_seconds,
        )

    def _lease_cutoff(self, now: datetime) -> datetime:
        return now - timedelta(seconds=self.config.webhook.processing_lease_seconds)

    async def receive(
        self, provider: str, payload: bytes, signature: str, now: datetime | None = None
    ) -> WebhookReceipt:
        """Verify, normalize and durably record a delivery.

        A bad signature raises ``WebhookSignatureError`` and nothing is
        stored. A redelivery of a known event returns the stored record
        with ``duplicate=True`` and changes nothing.
        """
        now = resolve_now(now)
        adapter = self.providers.get(provider)

        if not adapter.webhooks.verify_signature(payload, signature):
            logger.warning("billing.webhook.signature_invalid", provider=provider)
            raise WebhookSignatureError("Invalid webhook signature", provider=provider)

        normalized = adapter.webhooks.construct_event(payload)
        record = WebhookEvent(
            provider=provider,
            provider_event_id=normalized.id,
            type=normalized.type,
            payload=normalized.model_dump(mode="json"),
            livemode=normalized.livemode,
            next_attempt_at=now,
            created_at=now,
        )
        event, created = await self.storage.webhook_events.create_if_absent(record)
        self.metrics.record_webhook_received(provider, event.type, duplicate=not created)
        logger.info(
            "billing.webhook.received" if created else "billing.webhook.duplicate",
            provider=provider,
            event_id=event.id,
            provider_event_id=event.provider_event_id,
            event_type=event.type,
        )

        if created and self.config.webhook.process_inline:
            event = await self.process(event.id, now)
        return WebhookReceipt(event=event, duplicate=not created)

    async def ingest(
        self, provider: str, payload: bytes, signature: str, now: datetime | None = None
    ) -> WebhookReceipt:
        """Receive and, for a first delivery, process in the same call."""
        now = resolve_now(now)
        receipt = await self.receive(provider, payload, signature, now)
        if receipt.duplicate or receipt.event.status != WebhookEventStatus.PENDING:
            return receipt
        return WebhookReceipt(event=await self.process(receipt.event.id, now))

    async def process(self, event_id: str, now: datetime | None = None) -> WebhookEvent:
        """Claim and handle one stored event.

        Events that are already processed, dead-lettered, not yet due, or
        claimed by another worker are returned unchanged.
        """
        now = resolve_now(now)
        event = await self.storage.webhook_events.claim(event_id, now, self._lease_cutoff(now))
        if event is None:
            existing = await self.storage.webhook_events.get(event_id)
            if existing is None:
                raise WebhookEventNotFoundError(f"Webhook event {event_id} not found", event_id=event_id)
            logger.debug(
                "billing.webhook.not_claimable", event_id=event_id, status=existing.status.value
            )
            return existing

        with (
            billing_context(webhook_event_id=event.id),
            self.metrics.trace_webhook_processing(event.provider, event.type),
        ):
            try:
                # Side effects and the processed mark commit or roll back together
                async with self.storage.transaction():
                    normalized = ProviderWebhookEvent.model_validate(event.payload)
                    handled = await self.handlers.dispatch(event.provider, normalized, now)
                    processed = await self.storage.webhook_events.mark_processed(event.id, now)
            except Exception as exc:
                return await self._record_failure(event, exc, now)

        self.metrics.record_webhook_processed(
            event.provider, event.type, WebhookEventStatus.PROCESSED
        )
        logger.info(
            "billing.webhook.processed",
            provider=event.provider,
            event_id=event.id,
            event_type=event.type,
            attempts=processed.attempts,
            handled=handled,
        )
        return processed

    async def _record_failure(
        self, event: WebhookEvent, exc: Exception, now: datetime
    ) -> WebhookEvent:
        error = exc.message if isinstance(exc, BillingError) else f"{type(exc).__name__}: {exc}"
        max_attempts = self.config.webhook.max_attempts

        if event.attempts >= max_attempts:
            failed = await self.storage.webhook_events.mark_dead_letter(event.id, error, now)
            status = WebhookEventStatus.DEADLETTER
            logger.error(
                "billing.webhook.dead_lettered",
                provider=event.provider,
                event_id=event.id,
                event_type=event.type,
                attempts=event.attempts,
                error=error,
            )
        else:
            next_attempt_at = self.backoff.next_attempt_at(now, event.attempts - 1)
            failed = await self.storage.webhook_events.mark_failed(event.id, error, next_attempt_at)
            status = WebhookEventStatus.FAILED
            logger.warning(
                "billing.webhook.failed",
                provider=event.provider,
                event_id=event.id,
                event_type=event.type,
                attempts=event.attempts,
                next_attempt_at=next_attempt_at.isoformat(),
                error=error,
                exc_info=not isinstance(exc, BillingError),
            )

        self.metrics.record_webhook_processed(event.provider, event.type, status)
        return failed

    async def process_due(self, now: datetime | None = None, limit: int = 100) -> list[WebhookEvent]:
        """Process pending, due-for-retry and lease-expired events, oldest first."""
        now = resolve_now(now)
        due = await self.storage.webhook_events.list_due(now, self._lease_cutoff(now), limit)
        results = [await self.process(event.id, now) for event in due]
        if results:
            logger.info("billing.webhook.drained", count=len(results))
        return results

    async def list_dead_letters(self, limit: int = 100) -> list[WebhookEvent]:
        return await self.storage.webhook_events.list_by_status(WebhookEventStatus.DEADLETTER, limit)

    async def requeue_dead_letter(self, event_id: str, now: datetime | None = None) -> WebhookEvent:
        """Give a dead-lettered event a fresh set of attempts. The last error is kept."""
        now = resolve_now(now)
        event = await self.storage.webhook_events.requeue(event_id, now)
        if event is not None:
            logger.info("billing.webhook.requeued", event_id=event_id)
            return event

        existing = await self.storage.webhook_events.get(event_id)
        if existing is None:
            raise WebhookEventNotFoundError(f"Webhook event {event_id} not found", event_id=event_id)
        raise ConflictError(
            f"Webhook event {event_id} is {existing.status.value}, not dead-lettered",
            context={"event_id": event_id, "status": existing.status.value},
        )


__all__ = ["WebhookReceipt", "WebhookPipeline"]
