"""
Billing module metrics and tracing

Instruments come from the OpenTelemetry API; without a configured SDK
they are no-ops.
"""

from __future__ import annotations

from contextlib import AbstractContextManager

import structlog
from opentelemetry import metrics, trace
from opentelemetry.metrics import Counter, Histogram, Meter
from opentelemetry.trace import Span, SpanKind, Tracer

from ledgerline.billing.core.enums import PaymentStatus, WebhookEventStatus

logger = structlog.get_logger(__name__)

INSTRUMENTATION_NAME = "ledgerline.billing"


class BillingMetrics:
    """Billing metrics collector"""

    def __init__(self, meter: Meter | None = None, tracer: Tracer | None = None) -> None:
        self.meter = meter or metrics.get_meter(INSTRUMENTATION_NAME)
        self.tracer = tracer or trace.get_tracer(INSTRUMENTATION_NAME)

        # Subscription metrics
        self.subscription_created_counter = self._create_counter(
            "billing.subscription.created", "Number of subscriptions created"
        )
        self.subscription_transition_counter = self._create_counter(
            "billing.subscription.transitions", "Subscription status transitions"
        )
        self.renewal_counter = self._create_counter(
            "billing.subscription.renewals", "Renewal attempts by outcome"
        )

        # Payment metrics
        self.payment_succeeded_counter = self._create_counter(
            "billing.payment.succeeded", "Number of successful charges"
        )
        self.payment_failed_counter = self._create_counter(
            "billing.payment.failed", "Number of failed charges"
        )
        self.payment_amount_histogram = self._create_histogram(
            "billing.payment.amount", "Charged amounts", unit="minor_units"
        )

        # Invoice metrics
        self.invoice_created_counter = self._create_counter(
            "billing.invoice.created", "Number of invoices created"
        )

        # Webhook metrics
        self.webhook_received_counter = self._create_counter(
            "billing.webhook.received", "Webhook deliveries accepted"
        )
        self.webhook_duplicate_counter = self._create_counter(
            "billing.webhook.duplicates", "Webhook deliveries dropped as duplicates"
        )
        self.webhook_processed_counter = self._create_counter(
            "billing.webhook.processed", "Webhook processing attempts by outcome"
        )
        self.webhook_dead_letter_counter = self._create_counter(
            "billing.webhook.dead_lettered", "Webhook events moved to dead letter"
        )

        # Usage metrics
        self.usage_recorded_counter = self._create_counter(
            "billing.usage.recorded", "Usage quantity recorded"
        )
        self.usage_rejected_counter = self._create_counter(
            "billing.usage.rejected", "Enforced increments rejected at the limit"
        )

    # Subscription metrics
    def record_subscription_created(self, plan_id: str, status: str) -> None:
        self.subscription_created_counter.add(1, {"plan_id": plan_id, "status": status})

    def record_transition(self, from_status: str, to_status: str) -> None:
        self.subscription_transition_counter.add(1, {"from": from_status, "to": to_status})

    def record_renewal(self, plan_id: str, succeeded: bool) -> None:
        self.renewal_counter.add(
            1, {"plan_id": plan_id, "outcome": "succeeded" if succeeded else "failed"}
        )

    # Payment metrics
    def record_payment(
        self, provider: str, status: PaymentStatus, amount: int, currency: str
    ) -> None:
        """Record a charge outcome"""
        attributes = {"provider": provider, "currency": currency, "status": status.value}
        if status == PaymentStatus.SUCCEEDED:
            self.payment_succeeded_counter.add(1, attributes)
            self.payment_amount_histogram.record(amount, attributes)
        elif status == PaymentStatus.FAILED:
            self.payment_failed_counter.add(1, attributes)
        logger.debug(
            "billing.metrics.payment", provider=provider, status=status.value, amount=amount
        )

    def record_invoice_created(self, currency: str, proration: bool) -> None:
        self.invoice_created_counter.add(1, {"currency": currency, "proration": proration})

    # Webhook metrics
    def record_webhook_received(self, provider: str, event_type: str, duplicate: bool) -> None:
        """Record webhook receipt"""
        attributes = {"provider": provider, "event_type": event_type}
        if duplicate:
            self.webhook_duplicate_counter.add(1, attributes)
        else:
            self.webhook_received_counter.add(1, attributes)

    def record_webhook_processed(
        self, provider: str, event_type: str, status: WebhookEventStatus
    ) -> None:
        attributes = {"provider": provider, "event_type": event_type, "status": status.value}
        self.webhook_processed_counter.add(1, attributes)
        if status == WebhookEventStatus.DEADLETTER:
            self.webhook_dead_letter_counter.add(1, attributes)

    # Usage metrics
    def record_usage(self, limit_key: str, quantity: int, rejected: bool = False) -> None:
        if rejected:
            self.usage_rejected_counter.add(1, {"limit_key": limit_key})
        else:
            self.usage_recorded_counter.add(quantity, {"limit_key": limit_key})

    # Internal helpers -----------------------------------------------------

    def _create_counter(self, name: str, description: str, unit: str = "1") -> Counter:
        return self.meter.create_counter(name=name, description=description, unit=unit)

    def _create_histogram(self, name: str, description: str, unit: str = "1") -> Histogram:
        return self.meter.create_histogram(name=name, description=description, unit=unit)

    # Tracing helpers
    def trace_subscription_operation(
        self, operation: str, subscription_id: str
    ) -> AbstractContextManager[Span]:
        """Create a trace span for subscription operations"""
        return self.tracer.start_as_current_span(
            f"billing.subscription.{operation}",
            kind=SpanKind.INTERNAL,
            attributes={"subscription_id": subscription_id, "operation": operation},
        )

    def trace_webhook_processing(
        self, provider: str, event_type: str
    ) -> AbstractContextManager[Span]:
        """Create a trace span for webhook processing"""
        return self.tracer.start_as_current_span(
            "billing.webhook.process",
            kind=SpanKind.SERVER,
            attributes={"provider": provider, "event_type": event_type},
        )


# Global metrics instance
_billing_metrics: BillingMetrics | None = None


def get_billing_metrics() -> BillingMetrics:
    """Get the global billing metrics instance"""
    global _billing_metrics
    if _billing_metrics is None:
        _billing_metrics = BillingMetrics()
    return _billing_metrics


def set_billing_metrics(metrics: BillingMetrics | None) -> None:
    """Set the global billing metrics instance"""
    global _billing_metrics
    _billing_metrics = metrics
