"""
Invoice writer.

Builds renewal and proration invoices for the subscription service, which
persists them in the same storage transaction as the subscription change.
"""

from __future__ import annotations

from datetime import datetime
from functools import partial

import structlog

from ledgerline.billing.core.enums import InvoiceStatus
from ledgerline.billing.core.models import Invoice, InvoiceLine, Plan, PromoCode, Subscription
from ledgerline.billing.discounts import discount_amount
from ledgerline.billing.events import (
    BillingEvents,
    EventBus,
    InvoiceEventPayload,
    PendingEvents,
)
from ledgerline.billing.exceptions import NotFoundError
from ledgerline.billing.metrics import BillingMetrics, get_billing_metrics
from ledgerline.billing.money_utils import format_minor_units
from ledgerline.billing.proration import ProrationResult
from ledgerline.billing.storage.base import StorageAdapter

logger = structlog.get_logger(__name__)


class InvoiceService:
    def __init__(
        self,
        storage: StorageAdapter,
        event_bus: EventBus,
        livemode: bool = False,
        metrics: BillingMetrics | None = None,
    ) -> None:
        self.storage = storage
        self.event_bus = event_bus
        self.livemode = livemode
        self.metrics = metrics or get_billing_metrics()

    # Builders -------------------------------------------------------------

    def renewal_invoice(
        self,
        subscription: Subscription,
        plan: Plan,
        period_start: datetime,
        period_end: datetime,
        now: datetime,
        promo_code: PromoCode | None = None,
    ) -> Invoice:
        """Open invoice for one full period of ``plan``, less any promo discount."""
        amount = plan.unit_amount * subscription.quantity
        lines = [
            InvoiceLine(
                description=f"{plan.name} x {subscription.quantity} "
                f"({format_minor_units(plan.unit_amount, plan.currency)} each)",
                amount=amount,
                quantity=subscription.quantity,
                period_start=period_start,
                period_end=period_end,
            )
        ]
        discount = discount_amount(promo_code, plan, amount)
        if discount and promo_code is not None:
            lines.append(
                InvoiceLine(
                    description=f"Discount ({promo_code.code})",
                    amount=-discount,
                    period_start=period_start,
                    period_end=period_end,
                )
            )
        return Invoice(
            customer_id=subscription.customer_id,
            subscription_id=subscription.id,
            status=InvoiceStatus.OPEN,
            currency=plan.currency,
            lines=lines,
            total=amount - discount,
            livemode=subscription.livemode,
            created_at=now,
        )

    def proration_invoice(
        self, subscription: Subscription, proration: ProrationResult, now: datetime
    ) -> Invoice:
        """Invoice carrying proration lines; a zero total is settled immediately."""
        total = proration.net_amount
        return Invoice(
            customer_id=subscription.customer_id,
            subscription_id=subscription.id,
            status=InvoiceStatus.OPEN if total > 0 else InvoiceStatus.PAID,
            currency=proration.currency,
            lines=list(proration.lines),
            total=total,
            livemode=subscription.livemode,
            created_at=now,
            paid_at=None if total > 0 else now,
        )

    # Persistence ----------------------------------------------------------

    async def _emit(self, event_type: str, invoice: Invoice) -> None:
        pending = PendingEvents(self.livemode)
        pending.add(event_type, InvoiceEventPayload.from_invoice(invoice))
        await self.storage.after_commit(partial(pending.flush, self.event_bus))

    async def record(self, invoice: Invoice, pending: PendingEvents) -> Invoice:
        """Persist ``invoice`` (inside the caller's transaction) and queue its events."""
        saved = await self.storage.invoices.create(invoice)
        pending.add(BillingEvents.INVOICE_CREATED, InvoiceEventPayload.from_invoice(saved))
        if saved.status == InvoiceStatus.PAID:
            pending.add(BillingEvents.INVOICE_PAID, InvoiceEventPayload.from_invoice(saved))
        self.metrics.record_invoice_created(
            saved.currency, proration=any(line.proration for line in saved.lines)
        )
        logger.info(
            "billing.invoice.created",
            invoice_id=saved.id,
            subscription_id=saved.subscription_id,
            total=saved.total,
            status=saved.status.value,
        )
        return saved

    async def mark_paid(self, invoice_id: str, payment_id: str, now: datetime) -> Invoice | None:
        """Settle an open invoice; already settled invoices are left alone."""
        invoice = await self.storage.invoices.mark_paid(invoice_id, payment_id, now)
        if invoice is not None:
            await self._emit(BillingEvents.INVOICE_PAID, invoice)
        return invoice

    async def void(self, invoice_id: str, now: datetime) -> Invoice:
        invoice = await self.storage.invoices.void(invoice_id, now)
        if invoice is None:
            existing = await self.storage.invoices.get(invoice_id)
            if existing is None:
                raise NotFoundError(
                    f"Invoice {invoice_id} not found", context={"invoice_id": invoice_id}
                )
            return existing
        await self._emit(BillingEvents.INVOICE_VOIDED, invoice)
        logger.info("billing.invoice.voided", invoice_id=invoice_id)
        return invoice

    async def get(self, invoice_id: str) -> Invoice | None:
        return await self.storage.invoices.get(invoice_id)

    async def list_for_subscription(self, subscription_id: str) -> list[Invoice]:
        return await self.storage.invoices.list_for_subscription(subscription_id)

    async def list_for_customer(self, customer_id: str) -> list[Invoice]:
        return await self.storage.invoices.list_for_customer(customer_id)


__all__ = ["InvoiceService"]
