"""
Subscription lifecycle service.

Owns every status change of a subscription. Each write goes through the
storage adapter's optimistic version check together with any invoice it
produces, and the resulting events are published only after the
transaction commits.

Callers that pass ``expected_version`` (API handlers) see
``OptimisticLockError`` when they lose a race. Internal callers (the
dunning sweep, webhook handlers) leave it out and the service re-reads and
re-applies the change a few times before giving up.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from functools import partial
from typing import Any

import structlog

from ledgerline.billing.config import BillingConfig, get_billing_config
from ledgerline.billing.core.enums import (
    AddOnStatus,
    GraceExpiryAction,
    InvoiceStatus,
    PaymentStatus,
    ProrationBehavior,
    SubscriptionStatus,
)
from ledgerline.billing.core.models import (
    Invoice,
    Plan,
    PromoCode,
    Subscription,
    SubscriptionAddOn,
)
from ledgerline.billing.discounts import discounted_amount, ensure_redeemable
from ledgerline.billing.events import (
    BillingEvents,
    EventBus,
    EventPayload,
    InvoiceEventPayload,
    PaymentEventPayload,
    PendingEvents,
    SubscriptionEventPayload,
)
from ledgerline.billing.exceptions import (
    BillingConfigurationError,
    ConflictError,
    DuplicateResourceError,
    OptimisticLockError,
    PlanNotFoundError,
    ProviderSyncError,
    SubscriptionNotFoundError,
    SubscriptionStateError,
    ValidationError,
)
from ledgerline.billing.invoicing.service import InvoiceService
from ledgerline.billing.metrics import BillingMetrics, get_billing_metrics
from ledgerline.billing.periods import (
    PeriodBounds,
    period_bounds,
    resolve_now,
    shift_period,
    trial_bounds,
)
from ledgerline.billing.proration import calculate_proration
from ledgerline.billing.providers.base import PaymentProviderAdapter, ProviderPayment
from ledgerline.billing.providers.registry import ProviderRegistry
from ledgerline.billing.recovery import retry_on_conflict
from ledgerline.billing.storage.base import StorageAdapter
from ledgerline.billing.subscriptions.transitions import ensure_transition
from ledgerline.logging import log_audit_event

logger = structlog.get_logger(__name__)

S = SubscriptionStatus

_RENEWABLE = frozenset({S.TRIALING, S.ACTIVE, S.PAST_DUE, S.UNPAID, S.INCOMPLETE})
_DUNNING = frozenset({S.TRIALING, S.ACTIVE, S.PAST_DUE})
_PROVIDER_STATUS_ALIASES = {"cancelled": S.CANCELED.value}


@dataclass
class _Change:
    """New subscription state plus what has to be written and announced with it."""

    subscription: Subscription
    before: list[tuple[str, EventPayload]] = field(default_factory=list)
    invoices: list[Invoice] = field(default_factory=list)
    settle: tuple[str, str] | None = None
    after: list[tuple[str, EventPayload]] = field(default_factory=list)


ChangeBuilder = Callable[[Subscription], Awaitable[_Change | None]]


class SubscriptionService:
    """Subscription state machine backed by a storage adapter."""

    def __init__(
        self,
        storage: StorageAdapter,
        event_bus: EventBus,
        providers: ProviderRegistry | None = None,
        invoices: InvoiceService | None = None,
        config: BillingConfig | None = None,
        metrics: BillingMetrics | None = None,
    ) -> None:
        self.storage = storage
        self.event_bus = event_bus
        self.providers = providers
        self.config = config or get_billing_config()
        self.metrics = metrics or get_billing_metrics()
        self.invoices = invoices or InvoiceService(
            storage, event_bus, livemode=self.config.livemode, metrics=self.metrics
        )

    @property
    def livemode(self) -> bool:
        return self.config.livemode

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, subscription_id: str, include_deleted: bool = False) -> Subscription:
        subscription = await self.storage.subscriptions.get(subscription_id, include_deleted)
        if subscription is None:
            raise SubscriptionNotFoundError(
                f"Subscription {subscription_id} not found", subscription_id=subscription_id
            )
        return subscription

    async def get_by_provider_id(self, provider: str, external_id: str) -> Subscription:
        subscription = await self.storage.subscriptions.get_by_provider_id(provider, external_id)
        if subscription is None:
            raise SubscriptionNotFoundError(
                f"No subscription linked to {provider} subscription {external_id}",
                subscription_id=external_id,
            )
        return subscription

    async def list_for_customer(
        self, customer_id: str, statuses: list[SubscriptionStatus] | None = None
    ) -> list[Subscription]:
        return await self.storage.subscriptions.list_for_customer(customer_id, statuses)

    async def _active_plan(self, plan_id: str) -> Plan:
        plan = await self.storage.plans.get(plan_id)
        if plan is None or not plan.active:
            raise ValidationError(
                f"Plan {plan_id} does not exist or is not active",
                field="plan_id",
                context={"plan_id": plan_id},
            )
        return plan

    async def _plan_for(self, subscription: Subscription) -> Plan:
        # Existing subscriptions keep renewing on a retired plan.
        plan = await self.storage.plans.get(subscription.plan_id)
        if plan is None:
            raise PlanNotFoundError(
                f"Plan {subscription.plan_id} not found", plan_id=subscription.plan_id
            )
        return plan

    async def _redeemable_promo_code(
        self, promo_code_id: str, plan: Plan, now: datetime
    ) -> PromoCode:
        promo_code = await self.storage.promo_codes.get(promo_code_id)
        if promo_code is None:
            promo_code = await self.storage.promo_codes.get_by_code(promo_code_id, self.livemode)
        if promo_code is None or promo_code.livemode != self.livemode:
            raise ValidationError(
                f"Promo code {promo_code_id} not found",
                field="promo_code_id",
                context={"promo_code_id": promo_code_id, "reason": "not_found"},
            )
        ensure_redeemable(promo_code, plan, now)
        return promo_code

    async def _redeem(self, promo_code: PromoCode) -> None:
        # Conditional on the cap, so concurrent redemptions cannot overshoot it
        if await self.storage.promo_codes.redeem(promo_code.id) is None:
            raise ValidationError(
                f"Promo code {promo_code.code} has reached its maximum redemptions",
                field="promo_code_id",
                context={
                    "promo_code_id": promo_code.id,
                    "code": promo_code.code,
                    "reason": "exhausted",
                },
            )

    async def _promo_code_for(self, subscription: Subscription) -> PromoCode | None:
        if subscription.promo_code_id is None:
            return None
        return await self.storage.promo_codes.get(subscription.promo_code_id)

    def _period_amount(self, plan: Plan, quantity: int, promo_code: PromoCode | None) -> int:
        """Charge for one full period of ``plan`` after the promo discount."""
        return discounted_amount(promo_code, plan, plan.unit_amount * quantity)

    # ------------------------------------------------------------------
    # Provider helpers
    # ------------------------------------------------------------------

    def _linked_provider(
        self, subscription: Subscription
    ) -> tuple[PaymentProviderAdapter, str] | None:
        if self.providers is None:
            return None
        for name, external_id in subscription.provider_subscription_ids.items():
            if name in self.providers:
                return self.providers.get(name), external_id
        return None

    def _payment_provider(self, subscription: Subscription) -> PaymentProviderAdapter:
        linked = self._linked_provider(subscription)
        if linked is not None:
            return linked[0]
        provider = self.providers.default if self.providers is not None else None
        if provider is None:
            raise BillingConfigurationError(
                "No payment provider configured",
                config_key="billing.default_provider",
                recovery_hint="Register a provider adapter before renewing paid subscriptions",
            )
        return provider

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    async def _publish(self, pending: PendingEvents) -> None:
        if pending:
            await self.storage.after_commit(partial(pending.flush, self.event_bus))

    async def _emit(self, event_type: str, payload: EventPayload) -> None:
        pending = PendingEvents(self.livemode)
        pending.add(event_type, payload)
        await self._publish(pending)

    async def _commit(self, current: Subscription, change: _Change) -> Subscription:
        pending = PendingEvents(self.livemode)
        for event_type, payload in change.before:
            pending.add(event_type, payload)

        async with self.storage.transaction():
            saved = await self.storage.subscriptions.update(change.subscription, current.version)
            for invoice in change.invoices:
                await self.invoices.record(invoice, pending)
            if change.settle is not None:
                invoice_id, payment_id = change.settle
                settled = await self.storage.invoices.mark_paid(
                    invoice_id, payment_id, saved.updated_at
                )
                if settled is not None:
                    pending.add(BillingEvents.INVOICE_PAID, InvoiceEventPayload.from_invoice(settled))

        for event_type, payload in change.after:
            pending.add(event_type, payload)

        if current.status != saved.status:
            self.metrics.record_transition(current.status.value, saved.status.value)
            logger.info(
                "billing.subscription.transitioned",
                subscription_id=saved.id,
                from_status=current.status.value,
                to_status=saved.status.value,
            )

        await self._publish(pending)
        return saved

    async def _mutate(
        self,
        subscription_id: str,
        build: ChangeBuilder,
        expected_version: str | None = None,
        first: Subscription | None = None,
    ) -> Subscription:
        """Apply ``build`` to the stored subscription and commit the result.

        ``build`` returns ``None`` when there is nothing to write.
        """
        loaded = first

        async def attempt() -> Subscription:
            nonlocal loaded
            current = loaded if loaded is not None else await self.get(subscription_id)
            loaded = None
            if expected_version is not None and current.version != expected_version:
                raise OptimisticLockError(
                    f"Subscription {subscription_id} was modified concurrently",
                    resource_id=subscription_id,
                    expected_version=expected_version,
                )
            change = await build(current)
            if change is None:
                return current
            return await self._commit(current, change)

        if expected_version is not None:
            return await attempt()
        return await retry_on_conflict(attempt)

    def _updated(self, subscription: Subscription, now: datetime, **changes: Any) -> Subscription:
        return subscription.model_copy(update={**changes, "updated_at": now})

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create(
        self,
        customer_id: str,
        plan_id: str,
        quantity: int = 1,
        trial_days: int | None = None,
        promo_code_id: str | None = None,
        require_payment_confirmation: bool = False,
        metadata: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> Subscription:
        """Start a subscription.

        The plan's trial applies unless ``trial_days`` overrides it; zero
        skips the trial. Without a trial the subscription is active right
        away, or ``incomplete`` until the first payment when
        ``require_payment_confirmation`` is set.

        ``promo_code_id`` takes a promo code id or its customer-facing code.
        The code is checked and its redemption counted in the same commit as
        the new subscription; an unusable code raises ``ValidationError``.
        """
        now = resolve_now(now)
        if not customer_id:
            raise ValidationError("customer_id is required", field="customer_id")
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1", field="quantity")

        plan = await self._active_plan(plan_id)
        days = plan.trial_days if trial_days is None else trial_days
        if days < 0:
            raise ValidationError("Trial length must not be negative", field="trial_days")
        promo_code = (
            await self._redeemable_promo_code(promo_code_id, plan, now)
            if promo_code_id is not None
            else None
        )

        trial: PeriodBounds | None = None
        if days > 0:
            trial = trial_bounds(now, days)
            bounds = trial
            status = S.TRIALING
        else:
            bounds = period_bounds(now, plan.interval, plan.interval_count)
            status = S.INCOMPLETE if require_payment_confirmation else S.ACTIVE

        subscription = Subscription(
            customer_id=customer_id,
            plan_id=plan.id,
            quantity=quantity,
            status=status,
            current_period_start=bounds.start,
            current_period_end=bounds.end,
            trial_start=trial.start if trial else None,
            trial_end=trial.end if trial else None,
            promo_code_id=promo_code.id if promo_code else None,
            livemode=self.livemode,
            metadata=metadata or {},
            created_at=now,
            updated_at=now,
        )

        with self.metrics.trace_subscription_operation("create", subscription.id):
            async with self.storage.transaction():
                if promo_code is not None:
                    await self._redeem(promo_code)
                provider = self.providers.default if self.providers is not None else None
                if provider is not None:
                    external = await provider.subscriptions.create(
                        customer_id,
                        price_id=plan.id,
                        quantity=quantity,
                        trial_end=subscription.trial_end,
                    )
                    subscription = subscription.model_copy(
                        update={"provider_subscription_ids": {provider.provider: external.id}}
                    )
                saved = await self.storage.subscriptions.create(subscription)

        self.metrics.record_subscription_created(plan.id, saved.status.value)
        logger.info(
            "billing.subscription.created",
            subscription_id=saved.id,
            customer_id=customer_id,
            plan_id=plan.id,
            status=saved.status.value,
            trial_end=saved.trial_end.isoformat() if saved.trial_end else None,
        )
        log_audit_event(
            "subscription.created",
            "subscription",
            saved.id,
            livemode=self.livemode,
            customer_id=customer_id,
            plan_id=plan.id,
            promo_code_id=saved.promo_code_id,
        )
        await self._emit(
            BillingEvents.SUBSCRIPTION_CREATED, SubscriptionEventPayload.from_subscription(saved)
        )
        return saved

    # ------------------------------------------------------------------
    # Plan and quantity changes
    # ------------------------------------------------------------------

    async def update(
        self,
        subscription_id: str,
        expected_version: str,
        plan_id: str | None = None,
        quantity: int | None = None,
        proration_behavior: ProrationBehavior = ProrationBehavior.CREATE_PRORATIONS,
        now: datetime | None = None,
    ) -> Subscription:
        """Change plan and/or quantity, prorating the rest of the current period."""
        now = resolve_now(now)
        if quantity is not None and quantity < 1:
            raise ValidationError("Quantity must be at least 1", field="quantity")

        current = await self.get(subscription_id)
        if current.status.is_terminal:
            raise SubscriptionStateError(
                f"Cannot update a {current.status.value} subscription",
                current_state=current.status.value,
                requested_state=current.status.value,
                subscription_id=subscription_id,
            )

        old_plan = await self._plan_for(current)
        new_plan = await self._active_plan(plan_id) if plan_id else old_plan
        promo_code = await self._promo_code_for(current)
        new_quantity = quantity or current.quantity
        if new_plan.currency != old_plan.currency:
            raise ValidationError(
                "Cannot switch to a plan in a different currency",
                field="plan_id",
                context={"from": old_plan.currency, "to": new_plan.currency},
            )
        if new_plan.id == current.plan_id and new_quantity == current.quantity:
            return current

        if current.version != expected_version:
            raise OptimisticLockError(
                f"Subscription {subscription_id} was modified concurrently",
                resource_id=subscription_id,
                expected_version=expected_version,
            )

        linked = self._linked_provider(current)
        if linked is not None:
            adapter, external_id = linked
            await adapter.subscriptions.update(
                external_id, price_id=new_plan.id, quantity=new_quantity
            )

        async def build(sub: Subscription) -> _Change:
            updated = self._updated(sub, now, plan_id=new_plan.id, quantity=new_quantity)
            change = _Change(updated)
            change.after.append(
                (
                    BillingEvents.SUBSCRIPTION_UPDATED,
                    SubscriptionEventPayload.from_subscription(updated, sub.status, "plan_changed"),
                )
            )
            # Trials are free, nothing to prorate.
            if sub.status in (S.ACTIVE, S.PAST_DUE):
                proration = calculate_proration(
                    old_amount=self._period_amount(old_plan, sub.quantity, promo_code),
                    new_amount=self._period_amount(new_plan, new_quantity, promo_code),
                    period_start=sub.current_period_start,
                    period_end=sub.current_period_end,
                    change_at=now,
                    behavior=proration_behavior,
                    currency=new_plan.currency,
                    old_description=f"Unused time on {old_plan.name} x {sub.quantity}",
                    new_description=f"Remaining time on {new_plan.name} x {new_quantity}",
                )
                if proration.should_invoice:
                    change.invoices.append(self.invoices.proration_invoice(sub, proration, now))
            return change

        with self.metrics.trace_subscription_operation("update", subscription_id):
            saved = await self._mutate(subscription_id, build, expected_version, first=current)

        logger.info(
            "billing.subscription.updated",
            subscription_id=subscription_id,
            plan_id=saved.plan_id,
            quantity=saved.quantity,
            proration_behavior=ProrationBehavior(proration_behavior).value,
        )
        log_audit_event(
            "subscription.updated",
            "subscription",
            subscription_id,
            livemode=self.livemode,
            from_plan=old_plan.id,
            to_plan=new_plan.id,
            quantity=new_quantity,
        )
        return saved

    # ------------------------------------------------------------------
    # Cancel, pause, resume
    # ------------------------------------------------------------------

    async def cancel(
        self,
        subscription_id: str,
        cancel_at_period_end: bool = False,
        reason: str | None = None,
        expected_version: str | None = None,
        now: datetime | None = None,
    ) -> Subscription:
        """Cancel now, or flag the subscription to end with its current period."""
        now = resolve_now(now)
        current = await self.get(subscription_id)

        async def build(sub: Subscription) -> _Change | None:
            if cancel_at_period_end:
                if sub.status.is_terminal:
                    raise SubscriptionStateError(
                        f"Cannot schedule cancellation of a {sub.status.value} subscription",
                        current_state=sub.status.value,
                        requested_state=S.CANCELED.value,
                        subscription_id=sub.id,
                    )
                if sub.cancel_at_period_end:
                    return None
                updated = self._updated(
                    sub,
                    now,
                    cancel_at_period_end=True,
                    cancel_at=sub.current_period_end,
                    cancel_reason=reason,
                )
                return _Change(
                    updated,
                    after=[
                        (
                            BillingEvents.SUBSCRIPTION_UPDATED,
                            SubscriptionEventPayload.from_subscription(updated, sub.status, reason),
                        )
                    ],
                )

            ensure_transition(sub.status, S.CANCELED, sub.id)
            updated = self._updated(
                sub,
                now,
                status=S.CANCELED,
                canceled_at=now,
                cancel_at=now,
                cancel_reason=reason,
                next_retry_at=None,
                grace_period_ends_at=None,
            )
            return _Change(
                updated,
                after=[
                    (
                        BillingEvents.SUBSCRIPTION_CANCELED,
                        SubscriptionEventPayload.from_subscription(updated, sub.status, reason),
                    )
                ],
            )

        if not current.status.is_terminal:
            linked = self._linked_provider(current)
            if linked is not None:
                adapter, external_id = linked
                await adapter.subscriptions.cancel(external_id, at_period_end=cancel_at_period_end)

        with self.metrics.trace_subscription_operation("cancel", subscription_id):
            saved = await self._mutate(subscription_id, build, expected_version, first=current)

        logger.info(
            "billing.subscription.canceled",
            subscription_id=subscription_id,
            at_period_end=cancel_at_period_end,
            reason=reason,
        )
        log_audit_event(
            "subscription.canceled",
            "subscription",
            subscription_id,
            livemode=self.livemode,
            at_period_end=cancel_at_period_end,
            reason=reason,
        )
        return saved

    async def finalize_scheduled_cancellation(
        self, subscription_id: str, now: datetime | None = None
    ) -> Subscription:
        """End a subscription flagged ``cancel_at_period_end`` whose period is over."""
        now = resolve_now(now)

        async def build(sub: Subscription) -> _Change | None:
            if not sub.cancel_at_period_end or sub.status.is_terminal:
                return None
            if sub.current_period_end > now:
                return None
            ensure_transition(sub.status, S.CANCELED, sub.id)
            updated = self._updated(
                sub,
                now,
                status=S.CANCELED,
                canceled_at=sub.current_period_end,
                cancel_at=sub.current_period_end,
                next_retry_at=None,
                grace_period_ends_at=None,
            )
            return _Change(
                updated,
                after=[
                    (
                        BillingEvents.SUBSCRIPTION_CANCELED,
                        SubscriptionEventPayload.from_subscription(
                            updated, sub.status, sub.cancel_reason or "period_ended"
                        ),
                    )
                ],
            )

        return await self._mutate(subscription_id, build)

    async def pause(
        self,
        subscription_id: str,
        expected_version: str | None = None,
        now: datetime | None = None,
    ) -> Subscription:
        now = resolve_now(now)
        current = await self.get(subscription_id)
        ensure_transition(current.status, S.PAUSED, subscription_id)

        linked = self._linked_provider(current)
        if linked is not None:
            adapter, external_id = linked
            await adapter.subscriptions.pause(external_id)

        async def build(sub: Subscription) -> _Change:
            ensure_transition(sub.status, S.PAUSED, sub.id)
            updated = self._updated(sub, now, status=S.PAUSED, paused_at=now)
            return _Change(
                updated,
                after=[
                    (
                        BillingEvents.SUBSCRIPTION_PAUSED,
                        SubscriptionEventPayload.from_subscription(updated, sub.status),
                    )
                ],
            )

        saved = await self._mutate(subscription_id, build, expected_version, first=current)
        log_audit_event("subscription.paused", "subscription", subscription_id, livemode=self.livemode)
        return saved

    async def resume(
        self,
        subscription_id: str,
        expected_version: str | None = None,
        now: datetime | None = None,
    ) -> Subscription:
        """Reactivate a paused subscription; the period moves out by the paused time."""
        now = resolve_now(now)
        current = await self.get(subscription_id)
        self._ensure_paused(current)

        linked = self._linked_provider(current)
        if linked is not None:
            adapter, external_id = linked
            await adapter.subscriptions.resume(external_id)

        async def build(sub: Subscription) -> _Change:
            self._ensure_paused(sub)
            paused_for = max(now - (sub.paused_at or now), timedelta(0))
            bounds = shift_period(
                PeriodBounds(sub.current_period_start, sub.current_period_end), paused_for
            )
            changes: dict[str, Any] = {
                "status": S.ACTIVE,
                "paused_at": None,
                "current_period_start": bounds.start,
                "current_period_end": bounds.end,
            }
            if sub.cancel_at_period_end:
                changes["cancel_at"] = bounds.end
            updated = self._updated(sub, now, **changes)
            return _Change(
                updated,
                after=[
                    (
                        BillingEvents.SUBSCRIPTION_RESUMED,
                        SubscriptionEventPayload.from_subscription(updated, sub.status),
                    )
                ],
            )

        saved = await self._mutate(subscription_id, build, expected_version, first=current)
        log_audit_event("subscription.resumed", "subscription", subscription_id, livemode=self.livemode)
        return saved

    def _ensure_paused(self, subscription: Subscription) -> None:
        if subscription.status != S.PAUSED:
            raise SubscriptionStateError(
                f"Cannot resume a {subscription.status.value} subscription",
                current_state=subscription.status.value,
                requested_state=S.ACTIVE.value,
                subscription_id=subscription.id,
            )

    async def delete(self, subscription_id: str, now: datetime | None = None) -> Subscription:
        """Soft-delete; the row stays for audit but disappears from every query."""
        now = resolve_now(now)

        async def build(sub: Subscription) -> _Change:
            return _Change(self._updated(sub, now, deleted_at=now))

        saved = await self._mutate(subscription_id, build)
        logger.info("billing.subscription.deleted", subscription_id=subscription_id)
        log_audit_event("subscription.deleted", "subscription", subscription_id, livemode=self.livemode)
        return saved

    # ------------------------------------------------------------------
    # Renewal and dunning
    # ------------------------------------------------------------------

    def _ensure_renewable(self, subscription: Subscription) -> None:
        if subscription.status == S.PAUSED:
            raise SubscriptionStateError(
                "Cannot renew a paused subscription",
                current_state=S.PAUSED.value,
                requested_state=S.ACTIVE.value,
                subscription_id=subscription.id,
            )
        ensure_transition(subscription.status, S.ACTIVE, subscription.id)

    def _next_period(self, subscription: Subscription, plan: Plan, now: datetime) -> PeriodBounds:
        if subscription.status in (S.UNPAID, S.INCOMPLETE):
            anchor = now
        elif subscription.status == S.TRIALING:
            anchor = subscription.trial_end or subscription.current_period_end
        else:
            anchor = subscription.current_period_end
        bounds = period_bounds(anchor, plan.interval, plan.interval_count)
        if bounds.end <= now:
            # Long overdue; restart the cycle today instead of billing stale periods.
            bounds = period_bounds(now, plan.interval, plan.interval_count)
        return bounds

    async def _open_renewal_invoice(self, subscription: Subscription) -> Invoice | None:
        invoices = await self.storage.invoices.list_for_subscription(subscription.id)
        for invoice in reversed(invoices):
            if invoice.status == InvoiceStatus.OPEN and not any(
                line.proration for line in invoice.lines
            ):
                return invoice
        return None

    def _payment_payload(
        self,
        subscription: Subscription,
        amount: int,
        currency: str,
        invoice_id: str | None,
        payment: ProviderPayment | None,
        error_message: str | None = None,
    ) -> PaymentEventPayload:
        return PaymentEventPayload(
            customer_id=subscription.customer_id,
            subscription_id=subscription.id,
            invoice_id=invoice_id,
            payment_id=payment.id if payment else None,
            amount=amount,
            currency=currency,
            error_message=error_message,
            retry_count=subscription.retry_count if error_message else None,
            next_retry_at=subscription.next_retry_at if error_message else None,
        )

    async def _renewal_success(
        self,
        sub: Subscription,
        plan: Plan,
        promo_code: PromoCode | None,
        payment: ProviderPayment | None,
        now: datetime,
    ) -> _Change:
        self._ensure_renewable(sub)
        bounds = self._next_period(sub, plan, now)
        amount = self._period_amount(plan, sub.quantity, promo_code)
        updated = self._updated(
            sub,
            now,
            status=S.ACTIVE,
            current_period_start=bounds.start,
            current_period_end=bounds.end,
            retry_count=0,
            next_retry_at=None,
            grace_period_ends_at=None,
        )
        change = _Change(updated)

        open_invoice = await self._open_renewal_invoice(sub)
        if open_invoice is not None and payment is not None:
            change.settle = (open_invoice.id, payment.id)
            invoice_id = open_invoice.id
        else:
            invoice = self.invoices.renewal_invoice(
                sub, plan, bounds.start, bounds.end, now, promo_code
            )
            invoice = invoice.model_copy(
                update={
                    "status": InvoiceStatus.PAID,
                    "payment_id": payment.id if payment else None,
                    "paid_at": now,
                }
            )
            change.invoices.append(invoice)
            invoice_id = invoice.id

        if payment is not None:
            change.before.append(
                (
                    BillingEvents.PAYMENT_SUCCEEDED,
                    self._payment_payload(updated, amount, plan.currency, invoice_id, payment),
                )
            )
        if sub.status == S.TRIALING:
            change.after.append(
                (
                    BillingEvents.SUBSCRIPTION_TRIAL_ENDED,
                    SubscriptionEventPayload.from_subscription(updated, sub.status),
                )
            )
        change.after.append(
            (
                BillingEvents.SUBSCRIPTION_UPDATED,
                SubscriptionEventPayload.from_subscription(updated, sub.status, "renewed"),
            )
        )
        return change

    async def _renewal_failure(
        self,
        sub: Subscription,
        plan: Plan,
        promo_code: PromoCode | None,
        payment: ProviderPayment | None,
        error_message: str,
        now: datetime,
    ) -> _Change:
        self._ensure_renewable(sub)
        dunning = self.config.dunning
        schedule = dunning.retry_schedule_days

        if sub.status in (S.TRIALING, S.ACTIVE):
            ensure_transition(sub.status, S.PAST_DUE, sub.id)
            updated = self._updated(
                sub,
                now,
                status=S.PAST_DUE,
                retry_count=0,
                next_retry_at=now + timedelta(days=schedule[0]) if schedule else None,
                grace_period_ends_at=now + timedelta(days=dunning.grace_period_days),
            )
        elif sub.status == S.PAST_DUE:
            retry_count = sub.retry_count + 1
            updated = self._updated(
                sub,
                now,
                retry_count=retry_count,
                next_retry_at=(
                    now + timedelta(days=schedule[retry_count])
                    if retry_count < len(schedule)
                    else None
                ),
            )
        else:
            # No retry schedule for incomplete or unpaid; the count still keys the next charge.
            updated = self._updated(sub, now, retry_count=sub.retry_count + 1)

        change = _Change(updated)
        invoice = await self._open_renewal_invoice(sub)
        if invoice is None:
            bounds = self._next_period(sub, plan, now)
            invoice = self.invoices.renewal_invoice(
                sub, plan, bounds.start, bounds.end, now, promo_code
            )
            change.invoices.append(invoice)

        change.before.append(
            (
                BillingEvents.PAYMENT_FAILED,
                self._payment_payload(
                    updated,
                    self._period_amount(plan, sub.quantity, promo_code),
                    plan.currency,
                    invoice.id,
                    payment,
                    error_message,
                ),
            )
        )
        change.after.append(
            (BillingEvents.INVOICE_PAYMENT_FAILED, InvoiceEventPayload.from_invoice(invoice))
        )
        change.after.append(
            (
                BillingEvents.SUBSCRIPTION_UPDATED,
                SubscriptionEventPayload.from_subscription(updated, sub.status, "payment_failed"),
            )
        )
        return change

    async def renew(
        self,
        subscription_id: str,
        expected_version: str | None = None,
        now: datetime | None = None,
    ) -> Subscription:
        """Charge for the next period and advance it, or enter dunning on failure.

        Provider failures never propagate: they count as a failed attempt
        and the subscription moves into (or further along) the retry
        schedule.
        """
        now = resolve_now(now)
        current = await self.get(subscription_id)
        if expected_version is not None and current.version != expected_version:
            raise OptimisticLockError(
                f"Subscription {subscription_id} was modified concurrently",
                resource_id=subscription_id,
                expected_version=expected_version,
            )
        self._ensure_renewable(current)
        plan = await self._plan_for(current)
        promo_code = await self._promo_code_for(current)
        amount = self._period_amount(plan, current.quantity, promo_code)

        payment: ProviderPayment | None = None
        error_message: str | None = None
        provider_name: str | None = None
        with self.metrics.trace_subscription_operation("renew", subscription_id):
            if amount > 0:
                provider = self._payment_provider(current)
                provider_name = provider.provider
                try:
                    payment = await provider.payments.create(
                        current.customer_id,
                        amount,
                        plan.currency,
                        description=f"{plan.name} renewal",
                        idempotency_key=(
                            f"{current.id}:{current.current_period_end.isoformat()}"
                            f":{current.status.value}:{current.retry_count}"
                        ),
                    )
                except ProviderSyncError as exc:
                    error_message = exc.message
                    logger.warning(
                        "billing.subscription.renewal_provider_error",
                        subscription_id=subscription_id,
                        provider=exc.provider,
                        category=exc.category,
                        error=exc.message,
                    )
                else:
                    if not payment.succeeded:
                        error_message = payment.failure_message or payment.failure_code or "declined"

            if provider_name is not None:
                self.metrics.record_payment(
                    provider_name,
                    PaymentStatus.SUCCEEDED if error_message is None else PaymentStatus.FAILED,
                    amount,
                    plan.currency,
                )

            async def build(sub: Subscription) -> _Change:
                if (sub.status, sub.current_period_end, sub.retry_count) != (
                    current.status,
                    current.current_period_end,
                    current.retry_count,
                ):
                    raise ConflictError(
                        f"Subscription {subscription_id} was renewed by another writer",
                        context={"subscription_id": subscription_id},
                    )
                if error_message is None:
                    return await self._renewal_success(sub, plan, promo_code, payment, now)
                return await self._renewal_failure(
                    sub, plan, promo_code, payment, error_message, now
                )

            # The charge is not repeated when the write loses a race.
            saved = await self._mutate(subscription_id, build, first=current)

        self.metrics.record_renewal(plan.id, succeeded=error_message is None)
        logger.info(
            "billing.subscription.renewed" if error_message is None else "billing.subscription.renewal_failed",
            subscription_id=subscription_id,
            status=saved.status.value,
            period_end=saved.current_period_end.isoformat(),
            retry_count=saved.retry_count,
            error=error_message,
        )
        return saved

    async def expire_grace_period(
        self,
        subscription_id: str,
        action: GraceExpiryAction | None = None,
        now: datetime | None = None,
    ) -> Subscription:
        """Move a past-due subscription whose grace period ran out to unpaid or canceled."""
        now = resolve_now(now)
        action = GraceExpiryAction(action or self.config.dunning.grace_expiry_action)

        async def build(sub: Subscription) -> _Change | None:
            if sub.status != S.PAST_DUE:
                return None
            if sub.grace_period_ends_at is None or sub.grace_period_ends_at >= now:
                return None
            if action == GraceExpiryAction.CANCELED:
                ensure_transition(sub.status, S.CANCELED, sub.id)
                updated = self._updated(
                    sub,
                    now,
                    status=S.CANCELED,
                    canceled_at=now,
                    cancel_at=now,
                    cancel_reason="payment_failed",
                    next_retry_at=None,
                )
                event_type = BillingEvents.SUBSCRIPTION_CANCELED
            else:
                ensure_transition(sub.status, S.UNPAID, sub.id)
                updated = self._updated(sub, now, status=S.UNPAID, next_retry_at=None)
                event_type = BillingEvents.SUBSCRIPTION_UPDATED
            return _Change(
                updated,
                after=[
                    (
                        event_type,
                        SubscriptionEventPayload.from_subscription(
                            updated, sub.status, "grace_period_expired"
                        ),
                    )
                ],
            )

        saved = await self._mutate(subscription_id, build)
        logger.info(
            "billing.subscription.grace_expired",
            subscription_id=subscription_id,
            status=saved.status.value,
        )
        return saved

    async def expire_incomplete(
        self, subscription_id: str, now: datetime | None = None
    ) -> Subscription:
        """Give up on a subscription whose first payment never arrived."""
        now = resolve_now(now)

        async def build(sub: Subscription) -> _Change:
            ensure_transition(sub.status, S.INCOMPLETE_EXPIRED, sub.id)
            updated = self._updated(sub, now, status=S.INCOMPLETE_EXPIRED)
            return _Change(
                updated,
                after=[
                    (
                        BillingEvents.SUBSCRIPTION_UPDATED,
                        SubscriptionEventPayload.from_subscription(updated, sub.status, "expired"),
                    )
                ],
            )

        return await self._mutate(subscription_id, build)

    # ------------------------------------------------------------------
    # Add-ons
    # ------------------------------------------------------------------

    async def add_addon(
        self,
        subscription_id: str,
        addon_id: str,
        quantity: int = 1,
        expires_at: datetime | None = None,
        proration_behavior: ProrationBehavior = ProrationBehavior.CREATE_PRORATIONS,
        now: datetime | None = None,
    ) -> SubscriptionAddOn:
        """Attach an add-on and charge the prorated rest of the current period."""
        now = resolve_now(now)
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1", field="quantity")

        subscription = await self.get(subscription_id)
        if subscription.status not in _DUNNING:
            raise SubscriptionStateError(
                f"Cannot add an add-on to a {subscription.status.value} subscription",
                current_state=subscription.status.value,
                requested_state=subscription.status.value,
                subscription_id=subscription_id,
            )
        addon = await self.storage.addons.get(addon_id)
        if addon is None or not addon.active:
            raise ValidationError(
                f"Add-on {addon_id} does not exist or is not active", field="addon_id"
            )
        attached = await self.storage.subscription_addons.list_for_subscriptions([subscription.id])
        if any(a.addon_id == addon.id and (a.expires_at is None or a.expires_at > now) for a in attached):
            raise DuplicateResourceError(
                f"Add-on {addon.id} is already attached to {subscription.id}; change its quantity instead",
                resource_type="subscription_addon",
                key=f"{subscription.id}:{addon.id}",
            )

        item = SubscriptionAddOn(
            subscription_id=subscription.id,
            addon_id=addon.id,
            quantity=quantity,
            added_at=now,
            expires_at=expires_at,
        )
        pending = PendingEvents(self.livemode)
        async with self.storage.transaction():
            item = await self.storage.subscription_addons.create(item)
            if subscription.status != S.TRIALING:
                proration = calculate_proration(
                    old_amount=0,
                    new_amount=addon.unit_amount * quantity,
                    period_start=subscription.current_period_start,
                    period_end=subscription.current_period_end,
                    change_at=now,
                    behavior=proration_behavior,
                    currency=addon.currency,
                    new_description=f"{addon.name} x {quantity} (remaining period)",
                )
                if proration.should_invoice:
                    await self.invoices.record(
                        self.invoices.proration_invoice(subscription, proration, now), pending
                    )
        await self._publish(pending)

        logger.info(
            "billing.subscription.addon_added",
            subscription_id=subscription_id,
            addon_id=addon_id,
            quantity=quantity,
        )
        log_audit_event(
            "subscription.addon_added",
            "subscription",
            subscription_id,
            livemode=self.livemode,
            addon_id=addon_id,
            quantity=quantity,
        )
        return item

    async def remove_addon(
        self, subscription_addon_id: str, now: datetime | None = None
    ) -> SubscriptionAddOn | None:
        now = resolve_now(now)
        item = await self.storage.subscription_addons.cancel(subscription_addon_id, now)
        if item is not None and item.status == AddOnStatus.CANCELED:
            logger.info(
                "billing.subscription.addon_removed",
                subscription_id=item.subscription_id,
                addon_id=item.addon_id,
            )
        return item

    async def list_addons(
        self, subscription_id: str, active_only: bool = True
    ) -> list[SubscriptionAddOn]:
        return await self.storage.subscription_addons.list_for_subscriptions(
            [subscription_id], active_only
        )

    # ------------------------------------------------------------------
    # Provider driven changes (webhooks)
    # ------------------------------------------------------------------

    async def apply_provider_state(
        self,
        provider: str,
        external_id: str,
        status: str | None = None,
        current_period_start: datetime | None = None,
        current_period_end: datetime | None = None,
        cancel_at_period_end: bool | None = None,
        now: datetime | None = None,
    ) -> Subscription:
        """Mirror a provider's view of a subscription.

        Fields the provider did not send stay as they are; an unchanged
        state is a no-op and emits nothing.
        """
        now = resolve_now(now)
        linked = await self.get_by_provider_id(provider, external_id)

        target: SubscriptionStatus | None = None
        if status is not None:
            raw = _PROVIDER_STATUS_ALIASES.get(status, status)
            try:
                target = SubscriptionStatus(raw)
            except ValueError:
                raise ValidationError(
                    f"Unknown subscription status from {provider}: {status!r}", field="status"
                ) from None

        async def build(sub: Subscription) -> _Change | None:
            changes: dict[str, Any] = {}
            if target is not None and target != sub.status:
                ensure_transition(sub.status, target, sub.id)
                changes["status"] = target
                if target == S.CANCELED:
                    changes.update(canceled_at=now, next_retry_at=None, grace_period_ends_at=None)
                elif target == S.ACTIVE:
                    changes.update(
                        retry_count=0, next_retry_at=None, grace_period_ends_at=None, paused_at=None
                    )
                elif target == S.PAUSED:
                    changes["paused_at"] = now
            if current_period_start is not None and current_period_start != sub.current_period_start:
                changes["current_period_start"] = current_period_start
            if current_period_end is not None and current_period_end != sub.current_period_end:
                changes["current_period_end"] = current_period_end
            if cancel_at_period_end is not None and cancel_at_period_end != sub.cancel_at_period_end:
                changes["cancel_at_period_end"] = cancel_at_period_end
                changes["cancel_at"] = (
                    (current_period_end or sub.current_period_end) if cancel_at_period_end else None
                )
            if not changes:
                return None

            start = changes.get("current_period_start", sub.current_period_start)
            end = changes.get("current_period_end", sub.current_period_end)
            if end <= start:
                raise ValidationError(
                    "Provider sent a period that ends before it starts",
                    context={"subscription_id": sub.id},
                )
            updated = self._updated(sub, now, **changes)
            event_type = (
                BillingEvents.SUBSCRIPTION_CANCELED
                if updated.status == S.CANCELED and sub.status != S.CANCELED
                else BillingEvents.SUBSCRIPTION_UPDATED
            )
            return _Change(
                updated,
                after=[
                    (
                        event_type,
                        SubscriptionEventPayload.from_subscription(updated, sub.status, "provider_sync"),
                    )
                ],
            )

        return await self._mutate(linked.id, build, first=linked)

    async def record_external_payment(
        self,
        provider: str,
        external_id: str,
        payment: ProviderPayment,
        now: datetime | None = None,
    ) -> Subscription:
        """Apply a payment outcome reported by the provider instead of by ``renew``."""
        now = resolve_now(now)
        linked = await self.get_by_provider_id(provider, external_id)
        plan = await self._plan_for(linked)
        promo_code = await self._promo_code_for(linked)

        if payment.succeeded:

            async def build(sub: Subscription) -> _Change | None:
                if sub.status in (S.PAST_DUE, S.UNPAID, S.INCOMPLETE):
                    return await self._renewal_success(sub, plan, promo_code, payment, now)
                await self._emit(
                    BillingEvents.PAYMENT_SUCCEEDED,
                    self._payment_payload(sub, payment.amount, payment.currency, None, payment),
                )
                return None

        else:
            message = payment.failure_message or payment.failure_code or "declined"

            async def build(sub: Subscription) -> _Change | None:
                if sub.status in _DUNNING:
                    return await self._renewal_failure(sub, plan, promo_code, payment, message, now)
                await self._emit(
                    BillingEvents.PAYMENT_FAILED,
                    self._payment_payload(
                        sub, payment.amount, payment.currency, None, payment, message
                    ),
                )
                return None

        self.metrics.record_payment(provider, payment.status, payment.amount, payment.currency)
        return await self._mutate(linked.id, build, first=linked)


__all__ = ["SubscriptionService"]
