"""Tests for the subscription lifecycle service."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from ledgerline.billing.core.enums import (
    AddOnStatus,
    InvoiceStatus,
    ProrationBehavior,
    SubscriptionStatus,
)
from ledgerline.billing.events import BillingEvents
from ledgerline.billing.exceptions import (
    ConflictError,
    DuplicateResourceError,
    OptimisticLockError,
    SubscriptionNotFoundError,
    SubscriptionStateError,
    ValidationError,
)
from tests.conftest import T0

# End of the first monthly period for subscriptions started at T0
P = datetime(2025, 2, 15, 12, 0, tzinfo=UTC)
MIDPOINT = T0 + (P - T0) / 2


class TestCreateSubscription:
    """Test subscription creation."""

    @pytest.mark.asyncio
    async def test_create_without_trial(self, engine, provider, recorder):
        subscription = await engine.subscriptions.create("cus_1", "basic", now=T0)

        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.current_period_start == T0
        assert subscription.current_period_end == P
        assert subscription.trial_end is None
        assert subscription.version

        external_id = subscription.provider_subscription_ids["mock"]
        assert provider.subscriptions.records[external_id].price_id == "basic"
        assert recorder.types == [BillingEvents.SUBSCRIPTION_CREATED]

    @pytest.mark.asyncio
    async def test_create_with_plan_trial(self, engine):
        subscription = await engine.subscriptions.create("cus_1", "pro", now=T0)

        assert subscription.status == SubscriptionStatus.TRIALING
        assert subscription.trial_start == T0
        assert subscription.trial_end == T0 + timedelta(days=14)
        assert subscription.current_period_end == subscription.trial_end

    @pytest.mark.asyncio
    async def test_zero_trial_days_overrides_plan(self, engine):
        subscription = await engine.subscriptions.create("cus_1", "pro", trial_days=0, now=T0)
        assert subscription.status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_require_payment_confirmation(self, engine):
        subscription = await engine.subscriptions.create(
            "cus_1", "basic", require_payment_confirmation=True, now=T0
        )
        assert subscription.status == SubscriptionStatus.INCOMPLETE

    @pytest.mark.asyncio
    @pytest.mark.parametrize("plan_id", ["missing", "legacy"])
    async def test_unknown_or_inactive_plan(self, engine, plan_id):
        with pytest.raises(ValidationError) as exc_info:
            await engine.subscriptions.create("cus_1", plan_id, now=T0)
        assert exc_info.value.context["field"] == "plan_id"

    @pytest.mark.asyncio
    async def test_invalid_input(self, engine):
        with pytest.raises(ValidationError):
            await engine.subscriptions.create("cus_1", "basic", quantity=0, now=T0)
        with pytest.raises(ValidationError):
            await engine.subscriptions.create("", "basic", now=T0)
        with pytest.raises(ValidationError):
            await engine.subscriptions.create("cus_1", "basic", now=datetime(2025, 1, 15))

    @pytest.mark.asyncio
    async def test_lookups(self, engine):
        subscription = await engine.subscriptions.create("cus_1", "basic", now=T0)
        external_id = subscription.provider_subscription_ids["mock"]

        assert (await engine.subscriptions.get(subscription.id)).id == subscription.id
        assert (await engine.subscriptions.get_by_provider_id("mock", external_id)).id == subscription.id
        assert [s.id for s in await engine.subscriptions.list_for_customer("cus_1")] == [subscription.id]

        with pytest.raises(SubscriptionNotFoundError):
            await engine.subscriptions.get("sub_missing")
        with pytest.raises(SubscriptionNotFoundError):
            await engine.subscriptions.get_by_provider_id("mock", "mock_sub_9999")


class TestRenewal:
    """Test charging for the next period."""

    @pytest.mark.asyncio
    async def test_successful_renewal(self, engine, provider, recorder):
        subscription = await engine.subscriptions.create("cus_1", "basic", now=T0)
        recorder.clear()
        provider.payments.create = AsyncMock(wraps=provider.payments.create)

        renewed = await engine.subscriptions.renew(subscription.id, now=P + timedelta(hours=1))

        assert renewed.status == SubscriptionStatus.ACTIVE
        assert renewed.current_period_start == P
        assert renewed.current_period_end == datetime(2025, 3, 15, 12, tzinfo=UTC)
        assert renewed.version != subscription.version

        kwargs = provider.payments.create.await_args.kwargs
        assert kwargs["idempotency_key"] == f"{subscription.id}:{P.isoformat()}:active:0"

        invoices = await engine.invoices.list_for_subscription(subscription.id)
        assert len(invoices) == 1
        assert invoices[0].status == InvoiceStatus.PAID
        assert invoices[0].total == 1000
        assert invoices[0].payment_id is not None

        assert recorder.types == [
            BillingEvents.PAYMENT_SUCCEEDED,
            BillingEvents.INVOICE_CREATED,
            BillingEvents.INVOICE_PAID,
            BillingEvents.SUBSCRIPTION_UPDATED,
        ]

    @pytest.mark.asyncio
    async def test_trial_conversion(self, engine, recorder):
        subscription = await engine.subscriptions.create("cus_1", "pro", now=T0)

        converted = await engine.subscriptions.renew(
            subscription.id, now=subscription.trial_end + timedelta(minutes=5)
        )

        assert converted.status == SubscriptionStatus.ACTIVE
        assert converted.current_period_start == subscription.trial_end
        assert converted.trial_end == subscription.trial_end
        assert BillingEvents.SUBSCRIPTION_TRIAL_ENDED in recorder.types

    @pytest.mark.asyncio
    async def test_declined_payment_enters_dunning(self, engine, provider, recorder):
        subscription = await engine.subscriptions.create("cus_1", "basic", now=T0)
        provider.payments.decline_next()
        now = P + timedelta(hours=1)

        failed = await engine.subscriptions.renew(subscription.id, now=now)

        assert failed.status == SubscriptionStatus.PAST_DUE
        assert failed.retry_count == 0
        assert failed.next_retry_at == now + timedelta(days=1)
        assert failed.grace_period_ends_at == now + timedelta(days=14)
        assert failed.current_period_end == P

        payment_failed = recorder.of_type(BillingEvents.PAYMENT_FAILED)[0]
        assert payment_failed.payload.retry_count == 0
        assert payment_failed.payload.error_message == "Your card was declined."

        invoices = await engine.invoices.list_for_subscription(subscription.id)
        assert [invoice.status for invoice in invoices] == [InvoiceStatus.OPEN]

    @pytest.mark.asyncio
    async def test_provider_error_counts_as_failure(self, engine, provider):
        subscription = await engine.subscriptions.create("cus_1", "basic", now=T0)
        provider.payments.fail_next(category="timeout")

        failed = await engine.subscriptions.renew(subscription.id, now=P)

        assert failed.status == SubscriptionStatus.PAST_DUE

    @pytest.mark.asyncio
    async def test_renew_canceled_is_a_conflict(self, engine, provider):
        subscription = await engine.subscriptions.create("cus_1", "basic", now=T0)
        canceled = await engine.subscriptions.cancel(subscription.id, now=T0 + timedelta(days=1))

        with pytest.raises(ConflictError):
            await engine.subscriptions.renew(subscription.id, now=P)

        after = await engine.subscriptions.get(subscription.id)
        assert after.version == canceled.version
        assert provider.payments.records == {}

    @pytest.mark.asyncio
    async def test_renew_paused_is_rejected(self, engine):
        subscription = await engine.subscriptions.create("cus_1", "basic", now=T0)
        await engine.subscriptions.pause(subscription.id, now=T0 + timedelta(days=1))

        with pytest.raises(SubscriptionStateError):
            await engine.subscriptions.renew(subscription.id, now=P)

    @pytest.mark.asyncio
    async def test_stale_version_charges_nothing(self, engine, provider):
        subscription = await engine.subscriptions.create("cus_1", "basic", now=T0)
        await engine.subscriptions.update(subscription.id, subscription.version, quantity=2, now=T0)

        with pytest.raises(OptimisticLockError):
            await engine.subscriptions.renew(
                subscription.id, expected_version=subscription.version, now=P
            )
        assert provider.payments.records == {}

    @pytest.mark.asyncio
    async def test_free_plan_renews_without_charge(self, engine, provider):
        subscription = await engine.subscriptions.create("cus_1", "free", now=T0)

        renewed = await engine.subscriptions.renew(subscription.id, now=P)

        assert renewed.status == SubscriptionStatus.ACTIVE
        assert provider.payments.records == {}
        invoices = await engine.invoices.list_for_subscription(subscription.id)
        assert invoices[0].total == 0
        assert invoices[0].status == InvoiceStatus.PAID

    @pytest.mark.asyncio
    async def test_incomplete_activates_from_now(self, engine):
        subscription = await engine.subscriptions.create(
            "cus_1", "basic", require_payment_confirmation=True, now=T0
        )
        now = T0 + timedelta(hours=2)

        activated = await engine.subscriptions.renew(subscription.id, now=now)

        assert activated.status == SubscriptionStatus.ACTIVE
        assert activated.current_period_start == now

    @pytest.mark.asyncio
    async def test_long_overdue_restarts_cycle(self, engine):
        subscription = await engine.subscriptions.create("cus_1", "basic", now=T0)
        now = datetime(2025, 6, 1, tzinfo=UTC)

        renewed = await engine.subscriptions.renew(subscription.id, now=now)

        assert renewed.current_period_start == now
        assert renewed.current_period_end == datetime(2025, 7, 1, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_expire_incomplete(self, engine):
        subscription = await engine.subscriptions.create(
            "cus_1", "basic", require_payment_confirmation=True, now=T0
        )

        expired = await engine.subscriptions.expire_incomplete(subscription.id, now=T0 + timedelta(days=1))

        assert expired.status == SubscriptionStatus.INCOMPLETE_EXPIRED
        with pytest.raises(SubscriptionStateError):
            await engine.subscriptions.renew(subscription.id, now=P)


class TestUpdateSubscription:
    """Test plan and quantity changes with proration."""

    @pytest.mark.asyncio
    async def test_upgrade_prorates(self, engine, provider, recorder):
        subscription = await engine.subscriptions.create("cus_1", "basic", now=T0)
        recorder.clear()

        updated = await engine.subscriptions.update(
            subscription.id, subscription.version, plan_id="pro", now=MIDPOINT
        )

        assert updated.plan_id == "pro"
        assert updated.current_period_end == P
        external_id = subscription.provider_subscription_ids["mock"]
        assert provider.subscriptions.records[external_id].price_id == "pro"

        invoices = await engine.invoices.list_for_subscription(subscription.id)
        assert len(invoices) == 1
        invoice = invoices[0]
        assert invoice.status == InvoiceStatus.OPEN
        assert invoice.total == 1000
        assert [line.amount for line in invoice.lines] == [-500, 1500]
        assert BillingEvents.INVOICE_CREATED in recorder.types
        assert BillingEvents.SUBSCRIPTION_UPDATED in recorder.types

    @pytest.mark.asyncio
    async def test_downgrade_settles_credit(self, engine):
        subscription = await engine.subscriptions.create("cus_1", "pro", trial_days=0, now=T0)

        await engine.subscriptions.update(
            subscription.id, subscription.version, plan_id="basic", now=MIDPOINT
        )

        invoice = (await engine.invoices.list_for_subscription(subscription.id))[0]
        assert invoice.total == -1000
        assert invoice.status == InvoiceStatus.PAID

    @pytest.mark.asyncio
    async def test_quantity_change(self, engine):
        subscription = await engine.subscriptions.create("cus_1", "basic", now=T0)

        updated = await engine.subscriptions.update(
            subscription.id, subscription.version, quantity=3, now=MIDPOINT
        )

        assert updated.quantity == 3
        invoice = (await engine.invoices.list_for_subscription(subscription.id))[0]
        assert invoice.total == 1500 - 500

    @pytest.mark.asyncio
    async def test_no_proration(self, engine):
        subscription = await engine.subscriptions.create("cus_1", "basic", now=T0)

        await engine.subscriptions.update(
            subscription.id,
            subscription.version,
            plan_id="pro",
            proration_behavior=ProrationBehavior.NONE,
            now=MIDPOINT,
        )

        assert await engine.invoices.list_for_subscription(subscription.id) == []

    @pytest.mark.asyncio
    async def test_trial_changes_are_free(self, engine):
        subscription = await engine.subscriptions.create("cus_1", "pro", now=T0)

        updated = await engine.subscriptions.update(
            subscription.id, subscription.version, quantity=2, now=T0 + timedelta(days=3)
        )

        assert updated.status == SubscriptionStatus.TRIALING
        assert await engine.invoices.list_for_subscription(subscription.id) == []

    @pytest.mark.asyncio
    async def test_unchanged_is_a_no_op(self, engine):
        subscription = await engine.subscriptions.create("cus_1", "basic", now=T0)

        same = await engine.subscriptions.update(
            subscription.id, subscription.version, plan_id="basic", quantity=1, now=MIDPOINT
        )

        assert same.version == subscription.version

    @pytest.mark.asyncio
    async def test_currency_mismatch(self, engine):
        subscription = await engine.subscriptions.create("cus_1", "basic", now=T0)

        with pytest.raises(ValidationError):
            await engine.subscriptions.update(
                subscription.id, subscription.version, plan_id="basic_eur", now=MIDPOINT
            )

    @pytest.mark.asyncio
    async def test_stale_version(self, engine):
        subscription = await engine.subscriptions.create("cus_1", "basic", now=T0)
        await engine.subscriptions.update(subscription.id, subscription.version, quantity=2, now=T0)

        with pytest.raises(OptimisticLockError):
            await engine.subscriptions.update(
                subscription.id, subscription.version, quantity=3, now=T0
            )
        assert (await engine.subscriptions.get(subscription.id)).quantity == 2

    @pytest.mark.asyncio
    async def test_canceled_cannot_change(self, engine):
        subscription = await engine.subscriptions.create("cus_1", "basic", now=T0)
        canceled = await engine.subscriptions.cancel(subscription.id, now=T0)

        with pytest.raises(SubscriptionStateError):
            await engine.subscriptions.update(subscription.id, canceled.version, quantity=2, now=T0)


class TestCancelPauseResume:
    """Test cancellation, pausing and resuming."""

    @pytest.mark.asyncio
    async def test_cancel_immediately(self, engine, provider, recorder):
        subscription = await engine.subscriptions.create("cus_1", "basic", now=T0)
        now = T0 + timedelta(days=2)

        canceled = await engine.subscriptions.cancel(subscription.id, reason="too_expensive", now=now)

        assert canceled.status == SubscriptionStatus.CANCELED
        assert canceled.canceled_at == now
        assert canceled.cancel_reason == "too_expensive"
        external_id = subscription.provider_subscription_ids["mock"]
        assert provider.subscriptions.records[external_id].status == "canceled"

        event = recorder.of_type(BillingEvents.SUBSCRIPTION_CANCELED)[0]
        assert event.payload.previous_status == SubscriptionStatus.ACTIVE

        with pytest.raises(SubscriptionStateError):
            await engine.subscriptions.cancel(subscription.id, now=now)

    @pytest.mark.asyncio
    async def test_cancel_at_period_end(self, engine):
        subscription = await engine.subscriptions.create("cus_1", "basic", now=T0)

        scheduled = await engine.subscriptions.cancel(
            subscription.id, cancel_at_period_end=True, now=T0 + timedelta(days=1)
        )

        assert scheduled.status == SubscriptionStatus.ACTIVE
        assert scheduled.cancel_at_period_end is True
        assert scheduled.cancel_at == P

        again = await engine.subscriptions.cancel(
            subscription.id, cancel_at_period_end=True, now=T0 + timedelta(days=2)
        )
        assert again.version == scheduled.version

        early = await engine.subscriptions.finalize_scheduled_cancellation(
            subscription.id, now=P - timedelta(days=1)
        )
        assert early.status == SubscriptionStatus.ACTIVE

        final = await engine.subscriptions.finalize_scheduled_cancellation(subscription.id, now=P)
        assert final.status == SubscriptionStatus.CANCELED
        assert final.canceled_at == P

    @pytest.mark.asyncio
    async def test_pause_and_resume_shifts_period(self, engine, recorder):
        subscription = await engine.subscriptions.create("cus_1", "basic", now=T0)

        paused = await engine.subscriptions.pause(subscription.id, now=T0 + timedelta(days=5))
        assert paused.status == SubscriptionStatus.PAUSED
        assert paused.paused_at == T0 + timedelta(days=5)

        resumed = await engine.subscriptions.resume(subscription.id, now=T0 + timedelta(days=8))

        assert resumed.status == SubscriptionStatus.ACTIVE
        assert resumed.paused_at is None
        assert resumed.current_period_start == T0 + timedelta(days=3)
        assert resumed.current_period_end == P + timedelta(days=3)
        assert BillingEvents.SUBSCRIPTION_PAUSED in recorder.types
        assert BillingEvents.SUBSCRIPTION_RESUMED in recorder.types

    @pytest.mark.asyncio
    async def test_invalid_pause_and_resume(self, engine):
        trialing = await engine.subscriptions.create("cus_1", "pro", now=T0)
        active = await engine.subscriptions.create("cus_2", "basic", now=T0)

        with pytest.raises(SubscriptionStateError):
            await engine.subscriptions.pause(trialing.id, now=T0)
        with pytest.raises(SubscriptionStateError):
            await engine.subscriptions.resume(active.id, now=T0)

    @pytest.mark.asyncio
    async def test_pause_with_stale_version(self, engine):
        subscription = await engine.subscriptions.create("cus_1", "basic", now=T0)
        await engine.subscriptions.update(subscription.id, subscription.version, quantity=2, now=T0)

        with pytest.raises(OptimisticLockError):
            await engine.subscriptions.pause(
                subscription.id, expected_version=subscription.version, now=T0
            )

    @pytest.mark.asyncio
    async def test_soft_delete(self, engine):
        subscription = await engine.subscriptions.create("cus_1", "basic", now=T0)

        await engine.subscriptions.delete(subscription.id, now=T0 + timedelta(days=1))

        with pytest.raises(SubscriptionNotFoundError):
            await engine.subscriptions.get(subscription.id)
        deleted = await engine.subscriptions.get(subscription.id, include_deleted=True)
        assert deleted.deleted_at == T0 + timedelta(days=1)
        assert await engine.subscriptions.list_for_customer("cus_1") == []


class TestConcurrentWrites:
    """Internal writers re-read and re-apply after losing a version race."""

    @pytest.mark.asyncio
    async def test_internal_write_retries_on_conflict(self, engine, storage, monkeypatch):
        subscription = await engine.subscriptions.create("cus_1", "basic", now=T0)
        real_update = storage.subscriptions.update
        calls = 0

        async def racing_update(updated, expected_version):
            nonlocal calls
            calls += 1
            if calls == 1:
                # Another writer gets in first
                await storage.subscriptions.claim(updated.id, expected_version)
            return await real_update(updated, expected_version)

        monkeypatch.setattr(storage.subscriptions, "update", racing_update)

        canceled = await engine.subscriptions.cancel(subscription.id, now=T0 + timedelta(days=1))

        assert canceled.status == SubscriptionStatus.CANCELED
        assert calls == 2


class TestAddOns:
    @pytest.mark.asyncio
    async def test_add_addon_prorates(self, engine):
        subscription = await engine.subscriptions.create("cus_1", "basic", now=T0)

        item = await engine.subscriptions.add_addon(
            subscription.id, "extra_seats", quantity=2, now=MIDPOINT
        )

        assert item.status == AddOnStatus.ACTIVE
        assert item.quantity == 2
        invoice = (await engine.invoices.list_for_subscription(subscription.id))[0]
        assert invoice.total == 500
        assert invoice.status == InvoiceStatus.OPEN

    @pytest.mark.asyncio
    async def test_add_addon_during_trial_is_free(self, engine):
        subscription = await engine.subscriptions.create("cus_1", "pro", now=T0)

        await engine.subscriptions.add_addon(subscription.id, "extra_seats", now=T0)

        assert await engine.invoices.list_for_subscription(subscription.id) == []

    @pytest.mark.asyncio
    async def test_remove_addon(self, engine):
        subscription = await engine.subscriptions.create("cus_1", "pro", now=T0)
        item = await engine.subscriptions.add_addon(subscription.id, "extra_seats", now=T0)

        removed = await engine.subscriptions.remove_addon(item.id, now=T0 + timedelta(days=1))

        assert removed.status == AddOnStatus.CANCELED
        assert await engine.subscriptions.list_addons(subscription.id) == []
        assert len(await engine.subscriptions.list_addons(subscription.id, active_only=False)) == 1
        assert await engine.subscriptions.remove_addon(item.id) is None

    @pytest.mark.asyncio
    async def test_add_addon_rejected(self, engine):
        subscription = await engine.subscriptions.create("cus_1", "basic", now=T0)

        with pytest.raises(ValidationError):
            await engine.subscriptions.add_addon(subscription.id, "missing", now=T0)

        await engine.subscriptions.cancel(subscription.id, now=T0)
        with pytest.raises(SubscriptionStateError):
            await engine.subscriptions.add_addon(subscription.id, "extra_seats", now=T0)

    @pytest.mark.asyncio
    async def test_add_addon_twice(self, engine):
        subscription = await engine.subscriptions.create("cus_1", "pro", now=T0)
        item = await engine.subscriptions.add_addon(
            subscription.id, "extra_seats", expires_at=T0 + timedelta(days=2), now=T0
        )

        with pytest.raises(DuplicateResourceError) as exc_info:
            await engine.subscriptions.add_addon(subscription.id, "extra_seats", now=T0)
        assert exc_info.value.error_code == "DUPLICATE_RESOURCE"

        again = await engine.subscriptions.add_addon(
            subscription.id, "extra_seats", now=T0 + timedelta(days=3)
        )
        assert again.id != item.id
