"""Tests for promo code redemption and discounted pricing."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from ledgerline.billing.core.enums import DiscountType, InvoiceStatus, SubscriptionStatus
from ledgerline.billing.core.models import PromoCode
from ledgerline.billing.events import BillingEvents
from ledgerline.billing.exceptions import ValidationError
from tests.conftest import T0

P = datetime(2025, 2, 15, 12, 0, tzinfo=UTC)
MIDPOINT = T0 + (P - T0) / 2

PROMO_CODES = [
    PromoCode(
        id="promo_save20",
        code="SAVE20",
        discount_type=DiscountType.PERCENTAGE,
        discount_value=20,
    ),
    PromoCode(
        id="promo_basic20",
        code="BASIC20",
        discount_type=DiscountType.PERCENTAGE,
        discount_value=20,
        applicable_plan_ids=["basic"],
    ),
    PromoCode(
        id="promo_flat",
        code="FLAT1500",
        discount_type=DiscountType.FIXED_AMOUNT,
        discount_value=1500,
        currency="USD",
    ),
    PromoCode(
        id="promo_once",
        code="ONCE",
        discount_type=DiscountType.PERCENTAGE,
        discount_value=10,
        max_redemptions=1,
    ),
    PromoCode(
        id="promo_spent",
        code="SPENT",
        discount_type=DiscountType.PERCENTAGE,
        discount_value=10,
        max_redemptions=2,
        redemption_count=2,
    ),
    PromoCode(
        id="promo_retired",
        code="RETIRED",
        discount_type=DiscountType.PERCENTAGE,
        discount_value=10,
        active=False,
    ),
    PromoCode(
        id="promo_expired",
        code="EXPIRED",
        discount_type=DiscountType.PERCENTAGE,
        discount_value=10,
        valid_until=T0 - timedelta(days=1),
    ),
    PromoCode(
        id="promo_later",
        code="LATER",
        discount_type=DiscountType.PERCENTAGE,
        discount_value=10,
        valid_from=T0 + timedelta(days=1),
    ),
    PromoCode(
        id="promo_pro_only",
        code="PROONLY",
        discount_type=DiscountType.PERCENTAGE,
        discount_value=10,
        applicable_plan_ids=["pro"],
    ),
    PromoCode(
        id="promo_euro",
        code="EURO100",
        discount_type=DiscountType.FIXED_AMOUNT,
        discount_value=100,
        currency="EUR",
    ),
]


@pytest_asyncio.fixture
async def promo_codes(storage):
    for promo_code in PROMO_CODES:
        await storage.promo_codes.save(promo_code)
    return storage.promo_codes


class TestPromoCodeRedemption:
    """Test promo code checks when a subscription is created."""

    @pytest.mark.asyncio
    async def test_redeem_by_id_counts_redemption(self, engine, promo_codes):
        subscription = await engine.subscriptions.create(
            "cus_1", "basic", promo_code_id="promo_save20", now=T0
        )

        assert subscription.promo_code_id == "promo_save20"
        assert (await promo_codes.get("promo_save20")).redemption_count == 1

    @pytest.mark.asyncio
    async def test_redeem_by_code(self, engine, promo_codes):
        subscription = await engine.subscriptions.create(
            "cus_1", "basic", promo_code_id="SAVE20", now=T0
        )

        assert subscription.promo_code_id == "promo_save20"
        assert (await promo_codes.get_by_code("SAVE20")).redemption_count == 1

    @pytest.mark.asyncio
    async def test_unknown_code(self, engine, provider, promo_codes):
        with pytest.raises(ValidationError) as exc_info:
            await engine.subscriptions.create("cus_1", "basic", promo_code_id="NOPE", now=T0)

        assert exc_info.value.context["field"] == "promo_code_id"
        assert exc_info.value.context["reason"] == "not_found"
        assert await engine.subscriptions.list_for_customer("cus_1") == []
        assert provider.subscriptions.records == {}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("code", "plan_id", "reason"),
        [
            ("RETIRED", "basic", "inactive"),
            ("EXPIRED", "basic", "expired"),
            ("LATER", "basic", "not_yet_valid"),
            ("SPENT", "basic", "exhausted"),
            ("PROONLY", "basic", "plan_not_applicable"),
            ("EURO100", "basic", "currency_mismatch"),
        ],
    )
    async def test_unusable_code_is_rejected(self, engine, promo_codes, code, plan_id, reason):
        with pytest.raises(ValidationError) as exc_info:
            await engine.subscriptions.create("cus_1", plan_id, promo_code_id=code, now=T0)

        assert exc_info.value.context["reason"] == reason
        assert await engine.subscriptions.list_for_customer("cus_1") == []

    @pytest.mark.asyncio
    async def test_code_exhausted_by_earlier_redemption(self, engine, promo_codes):
        await engine.subscriptions.create("cus_1", "basic", promo_code_id="ONCE", now=T0)

        with pytest.raises(ValidationError) as exc_info:
            await engine.subscriptions.create("cus_2", "basic", promo_code_id="ONCE", now=T0)

        assert exc_info.value.context["reason"] == "exhausted"
        assert (await promo_codes.get("promo_once")).redemption_count == 1
        assert await engine.subscriptions.list_for_customer("cus_2") == []

    @pytest.mark.asyncio
    async def test_lost_redemption_race_creates_nothing(
        self, engine, provider, storage, promo_codes, monkeypatch
    ):
        # Another writer took the last redemption after the code was checked
        monkeypatch.setattr(storage.promo_codes, "redeem", AsyncMock(return_value=None))

        with pytest.raises(ValidationError) as exc_info:
            await engine.subscriptions.create("cus_1", "basic", promo_code_id="ONCE", now=T0)

        assert exc_info.value.context["reason"] == "exhausted"
        assert await engine.subscriptions.list_for_customer("cus_1") == []
        assert provider.subscriptions.records == {}

    @pytest.mark.asyncio
    async def test_failed_create_releases_redemption(
        self, engine, provider, promo_codes, recorder, monkeypatch
    ):
        monkeypatch.setattr(
            provider.subscriptions, "create", AsyncMock(side_effect=RuntimeError("provider down"))
        )

        with pytest.raises(RuntimeError):
            await engine.subscriptions.create("cus_1", "basic", promo_code_id="ONCE", now=T0)

        assert (await promo_codes.get("promo_once")).redemption_count == 0
        assert await engine.subscriptions.list_for_customer("cus_1") == []
        assert recorder.types == []

    @pytest.mark.asyncio
    async def test_catalog_updates_keep_redemption_count(self, engine, promo_codes):
        await engine.subscriptions.create("cus_1", "basic", promo_code_id="SAVE20", now=T0)
        promo_code = await promo_codes.get("promo_save20")

        await promo_codes.save(promo_code.model_copy(update={"discount_value": 25}))

        saved = await promo_codes.get("promo_save20")
        assert saved.discount_value == 25
        assert saved.redemption_count == 1


class TestDiscountedRenewal:
    """Test that a redeemed code reduces every period charge."""

    @pytest.mark.asyncio
    async def test_percentage_discount_on_renewal(self, engine, provider, recorder, promo_codes):
        subscription = await engine.subscriptions.create(
            "cus_1", "basic", promo_code_id="SAVE20", now=T0
        )
        recorder.clear()

        renewed = await engine.subscriptions.renew(subscription.id, now=P + timedelta(hours=1))

        assert renewed.status == SubscriptionStatus.ACTIVE
        [payment] = provider.payments.records.values()
        assert payment.amount == 800

        [invoice] = await engine.invoices.list_for_subscription(subscription.id)
        assert invoice.status == InvoiceStatus.PAID
        assert invoice.total == 800
        assert [line.amount for line in invoice.lines] == [1000, -200]
        assert invoice.lines[1].description == "Discount (SAVE20)"
        assert recorder.of_type(BillingEvents.PAYMENT_SUCCEEDED)[0].payload.amount == 800

    @pytest.mark.asyncio
    async def test_fixed_discount_is_capped_at_price(self, engine, provider, promo_codes):
        subscription = await engine.subscriptions.create(
            "cus_1", "basic", promo_code_id="FLAT1500", now=T0
        )

        renewed = await engine.subscriptions.renew(subscription.id, now=P)

        assert renewed.status == SubscriptionStatus.ACTIVE
        assert renewed.current_period_start == P
        assert provider.payments.records == {}
        [invoice] = await engine.invoices.list_for_subscription(subscription.id)
        assert invoice.total == 0
        assert [line.amount for line in invoice.lines] == [1000, -1000]

    @pytest.mark.asyncio
    async def test_failed_renewal_bills_discounted_amount(
        self, engine, provider, recorder, promo_codes
    ):
        subscription = await engine.subscriptions.create(
            "cus_1", "basic", quantity=2, promo_code_id="SAVE20", now=T0
        )
        provider.payments.decline_next()

        failed = await engine.subscriptions.renew(subscription.id, now=P)

        assert failed.status == SubscriptionStatus.PAST_DUE
        [invoice] = await engine.invoices.list_for_subscription(subscription.id)
        assert invoice.status == InvoiceStatus.OPEN
        assert invoice.total == 1600
        assert recorder.of_type(BillingEvents.PAYMENT_FAILED)[0].payload.amount == 1600

    @pytest.mark.asyncio
    async def test_discount_stops_on_inapplicable_plan(self, engine, provider, promo_codes):
        subscription = await engine.subscriptions.create(
            "cus_1", "basic", promo_code_id="BASIC20", now=T0
        )
        subscription = await engine.subscriptions.update(
            subscription.id, subscription.version, plan_id="pro", now=MIDPOINT
        )

        await engine.subscriptions.renew(subscription.id, now=P)

        [payment] = provider.payments.records.values()
        assert payment.amount == 3000

    @pytest.mark.asyncio
    async def test_no_code_charges_full_price(self, engine, provider, promo_codes):
        subscription = await engine.subscriptions.create("cus_1", "basic", now=T0)

        await engine.subscriptions.renew(subscription.id, now=P)

        [payment] = provider.payments.records.values()
        assert payment.amount == 1000


class TestDiscountedProration:
    """Test that plan changes prorate discounted prices."""

    @pytest.mark.asyncio
    async def test_upgrade_prorates_discounted_prices(self, engine, promo_codes):
        subscription = await engine.subscriptions.create(
            "cus_1", "basic", promo_code_id="SAVE20", now=T0
        )

        await engine.subscriptions.update(
            subscription.id, subscription.version, plan_id="pro", now=MIDPOINT
        )

        [invoice] = await engine.invoices.list_for_subscription(subscription.id)
        assert [line.amount for line in invoice.lines] == [-400, 1200]
        assert invoice.total == 800

    @pytest.mark.asyncio
    async def test_upgrade_off_applicable_plan_charges_full_new_price(self, engine, promo_codes):
        subscription = await engine.subscriptions.create(
            "cus_1", "basic", promo_code_id="BASIC20", now=T0
        )

        await engine.subscriptions.update(
            subscription.id, subscription.version, plan_id="pro", now=MIDPOINT
        )

        [invoice] = await engine.invoices.list_for_subscription(subscription.id)
        assert [line.amount for line in invoice.lines] == [-400, 1500]
        assert invoice.total == 1100

    @pytest.mark.asyncio
    async def test_quantity_change_prorates_discounted_prices(self, engine, promo_codes):
        subscription = await engine.subscriptions.create(
            "cus_1", "basic", promo_code_id="SAVE20", now=T0
        )

        await engine.subscriptions.update(
            subscription.id, subscription.version, quantity=3, now=MIDPOINT
        )

        [invoice] = await engine.invoices.list_for_subscription(subscription.id)
        assert invoice.total == 1200 - 400
