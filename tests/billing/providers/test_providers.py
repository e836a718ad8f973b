"""Tests for the provider registry, the mock adapter and webhook helpers."""

from datetime import UTC, datetime
from unittest.mock import Mock

import pytest

from ledgerline.billing.core.enums import PaymentStatus
from ledgerline.billing.exceptions import BillingConfigurationError, ProviderSyncError, ValidationError
from ledgerline.billing.providers.mock import MockPaymentProvider
from ledgerline.billing.providers.registry import ProviderRegistry, build_registry
from ledgerline.billing.webhooks.handlers import parse_timestamp


class TestProviderRegistry:
    """Test adapter registration and lookup."""

    def test_first_registered_is_default(self):
        registry = ProviderRegistry()
        first = MockPaymentProvider(provider="first")
        registry.register(first)
        registry.register(MockPaymentProvider(provider="second"))

        assert registry.default is first
        assert "second" in registry
        assert set(registry) == {"first", "second"}

    def test_explicit_default(self):
        registry = ProviderRegistry()
        registry.register(MockPaymentProvider(provider="first"))
        second = MockPaymentProvider(provider="second")
        registry.register(second, default=True)

        assert registry.get() is second

    def test_unknown_provider(self):
        registry = ProviderRegistry()

        assert registry.default is None
        with pytest.raises(BillingConfigurationError):
            registry.get()
        with pytest.raises(BillingConfigurationError) as exc_info:
            registry.get("stripe")
        assert "stripe" in exc_info.value.message

    def test_factories_are_lazy(self):
        adapter = MockPaymentProvider()
        factory = Mock(return_value=adapter)
        registry = ProviderRegistry()
        registry.register_factory("mock", factory)

        factory.assert_not_called()
        assert registry.get("mock") is adapter
        assert registry.get("mock") is adapter
        factory.assert_called_once()

    def test_build_registry(self):
        registry = build_registry(mock_webhook_secret="whsec_built")

        adapter = registry.default
        assert adapter.provider == "mock"
        payload = b'{"id": "evt_1"}'
        assert adapter.webhooks.verify_signature(payload, adapter.webhooks.sign(payload))


class TestMockProvider:
    """Test the in-process adapter used in development and tests."""

    @pytest.fixture
    def provider(self):
        return MockPaymentProvider(webhook_secret="whsec_test")

    @pytest.mark.asyncio
    async def test_charges_succeed_by_default(self, provider):
        payment = await provider.payments.create("cus_1", 1000, "usd")

        assert payment.succeeded
        assert payment.currency == "USD"
        assert payment.id.startswith("mock_pay_")

    @pytest.mark.asyncio
    async def test_queued_declines_and_errors(self, provider):
        provider.payments.decline_next(code="insufficient_funds")
        provider.payments.fail_next(category="rate_limit")

        declined = await provider.payments.create("cus_1", 1000, "USD")
        assert declined.status == PaymentStatus.FAILED
        assert declined.failure_code == "insufficient_funds"

        with pytest.raises(ProviderSyncError) as exc_info:
            await provider.payments.create("cus_1", 1000, "USD")
        assert exc_info.value.retryable

        assert (await provider.payments.create("cus_1", 1000, "USD")).succeeded

    @pytest.mark.asyncio
    async def test_idempotency_key_returns_original_charge(self, provider):
        first = await provider.payments.create("cus_1", 1000, "USD", idempotency_key="key_1")
        provider.payments.decline_next()

        again = await provider.payments.create("cus_1", 1000, "USD", idempotency_key="key_1")

        assert again == first
        assert len(provider.payments.records) == 1
        assert not (await provider.payments.create("cus_1", 1000, "USD", idempotency_key="key_2")).succeeded

    @pytest.mark.asyncio
    async def test_negative_charge(self, provider):
        with pytest.raises(ValidationError):
            await provider.payments.create("cus_1", -1, "USD")

    @pytest.mark.asyncio
    async def test_subscription_lifecycle(self, provider):
        created = await provider.subscriptions.create("cus_1", "basic")
        assert created.status == "active"

        await provider.subscriptions.update(created.id, quantity=3)
        scheduled = await provider.subscriptions.cancel(created.id, at_period_end=True)
        assert scheduled.quantity == 3
        assert scheduled.cancel_at_period_end is True
        assert scheduled.status == "active"

        with pytest.raises(ProviderSyncError):
            await provider.subscriptions.retrieve("mock_sub_9999")

    @pytest.mark.asyncio
    async def test_refund(self, provider):
        payment = await provider.payments.create("cus_1", 1000, "USD")

        refunded = await provider.payments.refund(payment.id)

        assert refunded.status == PaymentStatus.REFUNDED

    def test_webhook_signature(self, provider):
        payload, signature = provider.webhooks.build_payload(
            "evt_1", "invoice.payment_failed", {"subscription": "mock_sub_0001"}
        )

        assert provider.webhooks.verify_signature(payload, signature)
        assert not provider.webhooks.verify_signature(payload + b" ", signature)
        assert not MockPaymentProvider(webhook_secret="other").webhooks.verify_signature(payload, signature)

        event = provider.webhooks.construct_event(payload)
        assert event.id == "evt_1"
        assert event.type == "payment.failed"
        assert event.provider_type == "invoice.payment_failed"
        assert event.data == {"subscription": "mock_sub_0001"}

    def test_malformed_payload(self, provider):
        with pytest.raises(ValidationError):
            provider.webhooks.construct_event(b'{"data": {}}')


class TestParseTimestamp:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            (None, None),
            (1739620800, datetime(2025, 2, 15, 12, tzinfo=UTC)),
            ("2025-02-15T12:00:00+00:00", datetime(2025, 2, 15, 12, tzinfo=UTC)),
            ("2025-02-15T12:00:00", datetime(2025, 2, 15, 12, tzinfo=UTC)),
        ],
    )
    def test_accepted_formats(self, value, expected):
        assert parse_timestamp(value) == expected

    def test_invalid(self):
        with pytest.raises(ValidationError):
            parse_timestamp("yesterday")
