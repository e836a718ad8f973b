"""Tests for usage counters and limits."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from ledgerline.billing.core.enums import BillingInterval, GrantSource, LimitAction
from ledgerline.billing.exceptions import (
    BillingError,
    LimitNotFoundError,
    UsageLimitExceededError,
    ValidationError,
)
from ledgerline.billing.usage.service import LimitCheckResult, LimitService
from tests.conftest import T0


@pytest.fixture
def limits(storage):
    return LimitService(storage)


class TestIncrement:
    """Test counter increments against a ceiling."""

    @pytest.mark.asyncio
    async def test_enforced_increment_is_all_or_nothing(self, limits):
        await limits.set("cus_1", "api_calls", 5, now=T0)
        await limits.increment("cus_1", "api_calls", 3, now=T0)

        with pytest.raises(UsageLimitExceededError) as exc_info:
            await limits.increment("cus_1", "api_calls", 3, now=T0, enforce=True)

        assert exc_info.value.context["current_usage"] == 3
        assert exc_info.value.context["limit"] == 5
        assert (await limits.check("cus_1", "api_calls", now=T0)).current_value == 3

    @pytest.mark.asyncio
    async def test_reaching_the_ceiling(self, limits):
        await limits.set("cus_1", "api_calls", 5, now=T0)
        await limits.increment("cus_1", "api_calls", 3, now=T0)

        result = await limits.increment("cus_1", "api_calls", 2, now=T0, enforce=True)

        assert result.current_value == 5
        assert result.remaining == 0
        assert result.is_exceeded

    @pytest.mark.asyncio
    async def test_unenforced_increment_may_overshoot(self, limits):
        await limits.set("cus_1", "api_calls", 5, now=T0)

        result = await limits.increment("cus_1", "api_calls", 7, now=T0)

        assert result.current_value == 7
        assert result.remaining == 0
        assert result.is_exceeded

    @pytest.mark.asyncio
    async def test_missing_counter_is_created_unlimited(self, limits):
        result = await limits.increment("cus_1", "exports", 4, now=T0, enforce=True)

        assert result.unlimited
        assert result.current_value == 4
        stored = await limits.list_for_customer("cus_1")
        assert [(limit.limit_key, limit.max_value) for limit in stored] == [("exports", None)]

    @pytest.mark.asyncio
    async def test_unlimited_sentinel(self, limits):
        limit = await limits.set("cus_1", "storage_gb", -1, now=T0)
        assert limit.max_value is None

        result = await limits.increment("cus_1", "storage_gb", 10_000, now=T0, enforce=True)
        assert not result.is_exceeded
        assert result.remaining is None

    @pytest.mark.asyncio
    async def test_invalid_arguments(self, limits):
        with pytest.raises(ValidationError):
            await limits.set("cus_1", "seats", -5, now=T0)
        with pytest.raises(ValidationError):
            await limits.increment("cus_1", "seats", 0, now=T0)
        with pytest.raises(ValidationError):
            await limits.increment("cus_1", "seats", -1, now=T0)

    @pytest.mark.asyncio
    async def test_concurrent_increments_are_not_lost(self, limits):
        await limits.set("cus_1", "api_calls", None, now=T0)

        await asyncio.gather(*(limits.increment("cus_1", "api_calls", now=T0) for _ in range(20)))

        assert (await limits.check("cus_1", "api_calls", now=T0)).current_value == 20

    @pytest.mark.asyncio
    async def test_set_keeps_the_running_counter(self, limits):
        await limits.set("cus_1", "seats", 3, now=T0)
        await limits.increment("cus_1", "seats", 2, now=T0)

        await limits.set("cus_1", "seats", 10, source=GrantSource.SUBSCRIPTION, now=T0)

        result = await limits.check("cus_1", "seats", now=T0)
        assert result.current_value == 2
        assert result.max_value == 10


class TestRevoke:
    @pytest.mark.asyncio
    async def test_revoked_limit_reads_unlimited_and_stops_counting(self, limits):
        await limits.set("cus_1", "seats", 3, now=T0)
        await limits.increment("cus_1", "seats", 2, now=T0)

        revoked = await limits.revoke("cus_1", "seats", now=T0)
        assert revoked.revoked_at == T0

        result = await limits.increment("cus_1", "seats", 5, now=T0, enforce=True)
        assert result == LimitCheckResult(limit_key="seats")

        stored = (await limits.list_for_customer("cus_1"))[0]
        assert stored.current_value == 2

    @pytest.mark.asyncio
    async def test_set_reenables_a_revoked_limit(self, limits):
        await limits.set("cus_1", "seats", 3, now=T0)
        await limits.revoke("cus_1", "seats", now=T0)

        await limits.set("cus_1", "seats", 4, now=T0)

        assert (await limits.check("cus_1", "seats", now=T0)).max_value == 4

    @pytest.mark.asyncio
    async def test_revoke_missing_limit(self, limits):
        with pytest.raises(LimitNotFoundError) as exc_info:
            await limits.revoke("cus_1", "seats", now=T0)
        assert exc_info.value.context["limit_key"] == "seats"

    @pytest.mark.asyncio
    async def test_write_without_returned_row_raises(self, limits, storage, monkeypatch):
        monkeypatch.setattr(storage.limits, "_fetch_one", AsyncMock(return_value=None))

        with pytest.raises(BillingError) as exc_info:
            await limits.set("cus_1", "seats", 4, now=T0)

        assert exc_info.value.error_code == "STORAGE_WRITE_FAILED"
        assert exc_info.value.context["table"] == "billing_customer_limits"


class TestResetWindows:
    """Counters with a reset interval start again at zero once the window passes."""

    @pytest.mark.asyncio
    async def test_lazy_reset_on_increment(self, limits):
        await limits.set("cus_1", "api_calls", 5, reset_interval=BillingInterval.DAY, now=T0)
        await limits.increment("cus_1", "api_calls", 4, now=T0)
        later = T0 + timedelta(days=1, hours=1)

        view = await limits.check("cus_1", "api_calls", now=later)
        assert view.current_value == 0
        assert view.reset_at == T0 + timedelta(days=2)

        result = await limits.increment("cus_1", "api_calls", 3, now=later, enforce=True)
        assert result.current_value == 3
        assert result.reset_at == T0 + timedelta(days=2)

    @pytest.mark.asyncio
    async def test_reset_skips_missed_windows(self, limits):
        await limits.set("cus_1", "api_calls", 5, reset_interval=BillingInterval.DAY, now=T0)
        await limits.increment("cus_1", "api_calls", 4, now=T0)

        result = await limits.increment(
            "cus_1", "api_calls", 1, now=T0 + timedelta(days=3, hours=2)
        )

        assert result.current_value == 1
        assert result.reset_at == T0 + timedelta(days=4)

    @pytest.mark.asyncio
    async def test_reset_all_expired(self, limits):
        await limits.set("cus_1", "api_calls", 5, reset_interval=BillingInterval.DAY, now=T0)
        await limits.set("cus_2", "api_calls", 5, reset_interval=BillingInterval.WEEK, now=T0)
        await limits.increment("cus_1", "api_calls", 4, now=T0)
        await limits.increment("cus_2", "api_calls", 4, now=T0)

        count = await limits.reset_all_expired(now=T0 + timedelta(days=1, minutes=1))

        assert count == 1
        assert (await limits.list_for_customer("cus_1"))[0].current_value == 0
        assert (await limits.list_for_customer("cus_2"))[0].current_value == 4

    @pytest.mark.asyncio
    async def test_reset_leaves_unscheduled_limits_alone(self, limits):
        await limits.set("cus_1", "seats", 5, now=T0)
        await limits.increment("cus_1", "seats", 4, now=T0)

        count = await limits.reset_all_expired(now=T0 + timedelta(days=400))

        assert count == 0
        assert (await limits.list_for_customer("cus_1"))[0].current_value == 4


class TestRecordUsage:
    @pytest.mark.asyncio
    async def test_increment_records_and_counts(self, limits):
        await limits.set("cus_1", "api_calls", 100, now=T0)

        record = await limits.record_usage(
            "cus_1", "api_calls", 7, now=T0, metadata={"endpoint": "/v1/export"}
        )

        assert record.action == LimitAction.INCREMENT
        assert (await limits.check("cus_1", "api_calls", now=T0)).current_value == 7
        usage = await limits.list_usage("cus_1", "api_calls")
        assert [(u.quantity, u.metadata) for u in usage] == [(7, {"endpoint": "/v1/export"})]

    @pytest.mark.asyncio
    async def test_set_overwrites_counter(self, limits):
        await limits.set("cus_1", "seats", 10, now=T0)
        await limits.record_usage("cus_1", "seats", 4, now=T0)

        await limits.record_usage("cus_1", "seats", 2, action=LimitAction.SET, now=T0)

        assert (await limits.check("cus_1", "seats", now=T0)).current_value == 2

    @pytest.mark.asyncio
    async def test_rejected_usage_leaves_no_record(self, limits):
        await limits.set("cus_1", "seats", 1, now=T0)

        with pytest.raises(UsageLimitExceededError):
            await limits.record_usage("cus_1", "seats", 2, now=T0, enforce=True)

        assert await limits.list_usage("cus_1") == []

    @pytest.mark.asyncio
    async def test_list_usage_since(self, limits):
        await limits.record_usage("cus_1", "api_calls", 1, now=T0)
        await limits.record_usage("cus_1", "api_calls", 2, now=T0 + timedelta(hours=2))

        recent = await limits.list_usage("cus_1", since=T0 + timedelta(hours=1))

        assert [u.quantity for u in recent] == [2]

    @pytest.mark.asyncio
    async def test_invalid_quantities(self, limits):
        with pytest.raises(ValidationError):
            await limits.record_usage("cus_1", "seats", 0, now=T0)
        with pytest.raises(ValidationError):
            await limits.record_usage("cus_1", "seats", -1, action=LimitAction.SET, now=T0)
