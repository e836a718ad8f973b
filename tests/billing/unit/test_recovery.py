"""Tests for billing recovery mechanisms."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from ledgerline.billing.exceptions import OptimisticLockError, ValidationError
from ledgerline.billing.recovery import ExponentialBackoff, retry_on_conflict


def _conflict() -> OptimisticLockError:
    return OptimisticLockError("stale", resource_id="sub_1", expected_version="v1")


class TestExponentialBackoff:
    """Test retry delay calculation."""

    def test_exponential_backoff_without_jitter(self):
        """Test exponential backoff calculates correct delays."""
        strategy = ExponentialBackoff(base_delay=60.0, max_delay=3600.0)

        assert strategy.get_delay(0) == 60.0
        assert strategy.get_delay(1) == 120.0
        assert strategy.get_delay(2) == 240.0
        assert strategy.get_delay(10) == 3600.0  # Max delay cap

    def test_exponential_backoff_with_jitter(self):
        strategy = ExponentialBackoff(base_delay=1.0, max_delay=60.0, jitter=True)

        delay = strategy.get_delay(2)  # Base would be 4.0
        assert 2.0 <= delay <= 6.0

    def test_next_attempt_at(self):
        now = datetime(2025, 1, 15, tzinfo=UTC)
        strategy = ExponentialBackoff(base_delay=60.0)
        assert strategy.next_attempt_at(now, 1) == now + timedelta(seconds=120)


class TestRetryOnConflict:
    """Test optimistic-lock retries."""

    @pytest.mark.asyncio
    async def test_successful_first_attempt(self):
        operation = AsyncMock(return_value="saved")

        assert await retry_on_conflict(operation) == "saved"
        operation.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_retries_after_conflict(self):
        operation = AsyncMock(side_effect=[_conflict(), _conflict(), "saved"])

        assert await retry_on_conflict(operation, attempts=3, max_wait=0.01) == "saved"
        assert operation.await_count == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_attempts(self):
        operation = AsyncMock(side_effect=_conflict())

        with pytest.raises(OptimisticLockError):
            await retry_on_conflict(operation, attempts=2, max_wait=0.01)
        assert operation.await_count == 2

    @pytest.mark.asyncio
    async def test_other_errors_are_not_retried(self):
        operation = AsyncMock(side_effect=ValidationError("bad input"))

        with pytest.raises(ValidationError):
            await retry_on_conflict(operation)
        operation.assert_awaited_once()
