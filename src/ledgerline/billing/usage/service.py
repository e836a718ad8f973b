"""
Usage and limit tracking.

Counters live in ``CustomerLimit`` rows. Increments are single conditional
UPDATE statements in the storage adapter, so concurrent callers never lose
an update; an expired reset window is rolled forward lazily by the first
increment that sees it.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict

from ledgerline.billing.core.enums import UNLIMITED, BillingInterval, GrantSource, LimitAction
from ledgerline.billing.core.models import CustomerLimit, UsageRecord
from ledgerline.billing.exceptions import (
    LimitNotFoundError,
    UsageLimitExceededError,
    ValidationError,
)
from ledgerline.billing.metrics import BillingMetrics, get_billing_metrics
from ledgerline.billing.periods import add_interval, next_boundary_after, resolve_now
from ledgerline.billing.storage.base import StorageAdapter

logger = structlog.get_logger(__name__)


class LimitCheckResult(BaseModel):
    """Read-only view of one counter at a point in time."""

    model_config = ConfigDict(frozen=True)

    limit_key: str
    max_value: int | None = None
    current_value: int = 0
    remaining: int | None = None
    is_exceeded: bool = False
    reset_at: datetime | None = None

    @property
    def unlimited(self) -> bool:
        return self.max_value is None

    @classmethod
    def from_limit(cls, limit: CustomerLimit | None, limit_key: str, now: datetime) -> LimitCheckResult:
        if limit is None or limit.revoked_at is not None:
            return cls(limit_key=limit_key)

        current = limit.current_value
        reset_at = limit.reset_at
        if reset_at is not None and reset_at <= now:
            current = 0
            reset_at = next_boundary_after(reset_at, limit.reset_interval, now)

        if limit.max_value is None:
            return cls(limit_key=limit_key, current_value=current, reset_at=reset_at)
        return cls(
            limit_key=limit_key,
            max_value=limit.max_value,
            current_value=current,
            remaining=max(0, limit.max_value - current),
            is_exceeded=current >= limit.max_value,
            reset_at=reset_at,
        )


def _normalize_max(max_value: int | None) -> int | None:
    if max_value is None or max_value == UNLIMITED:
        return None
    if max_value < 0:
        raise ValidationError(
            f"Limit must be non-negative or {UNLIMITED} for unlimited", field="max_value"
        )
    return max_value


class LimitService:
    """Per-customer usage counters with optional ceilings and reset windows."""

    def __init__(self, storage: StorageAdapter, metrics: BillingMetrics | None = None) -> None:
        self.storage = storage
        self.metrics = metrics or get_billing_metrics()

    async def check(
        self, customer_id: str, limit_key: str, now: datetime | None = None
    ) -> LimitCheckResult:
        now = resolve_now(now)
        limit = await self.storage.limits.get(customer_id, limit_key)
        return LimitCheckResult.from_limit(limit, limit_key, now)

    async def set(
        self,
        customer_id: str,
        limit_key: str,
        max_value: int | None,
        reset_at: datetime | None = None,
        reset_interval: BillingInterval | None = None,
        source: GrantSource = GrantSource.MANUAL,
        source_id: str | None = None,
        now: datetime | None = None,
    ) -> CustomerLimit:
        """Create or replace a ceiling. The running counter is kept; a revoked limit is re-enabled."""
        now = resolve_now(now)
        if reset_at is not None:
            reset_at = resolve_now(reset_at)
        elif reset_interval is not None:
            reset_at = add_interval(now, reset_interval)
        limit = CustomerLimit(
            customer_id=customer_id,
            limit_key=limit_key,
            max_value=_normalize_max(max_value),
            reset_at=reset_at,
            reset_interval=reset_interval,
            source=source,
            source_id=source_id,
            updated_at=now,
        )
        saved = await self.storage.limits.upsert(limit)
        logger.info(
            "billing.limit.set",
            customer_id=customer_id,
            limit_key=limit_key,
            max_value=saved.max_value,
            source=source.value,
        )
        return saved

    async def increment(
        self,
        customer_id: str,
        limit_key: str,
        amount: int = 1,
        now: datetime | None = None,
        enforce: bool = False,
    ) -> LimitCheckResult:
        """Add ``amount`` to the counter.

        With ``enforce`` the increment only happens when it stays within the
        ceiling; otherwise ``UsageLimitExceededError`` is raised and the
        counter is untouched. A missing counter is created as unlimited. A
        revoked limit is left alone and reads as unlimited.
        """
        now = resolve_now(now)
        if amount <= 0:
            raise ValidationError("Increment amount must be positive", field="amount")

        limit, applied = await self.storage.limits.increment(
            customer_id, limit_key, amount, now, enforce
        )
        if limit is None:
            await self.storage.limits.ensure_counter(customer_id, limit_key, now)
            limit, applied = await self.storage.limits.increment(
                customer_id, limit_key, amount, now, enforce
            )

        if not applied:
            if limit is None or limit.revoked_at is not None:
                logger.info(
                    "billing.limit.revoked_usage_ignored",
                    customer_id=customer_id,
                    limit_key=limit_key,
                    amount=amount,
                )
                return LimitCheckResult(limit_key=limit_key)

            result = LimitCheckResult.from_limit(limit, limit_key, now)
            self.metrics.record_usage(limit_key, amount, rejected=True)
            logger.info(
                "billing.limit.exceeded",
                customer_id=customer_id,
                limit_key=limit_key,
                amount=amount,
                current_value=result.current_value,
                max_value=result.max_value,
            )
            raise UsageLimitExceededError(
                f"Usage limit '{limit_key}' exceeded",
                current_usage=result.current_value,
                limit=result.max_value,
                limit_key=limit_key,
            )

        self.metrics.record_usage(limit_key, amount)
        return LimitCheckResult.from_limit(limit, limit_key, now)

    async def record_usage(
        self,
        customer_id: str,
        limit_key: str,
        quantity: int,
        action: LimitAction = LimitAction.INCREMENT,
        now: datetime | None = None,
        metadata: dict[str, Any] | None = None,
        enforce: bool = False,
    ) -> UsageRecord:
        """Append an audit record and apply it to the counter atomically."""
        now = resolve_now(now)
        action = LimitAction(action)
        if action == LimitAction.INCREMENT and quantity <= 0:
            raise ValidationError("Usage quantity must be positive", field="quantity")
        if action == LimitAction.SET and quantity < 0:
            raise ValidationError("Usage value must not be negative", field="quantity")

        record = UsageRecord(
            customer_id=customer_id,
            limit_key=limit_key,
            quantity=quantity,
            action=action,
            recorded_at=now,
            metadata=metadata or {},
        )
        async with self.storage.transaction():
            await self.storage.limits.add_usage(record)
            if action == LimitAction.INCREMENT:
                await self.increment(customer_id, limit_key, quantity, now, enforce)
            else:
                await self.storage.limits.ensure_counter(customer_id, limit_key, now)
                await self.storage.limits.set_current(customer_id, limit_key, quantity, now)

        logger.debug(
            "billing.usage.recorded",
            customer_id=customer_id,
            limit_key=limit_key,
            quantity=quantity,
            action=action.value,
        )
        return record

    async def revoke(
        self, customer_id: str, limit_key: str, now: datetime | None = None
    ) -> CustomerLimit:
        now = resolve_now(now)
        limit = await self.storage.limits.revoke(customer_id, limit_key, now)
        if limit is None:
            raise LimitNotFoundError(
                f"No limit '{limit_key}' for customer {customer_id}",
                customer_id=customer_id,
                limit_key=limit_key,
            )
        logger.info("billing.limit.revoked", customer_id=customer_id, limit_key=limit_key)
        return limit

    async def list_for_customer(self, customer_id: str) -> list[CustomerLimit]:
        return await self.storage.limits.list_for_customer(customer_id)

    async def list_usage(
        self, customer_id: str, limit_key: str | None = None, since: datetime | None = None
    ) -> list[UsageRecord]:
        return await self.storage.limits.list_usage(customer_id, limit_key, since)

    async def reset_all_expired(self, now: datetime | None = None) -> int:
        """Zero every counter whose reset window has passed."""
        now = resolve_now(now)
        count = await self.storage.limits.reset_expired(now)
        if count:
            logger.info("billing.limit.reset_expired", count=count)
        return count


__all__ = ["LimitCheckResult", "LimitService"]
