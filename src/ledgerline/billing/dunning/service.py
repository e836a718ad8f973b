"""
Dunning and renewal sweeps.

Every query takes ``now`` explicitly so the sweep can be driven by any
external scheduler (and by tests). Before mutating a subscription the sweep
claims it by bumping its version; a worker that loses the claim skips the
subscription, so concurrent sweeps never process one twice.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta

import structlog
from pydantic import BaseModel, Field

from ledgerline.billing.config import BillingConfig, get_billing_config
from ledgerline.billing.core.enums import SubscriptionStatus
from ledgerline.billing.core.models import Subscription
from ledgerline.billing.events import BillingEvents, EventBus, SubscriptionEventPayload
from ledgerline.billing.exceptions import BillingError
from ledgerline.billing.periods import resolve_now
from ledgerline.billing.storage.base import StorageAdapter
from ledgerline.billing.subscriptions.service import SubscriptionService

logger = structlog.get_logger(__name__)


class SweepResult(BaseModel):
    """What one sweep did, by subscription id."""

    now: datetime
    renewed: list[str] = Field(default_factory=list)
    trials_converted: list[str] = Field(default_factory=list)
    payment_failed: list[str] = Field(default_factory=list)
    grace_expired: list[str] = Field(default_factory=list)
    canceled: list[str] = Field(default_factory=list)
    trial_ending_notified: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    errors: dict[str, str] = Field(default_factory=dict)

    @property
    def total(self) -> int:
        return (
            len(self.renewed)
            + len(self.trials_converted)
            + len(self.payment_failed)
            + len(self.grace_expired)
            + len(self.canceled)
        )


class DunningScheduler:
    def __init__(
        self,
        storage: StorageAdapter,
        subscriptions: SubscriptionService,
        event_bus: EventBus,
        config: BillingConfig | None = None,
    ) -> None:
        self.storage = storage
        self.subscriptions = subscriptions
        self.event_bus = event_bus
        self.config = config or get_billing_config()

    @property
    def batch_size(self) -> int:
        return self.config.dunning.sweep_batch_size

    # Queries -------------------------------------------------------------

    async def find_needing_renewal(self, now: datetime) -> list[Subscription]:
        return await self.storage.subscriptions.find_due_for_renewal(
            resolve_now(now), self.batch_size
        )

    async def find_trials_ended(self, now: datetime) -> list[Subscription]:
        return await self.storage.subscriptions.find_trials_ended(resolve_now(now), self.batch_size)

    async def find_needing_retry(self, now: datetime) -> list[Subscription]:
        return await self.storage.subscriptions.find_needing_retry(resolve_now(now), self.batch_size)

    async def find_with_expired_grace_period(self, now: datetime) -> list[Subscription]:
        return await self.storage.subscriptions.find_grace_expired(resolve_now(now), self.batch_size)

    async def find_trials_ending_soon(self, now: datetime) -> list[Subscription]:
        now = resolve_now(now)
        until = now + timedelta(days=self.config.dunning.trial_ending_lookahead_days)
        return await self.storage.subscriptions.find_trials_ending(now, until, self.batch_size)

    async def find_scheduled_for_cancellation(self, now: datetime) -> list[Subscription]:
        return await self.storage.subscriptions.find_scheduled_for_cancellation(
            resolve_now(now), self.batch_size
        )

    # Sweep ---------------------------------------------------------------

    async def _claim(self, subscription: Subscription, result: SweepResult) -> Subscription | None:
        claimed = await self.storage.subscriptions.claim(subscription.id, subscription.version)
        if claimed is None:
            logger.debug("billing.dunning.claim_lost", subscription_id=subscription.id)
            result.skipped.append(subscription.id)
        return claimed

    async def _each(
        self,
        candidates: list[Subscription],
        result: SweepResult,
        action: Callable[[Subscription], Awaitable[None]],
    ) -> None:
        for candidate in candidates:
            claimed = await self._claim(candidate, result)
            if claimed is None:
                continue
            try:
                await action(claimed)
            except BillingError as exc:
                result.errors[candidate.id] = exc.message
                logger.warning(
                    "billing.dunning.subscription_failed",
                    subscription_id=candidate.id,
                    error=exc.message,
                    error_code=exc.error_code,
                )

    async def sweep(self, now: datetime | None = None) -> SweepResult:
        """Run every dunning and renewal query once for ``now``."""
        now = resolve_now(now)
        result = SweepResult(now=now)

        async def cancel(sub: Subscription) -> None:
            await self.subscriptions.finalize_scheduled_cancellation(sub.id, now=now)
            result.canceled.append(sub.id)

        async def expire(sub: Subscription) -> None:
            saved = await self.subscriptions.expire_grace_period(sub.id, now=now)
            if saved.status != SubscriptionStatus.PAST_DUE:
                result.grace_expired.append(sub.id)

        async def renew(sub: Subscription) -> None:
            saved = await self.subscriptions.renew(sub.id, expected_version=sub.version, now=now)
            if saved.status != SubscriptionStatus.ACTIVE:
                result.payment_failed.append(sub.id)
            elif sub.status == SubscriptionStatus.TRIALING:
                result.trials_converted.append(sub.id)
            else:
                result.renewed.append(sub.id)

        await self._each(await self.find_scheduled_for_cancellation(now), result, cancel)
        await self._each(await self.find_with_expired_grace_period(now), result, expire)
        await self._each(await self.find_trials_ended(now), result, renew)
        await self._each(await self.find_needing_renewal(now), result, renew)
        await self._each(await self.find_needing_retry(now), result, renew)

        for subscription in await self.find_trials_ending_soon(now):
            await self.event_bus.publish(
                BillingEvents.SUBSCRIPTION_TRIAL_ENDING,
                SubscriptionEventPayload.from_subscription(subscription),
                subscription.livemode,
            )
            result.trial_ending_notified.append(subscription.id)

        logger.info(
            "billing.dunning.sweep_completed",
            now=now.isoformat(),
            renewed=len(result.renewed),
            trials_converted=len(result.trials_converted),
            payment_failed=len(result.payment_failed),
            grace_expired=len(result.grace_expired),
            canceled=len(result.canceled),
            trial_ending_notified=len(result.trial_ending_notified),
            skipped=len(result.skipped),
            errors=len(result.errors),
        )
        return result


__all__ = ["SweepResult", "DunningScheduler"]
