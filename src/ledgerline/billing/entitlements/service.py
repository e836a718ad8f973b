"""
Entitlement resolution.

A customer's effective entitlements come from three places: the plans of
their live subscriptions, the active add-ons on those subscriptions, and
stored grants (manual or purchased). Boolean features are granted by any
source. Numeric limits start from the plan values; ``set`` grants replace
the base and ``increment`` grants stack on top.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime

import structlog

from ledgerline.billing.config import BillingConfig, get_billing_config
from ledgerline.billing.core.enums import (
    UNLIMITED,
    ConflictPolicy,
    GrantSource,
    LimitAction,
    SubscriptionStatus,
)
from ledgerline.billing.core.models import CustomerEntitlement, CustomerLimit
from ledgerline.billing.exceptions import ValidationError
from ledgerline.billing.periods import resolve_now
from ledgerline.billing.storage.base import StorageAdapter
from ledgerline.billing.usage.service import LimitService

logger = structlog.get_logger(__name__)

LIVE_STATUSES = (SubscriptionStatus.TRIALING, SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE)

# Limit sources that sync_limits may overwrite
_SYNC_OWNED = frozenset({GrantSource.SUBSCRIPTION, GrantSource.USAGE})


@dataclass(frozen=True)
class LimitGrant:
    """One numeric contribution to a limit, tagged with when it was granted."""

    value: int
    granted_at: datetime
    action: LimitAction = LimitAction.SET


@dataclass
class ResolvedEntitlements:
    customer_id: str
    features: set[str] = field(default_factory=set)
    limits: dict[str, int] = field(default_factory=dict)

    def has(self, key: str) -> bool:
        return key in self.features

    def limit(self, key: str) -> int | None:
        """Resolved ceiling, ``UNLIMITED`` for unlimited, ``None`` when nothing grants it."""
        return self.limits.get(key)


def pick(values: Iterable[LimitGrant], policy: ConflictPolicy) -> int:
    """Resolve competing ``set`` values. ``UNLIMITED`` counts as the largest value."""
    grants = list(values)
    if not grants:
        raise ValueError("pick() needs at least one grant")
    if policy == ConflictPolicy.LATEST:
        return max(grants, key=lambda g: g.granted_at).value

    def rank(grant: LimitGrant) -> float:
        return float("inf") if grant.value == UNLIMITED else grant.value

    chosen = max(grants, key=rank) if policy == ConflictPolicy.MAX else min(grants, key=rank)
    return chosen.value


def merge_limits(
    base: dict[str, list[LimitGrant]],
    grants: dict[str, list[LimitGrant]],
    policy: ConflictPolicy = ConflictPolicy.MAX,
) -> dict[str, int]:
    """Combine plan values with set/increment grants, key by key."""
    merged: dict[str, int] = {}
    for key in set(base) | set(grants):
        sets = [g for g in grants.get(key, []) if g.action == LimitAction.SET]
        increments = [g for g in grants.get(key, []) if g.action == LimitAction.INCREMENT]

        if sets:
            value = pick(sets, policy)
        elif base.get(key):
            value = pick(base[key], policy)
        else:
            value = 0

        for grant in increments:
            if value == UNLIMITED:
                break
            if grant.value == UNLIMITED:
                value = UNLIMITED
                break
            value += grant.value
        merged[key] = value
    return merged


class EntitlementService:
    def __init__(
        self,
        storage: StorageAdapter,
        limits: LimitService | None = None,
        config: BillingConfig | None = None,
    ) -> None:
        self.storage = storage
        self.limits = limits or LimitService(storage)
        self.config = config or get_billing_config()

    async def resolve(self, customer_id: str, now: datetime | None = None) -> ResolvedEntitlements:
        now = resolve_now(now)
        resolved = ResolvedEntitlements(customer_id=customer_id)
        base: dict[str, list[LimitGrant]] = defaultdict(list)
        grants: dict[str, list[LimitGrant]] = defaultdict(list)

        subscriptions = await self.storage.subscriptions.list_for_customer(customer_id, LIVE_STATUSES)
        for subscription in subscriptions:
            plan = await self.storage.plans.get(subscription.plan_id)
            if plan is None:
                logger.warning(
                    "billing.entitlements.plan_missing",
                    customer_id=customer_id,
                    subscription_id=subscription.id,
                    plan_id=subscription.plan_id,
                )
                continue
            resolved.features.update(plan.entitlements)
            for key, value in plan.limits.items():
                base[key].append(LimitGrant(value, subscription.created_at))

        if subscriptions:
            items = await self.storage.subscription_addons.list_for_subscriptions(
                [s.id for s in subscriptions], active_only=True
            )
            for item in items:
                if not item.is_active(now):
                    continue
                addon = await self.storage.addons.get(item.addon_id)
                if addon is None:
                    continue
                resolved.features.update(addon.entitlements)
                for addon_limit in addon.limits:
                    value = addon_limit.value
                    if addon_limit.action == LimitAction.INCREMENT and value != UNLIMITED:
                        value *= item.quantity
                    grants[addon_limit.key].append(
                        LimitGrant(value, item.added_at, addon_limit.action)
                    )

        for entitlement in await self.storage.entitlements.list_for_customer(customer_id):
            if not entitlement.is_active(now):
                continue
            if entitlement.value is None:
                resolved.features.add(entitlement.entitlement_key)
            else:
                grants[entitlement.entitlement_key].append(
                    LimitGrant(entitlement.value, entitlement.granted_at, entitlement.action)
                )

        resolved.limits = merge_limits(base, grants, self.config.entitlements.set_conflict_policy)
        return resolved

    async def check(self, customer_id: str, entitlement_key: str, now: datetime | None = None) -> bool:
        resolved = await self.resolve(customer_id, now)
        return resolved.has(entitlement_key)

    async def grant(
        self,
        customer_id: str,
        entitlement_key: str,
        value: int | None = None,
        action: LimitAction = LimitAction.SET,
        expires_at: datetime | None = None,
        source: GrantSource = GrantSource.MANUAL,
        source_id: str | None = None,
        now: datetime | None = None,
    ) -> CustomerEntitlement:
        """Store a grant. With ``value`` it is a numeric limit grant and limits are re-synced."""
        now = resolve_now(now)
        if value is not None and value < 0 and value != UNLIMITED:
            raise ValidationError(
                f"Limit grants must be non-negative or {UNLIMITED} for unlimited", field="value"
            )
        if expires_at is not None and resolve_now(expires_at) <= now:
            raise ValidationError("Grant would expire immediately", field="expires_at")

        entitlement = await self.storage.entitlements.grant(
            CustomerEntitlement(
                customer_id=customer_id,
                entitlement_key=entitlement_key,
                value=value,
                action=LimitAction(action),
                granted_at=now,
                expires_at=expires_at,
                source=GrantSource(source),
                source_id=source_id,
            )
        )
        logger.info(
            "billing.entitlement.granted",
            customer_id=customer_id,
            entitlement_key=entitlement_key,
            value=value,
            source=entitlement.source.value,
        )
        if value is not None:
            await self.sync_limits(customer_id, now)
        return entitlement

    async def revoke(
        self,
        customer_id: str,
        entitlement_key: str,
        source_id: str | None = None,
        now: datetime | None = None,
    ) -> int:
        """Revoke stored grants for ``entitlement_key``; returns how many were revoked."""
        now = resolve_now(now)
        count = await self.storage.entitlements.revoke(customer_id, entitlement_key, now, source_id)
        logger.info(
            "billing.entitlement.revoked",
            customer_id=customer_id,
            entitlement_key=entitlement_key,
            count=count,
        )
        if count:
            await self.sync_limits(customer_id, now)
        return count

    async def sync_limits(
        self, customer_id: str, now: datetime | None = None
    ) -> dict[str, CustomerLimit]:
        """Write resolved numeric limits to the customer's counters.

        Reset schedules and running counters are kept. Counters that were
        written by a previous sync and are no longer granted get revoked.
        Counters opened by recorded usage take the resolved ceiling. Live
        limits from any other source (``LimitService.set`` by hand, for
        example) win over the resolved value and are never touched.
        """
        now = resolve_now(now)
        resolved = await self.resolve(customer_id, now)
        existing = {
            limit.limit_key: limit for limit in await self.limits.list_for_customer(customer_id)
        }

        written: dict[str, CustomerLimit] = {}
        for key, value in resolved.limits.items():
            max_value = None if value == UNLIMITED else value
            current = existing.get(key)
            if current is not None and current.revoked_at is None:
                if current.source not in _SYNC_OWNED or current.max_value == max_value:
                    continue
            written[key] = await self.limits.set(
                customer_id,
                key,
                max_value,
                reset_at=current.reset_at if current else None,
                reset_interval=current.reset_interval if current else None,
                source=GrantSource.SUBSCRIPTION,
                now=now,
            )

        for key, current in existing.items():
            if (
                key not in resolved.limits
                and current.source == GrantSource.SUBSCRIPTION
                and current.revoked_at is None
            ):
                written[key] = await self.limits.revoke(customer_id, key, now)

        if written:
            logger.info(
                "billing.entitlements.limits_synced",
                customer_id=customer_id,
                keys=sorted(written),
            )
        return written


__all__ = [
    "LIVE_STATUSES",
    "LimitGrant",
    "ResolvedEntitlements",
    "pick",
    "merge_limits",
    "EntitlementService",
]
