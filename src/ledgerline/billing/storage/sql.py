"""
SQLAlchemy storage adapter.

Implements the storage protocols on SQLAlchemy 2.0 Core statements against
the declarative tables. Concurrency-sensitive writes are single conditional
statements with ``RETURNING``:

* subscriptions: ``UPDATE ... WHERE id = :id AND version = :read``
* webhook receipt: ``INSERT ... ON CONFLICT DO NOTHING`` on the idempotency key
* limit counters: ``current_value = current_value + :n`` guarded by reset/ceiling
  predicates, with a compare-and-swap on ``reset_at`` for the lazy reset path

Repository calls made inside ``transaction()`` share one session bound to a
context variable; calls outside it run in their own short transaction.
Callbacks registered with ``after_commit`` inside a transaction run once the
outermost one commits.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import Any, TypeVar

import structlog
from pydantic import BaseModel
from sqlalchemy import Table, and_, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Row
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from ledgerline.billing.core.enums import (
    AddOnStatus,
    GrantSource,
    InvoiceStatus,
    SubscriptionStatus,
    WebhookEventStatus,
)
from ledgerline.billing.core.models import (
    AddOn,
    CustomerEntitlement,
    CustomerLimit,
    Invoice,
    Plan,
    PromoCode,
    Subscription,
    SubscriptionAddOn,
    UsageRecord,
    WebhookEvent,
    new_version,
)
from ledgerline.billing.exceptions import BillingError, OptimisticLockError, WebhookEventNotFoundError
from ledgerline.billing.periods import next_boundary_after
from ledgerline.billing.storage.tables import (
    AddOnTable,
    CustomerEntitlementTable,
    CustomerLimitTable,
    InvoiceTable,
    PlanTable,
    PromoCodeTable,
    ProviderLinkTable,
    SubscriptionAddOnTable,
    SubscriptionTable,
    UsageRecordTable,
    WebhookEventTable,
)
from ledgerline.db import UTCDateTime, create_engine, create_session_factory, init_models

logger = structlog.get_logger(__name__)

M = TypeVar("M", bound=BaseModel)

# Attempts at the lazy-reset compare-and-swap before giving up
_RESET_CAS_ATTEMPTS = 3


# ============================================================================
# Row mapping helpers
# ============================================================================


def _values(model: BaseModel, table: Table, exclude: Iterable[str] = ()) -> dict[Any, Any]:
    """Column-keyed values for ``model``; datetimes stay native, the rest JSON-safe."""
    skip = set(exclude)
    native = model.model_dump()
    jsonable = model.model_dump(mode="json")
    values: dict[Any, Any] = {}
    for column in table.columns:
        if column.name in skip or column.name not in native:
            continue
        if isinstance(column.type, UTCDateTime):
            values[column] = native[column.name]
        else:
            values[column] = jsonable[column.name]
    return values


def _to_model(model_cls: type[M], table: Table, row: Row[Any]) -> M:
    return model_cls.model_validate(dict(zip((c.name for c in table.columns), row, strict=True)))


class _Repository:
    table: Table

    def __init__(self, storage: SQLAlchemyStorage) -> None:
        self.storage = storage

    async def _fetch_one(self, model_cls: type[M], stmt: Any) -> M | None:
        async with self.storage.session() as session:
            row = (await session.execute(stmt)).first()
        return _to_model(model_cls, self.table, row) if row is not None else None

    async def _fetch_all(self, model_cls: type[M], stmt: Any) -> list[M]:
        async with self.storage.session() as session:
            rows = (await session.execute(stmt)).all()
        return [_to_model(model_cls, self.table, row) for row in rows]

    async def _upsert_one(self, model_cls: type[M], stmt: Any) -> M:
        saved = await self._fetch_one(model_cls, stmt)
        if saved is None:
            raise BillingError(
                f"Upsert into {self.table.name} returned no row",
                "STORAGE_WRITE_FAILED",
                status_code=500,
                context={"table": self.table.name},
            )
        return saved


# ============================================================================
# Catalog
# ============================================================================


class SQLPlanRepository(_Repository):
    table = PlanTable.__table__

    async def save(self, plan: Plan) -> Plan:
        values = _values(plan, self.table)
        stmt = (
            self.storage.insert(self.table)
            .values(values)
            .on_conflict_do_update(
                index_elements=[self.table.c.id],
                set_={c: v for c, v in values.items() if c.name not in ("id", "created_at")},
            )
            .returning(*self.table.columns)
        )
        return await self._upsert_one(Plan, stmt)

    async def get(self, plan_id: str) -> Plan | None:
        return await self._fetch_one(Plan, select(self.table).where(self.table.c.id == plan_id))

    async def list(self, active_only: bool = True) -> list[Plan]:
        stmt = select(self.table).order_by(self.table.c.id)
        if active_only:
            stmt = stmt.where(self.table.c.active.is_(True))
        return await self._fetch_all(Plan, stmt)


class SQLAddOnRepository(_Repository):
    table = AddOnTable.__table__

    async def save(self, addon: AddOn) -> AddOn:
        values = _values(addon, self.table)
        stmt = (
            self.storage.insert(self.table)
            .values(values)
            .on_conflict_do_update(
                index_elements=[self.table.c.id],
                set_={c: v for c, v in values.items() if c.name not in ("id", "created_at")},
            )
            .returning(*self.table.columns)
        )
        return await self._upsert_one(AddOn, stmt)

    async def get(self, addon_id: str) -> AddOn | None:
        return await self._fetch_one(AddOn, select(self.table).where(self.table.c.id == addon_id))

    async def list(self, active_only: bool = True) -> list[AddOn]:
        stmt = select(self.table).order_by(self.table.c.id)
        if active_only:
            stmt = stmt.where(self.table.c.active.is_(True))
        return await self._fetch_all(AddOn, stmt)


class SQLPromoCodeRepository(_Repository):
    table = PromoCodeTable.__table__

    async def save(self, promo_code: PromoCode) -> PromoCode:
        values = _values(promo_code, self.table)
        # The redemption counter is only moved by redeem()
        stmt = (
            self.storage.insert(self.table)
            .values(values)
            .on_conflict_do_update(
                index_elements=[self.table.c.id],
                set_={
                    c: v
                    for c, v in values.items()
                    if c.name not in ("id", "created_at", "redemption_count")
                },
            )
            .returning(*self.table.columns)
        )
        return await self._upsert_one(PromoCode, stmt)

    async def get(self, promo_code_id: str) -> PromoCode | None:
        return await self._fetch_one(
            PromoCode, select(self.table).where(self.table.c.id == promo_code_id)
        )

    async def get_by_code(self, code: str, livemode: bool = False) -> PromoCode | None:
        c = self.table.c
        return await self._fetch_one(
            PromoCode, select(self.table).where(c.code == code, c.livemode.is_(livemode))
        )

    async def list(self, active_only: bool = True) -> list[PromoCode]:
        stmt = select(self.table).order_by(self.table.c.code)
        if active_only:
            stmt = stmt.where(self.table.c.active.is_(True))
        return await self._fetch_all(PromoCode, stmt)

    async def redeem(self, promo_code_id: str) -> PromoCode | None:
        c = self.table.c
        stmt = (
            update(self.table)
            .where(
                c.id == promo_code_id,
                or_(c.max_redemptions.is_(None), c.redemption_count < c.max_redemptions),
            )
            .values({c.redemption_count: c.redemption_count + 1})
            .returning(*self.table.columns)
        )
        return await self._fetch_one(PromoCode, stmt)


class SQLSubscriptionAddOnRepository(_Repository):
    table = SubscriptionAddOnTable.__table__

    async def create(self, item: SubscriptionAddOn) -> SubscriptionAddOn:
        stmt = self.storage.insert(self.table).values(_values(item, self.table))
        async with self.storage.session() as session:
            await session.execute(stmt)
        return item

    async def list_for_subscriptions(
        self, subscription_ids: Iterable[str], active_only: bool = True
    ) -> list[SubscriptionAddOn]:
        ids = list(subscription_ids)
        if not ids:
            return []
        stmt = (
            select(self.table)
            .where(self.table.c.subscription_id.in_(ids))
            .order_by(self.table.c.added_at)
        )
        if active_only:
            stmt = stmt.where(self.table.c.status == AddOnStatus.ACTIVE.value)
        return await self._fetch_all(SubscriptionAddOn, stmt)

    async def cancel(self, item_id: str, now: datetime) -> SubscriptionAddOn | None:
        stmt = (
            update(self.table)
            .where(
                self.table.c.id == item_id,
                self.table.c.status == AddOnStatus.ACTIVE.value,
            )
            .values({self.table.c.status: AddOnStatus.CANCELED.value, self.table.c.canceled_at: now})
            .returning(*self.table.columns)
        )
        return await self._fetch_one(SubscriptionAddOn, stmt)


# ============================================================================
# Subscriptions
# ============================================================================


class SQLSubscriptionRepository(_Repository):
    table = SubscriptionTable.__table__

    def _live(self) -> Any:
        return self.table.c.deleted_at.is_(None)

    async def create(self, subscription: Subscription) -> Subscription:
        async with self.storage.session() as session:
            await session.execute(
                self.storage.insert(self.table).values(_values(subscription, self.table))
            )
            for provider, external_id in subscription.provider_subscription_ids.items():
                await self._link(session, subscription.id, provider, external_id)
        return subscription

    async def get(self, subscription_id: str, include_deleted: bool = False) -> Subscription | None:
        stmt = select(self.table).where(self.table.c.id == subscription_id)
        if not include_deleted:
            stmt = stmt.where(self._live())
        return await self._fetch_one(Subscription, stmt)

    async def get_by_provider_id(self, provider: str, external_id: str) -> Subscription | None:
        links = ProviderLinkTable.__table__
        stmt = (
            select(self.table)
            .join(links, links.c.subscription_id == self.table.c.id)
            .where(links.c.provider == provider, links.c.external_id == external_id, self._live())
        )
        return await self._fetch_one(Subscription, stmt)

    async def link_provider(self, subscription_id: str, provider: str, external_id: str) -> None:
        async with self.storage.session() as session:
            await self._link(session, subscription_id, provider, external_id)

    async def _link(
        self, session: AsyncSession, subscription_id: str, provider: str, external_id: str
    ) -> None:
        links = ProviderLinkTable.__table__
        stmt = (
            self.storage.insert(links)
            .values(provider=provider, external_id=external_id, subscription_id=subscription_id)
            .on_conflict_do_update(
                index_elements=[links.c.provider, links.c.external_id],
                set_={links.c.subscription_id: subscription_id},
            )
        )
        await session.execute(stmt)

    async def list_for_customer(
        self, customer_id: str, statuses: Iterable[SubscriptionStatus] | None = None
    ) -> list[Subscription]:
        stmt = (
            select(self.table)
            .where(self.table.c.customer_id == customer_id, self._live())
            .order_by(self.table.c.created_at)
        )
        if statuses is not None:
            stmt = stmt.where(self.table.c.status.in_([s.value for s in statuses]))
        return await self._fetch_all(Subscription, stmt)

    async def update(self, subscription: Subscription, expected_version: str) -> Subscription:
        values = _values(subscription, self.table, exclude=("id", "created_at", "version"))
        values[self.table.c.version] = new_version()
        stmt = (
            update(self.table)
            .where(
                self.table.c.id == subscription.id,
                self.table.c.version == expected_version,
                self._live(),
            )
            .values(values)
            .returning(*self.table.columns)
        )
        async with self.storage.session() as session:
            row = (await session.execute(stmt)).first()
            if row is not None:
                for provider, external_id in subscription.provider_subscription_ids.items():
                    await self._link(session, subscription.id, provider, external_id)
        if row is None:
            logger.info(
                "billing.storage.stale_write",
                subscription_id=subscription.id,
                expected_version=expected_version,
            )
            raise OptimisticLockError(
                f"Subscription {subscription.id} was modified concurrently",
                resource_id=subscription.id,
                expected_version=expected_version,
            )
        return _to_model(Subscription, self.table, row)

    async def claim(self, subscription_id: str, expected_version: str) -> Subscription | None:
        stmt = (
            update(self.table)
            .where(
                self.table.c.id == subscription_id,
                self.table.c.version == expected_version,
                self._live(),
            )
            .values({self.table.c.version: new_version()})
            .returning(*self.table.columns)
        )
        return await self._fetch_one(Subscription, stmt)

    # Sweep queries --------------------------------------------------------

    def _sweep(self, *conditions: Any, order_by: Any, limit: int) -> Any:
        return (
            select(self.table)
            .where(self._live(), *conditions)
            .order_by(order_by)
            .limit(limit)
        )

    async def find_due_for_renewal(self, now: datetime, limit: int) -> list[Subscription]:
        c = self.table.c
        stmt = self._sweep(
            c.status == SubscriptionStatus.ACTIVE.value,
            c.cancel_at_period_end.is_(False),
            c.current_period_end <= now,
            order_by=c.current_period_end,
            limit=limit,
        )
        return await self._fetch_all(Subscription, stmt)

    async def find_trials_ended(self, now: datetime, limit: int) -> list[Subscription]:
        c = self.table.c
        stmt = self._sweep(
            c.status == SubscriptionStatus.TRIALING.value,
            c.cancel_at_period_end.is_(False),
            c.trial_end.is_not(None),
            c.trial_end <= now,
            order_by=c.trial_end,
            limit=limit,
        )
        return await self._fetch_all(Subscription, stmt)

    async def find_needing_retry(self, now: datetime, limit: int) -> list[Subscription]:
        c = self.table.c
        stmt = self._sweep(
            c.status == SubscriptionStatus.PAST_DUE.value,
            c.next_retry_at.is_not(None),
            c.next_retry_at <= now,
            or_(c.grace_period_ends_at.is_(None), c.grace_period_ends_at >= now),
            order_by=c.next_retry_at,
            limit=limit,
        )
        return await self._fetch_all(Subscription, stmt)

    async def find_grace_expired(self, now: datetime, limit: int) -> list[Subscription]:
        c = self.table.c
        stmt = self._sweep(
            c.status == SubscriptionStatus.PAST_DUE.value,
            c.grace_period_ends_at.is_not(None),
            c.grace_period_ends_at < now,
            order_by=c.grace_period_ends_at,
            limit=limit,
        )
        return await self._fetch_all(Subscription, stmt)

    async def find_trials_ending(
        self, now: datetime, until: datetime, limit: int
    ) -> list[Subscription]:
        c = self.table.c
        stmt = self._sweep(
            c.status == SubscriptionStatus.TRIALING.value,
            c.trial_end > now,
            c.trial_end <= until,
            order_by=c.trial_end,
            limit=limit,
        )
        return await self._fetch_all(Subscription, stmt)

    async def find_scheduled_for_cancellation(
        self, now: datetime, limit: int
    ) -> list[Subscription]:
        c = self.table.c
        stmt = self._sweep(
            c.cancel_at_period_end.is_(True),
            c.current_period_end <= now,
            c.status.not_in(
                [SubscriptionStatus.CANCELED.value, SubscriptionStatus.INCOMPLETE_EXPIRED.value]
            ),
            order_by=c.current_period_end,
            limit=limit,
        )
        return await self._fetch_all(Subscription, stmt)


# ============================================================================
# Invoices
# ============================================================================


class SQLInvoiceRepository(_Repository):
    table = InvoiceTable.__table__

    async def create(self, invoice: Invoice) -> Invoice:
        async with self.storage.session() as session:
            await session.execute(self.storage.insert(self.table).values(_values(invoice, self.table)))
        return invoice

    async def get(self, invoice_id: str) -> Invoice | None:
        return await self._fetch_one(Invoice, select(self.table).where(self.table.c.id == invoice_id))

    def _payable(self) -> Any:
        return self.table.c.status.in_([InvoiceStatus.DRAFT.value, InvoiceStatus.OPEN.value])

    async def mark_paid(self, invoice_id: str, payment_id: str, now: datetime) -> Invoice | None:
        c = self.table.c
        stmt = (
            update(self.table)
            .where(c.id == invoice_id, self._payable())
            .values({c.status: InvoiceStatus.PAID.value, c.payment_id: payment_id, c.paid_at: now})
            .returning(*self.table.columns)
        )
        return await self._fetch_one(Invoice, stmt)

    async def void(self, invoice_id: str, now: datetime) -> Invoice | None:
        c = self.table.c
        stmt = (
            update(self.table)
            .where(c.id == invoice_id, self._payable())
            .values({c.status: InvoiceStatus.VOID.value, c.voided_at: now})
            .returning(*self.table.columns)
        )
        return await self._fetch_one(Invoice, stmt)

    async def list_for_subscription(self, subscription_id: str) -> list[Invoice]:
        stmt = (
            select(self.table)
            .where(self.table.c.subscription_id == subscription_id)
            .order_by(self.table.c.created_at)
        )
        return await self._fetch_all(Invoice, stmt)

    async def list_for_customer(self, customer_id: str) -> list[Invoice]:
        stmt = (
            select(self.table)
            .where(self.table.c.customer_id == customer_id)
            .order_by(self.table.c.created_at)
        )
        return await self._fetch_all(Invoice, stmt)


# ============================================================================
# Webhook events
# ============================================================================


class SQLWebhookEventRepository(_Repository):
    table = WebhookEventTable.__table__

    def _claimable(self, now: datetime, lease_cutoff: datetime) -> Any:
        c = self.table.c
        return or_(
            c.status == WebhookEventStatus.PENDING.value,
            and_(
                c.status == WebhookEventStatus.FAILED.value,
                or_(c.next_attempt_at.is_(None), c.next_attempt_at <= now),
            ),
            and_(
                c.status == WebhookEventStatus.PROCESSING.value,
                c.claimed_at < lease_cutoff,
            ),
        )

    async def create_if_absent(self, event: WebhookEvent) -> tuple[WebhookEvent, bool]:
        c = self.table.c
        stmt = (
            self.storage.insert(self.table)
            .values(_values(event, self.table))
            .on_conflict_do_nothing(index_elements=[c.provider, c.provider_event_id])
            .returning(*self.table.columns)
        )
        created = await self._fetch_one(WebhookEvent, stmt)
        if created is not None:
            return created, True

        existing = await self._fetch_one(
            WebhookEvent,
            select(self.table).where(
                c.provider == event.provider, c.provider_event_id == event.provider_event_id
            ),
        )
        if existing is None:
            # Row that blocked the insert was deleted before the read
            raise WebhookEventNotFoundError(
                f"Webhook event {event.provider}/{event.provider_event_id} vanished during receipt",
                event_id=event.id,
            )
        return existing, False

    async def get(self, event_id: str) -> WebhookEvent | None:
        return await self._fetch_one(WebhookEvent, select(self.table).where(self.table.c.id == event_id))

    async def claim(
        self, event_id: str, now: datetime, lease_cutoff: datetime
    ) -> WebhookEvent | None:
        c = self.table.c
        stmt = (
            update(self.table)
            .where(c.id == event_id, self._claimable(now, lease_cutoff))
            .values(
                {
                    c.status: WebhookEventStatus.PROCESSING.value,
                    c.attempts: c.attempts + 1,
                    c.claimed_at: now,
                }
            )
            .returning(*self.table.columns)
        )
        return await self._fetch_one(WebhookEvent, stmt)

    async def _set(self, event_id: str, values: dict[Any, Any]) -> WebhookEvent:
        stmt = (
            update(self.table)
            .where(self.table.c.id == event_id)
            .values(values)
            .returning(*self.table.columns)
        )
        event = await self._fetch_one(WebhookEvent, stmt)
        if event is None:
            raise WebhookEventNotFoundError(f"Webhook event {event_id} not found", event_id=event_id)
        return event

    async def mark_processed(self, event_id: str, now: datetime) -> WebhookEvent:
        c = self.table.c
        return await self._set(
            event_id,
            {
                c.status: WebhookEventStatus.PROCESSED.value,
                c.processed_at: now,
                c.next_attempt_at: None,
                c.claimed_at: None,
                c.error: None,
            },
        )

    async def mark_failed(self, event_id: str, error: str, next_attempt_at: datetime) -> WebhookEvent:
        c = self.table.c
        return await self._set(
            event_id,
            {
                c.status: WebhookEventStatus.FAILED.value,
                c.error: error,
                c.next_attempt_at: next_attempt_at,
                c.claimed_at: None,
            },
        )

    async def mark_dead_letter(self, event_id: str, error: str, now: datetime) -> WebhookEvent:
        c = self.table.c
        return await self._set(
            event_id,
            {
                c.status: WebhookEventStatus.DEADLETTER.value,
                c.error: error,
                c.next_attempt_at: None,
                c.claimed_at: None,
                c.processed_at: now,
            },
        )

    async def list_due(
        self, now: datetime, lease_cutoff: datetime, limit: int
    ) -> list[WebhookEvent]:
        stmt = (
            select(self.table)
            .where(self._claimable(now, lease_cutoff))
            .order_by(self.table.c.created_at)
            .limit(limit)
        )
        return await self._fetch_all(WebhookEvent, stmt)

    async def list_by_status(self, status: WebhookEventStatus, limit: int = 100) -> list[WebhookEvent]:
        stmt = (
            select(self.table)
            .where(self.table.c.status == status.value)
            .order_by(self.table.c.created_at)
            .limit(limit)
        )
        return await self._fetch_all(WebhookEvent, stmt)

    async def requeue(self, event_id: str, now: datetime) -> WebhookEvent | None:
        c = self.table.c
        stmt = (
            update(self.table)
            .where(c.id == event_id, c.status == WebhookEventStatus.DEADLETTER.value)
            .values(
                {
                    c.status: WebhookEventStatus.PENDING.value,
                    c.attempts: 0,
                    c.next_attempt_at: now,
                    c.processed_at: None,
                }
            )
            .returning(*self.table.columns)
        )
        return await self._fetch_one(WebhookEvent, stmt)


# ============================================================================
# Limits and usage
# ============================================================================


class SQLLimitRepository(_Repository):
    table = CustomerLimitTable.__table__

    def _key(self, customer_id: str, limit_key: str) -> Any:
        c = self.table.c
        return and_(c.customer_id == customer_id, c.limit_key == limit_key)

    async def get(self, customer_id: str, limit_key: str) -> CustomerLimit | None:
        return await self._fetch_one(
            CustomerLimit, select(self.table).where(self._key(customer_id, limit_key))
        )

    async def list_for_customer(self, customer_id: str) -> list[CustomerLimit]:
        stmt = (
            select(self.table)
            .where(self.table.c.customer_id == customer_id)
            .order_by(self.table.c.limit_key)
        )
        return await self._fetch_all(CustomerLimit, stmt)

    async def upsert(self, limit: CustomerLimit) -> CustomerLimit:
        c = self.table.c
        values = _values(limit, self.table)
        stmt = (
            self.storage.insert(self.table)
            .values(values)
            .on_conflict_do_update(
                index_elements=[c.customer_id, c.limit_key],
                set_={
                    c.max_value: values[c.max_value],
                    c.reset_at: values[c.reset_at],
                    c.reset_interval: values[c.reset_interval],
                    c.source: values[c.source],
                    c.source_id: values[c.source_id],
                    c.revoked_at: None,
                    c.updated_at: values[c.updated_at],
                },
            )
            .returning(*self.table.columns)
        )
        return await self._upsert_one(CustomerLimit, stmt)

    async def ensure_counter(self, customer_id: str, limit_key: str, now: datetime) -> None:
        c = self.table.c
        stmt = (
            self.storage.insert(self.table)
            .values(
                {
                    c.customer_id: customer_id,
                    c.limit_key: limit_key,
                    c.max_value: None,
                    c.current_value: 0,
                    c.source: GrantSource.USAGE.value,
                    c.updated_at: now,
                }
            )
            .on_conflict_do_nothing(index_elements=[c.customer_id, c.limit_key])
        )
        async with self.storage.session() as session:
            await session.execute(stmt)

    async def increment(
        self, customer_id: str, limit_key: str, amount: int, now: datetime, enforce: bool
    ) -> tuple[CustomerLimit | None, bool]:
        c = self.table.c
        for _ in range(_RESET_CAS_ATTEMPTS):
            conditions = [
                self._key(customer_id, limit_key),
                c.revoked_at.is_(None),
                or_(c.reset_at.is_(None), c.reset_at > now),
            ]
            if enforce:
                conditions.append(or_(c.max_value.is_(None), c.current_value + amount <= c.max_value))
            stmt = (
                update(self.table)
                .where(*conditions)
                .values({c.current_value: c.current_value + amount, c.updated_at: now})
                .returning(*self.table.columns)
            )
            updated = await self._fetch_one(CustomerLimit, stmt)
            if updated is not None:
                return updated, True

            current = await self.get(customer_id, limit_key)
            if current is None or current.revoked_at is not None:
                return current, False
            if current.reset_at is None or current.reset_at > now:
                # Counter is live, so the ceiling rejected the increment
                return current, False
            if enforce and current.max_value is not None and amount > current.max_value:
                return current, False

            # Counter window has passed: reset it and count this usage in one swap
            reset_stmt = (
                update(self.table)
                .where(
                    self._key(customer_id, limit_key),
                    c.revoked_at.is_(None),
                    c.reset_at == current.reset_at,
                )
                .values(
                    {
                        c.current_value: amount,
                        c.reset_at: next_boundary_after(current.reset_at, current.reset_interval, now),
                        c.updated_at: now,
                    }
                )
                .returning(*self.table.columns)
            )
            reset = await self._fetch_one(CustomerLimit, reset_stmt)
            if reset is not None:
                logger.debug(
                    "billing.limit.reset", customer_id=customer_id, limit_key=limit_key
                )
                return reset, True

        return await self.get(customer_id, limit_key), False

    async def set_current(
        self, customer_id: str, limit_key: str, value: int, now: datetime
    ) -> CustomerLimit | None:
        c = self.table.c
        current = await self.get(customer_id, limit_key)
        if current is None or current.revoked_at is not None:
            return current
        reset_at = current.reset_at
        if reset_at is not None and reset_at <= now:
            reset_at = next_boundary_after(reset_at, current.reset_interval, now)
        stmt = (
            update(self.table)
            .where(self._key(customer_id, limit_key), c.revoked_at.is_(None))
            .values({c.current_value: value, c.reset_at: reset_at, c.updated_at: now})
            .returning(*self.table.columns)
        )
        return await self._fetch_one(CustomerLimit, stmt)

    async def revoke(self, customer_id: str, limit_key: str, now: datetime) -> CustomerLimit | None:
        c = self.table.c
        stmt = (
            update(self.table)
            .where(self._key(customer_id, limit_key))
            .values({c.revoked_at: now, c.updated_at: now})
            .returning(*self.table.columns)
        )
        return await self._fetch_one(CustomerLimit, stmt)

    async def reset_expired(self, now: datetime) -> int:
        c = self.table.c
        expired = await self._fetch_all(
            CustomerLimit,
            select(self.table).where(
                c.revoked_at.is_(None), c.reset_at.is_not(None), c.reset_at <= now
            ),
        )
        count = 0
        for limit in expired:
            if limit.reset_at is None:
                continue
            stmt = (
                update(self.table)
                .where(self._key(limit.customer_id, limit.limit_key), c.reset_at == limit.reset_at)
                .values(
                    {
                        c.current_value: 0,
                        c.reset_at: next_boundary_after(limit.reset_at, limit.reset_interval, now),
                        c.updated_at: now,
                    }
                )
            )
            async with self.storage.session() as session:
                result = await session.execute(stmt)
            count += result.rowcount or 0
        return count

    async def add_usage(self, record: UsageRecord) -> UsageRecord:
        usage = UsageRecordTable.__table__
        async with self.storage.session() as session:
            await session.execute(self.storage.insert(usage).values(_values(record, usage)))
        return record

    async def list_usage(
        self, customer_id: str, limit_key: str | None = None, since: datetime | None = None
    ) -> list[UsageRecord]:
        usage = UsageRecordTable.__table__
        stmt = (
            select(usage)
            .where(usage.c.customer_id == customer_id)
            .order_by(usage.c.recorded_at)
        )
        if limit_key is not None:
            stmt = stmt.where(usage.c.limit_key == limit_key)
        if since is not None:
            stmt = stmt.where(usage.c.recorded_at >= since)
        async with self.storage.session() as session:
            rows = (await session.execute(stmt)).all()
        return [_to_model(UsageRecord, usage, row) for row in rows]


# ============================================================================
# Entitlements
# ============================================================================


class SQLEntitlementRepository(_Repository):
    table = CustomerEntitlementTable.__table__

    async def grant(self, entitlement: CustomerEntitlement) -> CustomerEntitlement:
        async with self.storage.session() as session:
            await session.execute(
                self.storage.insert(self.table).values(_values(entitlement, self.table))
            )
        return entitlement

    async def list_for_customer(self, customer_id: str) -> list[CustomerEntitlement]:
        stmt = (
            select(self.table)
            .where(self.table.c.customer_id == customer_id)
            .order_by(self.table.c.granted_at)
        )
        return await self._fetch_all(CustomerEntitlement, stmt)

    async def revoke(
        self, customer_id: str, entitlement_key: str, now: datetime, source_id: str | None = None
    ) -> int:
        c = self.table.c
        stmt = update(self.table).where(
            c.customer_id == customer_id,
            c.entitlement_key == entitlement_key,
            c.revoked_at.is_(None),
        )
        if source_id is not None:
            stmt = stmt.where(c.source_id == source_id)
        async with self.storage.session() as session:
            result = await session.execute(stmt.values({c.revoked_at: now}))
        return result.rowcount or 0

    async def revoke_by_source(self, source: GrantSource, source_id: str, now: datetime) -> int:
        c = self.table.c
        stmt = (
            update(self.table)
            .where(c.source == source.value, c.source_id == source_id, c.revoked_at.is_(None))
            .values({c.revoked_at: now})
        )
        async with self.storage.session() as session:
            result = await session.execute(stmt)
        return result.rowcount or 0


# ============================================================================
# Adapter
# ============================================================================


class SQLAlchemyStorage:
    """Storage adapter backed by an async SQLAlchemy engine."""

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine
        self._session_factory = create_session_factory(engine)
        self._current: ContextVar[AsyncSession | None] = ContextVar(
            f"ledgerline_storage_session_{id(self)}", default=None
        )
        self._on_commit: ContextVar[list[Callable[[], Awaitable[Any]]] | None] = ContextVar(
            f"ledgerline_storage_on_commit_{id(self)}", default=None
        )

        self.plans = SQLPlanRepository(self)
        self.addons = SQLAddOnRepository(self)
        self.promo_codes = SQLPromoCodeRepository(self)
        self.subscription_addons = SQLSubscriptionAddOnRepository(self)
        self.subscriptions = SQLSubscriptionRepository(self)
        self.invoices = SQLInvoiceRepository(self)
        self.webhook_events = SQLWebhookEventRepository(self)
        self.limits = SQLLimitRepository(self)
        self.entitlements = SQLEntitlementRepository(self)

    @classmethod
    def from_url(cls, url: str | None = None, **engine_options: Any) -> SQLAlchemyStorage:
        return cls(create_engine(url, **engine_options))

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    def insert(self, table: Table) -> Any:
        """Dialect ``INSERT`` supporting ``ON CONFLICT`` clauses."""
        if self.dialect == "postgresql":
            return postgresql.insert(table)
        return sqlite.insert(table)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """The transaction-bound session, or a fresh one committed on exit."""
        current = self._current.get()
        if current is not None:
            yield current
            return

        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except BaseException:
                await session.rollback()
                raise

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """Group repository calls into one commit. Nested use joins the outer transaction."""
        if self._current.get() is not None:
            yield
            return

        callbacks: list[Callable[[], Awaitable[Any]]] = []
        async with self._session_factory() as session:
            token = self._current.set(session)
            queue_token = self._on_commit.set(callbacks)
            try:
                yield
                await session.commit()
            except BaseException:
                await session.rollback()
                raise
            finally:
                self._current.reset(token)
                self._on_commit.reset(queue_token)

        for callback in callbacks:
            await callback()

    async def after_commit(self, callback: Callable[[], Awaitable[Any]]) -> None:
        queued = self._on_commit.get()
        if queued is None:
            await callback()
        else:
            queued.append(callback)

    async def create_tables(self) -> None:
        await init_models(self.engine)

    async def dispose(self) -> None:
        await self.engine.dispose()


__all__ = ["SQLAlchemyStorage"]
