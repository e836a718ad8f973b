"""
Billing engine facade.

``BillingEngine`` wires the services to one storage adapter, one provider
registry and one event bus. Applications hold a single engine and reach
the services through its attributes::

    engine = BillingEngine.from_settings()
    await engine.init_storage()
    engine.subscribe(BillingEvents.PAYMENT_FAILED, notify_customer)
    subscription = await engine.subscriptions.create("cus_1", "pro")
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

import structlog

from ledgerline.billing.config import BillingConfig, get_billing_config
from ledgerline.billing.core.models import SubscriptionAddOn, WebhookEvent
from ledgerline.billing.dunning.service import DunningScheduler, SweepResult
from ledgerline.billing.entitlements.service import EntitlementService
from ledgerline.billing.events import BillingEvent, BillingEvents, EventBus, EventHandler
from ledgerline.billing.invoicing.service import InvoiceService
from ledgerline.billing.metrics import BillingMetrics, get_billing_metrics
from ledgerline.billing.periods import resolve_now
from ledgerline.billing.providers.registry import ProviderRegistry, build_registry
from ledgerline.billing.storage.base import StorageAdapter
from ledgerline.billing.storage.sql import SQLAlchemyStorage
from ledgerline.billing.subscriptions.service import SubscriptionService
from ledgerline.billing.usage.service import LimitService
from ledgerline.billing.webhooks.handlers import WebhookHandlerRegistry
from ledgerline.billing.webhooks.service import WebhookPipeline
from ledgerline.logging import billing_context
from ledgerline.settings import Settings, get_settings

logger = structlog.get_logger(__name__)

# Subscription events after which the customer's limits are recomputed
_LIMIT_SYNC_EVENTS = (
    BillingEvents.SUBSCRIPTION_CREATED,
    BillingEvents.SUBSCRIPTION_UPDATED,
    BillingEvents.SUBSCRIPTION_CANCELED,
    BillingEvents.SUBSCRIPTION_PAUSED,
    BillingEvents.SUBSCRIPTION_RESUMED,
)


class BillingEngine:
    def __init__(
        self,
        storage: StorageAdapter,
        providers: ProviderRegistry | None = None,
        config: BillingConfig | None = None,
        event_bus: EventBus | None = None,
        metrics: BillingMetrics | None = None,
        sync_limits_on_change: bool = True,
    ) -> None:
        self.storage = storage
        self.config = config or get_billing_config()
        self.providers = providers or build_registry()
        self.events = event_bus or EventBus()
        self.metrics = metrics or get_billing_metrics()

        self.invoices = InvoiceService(
            storage, self.events, livemode=self.config.livemode, metrics=self.metrics
        )
        self.subscriptions = SubscriptionService(
            storage,
            self.events,
            providers=self.providers,
            invoices=self.invoices,
            config=self.config,
            metrics=self.metrics,
        )
        self.limits = LimitService(storage, metrics=self.metrics)
        self.entitlements = EntitlementService(storage, self.limits, self.config)
        self.webhook_handlers = WebhookHandlerRegistry(self.subscriptions)
        self.webhooks = WebhookPipeline(
            storage, self.providers, self.webhook_handlers, self.config, self.metrics
        )
        self.dunning = DunningScheduler(storage, self.subscriptions, self.events, self.config)

        if sync_limits_on_change:
            for event_type in _LIMIT_SYNC_EVENTS:
                self.events.subscribe(event_type, self._sync_customer_limits)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> BillingEngine:
        """Engine backed by the configured database and provider."""
        settings = settings or get_settings()
        storage = SQLAlchemyStorage.from_url(settings.database.sqlalchemy_url)
        providers = build_registry(
            default_provider=settings.billing.default_provider,
            mock_webhook_secret=settings.billing.mock_webhook_secret,
        )
        return cls(storage, providers=providers, config=BillingConfig.from_env())

    # Events ----------------------------------------------------------------

    def subscribe(self, event_type: str, handler: EventHandler) -> Callable[[], None]:
        """Register ``handler`` for ``event_type``; call the returned function to unsubscribe."""
        return self.events.subscribe(event_type, handler)

    def subscribe_any(self, handler: EventHandler) -> Callable[[], None]:
        return self.events.subscribe_any(handler)

    async def _sync_customer_limits(self, event: BillingEvent) -> None:
        customer_id = getattr(event.payload, "customer_id", None)
        if customer_id:
            await self.entitlements.sync_limits(customer_id)

    # Operations --------------------------------------------------------------

    async def add_addon(
        self,
        subscription_id: str,
        addon_id: str,
        quantity: int = 1,
        expires_at: datetime | None = None,
        now: datetime | None = None,
    ) -> SubscriptionAddOn:
        """Attach an add-on and refresh the customer's limits."""
        item = await self.subscriptions.add_addon(
            subscription_id, addon_id, quantity=quantity, expires_at=expires_at, now=now
        )
        subscription = await self.subscriptions.get(subscription_id)
        await self.entitlements.sync_limits(subscription.customer_id, now)
        return item

    async def sweep(self, now: datetime | None = None) -> SweepResult:
        now = resolve_now(now)
        with billing_context(sweep_at=now.isoformat()):
            return await self.dunning.sweep(now)

    async def process_webhooks(
        self, now: datetime | None = None, limit: int = 100
    ) -> list[WebhookEvent]:
        return await self.webhooks.process_due(now, limit)

    # Lifecycle -------------------------------------------------------------

    async def init_storage(self) -> None:
        if isinstance(self.storage, SQLAlchemyStorage):
            await self.storage.create_tables()

    async def close(self) -> None:
        if isinstance(self.storage, SQLAlchemyStorage):
            await self.storage.dispose()
        logger.debug("billing.engine.closed")


__all__ = ["BillingEngine"]
