"""
Global pytest configuration and fixtures for ledgerline tests.

Every test gets its own file-backed SQLite database so concurrent
connections share one schema.
"""

import os
from datetime import UTC, datetime

import pytest
import pytest_asyncio

os.environ.setdefault("OBSERVABILITY__LOG_FORMAT", "console")
os.environ.setdefault("OBSERVABILITY__LOG_LEVEL", "WARNING")

from ledgerline.billing.config import BillingConfig, DunningConfig, WebhookConfig  # noqa: E402
from ledgerline.billing.core.enums import BillingInterval, LimitAction  # noqa: E402
from ledgerline.billing.core.models import AddOn, AddOnLimit, Plan  # noqa: E402
from ledgerline.billing.engine import BillingEngine  # noqa: E402
from ledgerline.billing.events import BillingEvent, EventBus  # noqa: E402
from ledgerline.billing.providers.mock import MockPaymentProvider  # noqa: E402
from ledgerline.billing.providers.registry import ProviderRegistry  # noqa: E402
from ledgerline.billing.storage.sql import SQLAlchemyStorage  # noqa: E402

# Wednesday, mid-month, so month arithmetic never clamps by accident
T0 = datetime(2025, 1, 15, 12, 0, tzinfo=UTC)


PLANS = [
    Plan(
        id="basic",
        name="Basic",
        unit_amount=1000,
        interval=BillingInterval.MONTH,
        entitlements=["api_access"],
        limits={"api_calls": 1000, "seats": 3},
    ),
    Plan(
        id="pro",
        name="Pro",
        unit_amount=3000,
        interval=BillingInterval.MONTH,
        trial_days=14,
        entitlements=["api_access", "priority_support"],
        limits={"api_calls": 10000, "seats": 10, "storage_gb": -1},
    ),
    Plan(id="basic_eur", name="Basic EUR", unit_amount=900, currency="EUR"),
    Plan(id="free", name="Free", unit_amount=0, entitlements=["api_access"]),
    Plan(id="legacy", name="Legacy", unit_amount=500, active=False),
]

ADDONS = [
    AddOn(
        id="extra_seats",
        name="Extra seats",
        unit_amount=500,
        limits=[AddOnLimit(key="seats", value=5, action=LimitAction.INCREMENT)],
    ),
    AddOn(
        id="unlimited_api",
        name="Unlimited API",
        unit_amount=2000,
        entitlements=["bulk_export"],
        limits=[AddOnLimit(key="api_calls", value=-1, action=LimitAction.SET)],
    ),
]


class EventRecorder:
    """Collects every event published on a bus."""

    def __init__(self) -> None:
        self.events: list[BillingEvent] = []

    def __call__(self, event: BillingEvent) -> None:
        self.events.append(event)

    @property
    def types(self) -> list[str]:
        return [event.type for event in self.events]

    def of_type(self, event_type: str) -> list[BillingEvent]:
        return [event for event in self.events if event.type == event_type]

    def clear(self) -> None:
        self.events.clear()


@pytest.fixture
def billing_config():
    """Deterministic billing configuration."""
    return BillingConfig(
        dunning=DunningConfig(retry_schedule_days=[1, 3, 5], grace_period_days=14),
        webhook=WebhookConfig(max_attempts=3, backoff_base_seconds=60, backoff_max_seconds=3600),
    )


@pytest.fixture
def provider():
    return MockPaymentProvider(webhook_secret="whsec_test")


@pytest.fixture
def providers(provider):
    registry = ProviderRegistry()
    registry.register(provider, default=True)
    return registry


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'billing.sqlite'}"


@pytest_asyncio.fixture
async def storage(database_url):
    """SQL storage with the billing schema and the test catalog."""
    storage = SQLAlchemyStorage.from_url(database_url)
    await storage.create_tables()
    for plan in PLANS:
        await storage.plans.save(plan)
    for addon in ADDONS:
        await storage.addons.save(addon)
    yield storage
    await storage.dispose()


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def engine(storage, providers, billing_config, event_bus):
    return BillingEngine(storage, providers=providers, config=billing_config, event_bus=event_bus)


@pytest.fixture
def recorder(engine):
    recorder = EventRecorder()
    dispose = engine.subscribe_any(recorder)
    yield recorder
    dispose()
