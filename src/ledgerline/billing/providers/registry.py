"""
Payment provider registry.

Adapters are registered by name (or as factories) and selected by
configuration; the engine receives the resolved registry by injection.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator

import structlog

from ledgerline.billing.exceptions import BillingConfigurationError
from ledgerline.billing.providers.base import PaymentProviderAdapter
from ledgerline.billing.providers.mock import MockPaymentProvider

logger = structlog.get_logger(__name__)

ProviderFactory = Callable[[], PaymentProviderAdapter]


class ProviderRegistry:
    """Holds the configured payment provider adapters."""

    def __init__(self, default: str | None = None) -> None:
        self._adapters: dict[str, PaymentProviderAdapter] = {}
        self._factories: dict[str, ProviderFactory] = {}
        self._default = default

    def register(self, adapter: PaymentProviderAdapter, default: bool = False) -> None:
        self._adapters[adapter.provider] = adapter
        if default or self._default is None:
            self._default = adapter.provider
        logger.debug("billing.provider.registered", provider=adapter.provider)

    def register_factory(self, name: str, factory: ProviderFactory) -> None:
        """Register a lazily built adapter."""
        self._factories[name] = factory
        if self._default is None:
            self._default = name

    def get(self, name: str | None = None) -> PaymentProviderAdapter:
        name = name or self._default
        if name is None:
            raise BillingConfigurationError(
                "No payment provider configured", config_key="billing.default_provider"
            )
        if name not in self._adapters and name in self._factories:
            self._adapters[name] = self._factories.pop(name)()
        try:
            return self._adapters[name]
        except KeyError:
            raise BillingConfigurationError(
                f"Unknown payment provider: {name}",
                config_key="billing.default_provider",
                recovery_hint=f"Register an adapter named '{name}' before using it",
            ) from None

    @property
    def default(self) -> PaymentProviderAdapter | None:
        if self._default is None:
            return None
        return self.get(self._default)

    def __contains__(self, name: object) -> bool:
        return name in self._adapters or name in self._factories

    def __iter__(self) -> Iterator[str]:
        return iter({*self._adapters, *self._factories})


def build_registry(default_provider: str = "mock", mock_webhook_secret: str = "whsec_mock") -> ProviderRegistry:
    """Registry with the built-in adapters, defaulting to ``default_provider``."""
    registry = ProviderRegistry(default=default_provider)
    registry.register_factory("mock", lambda: MockPaymentProvider(webhook_secret=mock_webhook_secret))
    return registry


__all__ = ["ProviderRegistry", "ProviderFactory", "build_registry"]
