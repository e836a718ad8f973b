"""Payment provider adapters."""

from ledgerline.billing.providers.base import PaymentProviderAdapter
from ledgerline.billing.providers.mock import MockPaymentProvider
from ledgerline.billing.providers.registry import ProviderRegistry, build_registry

__all__ = ["PaymentProviderAdapter", "MockPaymentProvider", "ProviderRegistry", "build_registry"]
