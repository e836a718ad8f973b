"""Webhook ingestion."""

from ledgerline.billing.webhooks.handlers import WebhookHandlerRegistry
from ledgerline.billing.webhooks.service import WebhookPipeline, WebhookReceipt

__all__ = ["WebhookHandlerRegistry", "WebhookPipeline", "WebhookReceipt"]
