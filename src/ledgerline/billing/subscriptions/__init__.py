"""Subscription state machine."""

from ledgerline.billing.subscriptions.service import SubscriptionService
from ledgerline.billing.subscriptions.transitions import ALLOWED_TRANSITIONS, can_transition

__all__ = ["SubscriptionService", "ALLOWED_TRANSITIONS", "can_transition"]
