"""Subscription status transition table."""

from __future__ import annotations

from ledgerline.billing.core.enums import SubscriptionStatus as S
from ledgerline.billing.exceptions import SubscriptionStateError

ALLOWED_TRANSITIONS: dict[S, frozenset[S]] = {
    S.INCOMPLETE: frozenset({S.ACTIVE, S.INCOMPLETE_EXPIRED, S.CANCELED}),
    S.TRIALING: frozenset({S.ACTIVE, S.PAST_DUE, S.CANCELED}),
    S.ACTIVE: frozenset({S.ACTIVE, S.PAST_DUE, S.PAUSED, S.CANCELED}),
    S.PAST_DUE: frozenset({S.PAST_DUE, S.ACTIVE, S.UNPAID, S.CANCELED}),
    S.PAUSED: frozenset({S.ACTIVE, S.CANCELED}),
    S.UNPAID: frozenset({S.ACTIVE, S.CANCELED}),
    S.CANCELED: frozenset(),
    S.INCOMPLETE_EXPIRED: frozenset(),
}

INITIAL_STATES = frozenset({S.INCOMPLETE, S.TRIALING, S.ACTIVE})


def can_transition(current: S, target: S) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def ensure_transition(current: S, target: S, subscription_id: str | None = None) -> None:
    """Raise ``SubscriptionStateError`` unless ``current -> target`` is allowed."""
    if not can_transition(current, target):
        raise SubscriptionStateError(
            f"Cannot move subscription from {current.value} to {target.value}",
            current_state=current.value,
            requested_state=target.value,
            subscription_id=subscription_id,
        )


__all__ = ["ALLOWED_TRANSITIONS", "INITIAL_STATES", "can_transition", "ensure_transition"]
