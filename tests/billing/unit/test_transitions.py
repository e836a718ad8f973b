"""Tests for the subscription status transition table."""

import pytest

from ledgerline.billing.core.enums import SubscriptionStatus as S
from ledgerline.billing.exceptions import ConflictError, SubscriptionStateError
from ledgerline.billing.subscriptions.transitions import (
    ALLOWED_TRANSITIONS,
    INITIAL_STATES,
    can_transition,
    ensure_transition,
)


class TestTransitions:
    def test_every_status_has_an_entry(self):
        assert set(ALLOWED_TRANSITIONS) == set(S)

    @pytest.mark.parametrize("status", [S.CANCELED, S.INCOMPLETE_EXPIRED])
    def test_terminal_states_have_no_exits(self, status):
        assert ALLOWED_TRANSITIONS[status] == frozenset()
        assert status.is_terminal

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (S.TRIALING, S.ACTIVE),
            (S.TRIALING, S.PAST_DUE),
            (S.ACTIVE, S.PAST_DUE),
            (S.PAST_DUE, S.ACTIVE),
            (S.PAST_DUE, S.UNPAID),
            (S.UNPAID, S.ACTIVE),
            (S.ACTIVE, S.PAUSED),
            (S.PAUSED, S.ACTIVE),
            (S.INCOMPLETE, S.INCOMPLETE_EXPIRED),
        ],
    )
    def test_allowed(self, current, target):
        assert can_transition(current, target)
        ensure_transition(current, target)

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (S.CANCELED, S.ACTIVE),
            (S.TRIALING, S.PAUSED),
            (S.UNPAID, S.PAST_DUE),
            (S.PAUSED, S.PAST_DUE),
            (S.INCOMPLETE, S.TRIALING),
        ],
    )
    def test_rejected(self, current, target):
        assert not can_transition(current, target)
        with pytest.raises(SubscriptionStateError) as exc_info:
            ensure_transition(current, target, "sub_1")

        error = exc_info.value
        assert isinstance(error, ConflictError)
        assert error.current_state == current.value
        assert error.requested_state == target.value
        assert error.context["subscription_id"] == "sub_1"

    def test_initial_states(self):
        assert INITIAL_STATES == {S.INCOMPLETE, S.TRIALING, S.ACTIVE}

    def test_live_statuses(self):
        assert {s for s in S if s.is_live} == {S.TRIALING, S.ACTIVE, S.PAST_DUE}
