"""Tests for the subscription status transition table (app/services/subscription_state.py)"""
import pytest

from app.models.subscription import SubscriptionStatus as S
from app.services.subscription_state import (
    InvalidSubscriptionTransition,
    allowed_transitions,
    assert_transition,
    can_transition,
)


@pytest.mark.parametrize("from_status,to_status", [
    (S.PENDING, S.ACTIVE),
    (S.PENDING, S.CANCELLED),
    (S.PENDING, S.EXPIRED),
    (S.ACTIVE, S.CANCELLED),
    (S.ACTIVE, S.PAST_DUE),
    (S.ACTIVE, S.EXPIRED),
    (S.CANCELLED, S.ACTIVE),
    (S.CANCELLED, S.EXPIRED),
    (S.PAST_DUE, S.ACTIVE),
    (S.PAST_DUE, S.CANCELLED),
    (S.PAST_DUE, S.EXPIRED),
    (S.EXPIRED, S.ACTIVE),
])
def test_allowed(from_status, to_status):
    assert can_transition(from_status, to_status) is True


@pytest.mark.parametrize("from_status,to_status", [
    (S.PENDING, S.PAST_DUE),
    (S.ACTIVE, S.PENDING),
    (S.CANCELLED, S.PAST_DUE),
    (S.EXPIRED, S.CANCELLED),
    (S.EXPIRED, S.PAST_DUE),
])
def test_disallowed(from_status, to_status):
    assert can_transition(from_status, to_status) is False


@pytest.mark.parametrize("status", list(S))
def test_same_status_always_allowed(status):
    assert can_transition(status, status) is True


def test_assert_transition_raises_with_states_in_message():
    with pytest.raises(InvalidSubscriptionTransition) as exc_info:
        assert_transition(S.PENDING, S.PAST_DUE)
    assert str(exc_info.value) == "INVALID_STATE_TRANSITION: pending -> past_due"
    assert exc_info.value.from_status == S.PENDING


def test_assert_transition_passes_for_allowed():
    assert_transition(S.ACTIVE, S.CANCELLED)


def test_allowed_transitions_sorted():
    assert allowed_transitions(S.ACTIVE) == [S.CANCELLED, S.EXPIRED, S.PAST_DUE]
    assert allowed_transitions(S.EXPIRED) == [S.ACTIVE]
