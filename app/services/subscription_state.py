"""
Subscription status transitions.

States: pending → active → cancelled / past_due → expired
        expired → active (resubscribe on the same PayPal agreement)

Re-applying the current status is always allowed so duplicate deliveries converge.
"""
from typing import Dict, FrozenSet, List

from app.models.subscription import SubscriptionStatus

ALLOWED_TRANSITIONS: Dict[SubscriptionStatus, FrozenSet[SubscriptionStatus]] = {
    SubscriptionStatus.PENDING: frozenset({
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.CANCELLED,
        SubscriptionStatus.EXPIRED,
    }),
    SubscriptionStatus.ACTIVE: frozenset({
        SubscriptionStatus.CANCELLED,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.EXPIRED,
    }),
    SubscriptionStatus.CANCELLED: frozenset({
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.EXPIRED,
    }),
    SubscriptionStatus.PAST_DUE: frozenset({
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.CANCELLED,
        SubscriptionStatus.EXPIRED,
    }),
    SubscriptionStatus.EXPIRED: frozenset({
        SubscriptionStatus.ACTIVE,
    }),
}


class InvalidSubscriptionTransition(ValueError):
    def __init__(self, from_status: SubscriptionStatus, to_status: SubscriptionStatus):
        super().__init__(
            f"INVALID_STATE_TRANSITION: {SubscriptionStatus(from_status).value} -> {SubscriptionStatus(to_status).value}"
        )
        self.from_status = from_status
        self.to_status = to_status


def can_transition(from_status: SubscriptionStatus, to_status: SubscriptionStatus) -> bool:
    if from_status == to_status:
        return True
    return to_status in ALLOWED_TRANSITIONS.get(from_status, frozenset())


def assert_transition(from_status: SubscriptionStatus, to_status: SubscriptionStatus) -> None:
    if not can_transition(from_status, to_status):
        raise InvalidSubscriptionTransition(from_status, to_status)


def allowed_transitions(from_status: SubscriptionStatus) -> List[SubscriptionStatus]:
    return sorted(ALLOWED_TRANSITIONS.get(from_status, frozenset()), key=lambda s: s.value)
