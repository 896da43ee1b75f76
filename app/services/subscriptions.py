"""
User-initiated subscription operations and the periodic subscription sweeps.

Webhook-driven transitions live in settlement.py; everything here either starts
a PayPal flow (checkout), reacts to the user (cancel, reactivate), or backstops
lost webhooks (sweeps).
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from sqlalchemy.orm import Session

from app.config import settings
from app.integrations import paypal
from app.models.enrollment import AccessType
from app.models.subscription import (
    Subscription,
    SubscriptionInterval,
    SubscriptionPlan,
    SubscriptionStatus,
)
from app.models.user import User
from app.schemas.webhooks import SubscriptionResource
from app.services import ledger, notifications
from app.services.checkout import CheckoutError
from app.services.post_commit import PostCommitTasks
from app.services.settlement import settle_subscription_event
from app.services.subscription_state import assert_transition

logger = logging.getLogger(__name__)

# Subscription statuses under which subscription enrollments still grant access
ACCESS_STATUSES = (
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.CANCELLED,
    SubscriptionStatus.PAST_DUE,
)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """Timestamps are stored in UTC; some backends hand them back naive."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _now() -> datetime:
    return datetime.now(timezone.utc)


def has_course_access(db: Session, user_id: int, course_id: int, now: Optional[datetime] = None) -> bool:
    """
    Purchased enrollments are lifetime. Subscription enrollments count only while
    the subscription is live and the enrollment has not expired.
    """
    enrollment = ledger.find_enrollment(db, user_id, course_id)
    if enrollment is None:
        return False
    if enrollment.access_type == AccessType.PURCHASED:
        return True

    now = now or _now()
    subscription = enrollment.subscription
    if subscription is None or subscription.status not in ACCESS_STATUSES:
        return False
    expires_at = _aware(enrollment.expires_at)
    return expires_at is None or expires_at > now


def get_user_subscription(db: Session, user: User, subscription_id: int) -> Subscription:
    subscription = db.query(Subscription).filter(
        Subscription.id == subscription_id,
        Subscription.user_id == user.id,
    ).first()
    if subscription is None:
        raise CheckoutError("Subscription not found", status_code=404)
    return subscription


def create_subscription_checkout(
    db: Session,
    user: User,
    plan_id: int,
    interval: SubscriptionInterval,
    gateway=paypal,
) -> Tuple[Subscription, str]:
    """Create a pending subscription and its PayPal counterpart. Returns (subscription, approval_url)."""
    plan = db.query(SubscriptionPlan).filter(
        SubscriptionPlan.id == plan_id,
        SubscriptionPlan.is_active.is_(True),
    ).first()
    if plan is None:
        raise CheckoutError("Plan not found", status_code=404)

    paypal_plan_id = plan.paypal_plan_id_for(interval)
    if not paypal_plan_id:
        raise CheckoutError(f"{plan.name} is not offered with {interval.value}ly billing")

    duplicate = db.query(Subscription).filter(
        Subscription.user_id == user.id,
        Subscription.plan_id == plan.id,
        Subscription.interval == interval,
        Subscription.status == SubscriptionStatus.ACTIVE,
    ).first()
    if duplicate is not None:
        raise CheckoutError("You already have an active subscription to this plan")

    subscription = Subscription(
        user_id=user.id,
        plan_id=plan.id,
        interval=interval,
        status=SubscriptionStatus.PENDING,
    )
    db.add(subscription)
    db.commit()
    db.refresh(subscription)

    try:
        paypal_id, approval_url = gateway.create_subscription(
            paypal_plan_id,
            return_url=f"{settings.base_url}/library?subscription=success",
            cancel_url=f"{settings.base_url}/subscription?checkout=cancelled",
            custom_id=str(subscription.id),
            email=user.email,
            name=user.name,
        )
    except paypal.PayPalError as e:
        # The pending row is left for expire_abandoned_subscriptions
        logger.error("PayPal subscription creation failed for subscription %s: %s", subscription.id, e)
        raise CheckoutError("Payment provider unavailable, please try again", status_code=502) from e

    subscription.paypal_subscription_id = paypal_id
    db.commit()

    logger.info(
        "Subscription %s created for user %s (plan %s, %s, PayPal %s)",
        subscription.id, user.id, plan.id, interval.value, paypal_id,
    )
    return subscription, approval_url


def cancel_subscription(db: Session, user: User, subscription_id: int, gateway=paypal) -> Subscription:
    """
    Cancel at period end. PayPal stops billing; access stays until current_period_end.
    """
    subscription = get_user_subscription(db, user, subscription_id)
    assert_transition(subscription.status, SubscriptionStatus.CANCELLED)

    if subscription.paypal_subscription_id:
        try:
            gateway.cancel_subscription(subscription.paypal_subscription_id, "Cancelled by customer")
        except paypal.PayPalError as e:
            logger.warning(
                "PayPal cancel failed for subscription %s (%s): %s",
                subscription.id, subscription.paypal_subscription_id, e,
            )

    subscription.status = SubscriptionStatus.CANCELLED
    subscription.cancel_at_period_end = True
    db.commit()
    logger.info("Subscription %s cancelled by user %s", subscription.id, user.id)

    tasks = PostCommitTasks()
    email = user.email
    plan_name = subscription.plan.name if subscription.plan else ""
    period_end = subscription.current_period_end
    sub_id = subscription.id
    tasks.add(
        "activity.subscription_cancelled",
        lambda: ledger.record_activity(db, user.id, "subscription_cancelled", {"subscription_id": sub_id}),
    )
    tasks.add(
        "email.subscription_cancelled",
        lambda: notifications.send_subscription_cancelled(email, plan_name, period_end),
    )
    tasks.run()
    return subscription


def reactivate_subscription(db: Session, user: User, subscription_id: int, now: Optional[datetime] = None) -> Subscription:
    """Undo a cancellation while the paid period is still running."""
    now = now or _now()
    subscription = get_user_subscription(db, user, subscription_id)

    period_end = _aware(subscription.current_period_end)
    if subscription.status != SubscriptionStatus.CANCELLED or period_end is None or period_end < now:
        raise CheckoutError("Cancelled subscription not found or expired", status_code=404)

    subscription.status = SubscriptionStatus.ACTIVE
    subscription.cancel_at_period_end = False
    ledger.grant_subscription_enrollments(db, user.id, subscription.id, subscription.current_period_end)
    db.commit()
    logger.info("Subscription %s reactivated by user %s", subscription.id, user.id)

    sub_id = subscription.id
    tasks = PostCommitTasks()
    tasks.add(
        "activity.subscription_reactivated",
        lambda: ledger.record_activity(db, user.id, "subscription_reactivated", {"subscription_id": sub_id}),
    )
    tasks.run()
    return subscription


# ---------------------------------------------------------------------------
# Sweeps (run from Celery beat)
# ---------------------------------------------------------------------------

def expire_abandoned_subscriptions(db: Session, now: Optional[datetime] = None) -> int:
    """Pending subscriptions never approved at PayPal within the TTL become expired."""
    now = now or _now()
    cutoff = now - timedelta(hours=settings.pending_subscription_ttl_hours)
    stale = db.query(Subscription).filter(
        Subscription.status == SubscriptionStatus.PENDING,
        Subscription.created_at < cutoff,
    ).all()

    for subscription in stale:
        subscription.status = SubscriptionStatus.EXPIRED
    db.commit()

    if stale:
        logger.info("Expired %d abandoned pending subscriptions", len(stale))
    return len(stale)


def refresh_pending_subscriptions(db: Session, gateway=paypal, now: Optional[datetime] = None) -> int:
    """
    Ask PayPal about recent pending subscriptions and activate the ones PayPal
    reports ACTIVE, as if the ACTIVATED webhook had arrived.
    """
    now = now or _now()
    cutoff = now - timedelta(hours=settings.pending_subscription_ttl_hours)
    pending = db.query(Subscription).filter(
        Subscription.status == SubscriptionStatus.PENDING,
        Subscription.paypal_subscription_id.isnot(None),
        Subscription.created_at >= cutoff,
    ).order_by(Subscription.id).all()

    activated = 0
    for subscription in pending:
        paypal_id = subscription.paypal_subscription_id
        try:
            detail = SubscriptionResource.model_validate(gateway.get_subscription(paypal_id))
        except paypal.PayPalError as e:
            logger.warning("Could not refresh PayPal subscription %s: %s", paypal_id, e)
            continue

        if detail.status != paypal.SUBSCRIPTION_ACTIVE:
            continue

        if not detail.custom_id:
            detail.custom_id = str(subscription.id)
        if settle_subscription_event(db, paypal.SUBSCRIPTION_ACTIVATED, detail, gateway=gateway) is not None:
            activated += 1

    if activated:
        logger.info("Activated %d pending subscriptions from PayPal status", activated)
    return activated
