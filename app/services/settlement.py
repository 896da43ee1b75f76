"""
Idempotent settlement of PayPal outcomes into the ledger.

Three entry points, shared by the capture callback, the webhook receiver and
the reconciliation tasks:

- settle_order: pending purchases → paid, with inventory, enrollment and payment
- settle_subscription_event: subscription lifecycle driven by PayPal event types
- settle_recurring_payment: renewal charges extend the billing period

Ledger writes happen inside transactions. Emails, analytics and activity rows
are queued on a PostCommitTasks list and run only after the writes committed;
their failures are logged and never reach the caller.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.integrations import analytics
from app.integrations import paypal
from app.models.enrollment import AccessType
from app.models.purchase import Purchase, PurchaseStatus
from app.models.subscription import Subscription, SubscriptionStatus
from app.schemas.webhooks import SubscriptionResource
from app.services import ledger, notifications
from app.services.post_commit import PostCommitTasks
from app.services.subscription_state import can_transition

logger = logging.getLogger(__name__)

# PayPal subscription event types → target local status
SUBSCRIPTION_EVENT_TARGETS = {
    paypal.SUBSCRIPTION_ACTIVATED: SubscriptionStatus.ACTIVE,
    paypal.SUBSCRIPTION_UPDATED: SubscriptionStatus.ACTIVE,
    paypal.SUBSCRIPTION_CANCELLED: SubscriptionStatus.CANCELLED,
    paypal.SUBSCRIPTION_EXPIRED: SubscriptionStatus.EXPIRED,
    paypal.SUBSCRIPTION_SUSPENDED: SubscriptionStatus.EXPIRED,
}


class OutOfStockError(Exception):
    def __init__(self, course_id: int):
        super().__init__(f"Course {course_id} is out of stock")
        self.course_id = course_id


@dataclass
class CaptureOutcome:
    """Result of asking PayPal to capture an order"""
    status: str
    capture_id: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == paypal.COMPLETED

    @classmethod
    def from_order(cls, order: dict) -> "CaptureOutcome":
        return cls(status=order.get("status", ""), capture_id=paypal.get_capture_id(order))


@dataclass
class OrderSettlement:
    provider_ref: str
    unknown: bool = False
    failed: bool = False
    settled: List[int] = field(default_factory=list)
    already_paid: List[int] = field(default_factory=list)
    out_of_stock: List[int] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not (self.unknown or self.failed or self.out_of_stock)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------

def _apply_paid(db: Session, purchase: Purchase, payment_ref: str) -> bool:
    """
    One purchase's settlement transaction. Returns False when it was already paid.
    Raises OutOfStockError before anything is committed.
    """
    if not ledger.mark_purchase_paid(db, purchase.id):
        db.rollback()
        return False

    if not ledger.decrement_inventory(db, purchase.course_id):
        raise OutOfStockError(purchase.course_id)

    ledger.upsert_enrollment(
        db,
        purchase.user_id,
        purchase.course_id,
        AccessType.PURCHASED,
        purchase_id=purchase.id,
    )
    ledger.insert_payment(db, purchase, payment_ref)
    db.commit()
    return True


def _queue_purchase_completed(
    db: Session, tasks: PostCommitTasks, purchase_id: int, user_id: int, course_id: int,
    email: Optional[str], course_title: str, amount_cents: int, currency: str,
) -> None:
    tasks.add(
        "activity.purchase_completed",
        lambda: ledger.record_activity(
            db, user_id, "purchase_completed", {"purchase_id": purchase_id, "course_id": course_id}
        ),
    )
    if email:
        tasks.add(
            "email.purchase_confirmation",
            lambda: notifications.send_purchase_confirmation(email, course_title, amount_cents, currency),
        )
        tasks.add(
            "email.enrollment",
            lambda: notifications.send_enrollment_email(email, course_title),
        )
    tasks.add(
        "analytics.purchase",
        lambda: analytics.track(
            "purchase", user_id, {"course_id": course_id, "amount_cents": amount_cents, "currency": currency}
        ),
    )


def settle_order(
    db: Session,
    provider_ref: str,
    outcome: CaptureOutcome,
    purchase_ids: Optional[Iterable[int]] = None,
) -> OrderSettlement:
    """
    Turn a PayPal capture outcome into paid purchases, exactly once per purchase.

    Each purchase sharing the order id is settled in its own transaction.
    A purchase already paid is skipped, a sold-out course rolls back only that
    purchase. Best-effort work runs once all transactions are done.
    """
    result = OrderSettlement(provider_ref=provider_ref)
    purchases = ledger.find_purchases_by_provider_ref(db, provider_ref, purchase_ids)

    if not purchases:
        logger.warning("No purchases found for PayPal order %s; ignoring", provider_ref)
        result.unknown = True
        return result

    tasks = PostCommitTasks()

    if not outcome.succeeded:
        result.failed = True
        logger.warning("PayPal order %s not captured (status=%s)", provider_ref, outcome.status)
        for purchase in purchases:
            if purchase.status == PurchaseStatus.PAID:
                continue
            email = purchase.user.email if purchase.user else None
            title = purchase.course.title if purchase.course else ""
            if email:
                tasks.add(
                    "email.purchase_failed",
                    lambda email=email, title=title: notifications.send_purchase_failed(
                        email, title, "Payment capture failed"
                    ),
                )
        tasks.run()
        return result

    payment_ref = outcome.capture_id or provider_ref

    try:
        for purchase in purchases:
            # Snapshot what the post-commit work needs; commit/rollback expires the instance.
            purchase_id = purchase.id
            user_id = purchase.user_id
            course_id = purchase.course_id
            email = purchase.user.email if purchase.user else None
            title = purchase.course.title if purchase.course else ""
            amount_cents = purchase.amount_cents
            currency = purchase.currency

            try:
                applied = _apply_paid(db, purchase, payment_ref)
            except OutOfStockError:
                db.rollback()
                logger.warning(
                    "Purchase %s not settled: course %s sold out (order %s)",
                    purchase_id, course_id, provider_ref,
                )
                result.out_of_stock.append(purchase_id)
                if email:
                    tasks.add(
                        "email.out_of_stock",
                        lambda email=email, title=title: notifications.send_out_of_stock(email, title),
                    )
                continue
            except Exception:
                db.rollback()
                raise

            if not applied:
                logger.info("Purchase %s already paid; skipping (order %s)", purchase_id, provider_ref)
                result.already_paid.append(purchase_id)
                continue

            logger.info("Purchase %s settled (order %s, payment ref %s)", purchase_id, provider_ref, payment_ref)
            result.settled.append(purchase_id)
            _queue_purchase_completed(
                db, tasks, purchase_id, user_id, course_id, email, title, amount_cents, currency
            )
    finally:
        tasks.run()

    return result


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------

def resolve_subscription(db: Session, resource: SubscriptionResource) -> Optional[Subscription]:
    """
    Find the local subscription for a PayPal subscription resource.

    custom_id carries our own id and is the source of truth. The PayPal id is
    only used when custom_id is absent or unknown.
    """
    by_local = None
    if resource.custom_id and resource.custom_id.isdigit():
        by_local = ledger.get_subscription(db, int(resource.custom_id))

    if by_local is not None:
        if resource.id and by_local.paypal_subscription_id and by_local.paypal_subscription_id != resource.id:
            logger.warning(
                "Subscription %s is linked to PayPal %s but event carries %s; trusting local id",
                by_local.id, by_local.paypal_subscription_id, resource.id,
            )
        elif resource.id and not by_local.paypal_subscription_id:
            by_local.paypal_subscription_id = resource.id
        return by_local

    if resource.id:
        return ledger.find_subscription_by_paypal_id(db, resource.id)
    return None


def _period_end(resource: SubscriptionResource, now: datetime) -> datetime:
    if resource.next_billing_time:
        return resource.next_billing_time
    return now + timedelta(days=settings.subscription_fallback_period_days)


def _retire_other_subscriptions(db: Session, subscription: Subscription, gateway) -> List[int]:
    """
    Move every other live subscription of the user to expired.
    Live PayPal agreements are cancelled first so the user is not billed twice.
    """
    retired = []
    for other in ledger.other_live_subscriptions(db, subscription.user_id, subscription.id):
        if other.status != SubscriptionStatus.PENDING and other.paypal_subscription_id:
            try:
                gateway.cancel_subscription(other.paypal_subscription_id, "Replaced by a new subscription")
            except paypal.PayPalError as e:
                logger.warning(
                    "Failed to cancel superseded PayPal subscription %s: %s",
                    other.paypal_subscription_id, e,
                )
        logger.info(
            "Retiring subscription %s (%s) for user %s after activation of %s",
            other.id, other.status.value, other.user_id, subscription.id,
        )
        other.status = SubscriptionStatus.EXPIRED
        other.cancel_at_period_end = False
        ledger.set_subscription_enrollments_expiry(db, other.id, _utcnow())
        db.commit()
        retired.append(other.id)
    return retired


def _activate(
    db: Session, subscription: Subscription, resource: SubscriptionResource, tasks: PostCommitTasks, gateway
) -> None:
    now = _utcnow()
    subscription.status = SubscriptionStatus.ACTIVE
    subscription.current_period_start = resource.start_time or now
    subscription.current_period_end = _period_end(resource, now)
    subscription.cancel_at_period_end = False

    current_plan = subscription.plan
    if resource.plan_id and (
        current_plan is None or resource.plan_id != current_plan.paypal_plan_id_for(subscription.interval)
    ):
        plan, interval = ledger.find_plan_by_paypal_plan_id(db, resource.plan_id)
        if plan is not None:
            logger.info(
                "Subscription %s moved to plan %s (%s)", subscription.id, plan.id, interval.value
            )
            subscription.plan_id = plan.id
            subscription.interval = interval
        else:
            logger.warning("Unknown PayPal plan %s on subscription %s", resource.plan_id, subscription.id)

    ledger.grant_subscription_enrollments(
        db, subscription.user_id, subscription.id, subscription.current_period_end
    )
    db.commit()

    _retire_other_subscriptions(db, subscription, gateway)

    user_id = subscription.user_id
    sub_id = subscription.id
    email = subscription.user.email if subscription.user else None
    plan_name = subscription.plan.name if subscription.plan else ""
    period_end = subscription.current_period_end
    tasks.add(
        "activity.subscription_activated",
        lambda: ledger.record_activity(db, user_id, "subscription_activated", {"subscription_id": sub_id}),
    )
    if email:
        tasks.add("email.subscription_welcome", lambda: notifications.send_subscription_welcome(email, plan_name, period_end))
        tasks.add("email.admin_subscription", lambda: notifications.notify_admin_new_subscription(email, plan_name))
    tasks.add(
        "analytics.subscription_activated",
        lambda: analytics.track("subscription_activated", user_id, {"subscription_id": sub_id, "plan": plan_name}),
    )


def _cancel(db: Session, subscription: Subscription, tasks: PostCommitTasks) -> None:
    subscription.status = SubscriptionStatus.CANCELLED
    subscription.cancel_at_period_end = True
    db.commit()

    user_id = subscription.user_id
    sub_id = subscription.id
    email = subscription.user.email if subscription.user else None
    plan_name = subscription.plan.name if subscription.plan else ""
    period_end = subscription.current_period_end
    tasks.add(
        "activity.subscription_cancelled",
        lambda: ledger.record_activity(db, user_id, "subscription_cancelled", {"subscription_id": sub_id}),
    )
    if email:
        tasks.add(
            "email.subscription_cancelled",
            lambda: notifications.send_subscription_cancelled(email, plan_name, period_end),
        )


def _expire(db: Session, subscription: Subscription, tasks: PostCommitTasks) -> None:
    subscription.status = SubscriptionStatus.EXPIRED
    subscription.cancel_at_period_end = False
    ledger.set_subscription_enrollments_expiry(db, subscription.id, _utcnow())
    db.commit()

    user_id = subscription.user_id
    sub_id = subscription.id
    tasks.add(
        "activity.subscription_expired",
        lambda: ledger.record_activity(db, user_id, "subscription_expired", {"subscription_id": sub_id}),
    )


def _confirms_active(
    event_type: str, subscription: Subscription, resource: SubscriptionResource, gateway
) -> bool:
    """
    UPDATED fires for every change, cancellations included, so it only means
    active when the resource says ACTIVE. An expired row is revived only when
    the payload says ACTIVE and PayPal still reports the agreement ACTIVE.
    """
    reviving = subscription.status == SubscriptionStatus.EXPIRED
    if event_type == paypal.SUBSCRIPTION_UPDATED or reviving:
        if resource.status != paypal.SUBSCRIPTION_ACTIVE:
            return False
    if not reviving or not resource.id:
        return True

    try:
        live = gateway.get_subscription(resource.id)
    except paypal.PayPalError as e:
        logger.warning("Could not confirm PayPal subscription %s before reactivation: %s", resource.id, e)
        return False
    return live.get("status") == paypal.SUBSCRIPTION_ACTIVE


def settle_subscription_event(
    db: Session,
    event_type: str,
    resource: SubscriptionResource,
    gateway=paypal,
) -> Optional[Subscription]:
    """
    Apply a PayPal subscription lifecycle event.

    Target states are overwrites, so a redelivered event converges to the same
    state. Transitions the state table forbids (a late CANCELLED after EXPIRED,
    say) are logged and skipped, as are UPDATED events whose resource is not
    ACTIVE and stale activations of an expired subscription. Returns the subscription, or None when the
    event was ignored or refers to an unknown subscription.
    """
    target = SUBSCRIPTION_EVENT_TARGETS.get(event_type)
    if target is None:
        logger.info("Ignoring PayPal subscription event %s", event_type)
        return None

    subscription = resolve_subscription(db, resource)
    if subscription is None:
        logger.warning(
            "No subscription found for PayPal %s (custom_id=%s); ignoring %s",
            resource.id, resource.custom_id, event_type,
        )
        return None

    if not can_transition(subscription.status, target):
        logger.warning(
            "Skipping %s for subscription %s: %s -> %s not allowed",
            event_type, subscription.id, subscription.status.value, target.value,
        )
        db.rollback()
        return subscription

    if target == SubscriptionStatus.ACTIVE and not _confirms_active(event_type, subscription, resource, gateway):
        logger.warning(
            "Skipping %s for subscription %s (%s): PayPal reports %s",
            event_type, subscription.id, subscription.status.value, resource.status,
        )
        db.rollback()
        return subscription

    tasks = PostCommitTasks()
    try:
        if target == SubscriptionStatus.ACTIVE:
            _activate(db, subscription, resource, tasks, gateway)
        elif target == SubscriptionStatus.CANCELLED:
            _cancel(db, subscription, tasks)
        else:
            _expire(db, subscription, tasks)
    except Exception:
        db.rollback()
        raise
    finally:
        tasks.run()

    logger.info("Subscription %s is now %s after %s", subscription.id, target.value, event_type)
    return subscription


def settle_recurring_payment(
    db: Session,
    provider_subscription_id: str,
    amount_cents: int,
    currency: str,
    provider_sale_id: Optional[str],
    gateway=paypal,
) -> Optional[Subscription]:
    """
    Record a renewal charge and extend the billing period.

    The charge row is committed before PayPal is asked for the next billing
    time. If that lookup fails the period stays as it is and the next delivery
    of the same sale extends it; the sale id keeps the charge from being
    recorded twice.
    """
    subscription = ledger.find_subscription_by_paypal_id(db, provider_subscription_id)
    if subscription is None:
        logger.warning("Recurring payment for unknown PayPal subscription %s; ignoring", provider_subscription_id)
        return None

    try:
        if provider_sale_id and ledger.subscription_payment_exists(db, provider_sale_id):
            logger.info("Sale %s already recorded for subscription %s", provider_sale_id, subscription.id)
        else:
            ledger.append_subscription_payment(db, subscription.id, amount_cents, currency, provider_sale_id)
            db.commit()
    except Exception:
        db.rollback()
        raise

    try:
        detail = SubscriptionResource.model_validate(gateway.get_subscription(provider_subscription_id))
    except paypal.PayPalError as e:
        logger.warning(
            "Could not fetch PayPal subscription %s after sale %s; period left unchanged: %s",
            provider_subscription_id, provider_sale_id, e,
        )
        return subscription

    if not detail.next_billing_time:
        logger.warning("PayPal subscription %s has no next billing time", provider_subscription_id)
        return subscription

    if not can_transition(subscription.status, SubscriptionStatus.ACTIVE):
        logger.warning(
            "Sale %s on subscription %s in status %s; period not extended",
            provider_sale_id, subscription.id, subscription.status.value,
        )
        return subscription

    try:
        subscription.status = SubscriptionStatus.ACTIVE
        subscription.current_period_end = detail.next_billing_time
        ledger.set_subscription_enrollments_expiry(db, subscription.id, detail.next_billing_time)
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        "Subscription %s renewed until %s (sale %s)",
        subscription.id, detail.next_billing_time.isoformat(), provider_sale_id,
    )

    tasks = PostCommitTasks()
    user_id = subscription.user_id
    sub_id = subscription.id
    tasks.add(
        "analytics.subscription_renewed",
        lambda: analytics.track(
            "subscription_renewed", user_id,
            {"subscription_id": sub_id, "amount_cents": amount_cents, "currency": currency},
        ),
    )
    tasks.run()
    return subscription
