"""
Ledger data access used by the settlement engine.

Status changes and inventory decrements are single conditional UPDATE
statements: the WHERE clause carries the precondition, the row count tells the
caller whether it won. On PostgreSQL the UPDATE row lock serialises two
settlements of the same row and the loser re-evaluates the WHERE clause against
the committed value.

None of these helpers commit; the caller owns the transaction.
"""
import logging
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.models.activity_log import ActivityLog
from app.models.course import Course
from app.models.enrollment import Enrollment, AccessType
from app.models.purchase import Purchase, PurchaseStatus, Payment
from app.models.subscription import (
    Subscription,
    SubscriptionPlan,
    SubscriptionPayment,
    SubscriptionStatus,
    SubscriptionInterval,
    NON_TERMINAL_STATUSES,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Purchases
# ---------------------------------------------------------------------------

def find_purchases_by_provider_ref(
    db: Session,
    provider_ref: str,
    purchase_ids: Optional[Iterable[int]] = None,
) -> List[Purchase]:
    """All purchases sharing a PayPal order id, optionally narrowed to local ids."""
    query = db.query(Purchase).filter(Purchase.provider_ref == provider_ref)
    if purchase_ids:
        query = query.filter(Purchase.id.in_(list(purchase_ids)))
    return query.order_by(Purchase.id).all()


def mark_purchase_paid(db: Session, purchase_id: int) -> bool:
    """
    pending → paid compare-and-set.
    Returns False when the purchase was already paid (someone else won).
    """
    result = db.execute(
        update(Purchase)
        .where(Purchase.id == purchase_id, Purchase.status != PurchaseStatus.PAID)
        .values(status=PurchaseStatus.PAID)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def decrement_inventory(db: Session, course_id: int) -> bool:
    """
    Take one seat from a finite-inventory course.
    Returns True when a seat was taken or the course is unlimited, False when sold out.
    """
    result = db.execute(
        update(Course)
        .where(Course.id == course_id, Course.inventory.isnot(None), Course.inventory > 0)
        .values(inventory=Course.inventory - 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        return True
    remaining = db.query(Course.inventory).filter(Course.id == course_id).scalar()
    return remaining is None


def insert_payment(db: Session, purchase: Purchase, provider_ref: str) -> Payment:
    payment = Payment(
        user_id=purchase.user_id,
        purchase_id=purchase.id,
        provider=purchase.provider or "paypal",
        provider_ref=provider_ref,
        amount_cents=purchase.amount_cents,
        currency=purchase.currency,
        status=PurchaseStatus.PAID.value,
    )
    db.add(payment)
    db.flush()
    return payment


# ---------------------------------------------------------------------------
# Enrollments
# ---------------------------------------------------------------------------

def _dialect_insert(db: Session):
    name = db.get_bind().dialect.name
    if name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
        return insert
    if name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
        return insert
    return None


def upsert_enrollment(
    db: Session,
    user_id: int,
    course_id: int,
    access_type: AccessType,
    purchase_id: Optional[int] = None,
    subscription_id: Optional[int] = None,
    expires_at: Optional[datetime] = None,
) -> None:
    """
    Insert or update the (user, course) enrollment.

    Purchased access always wins: a subscription grant never overwrites a
    purchased enrollment, while a purchase overwrites a subscription one.
    """
    values = {
        "access_type": access_type,
        "purchase_id": purchase_id,
        "subscription_id": subscription_id,
        "expires_at": expires_at,
    }
    insert = _dialect_insert(db)

    if insert is not None:
        table = Enrollment.__table__
        stmt = insert(table).values(user_id=user_id, course_id=course_id, **values)
        where = None
        if access_type == AccessType.SUBSCRIPTION:
            where = table.c.access_type != AccessType.PURCHASED
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.user_id, table.c.course_id],
            set_=values,
            where=where,
        )
        db.execute(stmt)
        return

    existing = db.query(Enrollment).filter(
        Enrollment.user_id == user_id,
        Enrollment.course_id == course_id,
    ).with_for_update().first()
    if existing is None:
        db.add(Enrollment(user_id=user_id, course_id=course_id, **values))
    elif access_type == AccessType.PURCHASED or existing.access_type != AccessType.PURCHASED:
        for key, value in values.items():
            setattr(existing, key, value)
    db.flush()


def grant_subscription_enrollments(
    db: Session, user_id: int, subscription_id: int, expires_at: Optional[datetime]
) -> int:
    """Enroll the user in every published course through the subscription."""
    course_ids = [row[0] for row in db.query(Course.id).filter(Course.is_published.is_(True)).all()]
    for course_id in course_ids:
        upsert_enrollment(
            db,
            user_id,
            course_id,
            AccessType.SUBSCRIPTION,
            subscription_id=subscription_id,
            expires_at=expires_at,
        )
    return len(course_ids)


def set_subscription_enrollments_expiry(db: Session, subscription_id: int, expires_at: datetime) -> int:
    result = db.execute(
        update(Enrollment)
        .where(
            Enrollment.subscription_id == subscription_id,
            Enrollment.access_type == AccessType.SUBSCRIPTION,
        )
        .values(expires_at=expires_at)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def find_enrollment(db: Session, user_id: int, course_id: int) -> Optional[Enrollment]:
    return db.query(Enrollment).filter(
        Enrollment.user_id == user_id,
        Enrollment.course_id == course_id,
    ).first()


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------

def get_subscription(db: Session, subscription_id: int) -> Optional[Subscription]:
    return db.query(Subscription).filter(Subscription.id == subscription_id).first()


def find_subscription_by_paypal_id(db: Session, paypal_subscription_id: str) -> Optional[Subscription]:
    return db.query(Subscription).filter(
        Subscription.paypal_subscription_id == paypal_subscription_id
    ).first()


def other_live_subscriptions(db: Session, user_id: int, exclude_id: int) -> List[Subscription]:
    return (
        db.query(Subscription)
        .filter(
            Subscription.user_id == user_id,
            Subscription.id != exclude_id,
            Subscription.status.in_(NON_TERMINAL_STATUSES),
        )
        .order_by(Subscription.id)
        .all()
    )


def find_plan_by_paypal_plan_id(
    db: Session, paypal_plan_id: str
) -> Tuple[Optional[SubscriptionPlan], Optional[SubscriptionInterval]]:
    plan = db.query(SubscriptionPlan).filter(
        SubscriptionPlan.paypal_monthly_plan_id == paypal_plan_id
    ).first()
    if plan:
        return plan, SubscriptionInterval.MONTH
    plan = db.query(SubscriptionPlan).filter(
        SubscriptionPlan.paypal_annual_plan_id == paypal_plan_id
    ).first()
    if plan:
        return plan, SubscriptionInterval.YEAR
    return None, None


def subscription_payment_exists(db: Session, provider_sale_id: str) -> bool:
    return db.query(SubscriptionPayment.id).filter(
        SubscriptionPayment.provider_sale_id == provider_sale_id
    ).first() is not None


def append_subscription_payment(
    db: Session,
    subscription_id: int,
    amount_cents: int,
    currency: str,
    provider_sale_id: Optional[str],
) -> SubscriptionPayment:
    row = SubscriptionPayment(
        subscription_id=subscription_id,
        provider_sale_id=provider_sale_id,
        amount_cents=amount_cents,
        currency=currency,
    )
    db.add(row)
    db.flush()
    return row


# ---------------------------------------------------------------------------
# Activity log
# ---------------------------------------------------------------------------

def record_activity(db: Session, user_id: int, activity_type: str, details: dict) -> ActivityLog:
    """Write one activity row in its own transaction. Used after settlement commits."""
    entry = ActivityLog(user_id=user_id, type=activity_type, details=details)
    db.add(entry)
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    return entry
