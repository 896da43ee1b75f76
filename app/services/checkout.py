"""
Cart checkout: pending purchases plus one PayPal order for the whole cart.
"""
import logging
from typing import List, Sequence, Tuple

from sqlalchemy.orm import Session

from app.config import settings
from app.integrations import paypal
from app.models.course import Course
from app.models.enrollment import AccessType
from app.models.purchase import Purchase, PurchaseStatus
from app.models.user import User
from app.services import ledger

logger = logging.getLogger(__name__)


class CheckoutError(Exception):
    """Checkout rejected; status_code is what the router answers with"""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def _owned(db: Session, user_id: int, course_id: int, purchase: Purchase = None) -> bool:
    if purchase is not None and purchase.status == PurchaseStatus.PAID:
        return True
    enrollment = ledger.find_enrollment(db, user_id, course_id)
    return enrollment is not None and enrollment.access_type == AccessType.PURCHASED


def create_cart_checkout(
    db: Session,
    user: User,
    course_ids: Sequence[int],
    gateway=paypal,
) -> Tuple[str, str, List[int]]:
    """
    Create (or refresh) pending purchases for the cart and one PayPal order.

    Courses the user already owns are dropped from the cart. Returns
    (order_id, approval_url, purchase_ids).
    """
    wanted = list(dict.fromkeys(course_ids))
    courses = db.query(Course).filter(Course.id.in_(wanted), Course.is_published.is_(True)).all()
    by_id = {c.id: c for c in courses}
    missing = [cid for cid in wanted if cid not in by_id]
    if missing:
        raise CheckoutError(f"Course not found: {missing[0]}", status_code=404)

    existing = {
        p.course_id: p
        for p in db.query(Purchase).filter(Purchase.user_id == user.id, Purchase.course_id.in_(wanted)).all()
    }

    to_buy = [by_id[cid] for cid in wanted if not _owned(db, user.id, cid, existing.get(cid))]
    if not to_buy:
        raise CheckoutError("You already own every course in the cart")

    for course in to_buy:
        if course.inventory is not None and course.inventory <= 0:
            raise CheckoutError(f"{course.title} is sold out")

    currencies = {course.currency.lower() for course in to_buy}
    if len(currencies) > 1:
        raise CheckoutError("Cart contains courses priced in different currencies")
    currency = currencies.pop()

    purchases = []
    for course in to_buy:
        purchase = existing.get(course.id)
        if purchase is None:
            purchase = Purchase(user_id=user.id, course_id=course.id)
            db.add(purchase)
        purchase.amount_cents = course.price_cents
        purchase.currency = course.currency
        purchase.status = PurchaseStatus.PENDING
        purchase.provider = "paypal"
        purchases.append(purchase)
    db.commit()

    purchase_ids = [p.id for p in purchases]
    total = sum(p.amount_cents for p in purchases)
    ids_param = ",".join(str(pid) for pid in purchase_ids)

    try:
        order_id, approval_url = gateway.create_order(
            total,
            currency,
            return_url=f"{settings.base_url}/payments/paypal/capture?purchases={ids_param}",
            cancel_url=f"{settings.base_url}/cart?checkout=cancelled",
            custom_id=ids_param[:127],
        )
    except paypal.PayPalError as e:
        logger.error("PayPal order creation failed for user %s: %s", user.id, e)
        raise CheckoutError("Payment provider unavailable, please try again", status_code=502) from e

    for purchase in purchases:
        purchase.provider_ref = order_id
    db.commit()

    logger.info(
        "Created PayPal order %s for user %s (purchases %s, %s %s)",
        order_id, user.id, purchase_ids, total, currency,
    )
    return order_id, approval_url, purchase_ids
