"""
PayPal capture callback.

PayPal sends the buyer's browser here after approval. The order is captured and
settled, and the browser is always redirected; it never sees JSON or an error.
"""
import logging
from typing import List, Optional
from fastapi import APIRouter, Depends, status
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from app.config import settings
from app.database import get_db
from app.integrations import paypal
from app.models.purchase import PurchaseStatus
from app.services import ledger
from app.services.settlement import CaptureOutcome, settle_order

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["Payments"])


def _redirect(path: str) -> RedirectResponse:
    return RedirectResponse(url=f"{settings.base_url}{path}", status_code=status.HTTP_302_FOUND)


def _parse_ids(raw: Optional[str]) -> List[int]:
    if not raw:
        return []
    return [int(part) for part in raw.split(",") if part.strip().isdigit()]


@router.get("/paypal/capture")
def paypal_capture_callback(
    token: Optional[str] = None,
    purchases: Optional[str] = None,
    db: Session = Depends(get_db),
):
    if not token:
        return _redirect("/courses")

    purchase_ids = _parse_ids(purchases) or None
    rows = ledger.find_purchases_by_provider_ref(db, token, purchase_ids)
    if not rows:
        logger.warning("Capture callback for unknown PayPal order %s", token)
        return _redirect("/courses")

    if len(rows) == 1:
        slug = rows[0].course.slug
        success = f"/library/{slug}?checkout=success"
        failed = f"/courses/{slug}?checkout=failed"
    else:
        success = "/library?checkout=success"
        failed = "/cart?checkout=failed"

    if all(p.status == PurchaseStatus.PAID for p in rows):
        return _redirect(success)

    try:
        order = paypal.capture_order(token)
    except paypal.PayPalError as e:
        logger.error("PayPal capture failed for order %s: %s", token, e)
        # The webhook may have captured and settled the order in the meantime
        db.expire_all()
        rows = ledger.find_purchases_by_provider_ref(db, token, purchase_ids)
        if rows and all(p.status == PurchaseStatus.PAID for p in rows):
            return _redirect(success)
        return _redirect(failed)

    try:
        result = settle_order(db, token, CaptureOutcome.from_order(order), purchase_ids)
    except Exception:
        logger.exception("Settlement failed for PayPal order %s", token)
        return _redirect(failed)

    return _redirect(success if result.ok else failed)
