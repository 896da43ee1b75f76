import logging
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.auth.dependencies import get_current_user
from app.database import get_db
from app.models.user import User
from app.schemas.checkout import CartCheckoutRequest, CheckoutResponse
from app.services.checkout import CheckoutError, create_cart_checkout

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/checkout", tags=["Checkout"])


@router.post("/cart", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED)
def checkout_cart(
    data: CartCheckoutRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Start a PayPal checkout for the courses in the cart."""
    try:
        order_id, approval_url, purchase_ids = create_cart_checkout(db, current_user, data.course_ids)
    except CheckoutError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return CheckoutResponse(order_id=order_id, approval_url=approval_url, purchase_ids=purchase_ids)
