"""
Subscription checkout and self-service cancel / reactivate.
"""
import logging
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.auth.dependencies import get_current_user
from app.database import get_db
from app.models.user import User
from app.schemas.subscriptions import (
    SubscriptionCheckoutRequest,
    SubscriptionCheckoutResponse,
    SubscriptionResponse,
)
from app.services import subscriptions as subscription_service
from app.services.checkout import CheckoutError
from app.services.subscription_state import InvalidSubscriptionTransition

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["Subscriptions"])


@router.post("/checkout", response_model=SubscriptionCheckoutResponse, status_code=status.HTTP_201_CREATED)
def subscription_checkout(
    data: SubscriptionCheckoutRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    try:
        subscription, approval_url = subscription_service.create_subscription_checkout(
            db, current_user, data.plan_id, data.interval
        )
    except CheckoutError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return SubscriptionCheckoutResponse(subscription_id=subscription.id, approval_url=approval_url)


@router.post("/{subscription_id}/cancel", response_model=SubscriptionResponse)
def cancel_subscription(
    subscription_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    try:
        return subscription_service.cancel_subscription(db, current_user, subscription_id)
    except CheckoutError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except InvalidSubscriptionTransition as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.post("/{subscription_id}/reactivate", response_model=SubscriptionResponse)
def reactivate_subscription(
    subscription_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    try:
        return subscription_service.reactivate_subscription(db, current_user, subscription_id)
    except CheckoutError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
