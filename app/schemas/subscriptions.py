from pydantic import BaseModel
from typing import Optional
from datetime import datetime

from app.models.subscription import SubscriptionInterval, SubscriptionStatus


class SubscriptionCheckoutRequest(BaseModel):
    plan_id: int
    interval: SubscriptionInterval = SubscriptionInterval.MONTH


class SubscriptionCheckoutResponse(BaseModel):
    subscription_id: int
    approval_url: str


class SubscriptionResponse(BaseModel):
    id: int
    plan_id: int
    status: SubscriptionStatus
    interval: SubscriptionInterval
    paypal_subscription_id: Optional[str] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False

    class Config:
        from_attributes = True
