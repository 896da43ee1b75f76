from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel

from app.integrations import paypal


class WebhookCategory(str, Enum):
    """Closed set of webhook shapes the receiver knows how to route"""
    ORDER = "order"
    SUBSCRIPTION = "subscription"
    RECURRING_PAYMENT = "recurring_payment"
    IGNORED = "ignored"


def classify(event_type: str) -> WebhookCategory:
    if event_type in paypal.ORDER_EVENTS:
        return WebhookCategory.ORDER
    if event_type in paypal.SUBSCRIPTION_EVENTS:
        return WebhookCategory.SUBSCRIPTION
    if event_type in paypal.RECURRING_EVENTS:
        return WebhookCategory.RECURRING_PAYMENT
    return WebhookCategory.IGNORED


class PayPalWebhookEvent(BaseModel):
    """PayPal webhook envelope. The resource is decoded per category."""
    id: Optional[str] = None
    event_type: str = ""
    resource_type: Optional[str] = None
    resource: Dict[str, Any] = {}

    class Config:
        extra = "allow"

    @property
    def category(self) -> WebhookCategory:
        return classify(self.event_type)


class RelatedIds(BaseModel):
    order_id: Optional[str] = None

    class Config:
        extra = "allow"


class SupplementaryData(BaseModel):
    related_ids: RelatedIds = RelatedIds()

    class Config:
        extra = "allow"


class CaptureResource(BaseModel):
    """resource of PAYMENT.CAPTURE.COMPLETED"""
    id: str
    status: str = ""
    custom_id: Optional[str] = None
    supplementary_data: SupplementaryData = SupplementaryData()

    class Config:
        extra = "allow"

    @property
    def order_id(self) -> str:
        return self.supplementary_data.related_ids.order_id or self.id


class OrderResource(BaseModel):
    """resource of CHECKOUT.ORDER.APPROVED"""
    id: str
    status: str = ""

    class Config:
        extra = "allow"


class BillingInfo(BaseModel):
    next_billing_time: Optional[datetime] = None

    class Config:
        extra = "allow"


class SubscriptionResource(BaseModel):
    """resource of BILLING.SUBSCRIPTION.*, also the shape of GET /v1/billing/subscriptions/{id}"""
    id: Optional[str] = None
    status: Optional[str] = None
    plan_id: Optional[str] = None
    custom_id: Optional[str] = None
    start_time: Optional[datetime] = None
    billing_info: Optional[BillingInfo] = None

    class Config:
        extra = "allow"

    @property
    def next_billing_time(self) -> Optional[datetime]:
        if self.billing_info is None:
            return None
        return self.billing_info.next_billing_time


class SaleAmount(BaseModel):
    total: Decimal = Decimal("0")
    currency: str = "USD"

    class Config:
        extra = "allow"


class SaleResource(BaseModel):
    """resource of PAYMENT.SALE.COMPLETED"""
    id: Optional[str] = None
    billing_agreement_id: Optional[str] = None
    amount: SaleAmount = SaleAmount()

    class Config:
        extra = "allow"

    @property
    def amount_cents(self) -> int:
        return int((self.amount.total * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    @property
    def currency(self) -> str:
        return self.amount.currency


class WebhookResponse(BaseModel):
    received: bool = True
