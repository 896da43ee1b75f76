# Database models
from .base import Base
from .user import User
from .course import Course
from .purchase import Purchase, PurchaseStatus, Payment
from .enrollment import Enrollment, AccessType
from .subscription import (
    Subscription,
    SubscriptionPlan,
    SubscriptionPayment,
    SubscriptionStatus,
    SubscriptionInterval,
    NON_TERMINAL_STATUSES,
)
from .activity_log import ActivityLog
from .webhook_event import WebhookEvent, WebhookEventStatus

__all__ = [
    "Base",
    "User",
    "Course",
    "Purchase",
    "PurchaseStatus",
    "Payment",
    "Enrollment",
    "AccessType",
    "Subscription",
    "SubscriptionPlan",
    "SubscriptionPayment",
    "SubscriptionStatus",
    "SubscriptionInterval",
    "NON_TERMINAL_STATUSES",
    "ActivityLog",
    "WebhookEvent",
    "WebhookEventStatus",
]
