"""
Customer and admin notifications.

This is intentionally thin. The settlement engine decides when to notify;
this module only formats the message and hands it to the mailer.
"""
import logging
from datetime import datetime
from typing import Optional

from app.config import settings
from app.integrations import mailer

logger = logging.getLogger(__name__)


def _money(amount_cents: int, currency: str) -> str:
    return f"{amount_cents / 100:.2f} {currency.upper()}"


def _date(value: Optional[datetime]) -> str:
    return value.strftime("%B %d, %Y") if value else "the end of your billing period"


def send_purchase_confirmation(email: str, course_title: str, amount_cents: int, currency: str) -> bool:
    return mailer.send_email(
        email,
        f"Your purchase of {course_title}",
        f"Thanks for your purchase! We received {_money(amount_cents, currency)} for {course_title}.",
    )


def send_enrollment_email(email: str, course_title: str) -> bool:
    return mailer.send_email(
        email,
        f"You're enrolled in {course_title}",
        f"You now have access to {course_title}. Open your library at {settings.base_url}/library to start learning.",
    )


def send_purchase_failed(email: str, course_title: str, reason: str) -> bool:
    return mailer.send_email(
        email,
        f"Payment for {course_title} did not go through",
        f"We couldn't complete your payment for {course_title}: {reason}. You have not been charged.",
    )


def send_out_of_stock(email: str, course_title: str) -> bool:
    return mailer.send_email(
        email,
        f"{course_title} sold out",
        f"{course_title} sold out before your payment was confirmed. "
        "Our team will contact you about your payment.",
    )


def send_subscription_welcome(email: str, plan_name: str, period_end: Optional[datetime]) -> bool:
    return mailer.send_email(
        email,
        f"Welcome to {plan_name}",
        f"Your {plan_name} subscription is active. Your next billing date is {_date(period_end)}.",
    )


def send_subscription_cancelled(email: str, plan_name: str, period_end: Optional[datetime]) -> bool:
    return mailer.send_email(
        email,
        f"Your {plan_name} subscription was cancelled",
        f"You keep access to all subscription courses until {_date(period_end)}.",
    )


def notify_admin_new_subscription(user_email: str, plan_name: str) -> bool:
    if not settings.admin_email:
        logger.info("ADMIN_EMAIL not set, skipping admin subscription notification")
        return True
    return mailer.send_email(
        settings.admin_email,
        f"New {plan_name} subscriber",
        f"{user_email} subscribed to {plan_name}.",
    )
