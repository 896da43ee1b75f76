"""
PayPal REST API client.

Thin request/response translation: create/capture orders, create/get/cancel
subscriptions, verify webhook signatures. No business logic and no retries;
callers decide what a failure means. The only state is the OAuth2 access token,
cached in Redis.
"""
import base64
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

import requests

from app.config import settings

logger = logging.getLogger(__name__)

_TOKEN_CACHE_KEY = "paypal:access_token"

COMPLETED = "COMPLETED"
SUBSCRIPTION_ACTIVE = "ACTIVE"

# Webhook event types we act on
PAYMENT_CAPTURE_COMPLETED = "PAYMENT.CAPTURE.COMPLETED"
CHECKOUT_ORDER_APPROVED = "CHECKOUT.ORDER.APPROVED"
SUBSCRIPTION_ACTIVATED = "BILLING.SUBSCRIPTION.ACTIVATED"
SUBSCRIPTION_UPDATED = "BILLING.SUBSCRIPTION.UPDATED"
SUBSCRIPTION_CANCELLED = "BILLING.SUBSCRIPTION.CANCELLED"
SUBSCRIPTION_EXPIRED = "BILLING.SUBSCRIPTION.EXPIRED"
SUBSCRIPTION_SUSPENDED = "BILLING.SUBSCRIPTION.SUSPENDED"
PAYMENT_SALE_COMPLETED = "PAYMENT.SALE.COMPLETED"

ORDER_EVENTS = {PAYMENT_CAPTURE_COMPLETED, CHECKOUT_ORDER_APPROVED}
SUBSCRIPTION_EVENTS = {
    SUBSCRIPTION_ACTIVATED,
    SUBSCRIPTION_UPDATED,
    SUBSCRIPTION_CANCELLED,
    SUBSCRIPTION_EXPIRED,
    SUBSCRIPTION_SUSPENDED,
}
RECURRING_EVENTS = {PAYMENT_SALE_COMPLETED}

SUPPORTED_EVENTS = ORDER_EVENTS | SUBSCRIPTION_EVENTS | RECURRING_EVENTS

# Headers PayPal sends with every webhook transmission
WEBHOOK_HEADERS = (
    "paypal-transmission-id",
    "paypal-transmission-time",
    "paypal-transmission-sig",
    "paypal-cert-url",
    "paypal-auth-algo",
)


class PayPalError(Exception):
    """Base class for every PayPal gateway failure"""


class PayPalConfigurationError(PayPalError):
    """Credentials or webhook id are not configured"""


class PayPalNetworkError(PayPalError):
    """Connection failure or timeout; the outcome at PayPal is unknown"""


class PayPalRejectedError(PayPalError):
    """PayPal answered with a non-2xx status"""

    def __init__(self, message: str, status_code: int, body: str = ""):
        super().__init__(f"{message} (HTTP {status_code})")
        self.status_code = status_code
        self.body = body


class WebhookSignatureError(PayPalError):
    """PayPal did not confirm the webhook transmission signature"""


def _credentials() -> str:
    if not settings.paypal_client_id or not settings.paypal_client_secret:
        raise PayPalConfigurationError("Missing PAYPAL_CLIENT_ID or PAYPAL_CLIENT_SECRET")
    return base64.b64encode(
        f"{settings.paypal_client_id}:{settings.paypal_client_secret}".encode()
    ).decode()


def _invalidate_token() -> None:
    try:
        from app.redis_client import get_redis_client
        get_redis_client().delete(_TOKEN_CACHE_KEY)
    except Exception as e:
        logger.warning("Failed to invalidate cached PayPal token: %s", e)


def get_access_token() -> str:
    """
    Get a valid PayPal OAuth2 access token, cached in Redis.

    Token is cached with TTL = expires_in - 300s to allow a safety margin.
    When Redis is unavailable a fresh token is fetched on every call.
    """
    credentials = _credentials()

    redis = None
    try:
        from app.redis_client import get_redis_client
        redis = get_redis_client()
        cached = redis.get(_TOKEN_CACHE_KEY)
        if cached:
            return cached
    except Exception as e:
        logger.warning("Redis unavailable for token cache: %s", e)
        redis = None

    try:
        resp = requests.post(
            f"{settings.paypal_api_base}/v1/oauth2/token",
            headers={
                "Authorization": f"Basic {credentials}",
                "Content-Type": "application/x-www-form-urlencoded",
            },
            data="grant_type=client_credentials",
            timeout=settings.paypal_timeout_seconds,
        )
    except requests.RequestException as e:
        raise PayPalNetworkError(f"PayPal token request failed: {e}") from e

    if not resp.ok:
        raise PayPalRejectedError("Failed to get PayPal access token", resp.status_code, resp.text)

    data = resp.json()
    token = data.get("access_token", "")
    expires_in = int(data.get("expires_in", 3600))

    if token and redis is not None:
        try:
            ttl = max(expires_in - 300, 60)
            redis.setex(_TOKEN_CACHE_KEY, ttl, token)
        except Exception as e:
            logger.warning("Failed to cache PayPal token in Redis: %s", e)

    return token


def _request(method: str, path: str, json: Optional[dict] = None, error_message: str = "PayPal request failed") -> Dict[str, Any]:
    """
    Authenticated JSON request against the PayPal API.

    A 401 invalidates the cached token and is retried once with a fresh one.
    """
    url = f"{settings.paypal_api_base}{path}"
    retried = False

    while True:
        token = get_access_token()
        try:
            resp = requests.request(
                method,
                url,
                headers={
                    "Authorization": f"Bearer {token}",
                    "Content-Type": "application/json",
                    "Accept": "application/json",
                },
                json=json,
                timeout=settings.paypal_timeout_seconds,
            )
        except requests.RequestException as e:
            raise PayPalNetworkError(f"{error_message}: {e}") from e

        if resp.status_code == 401 and not retried:
            logger.warning("PayPal token rejected (401), invalidating cache and retrying")
            _invalidate_token()
            retried = True
            continue

        if not resp.ok:
            logger.error("%s: %s %s", error_message, resp.status_code, resp.text)
            raise PayPalRejectedError(error_message, resp.status_code, resp.text)

        if resp.status_code == 204 or not resp.content:
            return {}
        return resp.json()


def _approval_url(data: dict) -> str:
    for link in data.get("links", []):
        if link.get("rel") == "approve":
            return link.get("href", "")
    raise PayPalRejectedError("Missing PayPal approval URL", 200, str(data))


def create_order(
    amount_cents: int,
    currency: str,
    return_url: str,
    cancel_url: str,
    custom_id: str,
) -> Tuple[str, str]:
    """Create a CAPTURE-intent order. Returns (order_id, approval_url)."""
    data = _request(
        "POST",
        "/v2/checkout/orders",
        json={
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "amount": {
                        "currency_code": currency.upper(),
                        "value": f"{amount_cents / 100:.2f}",
                    },
                    "custom_id": custom_id,
                }
            ],
            "application_context": {
                "return_url": return_url,
                "cancel_url": cancel_url,
            },
        },
        error_message="Failed to create PayPal order",
    )
    return data["id"], _approval_url(data)


def capture_order(order_id: str) -> Dict[str, Any]:
    """Capture an approved order. Returns PayPal's order representation."""
    return _request(
        "POST",
        f"/v2/checkout/orders/{order_id}/capture",
        error_message="Failed to capture PayPal order",
    )


def get_capture_id(order: Dict[str, Any]) -> Optional[str]:
    """First capture id of a captured order, if PayPal reported one"""
    try:
        return order["purchase_units"][0]["payments"]["captures"][0]["id"]
    except (KeyError, IndexError, TypeError):
        return None


def create_subscription(
    plan_id: str,
    return_url: str,
    cancel_url: str,
    custom_id: str,
    email: Optional[str] = None,
    name: Optional[str] = None,
) -> Tuple[str, str]:
    """Create a subscription on an existing billing plan. Returns (subscription_id, approval_url)."""
    body: Dict[str, Any] = {
        "plan_id": plan_id,
        "start_time": (datetime.now(timezone.utc) + timedelta(minutes=5)).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "quantity": "1",
        "custom_id": custom_id,
        "application_context": {
            "brand_name": settings.mail_from_name,
            "locale": "en-US",
            "shipping_preference": "NO_SHIPPING",
            "user_action": "SUBSCRIBE_NOW",
            "payment_method": {
                "payer_selected": "PAYPAL",
                "payee_preferred": "IMMEDIATE_PAYMENT_REQUIRED",
            },
            "return_url": return_url,
            "cancel_url": cancel_url,
        },
    }
    if email:
        body["subscriber"] = {"email_address": email, "name": {"given_name": name or "Customer"}}

    data = _request(
        "POST",
        "/v1/billing/subscriptions",
        json=body,
        error_message="Failed to create PayPal subscription",
    )
    return data["id"], _approval_url(data)


def get_subscription(subscription_id: str) -> Dict[str, Any]:
    return _request(
        "GET",
        f"/v1/billing/subscriptions/{subscription_id}",
        error_message="Failed to fetch PayPal subscription",
    )


def cancel_subscription(subscription_id: str, reason: str = "Customer requested cancellation") -> None:
    _request(
        "POST",
        f"/v1/billing/subscriptions/{subscription_id}/cancel",
        json={"reason": reason},
        error_message="Failed to cancel PayPal subscription",
    )


def verify_webhook_signature(
    transmission_id: str,
    transmission_time: str,
    transmission_sig: str,
    cert_url: str,
    auth_algo: str,
    webhook_event: dict,
) -> None:
    """
    Ask PayPal to verify a webhook transmission.

    Raises WebhookSignatureError unless PayPal answers SUCCESS.
    """
    if not settings.paypal_webhook_id:
        raise PayPalConfigurationError("Missing PAYPAL_WEBHOOK_ID")

    data = _request(
        "POST",
        "/v1/notifications/verify-webhook-signature",
        json={
            "transmission_id": transmission_id,
            "transmission_time": transmission_time,
            "cert_url": cert_url,
            "auth_algo": auth_algo,
            "transmission_sig": transmission_sig,
            "webhook_id": settings.paypal_webhook_id,
            "webhook_event": webhook_event,
        },
        error_message="Failed to verify PayPal webhook signature",
    )
    if data.get("verification_status") != "SUCCESS":
        raise WebhookSignatureError(
            f"Webhook verification status: {data.get('verification_status')}"
        )
