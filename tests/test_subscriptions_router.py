"""Integration tests for /subscriptions endpoints (app/routers/subscriptions.py)"""
from unittest.mock import Mock, patch

from app.models import Subscription, SubscriptionInterval, SubscriptionStatus
from app.services.checkout import CheckoutError
from app.services.subscription_state import InvalidSubscriptionTransition


def _subscription(status=SubscriptionStatus.CANCELLED):
    sub = Mock(spec=Subscription)
    sub.id = 11
    sub.plan_id = 2
    sub.status = status
    sub.interval = SubscriptionInterval.MONTH
    sub.paypal_subscription_id = "I-1"
    sub.current_period_end = None
    sub.cancel_at_period_end = status == SubscriptionStatus.CANCELLED
    return sub


class TestSubscriptionCheckout:
    def test_returns_approval_url(self, client_with_user):
        client, mock_db, mock_user = client_with_user
        with patch("app.routers.subscriptions.subscription_service.create_subscription_checkout",
                   return_value=(_subscription(SubscriptionStatus.PENDING), "https://paypal/sub")) as mock_create:
            response = client.post("/subscriptions/checkout", json={"plan_id": 2, "interval": "year"})

        assert response.status_code == 201
        assert response.json() == {"subscription_id": 11, "approval_url": "https://paypal/sub"}
        mock_create.assert_called_once_with(mock_db, mock_user, 2, SubscriptionInterval.YEAR)

    def test_invalid_interval(self, client_with_user):
        client, _, _ = client_with_user
        response = client.post("/subscriptions/checkout", json={"plan_id": 2, "interval": "weekly"})
        assert response.status_code == 422

    def test_duplicate_is_400(self, client_with_user):
        client, _, _ = client_with_user
        with patch("app.routers.subscriptions.subscription_service.create_subscription_checkout",
                   side_effect=CheckoutError("You already have an active subscription to this plan")):
            response = client.post("/subscriptions/checkout", json={"plan_id": 2})
        assert response.status_code == 400


class TestCancelReactivate:
    def test_cancel(self, client_with_user):
        client, _, _ = client_with_user
        with patch("app.routers.subscriptions.subscription_service.cancel_subscription",
                   return_value=_subscription()):
            response = client.post("/subscriptions/11/cancel")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "cancelled"
        assert data["cancel_at_period_end"] is True

    def test_cancel_invalid_transition_is_400(self, client_with_user):
        client, _, _ = client_with_user
        with patch("app.routers.subscriptions.subscription_service.cancel_subscription",
                   side_effect=InvalidSubscriptionTransition(SubscriptionStatus.EXPIRED, SubscriptionStatus.CANCELLED)):
            response = client.post("/subscriptions/11/cancel")

        assert response.status_code == 400
        assert "INVALID_STATE_TRANSITION" in response.json()["detail"]

    def test_reactivate_not_found(self, client_with_user):
        client, _, _ = client_with_user
        with patch("app.routers.subscriptions.subscription_service.reactivate_subscription",
                   side_effect=CheckoutError("Cancelled subscription not found or expired", 404)):
            response = client.post("/subscriptions/11/reactivate")

        assert response.status_code == 404

    def test_reactivate(self, client_with_user):
        client, _, _ = client_with_user
        with patch("app.routers.subscriptions.subscription_service.reactivate_subscription",
                   return_value=_subscription(SubscriptionStatus.ACTIVE)):
            response = client.post("/subscriptions/11/reactivate")

        assert response.status_code == 200
        assert response.json()["status"] == "active"
