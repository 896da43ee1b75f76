"""Tests for Celery sweep tasks (app/tasks.py)"""
from unittest.mock import MagicMock, patch

from app.celery_app import celery_app
from app.tasks import expire_abandoned_subscriptions, refresh_pending_subscriptions


def test_beat_schedule_registers_sweeps():
    tasks = {entry["task"] for entry in celery_app.conf.beat_schedule.values()}
    assert tasks == {"app.tasks.expire_abandoned_subscriptions", "app.tasks.refresh_pending_subscriptions"}


@patch("app.tasks.SessionLocal")
@patch("app.tasks.subscription_service")
def test_expire_task_closes_session(mock_service, mock_session_local):
    db = MagicMock()
    mock_session_local.return_value = db
    mock_service.expire_abandoned_subscriptions.return_value = 3

    assert expire_abandoned_subscriptions.run() == {"expired": 3}
    mock_service.expire_abandoned_subscriptions.assert_called_once_with(db)
    db.close.assert_called_once()


@patch("app.tasks.SessionLocal")
@patch("app.tasks.subscription_service")
def test_refresh_task_reports_errors(mock_service, mock_session_local):
    db = MagicMock()
    mock_session_local.return_value = db
    mock_service.refresh_pending_subscriptions.side_effect = RuntimeError("db down")

    assert refresh_pending_subscriptions.run() == {"error": "db down"}
    db.rollback.assert_called_once()
    db.close.assert_called_once()
