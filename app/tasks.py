"""
Celery tasks for the subscription sweeps

Tasks:
- expire_abandoned_subscriptions: pending subscriptions never approved → expired
- refresh_pending_subscriptions: activate pending subscriptions PayPal reports ACTIVE
"""
import logging

from app.celery_app import celery_app
from app.database import SessionLocal
from app.services import subscriptions as subscription_service

logger = logging.getLogger(__name__)


@celery_app.task(name="app.tasks.expire_abandoned_subscriptions", bind=True, max_retries=1)
def expire_abandoned_subscriptions(self):
    db = SessionLocal()
    try:
        expired = subscription_service.expire_abandoned_subscriptions(db)
        return {"expired": expired}
    except Exception as e:
        db.rollback()
        logger.error("expire_abandoned_subscriptions failed: %s", e)
        if self.request.retries < self.max_retries:
            raise self.retry(exc=e, countdown=60)
        return {"error": str(e)}
    finally:
        db.close()


@celery_app.task(name="app.tasks.refresh_pending_subscriptions", bind=True, max_retries=0)
def refresh_pending_subscriptions(self):
    """Backstop for a lost BILLING.SUBSCRIPTION.ACTIVATED webhook."""
    db = SessionLocal()
    try:
        activated = subscription_service.refresh_pending_subscriptions(db)
        return {"activated": activated}
    except Exception as e:
        db.rollback()
        logger.error("refresh_pending_subscriptions failed: %s", e)
        return {"error": str(e)}
    finally:
        db.close()
