from celery import Celery
from celery.schedules import crontab

from app.config import settings

# Create Celery app
celery_app = Celery(
    "course_payments",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["app.tasks"],
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,
    task_soft_time_limit=270,
    worker_prefetch_multiplier=1,
)

celery_app.conf.beat_schedule = {
    "expire-abandoned-subscriptions-hourly": {
        "task": "app.tasks.expire_abandoned_subscriptions",
        "schedule": crontab(minute=0),  # every hour on the hour
        "args": [],
    },
    "refresh-pending-subscriptions": {
        "task": "app.tasks.refresh_pending_subscriptions",
        "schedule": crontab(minute="*/15"),
        "args": [],
    },
}
