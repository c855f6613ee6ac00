"""Celery task definitions for background maintenance."""

from celery import Celery
from celery.schedules import crontab

from storefront.config import settings

celery_app = Celery(
    "storefront",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
)

# Periodic beat schedule
celery_app.conf.beat_schedule = {
    "expire-pending-2fa-setups": {
        "task": "storefront.tasks.two_factor_tasks.expire_pending_setups",
        "schedule": crontab(minute="*/15"),  # Every 15 minutes
    },
}

# Import tasks so they get registered
from storefront.tasks.two_factor_tasks import *  # noqa
