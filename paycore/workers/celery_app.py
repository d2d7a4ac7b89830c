"""
Celery application configuration.
"""

from celery import Celery
from celery.schedules import crontab

from paycore.config import settings
from paycore.logging_config import configure_logging

configure_logging()

# Create Celery app
celery_app = Celery(
    "paycore",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "paycore.workers.settlement",
        "paycore.workers.payment_expiry",
        "paycore.workers.webhook_retry",
        "paycore.workers.notifications",
    ],
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes
    worker_prefetch_multiplier=1,
    task_acks_late=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    # Mature pending earnings every hour
    "hourly-settlement": {
        "task": "paycore.workers.settlement.mature_earnings",
        "schedule": crontab(minute=0, hour="*"),
    },
    # Cancel payments past their provider deadline
    "payment-expiry-sweep": {
        "task": "paycore.workers.payment_expiry.expire_stale_payments",
        "schedule": crontab(minute="*/15"),
    },
    # Re-drive webhook events that failed while being applied
    "webhook-retry": {
        "task": "paycore.workers.webhook_retry.retry_failed_webhooks",
        "schedule": crontab(minute="*/5"),
    },
}
