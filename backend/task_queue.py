import os

from celery import Celery
from celery.schedules import crontab


def _env_url(name: str, default: str) -> str:
    raw = (os.environ.get(name) or "").strip()
    return raw or default


_default_redis_url = _env_url("REDIS_URL", "redis://localhost:6379/0")
REDIS_BROKER_URL = _env_url("REDIS_BROKER_URL", _default_redis_url)
REDIS_RESULT_BACKEND = _env_url("REDIS_RESULT_BACKEND", REDIS_BROKER_URL)
EXPIRY_REMINDER_HOUR = int(os.environ.get("EXPIRY_REMINDER_HOUR", "9"))

celery_app = Celery(
    "dvision_tasks",
    broker=REDIS_BROKER_URL,
    backend=REDIS_RESULT_BACKEND,
    include=[
        "tasks.notifications",
        "tasks.subscriptions",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    broker_connection_retry_on_startup=True,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    beat_schedule={
        "notify-expiring-subscriptions": {
            "task": "tasks.subscriptions.notify_expiring_subscriptions",
            "schedule": crontab(hour=EXPIRY_REMINDER_HOUR, minute=0),
        },
        "notify-expired-subscriptions": {
            "task": "tasks.subscriptions.notify_expired_subscriptions",
            "schedule": crontab(hour=EXPIRY_REMINDER_HOUR, minute=30),
        },
    },
)
