import logging

from celery import Celery
from celery.signals import task_failure

from medmarket.core.config import settings

logger = logging.getLogger(__name__)


celery_app = Celery(
    "medmarket",
    broker=settings.CELERY_BROKER_URL,
    include=[
        "medmarket.tasks.notification_tasks",
        "medmarket.tasks.booking_tasks",
        "medmarket.tasks.export_tasks",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_ignore_result=True,
    task_always_eager=settings.CELERY_TASK_ALWAYS_EAGER,
    task_acks_late=True,
    beat_schedule={
        "purge-expired-holds": {
            "task": "medmarket.tasks.booking_tasks.purge_expired_holds",
            "schedule": 60.0,
        },
        "appointment-reminders-24h": {
            "task": "medmarket.tasks.booking_tasks.send_reminders_24h_before",
            "schedule": 900.0,
        },
        "expire-shift-applications": {
            "task": "medmarket.tasks.booking_tasks.expire_shift_applications",
            "schedule": 3600.0,
        },
    },
)


@task_failure.connect
def task_failure_handler(task_id=None, exception=None, sender=None, **kw):
    name = getattr(sender, "name", "unknown")
    logger.error(f"Task {name} [{task_id}] failed: {exception}")
