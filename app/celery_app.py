from celery import Celery
from celery.schedules import crontab

from app.config import settings

celery_app = Celery(
    "compliance_engine",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "app.tasks.events",
        "app.tasks.notifications",
        "app.tasks.scheduler",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    task_always_eager=settings.celery_task_always_eager,
    beat_schedule={
        "scheduled-tick-daily": {
            "task": "app.tasks.scheduler.scheduled_tick",
            "schedule": crontab(hour=0, minute=30),
        },
        "sla-breach-sweep": {
            "task": "app.tasks.scheduler.sweep_stalled_steps",
            "schedule": crontab(minute="*/15"),
        },
        "release-deferred-notifications": {
            "task": "app.tasks.notifications.release_deferred",
            "schedule": crontab(minute="*/5"),
        },
        "check-escalations": {
            "task": "app.tasks.notifications.check_escalations",
            "schedule": crontab(minute="*/15"),
        },
        "flush-digests": {
            "task": "app.tasks.notifications.flush_digests",
            "schedule": crontab(minute=15),
        },
        "reconcile-undispatched-events": {
            "task": "app.tasks.notifications.reconcile_undispatched",
            "schedule": crontab(minute="*/10"),
        },
    },
)
