from __future__ import annotations

import os

from celery import Celery
from celery.schedules import crontab

BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", BROKER_URL)

celery_app = Celery(
    "notifier_worker",
    broker=BROKER_URL,
    backend=RESULT_BACKEND,
    include=[
        "notifier.worker.tasks.outbox",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    # A tick must finish before the next one is due.
    task_soft_time_limit=55,
    task_time_limit=60,
    beat_schedule={
        "dispatch-outbox-jobs": {
            "task": "notifier.worker.tasks.dispatch_outbox_jobs",
            "schedule": crontab(minute="*"),
        },
        "dispatch-notifications": {
            "task": "notifier.worker.tasks.dispatch_notifications",
            "schedule": crontab(minute="*"),
        },
    },
)
