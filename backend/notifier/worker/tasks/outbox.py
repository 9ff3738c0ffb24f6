from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import timedelta

import httpx

from notifier.db.session import session_scope
from notifier.notifications.config import load_notification_config
from notifier.notifications.time_utils import utc_now
from notifier.services.job_dispatcher_service import (
    JobDispatcherService,
    load_job_handlers,
)
from notifier.services.notification_dispatcher_service import (
    NotificationDispatcherService,
)
from notifier.worker.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(name="notifier.worker.tasks.dispatch_outbox_jobs")
def dispatch_outbox_jobs() -> dict[str, int]:
    config = load_notification_config()
    dispatcher = JobDispatcherService(
        load_job_handlers(config.job_handler_paths),
        retry_delay=timedelta(seconds=config.job_retry_delay_seconds),
        stale_after=timedelta(seconds=config.stale_processing_after_seconds),
        tick_deadline_seconds=config.tick_deadline_seconds,
    )

    with session_scope() as session:
        summary = dispatcher.dispatch_pending(
            session,
            now=utc_now(),
            batch_size=config.job_batch_size,
        )

    payload = asdict(summary)
    logger.info("dispatch_jobs_summary", extra=payload)
    return payload


@celery_app.task(name="notifier.worker.tasks.dispatch_notifications")
def dispatch_notifications() -> dict[str, int]:
    config = load_notification_config()

    with (
        httpx.Client(timeout=config.http_timeout_seconds) as client,
        session_scope() as session,
    ):
        summary = NotificationDispatcherService.from_config(
            config, client
        ).dispatch_pending(
            session,
            now=utc_now(),
            batch_size=config.notification_batch_size,
        )

    payload = asdict(summary)
    logger.info("dispatch_notifications_summary", extra=payload)
    return payload
