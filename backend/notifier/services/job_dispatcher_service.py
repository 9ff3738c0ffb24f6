from __future__ import annotations

import importlib
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.orm import Session

from notifier.db.models import JobType
from notifier.services.outbox_service import OutboxService, job_type_filter

logger = logging.getLogger(__name__)

JobHandler = Callable[[dict[str, Any]], None]

DEFAULT_JOB_BATCH_SIZE = 10
DEFAULT_JOB_RETRY_DELAY = timedelta(seconds=120)


@dataclass(frozen=True)
class JobDispatchSummary:
    picked: int
    processed: int
    failed: int
    released: int
    recovered_stale: int


def load_job_handlers(paths: Mapping[JobType, str]) -> dict[JobType, JobHandler]:
    """Resolve ``package.module:function`` paths into callables, one per job type."""
    handlers: dict[JobType, JobHandler] = {}
    for job_type in JobType:
        path = paths.get(job_type)
        if not path:
            raise ValueError(f"no handler configured for job type {job_type.value}")
        module_name, _, attr = path.partition(":")
        if not attr:
            raise ValueError(f"handler path must look like 'module:function', got {path!r}")
        handler = getattr(importlib.import_module(module_name), attr)
        if not callable(handler):
            raise ValueError(f"handler {path!r} is not callable")
        handlers[job_type] = handler
    return handlers


class JobDispatcherService:
    def __init__(
        self,
        handlers: Mapping[JobType, JobHandler],
        *,
        outbox_service: OutboxService | None = None,
        retry_delay: timedelta = DEFAULT_JOB_RETRY_DELAY,
        stale_after: timedelta = timedelta(minutes=15),
        tick_deadline_seconds: float | None = None,
    ) -> None:
        missing = [job_type.value for job_type in JobType if job_type not in handlers]
        if missing:
            raise ValueError(f"missing job handlers: {', '.join(missing)}")

        self.handlers = dict(handlers)
        self.outbox_service = outbox_service or OutboxService()
        self.retry_delay = retry_delay
        self.stale_after = stale_after
        self.tick_deadline_seconds = tick_deadline_seconds

    def dispatch_pending(
        self,
        session: Session,
        *,
        now: datetime,
        batch_size: int = DEFAULT_JOB_BATCH_SIZE,
    ) -> JobDispatchSummary:
        started = time.monotonic()
        recovered_stale = self.outbox_service.recover_stale_processing(
            session, now=now, stale_after=self.stale_after, type_filter=job_type_filter()
        )
        items = self.outbox_service.claim_batch(
            session, now=now, limit=batch_size, type_filter=job_type_filter()
        )

        processed = 0
        failed = 0
        released = 0

        for index, item in enumerate(items):
            if self._deadline_passed(started):
                released = self.outbox_service.release(
                    session, event_ids=[row.id for row in items[index:]], now=now
                )
                logger.warning(
                    "dispatch_jobs_deadline_reached",
                    extra={"released": released},
                )
                break

            event_id = item.id
            job_type = JobType(item.type)
            payload = item.payload if isinstance(item.payload, dict) else {}

            try:
                self.handlers[job_type](payload)
            except Exception as exc:
                session.rollback()
                failed += 1
                logger.error(
                    "outbox_job_failed",
                    extra={
                        "event_id": str(event_id),
                        "type": job_type.value,
                        "error": str(exc),
                    },
                )
                self.outbox_service.mark_failed(
                    session, event_id=event_id, now=now, retry_delay=self.retry_delay
                )
                continue

            self.outbox_service.mark_completed(session, event_id=event_id, now=now)
            processed += 1
            logger.info(
                "outbox_job_completed",
                extra={"event_id": str(event_id), "type": job_type.value},
            )

        return JobDispatchSummary(
            picked=len(items),
            processed=processed,
            failed=failed,
            released=released,
            recovered_stale=recovered_stale,
        )

    def _deadline_passed(self, started: float) -> bool:
        if self.tick_deadline_seconds is None:
            return False
        return time.monotonic() - started >= self.tick_deadline_seconds
