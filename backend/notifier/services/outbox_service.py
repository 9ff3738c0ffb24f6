from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import ColumnElement, or_, select, update
from sqlalchemy.orm import Session

from notifier.db.models import JobType, OutboxEvent, OutboxEventStatus
from notifier.services.errors import NotFoundError

logger = logging.getLogger(__name__)

EMAIL_TYPE_PREFIX = "email:"
WEBHOOK_TYPE_PREFIX = "webhook:"
WEBHOOK_ALERT_TYPE = "webhook:alert"
GENERIC_NOTIFICATION_TYPE = "notification"


def job_type_filter() -> ColumnElement[bool]:
    return OutboxEvent.type.in_([job_type.value for job_type in JobType])


def notification_type_filter() -> ColumnElement[bool]:
    return or_(
        OutboxEvent.type.startswith(EMAIL_TYPE_PREFIX, autoescape=True),
        OutboxEvent.type.startswith(WEBHOOK_TYPE_PREFIX, autoescape=True),
        OutboxEvent.type == GENERIC_NOTIFICATION_TYPE,
    )


class OutboxService:
    """Durable event table with a claim/complete/retry state machine.

    ``enqueue`` only flushes so producers can write the event in the same
    transaction as the business change; every other mutation commits.
    """

    def enqueue(
        self,
        session: Session,
        *,
        outbox_type: str,
        payload: dict[str, Any],
        now: datetime,
        available_at: datetime | None = None,
        event_type: str | None = None,
        user_id: str | None = None,
        project_id: UUID | None = None,
    ) -> OutboxEvent:
        item = OutboxEvent(
            type=outbox_type,
            event_type=event_type,
            payload=payload,
            status=OutboxEventStatus.pending.value,
            attempts=0,
            user_id=user_id,
            project_id=project_id,
            available_at=available_at or now,
            updated_at=now,
        )
        session.add(item)
        session.flush()
        return item

    def enqueue_job(
        self,
        session: Session,
        *,
        job_type: JobType,
        payload: dict[str, Any],
        now: datetime,
        available_at: datetime | None = None,
    ) -> OutboxEvent:
        return self.enqueue(
            session,
            outbox_type=JobType(job_type).value,
            payload=payload,
            now=now,
            available_at=available_at,
        )

    def claim_batch(
        self,
        session: Session,
        *,
        now: datetime,
        limit: int,
        type_filter: ColumnElement[bool] | None = None,
    ) -> list[OutboxEvent]:
        stmt = (
            select(OutboxEvent)
            .where(
                OutboxEvent.status == OutboxEventStatus.pending.value,
                OutboxEvent.available_at <= now,
            )
            .order_by(OutboxEvent.available_at.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        if type_filter is not None:
            stmt = stmt.where(type_filter)

        rows = list(session.scalars(stmt).all())

        for row in rows:
            row.status = OutboxEventStatus.processing.value
            row.updated_at = now
            session.add(row)

        session.commit()
        return rows

    def mark_completed(
        self, session: Session, *, event_id: UUID, now: datetime
    ) -> None:
        item = session.get(OutboxEvent, event_id)
        if item is None:
            return
        item.status = OutboxEventStatus.completed.value
        item.processed_at = now
        item.updated_at = now
        session.add(item)
        session.commit()

    def mark_failed(
        self,
        session: Session,
        *,
        event_id: UUID,
        now: datetime,
        retry_delay: timedelta,
    ) -> None:
        """Count a failed attempt and put the row back in the queue after ``retry_delay``."""
        item = session.get(OutboxEvent, event_id)
        if item is None:
            return
        item.attempts += 1
        item.status = OutboxEventStatus.pending.value
        item.available_at = now + retry_delay
        item.updated_at = now
        session.add(item)
        session.commit()

    def mark_terminal_failed(
        self, session: Session, *, event_id: UUID, now: datetime
    ) -> None:
        item = session.get(OutboxEvent, event_id)
        if item is None:
            return
        item.status = OutboxEventStatus.failed.value
        item.updated_at = now
        session.add(item)
        session.commit()

    def record_attempt_failure(
        self, session: Session, *, event_id: UUID, now: datetime
    ) -> None:
        """Count a failed attempt; the row stays due and is re-claimed on the next tick."""
        item = session.get(OutboxEvent, event_id)
        if item is None:
            return
        item.attempts += 1
        item.status = OutboxEventStatus.pending.value
        item.updated_at = now
        session.add(item)
        session.commit()

    def release(
        self, session: Session, *, event_ids: Iterable[UUID], now: datetime
    ) -> int:
        ids = list(event_ids)
        if not ids:
            return 0
        result = session.execute(
            update(OutboxEvent)
            .where(
                OutboxEvent.id.in_(ids),
                OutboxEvent.status == OutboxEventStatus.processing.value,
            )
            .values(status=OutboxEventStatus.pending.value, updated_at=now)
        )
        session.commit()
        return result.rowcount or 0

    def recover_stale_processing(
        self,
        session: Session,
        *,
        now: datetime,
        stale_after: timedelta,
        type_filter: ColumnElement[bool] | None = None,
    ) -> int:
        threshold = now - stale_after
        stmt = select(OutboxEvent).where(
            OutboxEvent.status == OutboxEventStatus.processing.value,
            OutboxEvent.updated_at < threshold,
        )
        if type_filter is not None:
            stmt = stmt.where(type_filter)

        recovered = 0
        for item in session.scalars(stmt.with_for_update(skip_locked=True)).all():
            item.status = OutboxEventStatus.pending.value
            item.updated_at = now
            session.add(item)
            recovered += 1

        if recovered:
            session.commit()
            logger.warning("outbox_stale_processing_recovered", extra={"count": recovered})
        else:
            session.rollback()
        return recovered

    def replay(self, session: Session, *, event_id: UUID, now: datetime) -> OutboxEvent:
        item = session.get(OutboxEvent, event_id)
        if item is None:
            raise NotFoundError(f"Outbox event {event_id} not found")
        item.status = OutboxEventStatus.pending.value
        item.available_at = now
        item.updated_at = now
        session.add(item)
        session.commit()
        session.refresh(item)
        return item
