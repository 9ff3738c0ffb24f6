from __future__ import annotations

import logging
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from notifier.db.models import OutboxEvent, User
from notifier.notifications.config import NotificationConfig
from notifier.services.outbox_service import (
    EMAIL_TYPE_PREFIX,
    GENERIC_NOTIFICATION_TYPE,
    WEBHOOK_TYPE_PREFIX,
    OutboxService,
)

logger = logging.getLogger(__name__)


class NotificationService:
    """Producer-side API: turns domain events into outbox rows.

    Nothing here commits. Callers commit together with the business change
    that produced the event.
    """

    def __init__(
        self,
        config: NotificationConfig,
        outbox_service: OutboxService | None = None,
    ) -> None:
        self.config = config
        self.outbox_service = outbox_service or OutboxService()

    def queue_email(
        self,
        session: Session,
        *,
        user_id: str,
        to: str,
        template: str,
        data: dict[str, Any],
        now: datetime,
        project_id: UUID | None = None,
    ) -> OutboxEvent:
        logger.info(
            "queue_email_notification",
            extra={"user_id": user_id, "template": template},
        )
        return self.outbox_service.enqueue(
            session,
            outbox_type=f"{EMAIL_TYPE_PREFIX}{template}",
            event_type=template,
            user_id=user_id,
            project_id=project_id,
            payload={"userId": user_id, "to": to, "data": data},
            now=now,
        )

    def queue_webhook(
        self,
        session: Session,
        *,
        user_id: str,
        url: str,
        event_type: str,
        data: dict[str, Any],
        now: datetime,
        project_id: UUID | None = None,
    ) -> OutboxEvent:
        return self.outbox_service.enqueue(
            session,
            outbox_type=f"{WEBHOOK_TYPE_PREFIX}{event_type}",
            event_type=event_type,
            user_id=user_id,
            project_id=project_id,
            payload={"userId": user_id, "url": url, "data": data},
            now=now,
        )

    def enqueue_notification(
        self,
        session: Session,
        *,
        user_id: str,
        event_type: str,
        payload: dict[str, Any],
        now: datetime,
        project_id: UUID | None = None,
    ) -> OutboxEvent:
        """Queue ``event_type`` for ``user_id``.

        A payload with a ``to`` address becomes an ``email:`` row and one with
        a ``url`` becomes a ``webhook:`` row; anything else is only fanned out
        to the user's channels.
        """
        if payload.get("to"):
            outbox_type = f"{EMAIL_TYPE_PREFIX}{event_type}"
        elif payload.get("url"):
            outbox_type = f"{WEBHOOK_TYPE_PREFIX}{event_type}"
        else:
            outbox_type = GENERIC_NOTIFICATION_TYPE

        return self.outbox_service.enqueue(
            session,
            outbox_type=outbox_type,
            event_type=event_type,
            user_id=user_id,
            project_id=project_id,
            payload=payload,
            now=now,
        )

    def send_crawl_complete(
        self,
        session: Session,
        *,
        user_id: str,
        project_id: UUID,
        project_name: str,
        job_id: str,
        now: datetime,
        score: float | None = None,
        grade: str | None = None,
        issue_count: int = 0,
    ) -> OutboxEvent | None:
        email = self._user_email(session, user_id)
        if email is None:
            return None

        return self.queue_email(
            session,
            user_id=user_id,
            to=email,
            template="crawl_completed",
            data={
                "projectName": project_name,
                "projectId": str(project_id),
                "jobId": job_id,
                "score": score,
                "grade": grade,
                "issueCount": issue_count,
                "reportUrl": self._report_url(project_id),
            },
            now=now,
            project_id=project_id,
        )

    def send_score_drop(
        self,
        session: Session,
        *,
        user_id: str,
        project_id: UUID,
        project_name: str,
        previous_score: float,
        current_score: float,
        now: datetime,
    ) -> OutboxEvent | None:
        if current_score >= previous_score:
            return None
        email = self._user_email(session, user_id)
        if email is None:
            return None

        return self.queue_email(
            session,
            user_id=user_id,
            to=email,
            template="score_drop",
            data={
                "userId": user_id,
                "projectId": str(project_id),
                "projectName": project_name,
                "previousScore": previous_score,
                "currentScore": current_score,
            },
            now=now,
            project_id=project_id,
        )

    def _user_email(self, session: Session, user_id: str) -> str | None:
        user = session.get(User, user_id)
        if user is None:
            return None
        email = user.email.strip() if isinstance(user.email, str) else ""
        return email or None

    def _report_url(self, project_id: UUID) -> str:
        return f"{self.config.app_base_url.rstrip('/')}/dashboard/projects/{project_id}"
