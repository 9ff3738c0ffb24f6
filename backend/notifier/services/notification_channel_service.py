from __future__ import annotations

from datetime import datetime
from typing import Any
from urllib.parse import urlparse
from uuid import UUID

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from notifier.db.models import ChannelType, NotificationChannel, PlanTier, User
from notifier.services.errors import ApiError, NotFoundError, PlanLimitError
from notifier.services.plan_limits import (
    notification_channel_limit,
    resolve_effective_plan,
)

URL_CHANNEL_TYPES = frozenset({ChannelType.webhook, ChannelType.slack_incoming})


def _validation_error(message: str) -> ApiError:
    return ApiError(status_code=422, code="VALIDATION_ERROR", message=message)


def _normalize_event_types(event_types: list[str]) -> list[str]:
    cleaned = [item.strip() for item in event_types if isinstance(item, str) and item.strip()]
    if not cleaned:
        raise _validation_error("eventTypes must contain at least one event type")
    return list(dict.fromkeys(cleaned))


def _validate_config(channel_type: ChannelType, config: dict[str, Any]) -> None:
    if channel_type not in URL_CHANNEL_TYPES:
        return
    url = config.get("url")
    parsed = urlparse(url) if isinstance(url, str) else None
    if parsed is None or parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise _validation_error(f"{channel_type.value} channels require an http(s) url")


class NotificationChannelService:
    def create(
        self,
        session: Session,
        *,
        user_id: str,
        channel_type: str,
        config: dict[str, Any],
        event_types: list[str],
        now: datetime,
        project_id: UUID | None = None,
    ) -> NotificationChannel:
        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found")

        try:
            kind = ChannelType(channel_type)
        except ValueError as exc:
            raise _validation_error(f"unknown channel type {channel_type!r}") from exc

        plan = resolve_effective_plan(user, now=now)
        if plan == PlanTier.free and kind != ChannelType.email:
            raise PlanLimitError("Free plan only supports email notification channels")

        limit = notification_channel_limit(plan)
        if self.count_for_user(session, user_id=user_id) >= limit:
            raise PlanLimitError(
                f"Your plan allows {limit} notification channel(s). Upgrade for more."
            )

        _validate_config(kind, config)
        channel = NotificationChannel(
            user_id=user_id,
            project_id=project_id,
            channel_type=kind.value,
            config=dict(config),
            event_types=_normalize_event_types(event_types),
            enabled=True,
            created_at=now,
            updated_at=now,
        )
        session.add(channel)
        session.commit()
        session.refresh(channel)
        return channel

    def count_for_user(self, session: Session, *, user_id: str) -> int:
        stmt = select(func.count(NotificationChannel.id)).where(
            NotificationChannel.user_id == user_id
        )
        return int(session.scalar(stmt) or 0)

    def list_for_user(
        self, session: Session, *, user_id: str
    ) -> list[NotificationChannel]:
        stmt = (
            select(NotificationChannel)
            .where(NotificationChannel.user_id == user_id)
            .order_by(NotificationChannel.created_at.asc())
        )
        return list(session.scalars(stmt).all())

    def get_owned(
        self, session: Session, *, user_id: str, channel_id: UUID
    ) -> NotificationChannel:
        channel = session.get(NotificationChannel, channel_id)
        if channel is None or channel.user_id != user_id:
            raise NotFoundError("Notification channel not found")
        return channel

    def update(
        self,
        session: Session,
        *,
        user_id: str,
        channel_id: UUID,
        now: datetime,
        config: dict[str, Any] | None = None,
        event_types: list[str] | None = None,
        enabled: bool | None = None,
    ) -> NotificationChannel:
        channel = self.get_owned(session, user_id=user_id, channel_id=channel_id)

        if config is not None:
            _validate_config(ChannelType(channel.channel_type), config)
            channel.config = dict(config)
        if event_types is not None:
            channel.event_types = _normalize_event_types(event_types)
        if enabled is not None:
            channel.enabled = enabled

        channel.updated_at = now
        session.add(channel)
        session.commit()
        session.refresh(channel)
        return channel

    def delete(self, session: Session, *, user_id: str, channel_id: UUID) -> None:
        channel = self.get_owned(session, user_id=user_id, channel_id=channel_id)
        session.delete(channel)
        session.commit()

    def find_matching(
        self,
        session: Session,
        *,
        user_id: str,
        event_type: str,
        project_id: UUID | None,
    ) -> list[NotificationChannel]:
        """Enabled channels of ``user_id`` subscribed to ``event_type`` for the project."""
        project_scope = NotificationChannel.project_id.is_(None)
        if project_id is not None:
            project_scope = or_(project_scope, NotificationChannel.project_id == project_id)

        stmt = (
            select(NotificationChannel)
            .where(
                NotificationChannel.user_id == user_id,
                NotificationChannel.enabled.is_(True),
                project_scope,
            )
            .order_by(NotificationChannel.created_at.asc())
        )
        # event_types is a JSON list; membership is checked here to stay portable.
        return [
            channel
            for channel in session.scalars(stmt).all()
            if event_type in (channel.event_types or [])
        ]
