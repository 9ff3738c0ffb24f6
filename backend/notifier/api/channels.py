from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, Header, status
from sqlalchemy.orm import Session

from notifier.api.schemas import (
    DeleteResponse,
    NotificationChannelCreateRequest,
    NotificationChannelResponse,
    NotificationChannelUpdateRequest,
)
from notifier.db.session import get_db_session
from notifier.notifications.time_utils import utc_now
from notifier.services.errors import ApiError
from notifier.services.notification_channel_service import NotificationChannelService

router = APIRouter(prefix="/notification-channels", tags=["notification-channels"])


def get_current_user_id(x_user_id: str | None = Header(default=None)) -> str:
    if not x_user_id or not x_user_id.strip():
        raise ApiError(
            status_code=401, code="UNAUTHORIZED", message="X-User-Id header is required"
        )
    return x_user_id.strip()


@router.post(
    "",
    response_model=NotificationChannelResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_notification_channel(
    payload: NotificationChannelCreateRequest,
    user_id: str = Depends(get_current_user_id),
    session: Session = Depends(get_db_session),
) -> NotificationChannelResponse:
    channel = NotificationChannelService().create(
        session,
        user_id=user_id,
        project_id=payload.project_id,
        channel_type=payload.channel_type.value,
        config=payload.config,
        event_types=payload.event_types,
        now=utc_now(),
    )
    return NotificationChannelResponse.model_validate(channel)


@router.get("", response_model=list[NotificationChannelResponse])
def list_notification_channels(
    user_id: str = Depends(get_current_user_id),
    session: Session = Depends(get_db_session),
) -> list[NotificationChannelResponse]:
    channels = NotificationChannelService().list_for_user(session, user_id=user_id)
    return [NotificationChannelResponse.model_validate(channel) for channel in channels]


@router.patch("/{channel_id}", response_model=NotificationChannelResponse)
def update_notification_channel(
    channel_id: UUID,
    payload: NotificationChannelUpdateRequest,
    user_id: str = Depends(get_current_user_id),
    session: Session = Depends(get_db_session),
) -> NotificationChannelResponse:
    channel = NotificationChannelService().update(
        session,
        user_id=user_id,
        channel_id=channel_id,
        config=payload.config,
        event_types=payload.event_types,
        enabled=payload.enabled,
        now=utc_now(),
    )
    return NotificationChannelResponse.model_validate(channel)


@router.delete("/{channel_id}", response_model=DeleteResponse)
def delete_notification_channel(
    channel_id: UUID,
    user_id: str = Depends(get_current_user_id),
    session: Session = Depends(get_db_session),
) -> DeleteResponse:
    NotificationChannelService().delete(session, user_id=user_id, channel_id=channel_id)
    return DeleteResponse(success=True)
