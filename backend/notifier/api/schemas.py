from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from notifier.db.models import ChannelType


class NotificationChannelCreateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    project_id: UUID | None = Field(default=None, alias="projectId")
    channel_type: ChannelType = Field(..., alias="channelType")
    config: dict[str, Any]
    event_types: list[str] = Field(..., min_length=1, alias="eventTypes")


class NotificationChannelUpdateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    config: dict[str, Any] | None = None
    event_types: list[str] | None = Field(default=None, min_length=1, alias="eventTypes")
    enabled: bool | None = None


class NotificationChannelResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: str
    project_id: UUID | None
    channel_type: ChannelType
    config: dict[str, Any]
    event_types: list[str]
    enabled: bool
    created_at: datetime
    updated_at: datetime


class DeleteResponse(BaseModel):
    success: bool
