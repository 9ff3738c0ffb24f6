from __future__ import annotations

import os
import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import JSON, DateTime, ForeignKey, Index, String, Text, func, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from notifier.db.base import Base


class OutboxEventStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"


class JobType(str, Enum):
    integration_enrichment = "integration_enrichment"
    llm_scoring = "llm_scoring"
    crawl_summary = "crawl_summary"


class ChannelType(str, Enum):
    email = "email"
    webhook = "webhook"
    slack_incoming = "slack_incoming"
    slack_app = "slack_app"


class PlanTier(str, Enum):
    free = "free"
    starter = "starter"
    pro = "pro"
    agency = "agency"


JSON_TYPE = JSON().with_variant(JSONB(), "postgresql")
JSON_EMPTY_DEFAULT = (
    text("'{}'::jsonb")
    if os.getenv("DATABASE_URL", "").startswith("postgresql")
    else text("'{}'")
)
JSON_EMPTY_LIST_DEFAULT = (
    text("'[]'::jsonb")
    if os.getenv("DATABASE_URL", "").startswith("postgresql")
    else text("'[]'")
)


class User(Base):
    """Read-only view of the account table owned by the user-management surface."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    email: Mapped[str | None] = mapped_column(Text, nullable=True)
    plan: Mapped[str] = mapped_column(
        String(32), nullable=False, default=PlanTier.free.value
    )
    trial_ends_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class OutboxEvent(Base):
    __tablename__ = "outbox_events"
    __table_args__ = (
        Index("ix_outbox_events_status_available_at", "status", "available_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    type: Mapped[str] = mapped_column(Text, nullable=False)
    event_type: Mapped[str | None] = mapped_column(Text, nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSON_TYPE,
        nullable=False,
        server_default=JSON_EMPTY_DEFAULT,
    )
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=OutboxEventStatus.pending.value
    )
    attempts: Mapped[int] = mapped_column(nullable=False, default=0)
    user_id: Mapped[str | None] = mapped_column(Text, nullable=True, index=True)
    project_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    available_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class NotificationChannel(Base):
    __tablename__ = "notification_channels"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    project_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    channel_type: Mapped[str] = mapped_column(String(32), nullable=False)
    config: Mapped[dict[str, Any]] = mapped_column(
        JSON_TYPE,
        nullable=False,
        server_default=JSON_EMPTY_DEFAULT,
    )
    event_types: Mapped[list[str]] = mapped_column(
        JSON_TYPE,
        nullable=False,
        server_default=JSON_EMPTY_LIST_DEFAULT,
    )
    enabled: Mapped[bool] = mapped_column(nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
