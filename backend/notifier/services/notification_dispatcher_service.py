from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

import httpx
from sqlalchemy.orm import Session

from notifier.db.models import ChannelType, OutboxEvent, OutboxEventStatus
from notifier.notifications.brevo_provider import BrevoEmailProvider
from notifier.notifications.config import NotificationConfig
from notifier.notifications.formatters import format_alert_text
from notifier.notifications.senders import (
    ChannelSender,
    SlackIncomingSender,
    WebhookSender,
    is_slack_webhook_url,
)
from notifier.notifications.templates import render_notification_email
from notifier.notifications.time_utils import isoformat_utc
from notifier.services.notification_channel_service import NotificationChannelService
from notifier.services.outbox_service import (
    EMAIL_TYPE_PREFIX,
    WEBHOOK_ALERT_TYPE,
    WEBHOOK_TYPE_PREFIX,
    OutboxService,
    notification_type_filter,
)

logger = logging.getLogger(__name__)

DEFAULT_NOTIFICATION_BATCH_SIZE = 20


class FanOutOutcome(str, Enum):
    none = "none"
    all_succeeded = "all_succeeded"
    partial = "partial"
    all_failed = "all_failed"


@dataclass(frozen=True)
class FanOutResult:
    attempted: int
    failed: int

    @property
    def outcome(self) -> FanOutOutcome:
        return classify_fan_out(self.attempted, self.failed)


def classify_fan_out(attempted: int, failed: int) -> FanOutOutcome:
    if attempted == 0:
        return FanOutOutcome.none
    if failed == 0:
        return FanOutOutcome.all_succeeded
    if failed >= attempted:
        return FanOutOutcome.all_failed
    return FanOutOutcome.partial


def terminal_status_for(outcome: FanOutOutcome) -> OutboxEventStatus:
    if outcome == FanOutOutcome.all_failed:
        return OutboxEventStatus.failed
    return OutboxEventStatus.completed


@dataclass(frozen=True)
class NotificationDispatchSummary:
    picked: int
    completed: int
    failed: int
    retried: int
    released: int
    recovered_stale: int
    channel_deliveries: int
    channel_failures: int


class NotificationDispatcherService:
    def __init__(
        self,
        config: NotificationConfig,
        *,
        email_provider: BrevoEmailProvider,
        webhook_sender: WebhookSender,
        slack_sender: SlackIncomingSender,
        outbox_service: OutboxService | None = None,
        channel_service: NotificationChannelService | None = None,
    ) -> None:
        self.config = config
        self.email_provider = email_provider
        self.webhook_sender = webhook_sender
        self.slack_sender = slack_sender
        self.outbox_service = outbox_service or OutboxService()
        self.channel_service = channel_service or NotificationChannelService()

        # None: the channel type is delivered elsewhere (email by the direct
        # send) or has no outbound sender yet (slack_app).
        self.channel_senders: dict[ChannelType, ChannelSender | None] = {
            ChannelType.email: None,
            ChannelType.webhook: webhook_sender,
            ChannelType.slack_incoming: slack_sender,
            ChannelType.slack_app: None,
        }
        assert set(self.channel_senders) == set(ChannelType)

    @classmethod
    def from_config(
        cls, config: NotificationConfig, client: httpx.Client
    ) -> NotificationDispatcherService:
        return cls(
            config,
            email_provider=BrevoEmailProvider(config, client),
            webhook_sender=WebhookSender(client),
            slack_sender=SlackIncomingSender(client),
        )

    def dispatch_pending(
        self,
        session: Session,
        *,
        now: datetime,
        batch_size: int = DEFAULT_NOTIFICATION_BATCH_SIZE,
    ) -> NotificationDispatchSummary:
        started = time.monotonic()
        recovered_stale = self.outbox_service.recover_stale_processing(
            session,
            now=now,
            stale_after=timedelta(seconds=self.config.stale_processing_after_seconds),
            type_filter=notification_type_filter(),
        )
        items = self.outbox_service.claim_batch(
            session, now=now, limit=batch_size, type_filter=notification_type_filter()
        )

        completed = 0
        failed = 0
        retried = 0
        released = 0
        channel_deliveries = 0
        channel_failures = 0

        for index, item in enumerate(items):
            if time.monotonic() - started >= self.config.tick_deadline_seconds:
                released = self.outbox_service.release(
                    session, event_ids=[row.id for row in items[index:]], now=now
                )
                logger.warning(
                    "dispatch_notifications_deadline_reached",
                    extra={"released": released},
                )
                break

            event_id = item.id
            try:
                self._deliver_direct(item, now=now)
                fan_out = self._fan_out(session, item, now=now)
            except Exception as exc:
                session.rollback()
                retried += 1
                logger.error(
                    "notification_event_failed",
                    extra={
                        "event_id": str(event_id),
                        "type": item.type,
                        "attempts": item.attempts + 1,
                        "error": str(exc),
                    },
                )
                self.outbox_service.record_attempt_failure(
                    session, event_id=event_id, now=now
                )
                continue

            channel_deliveries += fan_out.attempted
            channel_failures += fan_out.failed

            if terminal_status_for(fan_out.outcome) == OutboxEventStatus.failed:
                self.outbox_service.mark_terminal_failed(
                    session, event_id=event_id, now=now
                )
                failed += 1
                logger.error(
                    "notification_all_channels_failed",
                    extra={"event_id": str(event_id), "channels": fan_out.attempted},
                )
            else:
                self.outbox_service.mark_completed(session, event_id=event_id, now=now)
                completed += 1

        return NotificationDispatchSummary(
            picked=len(items),
            completed=completed,
            failed=failed,
            retried=retried,
            released=released,
            recovered_stale=recovered_stale,
            channel_deliveries=channel_deliveries,
            channel_failures=channel_failures,
        )

    def _deliver_direct(self, item: OutboxEvent, *, now: datetime) -> None:
        payload = item.payload if isinstance(item.payload, dict) else {}

        if item.type.startswith(EMAIL_TYPE_PREFIX):
            self._send_email(item, payload)
        elif item.type == WEBHOOK_ALERT_TYPE:
            self._send_alert(item, payload, now=now)
        elif item.type.startswith(WEBHOOK_TYPE_PREFIX):
            self._send_webhook(item, payload, now=now)

    def _send_email(self, item: OutboxEvent, payload: dict[str, Any]) -> None:
        to_email = payload.get("to")
        if not isinstance(to_email, str) or not to_email.strip():
            logger.info("notification_email_no_recipient", extra={"event_id": str(item.id)})
            return

        data = payload.get("data")
        rendered = render_notification_email(
            item.type,
            data if isinstance(data, dict) else {},
            app_base_url=self.config.app_base_url,
        )
        self.email_provider.send(to_email=to_email.strip(), rendered=rendered)

    def _send_alert(
        self, item: OutboxEvent, payload: dict[str, Any], *, now: datetime
    ) -> None:
        url = payload.get("url")
        if not isinstance(url, str) or not url:
            logger.info("notification_webhook_no_url", extra={"event_id": str(item.id)})
            return

        raw_data = payload.get("data")
        data = raw_data if isinstance(raw_data, dict) else {}
        event = item.event_type or "alert"
        if is_slack_webhook_url(url):
            self.slack_sender.send_text(url, format_alert_text(event, data))
        else:
            self.webhook_sender.post_json(
                url, {"event": event, "timestamp": isoformat_utc(now), **data}
            )

    def _send_webhook(
        self, item: OutboxEvent, payload: dict[str, Any], *, now: datetime
    ) -> None:
        url = payload.get("url")
        if not isinstance(url, str) or not url:
            logger.info("notification_webhook_no_url", extra={"event_id": str(item.id)})
            return

        self.webhook_sender.post_json(
            url,
            {
                "event": item.event_type or item.type.removeprefix(WEBHOOK_TYPE_PREFIX),
                "timestamp": isoformat_utc(now),
                "data": payload.get("data", {}),
            },
        )

    def _fan_out(
        self, session: Session, item: OutboxEvent, *, now: datetime
    ) -> FanOutResult:
        if not item.user_id or not item.event_type:
            return FanOutResult(attempted=0, failed=0)

        channels = self.channel_service.find_matching(
            session,
            user_id=item.user_id,
            event_type=item.event_type,
            project_id=item.project_id,
        )
        channel_payload = _channel_payload(item)

        attempted = 0
        failed = 0
        for channel in channels:
            try:
                sender = self.channel_senders[ChannelType(channel.channel_type)]
            except ValueError:
                continue
            if sender is None:
                continue

            attempted += 1
            try:
                sender.send(
                    channel.config or {},
                    event_type=item.event_type,
                    payload=channel_payload,
                    now=now,
                )
            except Exception as exc:
                failed += 1
                logger.warning(
                    "notification_channel_failed",
                    extra={
                        "event_id": str(item.id),
                        "channel_id": str(channel.id),
                        "channel_type": channel.channel_type,
                        "error": str(exc),
                    },
                )

        return FanOutResult(attempted=attempted, failed=failed)


def _channel_payload(item: OutboxEvent) -> dict[str, Any]:
    payload = item.payload if isinstance(item.payload, dict) else {}
    data = payload.get("data")
    # Direct-delivery rows wrap the event data next to routing fields (to, url).
    wrapped = item.type.startswith((EMAIL_TYPE_PREFIX, WEBHOOK_TYPE_PREFIX))
    if wrapped and isinstance(data, dict):
        return data
    return payload
