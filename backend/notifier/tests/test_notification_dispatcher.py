from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import UUID, uuid4

import httpx
import pytest
from sqlalchemy.orm import Session, sessionmaker

from notifier.db.base import Base
from notifier.db.models import NotificationChannel, OutboxEvent, User
from notifier.db.session import configure_engine, get_engine, get_session_factory
from notifier.notifications.config import NotificationConfig
from notifier.notifications.time_utils import ensure_utc
from notifier.services.notification_dispatcher_service import (
    FanOutOutcome,
    NotificationDispatcherService,
    classify_fan_out,
    terminal_status_for,
)
from notifier.services.outbox_service import OutboxService

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
PROJECT_ID = UUID("6f1c1f0e-8d4b-4a52-9d6e-0c6a3f1b2a10")
OTHER_PROJECT_ID = UUID("0b7e2d4c-1a3f-4e5d-8c9b-7a6f5e4d3c21")
BREVO_BASE_URL = "https://api.brevo.test/v3"


@pytest.fixture()
def session_factory(tmp_path: Path) -> sessionmaker[Session]:
    configure_engine(f"sqlite:///{tmp_path / 'test_dispatch.db'}")
    engine = get_engine()
    Base.metadata.create_all(bind=engine)
    factory = get_session_factory()
    with factory() as session:
        session.add(User(id="user-1", email="owner@example.com", plan="pro"))
        session.commit()
    yield factory
    Base.metadata.drop_all(bind=engine)


class RecordingTransport:
    def __init__(self, failing_urls: set[str] | None = None) -> None:
        self.failing_urls = failing_urls or set()
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if str(request.url) in self.failing_urls:
            return httpx.Response(500)
        if str(request.url).startswith(BREVO_BASE_URL):
            return httpx.Response(201, json={"messageId": "msg-1"})
        return httpx.Response(200, json={"ok": True})

    def urls(self) -> list[str]:
        return [str(request.url) for request in self.requests]


def _config(**overrides: Any) -> NotificationConfig:
    values: dict[str, Any] = {
        "app_base_url": "http://localhost:3000",
        "from_email": "notifications@example.com",
        "from_name": "Notifier",
        "brevo_api_key": "",
        "brevo_base_url": BREVO_BASE_URL,
        "email_dry_run": True,
        "allowed_recipient_domains": set(),
    }
    values.update(overrides)
    return NotificationConfig(**values)


def _dispatch(
    session_factory: sessionmaker[Session],
    transport: RecordingTransport,
    config: NotificationConfig | None = None,
):
    with httpx.Client(transport=httpx.MockTransport(transport)) as client:
        dispatcher = NotificationDispatcherService.from_config(config or _config(), client)
        with session_factory() as session:
            return dispatcher.dispatch_pending(session, now=NOW)


def _add_channel(
    session_factory: sessionmaker[Session],
    *,
    channel_type: str,
    url: str,
    event_types: list[str],
    enabled: bool = True,
    project_id: UUID | None = None,
    secret: str | None = None,
) -> NotificationChannel:
    config: dict[str, Any] = {"url": url}
    if secret:
        config["secret"] = secret
    with session_factory() as session:
        channel = NotificationChannel(
            user_id="user-1",
            project_id=project_id,
            channel_type=channel_type,
            config=config,
            event_types=event_types,
            enabled=enabled,
            created_at=NOW,
            updated_at=NOW,
        )
        session.add(channel)
        session.commit()
        return channel


def _enqueue(
    session_factory: sessionmaker[Session],
    *,
    outbox_type: str,
    payload: dict[str, Any],
    event_type: str | None = "score_drop",
    user_id: str | None = "user-1",
    project_id: UUID | None = PROJECT_ID,
) -> OutboxEvent:
    with session_factory() as session:
        item = OutboxService().enqueue(
            session,
            outbox_type=outbox_type,
            event_type=event_type,
            user_id=user_id,
            project_id=project_id,
            payload=payload,
            now=NOW,
        )
        session.commit()
        return item


def _load(session_factory: sessionmaker[Session], event_id) -> OutboxEvent:
    with session_factory() as session:
        item = session.get(OutboxEvent, event_id)
        assert item is not None
        return item


def test_fan_out_sends_only_to_matching_channels(
    session_factory: sessionmaker[Session],
) -> None:
    _add_channel(
        session_factory,
        channel_type="webhook",
        url="https://hooks.example.com/all-projects",
        event_types=["score_drop"],
    )
    _add_channel(
        session_factory,
        channel_type="slack_incoming",
        url="https://hooks.slack.com/services/T0/B0/X",
        event_types=["score_drop", "crawl_completed"],
        project_id=PROJECT_ID,
    )
    _add_channel(
        session_factory,
        channel_type="webhook",
        url="https://hooks.example.com/other-project",
        event_types=["score_drop"],
        project_id=OTHER_PROJECT_ID,
    )
    _add_channel(
        session_factory,
        channel_type="webhook",
        url="https://hooks.example.com/disabled",
        event_types=["score_drop"],
        enabled=False,
    )
    _add_channel(
        session_factory,
        channel_type="webhook",
        url="https://hooks.example.com/unsubscribed",
        event_types=["crawl_completed"],
    )
    item = _enqueue(
        session_factory,
        outbox_type="notification",
        payload={"domain": "example.com", "previousScore": 80, "currentScore": 70},
    )

    transport = RecordingTransport()
    summary = _dispatch(session_factory, transport)

    assert sorted(transport.urls()) == [
        "https://hooks.example.com/all-projects",
        "https://hooks.slack.com/services/T0/B0/X",
    ]
    assert summary.channel_deliveries == 2
    assert summary.channel_failures == 0
    assert _load(session_factory, item.id).status == "completed"


def test_one_failing_channel_does_not_block_the_other(
    session_factory: sessionmaker[Session],
) -> None:
    _add_channel(
        session_factory,
        channel_type="webhook",
        url="https://hooks.example.com/broken",
        event_types=["score_drop"],
    )
    _add_channel(
        session_factory,
        channel_type="webhook",
        url="https://hooks.example.com/healthy",
        event_types=["score_drop"],
    )
    item = _enqueue(session_factory, outbox_type="notification", payload={"score": 1})

    transport = RecordingTransport(failing_urls={"https://hooks.example.com/broken"})
    summary = _dispatch(session_factory, transport)

    assert sorted(transport.urls()) == [
        "https://hooks.example.com/broken",
        "https://hooks.example.com/healthy",
    ]
    assert summary.channel_deliveries == 2
    assert summary.channel_failures == 1
    assert summary.completed == 1
    assert _load(session_factory, item.id).status == "completed"


def test_all_channels_failing_marks_event_failed(
    session_factory: sessionmaker[Session],
) -> None:
    urls = {"https://hooks.example.com/a", "https://hooks.example.com/b"}
    for url in urls:
        _add_channel(
            session_factory, channel_type="webhook", url=url, event_types=["score_drop"]
        )
    item = _enqueue(session_factory, outbox_type="notification", payload={})

    summary = _dispatch(session_factory, RecordingTransport(failing_urls=urls))

    assert summary.failed == 1
    stored = _load(session_factory, item.id)
    assert stored.status == "failed"
    assert stored.attempts == 0

    # Terminal: later ticks leave it alone.
    assert _dispatch(session_factory, RecordingTransport()).picked == 0


def test_email_row_without_channels_is_sent_and_completed(
    session_factory: sessionmaker[Session],
) -> None:
    item = _enqueue(
        session_factory,
        outbox_type="email:crawl_completed",
        event_type="crawl_completed",
        payload={
            "userId": "user-1",
            "to": "owner@example.com",
            "data": {"projectName": "My Site", "score": 88, "grade": "B"},
        },
    )
    config = _config(email_dry_run=False, brevo_api_key="key-123")
    transport = RecordingTransport()

    summary = _dispatch(session_factory, transport, config)

    assert transport.urls() == [f"{BREVO_BASE_URL}/smtp/email"]
    body = json.loads(transport.requests[0].content)
    assert body["to"] == [{"email": "owner@example.com"}]
    assert body["subject"] == "Your AI SEO audit is ready"
    assert "My Site" in body["textContent"]
    assert transport.requests[0].headers["api-key"] == "key-123"
    assert summary.channel_deliveries == 0
    stored = _load(session_factory, item.id)
    assert stored.status == "completed"
    assert stored.processed_at is not None


def test_email_channels_are_not_fanned_out(
    session_factory: sessionmaker[Session],
) -> None:
    _add_channel(
        session_factory,
        channel_type="email",
        url="unused",
        event_types=["score_drop"],
    )
    item = _enqueue(
        session_factory,
        outbox_type="email:score_drop",
        payload={"to": "owner@example.com", "data": {"previousScore": 9, "currentScore": 3}},
    )

    transport = RecordingTransport()
    summary = _dispatch(session_factory, transport)

    assert transport.requests == []
    assert summary.channel_deliveries == 0
    assert _load(session_factory, item.id).status == "completed"


def test_direct_delivery_failure_counts_attempt_without_backoff(
    session_factory: sessionmaker[Session],
) -> None:
    _add_channel(
        session_factory,
        channel_type="webhook",
        url="https://hooks.example.com/channel",
        event_types=["score_drop"],
    )
    item = _enqueue(
        session_factory,
        outbox_type="email:score_drop",
        payload={"to": "owner@example.com", "data": {}},
    )
    config = _config(email_dry_run=False, brevo_api_key="key-123")
    transport = RecordingTransport(failing_urls={f"{BREVO_BASE_URL}/smtp/email"})

    summary = _dispatch(session_factory, transport, config)

    assert summary.retried == 1
    # The failed direct send stops the row before any channel is tried.
    assert transport.urls() == [f"{BREVO_BASE_URL}/smtp/email"]
    stored = _load(session_factory, item.id)
    assert stored.status == "pending"
    assert stored.attempts == 1
    assert ensure_utc(stored.available_at) == NOW

    again = _dispatch(session_factory, transport, config)
    assert again.picked == 1
    assert _load(session_factory, item.id).attempts == 2


def test_legacy_webhook_posts_event_envelope(
    session_factory: sessionmaker[Session],
) -> None:
    item = _enqueue(
        session_factory,
        outbox_type="webhook:crawl_completed",
        event_type="crawl_completed",
        payload={"url": "https://example.com/receiver", "data": {"jobId": "j1"}},
    )
    transport = RecordingTransport()

    _dispatch(session_factory, transport)

    assert transport.urls() == ["https://example.com/receiver"]
    body = json.loads(transport.requests[0].content)
    assert body == {
        "event": "crawl_completed",
        "timestamp": "2026-03-01T12:00:00Z",
        "data": {"jobId": "j1"},
    }
    assert "X-Signature" not in transport.requests[0].headers
    assert _load(session_factory, item.id).status == "completed"


def test_legacy_webhook_non_2xx_is_retried(
    session_factory: sessionmaker[Session],
) -> None:
    item = _enqueue(
        session_factory,
        outbox_type="webhook:crawl_completed",
        event_type="crawl_completed",
        payload={"url": "https://example.com/receiver", "data": {}},
    )
    transport = RecordingTransport(failing_urls={"https://example.com/receiver"})

    summary = _dispatch(session_factory, transport)

    assert summary.retried == 1
    stored = _load(session_factory, item.id)
    assert stored.status == "pending"
    assert stored.attempts == 1


def test_alert_to_slack_url_sends_compact_text(
    session_factory: sessionmaker[Session],
) -> None:
    _enqueue(
        session_factory,
        outbox_type="webhook:alert",
        event_type="score_drop",
        payload={
            "url": "https://hooks.slack.com/services/T0/B0/Y",
            "data": {"domain": "example.com", "previousScore": 80, "currentScore": 72},
        },
    )
    transport = RecordingTransport()

    _dispatch(session_factory, transport)

    body = json.loads(transport.requests[0].content)
    assert body == {"text": "[score_drop] example.com: score 80 → 72 (-8)"}


def test_alert_to_generic_url_sends_flat_envelope(
    session_factory: sessionmaker[Session],
) -> None:
    _enqueue(
        session_factory,
        outbox_type="webhook:alert",
        event_type=None,
        payload={"url": "https://alerts.example.com/in", "data": {"domain": "example.com"}},
    )
    transport = RecordingTransport()

    _dispatch(session_factory, transport)

    body = json.loads(transport.requests[0].content)
    assert body == {
        "event": "alert",
        "timestamp": "2026-03-01T12:00:00Z",
        "domain": "example.com",
    }


def test_unrecognized_rows_are_never_claimed(
    session_factory: sessionmaker[Session],
) -> None:
    item = _enqueue(session_factory, outbox_type="unknown:type", payload={})

    summary = _dispatch(session_factory, RecordingTransport())

    assert summary.picked == 0
    stored = _load(session_factory, item.id)
    assert stored.status == "pending"
    assert stored.attempts == 0


def test_rows_without_user_skip_fan_out(
    session_factory: sessionmaker[Session],
) -> None:
    _add_channel(
        session_factory,
        channel_type="webhook",
        url="https://hooks.example.com/a",
        event_types=["score_drop"],
    )
    item = _enqueue(
        session_factory, outbox_type="notification", payload={}, user_id=None
    )
    transport = RecordingTransport()

    summary = _dispatch(session_factory, transport)

    assert transport.requests == []
    assert summary.completed == 1
    assert _load(session_factory, item.id).status == "completed"


def test_deadline_releases_claimed_notifications(
    session_factory: sessionmaker[Session],
) -> None:
    item = _enqueue(session_factory, outbox_type="notification", payload={})
    transport = RecordingTransport()

    summary = _dispatch(session_factory, transport, _config(tick_deadline_seconds=0))

    assert summary.picked == 1
    assert summary.released == 1
    assert _load(session_factory, item.id).status == "pending"


@pytest.mark.parametrize(
    ("attempted", "failed", "expected"),
    [
        (0, 0, FanOutOutcome.none),
        (2, 0, FanOutOutcome.all_succeeded),
        (2, 1, FanOutOutcome.partial),
        (2, 2, FanOutOutcome.all_failed),
    ],
)
def test_fan_out_outcome_classification(
    attempted: int, failed: int, expected: FanOutOutcome
) -> None:
    outcome = classify_fan_out(attempted, failed)
    assert outcome == expected
    expected_status = "failed" if expected == FanOutOutcome.all_failed else "completed"
    assert terminal_status_for(outcome).value == expected_status


def test_channel_payload_unwraps_direct_delivery_data(
    session_factory: sessionmaker[Session],
) -> None:
    _add_channel(
        session_factory,
        channel_type="webhook",
        url="https://hooks.example.com/a",
        event_types=["score_drop"],
        secret=str(uuid4()),
    )
    _enqueue(
        session_factory,
        outbox_type="email:score_drop",
        payload={"to": "owner@example.com", "data": {"currentScore": 3}},
    )
    transport = RecordingTransport()

    _dispatch(session_factory, transport)

    body = json.loads(transport.requests[0].content)
    assert body["event"] == "score_drop"
    assert body["data"] == {"currentScore": 3}
    assert transport.requests[0].headers["X-Signature"].startswith("hmac-sha256=")
