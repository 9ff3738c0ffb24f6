from __future__ import annotations

import hashlib
import hmac
import json
from datetime import UTC, datetime

import httpx
import pytest

from notifier.notifications.formatters import format_alert_text, format_slack_message
from notifier.notifications.senders import (
    DeliveryError,
    SlackIncomingSender,
    WebhookSender,
    compute_signature,
    is_slack_webhook_url,
    serialize_body,
    verify_signature,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _client(status_code: int = 200, captured: list[httpx.Request] | None = None) -> httpx.Client:
    def handler(request: httpx.Request) -> httpx.Response:
        if captured is not None:
            captured.append(request)
        return httpx.Response(status_code)

    return httpx.Client(transport=httpx.MockTransport(handler))


def test_webhook_signature_covers_exact_body_bytes() -> None:
    captured: list[httpx.Request] = []
    sender = WebhookSender(_client(captured=captured))

    sender.send(
        {"url": "https://receiver.example.com/hook", "secret": "s3cret"},
        event_type="crawl_completed",
        payload={"projectName": "Café", "score": 91},
        now=NOW,
    )

    request = captured[0]
    expected = hmac.new(b"s3cret", request.content, hashlib.sha256).hexdigest()
    assert request.headers["X-Signature"] == f"hmac-sha256={expected}"
    assert request.headers["Content-Type"] == "application/json"
    assert json.loads(request.content) == {
        "event": "crawl_completed",
        "timestamp": "2026-03-01T12:00:00Z",
        "data": {"projectName": "Café", "score": 91},
    }


def test_signature_changes_when_one_byte_changes() -> None:
    body = serialize_body({"event": "score_drop", "data": {"score": 70}})
    tampered = body.replace(b"70", b"71")

    signature = compute_signature("s3cret", body)

    assert verify_signature("s3cret", body, signature)
    assert not verify_signature("s3cret", tampered, signature)
    assert not verify_signature("other", body, signature)
    assert not verify_signature("s3cret", body, None)


def test_serialized_body_is_compact() -> None:
    assert serialize_body({"a": 1, "b": [1, 2]}) == b'{"a":1,"b":[1,2]}'


def test_webhook_without_secret_has_no_signature() -> None:
    captured: list[httpx.Request] = []
    sender = WebhookSender(_client(captured=captured))

    sender.send(
        {"url": "https://receiver.example.com/hook"},
        event_type="quick_wins",
        payload={},
        now=NOW,
    )

    assert "X-Signature" not in captured[0].headers


def test_non_success_status_raises_delivery_error() -> None:
    sender = WebhookSender(_client(status_code=503))

    with pytest.raises(DeliveryError) as excinfo:
        sender.send(
            {"url": "https://receiver.example.com/hook"},
            event_type="score_drop",
            payload={},
            now=NOW,
        )

    assert excinfo.value.status_code == 503
    assert excinfo.value.reason == "Service Unavailable"


def test_transport_error_raises_delivery_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    sender = WebhookSender(httpx.Client(transport=httpx.MockTransport(handler)))

    with pytest.raises(DeliveryError) as excinfo:
        sender.post_json("https://receiver.example.com/hook", {"event": "x"})
    assert excinfo.value.status_code is None


def test_missing_url_raises_delivery_error() -> None:
    with pytest.raises(DeliveryError):
        WebhookSender(_client()).send({}, event_type="score_drop", payload={}, now=NOW)


def test_slack_message_has_header_and_section_blocks() -> None:
    captured: list[httpx.Request] = []
    sender = SlackIncomingSender(_client(captured=captured))

    sender.send(
        {"url": "https://hooks.slack.com/services/T0/B0/X"},
        event_type="score_drop",
        payload={"domain": "example.com", "previousScore": 80, "currentScore": 70},
        now=NOW,
    )

    body = json.loads(captured[0].content)
    assert body["text"] == "Score Drop"
    header, section = body["blocks"]
    assert header == {"type": "header", "text": {"type": "plain_text", "text": "Score Drop"}}
    assert section["type"] == "section"
    assert section["text"]["type"] == "mrkdwn"
    assert "example.com" in section["text"]["text"]
    assert "80 → 70 (-10)" in section["text"]["text"]


def test_unknown_event_uses_generic_formatter() -> None:
    message = format_slack_message("usage_report", {"pages": 12})
    assert message["text"] == "Usage Report"
    assert message["blocks"][1]["text"]["text"] == "*pages*: 12"

    empty = format_slack_message("usage_report", {})
    assert empty["blocks"][1]["text"]["text"] == "_No details_"


def test_alert_text_prefers_message() -> None:
    assert (
        format_alert_text("credit_alert", {"projectName": "Shop", "message": "2 credits left"})
        == "[credit_alert] Shop: 2 credits left"
    )
    assert format_alert_text("ping", {}) == "[ping] your project"


@pytest.mark.parametrize(
    ("url", "expected"),
    [
        ("https://hooks.slack.com/services/T0/B0/X", True),
        ("https://HOOKS.SLACK.COM/services/T0", True),
        ("https://hooks.slack.com.evil.example/services", False),
        ("https://example.com/hooks.slack.com", False),
    ],
)
def test_slack_url_detection(url: str, expected: bool) -> None:
    assert is_slack_webhook_url(url) is expected
