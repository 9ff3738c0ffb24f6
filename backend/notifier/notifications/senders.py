from __future__ import annotations

import hashlib
import hmac
import json
from datetime import datetime
from typing import Any, Protocol
from urllib.parse import urlparse

import httpx

from notifier.notifications.formatters import format_slack_message
from notifier.notifications.time_utils import isoformat_utc

SIGNATURE_HEADER = "X-Signature"
SIGNATURE_PREFIX = "hmac-sha256="
SLACK_WEBHOOK_HOSTS = frozenset({"hooks.slack.com"})


class DeliveryError(Exception):
    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        reason: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.reason = reason


class ChannelSender(Protocol):
    def send(
        self,
        config: dict[str, Any],
        *,
        event_type: str,
        payload: dict[str, Any],
        now: datetime,
    ) -> None: ...


def serialize_body(body: dict[str, Any]) -> bytes:
    return json.dumps(
        body, separators=(",", ":"), ensure_ascii=False, default=str
    ).encode("utf-8")


def compute_signature(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(secret: str, body: bytes, header_value: str | None) -> bool:
    """Check an incoming ``X-Signature`` header; for webhook receivers."""
    if not header_value:
        return False
    return hmac.compare_digest(compute_signature(secret, body), header_value.strip())


def is_slack_webhook_url(url: str) -> bool:
    parsed = urlparse(url)
    return (parsed.hostname or "").lower() in SLACK_WEBHOOK_HOSTS


def _require_url(config: dict[str, Any]) -> str:
    url = config.get("url")
    if not isinstance(url, str) or not url:
        raise DeliveryError("channel config has no url")
    return url


def _post(
    client: httpx.Client,
    url: str,
    body: bytes,
    headers: dict[str, str],
) -> httpx.Response:
    try:
        response = client.post(url, content=body, headers=headers)
    except httpx.TimeoutException as exc:
        raise DeliveryError(f"timed out posting to {url}: {exc}") from exc
    except httpx.HTTPError as exc:
        raise DeliveryError(f"request to {url} failed: {exc}") from exc

    if not response.is_success:
        raise DeliveryError(
            f"delivery to {url} failed: {response.status_code} {response.reason_phrase}",
            status_code=response.status_code,
            reason=response.reason_phrase,
        )
    return response


class WebhookSender:
    def __init__(self, client: httpx.Client) -> None:
        self.client = client

    def post_json(
        self, url: str, body: dict[str, Any], *, secret: str | None = None
    ) -> httpx.Response:
        raw = serialize_body(body)
        headers = {"Content-Type": "application/json"}
        if secret:
            headers[SIGNATURE_HEADER] = compute_signature(secret, raw)
        return _post(self.client, url, raw, headers)

    def send(
        self,
        config: dict[str, Any],
        *,
        event_type: str,
        payload: dict[str, Any],
        now: datetime,
    ) -> None:
        secret = config.get("secret")
        self.post_json(
            _require_url(config),
            {"event": event_type, "timestamp": isoformat_utc(now), "data": payload},
            secret=secret if isinstance(secret, str) else None,
        )


class SlackIncomingSender:
    def __init__(self, client: httpx.Client) -> None:
        self.client = client

    def send(
        self,
        config: dict[str, Any],
        *,
        event_type: str,
        payload: dict[str, Any],
        now: datetime,
    ) -> None:
        message = format_slack_message(event_type, payload)
        _post(
            self.client,
            _require_url(config),
            serialize_body(message),
            {"Content-Type": "application/json"},
        )

    def send_text(self, url: str, text: str) -> None:
        _post(
            self.client,
            url,
            serialize_body({"text": text}),
            {"Content-Type": "application/json"},
        )
