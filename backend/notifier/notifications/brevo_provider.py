from __future__ import annotations

import logging

import httpx

from notifier.notifications.config import NotificationConfig
from notifier.notifications.senders import DeliveryError
from notifier.notifications.templates import RenderedEmail

logger = logging.getLogger(__name__)


class BrevoEmailProvider:
    """Transactional email over the Brevo HTTP API.

    Every failure surfaces as ``DeliveryError`` so the dispatcher can count
    it as a failed attempt.
    """

    def __init__(
        self, config: NotificationConfig, client: httpx.Client | None = None
    ) -> None:
        self.config = config
        self.client = client

    def send(self, *, to_email: str, rendered: RenderedEmail) -> str | None:
        if self.config.email_dry_run:
            logger.info(
                "email_dry_run",
                extra={"to_email": to_email, "subject": rendered.subject},
            )
            return "dry-run"

        recipient_domain = to_email.split("@")[-1].lower()
        if (
            self.config.allowed_recipient_domains
            and recipient_domain not in self.config.allowed_recipient_domains
        ):
            raise DeliveryError("recipient domain is not in whitelist")

        if not self.config.brevo_api_key:
            raise DeliveryError("BREVO_API_KEY missing")

        request_payload = {
            "sender": {
                "name": self.config.from_name,
                "email": self.config.from_email,
            },
            "to": [{"email": to_email}],
            "subject": rendered.subject,
            "textContent": rendered.text_body,
            "htmlContent": rendered.html_body,
            "tracking": {"opens": False, "clicks": False},
        }

        headers = {
            "api-key": self.config.brevo_api_key,
            "accept": "application/json",
            "content-type": "application/json",
        }

        try:
            if self.client is not None:
                response = self.client.post(
                    f"{self.config.brevo_base_url}/smtp/email",
                    headers=headers,
                    json=request_payload,
                )
            else:
                with httpx.Client(timeout=self.config.http_timeout_seconds) as client:
                    response = client.post(
                        f"{self.config.brevo_base_url}/smtp/email",
                        headers=headers,
                        json=request_payload,
                    )
        except httpx.TimeoutException as exc:
            raise DeliveryError(f"email provider timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise DeliveryError(f"email provider request failed: {exc}") from exc

        if not response.is_success:
            raise DeliveryError(
                f"email provider rejected message: {response.status_code} "
                f"{response.text[:500]}",
                status_code=response.status_code,
                reason=response.reason_phrase,
            )

        body = response.json() if response.content else {}
        if isinstance(body, dict):
            return body.get("messageId")
        return None
