from __future__ import annotations

import os
from dataclasses import dataclass, field

from notifier.db.models import JobType


@dataclass(frozen=True)
class NotificationConfig:
    app_base_url: str
    from_email: str
    from_name: str
    brevo_api_key: str
    brevo_base_url: str
    email_dry_run: bool
    allowed_recipient_domains: set[str]
    http_timeout_seconds: float = 10.0
    notification_batch_size: int = 20
    job_batch_size: int = 10
    job_retry_delay_seconds: int = 120
    tick_deadline_seconds: float = 50.0
    stale_processing_after_seconds: int = 900
    job_handler_paths: dict[JobType, str] = field(default_factory=dict)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw else default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw else default


def load_notification_config() -> NotificationConfig:
    allowed_domains_raw = os.getenv("EMAIL_ALLOWED_RECIPIENT_DOMAINS", "")
    allowed_domains = {
        domain.strip().lower()
        for domain in allowed_domains_raw.split(",")
        if domain.strip()
    }

    job_handler_paths = {
        job_type: path
        for job_type in JobType
        if (path := os.getenv(f"JOB_HANDLER_{job_type.value.upper()}", "").strip())
    }

    return NotificationConfig(
        app_base_url=os.getenv("APP_BASE_URL", "http://localhost:3000"),
        from_email=os.getenv("EMAIL_FROM_ADDRESS", "notifications@example.com"),
        from_name=os.getenv("EMAIL_FROM_NAME", "Notifier"),
        brevo_api_key=os.getenv("BREVO_API_KEY", ""),
        brevo_base_url=os.getenv("BREVO_BASE_URL", "https://api.brevo.com/v3"),
        email_dry_run=os.getenv("EMAIL_DRY_RUN", "true").lower() == "true",
        allowed_recipient_domains=allowed_domains,
        http_timeout_seconds=_env_float("HTTP_TIMEOUT_SECONDS", 10.0),
        notification_batch_size=_env_int("NOTIFICATION_BATCH_SIZE", 20),
        job_batch_size=_env_int("JOB_BATCH_SIZE", 10),
        job_retry_delay_seconds=_env_int("JOB_RETRY_DELAY_SECONDS", 120),
        tick_deadline_seconds=_env_float("DISPATCH_TICK_DEADLINE_SECONDS", 50.0),
        stale_processing_after_seconds=_env_int(
            "STALE_PROCESSING_AFTER_SECONDS", 900
        ),
        job_handler_paths=job_handler_paths,
    )
