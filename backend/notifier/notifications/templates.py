from __future__ import annotations

from dataclasses import dataclass
from html import escape
from typing import Any

from notifier.services.outbox_service import EMAIL_TYPE_PREFIX


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    text_body: str
    html_body: str | None
    short_text: str


SUBJECTS = {
    "crawl_completed": "Your AI SEO audit is ready",
    "credit_alert": "Action required: crawl credits low",
    "score_drop": "Alert: citability score dropped",
}
FALLBACK_SUBJECT = "Competitor alert: new semantic gaps detected"


def template_name(outbox_type: str) -> str:
    return outbox_type.removeprefix(EMAIL_TYPE_PREFIX)


def _project_url(data: dict[str, Any], app_base_url: str) -> str:
    report_url = data.get("reportUrl")
    if isinstance(report_url, str) and report_url:
        return report_url
    project_id = data.get("projectId")
    base = app_base_url.rstrip("/")
    if project_id:
        return f"{base}/dashboard/projects/{project_id}"
    return f"{base}/dashboard"


def _crawl_completed(data: dict[str, Any], link: str) -> tuple[list[str], list[str]]:
    project = data.get("projectName", "your project")
    score = data.get("score")
    grade = data.get("grade")
    issue_count = data.get("issueCount", 0)

    lines = [f"Crawl completed for {project}", ""]
    html_lines = [f"<h1>Crawl completed for {escape(str(project))}</h1>"]
    if score is not None:
        grade_part = f" ({grade})" if grade else ""
        lines.append(f"Score: {score}{grade_part}")
        html_lines.append(f"<p>Score: {escape(str(score))}{escape(grade_part)}</p>")
    lines.append(f"Found {issue_count} issues to fix.")
    html_lines.append(f"<p>Found {escape(str(issue_count))} issues to fix.</p>")
    lines.append(f"View full report: {link}")
    html_lines.append(f"<p><a href=\"{escape(link)}\">View full report</a></p>")
    return lines, html_lines


def _score_drop(data: dict[str, Any], link: str) -> tuple[list[str], list[str]]:
    project = data.get("projectName", "your project")
    previous = data.get("previousScore")
    current = data.get("currentScore")
    lines = [
        f"The score for {project} dropped from {previous} to {current}.",
        "",
        f"Review the changes: {link}",
    ]
    html_lines = [
        f"<h1>Score dropped for {escape(str(project))}</h1>",
        f"<p>{escape(str(previous))} &rarr; {escape(str(current))}</p>",
        f"<p><a href=\"{escape(link)}\">Review the changes</a></p>",
    ]
    return lines, html_lines


def _credit_alert(data: dict[str, Any], link: str) -> tuple[list[str], list[str]]:
    remaining = data.get("creditsRemaining")
    headline = (
        f"You have {remaining} crawl credits left this month."
        if remaining is not None
        else "Your crawl credits are running low."
    )
    lines = [headline, "", f"Manage your plan: {link}"]
    html_lines = [
        f"<p>{escape(headline)}</p>",
        f"<p><a href=\"{escape(link)}\">Manage your plan</a></p>",
    ]
    return lines, html_lines


def _fallback(data: dict[str, Any], link: str) -> tuple[list[str], list[str]]:
    lines = ["New updates in your dashboard.", "", link]
    html_lines = [
        "<p>New updates in your dashboard.</p>",
        f"<p><a href=\"{escape(link)}\">Open dashboard</a></p>",
    ]
    return lines, html_lines


_RENDERERS = {
    "crawl_completed": _crawl_completed,
    "score_drop": _score_drop,
    "credit_alert": _credit_alert,
}


def render_notification_email(
    outbox_type: str, data: dict[str, Any], *, app_base_url: str
) -> RenderedEmail:
    name = template_name(outbox_type)
    subject = SUBJECTS.get(name, FALLBACK_SUBJECT)
    link = _project_url(data, app_base_url)
    lines, html_lines = _RENDERERS.get(name, _fallback)(data, link)

    return RenderedEmail(
        subject=subject,
        text_body="\n".join(lines),
        html_body="\n".join(html_lines),
        short_text=subject,
    )
