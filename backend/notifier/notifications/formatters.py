from __future__ import annotations

from collections.abc import Callable
from typing import Any

SlackFormatter = Callable[[dict[str, Any]], str]


def _title(event_type: str) -> str:
    return event_type.replace("_", " ").replace(".", " ").strip().title() or "Notification"


def _label(payload: dict[str, Any]) -> str:
    for key in ("domain", "projectName", "projectId"):
        value = payload.get(key)
        if value:
            return str(value)
    return "your project"


def _delta(previous: Any, current: Any) -> str:
    if isinstance(previous, (int, float)) and isinstance(current, (int, float)):
        diff = current - previous
        sign = "+" if diff > 0 else ""
        return f" ({sign}{diff:g})"
    return ""


def _providers(payload: dict[str, Any]) -> str:
    providers = payload.get("providers")
    if isinstance(providers, list) and providers:
        return ", ".join(str(provider) for provider in providers)
    provider = payload.get("provider")
    return str(provider) if provider else "unknown provider"


def _format_crawl_completed(payload: dict[str, Any]) -> str:
    lines = [f"*Crawl completed* for *{_label(payload)}*"]
    if payload.get("score") is not None:
        grade = f" ({payload['grade']})" if payload.get("grade") else ""
        lines.append(f"Score: *{payload['score']}*{grade}")
    if payload.get("issueCount") is not None:
        lines.append(f"Issues found: {payload['issueCount']}")
    if payload.get("reportUrl"):
        lines.append(f"<{payload['reportUrl']}|View report>")
    return "\n".join(lines)


def _format_score_drop(payload: dict[str, Any]) -> str:
    previous = payload.get("previousScore")
    current = payload.get("currentScore")
    return (
        f"*Score dropped* for *{_label(payload)}*\n"
        f"{previous} → {current}{_delta(previous, current)}"
    )


def _format_mention(payload: dict[str, Any], verb: str) -> str:
    query = payload.get("query")
    suffix = f" for query _{query}_" if query else ""
    return f"*{_label(payload)}* was {verb} by {_providers(payload)}{suffix}"


def _format_competitor_alert(payload: dict[str, Any]) -> str:
    competitor = payload.get("competitorDomain") or "A competitor"
    change = payload.get("summary") or payload.get("eventType") or "changed"
    return f"*{competitor}* {change} (tracking *{_label(payload)}*)"


def _format_quick_wins(payload: dict[str, Any]) -> str:
    wins = payload.get("quickWins")
    count = len(wins) if isinstance(wins, list) else payload.get("count", 0)
    return f"*{count} quick wins* detected for *{_label(payload)}*"


def _format_credit_alert(payload: dict[str, Any]) -> str:
    remaining = payload.get("creditsRemaining")
    if remaining is None:
        return "*Crawl credits are running low*"
    return f"*Crawl credits are running low*: {remaining} remaining"


def format_generic(payload: dict[str, Any]) -> str:
    if not payload:
        return "_No details_"
    return "\n".join(f"*{key}*: {value}" for key, value in payload.items())


SLACK_FORMATTERS: dict[str, SlackFormatter] = {
    "crawl_completed": _format_crawl_completed,
    "score_drop": _format_score_drop,
    "mention_gained": lambda payload: _format_mention(payload, "mentioned"),
    "mention_lost": lambda payload: _format_mention(payload, "no longer mentioned"),
    "competitor_alert": _format_competitor_alert,
    "quick_wins": _format_quick_wins,
    "credit_alert": _format_credit_alert,
}


def format_slack_message(event_type: str, payload: dict[str, Any]) -> dict[str, Any]:
    title = _title(event_type)
    formatter = SLACK_FORMATTERS.get(event_type, format_generic)
    return {
        "text": title,
        "blocks": [
            {"type": "header", "text": {"type": "plain_text", "text": title}},
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": formatter(payload)},
            },
        ],
    }


def format_alert_text(event: str, data: dict[str, Any]) -> str:
    """One-line summary used when a legacy alert targets a chat webhook."""
    message = data.get("message")
    if message:
        return f"[{event}] {_label(data)}: {message}"
    if "previousScore" in data or "currentScore" in data:
        previous = data.get("previousScore")
        current = data.get("currentScore")
        return f"[{event}] {_label(data)}: score {previous} → {current}{_delta(previous, current)}"
    return f"[{event}] {_label(data)}"
