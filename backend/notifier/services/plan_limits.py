from __future__ import annotations

from datetime import datetime

from notifier.db.models import PlanTier, User
from notifier.notifications.time_utils import ensure_utc

NOTIFICATION_CHANNEL_LIMITS: dict[PlanTier, int] = {
    PlanTier.free: 1,  # email only
    PlanTier.starter: 2,
    PlanTier.pro: 999,
    PlanTier.agency: 999,
}


def resolve_effective_plan(user: User, *, now: datetime) -> PlanTier:
    if user.trial_ends_at is not None and ensure_utc(user.trial_ends_at) > now:
        return PlanTier.pro
    try:
        return PlanTier(user.plan)
    except ValueError:
        return PlanTier.free


def notification_channel_limit(plan: PlanTier) -> int:
    return NOTIFICATION_CHANNEL_LIMITS[plan]
