"""
Plan change rules for organization subscriptions.
"""
import calendar
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from app.features.organizations.models import Subscription, as_utc
from app.features.permissions.constants import PLAN_ORDER, PLAN_USER_LIMITS, Plan, SubscriptionStatus


_LAPSED = (SubscriptionStatus.EXPIRED.value, SubscriptionStatus.CANCELLED.value)


@dataclass
class PlanChange:
    previous_plan: str
    previous_status: str
    new_plan: str
    new_status: str
    change_type: str
    user_limit: int


def add_month(value: datetime) -> datetime:
    """Same day next month, clamped to the month's last day."""
    year = value.year + value.month // 12
    month = value.month % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def next_status(new_plan: str, previous_status: str, trial_ends_at: Optional[datetime], now: datetime) -> str:
    if new_plan == Plan.FREE.value:
        return SubscriptionStatus.ACTIVE.value
    if previous_status == SubscriptionStatus.TRIAL.value:
        # A running trial keeps going on the new plan
        if trial_ends_at is not None and as_utc(trial_ends_at) > now:
            return SubscriptionStatus.TRIAL.value
    return SubscriptionStatus.ACTIVE.value


def classify_change(previous_plan: str, previous_status: str, new_plan: str, new_status: str) -> str:
    if previous_status in _LAPSED:
        return "reactivation"
    if previous_status == SubscriptionStatus.TRIAL.value and new_status == SubscriptionStatus.ACTIVE.value:
        return "conversion"
    if PLAN_ORDER.index(new_plan) > PLAN_ORDER.index(previous_plan):
        return "upgrade"
    if PLAN_ORDER.index(new_plan) < PLAN_ORDER.index(previous_plan):
        return "downgrade"
    return "plan_change"


def plan_change(current: Optional[Subscription], new_plan: str, now: Optional[datetime] = None) -> PlanChange:
    """
    Work out the outcome of moving to ``new_plan``.

    An organization without a subscription is treated as an expired free plan.
    Choosing the plan an active subscription already has is ``no_change``.
    """
    now = now or datetime.now(timezone.utc)
    previous_plan = current.plan if current else Plan.FREE.value
    previous_status = current.status if current else SubscriptionStatus.EXPIRED.value
    user_limit = PLAN_USER_LIMITS[new_plan]

    if previous_plan == new_plan and previous_status == SubscriptionStatus.ACTIVE.value:
        return PlanChange(previous_plan, previous_status, new_plan, previous_status, "no_change", current.user_limit)

    new_status = next_status(new_plan, previous_status, current.trial_ends_at if current else None, now)
    return PlanChange(
        previous_plan=previous_plan,
        previous_status=previous_status,
        new_plan=new_plan,
        new_status=new_status,
        change_type=classify_change(previous_plan, previous_status, new_plan, new_status),
        user_limit=user_limit,
    )


def apply_plan_change(subscription: Subscription, change: PlanChange, now: Optional[datetime] = None) -> None:
    now = now or datetime.now(timezone.utc)
    subscription.plan = change.new_plan
    subscription.status = change.new_status
    subscription.user_limit = change.user_limit
    subscription.current_period_start = now
    subscription.current_period_end = add_month(now)
