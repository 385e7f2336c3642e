from datetime import datetime, timedelta, timezone

import pytest

from app.features.organizations.models import Subscription
from app.features.organizations.subscriptions import add_month, apply_plan_change, plan_change


NOW = datetime(2026, 1, 31, 12, 0, tzinfo=timezone.utc)


def _subscription(plan, status, trial_ends_at=None):
    return Subscription(organization_id="org", plan=plan, status=status, user_limit=2, trial_ends_at=trial_ends_at)


@pytest.mark.parametrize(
    "previous_plan, previous_status, new_plan, expected",
    [
        ("free", "active", "pro", "upgrade"),
        ("enterprise", "active", "basic", "downgrade"),
        ("pro", "expired", "pro", "reactivation"),
        ("basic", "cancelled", "free", "reactivation"),
        ("basic", "trial", "pro", "conversion"),
        ("pro", "suspended", "pro", "plan_change"),
    ],
)
def test_change_type(previous_plan, previous_status, new_plan, expected):
    change = plan_change(_subscription(previous_plan, previous_status), new_plan, NOW)
    assert change.change_type == expected


def test_same_active_plan_is_no_change():
    change = plan_change(_subscription("pro", "active"), "pro", NOW)
    assert change.change_type == "no_change"


def test_running_trial_stays_in_trial():
    current = _subscription("basic", "trial", trial_ends_at=NOW + timedelta(days=5))
    change = plan_change(current, "pro", NOW)
    assert change.new_status == "trial"
    assert change.change_type == "upgrade"


def test_moving_to_free_activates():
    current = _subscription("pro", "trial", trial_ends_at=NOW + timedelta(days=5))
    change = plan_change(current, "free", NOW)
    assert change.new_status == "active"
    assert change.change_type == "conversion"


def test_missing_subscription_counts_as_expired_free():
    change = plan_change(None, "basic", NOW)
    assert change.previous_plan == "free"
    assert change.previous_status == "expired"
    assert change.change_type == "reactivation"
    assert change.user_limit == 5


def test_apply_plan_change_sets_limits_and_period():
    subscription = _subscription("free", "active")
    change = plan_change(subscription, "enterprise", NOW)
    apply_plan_change(subscription, change, NOW)

    assert subscription.plan == "enterprise"
    assert subscription.status == "active"
    assert subscription.user_limit == 999
    assert subscription.current_period_start == NOW
    assert subscription.current_period_end == datetime(2026, 2, 28, 12, 0, tzinfo=timezone.utc)


def test_add_month_rolls_over_year():
    assert add_month(datetime(2026, 12, 15)) == datetime(2027, 1, 15)
