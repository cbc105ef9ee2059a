"""
Unit tests for the subscription state machine and grace-period rules.
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Optional

import pytest

from core.domain.subscription import (
    access_until,
    can_transition,
    ensure_utc,
    grace_expired,
    grace_period_end,
    is_entitling,
)

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=UTC)


@dataclass
class Sub:
    status: str
    plan_id: str = "monthly"
    current_period_end: Optional[datetime] = None
    cancel_at: Optional[datetime] = None


class TestTransitions:
    @pytest.mark.parametrize(
        "current,target",
        [
            ("incomplete", "active"),
            ("active", "past_due"),
            ("active", "paused"),
            ("past_due", "active"),
            ("paused", "active"),
            ("canceled", "active"),
            ("active", "canceled"),
            ("incomplete", "canceled"),
            ("active", "active"),
        ],
    )
    def test_allowed(self, current, target):
        assert can_transition(current, target) is True

    @pytest.mark.parametrize(
        "current,target",
        [
            ("incomplete", "past_due"),
            ("canceled", "past_due"),
            ("canceled", "paused"),
            ("paused", "past_due"),
            ("active", "incomplete"),
        ],
    )
    def test_rejected(self, current, target):
        assert can_transition(current, target) is False

    def test_unknown_status_raises(self):
        with pytest.raises(ValueError):
            can_transition("active", "refunded")


class TestGracePeriod:
    def test_cancel_at_wins(self):
        cancel_at = NOW + timedelta(days=3)
        period_end = NOW + timedelta(days=10)
        assert grace_period_end(cancel_at, period_end, NOW) == cancel_at

    def test_falls_back_to_period_end(self):
        period_end = NOW + timedelta(days=10)
        assert grace_period_end(None, period_end, NOW) == period_end

    def test_falls_back_to_now(self):
        assert grace_period_end(None, None, NOW) == NOW

    def test_boundary_equal_to_now_is_expired(self):
        assert grace_expired(NOW, NOW) is True

    def test_future_boundary_is_not_expired(self):
        assert grace_expired(NOW + timedelta(seconds=1), NOW) is False

    def test_tolerance_extends_boundary(self):
        past = NOW - timedelta(minutes=5)
        assert grace_expired(past, NOW) is True
        assert grace_expired(past, NOW, tolerance=timedelta(minutes=10)) is False

    def test_naive_datetimes_are_utc(self):
        naive = datetime(2026, 3, 15, 12, 0)
        assert ensure_utc(naive) == NOW
        assert grace_expired(naive, NOW) is True


class TestEntitlement:
    def test_active_entitles(self):
        assert is_entitling(Sub("active"), NOW) is True

    def test_incomplete_never_entitles(self):
        assert is_entitling(Sub("incomplete", current_period_end=NOW + timedelta(days=30)), NOW) is False

    def test_canceled_within_grace(self):
        sub = Sub("canceled", current_period_end=NOW + timedelta(days=5))
        assert is_entitling(sub, NOW) is True
        assert access_until(sub, NOW) == NOW + timedelta(days=5)

    def test_canceled_after_grace(self):
        assert is_entitling(Sub("canceled", current_period_end=NOW - timedelta(days=1)), NOW) is False

    def test_canceled_without_dates_is_immediate(self):
        assert is_entitling(Sub("canceled"), NOW) is False

    def test_past_due_keeps_access_for_grace_days(self):
        sub = Sub("past_due", current_period_end=NOW - timedelta(days=3))
        assert is_entitling(sub, NOW, past_due_grace_days=7) is True
        assert access_until(sub, NOW, past_due_grace_days=7) == NOW + timedelta(days=4)

    def test_past_due_loses_access_after_grace_days(self):
        sub = Sub("past_due", current_period_end=NOW - timedelta(days=8))
        assert is_entitling(sub, NOW, past_due_grace_days=7) is False

    def test_lifetime_is_open_ended(self):
        sub = Sub("active", plan_id="lifetime")
        assert is_entitling(sub, NOW) is True
        assert access_until(sub, NOW) is None

    def test_scheduled_cancel_reports_access_until(self):
        sub = Sub("active", cancel_at=NOW + timedelta(days=2))
        assert access_until(sub, NOW) == NOW + timedelta(days=2)
