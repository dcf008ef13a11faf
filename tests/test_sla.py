"""Tests for SLA deadline and status tracking."""

from datetime import UTC, datetime, timedelta

import pytest

from followup.config_schema import SLAConfig
from followup.engine.models import FollowUpItem
from followup.engine.sla import SLATracker, advance_status

T0 = datetime(2026, 10, 14, 14, 0, tzinfo=UTC)


@pytest.fixture
def tracker() -> SLATracker:
    return SLATracker(SLAConfig())


def _item(**overrides) -> FollowUpItem:
    data = {
        "id": "item-1",
        "email_id": "msg-1",
        "thread_id": "thr-1",
        "priority": "CRITICAL",
        "category": "vip",
        "reason": "VIP_REQUIRES_ATTENTION",
        "status": "ACTIVE",
        "added_to_queue_at": T0,
        "is_vip": True,
        "vip_tier": 1,
        "sla_deadline": T0 + timedelta(hours=1),
    }
    data.update(overrides)
    return FollowUpItem(**data)


class TestWindows:
    """Tests for window() and compute_deadline()."""

    @pytest.mark.parametrize(
        ("priority", "hours"),
        [("CRITICAL", 2), ("HIGH", 8), ("MEDIUM", 24), ("LOW", 72)],
    )
    def test_default_windows(self, tracker: SLATracker, priority: str, hours: int) -> None:
        assert tracker.window(priority) == timedelta(hours=hours)

    def test_tier1_vip_window_is_halved(self, tracker: SLATracker) -> None:
        assert tracker.compute_deadline("CRITICAL", 1, T0) == T0 + timedelta(hours=1)

    def test_other_tiers_unchanged(self, tracker: SLATracker) -> None:
        assert tracker.compute_deadline("HIGH", 2, T0) == T0 + timedelta(hours=8)
        assert tracker.compute_deadline("HIGH", None, T0) == T0 + timedelta(hours=8)

    def test_custom_factor(self) -> None:
        tracker = SLATracker(SLAConfig(high_hours=10, vip_tier1_factor=0.25))
        assert tracker.window("HIGH", 1) == timedelta(hours=2.5)


class TestStatus:
    """Tests for status() on a tier-1 CRITICAL item (one-hour window)."""

    def test_on_time(self, tracker: SLATracker) -> None:
        deadline = T0 + timedelta(hours=1)
        assert tracker.status(deadline, T0 + timedelta(minutes=30), timedelta(hours=1)) == (
            "ON_TIME"
        )

    def test_at_risk_in_last_fifth(self, tracker: SLATracker) -> None:
        deadline = T0 + timedelta(hours=1)
        window = timedelta(hours=1)
        assert tracker.status(deadline, T0 + timedelta(minutes=48), window) == "AT_RISK"
        assert tracker.status(deadline, T0 + timedelta(minutes=55), window) == "AT_RISK"

    def test_exactly_at_deadline_is_not_overdue(self, tracker: SLATracker) -> None:
        deadline = T0 + timedelta(hours=1)
        assert tracker.status(deadline, deadline, timedelta(hours=1)) == "AT_RISK"

    def test_overdue(self, tracker: SLATracker) -> None:
        deadline = T0 + timedelta(hours=1)
        assert tracker.status(deadline, T0 + timedelta(minutes=61), timedelta(hours=1)) == (
            "OVERDUE"
        )

    def test_time_remaining_is_signed(self, tracker: SLATracker) -> None:
        deadline = T0 + timedelta(hours=1)
        assert tracker.time_remaining(deadline, T0 + timedelta(minutes=61)) == timedelta(
            minutes=-1
        )


class TestEvaluate:
    """Tests for evaluate() and status monotonicity."""

    def test_evaluate_uses_vip_window(self, tracker: SLATracker) -> None:
        assert tracker.evaluate(_item(), T0 + timedelta(minutes=55)) == "AT_RISK"
        assert tracker.evaluate(_item(), T0 + timedelta(minutes=61)) == "OVERDUE"

    def test_status_never_moves_backwards(self, tracker: SLATracker) -> None:
        item = _item(sla_status="OVERDUE", sla_deadline=T0 + timedelta(days=3))
        assert tracker.evaluate(item, T0) == "OVERDUE"

    def test_no_deadline_keeps_stored_status(self, tracker: SLATracker) -> None:
        item = _item(sla_deadline=None, sla_status="AT_RISK")
        assert tracker.evaluate(item, T0) == "AT_RISK"

    def test_advance_status(self) -> None:
        assert advance_status("ON_TIME", "AT_RISK") == "AT_RISK"
        assert advance_status("AT_RISK", "ON_TIME") == "AT_RISK"
        assert advance_status("AT_RISK", "OVERDUE") == "OVERDUE"
        assert advance_status("OVERDUE", "AT_RISK") == "OVERDUE"


class TestEscalatePriority:
    """Tests for escalate_priority()."""

    @pytest.mark.parametrize(
        ("before", "after"),
        [("LOW", "MEDIUM"), ("MEDIUM", "HIGH"), ("HIGH", "CRITICAL"), ("CRITICAL", "CRITICAL")],
    )
    def test_one_level_up(self, before: str, after: str) -> None:
        assert SLATracker.escalate_priority(before) == after
