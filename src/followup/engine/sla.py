"""SLA deadline and status tracking for follow-up items.

Windows come from the ``sla`` config section (CRITICAL 2h, HIGH 8h,
MEDIUM 24h, LOW 72h by default). Tier-1 VIP windows are multiplied by
``vip_tier1_factor`` (halved by default).

Status for a deadline: OVERDUE once ``now > deadline``; AT_RISK once the
remaining time is at most ``at_risk_fraction`` of the window; else ON_TIME.
For a fixed deadline status only moves forward, so a stored status is
advanced with ``advance_status`` rather than overwritten.

Usage:
    tracker = SLATracker(config.sla)
    deadline = tracker.compute_deadline("CRITICAL", vip_tier=1, created_at=now)
    status = tracker.status(deadline, now, tracker.window("CRITICAL", 1))
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from followup.classifier.models import SEVERITY_PRIORITY, severity

if TYPE_CHECKING:
    from followup.classifier.models import Priority
    from followup.config_schema import SLAConfig
    from followup.engine.models import FollowUpItem, SLAStatus

SLA_ORDER: dict[str, int] = {"ON_TIME": 0, "AT_RISK": 1, "OVERDUE": 2}


class SLATracker:
    """Computes SLA deadlines and statuses from the configured windows."""

    def __init__(self, config: SLAConfig):
        self._config = config

    def window(self, priority: Priority, vip_tier: int | None = None) -> timedelta:
        hours = self._config.window_hours(priority)
        if vip_tier == 1:
            hours *= self._config.vip_tier1_factor
        return timedelta(hours=hours)

    def compute_deadline(
        self,
        priority: Priority,
        vip_tier: int | None,
        created_at: datetime,
    ) -> datetime:
        return created_at + self.window(priority, vip_tier)

    def status(self, deadline: datetime, now: datetime, window: timedelta) -> SLAStatus:
        if now > deadline:
            return "OVERDUE"
        remaining = deadline - now
        if remaining <= window * self._config.at_risk_fraction:
            return "AT_RISK"
        return "ON_TIME"

    def evaluate(self, item: FollowUpItem, now: datetime) -> SLAStatus:
        """Current status of an item, never behind its stored status."""
        if item.sla_deadline is None:
            return item.sla_status
        computed = self.status(
            item.sla_deadline, now, self.window(item.priority, item.vip_tier if item.is_vip else None)
        )
        return advance_status(item.sla_status, computed)

    @staticmethod
    def time_remaining(deadline: datetime, now: datetime) -> timedelta:
        """Signed time left (negative once overdue)."""
        return deadline - now

    @staticmethod
    def escalate_priority(priority: Priority) -> Priority:
        """One level up; CRITICAL stays CRITICAL."""
        return SEVERITY_PRIORITY[min(severity(priority) + 1, 4)]


def advance_status(previous: SLAStatus, computed: SLAStatus) -> SLAStatus:
    """The later of two statuses in ON_TIME -> AT_RISK -> OVERDUE order."""
    return computed if SLA_ORDER[computed] > SLA_ORDER[previous] else previous
