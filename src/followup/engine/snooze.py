"""Snooze time suggestions.

Maps an urgency bucket to a wake time using the ``snooze.policy`` table:

    IMMEDIATE  -> now + immediate_hours (1h)
    TODAY      -> now + today_hours (3h), rolled into working hours
    THIS_WEEK  -> + this_week_business_days (2) working days at morning_time
    NEXT_WEEK  -> next Monday at morning_time
    LATER      -> now + later_days (30)

Every computed time that falls outside working hours is rolled forward to the
next working slot in the user's timezone. When ``snooze.use_ai_advisor`` is
on and an AI classifier is available, its answer is used if it passes
validation (future time, at least two future alternatives); otherwise the
table above applies.

Usage:
    engine = SnoozeEngine(config.snooze, config.working_hours, config.timezone, advisor=ai)
    suggestion = await engine.suggest(email, classification=result)
"""

from __future__ import annotations

from datetime import UTC, date, datetime, time, timedelta
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo

from followup.config_schema import WEEKDAY_NAMES
from followup.core.errors import ConfigurationError, FollowupError
from followup.core.logging import get_logger
from followup.engine.models import QuickSnoozeOption, SnoozeSuggestion

if TYPE_CHECKING:
    from followup.classifier.ai_classifier import AIClassifier
    from followup.classifier.models import ClassificationResult, EmailRecord, Priority
    from followup.config_schema import SnoozeConfig, WorkingHoursConfig
    from followup.engine.models import UrgencyLevel

logger = get_logger(__name__)

URGENCY_ORDER: tuple[UrgencyLevel, ...] = ("IMMEDIATE", "TODAY", "THIS_WEEK", "NEXT_WEEK", "LATER")

PRIORITY_URGENCY: dict[str, UrgencyLevel] = {
    "CRITICAL": "IMMEDIATE",
    "HIGH": "TODAY",
    "MEDIUM": "THIS_WEEK",
    "LOW": "NEXT_WEEK",
}

_REASONING: dict[str, str] = {
    "IMMEDIATE": "Needs attention within the hour",
    "TODAY": "Follow up later today",
    "THIS_WEEK": "Follow up in a couple of working days",
    "NEXT_WEEK": "Can wait until next week",
    "LATER": "Low-signal mail, revisit in a month",
}


def _parse_hhmm(value: str) -> time:
    hours, minutes = map(int, value.split(":"))
    return time(hours, minutes)


def _at(day: date, hhmm: str, tz: ZoneInfo) -> datetime:
    return datetime.combine(day, _parse_hhmm(hhmm), tzinfo=tz)


def infer_urgency(
    priority: Priority,
    *,
    is_newsletter: bool = False,
    is_automated: bool = False,
) -> UrgencyLevel:
    """Urgency bucket for a priority; newsletters and automated mail wait longest."""
    if is_newsletter or is_automated:
        return "LATER"
    return PRIORITY_URGENCY.get(priority, "THIS_WEEK")


class SnoozeEngine:
    """Computes wake times from urgency, working hours and the user's timezone."""

    def __init__(
        self,
        config: SnoozeConfig,
        working_hours: WorkingHoursConfig,
        timezone: str,
        advisor: AIClassifier | None = None,
    ):
        self._config = config
        self._policy = config.policy
        self._working_hours = working_hours
        self._timezone = timezone
        self._advisor = advisor

    # ------------------------------------------------------------------
    # Suggestions
    # ------------------------------------------------------------------

    async def suggest(
        self,
        email: EmailRecord | None,
        user_timezone: str | None = None,
        working_hours: WorkingHoursConfig | None = None,
        *,
        classification: ClassificationResult | None = None,
        priority: Priority = "MEDIUM",
        is_newsletter: bool = False,
        now: datetime | None = None,
    ) -> SnoozeSuggestion:
        """Suggest a wake time plus at least two alternatives.

        Args:
            email: The email being snoozed (needed only by the AI advisor)
            user_timezone: IANA zone name; defaults to the configured timezone
            working_hours: Overrides the configured working hours
            classification: Source of priority/newsletter/automated signals
            priority: Used when no classification is given
            is_newsletter: Used when no classification is given
            now: Current time (defaults to UTC now)
        """
        now = now or datetime.now(UTC)
        tz_name = user_timezone or self._timezone
        hours = working_hours or self._working_hours

        if classification is not None:
            urgency = infer_urgency(
                classification.priority,
                is_newsletter=classification.is_newsletter,
                is_automated=classification.is_automated,
            )
        else:
            urgency = infer_urgency(priority, is_newsletter=is_newsletter)

        if self._config.use_ai_advisor and self._advisor is not None and email is not None:
            advised = await self._ask_advisor(email, now, tz_name, hours)
            if advised is not None:
                return advised

        return self.fallback(urgency, now=now, user_timezone=tz_name, working_hours=hours)

    def fallback(
        self,
        urgency: UrgencyLevel,
        *,
        now: datetime | None = None,
        user_timezone: str | None = None,
        working_hours: WorkingHoursConfig | None = None,
    ) -> SnoozeSuggestion:
        """Deterministic suggestion from the policy table."""
        now = now or datetime.now(UTC)
        tz = ZoneInfo(user_timezone or self._timezone)
        hours = working_hours or self._working_hours

        suggested = self.compute_time(urgency, now, tz, hours)
        alternatives = self._alternatives(suggested, now, tz, hours)

        logger.debug(
            "snooze_fallback_computed",
            urgency=urgency,
            suggested_time=suggested.isoformat(),
        )
        return SnoozeSuggestion(
            suggested_time=suggested,
            alternative_times=alternatives,
            urgency_level=urgency,
            reasoning=_REASONING[urgency],
            source="policy",
        )

    def compute_time(
        self,
        urgency: UrgencyLevel,
        now: datetime,
        tz: ZoneInfo,
        working_hours: WorkingHoursConfig,
    ) -> datetime:
        policy = self._policy
        today = now.astimezone(tz).date()

        if urgency == "IMMEDIATE":
            target = now + timedelta(hours=policy.immediate_hours)
        elif urgency == "TODAY":
            target = now + timedelta(hours=policy.today_hours)
        elif urgency == "THIS_WEEK":
            day = self._add_working_days(today, policy.this_week_business_days, working_hours)
            target = _at(day, policy.morning_time, tz)
        elif urgency == "NEXT_WEEK":
            monday = today + timedelta(days=7 - today.weekday())
            target = _at(monday, policy.morning_time, tz)
        else:
            target = now + timedelta(days=policy.later_days)

        return self.roll_forward(target, tz, working_hours)

    def roll_forward(
        self,
        when: datetime,
        tz: ZoneInfo,
        working_hours: WorkingHoursConfig | None = None,
    ) -> datetime:
        """Move ``when`` to the next moment inside working hours (UTC result)."""
        hours = working_hours or self._working_hours
        local = when.astimezone(tz)

        # A full week plus the starting day always reaches a working day.
        for _ in range(8):
            day_hours = hours.days.get(WEEKDAY_NAMES[local.weekday()])
            if day_hours is not None:
                start = _at(local.date(), day_hours.start, tz)
                end = _at(local.date(), day_hours.end, tz)
                if local < start:
                    return start.astimezone(UTC)
                if local < end:
                    return local.astimezone(UTC)
            local = _at(local.date() + timedelta(days=1), "00:00", tz)

        raise ConfigurationError("Working hours define no working day")

    def _add_working_days(self, day: date, count: int, working_hours: WorkingHoursConfig) -> date:
        while count > 0:
            day += timedelta(days=1)
            if WEEKDAY_NAMES[day.weekday()] in working_hours.days:
                count -= 1
        return day

    def _alternatives(
        self,
        suggested: datetime,
        now: datetime,
        tz: ZoneInfo,
        working_hours: WorkingHoursConfig,
    ) -> tuple[datetime, ...]:
        """Two distinct times after ``suggested``, preferring later urgency buckets."""
        candidates = [self.compute_time(level, now, tz, working_hours) for level in URGENCY_ORDER]
        picked: list[datetime] = []
        for candidate in sorted(candidates):
            if candidate > suggested and candidate not in picked:
                picked.append(candidate)
            if len(picked) == 2:
                return tuple(picked)

        offset = 1
        while len(picked) < 2:
            candidate = self.roll_forward(suggested + timedelta(days=offset), tz, working_hours)
            if candidate not in picked:
                picked.append(candidate)
            offset += 7
        return tuple(sorted(picked))

    async def _ask_advisor(
        self,
        email: EmailRecord,
        now: datetime,
        tz_name: str,
        working_hours: WorkingHoursConfig,
    ) -> SnoozeSuggestion | None:
        try:
            advice = await self._advisor.suggest_snooze(email, now, tz_name, working_hours)
        except FollowupError as e:
            logger.warning(
                "snooze_advisor_failed",
                email_id=email.id,
                error_type=e.error_type,
                error=str(e),
            )
            return None

        if advice.suggested_time <= now:
            logger.warning("snooze_advisor_rejected", email_id=email.id, reason="past_time")
            return None

        alternatives = tuple(
            t for t in dict.fromkeys(advice.alternative_times) if t > now and t != advice.suggested_time
        )
        if len(alternatives) < 2:
            logger.warning("snooze_advisor_rejected", email_id=email.id, reason="few_alternatives")
            return None

        logger.info("snooze_advisor_used", email_id=email.id, urgency=advice.urgency_level)
        return SnoozeSuggestion(
            suggested_time=advice.suggested_time.astimezone(UTC),
            alternative_times=tuple(t.astimezone(UTC) for t in alternatives),
            urgency_level=advice.urgency_level,
            reasoning=advice.reasoning,
            source="ai",
        )

    # ------------------------------------------------------------------
    # Quick options
    # ------------------------------------------------------------------

    def quick_snooze_options(
        self,
        now: datetime | None = None,
        user_timezone: str | None = None,
    ) -> list[QuickSnoozeOption]:
        """Preset choices: 1 hour, 3 hours, tomorrow morning, next week, end of week.

        End of week is omitted once this week's Friday slot has passed.
        """
        now = now or datetime.now(UTC)
        tz = ZoneInfo(user_timezone or self._timezone)
        hours = self._working_hours
        policy = self._policy
        today = now.astimezone(tz).date()

        tomorrow = self.roll_forward(_at(today + timedelta(days=1), policy.morning_time, tz), tz)
        options = [
            QuickSnoozeOption("1h", "In 1 hour", now + timedelta(hours=1), "Quick follow-up"),
            QuickSnoozeOption("3h", "In 3 hours", now + timedelta(hours=3), "Later today"),
            QuickSnoozeOption(
                "tomorrow",
                "Tomorrow morning",
                tomorrow,
                f"Next working morning at {policy.morning_time}",
            ),
            QuickSnoozeOption(
                "next_week",
                "Next week",
                self.compute_time("NEXT_WEEK", now, tz, hours),
                f"Monday at {policy.morning_time}",
            ),
        ]

        friday = today + timedelta(days=(4 - today.weekday()) % 7)
        end_of_week = _at(friday, policy.end_of_week_time, tz)
        if end_of_week > now:
            options.append(
                QuickSnoozeOption(
                    "end_of_week",
                    "End of week",
                    end_of_week.astimezone(UTC),
                    f"Friday at {policy.end_of_week_time}",
                )
            )
        return options
