"""Pydantic configuration schema for follow-up triage.

This module defines the configuration schema that mirrors config.yaml
structure. All configuration is validated against these models on startup and
hot-reload.

Usage:
    from followup.config_schema import AppConfig

    config = AppConfig(**yaml_data)
"""

from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

# Current schema version - increment when adding new required fields
CURRENT_SCHEMA_VERSION = 1

Priority = Literal["CRITICAL", "HIGH", "MEDIUM", "LOW"]

FollowUpReason = Literal[
    "NEEDS_REPLY",
    "WAITING_ON_OTHERS",
    "DEADLINE_APPROACHING",
    "VIP_REQUIRES_ATTENTION",
    "MANUAL_FOLLOW_UP",
    "SLA_AT_RISK",
    "PERIODIC_CHECK",
]

WEEKDAY_NAMES = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")


def _validate_hhmm(v: str) -> str:
    import regex  # Use regex library with timeout, not re

    if not regex.match(r"^\d{2}:\d{2}$", v, timeout=1):
        raise ValueError("Time must be in HH:MM format (e.g., '09:00')")
    hours, minutes = map(int, v.split(":"))
    if hours < 0 or hours > 23:
        raise ValueError("Hours must be 00-23")
    if minutes < 0 or minutes > 59:
        raise ValueError("Minutes must be 00-59")
    return v


class MergePolicyConfig(BaseModel):
    """How AI output and rule matches are combined."""

    rules_can_upgrade: bool = Field(
        default=True,
        description="Let a matching rule raise the AI priority (never lowers it)",
    )
    category_source: Literal["ai", "rules"] = Field(
        default="ai",
        description="Which side wins the category when both produced one",
    )


class ClassificationConfig(BaseModel):
    """Classification engine configuration."""

    use_ai: bool = Field(default=True, description="Call the external AI classifier")
    confidence_threshold: float = Field(
        default=0.85,
        ge=0.0,
        le=1.0,
        description="Below this confidence a result is flagged for human feedback",
    )
    auto_action_threshold: float = Field(
        default=0.9,
        ge=0.0,
        le=1.0,
        description="Suggested actions at or above this confidence may auto-execute",
    )
    learning_enabled: bool = Field(
        default=True,
        description="Apply learned category hints to classification results",
    )
    vip_override: bool = Field(
        default=True,
        description="VIP tier forces priority regardless of rules or AI",
    )
    merge: MergePolicyConfig = Field(default_factory=MergePolicyConfig)


class LearningConfig(BaseModel):
    """Online learning configuration."""

    learning_rate: float = Field(default=0.1, gt=0.0, le=1.0)
    rebuild_limit: int = Field(
        default=1000,
        ge=10,
        le=100000,
        description="Most recent feedback records scanned on a model rebuild",
    )
    cache_ttl_seconds: int = Field(default=3600, ge=60, description="Learned model cache TTL")
    # 0.1 per hit is the older scoring; 0.2 gives 0.34 for two keyword hits
    # on a 0.85-weight hint
    keyword_match_score: float = Field(default=0.2, ge=0.0, le=1.0)
    sender_match_score: float = Field(default=0.2, ge=0.0, le=1.0)
    min_suggestion_confidence: float = Field(
        default=0.3,
        ge=0.0,
        le=1.0,
        description="Category suggestions at or below this are discarded",
    )


class SLAConfig(BaseModel):
    """SLA windows per priority (hours)."""

    critical_hours: float = Field(default=2, gt=0)
    high_hours: float = Field(default=8, gt=0)
    medium_hours: float = Field(default=24, gt=0)
    low_hours: float = Field(default=72, gt=0)
    vip_tier1_factor: float = Field(
        default=0.5,
        gt=0.0,
        le=1.0,
        description="Multiplier applied to every window for tier-1 VIP senders",
    )
    at_risk_fraction: float = Field(
        default=0.2,
        gt=0.0,
        lt=1.0,
        description="AT_RISK once remaining time is at most this share of the window",
    )

    def window_hours(self, priority: Priority) -> float:
        return {
            "CRITICAL": self.critical_hours,
            "HIGH": self.high_hours,
            "MEDIUM": self.medium_hours,
            "LOW": self.low_hours,
        }[priority]


class SnoozePolicyConfig(BaseModel):
    """Deterministic snooze timing table."""

    immediate_hours: float = Field(default=1, gt=0)
    today_hours: float = Field(default=3, gt=0)
    this_week_business_days: int = Field(default=2, ge=1, le=10)
    later_days: int = Field(default=30, ge=1, le=365)
    morning_time: str = Field(default="09:00", description="Wake time for day-based options")
    end_of_week_time: str = Field(default="17:00")

    @field_validator("morning_time", "end_of_week_time")
    @classmethod
    def validate_time_format(cls, v: str) -> str:
        return _validate_hhmm(v)


class SnoozeConfig(BaseModel):
    """Snooze engine configuration."""

    use_ai_advisor: bool = Field(
        default=False,
        description="Ask the AI for snooze suggestions before the deterministic table",
    )
    policy: SnoozePolicyConfig = Field(default_factory=SnoozePolicyConfig)


class DayHours(BaseModel):
    """Working hours for a single weekday."""

    start: str = Field(default="09:00")
    end: str = Field(default="17:00")

    @field_validator("start", "end")
    @classmethod
    def validate_time_format(cls, v: str) -> str:
        return _validate_hhmm(v)

    @model_validator(mode="after")
    def validate_order(self) -> "DayHours":
        if self.start >= self.end:
            raise ValueError(f"Working day start {self.start} must be before end {self.end}")
        return self


class WorkingHoursConfig(BaseModel):
    """Working hours used to roll snooze times into a valid slot.

    Days missing from ``days`` are non-working days.
    """

    days: dict[str, DayHours] = Field(
        default_factory=lambda: {name: DayHours() for name in WEEKDAY_NAMES[:5]},
        description="Per-weekday hours keyed by mon..sun",
    )

    @field_validator("days")
    @classmethod
    def validate_days(cls, v: dict[str, DayHours]) -> dict[str, DayHours]:
        unknown = [d for d in v if d not in WEEKDAY_NAMES]
        if unknown:
            raise ValueError(
                f"Unknown weekday(s) {', '.join(unknown)}; use {', '.join(WEEKDAY_NAMES)}"
            )
        if not v:
            raise ValueError("At least one working day is required")
        return v


class QueueConfig(BaseModel):
    """Follow-up queue configuration."""

    max_actions_before_escalation: int = Field(
        default=5,
        ge=1,
        le=100,
        description="Escalate an unresolved item once its action count exceeds this",
    )
    sla_escalation_reasons: list[FollowUpReason] = Field(
        default=[
            "NEEDS_REPLY",
            "DEADLINE_APPROACHING",
            "VIP_REQUIRES_ATTENTION",
            "SLA_AT_RISK",
        ],
        description="Reasons whose items escalate when their SLA goes OVERDUE",
    )
    sweep_interval_minutes: int = Field(
        default=15,
        ge=1,
        le=1440,
        description="How often `followup watch` resurfaces snoozes and refreshes SLAs",
    )


class AIConfig(BaseModel):
    """External AI classifier configuration."""

    model: str = Field(
        default="claude-haiku-4-5-20251001",
        description="Model for email classification",
    )
    max_tokens: int = Field(default=1024, ge=128, le=8192)
    requests_per_minute: int = Field(default=50, ge=1)
    tokens_per_minute: int = Field(default=40000, ge=1000)
    max_attempts: int = Field(default=3, ge=1, le=10)
    backoff_base_seconds: float = Field(default=1.0, ge=0.0, le=60.0)
    max_wait_seconds: float = Field(
        default=20.0,
        gt=0.0,
        description="Longest rate-limiter wait before failing with a retryable error",
    )
    body_max_chars: int = Field(default=2000, ge=100, le=20000)


class RuleConditionConfig(BaseModel):
    """One condition of a processing rule."""

    field: Literal["from", "to", "subject", "body", "label", "attachment"]
    operator: Literal["contains", "equals", "regex", "startsWith", "endsWith"]
    value: str
    case_sensitive: bool = False


class RuleActionConfig(BaseModel):
    """One action of a processing rule."""

    type: Literal["label", "archive", "star", "forward", "draft", "snooze"]
    value: str | None = None


class RuleConfig(BaseModel):
    """Processing rule declared in config.yaml."""

    id: str
    name: str
    precedence: int = Field(default=50, ge=0, le=100)
    conditions: list[RuleConditionConfig] = Field(min_length=1)
    actions: list[RuleActionConfig] = Field(default_factory=list)
    enabled: bool = True
    confidence: float = Field(default=0.85, ge=0.0, le=1.0)


class VIPConfig(BaseModel):
    """VIP contact seeded from config.yaml."""

    email: str = Field(description="Address or *@domain wildcard")
    name: str = ""
    tier: Literal[1, 2, 3] = 2
    auto_draft: bool = False
    sla_hours: float | None = Field(default=None, gt=0)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        if "@" not in v:
            raise ValueError(f"VIP email '{v}' must contain '@'")
        return v


class AppConfig(BaseModel):
    """Root configuration schema.

    If validation fails on startup, the application exits with a clear error.
    If validation fails on hot-reload, the previous valid config is kept.
    """

    schema_version: int = Field(
        default=CURRENT_SCHEMA_VERSION,
        ge=1,
        description="Config schema version for migration tracking",
    )
    timezone: str = Field(
        default="America/New_York",
        description="User timezone for snooze scheduling and display",
    )
    database_path: str = Field(default="data/followup.db")

    classification: ClassificationConfig = Field(default_factory=ClassificationConfig)
    learning: LearningConfig = Field(default_factory=LearningConfig)
    sla: SLAConfig = Field(default_factory=SLAConfig)
    snooze: SnoozeConfig = Field(default_factory=SnoozeConfig)
    working_hours: WorkingHoursConfig = Field(default_factory=WorkingHoursConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    ai: AIConfig = Field(default_factory=AIConfig)

    rules: list[RuleConfig] | None = Field(
        default=None,
        description="Processing rules; the built-in catalog is used when omitted",
    )
    vips: list[VIPConfig] = Field(default_factory=list, description="VIP contacts to seed")

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone '{v}'") from e
        return v

    @field_validator("database_path")
    @classmethod
    def validate_database_path(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Database path cannot be empty")
        if ".." in v:
            raise ValueError("Database path cannot contain '..' (path traversal)")
        return v

    @model_validator(mode="after")
    def validate_rule_ids(self) -> "AppConfig":
        if self.rules:
            seen: set[str] = set()
            for rule in self.rules:
                if rule.id in seen:
                    raise ValueError(f"Duplicate rule id '{rule.id}'")
                seen.add(rule.id)
        return self
