"""Follow-up queue data types."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Literal

if TYPE_CHECKING:
    from followup.classifier.models import ClassificationResult, EmailRecord, Priority

QueueItemStatus = Literal["ACTIVE", "SNOOZED", "WAITING", "COMPLETED", "ARCHIVED", "ESCALATED"]
FollowUpReason = Literal[
    "NEEDS_REPLY",
    "WAITING_ON_OTHERS",
    "DEADLINE_APPROACHING",
    "VIP_REQUIRES_ATTENTION",
    "MANUAL_FOLLOW_UP",
    "SLA_AT_RISK",
    "PERIODIC_CHECK",
]
SLAStatus = Literal["ON_TIME", "AT_RISK", "OVERDUE"]
QueueAction = Literal[
    "ADDED",
    "UPDATED",
    "SNOOZED",
    "RESURFACED",
    "COMPLETED",
    "ARCHIVED",
    "ESCALATED",
    "MARKED_WAITING",
    "REPLY_RECEIVED",
    "PRIORITY_CHANGED",
    "MANUALLY_EDITED",
]
UrgencyLevel = Literal["IMMEDIATE", "TODAY", "THIS_WEEK", "NEXT_WEEK", "LATER"]

VALID_STATUSES: frozenset[str] = frozenset(
    {"ACTIVE", "SNOOZED", "WAITING", "COMPLETED", "ARCHIVED", "ESCALATED"}
)
VALID_REASONS: frozenset[str] = frozenset(
    {
        "NEEDS_REPLY",
        "WAITING_ON_OTHERS",
        "DEADLINE_APPROACHING",
        "VIP_REQUIRES_ATTENTION",
        "MANUAL_FOLLOW_UP",
        "SLA_AT_RISK",
        "PERIODIC_CHECK",
    }
)
TERMINAL_STATUSES: frozenset[str] = frozenset({"COMPLETED", "ARCHIVED"})
OPEN_STATUSES: frozenset[str] = VALID_STATUSES - TERMINAL_STATUSES


@dataclass
class FollowUpItem:
    """A tracked email in the follow-up queue.

    Items are never deleted; they end in COMPLETED or ARCHIVED, after which
    ``priority`` and ``sla_status`` are frozen.
    """

    id: str
    email_id: str
    thread_id: str
    priority: Priority
    category: str
    reason: FollowUpReason
    status: QueueItemStatus
    added_to_queue_at: datetime
    labels: list[str] = field(default_factory=list)
    subject: str = ""
    sender: str = ""
    received_at: datetime | None = None
    snoozed_until: datetime | None = None
    last_action_date: datetime | None = None
    sla_deadline: datetime | None = None
    sla_status: SLAStatus = "ON_TIME"
    action_count: int = 0
    snooze_count: int = 0
    is_vip: bool = False
    vip_tier: int | None = None
    confidence: float | None = None
    ai_reasoning: str | None = None
    notes: str | None = None
    completed_at: datetime | None = None
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        def _iso(dt: datetime | None) -> str | None:
            return dt.isoformat() if dt else None

        return {
            "id": self.id,
            "email_id": self.email_id,
            "thread_id": self.thread_id,
            "priority": self.priority,
            "category": self.category,
            "labels": list(self.labels),
            "subject": self.subject,
            "sender": self.sender,
            "reason": self.reason,
            "status": self.status,
            "added_to_queue_at": _iso(self.added_to_queue_at),
            "received_at": _iso(self.received_at),
            "snoozed_until": _iso(self.snoozed_until),
            "last_action_date": _iso(self.last_action_date),
            "sla_deadline": _iso(self.sla_deadline),
            "sla_status": self.sla_status,
            "action_count": self.action_count,
            "snooze_count": self.snooze_count,
            "is_vip": self.is_vip,
            "vip_tier": self.vip_tier,
            "confidence": self.confidence,
            "completed_at": _iso(self.completed_at),
        }


@dataclass(frozen=True, slots=True)
class FollowUpCandidate:
    """Input to the enqueue decision.

    Attributes:
        email: The classified email
        classification: Its classification result
        reason: Explicit follow-up reason (e.g. MANUAL_FOLLOW_UP); forces
            enqueueing as long as the classification needs no review
        notes: Free-text note stored on the item
    """

    email: EmailRecord
    classification: ClassificationResult
    reason: FollowUpReason | None = None
    notes: str | None = None


@dataclass(frozen=True, slots=True)
class QueueHistoryEntry:
    """One row of the queue audit log."""

    id: int
    item_id: str
    action: QueueAction
    timestamp: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class BulkOperationResult:
    """Outcome of a bulk snooze/complete.

    Attributes:
        successful: Item IDs that were updated (or already in the target state)
        failed: Item ID -> error message
        total_processed: Number of IDs attempted
    """

    successful: tuple[str, ...]
    failed: dict[str, str]
    total_processed: int


@dataclass(frozen=True, slots=True)
class SnoozeSuggestion:
    """When to bring an item back.

    Attributes:
        suggested_time: Primary wake time (timezone-aware)
        alternative_times: At least two other valid wake times
        urgency_level: Urgency bucket the suggestion came from
        reasoning: Short explanation
        source: 'policy' for the deterministic table, 'ai' for the advisor
    """

    suggested_time: datetime
    alternative_times: tuple[datetime, ...]
    urgency_level: UrgencyLevel
    reasoning: str = ""
    source: Literal["policy", "ai"] = "policy"


@dataclass(frozen=True, slots=True)
class SLARefreshResult:
    """Counts from one SLA sweep over open items."""

    checked: int = 0
    at_risk: int = 0
    overdue: int = 0
    escalated: int = 0
    resurfaced: int = 0
    errors: int = 0


@dataclass(frozen=True, slots=True)
class QuickSnoozeOption:
    """A preset snooze choice offered to the user."""

    key: str
    label: str
    time: datetime
    reason: str
