"""Classification data types.

Value types shared by the rules engine, VIP manager, learning system and
classification engine. Enumerations are Literal aliases with companion
``VALID_*`` sets for runtime checks.

The classification method is a closed variant (one dataclass per method) and
user feedback is a tagged union keyed by ``feedback_type``; both are
dispatched with isinstance so every shape is handled explicitly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from followup.core.errors import ClassificationValidationError, FeedbackValidationError

Priority = Literal["CRITICAL", "HIGH", "MEDIUM", "LOW"]
Sentiment = Literal["POSITIVE", "NEUTRAL", "NEGATIVE", "URGENT", "ANGRY"]
Method = Literal["AI", "RULES", "HYBRID", "VIP", "MANUAL"]
ActionType = Literal["LABEL", "ARCHIVE", "STAR", "FORWARD", "DRAFT", "SNOOZE", "MARK_IMPORTANT"]
FeedbackType = Literal[
    "CORRECT",
    "WRONG_PRIORITY",
    "WRONG_CATEGORY",
    "WRONG_LABELS",
    "MISSING_ACTION",
]
VIPTier = Literal[1, 2, 3]

VALID_PRIORITIES: frozenset[str] = frozenset({"CRITICAL", "HIGH", "MEDIUM", "LOW"})
VALID_SENTIMENTS: frozenset[str] = frozenset({"POSITIVE", "NEUTRAL", "NEGATIVE", "URGENT", "ANGRY"})
VALID_ACTION_TYPES: frozenset[str] = frozenset(
    {"LABEL", "ARCHIVE", "STAR", "FORWARD", "DRAFT", "SNOOZE", "MARK_IMPORTANT"}
)
VALID_FEEDBACK_TYPES: frozenset[str] = frozenset(
    {"CORRECT", "WRONG_PRIORITY", "WRONG_CATEGORY", "WRONG_LABELS", "MISSING_ACTION"}
)

# Ordinal severity: CRITICAL=4 .. LOW=1
PRIORITY_SEVERITY: dict[str, int] = {"CRITICAL": 4, "HIGH": 3, "MEDIUM": 2, "LOW": 1}
SEVERITY_PRIORITY: dict[int, Priority] = {4: "CRITICAL", 3: "HIGH", 2: "MEDIUM", 1: "LOW"}

TIER_PRIORITY: dict[int, Priority] = {1: "CRITICAL", 2: "HIGH", 3: "MEDIUM"}


def severity(priority: str) -> int:
    """Ordinal severity of a priority (unknown values count as MEDIUM)."""
    return PRIORITY_SEVERITY.get(priority, 2)


def tier_to_priority(tier: int) -> Priority:
    """Map a VIP tier to the priority it forces."""
    try:
        return TIER_PRIORITY[tier]
    except KeyError:
        raise ClassificationValidationError(f"Invalid VIP tier {tier}; must be 1, 2 or 3") from None


def max_priority(a: Priority, b: Priority) -> Priority:
    """The more severe of two priorities."""
    return a if severity(a) >= severity(b) else b


# ---------------------------------------------------------------------------
# Email input
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class EmailRecord:
    """An email as returned by the mailbox reader."""

    id: str
    thread_id: str
    subject: str
    sender: str
    to: str = ""
    date: datetime | None = None
    body: str = ""
    labels: tuple[str, ...] = ()
    has_attachments: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EmailRecord:
        """Build from a mailbox JSON record (accepts ``from`` or ``sender``)."""
        raw_date = data.get("date")
        date = datetime.fromisoformat(raw_date) if isinstance(raw_date, str) else raw_date
        return cls(
            id=str(data["id"]),
            thread_id=str(data.get("threadId") or data.get("thread_id") or data["id"]),
            subject=data.get("subject") or "",
            sender=data.get("from") or data.get("sender") or "",
            to=data.get("to") or "",
            date=date,
            body=data.get("body") or "",
            labels=tuple(data.get("labels") or ()),
            has_attachments=bool(data.get("hasAttachments") or data.get("has_attachments")),
        )


@dataclass(frozen=True, slots=True)
class EmailContext:
    """Everything the classifier gets to look at for one email.

    Attributes:
        email: The email itself
        thread_message_count: Messages in the thread so far (if known)
        previous_classifications: Earlier results for the same thread
        user_timezone: IANA timezone of the mailbox owner
    """

    email: EmailRecord
    thread_message_count: int = 1
    previous_classifications: tuple[ClassificationResult, ...] = ()
    user_timezone: str | None = None


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class SuggestedAction:
    """An action the classifier proposes.

    ``auto_execute`` is only ever set by the classification engine after
    comparing ``confidence`` with the configured auto-action threshold.
    """

    type: ActionType
    value: str | None = None
    confidence: float = 0.0
    auto_execute: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "value": self.value,
            "confidence": self.confidence,
            "auto_execute": self.auto_execute,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SuggestedAction:
        return cls(
            type=data["type"],
            value=data.get("value"),
            confidence=float(data.get("confidence", 0.0)),
            auto_execute=bool(data.get("auto_execute", False)),
        )


# ---------------------------------------------------------------------------
# Classification method (closed variant)
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class AIMethod:
    """Only the AI classifier contributed."""

    model: str
    ai_confidence: float
    method: Literal["AI"] = "AI"


@dataclass(frozen=True, slots=True)
class RulesMethod:
    """Only rules contributed. ``degraded`` marks an AI failure fallback."""

    rule_ids: tuple[str, ...]
    rule_confidence: float
    degraded: bool = False
    method: Literal["RULES"] = "RULES"


@dataclass(frozen=True, slots=True)
class HybridMethod:
    """AI baseline merged with rule matches."""

    model: str
    ai_confidence: float
    rule_ids: tuple[str, ...]
    rule_confidence: float
    upgraded: bool = False
    method: Literal["HYBRID"] = "HYBRID"


@dataclass(frozen=True, slots=True)
class VIPMethod:
    """VIP override fired; rules that matched are kept for reference."""

    tier: VIPTier
    rule_ids: tuple[str, ...] = ()
    method: Literal["VIP"] = "VIP"


@dataclass(frozen=True, slots=True)
class ManualMethod:
    """Nothing usable fired; a person has to look at it."""

    reason: str
    method: Literal["MANUAL"] = "MANUAL"


MethodDetail = AIMethod | RulesMethod | HybridMethod | VIPMethod | ManualMethod


def method_detail_to_dict(detail: MethodDetail) -> dict[str, Any]:
    if isinstance(detail, AIMethod):
        return {"method": "AI", "model": detail.model, "ai_confidence": detail.ai_confidence}
    if isinstance(detail, RulesMethod):
        return {
            "method": "RULES",
            "rule_ids": list(detail.rule_ids),
            "rule_confidence": detail.rule_confidence,
            "degraded": detail.degraded,
        }
    if isinstance(detail, HybridMethod):
        return {
            "method": "HYBRID",
            "model": detail.model,
            "ai_confidence": detail.ai_confidence,
            "rule_ids": list(detail.rule_ids),
            "rule_confidence": detail.rule_confidence,
            "upgraded": detail.upgraded,
        }
    if isinstance(detail, VIPMethod):
        return {"method": "VIP", "tier": detail.tier, "rule_ids": list(detail.rule_ids)}
    if isinstance(detail, ManualMethod):
        return {"method": "MANUAL", "reason": detail.reason}
    raise ClassificationValidationError(f"Unknown method detail: {detail!r}")


def method_detail_from_dict(data: dict[str, Any]) -> MethodDetail:
    method = data.get("method")
    if method == "AI":
        return AIMethod(model=data.get("model", ""), ai_confidence=data.get("ai_confidence", 0.0))
    if method == "RULES":
        return RulesMethod(
            rule_ids=tuple(data.get("rule_ids", ())),
            rule_confidence=data.get("rule_confidence", 0.0),
            degraded=data.get("degraded", False),
        )
    if method == "HYBRID":
        return HybridMethod(
            model=data.get("model", ""),
            ai_confidence=data.get("ai_confidence", 0.0),
            rule_ids=tuple(data.get("rule_ids", ())),
            rule_confidence=data.get("rule_confidence", 0.0),
            upgraded=data.get("upgraded", False),
        )
    if method == "VIP":
        return VIPMethod(tier=data["tier"], rule_ids=tuple(data.get("rule_ids", ())))
    if method == "MANUAL":
        return ManualMethod(reason=data.get("reason", ""))
    raise ClassificationValidationError(f"Unknown classification method '{method}'")


# ---------------------------------------------------------------------------
# Classification result
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ClassificationResult:
    """Immutable output of one classification pass.

    Attributes:
        priority: CRITICAL, HIGH, MEDIUM or LOW
        category: Free-form category name (e.g. 'finance')
        labels: Labels to apply
        sentiment: Detected sentiment
        importance: 0-100 importance score
        urgency: 0-100 urgency score
        suggested_actions: Ordered actions, auto_execute already decided
        confidence: 0.0-1.0
        method_detail: Which method(s) produced the result
        reasoning: Human-readable explanation
        applied_rules: IDs of rules that matched
        is_vip: Sender is a VIP
        vip_tier: Present iff is_vip
        vip_sla: Reply-by time from the VIP's SLA hours
        feedback_required: Confidence below the configured threshold
        learning_opportunity: Worth asking the user about
    """

    priority: Priority
    category: str
    labels: frozenset[str]
    sentiment: Sentiment
    importance: float
    urgency: float
    confidence: float
    method_detail: MethodDetail
    reasoning: str = ""
    needs_reply: bool = False
    waiting_on_others: bool = False
    is_recurring: bool = False
    is_newsletter: bool = False
    is_automated: bool = False
    suggested_actions: tuple[SuggestedAction, ...] = ()
    applied_rules: tuple[str, ...] = ()
    is_vip: bool = False
    vip_tier: VIPTier | None = None
    vip_sla: datetime | None = None
    feedback_required: bool = False
    learning_opportunity: bool = False

    def __post_init__(self) -> None:
        if self.priority not in VALID_PRIORITIES:
            raise ClassificationValidationError(f"Invalid priority '{self.priority}'")
        if self.sentiment not in VALID_SENTIMENTS:
            raise ClassificationValidationError(f"Invalid sentiment '{self.sentiment}'")
        if not 0.0 <= self.confidence <= 1.0:
            raise ClassificationValidationError(
                f"Confidence {self.confidence} out of range; must be within [0, 1]"
            )
        for name in ("importance", "urgency"):
            value = getattr(self, name)
            if not 0.0 <= value <= 100.0:
                raise ClassificationValidationError(
                    f"{name} {value} out of range; must be within [0, 100]"
                )
        if self.is_vip != (self.vip_tier is not None):
            raise ClassificationValidationError("vip_tier must be set if and only if is_vip")
        if isinstance(self.method_detail, VIPMethod) and not self.is_vip:
            raise ClassificationValidationError("VIP method requires is_vip")

    @property
    def method(self) -> Method:
        return self.method_detail.method

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-safe dict for the learning log."""
        return {
            "priority": self.priority,
            "category": self.category,
            "labels": sorted(self.labels),
            "sentiment": self.sentiment,
            "importance": self.importance,
            "urgency": self.urgency,
            "confidence": self.confidence,
            "method": method_detail_to_dict(self.method_detail),
            "reasoning": self.reasoning,
            "needs_reply": self.needs_reply,
            "waiting_on_others": self.waiting_on_others,
            "is_recurring": self.is_recurring,
            "is_newsletter": self.is_newsletter,
            "is_automated": self.is_automated,
            "suggested_actions": [a.to_dict() for a in self.suggested_actions],
            "applied_rules": list(self.applied_rules),
            "is_vip": self.is_vip,
            "vip_tier": self.vip_tier,
            "vip_sla": self.vip_sla.isoformat() if self.vip_sla else None,
            "feedback_required": self.feedback_required,
            "learning_opportunity": self.learning_opportunity,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ClassificationResult:
        return cls(
            priority=data["priority"],
            category=data["category"],
            labels=frozenset(data.get("labels", ())),
            sentiment=data.get("sentiment", "NEUTRAL"),
            importance=float(data.get("importance", 0.0)),
            urgency=float(data.get("urgency", 0.0)),
            confidence=float(data["confidence"]),
            method_detail=method_detail_from_dict(data["method"]),
            reasoning=data.get("reasoning", ""),
            needs_reply=data.get("needs_reply", False),
            waiting_on_others=data.get("waiting_on_others", False),
            is_recurring=data.get("is_recurring", False),
            is_newsletter=data.get("is_newsletter", False),
            is_automated=data.get("is_automated", False),
            suggested_actions=tuple(
                SuggestedAction.from_dict(a) for a in data.get("suggested_actions", ())
            ),
            applied_rules=tuple(data.get("applied_rules", ())),
            is_vip=data.get("is_vip", False),
            vip_tier=data.get("vip_tier"),
            vip_sla=datetime.fromisoformat(data["vip_sla"]) if data.get("vip_sla") else None,
            feedback_required=data.get("feedback_required", False),
            learning_opportunity=data.get("learning_opportunity", False),
        )


# ---------------------------------------------------------------------------
# Feedback (tagged union keyed by feedback_type)
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Confirmed:
    """The classification was right."""

    user_action: str | None = None
    feedback_type: Literal["CORRECT"] = "CORRECT"


@dataclass(frozen=True, slots=True)
class PriorityCorrection:
    priority: Priority
    user_action: str | None = None
    feedback_type: Literal["WRONG_PRIORITY"] = "WRONG_PRIORITY"

    def __post_init__(self) -> None:
        if self.priority not in VALID_PRIORITIES:
            raise FeedbackValidationError(f"Invalid corrected priority '{self.priority}'")


@dataclass(frozen=True, slots=True)
class CategoryCorrection:
    category: str
    user_action: str | None = None
    feedback_type: Literal["WRONG_CATEGORY"] = "WRONG_CATEGORY"

    def __post_init__(self) -> None:
        if not self.category or not self.category.strip():
            raise FeedbackValidationError("Corrected category cannot be empty")


@dataclass(frozen=True, slots=True)
class LabelsCorrection:
    labels: frozenset[str] = field(default_factory=frozenset)
    user_action: str | None = None
    feedback_type: Literal["WRONG_LABELS"] = "WRONG_LABELS"


@dataclass(frozen=True, slots=True)
class MissingActionCorrection:
    action: str
    user_action: str | None = None
    feedback_type: Literal["MISSING_ACTION"] = "MISSING_ACTION"

    def __post_init__(self) -> None:
        if not self.action or not self.action.strip():
            raise FeedbackValidationError("Missing action cannot be empty")


ClassificationFeedback = (
    Confirmed | PriorityCorrection | CategoryCorrection | LabelsCorrection | MissingActionCorrection
)


def parse_feedback(data: dict[str, Any]) -> ClassificationFeedback:
    """Build the feedback variant matching ``data['feedback_type']``.

    Accepts the correct value either under its own key (``priority``,
    ``category``, ``labels``, ``action``) or under ``correct_value``.

    Raises:
        FeedbackValidationError: Unknown type or missing correct value
    """
    feedback_type = data.get("feedback_type")
    if feedback_type not in VALID_FEEDBACK_TYPES:
        raise FeedbackValidationError(
            f"Unknown feedback_type '{feedback_type}'. "
            f"Must be one of: {', '.join(sorted(VALID_FEEDBACK_TYPES))}"
        )

    user_action = data.get("user_action")
    value = data.get("correct_value")

    def _value(key: str) -> Any:
        found = data.get(key, value)
        if isinstance(found, dict):
            found = found.get(key)
        if found is None:
            raise FeedbackValidationError(f"{feedback_type} feedback requires '{key}'")
        return found

    if feedback_type == "CORRECT":
        return Confirmed(user_action=user_action)
    if feedback_type == "WRONG_PRIORITY":
        return PriorityCorrection(priority=str(_value("priority")).upper(), user_action=user_action)
    if feedback_type == "WRONG_CATEGORY":
        return CategoryCorrection(category=str(_value("category")), user_action=user_action)
    if feedback_type == "WRONG_LABELS":
        labels = _value("labels")
        if isinstance(labels, str):
            labels = [part.strip() for part in labels.split(",") if part.strip()]
        return LabelsCorrection(labels=frozenset(labels), user_action=user_action)
    return MissingActionCorrection(action=str(_value("action")), user_action=user_action)


def feedback_to_dict(feedback: ClassificationFeedback) -> dict[str, Any]:
    result: dict[str, Any] = {"feedback_type": feedback.feedback_type}
    if feedback.user_action:
        result["user_action"] = feedback.user_action
    if isinstance(feedback, PriorityCorrection):
        result["priority"] = feedback.priority
    elif isinstance(feedback, CategoryCorrection):
        result["category"] = feedback.category
    elif isinstance(feedback, LabelsCorrection):
        result["labels"] = sorted(feedback.labels)
    elif isinstance(feedback, MissingActionCorrection):
        result["action"] = feedback.action
    return result
