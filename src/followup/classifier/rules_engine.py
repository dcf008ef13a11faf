"""Processing-rules engine for deterministic email classification.

A rule is an ordered list of conditions (AND semantics) plus the actions to
propose when it fires. Evaluation is a pure function of the email and the
rule catalog: no I/O, no learning state.

Condition operators: contains, equals, startsWith, endsWith, regex. Regex
conditions use the `regex` library with a timeout, so a pathological pattern
cannot hang classification; a timeout counts as "no match".

Usage:
    from followup.classifier.rules_engine import RulesEngine

    engine = RulesEngine()                 # built-in catalog
    engine = RulesEngine.from_config(config.rules)
    matches = engine.evaluate(context)     # best match first
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Literal

import regex

from followup.classifier.models import SuggestedAction
from followup.core.logging import get_logger

if TYPE_CHECKING:
    from followup.classifier.models import EmailContext, Priority
    from followup.config_schema import RuleConfig

logger = get_logger(__name__)

# Seconds allowed for a single regex condition
REGEX_TIMEOUT = 0.5

ConditionField = Literal["from", "to", "subject", "body", "label", "attachment"]
ConditionOperator = Literal["contains", "equals", "regex", "startsWith", "endsWith"]
RuleActionType = Literal["label", "archive", "star", "forward", "draft", "snooze"]

# Label -> priority hints for rule-derived classifications
LABEL_PRIORITY: dict[str, Priority] = {
    "PA-Priority": "HIGH",
    "PA-Urgent": "HIGH",
    "PA-Newsletter": "LOW",
    "PA-FYI": "LOW",
}

# Label -> category for rule-derived classifications
LABEL_CATEGORY: dict[str, str] = {
    "PA-Finance": "finance",
    "PA-Meeting": "meeting",
    "PA-Support": "support",
    "PA-Newsletter": "newsletter",
    "PA-Work": "work",
    "PA-Personal": "personal",
    "PA-Priority": "work",
}


@dataclass(frozen=True, slots=True)
class RuleCondition:
    field: ConditionField
    operator: ConditionOperator
    value: str
    case_sensitive: bool = False

    def describe(self) -> str:
        return f'{self.field} {self.operator} "{self.value}"'


@dataclass(frozen=True, slots=True)
class RuleAction:
    type: RuleActionType
    value: str | None = None


@dataclass(frozen=True, slots=True)
class ProcessingRule:
    """A declarative classification rule.

    Attributes:
        id: Stable rule identifier
        name: Display name
        precedence: 0-100, drives the priority a rule implies
        conditions: All must hold for the rule to match
        actions: Proposed when the rule matches
        enabled: Disabled rules are skipped
        confidence: Declared reliability of the rule (0.0-1.0)
    """

    id: str
    name: str
    precedence: int
    conditions: tuple[RuleCondition, ...]
    actions: tuple[RuleAction, ...] = ()
    enabled: bool = True
    confidence: float = 0.85

    @property
    def labels(self) -> tuple[str, ...]:
        return tuple(a.value for a in self.actions if a.type == "label" and a.value)

    def implied_priority(self) -> Priority:
        """Priority this rule suggests: label hints first, then precedence."""
        for label in self.labels:
            if label in LABEL_PRIORITY:
                return LABEL_PRIORITY[label]
        if self.precedence >= 90:
            return "HIGH"
        if self.precedence >= 60:
            return "MEDIUM"
        return "LOW"

    def implied_category(self) -> str | None:
        for label in self.labels:
            if label in LABEL_CATEGORY:
                return LABEL_CATEGORY[label]
        return None

    def to_suggested_actions(self, confidence: float) -> list[SuggestedAction]:
        """Translate rule actions into (not yet auto-executable) suggestions."""
        return [
            SuggestedAction(type=action.type.upper(), value=action.value, confidence=confidence)
            for action in self.actions
        ]


@dataclass(frozen=True, slots=True)
class RuleMatch:
    """A rule that matched an email.

    Attributes:
        rule: The matched rule
        confidence: matched conditions / total conditions
        matched_conditions: Human-readable matched conditions
        order: Position of the rule in the catalog (tie-break)
    """

    rule: ProcessingRule
    confidence: float
    matched_conditions: tuple[str, ...] = field(default_factory=tuple)
    order: int = 0


class RulesEngine:
    """Evaluates the processing-rule catalog against emails."""

    def __init__(self, rules: list[ProcessingRule] | None = None):
        self._rules = list(DEFAULT_RULES if rules is None else rules)

    @classmethod
    def from_config(cls, rules: list[RuleConfig] | None) -> RulesEngine:
        """Build from config.yaml rules; None keeps the built-in catalog."""
        if rules is None:
            return cls()
        return cls([rule_from_config(r) for r in rules])

    @property
    def rules(self) -> list[ProcessingRule]:
        return list(self._rules)

    def evaluate(self, context: EmailContext) -> list[RuleMatch]:
        """Evaluate every enabled rule against the email.

        Returns:
            Matches ranked by confidence descending; equal confidence keeps
            catalog declaration order.
        """
        matches: list[RuleMatch] = []
        for order, rule in enumerate(self._rules):
            if not rule.enabled or not rule.conditions:
                continue
            matched = [c.describe() for c in rule.conditions if _condition_holds(c, context)]
            if len(matched) != len(rule.conditions):
                continue
            matches.append(
                RuleMatch(
                    rule=rule,
                    confidence=len(matched) / len(rule.conditions),
                    matched_conditions=tuple(matched),
                    order=order,
                )
            )

        matches.sort(key=lambda m: (-m.confidence, m.order))

        logger.debug(
            "rules_evaluated",
            email_id=context.email.id,
            rules=len(self._rules),
            matched=[m.rule.id for m in matches],
        )
        return matches


def rule_from_config(rule: RuleConfig) -> ProcessingRule:
    return ProcessingRule(
        id=rule.id,
        name=rule.name,
        precedence=rule.precedence,
        conditions=tuple(
            RuleCondition(
                field=c.field,
                operator=c.operator,
                value=c.value,
                case_sensitive=c.case_sensitive,
            )
            for c in rule.conditions
        ),
        actions=tuple(RuleAction(type=a.type, value=a.value) for a in rule.actions),
        enabled=rule.enabled,
        confidence=rule.confidence,
    )


def _condition_holds(condition: RuleCondition, context: EmailContext) -> bool:
    email = context.email

    if condition.field == "attachment":
        wanted = condition.value.strip().lower() == "true"
        return email.has_attachments == wanted

    if condition.field == "label":
        return any(
            _match_value(label, condition.operator, condition.value, condition.case_sensitive)
            for label in email.labels
        )

    if condition.field == "to":
        recipients = [r.strip() for r in email.to.split(",") if r.strip()] or [""]
        return any(
            _match_value(r, condition.operator, condition.value, condition.case_sensitive)
            for r in recipients
        )

    field_value = {"from": email.sender, "subject": email.subject, "body": email.body}[
        condition.field
    ]
    return _match_value(
        field_value, condition.operator, condition.value, condition.case_sensitive
    )


def _match_value(
    field_value: str,
    operator: ConditionOperator,
    pattern: str,
    case_sensitive: bool,
) -> bool:
    if operator == "regex":
        flags = 0 if case_sensitive else regex.IGNORECASE
        try:
            return regex.search(pattern, field_value, flags=flags, timeout=REGEX_TIMEOUT) is not None
        except TimeoutError:
            logger.warning("rule_regex_timeout", pattern=pattern[:50])
            return False
        except regex.error as e:
            logger.warning("rule_regex_invalid", pattern=pattern[:50], error=str(e))
            return False

    value = field_value if case_sensitive else field_value.lower()
    expected = pattern if case_sensitive else pattern.lower()

    if operator == "equals":
        return value == expected
    if operator == "contains":
        return expected in value
    if operator == "startsWith":
        return value.startswith(expected)
    if operator == "endsWith":
        return value.endswith(expected)
    return False


def _rule(
    rule_id: str,
    name: str,
    precedence: int,
    conditions: list[tuple[ConditionField, ConditionOperator, str]],
    actions: list[tuple[RuleActionType, str]],
    confidence: float,
) -> ProcessingRule:
    return ProcessingRule(
        id=rule_id,
        name=name,
        precedence=precedence,
        conditions=tuple(RuleCondition(f, op, v) for f, op, v in conditions),
        actions=tuple(RuleAction(t, v) for t, v in actions),
        confidence=confidence,
    )


DEFAULT_RULES: tuple[ProcessingRule, ...] = (
    _rule(
        "default_1",
        "High Priority - Urgent Keywords",
        100,
        [("subject", "regex", r"(urgent|asap|emergency|critical|immediate)")],
        [("label", "PA-Priority"), ("star", "true")],
        0.9,
    ),
    _rule(
        "default_2",
        "Newsletter Detection",
        50,
        [("body", "contains", "unsubscribe"), ("from", "contains", "newsletter")],
        [("label", "PA-Newsletter")],
        0.85,
    ),
    _rule(
        "default_3",
        "Meeting Request",
        80,
        [("subject", "regex", r"(meeting|schedule|calendar|invite|call)")],
        [("label", "PA-Meeting")],
        0.8,
    ),
    _rule(
        "default_4",
        "Financial Documents",
        90,
        [("subject", "regex", r"(invoice|payment|receipt|statement|bill)")],
        [("label", "PA-Finance"), ("star", "true")],
        0.85,
    ),
    _rule(
        "default_5",
        "Support Tickets",
        70,
        [("subject", "regex", r"(ticket|case|support|help)")],
        [("label", "PA-Support")],
        0.8,
    ),
    _rule(
        "default_6",
        "Auto-Archive Newsletters",
        30,
        [("from", "regex", r"(noreply|no-reply|newsletter|marketing)")],
        [("label", "PA-Newsletter"), ("archive", "true")],
        0.75,
    ),
)
