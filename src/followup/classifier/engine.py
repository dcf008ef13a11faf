"""Classification engine: rules + VIP override + AI + learned weights.

Classification flow for one email:
1. Evaluate processing rules (ranked by confidence, then catalog order)
2. VIP lookup; with ``vip_override`` a VIP sender's tier decides the
   priority outright and the AI is not consulted
3. Otherwise call the AI classifier (if enabled) and merge with the rules:
   AI sets the baseline, rules may upgrade priority and add labels
4. Importance/urgency from the learned priority-factor weights
5. Confidence = max of contributors, halved when AI and rules disagree by
   more than one severity level; learned category hints may refine it
6. ``feedback_required`` below the confidence threshold
7. Suggested actions auto-execute only at or above the auto-action threshold

If the AI is unavailable the engine degrades to rules-only and flags the
result for feedback. With no usable signal at all it returns a MANUAL
fallback classification.

Usage:
    from followup.classifier.engine import ClassificationEngine

    engine = ClassificationEngine(rules, vips, learning, ai_classifier, store)
    result = await engine.classify(context, config.classification)
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import pydantic
import regex

from followup.classifier.ai_classifier import AIClassificationRequest
from followup.classifier.models import (
    AIMethod,
    ClassificationResult,
    HybridMethod,
    ManualMethod,
    RulesMethod,
    SuggestedAction,
    VIPMethod,
    max_priority,
    severity,
)
from followup.classifier.vip import normalize_email
from followup.config_schema import ClassificationConfig
from followup.core.errors import (
    AIClassifierError,
    ConfigurationError,
    ConfigValidationError,
    DatabaseError,
    RateLimitExceeded,
)
from followup.core.logging import get_logger, truncate_pii

if TYPE_CHECKING:
    from followup.classifier.ai_classifier import AIClassificationResponse, AIClassifier
    from followup.classifier.learning import LearningSystem
    from followup.classifier.models import (
        ClassificationFeedback,
        EmailContext,
        EmailRecord,
        MethodDetail,
        Priority,
        Sentiment,
    )
    from followup.classifier.rules_engine import RuleMatch, RulesEngine
    from followup.classifier.vip import VIPLookup, VIPManager
    from followup.db.store import DatabaseStore

logger = get_logger(__name__)

FALLBACK_CONFIDENCE = 0.3
VIP_CONFIDENCE = 0.95
# Confidence multiplier when AI and rules are more than one level apart
DISAGREEMENT_DISCOUNT = 0.5

VIP_IMPORTANCE = {1: 100.0, 2: 90.0, 3: 80.0}
VIP_URGENCY = {1: 90.0, 2: 70.0, 3: 50.0}

URGENT_KEYWORDS = (
    "urgent",
    "asap",
    "immediately",
    "critical",
    "deadline",
    "by today",
    "by tomorrow",
    "eod",
)

URGENCY_FACTORS = ("keyword_urgency", "deadline_proximity", "sentiment_urgency")

_FALLBACK_URGENT = regex.compile(r"urgent|asap|important|critical", regex.IGNORECASE)
_EXECUTIVE_SENDER = regex.compile(r"@(ceo|president|director|manager)", regex.IGNORECASE)
_PARTNER_DOMAIN = regex.compile(r"@(company|client|partner)\.com$", regex.IGNORECASE)
_AUTOMATED_SENDER = regex.compile(
    r"^(noreply|no-reply|donotreply|notifications?|system|automated|bot|service)@",
    regex.IGNORECASE,
)
_RECURRING_SUBJECT = regex.compile(r"\b(weekly|monthly|daily)\b", regex.IGNORECASE)
_DEADLINE_TODAY = regex.compile(
    r"\bby\s+(today|eod|end of day|close of business|cob|tonight)\b", regex.IGNORECASE
)
_DEADLINE_TOMORROW = regex.compile(r"\bby\s+tomorrow\b", regex.IGNORECASE)
_DEADLINE_WEEKDAY = regex.compile(
    r"\bby\s+(monday|tuesday|wednesday|thursday|friday|end of week|eow)\b", regex.IGNORECASE
)

REGEX_TIMEOUT = 0.5


@dataclass(frozen=True, slots=True)
class _Draft:
    """Intermediate classification before scoring and action derivation."""

    priority: Priority
    category: str
    labels: frozenset[str]
    sentiment: Sentiment
    confidence: float
    method_detail: MethodDetail
    reasoning: str
    needs_reply: bool = False
    waiting_on_others: bool = False
    ai_actions: tuple[str, ...] = ()
    rule_actions: tuple[SuggestedAction, ...] = ()
    degraded: bool = False


class ClassificationEngine:
    """Orchestrates the classifier collaborators into one result.

    Attributes:
        rules: Processing-rules engine
        vips: VIP registry
        learning: Learning system (initialized lazily on first use)
        ai: External AI classifier, or None when not configured
    """

    def __init__(
        self,
        rules: RulesEngine,
        vips: VIPManager,
        learning: LearningSystem,
        ai: AIClassifier | None = None,
        store: DatabaseStore | None = None,
    ):
        self.rules = rules
        self.vips = vips
        self.learning = learning
        self.ai = ai
        self._store = store

    async def classify(
        self,
        context: EmailContext,
        config: ClassificationConfig | dict[str, Any] | None,
    ) -> ClassificationResult:
        """Classify one email.

        Raises:
            ConfigurationError: config missing or invalid (not retried)
            PermissionDeniedError: AI credentials rejected
        """
        config = _coerce_config(config)
        email = context.email

        matches = self.rules.evaluate(context)
        vip = self.vips.lookup(email.sender)

        if vip is not None and config.vip_override:
            draft = self._vip_draft(vip, matches)
            logger.debug("vip_override_applied", sender=truncate_pii(email.sender), tier=vip.tier)
        else:
            ai_response, ai_failed = await self._call_ai(context, config)
            if ai_response is None and not matches:
                return self._fallback(context, config, ai_failed)
            draft = _merge(ai_response, matches, config, degraded=ai_failed, email=email)

        await self._record_rule_matches(matches)

        # Learned priority weights apply even with category hints disabled
        await self.learning.initialize()
        if config.learning_enabled:
            draft = await self._apply_learning(draft, email)

        result = self._finish(draft, context, config, vip, matches)

        logger.info(
            "email_classified",
            email_id=email.id,
            priority=result.priority,
            category=result.category,
            method=result.method,
            confidence=round(result.confidence, 3),
            feedback_required=result.feedback_required,
        )
        return result

    async def classify_batch(
        self,
        contexts: Iterable[EmailContext],
        config: ClassificationConfig | dict[str, Any] | None,
        cancel_event: asyncio.Event | None = None,
    ) -> list[ClassificationResult]:
        """Classify emails in order, stopping between items once cancelled.

        Results already produced are returned as-is.
        """
        config = _coerce_config(config)
        results: list[ClassificationResult] = []
        for context in contexts:
            if cancel_event is not None and cancel_event.is_set():
                logger.info("classification_batch_cancelled", completed=len(results))
                break
            results.append(await self.classify(context, config))
        return results

    async def record_feedback(
        self,
        email_id: str,
        classification: ClassificationResult,
        feedback: ClassificationFeedback,
        *,
        email: EmailRecord | None = None,
        event_id: str | None = None,
    ) -> bool:
        return await self.learning.record_feedback(
            email_id, classification, feedback, email=email, event_id=event_id
        )

    async def get_statistics(self) -> dict[str, Any]:
        rule_counts: dict[str, Any] = {}
        if self._store is not None:
            rule_counts = await self._store.get_rule_match_counts()
        return {
            "rules": {
                "total": len(self.rules.rules),
                "enabled": sum(1 for r in self.rules.rules if r.enabled),
                "matches": rule_counts,
            },
            "vips": self.vips.get_statistics(),
            "learning": await self.learning.get_statistics(),
        }

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------

    def _vip_draft(self, vip: VIPLookup, matches: list[RuleMatch]) -> _Draft:
        labels = {"PA-VIP", f"PA-Tier{vip.tier}"}
        for match in matches:
            labels.update(match.rule.labels)
        name = vip.contact.name or vip.contact.email
        return _Draft(
            priority=vip.priority,
            category="vip",
            labels=frozenset(labels),
            sentiment="NEUTRAL",
            confidence=VIP_CONFIDENCE,
            method_detail=VIPMethod(tier=vip.tier, rule_ids=tuple(m.rule.id for m in matches)),
            reasoning=f"VIP Tier {vip.tier} contact: {name}",
            needs_reply=True,
        )

    async def _call_ai(
        self,
        context: EmailContext,
        config: ClassificationConfig,
    ) -> tuple[AIClassificationResponse | None, bool]:
        """Returns (response, failed). ``failed`` means use_ai was on but no answer came back."""
        if not config.use_ai:
            return None, False
        if self.ai is None:
            logger.warning("ai_classifier_not_configured", email_id=context.email.id)
            return None, True
        try:
            return await self.ai.classify_email(AIClassificationRequest.from_context(context)), False
        except (AIClassifierError, RateLimitExceeded) as e:
            logger.warning(
                "ai_classification_degraded",
                email_id=context.email.id,
                error_type=e.error_type,
                retryable=e.retryable,
                error=str(e),
            )
            return None, True

    def _fallback(
        self,
        context: EmailContext,
        config: ClassificationConfig,
        ai_failed: bool,
    ) -> ClassificationResult:
        email = context.email
        text = f"{email.subject} {email.body}"
        urgent = _search(_FALLBACK_URGENT, text)
        priority: Priority = "HIGH" if urgent else "MEDIUM"
        is_newsletter = detect_newsletter(email)

        result = ClassificationResult(
            priority=priority,
            category="other",
            labels=frozenset({"PA-Unclassified"}),
            sentiment="NEUTRAL",
            importance=50.0,
            urgency=70.0 if urgent else 30.0,
            confidence=FALLBACK_CONFIDENCE,
            method_detail=ManualMethod(reason="ai_unavailable" if ai_failed else "no_signal"),
            reasoning="Fallback classification - manual review recommended",
            needs_reply="?" in email.body,
            is_recurring=detect_recurring(context),
            is_newsletter=is_newsletter,
            is_automated=detect_automated(email),
            suggested_actions=tuple(
                _derive_actions(
                    frozenset({"PA-Unclassified"}),
                    priority,
                    is_newsletter,
                    FALLBACK_CONFIDENCE,
                    config.auto_action_threshold,
                )
            ),
            feedback_required=True,
            learning_opportunity=True,
        )
        logger.info("email_classified_fallback", email_id=email.id, priority=priority)
        return result

    async def _apply_learning(self, draft: _Draft, email: EmailRecord) -> _Draft:
        suggestion = await self.learning.suggest_category_for_email(
            email.subject, email.sender, email.body
        )
        if suggestion is None or suggestion.confidence <= draft.confidence:
            return draft

        logger.debug(
            "learning_category_applied",
            email_id=email.id,
            category=suggestion.category,
            previous=draft.category,
        )
        return replace(
            draft,
            category=suggestion.category,
            confidence=(draft.confidence + suggestion.confidence) / 2,
            reasoning=f"{draft.reasoning}; Learning system suggests: {suggestion.category}",
        )

    def _finish(
        self,
        draft: _Draft,
        context: EmailContext,
        config: ClassificationConfig,
        vip: VIPLookup | None,
        matches: list[RuleMatch],
    ) -> ClassificationResult:
        email = context.email
        is_newsletter = detect_newsletter(email)
        vip_override = isinstance(draft.method_detail, VIPMethod)

        priority = draft.priority
        reasoning = draft.reasoning
        if vip_override:
            importance = VIP_IMPORTANCE[vip.tier]
            urgency = VIP_URGENCY[vip.tier]
        else:
            factors = self.priority_factors(context, draft.sentiment, vip is not None)
            importance = self.learning.calculate_priority_score(factors)
            urgency = self._urgency_score(factors)
            if importance > 80 and priority == "LOW":
                priority = "MEDIUM"
                reasoning += "; Priority upgraded based on learned patterns"

        confidence = min(max(draft.confidence, 0.0), 1.0)
        actions = _derive_actions(
            draft.labels, priority, is_newsletter, confidence, config.auto_action_threshold
        )
        actions += _extra_actions(draft, confidence, config.auto_action_threshold, actions)

        received = email.date or datetime.now(UTC)
        return ClassificationResult(
            priority=priority,
            category=draft.category,
            labels=draft.labels,
            sentiment=draft.sentiment,
            importance=round(min(max(importance, 0.0), 100.0), 2),
            urgency=round(min(max(urgency, 0.0), 100.0), 2),
            confidence=confidence,
            method_detail=draft.method_detail,
            reasoning=reasoning,
            needs_reply=draft.needs_reply,
            waiting_on_others=draft.waiting_on_others,
            is_recurring=detect_recurring(context),
            is_newsletter=is_newsletter,
            is_automated=detect_automated(email),
            suggested_actions=tuple(actions),
            applied_rules=tuple(m.rule.id for m in matches),
            is_vip=vip is not None,
            vip_tier=vip.tier if vip is not None else None,
            vip_sla=received + timedelta(hours=vip.sla_hours) if vip is not None else None,
            feedback_required=draft.degraded or confidence < config.confidence_threshold,
            learning_opportunity=confidence < config.auto_action_threshold,
        )

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def priority_factors(
        self,
        context: EmailContext,
        sentiment: Sentiment,
        is_vip: bool,
    ) -> dict[str, float]:
        """Per-email factor values (each 0.0-1.0) for the learned weights."""
        email = context.email
        text = f"{email.subject} {email.body}"
        clues = 0.0
        if email.has_attachments:
            clues += 0.5
        if "?" in email.body:
            clues += 0.5
        return {
            "sender_importance": sender_importance(email.sender, is_vip),
            "keyword_urgency": keyword_urgency(text),
            "deadline_proximity": deadline_proximity(email.body),
            "vip_status": 1.0 if is_vip else 0.0,
            "historical_response": min(max(context.thread_message_count - 1, 0), 5) / 5,
            "sentiment_urgency": sentiment_urgency(sentiment),
            "contextual_clues": clues,
        }

    def _urgency_score(self, factors: dict[str, float]) -> float:
        """Urgency = the urgency factors' weighted score rescaled to their share of weight."""
        subset = {name: factors[name] for name in URGENCY_FACTORS}
        share = self.learning.calculate_priority_score(dict.fromkeys(URGENCY_FACTORS, 1.0))
        if share <= 0:
            return 0.0
        return self.learning.calculate_priority_score(subset) * 100 / share

    async def _record_rule_matches(self, matches: list[RuleMatch]) -> None:
        if self._store is None or not matches:
            return
        try:
            await self._store.record_rule_matches([m.rule.id for m in matches])
        except DatabaseError as e:
            logger.warning("rule_match_record_failed", error=str(e))


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------


def _merge(
    ai: AIClassificationResponse | None,
    matches: list[RuleMatch],
    config: ClassificationConfig,
    *,
    degraded: bool,
    email: EmailRecord,
) -> _Draft:
    top = matches[0] if matches else None
    rule_labels: set[str] = set()
    rule_actions: list[SuggestedAction] = []
    for match in matches:
        rule_labels.update(match.rule.labels)
        rule_actions.extend(
            a
            for a in match.rule.to_suggested_actions(match.rule.confidence)
            if a.type not in ("LABEL", "STAR", "ARCHIVE")
        )
    rule_ids = tuple(m.rule.id for m in matches)

    if ai is not None and top is not None:
        rule_priority = max((m.rule.implied_priority() for m in matches), key=severity)
        priority: Priority = ai.priority
        upgraded = False
        if config.merge.rules_can_upgrade and severity(rule_priority) > severity(ai.priority):
            priority = max_priority(ai.priority, rule_priority)
            upgraded = True

        rule_category = top.rule.implied_category()
        if config.merge.category_source == "rules" and rule_category:
            category = rule_category
        else:
            category = ai.category or rule_category or "other"

        confidence = max(ai.confidence, top.rule.confidence)
        if abs(severity(ai.priority) - severity(rule_priority)) > 1:
            confidence *= DISAGREEMENT_DISCOUNT

        return _Draft(
            priority=priority,
            category=category,
            labels=frozenset(_ai_labels(ai) | rule_labels),
            sentiment=ai.sentiment,
            confidence=confidence,
            method_detail=HybridMethod(
                model=ai.model,
                ai_confidence=ai.confidence,
                rule_ids=rule_ids,
                rule_confidence=top.rule.confidence,
                upgraded=upgraded,
            ),
            reasoning=f"AI: {ai.reasoning}; Rules: {', '.join(m.rule.name for m in matches)}",
            needs_reply=ai.needs_reply,
            waiting_on_others=ai.waiting_on_others,
            ai_actions=ai.suggested_actions,
            rule_actions=tuple(rule_actions),
        )

    if ai is not None:
        return _Draft(
            priority=ai.priority,
            category=ai.category or "other",
            labels=frozenset(_ai_labels(ai)),
            sentiment=ai.sentiment,
            confidence=ai.confidence,
            method_detail=AIMethod(model=ai.model, ai_confidence=ai.confidence),
            reasoning=f"AI: {ai.reasoning}",
            needs_reply=ai.needs_reply,
            waiting_on_others=ai.waiting_on_others,
            ai_actions=ai.suggested_actions,
        )

    subject_urgent = _search(_FALLBACK_URGENT, email.subject)
    automated = detect_automated(email) or detect_newsletter(email)
    reasoning = f"Rules: {', '.join(m.rule.name for m in matches)}"
    if degraded:
        reasoning += " (AI classifier unavailable)"
    return _Draft(
        priority=top.rule.implied_priority(),
        category=top.rule.implied_category() or "other",
        labels=frozenset(rule_labels),
        sentiment="URGENT" if subject_urgent else "NEUTRAL",
        confidence=top.rule.confidence,
        method_detail=RulesMethod(
            rule_ids=rule_ids,
            rule_confidence=top.rule.confidence,
            degraded=degraded,
        ),
        reasoning=reasoning,
        needs_reply="?" in email.body and not automated,
        rule_actions=tuple(rule_actions),
        degraded=degraded,
    )


def _ai_labels(ai: AIClassificationResponse) -> set[str]:
    labels = {label if label.startswith("PA-") else f"PA-{label}" for label in ai.labels}
    if ai.category and ai.category != "other":
        labels.add(f"PA-{ai.category.capitalize()}")
    return labels


def _derive_actions(
    labels: frozenset[str],
    priority: Priority,
    is_newsletter: bool,
    confidence: float,
    threshold: float,
) -> list[SuggestedAction]:
    auto = confidence >= threshold
    actions = [
        SuggestedAction(type="LABEL", value=label, confidence=confidence, auto_execute=auto)
        for label in sorted(labels)
    ]
    if priority in ("CRITICAL", "HIGH"):
        actions.append(SuggestedAction(type="STAR", confidence=confidence, auto_execute=auto))
    if is_newsletter:
        actions.append(SuggestedAction(type="ARCHIVE", confidence=confidence, auto_execute=auto))
    return actions


def _extra_actions(
    draft: _Draft,
    confidence: float,
    threshold: float,
    existing: list[SuggestedAction],
) -> list[SuggestedAction]:
    """Rule and AI actions not already covered by the derived ones."""
    seen = {(a.type, a.value) for a in existing}
    extra: list[SuggestedAction] = []
    for action in draft.rule_actions:
        key = (action.type, action.value)
        if key in seen:
            continue
        seen.add(key)
        extra.append(
            SuggestedAction(
                type=action.type,
                value=action.value,
                confidence=action.confidence,
                auto_execute=action.confidence >= threshold,
            )
        )
    for action_type in draft.ai_actions:
        if any(t == action_type for t, _ in seen):
            continue
        seen.add((action_type, None))
        extra.append(
            SuggestedAction(
                type=action_type,
                confidence=confidence,
                auto_execute=confidence >= threshold,
            )
        )
    return extra


def _coerce_config(config: ClassificationConfig | dict[str, Any] | None) -> ClassificationConfig:
    if config is None:
        raise ConfigurationError(
            "Classification config is missing. Add a 'classification' section to config.yaml."
        )
    if isinstance(config, ClassificationConfig):
        return config
    if isinstance(config, dict):
        try:
            return ClassificationConfig.model_validate(config)
        except pydantic.ValidationError as e:
            raise ConfigValidationError(f"Invalid classification config: {e}") from e
    raise ConfigurationError(f"Unsupported classification config type: {type(config).__name__}")


# ---------------------------------------------------------------------------
# Detectors and factor helpers
# ---------------------------------------------------------------------------


def _search(pattern: regex.Pattern[str], text: str) -> bool:
    try:
        return pattern.search(text, timeout=REGEX_TIMEOUT) is not None
    except TimeoutError:
        logger.warning("classifier_regex_timeout", pattern=pattern.pattern[:50])
        return False


def detect_newsletter(email: EmailRecord) -> bool:
    sender = email.sender.lower()
    return "unsubscribe" in email.body.lower() or "newsletter" in sender or "noreply" in sender


def detect_automated(email: EmailRecord) -> bool:
    return _search(_AUTOMATED_SENDER, normalize_email(email.sender))


def detect_recurring(context: EmailContext) -> bool:
    return context.thread_message_count > 2 or _search(_RECURRING_SUBJECT, context.email.subject)


def sender_importance(sender: str, is_vip: bool = False) -> float:
    address = normalize_email(sender)
    if _search(_EXECUTIVE_SENDER, address):
        return 0.9
    if is_vip or _search(_PARTNER_DOMAIN, address):
        return 0.7
    return 0.3


def keyword_urgency(text: str) -> float:
    lowered = text.lower()
    hits = sum(1 for keyword in URGENT_KEYWORDS if keyword in lowered)
    return min(hits * 0.2, 1.0)


def deadline_proximity(body: str) -> float:
    if _search(_DEADLINE_TODAY, body):
        return 1.0
    if _search(_DEADLINE_TOMORROW, body):
        return 0.7
    if _search(_DEADLINE_WEEKDAY, body):
        return 0.4
    return 0.0


def sentiment_urgency(sentiment: str) -> float:
    if sentiment in ("URGENT", "ANGRY"):
        return 1.0
    if sentiment == "NEGATIVE":
        return 0.5
    return 0.0

