"""Online learning from classification feedback.

The learning log (``learning_log`` table) is the source of truth. The learned
model, meaning the seven priority-factor weights, per-category hints and a
running accuracy, is a projection of that log. It is cached with a TTL and
rebuilt from the most recent records on a cache miss. A stale model within
the TTL is accepted.

Each feedback event is applied online right after its record is appended:

- WRONG_PRIORITY: signed severity error nudges the VIP weight (VIP emails only)
- WRONG_CATEGORY: the corrected category's hint gains ``learning_rate``
- CORRECT: the current category's hint gains ``learning_rate * 0.5``
- WRONG_LABELS / MISSING_ACTION: accuracy only

Weights are renormalized to sum to 1.0 after every mutation.

Usage:
    from followup.classifier.learning import LearningSystem

    learning = LearningSystem(store, config.learning)
    await learning.initialize()
    await learning.record_feedback(email_id, result, PriorityCorrection("CRITICAL"))
    suggestion = await learning.suggest_category_for_email(subject, sender, body)
"""

from __future__ import annotations

import asyncio
import json
import uuid
from collections import Counter
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any, Literal

import regex

from followup.classifier.models import (
    CategoryCorrection,
    ClassificationResult,
    Confirmed,
    LabelsCorrection,
    MissingActionCorrection,
    PriorityCorrection,
    feedback_to_dict,
    parse_feedback,
    severity,
)
from followup.core.errors import DatabaseError
from followup.core.logging import get_logger

if TYPE_CHECKING:
    from followup.classifier.models import ClassificationFeedback, EmailRecord
    from followup.config_schema import LearningConfig
    from followup.db.store import DatabaseStore, LearningRecord

logger = get_logger(__name__)

MODEL_CACHE_KEY = "learning_model"
MODEL_CACHE_PREFIX = "learning_"
SNAPSHOT_STATE_KEY = "learning_model_snapshot"

# EMA smoothing factor for the running accuracy
ACCURACY_ALPHA = 0.1
DEFAULT_ACCURACY = 0.75
TOP_KEYWORDS = 20
NEW_HINT_WEIGHT = 0.5
REBUILT_HINT_WEIGHT = 0.8
SUGGESTION_CAP = 0.95
TREND_DAYS = 7

Outcome = Literal["SUCCESS", "CORRECTED", "IGNORED"]

PriorityFactor = Literal[
    "sender_importance",
    "keyword_urgency",
    "deadline_proximity",
    "vip_status",
    "historical_response",
    "sentiment_urgency",
    "contextual_clues",
]

DEFAULT_WEIGHTS: dict[str, float] = {
    "sender_importance": 0.25,
    "keyword_urgency": 0.20,
    "deadline_proximity": 0.15,
    "vip_status": 0.15,
    "historical_response": 0.10,
    "sentiment_urgency": 0.10,
    "contextual_clues": 0.05,
}

_WORD = regex.compile(r"\b[a-z][a-z0-9]{3,}\b")

_STOPWORDS = frozenset(
    {
        "this", "that", "with", "from", "have", "will", "your", "about", "there",
        "their", "would", "could", "should", "please", "thanks", "thank", "regards",
        "hello", "dear", "just", "what", "when", "which", "been", "were", "they",
        "them", "then", "than", "also", "into", "some", "more", "here", "only",
    }
)  # fmt: skip


@dataclass
class CategoryHints:
    """Learned signature of one category."""

    keywords: list[str] = field(default_factory=list)
    sender_patterns: list[str] = field(default_factory=list)
    subject_patterns: list[str] = field(default_factory=list)
    body_patterns: list[str] = field(default_factory=list)
    weight: float = NEW_HINT_WEIGHT

    def to_dict(self) -> dict[str, Any]:
        return {
            "keywords": list(self.keywords),
            "sender_patterns": list(self.sender_patterns),
            "subject_patterns": list(self.subject_patterns),
            "body_patterns": list(self.body_patterns),
            "weight": self.weight,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CategoryHints:
        return cls(
            keywords=list(data.get("keywords", [])),
            sender_patterns=list(data.get("sender_patterns", [])),
            subject_patterns=list(data.get("subject_patterns", [])),
            body_patterns=list(data.get("body_patterns", [])),
            weight=float(data.get("weight", NEW_HINT_WEIGHT)),
        )


def default_hints() -> dict[str, CategoryHints]:
    return {
        "work": CategoryHints(
            keywords=["project", "meeting", "deadline", "report", "task", "team"],
            sender_patterns=["@company.com", "@client.com"],
            weight=0.8,
        ),
        "personal": CategoryHints(
            keywords=["family", "friend", "weekend", "dinner", "birthday"],
            sender_patterns=["@gmail.com", "@yahoo.com"],
            weight=0.7,
        ),
        "finance": CategoryHints(
            keywords=["invoice", "payment", "bill", "receipt", "transaction", "account"],
            sender_patterns=["@bank.com", "@paypal.com"],
            weight=0.85,
        ),
        "newsletter": CategoryHints(
            keywords=["unsubscribe", "newsletter", "update", "digest", "weekly"],
            sender_patterns=["noreply@", "newsletter@", "notifications@"],
            weight=0.9,
        ),
    }


@dataclass
class LearningModel:
    """Derived learning state: factor weights, category hints, accuracy."""

    weights: dict[str, float] = field(default_factory=lambda: dict(DEFAULT_WEIGHTS))
    hints: dict[str, CategoryHints] = field(default_factory=default_hints)
    accuracy: float = DEFAULT_ACCURACY

    def normalize(self) -> None:
        """Rescale weights to sum to 1.0 (non-negative)."""
        for key, value in self.weights.items():
            self.weights[key] = max(value, 0.0)
        total = sum(self.weights.values())
        if total <= 0:
            self.weights = dict(DEFAULT_WEIGHTS)
            return
        for key in self.weights:
            self.weights[key] /= total

    def to_dict(self) -> dict[str, Any]:
        return {
            "weights": dict(self.weights),
            "hints": {name: hints.to_dict() for name, hints in self.hints.items()},
            "accuracy": self.accuracy,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LearningModel:
        weights = dict(DEFAULT_WEIGHTS)
        weights.update({k: float(v) for k, v in data.get("weights", {}).items() if k in weights})
        model = cls(
            weights=weights,
            hints={
                name: CategoryHints.from_dict(hints)
                for name, hints in data.get("hints", {}).items()
            },
            accuracy=float(data.get("accuracy", DEFAULT_ACCURACY)),
        )
        model.normalize()
        return model


@dataclass(frozen=True, slots=True)
class LearningData:
    """One learning log entry."""

    event_id: str
    email_id: str
    original_classification: ClassificationResult
    outcome: Outcome
    timestamp: datetime
    user_feedback: ClassificationFeedback | None = None
    subject: str | None = None
    sender: str | None = None
    body_excerpt: str | None = None

    @classmethod
    def from_record(cls, record: LearningRecord) -> LearningData:
        return cls(
            event_id=record.event_id,
            email_id=record.email_id,
            original_classification=ClassificationResult.from_dict(record.classification),
            outcome=record.outcome,
            timestamp=record.timestamp,
            user_feedback=parse_feedback(record.feedback) if record.feedback else None,
            subject=record.subject,
            sender=record.sender,
            body_excerpt=record.body_excerpt,
        )


@dataclass(frozen=True, slots=True)
class CategorySuggestion:
    category: str
    confidence: float


def extract_keywords(*texts: str | None) -> list[str]:
    """Lowercased content words (4+ chars, stopwords removed)."""
    words: list[str] = []
    for text in texts:
        if not text:
            continue
        for word in _WORD.findall(text.lower(), timeout=1):
            if word not in _STOPWORDS:
                words.append(word)
    return words


class LearningSystem:
    """Adaptive weights and category hints fed by user feedback.

    Call ``initialize()`` before use; every public coroutine also awaits it,
    so the first real access loads the model. Concurrent first calls share a
    single load.
    """

    def __init__(self, store: DatabaseStore, config: LearningConfig):
        self._store = store
        self._config = config
        self._model: LearningModel | None = None
        self._ready: asyncio.Future[LearningModel] | None = None

    async def initialize(self) -> LearningModel:
        """Load the model (cache hit, else rebuild) exactly once."""
        if self._ready is None:
            self._ready = asyncio.ensure_future(self._load())
        return await self._ready

    async def _load(self) -> LearningModel:
        try:
            cached = await self._store.cache_get(MODEL_CACHE_KEY)
            if cached is not None:
                self._model = LearningModel.from_dict(cached)
                logger.debug("learning_model_cache_hit", categories=len(self._model.hints))
                return self._model
            self._model = await self.rebuild_model()
        except (DatabaseError, ValueError, KeyError) as e:
            logger.error("learning_model_load_failed", error=str(e))
            self._model = LearningModel()
        return self._model

    @property
    def model(self) -> LearningModel:
        if self._model is None:
            raise RuntimeError("LearningSystem.initialize() has not completed")
        return self._model

    # ------------------------------------------------------------------
    # Feedback
    # ------------------------------------------------------------------

    async def record_feedback(
        self,
        email_id: str,
        classification: ClassificationResult,
        feedback: ClassificationFeedback,
        *,
        email: EmailRecord | None = None,
        event_id: str | None = None,
    ) -> bool:
        """Append a learning record and apply the online update.

        Persistence failures are logged and swallowed. A repeated
        ``event_id`` is ignored.

        Returns:
            True if the feedback was recorded and applied
        """
        model = await self.initialize()
        event_id = event_id or uuid.uuid4().hex
        outcome: Outcome = "SUCCESS" if isinstance(feedback, Confirmed) else "CORRECTED"

        try:
            inserted = await self._store.insert_learning_record(
                event_id=event_id,
                email_id=email_id,
                classification=classification.to_dict(),
                outcome=outcome,
                feedback=feedback_to_dict(feedback),
                subject=email.subject if email else None,
                sender=email.sender if email else None,
                body=email.body if email else None,
            )
        except DatabaseError as e:
            logger.error("feedback_record_failed", email_id=email_id, error=str(e))
            return False

        if not inserted:
            logger.info("feedback_duplicate_ignored", email_id=email_id, event_id=event_id)
            return False

        self._apply_feedback(model, classification, feedback)
        await self._save_model(model)

        logger.info(
            "feedback_recorded",
            email_id=email_id,
            feedback_type=feedback.feedback_type,
            accuracy=round(model.accuracy, 4),
        )
        return True

    def _apply_feedback(
        self,
        model: LearningModel,
        classification: ClassificationResult,
        feedback: ClassificationFeedback,
    ) -> None:
        rate = self._config.learning_rate

        if isinstance(feedback, PriorityCorrection):
            error = (severity(feedback.priority) - severity(classification.priority)) / 4
            if classification.is_vip and error > 0:
                model.weights["vip_status"] += error * rate
            model.normalize()
        elif isinstance(feedback, CategoryCorrection):
            hints = model.hints.setdefault(feedback.category, CategoryHints())
            hints.weight = min(hints.weight + rate, 1.0)
        elif isinstance(feedback, Confirmed):
            hints = model.hints.setdefault(classification.category, CategoryHints())
            hints.weight = min(hints.weight + rate * 0.5, 1.0)
        elif isinstance(feedback, MissingActionCorrection):
            logger.debug("missing_action_logged", action=feedback.action)
        elif isinstance(feedback, LabelsCorrection):
            pass
        else:
            raise TypeError(f"Unhandled feedback variant: {feedback!r}")

        was_correct = 1.0 if isinstance(feedback, Confirmed) else 0.0
        model.accuracy = ACCURACY_ALPHA * was_correct + (1 - ACCURACY_ALPHA) * model.accuracy

    async def _save_model(self, model: LearningModel) -> None:
        data = model.to_dict()
        try:
            await self._store.cache_set(MODEL_CACHE_KEY, data, self._config.cache_ttl_seconds)
            await self._store.set_state(SNAPSHOT_STATE_KEY, json.dumps(data))
        except DatabaseError as e:
            logger.error("learning_model_save_failed", error=str(e))

    # ------------------------------------------------------------------
    # Rebuild
    # ------------------------------------------------------------------

    async def rebuild_model(self) -> LearningModel:
        """Recompute accuracy and keywords from the most recent records.

        Weights and hint weights carry over from the last saved snapshot
        (defaults on a cold start). Correctness per record: category is
        correct unless the feedback says otherwise; priority is correct
        unless the feedback is WRONG_PRIORITY.
        """
        model = await self._load_snapshot()
        records = await self._store.get_recent_learning_records(self._config.rebuild_limit)

        category_stats: dict[str, list[int]] = {}
        priority_stats: dict[str, list[int]] = {}
        keywords: dict[str, Counter[str]] = {}

        for record in records:
            try:
                data = LearningData.from_record(record)
            except (ValueError, KeyError) as e:
                logger.warning("learning_record_unreadable", event_id=record.event_id, error=str(e))
                continue

            original = data.original_classification
            feedback = data.user_feedback

            stats = category_stats.setdefault(original.category, [0, 0])
            stats[1] += 1
            if feedback is None or isinstance(feedback, Confirmed):
                stats[0] += 1

            stats = priority_stats.setdefault(original.priority, [0, 0])
            stats[1] += 1
            if not isinstance(feedback, PriorityCorrection):
                stats[0] += 1

            if data.outcome in ("SUCCESS", "CORRECTED"):
                category = (
                    feedback.category
                    if isinstance(feedback, CategoryCorrection)
                    else original.category
                )
                keywords.setdefault(category, Counter()).update(
                    extract_keywords(data.subject, data.body_excerpt)
                )

        total_correct = sum(s[0] for s in category_stats.values())
        total = sum(s[1] for s in category_stats.values())
        model.accuracy = total_correct / total if total else DEFAULT_ACCURACY

        for category, counts in keywords.items():
            mined = [word for word, _ in counts.most_common(TOP_KEYWORDS)]
            if not mined:
                continue
            hints = model.hints.get(category)
            if hints is None:
                model.hints[category] = CategoryHints(keywords=mined, weight=REBUILT_HINT_WEIGHT)
            else:
                merged = list(dict.fromkeys(hints.keywords + mined))
                hints.keywords = merged[:TOP_KEYWORDS]

        self._model = model
        await self._save_model(model)

        logger.info(
            "learning_model_rebuilt",
            examples=len(records),
            accuracy=round(model.accuracy, 4),
            categories=len(model.hints),
            priority_accuracy={
                p: round(s[0] / s[1], 3) for p, s in priority_stats.items() if s[1]
            },
        )
        return model

    async def _load_snapshot(self) -> LearningModel:
        raw = await self._store.get_state(SNAPSHOT_STATE_KEY)
        if not raw:
            return LearningModel()
        try:
            snapshot = LearningModel.from_dict(json.loads(raw))
        except (ValueError, TypeError) as e:
            logger.warning("learning_snapshot_unreadable", error=str(e))
            return LearningModel()
        model = LearningModel(weights=snapshot.weights, accuracy=snapshot.accuracy)
        model.hints.update(snapshot.hints)
        return model

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def suggest_category_for_email(
        self,
        subject: str,
        sender: str,
        body: str,
    ) -> CategorySuggestion | None:
        """Best-matching learned category, or None below the minimum confidence."""
        model = await self.initialize()
        text = f"{subject} {body}".lower()
        sender_lower = (sender or "").lower()

        best: CategorySuggestion | None = None
        for category, hints in model.hints.items():
            score = 0.0
            for keyword in hints.keywords:
                if keyword.lower() in text:
                    score += self._config.keyword_match_score
            for pattern in hints.sender_patterns:
                if pattern.lower() in sender_lower:
                    score += self._config.sender_match_score
            score *= hints.weight
            if best is None or score > best.confidence:
                best = CategorySuggestion(category=category, confidence=min(score, SUGGESTION_CAP))

        if best is None or best.confidence <= self._config.min_suggestion_confidence:
            return None
        return best

    def calculate_priority_score(self, factors: Mapping[str, float]) -> float:
        """Weighted sum of factor values (each 0.0-1.0), scaled to 0-100."""
        weights = self._model.weights if self._model else DEFAULT_WEIGHTS
        score = sum(weights.get(name, 0.0) * value for name, value in factors.items())
        return min(max(score * 100, 0.0), 100.0)

    async def get_priority_weights(self) -> dict[str, float]:
        model = await self.initialize()
        return dict(model.weights)

    async def get_category_hints(self, category: str) -> CategoryHints | None:
        model = await self.initialize()
        return model.hints.get(category)

    async def get_statistics(self, now: datetime | None = None) -> dict[str, Any]:
        model = await self.initialize()
        now = now or datetime.now(UTC)

        feedback_by_type = {
            "CORRECT": 0,
            "WRONG_PRIORITY": 0,
            "WRONG_CATEGORY": 0,
            "WRONG_LABELS": 0,
            "MISSING_ACTION": 0,
        }
        total = 0
        for feedback_type, count in (await self._store.get_feedback_counts()).items():
            total += count
            key = "CORRECT" if feedback_type == "NONE" else feedback_type
            feedback_by_type[key] = feedback_by_type.get(key, 0) + count

        daily: dict[str, list[int]] = {}
        records = await self._store.get_learning_records_since(now - timedelta(days=TREND_DAYS))
        for record in records:
            day = record.timestamp.date().isoformat()
            stats = daily.setdefault(day, [0, 0])
            stats[1] += 1
            if record.feedback_type in (None, "CORRECT"):
                stats[0] += 1

        return {
            "total_feedback": total,
            "feedback_by_type": feedback_by_type,
            "accuracy": model.accuracy,
            "categories_learned": len(model.hints),
            "weights": dict(model.weights),
            "trend": [
                {"date": day, "accuracy": stats[0] / stats[1]}
                for day, stats in sorted(daily.items())
            ],
        }

    async def reset(self) -> int:
        """Drop the cached and snapshotted model; next access rebuilds.

        Returns:
            Number of cache entries removed
        """
        removed = await self._store.cache_invalidate(MODEL_CACHE_PREFIX)
        await self._store.set_state(SNAPSHOT_STATE_KEY, "")
        self._model = None
        self._ready = None
        logger.info("learning_model_reset", cache_entries_removed=removed)
        return removed
