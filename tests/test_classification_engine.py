"""Tests for the hybrid classification engine.

Rules, VIP registry and learning run against a real database; the AI
classifier is an AsyncMock returning AIClassificationResponse values.
"""

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from followup.classifier.ai_classifier import AIClassificationResponse
from followup.classifier.engine import (
    ClassificationEngine,
    deadline_proximity,
    detect_automated,
    detect_newsletter,
    keyword_urgency,
    sender_importance,
)
from followup.classifier.learning import (
    DEFAULT_WEIGHTS,
    MODEL_CACHE_KEY,
    LearningModel,
    LearningSystem,
)
from followup.classifier.models import (
    Confirmed,
    EmailContext,
    EmailRecord,
    HybridMethod,
    ManualMethod,
    RulesMethod,
)
from followup.classifier.rules_engine import RulesEngine
from followup.classifier.vip import VIPManager
from followup.config_schema import ClassificationConfig, LearningConfig
from followup.core.errors import (
    AIClassifierUnavailable,
    ConfigurationError,
    ConfigValidationError,
    PermissionDeniedError,
    RateLimitExceeded,
)
from followup.db.store import DatabaseStore

RECEIVED = datetime(2026, 10, 14, 14, 0, tzinfo=UTC)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _ai_response(**overrides: Any) -> AIClassificationResponse:
    data: dict[str, Any] = {
        "priority": "MEDIUM",
        "category": "work",
        "labels": (),
        "needs_reply": True,
        "waiting_on_others": False,
        "sentiment": "NEUTRAL",
        "key_topics": (),
        "suggested_actions": (),
        "confidence": 0.8,
        "reasoning": "Routine request",
        "model": "test-model",
    }
    data.update(overrides)
    return AIClassificationResponse(**data)


def _context(
    subject: str = "Lunch plans",
    sender: str = "pat@example.org",
    body: str = "Are you free on Friday?",
    thread_message_count: int = 1,
) -> EmailContext:
    return EmailContext(
        email=EmailRecord(
            id="msg-1",
            thread_id="thr-1",
            subject=subject,
            sender=sender,
            body=body,
            date=RECEIVED,
        ),
        thread_message_count=thread_message_count,
    )


@pytest.fixture
def ai() -> MagicMock:
    ai = MagicMock()
    ai.classify_email = AsyncMock(return_value=_ai_response())
    return ai


@pytest.fixture
async def vips(store: DatabaseStore) -> VIPManager:
    manager = VIPManager(store)
    await manager.initialize()
    return manager


@pytest.fixture
async def engine(store: DatabaseStore, vips: VIPManager, ai: MagicMock) -> ClassificationEngine:
    learning = LearningSystem(store, LearningConfig())
    await learning.initialize()
    return ClassificationEngine(RulesEngine(), vips, learning, ai=ai, store=store)


@pytest.fixture
def config() -> ClassificationConfig:
    return ClassificationConfig()


# ---------------------------------------------------------------------------
# VIP override
# ---------------------------------------------------------------------------


class TestVIPOverride:
    """A VIP sender's tier decides the priority."""

    @pytest.mark.asyncio
    async def test_tier1_forces_critical_without_ai(
        self,
        engine: ClassificationEngine,
        vips: VIPManager,
        ai: MagicMock,
        config: ClassificationConfig,
    ) -> None:
        await vips.add_vip("ceo@example.com", 1, name="The CEO")

        result = await engine.classify(_context(sender="The CEO <ceo@example.com>"), config)

        assert result.priority == "CRITICAL"
        assert result.method == "VIP"
        assert result.is_vip is True
        assert result.vip_tier == 1
        assert result.confidence == pytest.approx(0.95)
        assert result.importance == 100.0
        assert result.vip_sla == RECEIVED + timedelta(hours=4)
        assert {"PA-VIP", "PA-Tier1"} <= result.labels
        ai.classify_email.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_override_disabled_uses_ai(
        self,
        engine: ClassificationEngine,
        vips: VIPManager,
        ai: MagicMock,
    ) -> None:
        await vips.add_vip("ceo@example.com", 1)
        config = ClassificationConfig(vip_override=False)

        result = await engine.classify(_context(sender="ceo@example.com"), config)

        assert result.priority == "MEDIUM"
        assert result.method == "AI"
        assert result.is_vip is True
        ai.classify_email.assert_awaited_once()


# ---------------------------------------------------------------------------
# AI / rules merge
# ---------------------------------------------------------------------------


class TestMerge:
    """AI baseline merged with rule matches."""

    @pytest.mark.asyncio
    async def test_ai_only(
        self, engine: ClassificationEngine, config: ClassificationConfig
    ) -> None:
        result = await engine.classify(_context(), config)
        assert result.method == "AI"
        assert result.priority == "MEDIUM"
        assert result.needs_reply is True
        assert result.applied_rules == ()

    @pytest.mark.asyncio
    async def test_rule_upgrades_ai_priority_and_discounts_disagreement(
        self, engine: ClassificationEngine, ai: MagicMock, config: ClassificationConfig
    ) -> None:
        ai.classify_email.return_value = _ai_response(priority="LOW", confidence=0.6)

        result = await engine.classify(_context(subject="URGENT: outage", body=""), config)

        assert result.priority == "HIGH"
        assert isinstance(result.method_detail, HybridMethod)
        assert result.method_detail.upgraded is True
        assert result.applied_rules == ("default_1",)
        # max(0.6, 0.9) halved: LOW vs HIGH is two levels apart
        assert result.confidence == pytest.approx(0.45)
        assert result.feedback_required is True
        assert "PA-Priority" in result.labels

    @pytest.mark.asyncio
    async def test_later_rule_with_higher_priority_upgrades(
        self, engine: ClassificationEngine, ai: MagicMock, config: ClassificationConfig
    ) -> None:
        ai.classify_email.return_value = _ai_response(priority="LOW", confidence=0.6)

        result = await engine.classify(_context(subject="Meeting invoice", body=""), config)

        assert result.applied_rules == ("default_3", "default_4")
        assert result.priority == "HIGH"
        assert result.method_detail.upgraded is True
        # LOW vs HIGH from the financial rule is two levels apart
        assert result.feedback_required is True

    @pytest.mark.asyncio
    async def test_upgrade_can_be_disabled(
        self, engine: ClassificationEngine, ai: MagicMock
    ) -> None:
        ai.classify_email.return_value = _ai_response(priority="LOW", confidence=0.6)
        config = ClassificationConfig.model_validate({"merge": {"rules_can_upgrade": False}})

        result = await engine.classify(_context(subject="URGENT: outage", body=""), config)

        assert result.priority == "LOW"
        assert result.method_detail.upgraded is False

    @pytest.mark.asyncio
    async def test_category_source_rules(self, engine: ClassificationEngine, ai: MagicMock) -> None:
        ai.classify_email.return_value = _ai_response(priority="HIGH", category="work")
        config = ClassificationConfig.model_validate({"merge": {"category_source": "rules"}})

        result = await engine.classify(_context(subject="Invoice 4411", body=""), config)

        assert result.category == "finance"

    @pytest.mark.asyncio
    async def test_rule_matches_are_counted(
        self, engine: ClassificationEngine, store: DatabaseStore, config: ClassificationConfig
    ) -> None:
        await engine.classify(_context(subject="Invoice 4411", body=""), config)
        await engine.classify(_context(subject="Invoice 4412", body=""), config)

        counts = await store.get_rule_match_counts()
        assert counts["default_4"]["match_count"] == 2


# ---------------------------------------------------------------------------
# Degradation and fallback
# ---------------------------------------------------------------------------


class TestDegradation:
    """AI failures degrade to rules, then to a MANUAL fallback."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [AIClassifierUnavailable("down"), RateLimitExceeded("slow down")],
    )
    async def test_ai_failure_degrades_to_rules(
        self,
        engine: ClassificationEngine,
        ai: MagicMock,
        config: ClassificationConfig,
        error: Exception,
    ) -> None:
        ai.classify_email.side_effect = error

        result = await engine.classify(
            _context(subject="Invoice 4411", sender="ap@vendor.example", body=""), config
        )

        assert result.method == "RULES"
        assert isinstance(result.method_detail, RulesMethod)
        assert result.method_detail.degraded is True
        assert result.priority == "HIGH"
        assert result.category == "finance"
        assert result.feedback_required is True
        assert "AI classifier unavailable" in result.reasoning

    @pytest.mark.asyncio
    async def test_no_signal_returns_manual_fallback(
        self, engine: ClassificationEngine, ai: MagicMock
    ) -> None:
        config = ClassificationConfig(use_ai=False)

        result = await engine.classify(_context(subject="Lunch?", body="Are you free?"), config)

        assert result.method == "MANUAL"
        assert isinstance(result.method_detail, ManualMethod)
        assert result.method_detail.reason == "no_signal"
        assert result.confidence == pytest.approx(0.3)
        assert result.category == "other"
        assert result.labels == frozenset({"PA-Unclassified"})
        assert result.feedback_required is True
        assert result.needs_reply is True
        ai.classify_email.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_ai_failure_without_rules_is_manual(
        self, engine: ClassificationEngine, ai: MagicMock, config: ClassificationConfig
    ) -> None:
        ai.classify_email.side_effect = AIClassifierUnavailable("down")

        result = await engine.classify(_context(subject="Important: read me", body=""), config)

        assert result.method_detail.reason == "ai_unavailable"
        assert result.priority == "HIGH"

    @pytest.mark.asyncio
    async def test_missing_ai_client_degrades(
        self, store: DatabaseStore, vips: VIPManager, config: ClassificationConfig
    ) -> None:
        engine = ClassificationEngine(
            RulesEngine(), vips, LearningSystem(store, LearningConfig()), ai=None
        )
        result = await engine.classify(_context(subject="Invoice 4411", body=""), config)
        assert result.method_detail.degraded is True

    @pytest.mark.asyncio
    async def test_permission_denied_propagates(
        self, engine: ClassificationEngine, ai: MagicMock, config: ClassificationConfig
    ) -> None:
        ai.classify_email.side_effect = PermissionDeniedError("401")
        with pytest.raises(PermissionDeniedError):
            await engine.classify(_context(), config)


# ---------------------------------------------------------------------------
# Result invariants
# ---------------------------------------------------------------------------


class TestResultInvariants:
    """Scores stay in range; actions respect the auto-action threshold."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("subject", "body"),
        [
            ("URGENT ASAP critical deadline", "Need this by today, EOD, immediately?"),
            ("Weekly digest", "unsubscribe"),
            ("Hi", ""),
        ],
    )
    async def test_scores_in_range(
        self,
        engine: ClassificationEngine,
        ai: MagicMock,
        config: ClassificationConfig,
        subject: str,
        body: str,
    ) -> None:
        ai.classify_email.return_value = _ai_response(sentiment="URGENT", confidence=1.0)

        result = await engine.classify(
            _context(subject=subject, body=body, thread_message_count=9), config
        )

        assert 0.0 <= result.importance <= 100.0
        assert 0.0 <= result.urgency <= 100.0
        assert 0.0 <= result.confidence <= 1.0

    @pytest.mark.asyncio
    async def test_actions_auto_execute_at_threshold(
        self, engine: ClassificationEngine, ai: MagicMock, config: ClassificationConfig
    ) -> None:
        ai.classify_email.return_value = _ai_response(
            category="personal", labels=("Social",), confidence=0.95, suggested_actions=("DRAFT",)
        )

        result = await engine.classify(_context(), config)

        types = [a.type for a in result.suggested_actions]
        assert types.count("LABEL") == 2
        assert "DRAFT" in types
        assert all(a.auto_execute for a in result.suggested_actions)
        assert result.feedback_required is False
        assert result.learning_opportunity is False

    @pytest.mark.asyncio
    async def test_actions_not_auto_executed_below_threshold(
        self, engine: ClassificationEngine, ai: MagicMock, config: ClassificationConfig
    ) -> None:
        ai.classify_email.return_value = _ai_response(labels=("Social",), confidence=0.88)

        result = await engine.classify(_context(), config)

        assert result.suggested_actions
        assert not any(a.auto_execute for a in result.suggested_actions)
        assert result.feedback_required is False
        assert result.learning_opportunity is True

    @pytest.mark.asyncio
    async def test_high_priority_gets_star(
        self, engine: ClassificationEngine, ai: MagicMock, config: ClassificationConfig
    ) -> None:
        ai.classify_email.return_value = _ai_response(priority="HIGH")
        result = await engine.classify(_context(), config)
        assert "STAR" in [a.type for a in result.suggested_actions]


# ---------------------------------------------------------------------------
# Configuration and batch
# ---------------------------------------------------------------------------


class TestConfigHandling:
    """Config is required and validated."""

    @pytest.mark.asyncio
    async def test_missing_config(self, engine: ClassificationEngine) -> None:
        with pytest.raises(ConfigurationError, match="missing"):
            await engine.classify(_context(), None)

    @pytest.mark.asyncio
    async def test_invalid_dict_config(self, engine: ClassificationEngine) -> None:
        with pytest.raises(ConfigValidationError):
            await engine.classify(_context(), {"confidence_threshold": 3})

    @pytest.mark.asyncio
    async def test_dict_config_accepted(self, engine: ClassificationEngine) -> None:
        result = await engine.classify(_context(), {"use_ai": True})
        assert result.method == "AI"


class TestBatchAndFeedback:
    """Tests for classify_batch() and feedback delegation."""

    @pytest.mark.asyncio
    async def test_batch_stops_when_cancelled(
        self, engine: ClassificationEngine, ai: MagicMock, config: ClassificationConfig
    ) -> None:
        cancel = asyncio.Event()

        async def classify_then_cancel(request: Any) -> AIClassificationResponse:
            cancel.set()
            return _ai_response()

        ai.classify_email.side_effect = classify_then_cancel

        results = await engine.classify_batch([_context(), _context(), _context()], config, cancel)

        assert len(results) == 1

    @pytest.mark.asyncio
    async def test_record_feedback_reaches_learning(
        self, engine: ClassificationEngine, config: ClassificationConfig
    ) -> None:
        result = await engine.classify(_context(), config)
        assert await engine.record_feedback("msg-1", result, Confirmed()) is True

        stats = await engine.get_statistics()
        assert stats["learning"]["total_feedback"] == 1
        assert stats["rules"]["total"] == 6

    @pytest.mark.asyncio
    async def test_learned_weights_apply_with_learning_disabled(
        self, store: DatabaseStore, vips: VIPManager, ai: MagicMock
    ) -> None:
        weights = dict.fromkeys(DEFAULT_WEIGHTS, 0.0) | {"keyword_urgency": 1.0}
        await store.cache_set(MODEL_CACHE_KEY, LearningModel(weights=weights).to_dict(), 3600)
        learning = LearningSystem(store, LearningConfig())
        engine = ClassificationEngine(RulesEngine(), vips, learning, ai=ai, store=store)

        result = await engine.classify(
            _context(body="Is this urgent?"), ClassificationConfig(learning_enabled=False)
        )

        assert learning.model.weights["keyword_urgency"] == pytest.approx(1.0)
        # one urgent keyword scores 0.2 and carries the whole weight
        assert result.importance == pytest.approx(20.0)


# ---------------------------------------------------------------------------
# Factor helpers
# ---------------------------------------------------------------------------


class TestFactorHelpers:
    """Tests for detector and factor functions."""

    def test_keyword_urgency_caps(self) -> None:
        assert keyword_urgency("nothing here") == 0.0
        assert keyword_urgency("urgent asap critical deadline eod immediately") == 1.0

    def test_deadline_proximity(self) -> None:
        assert deadline_proximity("please send by today") == 1.0
        assert deadline_proximity("by tomorrow works") == 0.7
        assert deadline_proximity("by Friday is fine") == 0.4
        assert deadline_proximity("whenever") == 0.0

    def test_sender_importance(self) -> None:
        assert sender_importance("x@ceo.example.com") == 0.9
        assert sender_importance("x@client.com") == 0.7
        assert sender_importance("x@gmail.com", is_vip=True) == 0.7
        assert sender_importance("x@gmail.com") == 0.3

    def test_detectors(self) -> None:
        bot = EmailRecord(id="1", thread_id="1", subject="", sender="no-reply@svc.io")
        news = EmailRecord(
            id="2", thread_id="2", subject="", sender="news@x.io", body="Unsubscribe here"
        )
        assert detect_automated(bot) is True
        assert detect_newsletter(news) is True
        assert detect_newsletter(bot) is False
