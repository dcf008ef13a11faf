"""Tests for the external AI classifier.

The Anthropic client is mocked; responses are built as tool_use blocks the
way the SDK returns them.
"""

from datetime import UTC, datetime
from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import anthropic
import pytest

from followup.classifier.ai_classifier import AIClassificationRequest, AIClassifier
from followup.classifier.models import (
    ClassificationResult,
    EmailContext,
    EmailRecord,
    RulesMethod,
)
from followup.config_schema import AIConfig
from followup.core.errors import (
    AIClassifierError,
    AIClassifierUnavailable,
    PermissionDeniedError,
    RateLimitExceeded,
)
from followup.core.rate_limiter import ApiRateLimiter

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _tool_response(tool_input: dict[str, Any], name: str = "classify_email") -> SimpleNamespace:
    """Build a response with one tool_use block."""
    return SimpleNamespace(
        content=[SimpleNamespace(type="tool_use", id="toolu_1", name=name, input=tool_input)],
        usage=SimpleNamespace(input_tokens=120, output_tokens=40),
    )


def _classification(**overrides: Any) -> dict[str, Any]:
    data = {
        "priority": "HIGH",
        "category": "Finance",
        "labels": ["Invoice", "PA-Finance"],
        "needs_reply": True,
        "waiting_on_others": False,
        "sentiment": "NEUTRAL",
        "key_topics": ["invoice"],
        "suggested_actions": ["LABEL", "SELF_DESTRUCT"],
        "confidence": 0.82,
        "reasoning": "Vendor asks for payment confirmation.",
    }
    data.update(overrides)
    return data


def _status_error(cls: type[anthropic.APIStatusError], status: int) -> anthropic.APIStatusError:
    return cls(
        message=f"status {status}",
        response=MagicMock(status_code=status, headers={}),
        body=None,
    )


def _request() -> AIClassificationRequest:
    return AIClassificationRequest(
        email_id="msg-1",
        subject="Invoice 4411",
        sender="ap@vendor.example",
        to="me@example.com",
        body="Please confirm payment.",
    )


@pytest.fixture
def client() -> MagicMock:
    client = MagicMock()
    client.messages.create = AsyncMock()
    return client


@pytest.fixture
def sleep() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def classifier(client: MagicMock, sleep: AsyncMock) -> AIClassifier:
    return AIClassifier(
        client,
        None,
        AIConfig(max_attempts=3, backoff_base_seconds=1.0),
        rate_limiter=ApiRateLimiter(requests_per_minute=1000, tokens_per_minute=1_000_000),
        sleep=sleep,
    )


# ---------------------------------------------------------------------------
# Successful calls
# ---------------------------------------------------------------------------


class TestClassifyEmail:
    """Tests for AIClassifier.classify_email()."""

    @pytest.mark.asyncio
    async def test_valid_answer(self, classifier: AIClassifier, client: MagicMock) -> None:
        client.messages.create.return_value = _tool_response(_classification())

        response = await classifier.classify_email(_request())

        assert response.priority == "HIGH"
        assert response.category == "finance"
        assert response.labels == ("Invoice", "PA-Finance")
        assert response.suggested_actions == ("LABEL",)
        assert response.confidence == pytest.approx(0.82)
        assert response.model == classifier.model

    @pytest.mark.asyncio
    async def test_forces_tool_choice(self, classifier: AIClassifier, client: MagicMock) -> None:
        client.messages.create.return_value = _tool_response(_classification())

        await classifier.classify_email(_request())

        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["tool_choice"] == {"type": "tool", "name": "classify_email"}
        assert kwargs["tools"][0]["name"] == "classify_email"
        assert "Invoice 4411" in kwargs["messages"][0]["content"]

    @pytest.mark.asyncio
    async def test_logs_request_to_store(self, client: MagicMock) -> None:
        store = AsyncMock()
        classifier = AIClassifier(client, store, AIConfig())
        client.messages.create.return_value = _tool_response(_classification())

        await classifier.classify_email(_request())

        kwargs = store.log_ai_request.call_args.kwargs
        assert kwargs["task_type"] == "classify"
        assert kwargs["input_tokens"] == 120
        assert kwargs["error"] is None


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailures:
    """Retry, backoff and error mapping."""

    @pytest.mark.asyncio
    async def test_invalid_answer_retried_then_fails(
        self, classifier: AIClassifier, client: MagicMock, sleep: AsyncMock
    ) -> None:
        client.messages.create.return_value = _tool_response(_classification(priority="URGENT"))

        with pytest.raises(AIClassifierError, match="Invalid priority") as exc_info:
            await classifier.classify_email(_request())

        assert client.messages.create.await_count == 3
        assert exc_info.value.attempts == 3
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_recovers_after_invalid_answer(
        self, classifier: AIClassifier, client: MagicMock
    ) -> None:
        client.messages.create.side_effect = [
            _tool_response({"priority": "HIGH"}),
            _tool_response(_classification()),
        ]
        response = await classifier.classify_email(_request())
        assert response.priority == "HIGH"

    @pytest.mark.asyncio
    async def test_confidence_out_of_range_is_invalid(
        self, classifier: AIClassifier, client: MagicMock
    ) -> None:
        client.messages.create.return_value = _tool_response(_classification(confidence=1.4))
        with pytest.raises(AIClassifierError, match="Invalid confidence"):
            await classifier.classify_email(_request())

    @pytest.mark.asyncio
    async def test_permission_denied_is_fatal(
        self, classifier: AIClassifier, client: MagicMock, sleep: AsyncMock
    ) -> None:
        client.messages.create.side_effect = _status_error(anthropic.AuthenticationError, 401)

        with pytest.raises(PermissionDeniedError) as exc_info:
            await classifier.classify_email(_request())

        assert exc_info.value.retryable is False
        assert client.messages.create.await_count == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rate_limited_after_retries(
        self, classifier: AIClassifier, client: MagicMock
    ) -> None:
        client.messages.create.side_effect = _status_error(anthropic.RateLimitError, 429)

        with pytest.raises(RateLimitExceeded) as exc_info:
            await classifier.classify_email(_request())

        assert exc_info.value.retryable is True
        assert client.messages.create.await_count == 3

    @pytest.mark.asyncio
    async def test_server_error_becomes_unavailable(
        self, classifier: AIClassifier, client: MagicMock
    ) -> None:
        client.messages.create.side_effect = _status_error(anthropic.InternalServerError, 500)

        with pytest.raises(AIClassifierUnavailable) as exc_info:
            await classifier.classify_email(_request())

        assert exc_info.value.error_type == "NETWORK"

    @pytest.mark.asyncio
    async def test_bad_request_not_retried(
        self, classifier: AIClassifier, client: MagicMock
    ) -> None:
        client.messages.create.side_effect = _status_error(anthropic.BadRequestError, 400)

        with pytest.raises(AIClassifierError) as exc_info:
            await classifier.classify_email(_request())

        assert exc_info.value.retryable is False
        assert client.messages.create.await_count == 1

    @pytest.mark.asyncio
    async def test_connection_error(self, classifier: AIClassifier, client: MagicMock) -> None:
        client.messages.create.side_effect = anthropic.APIConnectionError(request=MagicMock())
        with pytest.raises(AIClassifierUnavailable):
            await classifier.classify_email(_request())

    @pytest.mark.asyncio
    async def test_no_client_is_unavailable(self) -> None:
        classifier = AIClassifier(None, None, AIConfig())
        with pytest.raises(AIClassifierUnavailable, match="ANTHROPIC_API_KEY"):
            await classifier.classify_email(_request())


# ---------------------------------------------------------------------------
# Snooze advice and request building
# ---------------------------------------------------------------------------


class TestSuggestSnooze:
    """Tests for AIClassifier.suggest_snooze()."""

    @pytest.mark.asyncio
    async def test_valid_advice(self, classifier: AIClassifier, client: MagicMock) -> None:
        client.messages.create.return_value = _tool_response(
            {
                "suggested_time": "2026-10-15T09:00:00-04:00",
                "alternative_times": ["2026-10-15T13:00:00-04:00", "2026-10-16T09:00:00-04:00"],
                "urgency_level": "TODAY",
                "reasoning": "Reply tomorrow morning",
            },
            name="suggest_snooze",
        )
        email = EmailRecord(id="msg-1", thread_id="t", subject="Plan", sender="a@x.com")

        advice = await classifier.suggest_snooze(
            email, datetime(2026, 10, 14, 14, 0, tzinfo=UTC), "America/New_York"
        )

        assert advice.urgency_level == "TODAY"
        assert advice.suggested_time == datetime(2026, 10, 15, 13, 0, tzinfo=UTC)
        assert len(advice.alternative_times) == 2

    @pytest.mark.asyncio
    async def test_naive_time_rejected(self, classifier: AIClassifier, client: MagicMock) -> None:
        client.messages.create.return_value = _tool_response(
            {
                "suggested_time": "2026-10-15T09:00:00",
                "alternative_times": ["2026-10-15T13:00:00Z", "2026-10-16T09:00:00Z"],
                "urgency_level": "TODAY",
                "reasoning": "",
            },
            name="suggest_snooze",
        )
        email = EmailRecord(id="msg-1", thread_id="t", subject="Plan", sender="a@x.com")
        with pytest.raises(AIClassifierError, match="no UTC offset"):
            await classifier.suggest_snooze(email, datetime.now(UTC), "UTC")


def test_request_includes_recent_thread_context() -> None:
    previous = tuple(
        ClassificationResult(
            priority="LOW",
            category="work",
            labels=frozenset(),
            sentiment="NEUTRAL",
            importance=10.0,
            urgency=10.0,
            confidence=0.9,
            method_detail=RulesMethod(rule_ids=(), rule_confidence=0.9),
            reasoning=f"note {i}",
        )
        for i in range(5)
    )
    context = EmailContext(
        email=EmailRecord(id="m", thread_id="t", subject="s", sender="a@x.com"),
        previous_classifications=previous,
    )

    request = AIClassificationRequest.from_context(context)

    assert request.previous_emails == (
        "[LOW/work] note 2",
        "[LOW/work] note 3",
        "[LOW/work] note 4",
    )
