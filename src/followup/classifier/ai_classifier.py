"""External AI classifier using Claude tool use.

Calls go through ``anthropic.AsyncAnthropic`` with a forced ``tool_choice``
so the answer is always structured. Every call first passes the
requests/tokens-per-minute rate limiter, which fails with a retryable
RateLimitExceeded instead of blocking indefinitely.

Error handling strategy:
- 429, 5xx, connection errors: bounded exponential backoff
  (``ai.max_attempts``, ``ai.backoff_base_seconds``), then RateLimitExceeded
  or AIClassifierUnavailable (both retryable)
- Missing fields / bad enums in the tool call: retried the same way, then
  AIClassifierError
- 401/403: PermissionDeniedError immediately (fatal)
- Other 4xx: AIClassifierError immediately, not retryable

Usage:
    from followup.classifier.ai_classifier import AIClassifier, AIClassificationRequest

    classifier = AIClassifier(client, store, config.ai)
    response = await classifier.classify_email(AIClassificationRequest.from_context(ctx))
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

import anthropic

from followup.classifier.prompts import (
    CLASSIFY_EMAIL_TOOL,
    SUGGEST_SNOOZE_TOOL,
    SYSTEM_PROMPT,
    VALID_AI_ACTIONS,
    VALID_AI_PRIORITIES,
    VALID_AI_SENTIMENTS,
    VALID_URGENCY_LEVELS,
    PromptAssembler,
)
from followup.core.errors import (
    AIClassifierError,
    AIClassifierUnavailable,
    DatabaseError,
    PermissionDeniedError,
    RateLimitExceeded,
)
from followup.core.logging import get_logger
from followup.core.rate_limiter import ApiRateLimiter, estimate_tokens

if TYPE_CHECKING:
    from followup.classifier.models import EmailContext, EmailRecord
    from followup.config_schema import AIConfig, WorkingHoursConfig
    from followup.db.store import DatabaseStore
    from followup.engine.models import UrgencyLevel

logger = get_logger(__name__)

# Previous thread messages included as context
MAX_PREVIOUS_EMAILS = 3


@dataclass(frozen=True, slots=True)
class AIClassificationRequest:
    email_id: str
    subject: str
    sender: str
    to: str
    body: str
    previous_emails: tuple[str, ...] = ()
    custom_rules: tuple[str, ...] = ()

    @classmethod
    def from_context(
        cls,
        context: EmailContext,
        custom_rules: tuple[str, ...] = (),
    ) -> AIClassificationRequest:
        email = context.email
        previous = tuple(
            f"[{c.priority}/{c.category}] {c.reasoning}"
            for c in context.previous_classifications[-MAX_PREVIOUS_EMAILS:]
        )
        return cls(
            email_id=email.id,
            subject=email.subject,
            sender=email.sender,
            to=email.to,
            body=email.body,
            previous_emails=previous,
            custom_rules=custom_rules,
        )


@dataclass(frozen=True, slots=True)
class AIClassificationResponse:
    """Validated answer of the classify_email tool."""

    priority: str
    category: str
    labels: tuple[str, ...]
    needs_reply: bool
    waiting_on_others: bool
    sentiment: str
    key_topics: tuple[str, ...]
    suggested_actions: tuple[str, ...]
    confidence: float
    reasoning: str
    model: str


@dataclass(frozen=True, slots=True)
class AISnoozeAdvice:
    """Validated answer of the suggest_snooze tool (not yet checked against now)."""

    suggested_time: datetime
    alternative_times: tuple[datetime, ...]
    urgency_level: UrgencyLevel
    reasoning: str


class AIClassifier:
    """Client for the external AI classifier.

    Attributes:
        model: Model name used for every call
    """

    def __init__(
        self,
        client: anthropic.AsyncAnthropic | None,
        store: DatabaseStore | None,
        config: AIConfig,
        rate_limiter: ApiRateLimiter | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize the classifier.

        Args:
            client: Async Anthropic client (None when no API key is configured;
                every call then raises AIClassifierUnavailable)
            store: Database store for request logging (optional)
            config: ``ai`` section of the app config
            rate_limiter: Shared limiter (built from config if omitted)
            sleep: Backoff sleep, injectable for tests
        """
        self._client = client
        self._store = store
        self._config = config
        self._limiter = rate_limiter or ApiRateLimiter(
            requests_per_minute=config.requests_per_minute,
            tokens_per_minute=config.tokens_per_minute,
            max_wait=config.max_wait_seconds,
        )
        self._sleep = sleep
        self._prompts = PromptAssembler(body_max_chars=config.body_max_chars)
        self.model = config.model

    async def classify_email(self, request: AIClassificationRequest) -> AIClassificationResponse:
        """Classify one email.

        Raises:
            RateLimitExceeded: Rate limited after all attempts (retryable)
            AIClassifierUnavailable: Unreachable after all attempts (retryable)
            AIClassifierError: Invalid answers after all attempts, or a 4xx
            PermissionDeniedError: Credentials rejected (fatal)
        """
        message = self._prompts.build_classification_message(request)
        data = await self._call_tool(
            task_type="classify",
            tool=CLASSIFY_EMAIL_TOOL,
            message=message,
            email_id=request.email_id,
            validate=_validate_classification,
        )
        return _build_classification(data, self.model)

    async def suggest_snooze(
        self,
        email: EmailRecord,
        now: datetime,
        user_timezone: str,
        working_hours: WorkingHoursConfig | None = None,
    ) -> AISnoozeAdvice:
        """Ask for a wake time. Raises the same errors as classify_email."""
        message = self._prompts.build_snooze_message(email, now, user_timezone, working_hours)
        data = await self._call_tool(
            task_type="snooze",
            tool=SUGGEST_SNOOZE_TOOL,
            message=message,
            email_id=email.id,
            validate=_validate_snooze,
        )
        return AISnoozeAdvice(
            suggested_time=_parse_aware(data["suggested_time"]),
            alternative_times=tuple(_parse_aware(t) for t in data["alternative_times"]),
            urgency_level=data["urgency_level"],
            reasoning=data.get("reasoning", ""),
        )

    async def _call_tool(
        self,
        task_type: str,
        tool: dict[str, Any],
        message: str,
        email_id: str | None,
        validate: Callable[[dict[str, Any]], str | None],
    ) -> dict[str, Any]:
        if self._client is None:
            raise AIClassifierUnavailable(
                "AI classifier is not configured. Set ANTHROPIC_API_KEY in the environment "
                "or .env file, or disable classification.use_ai.",
                email_id=email_id,
            )

        messages = [{"role": "user", "content": message}]
        estimated = estimate_tokens(SYSTEM_PROMPT + message) + self._config.max_tokens
        max_attempts = self._config.max_attempts
        last_error = "no attempts made"
        failure: type[AIClassifierError] | type[RateLimitExceeded] = AIClassifierError

        for attempt in range(1, max_attempts + 1):
            await self._limiter.acquire(estimated_tokens=estimated)

            start_time = time.monotonic()
            try:
                response = await self._client.messages.create(
                    model=self.model,
                    max_tokens=self._config.max_tokens,
                    system=SYSTEM_PROMPT,
                    messages=messages,
                    tools=[tool],
                    tool_choice={"type": "tool", "name": tool["name"]},
                )
                duration_ms = int((time.monotonic() - start_time) * 1000)

                tool_call = _extract_tool_call(response, tool["name"])
                error = (
                    "No tool call in response (unexpected with forced tool_choice)"
                    if tool_call is None
                    else validate(tool_call)
                )
                await self._log_request(task_type, response, tool_call, duration_ms, email_id, error)

                if error is None:
                    return tool_call

                last_error = error
                failure = AIClassifierError
                logger.warning(
                    "ai_invalid_response",
                    task_type=task_type,
                    email_id=email_id,
                    attempt=attempt,
                    error=error,
                )

            except (anthropic.AuthenticationError, anthropic.PermissionDeniedError) as e:
                await self._log_failure(task_type, start_time, email_id, str(e))
                logger.error("ai_permission_denied", status_code=e.status_code)
                raise PermissionDeniedError(
                    f"AI provider rejected the credentials ({e.status_code}). "
                    "Check ANTHROPIC_API_KEY."
                ) from e

            except anthropic.RateLimitError as e:
                last_error = f"Rate limited: {e}"
                failure = RateLimitExceeded
                await self._log_failure(task_type, start_time, email_id, last_error)
                logger.warning("ai_rate_limited", email_id=email_id, attempt=attempt)

            except anthropic.APIConnectionError as e:
                last_error = f"API connection error: {e}"
                failure = AIClassifierUnavailable
                await self._log_failure(task_type, start_time, email_id, last_error)
                logger.warning("ai_connection_error", email_id=email_id, attempt=attempt)

            except anthropic.APIStatusError as e:
                last_error = f"API status error {e.status_code}: {e.message}"
                await self._log_failure(task_type, start_time, email_id, last_error)
                logger.error(
                    "ai_api_error",
                    email_id=email_id,
                    attempt=attempt,
                    status_code=e.status_code,
                )
                if e.status_code < 500:
                    raise AIClassifierError(
                        last_error, email_id=email_id, attempts=attempt, retryable=False
                    ) from e
                failure = AIClassifierUnavailable

            if attempt < max_attempts:
                delay = self._config.backoff_base_seconds * (2 ** (attempt - 1))
                logger.debug("ai_backoff", attempt=attempt, delay=delay)
                await self._sleep(delay)

        message_text = (
            f"{task_type} call failed for email {email_id} after {max_attempts} attempts. "
            f"Last error: {last_error}"
        )
        if failure is RateLimitExceeded:
            raise RateLimitExceeded(message_text)
        raise failure(message_text, email_id=email_id, attempts=max_attempts)

    async def _log_failure(
        self, task_type: str, start_time: float, email_id: str | None, error: str
    ) -> None:
        duration_ms = int((time.monotonic() - start_time) * 1000)
        await self._log_request(task_type, None, None, duration_ms, email_id, error)

    async def _log_request(
        self,
        task_type: str,
        response: Any,
        tool_call: dict[str, Any] | None,
        duration_ms: int,
        email_id: str | None,
        error: str | None,
    ) -> None:
        """Write the call to ai_request_log. Logging failures never block a call."""
        if self._store is None:
            return

        usage = getattr(response, "usage", None)
        try:
            await self._store.log_ai_request(
                task_type=task_type,
                model=self.model,
                tool_call=tool_call,
                duration_ms=duration_ms,
                email_id=email_id,
                input_tokens=getattr(usage, "input_tokens", None),
                output_tokens=getattr(usage, "output_tokens", None),
                error=error,
            )
        except DatabaseError as e:
            logger.warning("ai_request_log_failed", error=str(e), email_id=email_id)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _extract_tool_call(response: Any, tool_name: str) -> dict[str, Any] | None:
    for block in response.content:
        if block.type == "tool_use" and block.name == tool_name:
            return block.input
    return None


def _validate_classification(data: dict[str, Any]) -> str | None:
    """Return an error message if the classify_email answer is unusable."""
    required = ("priority", "category", "confidence", "reasoning")
    missing = [f for f in required if f not in data]
    if missing:
        return f"Missing required fields: {', '.join(missing)}"

    if data["priority"] not in VALID_AI_PRIORITIES:
        return f"Invalid priority: '{data['priority']}'"

    sentiment = data.get("sentiment", "NEUTRAL")
    if sentiment not in VALID_AI_SENTIMENTS:
        return f"Invalid sentiment: '{sentiment}'"

    confidence = data["confidence"]
    if not isinstance(confidence, int | float) or not 0.0 <= confidence <= 1.0:
        return f"Invalid confidence: {confidence}. Must be a number between 0.0 and 1.0"

    if not str(data["category"]).strip():
        return "Empty category"

    return None


def _validate_snooze(data: dict[str, Any]) -> str | None:
    missing = [f for f in ("suggested_time", "alternative_times", "urgency_level") if f not in data]
    if missing:
        return f"Missing required fields: {', '.join(missing)}"
    if data["urgency_level"] not in VALID_URGENCY_LEVELS:
        return f"Invalid urgency_level: '{data['urgency_level']}'"
    alternatives = data["alternative_times"]
    if not isinstance(alternatives, list) or len(alternatives) < 2:
        return "At least two alternative_times are required"
    try:
        for value in [data["suggested_time"], *alternatives]:
            _parse_aware(value)
    except (TypeError, ValueError) as e:
        return f"Invalid datetime: {e}"
    return None


def _parse_aware(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        raise ValueError(f"'{value}' has no UTC offset")
    return parsed


def _build_classification(data: dict[str, Any], model: str) -> AIClassificationResponse:
    def _strings(key: str) -> tuple[str, ...]:
        value = data.get(key) or []
        return tuple(str(v) for v in value if isinstance(v, str) and v.strip())

    return AIClassificationResponse(
        priority=data["priority"],
        category=str(data["category"]).strip().lower(),
        labels=_strings("labels"),
        needs_reply=bool(data.get("needs_reply", False)),
        waiting_on_others=bool(data.get("waiting_on_others", False)),
        sentiment=data.get("sentiment", "NEUTRAL"),
        key_topics=_strings("key_topics"),
        suggested_actions=tuple(a for a in _strings("suggested_actions") if a in VALID_AI_ACTIONS),
        confidence=float(data["confidence"]),
        reasoning=str(data["reasoning"]),
        model=model,
    )
