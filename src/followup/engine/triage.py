"""Batch triage: read emails, classify them, feed the follow-up queue.

Each run generates a UUID4 run_id that is set as the logging correlation ID,
so every log line and queue history row of the run can be traced together.

Per email:
1. Build the classification context (thread size within the batch)
2. Classify through the hybrid engine
3. Store the classification so feedback can refer to it later
4. Hand the result to the queue's enqueue decision (optional)

A run can be cancelled between emails through an ``asyncio.Event``; results
already produced and feedback already applied are kept.

Usage:
    from followup.engine.triage import JsonMailboxReader, TriageRunner

    runner = TriageRunner(engine, queue, store, config)
    result = await runner.run(JsonMailboxReader("inbox.json"))
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from followup.classifier.models import EmailContext, EmailRecord, RulesMethod
from followup.core.errors import FollowupError, PermissionDeniedError, ValidationError
from followup.core.logging import get_logger, set_correlation_id, truncate_pii

if TYPE_CHECKING:
    from followup.classifier.engine import ClassificationEngine
    from followup.classifier.models import ClassificationResult
    from followup.config_schema import AppConfig
    from followup.db.store import DatabaseStore
    from followup.engine.queue import FollowUpQueue

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Mailbox readers
# ---------------------------------------------------------------------------


@runtime_checkable
class MailboxReader(Protocol):
    """Source of emails for a triage run, oldest first."""

    async def fetch(self, query: str | None = None) -> list[EmailRecord]: ...


class JsonMailboxReader:
    """Reads emails from a JSON file.

    The file holds a list of records (or ``{"emails": [...]}``) with the keys
    id, threadId, subject, from, to, date, body, labels, hasAttachments.
    """

    def __init__(self, path: str | Path):
        self._path = Path(path)

    async def fetch(self, query: str | None = None) -> list[EmailRecord]:
        """Load records, optionally keeping those whose subject, sender or body contain ``query``."""
        try:
            raw = await asyncio.to_thread(self._path.read_text, encoding="utf-8")
        except OSError as e:
            raise ValidationError(f"Cannot read mailbox file {self._path}: {e}") from e
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Mailbox file {self._path} is not valid JSON: {e}") from e

        if isinstance(data, dict):
            data = data.get("emails", [])
        if not isinstance(data, list):
            raise ValidationError(
                f"Mailbox file {self._path} must contain a list of emails or {{'emails': [...]}}"
            )

        emails: list[EmailRecord] = []
        for index, record in enumerate(data):
            try:
                emails.append(EmailRecord.from_dict(record))
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                raise ValidationError(
                    f"Email #{index} in {self._path} is malformed: {e}. "
                    "Each email needs at least an 'id'."
                ) from e

        if query:
            needle = query.lower()
            emails = [
                e
                for e in emails
                if needle in e.subject.lower()
                or needle in e.sender.lower()
                or needle in e.body.lower()
            ]

        emails.sort(key=_received_order)
        return emails


def _received_order(email: EmailRecord) -> datetime:
    if email.date is None:
        return datetime.min.replace(tzinfo=UTC)
    if email.date.tzinfo is None:
        return email.date.replace(tzinfo=UTC)
    return email.date


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


@dataclass
class TriageRunResult:
    """Result of one triage run."""

    run_id: str
    duration_ms: int = 0
    fetched: int = 0
    classified: int = 0
    enqueued: int = 0
    needs_review: int = 0
    degraded: int = 0
    failed: int = 0
    cancelled: bool = False
    results: list[tuple[EmailRecord, ClassificationResult, str | None]] = field(
        default_factory=list
    )


class TriageRunner:
    """Drives classification and enqueueing over a batch of emails.

    Attributes:
        _engine: ClassificationEngine
        _queue: FollowUpQueue, or None to classify without enqueueing
        _store: DatabaseStore for saved classifications
        _config: Application configuration
    """

    def __init__(
        self,
        engine: ClassificationEngine,
        queue: FollowUpQueue | None,
        store: DatabaseStore,
        config: AppConfig,
    ):
        self._engine = engine
        self._queue = queue
        self._store = store
        self._config = config

    def update_config(self, config: AppConfig) -> None:
        """Swap in a reloaded config for the next run."""
        self._config = config

    async def run(
        self,
        reader: MailboxReader,
        query: str | None = None,
        *,
        enqueue: bool = True,
        cancel_event: asyncio.Event | None = None,
        now: datetime | None = None,
    ) -> TriageRunResult:
        """Classify every email the reader returns.

        PermissionDeniedError from the AI classifier aborts the run; other
        per-email failures are counted and the run continues.
        """
        run_id = str(uuid.uuid4())
        set_correlation_id(run_id)
        start = time.monotonic()
        result = TriageRunResult(run_id=run_id)

        emails = await reader.fetch(query)
        result.fetched = len(emails)
        thread_sizes = Counter(e.thread_id for e in emails)
        logger.info("triage_run_start", fetched=len(emails), enqueue=enqueue)

        try:
            for email in emails:
                if cancel_event is not None and cancel_event.is_set():
                    result.cancelled = True
                    logger.info("triage_run_cancelled", classified=result.classified)
                    break

                try:
                    classification, item_id = await self.process_email(
                        email,
                        thread_message_count=thread_sizes[email.thread_id],
                        enqueue=enqueue,
                        now=now,
                    )
                except PermissionDeniedError:
                    raise
                except FollowupError as e:
                    result.failed += 1
                    logger.warning(
                        "triage_email_failed",
                        email_id=email.id,
                        error_type=e.error_type,
                        error=str(e),
                    )
                    continue

                result.classified += 1
                result.results.append((email, classification, item_id))
                if item_id is not None:
                    result.enqueued += 1
                if classification.feedback_required:
                    result.needs_review += 1
                detail = classification.method_detail
                if isinstance(detail, RulesMethod) and detail.degraded:
                    result.degraded += 1
        finally:
            result.duration_ms = int((time.monotonic() - start) * 1000)
            logger.info(
                "triage_run_complete",
                duration_ms=result.duration_ms,
                fetched=result.fetched,
                classified=result.classified,
                enqueued=result.enqueued,
                needs_review=result.needs_review,
                degraded=result.degraded,
                failed=result.failed,
                cancelled=result.cancelled,
            )
            set_correlation_id(None)

        return result

    async def process_email(
        self,
        email: EmailRecord,
        *,
        thread_message_count: int = 1,
        enqueue: bool = True,
        now: datetime | None = None,
    ) -> tuple[ClassificationResult, str | None]:
        """Classify one email, save the result and offer it to the queue."""
        context = EmailContext(
            email=email,
            thread_message_count=thread_message_count,
            user_timezone=self._config.timezone,
        )
        classification = await self._engine.classify(context, self._config.classification)

        await self._store.save_classification(
            email.id,
            classification.to_dict(),
            classification.method,
            thread_id=email.thread_id,
            subject=email.subject,
            sender=email.sender,
            body=email.body,
        )

        item_id = None
        if enqueue and self._queue is not None:
            item_id = await self._queue.process_new_classification(email, classification, now=now)

        logger.info(
            "email_triaged",
            email_id=email.id,
            sender=truncate_pii(email.sender),
            priority=classification.priority,
            method=classification.method,
            confidence=round(classification.confidence, 3),
            item_id=item_id,
        )
        return classification, item_id
