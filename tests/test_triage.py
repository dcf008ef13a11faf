"""Tests for batch triage.

Tests the JSON mailbox reader and the triage runner: per-email
classification, stored results, enqueueing, failure counting, cancellation
and fatal permission errors.
"""

import asyncio
import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest

from followup.classifier.models import (
    AIMethod,
    ClassificationResult,
    EmailContext,
    RulesMethod,
)
from followup.config_schema import AppConfig
from followup.core.errors import (
    AIClassifierError,
    PermissionDeniedError,
    ValidationError,
)
from followup.core.logging import get_correlation_id
from followup.db.store import DatabaseStore
from followup.engine.triage import JsonMailboxReader, MailboxReader, TriageRunner

# ---------------------------------------------------------------------------
# Sample data
# ---------------------------------------------------------------------------


def _raw_email(
    msg_id: str = "msg-001",
    subject: str = "Budget approval",
    sender: str = "cfo@example.com",
    date: str = "2026-10-14T09:00:00+00:00",
    thread_id: str | None = None,
    body: str = "Please approve the attached budget.",
) -> dict[str, Any]:
    return {
        "id": msg_id,
        "threadId": thread_id or f"thr-{msg_id}",
        "subject": subject,
        "from": sender,
        "to": "me@example.com",
        "date": date,
        "body": body,
        "labels": ["INBOX"],
        "hasAttachments": True,
    }


def _result(
    priority: str = "HIGH",
    *,
    feedback_required: bool = False,
    degraded: bool = False,
) -> ClassificationResult:
    if degraded:
        detail = RulesMethod(rule_ids=(), rule_confidence=0.5, degraded=True)
    else:
        detail = AIMethod(model="test-model", ai_confidence=0.9)
    return ClassificationResult(
        priority=priority,
        category="finance",
        labels=frozenset({"finance"}),
        sentiment="NEUTRAL",
        importance=70.0,
        urgency=60.0,
        confidence=0.5 if feedback_required else 0.9,
        method_detail=detail,
        needs_reply=True,
        feedback_required=feedback_required,
    )


def _write_mailbox(path: Path, data: Any) -> Path:
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


@pytest.fixture
def mailbox(tmp_path: Path) -> Path:
    return _write_mailbox(
        tmp_path / "inbox.json",
        [
            _raw_email("msg-002", subject="Invoice overdue", date="2026-10-14T10:00:00+00:00"),
            _raw_email("msg-001", date="2026-10-14T08:00:00+00:00", thread_id="thr-shared"),
            _raw_email("msg-003", subject="Lunch", date="2026-10-14T11:00:00+00:00",
                       thread_id="thr-shared", body="Tacos?"),
        ],
    )


@pytest.fixture
def engine() -> AsyncMock:
    mock = AsyncMock()
    mock.classify.return_value = _result()
    return mock


@pytest.fixture
def queue() -> AsyncMock:
    mock = AsyncMock()
    mock.process_new_classification.return_value = "item-1"
    return mock


@pytest.fixture
def runner(
    engine: AsyncMock, queue: AsyncMock, store: DatabaseStore, sample_config: AppConfig
) -> TriageRunner:
    return TriageRunner(engine, queue, store, sample_config)


# ---------------------------------------------------------------------------
# Mailbox reader
# ---------------------------------------------------------------------------


class TestJsonMailboxReader:
    """Tests for JsonMailboxReader.fetch()."""

    def test_satisfies_protocol(self, mailbox: Path) -> None:
        assert isinstance(JsonMailboxReader(mailbox), MailboxReader)

    @pytest.mark.asyncio
    async def test_reads_list_sorted_oldest_first(self, mailbox: Path) -> None:
        emails = await JsonMailboxReader(mailbox).fetch()

        assert [e.id for e in emails] == ["msg-001", "msg-002", "msg-003"]
        first = emails[0]
        assert first.sender == "cfo@example.com"
        assert first.thread_id == "thr-shared"
        assert first.labels == ("INBOX",)
        assert first.has_attachments is True
        assert first.date == datetime(2026, 10, 14, 8, 0, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_reads_emails_key(self, tmp_path: Path) -> None:
        path = _write_mailbox(tmp_path / "inbox.json", {"emails": [_raw_email()]})
        emails = await JsonMailboxReader(path).fetch()
        assert [e.id for e in emails] == ["msg-001"]

    @pytest.mark.asyncio
    async def test_missing_dates_sort_first(self, tmp_path: Path) -> None:
        undated = _raw_email("undated")
        del undated["date"]
        path = _write_mailbox(tmp_path / "inbox.json", [_raw_email("dated"), undated])

        emails = await JsonMailboxReader(path).fetch()
        assert [e.id for e in emails] == ["undated", "dated"]

    @pytest.mark.asyncio
    async def test_query_filters_subject_sender_and_body(self, mailbox: Path) -> None:
        reader = JsonMailboxReader(mailbox)

        assert [e.id for e in await reader.fetch("invoice")] == ["msg-002"]
        assert [e.id for e in await reader.fetch("TACOS")] == ["msg-003"]
        assert len(await reader.fetch("cfo@")) == 3
        assert await reader.fetch("nothing-matches") == []

    @pytest.mark.asyncio
    async def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ValidationError, match="Cannot read mailbox file"):
            await JsonMailboxReader(tmp_path / "absent.json").fetch()

    @pytest.mark.asyncio
    async def test_invalid_json(self, tmp_path: Path) -> None:
        path = tmp_path / "inbox.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(ValidationError, match="not valid JSON"):
            await JsonMailboxReader(path).fetch()

    @pytest.mark.asyncio
    async def test_wrong_top_level_shape(self, tmp_path: Path) -> None:
        path = _write_mailbox(tmp_path / "inbox.json", "just a string")
        with pytest.raises(ValidationError, match="must contain a list"):
            await JsonMailboxReader(path).fetch()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "record",
        [{"subject": "no id"}, "not-a-record", {"id": "x", "date": "yesterday"}],
    )
    async def test_malformed_record(self, tmp_path: Path, record: Any) -> None:
        path = _write_mailbox(tmp_path / "inbox.json", [_raw_email(), record])
        with pytest.raises(ValidationError, match="Email #1"):
            await JsonMailboxReader(path).fetch()


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


class TestTriageRunner:
    """Tests for TriageRunner.run()."""

    @pytest.mark.asyncio
    async def test_run_classifies_and_enqueues(
        self, runner: TriageRunner, mailbox: Path, engine: AsyncMock, queue: AsyncMock
    ) -> None:
        result = await runner.run(JsonMailboxReader(mailbox))

        assert result.fetched == 3
        assert result.classified == 3
        assert result.enqueued == 3
        assert result.failed == 0
        assert result.cancelled is False
        assert [email.id for email, _, _ in result.results] == ["msg-001", "msg-002", "msg-003"]
        assert engine.classify.await_count == 3
        assert queue.process_new_classification.await_count == 3

    @pytest.mark.asyncio
    async def test_context_carries_thread_size_and_timezone(
        self, runner: TriageRunner, mailbox: Path, engine: AsyncMock
    ) -> None:
        await runner.run(JsonMailboxReader(mailbox))

        contexts: list[EmailContext] = [c.args[0] for c in engine.classify.await_args_list]
        sizes = {ctx.email.id: ctx.thread_message_count for ctx in contexts}
        assert sizes == {"msg-001": 2, "msg-002": 1, "msg-003": 2}
        assert all(ctx.user_timezone == "America/New_York" for ctx in contexts)

    @pytest.mark.asyncio
    async def test_classification_is_stored(
        self, runner: TriageRunner, mailbox: Path, store: DatabaseStore
    ) -> None:
        await runner.run(JsonMailboxReader(mailbox))

        stored = await store.get_classification("msg-002")
        assert stored is not None
        assert stored.method == "AI"
        assert stored.subject == "Invoice overdue"
        assert ClassificationResult.from_dict(stored.result).priority == "HIGH"

    @pytest.mark.asyncio
    async def test_enqueue_disabled(
        self, runner: TriageRunner, mailbox: Path, queue: AsyncMock
    ) -> None:
        result = await runner.run(JsonMailboxReader(mailbox), enqueue=False)

        assert result.classified == 3
        assert result.enqueued == 0
        queue.process_new_classification.assert_not_awaited()
        assert all(item_id is None for _, _, item_id in result.results)

    @pytest.mark.asyncio
    async def test_counts_review_and_degraded(
        self, runner: TriageRunner, mailbox: Path, engine: AsyncMock, queue: AsyncMock
    ) -> None:
        engine.classify.side_effect = [
            _result(feedback_required=True),
            _result(degraded=True),
            _result(),
        ]
        queue.process_new_classification.side_effect = [None, "item-2", "item-3"]

        result = await runner.run(JsonMailboxReader(mailbox))

        assert result.needs_review == 1
        assert result.degraded == 1
        assert result.enqueued == 2

    @pytest.mark.asyncio
    async def test_failed_email_does_not_stop_run(
        self, runner: TriageRunner, mailbox: Path, engine: AsyncMock
    ) -> None:
        engine.classify.side_effect = [
            _result(),
            AIClassifierError("schema violation"),
            _result(),
        ]

        result = await runner.run(JsonMailboxReader(mailbox))

        assert result.classified == 2
        assert result.failed == 1

    @pytest.mark.asyncio
    async def test_permission_denied_aborts_run(
        self, runner: TriageRunner, mailbox: Path, engine: AsyncMock
    ) -> None:
        engine.classify.side_effect = PermissionDeniedError("invalid x-api-key")

        with pytest.raises(PermissionDeniedError):
            await runner.run(JsonMailboxReader(mailbox))
        assert engine.classify.await_count == 1
        assert get_correlation_id() is None

    @pytest.mark.asyncio
    async def test_cancel_between_emails(
        self, runner: TriageRunner, mailbox: Path, engine: AsyncMock
    ) -> None:
        cancel = asyncio.Event()

        async def classify_then_cancel(*args: Any, **kwargs: Any) -> ClassificationResult:
            cancel.set()
            return _result()

        engine.classify.side_effect = classify_then_cancel

        result = await runner.run(JsonMailboxReader(mailbox), cancel_event=cancel)

        assert result.cancelled is True
        assert result.classified == 1
        assert engine.classify.await_count == 1

    @pytest.mark.asyncio
    async def test_run_id_is_cleared_and_unique(
        self, runner: TriageRunner, mailbox: Path
    ) -> None:
        first = await runner.run(JsonMailboxReader(mailbox))
        second = await runner.run(JsonMailboxReader(mailbox))

        assert first.run_id != second.run_id
        assert get_correlation_id() is None

    @pytest.mark.asyncio
    async def test_update_config_applies_to_next_run(
        self,
        runner: TriageRunner,
        mailbox: Path,
        engine: AsyncMock,
        sample_config_dict: dict[str, Any],
    ) -> None:
        runner.update_config(AppConfig(**{**sample_config_dict, "timezone": "Europe/London"}))

        await runner.run(JsonMailboxReader(mailbox))

        context = engine.classify.await_args.args[0]
        assert context.user_timezone == "Europe/London"
