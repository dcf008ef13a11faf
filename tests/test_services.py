"""Tests for service wiring and an end-to-end triage pass."""

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest

from followup.classifier.ai_classifier import AIClassifier
from followup.config_schema import AppConfig
from followup.engine.notifications import LoggingNotificationSink
from followup.engine.triage import JsonMailboxReader
from followup.services import build_services, create_anthropic_client


class TestCreateAnthropicClient:
    """Tests for create_anthropic_client()."""

    def test_no_key_returns_none(self) -> None:
        assert create_anthropic_client() is None

    def test_key_builds_client_without_sdk_retries(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test")
        client = create_anthropic_client()
        assert client is not None
        assert client.max_retries == 0


class TestBuildServices:
    """Tests for build_services()."""

    @pytest.mark.asyncio
    async def test_without_key_ai_is_disabled(self, sample_config: AppConfig) -> None:
        services = await build_services(sample_config)

        assert services.ai is None
        assert services.engine.ai is None
        assert isinstance(services.notifier, LoggingNotificationSink)
        assert Path(sample_config.database_path).exists()

    @pytest.mark.asyncio
    async def test_injected_client_enables_ai(self, sample_config: AppConfig) -> None:
        services = await build_services(sample_config, anthropic_client=MagicMock())
        assert isinstance(services.ai, AIClassifier)
        assert services.engine.ai is services.ai

    @pytest.mark.asyncio
    async def test_environment_client_can_be_skipped(
        self, sample_config: AppConfig, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test")
        services = await build_services(sample_config, use_environment_client=False)
        assert services.ai is None

    @pytest.mark.asyncio
    async def test_config_vips_are_seeded(self, sample_config: AppConfig) -> None:
        services = await build_services(sample_config)

        vips = services.vips.list_vips()
        assert [v.email for v in vips] == ["ceo@example.com"]
        assert (await services.store.list_vips())[0].tier == 1

    @pytest.mark.asyncio
    async def test_rebuild_is_idempotent(self, sample_config: AppConfig) -> None:
        await build_services(sample_config)
        services = await build_services(sample_config)
        assert len(services.vips.list_vips()) == 1


class TestEndToEnd:
    """A triage run through the real components with AI disabled."""

    @pytest.mark.asyncio
    async def test_vip_email_lands_in_queue(
        self, sample_config: AppConfig, tmp_path: Path
    ) -> None:
        received = datetime(2026, 10, 14, 14, 0, tzinfo=UTC)
        emails: list[dict[str, Any]] = [
            {
                "id": "msg-vip",
                "threadId": "thr-1",
                "subject": "Board deck",
                "from": "Chief Executive <CEO@Example.com>",
                "date": received.isoformat(),
                "body": "Can you send the deck tonight?",
            },
            {
                "id": "msg-unknown",
                "threadId": "thr-2",
                "subject": "Hello",
                "from": "someone@elsewhere.example",
                "date": received.isoformat(),
                "body": "Just saying hi",
            },
        ]
        mailbox = tmp_path / "inbox.json"
        mailbox.write_text(json.dumps(emails), encoding="utf-8")

        services = await build_services(sample_config)
        result = await services.triage.run(JsonMailboxReader(mailbox), now=received)

        assert result.classified == 2
        assert result.enqueued == 1

        items = await services.queue.get_active_items(now=received)
        assert len(items) == 1
        item = items[0]
        assert item.email_id == "msg-vip"
        assert item.priority == "CRITICAL"
        assert item.reason == "VIP_REQUIRES_ATTENTION"
        assert item.is_vip is True
        assert (item.sla_deadline - received).total_seconds() == 3600

        unknown = await services.store.get_classification("msg-unknown")
        assert unknown is not None
        assert unknown.result["feedback_required"] is True
