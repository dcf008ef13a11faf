"""Tests for the queue's notification sink helpers."""

from unittest.mock import AsyncMock

import pytest

from followup.engine.notifications import (
    LoggingNotificationSink,
    NotificationSink,
    label_safely,
    notify_safely,
)


class TestLoggingSink:
    """Tests for LoggingNotificationSink."""

    def test_satisfies_protocol(self) -> None:
        assert isinstance(LoggingNotificationSink(), NotificationSink)

    @pytest.mark.asyncio
    async def test_notify_and_label_do_not_raise(self) -> None:
        sink = LoggingNotificationSink()
        assert await notify_safely(sink, "item-1", "SLA at risk: Contract review") is True
        assert await label_safely(sink, "msg-1", "PA-Escalated") is True


class TestSafeDelivery:
    """Tests for notify_safely() and label_safely()."""

    @pytest.mark.asyncio
    async def test_no_sink(self) -> None:
        assert await notify_safely(None, "item-1", "text") is False
        assert await label_safely(None, "msg-1", "label") is False

    @pytest.mark.asyncio
    async def test_delivers_to_sink(self) -> None:
        sink = AsyncMock()
        await notify_safely(sink, "item-1", "Escalated (manual): Budget")
        await label_safely(sink, "msg-1", "PA-Escalated")

        sink.notify.assert_awaited_once_with("item-1", "Escalated (manual): Budget")
        sink.apply_label.assert_awaited_once_with("msg-1", "PA-Escalated")

    @pytest.mark.asyncio
    async def test_sink_failures_are_swallowed(self) -> None:
        sink = AsyncMock()
        sink.notify.side_effect = ConnectionError("webhook unreachable")
        sink.apply_label.side_effect = PermissionError("label quota")

        assert await notify_safely(sink, "item-1", "text") is False
        assert await label_safely(sink, "msg-1", "label") is False
