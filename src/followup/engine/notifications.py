"""Notification and labeling sink used by the follow-up queue.

The queue treats the sink as fire-and-forget: failures are logged and never
propagate into queue operations.

Usage:
    from followup.engine.notifications import LoggingNotificationSink, notify_safely

    sink = LoggingNotificationSink()
    await notify_safely(sink, item.id, "SLA at risk")
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from followup.core.logging import get_logger, truncate_pii

logger = get_logger(__name__)


@runtime_checkable
class NotificationSink(Protocol):
    """Where the queue sends alerts and label requests."""

    async def notify(self, item_id: str, text: str) -> None: ...

    async def apply_label(self, email_id: str, label: str) -> None: ...


class LoggingNotificationSink:
    """Default sink: writes each notification as a structured log event."""

    async def notify(self, item_id: str, text: str) -> None:
        logger.info("followup_notification", item_id=item_id, text=truncate_pii(text, 80))

    async def apply_label(self, email_id: str, label: str) -> None:
        logger.info("followup_label_requested", email_id=email_id, label=label)


async def notify_safely(sink: NotificationSink | None, item_id: str, text: str) -> bool:
    """Send a notification, logging instead of raising on failure."""
    if sink is None:
        return False
    try:
        await sink.notify(item_id, text)
        return True
    except Exception as e:
        logger.warning("notification_failed", item_id=item_id, error=str(e))
        return False


async def label_safely(sink: NotificationSink | None, email_id: str, label: str) -> bool:
    """Request a label, logging instead of raising on failure."""
    if sink is None:
        return False
    try:
        await sink.apply_label(email_id, label)
        return True
    except Exception as e:
        logger.warning("label_request_failed", email_id=email_id, label=label, error=str(e))
        return False
