"""Follow-up queue state machine.

States: ACTIVE, SNOOZED, WAITING, ESCALATED, COMPLETED, ARCHIVED. Items start
ACTIVE (WAITING when the classification says the user is waiting on someone)
and end in COMPLETED or ARCHIVED, after which they are read-only.

    ACTIVE/WAITING            -> SNOOZED    snooze(id, until), until > now
    SNOOZED                   -> ACTIVE     once now >= snoozed_until (on read or sweep)
    ACTIVE/SNOOZED/WAITING    -> ESCALATED  SLA overdue on an SLA-related reason,
                                            action count over the threshold, or escalate()
    ACTIVE/ESCALATED/SNOOZED  -> WAITING    mark_waiting(id)
    WAITING                   -> ACTIVE     mark_reply_received(id)
    any open state            -> COMPLETED / ARCHIVED

Every write goes through ``_mutate``: read the row, apply the change to the
fresh copy, write it back with ``UPDATE ... WHERE version = ?`` and retry on
ConflictError. Repeating an operation whose effect is already in place is a
no-op, so callers may retry freely.

Usage:
    from followup.engine.queue import FollowUpQueue

    queue = FollowUpQueue(store, sla_tracker, snooze_engine, config, notifier)
    item_id = await queue.process_new_classification(email, result)
    await queue.snooze(item_id, until)
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any
from zoneinfo import ZoneInfo

from followup.classifier.models import VALID_PRIORITIES, EmailRecord
from followup.core.errors import (
    ConflictError,
    FollowupError,
    InvalidTransitionError,
    ItemNotFoundError,
    QueueValidationError,
)
from followup.core.logging import get_logger, truncate_pii
from followup.engine.models import (
    OPEN_STATUSES,
    VALID_REASONS,
    VALID_STATUSES,
    BulkOperationResult,
    FollowUpCandidate,
    FollowUpItem,
    SLARefreshResult,
)
from followup.engine.notifications import label_safely, notify_safely

if TYPE_CHECKING:
    from followup.classifier.models import ClassificationResult, Priority
    from followup.config_schema import AppConfig
    from followup.db.store import DatabaseStore
    from followup.engine.models import (
        FollowUpReason,
        QueueAction,
        QueueHistoryEntry,
        SnoozeSuggestion,
    )
    from followup.engine.notifications import NotificationSink
    from followup.engine.sla import SLATracker
    from followup.engine.snooze import SnoozeEngine

logger = get_logger(__name__)

# Attempts for one write before a ConflictError reaches the caller
MAX_WRITE_ATTEMPTS = 3

ESCALATED_LABEL = "PA-Escalated"

# Editable through update_item; status and priority have their own operations
EDITABLE_FIELDS = frozenset({"category", "labels", "notes", "reason"})

Event = tuple["QueueAction", dict[str, Any]]
Mutation = Callable[[FollowUpItem], list[Event]]


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _as_aware(value: datetime | None) -> datetime | None:
    """Naive mailbox timestamps are taken as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _require_aware(value: datetime, name: str) -> datetime:
    if value.tzinfo is None:
        raise QueueValidationError(f"{name} must be timezone-aware, got {value.isoformat()}")
    return value


class FollowUpQueue:
    """Follow-up queue manager.

    Attributes:
        _store: DatabaseStore holding items and history
        _sla: SLATracker for deadlines and statuses
        _snooze: SnoozeEngine for smart/quick snooze times
        _config: Application configuration (queue section and timezone)
        _notifier: Sink for alerts and label requests (failures swallowed)
    """

    def __init__(
        self,
        store: DatabaseStore,
        sla: SLATracker,
        snooze: SnoozeEngine,
        config: AppConfig,
        notifier: NotificationSink | None = None,
    ):
        self._store = store
        self._sla = sla
        self._snooze = snooze
        self._config = config
        self._notifier = notifier

    # =========================================================================
    # Enqueue
    # =========================================================================

    def should_enqueue(self, candidate: FollowUpCandidate) -> bool:
        """Enqueue only confident results that need tracking."""
        c = candidate.classification
        if c.feedback_required:
            return False
        return c.needs_reply or c.waiting_on_others or c.is_vip or candidate.reason is not None

    async def add_item(
        self,
        candidate: FollowUpCandidate,
        *,
        now: datetime | None = None,
    ) -> str | None:
        """Create a follow-up item for a classified email.

        Returns:
            The new item's ID, the existing open item's ID when the email is
            already queued, or None when the candidate does not qualify
        """
        now = now or _utc_now()
        email = candidate.email
        c = candidate.classification

        existing = await self._store.get_open_item_by_email(email.id)
        if existing is not None:
            logger.info("followup_item_exists", item_id=existing.id, email_id=email.id)
            return existing.id

        if not self.should_enqueue(candidate):
            logger.debug(
                "followup_enqueue_skipped",
                email_id=email.id,
                feedback_required=c.feedback_required,
            )
            return None

        if candidate.reason is not None and candidate.reason not in VALID_REASONS:
            raise QueueValidationError(
                f"Unknown follow-up reason '{candidate.reason}'. "
                f"Valid reasons: {', '.join(sorted(VALID_REASONS))}"
            )

        reason = candidate.reason or self._reason_for(c)
        status = "WAITING" if reason == "WAITING_ON_OTHERS" else "ACTIVE"
        vip_tier = c.vip_tier if c.is_vip else None
        received_at = _as_aware(email.date)
        started_at = received_at or now
        deadline = self._sla.compute_deadline(c.priority, vip_tier, started_at)
        sla_status = self._sla.status(deadline, now, self._sla.window(c.priority, vip_tier))

        item = FollowUpItem(
            id=uuid.uuid4().hex,
            email_id=email.id,
            thread_id=email.thread_id or email.id,
            priority=c.priority,
            category=c.category,
            reason=reason,
            status=status,
            added_to_queue_at=now,
            labels=sorted(c.labels),
            subject=email.subject,
            sender=email.sender,
            received_at=received_at,
            last_action_date=now,
            sla_deadline=deadline,
            sla_status=sla_status,
            is_vip=c.is_vip,
            vip_tier=vip_tier,
            confidence=c.confidence,
            ai_reasoning=c.reasoning or None,
            notes=candidate.notes,
        )

        item_id, created = await self._store.create_followup_item(item)
        if not created:
            logger.info("followup_item_exists", item_id=item_id, email_id=email.id)
            return item_id

        await self._store.add_history(
            item_id,
            "ADDED",
            {"reason": reason, "status": status, "priority": c.priority},
        )
        logger.info(
            "followup_item_added",
            item_id=item_id,
            email_id=email.id,
            priority=c.priority,
            reason=reason,
            sla_deadline=deadline.isoformat(),
            subject=truncate_pii(email.subject),
        )
        return item_id

    async def process_new_classification(
        self,
        email: EmailRecord,
        classification: ClassificationResult,
        *,
        now: datetime | None = None,
    ) -> str | None:
        """Enqueue straight from a classification result."""
        return await self.add_item(FollowUpCandidate(email, classification), now=now)

    @staticmethod
    def _reason_for(classification: ClassificationResult) -> FollowUpReason:
        if classification.waiting_on_others:
            return "WAITING_ON_OTHERS"
        if classification.is_vip:
            return "VIP_REQUIRES_ATTENTION"
        return "NEEDS_REPLY"

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_item(self, item_id: str, *, now: datetime | None = None) -> FollowUpItem:
        """Fetch an item, resurfacing it first if its snooze has expired."""
        now = now or _utc_now()
        item = await self._load(item_id)
        if item.status == "SNOOZED" and item.snoozed_until and now >= item.snoozed_until:
            item, _ = await self._mutate(item_id, _no_change, now=now)
        return item

    async def get_active_items(
        self,
        priority: Priority | None = None,
        status: str | None = None,
        reason: str | None = None,
        limit: int | None = None,
        *,
        now: datetime | None = None,
    ) -> list[FollowUpItem]:
        """Open items, most severe priority first, then earliest deadline."""
        if priority is not None and priority not in VALID_PRIORITIES:
            raise QueueValidationError(f"Unknown priority '{priority}'")
        if status is not None and status not in VALID_STATUSES:
            raise QueueValidationError(f"Unknown status '{status}'")
        if reason is not None and reason not in VALID_REASONS:
            raise QueueValidationError(f"Unknown reason '{reason}'")

        await self.check_snoozed_items(now or _utc_now())
        statuses = [status] if status else sorted(OPEN_STATUSES)
        return await self._store.find_followup_items(
            statuses=statuses, priority=priority, reason=reason, limit=limit
        )

    async def get_history(self, item_id: str) -> list[QueueHistoryEntry]:
        await self._load(item_id)
        return await self._store.get_history(item_id)

    async def get_statistics(self, *, now: datetime | None = None) -> dict[str, Any]:
        """Queue counts by status, priority, reason and SLA status."""
        now = now or _utc_now()
        counts = await self._store.get_queue_counts()

        local_now = now.astimezone(ZoneInfo(self._config.timezone))
        start_of_day = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
        completed_today = await self._store.count_completed_since(start_of_day)
        completed_week = await self._store.count_completed_since(now - timedelta(days=7))

        by_status = counts.get("status", {})
        return {
            "total_open": sum(n for s, n in by_status.items() if s in OPEN_STATUSES),
            "by_status": by_status,
            "by_priority": counts.get("priority", {}),
            "by_reason": counts.get("reason", {}),
            "by_sla_status": counts.get("sla_status", {}),
            "average_snooze_count": round(counts["averages"]["snooze_count"], 2),
            "average_action_count": round(counts["averages"]["action_count"], 2),
            "completed_today": completed_today,
            "completed_this_week": completed_week,
        }

    # =========================================================================
    # Snooze
    # =========================================================================

    async def snooze(
        self,
        item_id: str,
        until: datetime,
        *,
        now: datetime | None = None,
    ) -> FollowUpItem:
        """Hide an ACTIVE or WAITING item until ``until``.

        Raises:
            QueueValidationError: ``until`` is naive or not in the future
            ItemNotFoundError: Unknown ID
            InvalidTransitionError: Item is not ACTIVE or WAITING
        """
        now = now or _utc_now()
        _require_aware(until, "Snooze time")
        if until <= now:
            raise QueueValidationError(
                f"Snooze time {until.isoformat()} must be in the future (now {now.isoformat()})"
            )

        def apply(item: FollowUpItem) -> list[Event]:
            if item.status == "SNOOZED" and item.snoozed_until == until:
                return []
            _require_status(item, {"ACTIVE", "WAITING"}, "snooze")
            previous = item.status
            item.status = "SNOOZED"
            item.snoozed_until = until
            item.snooze_count += 1
            _touch(item, now)
            return [("SNOOZED", {"until": until.isoformat(), "previous_status": previous})]

        item, events = await self._mutate(item_id, apply, now=now)
        if events:
            logger.info("followup_snoozed", item_id=item_id, until=until.isoformat())
        return item

    async def smart_snooze(
        self,
        item_id: str,
        user_timezone: str | None = None,
        *,
        now: datetime | None = None,
    ) -> tuple[FollowUpItem, SnoozeSuggestion]:
        """Snooze to the Snooze Engine's suggested time for this item."""
        now = now or _utc_now()
        current = await self.get_item(item_id, now=now)
        email = EmailRecord(
            id=current.email_id,
            thread_id=current.thread_id,
            subject=current.subject,
            sender=current.sender,
            date=current.received_at,
        )
        suggestion = await self._snooze.suggest(
            email,
            user_timezone,
            priority=current.priority,
            is_newsletter=current.category == "newsletter",
            now=now,
        )
        item = await self.snooze(item_id, suggestion.suggested_time, now=now)
        return item, suggestion

    async def quick_snooze(
        self,
        item_id: str,
        option: str,
        *,
        now: datetime | None = None,
    ) -> FollowUpItem:
        """Snooze using a preset key: 1h, 3h, tomorrow, next_week, end_of_week."""
        now = now or _utc_now()
        options = {o.key: o for o in self._snooze.quick_snooze_options(now)}
        if option not in options:
            raise QueueValidationError(
                f"Unknown quick snooze option '{option}'. Available: {', '.join(options)}"
            )
        return await self.snooze(item_id, options[option].time, now=now)

    async def check_snoozed_items(self, now: datetime | None = None) -> list[FollowUpItem]:
        """Return every SNOOZED item whose wake time has passed to ACTIVE."""
        now = now or _utc_now()
        due = await self._store.get_due_snoozed_items(now)
        resurfaced: list[FollowUpItem] = []
        for item in due:
            try:
                updated, events = await self._mutate(item.id, _no_change, now=now)
            except FollowupError as e:
                logger.warning("followup_resurface_failed", item_id=item.id, error=str(e))
                continue
            if events:
                resurfaced.append(updated)

        if resurfaced:
            logger.info("followup_snoozes_resurfaced", count=len(resurfaced))
        return resurfaced

    # =========================================================================
    # Transitions
    # =========================================================================

    async def escalate(
        self,
        item_id: str,
        reason: str = "manual",
        *,
        now: datetime | None = None,
    ) -> FollowUpItem:
        """Escalate an open item and raise its priority one level."""
        now = now or _utc_now()

        def apply(item: FollowUpItem) -> list[Event]:
            if item.status == "ESCALATED":
                return []
            _require_status(item, {"ACTIVE", "SNOOZED", "WAITING"}, "escalate")
            return [self._escalate_in_place(item, reason, now)]

        item, events = await self._mutate(item_id, apply, now=now)
        if events:
            await self._announce_escalation(item, reason)
        return item

    async def complete(self, item_id: str, *, now: datetime | None = None) -> FollowUpItem:
        return await self._finish(item_id, "COMPLETED", now=now or _utc_now())

    async def archive(self, item_id: str, *, now: datetime | None = None) -> FollowUpItem:
        return await self._finish(item_id, "ARCHIVED", now=now or _utc_now())

    async def _finish(self, item_id: str, target: str, *, now: datetime) -> FollowUpItem:
        def apply(item: FollowUpItem) -> list[Event]:
            if item.status == target:
                return []
            _require_open(item, target.lower())
            previous = item.status
            item.status = target
            item.snoozed_until = None
            if target == "COMPLETED":
                item.completed_at = now
            item.last_action_date = now
            return [(target, {"previous_status": previous})]

        item, events = await self._mutate(item_id, apply, now=now)
        if events:
            logger.info("followup_item_closed", item_id=item_id, status=target)
        return item

    async def mark_waiting(self, item_id: str, *, now: datetime | None = None) -> FollowUpItem:
        """The user replied and is now waiting on someone else."""
        now = now or _utc_now()

        def apply(item: FollowUpItem) -> list[Event]:
            if item.status == "WAITING":
                return []
            _require_status(item, {"ACTIVE", "ESCALATED", "SNOOZED"}, "mark_waiting")
            previous = item.status
            item.status = "WAITING"
            item.reason = "WAITING_ON_OTHERS"
            item.snoozed_until = None
            _touch(item, now)
            return [("MARKED_WAITING", {"previous_status": previous})]

        item, _ = await self._mutate(item_id, apply, now=now)
        return item

    async def mark_reply_received(
        self,
        item_id: str,
        *,
        now: datetime | None = None,
    ) -> FollowUpItem:
        """The awaited reply arrived; the item needs the user's attention again."""
        now = now or _utc_now()

        def apply(item: FollowUpItem) -> list[Event]:
            if item.status == "ACTIVE" and item.reason == "NEEDS_REPLY":
                return []
            _require_status(item, {"WAITING"}, "mark_reply_received")
            item.status = "ACTIVE"
            item.reason = "NEEDS_REPLY"
            _touch(item, now)
            return [("REPLY_RECEIVED", {})]

        item, _ = await self._mutate(item_id, apply, now=now)
        return item

    async def change_priority(
        self,
        item_id: str,
        priority: Priority,
        *,
        now: datetime | None = None,
    ) -> FollowUpItem:
        """Set a new priority; the SLA deadline and status are recomputed."""
        now = now or _utc_now()
        if priority not in VALID_PRIORITIES:
            raise QueueValidationError(
                f"Unknown priority '{priority}'. Valid: {', '.join(sorted(VALID_PRIORITIES))}"
            )

        def apply(item: FollowUpItem) -> list[Event]:
            _require_open(item, "change_priority")
            if item.priority == priority:
                return []
            previous = item.priority
            self._set_priority(item, priority, now)
            _touch(item, now)
            return [
                (
                    "PRIORITY_CHANGED",
                    {
                        "from": previous,
                        "to": priority,
                        "sla_deadline": item.sla_deadline.isoformat() if item.sla_deadline else None,
                    },
                )
            ]

        item, _ = await self._mutate(item_id, apply, now=now)
        return item

    async def update_item(
        self,
        item_id: str,
        patch: dict[str, Any],
        *,
        now: datetime | None = None,
    ) -> FollowUpItem:
        """Edit category, labels, notes or reason.

        Each update counts as an action; an item whose action count exceeds
        ``queue.max_actions_before_escalation`` is escalated in the same write.
        """
        now = now or _utc_now()
        unknown = set(patch) - EDITABLE_FIELDS
        if unknown:
            raise QueueValidationError(
                f"Cannot update field(s) {', '.join(sorted(unknown))}. "
                f"Editable: {', '.join(sorted(EDITABLE_FIELDS))}"
            )
        if "reason" in patch and patch["reason"] not in VALID_REASONS:
            raise QueueValidationError(f"Unknown reason '{patch['reason']}'")

        def apply(item: FollowUpItem) -> list[Event]:
            _require_open(item, "update")
            for name, value in patch.items():
                setattr(item, name, sorted(value) if name == "labels" else value)
            _touch(item, now)
            events: list[Event] = [("UPDATED", {"fields": sorted(patch)})]
            if self._over_action_threshold(item):
                events.append(self._escalate_in_place(item, "action_threshold", now))
            return events

        item, events = await self._mutate(item_id, apply, now=now)
        if any(action == "ESCALATED" for action, _ in events):
            await self._announce_escalation(item, "action_threshold")
        return item

    # =========================================================================
    # Bulk
    # =========================================================================

    async def bulk_snooze(
        self,
        item_ids: list[str],
        until: datetime,
        *,
        now: datetime | None = None,
    ) -> BulkOperationResult:
        now = now or _utc_now()
        return await self._bulk(item_ids, lambda item_id: self.snooze(item_id, until, now=now))

    async def bulk_complete(
        self,
        item_ids: list[str],
        *,
        now: datetime | None = None,
    ) -> BulkOperationResult:
        now = now or _utc_now()
        return await self._bulk(item_ids, lambda item_id: self.complete(item_id, now=now))

    async def _bulk(self, item_ids: list[str], operation: Callable[[str], Any]) -> BulkOperationResult:
        successful: list[str] = []
        failed: dict[str, str] = {}
        for item_id in item_ids:
            try:
                await operation(item_id)
                successful.append(item_id)
            except FollowupError as e:
                failed[item_id] = str(e)

        logger.info("followup_bulk_complete", successful=len(successful), failed=len(failed))
        return BulkOperationResult(
            successful=tuple(successful),
            failed=failed,
            total_processed=len(item_ids),
        )

    # =========================================================================
    # SLA sweep
    # =========================================================================

    async def refresh_sla(self, now: datetime | None = None) -> SLARefreshResult:
        """Resurface due snoozes, update SLA statuses and escalate where required.

        Items whose SLA goes OVERDUE escalate when their reason is one of
        ``queue.sla_escalation_reasons``; items over the action threshold
        escalate regardless of SLA. AT_RISK and OVERDUE transitions notify.
        """
        now = now or _utc_now()
        resurfaced = await self.check_snoozed_items(now)
        items = await self._store.find_followup_items(statuses=sorted(OPEN_STATUSES))
        escalation_reasons = set(self._config.queue.sla_escalation_reasons)

        at_risk = overdue = escalated = errors = 0

        for snapshot in items:

            def apply(item: FollowUpItem) -> list[Event]:
                if item.is_terminal:
                    return []
                events: list[Event] = []
                new_status = self._sla.evaluate(item, now)
                if new_status != item.sla_status:
                    events.append(
                        ("UPDATED", {"sla_status": new_status, "previous": item.sla_status})
                    )
                    item.sla_status = new_status

                if item.status != "ESCALATED":
                    if new_status == "OVERDUE" and item.reason in escalation_reasons:
                        events.append(self._escalate_in_place(item, "sla_overdue", now))
                    elif self._over_action_threshold(item):
                        events.append(self._escalate_in_place(item, "action_threshold", now))
                return events

            try:
                item, events = await self._mutate(snapshot.id, apply, now=now)
            except FollowupError as e:
                logger.warning("sla_refresh_item_failed", item_id=snapshot.id, error=str(e))
                errors += 1
                continue

            for action, details in events:
                if action == "UPDATED" and details.get("sla_status") == "AT_RISK":
                    at_risk += 1
                    await notify_safely(
                        self._notifier, item.id, f"SLA at risk: {item.subject or item.email_id}"
                    )
                elif action == "UPDATED" and details.get("sla_status") == "OVERDUE":
                    overdue += 1
                    await notify_safely(
                        self._notifier, item.id, f"SLA overdue: {item.subject or item.email_id}"
                    )
                elif action == "ESCALATED":
                    escalated += 1
                    await self._announce_escalation(item, details.get("reason", "sla_overdue"))

        result = SLARefreshResult(
            checked=len(items),
            at_risk=at_risk,
            overdue=overdue,
            escalated=escalated,
            resurfaced=len(resurfaced),
            errors=errors,
        )
        logger.info(
            "sla_refresh_complete",
            checked=result.checked,
            at_risk=at_risk,
            overdue=overdue,
            escalated=escalated,
            resurfaced=result.resurfaced,
            errors=errors,
        )
        return result

    # =========================================================================
    # Internals
    # =========================================================================

    async def _load(self, item_id: str) -> FollowUpItem:
        item = await self._store.get_followup_item(item_id)
        if item is None:
            raise ItemNotFoundError(item_id)
        return item

    async def _mutate(
        self,
        item_id: str,
        mutation: Mutation,
        *,
        now: datetime,
    ) -> tuple[FollowUpItem, list[Event]]:
        """Read-modify-write with optimistic versioning.

        Expired snoozes are resurfaced in the same write. Returns the stored
        item and the history events written (empty for a no-op).
        """
        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            item = await self._load(item_id)
            events: list[Event] = []
            if item.status == "SNOOZED" and item.snoozed_until and now >= item.snoozed_until:
                events.append(("RESURFACED", {"snoozed_until": item.snoozed_until.isoformat()}))
                item.status = "ACTIVE"
                item.snoozed_until = None

            events.extend(mutation(item))
            if not events:
                return item, []

            try:
                saved = await self._store.save_followup_item(item)
            except ConflictError:
                logger.info("followup_write_conflict", item_id=item_id, attempt=attempt)
                if attempt == MAX_WRITE_ATTEMPTS:
                    raise
                continue

            for action, details in events:
                await self._store.add_history(item_id, action, details)
            return saved, events

        raise ConflictError(f"Follow-up item {item_id} kept changing", resource_id=item_id)

    def _set_priority(self, item: FollowUpItem, priority: Priority, now: datetime) -> None:
        vip_tier = item.vip_tier if item.is_vip else None
        started_at = item.received_at or item.added_to_queue_at
        item.priority = priority
        item.sla_deadline = self._sla.compute_deadline(priority, vip_tier, started_at)
        item.sla_status = self._sla.status(
            item.sla_deadline, now, self._sla.window(priority, vip_tier)
        )

    def _escalate_in_place(self, item: FollowUpItem, reason: str, now: datetime) -> Event:
        previous_status = item.status
        previous_priority = item.priority
        item.status = "ESCALATED"
        item.priority = self._sla.escalate_priority(item.priority)
        item.snoozed_until = None
        item.last_action_date = now
        return (
            "ESCALATED",
            {
                "reason": reason,
                "previous_status": previous_status,
                "previous_priority": previous_priority,
                "priority": item.priority,
            },
        )

    def _over_action_threshold(self, item: FollowUpItem) -> bool:
        return (
            item.status in {"ACTIVE", "SNOOZED", "WAITING"}
            and item.action_count > self._config.queue.max_actions_before_escalation
        )

    async def _announce_escalation(self, item: FollowUpItem, reason: str) -> None:
        logger.warning(
            "followup_escalated",
            item_id=item.id,
            priority=item.priority,
            reason=reason,
        )
        await notify_safely(
            self._notifier,
            item.id,
            f"Escalated ({reason}): {item.subject or item.email_id}",
        )
        await label_safely(self._notifier, item.email_id, ESCALATED_LABEL)


def _no_change(item: FollowUpItem) -> list[Event]:
    return []


def _touch(item: FollowUpItem, now: datetime) -> None:
    item.action_count += 1
    item.last_action_date = now


def _require_open(item: FollowUpItem, operation: str) -> None:
    if item.is_terminal:
        raise InvalidTransitionError(
            f"Cannot {operation} item {item.id}: it is {item.status}",
            item_id=item.id,
            current_status=item.status,
            requested=operation,
        )


def _require_status(item: FollowUpItem, allowed: set[str], operation: str) -> None:
    _require_open(item, operation)
    if item.status not in allowed:
        raise InvalidTransitionError(
            f"Cannot {operation} item {item.id} from {item.status}; "
            f"allowed from {', '.join(sorted(allowed))}",
            item_id=item.id,
            current_status=item.status,
            requested=operation,
        )
