"""Service wiring for follow-up triage.

Every long-lived component is constructed once here and passed to its
callers; nothing is held in module-level registries.

Usage:
    from followup.config import load_config
    from followup.services import build_services

    services = await build_services(load_config())
    result = await services.triage.run(reader)
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import TYPE_CHECKING

import anthropic

from followup.classifier.ai_classifier import AIClassifier
from followup.classifier.engine import ClassificationEngine
from followup.classifier.learning import LearningSystem
from followup.classifier.rules_engine import RulesEngine
from followup.classifier.vip import VIPManager
from followup.core.logging import get_logger
from followup.db.store import DatabaseStore
from followup.engine.notifications import LoggingNotificationSink
from followup.engine.queue import FollowUpQueue
from followup.engine.sla import SLATracker
from followup.engine.snooze import SnoozeEngine
from followup.engine.triage import TriageRunner

if TYPE_CHECKING:
    from followup.config_schema import AppConfig
    from followup.engine.notifications import NotificationSink

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class Services:
    """Shared components for one process."""

    config: AppConfig
    store: DatabaseStore
    rules: RulesEngine
    vips: VIPManager
    learning: LearningSystem
    ai: AIClassifier | None
    engine: ClassificationEngine
    sla: SLATracker
    snooze: SnoozeEngine
    queue: FollowUpQueue
    notifier: NotificationSink
    triage: TriageRunner


def create_anthropic_client() -> anthropic.AsyncAnthropic | None:
    """Async client when ANTHROPIC_API_KEY is set, else None.

    SDK retries are off; AIClassifier applies its own bounded backoff.
    """
    if not os.environ.get("ANTHROPIC_API_KEY"):
        return None
    return anthropic.AsyncAnthropic(max_retries=0)


async def build_services(
    config: AppConfig,
    *,
    anthropic_client: anthropic.AsyncAnthropic | None = None,
    notifier: NotificationSink | None = None,
    use_environment_client: bool = True,
) -> Services:
    """Open the database and construct every component.

    Args:
        config: Validated application config
        anthropic_client: Client to use instead of one built from the environment
        notifier: Notification sink (defaults to LoggingNotificationSink)
        use_environment_client: Build a client from ANTHROPIC_API_KEY when
            ``anthropic_client`` is not given
    """
    store = DatabaseStore(config.database_path)
    await store.initialize()

    vips = VIPManager(store)
    await vips.initialize()
    await vips.seed_from_config(config.vips)

    learning = LearningSystem(store, config.learning)
    await learning.initialize()

    client = anthropic_client
    if client is None and use_environment_client:
        client = create_anthropic_client()
    ai = AIClassifier(client, store, config.ai) if client is not None else None
    if ai is None and config.classification.use_ai:
        logger.warning(
            "ai_classifier_not_configured",
            hint="Set ANTHROPIC_API_KEY to enable AI classification",
        )

    rules = RulesEngine.from_config(config.rules)
    engine = ClassificationEngine(rules, vips, learning, ai=ai, store=store)

    sla = SLATracker(config.sla)
    snooze = SnoozeEngine(config.snooze, config.working_hours, config.timezone, advisor=ai)
    sink = notifier or LoggingNotificationSink()
    queue = FollowUpQueue(store, sla, snooze, config, sink)
    triage = TriageRunner(engine, queue, store, config)

    logger.info(
        "services_ready",
        database=config.database_path,
        ai_enabled=ai is not None,
        rules=len(rules.rules),
        vips=len(vips.list_vips()),
    )
    return Services(
        config=config,
        store=store,
        rules=rules,
        vips=vips,
        learning=learning,
        ai=ai,
        engine=engine,
        sla=sla,
        snooze=snooze,
        queue=queue,
        notifier=sink,
        triage=triage,
    )
