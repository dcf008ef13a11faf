"""Command-line interface for follow-up triage.

Provides commands for configuration validation, classification, the
follow-up queue, feedback, the VIP registry and the SLA sweep.

Usage:
    python -m followup validate-config
    python -m followup classify inbox.json --enqueue
    python -m followup queue list
    python -m followup queue snooze ITEM_ID --option tomorrow
    python -m followup feedback EMAIL_ID WRONG_PRIORITY CRITICAL
    python -m followup watch --inbox inbox.json
"""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Awaitable, Callable
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar
from zoneinfo import ZoneInfo

import click
from rich.console import Console
from rich.table import Table

from followup.config import validate_config_file
from followup.core.logging import configure_logging

if TYPE_CHECKING:
    from followup.config_schema import AppConfig
    from followup.services import Services

console = Console()

T = TypeVar("T")

PRIORITY_STYLE = {"CRITICAL": "bold red", "HIGH": "yellow", "MEDIUM": "cyan", "LOW": "dim"}
SLA_STYLE = {"ON_TIME": "green", "AT_RISK": "yellow", "OVERDUE": "bold red"}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_config(ctx: click.Context) -> AppConfig:
    """Load config from --config / FOLLOWUP_CONFIG_PATH, exiting with a message on failure."""
    from followup.config import load_config
    from followup.core.errors import ConfigurationError

    try:
        return load_config(ctx.obj.get("config_path"))
    except ConfigurationError as e:
        console.print(
            f"[red]Config error:[/red] {e}\n\n"
            "Create config/config.yaml from config/config.yaml.example, "
            "or point FOLLOWUP_CONFIG_PATH at your config file."
        )
        sys.exit(1)


def _run_with_services(
    ctx: click.Context,
    action: Callable[[Services], Awaitable[T]],
) -> T:
    """Build services and run one async action, mapping errors to exit codes."""
    from followup.services import build_services

    config = _load_config(ctx)

    async def _main() -> T:
        services = await build_services(config)
        return await action(services)

    try:
        return asyncio.run(_main())
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled.[/yellow]")
        sys.exit(130)
    except SystemExit:
        raise
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {e}")
        sys.exit(1)


def _parse_when(value: str, timezone: str) -> datetime:
    """Parse an ISO datetime; naive values are taken in the configured timezone."""
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as e:
        raise click.BadParameter(f"'{value}' is not an ISO 8601 datetime") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=ZoneInfo(timezone))
    return parsed


def _format_local(value: datetime | None, timezone: str) -> str:
    if value is None:
        return "-"
    return value.astimezone(ZoneInfo(timezone)).strftime("%a %Y-%m-%d %H:%M")


def _styled(value: str, styles: dict[str, str]) -> str:
    style = styles.get(value)
    return f"[{style}]{value}[/{style}]" if style else value


# ---------------------------------------------------------------------------
# Root group
# ---------------------------------------------------------------------------


@click.group()
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Path to config file (default: config/config.yaml)",
)
@click.pass_context
def cli(ctx: click.Context, debug: bool, config_path: Path | None) -> None:
    """Follow-up triage - classify email and track what needs a reply."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    configure_logging(log_level="DEBUG" if debug else "WARNING", json_output=False)


@cli.command("validate-config")
@click.pass_context
def validate_config(ctx: click.Context) -> None:
    """Validate the configuration file.

    Checks that config.yaml exists and passes schema validation. Reports
    specific errors for invalid fields.
    """
    config_path = ctx.obj.get("config_path")
    console.print(f"Validating config: [cyan]{config_path or 'config/config.yaml'}[/cyan]")

    is_valid, message = validate_config_file(config_path)

    if is_valid:
        console.print(f"\n[green]✓[/green] {message}")
        sys.exit(0)
    else:
        console.print(f"\n[red]✗[/red] {message}")
        sys.exit(1)


@cli.command("init-db")
@click.pass_context
def init_db(ctx: click.Context) -> None:
    """Create the database and seed VIPs from config."""

    async def action(services: Services) -> None:
        console.print(
            f"[green]✓[/green] Database ready at [cyan]{services.config.database_path}[/cyan] "
            f"({len(services.vips.list_vips())} VIP contacts)"
        )

    _run_with_services(ctx, action)


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


@cli.command("classify")
@click.argument("mailbox_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--enqueue", is_flag=True, help="Add qualifying emails to the follow-up queue")
@click.option("--query", default=None, help="Only emails whose subject/sender/body contain this")
@click.pass_context
def classify(ctx: click.Context, mailbox_file: Path, enqueue: bool, query: str | None) -> None:
    """Classify the emails in a JSON mailbox file."""
    from followup.engine.triage import JsonMailboxReader

    async def action(services: Services) -> None:
        result = await services.triage.run(
            JsonMailboxReader(mailbox_file), query, enqueue=enqueue
        )

        table = Table(box=None, padding=(0, 2))
        table.add_column("Email", style="cyan")
        table.add_column("Priority")
        table.add_column("Category")
        table.add_column("Method")
        table.add_column("Conf.", justify="right")
        table.add_column("Queue")
        for email, classification, item_id in result.results:
            review = " [yellow](review)[/yellow]" if classification.feedback_required else ""
            table.add_row(
                email.id,
                _styled(classification.priority, PRIORITY_STYLE),
                classification.category,
                classification.method + review,
                f"{classification.confidence:.2f}",
                item_id[:8] if item_id else "-",
            )
        console.print(table)

        console.print(f"\n[bold]Triage Summary[/bold] (run {result.run_id[:8]}...)")
        console.print(f"  Duration:     {result.duration_ms}ms")
        console.print(f"  Fetched:      {result.fetched}")
        console.print(f"  Classified:   {result.classified}")
        console.print(f"  Enqueued:     {result.enqueued}")
        console.print(f"  Needs review: {result.needs_review}")
        console.print(f"  Failed:       {result.failed}")
        if result.degraded:
            console.print(f"  [yellow]Rules-only (AI unavailable): {result.degraded}[/yellow]")

    _run_with_services(ctx, action)


@cli.command("feedback")
@click.argument("email_id")
@click.argument(
    "feedback_type",
    type=click.Choice(
        ["CORRECT", "WRONG_PRIORITY", "WRONG_CATEGORY", "WRONG_LABELS", "MISSING_ACTION"],
        case_sensitive=False,
    ),
)
@click.argument("value", required=False)
@click.pass_context
def feedback(ctx: click.Context, email_id: str, feedback_type: str, value: str | None) -> None:
    """Correct (or confirm) the stored classification of EMAIL_ID.

    VALUE is the correct priority, category, comma-separated labels or
    missing action, depending on FEEDBACK_TYPE.
    """
    from followup.classifier.models import ClassificationResult, EmailRecord, parse_feedback
    from followup.core.errors import FeedbackValidationError

    async def action(services: Services) -> None:
        stored = await services.store.get_classification(email_id)
        if stored is None:
            raise FeedbackValidationError(
                f"No stored classification for {email_id}; run `followup classify` first"
            )

        parsed = parse_feedback({"feedback_type": feedback_type.upper(), "correct_value": value})
        email = EmailRecord(
            id=stored.email_id,
            thread_id=stored.thread_id or stored.email_id,
            subject=stored.subject or "",
            sender=stored.sender or "",
            body=stored.body_excerpt or "",
        )
        recorded = await services.engine.record_feedback(
            email_id,
            ClassificationResult.from_dict(stored.result),
            parsed,
            email=email,
        )
        if recorded:
            console.print(f"[green]✓[/green] Feedback recorded for {email_id}")
        else:
            console.print(f"[yellow]Feedback for {email_id} was not recorded (see logs)[/yellow]")

    _run_with_services(ctx, action)


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------


@cli.group("queue")
def queue_group() -> None:
    """Inspect and act on the follow-up queue."""


@queue_group.command("list")
@click.option("--priority", type=click.Choice(["CRITICAL", "HIGH", "MEDIUM", "LOW"]))
@click.option(
    "--status", type=click.Choice(["ACTIVE", "SNOOZED", "WAITING", "ESCALATED"]), default=None
)
@click.option("--limit", type=int, default=50, show_default=True)
@click.pass_context
def queue_list(ctx: click.Context, priority: str | None, status: str | None, limit: int) -> None:
    """List open follow-up items, most urgent first."""

    async def action(services: Services) -> None:
        items = await services.queue.get_active_items(
            priority=priority, status=status, limit=limit
        )
        if not items:
            console.print("[dim]Queue is empty.[/dim]")
            return

        tz = services.config.timezone
        table = Table(box=None, padding=(0, 2))
        table.add_column("ID", style="cyan")
        table.add_column("Priority")
        table.add_column("Status")
        table.add_column("SLA")
        table.add_column("Deadline")
        table.add_column("Subject", overflow="ellipsis", max_width=40)
        for item in items:
            status_text = item.status
            if item.status == "SNOOZED":
                status_text += f" until {_format_local(item.snoozed_until, tz)}"
            table.add_row(
                item.id[:8],
                _styled(item.priority, PRIORITY_STYLE),
                status_text,
                _styled(item.sla_status, SLA_STYLE),
                _format_local(item.sla_deadline, tz),
                item.subject,
            )
        console.print(table)

    _run_with_services(ctx, action)


async def _resolve_item_id(services: Services, prefix: str) -> str:
    """Accept a full item ID or the 8-character prefix shown by ``queue list``."""
    from followup.core.errors import ItemNotFoundError, QueueValidationError

    if len(prefix) >= 32:
        return prefix
    matches = [
        item.id
        for item in await services.store.find_followup_items()
        if item.id.startswith(prefix)
    ]
    if not matches:
        raise ItemNotFoundError(prefix)
    if len(matches) > 1:
        raise QueueValidationError(f"ID prefix '{prefix}' is ambiguous; use more characters")
    return matches[0]


@queue_group.command("snooze")
@click.argument("item_id")
@click.option("--until", "until_text", default=None, help="ISO datetime (local time if naive)")
@click.option(
    "--option",
    "quick_option",
    type=click.Choice(["1h", "3h", "tomorrow", "next_week", "end_of_week"]),
    default=None,
    help="Quick snooze preset",
)
@click.pass_context
def queue_snooze(
    ctx: click.Context, item_id: str, until_text: str | None, quick_option: str | None
) -> None:
    """Snooze an item. Without --until or --option the suggested time is used."""

    async def action(services: Services) -> None:
        resolved = await _resolve_item_id(services, item_id)
        if until_text:
            until = _parse_when(until_text, services.config.timezone)
            item = await services.queue.snooze(resolved, until)
        elif quick_option:
            item = await services.queue.quick_snooze(resolved, quick_option)
        else:
            item, suggestion = await services.queue.smart_snooze(resolved)
            console.print(f"[dim]{suggestion.reasoning} ({suggestion.urgency_level})[/dim]")
        console.print(
            f"[green]✓[/green] Snoozed {item.id[:8]} until "
            f"{_format_local(item.snoozed_until, services.config.timezone)}"
        )

    _run_with_services(ctx, action)


@queue_group.command("complete")
@click.argument("item_ids", nargs=-1, required=True)
@click.pass_context
def queue_complete(ctx: click.Context, item_ids: tuple[str, ...]) -> None:
    """Mark one or more items completed."""

    async def action(services: Services) -> None:
        resolved = [await _resolve_item_id(services, i) for i in item_ids]
        result = await services.queue.bulk_complete(resolved)
        for done in result.successful:
            console.print(f"[green]✓[/green] Completed {done[:8]}")
        for failed_id, error in result.failed.items():
            console.print(f"[red]✗[/red] {failed_id[:8]}: {error}")
        if result.failed:
            sys.exit(1)

    _run_with_services(ctx, action)


@queue_group.command("archive")
@click.argument("item_id")
@click.pass_context
def queue_archive(ctx: click.Context, item_id: str) -> None:
    """Archive an item without completing it."""

    async def action(services: Services) -> None:
        item = await services.queue.archive(await _resolve_item_id(services, item_id))
        console.print(f"[green]✓[/green] Archived {item.id[:8]}")

    _run_with_services(ctx, action)


@queue_group.command("stats")
@click.pass_context
def queue_stats(ctx: click.Context) -> None:
    """Show queue statistics."""

    async def action(services: Services) -> None:
        stats = await services.queue.get_statistics()
        console.print("[bold]Follow-up Queue[/bold]")
        console.print(f"  Open items:           {stats['total_open']}")
        console.print(f"  Completed today:      {stats['completed_today']}")
        console.print(f"  Completed this week:  {stats['completed_this_week']}")
        console.print(f"  Avg. snoozes/item:    {stats['average_snooze_count']}")
        for title, key in (
            ("Status", "by_status"),
            ("Priority", "by_priority"),
            ("SLA", "by_sla_status"),
        ):
            counts: dict[str, Any] = stats[key]
            if counts:
                summary = ", ".join(f"{k}={v}" for k, v in sorted(counts.items()))
                console.print(f"  {title + ':':<22}{summary}")

    _run_with_services(ctx, action)


# ---------------------------------------------------------------------------
# VIPs
# ---------------------------------------------------------------------------


@cli.group("vip")
def vip_group() -> None:
    """Manage VIP contacts."""


@vip_group.command("add")
@click.argument("email")
@click.option("--tier", type=click.IntRange(1, 3), default=2, show_default=True)
@click.option("--name", default="", help="Display name")
@click.option("--sla-hours", type=float, default=None, help="Reply-by window (default per tier)")
@click.option("--auto-draft", is_flag=True, help="Draft replies automatically")
@click.pass_context
def vip_add(
    ctx: click.Context,
    email: str,
    tier: int,
    name: str,
    sla_hours: float | None,
    auto_draft: bool,
) -> None:
    """Add or update a VIP (address or *@domain)."""

    async def action(services: Services) -> None:
        created = await services.vips.add_vip(
            email, tier, name=name, auto_draft=auto_draft, sla_hours=sla_hours
        )
        verb = "Added" if created else "Updated"
        console.print(f"[green]✓[/green] {verb} VIP {email} (tier {tier})")

    _run_with_services(ctx, action)


@vip_group.command("remove")
@click.argument("email")
@click.pass_context
def vip_remove(ctx: click.Context, email: str) -> None:
    """Remove a VIP."""

    async def action(services: Services) -> None:
        if await services.vips.remove_vip(email):
            console.print(f"[green]✓[/green] Removed VIP {email}")
        else:
            console.print(f"[yellow]{email} is not a VIP[/yellow]")

    _run_with_services(ctx, action)


@vip_group.command("list")
@click.option("--tier", type=click.IntRange(1, 3), default=None)
@click.pass_context
def vip_list(ctx: click.Context, tier: int | None) -> None:
    """List VIP contacts."""

    async def action(services: Services) -> None:
        contacts = services.vips.list_vips(tier)
        if not contacts:
            console.print("[dim]No VIP contacts.[/dim]")
            return
        table = Table(box=None, padding=(0, 2))
        table.add_column("Email", style="cyan")
        table.add_column("Name")
        table.add_column("Tier", justify="right")
        table.add_column("SLA (h)", justify="right")
        for contact in contacts:
            table.add_row(
                contact.email,
                contact.name,
                str(contact.tier),
                f"{contact.sla_hours:g}" if contact.sla_hours else "-",
            )
        console.print(table)

    _run_with_services(ctx, action)


# ---------------------------------------------------------------------------
# SLA sweep / scheduler
# ---------------------------------------------------------------------------


@cli.command("sla-check")
@click.pass_context
def sla_check(ctx: click.Context) -> None:
    """Resurface due snoozes, refresh SLA statuses and escalate overdue items."""

    async def action(services: Services) -> None:
        result = await services.queue.refresh_sla()
        console.print("[bold]SLA Check[/bold]")
        console.print(f"  Checked:    {result.checked}")
        console.print(f"  Resurfaced: {result.resurfaced}")
        console.print(f"  At risk:    {result.at_risk}")
        console.print(f"  Overdue:    {result.overdue}")
        console.print(f"  Escalated:  {result.escalated}")
        if result.errors:
            console.print(f"  [red]Errors:     {result.errors}[/red]")

    _run_with_services(ctx, action)


@cli.command("watch")
@click.option(
    "--inbox",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="JSON mailbox file to triage on every sweep",
)
@click.option("--interval", type=int, default=None, help="Minutes between sweeps")
@click.pass_context
def watch(ctx: click.Context, inbox: Path | None, interval: int | None) -> None:
    """Run the SLA sweep (and optional triage) on a schedule until stopped."""
    try:
        asyncio.run(_run_watch(ctx, inbox, interval))
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped.[/yellow]")
        sys.exit(0)
    except SystemExit:
        raise
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {e}")
        sys.exit(1)


async def _run_watch(ctx: click.Context, inbox: Path | None, interval: int | None) -> None:
    """Run sweeps with APScheduler until SIGINT/SIGTERM."""
    import signal

    from apscheduler.schedulers.asyncio import AsyncIOScheduler

    from followup.config import ConfigWatcher, get_config_path
    from followup.core.errors import ConfigurationError
    from followup.engine.triage import JsonMailboxReader
    from followup.services import build_services

    try:
        watcher = ConfigWatcher(ctx.obj.get("config_path") or get_config_path())
    except ConfigurationError as e:
        console.print(f"[red]Config error:[/red] {e}")
        sys.exit(1)

    services = await build_services(watcher.config)
    minutes = interval or watcher.config.queue.sweep_interval_minutes
    reader = JsonMailboxReader(inbox) if inbox else None

    async def sweep() -> None:
        if watcher.reload_if_changed():
            services.triage.update_config(watcher.config)
            console.print("[dim]Config reloaded.[/dim]")
        if reader is not None:
            run = await services.triage.run(reader)
            console.print(
                f"[dim]Run {run.run_id[:8]}...[/dim] classified={run.classified} "
                f"enqueued={run.enqueued} failed={run.failed} ({run.duration_ms}ms)"
            )
        result = await services.queue.refresh_sla()
        console.print(
            f"[dim]SLA sweep[/dim] checked={result.checked} resurfaced={result.resurfaced} "
            f"at_risk={result.at_risk} overdue={result.overdue} escalated={result.escalated}"
        )

    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        sweep,
        "interval",
        minutes=minutes,
        id="followup_sweep",
        max_instances=1,
        coalesce=True,
        next_run_time=datetime.now(ZoneInfo(watcher.config.timezone)),
    )
    scheduler.start()

    console.print(f"Sweeping every {minutes} minutes. Press Ctrl+C to stop.")

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, stop_event.set)
    loop.add_signal_handler(signal.SIGTERM, stop_event.set)
    await stop_event.wait()

    scheduler.shutdown(wait=False)


def main() -> None:
    """Entry point for the CLI."""
    cli(obj={})
