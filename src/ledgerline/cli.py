#!/usr/bin/env python
"""
Operations CLI for the ledgerline billing engine.

Run the sweep and the webhook drain from cron, a systemd timer or any
other scheduler.
"""

import asyncio
import json
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

import click

from ledgerline.billing.engine import BillingEngine
from ledgerline.billing.exceptions import BillingError


@dataclass
class CLIDependencies:
    """Bundle of injectable dependencies used by CLI commands."""

    engine_factory: Callable[[], BillingEngine]


def _get_cli_dependencies() -> CLIDependencies:
    """Return the default dependency bundle for CLI commands."""
    return CLIDependencies(engine_factory=BillingEngine.from_settings)


def _parse_now(value: str | None) -> datetime | None:
    if value is None:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        raise click.BadParameter(f"not an ISO 8601 timestamp: {value}") from None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _run(work: Callable[[BillingEngine], object]) -> None:
    deps = _get_cli_dependencies()

    async def _main() -> None:
        engine = deps.engine_factory()
        try:
            await work(engine)  # type: ignore[misc]
        finally:
            await engine.close()

    try:
        asyncio.run(_main())
    except BillingError as exc:
        raise click.ClickException(f"{exc.error_code}: {exc.message}") from exc


@click.group()
def cli() -> None:
    """Ledgerline billing operations."""
    pass


@cli.command("init-db")
def init_db() -> None:
    """Create the billing tables."""

    async def _init(engine: BillingEngine) -> None:
        click.echo("Initializing database...")
        await engine.init_storage()
        click.echo("Database initialized successfully!")

    _run(_init)


@cli.command()
@click.option("--now", "now_value", default=None, help="Sweep as of this ISO timestamp")
def sweep(now_value: str | None) -> None:
    """Run renewals, retries, grace expiry and scheduled cancellations."""
    now = _parse_now(now_value)

    async def _sweep(engine: BillingEngine) -> None:
        result = await engine.sweep(now)
        click.echo(f"Sweep at {result.now.isoformat()}")
        click.echo("-" * 40)
        for label, ids in (
            ("renewed", result.renewed),
            ("trials converted", result.trials_converted),
            ("payment failed", result.payment_failed),
            ("grace expired", result.grace_expired),
            ("canceled", result.canceled),
            ("trial ending", result.trial_ending_notified),
            ("skipped", result.skipped),
        ):
            click.echo(f"{label:18} {len(ids)}")
        for subscription_id, error in result.errors.items():
            click.echo(f"error {subscription_id}: {error}", err=True)

    _run(_sweep)


@cli.command("process-webhooks")
@click.option("--limit", default=100, show_default=True, help="Max events to process")
@click.option("--now", "now_value", default=None, help="Process as of this ISO timestamp")
def process_webhooks(limit: int, now_value: str | None) -> None:
    """Process pending and due webhook events."""
    now = _parse_now(now_value)

    async def _process(engine: BillingEngine) -> None:
        events = await engine.process_webhooks(now, limit)
        for event in events:
            click.echo(f"{event.id:40} {event.type:28} {event.status.value}")
        click.echo(f"Processed {len(events)} events")

    _run(_process)


@cli.command("dead-letters")
@click.option("--limit", default=100, show_default=True, help="Max events to list")
@click.option("--json", "as_json", is_flag=True, help="Print full records as JSON")
def dead_letters(limit: int, as_json: bool) -> None:
    """List dead-lettered webhook events."""

    async def _list(engine: BillingEngine) -> None:
        events = await engine.webhooks.list_dead_letters(limit)
        if as_json:
            click.echo(json.dumps([e.model_dump(mode="json") for e in events], indent=2))
            return
        if not events:
            click.echo("No dead-lettered events")
            return
        for event in events:
            click.echo(f"{event.id}  {event.provider}/{event.provider_event_id}  {event.type}")
            click.echo(f"    attempts={event.attempts} error={event.error}")

    _run(_list)


@cli.command()
@click.argument("event_id")
def requeue(event_id: str) -> None:
    """Give a dead-lettered webhook event another round of attempts."""

    async def _requeue(engine: BillingEngine) -> None:
        event = await engine.webhooks.requeue_dead_letter(event_id)
        click.echo(f"Requeued {event.id} ({event.type})")

    _run(_requeue)


if __name__ == "__main__":
    cli()
