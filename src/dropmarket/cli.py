#!/usr/bin/env python
"""
CLI management commands for the drop engine.
"""

import asyncio
import json
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any

import click

from dropmarket.logging import setup_logging
from dropmarket.subscriptions.engine import SubscriptionEngine, get_subscription_engine
from dropmarket.subscriptions.enums import ConflictStatus, PaymentFrequency, PaymentPlan
from dropmarket.subscriptions.exceptions import SubscriptionEngineError
from dropmarket.subscriptions.schedule import generate_drop_schedule


@dataclass
class CLIDependencies:
    """Bundle of injectable dependencies used by CLI commands."""

    engine_factory: Callable[[], SubscriptionEngine]


def _get_cli_dependencies() -> CLIDependencies:
    """Return the default dependency bundle for CLI commands."""
    return CLIDependencies(engine_factory=get_subscription_engine)


def _engine(deps: CLIDependencies) -> SubscriptionEngine:
    try:
        return deps.engine_factory()
    except RuntimeError as exc:
        raise click.ClickException(str(exc)) from exc


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


@click.group()
def cli() -> None:
    """Drop engine administration."""
    setup_logging()


@cli.command()
@click.option(
    "--date",
    "run_date",
    type=click.DateTime(formats=["%Y-%m-%d"]),
    default=None,
    help="Sweep as of this date (defaults to today, UTC)",
)
def sweep(run_date: Any) -> None:
    """Process every drop due on the given date."""
    engine = _engine(_get_cli_dependencies())
    report = asyncio.run(engine.sweep.run_sweep(run_date.date() if run_date else None))

    click.echo(f"Sweep for {report.run_date.isoformat()}")
    click.echo("-" * 40)
    click.echo(f"{'due':20} {report.due}")
    click.echo(f"{'processed':20} {len(report.processed)}")
    click.echo(f"{'skipped':20} {len(report.skipped)}")
    click.echo(f"{'failed':20} {len(report.failed)}")
    click.echo(f"{'retries scheduled':20} {len(report.retries_scheduled)}")


@cli.command()
@click.option(
    "--date",
    "run_date",
    type=click.DateTime(formats=["%Y-%m-%d"]),
    default=None,
    help="Send reminders as of this date",
)
def reminders(run_date: Any) -> None:
    """Send reminders for drops due in the next few days."""
    engine = _engine(_get_cli_dependencies())
    sent = asyncio.run(engine.sweep.send_payment_reminders(run_date.date() if run_date else None))
    click.echo(f"Sent {sent} payment reminders")


@cli.command("scan-conflicts")
def scan_conflicts() -> None:
    """Detect and auto-resolve conflicts across active and paused subscriptions."""
    engine = _engine(_get_cli_dependencies())
    report = asyncio.run(engine.conflicts.scan_all())
    _echo_json(report.model_dump(mode="json"))


@cli.command()
@click.option(
    "--status",
    type=click.Choice([s.value for s in ConflictStatus]),
    default=None,
    help="Only list conflicts with this status",
)
@click.option("--stats", is_flag=True, help="Print counts instead of records")
def conflicts(status: str | None, stats: bool) -> None:
    """List recorded conflicts."""
    engine = _engine(_get_cli_dependencies())
    if stats:
        _echo_json(engine.conflicts.get_statistics())
        return

    records = engine.registry.find(status=ConflictStatus(status) if status else None)
    if not records:
        click.echo("No conflicts recorded")
        return
    for record in records:
        click.echo(
            f"{record.id:45} {record.status.value:10} {record.priority.value:9} "
            f"{record.description}"
        )


@cli.command("state-machine")
def describe_state_machine() -> None:
    """Print the subscription transition table."""
    engine = _engine(_get_cli_dependencies())
    _echo_json(engine.machine.describe())


@cli.command("preview-schedule")
@click.argument("total_amount", type=str)
@click.option(
    "--plan",
    type=click.Choice([PaymentPlan.INSTALLMENT.value, PaymentPlan.PRICE_LOCK.value]),
    default=PaymentPlan.INSTALLMENT.value,
    help="Payment plan",
)
@click.option(
    "--frequency",
    type=click.Choice([f.value for f in PaymentFrequency]),
    default=None,
    help="Installment frequency",
)
@click.option("--paid", "amount_paid", type=str, default="0", help="Amount already paid")
@click.option(
    "--start",
    type=click.DateTime(formats=["%Y-%m-%d"]),
    default=None,
    help="First drop date (defaults to today)",
)
def preview_schedule(
    total_amount: str, plan: str, frequency: str | None, amount_paid: str, start: Any
) -> None:
    """Show the drops an order total would be split into."""
    try:
        total, paid = Decimal(total_amount), Decimal(amount_paid)
    except InvalidOperation as exc:
        raise click.BadParameter("amounts must be decimal numbers") from exc

    try:
        schedule = generate_drop_schedule(
            total,
            plan,
            frequency,
            amount_paid=paid,
            start_date=start.date() if start else date.today(),
        )
    except SubscriptionEngineError as exc:
        raise click.ClickException(exc.message) from exc

    click.echo(f"{schedule.total_drops} drops of {schedule.drop_amount}")
    click.echo("-" * 40)
    for drop in schedule.drops:
        line = f"{drop.index:>3}  {drop.scheduled_date.isoformat()}  {drop.amount:>12}"
        click.echo(f"{line}  paid" if drop.is_paid else line)


if __name__ == "__main__":
    cli()
