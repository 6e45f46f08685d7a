#!/usr/bin/env python
"""
CLI management commands for the subscription ledger.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import click

from subledger.billing.exceptions import BillingError
from subledger.billing.config import get_billing_config
from subledger.billing.money_utils import MoneyHandler
from subledger.billing.subscriptions.models import UserActivity
from subledger.billing.subscriptions.scanner import RenewalScanner
from subledger.billing.subscriptions.service import SubscriptionLifecycleService
from subledger.db import create_all_tables_async
from subledger.logging import setup_logging
from subledger.settings import settings


@dataclass
class CLIDependencies:
    """Bundle of injectable dependencies used by CLI commands."""

    service_factory: Callable[[], Any]
    scanner_factory: Callable[[Any], Any]
    create_tables: Callable[[], Awaitable[None]]


def _get_cli_dependencies() -> CLIDependencies:
    """Return the default dependency bundle for CLI commands."""
    return CLIDependencies(
        service_factory=SubscriptionLifecycleService,
        scanner_factory=RenewalScanner,
        create_tables=create_all_tables_async,
    )


@click.group()
@click.version_option(version=settings.app_version, prog_name=settings.app_name)
def cli() -> None:
    """Subscription ledger CLI."""
    setup_logging()


@cli.command()
def init_db() -> None:
    """Create the ledger tables."""
    deps = _get_cli_dependencies()
    click.echo("Creating ledger tables...")
    asyncio.run(deps.create_tables())
    click.echo("Ledger tables created successfully!")


@cli.command()
@click.option(
    "--look-ahead",
    "look_ahead",
    type=int,
    default=None,
    help="Days ahead to include (defaults to the configured look-ahead)",
)
def due_renewals(look_ahead: int | None) -> None:
    """List active subscriptions due for renewal."""
    deps = _get_cli_dependencies()

    async def _list() -> list[Any]:
        service = deps.service_factory()
        return list(await service.get_due_for_renewal(look_ahead_days=look_ahead))

    try:
        due = asyncio.run(_list())
    except BillingError as exc:
        raise click.ClickException(exc.message) from exc

    if not due:
        click.echo("No subscriptions due for renewal.")
        return

    money = MoneyHandler.from_config(get_billing_config().currency)
    click.echo(f"{len(due)} subscription(s) due for renewal:")
    for subscription in due:
        click.echo(
            f"  {subscription.subscription_id}  {subscription.plan_id}  "
            f"{money.format_amount(subscription.current_price, subscription.currency)}  "
            f"next billing {subscription.next_billing_date.isoformat()}"
        )


@cli.command()
def run_scan() -> None:
    """Run one renewal, scheduled-change and dunning pass."""
    deps = _get_cli_dependencies()

    async def _scan() -> Any:
        scanner = deps.scanner_factory(deps.service_factory())
        return await scanner.run()

    summary = asyncio.run(_scan())

    click.echo("Scan complete:")
    click.echo(f"  Scheduled changes applied: {summary.scheduled_changes_applied}")
    click.echo(
        f"  Renewals: {summary.renewals_succeeded}/{summary.renewals_attempted} succeeded, "
        f"{summary.renewals_skipped} skipped"
    )
    click.echo(f"  Payment failures: {summary.payment_failures}")
    click.echo(
        f"  Dunning: {summary.dunning.recovered} recovered, "
        f"{summary.dunning.retrying} retrying, {summary.dunning.failed} failed"
    )
    if summary.error_count:
        click.echo(f"  Errors: {summary.error_count}", err=True)
        for error in [*summary.errors, *summary.dunning.errors]:
            click.echo(f"    {error}", err=True)


@cli.command()
@click.argument("subscription_id")
@click.option("--last-login-days", type=int, default=None, help="Days since last login")
@click.option("--support-tickets", type=int, default=0, show_default=True)
@click.option("--no-save", is_flag=True, help="Calculate without storing the result")
def churn_risk(
    subscription_id: str, last_login_days: int | None, support_tickets: int, no_save: bool
) -> None:
    """Score a subscription's churn risk."""
    deps = _get_cli_dependencies()
    activity = UserActivity(last_login_days=last_login_days, support_tickets=support_tickets)

    async def _score() -> Any:
        service = deps.service_factory()
        return await service.calculate_churn_risk(
            subscription_id, activity=activity, persist=not no_save
        )

    try:
        risk = asyncio.run(_score())
    except BillingError as exc:
        raise click.ClickException(exc.message) from exc

    click.echo(f"Churn risk for {subscription_id}: {risk.score} ({risk.level.value})")
    for factor in risk.factors:
        click.echo(f"  - {factor}")


if __name__ == "__main__":
    cli()
