"""CLI commands for subscription pauses and the daily batch."""

import asyncio
import json
from datetime import datetime

import typer
from rich.console import Console
from rich.table import Table

from memberbill.exceptions import MemberBillError
from memberbill.pauses.application.services.lifecycle_service import PauseLifecycleService
from memberbill.pauses.application.services.proration_service import ProrationService
from memberbill.pauses.application.services.scheduling_service import PauseSchedulingService
from memberbill.pauses.infrastructure.billing_gateway import (
    BillingGateway,
    StripeBillingGateway,
)
from memberbill.storage.database.base import init_db
from memberbill.storage.session import async_db_session, db_session
from memberbill.utils.config import get_settings

app = typer.Typer(name="pauses", help="Subscription pauses and credits", no_args_is_help=True)
console = Console()

DATE_FORMATS = ["%Y-%m-%d"]


def ensure_db() -> None:
    """Ensure database is initialized."""
    init_db(get_settings().database_url)


def get_gateway() -> BillingGateway:
    """Billing gateway used by the batch commands."""
    return StripeBillingGateway(get_settings())


@app.command()
def schedule(
    subscription_id: int = typer.Argument(..., help="Subscription to pause"),
    start: datetime = typer.Option(..., "--start", formats=DATE_FORMATS, help="First paused day"),
    end: datetime = typer.Option(
        ..., "--end", formats=DATE_FORMATS, help="First day billing resumes"
    ),
    reason: str | None = typer.Option(None, "--reason"),
    performed_by: str = typer.Option("SYSTEM", "--by", help="Who requested the pause"),
) -> None:
    """Schedule a pause window ``[start, end)``."""
    ensure_db()

    with db_session() as session:
        service = PauseSchedulingService(session)
        try:
            window = service.schedule_pause(
                subscription_id,
                start.date(),
                end.date(),
                reason=reason,
                performed_by=performed_by,
            )
        except MemberBillError as e:
            typer.echo(f"Error scheduling pause: {e}", err=True)
            raise typer.Exit(1)

        console.print(
            f"[green]✓ Pause {window.id} scheduled[/green] "
            f"{window.start_date} → {window.end_date} ({window.length_days} days)"
        )


@app.command()
def cancel(
    window_id: int = typer.Argument(..., help="Pause window to cancel"),
    reason: str | None = typer.Option(None, "--reason"),
    performed_by: str = typer.Option("SYSTEM", "--by"),
) -> None:
    """Cancel a scheduled or active pause window."""
    ensure_db()

    with db_session() as session:
        try:
            window = PauseSchedulingService(session).cancel_pause(
                window_id, performed_by=performed_by, reason=reason
            )
        except MemberBillError as e:
            typer.echo(f"Error cancelling pause: {e}", err=True)
            raise typer.Exit(1)

        console.print(f"[yellow]Pause {window.id} cancelled[/yellow]")


@app.command("list")
def list_windows(
    subscription_id: int = typer.Argument(...),
    include_cancelled: bool = typer.Option(False, "--all", help="Include cancelled windows"),
) -> None:
    """List a subscription's pause windows."""
    ensure_db()

    with db_session() as session:
        windows = PauseSchedulingService(session).list_windows(
            subscription_id, include_cancelled=include_cancelled
        )
        if not windows:
            console.print("[yellow]No pause windows[/yellow]")
            return

        table = Table(title=f"Pause windows for subscription {subscription_id}")
        table.add_column("ID", style="cyan")
        table.add_column("Start")
        table.add_column("End")
        table.add_column("Status")
        table.add_column("Credit", justify="right")
        table.add_column("Last error", style="red")
        for window in windows:
            table.add_row(
                str(window.id),
                window.start_date.isoformat(),
                window.end_date.isoformat(),
                window.status.value,
                f"{window.credit_amount:.2f}" if window.credit_amount is not None else "-",
                window.last_error or "",
            )
        console.print(table)


@app.command()
def credit(
    window_id: int = typer.Argument(..., help="Pause window to price"),
    as_json: bool = typer.Option(False, "--json", help="Print the breakdown as JSON"),
) -> None:
    """Preview the credit a window would receive, without applying it."""
    ensure_db()

    with db_session() as session:
        service = PauseLifecycleService(session, gateway=get_gateway())
        window = service.windows.get(window_id)
        if window is None:
            typer.echo(f"Pause window {window_id} not found", err=True)
            raise typer.Exit(1)

        try:
            result = service.calculate_window_credit(window)
        except MemberBillError as e:
            typer.echo(f"Error calculating credit: {e}", err=True)
            raise typer.Exit(1)

        if as_json:
            typer.echo(json.dumps(result.to_dict(), indent=2))
            return

        breakdown = ProrationService().calculate_settlement_breakdown(result)
        table = Table(title=breakdown.description)
        table.add_column("Period")
        table.add_column("Paid", justify="right")
        table.add_column("Days paused", justify="right")
        table.add_column("Credit", justify="right")
        for line in result.breakdown:
            label = f"{line.period_start} → {line.period_end}"
            if line.is_prorated_period:
                label += " (prorated)"
            table.add_row(
                label,
                f"{line.paid_amount:.2f}",
                f"{line.overlap_days}/{line.period_length_days}",
                f"{line.period_credit:.2f}",
            )
        console.print(table)
        console.print(
            f"Full periods: {breakdown.full_months_credit:.2f}  "
            f"Partial periods: {breakdown.partial_months_credit:.2f}  "
            f"[bold]Total: {breakdown.total_credit:.2f}[/bold]"
        )


@app.command("apply-credit")
def apply_credit(window_id: int = typer.Argument(..., help="Pause window to settle")) -> None:
    """Resume collection and settle one window immediately."""
    ensure_db()

    async def _apply():
        async with async_db_session() as session:
            service = PauseLifecycleService(session, gateway=get_gateway())
            return await service.apply_credit_for_window(window_id)

    try:
        result = asyncio.run(_apply())
    except MemberBillError as e:
        typer.echo(f"Error applying credit: {e}", err=True)
        raise typer.Exit(1)

    console.print(f"[green]✓ {result.description()}[/green]")


@app.command("run-batch")
def run_batch(
    as_of: datetime | None = typer.Option(
        None, "--as-of", formats=DATE_FORMATS, help="Business date (today when omitted)"
    ),
) -> None:
    """Run the daily pause batch: start due pauses, then settle ended ones."""
    ensure_db()

    async def _run():
        async with async_db_session() as session:
            service = PauseLifecycleService(session, gateway=get_gateway())
            return await service.run_daily_batch(as_of.date() if as_of else None)

    summary = asyncio.run(_run())

    console.print(f"[bold]Pause batch for {summary.as_of}[/bold]")
    console.print(f"  Started: {summary.started}")
    console.print(f"  Ended: {summary.ended}")
    console.print(f"  Credits applied: {summary.credits_applied} ({summary.total_credit:.2f})")
    console.print(f"  Skipped: {summary.skipped}")
    console.print(f"  Failed: {summary.failed}")

    if summary.has_failures:
        for error in summary.errors:
            typer.echo(
                f"window {error.window_id} [{error.phase.value}] {error.error_type}: "
                f"{error.message}",
                err=True,
            )
        raise typer.Exit(1)
