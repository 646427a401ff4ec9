"""CLI commands for revenue positions and entity routing."""

from datetime import UTC, datetime, time
from decimal import Decimal, InvalidOperation

import typer
from rich.console import Console
from rich.table import Table

from memberbill.exceptions import MemberBillError
from memberbill.routing.application.services.ledger_service import RevenueLedgerService
from memberbill.routing.application.services.position_service import RevenuePositionService
from memberbill.routing.application.services.router_service import EntityRouterService
from memberbill.routing.application.services.routing_service import RoutingAssignmentService
from memberbill.routing.domain.enums import RiskLevel
from memberbill.routing.domain.value_objects import RoutingCandidate, RoutingDecision
from memberbill.routing.infrastructure.repository import (
    BusinessEntityRepository,
    PaymentRepository,
    RevenueSnapshotRepository,
)
from memberbill.storage.database.base import init_db
from memberbill.storage.database.models import BusinessEntity
from memberbill.storage.session import db_session
from memberbill.utils.config import get_settings

app = typer.Typer(name="routing", help="Revenue positions and entity routing", no_args_is_help=True)
console = Console()

RISK_STYLES = {
    RiskLevel.LOW: "green",
    RiskLevel.MEDIUM: "yellow",
    RiskLevel.HIGH: "bold red",
    RiskLevel.CRITICAL: "bold white on red",
}


def ensure_db() -> None:
    """Ensure database is initialized."""
    init_db(get_settings().database_url)


def _as_of(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    # End of the given day so that day's payments count
    return datetime.combine(value.date(), time.max, tzinfo=UTC)


def _parse_amount(value: str) -> Decimal:
    try:
        return Decimal(value)
    except InvalidOperation:
        raise typer.BadParameter(f"Not a decimal amount: {value}")


def _build_router(session) -> EntityRouterService:
    settings = get_settings()
    entities = BusinessEntityRepository(session)
    positions = RevenuePositionService(
        RevenueLedgerService(PaymentRepository(session)),
        snapshot_repository=RevenueSnapshotRepository(session),
        entity_repository=entities,
        settings=settings,
    )
    return EntityRouterService(
        settings=settings, position_service=positions, entity_repository=entities
    )


def _resolve_entity_id(session, code: str | None) -> int | None:
    if code is None:
        return None
    entity = BusinessEntityRepository(session).find_by_code(code)
    if entity is None:
        typer.echo(f"Unknown entity: {code}", err=True)
        raise typer.Exit(1)
    return entity.id


def _print_decision(decision: RoutingDecision) -> None:
    console.print(
        f"[bold]Routed to:[/bold] {decision.entity_code} (id {decision.selected_entity_id})"
    )
    console.print(f"  Reason: {decision.reason}")
    console.print(f"  Method: {decision.method}")
    console.print(f"  Confidence: {decision.confidence}")
    console.print(f"  Headroom after: {decision.headroom_after:,.2f}")
    if decision.override_reason:
        console.print(f"  Override reason: {decision.override_reason}")


@app.command()
def positions(
    as_of: datetime | None = typer.Option(
        None, "--as-of", formats=["%Y-%m-%d"], help="Evaluate at the end of this day"
    ),
    snapshot: bool = typer.Option(False, "--snapshot", help="Persist a snapshot per entity"),
) -> None:
    """Show each active entity's revenue position."""
    ensure_db()

    with db_session() as session:
        router = _build_router(session)
        try:
            if snapshot:
                rows = router.position_service.snapshot_positions(_as_of(as_of))
            else:
                rows = router.current_positions(_as_of(as_of))
        except MemberBillError as e:
            typer.echo(f"Error computing positions: {e}", err=True)
            raise typer.Exit(1)

        if not rows:
            console.print("[yellow]No active entities[/yellow]")
            return

        table = Table(title="Revenue positions")
        table.add_column("Entity", style="cyan")
        table.add_column("Revenue", justify="right")
        table.add_column("Threshold", justify="right")
        table.add_column("Headroom", justify="right")
        table.add_column("Projected", justify="right")
        table.add_column("Utilization", justify="right")
        table.add_column("Risk")

        for position in rows:
            table.add_row(
                position.entity_code,
                f"{position.current_revenue:,.2f}",
                f"{position.vat_threshold:,.2f}",
                f"{position.headroom:,.2f}",
                f"{position.projected_year_end:,.2f}",
                f"{position.utilization * 100:.1f}%",
                f"[{RISK_STYLES[position.risk_level]}]{position.risk_level.value}[/]",
            )
        console.print(table)


@app.command()
def route(
    amount: str = typer.Option(..., "--amount", help="Amount to route, e.g. 90.00"),
    plan: str | None = typer.Option(None, "--plan", help="Plan key for entity preferences"),
    override_entity: str | None = typer.Option(
        None, "--override-entity", help="Entity code chosen by an administrator"
    ),
    reason: str | None = typer.Option(None, "--reason", help="Why the override is needed"),
) -> None:
    """Show where an amount would be routed, without recording anything."""
    ensure_db()

    with db_session() as session:
        router = _build_router(session)
        try:
            candidate = RoutingCandidate(amount=_parse_amount(amount), plan_key=plan)
            decision = router.route_payment(
                candidate,
                override_entity_id=_resolve_entity_id(session, override_entity),
                override_reason=reason,
            )
        except ValueError as e:
            typer.echo(f"Invalid amount: {e}", err=True)
            raise typer.Exit(1)
        except MemberBillError as e:
            typer.echo(f"Routing failed: {e}", err=True)
            raise typer.Exit(1)

        _print_decision(decision)


@app.command("assign-payment")
def assign_payment(
    payment_id: int = typer.Argument(..., help="Payment to route"),
    override_entity: str | None = typer.Option(None, "--override-entity"),
    reason: str | None = typer.Option(None, "--reason"),
) -> None:
    """Route a stored payment and record the decision."""
    ensure_db()

    with db_session() as session:
        service = RoutingAssignmentService(session, _build_router(session))
        try:
            decision = service.assign_payment(
                payment_id,
                override_entity_id=_resolve_entity_id(session, override_entity),
                override_reason=reason,
            )
        except MemberBillError as e:
            typer.echo(f"Routing failed: {e}", err=True)
            raise typer.Exit(1)

        _print_decision(decision)


@app.command("assign-subscription")
def assign_subscription(
    subscription_id: int = typer.Argument(..., help="Subscription to route"),
    override_entity: str | None = typer.Option(None, "--override-entity"),
    reason: str | None = typer.Option(None, "--reason"),
) -> None:
    """Route a stored subscription and record the decision."""
    ensure_db()

    with db_session() as session:
        service = RoutingAssignmentService(session, _build_router(session))
        try:
            decision = service.assign_subscription(
                subscription_id,
                override_entity_id=_resolve_entity_id(session, override_entity),
                override_reason=reason,
            )
        except MemberBillError as e:
            typer.echo(f"Routing failed: {e}", err=True)
            raise typer.Exit(1)

        _print_decision(decision)


@app.command("add-entity")
def add_entity(
    code: str = typer.Argument(..., help="Short unique entity code"),
    name: str = typer.Option(..., "--name", help="Display name"),
    threshold: str | None = typer.Option(
        None, "--threshold", help="Annual VAT threshold (settings default when omitted)"
    ),
    account: str | None = typer.Option(
        None, "--account", help="Billing account reference used for this entity"
    ),
) -> None:
    """Register a business entity that revenue can be routed to."""
    ensure_db()

    settings = get_settings()
    vat_threshold = _parse_amount(threshold) if threshold else settings.default_vat_threshold
    if vat_threshold <= 0:
        typer.echo("Threshold must be positive", err=True)
        raise typer.Exit(1)

    with db_session() as session:
        repository = BusinessEntityRepository(session)
        if repository.find_by_code(code) is not None:
            typer.echo(f"Entity {code} already exists", err=True)
            raise typer.Exit(1)

        entity = repository.save(
            BusinessEntity(
                code=code,
                display_name=name,
                vat_threshold=vat_threshold,
                billing_account_ref=account,
            )
        )
        console.print(f"[green]✓ Entity {entity.code} added[/green] (id {entity.id})")
