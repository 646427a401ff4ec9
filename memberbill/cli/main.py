"""``memberbill`` command: database setup plus the routing and pauses groups."""

import typer
from rich.console import Console
from sqlalchemy.engine import make_url

from memberbill import __version__
from memberbill.pauses.cli.pauses_cli import app as pauses_app
from memberbill.routing.cli.routing_cli import app as routing_app
from memberbill.storage.database.base import init_db
from memberbill.utils.config import get_settings
from memberbill.utils.logging import configure_logging

app = typer.Typer(
    name="memberbill",
    help="Revenue routing across business entities and subscription pause credits",
    add_completion=False,
    rich_markup_mode="rich",
    no_args_is_help=True,
)
app.add_typer(routing_app, name="routing", help="Revenue positions and entity routing")
app.add_typer(pauses_app, name="pauses", help="Subscription pauses and credits")

console = Console()


def _print_version(value: bool) -> None:
    if value:
        console.print(f"memberbill [bold]{__version__}[/bold]")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False, "--version", "-v", callback=_print_version, is_eager=True, help="Show the version."
    ),
    json_logs: bool | None = typer.Option(
        None, "--json-logs/--plain-logs", help="Override MEMBERBILL_JSON_LOGS for this run."
    ),
    log_level: str | None = typer.Option(
        None, "--log-level", help="Override MEMBERBILL_LOG_LEVEL for this run."
    ),
) -> None:
    settings = get_settings()
    configure_logging(
        log_level=log_level or settings.log_level,
        json_logs=settings.json_logs if json_logs is None else json_logs,
    )


@app.command("init-db")
def init_database() -> None:
    """Create any missing tables in the configured database."""
    url = get_settings().database_url
    engine = init_db(url)
    shown = make_url(url).render_as_string(hide_password=True)
    console.print(f"[green]Database ready[/green] on {engine.dialect.name}: {shown}")


if __name__ == "__main__":
    app()
