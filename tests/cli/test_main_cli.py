"""Tests for the top-level CLI."""

from unittest.mock import MagicMock

from memberbill import __version__
from memberbill.cli import main as main_module
from memberbill.cli.main import app
from memberbill.utils.config import Settings


def test_version(runner):
    result = runner.invoke(app, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_init_db(runner, cli_db):
    result = runner.invoke(app, ["init-db"])

    assert result.exit_code == 0
    assert "Database ready" in result.output


def test_subcommands_listed(runner):
    result = runner.invoke(app, ["--help"])

    assert result.exit_code == 0
    assert "routing" in result.output
    assert "pauses" in result.output


def test_init_db_hides_password(runner, cli_db, monkeypatch):
    init_db = MagicMock()
    init_db.return_value.dialect.name = "postgresql"
    monkeypatch.setattr(main_module, "init_db", init_db)
    monkeypatch.setattr(
        main_module,
        "get_settings",
        lambda: Settings(database_url="postgresql://billing:s3cret@db/memberbill"),
    )

    result = runner.invoke(app, ["init-db"])

    assert result.exit_code == 0
    assert "s3cret" not in result.output
    assert "postgresql" in result.output


def test_log_overrides(runner, cli_db, monkeypatch):
    configure = MagicMock()
    monkeypatch.setattr(main_module, "configure_logging", configure)

    result = runner.invoke(app, ["--json-logs", "--log-level", "DEBUG", "init-db"])

    assert result.exit_code == 0
    configure.assert_called_once_with(log_level="DEBUG", json_logs=True)
