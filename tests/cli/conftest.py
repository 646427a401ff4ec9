"""Fixtures for CLI tests: a throwaway SQLite file configured through the environment."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from typer.testing import CliRunner

from memberbill.pauses.domain.enums import GatewayOutcome
from memberbill.pauses.domain.value_objects import GatewayResult
from memberbill.storage.database import base
from memberbill.utils import config


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def cli_db(tmp_path, monkeypatch) -> str:
    """Point the CLI at a fresh database file and reset cached settings."""
    url = f"sqlite:///{tmp_path / 'memberbill.db'}"
    monkeypatch.setenv("MEMBERBILL_DATABASE_URL", url)
    monkeypatch.setenv("MEMBERBILL_LOG_LEVEL", "WARNING")
    monkeypatch.setenv("MEMBERBILL_SAFETY_BUFFER_AMOUNT", "1000")
    monkeypatch.setenv("MEMBERBILL_BILLING_API_KEYS", '{"acct_a": "sk_test_a"}')
    monkeypatch.setenv("MEMBERBILL_BILLING_MAX_RETRIES", "0")
    monkeypatch.setattr(config, "_settings", None)
    monkeypatch.setattr(base, "engine", None)
    monkeypatch.setattr(base, "SessionLocal", None)

    base.init_db(url)
    yield url
    base.engine.dispose()


@pytest.fixture
def cli_session(cli_db):
    session = base.get_session()
    yield session
    session.close()


@pytest.fixture
def fake_gateway() -> MagicMock:
    """Billing gateway whose calls all succeed."""
    gateway = MagicMock()
    gateway.suspend_collection = AsyncMock(
        return_value=GatewayResult(outcome=GatewayOutcome.SUCCESS, reference="sub_cli")
    )
    gateway.resume_collection = AsyncMock(
        return_value=GatewayResult(outcome=GatewayOutcome.SUCCESS, reference="sub_cli")
    )
    gateway.create_negative_invoice_line = AsyncMock(
        return_value=GatewayResult(outcome=GatewayOutcome.SUCCESS, reference="ii_cli")
    )
    return gateway
