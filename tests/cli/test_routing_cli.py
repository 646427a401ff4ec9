"""Tests for the routing CLI commands."""

from decimal import Decimal

import pytest

from memberbill.cli.main import app
from memberbill.routing.domain.models import RevenueSnapshot, RoutingRecord
from memberbill.storage.database.models import BusinessEntity, Payment, PaymentStatus
from memberbill.utils.datetime import utc_now


@pytest.fixture
def seeded(cli_session):
    """GYM_A is empty, GYM_B has already taken 50,000 this fiscal year."""
    gym_a = BusinessEntity(code="GYM_A", display_name="Gym A", vat_threshold=Decimal("90000.00"))
    gym_b = BusinessEntity(code="GYM_B", display_name="Gym B", vat_threshold=Decimal("90000.00"))
    cli_session.add_all([gym_a, gym_b])
    cli_session.flush()
    cli_session.add(
        Payment(
            user_id="user-1",
            amount=Decimal("50000.00"),
            status=PaymentStatus.CONFIRMED,
            routed_entity_id=gym_b.id,
            processed_at=utc_now(),
        )
    )
    pending = Payment(user_id="user-2", amount=Decimal("90.00"), status=PaymentStatus.PENDING)
    cli_session.add(pending)
    cli_session.commit()
    return {"gym_a": gym_a.id, "gym_b": gym_b.id, "pending": pending.id}


def test_positions_without_entities(runner, cli_db):
    result = runner.invoke(app, ["routing", "positions"])

    assert result.exit_code == 0
    assert "No active entities" in result.output


def test_positions(runner, seeded):
    result = runner.invoke(app, ["routing", "positions"])

    assert result.exit_code == 0
    assert "GYM_A" in result.output
    assert "GYM_B" in result.output


def test_positions_snapshot(runner, seeded, cli_session):
    result = runner.invoke(app, ["routing", "positions", "--snapshot"])

    assert result.exit_code == 0
    assert cli_session.query(RevenueSnapshot).count() == 2


def test_route_dry_run(runner, seeded, cli_session):
    result = runner.invoke(app, ["routing", "route", "--amount", "90.00"])

    assert result.exit_code == 0
    assert "Routed to: GYM_A" in result.output
    assert cli_session.query(RoutingRecord).count() == 0


def test_route_override(runner, seeded):
    result = runner.invoke(
        app,
        ["routing", "route", "--amount", "90.00", "--override-entity", "GYM_B", "--reason", "ops"],
    )

    assert result.exit_code == 0
    assert "Routed to: GYM_B" in result.output
    assert "Override reason: ops" in result.output


def test_route_unknown_override_entity(runner, seeded):
    result = runner.invoke(
        app, ["routing", "route", "--amount", "90.00", "--override-entity", "NOPE"]
    )

    assert result.exit_code == 1
    assert "Unknown entity: NOPE" in result.output


def test_route_no_capacity(runner, seeded):
    result = runner.invoke(app, ["routing", "route", "--amount", "95000"])

    assert result.exit_code == 1
    assert "Routing failed" in result.output


def test_route_invalid_amount(runner, seeded):
    result = runner.invoke(app, ["routing", "route", "--amount", "ninety"])

    assert result.exit_code != 0


def test_assign_payment(runner, seeded, cli_session):
    result = runner.invoke(app, ["routing", "assign-payment", str(seeded["pending"])])

    assert result.exit_code == 0
    assert "Routed to: GYM_A" in result.output
    payment = cli_session.get(Payment, seeded["pending"])
    assert payment.routed_entity_id == seeded["gym_a"]

    again = runner.invoke(app, ["routing", "assign-payment", str(seeded["pending"])])
    assert again.exit_code == 1


def test_assign_unknown_subscription(runner, seeded):
    result = runner.invoke(app, ["routing", "assign-subscription", "999"])

    assert result.exit_code == 1
    assert "Routing failed" in result.output


class TestAddEntity:
    def test_add(self, runner, cli_db, cli_session):
        result = runner.invoke(
            app,
            ["routing", "add-entity", "GYM_C", "--name", "Gym C", "--account", "acct_c"],
        )

        assert result.exit_code == 0
        assert "Entity GYM_C added" in result.output
        entity = cli_session.query(BusinessEntity).filter_by(code="GYM_C").one()
        assert entity.vat_threshold == Decimal("90000.00")
        assert entity.billing_account_ref == "acct_c"

    def test_duplicate(self, runner, seeded):
        result = runner.invoke(app, ["routing", "add-entity", "GYM_A", "--name", "Again"])

        assert result.exit_code == 1
        assert "already exists" in result.output

    def test_non_positive_threshold(self, runner, cli_db):
        result = runner.invoke(
            app, ["routing", "add-entity", "GYM_D", "--name", "Gym D", "--threshold", "0"]
        )

        assert result.exit_code == 1
