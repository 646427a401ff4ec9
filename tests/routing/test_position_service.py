"""Tests for revenue positions, risk tiers and snapshots."""

from datetime import UTC, date, datetime
from decimal import Decimal

import pytest

from memberbill.exceptions import ConfigurationError
from memberbill.routing.application.services.ledger_service import RevenueLedgerService
from memberbill.routing.application.services.position_service import (
    RevenuePositionService,
    classify_risk,
)
from memberbill.routing.domain.enums import RiskLevel
from memberbill.routing.domain.events import RevenueRiskAlert
from memberbill.routing.infrastructure.repository import (
    BusinessEntityRepository,
    PaymentRepository,
    RevenueSnapshotRepository,
)
from memberbill.storage.database.models import EntityStatus

AS_OF = datetime(2024, 10, 1, tzinfo=UTC)


@pytest.fixture
def position_service(db_session, test_settings, event_bus) -> RevenuePositionService:
    return RevenuePositionService(
        RevenueLedgerService(PaymentRepository(db_session)),
        snapshot_repository=RevenueSnapshotRepository(db_session),
        entity_repository=BusinessEntityRepository(db_session),
        settings=test_settings,
        event_bus=event_bus,
    )


@pytest.mark.parametrize(
    "utilization,expected",
    [
        (Decimal("0"), RiskLevel.LOW),
        (Decimal("0.4999"), RiskLevel.LOW),
        (Decimal("0.5"), RiskLevel.MEDIUM),
        (Decimal("0.79"), RiskLevel.MEDIUM),
        (Decimal("0.8"), RiskLevel.HIGH),
        (Decimal("0.9499"), RiskLevel.HIGH),
        (Decimal("0.95"), RiskLevel.CRITICAL),
        (Decimal("1.2"), RiskLevel.CRITICAL),
    ],
)
def test_classify_risk(utilization, expected):
    assert classify_risk(utilization) == expected


class TestCalculatePosition:
    """Single-entity position math."""

    def test_half_year_projection(self, position_service, make_entity, make_payment):
        entity = make_entity("GYM_A")
        make_payment("30000.00", entity)

        position = position_service.calculate_position(entity, AS_OF)

        assert position.current_revenue == Decimal("30000.00")
        assert position.headroom == Decimal("60000.00")
        assert position.months_elapsed == Decimal("6")
        assert position.months_remaining == Decimal("6")
        assert position.monthly_average == Decimal("5000.00")
        assert position.projected_year_end == Decimal("60000.00")
        assert position.risk_level == RiskLevel.MEDIUM
        assert position.payment_count == 1

    def test_months_elapsed_has_floor_of_one(self, position_service, make_entity, make_payment):
        entity = make_entity("GYM_A")
        make_payment("3000.00", entity, processed_at=datetime(2024, 4, 5, tzinfo=UTC))

        position = position_service.calculate_position(entity, datetime(2024, 4, 10, tzinfo=UTC))

        assert position.months_elapsed == Decimal("1")
        assert position.monthly_average == Decimal("3000.00")

    def test_end_of_year_projection_stays_near_current(
        self, position_service, make_entity, make_payment
    ):
        entity = make_entity("GYM_A")
        make_payment("75000.00", entity)

        position = position_service.calculate_position(entity, datetime(2025, 3, 31, tzinfo=UTC))

        assert position.months_remaining < Decimal("0.1")
        assert Decimal("75000") < position.projected_year_end < Decimal("75500")
        assert position.risk_level == RiskLevel.HIGH

    def test_defaults_fiscal_window_from_settings(self, position_service, make_entity):
        entity = make_entity("GYM_A")
        entity.vat_year_start = None
        entity.vat_year_end = None

        assert position_service.fiscal_window(entity, date(2024, 6, 1)) == (
            date(2024, 4, 1),
            date(2025, 4, 1),
        )

    @pytest.mark.parametrize(
        "as_of,expected",
        [
            (date(2025, 3, 31), (date(2024, 4, 1), date(2025, 4, 1))),
            (date(2025, 4, 1), (date(2025, 4, 1), date(2026, 4, 1))),
            (date(2027, 1, 15), (date(2026, 4, 1), date(2027, 4, 1))),
            (date(2023, 5, 1), (date(2023, 4, 1), date(2024, 4, 1))),
        ],
    )
    def test_stored_fiscal_window_rolls_by_whole_years(
        self, position_service, make_entity, as_of, expected
    ):
        entity = make_entity("GYM_A")

        assert position_service.fiscal_window(entity, as_of) == expected

    def test_revenue_after_stored_year_end_counts_current_year_only(
        self, position_service, make_entity, make_payment
    ):
        entity = make_entity("GYM_A")
        make_payment("50000.00", entity, processed_at=datetime(2024, 6, 1, tzinfo=UTC))
        make_payment("30000.00", entity, processed_at=datetime(2025, 6, 1, tzinfo=UTC))

        position = position_service.calculate_position(
            entity, datetime(2025, 7, 1, tzinfo=UTC)
        )

        assert position.current_revenue == Decimal("30000.00")
        assert position.payment_count == 1
        assert position.headroom == Decimal("60000.00")


class TestCalculatePositions:
    """Batch positions, snapshots and alerts."""

    def test_misconfigured_entity_excluded(self, position_service, make_entity):
        good = make_entity("GYM_A")
        make_entity("BROKEN", threshold="0.00")

        positions = position_service.calculate_positions(
            position_service.entities.find_active(), as_of=AS_OF
        )

        assert [p.entity_id for p in positions] == [good.id]

    def test_persist_writes_snapshots_and_cache(
        self, position_service, db_session, make_entity, make_payment
    ):
        entity = make_entity("GYM_A")
        make_payment("30000.00", entity)

        position_service.calculate_positions([entity], as_of=AS_OF, persist=True)

        snapshots = RevenueSnapshotRepository(db_session)
        assert snapshots.count_for_entity(entity.id) == 1
        latest = snapshots.latest_for_entity(entity.id)
        assert latest.total_revenue == Decimal("30000.00")
        assert latest.risk_level == RiskLevel.MEDIUM
        db_session.refresh(entity)
        assert entity.current_revenue == Decimal("30000.00")

    def test_no_persist_writes_nothing(self, position_service, db_session, make_entity):
        entity = make_entity("GYM_A")

        position_service.calculate_positions([entity], as_of=AS_OF, persist=False)

        assert RevenueSnapshotRepository(db_session).count_for_entity(entity.id) == 0

    def test_high_risk_publishes_alert(
        self, position_service, event_bus, make_entity, make_payment
    ):
        alerts = []
        event_bus.subscribe(RevenueRiskAlert, alerts.append)
        risky = make_entity("GYM_A")
        safe = make_entity("GYM_B")
        make_payment("45000.00", risky)
        make_payment("1000.00", safe)

        position_service.calculate_positions([risky, safe], as_of=AS_OF, persist=False)

        assert len(alerts) == 1
        assert alerts[0].entity_id == risky.id
        assert alerts[0].risk_level == RiskLevel.CRITICAL

    def test_snapshot_positions_uses_active_entities(self, position_service, make_entity):
        active = make_entity("GYM_A")
        make_entity("OLD", status=EntityStatus.INACTIVE)

        positions = position_service.snapshot_positions(AS_OF)

        assert [p.entity_id for p in positions] == [active.id]

    def test_snapshot_positions_requires_repository(self, db_session, test_settings, event_bus):
        service = RevenuePositionService(
            RevenueLedgerService(PaymentRepository(db_session)),
            settings=test_settings,
            event_bus=event_bus,
        )

        with pytest.raises(ConfigurationError):
            service.snapshot_positions(AS_OF)
