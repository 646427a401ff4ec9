"""Revenue position calculator.

Turns ledger sums into per-entity positions: headroom to the VAT threshold,
monthly run-rate, year-end projection and a risk tier.

Month counting uses a fractional, day-accurate convention (see
``memberbill.utils.datetime.months_between``): whole calendar months from
the fiscal year start, plus leftover days divided by the length of the
month they fall in.
"""

from collections.abc import Sequence
from datetime import date, datetime
from decimal import Decimal

from memberbill.core.events.base import GlobalEventBus, get_global_event_bus
from memberbill.exceptions import ConfigurationError
from memberbill.routing.application.services.ledger_service import RevenueLedgerService
from memberbill.routing.domain.enums import RiskLevel
from memberbill.routing.domain.events import RevenueRiskAlert
from memberbill.routing.domain.models import RevenueSnapshot
from memberbill.routing.domain.value_objects import RevenuePosition
from memberbill.routing.infrastructure.repository import (
    BusinessEntityRepository,
    RevenueSnapshotRepository,
)
from memberbill.storage.database.models import BusinessEntity
from memberbill.utils.config import Settings, get_settings
from memberbill.utils.datetime import add_months, fiscal_year_bounds, months_between, utc_now
from memberbill.utils.logging import LogPerformance, get_logger

logger = get_logger(__name__)

CENT = Decimal("0.01")

# Lower bounds of each tier, checked from the top
RISK_TIERS: tuple[tuple[Decimal, RiskLevel], ...] = (
    (Decimal("0.95"), RiskLevel.CRITICAL),
    (Decimal("0.80"), RiskLevel.HIGH),
    (Decimal("0.50"), RiskLevel.MEDIUM),
)


def classify_risk(utilization: Decimal) -> RiskLevel:
    """Map a utilization ratio to its risk tier."""
    for lower_bound, level in RISK_TIERS:
        if utilization >= lower_bound:
            return level
    return RiskLevel.LOW


class RevenuePositionService:
    """Computes fresh revenue positions and records observability snapshots.

    Callers must route on the returned positions, never on
    ``BusinessEntity.current_revenue`` or a stored snapshot.
    """

    def __init__(
        self,
        ledger: RevenueLedgerService,
        snapshot_repository: RevenueSnapshotRepository | None = None,
        entity_repository: BusinessEntityRepository | None = None,
        settings: Settings | None = None,
        event_bus: GlobalEventBus | None = None,
    ):
        """Initialize the calculator.

        Args:
            ledger: Revenue ledger reader
            snapshot_repository: Where snapshots go (no snapshots when None)
            entity_repository: Used by ``snapshot_positions`` to list entities
            settings: Fiscal year defaults (global settings when None)
            event_bus: Bus receiving risk alerts (global bus when None)
        """
        self.ledger = ledger
        self.snapshots = snapshot_repository
        self.entities = entity_repository
        self.settings = settings or get_settings()
        self.event_bus = event_bus or get_global_event_bus()

    def fiscal_window(self, entity: BusinessEntity, as_of: date) -> tuple[date, date]:
        """The entity's ``[start, end)`` fiscal year containing ``as_of``.

        A stored window is shifted by whole years until it contains ``as_of``;
        without one the year is defaulted from settings.
        """
        if entity.vat_year_start and entity.vat_year_end:
            stored_start, stored_end = entity.vat_year_start, entity.vat_year_end
            years = as_of.year - stored_start.year
            if add_months(stored_start, 12 * years) > as_of:
                years -= 1
            while add_months(stored_end, 12 * years) <= as_of:
                years += 1
            if years:
                logger.debug(
                    "fiscal_window_rolled", entity_id=entity.id, years=years, as_of=str(as_of)
                )
            return add_months(stored_start, 12 * years), add_months(stored_end, 12 * years)
        return fiscal_year_bounds(
            as_of,
            start_month=self.settings.vat_year_start_month,
            start_day=self.settings.vat_year_start_day,
        )

    def calculate_position(self, entity: BusinessEntity, as_of: datetime) -> RevenuePosition:
        """Position of a single, correctly configured entity."""
        as_of_day = as_of.date()
        year_start, year_end = self.fiscal_window(entity, as_of_day)

        current_revenue = self.ledger.sum_confirmed_revenue(entity.id, year_start, as_of)
        payment_count = self.ledger.count_confirmed_payments(entity.id, year_start, as_of)

        months_elapsed = max(Decimal("1"), months_between(year_start, as_of_day))
        months_remaining = months_between(as_of_day, year_end)

        monthly_average = current_revenue / months_elapsed
        projected_year_end = (current_revenue + monthly_average * months_remaining).quantize(CENT)

        threshold = Decimal(entity.vat_threshold)
        utilization = max(current_revenue, projected_year_end) / threshold

        return RevenuePosition(
            entity_id=entity.id,
            entity_code=entity.code,
            vat_threshold=threshold,
            current_revenue=current_revenue,
            headroom=threshold - current_revenue,
            monthly_average=monthly_average.quantize(CENT),
            months_elapsed=months_elapsed,
            months_remaining=months_remaining,
            projected_year_end=projected_year_end,
            utilization=utilization,
            risk_level=classify_risk(utilization),
            payment_count=payment_count,
        )

    def calculate_positions(
        self,
        entities: Sequence[BusinessEntity],
        as_of: datetime | None = None,
        persist: bool = True,
    ) -> list[RevenuePosition]:
        """Compute positions for ``entities`` as of ``as_of``.

        Entities with a non-positive threshold are skipped and logged as a
        configuration error; they are never treated as having infinite
        headroom.

        Args:
            entities: Entities to evaluate
            as_of: Evaluation time (now when None)
            persist: Write one snapshot per entity and refresh the cached
                     ``current_revenue``

        Returns:
            Fresh positions, in the order of ``entities``
        """
        as_of = as_of or utc_now()
        positions: list[RevenuePosition] = []
        snapshots: list[RevenueSnapshot] = []

        with LogPerformance("position_calculation", logger):
            for entity in entities:
                if entity.vat_threshold is None or Decimal(entity.vat_threshold) <= 0:
                    error = ConfigurationError(
                        "Entity has a non-positive VAT threshold and is excluded",
                        setting="vat_threshold",
                        expected="> 0",
                        entity_id=entity.id,
                    )
                    logger.error("entity_misconfigured", error=str(error), context=error.context)
                    continue

                position = self.calculate_position(entity, as_of)
                positions.append(position)

                if persist and self.snapshots is not None:
                    year_start, year_end = self.fiscal_window(entity, as_of.date())
                    snapshots.append(
                        RevenueSnapshot(
                            entity_id=entity.id,
                            calculated_at=as_of,
                            vat_year_start=year_start,
                            vat_year_end=year_end,
                            total_revenue=position.current_revenue,
                            monthly_average=position.monthly_average,
                            projected_year_end=position.projected_year_end,
                            headroom=position.headroom,
                            risk_level=position.risk_level,
                            payment_count=position.payment_count,
                        )
                    )
                    entity.current_revenue = position.current_revenue

        if snapshots:
            self.snapshots.add_all(snapshots)
            self.snapshots.session.commit()
            logger.info("revenue_snapshots_recorded", count=len(snapshots))

        self._publish_alerts(positions)
        return positions

    def snapshot_positions(self, as_of: datetime | None = None) -> list[RevenuePosition]:
        """Positions for every ACTIVE entity, persisted."""
        if self.entities is None:
            raise ConfigurationError(
                "snapshot_positions requires an entity repository",
                setting="entity_repository",
            )
        return self.calculate_positions(self.entities.find_active(), as_of=as_of)

    def _publish_alerts(self, positions: Sequence[RevenuePosition]) -> None:
        for position in positions:
            if not position.risk_level.requires_alert:
                continue
            logger.warning(
                "revenue_risk_alert",
                entity_id=position.entity_id,
                entity_code=position.entity_code,
                risk_level=position.risk_level.value,
                utilization=str(position.utilization.quantize(Decimal("0.0001"))),
            )
            self.event_bus.publish(
                RevenueRiskAlert(
                    entity_id=position.entity_id,
                    entity_code=position.entity_code,
                    risk_level=position.risk_level,
                    current_revenue=position.current_revenue,
                    projected_year_end=position.projected_year_end,
                    vat_threshold=position.vat_threshold,
                )
            )
