"""Persisted routing records.

Snapshots are an observability cache only; routing decisions always use
freshly computed positions.
"""

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import JSON, Date, DateTime, Enum, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ...storage.database.base import Base
from ...utils.datetime import utc_now
from .enums import RiskLevel, RoutingConfidence, RoutingMethod, RoutingReason


class RevenueSnapshot(Base):
    """One row per entity per position calculation."""

    __tablename__ = "revenue_snapshots"

    entity_id: Mapped[int] = mapped_column(
        ForeignKey("business_entities.id"), nullable=False, index=True
    )
    calculated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    vat_year_start: Mapped[date] = mapped_column(Date, nullable=False)
    vat_year_end: Mapped[date] = mapped_column(Date, nullable=False)

    total_revenue: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    monthly_average: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    projected_year_end: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    headroom: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    risk_level: Mapped[RiskLevel] = mapped_column(Enum(RiskLevel), nullable=False)
    payment_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def __repr__(self) -> str:
        return (
            f"<RevenueSnapshot(entity={self.entity_id}, revenue={self.total_revenue}, "
            f"risk={self.risk_level.value})>"
        )


class RoutingRecord(Base):
    """Audit row for every persisted routing decision."""

    __tablename__ = "routing_records"

    selected_entity_id: Mapped[int] = mapped_column(
        ForeignKey("business_entities.id"), nullable=False, index=True
    )
    payment_id: Mapped[int | None] = mapped_column(ForeignKey("payments.id"), index=True)
    subscription_id: Mapped[int | None] = mapped_column(ForeignKey("subscriptions.id"), index=True)

    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    plan_key: Mapped[str | None] = mapped_column(String(50))
    available_entity_ids: Mapped[list[int]] = mapped_column(JSON, nullable=False, default=list)

    reason: Mapped[RoutingReason] = mapped_column(Enum(RoutingReason), nullable=False)
    method: Mapped[RoutingMethod] = mapped_column(Enum(RoutingMethod), nullable=False)
    confidence: Mapped[RoutingConfidence] = mapped_column(Enum(RoutingConfidence), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    decision_time_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def __repr__(self) -> str:
        return (
            f"<RoutingRecord(id={self.id}, entity={self.selected_entity_id}, "
            f"reason={self.reason.value}, confidence={self.confidence.value})>"
        )
