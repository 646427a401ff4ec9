"""Value objects for revenue routing.

All are frozen dataclasses: positions are recomputed on demand and never
mutated, decisions are returned to the caller who persists them.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from .enums import RiskLevel, RoutingConfidence, RoutingMethod, RoutingReason

CENT = Decimal("0.01")


@dataclass(frozen=True)
class RevenuePosition:
    """An entity's revenue standing within its fiscal year.

    Attributes:
        entity_id: BusinessEntity id
        entity_code: Short entity tag (e.g. "SU")
        vat_threshold: Annual registration threshold
        current_revenue: Net confirmed revenue, fiscal year start to as-of
        headroom: vat_threshold - current_revenue (may be negative)
        monthly_average: current_revenue / months_elapsed
        months_elapsed: Fractional months since fiscal year start (>= 1)
        months_remaining: Fractional months until fiscal year end (>= 0)
        projected_year_end: current_revenue + monthly_average * months_remaining
        utilization: max(current, projected) / threshold
        risk_level: Tier derived from utilization
        payment_count: Number of revenue rows behind current_revenue
    """

    entity_id: int
    entity_code: str
    vat_threshold: Decimal
    current_revenue: Decimal
    headroom: Decimal
    monthly_average: Decimal
    months_elapsed: Decimal
    months_remaining: Decimal
    projected_year_end: Decimal
    utilization: Decimal
    risk_level: RiskLevel
    payment_count: int = 0

    def __post_init__(self) -> None:
        if self.vat_threshold <= 0:
            raise ValueError(f"vat_threshold must be positive, got {self.vat_threshold}")
        if self.months_elapsed < 1:
            raise ValueError(f"months_elapsed must be >= 1, got {self.months_elapsed}")

    def margin_after(self, amount: Decimal) -> Decimal:
        """Headroom left once ``amount`` is attributed to this entity."""
        return self.headroom - amount

    def qualifies(self, amount: Decimal, safety_buffer: Decimal) -> bool:
        """Whether ``amount`` fits while keeping ``safety_buffer`` in reserve."""
        return self.margin_after(amount) >= safety_buffer

    def shortfall(self, amount: Decimal, safety_buffer: Decimal) -> Decimal:
        """Money missing for ``amount`` to qualify (0 when it already does)."""
        return max(Decimal("0.00"), safety_buffer - self.margin_after(amount))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "entity_id": self.entity_id,
            "entity_code": self.entity_code,
            "vat_threshold": str(self.vat_threshold),
            "current_revenue": str(self.current_revenue),
            "headroom": str(self.headroom),
            "monthly_average": str(self.monthly_average),
            "months_elapsed": str(self.months_elapsed.quantize(Decimal("0.0001"))),
            "months_remaining": str(self.months_remaining.quantize(Decimal("0.0001"))),
            "projected_year_end": str(self.projected_year_end),
            "utilization": str(self.utilization.quantize(Decimal("0.0001"))),
            "risk_level": self.risk_level.value,
            "payment_count": self.payment_count,
        }


@dataclass(frozen=True)
class RoutingCandidate:
    """A new payment or subscription waiting for an entity."""

    amount: Decimal
    plan_key: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.amount, Decimal):
            raise ValueError(f"amount must be a Decimal, got {type(self.amount).__name__}")
        if self.amount <= 0:
            raise ValueError(f"amount must be positive, got {self.amount}")


@dataclass(frozen=True)
class RoutingDecision:
    """Outcome of a successful routing call."""

    selected_entity_id: int
    entity_code: str
    reason: RoutingReason
    method: RoutingMethod
    confidence: RoutingConfidence
    headroom_after: Decimal
    available_entity_ids: tuple[int, ...] = field(default_factory=tuple)
    override_reason: str | None = None

    @property
    def description(self) -> str:
        """Human-readable reason, stored on the routing record."""
        if self.reason == RoutingReason.ADMIN_OVERRIDE:
            return f"Admin override: {self.override_reason or 'no reason given'}"
        label = {
            RoutingReason.PREFERRED_ENTITY: "Preferred entity for plan",
            RoutingReason.MAX_HEADROOM: "Maximum VAT headroom",
        }[self.reason]
        return f"{label} ({self.headroom_after.quantize(CENT)} remaining capacity)"

    def to_dict(self) -> dict[str, Any]:
        return {
            "selected_entity_id": self.selected_entity_id,
            "entity_code": self.entity_code,
            "reason": self.reason.value,
            "method": self.method.value,
            "confidence": self.confidence.value,
            "headroom_after": str(self.headroom_after),
            "available_entity_ids": list(self.available_entity_ids),
        }
