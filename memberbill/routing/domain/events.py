"""Domain events for revenue routing."""

from dataclasses import dataclass
from decimal import Decimal

from ...core.events.base import BaseEvent
from .enums import RiskLevel


@dataclass(frozen=True)
class RevenueRiskAlert(BaseEvent):
    """Fired when an entity's position reaches HIGH or CRITICAL risk."""

    entity_id: int
    entity_code: str
    risk_level: RiskLevel
    current_revenue: Decimal
    projected_year_end: Decimal
    vat_threshold: Decimal

    @property
    def context_data(self) -> dict:
        """Additional context for logging/monitoring."""
        return {
            "entity_id": self.entity_id,
            "entity_code": self.entity_code,
            "risk_level": self.risk_level.value,
            "current_revenue": str(self.current_revenue),
            "projected_year_end": str(self.projected_year_end),
        }


@dataclass(frozen=True)
class EntityRouted(BaseEvent):
    """Fired after a routing decision has been persisted."""

    entity_id: int
    amount: Decimal
    reason: str
    payment_id: int | None = None
    subscription_id: int | None = None

    @property
    def context_data(self) -> dict:
        return {
            "entity_id": self.entity_id,
            "amount": str(self.amount),
            "reason": self.reason,
            "payment_id": self.payment_id,
            "subscription_id": self.subscription_id,
        }
