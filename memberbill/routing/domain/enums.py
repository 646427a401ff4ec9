"""Domain enums for revenue routing."""

from enum import Enum


class RiskLevel(str, Enum):
    """Threshold risk tier, from utilization = revenue / threshold.

    LOW < 0.5 <= MEDIUM < 0.8 <= HIGH < 0.95 <= CRITICAL
    """

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    def __str__(self) -> str:
        return self.value

    @property
    def requires_alert(self) -> bool:
        """Whether finance should be told about this entity."""
        return self in (RiskLevel.HIGH, RiskLevel.CRITICAL)


class RoutingReason(str, Enum):
    """Why the router picked an entity."""

    PREFERRED_ENTITY = "preferred_entity"
    MAX_HEADROOM = "max_headroom"
    ADMIN_OVERRIDE = "admin_override"

    def __str__(self) -> str:
        return self.value


class RoutingMethod(str, Enum):
    """How the routing decision was made."""

    SERVICE_PREFERENCE = "service_preference"  # Plan has preferred entities
    HEADROOM_OPTIMIZED = "headroom_optimized"  # Greatest headroom wins
    MANUAL_OVERRIDE = "manual_override"  # Admin named the entity

    def __str__(self) -> str:
        return self.value


class RoutingConfidence(str, Enum):
    """How comfortable the router is with its pick."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    FORCED = "forced"  # Only one option, or admin override

    def __str__(self) -> str:
        return self.value
