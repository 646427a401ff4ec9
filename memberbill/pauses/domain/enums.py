"""Domain enums for subscription pauses."""

from enum import Enum


class PauseStatus(str, Enum):
    """Pause window status.

    Lifecycle:
        SCHEDULED → ACTIVE (start date reached, collection suspended)
        ACTIVE → CREDIT_APPLIED (end date reached, credit settled)
        SCHEDULED → CREDIT_APPLIED (window already over when first seen)
        SCHEDULED | ACTIVE → CANCELLED (explicit cancellation)
    """

    SCHEDULED = "scheduled"
    ACTIVE = "active"
    CREDIT_APPLIED = "credit_applied"
    CANCELLED = "cancelled"

    def __str__(self) -> str:
        return self.value

    @property
    def is_terminal(self) -> bool:
        return self in (PauseStatus.CREDIT_APPLIED, PauseStatus.CANCELLED)


class AuditAction(str, Enum):
    """Actions recorded in the subscription audit log."""

    PAUSE_SCHEDULED = "pause_scheduled"
    PAUSE_STARTED = "pause_started"
    PAUSE_ENDED = "pause_ended"
    PAUSE_CREDIT_APPLIED = "pause_credit_applied"
    PAUSE_CANCELLED = "pause_cancelled"

    def __str__(self) -> str:
        return self.value


class GatewayOutcome(str, Enum):
    """Non-failing results of an external billing call."""

    SUCCESS = "success"
    ALREADY_IN_STATE = "already_in_state"  # e.g. subscription already resumed

    def __str__(self) -> str:
        return self.value


class IdempotencyStatus(str, Enum):
    """State of a guarded external side effect."""

    PENDING = "pending"  # Claimed, outcome unknown
    COMPLETED = "completed"  # External call succeeded

    def __str__(self) -> str:
        return self.value


class BatchPhase(str, Enum):
    """Phase of the daily pause batch."""

    START = "start"
    END = "end"

    def __str__(self) -> str:
        return self.value
