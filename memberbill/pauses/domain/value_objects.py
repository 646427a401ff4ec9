"""Value objects for pause proration and the daily batch."""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any

from .enums import BatchPhase, GatewayOutcome

ZERO = Decimal("0.00")


@dataclass(frozen=True)
class CreditBreakdownLine:
    """Credit for the part of one billing sub-period covered by a pause.

    Attributes:
        period_start: First day of the billing sub-period
        period_end: First day after the sub-period (half-open)
        is_prorated_period: Whether this is the partial first period
        paid_amount: What the member paid for the sub-period
        period_length_days: Days in the sub-period
        daily_rate: paid_amount / period_length_days (unrounded)
        overlap_days: Paused days inside the sub-period
        period_credit: daily_rate * overlap_days, rounded to cents
    """

    period_start: date
    period_end: date
    is_prorated_period: bool
    paid_amount: Decimal
    period_length_days: int
    daily_rate: Decimal
    overlap_days: int
    period_credit: Decimal

    @property
    def covers_whole_period(self) -> bool:
        return self.overlap_days == self.period_length_days

    def to_dict(self) -> dict[str, Any]:
        return {
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "is_prorated_period": self.is_prorated_period,
            "paid_amount": str(self.paid_amount),
            "period_length_days": self.period_length_days,
            "daily_rate": str(self.daily_rate.quantize(Decimal("0.0001"))),
            "overlap_days": self.overlap_days,
            "period_credit": str(self.period_credit),
        }


@dataclass(frozen=True)
class ProratedCredit:
    """Credit owed for a pause window.

    ``total_credit`` is the sum of the already rounded per-period credits.
    """

    total_days: int
    total_credit: Decimal
    total_credit_minor_units: int
    breakdown: tuple[CreditBreakdownLine, ...] = ()

    def __post_init__(self) -> None:
        if self.total_days < 0:
            raise ValueError(f"total_days must be >= 0, got {self.total_days}")
        if self.total_credit < 0:
            raise ValueError(f"total_credit must be >= 0, got {self.total_credit}")

    @classmethod
    def zero(cls) -> "ProratedCredit":
        return cls(total_days=0, total_credit=ZERO, total_credit_minor_units=0)

    @property
    def is_zero(self) -> bool:
        return self.total_credit <= 0

    def description(self, currency_symbol: str = "£") -> str:
        """Invoice line text shown to the member."""
        return f"Pause credit: {self.total_days} days, {currency_symbol}{self.total_credit:.2f}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_days": self.total_days,
            "total_credit": str(self.total_credit),
            "total_credit_minor_units": self.total_credit_minor_units,
            "breakdown": [line.to_dict() for line in self.breakdown],
        }


@dataclass(frozen=True)
class SettlementBreakdown:
    """Credit split between fully and partially paused billing periods."""

    full_months: tuple[CreditBreakdownLine, ...]
    partial_months: tuple[CreditBreakdownLine, ...]
    full_months_credit: Decimal
    partial_months_credit: Decimal
    total_credit: Decimal
    description: str


@dataclass(frozen=True)
class GatewayResult:
    """Successful (or already-in-state) outcome of a billing call."""

    outcome: GatewayOutcome
    reference: str | None = None

    @property
    def already_in_state(self) -> bool:
        return self.outcome == GatewayOutcome.ALREADY_IN_STATE


@dataclass(frozen=True)
class BatchError:
    """One window that failed during a batch run."""

    window_id: int
    phase: BatchPhase
    error_type: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "window_id": self.window_id,
            "phase": self.phase.value,
            "error_type": self.error_type,
            "message": self.message,
        }


@dataclass
class BatchSummary:
    """Structured result of one daily batch run."""

    as_of: date
    started: int = 0
    ended: int = 0
    credits_applied: int = 0
    failed: int = 0
    skipped: int = 0
    total_credit: Decimal = ZERO
    errors: list[BatchError] = field(default_factory=list)

    @property
    def has_failures(self) -> bool:
        return self.failed > 0

    def record_failure(self, window_id: int, phase: BatchPhase, error: Exception) -> None:
        self.failed += 1
        self.errors.append(
            BatchError(
                window_id=window_id,
                phase=phase,
                error_type=type(error).__name__,
                message=str(error),
            )
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "as_of": self.as_of.isoformat(),
            "started": self.started,
            "ended": self.ended,
            "credits_applied": self.credits_applied,
            "failed": self.failed,
            "skipped": self.skipped,
            "total_credit": str(self.total_credit),
            "errors": [e.to_dict() for e in self.errors],
        }
