"""Domain events for subscription pauses."""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from ...core.events.base import BaseEvent


@dataclass(frozen=True)
class PauseStarted(BaseEvent):
    """Fired when collection has been suspended for a window."""

    window_id: int
    subscription_id: int
    start_date: date
    end_date: date

    @property
    def context_data(self) -> dict:
        return {
            "window_id": self.window_id,
            "subscription_id": self.subscription_id,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
        }


@dataclass(frozen=True)
class PauseCreditApplied(BaseEvent):
    """Fired when a window is settled (including zero-credit settlements)."""

    window_id: int
    subscription_id: int
    paused_days: int
    credit_amount: Decimal
    external_credit_ref: str | None = None

    @property
    def context_data(self) -> dict:
        return {
            "window_id": self.window_id,
            "subscription_id": self.subscription_id,
            "paused_days": self.paused_days,
            "credit_amount": str(self.credit_amount),
            "has_external_credit": self.external_credit_ref is not None,
        }


@dataclass(frozen=True)
class PauseBatchCompleted(BaseEvent):
    """Fired at the end of every daily batch run."""

    as_of: date
    started: int
    ended: int
    credits_applied: int
    failed: int
    skipped: int
    errors: list[str] | None = None

    @property
    def context_data(self) -> dict:
        return {
            "as_of": self.as_of.isoformat(),
            "started": self.started,
            "ended": self.ended,
            "credits_applied": self.credits_applied,
            "failed": self.failed,
            "skipped": self.skipped,
        }
