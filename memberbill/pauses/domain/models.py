"""Domain entities for subscription pauses.

``PauseWindow.credit_applied_at`` going from NULL to a timestamp is the
one-way gate that keeps credits from being applied twice; it is only ever
set together with the credit amount and the CREDIT_APPLIED status.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ...exceptions import AlreadyAppliedError, PauseWindowStateError
from ...storage.database.base import Base
from ...storage.database.models import Subscription
from ...utils.datetime import utc_now
from .enums import AuditAction, IdempotencyStatus, PauseStatus


class PauseWindow(Base):
    """A half-open ``[start_date, end_date)`` interval of suspended billing."""

    __tablename__ = "pause_windows"

    subscription_id: Mapped[int] = mapped_column(
        ForeignKey("subscriptions.id"), nullable=False, index=True
    )
    start_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    end_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    status: Mapped[PauseStatus] = mapped_column(
        Enum(PauseStatus), nullable=False, default=PauseStatus.SCHEDULED, index=True
    )
    reason: Mapped[str | None] = mapped_column(Text)

    # Settlement, written atomically by the end phase
    paused_days: Mapped[int | None] = mapped_column(Integer)
    credit_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    credit_applied_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    external_credit_ref: Mapped[str | None] = mapped_column(String(100))

    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_error: Mapped[str | None] = mapped_column(Text)

    subscription: Mapped[Subscription] = relationship()

    def __repr__(self) -> str:
        return (
            f"<PauseWindow(id={self.id}, subscription={self.subscription_id}, "
            f"{self.start_date}..{self.end_date}, status='{self.status.value}')>"
        )

    @property
    def length_days(self) -> int:
        return max(0, (self.end_date - self.start_date).days)

    def overlaps(self, start: date, end: date) -> bool:
        """Whether ``[start, end)`` intersects this window."""
        return start < self.end_date and self.start_date < end

    def contains(self, day: date) -> bool:
        return self.start_date <= day < self.end_date

    def ensure_can_start(self) -> None:
        """Only SCHEDULED windows may move to ACTIVE."""
        if self.status != PauseStatus.SCHEDULED:
            raise PauseWindowStateError(
                "Only scheduled windows can start",
                window_id=self.id,
                current_state=self.status.value,
                attempted_action="start",
            )

    def ensure_can_credit(self) -> None:
        """Reject settling a window that is already settled or cancelled.

        Raises:
            AlreadyAppliedError: The window already carries a credit
            PauseWindowStateError: The window was cancelled
        """
        if self.credit_applied_at is not None or self.status == PauseStatus.CREDIT_APPLIED:
            raise AlreadyAppliedError(
                "Credit already applied to this window",
                window_id=self.id,
                current_state=self.status.value,
                attempted_action="apply_credit",
            )
        if self.status == PauseStatus.CANCELLED:
            raise PauseWindowStateError(
                "Cancelled windows cannot be credited",
                window_id=self.id,
                current_state=self.status.value,
                attempted_action="apply_credit",
            )

    def cancel(self, cancelled_at: datetime | None = None) -> None:
        """SCHEDULED | ACTIVE → CANCELLED."""
        if self.status.is_terminal:
            raise PauseWindowStateError(
                "Window is already closed",
                window_id=self.id,
                current_state=self.status.value,
                attempted_action="cancel",
            )
        self.status = PauseStatus.CANCELLED
        self.cancelled_at = cancelled_at or utc_now()


class AuditLogEntry(Base):
    """Append-only audit trail of subscription lifecycle actions."""

    __tablename__ = "audit_log"

    subscription_id: Mapped[int] = mapped_column(
        ForeignKey("subscriptions.id"), nullable=False, index=True
    )
    pause_window_id: Mapped[int | None] = mapped_column(ForeignKey("pause_windows.id"), index=True)
    action: Mapped[AuditAction] = mapped_column(Enum(AuditAction), nullable=False)
    performed_by: Mapped[str] = mapped_column(String(100), nullable=False, default="SYSTEM")
    reason: Mapped[str | None] = mapped_column(Text)
    operation_id: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    details: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    def __repr__(self) -> str:
        return (
            f"<AuditLogEntry(id={self.id}, action='{self.action.value}', "
            f"operation_id='{self.operation_id}')>"
        )


class IdempotencyRecord(Base):
    """Claim on an external side effect, checked before performing it."""

    __tablename__ = "idempotency_records"
    __table_args__ = (
        UniqueConstraint(
            "operation_type",
            "reference_id",
            "attempt_window",
            name="uq_idempotency_records_operation",
        ),
    )

    operation_type: Mapped[str] = mapped_column(String(50), nullable=False)
    reference_id: Mapped[str] = mapped_column(String(100), nullable=False)
    attempt_window: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[IdempotencyStatus] = mapped_column(
        Enum(IdempotencyStatus), nullable=False, default=IdempotencyStatus.PENDING
    )
    result_ref: Mapped[str | None] = mapped_column(String(100))
    # Amount the side effect was claimed for, in minor units
    amount_minor_units: Mapped[int | None] = mapped_column(Integer)

    def __repr__(self) -> str:
        return (
            f"<IdempotencyRecord({self.operation_type}:{self.reference_id}:"
            f"{self.attempt_window}, status='{self.status.value}')>"
        )
