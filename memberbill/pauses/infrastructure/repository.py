"""Repositories for pause windows, the audit log and idempotency claims."""

from datetime import date
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from memberbill.exceptions import StaleStateError
from memberbill.pauses.domain.enums import IdempotencyStatus, PauseStatus
from memberbill.pauses.domain.models import AuditLogEntry, IdempotencyRecord, PauseWindow
from memberbill.storage.database.base import get_session


class PauseWindowRepository:
    """Repository for PauseWindow entities."""

    def __init__(self, session: Session | None = None):
        self.session = session or get_session()

    def add(self, window: PauseWindow) -> PauseWindow:
        """Stage a new window; the caller commits."""
        self.session.add(window)
        return window

    def get(self, window_id: int) -> PauseWindow | None:
        return self.session.get(PauseWindow, window_id)

    def find_due_to_start(self, today: date) -> list[PauseWindow]:
        """SCHEDULED windows whose start has arrived and whose end has not."""
        stmt = (
            select(PauseWindow)
            .where(
                PauseWindow.status == PauseStatus.SCHEDULED,
                PauseWindow.start_date <= today,
                PauseWindow.end_date > today,
            )
            .order_by(PauseWindow.start_date, PauseWindow.id)
        )
        return list(self.session.execute(stmt).scalars())

    def find_due_to_end(self, today: date) -> list[PauseWindow]:
        """Open, uncredited windows whose end date has passed."""
        stmt = (
            select(PauseWindow)
            .where(
                PauseWindow.status.in_((PauseStatus.SCHEDULED, PauseStatus.ACTIVE)),
                PauseWindow.end_date <= today,
                PauseWindow.credit_applied_at.is_(None),
            )
            .order_by(PauseWindow.end_date, PauseWindow.id)
        )
        return list(self.session.execute(stmt).scalars())

    def find_for_subscription(
        self, subscription_id: int, include_cancelled: bool = False
    ) -> list[PauseWindow]:
        stmt = select(PauseWindow).where(PauseWindow.subscription_id == subscription_id)
        if not include_cancelled:
            stmt = stmt.where(PauseWindow.status != PauseStatus.CANCELLED)
        stmt = stmt.order_by(PauseWindow.start_date, PauseWindow.id)
        return list(self.session.execute(stmt).scalars())

    def guarded_transition(
        self,
        window: PauseWindow,
        expected: tuple[PauseStatus, ...],
        **values: Any,
    ) -> None:
        """Update ``window`` only if it is still uncredited and in ``expected``.

        Raises:
            StaleStateError: Another run moved the window first
        """
        stmt = (
            update(PauseWindow)
            .where(
                PauseWindow.id == window.id,
                PauseWindow.status.in_(expected),
                PauseWindow.credit_applied_at.is_(None),
            )
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        result = self.session.execute(stmt)
        if result.rowcount != 1:
            raise StaleStateError(
                "Pause window changed state concurrently",
                context={
                    "window_id": window.id,
                    "expected": [s.value for s in expected],
                },
            )


class AuditLogRepository:
    """Append-only access to the audit log; rows are never updated or deleted."""

    def __init__(self, session: Session | None = None):
        self.session = session or get_session()

    def append(self, entry: AuditLogEntry) -> AuditLogEntry:
        """Stage an entry; the caller commits."""
        self.session.add(entry)
        return entry

    def find_for_subscription(self, subscription_id: int) -> list[AuditLogEntry]:
        stmt = (
            select(AuditLogEntry)
            .where(AuditLogEntry.subscription_id == subscription_id)
            .order_by(AuditLogEntry.timestamp, AuditLogEntry.id)
        )
        return list(self.session.execute(stmt).scalars())

    def find_for_window(self, window_id: int) -> list[AuditLogEntry]:
        stmt = (
            select(AuditLogEntry)
            .where(AuditLogEntry.pause_window_id == window_id)
            .order_by(AuditLogEntry.timestamp, AuditLogEntry.id)
        )
        return list(self.session.execute(stmt).scalars())


class IdempotencyRepository:
    """Claims on external side effects, unique per (operation, reference, window)."""

    def __init__(self, session: Session | None = None):
        self.session = session or get_session()

    def find(
        self, operation_type: str, reference_id: str, attempt_window: str
    ) -> IdempotencyRecord | None:
        stmt = select(IdempotencyRecord).where(
            IdempotencyRecord.operation_type == operation_type,
            IdempotencyRecord.reference_id == reference_id,
            IdempotencyRecord.attempt_window == attempt_window,
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def claim(
        self,
        operation_type: str,
        reference_id: str,
        attempt_window: str,
        amount_minor_units: int | None = None,
    ) -> IdempotencyRecord:
        """Return the existing claim or insert and commit a new PENDING one.

        A concurrent insert losing the unique-constraint race re-reads the
        winner's row.
        """
        existing = self.find(operation_type, reference_id, attempt_window)
        if existing is not None:
            return existing

        record = IdempotencyRecord(
            operation_type=operation_type,
            reference_id=reference_id,
            attempt_window=attempt_window,
            status=IdempotencyStatus.PENDING,
            amount_minor_units=amount_minor_units,
        )
        self.session.add(record)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            winner = self.find(operation_type, reference_id, attempt_window)
            if winner is None:
                raise
            return winner
        return record

    def mark_completed(self, record: IdempotencyRecord, result_ref: str | None) -> None:
        """Flag the claim as done; committed with the caller's transaction."""
        record.status = IdempotencyStatus.COMPLETED
        record.result_ref = result_ref
