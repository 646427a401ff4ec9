"""Scheduling and cancelling pause windows.

Windows are validated against the subscription's other open windows so a
member can never have two pauses covering the same day.
"""

import uuid
from datetime import date

from sqlalchemy.orm import Session

from memberbill.exceptions import BusinessLogicError, RecordNotFoundError, ValidationError
from memberbill.pauses.domain.enums import AuditAction, PauseStatus
from memberbill.pauses.domain.models import AuditLogEntry, PauseWindow
from memberbill.pauses.infrastructure.repository import AuditLogRepository, PauseWindowRepository
from memberbill.routing.infrastructure.repository import SubscriptionRepository
from memberbill.utils.config import Settings, get_settings
from memberbill.utils.datetime import utc_now, utc_today
from memberbill.utils.logging import get_logger, log_audit_action

logger = get_logger(__name__)


class PauseSchedulingService:
    """Creates, cancels and queries pause windows for a subscription."""

    def __init__(self, session: Session, settings: Settings | None = None):
        self.session = session
        self.settings = settings or get_settings()
        self.windows = PauseWindowRepository(session)
        self.audit = AuditLogRepository(session)
        self.subscriptions = SubscriptionRepository(session)

    def validate_pause_window(
        self,
        subscription_id: int,
        start_date: date,
        end_date: date,
        today: date | None = None,
    ) -> None:
        """Check a requested ``[start_date, end_date)`` window.

        Raises:
            ValidationError: Start in the past, empty or over-long window, or
                             overlap with another open window
        """
        today = today or utc_today()

        if start_date < today:
            raise ValidationError(
                "Pause cannot start in the past",
                field="start_date",
                value=start_date,
                constraint=f">= {today.isoformat()}",
            )
        if end_date <= start_date:
            raise ValidationError(
                "Pause must end after it starts",
                field="end_date",
                value=end_date,
                constraint="> start_date",
            )

        length = (end_date - start_date).days
        if length > self.settings.max_pause_days:
            raise ValidationError(
                f"Pause of {length} days exceeds the {self.settings.max_pause_days}-day limit",
                field="end_date",
                value=end_date,
                constraint=f"<= {self.settings.max_pause_days} days",
            )

        for window in self.windows.find_for_subscription(subscription_id):
            if window.overlaps(start_date, end_date):
                raise ValidationError(
                    f"Pause overlaps existing window {window.id}",
                    field="start_date",
                    value=start_date,
                    constraint="no overlap with open windows",
                )

    def schedule_pause(
        self,
        subscription_id: int,
        start_date: date,
        end_date: date,
        reason: str | None = None,
        performed_by: str = "SYSTEM",
        today: date | None = None,
    ) -> PauseWindow:
        """Validate and store a new SCHEDULED window with its audit row."""
        subscription = self.subscriptions.get(subscription_id)
        if subscription is None:
            raise RecordNotFoundError(
                "Subscription not found", entity_type="Subscription", entity_id=subscription_id
            )
        if subscription.is_cancelled:
            raise BusinessLogicError(
                "Cancelled subscriptions cannot be paused",
                context={"subscription_id": subscription_id},
            )

        self.validate_pause_window(subscription_id, start_date, end_date, today=today)

        window = PauseWindow(
            subscription_id=subscription_id,
            start_date=start_date,
            end_date=end_date,
            status=PauseStatus.SCHEDULED,
            reason=reason,
        )
        try:
            self.windows.add(window)
            self.session.flush()
            operation_id = f"pause_schedule_{window.id}_{uuid.uuid4().hex[:12]}"
            self.audit.append(
                AuditLogEntry(
                    subscription_id=subscription_id,
                    pause_window_id=window.id,
                    action=AuditAction.PAUSE_SCHEDULED,
                    performed_by=performed_by,
                    reason=reason,
                    operation_id=operation_id,
                    details={
                        "start_date": start_date.isoformat(),
                        "end_date": end_date.isoformat(),
                        "days": window.length_days,
                    },
                )
            )
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        log_audit_action(
            logger, AuditAction.PAUSE_SCHEDULED.value, subscription_id, performed_by, operation_id
        )
        logger.info(
            "pause_scheduled",
            window_id=window.id,
            subscription_id=subscription_id,
            start_date=start_date.isoformat(),
            end_date=end_date.isoformat(),
        )
        return window

    def cancel_pause(
        self, window_id: int, performed_by: str = "SYSTEM", reason: str | None = None
    ) -> PauseWindow:
        """Cancel a SCHEDULED or ACTIVE window.

        Collection for an already ACTIVE window is resumed by the next batch
        only if the window reaches its end; cancelling does not call the
        billing processor.
        """
        window = self.windows.get(window_id)
        if window is None:
            raise RecordNotFoundError(
                "Pause window not found", entity_type="PauseWindow", entity_id=window_id
            )

        previous_status = window.status
        window.cancel(cancelled_at=utc_now())
        operation_id = f"pause_cancel_{window.id}_{uuid.uuid4().hex[:12]}"
        try:
            self.audit.append(
                AuditLogEntry(
                    subscription_id=window.subscription_id,
                    pause_window_id=window.id,
                    action=AuditAction.PAUSE_CANCELLED,
                    performed_by=performed_by,
                    reason=reason,
                    operation_id=operation_id,
                    details={"previous_status": previous_status.value},
                )
            )
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        log_audit_action(
            logger,
            AuditAction.PAUSE_CANCELLED.value,
            window.subscription_id,
            performed_by,
            operation_id,
        )
        return window

    def is_date_paused(self, subscription_id: int, day: date) -> bool:
        """Whether ``day`` falls inside any open window of the subscription."""
        return any(
            window.contains(day)
            for window in self.windows.find_for_subscription(subscription_id)
            if window.status in (PauseStatus.SCHEDULED, PauseStatus.ACTIVE)
        )

    def list_windows(
        self, subscription_id: int, include_cancelled: bool = False
    ) -> list[PauseWindow]:
        return self.windows.find_for_subscription(
            subscription_id, include_cancelled=include_cancelled
        )
