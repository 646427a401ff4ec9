"""Daily pause batch.

The batch has two phases run in order on one session:

1. Start: suspend collection for SCHEDULED windows whose start date has
   arrived and move them to ACTIVE.
2. End: resume collection for windows whose end date has passed, settle the
   prorated credit on the member's next invoice and move them to
   CREDIT_APPLIED.

Each window is its own unit of work. External calls happen before any local
mutation, so a failure rolls back cleanly and leaves the window in its prior
state with ``last_error`` set; the next run retries it. Credits are guarded
twice: by an ``IdempotencyRecord`` claimed before the billing call, and by
the conditional UPDATE that only settles a window whose
``credit_applied_at`` is still NULL.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import date, timedelta
from decimal import Decimal

from sqlalchemy.orm import Session

from memberbill.core.events.base import GlobalEventBus, get_global_event_bus
from memberbill.exceptions import (
    BusinessLogicError,
    RecordNotFoundError,
    TimeoutError,
)
from memberbill.pauses.application.services.proration_service import ProrationService
from memberbill.pauses.domain.enums import AuditAction, BatchPhase, IdempotencyStatus, PauseStatus
from memberbill.pauses.domain.events import PauseBatchCompleted, PauseCreditApplied, PauseStarted
from memberbill.pauses.domain.models import AuditLogEntry, IdempotencyRecord, PauseWindow
from memberbill.pauses.domain.value_objects import BatchSummary, GatewayResult, ProratedCredit
from memberbill.pauses.infrastructure.billing_gateway import BillingGateway
from memberbill.pauses.infrastructure.repository import (
    AuditLogRepository,
    IdempotencyRepository,
    PauseWindowRepository,
)
from memberbill.routing.infrastructure.repository import PaymentRepository
from memberbill.storage.database.models import Subscription, SubscriptionStatus
from memberbill.utils.config import Settings, get_settings
from memberbill.utils.datetime import utc_now, utc_today
from memberbill.utils.logging import (
    clear_correlation_id,
    get_logger,
    log_audit_action,
    set_correlation_id,
)
from memberbill.utils.retry import RetryConfig, retry_async

logger = get_logger(__name__)

CREDIT_OPERATION = "pause_credit"
CREDIT_CLAIM_WINDOW = "settlement"


class PauseLifecycleService:
    """Coordinates pause windows with the external billing processor."""

    def __init__(
        self,
        session: Session,
        gateway: BillingGateway,
        proration: ProrationService | None = None,
        settings: Settings | None = None,
        retry_config: RetryConfig | None = None,
        event_bus: GlobalEventBus | None = None,
    ):
        self.session = session
        self.gateway = gateway
        self.settings = settings or get_settings()
        self.proration = proration or ProrationService()
        self.retry_config = retry_config or RetryConfig.from_settings(self.settings)
        self.event_bus = event_bus or get_global_event_bus()

        self.windows = PauseWindowRepository(session)
        self.audit = AuditLogRepository(session)
        self.idempotency = IdempotencyRepository(session)
        self.payments = PaymentRepository(session)

    async def run_daily_batch(self, as_of: date | None = None) -> BatchSummary:
        """Run the start phase and then the end phase for ``as_of``."""
        today = as_of or utc_today()
        correlation_id = set_correlation_id()
        summary = BatchSummary(as_of=today)
        logger.info("pause_batch_started", as_of=today.isoformat(), correlation_id=correlation_id)

        try:
            await self._start_phase(today, summary)
            await self._end_phase(today, summary)

            logger.info("pause_batch_completed", **summary.to_dict())
            await self.event_bus.publish_async(
                PauseBatchCompleted(
                    as_of=today,
                    started=summary.started,
                    ended=summary.ended,
                    credits_applied=summary.credits_applied,
                    failed=summary.failed,
                    skipped=summary.skipped,
                    errors=[f"{e.window_id}:{e.phase.value}:{e.message}" for e in summary.errors],
                )
            )
        finally:
            clear_correlation_id()

        return summary

    async def _start_phase(self, today: date, summary: BatchSummary) -> None:
        for window in self.windows.find_due_to_start(today):
            window_id = window.id
            if self._should_skip(window):
                summary.skipped += 1
                continue
            try:
                await self.start_window(window)
                summary.started += 1
            except Exception as e:
                self._handle_failure(window_id, BatchPhase.START, e, summary)

    async def _end_phase(self, today: date, summary: BatchSummary) -> None:
        for window in self.windows.find_due_to_end(today):
            window_id = window.id
            if self._should_skip(window):
                summary.skipped += 1
                continue
            try:
                credit = await self.end_window(window)
                summary.ended += 1
                if not credit.is_zero:
                    summary.credits_applied += 1
                    summary.total_credit += credit.total_credit
            except Exception as e:
                self._handle_failure(window_id, BatchPhase.END, e, summary)

    @staticmethod
    def _should_skip(window: PauseWindow) -> bool:
        subscription = window.subscription
        if subscription.is_cancelled or not subscription.external_subscription_ref:
            logger.info(
                "pause_window_skipped",
                window_id=window.id,
                subscription_id=subscription.id,
                subscription_status=subscription.status.value,
                has_external_ref=bool(subscription.external_subscription_ref),
            )
            return True
        return False

    async def start_window(self, window: PauseWindow) -> None:
        """Suspend collection and move a SCHEDULED window to ACTIVE."""
        window.ensure_can_start()
        subscription = window.subscription
        window_id = window.id

        resume_at = window.end_date + timedelta(days=1)
        await self._gateway_call(
            "suspend_collection",
            lambda: self.gateway.suspend_collection(
                subscription.external_subscription_ref,
                resume_at,
                account_ref=subscription.billing_account_ref,
            ),
        )

        now = utc_now()
        operation_id = f"pause_start_{window_id}_{now.strftime('%Y%m%dT%H%M%S%f')}"
        try:
            subscription.status = SubscriptionStatus.PAUSED
            self.windows.guarded_transition(
                window, (PauseStatus.SCHEDULED,), status=PauseStatus.ACTIVE, last_error=None
            )
            self.audit.append(
                AuditLogEntry(
                    subscription_id=subscription.id,
                    pause_window_id=window_id,
                    action=AuditAction.PAUSE_STARTED,
                    operation_id=operation_id,
                    details={"resume_at": resume_at.isoformat()},
                    timestamp=now,
                )
            )
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        log_audit_action(
            logger, AuditAction.PAUSE_STARTED.value, subscription.id, "SYSTEM", operation_id
        )
        self.event_bus.publish(
            PauseStarted(
                window_id=window_id,
                subscription_id=subscription.id,
                start_date=window.start_date,
                end_date=window.end_date,
            )
        )

    async def end_window(self, window: PauseWindow) -> ProratedCredit:
        """Resume collection, settle the credit and close the window.

        Raises:
            AlreadyAppliedError: The window was already settled
        """
        window.ensure_can_credit()
        subscription = window.subscription
        window_id = window.id

        credit = self.calculate_window_credit(window)
        claim = None
        if not credit.is_zero:
            if not subscription.external_customer_ref:
                raise BusinessLogicError(
                    "Subscription has no billing customer to credit",
                    context={"subscription_id": subscription.id, "window_id": window_id},
                )
            claim = self.idempotency.claim(
                CREDIT_OPERATION,
                str(window_id),
                CREDIT_CLAIM_WINDOW,
                amount_minor_units=credit.total_credit_minor_units,
            )
            if claim.amount_minor_units != credit.total_credit_minor_units:
                raise BusinessLogicError(
                    "Pause credit changed since it was claimed; settle manually",
                    context={
                        "window_id": window_id,
                        "claimed_minor_units": claim.amount_minor_units,
                        "computed_minor_units": credit.total_credit_minor_units,
                    },
                )

        resumed = await self._gateway_call(
            "resume_collection",
            lambda: self.gateway.resume_collection(
                subscription.external_subscription_ref,
                account_ref=subscription.billing_account_ref,
            ),
        )
        if resumed.already_in_state:
            logger.info("pause_collection_already_resumed", window_id=window_id)

        external_ref = None
        if claim is not None:
            external_ref = await self._apply_external_credit(window, subscription, credit, claim)

        now = utc_now()
        operation_id = f"pause_end_{window_id}_{now.strftime('%Y%m%dT%H%M%S%f')}"
        try:
            if subscription.status == SubscriptionStatus.PAUSED:
                subscription.status = SubscriptionStatus.ACTIVE
            self.windows.guarded_transition(
                window,
                (PauseStatus.SCHEDULED, PauseStatus.ACTIVE),
                status=PauseStatus.CREDIT_APPLIED,
                paused_days=credit.total_days,
                credit_amount=credit.total_credit,
                credit_applied_at=now,
                external_credit_ref=external_ref,
                last_error=None,
            )
            self.audit.append(
                AuditLogEntry(
                    subscription_id=subscription.id,
                    pause_window_id=window_id,
                    action=AuditAction.PAUSE_CREDIT_APPLIED,
                    operation_id=operation_id,
                    details={
                        **credit.to_dict(),
                        "external_credit_ref": external_ref,
                        "collection_already_resumed": resumed.already_in_state,
                    },
                    timestamp=now,
                )
            )
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        log_audit_action(
            logger, AuditAction.PAUSE_CREDIT_APPLIED.value, subscription.id, "SYSTEM", operation_id
        )
        logger.info(
            "pause_credit_applied",
            window_id=window_id,
            subscription_id=subscription.id,
            paused_days=credit.total_days,
            credit_amount=str(credit.total_credit),
        )
        self.event_bus.publish(
            PauseCreditApplied(
                window_id=window_id,
                subscription_id=subscription.id,
                paused_days=credit.total_days,
                credit_amount=credit.total_credit,
                external_credit_ref=external_ref,
            )
        )
        return credit

    async def apply_credit_for_window(self, window_id: int) -> ProratedCredit:
        """Settle one window outside the batch, e.g. from the CLI."""
        window = self.windows.get(window_id)
        if window is None:
            raise RecordNotFoundError(
                "Pause window not found", entity_type="PauseWindow", entity_id=window_id
            )
        return await self.end_window(window)

    def calculate_window_credit(self, window: PauseWindow) -> ProratedCredit:
        """Credit owed for ``window`` given the subscription's billing history."""
        subscription = window.subscription
        first_billing_date = subscription.billing_anchor

        prorated_amount: Decimal | None = None
        first_payment = self.payments.first_confirmed_for_subscription(subscription.id)
        if first_payment is not None:
            paid_at = first_payment.processed_at or first_payment.created_at
            if paid_at.date() < first_billing_date:
                prorated_amount = first_payment.amount

        return self.proration.calculate_prorated_credit(
            pause_start=window.start_date,
            pause_end=window.end_date,
            subscription_start=subscription.start_date,
            first_billing_date=first_billing_date,
            prorated_amount=prorated_amount,
            monthly_price=subscription.monthly_price,
        )

    async def _apply_external_credit(
        self,
        window: PauseWindow,
        subscription: Subscription,
        credit: ProratedCredit,
        claim: IdempotencyRecord,
    ) -> str | None:
        if claim.status == IdempotencyStatus.COMPLETED:
            logger.info(
                "pause_credit_reused",
                window_id=window.id,
                external_credit_ref=claim.result_ref,
            )
            return claim.result_ref

        minor_units = credit.total_credit_minor_units
        result = await self._gateway_call(
            "create_negative_invoice_line",
            lambda: self.gateway.create_negative_invoice_line(
                subscription.external_customer_ref,
                minor_units,
                credit.description(self.proration.currency_symbol),
                idempotency_key=f"{CREDIT_OPERATION}_{window.id}_{minor_units}",
                account_ref=subscription.billing_account_ref,
            ),
        )
        # Committed on its own so a failed settlement later reuses the credit
        self.idempotency.mark_completed(claim, result.reference)
        self.session.commit()
        return result.reference

    async def _gateway_call(
        self, operation: str, factory: Callable[[], Awaitable[GatewayResult]]
    ) -> GatewayResult:
        timeout = self.settings.billing_call_timeout_seconds

        async def attempt() -> GatewayResult:
            try:
                return await asyncio.wait_for(factory(), timeout=timeout)
            except asyncio.TimeoutError as e:
                raise TimeoutError(
                    f"Billing call {operation} timed out after {timeout}s",
                    operation=operation,
                    original_error=e,
                ) from e

        return await retry_async(attempt, config=self.retry_config, operation=operation)

    def _handle_failure(
        self, window_id: int, phase: BatchPhase, error: Exception, summary: BatchSummary
    ) -> None:
        self.session.rollback()
        logger.error(
            "pause_window_failed",
            window_id=window_id,
            phase=phase.value,
            error=str(error),
            error_type=type(error).__name__,
        )
        summary.record_failure(window_id, phase, error)

        try:
            window = self.windows.get(window_id)
            if window is not None:
                window.last_error = f"{phase.value}: {type(error).__name__}: {error}"[:2000]
                self.session.commit()
        except Exception as e:
            self.session.rollback()
            logger.error("pause_last_error_not_saved", window_id=window_id, error=str(e))
