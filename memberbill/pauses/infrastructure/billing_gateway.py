"""External billing collaborator.

The pause batch only needs three calls from the payment processor:
suspend collection, resume collection and add a negative invoice line.
Successful calls return a ``GatewayResult``; failures raise
``ExternalServiceError``.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from datetime import UTC, date, datetime, time as dt_time
from typing import Any

import stripe

from memberbill.exceptions import ConfigurationError, ExternalServiceError, wrap_exception
from memberbill.pauses.domain.enums import GatewayOutcome
from memberbill.pauses.domain.value_objects import GatewayResult
from memberbill.utils.config import Settings, get_settings
from memberbill.utils.logging import get_logger

logger = get_logger(__name__)


class BillingGateway(ABC):
    """Interface the pause coordinator relies on."""

    @abstractmethod
    async def suspend_collection(
        self, subscription_ref: str, resume_at: date, *, account_ref: str | None = None
    ) -> GatewayResult:
        """Stop collecting payments until ``resume_at``."""

    @abstractmethod
    async def resume_collection(
        self, subscription_ref: str, *, account_ref: str | None = None
    ) -> GatewayResult:
        """Resume collection; an already active subscription is ALREADY_IN_STATE."""

    @abstractmethod
    async def create_negative_invoice_line(
        self,
        customer_ref: str,
        amount_minor_units: int,
        description: str,
        idempotency_key: str,
        *,
        account_ref: str | None = None,
    ) -> GatewayResult:
        """Credit the customer's next invoice by ``amount_minor_units``."""


class StripeBillingGateway(BillingGateway):
    """Stripe implementation of the billing gateway.

    Each business entity bills through its own Stripe account; the secret key
    is looked up from ``Settings.billing_api_keys`` by the subscription's
    ``billing_account_ref``. SDK calls are blocking and run in a worker
    thread. A simple circuit breaker stops hammering Stripe after repeated
    failures.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        circuit_breaker_failures: int = 5,
        circuit_breaker_timeout: int = 300,
    ):
        self.settings = settings or get_settings()
        self.currency = self.settings.currency

        self.circuit_failures = 0
        self.circuit_max_failures = circuit_breaker_failures
        self.circuit_timeout = circuit_breaker_timeout
        self.circuit_last_failure = 0.0

    def _api_key(self, account_ref: str | None) -> str:
        keys = self.settings.billing_api_keys
        if account_ref is None:
            if len(keys) == 1:
                return next(iter(keys.values()))
            raise ConfigurationError(
                "Subscription has no billing account and no single default key is configured",
                setting="billing_api_keys",
            )
        try:
            return keys[account_ref]
        except KeyError as e:
            raise ConfigurationError(
                f"No API key configured for billing account {account_ref}",
                setting="billing_api_keys",
                expected=account_ref,
            ) from e

    def _is_circuit_open(self) -> bool:
        if self.circuit_failures < self.circuit_max_failures:
            return False
        if time.time() - self.circuit_last_failure > self.circuit_timeout:
            self.circuit_failures = 0
            return False
        return True

    async def _call(
        self, operation: str, reference: str, func, *args: Any, **kwargs: Any
    ) -> Any:
        if self._is_circuit_open():
            raise ExternalServiceError(
                "Billing circuit breaker is open",
                operation=operation,
                reference=reference,
            )
        try:
            result = await asyncio.to_thread(func, *args, **kwargs)
        except stripe.StripeError as e:
            self.circuit_failures += 1
            self.circuit_last_failure = time.time()
            logger.warning(
                "billing_call_failed",
                operation=operation,
                reference=reference,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise wrap_exception(
                e,
                f"Billing call {operation} failed: {e.user_message or e}",
                exception_class=ExternalServiceError,
                operation=operation,
                reference=reference,
            ) from e

        self.circuit_failures = 0
        return result

    async def suspend_collection(
        self, subscription_ref: str, resume_at: date, *, account_ref: str | None = None
    ) -> GatewayResult:
        resumes_at = int(datetime.combine(resume_at, dt_time.min, tzinfo=UTC).timestamp())
        subscription = await self._call(
            "suspend_collection",
            subscription_ref,
            stripe.Subscription.modify,
            subscription_ref,
            pause_collection={"behavior": "void", "resumes_at": resumes_at},
            api_key=self._api_key(account_ref),
        )
        logger.info(
            "billing_collection_suspended",
            subscription_ref=subscription_ref,
            resume_at=resume_at.isoformat(),
        )
        return GatewayResult(outcome=GatewayOutcome.SUCCESS, reference=subscription.get("id"))

    async def resume_collection(
        self, subscription_ref: str, *, account_ref: str | None = None
    ) -> GatewayResult:
        api_key = self._api_key(account_ref)
        current = await self._call(
            "retrieve_subscription",
            subscription_ref,
            stripe.Subscription.retrieve,
            subscription_ref,
            api_key=api_key,
        )
        if not current.get("pause_collection"):
            logger.info("billing_collection_already_resumed", subscription_ref=subscription_ref)
            return GatewayResult(
                outcome=GatewayOutcome.ALREADY_IN_STATE, reference=current.get("id")
            )

        subscription = await self._call(
            "resume_collection",
            subscription_ref,
            stripe.Subscription.modify,
            subscription_ref,
            pause_collection="",
            api_key=api_key,
        )
        logger.info("billing_collection_resumed", subscription_ref=subscription_ref)
        return GatewayResult(outcome=GatewayOutcome.SUCCESS, reference=subscription.get("id"))

    async def create_negative_invoice_line(
        self,
        customer_ref: str,
        amount_minor_units: int,
        description: str,
        idempotency_key: str,
        *,
        account_ref: str | None = None,
    ) -> GatewayResult:
        if amount_minor_units <= 0:
            raise ValueError(f"Credit must be positive minor units, got {amount_minor_units}")

        item = await self._call(
            "create_negative_invoice_line",
            customer_ref,
            stripe.InvoiceItem.create,
            customer=customer_ref,
            amount=-amount_minor_units,
            currency=self.currency,
            description=description,
            idempotency_key=idempotency_key,
            api_key=self._api_key(account_ref),
        )
        logger.info(
            "billing_credit_created",
            customer_ref=customer_ref,
            amount_minor_units=amount_minor_units,
            invoice_item=item.get("id"),
        )
        return GatewayResult(outcome=GatewayOutcome.SUCCESS, reference=item.get("id"))
