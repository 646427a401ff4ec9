"""Shared fixtures for pause tests."""

import asyncio
from datetime import date
from decimal import Decimal
from typing import Any

import pytest

from memberbill.exceptions import ExternalServiceError
from memberbill.pauses.domain.enums import GatewayOutcome, PauseStatus
from memberbill.pauses.domain.models import PauseWindow
from memberbill.pauses.domain.value_objects import GatewayResult
from memberbill.pauses.infrastructure.billing_gateway import BillingGateway
from memberbill.storage.database.models import Subscription, SubscriptionStatus


class MockBillingGateway(BillingGateway):
    """In-memory billing processor recording every call.

    ``fail_on`` maps an operation name to the exception raised for it;
    ``delay`` makes every call sleep, to exercise timeouts.
    """

    def __init__(self):
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.paused: set[str] = set()
        self.credits: dict[str, int] = {}
        self.fail_on: dict[str, Exception] = {}
        self.delay: float = 0.0

    async def _record(self, operation: str, **kwargs: Any) -> None:
        self.calls.append((operation, kwargs))
        if self.delay:
            await asyncio.sleep(self.delay)
        if operation in self.fail_on:
            raise self.fail_on[operation]

    def count(self, operation: str) -> int:
        return sum(1 for name, _ in self.calls if name == operation)

    async def suspend_collection(self, subscription_ref, resume_at, *, account_ref=None):
        await self._record(
            "suspend_collection",
            subscription_ref=subscription_ref,
            resume_at=resume_at,
            account_ref=account_ref,
        )
        self.paused.add(subscription_ref)
        return GatewayResult(outcome=GatewayOutcome.SUCCESS, reference=subscription_ref)

    async def resume_collection(self, subscription_ref, *, account_ref=None):
        await self._record(
            "resume_collection", subscription_ref=subscription_ref, account_ref=account_ref
        )
        if subscription_ref not in self.paused:
            return GatewayResult(
                outcome=GatewayOutcome.ALREADY_IN_STATE, reference=subscription_ref
            )
        self.paused.discard(subscription_ref)
        return GatewayResult(outcome=GatewayOutcome.SUCCESS, reference=subscription_ref)

    async def create_negative_invoice_line(
        self, customer_ref, amount_minor_units, description, idempotency_key, *, account_ref=None
    ):
        await self._record(
            "create_negative_invoice_line",
            customer_ref=customer_ref,
            amount_minor_units=amount_minor_units,
            description=description,
            idempotency_key=idempotency_key,
            account_ref=account_ref,
        )
        self.credits[idempotency_key] = amount_minor_units
        return GatewayResult(outcome=GatewayOutcome.SUCCESS, reference=f"ii_{len(self.credits)}")


@pytest.fixture
def mock_gateway() -> MockBillingGateway:
    return MockBillingGateway()


@pytest.fixture
def gateway_error() -> ExternalServiceError:
    return ExternalServiceError("card processor unavailable", operation="test")


@pytest.fixture
def make_window(db_session):
    """Factory for persisted pause windows."""

    def _make(
        subscription: Subscription,
        start: date,
        end: date,
        status: PauseStatus = PauseStatus.SCHEDULED,
    ) -> PauseWindow:
        window = PauseWindow(
            subscription_id=subscription.id,
            start_date=start,
            end_date=end,
            status=status,
        )
        db_session.add(window)
        db_session.commit()
        return window

    return _make


@pytest.fixture
def prorated_subscription(db_session, sample_entities) -> Subscription:
    """Member who joined mid-January 2023 and paid a prorated first charge."""
    entity_a, _ = sample_entities
    subscription = Subscription(
        user_id="user-3",
        plan_key="standard",
        monthly_price=Decimal("90.00"),
        routed_entity_id=entity_a.id,
        billing_account_ref="acct_a",
        external_subscription_ref="sub_prorated",
        external_customer_ref="cus_prorated",
        status=SubscriptionStatus.ACTIVE,
        start_date=date(2023, 1, 15),
        first_billing_date=date(2023, 2, 1),
        next_billing_date=date(2023, 2, 1),
    )
    db_session.add(subscription)
    db_session.commit()
    return subscription


@pytest.fixture
def make_subscription(db_session, sample_entities):
    """Factory for extra monthly subscriptions routed to GYM_A."""
    entity_a, _ = sample_entities

    def _make(
        ref: str,
        customer_ref: str | None = "cus_extra",
        monthly_price: str = "100.00",
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
    ) -> Subscription:
        subscription = Subscription(
            user_id=f"user-{ref}",
            plan_key="standard",
            monthly_price=Decimal(monthly_price),
            routed_entity_id=entity_a.id,
            billing_account_ref="acct_a",
            external_subscription_ref=ref,
            external_customer_ref=customer_ref,
            status=status,
            start_date=date(2024, 1, 1),
            first_billing_date=date(2024, 1, 1),
            next_billing_date=date(2024, 2, 1),
        )
        db_session.add(subscription)
        db_session.commit()
        return subscription

    return _make
