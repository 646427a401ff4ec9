"""
Pytest configuration and global fixtures.

This module provides shared fixtures used across all tests.
"""

from collections.abc import Callable, Generator
from datetime import UTC, date, datetime
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

import memberbill.pauses.domain.models  # noqa: F401
import memberbill.routing.domain.models  # noqa: F401
from memberbill.core.events.base import GlobalEventBus
from memberbill.storage.database.base import Base
from memberbill.storage.database.models import (
    BusinessEntity,
    EntityStatus,
    Payment,
    PaymentStatus,
    Subscription,
    SubscriptionStatus,
)
from memberbill.utils.config import Settings


@pytest.fixture(scope="function")
def db_engine():
    """Create an in-memory SQLite database engine for testing."""
    engine = create_engine("sqlite:///:memory:", echo=False)
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """
    Create a database session for testing.

    Each test gets a fresh session with automatic rollback.
    """
    SessionLocal = sessionmaker(bind=db_engine)
    session = SessionLocal()

    yield session

    session.rollback()
    session.close()


@pytest.fixture
def test_settings() -> Settings:
    """Settings with a small buffer, one plan preference and fast billing retries."""
    return Settings(
        database_url="sqlite:///:memory:",
        safety_buffer_amount=Decimal("1000.00"),
        safety_buffer_percent=Decimal("0"),
        plan_preferred_entities={"premium": ["GYM_B"]},
        billing_call_timeout_seconds=1.0,
        billing_max_retries=0,
        billing_retry_base_delay=0.01,
        billing_api_keys={"acct_a": "sk_test_a", "acct_b": "sk_test_b"},
    )


@pytest.fixture
def event_bus() -> GlobalEventBus:
    """A private event bus so tests never leak handlers into each other."""
    return GlobalEventBus()


@pytest.fixture
def make_entity(db_session: Session) -> Callable[..., BusinessEntity]:
    """Factory for persisted business entities (fiscal year April 2024 - April 2025)."""

    def _make(
        code: str,
        threshold: str = "90000.00",
        status: EntityStatus = EntityStatus.ACTIVE,
        account: str | None = None,
    ) -> BusinessEntity:
        entity = BusinessEntity(
            code=code,
            display_name=f"{code} Ltd",
            vat_threshold=Decimal(threshold),
            vat_year_start=date(2024, 4, 1),
            vat_year_end=date(2025, 4, 1),
            status=status,
            billing_account_ref=account,
        )
        db_session.add(entity)
        db_session.commit()
        return entity

    return _make


@pytest.fixture
def make_payment(db_session: Session) -> Callable[..., Payment]:
    """Factory for persisted payments routed to an entity."""

    def _make(
        amount: str,
        entity: BusinessEntity | None = None,
        processed_at: datetime | None = None,
        status: PaymentStatus = PaymentStatus.CONFIRMED,
        subscription: Subscription | None = None,
    ) -> Payment:
        payment = Payment(
            user_id="user-1",
            amount=Decimal(amount),
            status=status,
            routed_entity_id=entity.id if entity else None,
            subscription_id=subscription.id if subscription else None,
            processed_at=processed_at or datetime(2024, 6, 1, 12, 0, tzinfo=UTC),
        )
        db_session.add(payment)
        db_session.commit()
        return payment

    return _make


@pytest.fixture
def sample_entities(make_entity) -> tuple[BusinessEntity, BusinessEntity]:
    """Two active entities with separate billing accounts."""
    return make_entity("GYM_A", account="acct_a"), make_entity("GYM_B", account="acct_b")


@pytest.fixture
def sample_subscription(db_session: Session, sample_entities) -> Subscription:
    """An active monthly subscription routed to GYM_A, billed from the 1st."""
    entity_a, _ = sample_entities
    subscription = Subscription(
        user_id="user-1",
        plan_key="standard",
        monthly_price=Decimal("100.00"),
        routed_entity_id=entity_a.id,
        billing_account_ref=entity_a.billing_account_ref,
        external_subscription_ref="sub_123",
        external_customer_ref="cus_123",
        status=SubscriptionStatus.ACTIVE,
        start_date=date(2024, 1, 1),
        first_billing_date=date(2024, 1, 1),
        next_billing_date=date(2024, 2, 1),
    )
    db_session.add(subscription)
    db_session.commit()
    return subscription
