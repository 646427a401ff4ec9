"""Repositories for entities, payments and routing records."""

from collections.abc import Sequence
from datetime import datetime
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from memberbill.routing.domain.models import RevenueSnapshot, RoutingRecord
from memberbill.storage.database.base import get_session
from memberbill.storage.database.models import (
    REVENUE_STATUSES,
    BusinessEntity,
    EntityStatus,
    Payment,
    PaymentStatus,
    Subscription,
)

ZERO = Decimal("0.00")


def _revenue_timestamp():
    """Payments count at processing time, falling back to creation time."""
    return func.coalesce(Payment.processed_at, Payment.created_at)


class BusinessEntityRepository:
    """Repository for BusinessEntity rows."""

    def __init__(self, session: Session | None = None):
        self.session = session or get_session()

    def save(self, entity: BusinessEntity) -> BusinessEntity:
        self.session.add(entity)
        self.session.commit()
        return entity

    def get(self, entity_id: int) -> BusinessEntity | None:
        return self.session.get(BusinessEntity, entity_id)

    def find_by_code(self, code: str) -> BusinessEntity | None:
        stmt = select(BusinessEntity).where(BusinessEntity.code == code)
        return self.session.execute(stmt).scalar_one_or_none()

    def find_active(self) -> list[BusinessEntity]:
        """Active entities ordered by id."""
        stmt = (
            select(BusinessEntity)
            .where(BusinessEntity.status == EntityStatus.ACTIVE)
            .order_by(BusinessEntity.id)
        )
        return list(self.session.execute(stmt).scalars())


class PaymentRepository:
    """Repository for Payment rows, including the revenue ledger queries.

    Ledger queries are read-only and never flush or commit.
    """

    def __init__(self, session: Session | None = None):
        self.session = session or get_session()

    def save(self, payment: Payment) -> Payment:
        self.session.add(payment)
        self.session.commit()
        return payment

    def get(self, payment_id: int) -> Payment | None:
        return self.session.get(Payment, payment_id)

    def sum_revenue(self, entity_id: int, window_start: datetime, window_end: datetime) -> Decimal:
        """Net revenue for one entity within ``[window_start, window_end)``."""
        ts = _revenue_timestamp()
        stmt = select(func.coalesce(func.sum(Payment.amount), 0)).where(
            Payment.routed_entity_id == entity_id,
            Payment.status.in_(REVENUE_STATUSES),
            ts >= window_start,
            ts < window_end,
        )
        with self.session.no_autoflush:
            total = self.session.execute(stmt).scalar_one()
        return Decimal(str(total)).quantize(ZERO)

    def sum_revenue_by_entity(
        self, window_start: datetime, window_end: datetime
    ) -> dict[int, Decimal]:
        """Net revenue per routed entity within ``[window_start, window_end)``."""
        ts = _revenue_timestamp()
        stmt = (
            select(Payment.routed_entity_id, func.sum(Payment.amount))
            .where(
                Payment.routed_entity_id.is_not(None),
                Payment.status.in_(REVENUE_STATUSES),
                ts >= window_start,
                ts < window_end,
            )
            .group_by(Payment.routed_entity_id)
        )
        with self.session.no_autoflush:
            rows = self.session.execute(stmt).all()
        return {entity_id: Decimal(str(total)).quantize(ZERO) for entity_id, total in rows}

    def count_revenue_payments(
        self, entity_id: int, window_start: datetime, window_end: datetime
    ) -> int:
        ts = _revenue_timestamp()
        stmt = select(func.count(Payment.id)).where(
            Payment.routed_entity_id == entity_id,
            Payment.status.in_(REVENUE_STATUSES),
            ts >= window_start,
            ts < window_end,
        )
        with self.session.no_autoflush:
            return int(self.session.execute(stmt).scalar_one())

    def first_confirmed_for_subscription(self, subscription_id: int) -> Payment | None:
        """Earliest CONFIRMED charge of a subscription."""
        stmt = (
            select(Payment)
            .where(
                Payment.subscription_id == subscription_id,
                Payment.status == PaymentStatus.CONFIRMED,
                Payment.amount > 0,
            )
            .order_by(_revenue_timestamp(), Payment.id)
            .limit(1)
        )
        return self.session.execute(stmt).scalar_one_or_none()


class SubscriptionRepository:
    """Repository for Subscription rows."""

    def __init__(self, session: Session | None = None):
        self.session = session or get_session()

    def save(self, subscription: Subscription) -> Subscription:
        self.session.add(subscription)
        self.session.commit()
        return subscription

    def get(self, subscription_id: int) -> Subscription | None:
        return self.session.get(Subscription, subscription_id)


class RevenueSnapshotRepository:
    """Append-only store for position snapshots."""

    def __init__(self, session: Session | None = None):
        self.session = session or get_session()

    def add_all(self, snapshots: Sequence[RevenueSnapshot]) -> None:
        """Stage snapshots; the caller commits."""
        self.session.add_all(list(snapshots))

    def latest_for_entity(self, entity_id: int) -> RevenueSnapshot | None:
        stmt = (
            select(RevenueSnapshot)
            .where(RevenueSnapshot.entity_id == entity_id)
            .order_by(RevenueSnapshot.calculated_at.desc(), RevenueSnapshot.id.desc())
            .limit(1)
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def count_for_entity(self, entity_id: int) -> int:
        stmt = select(func.count(RevenueSnapshot.id)).where(RevenueSnapshot.entity_id == entity_id)
        return int(self.session.execute(stmt).scalar_one())


class RoutingRecordRepository:
    """Append-only store for routing decisions."""

    def __init__(self, session: Session | None = None):
        self.session = session or get_session()

    def add(self, record: RoutingRecord) -> None:
        """Stage a record; the caller commits."""
        self.session.add(record)

    def find_by_payment(self, payment_id: int) -> list[RoutingRecord]:
        stmt = select(RoutingRecord).where(RoutingRecord.payment_id == payment_id)
        return list(self.session.execute(stmt).scalars())

    def find_by_subscription(self, subscription_id: int) -> list[RoutingRecord]:
        stmt = select(RoutingRecord).where(RoutingRecord.subscription_id == subscription_id)
        return list(self.session.execute(stmt).scalars())
