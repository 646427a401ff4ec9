"""SQLAlchemy models shared by the routing and pause contexts."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum as PyEnum

from sqlalchemy import Boolean, Date, DateTime, Enum, ForeignKey, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ...exceptions import BusinessLogicError
from ...utils.datetime import add_months
from .base import Base


class EntityStatus(PyEnum):
    """Business entity status."""

    ACTIVE = "active"  # Eligible for routing
    INACTIVE = "inactive"  # Kept for history, never routed to


class PaymentStatus(PyEnum):
    """Payment status.

    REFUNDED and CREDITED rows carry negative amounts and are netted into
    revenue; PENDING, FAILED and VOIDED never count.
    """

    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    REFUNDED = "refunded"
    CREDITED = "credited"
    VOIDED = "voided"


class SubscriptionStatus(PyEnum):
    """Subscription status."""

    PENDING_PAYMENT = "pending_payment"
    ACTIVE = "active"
    PAUSED = "paused"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"


# Statuses whose amounts make up an entity's revenue
REVENUE_STATUSES = (PaymentStatus.CONFIRMED, PaymentStatus.REFUNDED, PaymentStatus.CREDITED)


class BusinessEntity(Base):
    """Legal entity that revenue can be attributed to."""

    __tablename__ = "business_entities"

    code: Mapped[str] = mapped_column(String(20), unique=True, nullable=False, index=True)
    display_name: Mapped[str] = mapped_column(String(200), nullable=False)

    # Annual VAT registration threshold and the fiscal window it applies to.
    # vat_year_end is exclusive (the first day of the next fiscal year).
    vat_threshold: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    vat_year_start: Mapped[date | None] = mapped_column(Date)
    vat_year_end: Mapped[date | None] = mapped_column(Date)

    # Point-in-time cache, never authoritative over the ledger
    current_revenue: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0.00")
    )

    status: Mapped[EntityStatus] = mapped_column(
        Enum(EntityStatus), nullable=False, default=EntityStatus.ACTIVE
    )
    billing_account_ref: Mapped[str | None] = mapped_column(String(100))

    payments: Mapped[list[Payment]] = relationship(back_populates="routed_entity")

    def __repr__(self) -> str:
        return f"<BusinessEntity(id={self.id}, code='{self.code}', status={self.status.value})>"


class Subscription(Base):
    """Member subscription, routed to exactly one entity at signup."""

    __tablename__ = "subscriptions"

    user_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    plan_key: Mapped[str] = mapped_column(String(50), nullable=False)
    monthly_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    routed_entity_id: Mapped[int | None] = mapped_column(
        ForeignKey("business_entities.id"), index=True
    )
    # Resolved from the entity at routing time and carried from then on
    billing_account_ref: Mapped[str | None] = mapped_column(String(100))

    external_subscription_ref: Mapped[str | None] = mapped_column(String(100), index=True)
    external_customer_ref: Mapped[str | None] = mapped_column(String(100))

    status: Mapped[SubscriptionStatus] = mapped_column(
        Enum(SubscriptionStatus), nullable=False, default=SubscriptionStatus.PENDING_PAYMENT
    )
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    # Start of the first full-price period; later than start_date when the
    # first charge covered a prorated partial month
    first_billing_date: Mapped[date | None] = mapped_column(Date)
    current_period_start: Mapped[date | None] = mapped_column(Date)
    current_period_end: Mapped[date | None] = mapped_column(Date)
    next_billing_date: Mapped[date | None] = mapped_column(Date)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    routed_entity: Mapped[BusinessEntity | None] = relationship()
    payments: Mapped[list[Payment]] = relationship(back_populates="subscription")

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, plan='{self.plan_key}', "
            f"status={self.status.value}, entity={self.routed_entity_id})>"
        )

    def assign_entity(self, entity: BusinessEntity) -> None:
        """Attribute this subscription to ``entity``. Allowed exactly once."""
        if self.routed_entity_id is not None:
            raise BusinessLogicError(
                "Subscription is already routed",
                context={"subscription_id": self.id, "routed_entity_id": self.routed_entity_id},
            )
        self.routed_entity_id = entity.id
        self.billing_account_ref = entity.billing_account_ref

    @property
    def billing_anchor(self) -> date:
        """First day of the first full-price period.

        Falls back to the 1st of the month after ``start_date`` (or ``start_date``
        itself when that is already the 1st) when no explicit date was stored.
        """
        if self.first_billing_date is not None:
            return self.first_billing_date
        if self.start_date.day == 1:
            return self.start_date
        return add_months(self.start_date.replace(day=1), 1)

    @property
    def is_cancelled(self) -> bool:
        return self.status == SubscriptionStatus.CANCELLED


class Payment(Base):
    """A charge, refund or credit recorded against a member."""

    __tablename__ = "payments"

    user_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    subscription_id: Mapped[int | None] = mapped_column(
        ForeignKey("subscriptions.id"), index=True
    )

    # Positive for charges, negative for refunds and credits
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING, index=True
    )
    description: Mapped[str | None] = mapped_column(Text)

    routed_entity_id: Mapped[int | None] = mapped_column(
        ForeignKey("business_entities.id"), index=True
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    routed_entity: Mapped[BusinessEntity | None] = relationship(back_populates="payments")
    subscription: Mapped[Subscription | None] = relationship(back_populates="payments")

    def __repr__(self) -> str:
        return (
            f"<Payment(id={self.id}, amount={self.amount}, "
            f"status={self.status.value}, entity={self.routed_entity_id})>"
        )

    def assign_entity(self, entity_id: int) -> None:
        """Set the owning entity. The attribution is immutable once set."""
        if self.routed_entity_id is not None:
            raise BusinessLogicError(
                "Payment is already routed",
                context={"payment_id": self.id, "routed_entity_id": self.routed_entity_id},
            )
        self.routed_entity_id = entity_id
