"""Persists routing decisions on payments and subscriptions.

The router itself never writes. This service asks it for a decision on
fresh positions and then records ``routed_entity_id`` together with a
``RoutingRecord`` in one commit.
"""

import time
from datetime import datetime

from sqlalchemy.orm import Session

from memberbill.core.events.base import GlobalEventBus, get_global_event_bus
from memberbill.exceptions import BusinessLogicError, RecordNotFoundError
from memberbill.routing.application.services.router_service import EntityRouterService
from memberbill.routing.domain.events import EntityRouted
from memberbill.routing.domain.models import RoutingRecord
from memberbill.routing.domain.value_objects import RoutingCandidate, RoutingDecision
from memberbill.routing.infrastructure.repository import (
    BusinessEntityRepository,
    PaymentRepository,
    RoutingRecordRepository,
    SubscriptionRepository,
)
from memberbill.storage.database.models import Payment, Subscription
from memberbill.utils.logging import get_logger

logger = get_logger(__name__)


class RoutingAssignmentService:
    """Routes stored payments and subscriptions and records the outcome."""

    def __init__(
        self,
        session: Session,
        router: EntityRouterService,
        event_bus: GlobalEventBus | None = None,
    ):
        self.session = session
        self.router = router
        self.entities = BusinessEntityRepository(session)
        self.payments = PaymentRepository(session)
        self.subscriptions = SubscriptionRepository(session)
        self.records = RoutingRecordRepository(session)
        self.event_bus = event_bus or get_global_event_bus()

    def assign_payment(
        self,
        payment_id: int,
        plan_key: str | None = None,
        *,
        override_entity_id: int | None = None,
        override_reason: str | None = None,
        as_of: datetime | None = None,
    ) -> RoutingDecision:
        """Route a stored payment. A payment is routed at most once."""
        payment = self.payments.get(payment_id)
        if payment is None:
            raise RecordNotFoundError(
                "Payment not found", entity_type="Payment", entity_id=payment_id
            )
        if payment.routed_entity_id is not None:
            raise BusinessLogicError(
                "Payment is already routed",
                context={"payment_id": payment_id, "routed_entity_id": payment.routed_entity_id},
            )

        if plan_key is None and payment.subscription is not None:
            plan_key = payment.subscription.plan_key

        candidate = RoutingCandidate(amount=payment.amount, plan_key=plan_key)
        decision, elapsed_ms = self._decide(candidate, override_entity_id, override_reason, as_of)

        payment.assign_entity(decision.selected_entity_id)
        self._record(decision, candidate, elapsed_ms, payment=payment)
        return decision

    def assign_subscription(
        self,
        subscription_id: int,
        *,
        override_entity_id: int | None = None,
        override_reason: str | None = None,
        as_of: datetime | None = None,
    ) -> RoutingDecision:
        """Route a subscription on its monthly price and carry the billing account."""
        subscription = self.subscriptions.get(subscription_id)
        if subscription is None:
            raise RecordNotFoundError(
                "Subscription not found", entity_type="Subscription", entity_id=subscription_id
            )
        if subscription.routed_entity_id is not None:
            raise BusinessLogicError(
                "Subscription is already routed",
                context={
                    "subscription_id": subscription_id,
                    "routed_entity_id": subscription.routed_entity_id,
                },
            )

        candidate = RoutingCandidate(
            amount=subscription.monthly_price, plan_key=subscription.plan_key
        )
        decision, elapsed_ms = self._decide(candidate, override_entity_id, override_reason, as_of)

        entity = self.entities.get(decision.selected_entity_id)
        if entity is None:
            raise RecordNotFoundError(
                "Routed entity disappeared",
                entity_type="BusinessEntity",
                entity_id=decision.selected_entity_id,
            )
        subscription.assign_entity(entity)
        self._record(decision, candidate, elapsed_ms, subscription=subscription)
        return decision

    def _decide(
        self,
        candidate: RoutingCandidate,
        override_entity_id: int | None,
        override_reason: str | None,
        as_of: datetime | None,
    ) -> tuple[RoutingDecision, int]:
        started = time.perf_counter()
        decision = self.router.route_payment(
            candidate,
            override_entity_id=override_entity_id,
            override_reason=override_reason,
            as_of=as_of,
        )
        return decision, int((time.perf_counter() - started) * 1000)

    def _record(
        self,
        decision: RoutingDecision,
        candidate: RoutingCandidate,
        elapsed_ms: int,
        *,
        payment: Payment | None = None,
        subscription: Subscription | None = None,
    ) -> None:
        self.records.add(
            RoutingRecord(
                selected_entity_id=decision.selected_entity_id,
                payment_id=payment.id if payment else None,
                subscription_id=subscription.id if subscription else None,
                amount=candidate.amount,
                plan_key=candidate.plan_key,
                available_entity_ids=list(decision.available_entity_ids),
                reason=decision.reason,
                method=decision.method,
                confidence=decision.confidence,
                description=decision.description,
                decision_time_ms=elapsed_ms,
            )
        )
        try:
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        logger.info(
            "routing_recorded",
            entity_id=decision.selected_entity_id,
            payment_id=payment.id if payment else None,
            subscription_id=subscription.id if subscription else None,
            decision_time_ms=elapsed_ms,
        )
        self.event_bus.publish(
            EntityRouted(
                entity_id=decision.selected_entity_id,
                amount=candidate.amount,
                reason=decision.reason.value,
                payment_id=payment.id if payment else None,
                subscription_id=subscription.id if subscription else None,
            )
        )
