"""Tests for persisting routing decisions."""

from datetime import UTC, date, datetime
from decimal import Decimal

import pytest

from memberbill.exceptions import BusinessLogicError, RecordNotFoundError, ThresholdExceededError
from memberbill.routing.application.services.ledger_service import RevenueLedgerService
from memberbill.routing.application.services.position_service import RevenuePositionService
from memberbill.routing.application.services.router_service import EntityRouterService
from memberbill.routing.application.services.routing_service import RoutingAssignmentService
from memberbill.routing.domain.enums import RoutingConfidence, RoutingReason
from memberbill.routing.domain.events import EntityRouted
from memberbill.routing.infrastructure.repository import (
    BusinessEntityRepository,
    PaymentRepository,
    RoutingRecordRepository,
)
from memberbill.storage.database.models import PaymentStatus, Subscription, SubscriptionStatus

AS_OF = datetime(2024, 10, 1, tzinfo=UTC)


@pytest.fixture
def assignment_service(db_session, test_settings, event_bus) -> RoutingAssignmentService:
    entities = BusinessEntityRepository(db_session)
    router = EntityRouterService(
        settings=test_settings,
        position_service=RevenuePositionService(
            RevenueLedgerService(PaymentRepository(db_session)),
            entity_repository=entities,
            settings=test_settings,
            event_bus=event_bus,
        ),
        entity_repository=entities,
    )
    return RoutingAssignmentService(db_session, router, event_bus=event_bus)


@pytest.fixture
def unrouted_subscription(db_session) -> Subscription:
    subscription = Subscription(
        user_id="user-2",
        plan_key="premium",
        monthly_price=Decimal("90.00"),
        status=SubscriptionStatus.PENDING_PAYMENT,
        start_date=date(2024, 10, 1),
    )
    db_session.add(subscription)
    db_session.commit()
    return subscription


class TestAssignPayment:
    def test_routes_and_records(
        self, assignment_service, db_session, event_bus, sample_entities, make_payment
    ):
        entity_a, entity_b = sample_entities
        make_payment("40000.00", entity_a)
        pending = make_payment("90.00", status=PaymentStatus.PENDING)
        routed_events = []
        event_bus.subscribe(EntityRouted, routed_events.append)

        decision = assignment_service.assign_payment(pending.id, as_of=AS_OF)

        db_session.refresh(pending)
        assert pending.routed_entity_id == entity_b.id
        assert decision.reason == RoutingReason.MAX_HEADROOM
        records = RoutingRecordRepository(db_session).find_by_payment(pending.id)
        assert len(records) == 1
        assert records[0].selected_entity_id == entity_b.id
        assert records[0].available_entity_ids == [entity_a.id, entity_b.id]
        assert records[0].description.startswith("Maximum VAT headroom")
        assert [e.payment_id for e in routed_events] == [pending.id]

    def test_payment_routed_only_once(self, assignment_service, sample_entities, make_payment):
        pending = make_payment("90.00", status=PaymentStatus.PENDING)
        assignment_service.assign_payment(pending.id, as_of=AS_OF)

        with pytest.raises(BusinessLogicError):
            assignment_service.assign_payment(pending.id, as_of=AS_OF)

    def test_unknown_payment(self, assignment_service):
        with pytest.raises(RecordNotFoundError):
            assignment_service.assign_payment(999)

    def test_failure_leaves_payment_unrouted(
        self, assignment_service, db_session, make_entity, make_payment
    ):
        full = make_entity("FULL", threshold="1000.00")
        make_payment("500.00", full)
        pending = make_payment("90.00", status=PaymentStatus.PENDING)

        with pytest.raises(ThresholdExceededError):
            assignment_service.assign_payment(pending.id, as_of=AS_OF)

        db_session.refresh(pending)
        assert pending.routed_entity_id is None
        assert RoutingRecordRepository(db_session).find_by_payment(pending.id) == []


class TestAssignSubscription:
    def test_preferred_entity_and_billing_account(
        self, assignment_service, db_session, sample_entities, unrouted_subscription
    ):
        _, entity_b = sample_entities

        decision = assignment_service.assign_subscription(unrouted_subscription.id, as_of=AS_OF)

        db_session.refresh(unrouted_subscription)
        assert decision.reason == RoutingReason.PREFERRED_ENTITY
        assert unrouted_subscription.routed_entity_id == entity_b.id
        assert unrouted_subscription.billing_account_ref == "acct_b"

    def test_override(
        self, assignment_service, db_session, sample_entities, unrouted_subscription
    ):
        entity_a, _ = sample_entities

        decision = assignment_service.assign_subscription(
            unrouted_subscription.id,
            override_entity_id=entity_a.id,
            override_reason="family plan",
            as_of=AS_OF,
        )

        assert decision.confidence == RoutingConfidence.FORCED
        record = RoutingRecordRepository(db_session).find_by_subscription(
            unrouted_subscription.id
        )[0]
        assert record.reason == RoutingReason.ADMIN_OVERRIDE
        assert record.description == "Admin override: family plan"

    def test_already_routed(self, assignment_service, sample_subscription):
        with pytest.raises(BusinessLogicError):
            assignment_service.assign_subscription(sample_subscription.id, as_of=AS_OF)
