"""Tests for pause window, audit and idempotency repositories."""

from datetime import UTC, date, datetime

import pytest

from memberbill.exceptions import StaleStateError
from memberbill.pauses.domain.enums import AuditAction, IdempotencyStatus, PauseStatus
from memberbill.pauses.domain.models import AuditLogEntry
from memberbill.pauses.infrastructure.repository import (
    AuditLogRepository,
    IdempotencyRepository,
    PauseWindowRepository,
)


@pytest.fixture
def windows(db_session) -> PauseWindowRepository:
    return PauseWindowRepository(db_session)


class TestDueQueries:
    def test_due_to_start(self, windows, sample_subscription, make_window):
        due = make_window(sample_subscription, date(2024, 3, 10), date(2024, 3, 20))
        make_window(sample_subscription, date(2024, 3, 11), date(2024, 3, 12))
        make_window(
            sample_subscription,
            date(2024, 3, 1),
            date(2024, 3, 15),
            status=PauseStatus.ACTIVE,
        )

        assert windows.find_due_to_start(date(2024, 3, 10)) == [due]

    def test_window_already_over_is_not_started(self, windows, sample_subscription, make_window):
        make_window(sample_subscription, date(2024, 3, 10), date(2024, 3, 20))

        assert windows.find_due_to_start(date(2024, 3, 20)) == []

    def test_due_to_end(self, windows, sample_subscription, make_window):
        active = make_window(
            sample_subscription, date(2024, 3, 1), date(2024, 3, 10), status=PauseStatus.ACTIVE
        )
        overdue = make_window(sample_subscription, date(2024, 3, 5), date(2024, 3, 12))
        make_window(
            sample_subscription,
            date(2024, 2, 1),
            date(2024, 2, 5),
            status=PauseStatus.CANCELLED,
        )
        make_window(sample_subscription, date(2024, 3, 10), date(2024, 3, 20))

        assert windows.find_due_to_end(date(2024, 3, 12)) == [active, overdue]


class TestGuardedTransition:
    def test_applies_when_state_matches(
        self, windows, sample_subscription, make_window, db_session
    ):
        window = make_window(sample_subscription, date(2024, 3, 10), date(2024, 3, 20))

        windows.guarded_transition(window, (PauseStatus.SCHEDULED,), status=PauseStatus.ACTIVE)
        db_session.commit()

        assert window.status == PauseStatus.ACTIVE

    def test_stale_state_rejected(self, windows, sample_subscription, make_window):
        window = make_window(
            sample_subscription, date(2024, 3, 10), date(2024, 3, 20), status=PauseStatus.ACTIVE
        )

        with pytest.raises(StaleStateError):
            windows.guarded_transition(
                window, (PauseStatus.SCHEDULED,), status=PauseStatus.ACTIVE
            )

    def test_credited_window_never_updated(
        self, windows, sample_subscription, make_window, db_session
    ):
        window = make_window(
            sample_subscription, date(2024, 3, 10), date(2024, 3, 20), status=PauseStatus.ACTIVE
        )
        window.credit_applied_at = datetime(2024, 3, 20, tzinfo=UTC)
        db_session.commit()

        with pytest.raises(StaleStateError):
            windows.guarded_transition(
                window, (PauseStatus.ACTIVE,), status=PauseStatus.CREDIT_APPLIED
            )


class TestIdempotencyRepository:
    def test_claim_is_reused(self, db_session):
        repo = IdempotencyRepository(db_session)

        first = repo.claim("pause_credit", "7", "3226")
        second = repo.claim("pause_credit", "7", "3226")

        assert first.id == second.id
        assert first.status == IdempotencyStatus.PENDING

    def test_different_attempt_window_is_a_new_claim(self, db_session):
        repo = IdempotencyRepository(db_session)

        first = repo.claim("pause_credit", "7", "3226")
        other = repo.claim("pause_credit", "7", "3300")

        assert first.id != other.id

    def test_claim_keeps_first_amount(self, db_session):
        repo = IdempotencyRepository(db_session)

        first = repo.claim("pause_credit", "7", "settlement", amount_minor_units=3226)
        again = repo.claim("pause_credit", "7", "settlement", amount_minor_units=3300)

        assert again.id == first.id
        assert again.amount_minor_units == 3226

    def test_mark_completed(self, db_session):
        repo = IdempotencyRepository(db_session)
        record = repo.claim("pause_credit", "7", "3226")

        repo.mark_completed(record, "ii_1")
        db_session.commit()

        stored = repo.find("pause_credit", "7", "3226")
        assert stored.status == IdempotencyStatus.COMPLETED
        assert stored.result_ref == "ii_1"


def test_audit_log_ordering(db_session, sample_subscription, make_window):
    window = make_window(sample_subscription, date(2024, 3, 10), date(2024, 3, 20))
    audit = AuditLogRepository(db_session)
    for i, action in enumerate((AuditAction.PAUSE_SCHEDULED, AuditAction.PAUSE_STARTED)):
        audit.append(
            AuditLogEntry(
                subscription_id=sample_subscription.id,
                pause_window_id=window.id,
                action=action,
                operation_id=f"op_{i}",
                timestamp=datetime(2024, 3, 1 + i, tzinfo=UTC),
            )
        )
    db_session.commit()

    assert [e.action for e in audit.find_for_window(window.id)] == [
        AuditAction.PAUSE_SCHEDULED,
        AuditAction.PAUSE_STARTED,
    ]
    assert len(audit.find_for_subscription(sample_subscription.id)) == 2
