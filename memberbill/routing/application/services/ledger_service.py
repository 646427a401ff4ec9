"""Revenue ledger reader.

Sums net revenue (charges minus refunds and credits) attributed to an
entity over a half-open time window. Pure reads: safe to call repeatedly
and from concurrent requests.
"""

from datetime import date, datetime
from decimal import Decimal

from memberbill.routing.infrastructure.repository import PaymentRepository
from memberbill.storage.database.models import Payment
from memberbill.utils.datetime import start_of_day
from memberbill.utils.logging import get_logger

logger = get_logger(__name__)

ZERO = Decimal("0.00")


def _as_datetime(value: date | datetime) -> datetime:
    if isinstance(value, datetime):
        return value
    return start_of_day(value)


class RevenueLedgerService:
    """Read-only view over confirmed payments.

    Dates passed as ``date`` are read as midnight UTC, so a window of
    ``(date(2024, 4, 1), date(2025, 4, 1))`` covers the whole fiscal year.
    """

    def __init__(self, payment_repository: PaymentRepository):
        self.payments = payment_repository

    def sum_confirmed_revenue(
        self,
        entity_id: int,
        window_start: date | datetime,
        window_end: date | datetime,
    ) -> Decimal:
        """Net revenue routed to ``entity_id`` within ``[window_start, window_end)``.

        Refund and credit rows are stored with negative amounts and reduce
        the total like any other row.
        """
        start, end = _as_datetime(window_start), _as_datetime(window_end)
        if end <= start:
            return ZERO

        total = self.payments.sum_revenue(entity_id, start, end)
        logger.debug(
            "ledger_revenue_summed",
            entity_id=entity_id,
            window_start=start.isoformat(),
            window_end=end.isoformat(),
            total=str(total),
        )
        return total

    def sum_by_entity(
        self, window_start: date | datetime, window_end: date | datetime
    ) -> dict[int, Decimal]:
        """Net revenue for every routed entity in one query."""
        start, end = _as_datetime(window_start), _as_datetime(window_end)
        if end <= start:
            return {}
        return self.payments.sum_revenue_by_entity(start, end)

    def count_confirmed_payments(
        self,
        entity_id: int,
        window_start: date | datetime,
        window_end: date | datetime,
    ) -> int:
        start, end = _as_datetime(window_start), _as_datetime(window_end)
        if end <= start:
            return 0
        return self.payments.count_revenue_payments(entity_id, start, end)

    def first_confirmed_payment(self, subscription_id: int) -> Payment | None:
        """The subscription's first confirmed charge, if any."""
        return self.payments.first_confirmed_for_subscription(subscription_id)
