"""Pause credit proration.

A subscription's billing timeline is a run of non-overlapping, half-open
sub-periods: an optional prorated first period
``[subscription_start, first_billing_date)`` paid at the prorated amount,
then calendar-month periods paid at the monthly price. Each period's credit
is ``paid / period_days * paused_days_in_period`` rounded half-up to cents,
and the window's total is the sum of those rounded lines.
"""

from datetime import date
from decimal import ROUND_HALF_UP, Decimal

from memberbill.exceptions import ValidationError
from memberbill.pauses.domain.value_objects import (
    CreditBreakdownLine,
    ProratedCredit,
    SettlementBreakdown,
)
from memberbill.utils.datetime import add_months
from memberbill.utils.logging import get_logger

logger = get_logger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def round_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def overlap_days(start_a: date, end_a: date, start_b: date, end_b: date) -> int:
    """Days shared by two half-open date intervals (never negative)."""
    return max(0, (min(end_a, end_b) - max(start_a, start_b)).days)


class ProrationService:
    """Computes day-accurate credits for paused billing.

    Example:
        >>> service = ProrationService()
        >>> credit = service.calculate_prorated_credit(
        ...     pause_start=date(2024, 1, 10),
        ...     pause_end=date(2024, 1, 20),
        ...     subscription_start=date(2024, 1, 1),
        ...     first_billing_date=None,
        ...     prorated_amount=None,
        ...     monthly_price=Decimal("100.00"),
        ... )
        >>> credit.total_credit
        Decimal('32.26')
    """

    def __init__(self, currency_symbol: str = "£"):
        self.currency_symbol = currency_symbol

    def calculate_prorated_credit(
        self,
        pause_start: date,
        pause_end: date,
        subscription_start: date,
        first_billing_date: date | None,
        prorated_amount: Decimal | None,
        monthly_price: Decimal,
    ) -> ProratedCredit:
        """Credit owed for the pause ``[pause_start, pause_end)``.

        Args:
            pause_start: First paused day
            pause_end: First day billing resumes (exclusive)
            subscription_start: First day the member was billed for
            first_billing_date: Start of the first full-price period; only
                                meaningful together with ``prorated_amount``
            prorated_amount: What the partial first period cost, or None when
                             the first charge was a regular month
            monthly_price: Price of every regular period

        Returns:
            Total days, total credit (and in minor units) and per-period lines

        Raises:
            ValidationError: Negative amounts, or a first billing date before
                             the subscription start
        """
        self._validate(subscription_start, first_billing_date, prorated_amount, monthly_price)

        if pause_end <= pause_start:
            return ProratedCredit.zero()

        lines: list[CreditBreakdownLine] = []
        regular_anchor = subscription_start

        if (
            prorated_amount is not None
            and first_billing_date is not None
            and first_billing_date > subscription_start
        ):
            line = self._line(
                subscription_start,
                first_billing_date,
                prorated_amount,
                pause_start,
                pause_end,
                is_prorated_period=True,
            )
            if line is not None:
                lines.append(line)
            regular_anchor = first_billing_date

        month = 0
        while True:
            period_start = add_months(regular_anchor, month)
            if period_start >= pause_end:
                break
            period_end = add_months(regular_anchor, month + 1)
            if period_end > pause_start:
                line = self._line(
                    period_start,
                    period_end,
                    monthly_price,
                    pause_start,
                    pause_end,
                    is_prorated_period=False,
                )
                if line is not None:
                    lines.append(line)
            month += 1

        total_days = sum(line.overlap_days for line in lines)
        total_credit = sum((line.period_credit for line in lines), ZERO)

        result = ProratedCredit(
            total_days=total_days,
            total_credit=total_credit,
            total_credit_minor_units=int((total_credit * 100).to_integral_value(ROUND_HALF_UP)),
            breakdown=tuple(lines),
        )
        logger.debug(
            "prorated_credit_calculated",
            pause_start=pause_start.isoformat(),
            pause_end=pause_end.isoformat(),
            total_days=result.total_days,
            total_credit=str(result.total_credit),
            periods=len(lines),
        )
        return result

    def calculate_settlement_breakdown(self, credit: ProratedCredit) -> SettlementBreakdown:
        """Split a credit into fully paused periods and partially paused ones."""
        full = tuple(line for line in credit.breakdown if line.covers_whole_period)
        partial = tuple(line for line in credit.breakdown if not line.covers_whole_period)
        full_credit = sum((line.period_credit for line in full), ZERO)
        partial_credit = sum((line.period_credit for line in partial), ZERO)

        return SettlementBreakdown(
            full_months=full,
            partial_months=partial,
            full_months_credit=full_credit,
            partial_months_credit=partial_credit,
            total_credit=credit.total_credit,
            description=credit.description(self.currency_symbol),
        )

    @staticmethod
    def _line(
        period_start: date,
        period_end: date,
        paid_amount: Decimal,
        pause_start: date,
        pause_end: date,
        *,
        is_prorated_period: bool,
    ) -> CreditBreakdownLine | None:
        days = overlap_days(period_start, period_end, pause_start, pause_end)
        if days == 0:
            return None

        period_length = (period_end - period_start).days
        daily_rate = paid_amount / Decimal(period_length)
        return CreditBreakdownLine(
            period_start=period_start,
            period_end=period_end,
            is_prorated_period=is_prorated_period,
            paid_amount=paid_amount,
            period_length_days=period_length,
            daily_rate=daily_rate,
            overlap_days=days,
            period_credit=round_money(daily_rate * days),
        )

    @staticmethod
    def _validate(
        subscription_start: date,
        first_billing_date: date | None,
        prorated_amount: Decimal | None,
        monthly_price: Decimal,
    ) -> None:
        if monthly_price < 0:
            raise ValidationError(
                "Monthly price cannot be negative",
                field="monthly_price",
                value=monthly_price,
                constraint=">= 0",
            )
        if prorated_amount is not None and prorated_amount < 0:
            raise ValidationError(
                "Prorated amount cannot be negative",
                field="prorated_amount",
                value=prorated_amount,
                constraint=">= 0",
            )
        if (
            prorated_amount is not None
            and first_billing_date is not None
            and first_billing_date < subscription_start
        ):
            raise ValidationError(
                "First billing date precedes the subscription start",
                field="first_billing_date",
                value=first_billing_date,
                constraint=">= subscription_start",
            )
