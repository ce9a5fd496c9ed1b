"""Installment schedule calculation for BNPL repayment"""

from datetime import date, datetime, timedelta
from typing import List

from bnpl_scheduler.domain.exceptions import ScheduleValidationError
from bnpl_scheduler.domain.models import PaymentInterval, PaymentPlan, ScheduledInstallment
from bnpl_scheduler.utils.date_utils import add_months, to_utc_date

MAX_INSTALLMENTS = 4

_PLAN_COUNTS = {
    PaymentPlan.PAY_IN_1: 1,
    PaymentPlan.PAY_IN_2: 2,
    PaymentPlan.PAY_IN_3: 3,
    PaymentPlan.PAY_IN_4: 4,
}


def installment_count(plan: PaymentPlan | str) -> int:
    """Map a payment plan to its number of installments"""
    try:
        return _PLAN_COUNTS[PaymentPlan(plan)]
    except ValueError as e:
        raise ScheduleValidationError(f"Unsupported payment plan: {plan}") from e


def resolve_interval(*candidates: PaymentInterval | str | None) -> PaymentInterval:
    """First non-empty candidate wins; falls back to biweekly"""
    for candidate in candidates:
        if candidate:
            try:
                return PaymentInterval(candidate)
            except ValueError as e:
                raise ScheduleValidationError(f"Unsupported payment interval: {candidate}") from e
    return PaymentInterval.BIWEEKLY


def due_date_for(index: int, start: date, interval: PaymentInterval) -> date:
    """Due date of the installment at 0-based position `index`"""
    if interval == PaymentInterval.WEEKLY:
        return start + timedelta(days=7 * index)
    if interval == PaymentInterval.MONTHLY:
        # Always offset from the start so Jan 31 -> Feb 29 -> Mar 31
        return add_months(start, index)
    return start + timedelta(days=14 * index)


def calculate_schedule(
    amount_cents: int,
    num_installments: int,
    start: date | datetime,
    interval: PaymentInterval | str = PaymentInterval.BIWEEKLY,
) -> List[ScheduledInstallment]:
    """
    Split a purchase amount into dated installments.

    Requirements:
    - Base amount is the total floored to the cent across installments
    - Last installment absorbs the rounding remainder (< num_installments cents)
    - First installment is due on the start date (UTC), the rest one
      interval step apart

    Args:
        amount_cents: Total amount to split, in cents
        num_installments: Number of payments (1-4)
        start: Schedule start; datetimes are converted to their UTC date
        interval: weekly (+7d), biweekly (+14d) or monthly (+1 calendar month)

    Returns:
        Ordered list of ScheduledInstallment

    Example:
        $100.00 in 3 → [$33.33, $33.33, $33.34]
    """
    if amount_cents <= 0:
        raise ScheduleValidationError("Schedule amount must be positive")
    if not 1 <= num_installments <= MAX_INSTALLMENTS:
        raise ScheduleValidationError(f"Invalid installment count: {num_installments}")

    interval = PaymentInterval(interval)
    start_date = to_utc_date(start)

    base_amount = amount_cents // num_installments
    remainder = amount_cents - base_amount * num_installments

    schedule = []
    for i in range(num_installments):
        amount = base_amount + (remainder if i == num_installments - 1 else 0)
        schedule.append(
            ScheduledInstallment(
                amount_cents=amount,
                due_date=due_date_for(i, start_date, interval),
                installment_number=i + 1,
            )
        )

    return schedule


def split_evenly(total_cents: int, parts: int) -> List[int]:
    """Same floor-plus-remainder-on-last rule, without dates"""
    base = total_cents // parts
    amounts = [base] * parts
    amounts[-1] += total_cents - base * parts
    return amounts
