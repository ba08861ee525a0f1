"""
Interest and Schedule Calculations

Interest on fixed-term deposits (simple or compound, actual/365) and the
generation of the interest payment schedule. Pure functions: nothing here
touches storage.
"""

from decimal import Decimal
from datetime import date, timedelta
from dataclasses import dataclass
from typing import List, Union
from enum import Enum
import calendar

from .currency import ZERO, round2, to_decimal

DAYS_PER_YEAR = 365


class InterestMethod(Enum):
    """Interest calculation methods"""
    SIMPLE = "simple"
    COMPOUND = "compound"


class PaymentFrequency(Enum):
    """How often scheduled interest falls due"""
    AT_MATURITY = "at_maturity"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    SEMIANNUAL = "semiannual"

    @property
    def months(self) -> int:
        """Months between scheduled dates (0 = single payment at maturity)"""
        return {
            PaymentFrequency.AT_MATURITY: 0,
            PaymentFrequency.MONTHLY: 1,
            PaymentFrequency.QUARTERLY: 3,
            PaymentFrequency.SEMIANNUAL: 6,
        }[self]


@dataclass(frozen=True)
class ScheduledPayment:
    """One computed schedule row before it is persisted"""
    scheduled_date: date
    estimated_interest: Decimal


def parse_date(value: Union[date, str]) -> date:
    """Accept a date or an ISO date string"""
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def add_days(start: date, days: int) -> date:
    return start + timedelta(days=days)


def days_between(start: date, end: date) -> int:
    return (end - start).days


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping to the last day of shorter months"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def calculate_interest(
    principal: Union[Decimal, int, str],
    annual_rate: Union[Decimal, int, str],
    days: int,
    method: InterestMethod,
    day_count_basis: int = DAYS_PER_YEAR
) -> Decimal:
    """
    Interest earned by a principal over a number of days.

    simple:   P * (r/100) * (d/basis)
    compound: P * ((1 + r/100) ** (d/basis) - 1)

    Args:
        principal: Capital the interest accrues on
        annual_rate: Annual rate in percent (36 means 36%)
        days: Day count of the period
        method: Simple or compound
        day_count_basis: Days per year (365)

    Returns:
        Unrounded interest; zero when principal or days are not positive
    """
    principal = to_decimal(principal)
    if principal <= ZERO or days <= 0:
        return ZERO

    rate = to_decimal(annual_rate) / Decimal('100')
    fraction = Decimal(days) / Decimal(day_count_basis)

    if method == InterestMethod.SIMPLE:
        return principal * rate * fraction
    if method == InterestMethod.COMPOUND:
        return principal * ((Decimal('1') + rate) ** fraction - Decimal('1'))
    raise ValueError(f"Unsupported interest method: {method}")


def generate_payment_schedule(
    start_date: date,
    maturity_date: date,
    frequency: PaymentFrequency,
    principal: Union[Decimal, int, str],
    annual_rate: Union[Decimal, int, str],
    method: InterestMethod,
    capitalize: bool = False,
    day_count_basis: int = DAYS_PER_YEAR
) -> List[ScheduledPayment]:
    """
    Build the interest payment schedule of a deposit.

    At maturity, a single row covers the whole term. Otherwise the schedule
    steps forward by the frequency's month interval from the start date, the
    last step clamped to maturity, so a term that is not a whole number of
    intervals ends in a shorter final period. Each period's interest is
    computed on the running principal, which grows by the rounded interest
    of the previous periods only when interest is capitalized.

    Returns:
        Schedule rows in date order, interest rounded to 2 decimals
    """
    principal = to_decimal(principal)

    if frequency == PaymentFrequency.AT_MATURITY:
        days = days_between(start_date, maturity_date)
        interest = calculate_interest(principal, annual_rate, days, method, day_count_basis)
        return [ScheduledPayment(maturity_date, round2(interest))]

    schedule = []
    current = start_date
    running_principal = principal
    step = 0

    while current < maturity_date:
        step += 1
        # Step from the start date, not the previous row, so month-end clamping doesn't drift
        next_date = min(add_months(start_date, frequency.months * step), maturity_date)
        days = days_between(current, next_date)
        interest = round2(calculate_interest(running_principal, annual_rate, days, method, day_count_basis))
        schedule.append(ScheduledPayment(next_date, interest))
        if next_date >= maturity_date:
            break
        current = next_date
        if capitalize:
            running_principal += interest

    return schedule
