"""
Amortization Calculator

Pure loan math. No I/O, no state.

Monthly rate: r = annual_rate / 100 / 12. All arithmetic is Decimal and
each month's interest is rounded half-up to a whole currency unit.

Repayment policies:
- equalPrincipalAndInterest: constant payment
      P * r / (1 - (1 + r)^-n)          (P / n when r = 0)
  interest = remaining * r, principal = payment - interest.
- equalPrincipal: principal P // n per month, interest on the balance
  before the month's payment, so totals decrease month over month.
- bullet: interest only (P * r) every month, plus P in the final month.

In every policy the final month pays whatever principal is left, so the
principal components always sum to P exactly.
"""

import calendar
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Union

from pydantic import BaseModel

from satledger.models.loan import RepaymentType, ScheduleEntry


Number = Union[Decimal, int, str, float]

_ONE = Decimal("1")


class LoanPayment(BaseModel):
    """Headline numbers of a loan."""

    monthly_payment: int
    total_interest: int


def _round(value: Decimal) -> int:
    return int(value.quantize(_ONE, rounding=ROUND_HALF_UP))


def monthly_rate(annual_rate_percent: Number) -> Decimal:
    """Annual percent -> monthly fraction."""
    return Decimal(str(annual_rate_percent)) / 100 / 12


def _validate(principal: int, term_months: int) -> None:
    if principal <= 0:
        raise ValueError("principal must be positive")
    if term_months <= 0:
        raise ValueError("term_months must be positive")


def add_months(start: date, months: int, day: Optional[int] = None) -> date:
    """
    ``start`` plus ``months`` calendar months.

    Keeps the day of month (or uses ``day``), clamped to the length of the
    target month: Jan 31 + 1 month -> Feb 28/29.
    """
    year, month = divmod(start.month - 1 + months, 12)
    year += start.year
    month += 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day or start.day, last_day))


def _annuity_payment(principal: int, r: Decimal, term_months: int) -> int:
    if r == 0:
        return _round(Decimal(principal) / term_months)
    return _round(Decimal(principal) * r / (_ONE - (_ONE + r) ** -term_months))


def calculate_monthly_payment(
    principal: int,
    annual_rate_percent: Number,
    term_months: int,
    repayment_type: RepaymentType,
) -> int:
    """
    Headline monthly payment.

    equalPrincipalAndInterest: the constant payment.
    equalPrincipal: the first (largest) month's total.
    bullet: the monthly interest.
    """
    _validate(principal, term_months)
    r = monthly_rate(annual_rate_percent)
    repayment_type = RepaymentType(repayment_type)

    if repayment_type == RepaymentType.EQUAL_PRINCIPAL_AND_INTEREST:
        return _annuity_payment(principal, r, term_months)
    if repayment_type == RepaymentType.EQUAL_PRINCIPAL:
        return principal // term_months + _round(Decimal(principal) * r)
    return _round(Decimal(principal) * r)


def generate_repayment_schedule(
    principal: int,
    annual_rate_percent: Number,
    term_months: int,
    repayment_type: RepaymentType,
    start_date: date,
    repayment_day: Optional[int] = None,
) -> list[ScheduleEntry]:
    """
    Month-by-month breakdown of a loan.

    Entry ``m`` (1-based) is dated ``start_date`` + m months.
    """
    _validate(principal, term_months)
    r = monthly_rate(annual_rate_percent)
    repayment_type = RepaymentType(repayment_type)

    payment = _annuity_payment(principal, r, term_months)
    principal_per_month = principal // term_months

    schedule: list[ScheduleEntry] = []
    remaining = principal
    for month in range(1, term_months + 1):
        last = month == term_months

        if repayment_type == RepaymentType.BULLET:
            interest = _round(Decimal(principal) * r)
            paid = principal if last else 0
        else:
            interest = _round(Decimal(remaining) * r)
            if last:
                paid = remaining
            elif repayment_type == RepaymentType.EQUAL_PRINCIPAL_AND_INTEREST:
                paid = min(max(payment - interest, 0), remaining)
            else:
                paid = principal_per_month

        remaining -= paid
        schedule.append(
            ScheduleEntry(
                month=month,
                date=add_months(start_date, month, repayment_day),
                principal=paid,
                interest=interest,
                total=paid + interest,
                remaining_principal=remaining,
            )
        )

    return schedule


def calculate_total_interest(
    principal: int,
    annual_rate_percent: Number,
    term_months: int,
    repayment_type: RepaymentType,
) -> int:
    schedule = generate_repayment_schedule(
        principal, annual_rate_percent, term_months, repayment_type, date.today()
    )
    return sum(entry.interest for entry in schedule)


def calculate_loan_payment(
    principal: int,
    annual_rate_percent: Number,
    term_months: int,
    repayment_type: RepaymentType,
) -> LoanPayment:
    return LoanPayment(
        monthly_payment=calculate_monthly_payment(
            principal, annual_rate_percent, term_months, repayment_type
        ),
        total_interest=calculate_total_interest(
            principal, annual_rate_percent, term_months, repayment_type
        ),
    )


def calculate_end_date(
    start_date: date, term_months: int, repayment_day: Optional[int] = None
) -> date:
    """Date of the final payment."""
    return add_months(start_date, term_months, repayment_day)


def calculate_remaining_principal(
    principal: int,
    annual_rate_percent: Number,
    term_months: int,
    repayment_type: RepaymentType,
    paid_months: int,
) -> int:
    """Principal still owed after ``paid_months`` payments."""
    if paid_months <= 0:
        return principal
    if paid_months >= term_months:
        return 0
    schedule = generate_repayment_schedule(
        principal, annual_rate_percent, term_months, repayment_type, date.today()
    )
    return schedule[paid_months - 1].remaining_principal


def calculate_paid_months(start_date: date, today: Optional[date] = None) -> int:
    """
    Whole calendar months elapsed since ``start_date``, floored at 0.

    Only a suggested default for a loan's paid months.
    """
    today = today or date.today()
    months = (today.year - start_date.year) * 12 + (today.month - start_date.month)
    if today.day < start_date.day:
        months -= 1
    return max(0, months)
