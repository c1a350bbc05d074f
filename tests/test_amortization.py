"""
Tests for the amortization calculator.

Reference loan: 12,000,000 KRW at 6% a year over 12 months (0.5% a month).
"""

import pytest
from datetime import date
from decimal import Decimal

from satledger.ledger.amortization import (
    add_months,
    calculate_end_date,
    calculate_loan_payment,
    calculate_monthly_payment,
    calculate_paid_months,
    calculate_remaining_principal,
    calculate_total_interest,
    generate_repayment_schedule,
    monthly_rate,
)
from satledger.models.loan import RepaymentType


PRINCIPAL = 12_000_000
RATE = Decimal("6")
TERM = 12
START = date(2024, 1, 15)


def _schedule(repayment_type, principal=PRINCIPAL, rate=RATE, term=TERM, **kwargs):
    return generate_repayment_schedule(principal, rate, term, repayment_type, START, **kwargs)


class TestEqualPrincipalAndInterest:
    """Constant payment loans."""

    def test_monthly_rate(self):
        assert monthly_rate(Decimal("6")) == Decimal("0.005")

    def test_payment(self):
        """Test the annuity payment of the reference loan."""
        payment = calculate_monthly_payment(
            PRINCIPAL, RATE, TERM, RepaymentType.EQUAL_PRINCIPAL_AND_INTEREST
        )
        # 12,000,000 * 0.005 / (1 - 1.005^-12)
        assert abs(payment - 1_032_797) <= 1

    def test_constant_total_except_last_month(self):
        schedule = _schedule(RepaymentType.EQUAL_PRINCIPAL_AND_INTEREST)
        payment = calculate_monthly_payment(
            PRINCIPAL, RATE, TERM, RepaymentType.EQUAL_PRINCIPAL_AND_INTEREST
        )
        assert len(schedule) == TERM
        assert all(entry.total == payment for entry in schedule[:-1])
        assert abs(schedule[-1].total - payment) <= TERM

    def test_first_month_interest(self):
        schedule = _schedule(RepaymentType.EQUAL_PRINCIPAL_AND_INTEREST)
        assert schedule[0].interest == 60_000
        assert schedule[0].principal == schedule[0].total - 60_000

    def test_last_month_clears_the_balance(self):
        schedule = _schedule(RepaymentType.EQUAL_PRINCIPAL_AND_INTEREST)
        assert sum(entry.principal for entry in schedule) == PRINCIPAL
        assert schedule[-1].remaining_principal == 0

    def test_zero_rate(self):
        """Test a 0% loan splits the principal evenly."""
        payment = calculate_monthly_payment(
            1_000_000, Decimal("0"), 3, RepaymentType.EQUAL_PRINCIPAL_AND_INTEREST
        )
        assert payment == 333_333
        schedule = _schedule(
            RepaymentType.EQUAL_PRINCIPAL_AND_INTEREST, principal=1_000_000, rate=Decimal("0"), term=3
        )
        assert [entry.principal for entry in schedule] == [333_333, 333_333, 333_334]
        assert all(entry.interest == 0 for entry in schedule)


class TestEqualPrincipal:
    """Constant principal loans."""

    def test_first_and_last_month(self):
        schedule = _schedule(RepaymentType.EQUAL_PRINCIPAL)
        first, last = schedule[0], schedule[-1]
        assert (first.principal, first.interest, first.total) == (1_000_000, 60_000, 1_060_000)
        assert (last.principal, last.interest, last.total) == (1_000_000, 5_000, 1_005_000)

    def test_totals_strictly_decrease(self):
        totals = [entry.total for entry in _schedule(RepaymentType.EQUAL_PRINCIPAL)]
        assert all(a > b for a, b in zip(totals, totals[1:]))

    def test_remainder_lands_on_last_month(self):
        schedule = _schedule(RepaymentType.EQUAL_PRINCIPAL, principal=1_000_005, term=4)
        assert [entry.principal for entry in schedule] == [250_001, 250_001, 250_001, 250_002]

    def test_headline_payment_is_first_month(self):
        payment = calculate_monthly_payment(PRINCIPAL, RATE, TERM, RepaymentType.EQUAL_PRINCIPAL)
        assert payment == 1_060_000


class TestBullet:
    """Interest-only loans."""

    def test_interest_only_then_principal(self):
        schedule = _schedule(RepaymentType.BULLET)
        assert all(entry.total == 60_000 for entry in schedule[:-1])
        assert all(entry.principal == 0 for entry in schedule[:-1])
        assert schedule[-1].total == 12_060_000
        assert schedule[-1].principal == PRINCIPAL

    def test_remaining_principal_until_maturity(self):
        assert calculate_remaining_principal(PRINCIPAL, RATE, TERM, RepaymentType.BULLET, 11) == PRINCIPAL
        assert calculate_remaining_principal(PRINCIPAL, RATE, TERM, RepaymentType.BULLET, 12) == 0

    def test_headline_payment_is_interest(self):
        assert calculate_monthly_payment(PRINCIPAL, RATE, TERM, RepaymentType.BULLET) == 60_000


class TestAmortizationIdentity:
    """Principal sums to the loan and totals sum to principal plus interest."""

    @pytest.mark.parametrize("repayment_type", list(RepaymentType))
    @pytest.mark.parametrize(
        "principal,rate,term",
        [
            (12_000_000, Decimal("6"), 12),
            (1_000_003, Decimal("3.7"), 7),
            (350_000_000, Decimal("4.25"), 360),
            (999, Decimal("19.9"), 24),
            (5_000_000, Decimal("0"), 10),
        ],
    )
    def test_identity(self, repayment_type, principal, rate, term):
        schedule = generate_repayment_schedule(principal, rate, term, repayment_type, START)
        total_interest = calculate_total_interest(principal, rate, term, repayment_type)
        assert sum(entry.principal for entry in schedule) == principal
        assert sum(entry.total for entry in schedule) == principal + total_interest
        assert all(entry.principal >= 0 for entry in schedule)

    def test_loan_payment_bundle(self):
        result = calculate_loan_payment(PRINCIPAL, RATE, TERM, RepaymentType.BULLET)
        assert result.monthly_payment == 60_000
        assert result.total_interest == 720_000

    def test_rejects_non_positive_inputs(self):
        with pytest.raises(ValueError):
            calculate_monthly_payment(0, RATE, TERM, RepaymentType.BULLET)
        with pytest.raises(ValueError):
            generate_repayment_schedule(PRINCIPAL, RATE, 0, RepaymentType.BULLET, START)


class TestScheduleDates:
    """Calendar handling."""

    def test_dates_follow_start_day(self):
        schedule = _schedule(RepaymentType.BULLET)
        assert schedule[0].date == date(2024, 2, 15)
        assert schedule[-1].date == date(2025, 1, 15)

    def test_day_clamped_to_short_months(self):
        assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
        assert add_months(date(2023, 1, 31), 1) == date(2023, 2, 28)
        assert add_months(date(2024, 1, 31), 3) == date(2024, 4, 30)

    def test_year_rollover(self):
        assert add_months(date(2024, 11, 10), 3) == date(2025, 2, 10)

    def test_repayment_day_overrides_start_day(self):
        schedule = _schedule(RepaymentType.EQUAL_PRINCIPAL, repayment_day=25)
        assert schedule[0].date == date(2024, 2, 25)

    def test_end_date(self):
        assert calculate_end_date(START, TERM) == date(2025, 1, 15)


class TestPaidMonths:
    """Suggested paid months."""

    def test_whole_months_elapsed(self):
        assert calculate_paid_months(date(2024, 1, 15), today=date(2024, 4, 15)) == 3

    def test_partial_month_not_counted(self):
        assert calculate_paid_months(date(2024, 1, 15), today=date(2024, 4, 14)) == 2

    def test_future_start_floors_at_zero(self):
        assert calculate_paid_months(date(2030, 1, 1), today=date(2024, 1, 1)) == 0

    def test_remaining_after_some_payments(self):
        schedule = _schedule(RepaymentType.EQUAL_PRINCIPAL)
        remaining = calculate_remaining_principal(
            PRINCIPAL, RATE, TERM, RepaymentType.EQUAL_PRINCIPAL, 3
        )
        assert remaining == schedule[2].remaining_principal == 9_000_000
