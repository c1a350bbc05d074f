"""
Ledger Summaries

DESIGN DECISION: Summaries are DETERMINISTIC reads over the stored records.
Nothing here estimates or fetches: SATS records are valued in KRW with
their own snapshot rate, and a record without a snapshot counts as 0 won.

Transfers move money between the user's own assets, so they are never
counted as income or expense.
"""

from collections import defaultdict
from datetime import date
from typing import Optional, Sequence

from pydantic import BaseModel

from satledger.models.ledger import Expense, Income, LedgerRecord


UNCATEGORIZED = "Uncategorized"
OTHER_CATEGORY = "Other"
TOP_CATEGORIES = 5


class MonthlyTotal(BaseModel):
    year: int
    month: int
    income: int = 0
    expense: int = 0
    income_sats: int = 0
    expense_sats: int = 0

    @property
    def net(self) -> int:
        return self.income - self.expense


class CategoryShare(BaseModel):
    category: str
    amount: int
    percentage: int


def _shift_month(year: int, month: int, offset: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + offset
    return index // 12, index % 12 + 1


class LedgerSummaries:
    """
    Read-only aggregates over a list of ledger records.

    GUARANTEES:
    - Only counts records that exist
    - Empty months produce zero totals, never an error
    """

    def __init__(self, records: Sequence[LedgerRecord]):
        self._records = list(records)

    def records_by_date(self, day: date) -> list[LedgerRecord]:
        return [r for r in self._records if r.date == day]

    def records_by_month(self, year: int, month: int) -> list[LedgerRecord]:
        return [
            r for r in self._records
            if r.date.year == year and r.date.month == month
        ]

    def monthly_total(self, year: int, month: int) -> MonthlyTotal:
        total = MonthlyTotal(year=year, month=month)
        for record in self.records_by_month(year, month):
            if isinstance(record, Income):
                total.income += record.krw_value()
                total.income_sats += record.sats_value()
            elif isinstance(record, Expense):
                total.expense += record.krw_value()
                total.expense_sats += record.sats_value()
        return total

    def day_total(self, day: date) -> MonthlyTotal:
        """Totals of a single day (e.g. today)."""
        total = MonthlyTotal(year=day.year, month=day.month)
        for record in self.records_by_date(day):
            if isinstance(record, Income):
                total.income += record.krw_value()
                total.income_sats += record.sats_value()
            elif isinstance(record, Expense):
                total.expense += record.krw_value()
                total.expense_sats += record.sats_value()
        return total

    def category_breakdown(self, year: int, month: int) -> list[CategoryShare]:
        """
        Expense share per category: the five largest, then "Other".

        Percentages are rounded to whole numbers.
        """
        totals: dict[str, int] = defaultdict(int)
        for record in self.records_by_month(year, month):
            if isinstance(record, Expense):
                totals[record.category or UNCATEGORIZED] += record.krw_value()

        grand_total = sum(totals.values())
        if grand_total == 0:
            return []

        ranked = sorted(totals.items(), key=lambda item: item[1], reverse=True)
        top, rest = ranked[:TOP_CATEGORIES], ranked[TOP_CATEGORIES:]

        shares = [
            CategoryShare(
                category=category,
                amount=amount,
                percentage=round(amount / grand_total * 100),
            )
            for category, amount in top
        ]
        rest_total = sum(amount for _, amount in rest)
        if rest_total > 0:
            shares.append(
                CategoryShare(
                    category=OTHER_CATEGORY,
                    amount=rest_total,
                    percentage=round(rest_total / grand_total * 100),
                )
            )
        return shares

    def multi_month_totals(self, months_back: int, today: Optional[date] = None) -> list[MonthlyTotal]:
        """Totals of the last ``months_back`` months, oldest first."""
        today = today or date.today()
        return [
            self.monthly_total(*_shift_month(today.year, today.month, -offset))
            for offset in range(months_back - 1, -1, -1)
        ]
