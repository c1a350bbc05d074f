"""
Loan Book

Stores loans and keeps their derived values (monthly payment, total
interest, remaining principal, end date, status) in line with their terms.
Derived values are recomputed by the amortization calculator on every add
and edit; callers cannot set them.

Loans with a linked asset are repaid automatically: ``due_repayments`` lists
the schedule months that fell due and ``mark_paid`` advances paid months one
at a time. The engine debits the asset and records the expense.
"""

from datetime import date
from typing import Optional

import structlog

from satledger.audit import AuditLogger
from satledger.ledger import amortization
from satledger.models.audit import AuditEventBuilder
from satledger.models.common import utcnow
from satledger.models.loan import Loan, LoanDraft, LoanListAdapter, LoanStatus, ScheduleEntry
from satledger.services.storage import LOANS_DOCUMENT, DocumentStoreInterface, NotFoundError


logger = structlog.get_logger(__name__)

_DERIVED_FIELDS = frozenset(
    {"monthly_payment", "total_interest", "remaining_principal", "end_date", "status"}
)
_IMMUTABLE_FIELDS = frozenset({"id", "created_at"}) | _DERIVED_FIELDS


class LoanNotFoundError(NotFoundError):
    """No loan with the given id."""

    def __init__(self, loan_id: str):
        self.loan_id = loan_id
        super().__init__(f"Loan not found: {loan_id}")


def recompute(loan: Loan) -> Loan:
    """Copy of ``loan`` with every derived field recomputed from its terms."""
    payment = amortization.calculate_loan_payment(
        loan.principal, loan.interest_rate, loan.term_months, loan.repayment_type
    )
    remaining = amortization.calculate_remaining_principal(
        loan.principal,
        loan.interest_rate,
        loan.term_months,
        loan.repayment_type,
        loan.paid_months,
    )
    return loan.model_copy(
        update={
            "monthly_payment": payment.monthly_payment,
            "total_interest": payment.total_interest,
            "remaining_principal": remaining,
            "end_date": amortization.calculate_end_date(
                loan.start_date, loan.term_months, loan.repayment_day
            ),
            "status": (
                LoanStatus.COMPLETED if loan.paid_months >= loan.term_months
                else LoanStatus.ACTIVE
            ),
        }
    )


class LoanBook:
    """Owner of the loan collection."""

    def __init__(self, store: DocumentStoreInterface, audit_logger: Optional[AuditLogger] = None):
        self._store = store
        self._audit = audit_logger or AuditLogger()
        self._loans: list[Loan] = []

    @property
    def loans(self) -> list[Loan]:
        return list(self._loans)

    def get(self, loan_id: str) -> Loan:
        for loan in self._loans:
            if loan.id == loan_id:
                return loan
        raise LoanNotFoundError(loan_id)

    def active_loans(self) -> list[Loan]:
        return [loan for loan in self._loans if loan.status == LoanStatus.ACTIVE]

    def total_debt(self) -> int:
        """Remaining principal over all active loans."""
        return sum(loan.remaining_principal for loan in self.active_loans())

    def schedule(self, loan_id: str) -> list[ScheduleEntry]:
        loan = self.get(loan_id)
        return amortization.generate_repayment_schedule(
            loan.principal,
            loan.interest_rate,
            loan.term_months,
            loan.repayment_type,
            loan.start_date,
            loan.repayment_day,
        )

    def due_repayments(self, today: Optional[date] = None) -> list[tuple[Loan, ScheduleEntry]]:
        """
        Unpaid schedule entries dated on or before ``today``, oldest first
        per loan.

        Only active loans with a linked asset take part; other loans are
        repaid by hand.
        """
        today = today or date.today()
        due = []
        for loan in self.active_loans():
            if not loan.linked_asset_id:
                continue
            for entry in self.schedule(loan.id)[loan.paid_months:]:
                if entry.date > today:
                    break
                due.append((loan, entry))
        return due

    async def _commit(self, key: bytes, loans: list[Loan]) -> None:
        await self._store.save(LOANS_DOCUMENT, LoanListAdapter.dump_python(loans, mode="json"), key)
        self._loans = loans

    def replace_all(self, loans: list[Loan]) -> None:
        self._loans = list(loans)

    async def load(self, key: bytes) -> list[Loan]:
        raw = await self._store.load(LOANS_DOCUMENT, key, [])
        self._loans = LoanListAdapter.validate_python(raw)
        logger.debug("loans_loaded", count=len(self._loans))
        return self.loans

    async def add_loan(self, key: bytes, draft: LoanDraft, today: Optional[date] = None) -> Loan:
        """
        Store a new loan.

        Paid months default to the months elapsed since the start date,
        capped at the term.
        """
        data = draft.model_dump()
        if data["paid_months"] is None:
            data["paid_months"] = min(
                amortization.calculate_paid_months(draft.start_date, today),
                draft.term_months,
            )
        loan = recompute(Loan(**data))

        await self._commit(key, [*self._loans, loan])
        await self._audit.log(AuditEventBuilder.loan_saved(loan.id, loan.name, loan.monthly_payment))
        return loan

    async def update_loan(self, key: bytes, loan_id: str, **changes) -> Loan:
        """
        Edit loan terms; derived values follow.

        Raises:
            LoanNotFoundError: Unknown loan id
            ValueError: Immutable or derived field given, or invalid terms
        """
        blocked = _IMMUTABLE_FIELDS.intersection(changes)
        if blocked:
            raise ValueError(f"Fields cannot be updated: {sorted(blocked)}")

        current = self.get(loan_id)
        data = current.model_dump()
        data.update(changes)
        data["updated_at"] = utcnow()
        loan = recompute(Loan.model_validate(data))

        await self._commit(key, [loan if existing.id == loan_id else existing for existing in self._loans])
        await self._audit.log(AuditEventBuilder.loan_saved(loan.id, loan.name, loan.monthly_payment))
        return loan

    async def mark_paid(self, key: bytes, loan_id: str, month: int) -> Loan:
        """
        Record schedule month ``month`` as repaid; derived values follow.

        Raises:
            LoanNotFoundError: Unknown loan id
            ValueError: ``month`` is not the next unpaid month
            PersistenceError: The loan could not be saved
        """
        current = self.get(loan_id)
        if month != current.paid_months + 1 or month > current.term_months:
            raise ValueError(
                f"Month {month} is not the next unpaid month of {current.name}"
            )
        loan = recompute(
            current.model_copy(update={"paid_months": month, "updated_at": utcnow()})
        )
        await self._commit(key, [loan if existing.id == loan_id else existing for existing in self._loans])
        logger.info("loan_month_paid", loan_id=loan_id, month=month, status=loan.status.value)
        return loan

    async def delete_loan(self, key: bytes, loan_id: str) -> None:
        self.get(loan_id)
        await self._commit(key, [existing for existing in self._loans if existing.id != loan_id])
        await self._audit.log(AuditEventBuilder.loan_deleted(loan_id))
