"""
Loan Models

A loan stores its terms plus a set of cached, derived values
(monthly payment, total interest, remaining principal, end date).
The derived values are always recomputed from the terms by the loan book;
they are never edited directly.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

from satledger.models.asset import BalanceAdjustment
from satledger.models.common import new_id, utcnow


class RepaymentType(str, Enum):
    """
    Repayment policy of a loan.

    - EQUAL_PRINCIPAL_AND_INTEREST: constant monthly payment (annuity)
    - EQUAL_PRINCIPAL: constant principal, interest on the remaining balance
    - BULLET: interest only, full principal on the final month
    """
    EQUAL_PRINCIPAL_AND_INTEREST = "equalPrincipalAndInterest"
    EQUAL_PRINCIPAL = "equalPrincipal"
    BULLET = "bullet"


class LoanStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


class LoanDraft(BaseModel):
    """Input for a new loan."""
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=100)
    institution: str = Field(default="", max_length=100)
    principal: int = Field(..., gt=0)
    interest_rate: Decimal = Field(
        ...,
        ge=0,
        le=100,
        description="Annual interest rate in percent"
    )
    repayment_type: RepaymentType
    term_months: int = Field(..., ge=1, le=600)
    start_date: date
    paid_months: Optional[int] = Field(
        default=None,
        ge=0,
        description="Months already repaid; defaults to months elapsed since start"
    )
    repayment_day: Optional[int] = Field(default=None, ge=1, le=28)
    interest_payment_day: Optional[int] = Field(default=None, ge=1, le=28)
    linked_asset_id: Optional[str] = None
    memo: Optional[str] = Field(default=None, max_length=500)

    @model_validator(mode='after')
    def validate_interest_payment_day(self) -> 'LoanDraft':
        """Only bullet loans have a separate interest payment day."""
        if self.interest_payment_day is not None and self.repayment_type != RepaymentType.BULLET:
            raise ValueError("interest_payment_day only applies to bullet loans")
        return self


class Loan(LoanDraft):
    """A stored loan with its derived values."""

    id: str = Field(default_factory=new_id)
    paid_months: int = Field(default=0, ge=0)

    monthly_payment: int = 0
    total_interest: int = 0
    remaining_principal: int = 0
    end_date: Optional[date] = None
    status: LoanStatus = LoanStatus.ACTIVE

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode='after')
    def validate_paid_months(self) -> 'Loan':
        if self.paid_months > self.term_months:
            raise ValueError("paid_months cannot exceed term_months")
        return self


LoanListAdapter = TypeAdapter(list[Loan])


class ScheduleEntry(BaseModel):
    """One month of a repayment schedule. Derived, never persisted."""

    month: int = Field(..., ge=1)
    date: date
    principal: int
    interest: int
    total: int
    remaining_principal: int


class RepaymentApplied(BaseModel):
    """One scheduled repayment taken from a loan's linked asset."""

    loan_id: str
    loan_name: str
    month: int = Field(..., ge=1, description="Schedule month that was paid")
    due_date: date
    amount: int = Field(..., description="Scheduled total (principal + interest)")
    adjustment: Optional[BalanceAdjustment] = Field(
        default=None,
        description="Debit of the linked asset; None when it could not be made"
    )
    record_id: Optional[str] = Field(
        default=None,
        description="Expense recorded for the repayment"
    )
    error: Optional[str] = None

    @property
    def clamped(self) -> bool:
        return self.adjustment is not None and self.adjustment.clamped


class RepaymentReport(BaseModel):
    """Result of one pass over due loan repayments."""

    applied: list[RepaymentApplied] = Field(default_factory=list)
    errors: list[str] = Field(
        default_factory=list,
        description="Repayments that could not be marked paid and were left due"
    )

    @property
    def clamped(self) -> list[RepaymentApplied]:
        """Repayments the linked asset could only partly cover."""
        return [repayment for repayment in self.applied if repayment.clamped]
