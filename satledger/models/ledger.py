"""
Ledger Record Models

A ledger record is an Expense, an Income or a Transfer. Like assets they
form a closed union tagged by ``type``.

Income and expense records carry a price snapshot:
- KRW record: ``amount`` is won, ``sats_equivalent``/``btc_krw_at_time``
  are the historical conversion at the record's date.
- SATS record: ``amount`` is sats and ``sats_equivalent == amount``;
  ``btc_krw_at_time`` only back-derives a won display value.

``needs_price_sync`` is True exactly while the snapshot lookup has failed
and not yet been repaired.

Records also remember the balance change they actually caused
(``applied_balance_delta``, or ``applied_debit``/``applied_credit`` for
transfers). Reversal undoes exactly that, never the requested amount.

Drafts are what callers hand to the recorder: a record without id, type,
timestamps or snapshot fields.
"""

import datetime as dt
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

from satledger.models.asset import BalanceAdjustment
from satledger.models.common import SATS_PER_BTC_DECIMAL, Currency, new_id, utcnow


class PaymentMethod(str, Enum):
    """How an expense was paid."""
    CASH = "cash"
    CARD = "card"
    BANK = "bank"
    LIGHTNING = "lightning"
    ONCHAIN = "onchain"


class IncomeMethod(str, Enum):
    """How an income arrived."""
    CASH = "cash"
    BANK = "bank"
    LIGHTNING = "lightning"
    ONCHAIN = "onchain"


# =============================================================================
# DRAFTS - caller input
# =============================================================================

class _DraftBase(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    date: dt.date = Field(
        ...,
        description="Calendar day the event happened"
    )
    amount: int = Field(
        ...,
        gt=0,
        description="Amount in won (KRW) or sats (SATS)"
    )
    currency: Currency = Currency.KRW
    category: str = Field(
        default="",
        max_length=50,
        description="Expense category or income source"
    )
    memo: Optional[str] = Field(
        default=None,
        max_length=500
    )


class ExpenseDraft(_DraftBase):
    """Input for a new expense."""

    payment_method: PaymentMethod = PaymentMethod.CASH
    card_id: Optional[str] = None
    installment_months: Optional[int] = Field(default=None, ge=1, le=60)
    is_interest_free: Optional[bool] = None
    linked_asset_id: Optional[str] = None

    @property
    def method(self) -> str:
        return self.payment_method.value


class IncomeDraft(_DraftBase):
    """Input for a new income."""

    source_method: IncomeMethod = IncomeMethod.BANK
    linked_asset_id: Optional[str] = None

    @property
    def method(self) -> str:
        return self.source_method.value


class TransferDraft(BaseModel):
    """
    Input for a transfer between two assets, or from an asset into a
    prepaid card.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    date: dt.date
    amount: int = Field(..., gt=0)
    currency: Currency = Currency.KRW
    from_asset_id: str = Field(..., min_length=1)
    to_asset_id: Optional[str] = None
    to_card_id: Optional[str] = None
    fee: int = Field(default=0, ge=0)
    memo: Optional[str] = Field(default=None, max_length=500)

    @model_validator(mode='after')
    def validate_destination(self) -> 'TransferDraft':
        """Exactly one destination, and never the source itself."""
        if (self.to_asset_id is None) == (self.to_card_id is None):
            raise ValueError("Transfer needs exactly one of to_asset_id or to_card_id")
        if self.to_asset_id is not None and self.to_asset_id == self.from_asset_id:
            raise ValueError("Transfer source and destination must differ")
        return self


# =============================================================================
# STORED RECORDS
# =============================================================================

class _StoredFields(BaseModel):
    id: str = Field(default_factory=new_id)
    created_at: dt.datetime = Field(default_factory=utcnow)
    updated_at: dt.datetime = Field(default_factory=utcnow)


class _SnapshotFields(BaseModel):
    btc_krw_at_time: Optional[Decimal] = Field(
        default=None,
        gt=0,
        description="BTC/KRW rate captured for the record's date"
    )
    sats_equivalent: Optional[int] = Field(
        default=None,
        description="Value of the record in sats at the snapshot rate"
    )
    needs_price_sync: bool = False

    def krw_value(self) -> int:
        """
        Won value of the record at its snapshot rate.

        SATS records without a snapshot count as 0 won.
        """
        if self.currency == Currency.KRW:
            return self.amount
        if self.btc_krw_at_time is None:
            return 0
        value = Decimal(self.amount) / SATS_PER_BTC_DECIMAL * self.btc_krw_at_time
        return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    def sats_value(self) -> int:
        """Sats value of the record; 0 while a KRW snapshot is pending."""
        if self.currency == Currency.SATS:
            return self.amount
        return self.sats_equivalent or 0


class _LinkedBalanceFields(BaseModel):
    applied_asset_id: Optional[str] = Field(
        default=None,
        description="Asset the applied balance change went to"
    )
    applied_balance_delta: Optional[int] = Field(
        default=None,
        description="Signed change actually applied to the linked asset, after clamping"
    )
    balance_deferred: bool = Field(
        default=False,
        description="The linked bitcoin balance change waits for the price snapshot"
    )


class Expense(_StoredFields, _LinkedBalanceFields, _SnapshotFields, ExpenseDraft):
    type: Literal["expense"] = "expense"


class Income(_StoredFields, _LinkedBalanceFields, _SnapshotFields, IncomeDraft):
    type: Literal["income"] = "income"


class Transfer(_StoredFields, TransferDraft):
    type: Literal["transfer"] = "transfer"
    applied_debit: Optional[int] = Field(
        default=None,
        description="Signed change actually applied to the source asset"
    )
    applied_credit: Optional[int] = Field(
        default=None,
        description="Amount actually credited to the destination"
    )


LedgerRecord = Annotated[Union[Expense, Income, Transfer], Field(discriminator="type")]

LedgerRecordAdapter = TypeAdapter(LedgerRecord)
LedgerListAdapter = TypeAdapter(list[LedgerRecord])


# =============================================================================
# RESULTS
# =============================================================================

class SnapshotStatus(str, Enum):
    RESOLVED = "resolved"
    PENDING = "pending"
    OVERRIDDEN = "overridden"


class PriceSnapshot(BaseModel):
    """How the price snapshot of a new record was obtained."""

    status: SnapshotStatus
    btc_krw_at_time: Optional[Decimal] = None
    sats_equivalent: Optional[int] = None
    error: Optional[str] = None


class RecordOutcome(BaseModel):
    """
    What happened when a record was created, edited or deleted.

    The record write, the price snapshot and the linked balance update are
    reported separately. A returned outcome always means the record change
    is durable; ``balance_error`` set means the linked balance was NOT
    brought in line and the user must be told.
    """

    record_id: str
    record: Optional[Union[Expense, Income, Transfer]] = None
    price: Optional[PriceSnapshot] = None
    balance_updates: list[BalanceAdjustment] = Field(default_factory=list)
    balance_error: Optional[str] = None

    @property
    def persisted(self) -> bool:
        return True

    @property
    def balance_applied(self) -> bool:
        return bool(self.balance_updates) and self.balance_error is None

    @property
    def partially_applied(self) -> bool:
        """Some balance update was clamped to respect a floor."""
        return any(update.clamped for update in self.balance_updates)


class SyncReport(BaseModel):
    """Result of one price reconciliation pass."""

    synced: list[str] = Field(default_factory=list)
    still_pending: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(
        default_factory=list,
        description="Records flagged for sync that no longer need a lookup"
    )
    balances_applied: list[str] = Field(
        default_factory=list,
        description="Records whose deferred bitcoin balance change was applied"
    )
    balance_updates: list[BalanceAdjustment] = Field(default_factory=list)
    balance_errors: dict[str, str] = Field(default_factory=dict)

    @property
    def is_complete(self) -> bool:
        return not self.still_pending
