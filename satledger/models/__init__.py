"""
Data Models Package

This package contains all Pydantic models used by SatLedger.
Everything written to the encrypted store conforms to these schemas.
"""

from satledger.models.asset import (
    Asset,
    AssetListAdapter,
    BalanceAdjustment,
    BitcoinAsset,
    FiatAsset,
    OverdraftFacet,
    WalletType,
)
from satledger.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)
from satledger.models.common import SATS_PER_BTC, Currency
from satledger.models.ledger import (
    Expense,
    ExpenseDraft,
    Income,
    IncomeDraft,
    IncomeMethod,
    LedgerListAdapter,
    LedgerRecord,
    LedgerRecordAdapter,
    PaymentMethod,
    PriceSnapshot,
    RecordOutcome,
    SnapshotStatus,
    SyncReport,
    Transfer,
    TransferDraft,
)
from satledger.models.loan import (
    Loan,
    LoanDraft,
    LoanListAdapter,
    LoanStatus,
    RepaymentApplied,
    RepaymentReport,
    RepaymentType,
    ScheduleEntry,
)

__all__ = [
    # Asset models
    "Asset",
    "AssetListAdapter",
    "BalanceAdjustment",
    "BitcoinAsset",
    "FiatAsset",
    "OverdraftFacet",
    "WalletType",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
    # Common
    "SATS_PER_BTC",
    "Currency",
    # Ledger models
    "Expense",
    "ExpenseDraft",
    "Income",
    "IncomeDraft",
    "IncomeMethod",
    "LedgerListAdapter",
    "LedgerRecord",
    "LedgerRecordAdapter",
    "PaymentMethod",
    "PriceSnapshot",
    "RecordOutcome",
    "SnapshotStatus",
    "SyncReport",
    "Transfer",
    "TransferDraft",
    # Loan models
    "Loan",
    "LoanDraft",
    "LoanListAdapter",
    "LoanStatus",
    "RepaymentApplied",
    "RepaymentReport",
    "RepaymentType",
    "ScheduleEntry",
]
