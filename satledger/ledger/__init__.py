"""
Ledger Package

Balance, record and loan logic on top of the encrypted store.
"""

from satledger.ledger.assets import AssetLedger, AssetNotFoundError
from satledger.ledger.loans import LoanBook, LoanNotFoundError
from satledger.ledger.price_sync import PriceSyncQueue
from satledger.ledger.recorder import CardTopUp, RecordNotFoundError, TransactionRecorder

__all__ = [
    "AssetLedger",
    "AssetNotFoundError",
    "CardTopUp",
    "LoanBook",
    "LoanNotFoundError",
    "PriceSyncQueue",
    "RecordNotFoundError",
    "TransactionRecorder",
]
