"""Ledger summary package."""

from satledger.queries.summaries import CategoryShare, LedgerSummaries, MonthlyTotal

__all__ = ["CategoryShare", "LedgerSummaries", "MonthlyTotal"]
