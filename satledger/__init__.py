"""
SatLedger - Source Package

The financial consistency engine behind a personal ledger that holds both
fiat (KRW) and bitcoin (sats) balances.

DESIGN PRINCIPLES:
1. Records persist first, side effects second
2. Fail early, fail visibly
3. No silent corrections without an audit event
4. Every balance change goes through one clamped mutator
5. Storage is encrypted and swappable
"""

__version__ = "1.0.0"
__author__ = "SatLedger Team"
