"""
Shared model helpers.

Everything stored by SatLedger is timestamped in UTC and carries a string
UUID so documents stay plain JSON.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from uuid import uuid4


SATS_PER_BTC = 100_000_000
SATS_PER_BTC_DECIMAL = Decimal(SATS_PER_BTC)


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


class Currency(str, Enum):
    """
    Unit of a ledger record's amount.

    KRW amounts are whole won; SATS amounts are satoshis.
    """
    KRW = "KRW"
    SATS = "SATS"
