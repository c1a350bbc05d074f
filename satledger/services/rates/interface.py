"""
Price Feed Interface

The ledger consumes BTC/KRW rates; it never produces them. Any rate source
(exchange API, cached table, test fake) implements this interface.

Lookups may fail at any time (offline, rate limits, exchange outage).
Failure is always reported as RateUnavailableError and must come back
quickly; callers degrade to "needs price sync" instead of blocking.
"""

from abc import ABC, abstractmethod
from datetime import date
from decimal import Decimal


class RateUnavailableError(Exception):
    """A rate lookup failed. Transient and never fatal to a record write."""
    pass


class HistoricalRateProvider(ABC):
    """Source of historical and current BTC/KRW rates (KRW per 1 BTC)."""

    @abstractmethod
    async def fetch(self, day: date) -> Decimal:
        """
        Closing BTC/KRW rate for a calendar day.

        Raises:
            RateUnavailableError: If the rate could not be obtained
        """
        pass

    @abstractmethod
    async def fetch_current(self) -> Decimal:
        """
        Latest BTC/KRW rate.

        Raises:
            RateUnavailableError: If the rate could not be obtained
        """
        pass
