"""BTC/KRW rate feed package."""

from satledger.services.rates.interface import HistoricalRateProvider, RateUnavailableError
from satledger.services.rates.upbit import UpbitRateClient

__all__ = [
    "HistoricalRateProvider",
    "RateUnavailableError",
    "UpbitRateClient",
]
