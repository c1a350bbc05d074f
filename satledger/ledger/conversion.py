"""
KRW <-> sats conversion helpers.

Rates are KRW per 1 BTC. All arithmetic is Decimal; results are whole
units of the target currency.
"""

from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Union

from satledger.models.common import SATS_PER_BTC_DECIMAL


Rate = Union[Decimal, int, str]


def _rate(rate: Rate) -> Decimal:
    value = Decimal(rate) if not isinstance(rate, Decimal) else rate
    if not value.is_finite() or value <= 0:
        raise ValueError(f"Rate must be positive, got {rate}")
    return value


def krw_to_sats(krw: int, rate: Rate) -> int:
    """floor(krw / rate * 1e8)"""
    sats = Decimal(krw) * SATS_PER_BTC_DECIMAL / _rate(rate)
    return int(sats.to_integral_value(rounding=ROUND_FLOOR))


def sats_to_krw(sats: int, rate: Rate) -> int:
    """Won value of ``sats`` at ``rate``, rounded half-up."""
    krw = Decimal(sats) / SATS_PER_BTC_DECIMAL * _rate(rate)
    return int(krw.to_integral_value(rounding=ROUND_HALF_UP))


def btc_to_sats(btc: Union[Decimal, str]) -> int:
    return int((Decimal(btc) * SATS_PER_BTC_DECIMAL).to_integral_value(rounding=ROUND_FLOOR))


def sats_to_btc(sats: int) -> Decimal:
    return Decimal(sats) / SATS_PER_BTC_DECIMAL
