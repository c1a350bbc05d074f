"""
Price Reconciliation Queue

Records whose BTC/KRW snapshot could not be fetched at creation carry
``needs_price_sync = True``. This queue retries them.

GUARANTEES:
- Only flagged records are touched; a synced record is never rewritten
- Each record is resolved independently, so order does not matter
- A failed lookup leaves the record pending for a later pass
- Running it twice is the same as running it once
"""

from datetime import date
from decimal import Decimal
from typing import Optional, Sequence

import structlog

from satledger.audit import AuditLogger
from satledger.ledger.conversion import krw_to_sats
from satledger.models.common import Currency, utcnow
from satledger.models.ledger import Expense, Income, LedgerRecord, SyncReport
from satledger.services.rates import HistoricalRateProvider, RateUnavailableError


logger = structlog.get_logger(__name__)


class PriceSyncQueue:
    """Resolves pending price snapshots against a rate provider."""

    def __init__(self, rates: HistoricalRateProvider, audit_logger: Optional[AuditLogger] = None):
        self._rates = rates
        self._audit = audit_logger or AuditLogger()

    @staticmethod
    def pending(records: Sequence[LedgerRecord]) -> list[LedgerRecord]:
        return [
            r for r in records
            if isinstance(r, (Expense, Income)) and r.needs_price_sync
        ]

    @staticmethod
    def apply_rate(record: LedgerRecord, rate: Decimal) -> LedgerRecord:
        """Copy of ``record`` with its snapshot filled from ``rate``."""
        if record.currency == Currency.SATS:
            sats = record.amount
        else:
            sats = krw_to_sats(record.amount, rate)
        return record.model_copy(
            update={
                "btc_krw_at_time": rate,
                "sats_equivalent": sats,
                "needs_price_sync": False,
                "updated_at": utcnow(),
            }
        )

    async def resolve(
        self, records: Sequence[LedgerRecord]
    ) -> tuple[list[LedgerRecord], SyncReport]:
        """
        Retry every pending record.

        Returns:
            (new record list, report). The list is a new list; the input is
            not modified.
        """
        report = SyncReport()
        rates_by_day: dict[date, Optional[Decimal]] = {}
        result: list[LedgerRecord] = []

        for record in records:
            if not (isinstance(record, (Expense, Income)) and record.needs_price_sync):
                result.append(record)
                continue

            # Rate supplied later by an edit: only the flag is stale
            if record.btc_krw_at_time is not None:
                result.append(self.apply_rate(record, record.btc_krw_at_time))
                report.skipped.append(record.id)
                continue

            if record.date not in rates_by_day:
                try:
                    rates_by_day[record.date] = await self._rates.fetch(record.date)
                except RateUnavailableError as e:
                    logger.info(
                        "price_sync_lookup_failed",
                        record_id=record.id,
                        day=record.date.isoformat(),
                        error=str(e),
                    )
                    await self._audit.log_external_service_error("btc_krw_rate_feed", str(e))
                    rates_by_day[record.date] = None

            rate = rates_by_day[record.date]
            if rate is None:
                result.append(record)
                report.still_pending.append(record.id)
            else:
                result.append(self.apply_rate(record, rate))
                report.synced.append(record.id)

        return result, report
