"""
Tests for the price reconciliation queue.
"""

import pytest
from datetime import date
from decimal import Decimal

from satledger.config import LedgerSettings
from satledger.ledger import PriceSyncQueue, TransactionRecorder
from satledger.models.audit import AuditEventType
from satledger.models.common import Currency
from satledger.models.ledger import Expense, ExpenseDraft, Income, PaymentMethod, Transfer
from satledger.services.rates import RateUnavailableError


class DayRates:
    """Rate feed that only knows some days."""

    def __init__(self, rates_by_day):
        self.rates_by_day = rates_by_day
        self.calls = []

    async def fetch(self, day):
        self.calls.append(day)
        if day not in self.rates_by_day:
            raise RateUnavailableError(f"no candle for {day}")
        return self.rates_by_day[day]


JAN = date(2024, 1, 10)
FEB = date(2024, 2, 10)


class TestPriceSyncQueue:
    """resolve() on plain record lists."""

    @pytest.mark.asyncio
    async def test_only_flagged_records_are_touched(self):
        done = Expense(date=JAN, amount=1_000, btc_krw_at_time=Decimal("50000000"), sats_equivalent=2_000)
        transfer = Transfer(date=JAN, amount=5, from_asset_id="a", to_asset_id="b")
        pending = Expense(date=JAN, amount=1_000, needs_price_sync=True)
        queue = PriceSyncQueue(DayRates({JAN: Decimal("100000000")}))

        records, report = await queue.resolve([done, transfer, pending])

        assert records[0] is done
        assert records[1] is transfer
        assert records[2].sats_equivalent == 1_000
        assert not records[2].needs_price_sync
        assert report.synced == [pending.id]

    @pytest.mark.asyncio
    async def test_partial_outage_keeps_the_rest_pending(self):
        jan = Expense(date=JAN, amount=1_000, needs_price_sync=True)
        feb = Income(date=FEB, amount=1_000, needs_price_sync=True)
        queue = PriceSyncQueue(DayRates({JAN: Decimal("100000000")}))

        records, report = await queue.resolve([jan, feb])

        assert report.synced == [jan.id]
        assert report.still_pending == [feb.id]
        assert records[1] is feb
        assert not report.is_complete

    @pytest.mark.asyncio
    async def test_one_lookup_per_day(self):
        rates = DayRates({JAN: Decimal("100000000")})
        pending = [Expense(date=JAN, amount=n, needs_price_sync=True) for n in (1, 2, 3)]

        await PriceSyncQueue(rates).resolve(pending)

        assert rates.calls == [JAN]

    @pytest.mark.asyncio
    async def test_idempotent(self):
        """Test a second pass changes nothing and fetches nothing."""
        rates = DayRates({JAN: Decimal("100000000")})
        queue = PriceSyncQueue(rates)
        first, _ = await queue.resolve([Expense(date=JAN, amount=7_000, needs_price_sync=True)])

        second, report = await queue.resolve(first)

        assert second == first
        assert report.synced == [] and report.still_pending == []
        assert rates.calls == [JAN]

    @pytest.mark.asyncio
    async def test_order_does_not_matter(self):
        records = [
            Expense(date=JAN, amount=1_000, needs_price_sync=True),
            Income(date=FEB, amount=3_000, needs_price_sync=True),
        ]
        rates = {JAN: Decimal("100000000"), FEB: Decimal("50000000")}

        forward, _ = await PriceSyncQueue(DayRates(rates)).resolve(records)
        backward, _ = await PriceSyncQueue(DayRates(rates)).resolve(list(reversed(records)))

        by_id = {r.id: r.sats_equivalent for r in forward}
        assert by_id == {r.id: r.sats_equivalent for r in backward}
        assert by_id[records[1].id] == 6_000

    @pytest.mark.asyncio
    async def test_sats_record_keeps_amount(self):
        record = Income(date=JAN, amount=21_000, currency=Currency.SATS, needs_price_sync=True)
        records, _ = await PriceSyncQueue(DayRates({JAN: Decimal("90000000")})).resolve([record])
        assert records[0].sats_equivalent == 21_000
        assert records[0].btc_krw_at_time == Decimal("90000000")

    @pytest.mark.asyncio
    async def test_record_with_rate_is_only_unflagged(self):
        """Test a flagged record that already carries a rate needs no lookup."""
        rates = DayRates({})
        record = Expense(date=JAN, amount=1_000, btc_krw_at_time=Decimal("50000000"), needs_price_sync=True)

        records, report = await PriceSyncQueue(rates).resolve([record])

        assert report.skipped == [record.id]
        assert records[0].sats_equivalent == 2_000
        assert not records[0].needs_price_sync
        assert rates.calls == []


class TestRecorderSync:
    """sync_pending_prices through the recorder."""

    @pytest.mark.asyncio
    async def test_converges_once_feed_is_back(self, recorder, rates, store, sink, key):
        rates.available = False
        outcome = await recorder.add_expense(key, ExpenseDraft(date=JAN, amount=12_345))

        report = await recorder.sync_pending_prices(key)
        assert report.still_pending == [outcome.record_id]
        assert len(sink.of_type(AuditEventType.EXTERNAL_SERVICE_ERROR)) == 1

        rates.available = True
        report = await recorder.sync_pending_prices(key)

        assert report.synced == [outcome.record_id]
        assert recorder.pending_price_sync() == []
        assert recorder.get(outcome.record_id).sats_equivalent == 12_345
        assert len(sink.of_type(AuditEventType.PRICE_SYNCED)) == 2

        # Persisted
        await recorder.load(key)
        assert recorder.get(outcome.record_id).sats_equivalent == 12_345

    @pytest.mark.asyncio
    async def test_nothing_pending(self, recorder, key):
        report = await recorder.sync_pending_prices(key)
        assert report.is_complete
        assert report.synced == []


class TestDeferredBalances:
    """Bitcoin balance changes that wait for a price snapshot."""

    def _lightning_expense(self, wallet_id):
        return ExpenseDraft(
            date=JAN,
            amount=30_000,
            payment_method=PaymentMethod.LIGHTNING,
            linked_asset_id=wallet_id,
        )

    @pytest.mark.asyncio
    async def test_sync_applies_the_deferred_change(self, recorder, rates, asset_ledger, key):
        """Test a wallet is debited once the snapshot of its expense resolves."""
        rates.available = False
        wallet = await asset_ledger.create_bitcoin_asset(key, "Lightning", balance=1_000_000)
        outcome = await recorder.add_expense(key, self._lightning_expense(wallet.id))
        assert asset_ledger.get(wallet.id).balance == 1_000_000

        rates.available = True
        rates.rate = Decimal("90000000")
        report = await recorder.sync_pending_prices(key)

        assert report.synced == [outcome.record_id]
        assert report.balances_applied == [outcome.record_id]
        assert report.balance_errors == {}
        assert report.balance_updates[0].actual_delta == -33_333
        assert asset_ledger.get(wallet.id).balance == 966_667
        record = recorder.get(outcome.record_id)
        assert not record.balance_deferred
        assert record.applied_balance_delta == -33_333

        # Applied once only
        report = await recorder.sync_pending_prices(key)
        assert report.balances_applied == []
        assert asset_ledger.get(wallet.id).balance == 966_667

        await recorder.load(key)
        assert recorder.get(outcome.record_id).applied_balance_delta == -33_333

    @pytest.mark.asyncio
    async def test_delete_after_sync_restores_the_wallet(self, store, asset_ledger, rates, audit_logger, key):
        recorder = TransactionRecorder(
            store, asset_ledger, rates, audit_logger, LedgerSettings(rebalance_on_edit=True)
        )
        rates.available = False
        wallet = await asset_ledger.create_bitcoin_asset(key, "Lightning", balance=1_000_000)
        outcome = await recorder.add_expense(key, self._lightning_expense(wallet.id))
        rates.available = True
        await recorder.sync_pending_prices(key)

        await recorder.delete_record(key, outcome.record_id)

        assert asset_ledger.get(wallet.id).balance == 1_000_000

    @pytest.mark.asyncio
    async def test_delete_while_deferred_credits_nothing(self, store, asset_ledger, rates, audit_logger, key):
        recorder = TransactionRecorder(
            store, asset_ledger, rates, audit_logger, LedgerSettings(rebalance_on_edit=True)
        )
        rates.available = False
        wallet = await asset_ledger.create_bitcoin_asset(key, "Lightning", balance=1_000_000)
        outcome = await recorder.add_expense(key, self._lightning_expense(wallet.id))

        result = await recorder.delete_record(key, outcome.record_id)

        assert result.balance_updates == []
        assert asset_ledger.get(wallet.id).balance == 1_000_000

    @pytest.mark.asyncio
    async def test_missing_wallet_is_reported_and_retried(self, recorder, rates, asset_ledger, key):
        rates.available = False
        wallet = await asset_ledger.create_bitcoin_asset(key, "Lightning", balance=1_000_000)
        outcome = await recorder.add_expense(key, self._lightning_expense(wallet.id))
        await asset_ledger.delete_asset(key, wallet.id)

        rates.available = True
        report = await recorder.sync_pending_prices(key)

        assert report.synced == [outcome.record_id]
        assert outcome.record_id in report.balance_errors
        assert report.balances_applied == []
        assert recorder.get(outcome.record_id).balance_deferred
