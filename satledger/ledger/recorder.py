"""
Transaction Recorder

Creates, edits and deletes income, expense and transfer records.

FLOW (income / expense):
1. Resolve the price snapshot (never blocks: a failed lookup marks the
   record as needing a price sync)
2. Persist the record            -> PersistenceError stops everything here
3. Propagate to the linked asset -> failures are reported, not raised
4. Store the change actually applied on the record

Step 3 runs only after the record is durable. A failure there does NOT mean
the record was not created; it comes back in RecordOutcome.balance_error.

PROPAGATION RULES:
- Only for a linked asset and a method in LedgerSettings.linked_methods
  (bank, lightning, onchain by default)
- Unit: sats for SATS records; sats_equivalent for KRW records linked to a
  bitcoin wallet; KRW amount otherwise
- Income credits, expense debits
- A KRW record linked to a bitcoin wallet while its snapshot is pending
  is marked balance_deferred; sync_pending_prices applies it later

Edits and deletes leave linked balances alone unless
LedgerSettings.rebalance_on_edit is enabled. Reversal undoes the stored
applied change, so a clamped change is never over-reversed.
"""

from decimal import Decimal
from typing import Awaitable, Callable, Optional, Union

import structlog

from satledger.audit import AuditLogger
from satledger.config import LedgerSettings, get_settings
from satledger.ledger.assets import AssetLedger
from satledger.ledger.conversion import krw_to_sats
from satledger.ledger.price_sync import PriceSyncQueue
from satledger.models.asset import BalanceAdjustment, BitcoinAsset
from satledger.models.audit import AuditEventBuilder
from satledger.models.common import Currency, utcnow
from satledger.models.ledger import (
    Expense,
    ExpenseDraft,
    Income,
    IncomeDraft,
    LedgerListAdapter,
    LedgerRecord,
    PriceSnapshot,
    RecordOutcome,
    SnapshotStatus,
    SyncReport,
    Transfer,
    TransferDraft,
)
from satledger.services.rates import HistoricalRateProvider, RateUnavailableError
from satledger.services.storage import (
    LEDGER_DOCUMENT,
    DocumentStoreInterface,
    NotFoundError,
    PersistenceError,
)


logger = structlog.get_logger(__name__)

# Prepaid card top-up collaborator: (card_id, amount) -> None
CardTopUp = Callable[[str, int], Awaitable[None]]

_IMMUTABLE_FIELDS = frozenset({"id", "type", "created_at"})
_TRANSFER_MONEY_FIELDS = frozenset(
    {"amount", "currency", "fee", "from_asset_id", "to_asset_id", "to_card_id"}
)
_BOOKKEEPING_FIELDS = frozenset(
    {"applied_asset_id", "applied_balance_delta", "balance_deferred", "applied_debit", "applied_credit"}
)


class _SnapshotPending(ValueError):
    """A bitcoin balance change needs a sats value that is not known yet."""


def _join_errors(errors: list[Optional[str]]) -> Optional[str]:
    return "; ".join(e for e in errors if e) or None


class RecordNotFoundError(NotFoundError):
    """No ledger record with the given id."""

    def __init__(self, record_id: str):
        self.record_id = record_id
        super().__init__(f"Record not found: {record_id}")


class TransactionRecorder:
    """
    Owner of the ledger record collection.

    Every mutating method takes the encryption key used to persist.
    """

    def __init__(
        self,
        store: DocumentStoreInterface,
        assets: AssetLedger,
        rates: HistoricalRateProvider,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[LedgerSettings] = None,
        card_top_up: Optional[CardTopUp] = None,
    ):
        self._store = store
        self._assets = assets
        self._rates = rates
        self._audit = audit_logger or AuditLogger()
        self._settings = settings or get_settings().ledger
        self._card_top_up = card_top_up
        self._price_sync = PriceSyncQueue(rates, self._audit)
        self._records: list[LedgerRecord] = []

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    @property
    def records(self) -> list[LedgerRecord]:
        return list(self._records)

    def find(self, record_id: str) -> Optional[LedgerRecord]:
        for record in self._records:
            if record.id == record_id:
                return record
        return None

    def get(self, record_id: str) -> LedgerRecord:
        record = self.find(record_id)
        if record is None:
            raise RecordNotFoundError(record_id)
        return record

    def pending_price_sync(self) -> list[LedgerRecord]:
        return self._price_sync.pending(self._records)

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    async def _commit(self, key: bytes, records: list[LedgerRecord]) -> None:
        await self._store.save(
            LEDGER_DOCUMENT,
            LedgerListAdapter.dump_python(records, mode="json"),
            key,
        )
        self._records = records

    def replace_all(self, records: list[LedgerRecord]) -> None:
        """Swap the in-memory collection for an already persisted one."""
        self._records = list(records)

    async def load(self, key: bytes) -> list[LedgerRecord]:
        raw = await self._store.load(LEDGER_DOCUMENT, key, [])
        self._records = LedgerListAdapter.validate_python(raw)
        logger.debug("records_loaded", count=len(self._records))
        return self.records

    # -------------------------------------------------------------------------
    # Snapshot
    # -------------------------------------------------------------------------

    async def _resolve_snapshot(
        self,
        draft: Union[ExpenseDraft, IncomeDraft],
        override_rate: Optional[Decimal],
    ) -> PriceSnapshot:
        sats_if_sats = draft.amount if draft.currency == Currency.SATS else None

        if override_rate is not None:
            rate = Decimal(override_rate)
            if rate <= 0:
                raise ValueError("override_rate must be positive")
            return PriceSnapshot(
                status=SnapshotStatus.OVERRIDDEN,
                btc_krw_at_time=rate,
                sats_equivalent=sats_if_sats if sats_if_sats is not None else krw_to_sats(draft.amount, rate),
            )

        try:
            rate = await self._rates.fetch(draft.date)
        except RateUnavailableError as e:
            return PriceSnapshot(
                status=SnapshotStatus.PENDING,
                sats_equivalent=sats_if_sats,
                error=str(e),
            )

        return PriceSnapshot(
            status=SnapshotStatus.RESOLVED,
            btc_krw_at_time=rate,
            sats_equivalent=sats_if_sats if sats_if_sats is not None else krw_to_sats(draft.amount, rate),
        )

    # -------------------------------------------------------------------------
    # Linked balance propagation
    # -------------------------------------------------------------------------

    def _propagation_delta(self, record: Union[Expense, Income]) -> Optional[int]:
        """
        Signed balance change a record causes on its linked asset.

        Returns None when the record does not move a balance.

        Raises:
            _SnapshotPending: The linked asset is a bitcoin wallet and the
                              sats value of a KRW record is still unknown
        """
        if not record.linked_asset_id:
            return None
        if record.method not in self._settings.linked_methods_set:
            return None

        asset = self._assets.get(record.linked_asset_id)
        if record.currency == Currency.SATS:
            unit = record.amount
        elif isinstance(asset, BitcoinAsset):
            if record.sats_equivalent is None:
                raise _SnapshotPending(
                    "Price snapshot pending; bitcoin balance will be updated once prices sync"
                )
            unit = record.sats_equivalent
        else:
            unit = record.amount

        return unit if isinstance(record, Income) else -unit

    async def _propagate(
        self, key: bytes, record: Union[Expense, Income]
    ) -> tuple[list[BalanceAdjustment], Optional[str], dict]:
        """
        Apply a record's linked balance change.

        Never raises: failures come back as the error string and are audited.

        Returns:
            (adjustments, error, bookkeeping fields to store on the record)
        """
        fields = {
            "applied_asset_id": None,
            "applied_balance_delta": None,
            "balance_deferred": False,
        }
        try:
            delta = self._propagation_delta(record)
            if delta is None:
                return [], None, fields
            adjustment = await self._assets.adjust_balance(
                key, record.linked_asset_id, delta
            )
        except Exception as e:
            # Deferred changes stay queued for sync_pending_prices
            fields["balance_deferred"] = isinstance(e, _SnapshotPending) or record.balance_deferred
            await self._audit.log(
                AuditEventBuilder.linked_balance_failed(
                    record.id, record.linked_asset_id or "", str(e)
                )
            )
            return [], str(e), fields

        fields["applied_asset_id"] = adjustment.asset_id
        fields["applied_balance_delta"] = adjustment.actual_delta
        return [adjustment], None, fields

    async def _reverse(
        self, key: bytes, record: LedgerRecord
    ) -> tuple[list[BalanceAdjustment], Optional[str]]:
        """Undo exactly the balance change stored on a record."""
        if isinstance(record, Transfer):
            return await self._reverse_transfer(key, record)
        if not record.applied_balance_delta:
            return [], None
        try:
            adjustment = await self._assets.adjust_balance(
                key, record.applied_asset_id, -record.applied_balance_delta
            )
        except Exception as e:
            await self._audit.log(
                AuditEventBuilder.linked_balance_failed(
                    record.id, record.applied_asset_id or "", str(e)
                )
            )
            return [], str(e)
        return [adjustment], None

    async def _settle(
        self, key: bytes, record: LedgerRecord, fields: dict
    ) -> tuple[LedgerRecord, Optional[str]]:
        """
        Store the applied balance change on the record.

        The balance is already moved at this point, so a failed save is
        reported rather than raised.
        """
        if all(getattr(record, name) == value for name, value in fields.items()):
            return record, None
        settled = record.model_copy(update=fields)
        try:
            await self._commit(
                key, [settled if r.id == record.id else r for r in self._records]
            )
        except PersistenceError as e:
            await self._audit.log_error(
                "balance_bookkeeping_not_saved", str(e), {"record_id": record.id}
            )
            return record, f"Balance updated but the record could not be saved: {e}"
        return settled, None

    # -------------------------------------------------------------------------
    # Income / expense
    # -------------------------------------------------------------------------

    async def _add(
        self,
        key: bytes,
        record_type: type,
        draft: Union[ExpenseDraft, IncomeDraft],
        override_rate: Optional[Decimal],
    ) -> RecordOutcome:
        snapshot = await self._resolve_snapshot(draft, override_rate)
        record = record_type(
            **draft.model_dump(),
            btc_krw_at_time=snapshot.btc_krw_at_time,
            sats_equivalent=snapshot.sats_equivalent,
            needs_price_sync=snapshot.status == SnapshotStatus.PENDING,
        )

        await self._commit(key, [*self._records, record])
        await self._audit.log(
            AuditEventBuilder.record_saved(
                record.id, record.type, record.amount, record.currency.value
            )
        )
        if snapshot.status == SnapshotStatus.PENDING:
            await self._audit.log(
                AuditEventBuilder.price_snapshot_pending(
                    record.id, record.date.isoformat(), snapshot.error or ""
                )
            )

        updates, error, fields = await self._propagate(key, record)
        record, settle_error = await self._settle(key, record, fields)
        return RecordOutcome(
            record_id=record.id,
            record=record,
            price=snapshot,
            balance_updates=updates,
            balance_error=_join_errors([error, settle_error]),
        )

    async def add_expense(
        self, key: bytes, draft: ExpenseDraft, override_rate: Optional[Decimal] = None
    ) -> RecordOutcome:
        """
        Record an expense.

        Args:
            key: Encryption key
            draft: Expense input
            override_rate: Use this BTC/KRW rate instead of fetching one

        Returns:
            RecordOutcome; the record is durable when this returns

        Raises:
            PersistenceError: The record could not be saved. No balance
                              was touched.
        """
        return await self._add(key, Expense, draft, override_rate)

    async def add_income(
        self, key: bytes, draft: IncomeDraft, override_rate: Optional[Decimal] = None
    ) -> RecordOutcome:
        """Record an income. Same contract as add_expense."""
        return await self._add(key, Income, draft, override_rate)

    # -------------------------------------------------------------------------
    # Transfers
    # -------------------------------------------------------------------------

    async def add_transfer(self, key: bytes, draft: TransferDraft) -> RecordOutcome:
        """
        Record a transfer and move the money.

        The source is debited by amount + fee. The destination asset is
        credited, or the prepaid card topped up, with what the debit actually
        took minus the fee. A source debit clamped at its floor therefore
        moves less than ``amount`` (never money the source did not give up),
        and the outcome reports it as partially applied.

        All or nothing: if a leg fails, earlier legs are reversed, the
        record is removed and the error propagates.

        Raises:
            AssetNotFoundError: Unknown source or destination asset
            ValueError: Card destination without a card top-up collaborator
            PersistenceError: The record could not be saved
        """
        self._assets.get(draft.from_asset_id)
        if draft.to_asset_id is not None:
            self._assets.get(draft.to_asset_id)
        elif self._card_top_up is None:
            raise ValueError("Card transfers need a card top-up collaborator")

        record = Transfer(**draft.model_dump())
        await self._commit(key, [*self._records, record])

        debit: Optional[BalanceAdjustment] = None
        try:
            debit = await self._assets.adjust_balance(
                key, draft.from_asset_id, -(draft.amount + draft.fee)
            )
            moved = max(0, -debit.actual_delta - draft.fee)
            record = record.model_copy(
                update={"applied_debit": debit.actual_delta, "applied_credit": moved}
            )
            await self._commit(
                key, [record if r.id == record.id else r for r in self._records]
            )

            updates = [debit]
            if draft.to_asset_id is not None:
                updates.append(
                    await self._assets.adjust_balance(key, draft.to_asset_id, moved)
                )
            elif moved:
                await self._card_top_up(draft.to_card_id, moved)
        except Exception as e:
            await self._audit.log_error(
                "transfer_rolled_back", str(e), {"record_id": record.id}
            )
            if debit is not None:
                await self._assets.adjust_balance(key, draft.from_asset_id, -debit.actual_delta)
            await self._commit(key, [r for r in self._records if r.id != record.id])
            raise

        if moved < draft.amount:
            logger.warning(
                "transfer_short",
                record_id=record.id,
                requested=draft.amount,
                moved=moved,
            )
        await self._audit.log(
            AuditEventBuilder.record_saved(
                record.id, record.type, record.amount, record.currency.value
            )
        )
        return RecordOutcome(record_id=record.id, record=record, balance_updates=updates)

    async def _reverse_transfer(
        self, key: bytes, record: Transfer
    ) -> tuple[list[BalanceAdjustment], Optional[str]]:
        """
        Undo the legs a transfer actually moved.

        The destination is debited first. Whatever could not be taken back
        from it (its floor clamped the debit) is withheld from the refund.
        """
        if record.applied_debit is None:
            return [], None
        if record.to_asset_id is None:
            return [], "Prepaid card top-ups cannot be reversed automatically"

        credited = record.applied_credit or 0
        updates: list[BalanceAdjustment] = []
        try:
            recovered = 0
            if credited:
                taken_back = await self._assets.adjust_balance(key, record.to_asset_id, -credited)
                updates.append(taken_back)
                recovered = -taken_back.actual_delta
            refund = max(0, -record.applied_debit - (credited - recovered))
            if refund:
                updates.append(
                    await self._assets.adjust_balance(key, record.from_asset_id, refund)
                )
        except Exception as e:
            await self._audit.log(
                AuditEventBuilder.linked_balance_failed(record.id, record.from_asset_id, str(e))
            )
            return updates, str(e)
        return updates, None

    # -------------------------------------------------------------------------
    # Edit / delete
    # -------------------------------------------------------------------------

    def _apply_changes(self, current: LedgerRecord, changes: dict) -> LedgerRecord:
        data = current.model_dump()
        data.update(changes)
        data["updated_at"] = utcnow()

        if isinstance(current, (Expense, Income)):
            currency = Currency(data["currency"])
            if "btc_krw_at_time" in changes and changes["btc_krw_at_time"] is not None:
                rate = Decimal(changes["btc_krw_at_time"])
                data["sats_equivalent"] = (
                    data["amount"] if currency == Currency.SATS
                    else krw_to_sats(data["amount"], rate)
                )
                data["needs_price_sync"] = False
            elif currency == Currency.SATS:
                data["sats_equivalent"] = data["amount"]

        return type(current).model_validate(data)

    async def update_record(self, key: bytes, record_id: str, **changes) -> RecordOutcome:
        """
        Edit a record.

        ``sats_equivalent`` is only re-derived when ``btc_krw_at_time`` is
        among the changes (SATS records always keep it equal to amount).

        With rebalance_on_edit, the balance change stored on the record is
        undone and the edited record's change applied. A deferred bitcoin
        balance change is applied as soon as an edit supplies the rate.

        Raises:
            RecordNotFoundError: Unknown record id
            ValueError: Immutable field, invalid value, or a money field of a
                        transfer (delete and re-create the transfer instead)
            PersistenceError: The record could not be saved
        """
        blocked = (_IMMUTABLE_FIELDS | _BOOKKEEPING_FIELDS).intersection(changes)
        if blocked:
            raise ValueError(f"Fields cannot be updated: {sorted(blocked)}")

        current = self.get(record_id)
        if isinstance(current, Transfer) and _TRANSFER_MONEY_FIELDS.intersection(changes):
            raise ValueError("Transfer amounts and endpoints cannot be edited")

        updated = self._apply_changes(current, changes)
        await self._commit(
            key, [updated if r.id == record_id else r for r in self._records]
        )
        await self._audit.log(AuditEventBuilder.record_updated(record_id, sorted(changes)))

        updates: list[BalanceAdjustment] = []
        errors: list[Optional[str]] = []
        if isinstance(updated, (Expense, Income)):
            reapply = updated.balance_deferred and updated.sats_equivalent is not None
            if self._settings.rebalance_on_edit:
                reversed_updates, error = await self._reverse(key, current)
                updates.extend(reversed_updates)
                errors.append(error)
                # A failed reversal leaves the stored change in place
                reapply = error is None
            if reapply:
                applied, error, fields = await self._propagate(key, updated)
                updates.extend(applied)
                updated, settle_error = await self._settle(key, updated, fields)
                errors.extend([error, settle_error])

        return RecordOutcome(
            record_id=record_id,
            record=updated,
            balance_updates=updates,
            balance_error=_join_errors(errors),
        )

    async def delete_record(self, key: bytes, record_id: str) -> RecordOutcome:
        """
        Remove a record.

        With rebalance_on_edit, the balance change stored on the record is
        undone.

        Raises:
            RecordNotFoundError: Unknown record id
            PersistenceError: The collection could not be saved
        """
        current = self.get(record_id)
        await self._commit(key, [r for r in self._records if r.id != record_id])
        await self._audit.log(AuditEventBuilder.record_deleted(record_id))

        updates: list[BalanceAdjustment] = []
        error: Optional[str] = None
        if self._settings.rebalance_on_edit:
            updates, error = await self._reverse(key, current)

        return RecordOutcome(
            record_id=record_id,
            balance_updates=updates,
            balance_error=error,
        )

    # -------------------------------------------------------------------------
    # Price reconciliation
    # -------------------------------------------------------------------------

    def _deferred(self) -> list[Union[Expense, Income]]:
        return [
            r for r in self._records
            if isinstance(r, (Expense, Income))
            and r.balance_deferred
            and r.sats_equivalent is not None
        ]

    async def sync_pending_prices(self, key: bytes) -> SyncReport:
        """
        Retry the price snapshot of every record flagged for sync.

        Snapshots are persisted first, and only if something changed. Then
        every bitcoin balance change that was waiting for a snapshot is
        applied; those land in ``balances_applied`` or ``balance_errors``.
        """
        records, report = await self._price_sync.resolve(self._records)
        if report.synced or report.skipped:
            await self._commit(key, records)

        for record in self._deferred():
            applied, error, fields = await self._propagate(key, record)
            report.balance_updates.extend(applied)
            _, settle_error = await self._settle(key, record, fields)
            error = _join_errors([error, settle_error])
            if error:
                report.balance_errors[record.id] = error
            else:
                report.balances_applied.append(record.id)

        await self._audit.log(
            AuditEventBuilder.price_synced(len(report.synced), len(report.still_pending))
        )
        return report
