"""
Ledger Engine

This module ties the components together into one owned-state service
object:

    EncryptionKeyProvider --> LedgerEngine --> AssetLedger
                                          +--> TransactionRecorder --> PriceSyncQueue
                                          +--> LoanBook
                              (all persisting through one DocumentStoreInterface)

DESIGN DECISION: The engine enforces the boundaries:
- No key, no mutation: every mutating call first asks the key provider and
  refuses with AuthRequiredError when the ledger is locked
- One writer at a time: a mutation started while another one is suspended
  on I/O is rejected with ConcurrentMutationError instead of interleaving
- Restore validates the whole backup before anything is replaced

Reads (balances, records, summaries) need no key; they only see the
in-memory state loaded by ``open``.
"""

from contextlib import asynccontextmanager
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import AsyncIterator, Optional, Union

from pydantic import ValidationError

from satledger.audit import AuditLogger
from satledger.config import LedgerSettings, get_settings
from satledger.ledger import AssetLedger, AssetNotFoundError, CardTopUp, LoanBook, TransactionRecorder
from satledger.models.asset import (
    Asset,
    AssetListAdapter,
    BalanceAdjustment,
    BitcoinAsset,
    FiatAsset,
    OverdraftFacet,
    WalletType,
)
from satledger.models.audit import AuditEventBuilder
from satledger.models.ledger import (
    ExpenseDraft,
    IncomeDraft,
    LedgerListAdapter,
    LedgerRecord,
    PaymentMethod,
    RecordOutcome,
    SyncReport,
    TransferDraft,
)
from satledger.models.loan import (
    Loan,
    LoanDraft,
    LoanListAdapter,
    RepaymentApplied,
    RepaymentReport,
)
from satledger.queries import LedgerSummaries
from satledger.services.keys import AuthRequiredError, EncryptionKeyProvider
from satledger.services.rates import HistoricalRateProvider, UpbitRateClient
from satledger.services.storage import (
    ASSETS_DOCUMENT,
    LEDGER_DOCUMENT,
    LOANS_DOCUMENT,
    BackupArtifact,
    DocumentStoreInterface,
    EncryptedFileStore,
    PartialCommitError,
    PersistenceError,
    RestoreFormatError,
    UnsupportedFormatError,
)


LOAN_REPAYMENT_CATEGORY = "finance"


class ConcurrentMutationError(Exception):
    """A mutation was started while another one is still running."""

    def __init__(self, operation: str, running: str):
        self.operation = operation
        self.running = running
        super().__init__(f"Cannot start {operation} while {running} is in progress")


class LedgerEngine:
    """
    Single-writer facade over the ledger.

    Usage:
        engine = LedgerEngine(PasswordKeyProvider(salt))
        engine.key_provider.unlock("password")
        await engine.open()
        outcome = await engine.add_expense(ExpenseDraft(...))
    """

    def __init__(
        self,
        key_provider: EncryptionKeyProvider,
        store: Optional[DocumentStoreInterface] = None,
        rates: Optional[HistoricalRateProvider] = None,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[LedgerSettings] = None,
        card_top_up: Optional[CardTopUp] = None,
    ):
        self._key_provider = key_provider
        self._audit = audit_logger or AuditLogger()
        self._store = store or EncryptedFileStore(audit_logger=self._audit)
        self._owns_rates = rates is None
        self._rates = rates or UpbitRateClient()
        settings = settings or get_settings().ledger

        self._assets = AssetLedger(self._store, self._audit, settings)
        self._recorder = TransactionRecorder(
            self._store,
            self._assets,
            self._rates,
            self._audit,
            settings,
            card_top_up,
        )
        self._loans = LoanBook(self._store, self._audit)
        self._running: Optional[str] = None

    # -------------------------------------------------------------------------
    # Guards
    # -------------------------------------------------------------------------

    @property
    def key_provider(self) -> EncryptionKeyProvider:
        return self._key_provider

    async def _require_key(self, operation: str) -> bytes:
        try:
            return self._key_provider.require(operation)
        except AuthRequiredError:
            await self._audit.log(AuditEventBuilder.auth_required(operation))
            raise

    @asynccontextmanager
    async def _writer(self, operation: str) -> AsyncIterator[bytes]:
        """Exclusive section for one mutation; yields the encryption key."""
        if self._running is not None:
            raise ConcurrentMutationError(operation, self._running)
        key = await self._require_key(operation)
        self._running = operation
        try:
            yield key
        finally:
            self._running = None

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    @property
    def asset_ledger(self) -> AssetLedger:
        return self._assets

    @property
    def recorder(self) -> TransactionRecorder:
        return self._recorder

    @property
    def loan_book(self) -> LoanBook:
        return self._loans

    @property
    def assets(self) -> list[Asset]:
        return self._assets.assets

    @property
    def records(self) -> list[LedgerRecord]:
        return self._recorder.records

    @property
    def loans(self) -> list[Loan]:
        return self._loans.loans

    def summaries(self) -> LedgerSummaries:
        return LedgerSummaries(self._recorder.records)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def open(self) -> None:
        """Load every collection with the current key."""
        async with self._writer("open") as key:
            await self._assets.load(key)
            await self._recorder.load(key)
            await self._loans.load(key)

    async def close(self) -> None:
        if self._owns_rates and isinstance(self._rates, UpbitRateClient):
            await self._rates.close()

    # -------------------------------------------------------------------------
    # Assets
    # -------------------------------------------------------------------------

    async def create_fiat_asset(
        self,
        name: str,
        balance: int = 0,
        currency: str = "KRW",
        overdraft: Optional[OverdraftFacet] = None,
    ) -> FiatAsset:
        async with self._writer("create_fiat_asset") as key:
            return await self._assets.create_fiat_asset(key, name, balance, currency, overdraft)

    async def create_bitcoin_asset(
        self,
        name: str,
        balance: int = 0,
        wallet_type: Union[WalletType, str] = WalletType.ONCHAIN,
    ) -> BitcoinAsset:
        async with self._writer("create_bitcoin_asset") as key:
            return await self._assets.create_bitcoin_asset(key, name, balance, wallet_type)

    async def update_asset(self, asset_id: str, **fields) -> Asset:
        async with self._writer("update_asset") as key:
            return await self._assets.update_asset(key, asset_id, **fields)

    async def delete_asset(self, asset_id: str) -> None:
        async with self._writer("delete_asset") as key:
            await self._assets.delete_asset(key, asset_id)

    async def adjust_balance(self, asset_id: str, delta: int) -> BalanceAdjustment:
        async with self._writer("adjust_balance") as key:
            return await self._assets.adjust_balance(key, asset_id, delta)

    # -------------------------------------------------------------------------
    # Records
    # -------------------------------------------------------------------------

    async def add_expense(
        self, draft: ExpenseDraft, override_rate: Optional[Decimal] = None
    ) -> RecordOutcome:
        async with self._writer("add_expense") as key:
            return await self._recorder.add_expense(key, draft, override_rate)

    async def add_income(
        self, draft: IncomeDraft, override_rate: Optional[Decimal] = None
    ) -> RecordOutcome:
        async with self._writer("add_income") as key:
            return await self._recorder.add_income(key, draft, override_rate)

    async def add_transfer(self, draft: TransferDraft) -> RecordOutcome:
        async with self._writer("add_transfer") as key:
            return await self._recorder.add_transfer(key, draft)

    async def update_record(self, record_id: str, **changes) -> RecordOutcome:
        async with self._writer("update_record") as key:
            return await self._recorder.update_record(key, record_id, **changes)

    async def delete_record(self, record_id: str) -> RecordOutcome:
        async with self._writer("delete_record") as key:
            return await self._recorder.delete_record(key, record_id)

    async def sync_pending_prices(self) -> SyncReport:
        async with self._writer("sync_pending_prices") as key:
            return await self._recorder.sync_pending_prices(key)

    # -------------------------------------------------------------------------
    # Loans
    # -------------------------------------------------------------------------

    async def add_loan(self, draft: LoanDraft) -> Loan:
        async with self._writer("add_loan") as key:
            return await self._loans.add_loan(key, draft)

    async def update_loan(self, loan_id: str, **changes) -> Loan:
        async with self._writer("update_loan") as key:
            return await self._loans.update_loan(key, loan_id, **changes)

    async def delete_loan(self, loan_id: str) -> None:
        async with self._writer("delete_loan") as key:
            await self._loans.delete_loan(key, loan_id)

    async def process_loan_repayments(self, today: Optional[date] = None) -> RepaymentReport:
        """
        Take every due scheduled repayment from its loan's linked asset.

        For each due month, oldest first:
        1. The loan is marked paid      -> on failure the month stays due
        2. The linked asset is debited  -> clamped at its floor
        3. A bank expense is recorded   -> not linked, the debit is done

        A loan whose linked asset is missing or a bitcoin wallet is skipped
        and reported in ``errors``; its months stay due.

        Paid months are the watermark, so running this again (on the same
        day or after a missed one) applies each month exactly once.
        """
        async with self._writer("process_loan_repayments") as key:
            report = RepaymentReport()
            halted: set[str] = set()
            for loan, entry in self._loans.due_repayments(today):
                if loan.id in halted:
                    continue
                try:
                    asset = self._assets.get(loan.linked_asset_id)
                    if isinstance(asset, BitcoinAsset):
                        raise ValueError(f"{asset.name} is a bitcoin wallet; repayments are taken in won")
                    await self._loans.mark_paid(key, loan.id, entry.month)
                except (AssetNotFoundError, ValueError, PersistenceError) as e:
                    halted.add(loan.id)
                    report.errors.append(f"{loan.name} month {entry.month}: {e}")
                    await self._audit.log_error(
                        "loan_repayment_skipped", str(e), {"loan_id": loan.id, "month": entry.month}
                    )
                    continue

                adjustment = None
                errors = []
                try:
                    adjustment = await self._assets.adjust_balance(
                        key, loan.linked_asset_id, -entry.total
                    )
                except PersistenceError as e:
                    errors.append(str(e))
                    await self._audit.log_error(
                        "loan_repayment_debit_failed", str(e), {"loan_id": loan.id, "month": entry.month}
                    )

                record_id = None
                try:
                    outcome = await self._recorder.add_expense(
                        key,
                        ExpenseDraft(
                            date=entry.date,
                            amount=entry.total,
                            category=LOAN_REPAYMENT_CATEGORY,
                            payment_method=PaymentMethod.BANK,
                            memo=(
                                f"{loan.name} repayment {entry.month}/{loan.term_months} "
                                f"(principal {entry.principal:,}, interest {entry.interest:,})"
                            ),
                        ),
                    )
                    record_id = outcome.record_id
                except PersistenceError as e:
                    errors.append(str(e))

                report.applied.append(
                    RepaymentApplied(
                        loan_id=loan.id,
                        loan_name=loan.name,
                        month=entry.month,
                        due_date=entry.date,
                        amount=entry.total,
                        adjustment=adjustment,
                        record_id=record_id,
                        error="; ".join(errors) or None,
                    )
                )
                await self._audit.log(
                    AuditEventBuilder.loan_repayment_applied(
                        loan.id, loan.name, entry.month, entry.total, record_id
                    )
                )
            return report

    # -------------------------------------------------------------------------
    # Backup / restore / key change
    # -------------------------------------------------------------------------

    async def backup(self, salt: Optional[bytes] = None) -> BackupArtifact:
        """
        Write a backup of every document.

        The salt of a password-based key provider goes into the backup
        header unless one is given.
        """
        async with self._writer("backup") as key:
            if salt is None:
                salt = getattr(self._key_provider, "salt", None)
            return await self._store.backup(key, salt)

    async def restore(self, path: Union[str, Path]) -> None:
        """
        Replace all data with the contents of a backup.

        The backup is decrypted and every model validated before any
        document or in-memory collection changes. A rejected backup leaves
        everything untouched.

        Raises:
            RestoreFormatError: Malformed file or invalid contents
            RestoreDecryptionError: The current key does not open the backup
            UnsupportedFormatError: Unknown bundle version
            PersistenceError: Documents could not be staged; nothing changed
            PartialCommitError: Some documents were replaced before the
                                write stopped; the error names them
        """
        filename = Path(path).name
        async with self._writer("restore") as key:
            try:
                documents = await self._store.read_backup(path, key)
                try:
                    assets = AssetListAdapter.validate_python(documents[ASSETS_DOCUMENT])
                    records = LedgerListAdapter.validate_python(documents[LEDGER_DOCUMENT])
                    loans = LoanListAdapter.validate_python(documents[LOANS_DOCUMENT])
                except ValidationError as e:
                    raise RestoreFormatError(f"Backup {filename} has invalid contents: {e}") from e
            except (RestoreFormatError, UnsupportedFormatError) as e:
                await self._audit.log(AuditEventBuilder.restore_rejected(filename, str(e)))
                raise

            try:
                await self._store.write_documents(documents, key)
            except PartialCommitError as e:
                await self._audit.log_error(
                    "restore_partially_committed", str(e), {"committed": e.committed}
                )
                raise

            self._assets.replace_all(assets)
            self._recorder.replace_all(records)
            self._loans.replace_all(loans)

            await self._audit.log(
                AuditEventBuilder.restore_completed(
                    filename,
                    {
                        ASSETS_DOCUMENT: len(assets),
                        LEDGER_DOCUMENT: len(records),
                        LOANS_DOCUMENT: len(loans),
                    },
                )
            )

    async def read_backup_salt(self, path: Union[str, Path]) -> Optional[bytes]:
        """Salt from a backup header, to re-derive its key on this device."""
        return await self._store.read_backup_salt(path)

    async def check_integrity(self) -> list[str]:
        """Names of stored documents the current key cannot decrypt."""
        key = await self._require_key("check_integrity")
        return await self._store.check_integrity(key)

    async def change_key(self, new_provider: EncryptionKeyProvider) -> list[str]:
        """
        Re-encrypt every document with the key of ``new_provider`` and
        switch to it. Returns the re-encrypted document names.
        """
        async with self._writer("change_key") as old_key:
            new_key = new_provider.require("change_key")
            documents = await self._store.reencrypt_all(old_key, new_key)
            self._key_provider = new_provider
            return documents
