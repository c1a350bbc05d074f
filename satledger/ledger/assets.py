"""
Asset Ledger

Owns every account and wallet balance.

CRITICAL: ``adjust_balance`` is the only sanctioned way to change a balance
once an asset exists. It enforces the balance floors:
- plain fiat account:     balance >= 0
- overdraft fiat account: balance >= -credit_limit
- bitcoin wallet:         balance >= configured floor (no floor by default)

A change that would break a floor is clamped, not rejected. The returned
BalanceAdjustment says so, and callers must tell the user that the change
was only partially applied.

Every mutation persists the whole collection. The in-memory collection is
only replaced after the save succeeded, so a failed save leaves it exactly
as it was.
"""

from decimal import Decimal
from typing import Optional, Union

import structlog

from satledger.audit import AuditLogger
from satledger.config import LedgerSettings, get_settings
from satledger.ledger.conversion import sats_to_krw
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
from satledger.models.common import utcnow
from satledger.services.storage import ASSETS_DOCUMENT, DocumentStoreInterface, NotFoundError


logger = structlog.get_logger(__name__)

# Fields that never change through update_asset
_IMMUTABLE_FIELDS = frozenset({"id", "type", "created_at", "balance"})


class AssetNotFoundError(NotFoundError):
    """No asset with the given id."""

    def __init__(self, asset_id: str):
        self.asset_id = asset_id
        super().__init__(f"Asset not found: {asset_id}")


class AssetLedger:
    """
    Balances of all fiat accounts and bitcoin wallets.

    Every mutating method takes the encryption key used to persist the
    collection.
    """

    def __init__(
        self,
        store: DocumentStoreInterface,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[LedgerSettings] = None,
    ):
        self._store = store
        self._audit = audit_logger or AuditLogger()
        self._settings = settings or get_settings().ledger
        self._assets: list[Asset] = []

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    @property
    def assets(self) -> list[Asset]:
        return list(self._assets)

    def find(self, asset_id: str) -> Optional[Asset]:
        for asset in self._assets:
            if asset.id == asset_id:
                return asset
        return None

    def get(self, asset_id: str) -> Asset:
        asset = self.find(asset_id)
        if asset is None:
            raise AssetNotFoundError(asset_id)
        return asset

    def fiat_assets(self) -> list[FiatAsset]:
        return [a for a in self._assets if isinstance(a, FiatAsset)]

    def bitcoin_assets(self) -> list[BitcoinAsset]:
        return [a for a in self._assets if isinstance(a, BitcoinAsset)]

    def balance_floor(self, asset: Asset) -> Optional[int]:
        """Lowest allowed balance of ``asset``; None means unbounded."""
        if isinstance(asset, FiatAsset):
            return asset.balance_floor
        return self._settings.bitcoin_balance_floor

    # -------------------------------------------------------------------------
    # Aggregates
    # -------------------------------------------------------------------------

    def total_fiat(self) -> int:
        """Sum of fiat balances in KRW (overdraft debt counts negative)."""
        return sum(asset.balance for asset in self.fiat_assets())

    def total_bitcoin(self) -> int:
        """Sum of bitcoin balances in sats."""
        return sum(asset.balance for asset in self.bitcoin_assets())

    def total_value_in_fiat(self, rate: Optional[Decimal]) -> int:
        """Net worth in KRW. Without a rate bitcoin is left out."""
        fiat = self.total_fiat()
        sats = self.total_bitcoin()
        if not rate or sats == 0:
            return fiat
        return fiat + sats_to_krw(sats, rate)

    def bitcoin_ratio(self, rate: Optional[Decimal]) -> float:
        """Share of bitcoin in the total value, in percent."""
        if not rate:
            return 0.0
        total = self.total_value_in_fiat(rate)
        if total == 0:
            return 0.0
        return sats_to_krw(self.total_bitcoin(), rate) / total * 100

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    async def _commit(self, key: bytes, assets: list[Asset]) -> None:
        """Persist ``assets`` and only then make them current."""
        await self._store.save(
            ASSETS_DOCUMENT,
            AssetListAdapter.dump_python(assets, mode="json"),
            key,
        )
        self._assets = assets

    def replace_all(self, assets: list[Asset]) -> None:
        """Swap the in-memory collection for an already persisted one."""
        self._assets = list(assets)

    async def load(self, key: bytes) -> list[Asset]:
        """
        Load the collection and repair fiat balances below their floor.

        A repaired collection is persisted immediately.
        """
        raw = await self._store.load(ASSETS_DOCUMENT, key, [])
        loaded = AssetListAdapter.validate_python(raw)

        repaired: list[Asset] = []
        events = []
        for asset in loaded:
            if isinstance(asset, FiatAsset) and asset.balance < asset.balance_floor:
                events.append(
                    AuditEventBuilder.balance_repaired(
                        asset.id, asset.name, asset.balance, asset.balance_floor
                    )
                )
                asset = asset.model_copy(
                    update={"balance": asset.balance_floor, "updated_at": utcnow()}
                )
            repaired.append(asset)

        if events:
            await self._commit(key, repaired)
            for event in events:
                await self._audit.log(event)
        else:
            self._assets = repaired

        logger.debug("assets_loaded", count=len(repaired), repaired=len(events))
        return self.assets

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    async def _create(self, key: bytes, asset: Asset) -> Asset:
        floor = self.balance_floor(asset)
        if floor is not None and asset.balance < floor:
            raise ValueError(
                f"Initial balance {asset.balance} is below the floor {floor} of {asset.name!r}"
            )
        await self._commit(key, [*self._assets, asset])
        await self._audit.log(AuditEventBuilder.asset_created(asset.id, asset.type, asset.name))
        return asset

    async def create_fiat_asset(
        self,
        key: bytes,
        name: str,
        balance: int = 0,
        currency: str = "KRW",
        overdraft: Optional[OverdraftFacet] = None,
    ) -> FiatAsset:
        asset = FiatAsset(name=name, balance=balance, currency=currency, overdraft=overdraft)
        return await self._create(key, asset)

    async def create_bitcoin_asset(
        self,
        key: bytes,
        name: str,
        balance: int = 0,
        wallet_type: Union[WalletType, str] = WalletType.ONCHAIN,
    ) -> BitcoinAsset:
        asset = BitcoinAsset(name=name, balance=balance, wallet_type=wallet_type)
        return await self._create(key, asset)

    async def update_asset(self, key: bytes, asset_id: str, **fields) -> Asset:
        """
        Change descriptive fields of an asset.

        The balance is not editable here; use adjust_balance.

        Raises:
            AssetNotFoundError: Unknown asset id
            ValueError: Immutable field given, invalid value, or the current
                        balance would violate the new floor
        """
        blocked = _IMMUTABLE_FIELDS.intersection(fields)
        if blocked:
            raise ValueError(f"Fields cannot be updated: {sorted(blocked)}")

        current = self.get(asset_id)
        data = current.model_dump()
        data.update(fields)
        data["updated_at"] = utcnow()
        updated = type(current).model_validate(data)

        floor = self.balance_floor(updated)
        if floor is not None and updated.balance < floor:
            raise ValueError(
                f"Balance {updated.balance} of {updated.name!r} violates the new floor {floor}"
            )

        await self._commit(
            key, [updated if a.id == asset_id else a for a in self._assets]
        )
        await self._audit.log(AuditEventBuilder.asset_updated(asset_id, sorted(fields)))
        return updated

    async def delete_asset(self, key: bytes, asset_id: str) -> None:
        self.get(asset_id)
        await self._commit(key, [a for a in self._assets if a.id != asset_id])
        await self._audit.log(AuditEventBuilder.asset_deleted(asset_id))

    async def adjust_balance(self, key: bytes, asset_id: str, delta: int) -> BalanceAdjustment:
        """
        Apply a signed change to a balance, clamped at the asset's floor.

        Args:
            key: Encryption key
            asset_id: Asset to change
            delta: Requested change (negative = withdraw)

        Returns:
            BalanceAdjustment with the applied delta and the clamp flag

        Raises:
            AssetNotFoundError: Unknown asset id
            PersistenceError: The collection could not be saved; the
                              in-memory balance is unchanged
        """
        current = self.get(asset_id)
        previous = current.balance
        proposed = previous + delta

        floor = self.balance_floor(current)
        new_balance = proposed
        if floor is not None:
            # A balance already below its floor may rise but never sink further
            new_balance = max(proposed, min(previous, floor))
        clamped = new_balance != proposed

        updated = current.model_copy(update={"balance": new_balance, "updated_at": utcnow()})
        await self._commit(
            key, [updated if a.id == asset_id else a for a in self._assets]
        )

        adjustment = BalanceAdjustment(
            asset_id=asset_id,
            asset_name=current.name,
            clamped=clamped,
            requested_delta=delta,
            actual_delta=new_balance - previous,
            previous_balance=previous,
            new_balance=new_balance,
        )
        await self._audit.log(AuditEventBuilder.balance_adjusted(adjustment))
        return adjustment
