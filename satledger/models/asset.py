"""
Asset Models

An asset is either a fiat account or a bitcoin wallet. The two variants form
a closed, tagged union on the ``type`` field so every consumer can match on
it exhaustively.

BALANCE INVARIANTS:
- A plain fiat account never goes below 0
- An overdraft account never goes below -credit_limit
- Bitcoin wallets follow the configured floor policy (unclamped by default)

These invariants are enforced by the asset ledger's clamped adjustment,
not by the models: a model must still load when a persisted balance is out
of range, so the ledger can repair it.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from satledger.models.common import new_id, utcnow


class WalletType(str, Enum):
    """Where a bitcoin balance lives."""
    ONCHAIN = "onchain"
    LIGHTNING = "lightning"


class OverdraftFacet(BaseModel):
    """
    Overdraft (minus account) terms of a fiat account.

    The account may go negative down to ``-credit_limit`` and accrues
    interest on the negative balance.
    """

    credit_limit: int = Field(
        ...,
        ge=0,
        description="Maximum negative balance in KRW"
    )
    interest_rate: Decimal = Field(
        default=Decimal("0"),
        ge=0,
        description="Annual interest rate in percent"
    )
    estimated_interest: Optional[int] = Field(
        default=None,
        ge=0,
        description="User override for the monthly interest estimate"
    )


class _AssetBase(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(default_factory=new_id)
    name: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Display name of the account or wallet"
    )
    balance: int = Field(
        default=0,
        description="Current balance in minor units (KRW) or sats"
    )
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class FiatAsset(_AssetBase):
    """A bank account held in fiat currency."""

    type: Literal["fiat"] = "fiat"
    currency: str = Field(
        default="KRW",
        min_length=3,
        max_length=3,
        description="ISO currency code"
    )
    overdraft: Optional[OverdraftFacet] = None

    @property
    def is_overdraft(self) -> bool:
        return self.overdraft is not None

    @property
    def balance_floor(self) -> int:
        """Lowest balance this account may hold."""
        if self.overdraft is None:
            return 0
        return -self.overdraft.credit_limit


class BitcoinAsset(_AssetBase):
    """An on-chain or Lightning wallet, balance in sats."""

    type: Literal["bitcoin"] = "bitcoin"
    wallet_type: WalletType = WalletType.ONCHAIN


Asset = Annotated[Union[FiatAsset, BitcoinAsset], Field(discriminator="type")]

AssetListAdapter = TypeAdapter(list[Asset])


class BalanceAdjustment(BaseModel):
    """
    Result of one clamped balance adjustment.

    ``clamped`` is True when the requested change would have broken a
    balance floor and was reduced. This is not an error: the caller is
    expected to warn the user that the change was only partially applied.
    """

    asset_id: str
    asset_name: str
    clamped: bool
    requested_delta: int
    actual_delta: int
    previous_balance: int
    new_balance: int

    @property
    def requested(self) -> int:
        """Magnitude of the requested change."""
        return abs(self.requested_delta)

    @property
    def actual(self) -> int:
        """Magnitude of the applied change."""
        return abs(self.actual_delta)
