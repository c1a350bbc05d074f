"""
Configuration Management for SatLedger

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
Storage locations, key-derivation cost, the price feed endpoint and the
balance policies are all visible in one place and validated at startup.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class StorageSettings(BaseSettings):
    """Encrypted document store configuration."""

    model_config = SettingsConfigDict(
        env_prefix="SATLEDGER_STORAGE_",
        extra="ignore"
    )

    data_dir: Path = Field(
        default=Path("data"),
        description="Directory holding the encrypted documents"
    )
    backup_dir: Path = Field(
        default=Path("backups"),
        description="Directory where backup archives are written"
    )
    kdf_iterations: int = Field(
        default=100_000,
        ge=10_000,
        description="PBKDF2 iterations used to derive the encryption key"
    )
    salt_length: int = Field(
        default=32,
        ge=16,
        le=64,
        description="Length in bytes of freshly generated salts"
    )


class RateFeedSettings(BaseSettings):
    """BTC/KRW price feed configuration."""

    model_config = SettingsConfigDict(
        env_prefix="SATLEDGER_RATES_",
        extra="ignore"
    )

    base_url: str = Field(
        default="https://api.upbit.com/v1",
        description="Base URL of the exchange REST API"
    )
    market: str = Field(
        default="KRW-BTC",
        description="Market code to quote"
    )
    timeout_seconds: float = Field(
        default=5.0,
        gt=0.0,
        le=60.0,
        description="Per-request timeout (lookups must fail fast)"
    )
    max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per lookup before giving up"
    )

    @field_validator('base_url')
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


class LedgerSettings(BaseSettings):
    """Balance and record propagation policies."""

    model_config = SettingsConfigDict(
        env_prefix="SATLEDGER_LEDGER_",
        extra="ignore"
    )

    bitcoin_balance_floor: Optional[int] = Field(
        default=None,
        description="Lowest allowed sats balance; None leaves bitcoin assets unclamped"
    )
    rebalance_on_edit: bool = Field(
        default=False,
        description="Reverse and re-apply linked balance changes when a record is edited or deleted"
    )
    linked_methods: str = Field(
        default="bank,lightning,onchain",
        description="Comma-separated payment/source methods that move a linked asset balance"
    )

    @property
    def linked_methods_set(self) -> frozenset[str]:
        """Get linked methods as a set."""
        return frozenset(
            method.strip().lower()
            for method in self.linked_methods.split(",")
            if method.strip()
        )


class AppSettings(BaseSettings):
    """
    Main application settings.

    Loads configuration from environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    app_environment: str = Field(
        default="development",
        description="Application environment"
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode"
    )


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Sub-settings are loaded lazily to allow partial configuration

    @property
    def storage(self) -> StorageSettings:
        return StorageSettings()

    @property
    def rates(self) -> RateFeedSettings:
        return RateFeedSettings()

    @property
    def ledger(self) -> LedgerSettings:
        return LedgerSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}, plus an
    "<name>_error" entry for every section that failed.
    Useful for startup checks.
    """
    results = {}

    settings = get_settings()

    for name in ("storage", "rates", "ledger", "app"):
        try:
            getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
