"""
Shared fixtures.

No test touches the network or the real data directory: the store lives in
a temporary directory and the rate feed is an in-memory fake.
"""

from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Any

import pytest
from cryptography.fernet import Fernet

from satledger.audit import AuditLogger
from satledger.config import LedgerSettings, get_settings
from satledger.engine import LedgerEngine
from satledger.ledger import AssetLedger, LoanBook, TransactionRecorder
from satledger.models.audit import AuditEvent, AuditEventType
from satledger.services.keys import StaticKeyProvider
from satledger.services.rates import HistoricalRateProvider, RateUnavailableError
from satledger.services.storage import EncryptedFileStore, PersistenceError


# 1 BTC = 100,000,000 KRW, so 1 KRW = 1 sat
PAR_RATE = Decimal("100000000")


class FakeRateProvider(HistoricalRateProvider):
    """Rate feed that can be switched offline."""

    def __init__(self, rate: Decimal = PAR_RATE, available: bool = True):
        self.rate = rate
        self.available = available
        self.calls: list[date] = []

    async def fetch(self, day: date) -> Decimal:
        self.calls.append(day)
        if not self.available:
            raise RateUnavailableError("offline")
        return self.rate

    async def fetch_current(self) -> Decimal:
        if not self.available:
            raise RateUnavailableError("offline")
        return self.rate


class FlakyStore(EncryptedFileStore):
    """Encrypted store whose saves can be made to fail per document."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.failing: set[str] = set()

    async def save(self, name: str, value: Any, key: bytes) -> None:
        if name in self.failing:
            raise PersistenceError(f"disk full while saving {name}")
        await super().save(name, value, key)


class RecordingSink:
    """Audit sink keeping every event."""

    def __init__(self):
        self.events: list[AuditEvent] = []

    async def __call__(self, event: AuditEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: AuditEventType) -> list[AuditEvent]:
        return [e for e in self.events if e.event_type == event_type]


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch, tmp_path: Path):
    """Point every settings lookup at the temporary directory."""
    monkeypatch.setenv("SATLEDGER_STORAGE_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("SATLEDGER_STORAGE_BACKUP_DIR", str(tmp_path / "backups"))
    monkeypatch.setenv("SATLEDGER_STORAGE_KDF_ITERATIONS", "10000")
    for name in (
        "SATLEDGER_LEDGER_BITCOIN_BALANCE_FLOOR",
        "SATLEDGER_LEDGER_REBALANCE_ON_EDIT",
        "SATLEDGER_LEDGER_LINKED_METHODS",
    ):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def key() -> bytes:
    return Fernet.generate_key()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def audit_logger(sink: RecordingSink) -> AuditLogger:
    return AuditLogger(sink)


@pytest.fixture
def store(tmp_path: Path, audit_logger: AuditLogger) -> FlakyStore:
    return FlakyStore(tmp_path / "data", tmp_path / "backups", audit_logger)


@pytest.fixture
def rates() -> FakeRateProvider:
    return FakeRateProvider()


@pytest.fixture
def ledger_settings() -> LedgerSettings:
    return LedgerSettings()


@pytest.fixture
def asset_ledger(store, audit_logger, ledger_settings) -> AssetLedger:
    return AssetLedger(store, audit_logger, ledger_settings)


@pytest.fixture
def recorder(store, asset_ledger, rates, audit_logger, ledger_settings) -> TransactionRecorder:
    return TransactionRecorder(store, asset_ledger, rates, audit_logger, ledger_settings)


@pytest.fixture
def loan_book(store, audit_logger) -> LoanBook:
    return LoanBook(store, audit_logger)


@pytest.fixture
def key_provider(key: bytes) -> StaticKeyProvider:
    return StaticKeyProvider(key)


@pytest.fixture
def engine(key_provider, store, rates, audit_logger, ledger_settings) -> LedgerEngine:
    return LedgerEngine(
        key_provider,
        store=store,
        rates=rates,
        audit_logger=audit_logger,
        settings=ledger_settings,
    )
