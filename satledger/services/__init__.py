"""Services package."""

from satledger.services.keys import (
    AuthRequiredError,
    EncryptionKeyProvider,
    PasswordKeyProvider,
    StaticKeyProvider,
    derive_key,
    generate_salt,
)
from satledger.services.rates import (
    HistoricalRateProvider,
    RateUnavailableError,
    UpbitRateClient,
)
from satledger.services.storage import (
    BackupArtifact,
    DocumentStoreInterface,
    EncryptedFileStore,
    NotFoundError,
    PersistenceError,
    RestoreDecryptionError,
    RestoreFormatError,
    StorageError,
    UnsupportedFormatError,
)

__all__ = [
    # Keys
    "AuthRequiredError",
    "EncryptionKeyProvider",
    "PasswordKeyProvider",
    "StaticKeyProvider",
    "derive_key",
    "generate_salt",
    # Rate feed
    "HistoricalRateProvider",
    "RateUnavailableError",
    "UpbitRateClient",
    # Storage
    "BackupArtifact",
    "DocumentStoreInterface",
    "EncryptedFileStore",
    "NotFoundError",
    "PersistenceError",
    "RestoreDecryptionError",
    "RestoreFormatError",
    "StorageError",
    "UnsupportedFormatError",
]
