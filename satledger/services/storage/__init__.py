"""
Storage Services Package

Provides the abstract document store interface and the encrypted file
implementation. Designed so the backend is swappable.
"""

from satledger.services.storage.interface import (
    ASSETS_DOCUMENT,
    DOCUMENT_NAMES,
    LEDGER_DOCUMENT,
    LOANS_DOCUMENT,
    BackupArtifact,
    DocumentStoreInterface,
    NotFoundError,
    PartialCommitError,
    PersistenceError,
    RestoreDecryptionError,
    RestoreFormatError,
    StorageError,
    UnsupportedFormatError,
)
from satledger.services.storage.encrypted_file import (
    BACKUP_MARKER,
    EncryptedFileStore,
)

__all__ = [
    # Interfaces
    "BackupArtifact",
    "DocumentStoreInterface",
    # Document names
    "ASSETS_DOCUMENT",
    "DOCUMENT_NAMES",
    "LEDGER_DOCUMENT",
    "LOANS_DOCUMENT",
    # Exceptions
    "NotFoundError",
    "PartialCommitError",
    "PersistenceError",
    "RestoreDecryptionError",
    "RestoreFormatError",
    "StorageError",
    "UnsupportedFormatError",
    # Encrypted file implementation
    "BACKUP_MARKER",
    "EncryptedFileStore",
]
