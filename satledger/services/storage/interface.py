"""
Abstract Storage Interface

DESIGN DECISION: We define an abstract interface for document storage.
This allows us to:
1. Swap the encrypted file store for another backend later
2. Inject failing stores in tests to prove no dependent side effect runs
3. Keep the ledger logic free of any file or crypto details

The interface is intentionally small: named JSON documents replaced
wholesale on save, plus backup and restore of the whole set. No business
logic lives behind it.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Union

from pydantic import BaseModel, Field

from satledger.models.common import utcnow


# Every document the ledger persists. Backups always bundle all of them.
ASSETS_DOCUMENT = "assets"
LEDGER_DOCUMENT = "ledger"
LOANS_DOCUMENT = "loans"
DOCUMENT_NAMES = (ASSETS_DOCUMENT, LEDGER_DOCUMENT, LOANS_DOCUMENT)

FORMAT_VERSION = 1
SUPPORTED_FORMAT_VERSIONS = frozenset({1})


class BackupArtifact(BaseModel):
    """A backup file written by the store."""

    path: Path
    filename: str
    created_at: datetime = Field(default_factory=utcnow)
    format_version: int = FORMAT_VERSION
    documents: list[str] = Field(default_factory=list)


class DocumentStoreInterface(ABC):
    """
    Abstract interface for encrypted document storage.

    Any storage implementation must implement these methods.
    """

    @abstractmethod
    async def load(self, name: str, key: bytes, default: Any) -> Any:
        """
        Load a named document.

        Args:
            name: Document name (e.g., "assets")
            key: Encryption key
            default: Value returned when the document is missing or
                     cannot be decrypted (first run behaves as empty state)

        Returns:
            The decoded JSON value

        Raises:
            UnsupportedFormatError: Document decrypted but its format
                                    version is not supported
            PersistenceError: The backend could not be read at all
        """
        pass

    @abstractmethod
    async def save(self, name: str, value: Any, key: bytes) -> None:
        """
        Replace a named document with a new value.

        Raises:
            PersistenceError: If the write failed. Callers must treat this
                              as "in-memory state diverged from durable
                              state" and skip dependent mutations.
        """
        pass

    @abstractmethod
    async def backup(self, key: bytes, salt: Optional[bytes] = None) -> BackupArtifact:
        """
        Bundle every document into one encrypted backup file.

        Args:
            key: Encryption key
            salt: Key-derivation salt written into the plaintext header so
                  the key can be re-derived on another device

        Raises:
            PersistenceError: A document could not be read or the file
                              could not be written
        """
        pass

    @abstractmethod
    async def read_backup(self, path: Union[str, Path], key: bytes) -> dict[str, Any]:
        """
        Read and fully validate a backup file without writing anything.

        Returns:
            Mapping of document name to decoded value

        Raises:
            RestoreFormatError: Wrong extension, missing marker or bad shape
            RestoreDecryptionError: The key does not decrypt the file
            UnsupportedFormatError: Bundle format version is not supported
        """
        pass

    @abstractmethod
    async def write_documents(self, documents: dict[str, Any], key: bytes) -> None:
        """
        Replace several documents at once.

        Every document is staged before any is replaced.

        Raises:
            PersistenceError: If any document could not be staged; in that
                              case none of the documents are replaced
            PartialCommitError: Staging succeeded but moving the documents
                                into place failed partway
        """
        pass

    @abstractmethod
    async def read_backup_salt(self, path: Union[str, Path]) -> Optional[bytes]:
        """Key-derivation salt from a backup header, without decrypting."""
        pass

    @abstractmethod
    async def check_integrity(self, key: bytes) -> list[str]:
        """Names of stored documents that cannot be decrypted with ``key``."""
        pass

    @abstractmethod
    async def reencrypt_all(self, old_key: bytes, new_key: bytes) -> list[str]:
        """Re-encrypt every stored document (password change)."""
        pass

    async def restore(self, path: Union[str, Path], key: bytes) -> dict[str, Any]:
        """
        Validate a backup and then replace every document with its contents.

        Returns:
            The restored documents
        """
        documents = await self.read_backup(path, key)
        await self.write_documents(documents, key)
        return documents


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class PersistenceError(StorageError):
    """A document could not be written or read from the backend."""
    pass


class PartialCommitError(PersistenceError):
    """
    A multi-document write stopped partway.

    ``committed`` lists the documents already holding their new value; the
    rest still hold the old one.
    """

    def __init__(self, committed: list[str], cause: Exception):
        self.committed = committed
        super().__init__(
            f"Write stopped after committing {committed or 'nothing'}: {cause}"
        )


class NotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class UnsupportedFormatError(StorageError):
    """A decrypted document or backup has an unsupported format version."""

    def __init__(self, version: Any):
        self.version = version
        super().__init__(f"Unsupported format version: {version!r}")


class RestoreFormatError(StorageError):
    """A backup file is malformed and was rejected before any change."""
    pass


class RestoreDecryptionError(RestoreFormatError):
    """A backup file could not be decrypted with the supplied key."""
    pass
