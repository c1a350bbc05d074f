"""
Encrypted File Storage Implementation

DESIGN DECISION: Each named document is one file in the data directory:
    <data_dir>/<name>.enc  =  Fernet token of
    {"format_version": 1, "document": <name>, "data": <value>}

Fernet (AES-CBC with HMAC authentication, from the ``cryptography``
library) rejects a wrong key or a tampered file outright, so "undecryptable"
is always detected and never yields garbage.

Writes go to a temp file that is moved over the target with os.replace,
so a document is either the old value or the new one, never half written.

Backups are named satledger_backup_<UTC date>_<time>_<microseconds>.enc and
never overwrite an earlier one.

Backup file layout:
    SATLEDGER_BACKUP:<salt hex>\\n
    <Fernet token of {"format_version", "exported_at", "documents": {...}}>
"""

import asyncio
import json
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Union

from cryptography.fernet import Fernet, InvalidToken

from satledger.audit import AuditLogger
from satledger.config import get_settings
from satledger.models.audit import AuditEventBuilder
from satledger.models.common import utcnow
from satledger.services.storage.interface import (
    DOCUMENT_NAMES,
    FORMAT_VERSION,
    SUPPORTED_FORMAT_VERSIONS,
    BackupArtifact,
    DocumentStoreInterface,
    PartialCommitError,
    PersistenceError,
    RestoreDecryptionError,
    RestoreFormatError,
    UnsupportedFormatError,
)


DOCUMENT_SUFFIX = ".enc"
BACKUP_SUFFIX = ".enc"
BACKUP_MARKER = b"SATLEDGER_BACKUP:"
BACKUP_PREFIX = "satledger_backup_"


class _Undecryptable(Exception):
    """Internal: a document exists but cannot be decrypted or parsed."""
    pass


class _WrongKey(_Undecryptable):
    """Internal: the key does not authenticate the token."""
    pass


def _encrypt(value: Any, key: bytes) -> bytes:
    return Fernet(key).encrypt(json.dumps(value).encode("utf-8"))


def _decrypt(token: bytes, key: bytes) -> Any:
    try:
        plaintext = Fernet(key).decrypt(token)
    except (InvalidToken, ValueError) as e:
        raise _WrongKey("decryption failed") from e
    try:
        return json.loads(plaintext)
    except ValueError as e:
        raise _Undecryptable("decrypted payload is not JSON") from e


def _check_version(envelope: Any) -> None:
    if not isinstance(envelope, dict):
        raise _Undecryptable("envelope is not an object")
    version = envelope.get("format_version")
    if version not in SUPPORTED_FORMAT_VERSIONS:
        raise UnsupportedFormatError(version)


class EncryptedFileStore(DocumentStoreInterface):
    """
    Encrypted file implementation of document storage.

    Documents are whole values; there are no partial or append writes.
    """

    def __init__(
        self,
        data_dir: Optional[Path] = None,
        backup_dir: Optional[Path] = None,
        audit_logger: Optional[AuditLogger] = None,
        documents: tuple[str, ...] = DOCUMENT_NAMES,
    ):
        settings = get_settings().storage
        self._data_dir = Path(data_dir or settings.data_dir)
        self._backup_dir = Path(backup_dir or settings.backup_dir)
        self._audit = audit_logger or AuditLogger()
        self._documents = documents

    @property
    def data_dir(self) -> Path:
        return self._data_dir

    @property
    def backup_dir(self) -> Path:
        return self._backup_dir

    def _path(self, name: str) -> Path:
        if not name or "/" in name or "\\" in name or name.startswith("."):
            raise ValueError(f"Invalid document name: {name!r}")
        return self._data_dir / f"{name}{DOCUMENT_SUFFIX}"

    # -------------------------------------------------------------------------
    # Low-level file operations (run in a worker thread)
    # -------------------------------------------------------------------------

    @staticmethod
    def _write_atomic(path: Path, payload: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_bytes(payload)
        os.replace(tmp, path)

    @staticmethod
    def _stage_and_commit(staged: list[tuple[Path, bytes]]) -> None:
        """
        Write every payload to a temp file, then move them all into place.

        Raises:
            OSError: A temp file could not be written; nothing was replaced
            PartialCommitError: A move failed; names the documents already
                                replaced
        """
        temps: list[tuple[Path, Path]] = []
        try:
            for path, payload in staged:
                path.parent.mkdir(parents=True, exist_ok=True)
                tmp = path.with_name(path.name + ".tmp")
                tmp.write_bytes(payload)
                temps.append((tmp, path))
        except OSError:
            for tmp, _ in temps:
                tmp.unlink(missing_ok=True)
            raise
        committed: list[str] = []
        try:
            for tmp, path in temps:
                os.replace(tmp, path)
                committed.append(path.stem)
        except OSError as e:
            for tmp, _ in temps[len(committed):]:
                tmp.unlink(missing_ok=True)
            raise PartialCommitError(committed, e) from e

    async def _read_bytes(self, path: Path) -> bytes:
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as e:
            raise PersistenceError(f"Failed to read {path.name}: {e}") from e

    async def _read_document(self, name: str, key: bytes) -> Any:
        """
        Strict read: raises _Undecryptable instead of returning a default.
        Returns None if the document does not exist.
        """
        path = self._path(name)
        if not path.exists():
            return None
        envelope = _decrypt(await self._read_bytes(path), key)
        _check_version(envelope)
        if "data" not in envelope:
            raise _Undecryptable("envelope has no data")
        return envelope["data"]

    def _envelope(self, name: str, value: Any) -> dict:
        return {"format_version": FORMAT_VERSION, "document": name, "data": value}

    # -------------------------------------------------------------------------
    # DocumentStoreInterface
    # -------------------------------------------------------------------------

    async def load(self, name: str, key: bytes, default: Any) -> Any:
        """Load a document; missing or undecryptable returns ``default``."""
        try:
            value = await self._read_document(name, key)
        except _Undecryptable as e:
            await self._audit.log(AuditEventBuilder.document_unreadable(name, str(e)))
            return default
        return default if value is None else value

    async def save(self, name: str, value: Any, key: bytes) -> None:
        """Encrypt and atomically replace a document."""
        path = self._path(name)
        try:
            payload = _encrypt(self._envelope(name, value), key)
        except (TypeError, ValueError) as e:
            raise PersistenceError(f"Failed to encode {name}: {e}") from e
        try:
            await asyncio.to_thread(self._write_atomic, path, payload)
        except OSError as e:
            raise PersistenceError(f"Failed to save {name}: {e}") from e

    async def backup(self, key: bytes, salt: Optional[bytes] = None) -> BackupArtifact:
        """Bundle every known document into a single encrypted file."""
        documents: dict[str, Any] = {}
        for name in self._documents:
            try:
                value = await self._read_document(name, key)
            except _Undecryptable as e:
                raise PersistenceError(f"Cannot back up unreadable document {name}: {e}") from e
            documents[name] = [] if value is None else value

        exported_at = utcnow()
        bundle = {
            "format_version": FORMAT_VERSION,
            "exported_at": exported_at.isoformat(),
            "documents": documents,
        }
        try:
            token = _encrypt(bundle, key)
        except (TypeError, ValueError) as e:
            raise PersistenceError(f"Failed to encode backup: {e}") from e

        header = BACKUP_MARKER + (salt.hex().encode("ascii") if salt else b"") + b"\n"
        path = self._backup_path(exported_at)
        filename = path.name
        try:
            await asyncio.to_thread(self._write_atomic, path, header + token)
        except OSError as e:
            raise PersistenceError(f"Failed to write backup {filename}: {e}") from e

        await self._audit.log(AuditEventBuilder.backup_created(filename, list(documents)))
        return BackupArtifact(
            path=path,
            filename=filename,
            created_at=exported_at,
            documents=list(documents),
        )

    def _backup_path(self, exported_at: datetime) -> Path:
        """Timestamped path in the backup directory; never an existing file."""
        stamp = exported_at.strftime("%Y-%m-%d_%H%M%S_%f")
        path = self._backup_dir / f"{BACKUP_PREFIX}{stamp}{BACKUP_SUFFIX}"
        n = 1
        while path.exists():
            path = self._backup_dir / f"{BACKUP_PREFIX}{stamp}-{n}{BACKUP_SUFFIX}"
            n += 1
        return path

    @staticmethod
    def _split_backup(path: Path, content: bytes) -> tuple[bytes, bytes]:
        """Split a backup file into (salt hex, token); checks the marker."""
        if path.suffix != BACKUP_SUFFIX:
            raise RestoreFormatError(f"Not a backup file: {path.name}")
        if not content.startswith(BACKUP_MARKER):
            raise RestoreFormatError(f"Backup marker missing: {path.name}")
        header, sep, token = content.partition(b"\n")
        if not sep or not token.strip():
            raise RestoreFormatError(f"Backup has no payload: {path.name}")
        return header[len(BACKUP_MARKER):].strip(), token.strip()

    async def _read_backup_file(self, path: Path) -> bytes:
        if not path.is_file():
            raise RestoreFormatError(f"Backup file not found: {path}")
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as e:
            raise RestoreFormatError(f"Backup file unreadable: {e}") from e

    async def read_backup_salt(self, path: Union[str, Path]) -> Optional[bytes]:
        """Return the key-derivation salt stored in a backup header."""
        path = Path(path)
        salt_hex, _ = self._split_backup(path, await self._read_backup_file(path))
        if not salt_hex:
            return None
        try:
            return bytes.fromhex(salt_hex.decode("ascii"))
        except ValueError as e:
            raise RestoreFormatError(f"Backup header has an invalid salt: {e}") from e

    async def read_backup(self, path: Union[str, Path], key: bytes) -> dict[str, Any]:
        """Decrypt and validate a backup; nothing is written."""
        path = Path(path)
        _, token = self._split_backup(path, await self._read_backup_file(path))

        try:
            bundle = _decrypt(token, key)
        except _WrongKey as e:
            raise RestoreDecryptionError(
                f"Backup {path.name} cannot be decrypted with this key"
            ) from e
        except _Undecryptable as e:
            raise RestoreFormatError(f"Backup {path.name} is corrupt: {e}") from e

        if not isinstance(bundle, dict):
            raise RestoreFormatError("Backup bundle is not an object")
        if bundle.get("format_version") not in SUPPORTED_FORMAT_VERSIONS:
            raise UnsupportedFormatError(bundle.get("format_version"))

        documents = bundle.get("documents")
        if not isinstance(documents, dict):
            raise RestoreFormatError("Backup bundle has no documents")
        for name in self._documents:
            if not isinstance(documents.get(name), list):
                raise RestoreFormatError(f"Backup document {name!r} is missing or not a list")

        return {name: documents[name] for name in self._documents}

    async def write_documents(self, documents: dict[str, Any], key: bytes) -> None:
        """Stage every document, then commit them together."""
        staged: list[tuple[Path, bytes]] = []
        for name, value in documents.items():
            try:
                staged.append((self._path(name), _encrypt(self._envelope(name, value), key)))
            except (TypeError, ValueError) as e:
                raise PersistenceError(f"Failed to encode {name}: {e}") from e
        try:
            await asyncio.to_thread(self._stage_and_commit, staged)
        except OSError as e:
            raise PersistenceError(f"Failed to write documents: {e}") from e

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    async def check_integrity(self, key: bytes) -> list[str]:
        """
        Names of documents that exist but cannot be decrypted.

        An empty list means the data directory is healthy.
        """
        corrupted = []
        for name in self._documents:
            try:
                await self._read_document(name, key)
            except _Undecryptable:
                corrupted.append(name)
        return corrupted

    async def reencrypt_all(self, old_key: bytes, new_key: bytes) -> list[str]:
        """
        Re-encrypt every existing document with a new key (password change).

        Returns the names of the re-encrypted documents.

        Raises:
            PersistenceError: A document could not be decrypted with the old
                              key; nothing has been rewritten in that case
        """
        documents: dict[str, Any] = {}
        for name in self._documents:
            try:
                value = await self._read_document(name, old_key)
            except _Undecryptable as e:
                raise PersistenceError(f"Failed to re-encrypt {name}: {e}") from e
            if value is not None:
                documents[name] = value
        await self.write_documents(documents, new_key)
        return list(documents)
