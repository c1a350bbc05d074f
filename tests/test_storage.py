"""
Tests for the encrypted document store and its backups.
"""

import json
import os
from datetime import datetime, timezone

import pytest
from cryptography.fernet import Fernet

from satledger.models.audit import AuditEventType
from satledger.services.keys import generate_salt
from satledger.services.storage import (
    ASSETS_DOCUMENT,
    BACKUP_MARKER,
    DOCUMENT_NAMES,
    LEDGER_DOCUMENT,
    LOANS_DOCUMENT,
    PartialCommitError,
    PersistenceError,
    RestoreDecryptionError,
    RestoreFormatError,
    UnsupportedFormatError,
    encrypted_file,
)


SAMPLE = {
    ASSETS_DOCUMENT: [{"type": "fiat", "name": "Bank", "balance": 1000}],
    LEDGER_DOCUMENT: [],
    LOANS_DOCUMENT: [{"name": "Mortgage"}],
}


async def _fill(store, key):
    for name, value in SAMPLE.items():
        await store.save(name, value, key)


class TestDocuments:
    """Load and save of single documents."""

    @pytest.mark.asyncio
    async def test_save_then_load(self, store, key):
        await store.save(ASSETS_DOCUMENT, SAMPLE[ASSETS_DOCUMENT], key)
        assert await store.load(ASSETS_DOCUMENT, key, []) == SAMPLE[ASSETS_DOCUMENT]

    @pytest.mark.asyncio
    async def test_file_is_not_plaintext(self, store, key):
        await store.save(ASSETS_DOCUMENT, SAMPLE[ASSETS_DOCUMENT], key)
        raw = (store.data_dir / "assets.enc").read_bytes()
        assert b"Bank" not in raw

    @pytest.mark.asyncio
    async def test_missing_document_returns_default(self, store, key):
        assert await store.load(LEDGER_DOCUMENT, key, []) == []

    @pytest.mark.asyncio
    async def test_wrong_key_returns_default_and_audits(self, store, sink, key):
        """Test an undecryptable document reads as empty state."""
        await store.save(ASSETS_DOCUMENT, SAMPLE[ASSETS_DOCUMENT], key)
        assert await store.load(ASSETS_DOCUMENT, Fernet.generate_key(), []) == []
        assert len(sink.of_type(AuditEventType.DOCUMENT_UNREADABLE)) == 1

    @pytest.mark.asyncio
    async def test_unsupported_version_raises(self, store, key):
        store.data_dir.mkdir(parents=True, exist_ok=True)
        envelope = {"format_version": 99, "document": ASSETS_DOCUMENT, "data": []}
        (store.data_dir / "assets.enc").write_bytes(
            Fernet(key).encrypt(json.dumps(envelope).encode())
        )
        with pytest.raises(UnsupportedFormatError):
            await store.load(ASSETS_DOCUMENT, key, [])

    @pytest.mark.asyncio
    async def test_invalid_document_name(self, store, key):
        with pytest.raises(ValueError):
            await store.save("../escape", [], key)

    @pytest.mark.asyncio
    async def test_no_temp_files_left_behind(self, store, key):
        await _fill(store, key)
        assert not list(store.data_dir.glob("*.tmp"))


class TestBackup:
    """Backup file creation and reading."""

    @pytest.mark.asyncio
    async def test_backup_round_trip(self, store, key):
        await _fill(store, key)
        artifact = await store.backup(key)

        assert artifact.filename.startswith("satledger_backup_")
        assert artifact.filename.endswith(".enc")
        assert artifact.documents == list(DOCUMENT_NAMES)
        assert await store.read_backup(artifact.path, key) == SAMPLE

    @pytest.mark.asyncio
    async def test_backups_never_overwrite_each_other(self, store, key, monkeypatch):
        """Test two backups taken at the same instant are both kept."""
        monkeypatch.setattr(
            encrypted_file, "utcnow", lambda: datetime(2024, 6, 1, 9, 30, tzinfo=timezone.utc)
        )
        await _fill(store, key)
        first = await store.backup(key)
        await store.save(ASSETS_DOCUMENT, [], key)

        second = await store.backup(key)

        assert first.filename == "satledger_backup_2024-06-01_093000_000000.enc"
        assert second.filename == "satledger_backup_2024-06-01_093000_000000-1.enc"
        assert (await store.read_backup(first.path, key))[ASSETS_DOCUMENT] == SAMPLE[ASSETS_DOCUMENT]
        assert (await store.read_backup(second.path, key))[ASSETS_DOCUMENT] == []

    @pytest.mark.asyncio
    async def test_backup_name_carries_the_time(self, store, key):
        first = await store.backup(key)
        second = await store.backup(key)
        assert first.path != second.path
        assert len(list(store.backup_dir.glob("satledger_backup_*.enc"))) == 2

    @pytest.mark.asyncio
    async def test_backup_of_empty_store_has_every_document(self, store, key):
        artifact = await store.backup(key)
        documents = await store.read_backup(artifact.path, key)
        assert documents == {name: [] for name in DOCUMENT_NAMES}

    @pytest.mark.asyncio
    async def test_salt_in_header(self, store, key):
        salt = generate_salt()
        artifact = await store.backup(key, salt=salt)
        assert artifact.path.read_bytes().startswith(BACKUP_MARKER + salt.hex().encode())
        assert await store.read_backup_salt(artifact.path) == salt

    @pytest.mark.asyncio
    async def test_no_salt(self, store, key):
        artifact = await store.backup(key)
        assert await store.read_backup_salt(artifact.path) is None

    @pytest.mark.asyncio
    async def test_wrong_key(self, store, key):
        artifact = await store.backup(key)
        with pytest.raises(RestoreDecryptionError):
            await store.read_backup(artifact.path, Fernet.generate_key())

    @pytest.mark.asyncio
    async def test_wrong_extension(self, store, key, tmp_path):
        artifact = await store.backup(key)
        renamed = tmp_path / "backup.json"
        renamed.write_bytes(artifact.path.read_bytes())
        with pytest.raises(RestoreFormatError):
            await store.read_backup(renamed, key)

    @pytest.mark.asyncio
    async def test_missing_marker(self, store, key, tmp_path):
        path = tmp_path / "foreign.enc"
        path.write_bytes(Fernet(key).encrypt(b"{}"))
        with pytest.raises(RestoreFormatError):
            await store.read_backup(path, key)

    @pytest.mark.asyncio
    async def test_missing_file(self, store, key, tmp_path):
        with pytest.raises(RestoreFormatError):
            await store.read_backup(tmp_path / "nope.enc", key)

    @pytest.mark.asyncio
    async def test_bundle_without_all_documents(self, store, key, tmp_path):
        bundle = {"format_version": 1, "documents": {ASSETS_DOCUMENT: []}}
        path = tmp_path / "partial.enc"
        path.write_bytes(BACKUP_MARKER + b"\n" + Fernet(key).encrypt(json.dumps(bundle).encode()))
        with pytest.raises(RestoreFormatError):
            await store.read_backup(path, key)

    @pytest.mark.asyncio
    async def test_backup_version_checked(self, store, key, tmp_path):
        bundle = {"format_version": 2, "documents": {name: [] for name in DOCUMENT_NAMES}}
        path = tmp_path / "future.enc"
        path.write_bytes(BACKUP_MARKER + b"\n" + Fernet(key).encrypt(json.dumps(bundle).encode()))
        with pytest.raises(UnsupportedFormatError):
            await store.read_backup(path, key)

    @pytest.mark.asyncio
    async def test_restore_writes_documents(self, store, key):
        await _fill(store, key)
        artifact = await store.backup(key)
        await store.save(ASSETS_DOCUMENT, [], key)

        await store.restore(artifact.path, key)

        assert await store.load(ASSETS_DOCUMENT, key, None) == SAMPLE[ASSETS_DOCUMENT]


class TestMaintenance:
    """Integrity check and key rotation."""

    @pytest.mark.asyncio
    async def test_check_integrity(self, store, key):
        await _fill(store, key)
        assert await store.check_integrity(key) == []
        (store.data_dir / "ledger.enc").write_bytes(b"garbage")
        assert await store.check_integrity(key) == [LEDGER_DOCUMENT]

    @pytest.mark.asyncio
    async def test_reencrypt_all(self, store, key):
        await _fill(store, key)
        new_key = Fernet.generate_key()

        rewritten = await store.reencrypt_all(key, new_key)

        assert rewritten == list(DOCUMENT_NAMES)
        assert await store.load(LOANS_DOCUMENT, new_key, None) == SAMPLE[LOANS_DOCUMENT]
        assert await store.check_integrity(new_key) == []

    @pytest.mark.asyncio
    async def test_write_documents_commits_all(self, store, key):
        await store.write_documents(SAMPLE, key)
        for name, value in SAMPLE.items():
            assert await store.load(name, key, None) == value

    @pytest.mark.asyncio
    async def test_interrupted_commit_names_committed_documents(self, store, key, monkeypatch):
        """Test a move failing partway reports which documents were replaced."""
        await _fill(store, key)
        replacement = {
            ASSETS_DOCUMENT: [],
            LEDGER_DOCUMENT: [{"type": "expense"}],
            LOANS_DOCUMENT: [],
        }
        real_replace = os.replace
        moves = []

        def failing_replace(src, dst):
            moves.append(dst)
            if len(moves) == 2:
                raise OSError("device removed")
            real_replace(src, dst)

        monkeypatch.setattr(encrypted_file.os, "replace", failing_replace)

        with pytest.raises(PartialCommitError) as exc_info:
            await store.write_documents(replacement, key)

        assert isinstance(exc_info.value, PersistenceError)
        assert exc_info.value.committed == [ASSETS_DOCUMENT]
        assert ASSETS_DOCUMENT in str(exc_info.value)
        assert await store.load(ASSETS_DOCUMENT, key, None) == []
        assert await store.load(LEDGER_DOCUMENT, key, None) == SAMPLE[LEDGER_DOCUMENT]
        assert not list(store.data_dir.glob("*.tmp"))
