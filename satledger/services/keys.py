"""
Encryption Key Management

The encryption key is derived from the user's password:
- Algorithm: PBKDF2-HMAC-SHA256
- Output: 32 bytes, urlsafe-base64 encoded (a Fernet key)
- Salt: random, stored beside the data and in every backup header

CRITICAL: When no key is available the engine refuses every mutating
operation. It never writes unencrypted data and never falls back to a
default key.
"""

import base64
import os
from abc import ABC, abstractmethod
from typing import Optional

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from satledger.config import get_settings


class AuthRequiredError(Exception):
    """No encryption key is available; the user must unlock first."""

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"Authentication required for {operation}")


def generate_salt(length: Optional[int] = None) -> bytes:
    """Generate a random salt of the configured length."""
    return os.urandom(length or get_settings().storage.salt_length)


def derive_key(password: str, salt: bytes, iterations: Optional[int] = None) -> bytes:
    """
    Derive a Fernet key from a password.

    Args:
        password: User password
        salt: Salt bytes (see generate_salt)
        iterations: PBKDF2 iterations; defaults to the configured value

    Returns:
        urlsafe-base64 encoded 32 byte key
    """
    if not password:
        raise ValueError("Password must not be empty")

    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=iterations or get_settings().storage.kdf_iterations,
    )
    return base64.urlsafe_b64encode(kdf.derive(password.encode("utf-8")))


class EncryptionKeyProvider(ABC):
    """Source of the current encryption key."""

    @abstractmethod
    def get(self) -> Optional[bytes]:
        """
        Return the key, or None when the user has not unlocked the ledger.
        """
        pass

    def require(self, operation: str) -> bytes:
        """Return the key or raise AuthRequiredError."""
        key = self.get()
        if not key:
            raise AuthRequiredError(operation)
        return key


class StaticKeyProvider(EncryptionKeyProvider):
    """Provider holding an already derived key (or none)."""

    def __init__(self, key: Optional[bytes] = None):
        self._key = key

    def get(self) -> Optional[bytes]:
        return self._key

    def set(self, key: Optional[bytes]) -> None:
        self._key = key


class PasswordKeyProvider(EncryptionKeyProvider):
    """
    Provider that derives the key from a password on unlock and forgets it
    on lock.
    """

    def __init__(self, salt: bytes, iterations: Optional[int] = None):
        self.salt = salt
        self._iterations = iterations
        self._key: Optional[bytes] = None

    def unlock(self, password: str) -> bytes:
        self._key = derive_key(password, self.salt, self._iterations)
        return self._key

    def lock(self) -> None:
        self._key = None

    @property
    def is_unlocked(self) -> bool:
        return self._key is not None

    def get(self) -> Optional[bytes]:
        return self._key
