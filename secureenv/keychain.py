"""
SecureEnv - Keychain Capability

One interface over the OS credential stores. The `keyring` library
picks the platform backend (macOS Keychain, Windows Credential Locker,
Secret Service) at import time, so nothing here branches on platform.

Entries hold opaque bytes; KeyManager only ever stores derived data
keys here, never a passphrase or master key.
"""

import base64
import binascii
import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

import keyring
from keyring.backends import fail, null
from keyring.errors import KeyringError, PasswordDeleteError

from .errors import KeychainError

logger = logging.getLogger(__name__)

SERVICE_NAME = "secureenv"


class Keychain(ABC):
    """Abstract keychain. Implementations provide platform-specific storage."""

    @abstractmethod
    def store(self, id: str, secret: bytes) -> None:
        """Store or replace the bytes under id."""

    @abstractmethod
    def retrieve(self, id: str) -> Optional[bytes]:
        """Return the bytes stored under id, or None."""

    @abstractmethod
    def delete(self, id: str) -> bool:
        """Remove id. Returns False if nothing was stored."""


class KeyringKeychain(Keychain):
    """Keychain backed by the `keyring` library (base64 text entries)."""

    def __init__(self, service: str = SERVICE_NAME):
        self.service = service

    def store(self, id: str, secret: bytes) -> None:
        encoded = base64.b64encode(secret).decode("ascii")
        try:
            keyring.set_password(self.service, id, encoded)
        except KeyringError as e:
            raise KeychainError(f"Failed to store in keychain: {e}") from e

    def retrieve(self, id: str) -> Optional[bytes]:
        try:
            encoded = keyring.get_password(self.service, id)
        except KeyringError as e:
            raise KeychainError(f"Failed to read keychain: {e}") from e
        if encoded is None:
            return None
        try:
            return base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise KeychainError(f"Keychain entry {id!r} is not valid base64") from e

    def delete(self, id: str) -> bool:
        try:
            keyring.delete_password(self.service, id)
        except PasswordDeleteError:
            return False
        except KeyringError as e:
            raise KeychainError(f"Failed to delete from keychain: {e}") from e
        return True


class MemoryKeychain(Keychain):
    """Process-local keychain, used when the OS store is unwanted."""

    def __init__(self):
        self._entries: Dict[str, bytes] = {}

    def store(self, id: str, secret: bytes) -> None:
        self._entries[id] = bytes(secret)

    def retrieve(self, id: str) -> Optional[bytes]:
        return self._entries.get(id)

    def delete(self, id: str) -> bool:
        return self._entries.pop(id, None) is not None


def default_keychain() -> Optional[Keychain]:
    """
    Return the OS keychain, or None when keyring has no usable backend.

    Callers treat None as "no cache": every unlock prompts.
    """
    try:
        backend = keyring.get_keyring()
    except KeyringError as e:
        logger.warning(f"Keychain unavailable: {e}")
        return None
    if isinstance(backend, (fail.Keyring, null.Keyring)):
        logger.debug("No keyring backend available")
        return None
    logger.debug(f"Using keyring backend {type(backend).__name__}")
    return KeyringKeychain()
