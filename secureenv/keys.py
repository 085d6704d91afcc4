"""
SecureEnv - Key Management

Turns a passphrase into usable key material and checks it against the
store's verification artifact. Neither the passphrase nor any raw key
is ever written to the store; the keychain cache only ever sees the
derived data key, scoped to one store path.
"""

import base64
import binascii
import hmac
import json
import logging
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

from . import crypto
from .crypto import CryptoEngine, KeyMaterial
from .errors import (
    AlreadyInitializedError,
    AuthError,
    CorruptionError,
    KeychainError,
    NotInitializedError,
    ValidationError,
)
from .keychain import Keychain
from .storage import SCHEMA_VERSION, StoreHandle
from .vault import reencrypt_all

logger = logging.getLogger(__name__)

MIN_PASSPHRASE_LENGTH = 8

KEY_METADATA = ("kdf_salt", "passphrase_verification")


def validate_passphrase(passphrase: str) -> None:
    """Reject passphrases that are empty or too short."""
    if not isinstance(passphrase, str) or not passphrase:
        raise ValidationError("Passphrase cannot be empty")
    if len(passphrase) < MIN_PASSPHRASE_LENGTH:
        raise ValidationError(
            f"Passphrase must be at least {MIN_PASSPHRASE_LENGTH} characters"
        )


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class KeyManager:
    """
    Derives, verifies and caches store key material.

    Usage:
        km = KeyManager(handle, keychain=default_keychain())
        with km.initialize("correct-horse") as key:   # new store
            ...
        with km.unlock("correct-horse") as key:       # later
            engine = CryptoEngine(key)
    """

    def __init__(
        self,
        handle: StoreHandle,
        keychain: Optional[Keychain] = None,
        kdf_params: Optional[Dict[str, int]] = None,
    ):
        self.handle = handle
        self.keychain = keychain
        self.kdf_params = crypto.validate_kdf_params(kdf_params or crypto.default_kdf_params())

    @property
    def cache_id(self) -> str:
        """Keychain entry id, unique per store file."""
        return f"store:{self.handle.path}"

    def is_initialized(self) -> bool:
        meta = self.handle.all_meta()
        return any(k in meta for k in KEY_METADATA)

    def initialize(self, passphrase: str) -> KeyMaterial:
        """
        Set up a new store.

        Generates a salt, derives the key and persists salt, KDF
        parameters and verification artifact in one transaction.

        Raises:
            ValidationError: Passphrase too short
            AlreadyInitializedError: Metadata already holds key fields
        """
        validate_passphrase(passphrase)
        if self.is_initialized():
            raise AlreadyInitializedError(f"Store at {self.handle.path} is already initialized")

        salt = crypto.generate_salt()
        material = crypto.derive_key_material(passphrase, salt, self.kdf_params)
        try:
            verification = crypto.compute_verification(material.key)
            with self.handle.transaction() as conn:
                placeholders = ",".join("?" for _ in KEY_METADATA)
                existing = conn.execute(
                    f"SELECT key FROM metadata WHERE key IN ({placeholders})", KEY_METADATA
                ).fetchone()
                if existing:
                    raise AlreadyInitializedError(
                        f"Store at {self.handle.path} is already initialized"
                    )
                self._write_key_metadata(conn, salt, self.kdf_params, verification)
                self.handle.set_meta(conn, "schema_version", str(SCHEMA_VERSION))
                self.handle.set_meta(conn, "created_at", _utcnow())
        except BaseException:
            material.wipe()
            raise

        logger.info(f"Initialized store {self.handle.path}")
        return material

    def unlock(self, passphrase: str) -> KeyMaterial:
        """
        Re-derive the key and check it against the stored artifact.

        The comparison is constant-time.

        Raises:
            NotInitializedError: Store has no key metadata
            CorruptionError: Stored parameters are malformed
            AuthError: Wrong passphrase
        """
        salt, params, verification = self._load_key_params()
        material = crypto.derive_key_material(passphrase, salt, params)
        if not self._matches(material, verification):
            material.wipe()
            raise AuthError("Invalid passphrase")
        logger.debug(f"Unlocked store {self.handle.path}")
        return material

    def verify(self, material: KeyMaterial) -> bool:
        """Check key material (e.g. from the cache) against the store."""
        _, _, verification = self._load_key_params()
        return self._matches(material, verification)

    def rotate(self, old_passphrase: str, new_passphrase: str) -> KeyMaterial:
        """
        Change the passphrase.

        Every current and historical value is re-encrypted under the new
        key and the metadata rewritten in a single transaction; either
        all of it lands or none of it does.

        Returns:
            Key material for the new passphrase
        """
        validate_passphrase(new_passphrase)
        new_salt = crypto.generate_salt()

        with self.unlock(old_passphrase) as old_material:
            new_material = crypto.derive_key_material(new_passphrase, new_salt, self.kdf_params)
            try:
                verification = crypto.compute_verification(new_material.key)
                with self.handle.transaction() as conn:
                    count = reencrypt_all(
                        conn, CryptoEngine(old_material), CryptoEngine(new_material)
                    )
                    self._write_key_metadata(conn, new_salt, self.kdf_params, verification)
                    self.handle.set_meta(conn, "rotated_at", _utcnow())
            except BaseException:
                new_material.wipe()
                raise

        logger.info(f"Rotated passphrase for {self.handle.path} ({count} values re-encrypted)")
        self.clear_cache()
        return new_material

    # =========================================================================
    # Keychain cache
    # =========================================================================

    def cache_key(self, material: KeyMaterial) -> bool:
        """Save the data key in the keychain. Returns False if unavailable."""
        if self.keychain is None:
            return False
        try:
            self.keychain.store(self.cache_id, bytes(material.key))
        except KeychainError as e:
            logger.warning(f"Could not cache key: {e}")
            return False
        logger.debug(f"Cached key for {self.handle.path}")
        return True

    def fetch_cached_key(self) -> Optional[KeyMaterial]:
        """
        Load a cached data key for this store.

        Returns None when there is no keychain, no entry, or the entry no
        longer matches the store (stale entries are removed).
        """
        if self.keychain is None:
            return None
        try:
            raw = self.keychain.retrieve(self.cache_id)
        except KeychainError as e:
            logger.warning(f"Could not read keychain: {e}")
            return None
        if raw is None:
            return None

        try:
            material = KeyMaterial(raw)
        except ValidationError:
            logger.warning("Discarding malformed keychain entry")
            self.clear_cache()
            return None

        if not self.verify(material):
            material.wipe()
            logger.info("Discarding stale keychain entry")
            self.clear_cache()
            return None
        return material

    def has_cached_key(self) -> bool:
        if self.keychain is None:
            return False
        try:
            return self.keychain.retrieve(self.cache_id) is not None
        except KeychainError as e:
            logger.warning(f"Could not read keychain: {e}")
            return False

    def clear_cache(self) -> bool:
        """Remove the cached key. Returns False if nothing was cached."""
        if self.keychain is None:
            return False
        try:
            return self.keychain.delete(self.cache_id)
        except KeychainError as e:
            logger.warning(f"Could not clear keychain: {e}")
            return False

    # =========================================================================
    # INTERNAL HELPERS
    # =========================================================================

    @staticmethod
    def _matches(material: KeyMaterial, verification: str) -> bool:
        expected = crypto.compute_verification(material.key)
        return hmac.compare_digest(expected.encode("ascii"), verification.encode("utf-8"))

    def _write_key_metadata(self, conn, salt: bytes, params: Dict[str, int], verification: str) -> None:
        self.handle.set_meta(conn, "kdf", crypto.KDF_NAME)
        self.handle.set_meta(conn, "kdf_params", json.dumps(params, sort_keys=True))
        self.handle.set_meta(conn, "kdf_salt", base64.b64encode(salt).decode("ascii"))
        self.handle.set_meta(conn, "passphrase_verification", verification)
        self.handle.set_meta(conn, "cipher", crypto.CIPHER_NAME)

    def _load_key_params(self) -> Tuple[bytes, Dict[str, int], str]:
        meta = self.handle.all_meta()
        salt_b64 = meta.get("kdf_salt")
        verification = meta.get("passphrase_verification")
        if not salt_b64 or not verification:
            raise NotInitializedError(
                f"Store at {self.handle.path} is not initialized. Run `senv init` first."
            )
        if meta.get("kdf", crypto.KDF_NAME) != crypto.KDF_NAME:
            raise CorruptionError(f"Unsupported KDF: {meta['kdf']}")
        if meta.get("cipher", crypto.CIPHER_NAME) != crypto.CIPHER_NAME:
            raise CorruptionError(f"Unsupported cipher: {meta['cipher']}")

        try:
            salt = base64.b64decode(salt_b64, validate=True)
            params = crypto.validate_kdf_params(json.loads(meta.get("kdf_params", "")))
        except (binascii.Error, ValueError, ValidationError) as e:
            raise CorruptionError(f"Store key metadata is malformed: {e}") from e
        return salt, params, verification
