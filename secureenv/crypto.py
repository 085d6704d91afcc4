"""
SecureEnv - Cryptography Module

All cryptographic operations live in this one file: key derivation,
passphrase verification and per-value authenticated encryption.

Key hierarchy:
    1. Passphrase -> scrypt(salt) -> master key (32 bytes)
    2. Master key -> HKDF("secureenv-data-v1") -> data key (32 bytes)
    3. Data key -> HKDF("secureenv-verify-v1") -> verification artifact
    4. Each secret value -> ChaCha20-Poly1305 under the data key

The master key is wiped as soon as the data key exists. Only the
verification artifact and the salt are ever persisted.

Ciphertext blob (stored as base64 text in a single column):

    +---------+-------------+------------------------------+
    | 1 byte  | 12 bytes    | N + 16 bytes                 |
    | format  | nonce       | ciphertext || Poly1305 tag   |
    +---------+-------------+------------------------------+
"""

import base64
import binascii
import json
import logging
import os
from typing import Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from .errors import AuthError, CorruptionError, ValidationError

logger = logging.getLogger(__name__)


# =============================================================================
# Configuration
# =============================================================================

KEY_SIZE = 32            # 256-bit key
NONCE_SIZE = 12          # 96-bit nonce for ChaCha20-Poly1305
TAG_SIZE = 16            # 128-bit Poly1305 tag
SALT_SIZE = 32

FORMAT_VERSION = 2       # First byte of every ciphertext blob
CIPHER_NAME = "chacha20poly1305"
KDF_NAME = "scrypt"

# scrypt parameters (tuned for ~250ms on modern CPU)
# N = CPU/memory cost (power of 2), r = block size, p = parallelization
SCRYPT_N = 2**17
SCRYPT_R = 8
SCRYPT_P = 1
MIN_SCRYPT_N = 2**10

# Upper bounds for parameters read from untrusted bundles and metadata
MAX_SCRYPT_N = 2**20
MAX_SCRYPT_R = 32
MAX_SCRYPT_P = 16
MAX_SCRYPT_MEMORY = 2**30      # 128 * N * r * p bytes

DATA_KEY_INFO = b"secureenv-data-v1"
VERIFY_INFO = b"secureenv-verify-v1"


def default_kdf_params() -> Dict[str, int]:
    """Return a fresh copy of the default scrypt parameters."""
    return {"N": SCRYPT_N, "r": SCRYPT_R, "p": SCRYPT_P, "dkLen": KEY_SIZE}


def validate_kdf_params(params: Dict) -> Dict[str, int]:
    """
    Check scrypt parameters and return them normalized.

    Raises:
        ValidationError: If any parameter is missing or out of range
    """
    if not isinstance(params, dict):
        raise ValidationError("KDF parameters must be a mapping")
    try:
        n = params["N"]
        r = params["r"]
        p = params["p"]
        dk_len = params.get("dkLen", KEY_SIZE)
    except KeyError as e:
        raise ValidationError(f"Missing KDF parameter: {e.args[0]}") from e

    for name, value in (("N", n), ("r", r), ("p", p), ("dkLen", dk_len)):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValidationError(f"KDF parameter {name} must be an integer")
    if n < MIN_SCRYPT_N or n & (n - 1):
        raise ValidationError(f"scrypt N must be a power of two >= {MIN_SCRYPT_N}")
    if n > MAX_SCRYPT_N:
        raise ValidationError(f"scrypt N must be <= {MAX_SCRYPT_N}")
    if r < 1 or p < 1:
        raise ValidationError("scrypt r and p must be positive")
    if r > MAX_SCRYPT_R or p > MAX_SCRYPT_P:
        raise ValidationError(f"scrypt r must be <= {MAX_SCRYPT_R} and p <= {MAX_SCRYPT_P}")
    if 128 * n * r * p > MAX_SCRYPT_MEMORY:
        raise ValidationError("scrypt parameters need too much memory")
    if dk_len != KEY_SIZE:
        raise ValidationError(f"KDF output length must be {KEY_SIZE} bytes")

    return {"N": n, "r": r, "p": p, "dkLen": dk_len}


# =============================================================================
# Key Material
# =============================================================================

def wipe(buf: bytearray) -> None:
    """Overwrite a mutable buffer with zeros in place."""
    buf[:] = b"\x00" * len(buf)


class KeyMaterial:
    """
    Data-encryption key held in a mutable buffer.

    Use as a context manager so the key is zeroed on every exit path:

        with key_manager.unlock(passphrase) as key:
            engine = CryptoEngine(key)
            ...
    """

    def __init__(self, key: bytes):
        if len(key) != KEY_SIZE:
            raise ValidationError(f"Key material must be {KEY_SIZE} bytes")
        self._key = bytearray(key)
        self._wiped = False

    @property
    def key(self) -> bytearray:
        if self._wiped:
            raise AuthError("Key material has been wiped")
        return self._key

    @property
    def wiped(self) -> bool:
        return self._wiped

    def wipe(self) -> None:
        if not self._wiped:
            wipe(self._key)
            self._wiped = True

    def __enter__(self) -> "KeyMaterial":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.wipe()

    def __repr__(self) -> str:
        return f"<KeyMaterial wiped={self._wiped}>"


# =============================================================================
# Key Derivation
# =============================================================================

def generate_salt() -> bytes:
    """Random salt for a new store or bundle (not secret)."""
    return os.urandom(SALT_SIZE)


def derive_master_key(passphrase: str, salt: bytes, params: Dict[str, int]) -> bytearray:
    """
    Derive the master key from a passphrase using scrypt.

    Args:
        passphrase: User's passphrase
        salt: Random salt stored alongside the KDF parameters
        params: {"N", "r", "p", "dkLen"} as returned by validate_kdf_params()

    Returns:
        32-byte master key in a wipeable buffer
    """
    params = validate_kdf_params(params)
    kdf = Scrypt(
        salt=salt,
        length=params["dkLen"],
        n=params["N"],
        r=params["r"],
        p=params["p"],
    )
    return bytearray(kdf.derive(passphrase.encode("utf-8")))


def _hkdf(key: bytes, info: bytes) -> bytes:
    h = HKDF(algorithm=hashes.SHA256(), length=KEY_SIZE, salt=None, info=info)
    return h.derive(key)


def derive_data_key(master_key: bytes) -> bytes:
    """Derive the data-encryption key from the master key."""
    return _hkdf(master_key, DATA_KEY_INFO)


def compute_verification(data_key: bytes) -> str:
    """
    Compute the passphrase verification artifact (hex).

    One-way from the data key, which is itself one-way from the master
    key, so storing it reveals neither.
    """
    return _hkdf(data_key, VERIFY_INFO).hex()


def derive_key_material(passphrase: str, salt: bytes, params: Dict[str, int]) -> KeyMaterial:
    """Run the full passphrase -> data key chain, wiping the master key."""
    master = derive_master_key(passphrase, salt, params)
    try:
        return KeyMaterial(derive_data_key(master))
    finally:
        wipe(master)


# =============================================================================
# Canonical Associated Data
# =============================================================================

def canonical_ad(ad: Optional[dict]) -> bytes:
    """
    Convert associated data to canonical JSON bytes.

    Keys sorted, compact separators, UTF-8 without escaping, so the same
    dict always produces the same bytes.
    """
    json_str = json.dumps(ad or {}, separators=(",", ":"), sort_keys=True, ensure_ascii=False)
    return json_str.encode("utf-8")


def _associated_data(context: Optional[dict]) -> bytes:
    return bytes([FORMAT_VERSION]) + canonical_ad(context)


# =============================================================================
# Encryption (ChaCha20-Poly1305)
# =============================================================================

class CryptoEngine:
    """
    Authenticated encryption of individual secret values.

    The optional context dict (typically the triple) is authenticated
    but not stored: decrypting a blob under a different context fails.
    """

    def __init__(self, key_material: KeyMaterial):
        self.key_material = key_material

    def _cipher(self) -> ChaCha20Poly1305:
        return ChaCha20Poly1305(self.key_material.key)

    def encrypt(self, plaintext: str, context: Optional[dict] = None) -> str:
        """
        Encrypt a value.

        Args:
            plaintext: Secret value
            context: Associated data bound to the ciphertext

        Returns:
            Base64 blob: format byte || nonce || ciphertext+tag
        """
        # Fresh random nonce on every call (NEVER reuse with same key!)
        nonce = os.urandom(NONCE_SIZE)
        ciphertext = self._cipher().encrypt(
            nonce, plaintext.encode("utf-8"), _associated_data(context)
        )
        raw = bytes([FORMAT_VERSION]) + nonce + ciphertext
        return base64.b64encode(raw).decode("ascii")

    def decrypt(self, blob: str, context: Optional[dict] = None) -> str:
        """
        Decrypt a blob produced by encrypt().

        Raises:
            CorruptionError: If the blob is malformed, was tampered with,
                was sealed under another key or another context
        """
        try:
            raw = base64.b64decode(blob, validate=True)
        except (binascii.Error, ValueError, TypeError) as e:
            raise CorruptionError("Ciphertext is not valid base64") from e

        if len(raw) < 1 + NONCE_SIZE + TAG_SIZE:
            raise CorruptionError("Ciphertext is truncated")
        if raw[0] != FORMAT_VERSION:
            raise CorruptionError(f"Unsupported ciphertext format: {raw[0]}")

        nonce = raw[1:1 + NONCE_SIZE]
        ciphertext = raw[1 + NONCE_SIZE:]
        try:
            plaintext = self._cipher().decrypt(nonce, ciphertext, _associated_data(context))
        except InvalidTag as e:
            raise CorruptionError(
                "Decryption failed: wrong key or tampered ciphertext"
            ) from e

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise CorruptionError("Decrypted value is not valid UTF-8") from e
