"""
SecureEnv - Bundle Module

Portable export/import of a filtered set of secrets.

A bundle is a JSON document sealed under its own passphrase-derived
key: it carries its own salt, KDF parameters and verification
artifact, so it can be opened with nothing but the passphrase. Every
value inside stays encrypted (ChaCha20-Poly1305, bound to its triple).

Format (version 1):
    {
      "format": "secureenv-bundle",
      "version": 1,
      "kdf": "scrypt",
      "kdf_params": {"N": ..., "r": ..., "p": ..., "dkLen": 32},
      "salt": "<base64>",
      "verification": "<hex>",
      "cipher": "chacha20poly1305",
      "exported_at": "<ISO-8601 UTC>",
      "filters": {"project": ..., "environment": ...},
      "entries": [
        {"project", "environment", "key", "encrypted_value", "description", "version"}
      ]
    }
"""

import base64
import binascii
import hmac
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from . import crypto
from .crypto import CryptoEngine, KeyMaterial
from .errors import AuthError, CorruptionError, SecureEnvError, ValidationError
from .keys import validate_passphrase
from .vault import Store, validate_triple

logger = logging.getLogger(__name__)

BUNDLE_FORMAT = "secureenv-bundle"
BUNDLE_VERSION = 1

# What import does when a triple already exists in the target store
ON_EXISTING_VERSION = "version"   # write a new version on top
ON_EXISTING_SKIP = "skip"         # leave the target untouched
ON_EXISTING = (ON_EXISTING_VERSION, ON_EXISTING_SKIP)


# =============================================================================
# RECORDS
# =============================================================================

@dataclass
class BundleEntry:
    project: str
    environment: str
    key: str
    encrypted_value: str
    description: Optional[str] = None
    version: int = 1

    @property
    def triple(self) -> Tuple[str, str, str]:
        return (self.project, self.environment, self.key)


@dataclass
class Bundle:
    """Parsed bundle header plus its raw (not yet validated) entries."""

    version: int
    kdf_params: Dict[str, int]
    salt: bytes
    verification: str
    exported_at: Optional[str] = None
    filters: Dict[str, Optional[str]] = field(default_factory=dict)
    entries: List[Any] = field(default_factory=list)


@dataclass
class EntryError:
    index: int
    triple: Optional[Tuple[str, str, str]]
    error: SecureEnvError

    def __str__(self) -> str:
        where = "/".join(self.triple) if self.triple else f"entry #{self.index}"
        return f"{where}: {self.error}"


@dataclass
class ImportResult:
    applied: int = 0
    skipped: int = 0
    errors: List[EntryError] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        """True when at least one entry failed."""
        return bool(self.errors)


def _entry_context(project: str, environment: str, key: str) -> dict:
    return {"ctx": "bundle_entry", "project": project, "environment": environment, "key": key}


def _parse_entry(raw: Any) -> BundleEntry:
    if not isinstance(raw, dict):
        raise ValidationError("Bundle entry must be an object")
    try:
        entry = BundleEntry(
            project=raw["project"],
            environment=raw["environment"],
            key=raw["key"],
            encrypted_value=raw["encrypted_value"],
            description=raw.get("description"),
            version=raw.get("version", 1),
        )
    except KeyError as e:
        raise ValidationError(f"Bundle entry is missing field {e.args[0]!r}") from e

    validate_triple(entry.project, entry.environment, entry.key)
    if not isinstance(entry.encrypted_value, str):
        raise ValidationError("Bundle entry encrypted_value must be a string")
    if entry.description is not None and not isinstance(entry.description, str):
        raise ValidationError("Bundle entry description must be a string")
    return entry


# =============================================================================
# CODEC
# =============================================================================

class BundleCodec:
    """
    Builds and opens bundles.

    Usage:
        codec = BundleCodec()
        data = codec.export(store, "bundle-passphrase", project="api")
        result = codec.import_bundle(other_store, data, "bundle-passphrase")
    """

    def __init__(self, kdf_params: Optional[Dict[str, int]] = None):
        self.kdf_params = crypto.validate_kdf_params(kdf_params or crypto.default_kdf_params())

    def export(
        self,
        store: Store,
        passphrase: str,
        project: Optional[str] = None,
        environment: Optional[str] = None,
    ) -> bytes:
        """
        Export current secrets matching the filters.

        Values are decrypted with the store key and re-sealed under a
        fresh key derived from `passphrase` (which may differ from the
        store passphrase).

        Returns:
            UTF-8 JSON bytes
        """
        validate_passphrase(passphrase)
        secrets = store.list(project, environment, include_values=True)
        salt = crypto.generate_salt()

        with crypto.derive_key_material(passphrase, salt, self.kdf_params) as material:
            engine = CryptoEngine(material)
            verification = crypto.compute_verification(material.key)
            entries = [
                {
                    "project": s.project,
                    "environment": s.environment,
                    "key": s.key,
                    "encrypted_value": engine.encrypt(s.value, _entry_context(*s.triple)),
                    "description": s.description,
                    "version": s.version,
                }
                for s in secrets
            ]

        doc = {
            "format": BUNDLE_FORMAT,
            "version": BUNDLE_VERSION,
            "kdf": crypto.KDF_NAME,
            "kdf_params": self.kdf_params,
            "salt": base64.b64encode(salt).decode("ascii"),
            "verification": verification,
            "cipher": crypto.CIPHER_NAME,
            "exported_at": datetime.now(timezone.utc).isoformat(),
            "filters": {"project": project, "environment": environment},
            "entries": entries,
        }
        logger.info(f"Exported {len(entries)} secrets")
        return (json.dumps(doc, indent=2, ensure_ascii=False) + "\n").encode("utf-8")

    def load(self, data: Union[bytes, str]) -> Bundle:
        """
        Parse and validate a bundle header.

        Raises:
            CorruptionError: Not a bundle, unsupported version, bad header
        """
        try:
            text = data.decode("utf-8") if isinstance(data, bytes) else data
            doc = json.loads(text)
        except (UnicodeDecodeError, ValueError) as e:
            raise CorruptionError(f"Bundle is not valid JSON: {e}") from e

        if not isinstance(doc, dict) or doc.get("format") != BUNDLE_FORMAT:
            raise CorruptionError("Not a SecureEnv bundle")

        version = doc.get("version")
        if isinstance(version, bool) or not isinstance(version, int) or version < 1:
            raise CorruptionError(f"Invalid bundle version: {version!r}")
        if version > BUNDLE_VERSION:
            raise CorruptionError(
                f"Bundle format v{version} is newer than supported v{BUNDLE_VERSION}"
            )
        if doc.get("kdf") != crypto.KDF_NAME:
            raise CorruptionError(f"Unsupported bundle KDF: {doc.get('kdf')!r}")
        if doc.get("cipher") != crypto.CIPHER_NAME:
            raise CorruptionError(f"Unsupported bundle cipher: {doc.get('cipher')!r}")

        try:
            kdf_params = crypto.validate_kdf_params(doc.get("kdf_params"))
            salt = base64.b64decode(doc.get("salt") or "", validate=True)
        except (ValidationError, binascii.Error, ValueError, TypeError) as e:
            raise CorruptionError(f"Bundle header is malformed: {e}") from e
        if len(salt) < 16:
            raise CorruptionError("Bundle salt is too short")

        verification = doc.get("verification")
        if not isinstance(verification, str) or not verification:
            raise CorruptionError("Bundle has no verification artifact")

        entries = doc.get("entries")
        if not isinstance(entries, list):
            raise CorruptionError("Bundle entries must be a list")

        filters = doc.get("filters")
        return Bundle(
            version=version,
            kdf_params=kdf_params,
            salt=salt,
            verification=verification,
            exported_at=doc.get("exported_at"),
            filters=filters if isinstance(filters, dict) else {},
            entries=entries,
        )

    def unlock(self, bundle: Bundle, passphrase: str) -> KeyMaterial:
        """
        Derive the bundle key and check it against the embedded artifact.

        Raises:
            AuthError: Wrong bundle passphrase
        """
        material = crypto.derive_key_material(passphrase, bundle.salt, bundle.kdf_params)
        expected = crypto.compute_verification(material.key)
        if not hmac.compare_digest(expected.encode("ascii"), bundle.verification.encode("utf-8")):
            material.wipe()
            raise AuthError("Invalid bundle passphrase")
        return material

    def import_bundle(
        self,
        store: Store,
        data: Union[bytes, str],
        passphrase: str,
        on_existing: str = ON_EXISTING_VERSION,
    ) -> ImportResult:
        """
        Apply a bundle to a store.

        Header problems (bad format, wrong passphrase) abort before any
        entry is touched. After that each entry is decrypted and written
        with Store.set (its own transaction); entry failures are
        collected rather than raised.

        Args:
            on_existing: "version" adds a new version to existing triples,
                "skip" leaves them untouched

        Raises:
            CorruptionError: Malformed bundle header
            AuthError: Wrong bundle passphrase
        """
        if on_existing not in ON_EXISTING:
            raise ValidationError(f"on_existing must be one of {ON_EXISTING}")

        bundle = self.load(data)
        result = ImportResult()

        with self.unlock(bundle, passphrase) as material:
            engine = CryptoEngine(material)
            for index, raw in enumerate(bundle.entries):
                triple = None
                try:
                    entry = _parse_entry(raw)
                    triple = entry.triple
                    value = engine.decrypt(entry.encrypted_value, _entry_context(*triple))
                    if on_existing == ON_EXISTING_SKIP and store.exists(*triple):
                        result.skipped += 1
                        continue
                    store.set(*triple, value, entry.description)
                    result.applied += 1
                except SecureEnvError as e:
                    logger.warning(f"Bundle entry {index} not imported: {e}")
                    result.errors.append(EntryError(index, triple, e))

        logger.info(
            f"Imported {result.applied} secrets "
            f"({result.skipped} skipped, {len(result.errors)} failed)"
        )
        return result
